"""
=============================================================================
GAMIFICATION.PY — Reglas puras de gamificación
=============================================================================
Gestiona:
  - Corazones (regeneración perezosa, pérdida, recuperación con anuncio)
  - Rachas (estado, avance, bonus de XP)
  - Ventanas de tiempo (sumas de XP por día/semana/mes, gráfica diaria)
  - Desafíos diarios (progreso y cobro)
  - Logros (qué se desbloquea con qué)

TODO aquí es una función pura: sin base de datos, sin reloj.
El "ahora" siempre entra como parámetro (now / today), así los tests no
necesitan simular el tiempo. La parte que toca la BD vive en accounting.py.

Fechas: los timestamps son UTC "naive" (como se guardan en la BD).
Los días de calendario se calculan en la zona APP_TIMEZONE.
"""

import math
import os
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Iterable, NamedTuple, Optional

import pytz

from errors import (
    InvalidInputError, AlreadyClaimedError, NotCompletedError, HeartsFullError, CooldownActiveError
)
from models import XPSource, ChallengeType, LeaderboardPeriod

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Africa/Monrovia")
LOCAL_TZ = pytz.timezone(APP_TIMEZONE)

MAX_HEARTS = int(os.getenv("MAX_HEARTS", "5"))
HEART_REGENERATION_INTERVAL_MS = int(
    float(os.getenv("HEART_REGENERATION_HOURS", "4")) * 60 * 60 * 1000
)
# Recuperar un corazón viendo un anuncio: como mucho uno cada hora
HEART_RECOVERY_COOLDOWN_MS = int(
    float(os.getenv("HEART_RECOVERY_COOLDOWN_MINUTES", "60")) * 60 * 1000
)


# =============================================================================
# ===================== ENUMS EN LA FRONTERA ==================================
# =============================================================================

def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidInputError(f"{label} desconocido: {value!r} (válidos: {allowed})")


def parse_xp_source(value) -> XPSource:
    return _parse_enum(XPSource, value, "Origen de XP")


def parse_challenge_type(value) -> ChallengeType:
    return _parse_enum(ChallengeType, value, "Tipo de desafío")


def parse_period(value) -> LeaderboardPeriod:
    return _parse_enum(LeaderboardPeriod, value, "Periodo")


# =============================================================================
# ===================== CORAZONES =============================================
# =============================================================================
# Un corazón se regenera cada HEART_REGENERATION_INTERVAL_MS hasta MAX_HEARTS.
# No hay ningún temporizador: cada lectura recalcula desde la época
# (hearts_updated_at). Una sola cuenta atrás por usuario: perder un corazón
# la reinicia desde ese momento.

class HeartState(NamedTuple):
    hearts_available: int
    next_regeneration_at: Optional[datetime]


class HeartSnapshot(NamedTuple):
    hearts: int
    updated_at: datetime


def _check_hearts(current_hearts: int, max_hearts: int, interval_ms: int):
    if current_hearts < 0:
        raise InvalidInputError("Los corazones no pueden ser negativos")
    if max_hearts <= 0:
        raise InvalidInputError("max_hearts debe ser positivo")
    if interval_ms <= 0:
        raise InvalidInputError("El intervalo de regeneración debe ser positivo")


def compute_hearts(
    current_hearts: int,
    max_hearts: int,
    last_update: Optional[datetime],
    now: datetime,
    interval_ms: int = HEART_REGENERATION_INTERVAL_MS,
) -> HeartState:
    """
    Corazones disponibles AHORA y cuándo llega el siguiente.

    Ejemplo (intervalo 4h, máximo 5):
      hearts=2, last_update=hace 4h  →  3 disponibles, siguiente en last_update + 8h
      hearts=5                       →  5 disponibles, siguiente = None
    """
    _check_hearts(current_hearts, max_hearts, interval_ms)

    if current_hearts >= max_hearts:
        return HeartState(current_hearts, None)

    if last_update is None:
        raise InvalidInputError("Falta la época de regeneración de corazones")
    if now < last_update:
        raise InvalidInputError("'now' es anterior a la última actualización de corazones")

    interval = timedelta(milliseconds=interval_ms)
    hearts_to_add = (now - last_update) // interval
    available = min(max_hearts, current_hearts + hearts_to_add)

    if available >= max_hearts:
        return HeartState(available, None)
    return HeartState(available, last_update + interval * (hearts_to_add + 1))


def lose_heart(
    current_hearts: int,
    max_hearts: int,
    last_update: Optional[datetime],
    now: datetime,
    interval_ms: int = HEART_REGENERATION_INTERVAL_MS,
) -> HeartSnapshot:
    """
    Nuevo snapshot tras fallar una respuesta: materializa lo regenerado,
    resta uno (mínimo 0) y reinicia la cuenta atrás en `now`.
    """
    state = compute_hearts(current_hearts, max_hearts, last_update, now, interval_ms)
    return HeartSnapshot(max(0, state.hearts_available - 1), now)


def recover_heart(
    current_hearts: int,
    max_hearts: int,
    last_update: Optional[datetime],
    now: datetime,
    last_recovery_at: Optional[datetime] = None,
    cooldown_ms: int = HEART_RECOVERY_COOLDOWN_MS,
    interval_ms: int = HEART_REGENERATION_INTERVAL_MS,
) -> HeartSnapshot:
    """
    Nuevo snapshot tras ver un anuncio: +1 corazón (sin pasar de max_hearts).

    A diferencia de lose_heart, la cuenta atrás NO vuelve a empezar: la
    época avanza solo los intervalos ya consumidos, así que el siguiente
    corazón llega a la misma hora que antes del anuncio.

      hearts=2, last_update=T, now=T+5h  →  (4, T+4h)   siguiente en T+8h

    HeartsFullError si ya están llenos; CooldownActiveError si el último
    anuncio fue hace menos de cooldown_ms.
    """
    if cooldown_ms < 0:
        raise InvalidInputError("El enfriamiento no puede ser negativo")

    state = compute_hearts(current_hearts, max_hearts, last_update, now, interval_ms)
    if state.hearts_available >= max_hearts:
        raise HeartsFullError("Los corazones ya están llenos")

    if last_recovery_at is not None:
        remaining = last_recovery_at + timedelta(milliseconds=cooldown_ms) - now
        if remaining > timedelta(0):
            raise CooldownActiveError(
                f"Espera {format_time_until(remaining)} para recuperar otro corazón",
                retry_after=math.ceil(remaining.total_seconds()),
            )

    hearts = state.hearts_available + 1
    if hearts >= max_hearts:
        return HeartSnapshot(max_hearts, now)

    # La próxima regeneración (state.next_regeneration_at) no se mueve
    epoch = state.next_regeneration_at - timedelta(milliseconds=interval_ms)
    return HeartSnapshot(hearts, epoch)


def format_time_until(delta: Optional[timedelta]) -> str:
    """'3h 20m', '45m 10s', '12s'... o 'Full' si no falta nada"""
    if delta is None:
        return "Full"

    seconds = max(0, int(delta.total_seconds()))
    minutes, hours = seconds // 60, seconds // 3600

    if hours > 0:
        rest = minutes % 60
        return f"{hours}h {rest}m" if rest else f"{hours}h"
    if minutes > 0:
        rest = seconds % 60
        return f"{minutes}m {rest}s" if rest else f"{minutes}m"
    return f"{seconds}s"


# =============================================================================
# ===================== DÍAS LOCALES Y VENTANAS ===============================
# =============================================================================

def local_day(value, tz=None) -> Optional[date]:
    """Día de calendario local de un timestamp UTC (o el propio día si ya es date)"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        return value.astimezone(tz or LOCAL_TZ).date()
    return value


def _local_midnight(day: date, tz=None) -> datetime:
    """Medianoche local de `day`, expresada en UTC naive"""
    local = (tz or LOCAL_TZ).localize(datetime.combine(day, time.min))
    return local.astimezone(pytz.utc).replace(tzinfo=None)


def day_window(day: date, tz=None) -> tuple[datetime, datetime]:
    """[medianoche de day, medianoche del día siguiente)"""
    return _local_midnight(day, tz), _local_midnight(day + timedelta(days=1), tz)


def week_window(day: date, tz=None) -> tuple[datetime, datetime]:
    """Semana de domingo a sábado que contiene `day`"""
    start = day - timedelta(days=(day.weekday() + 1) % 7)
    return _local_midnight(start, tz), _local_midnight(start + timedelta(days=7), tz)


def month_window(day: date, tz=None) -> tuple[datetime, datetime]:
    first = day.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return _local_midnight(first, tz), _local_midnight(next_first, tz)


# =============================================================================
# ===================== ACUMULADOR DE XP ======================================
# =============================================================================

class XPEvent(NamedTuple):
    """Cualquier cosa con .amount y .created_at sirve (filas de UserXP incluidas)"""
    amount: int
    created_at: datetime


class DailyXP(NamedTuple):
    day: date
    xp: int


def sum_in_window(events: Iterable, window_start: datetime, window_end_exclusive: datetime) -> int:
    """
    Suma el XP de los eventos con window_start <= created_at < window_end_exclusive.

    El intervalo es semiabierto: un evento justo en el borde cuenta en UNA
    sola ventana, nunca en las dos ni en ninguna.
    """
    if window_end_exclusive < window_start:
        raise InvalidInputError("La ventana termina antes de empezar")

    total = 0
    for event in events:
        if event.amount < 0:
            raise InvalidInputError(f"Cantidad de XP negativa: {event.amount}")
        if window_start <= event.created_at < window_end_exclusive:
            total += event.amount
    return total


def daily_buckets(events: Iterable, today: date, days: int = 7, tz=None) -> list[DailyXP]:
    """
    XP por día de los últimos `days` días (hoy incluido), del más antiguo al
    más reciente. Siempre devuelve exactamente `days` entradas: un día sin
    actividad aparece con 0.
    """
    if days < 1:
        raise InvalidInputError("days debe ser al menos 1")

    events = list(events)
    buckets = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        start, end = day_window(day, tz)
        buckets.append(DailyXP(day, sum_in_window(events, start, end)))
    return buckets


# =============================================================================
# ===================== RACHAS ================================================
# =============================================================================
# La racha cuenta días de calendario consecutivos con actividad que da XP.
# Un día sin actividad NO la resetea en el momento: se resetea al
# registrar la siguiente actividad (advance_streak). Mientras tanto el
# dashboard solo avisa (needs_update).

STREAK_BONUS_PERCENT_PER_DAY = 10
STREAK_BONUS_CAP_PERCENT = 50


class StreakStatus(NamedTuple):
    days_since_last_activity: Optional[int]
    needs_update: bool


def evaluate_streak(last_activity, today, tz=None) -> StreakStatus:
    """
    Estado de la racha hoy.

      None         → (None, False)   usuario nuevo
      mismo día    → (0, False)      ya contada hoy
      ayer         → (1, False)      viva, falta la actividad de hoy
      hace 2+ días → (N, True)       rota
    """
    last_day = local_day(last_activity, tz)
    today = local_day(today, tz)

    if last_day is None:
        return StreakStatus(None, False)
    if last_day > today:
        raise InvalidInputError("La última actividad es posterior a hoy")

    days = (today - last_day).days
    return StreakStatus(days, days > 1)


def advance_streak(current_streak: int, longest_streak: int, last_activity, today, tz=None) -> tuple[int, int]:
    """(racha, mejor racha) después de registrar una actividad hoy"""
    if current_streak < 0 or longest_streak < 0:
        raise InvalidInputError("Las rachas no pueden ser negativas")

    status = evaluate_streak(last_activity, today, tz)

    if status.days_since_last_activity is None:
        current = 1
    elif status.days_since_last_activity == 0:
        current = max(current_streak, 1)
    elif status.days_since_last_activity == 1:
        current = current_streak + 1
    else:
        current = 1

    return current, max(longest_streak, current)


def streak_bonus_percent(current_streak: int) -> int:
    """10% por día de racha, con tope del 50%"""
    if current_streak < 0:
        raise InvalidInputError("La racha no puede ser negativa")
    return min(current_streak * STREAK_BONUS_PERCENT_PER_DAY, STREAK_BONUS_CAP_PERCENT)


def streak_bonus_xp(base_xp: int, current_streak: int) -> int:
    if base_xp < 0:
        raise InvalidInputError("El XP base no puede ser negativo")
    return base_xp * streak_bonus_percent(current_streak) // 100


# =============================================================================
# ===================== DESAFÍOS DIARIOS ======================================
# =============================================================================

DAILY_CHALLENGES = [
    {"type": ChallengeType.xp, "target": 50, "reward_xp": 20},
    {"type": ChallengeType.lessons, "target": 3, "reward_xp": 15},
    {"type": ChallengeType.practice, "target": 5, "reward_xp": 10},   # 5 ejercicios
]


@dataclass(frozen=True)
class ChallengeProgress:
    challenge_id: int
    type: ChallengeType
    target: int
    progress: int = 0
    is_completed: bool = False
    reward_xp: int = 0
    reward_claimed: bool = False


def apply_progress(challenge: ChallengeProgress, delta: int) -> ChallengeProgress:
    """Suma `delta` sin pasarse nunca del objetivo"""
    if delta < 0:
        raise InvalidInputError("El progreso no puede retroceder")
    if challenge.target <= 0:
        raise InvalidInputError("El objetivo del desafío debe ser positivo")

    progress = min(challenge.target, challenge.progress + delta)
    return replace(challenge, progress=progress, is_completed=progress >= challenge.target)


def claim(challenge: ChallengeProgress) -> ChallengeProgress:
    """Marca la recompensa como cobrada, o explica por qué no se puede"""
    if challenge.reward_claimed:
        raise AlreadyClaimedError("La recompensa de este desafío ya se cobró")
    if not challenge.is_completed:
        raise NotCompletedError("El desafío aún no está completado")
    return replace(challenge, reward_claimed=True)


# =============================================================================
# ===================== LOGROS ================================================
# =============================================================================

ACHIEVEMENTS_DEFINITIONS = [
    {"code": "first_lesson", "name": "First Steps", "description": "Complete your first lesson", "icon": "🎉", "xp": 10, "category": "lesson"},
    {"code": "streak_3", "name": "On Fire", "description": "Maintain a 3-day streak", "icon": "🔥", "xp": 20, "category": "streak"},
    {"code": "streak_7", "name": "Week Warrior", "description": "Maintain a 7-day streak", "icon": "⚡", "xp": 50, "category": "streak"},
    {"code": "streak_30", "name": "Monthly Master", "description": "Maintain a 30-day streak", "icon": "💪", "xp": 200, "category": "streak"},
    {"code": "perfect_10", "name": "Perfect Score", "description": "Get 100% on 10 lessons", "icon": "⭐", "xp": 30, "category": "lesson"},
    {"code": "xp_100", "name": "Centurion", "description": "Earn 100 XP", "icon": "🏆", "xp": 25, "category": "special"},
]

# código → (métrica de AchievementStats, umbral)
ACHIEVEMENT_THRESHOLDS = {
    "first_lesson": ("lessons_completed", 1),
    "streak_3": ("current_streak", 3),
    "streak_7": ("current_streak", 7),
    "streak_30": ("current_streak", 30),
    "perfect_10": ("perfect_lessons", 10),
    "xp_100": ("total_xp", 100),
}


class AchievementStats(NamedTuple):
    lessons_completed: int = 0
    perfect_lessons: int = 0
    current_streak: int = 0
    total_xp: int = 0


def achievements_to_unlock(stats: AchievementStats, unlocked_codes) -> list[str]:
    """Códigos que se cumplen y aún no están desbloqueados"""
    unlocked_codes = set(unlocked_codes)
    return [
        code for code, (metric, threshold) in ACHIEVEMENT_THRESHOLDS.items()
        if code not in unlocked_codes and getattr(stats, metric) >= threshold
    ]
