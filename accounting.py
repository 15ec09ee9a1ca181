"""
=============================================================================
ACCOUNTING.PY — Contabilidad de XP, corazones, rachas, desafíos y logros
=============================================================================
Aplica las reglas puras de gamification.py contra la base de datos.

Reglas de juego para CADA operación:
  1. Una operación = una transacción.
  2. La fila del usuario se bloquea al leerla (SELECT ... FOR UPDATE) y
     además lleva versión (users.version). Si otra petición la cambió
     entre medias, el flush falla con StaleDataError.
  3. run_with_retry() deshace y repite la operación ENTERA con datos
     frescos. Nunca se reintenta con los valores viejos.
  4. `now` siempre llega desde fuera (UTC naive).

Las funciones NO hacen commit: lo hace run_with_retry (o el endpoint).
"""

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import (
    InvalidInputError, NotFoundError, ConcurrentUpdateConflict
)
from gamification import (
    MAX_HEARTS, HEART_REGENERATION_INTERVAL_MS, HEART_RECOVERY_COOLDOWN_MS,
    ACHIEVEMENTS_DEFINITIONS, DAILY_CHALLENGES, AchievementStats, ChallengeProgress,
    compute_hearts, lose_heart, recover_heart, advance_streak, streak_bonus_xp, streak_bonus_percent,
    apply_progress, claim, achievements_to_unlock, parse_xp_source, parse_challenge_type,
    local_day, day_window, week_window, sum_in_window, daily_buckets,
)
from models import (
    User, Exercise, Lesson, UserXP, UserProgress, Achievement, UserAchievement,
    DailyChallenge, UserDailyChallenge, XPSource, ChallengeType
)

logger = logging.getLogger("volo.accounting")

MAX_RETRIES = 3
MAX_CHART_DAYS = 90
# Desfase de reloj tolerado entre instancias (época de corazones "en el futuro")
CLOCK_SKEW_TOLERANCE = timedelta(seconds=5)


# =============================================================================
# ===================== TRANSACCIONES =========================================
# =============================================================================

def run_with_retry(db: Session, operation, *args, attempts: int = MAX_RETRIES, **kwargs):
    """
    Ejecuta operation(db, *args, **kwargs) y hace commit.

    Si hay conflicto de concurrencia, rollback y vuelta a empezar (hasta
    `attempts` veces). Cualquier otro error hace rollback y se propaga.
    """
    for attempt in range(1, attempts + 1):
        try:
            result = operation(db, *args, **kwargs)
            db.commit()
            return result
        except (StaleDataError, ConcurrentUpdateConflict) as exc:
            db.rollback()
            if attempt == attempts:
                logger.error(f"💥 {operation.__name__}: conflicto tras {attempts} intentos")
                raise ConcurrentUpdateConflict(
                    "El usuario se modificó en otra petición, inténtelo de nuevo"
                ) from exc
            logger.warning(f"🔁 {operation.__name__}: conflicto de concurrencia (intento {attempt})")
        except Exception:
            db.rollback()
            raise


def _lock_user(db: Session, user_id: int) -> User:
    """Lee la fila del usuario FRESCA y bloqueada hasta el fin de la transacción"""
    user = (
        db.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if user is None:
        raise NotFoundError("Usuario no encontrado")
    return user


# =============================================================================
# ===================== XP ====================================================
# =============================================================================

def grant_xp(
    db: Session,
    user: User,
    amount: int,
    source,
    now: datetime,
    source_id=None,
    description: str = None,
    language_id: int = None,
):
    """
    Concede XP: añade UNA fila a user_xp y suma a users.total_xp.
    Devuelve la fila creada (o None si amount es 0).
    """
    if amount < 0:
        raise InvalidInputError(f"No se puede conceder XP negativo ({amount})")
    source = parse_xp_source(source)
    if amount == 0:
        return None

    grant = UserXP(
        user_id=user.id,
        amount=amount,
        source=source.value,
        source_id=str(source_id) if source_id is not None else None,
        description=description,
        language_id=language_id,
        created_at=now,
    )
    db.add(grant)
    user.total_xp = (user.total_xp or 0) + amount

    logger.info(f"✨ +{amount} XP ({source.value}) → usuario {user.id}")
    return grant


def xp_summary(db: Session, user_id: int, now: datetime, days: int = 7) -> dict:
    """XP de hoy, de esta semana, de la anterior y la gráfica diaria"""
    if days < 1 or days > MAX_CHART_DAYS:
        raise InvalidInputError(f"days debe estar entre 1 y {MAX_CHART_DAYS}")

    today = local_day(now)
    today_start, today_end = day_window(today)
    week_start, week_end = week_window(today)
    last_week_start, _ = week_window(today - timedelta(days=7))
    chart_start, _ = day_window(today - timedelta(days=days - 1))

    events = db.query(UserXP.amount, UserXP.created_at).filter(
        UserXP.user_id == user_id,
        UserXP.created_at >= min(chart_start, last_week_start),
    ).all()

    return {
        "today_xp": sum_in_window(events, today_start, today_end),
        "week_xp": sum_in_window(events, week_start, week_end),
        "last_week_xp": sum_in_window(events, last_week_start, week_start),
        "daily": [
            {"date": bucket.day, "xp": bucket.xp}
            for bucket in daily_buckets(events, today, days)
        ],
    }


# =============================================================================
# ===================== CORAZONES Y RACHA =====================================
# =============================================================================

def _heart_clock(user: User, now: datetime) -> datetime:
    """
    `now` para las cuentas de corazones. Si otra instancia con el reloj unos
    milisegundos adelantado guardó la época, se toma la época como "ahora".
    Un desfase mayor que CLOCK_SKEW_TOLERANCE sigue siendo un error.
    """
    epoch = user.hearts_updated_at
    if epoch is not None and now < epoch <= now + CLOCK_SKEW_TOLERANCE:
        return epoch
    return now


def get_heart_state(user: User, now: datetime):
    return compute_hearts(
        user.hearts, MAX_HEARTS, user.hearts_updated_at, _heart_clock(user, now),
        HEART_REGENERATION_INTERVAL_MS
    )


def recover_heart_with_ad(db: Session, user_id: int, now: datetime) -> dict:
    """
    +1 corazón por ver un anuncio, como mucho uno cada
    HEART_RECOVERY_COOLDOWN_MS. No toca el XP ni la racha.
    """
    user = _lock_user(db, user_id)
    before = get_heart_state(user, now).hearts_available

    snapshot = recover_heart(
        user.hearts, MAX_HEARTS, user.hearts_updated_at, _heart_clock(user, now),
        last_recovery_at=user.last_heart_recovery_at,
        cooldown_ms=HEART_RECOVERY_COOLDOWN_MS,
        interval_ms=HEART_REGENERATION_INTERVAL_MS,
    )
    user.hearts = snapshot.hearts
    user.hearts_updated_at = snapshot.updated_at
    user.last_heart_recovery_at = now
    db.flush()

    state = get_heart_state(user, now)
    logger.info(f"📺 Usuario {user.id} recupera un corazón ({state.hearts_available}/{MAX_HEARTS})")

    return {
        "hearts_recovered": state.hearts_available - before,
        "hearts_remaining": state.hearts_available,
        "max_hearts": MAX_HEARTS,
        "next_heart_regeneration": state.next_regeneration_at,
        "next_recovery_at": now + timedelta(milliseconds=HEART_RECOVERY_COOLDOWN_MS),
    }


def _register_activity(user: User, now: datetime):
    """
    Actividad que da XP: avanza (o resetea) la racha.
    El reseteo de una racha rota ocurre AQUÍ, no al leer el dashboard.
    """
    current, longest = advance_streak(
        user.current_streak or 0, user.longest_streak or 0,
        user.last_activity_date, local_day(now)
    )
    if current == 1 and (user.current_streak or 0) > 1:
        logger.info(f"💔 Racha rota: usuario {user.id} ({user.current_streak} días)")
    user.current_streak = current
    user.longest_streak = longest
    user.last_activity_date = now


# =============================================================================
# ===================== EJERCICIOS Y LECCIONES ================================
# =============================================================================

def complete_exercise(db: Session, user_id: int, exercise_id: int, is_correct: bool, now: datetime) -> dict:
    """
    Respuesta a un ejercicio.

    Acierto → XP del ejercicio, racha, desafíos "xp" y "practice", logros.
    Fallo   → pierde un corazón (si le queda alguno) y se reinicia la
              cuenta atrás de regeneración.
    """
    exercise = db.query(Exercise).filter(Exercise.id == exercise_id).first()
    if not exercise:
        raise NotFoundError("Ejercicio no encontrado")

    user = _lock_user(db, user_id)
    hearts_lost = 0
    xp_earned = 0
    unlocked = []

    if is_correct:
        xp_earned = exercise.xp_reward or 0
        language_id = exercise.lesson.language_id if exercise.lesson else None
        grant_xp(
            db, user, xp_earned, XPSource.exercise, now,
            source_id=exercise.id,
            description=f"Completed exercise: {exercise.question[:50]}",
            language_id=language_id,
        )
        _register_activity(user, now)

        today = local_day(now)
        update_challenge_progress(db, user.id, ChallengeType.xp, xp_earned, today, now)
        update_challenge_progress(db, user.id, ChallengeType.practice, 1, today, now)
        unlocked = check_and_unlock_achievements(db, user, now)
    else:
        available = get_heart_state(user, now).hearts_available
        # Sin corazones no hay nada que perder ni cuenta atrás que reiniciar
        if available > 0:
            snapshot = lose_heart(
                user.hearts, MAX_HEARTS, user.hearts_updated_at, _heart_clock(user, now),
                HEART_REGENERATION_INTERVAL_MS
            )
            user.hearts = snapshot.hearts
            user.hearts_updated_at = snapshot.updated_at
            hearts_lost = available - snapshot.hearts
            logger.info(f"💔 Usuario {user.id} pierde un corazón ({snapshot.hearts} restantes)")

    db.flush()
    state = get_heart_state(user, now)

    return {
        "xp_earned": xp_earned,
        "hearts_lost": hearts_lost,
        "hearts_remaining": state.hearts_available,
        "max_hearts": MAX_HEARTS,
        "next_heart_regeneration": state.next_regeneration_at,
        "out_of_hearts": state.hearts_available == 0,
        "total_xp": user.total_xp,
        "achievements": unlocked,
    }


def complete_lesson(
    db: Session,
    user_id: int,
    lesson_id: int,
    correct_answers: int,
    total_questions: int,
    now: datetime,
) -> dict:
    """
    Fin de una lección.

    Flujo:
      1. Guardar progreso (intentos, aciertos, precisión)
      2. XP de la lección
      3. Racha (aquí se resetea si estaba rota)
      4. Bonus de racha como concesión aparte (source = streak)
      5. Desafíos "xp" y "lessons"
      6. Logros
    """
    if total_questions <= 0:
        raise InvalidInputError("total_questions debe ser mayor que 0")
    if correct_answers < 0 or correct_answers > total_questions:
        raise InvalidInputError("correct_answers debe estar entre 0 y total_questions")

    lesson = db.query(Lesson).filter(Lesson.id == lesson_id).first()
    if not lesson:
        raise NotFoundError("Lección no encontrada")

    user = _lock_user(db, user_id)
    accuracy = correct_answers / total_questions * 100

    # ── 1. Progreso ──
    progress = db.query(UserProgress).filter(
        UserProgress.user_id == user.id,
        UserProgress.lesson_id == lesson.id,
    ).first()
    if progress is None:
        progress = UserProgress(
            user_id=user.id, lesson_id=lesson.id,
            attempts=0, correct_answers=0, total_questions=0,
        )
        db.add(progress)
    progress.is_completed = True
    progress.completed_at = now
    progress.attempts += 1
    progress.correct_answers += correct_answers
    progress.total_questions += total_questions
    progress.accuracy = accuracy

    # ── 2-4. XP, racha y bonus ──
    xp_earned = lesson.xp_reward or 0
    grant_xp(
        db, user, xp_earned, XPSource.lesson, now,
        source_id=lesson.id,
        description=f"Completed lesson: {lesson.title}",
        language_id=lesson.language_id,
    )
    _register_activity(user, now)

    bonus = streak_bonus_xp(xp_earned, user.current_streak)
    grant_xp(
        db, user, bonus, XPSource.streak, now,
        source_id=lesson.id,
        description=f"Streak bonus ({user.current_streak} days)",
        language_id=lesson.language_id,
    )

    # ── 5. Desafíos ──
    today = local_day(now)
    update_challenge_progress(db, user.id, ChallengeType.xp, xp_earned + bonus, today, now)
    update_challenge_progress(db, user.id, ChallengeType.lessons, 1, today, now)

    # ── 6. Logros ──
    unlocked = check_and_unlock_achievements(db, user, now)

    return {
        "xp_earned": xp_earned,
        "streak_bonus_xp": bonus,
        "streak_bonus_percent": streak_bonus_percent(user.current_streak),
        "current_streak": user.current_streak,
        "longest_streak": user.longest_streak,
        "accuracy": round(accuracy, 1),
        "total_xp": user.total_xp,
        "achievements": unlocked,
    }


# =============================================================================
# ===================== DESAFÍOS DIARIOS ======================================
# =============================================================================

def ensure_daily_challenges(db: Session, day: date):
    """Crea (o reactiva) los desafíos del día si aún no existen"""
    for definition in DAILY_CHALLENGES:
        challenge_type = definition["type"].value
        existing = db.query(DailyChallenge).filter(
            DailyChallenge.type == challenge_type,
            DailyChallenge.date == day,
        ).first()

        if existing:
            if not existing.is_active:
                existing.is_active = True
            continue

        try:
            with db.begin_nested():
                db.add(DailyChallenge(
                    type=challenge_type,
                    date=day,
                    target=definition["target"],
                    reward_xp=definition["reward_xp"],
                    is_active=True,
                ))
        except IntegrityError:
            # Otra petición lo creó a la vez
            logger.debug(f"Desafío {challenge_type} del {day} ya existía")
    db.flush()


def _as_progress(challenge: DailyChallenge, row) -> ChallengeProgress:
    return ChallengeProgress(
        challenge_id=challenge.id,
        type=parse_challenge_type(challenge.type),
        target=challenge.target,
        progress=row.progress if row else 0,
        is_completed=row.is_completed if row else False,
        reward_xp=challenge.reward_xp,
        reward_claimed=row.reward_claimed if row else False,
    )


def get_user_daily_challenges(db: Session, user_id: int, day: date) -> list[ChallengeProgress]:
    ensure_daily_challenges(db, day)

    challenges = db.query(DailyChallenge).filter(
        DailyChallenge.date == day,
        DailyChallenge.is_active == True,
    ).order_by(DailyChallenge.id).all()

    rows = db.query(UserDailyChallenge).filter(
        UserDailyChallenge.user_id == user_id,
        UserDailyChallenge.challenge_id.in_([c.id for c in challenges]),
    ).all()
    by_challenge = {row.challenge_id: row for row in rows}

    return [_as_progress(c, by_challenge.get(c.id)) for c in challenges]


def update_challenge_progress(db: Session, user_id: int, challenge_type, amount: int, day: date, now: datetime):
    """
    Suma progreso al desafío de `challenge_type` del día.
    Completar un desafío NO cobra la recompensa: eso es claim_challenge_reward.
    """
    challenge_type = parse_challenge_type(challenge_type)
    ensure_daily_challenges(db, day)

    challenge = db.query(DailyChallenge).filter(
        DailyChallenge.type == challenge_type.value,
        DailyChallenge.date == day,
    ).first()
    if not challenge or not challenge.is_active:
        return None

    row = db.query(UserDailyChallenge).filter(
        UserDailyChallenge.user_id == user_id,
        UserDailyChallenge.challenge_id == challenge.id,
    ).first()
    if row is None:
        row = UserDailyChallenge(
            user_id=user_id, challenge_id=challenge.id,
            progress=0, is_completed=False, reward_claimed=False,
        )
        db.add(row)

    updated = apply_progress(_as_progress(challenge, row), amount)
    if updated.is_completed and not row.is_completed:
        row.completed_at = now
        logger.info(f"🎯 Usuario {user_id} completó el desafío {challenge_type.value} del {day}")

    row.progress = updated.progress
    row.is_completed = updated.is_completed
    return updated


def claim_challenge_reward(db: Session, user_id: int, challenge_id: int, now: datetime) -> dict:
    """
    Cobra la recompensa de un desafío completado. Como mucho UNA vez.

    El "WHERE reward_claimed = false AND is_completed = true" hace que de
    dos peticiones simultáneas solo una actualice la fila; la otra ve 0
    filas y recibe AlreadyClaimedError.
    """
    challenge = db.query(DailyChallenge).filter(DailyChallenge.id == challenge_id).first()
    if not challenge:
        raise NotFoundError("Desafío no encontrado")

    user = _lock_user(db, user_id)

    claimed = db.query(UserDailyChallenge).filter(
        UserDailyChallenge.user_id == user.id,
        UserDailyChallenge.challenge_id == challenge.id,
        UserDailyChallenge.is_completed == True,
        UserDailyChallenge.reward_claimed == False,
    ).update(
        {"reward_claimed": True, "claimed_at": now},
        synchronize_session=False,
    )

    if claimed == 0:
        row = db.query(UserDailyChallenge).filter(
            UserDailyChallenge.user_id == user.id,
            UserDailyChallenge.challenge_id == challenge.id,
        ).populate_existing().first()
        # Lanza AlreadyClaimedError o NotCompletedError según el estado real
        claim(_as_progress(challenge, row))
        raise ConcurrentUpdateConflict("El desafío cambió durante el cobro")

    grant_xp(
        db, user, challenge.reward_xp, XPSource.challenge, now,
        source_id=challenge.id,
        description=f"Daily challenge reward: {challenge.type}",
    )
    logger.info(f"🎁 Usuario {user.id} cobró el desafío {challenge.type} (+{challenge.reward_xp} XP)")

    return {
        "challenge_id": challenge.id,
        "reward_xp": challenge.reward_xp,
        "total_xp": user.total_xp,
    }


# =============================================================================
# ===================== LOGROS ================================================
# =============================================================================

def seed_achievements(db: Session):
    """Inserta los logros que falten. Se ejecuta al arrancar."""
    for ach_def in ACHIEVEMENTS_DEFINITIONS:
        existing = db.query(Achievement).filter(Achievement.code == ach_def["code"]).first()
        if not existing:
            db.add(Achievement(
                code=ach_def["code"],
                name=ach_def["name"],
                description=ach_def["description"],
                icon=ach_def["icon"],
                xp_reward=ach_def["xp"],
                category=ach_def["category"],
                is_active=True,
            ))
    db.commit()
    logger.info(f"✅ {len(ACHIEVEMENTS_DEFINITIONS)} logros verificados en BD")


def _achievement_stats(db: Session, user: User) -> AchievementStats:
    completed = db.query(func.count(UserProgress.id)).filter(
        UserProgress.user_id == user.id,
        UserProgress.is_completed == True,
    ).scalar()
    perfect = db.query(func.count(UserProgress.id)).filter(
        UserProgress.user_id == user.id,
        UserProgress.is_completed == True,
        UserProgress.accuracy >= 100,
    ).scalar()
    return AchievementStats(
        lessons_completed=completed or 0,
        perfect_lessons=perfect or 0,
        current_streak=user.current_streak or 0,
        total_xp=user.total_xp or 0,
    )


def check_and_unlock_achievements(db: Session, user: User, now: datetime) -> list[dict]:
    """
    Desbloquea los logros que el usuario ya cumple.
    Re-evaluar un logro desbloqueado no hace nada (ni XP ni fecha nueva).
    """
    db.flush()
    unlocked_codes = {
        code for (code,) in db.query(Achievement.code)
        .join(UserAchievement, UserAchievement.achievement_id == Achievement.id)
        .filter(UserAchievement.user_id == user.id)
    }

    newly_unlocked = []
    attempted = set()
    # El XP de un logro puede desbloquear otro (xp_100), así que se repite
    while True:
        pending = achievements_to_unlock(_achievement_stats(db, user), unlocked_codes | attempted)
        if not pending:
            break
        for code in pending:
            attempted.add(code)
            achievement = _unlock(db, user, code, now)
            if achievement is not None:
                newly_unlocked.append(achievement)
        db.flush()

    return newly_unlocked


def _unlock(db: Session, user: User, achievement_code: str, now: datetime):
    """Desbloquea un logro y da su XP. None si no existe o ya lo tenía."""
    achievement = db.query(Achievement).filter(
        Achievement.code == achievement_code,
        Achievement.is_active == True,
    ).first()
    if not achievement:
        return None

    try:
        with db.begin_nested():
            db.add(UserAchievement(user_id=user.id, achievement_id=achievement.id, unlocked_at=now))
    except IntegrityError:
        # La restricción única dice que ya estaba desbloqueado
        return None

    if achievement.xp_reward and achievement.xp_reward > 0:
        grant_xp(
            db, user, achievement.xp_reward, XPSource.achievement, now,
            source_id=achievement.code,
            description=f"Achievement unlocked: {achievement.name}",
        )

    logger.info(f"🏆 Usuario {user.id} desbloqueó: {achievement.name}")
    return {
        "id": achievement.id,
        "code": achievement.code,
        "name": achievement.name,
        "icon": achievement.icon,
        "xp_reward": achievement.xp_reward,
    }
