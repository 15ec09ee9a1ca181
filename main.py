"""
=============================================================================
MAIN.PY — La API de Volo
=============================================================================
Endpoints REST de la contabilidad de gamificación.

Organización por secciones:
  1. USUARIO      → perfil con corazones y racha derivados, recuperar corazón
  2. PROGRESO     → completar ejercicios y lecciones
  3. DESAFÍOS     → desafíos diarios y cobro de recompensas
  4. LOGROS       → catálogo con estado de desbloqueo
  5. ESTADÍSTICAS → XP por día/semana, rankings

Toda la lógica vive en accounting.py / leaderboard.py; aquí solo se
traduce HTTP ↔ Python y se decide la hora (get_now).
"""

import os
import logging
import traceback
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from accounting import (
    run_with_retry, seed_achievements, get_heart_state, recover_heart_with_ad,
    complete_exercise, complete_lesson,
    get_user_daily_challenges, claim_challenge_reward, xp_summary
)
from auth import get_current_user
from database import get_db, init_db, SessionLocal
from errors import VoloError, CooldownActiveError
from gamification import (
    MAX_HEARTS, evaluate_streak, streak_bonus_percent, format_time_until, local_day
)
from leaderboard import get_leaderboard
from models import User, Achievement, UserAchievement, LeaderboardPeriod
from schemas import (
    UserResponse, HeartRecoveryResult, ExerciseComplete, ExerciseResult, LessonComplete, LessonResult,
    ChallengeResponse, ClaimResponse, AchievementResponse, XPSummaryResponse,
    LeaderboardResponse
)

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("volo.api")

ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Crear tablas
      2. Seed de logros
      3. Scheduler de desafíos diarios
    """
    logger.info("🚀 Arrancando Volo...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    db = SessionLocal()
    try:
        seed_achievements(db)
    finally:
        db.close()

    scheduler_started = False
    if ENABLE_SCHEDULER:
        try:
            from scheduler import create_scheduler, start_scheduler
            create_scheduler()
            start_scheduler()
            scheduler_started = True
        except Exception as e:
            logger.error(f"❌ Error arrancando scheduler: {e}")
    else:
        logger.warning("⚠️ Scheduler desactivado (ENABLE_SCHEDULER=false)")

    logger.info("🎉 Volo operativo")

    yield

    logger.info("🛑 Apagando Volo...")
    if scheduler_started:
        from scheduler import stop_scheduler
        stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Volo API",
    description="XP, corazones, rachas, desafíos y logros de Volo/Kola",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_now() -> datetime:
    """La hora de la petición (UTC naive). Los tests la sustituyen."""
    return datetime.utcnow()


# ─────────────────────────────────────────────────────────────────────────────
# MANEJO DE ERRORES
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(VoloError)
async def volo_error_handler(request: Request, exc: VoloError):
    """Errores del dominio → JSON estructurado con código estable"""
    logger.info(f"⚠️ {exc.code} en {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, CooldownActiveError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {exc}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check(now: datetime = Depends(get_now)):
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "Volo",
        "version": "1.0.0",
        "timestamp": now.isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: USUARIO ====================================
# =============================================================================

@app.get("/user/me", response_model=UserResponse, tags=["User"])
def get_me(user: User = Depends(get_current_user), now: datetime = Depends(get_now)):
    """
    Perfil del usuario. Los corazones se recalculan AHORA desde la época
    guardada; el cliente puede hacer polling de este endpoint.
    """
    hearts = get_heart_state(user, now)
    streak = evaluate_streak(user.last_activity_date, local_day(now))
    next_in = hearts.next_regeneration_at - now if hearts.next_regeneration_at else None

    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        hearts=hearts.hearts_available,
        max_hearts=MAX_HEARTS,
        next_heart_regeneration=hearts.next_regeneration_at,
        next_heart_in=format_time_until(next_in),
        total_xp=user.total_xp,
        current_streak=user.current_streak,
        longest_streak=user.longest_streak,
        last_activity_date=user.last_activity_date,
        days_since_last_activity=streak.days_since_last_activity,
        needs_streak_update=streak.needs_update,
        streak_bonus_percent=streak_bonus_percent(user.current_streak),
    )


@app.post("/user/hearts/recover", response_model=HeartRecoveryResult, tags=["User"])
def recover_heart(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    +1 corazón tras ver un anuncio.
    400 hearts_full si están llenos, 429 cooldown_active (con Retry-After)
    si ya se recuperó uno en la última hora.
    """
    return run_with_retry(db, recover_heart_with_ad, user.id, now)


# =============================================================================
# ===================== SECCIÓN 2: PROGRESO ===================================
# =============================================================================

@app.post("/exercises/{exercise_id}/complete", response_model=ExerciseResult, tags=["Progress"])
def exercise_complete(
    exercise_id: int,
    data: ExerciseComplete,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    Acierto → XP + racha + desafíos + logros.
    Fallo   → -1 corazón y la cuenta atrás empieza de nuevo.
    """
    return run_with_retry(db, complete_exercise, user.id, exercise_id, data.is_correct, now)


@app.post("/lessons/{lesson_id}/complete", response_model=LessonResult, tags=["Progress"])
def lesson_complete(
    lesson_id: int,
    data: LessonComplete,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """XP de la lección + bonus de racha + desafíos + logros"""
    return run_with_retry(
        db, complete_lesson, user.id, lesson_id, data.correct_answers, data.total_questions, now
    )


# =============================================================================
# ===================== SECCIÓN 3: DESAFÍOS ===================================
# =============================================================================

@app.get("/challenges/daily", response_model=list[ChallengeResponse], tags=["Challenges"])
def daily_challenges(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """Desafíos de hoy con el progreso del usuario"""
    challenges = get_user_daily_challenges(db, user.id, local_day(now))
    db.commit()
    return [
        ChallengeResponse(
            challenge_id=c.challenge_id,
            type=c.type.value,
            target=c.target,
            progress=c.progress,
            is_completed=c.is_completed,
            reward_xp=c.reward_xp,
            reward_claimed=c.reward_claimed,
        )
        for c in challenges
    ]


@app.post("/challenges/{challenge_id}/claim", response_model=ClaimResponse, tags=["Challenges"])
def claim_challenge(
    challenge_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    Cobra la recompensa. 409 already_claimed si ya se cobró,
    400 not_completed si el desafío no está terminado.
    """
    return run_with_retry(db, claim_challenge_reward, user.id, challenge_id, now)


# =============================================================================
# ===================== SECCIÓN 4: LOGROS =====================================
# =============================================================================

@app.get("/achievements", response_model=list[AchievementResponse], tags=["Achievements"])
def get_my_achievements(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Lista todos los logros (desbloqueados y bloqueados)"""
    all_achievements = db.query(Achievement).filter(Achievement.is_active == True).all()
    user_achievements = db.query(UserAchievement).filter(
        UserAchievement.user_id == user.id
    ).all()

    unlocked_map = {ua.achievement_id: ua.unlocked_at for ua in user_achievements}

    return [
        AchievementResponse(
            id=ach.id,
            code=ach.code,
            name=ach.name,
            description=ach.description,
            icon=ach.icon,
            xp_reward=ach.xp_reward or 0,
            category=ach.category,
            unlocked=ach.id in unlocked_map,
            unlocked_at=unlocked_map.get(ach.id),
        )
        for ach in all_achievements
    ]


# =============================================================================
# ===================== SECCIÓN 5: ESTADÍSTICAS ===============================
# =============================================================================

@app.get("/stats/xp", response_model=XPSummaryResponse, tags=["Stats"])
def get_xp_stats(
    days: int = Query(7, ge=1, le=90),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """XP de hoy, esta semana, la anterior y gráfica de los últimos `days` días"""
    return xp_summary(db, user.id, now, days)


@app.get("/leaderboard", response_model=LeaderboardResponse, tags=["Stats"])
def leaderboard(
    period: LeaderboardPeriod = LeaderboardPeriod.weekly,
    language_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """Ranking del periodo + el puesto del usuario aunque no esté en el top"""
    return get_leaderboard(db, period, now, language_id=language_id, limit=limit, user_id=user.id)
