"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → las TABLAS
  - Schemas (Pydantic)  → lo que la API acepta y devuelve

Convención:
  XxxComplete / XxxRequest → cuerpo de un POST
  XxxResponse / XxxResult  → lo que devuelve la API
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# =============================================================================
# ===================== USUARIO ===============================================
# =============================================================================

class UserResponse(BaseModel):
    """Perfil con los contadores ya DERIVADOS al momento de la petición"""
    id: int
    email: EmailStr
    name: str
    hearts: int
    max_hearts: int
    next_heart_regeneration: Optional[datetime] = None
    next_heart_in: str
    total_xp: int
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[datetime] = None
    days_since_last_activity: Optional[int] = None
    needs_streak_update: bool
    streak_bonus_percent: int


class HeartRecoveryResult(BaseModel):
    hearts_recovered: int
    hearts_remaining: int
    max_hearts: int
    next_heart_regeneration: Optional[datetime] = None
    next_recovery_at: datetime


# =============================================================================
# ===================== EJERCICIOS Y LECCIONES ================================
# =============================================================================

class ExerciseComplete(BaseModel):
    is_correct: bool


class LessonComplete(BaseModel):
    correct_answers: int = Field(ge=0)
    total_questions: int = Field(gt=0)


class AchievementUnlocked(BaseModel):
    id: int
    code: str
    name: str
    icon: Optional[str] = None
    xp_reward: int


class ExerciseResult(BaseModel):
    xp_earned: int
    hearts_lost: int
    hearts_remaining: int
    max_hearts: int
    next_heart_regeneration: Optional[datetime] = None
    out_of_hearts: bool
    total_xp: int
    achievements: list[AchievementUnlocked] = []


class LessonResult(BaseModel):
    xp_earned: int
    streak_bonus_xp: int
    streak_bonus_percent: int
    current_streak: int
    longest_streak: int
    accuracy: float
    total_xp: int
    achievements: list[AchievementUnlocked] = []


# =============================================================================
# ===================== DESAFÍOS ==============================================
# =============================================================================

class ChallengeResponse(BaseModel):
    challenge_id: int
    type: str
    target: int
    progress: int
    is_completed: bool
    reward_xp: int
    reward_claimed: bool
    model_config = {"from_attributes": True}


class ClaimResponse(BaseModel):
    challenge_id: int
    reward_xp: int
    total_xp: int


# =============================================================================
# ===================== LOGROS ================================================
# =============================================================================

class AchievementResponse(BaseModel):
    id: int
    code: str
    name: str
    description: str
    icon: Optional[str] = None
    xp_reward: int
    category: Optional[str] = None
    unlocked: bool
    unlocked_at: Optional[datetime] = None


# =============================================================================
# ===================== ESTADÍSTICAS Y RANKINGS ===============================
# =============================================================================

class DailyXPResponse(BaseModel):
    date: date
    xp: int


class XPSummaryResponse(BaseModel):
    today_xp: int
    week_xp: int
    last_week_xp: int
    daily: list[DailyXPResponse]


class LeaderboardEntryResponse(BaseModel):
    rank: int
    user_id: int
    name: str
    xp: int


class LeaderboardResponse(BaseModel):
    period: str
    language_id: Optional[int] = None
    entries: list[LeaderboardEntryResponse]
    user_rank: Optional[LeaderboardEntryResponse] = None
