"""
=============================================================================
MODELS.PY — Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase = una tabla. Cada atributo = una columna.

  USER
  ├── xp_grants[] ──────────→ (registro APPEND-ONLY de XP)
  ├── lesson_progress[] ────→ lessons
  ├── user_achievements[] ──→ achievements
  └── daily_challenges[] ───→ daily_challenges

  LANGUAGE ──→ lessons[] ──→ exercises[]

El contenido (idiomas, lecciones, ejercicios) lo gestiona el panel de
administración, que es otro servicio. Aquí solo guardamos lo que la
contabilidad necesita leer: a qué idioma pertenece y cuánto XP da.

Todas las fechas se guardan en UTC "naive" (sin tzinfo).
"""

import enum
import os
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, Text, Date,
    DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from database import Base

# Corazones con los que empieza un usuario nuevo (mismo valor que MAX_HEARTS)
STARTING_HEARTS = int(os.getenv("MAX_HEARTS", "5"))


# =============================================================================
# ===================== ENUMS (Tipos cerrados) ================================
# =============================================================================
# Se guardan como texto, pero SOLO se aceptan estos valores. Un valor
# desconocido se rechaza al entrar (gamification.parse_*), nunca se cuela
# con una etiqueta por defecto.

class XPSource(str, enum.Enum):
    """De dónde viene una concesión de XP"""
    lesson = "lesson"
    exercise = "exercise"
    challenge = "challenge"
    achievement = "achievement"
    streak = "streak"        # bonus de racha al terminar una lección


class ChallengeType(str, enum.Enum):
    """Métrica que mide un desafío diario"""
    xp = "xp"                # XP ganado hoy
    lessons = "lessons"      # lecciones terminadas hoy
    practice = "practice"    # ejercicios acertados hoy


class LeaderboardPeriod(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    all_time = "all_time"


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Identidad (la gestiona el servicio de autenticación) ──
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)

    # ── Corazones: snapshot + época ──
    # hearts → valor guardado la última vez que se MATERIALIZÓ (al perder o recuperar uno).
    # El valor actual se deriva SIEMPRE con gamification.compute_hearts.
    hearts = Column(Integer, nullable=False, default=STARTING_HEARTS)
    hearts_updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    # hearts_updated_at → inicio de la cuenta atrás de regeneración
    last_heart_recovery_at = Column(DateTime, nullable=True)
    # last_heart_recovery_at → último corazón recuperado con anuncio (enfriamiento)

    # ── XP y rachas ──
    total_xp = Column(Integer, nullable=False, default=0)
    # total_xp → solo crece; es la suma de todas las filas de user_xp
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_activity_date = Column(DateTime, nullable=True)
    # last_activity_date → última actividad que dio XP (NULL = usuario nuevo)

    # ── Timestamps ──
    created_at = Column(DateTime, default=datetime.utcnow)

    # ── Concurrencia optimista ──
    # Cada UPDATE hace "WHERE version = N" y sube a N+1. Si otra petición
    # escribió antes, SQLAlchemy lanza StaleDataError.
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    xp_grants = relationship("UserXP", back_populates="user", cascade="all, delete-orphan")
    lesson_progress = relationship("UserProgress", back_populates="user", cascade="all, delete-orphan")
    user_achievements = relationship("UserAchievement", back_populates="user", cascade="all, delete-orphan")
    daily_challenges = relationship("UserDailyChallenge", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLAS 2-4: CONTENIDO =================================
# =============================================================================

class Language(Base):
    __tablename__ = "languages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), unique=True, nullable=False)
    # code → "kpelle", "bassa", "vai"...
    name = Column(String(100), nullable=False)

    lessons = relationship("Lesson", back_populates="language")


class Lesson(Base):
    __tablename__ = "lessons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    language_id = Column(Integer, ForeignKey("languages.id"), nullable=True)
    title = Column(String(200), nullable=False)
    xp_reward = Column(Integer, nullable=False, default=10)

    language = relationship("Language", back_populates="lessons")
    exercises = relationship("Exercise", back_populates="lesson", cascade="all, delete-orphan")


class Exercise(Base):
    __tablename__ = "exercises"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id"), nullable=False)
    question = Column(Text, nullable=False)
    xp_reward = Column(Integer, nullable=False, default=5)

    lesson = relationship("Lesson", back_populates="exercises")


# =============================================================================
# ===================== TABLA 5: USER_XP ======================================
# =============================================================================
# Registro APPEND-ONLY: una fila por cada concesión de XP. Nunca se edita
# ni se borra. Los totales diarios/semanales y los rankings se DERIVAN de
# aquí; no hay contadores duplicados aparte de users.total_xp.

class UserXP(Base):
    __tablename__ = "user_xp"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    # source → un valor de XPSource
    source_id = Column(String(50), nullable=True)
    # source_id → id de la lección/ejercicio/desafío o código del logro
    description = Column(String(300), nullable=True)
    language_id = Column(Integer, ForeignKey("languages.id"), nullable=True)
    # language_id → para rankings por idioma (NULL en logros y desafíos)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    user = relationship("User", back_populates="xp_grants")


# =============================================================================
# ===================== TABLA 6: USER_PROGRESS ================================
# =============================================================================

class UserProgress(Base):
    __tablename__ = "user_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    lesson_id = Column(Integer, ForeignKey("lessons.id"), nullable=False)

    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    total_questions = Column(Integer, nullable=False, default=0)
    # correct_answers / total_questions → acumulados de todos los intentos
    accuracy = Column(Float, nullable=True)
    # accuracy → % del ÚLTIMO intento

    __table_args__ = (
        UniqueConstraint('user_id', 'lesson_id', name='uq_user_lesson'),
    )

    user = relationship("User", back_populates="lesson_progress")
    lesson = relationship("Lesson")


# =============================================================================
# ===================== TABLAS 7-8: LOGROS ====================================
# =============================================================================

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    code = Column(String(50), unique=True, nullable=False)
    # code → "first_lesson", "streak_7", "xp_100"...
    name = Column(String(100), nullable=False)
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    xp_reward = Column(Integer, default=0)
    category = Column(String(30), default="special")
    is_active = Column(Boolean, default=True)


class UserAchievement(Base):
    __tablename__ = "user_achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    achievement_id = Column(Integer, ForeignKey("achievements.id"), nullable=False)

    unlocked_at = Column(DateTime, default=datetime.utcnow)

    # Un logro se desbloquea como mucho UNA vez por usuario
    __table_args__ = (
        UniqueConstraint('user_id', 'achievement_id', name='uq_user_achievement'),
    )

    user = relationship("User", back_populates="user_achievements")
    achievement = relationship("Achievement")


# =============================================================================
# ===================== TABLAS 9-10: DESAFÍOS DIARIOS =========================
# =============================================================================

class DailyChallenge(Base):
    __tablename__ = "daily_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False)
    # type → un valor de ChallengeType
    date = Column(Date, nullable=False)
    # date → día LOCAL al que pertenece el desafío
    target = Column(Integer, nullable=False)
    reward_xp = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint('type', 'date', name='uq_challenge_type_date'),
    )


class UserDailyChallenge(Base):
    __tablename__ = "user_daily_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    challenge_id = Column(Integer, ForeignKey("daily_challenges.id"), nullable=False)

    progress = Column(Integer, nullable=False, default=0)
    # progress → nunca supera challenge.target
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    reward_claimed = Column(Boolean, nullable=False, default=False)
    # reward_claimed → solo puede pasar a True si is_completed ya es True
    claimed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'challenge_id', name='uq_user_challenge'),
    )

    user = relationship("User", back_populates="daily_challenges")
    challenge = relationship("DailyChallenge")
