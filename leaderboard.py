"""
=============================================================================
LEADERBOARD.PY — Rankings de XP
=============================================================================
Los rankings NO se guardan: se calculan al vuelo sumando el registro
append-only user_xp dentro de la ventana del periodo [inicio, fin).

  daily    → hoy (día local)
  weekly   → semana actual, de domingo a sábado
  monthly  → mes actual
  all_time → todo

Empates: a igual XP, gana el usuario más antiguo (id menor).
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from gamification import parse_period, local_day, day_window, week_window, month_window
from models import User, UserXP, LeaderboardPeriod

logger = logging.getLogger("volo.leaderboard")


def period_window(period, now: datetime):
    """(inicio, fin exclusivo) en UTC naive, o (None, None) para all_time"""
    period = parse_period(period)
    today = local_day(now)

    if period == LeaderboardPeriod.daily:
        return day_window(today)
    if period == LeaderboardPeriod.weekly:
        return week_window(today)
    if period == LeaderboardPeriod.monthly:
        return month_window(today)
    return None, None


def rank_users(db: Session, period, now: datetime, language_id: Optional[int] = None) -> list[dict]:
    """Todos los usuarios con XP en el periodo, ya ordenados y con su puesto"""
    start, end = period_window(period, now)
    total = func.sum(UserXP.amount).label("xp")

    query = db.query(UserXP.user_id, User.name, total).join(User, User.id == UserXP.user_id)
    if start is not None:
        query = query.filter(UserXP.created_at >= start, UserXP.created_at < end)
    if language_id is not None:
        query = query.filter(UserXP.language_id == language_id)

    rows = query.group_by(UserXP.user_id, User.name).order_by(total.desc(), UserXP.user_id).all()
    logger.debug(f"📊 Ranking {parse_period(period).value}: {len(rows)} usuarios")

    return [
        {"rank": position, "user_id": row.user_id, "name": row.name, "xp": int(row.xp or 0)}
        for position, row in enumerate(rows, start=1)
    ]


def get_leaderboard(
    db: Session,
    period,
    now: datetime,
    language_id: Optional[int] = None,
    limit: int = 100,
    user_id: Optional[int] = None,
) -> dict:
    """
    Top `limit` del periodo + el puesto de `user_id` aunque no esté en el top.
    """
    period = parse_period(period)
    ranked = rank_users(db, period, now, language_id)

    user_rank = None
    if user_id is not None:
        user_rank = _find(ranked, user_id)

    return {
        "period": period.value,
        "language_id": language_id,
        "entries": ranked[:limit],
        "user_rank": user_rank,
    }


def get_user_rank(db: Session, user_id: int, period, now: datetime, language_id: Optional[int] = None):
    """Puesto de un usuario en el periodo, o None si no ganó XP en él"""
    return _find(rank_users(db, period, now, language_id), user_id)


def _find(ranked: list[dict], user_id: int) -> Optional[dict]:
    return next((entry for entry in ranked if entry["user_id"] == user_id), None)
