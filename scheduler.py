"""
=============================================================================
SCHEDULER.PY — Tareas automáticas
=============================================================================
Una sola tarea: al empezar cada día (hora LOCAL de APP_TIMEZONE) crea los
desafíos diarios del día nuevo.

No es imprescindible: los desafíos también se crean al vuelo la primera
vez que alguien los lee o suma progreso. Así el primer usuario del día no
paga la creación.

Los corazones y las rachas NO tienen tarea programada: se recalculan en
cada lectura.
"""

import asyncio
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from accounting import ensure_daily_challenges
from database import SessionLocal
from gamification import LOCAL_TZ, local_day

logger = logging.getLogger("volo.scheduler")

scheduler: AsyncIOScheduler = None


def _create_today_challenges():
    """Parte bloqueante (SQLAlchemy síncrono): corre en un hilo del executor"""
    db = SessionLocal()
    try:
        today = local_day(datetime.utcnow())
        ensure_daily_challenges(db, today)
        db.commit()
        logger.info(f"🎯 Desafíos diarios listos para {today}")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error creando los desafíos diarios: {e}")
    finally:
        db.close()


async def rollover_daily_challenges():
    """Crea los desafíos del día local actual sin bloquear el event loop"""
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _create_today_challenges)


def create_scheduler() -> AsyncIOScheduler:
    """
    Crea el scheduler con sus tareas.

    Tareas:
      - A las 00:01 (hora local): desafíos del día nuevo
    """
    global scheduler

    scheduler = AsyncIOScheduler(timezone=LOCAL_TZ)

    scheduler.add_job(
        rollover_daily_challenges,
        CronTrigger(hour=0, minute=1, timezone=LOCAL_TZ),
        id="daily_challenges_rollover",
        name="Crear desafíos diarios",
        replace_existing=True
    )

    logger.info(f"⏰ Scheduler configurado: desafíos diarios a las 00:01 ({LOCAL_TZ.zone})")
    return scheduler


def start_scheduler():
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
