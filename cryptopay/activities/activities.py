import logging

from temporalio import activity

from ..chain.registry import ChainRegistry
from ..config import CryptoSettings
from ..db.session import SessionLocal
from ..services.monitor import monitor_sweep
from ..services.settlement import settle_expired

logging.getLogger("temporalio").setLevel(logging.INFO)
logger = logging.getLogger("activity")


@activity.defn
async def activity_monitor_sweep() -> dict:
    attempt = activity.info().attempt
    logger.info(f"[Activity] monitor_sweep attempt {attempt}")

    settings = CryptoSettings.from_env()
    registry = ChainRegistry.from_settings(settings)
    try:
        with SessionLocal() as db:
            summary = await monitor_sweep(db, settings, registry)
    except Exception as e:
        logger.error(f"[Activity] monitor_sweep error: {e}")
        raise
    return summary.to_dict()


@activity.defn
async def activity_settle_expired() -> int:
    attempt = activity.info().attempt
    logger.info(f"[Activity] settle_expired attempt {attempt}")
    try:
        with SessionLocal() as db:
            expired = settle_expired(db)
    except Exception as e:
        logger.error(f"[Activity] settle_expired error: {e}")
        raise
    logger.info(f"[Activity] settle_expired: {expired} orders expired")
    return expired
