import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core import config
from app.payments.intents import expire_stale

logger = logging.getLogger(__name__)


async def expiry_sweeper(db: AsyncIOMotorDatabase):
    """
    Background worker that expires abandoned checkouts every few minutes.
    A checkout that is never swept still cannot commit: the committer checks
    the deadline itself.
    """
    while True:
        try:
            await expire_stale(db)
        except Exception:
            logger.exception("Pending enrollment sweep failed")

        await asyncio.sleep(config.EXPIRY_SWEEP_SECONDS)
