"""Periodic deletion of long-expired refresh tokens.

Housekeeping only: expiry is always checked when a token is read, so a
missed or failed run never lets an expired token through.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from services.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600  # 1 hour


async def cleanup_expired_tokens(sessionmaker: async_sessionmaker, grace_days: int) -> int:
    """Delete refresh tokens that expired more than ``grace_days`` ago."""
    async with sessionmaker() as db:
        deleted = await RefreshTokenStore(db).delete_expired(timedelta(days=grace_days))
        await db.commit()
    if deleted > 0:
        logger.info(f"Token cleanup completed: {deleted} expired refresh tokens removed")
    return deleted


class TokenCleanupTask:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        grace_days: int,
        interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
    ):
        self.sessionmaker = sessionmaker
        self.grace_days = grace_days
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def _run(self):
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await cleanup_expired_tokens(self.sessionmaker, self.grace_days)
            except asyncio.CancelledError:
                logger.info("Token cleanup task cancelled")
                break
            except Exception as e:
                # Keep the loop alive; the next run retries
                logger.error(f"Error in token cleanup task: {e}")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.debug("Started periodic token cleanup task")

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.debug("Stopped periodic token cleanup task")
