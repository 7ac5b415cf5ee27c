"""Archival sweep: done tasks untouched for a while move to ``archived``.

This is the only code that reads and writes across owners. It runs on the
privileged session, either from the daily background schedule or from the
admin trigger, and is never reachable from the owner-scoped task routes.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from taskapi.cache.layer import CacheLayer
from taskapi.core.config import Settings
from taskapi.core.errors import PersistenceError
from taskapi.core.logging import events
from taskapi.models import ArchivedTaskSummary
from taskapi.repositories.tasks import ArchiveRepository
from taskapi.services.task_service import DB_ERRORS

logger = logging.getLogger(__name__)


def archive_cutoff(days: int, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


def summarize(tasks) -> list[dict]:
    return [ArchivedTaskSummary.model_validate(t).model_dump(mode="json") for t in tasks]


class ArchiveService:
    def __init__(self, db: AsyncSession, cache: CacheLayer):
        self.db = db
        self.cache = cache
        self.repo = ArchiveRepository(db)

    async def find_archivable(self, cutoff: datetime) -> list[dict]:
        try:
            tasks = await self.repo.find_archivable(cutoff)
        except DB_ERRORS as e:
            events.db_error("SELECT", "tasks", repr(e))
            raise PersistenceError("Failed to check archivable tasks", "SELECT", "tasks", e) from e
        return summarize(tasks)

    async def archive(self, cutoff: datetime) -> tuple[int, list[dict]]:
        """Archive every matching task; returns the count and the summaries."""
        try:
            tasks = await self.repo.archive(cutoff)
        except DB_ERRORS as e:
            await self.db.rollback()
            events.db_error("UPDATE", "tasks", repr(e))
            raise PersistenceError("Failed to archive tasks", "UPDATE", "tasks", e) from e

        summaries = summarize(tasks)
        for owner_id in sorted({s["owner_id"] for s in summaries}):
            await self.cache.invalidate_by_owner(owner_id, reason="tasks_archived")

        events.info(
            "Task archiving completed",
            {"archived_count": len(summaries), "cutoff_date": cutoff.isoformat()},
        )
        return len(summaries), summaries


async def run_archive_schedule(
    session_factory: async_sessionmaker[AsyncSession],
    cache: CacheLayer,
    settings: Settings,
) -> None:
    """Run the sweep every ``archive_interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(settings.archive_interval_seconds)
        cutoff = archive_cutoff(settings.archive_after_days)
        try:
            async with session_factory() as session:
                count, _ = await ArchiveService(session, cache).archive(cutoff)
            logger.info(f"Scheduled archiving archived {count} tasks")
        except PersistenceError as e:
            logger.error(f"Scheduled archiving failed: {e.cause!r}")
        except Exception:
            # keep the schedule alive; the next run retries
            logger.exception("Scheduled archiving failed unexpectedly")
