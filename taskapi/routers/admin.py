from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskapi.api.deps import get_cache, get_log_buffer, require_service_scope
from taskapi.cache.layer import CacheLayer
from taskapi.core.config import SettingsDep
from taskapi.core.logging import RingBufferHandler, events
from taskapi.database import get_service_db
from taskapi.services.archive_service import ArchiveService, archive_cutoff

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_service_scope)],
)


def get_archive_service(
    db: Annotated[AsyncSession, Depends(get_service_db)],
    cache: Annotated[CacheLayer, Depends(get_cache)],
) -> ArchiveService:
    return ArchiveService(db, cache)


ArchiveServiceDep = Annotated[ArchiveService, Depends(get_archive_service)]
LogBufferDep = Annotated[RingBufferHandler, Depends(get_log_buffer)]


@router.get("/archive-tasks")
async def preview_archive(settings: SettingsDep, service: ArchiveServiceDep):
    """List the tasks the next sweep would archive, without changing them"""
    cutoff = archive_cutoff(settings.archive_after_days)
    tasks = await service.find_archivable(cutoff)
    return {
        "archivable_count": len(tasks),
        "archivable_tasks": tasks,
        "cutoff_date": cutoff.isoformat(),
        "message": f"Found {len(tasks)} tasks that can be archived",
    }


@router.post("/archive-tasks")
async def trigger_archive(settings: SettingsDep, service: ArchiveServiceDep):
    """Run the archival sweep now"""
    cutoff = archive_cutoff(settings.archive_after_days)
    count, tasks = await service.archive(cutoff)
    return {
        "success": True,
        "archived_count": count,
        "archived_tasks": tasks,
        "executed_at": datetime.now(timezone.utc).isoformat(),
        "cutoff_date": cutoff.isoformat(),
        "message": f"Successfully archived {count} tasks older than {settings.archive_after_days} days",
    }


@router.get("/logs")
async def read_logs(
    buffer: LogBufferDep,
    level: Optional[str] = Query(default=None, pattern="^(DEBUG|INFO|WARN|ERROR)$"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    start_time: Optional[datetime] = Query(default=None, alias="startTime"),
    end_time: Optional[datetime] = Query(default=None, alias="endTime"),
    limit: int = Query(default=100, ge=1, le=1000),
):
    logs = buffer.query(
        level=level,
        user_id=user_id,
        start=_aware(start_time),
        end=_aware(end_time),
        limit=limit,
    )
    stats = buffer.stats()
    stats["filtered"] = len(logs)
    return {
        "success": True,
        "data": {"logs": [entry.to_dict() for entry in logs], "stats": stats},
    }


@router.delete("/logs")
async def clear_logs(buffer: LogBufferDep):
    buffer.clear()
    events.info("All logs cleared by admin")
    return {"success": True, "message": "All logs cleared successfully"}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
