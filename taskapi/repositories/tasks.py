"""Data access for the tasks table.

:class:`TaskRepository` is the row-level authorization boundary: it is bound
to one owner and every statement it issues filters on ``owner_id``, so a
lookup of another owner's task is indistinguishable from a missing one.

:class:`ArchiveRepository` is the single unscoped path. It is only built by
the archival sweep on the privileged session.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskapi.models import Task, TaskStatus, get_utc_now

IMMUTABLE_FIELDS = {"id", "owner_id", "created_at", "updated_at"}


class TaskRepository:
    def __init__(self, db: AsyncSession, owner_id: str):
        self.db = db
        self.owner_id = owner_id

    def _scoped(self):
        return select(Task).where(Task.owner_id == self.owner_id)

    async def list_all(self) -> list[Task]:
        result = await self.db.exec(self._scoped().order_by(Task.created_at.desc()))
        return list(result.all())

    async def get(self, task_id: uuid.UUID) -> Optional[Task]:
        result = await self.db.exec(self._scoped().where(Task.id == task_id))
        return result.first()

    async def add(self, data: dict[str, Any]) -> Task:
        now = get_utc_now()
        values = {k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS}
        task = Task(**values, owner_id=self.owner_id, created_at=now, updated_at=now)
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        return task

    async def update(self, task_id: uuid.UUID, changes: dict[str, Any]) -> Optional[Task]:
        task = await self.get(task_id)
        if not task:
            return None
        task.sqlmodel_update({k: v for k, v in changes.items() if k not in IMMUTABLE_FIELDS})
        task.updated_at = get_utc_now()
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        return task

    async def delete(self, task_id: uuid.UUID) -> bool:
        task = await self.get(task_id)
        if not task:
            return False
        await self.db.delete(task)
        await self.db.commit()
        return True


class ArchiveRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _archivable(self, cutoff: datetime):
        return select(Task).where(
            Task.status == TaskStatus.DONE, Task.updated_at < cutoff
        )

    async def find_archivable(self, cutoff: datetime) -> list[Task]:
        result = await self.db.exec(self._archivable(cutoff).order_by(Task.updated_at))
        return list(result.all())

    async def archive(self, cutoff: datetime) -> list[Task]:
        """Move every matching task to ``archived`` in one transaction."""
        result = await self.db.exec(self._archivable(cutoff).with_for_update())
        tasks = list(result.all())
        if not tasks:
            return []

        now = get_utc_now()
        for task in tasks:
            task.status = TaskStatus.ARCHIVED
            task.updated_at = now
            self.db.add(task)
        await self.db.commit()
        return tasks
