import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from taskapi.cache.decorators import async_cached, async_cached_expire
from taskapi.cache.layer import CacheLayer
from taskapi.core.errors import NotFound, PersistenceError
from taskapi.core.logging import events
from taskapi.models import Task, TaskCreate, TaskRead, TaskUpdate
from taskapi.repositories.tasks import TaskRepository

DB_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

FAILURE_MESSAGES = {
    "SELECT": "Failed to fetch tasks",
    "INSERT": "Failed to create task",
    "UPDATE": "Failed to update task",
    "DELETE": "Failed to delete task",
}


def parse_task_id(task_id: str) -> uuid.UUID:
    """Ids that are not UUIDs cannot exist, so they are reported as not found."""
    try:
        return uuid.UUID(str(task_id))
    except ValueError:
        raise NotFound()


def to_payload(task: Task) -> dict:
    return TaskRead.model_validate(task).model_dump(mode="json")


class TaskService:
    """
    Owner-scoped task operations for one resolved identity.

    Reads are read-through cached; writes invalidate every cache entry of the
    owner after the database commit.
    """

    def __init__(self, db: AsyncSession, cache: CacheLayer, owner_id: str):
        self.db = db
        self.cache = cache
        self.owner_id = owner_id
        self.repo = TaskRepository(db, owner_id)

    @asynccontextmanager
    async def _db_operation(self, operation: str):
        started = time.perf_counter()
        try:
            yield
        except DB_ERRORS as e:
            await self.db.rollback()
            events.db_error(operation, "tasks", repr(e), self.owner_id)
            raise PersistenceError(FAILURE_MESSAGES[operation], operation, "tasks", e) from e
        duration_ms = int((time.perf_counter() - started) * 1000)
        events.db_query(operation, "tasks", self.owner_id, duration_ms)

    @async_cached(lambda self: CacheLayer.user_tasks_key(self.owner_id))
    async def list_tasks(self) -> list[dict]:
        async with self._db_operation("SELECT"):
            tasks = await self.repo.list_all()
        events.info("Tasks fetched successfully", {"count": len(tasks)}, user_id=self.owner_id)
        return [to_payload(task) for task in tasks]

    @async_cached(lambda self, task_id: CacheLayer.user_task_key(self.owner_id, task_id))
    async def get_task(self, task_id: uuid.UUID) -> dict:
        async with self._db_operation("SELECT"):
            task = await self.repo.get(task_id)
        if task is None:
            raise NotFound()
        return to_payload(task)

    @async_cached_expire("task_created")
    async def create_task(self, data: TaskCreate) -> dict:
        async with self._db_operation("INSERT"):
            task = await self.repo.add(data.model_dump())
        events.info(
            "Task created successfully",
            {"taskId": str(task.id), "title": task.title},
            user_id=self.owner_id,
        )
        return to_payload(task)

    @async_cached_expire("task_updated")
    async def update_task(self, task_id: uuid.UUID, data: TaskUpdate) -> dict:
        async with self._db_operation("UPDATE"):
            task = await self.repo.update(task_id, data.model_dump(exclude_unset=True))
        if task is None:
            raise NotFound()
        events.info("Task updated successfully", {"taskId": str(task.id)}, user_id=self.owner_id)
        return to_payload(task)

    @async_cached_expire("task_deleted")
    async def delete_task(self, task_id: uuid.UUID) -> None:
        async with self._db_operation("DELETE"):
            deleted = await self.repo.delete(task_id)
        if not deleted:
            raise NotFound()
        events.info("Task deleted successfully", {"taskId": str(task_id)}, user_id=self.owner_id)

