from fastapi import APIRouter, Depends, Request, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskapi.api.deps import CurrentIdentity, enforce_rate_limit, get_cache, parse_body
from taskapi.cache.layer import CacheLayer
from taskapi.database import get_db
from taskapi.models import TaskCreate, TaskUpdate
from taskapi.services.task_service import TaskService, parse_task_id

# auth -> rate limit run as router dependencies, before any handler work
router = APIRouter(
    prefix="/api/tasks",
    tags=["tasks"],
    dependencies=[Depends(enforce_rate_limit)],
)


def get_task_service(
    identity: CurrentIdentity,
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[CacheLayer, Depends(get_cache)],
) -> TaskService:
    return TaskService(db, cache, identity.id)


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]


def cache_status(response: Response, hit: bool) -> None:
    response.headers["X-Cache"] = "HIT" if hit else "MISS"


@router.get("")
async def list_tasks(response: Response, service: TaskServiceDep):
    """List the caller's tasks, newest first"""
    result = await service.list_tasks()
    cache_status(response, result.hit)
    return {"data": result.value, "cached": result.hit}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(request: Request, service: TaskServiceDep):
    """Create a new task owned by the caller"""
    data = await parse_body(request, TaskCreate)
    task = await service.create_task(data)
    return {"data": task}


@router.get("/{task_id}")
async def get_task(task_id: str, response: Response, service: TaskServiceDep):
    """Get a specific task by ID"""
    result = await service.get_task(parse_task_id(task_id))
    cache_status(response, result.hit)
    return {"data": result.value, "cached": result.hit}


@router.put("/{task_id}")
async def update_task(task_id: str, request: Request, service: TaskServiceDep):
    data = await parse_body(request, TaskUpdate)
    task = await service.update_task(parse_task_id(task_id), data)
    return {"data": task}


@router.delete("/{task_id}")
async def delete_task(task_id: str, service: TaskServiceDep):
    """Delete a task"""
    await service.delete_task(parse_task_id(task_id))
    return {"message": "Task deleted successfully"}
