import uuid
from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator
from sqlalchemy import DateTime, Enum as SAEnum
from sqlmodel import Column, Field, SQLModel

TITLE_MAX_LENGTH = 120
DESCRIPTION_MAX_LENGTH = 2000


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # some backends hand back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ARCHIVED = "archived"


class Task(SQLModel, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: str = Field(index=True, nullable=False)
    title: str = Field(max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    status: TaskStatus = Field(
        default=TaskStatus.TODO,
        sa_column=Column(
            SAEnum(
                TaskStatus,
                name="task_status",
                values_callable=lambda e: [m.value for m in e],
            ),
            nullable=False,
            index=True,
        ),
    )
    due_date: date | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class TaskCreate(BaseModel):
    """Schema for creating a task; unknown fields are rejected"""

    model_config = ConfigDict(extra="forbid")

    title: str = PydanticField(min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = PydanticField(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    status: TaskStatus = TaskStatus.TODO
    due_date: date | None = None


class TaskUpdate(BaseModel):
    """Schema for updating a task - all fields optional"""

    model_config = ConfigDict(extra="forbid")

    title: str | None = PydanticField(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = PydanticField(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    status: TaskStatus | None = None
    due_date: date | None = None

    @field_validator("title", "status")
    @classmethod
    def not_null(cls, value):
        # description and due_date may be cleared with null, these may not
        if value is None:
            raise ValueError("Field may not be null")
        return value


class TaskRead(BaseModel):
    """Schema for task responses"""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    title: str
    description: str | None = None
    status: TaskStatus
    due_date: date | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ArchivedTaskSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    owner_id: str
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)
