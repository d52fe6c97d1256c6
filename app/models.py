from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo on some drivers; they are always UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(SQLModel, table=True):
    # AUTOINCREMENT keeps SQLite from handing out the id of a reaped row again
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(index=True)
    user_id: str
    kind: str = "publish"  # publish|generate
    status: JobStatus = JobStatus.PENDING
    progress: str = "Job created"
    percentage: Optional[int] = None
    result: Optional[str] = None  # JSON text, only once Completed
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Assignment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    introduction: Optional[str] = None
    published: bool = False
    updated_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id", index=True)
    position: int = 0
    question: str
    type: str = "TEXT"
    total_points: int = 1
    choices: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    scoring: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)
