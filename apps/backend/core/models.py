"""
Domain records shared by the store, the managers and the API layer.
"""
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class JobType(str, Enum):
    FULL_TIME = "FULL_TIME"
    PART_TIME = "PART_TIME"
    CONTRACT = "CONTRACT"
    INTERNSHIP = "INTERNSHIP"
    FREELANCE = "FREELANCE"
    TEMPORARY = "TEMPORARY"


class ValidityStatus(str, Enum):
    VALID = "VALID"
    NOT_FOUND = "NOT_FOUND"
    INVALID_URL = "INVALID_URL"
    EXPIRED = "EXPIRED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TASK_STATUSES = (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class JobSource:
    name: str
    id: str = field(default_factory=new_id)
    is_active: bool = True
    base_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class JobPosting:
    title: str
    company_name: str
    location: str
    description: str = ""
    id: str = field(default_factory=new_id)
    type: JobType = JobType.FULL_TIME
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    requirements: List[str] = field(default_factory=list)
    skills: List[str] = field(default_factory=list)
    experience: Optional[str] = None
    is_remote: bool = False
    is_active: bool = True
    is_scraped: bool = False
    source_id: Optional[str] = None
    apply_url: Optional[str] = None
    external_id: Optional[str] = None
    fingerprint: Optional[str] = None
    validity_status: ValidityStatus = ValidityStatus.VALID
    last_validated: Optional[datetime] = None
    last_scraped: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    application_deadline: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    views: int = 0
    applications_count: int = 0


@dataclass
class QueueTask:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("scheduled_for", "created_at", "updated_at"):
            data[key] = data[key].isoformat() if data[key] else None
        return data


@dataclass
class RateLimitRecord:
    identity: str
    category: str
    count: int
    window_start: datetime


@dataclass
class ScrapeRunLog:
    query: Dict[str, Any]
    id: str = field(default_factory=new_id)
    status: str = "running"
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    jobs_found: int = 0
    jobs_created: int = 0
    jobs_updated: int = 0
    jobs_skipped: int = 0
    sources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data
