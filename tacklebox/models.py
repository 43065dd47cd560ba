from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from pydantic import BaseModel

from tacklebox.errors import InvalidStateTransitionError, ValidationError


# -----------------------------
# Enums / state machine
# -----------------------------

class JobType(str, Enum):
    FISH_TALES = "FishTales"
    SHOP_REEL = "ShopReel"
    SITE_SCOUT = "SiteScout"

    @classmethod
    def parse(cls, raw: str) -> "JobType":
        """Accepts "ShopReel", "shop-reel", "shop_reel" or "SHOP_REEL"."""
        key = (raw or "").replace("-", "").replace("_", "").strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValidationError(f"Unknown job type: {raw!r}")


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.PENDING, JobStatus.RUNNING),
    # cancelled before it was ever scheduled
    (JobStatus.PENDING, JobStatus.CANCELLED),
    (JobStatus.RUNNING, JobStatus.COMPLETED),
    (JobStatus.RUNNING, JobStatus.FAILED),
    (JobStatus.RUNNING, JobStatus.CANCELLED),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return (current, target) in _TRANSITIONS


def allowed_sources(target: JobStatus) -> List[JobStatus]:
    return [src for (src, dst) in _TRANSITIONS if dst == target]


def check_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransitionError(job_id, current.value, target.value)


# -----------------------------
# Data models
# -----------------------------

@dataclass(frozen=True)
class ResultFile:
    name: str
    path: str
    media_type: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultFile":
        return cls(
            name=data["name"],
            path=data["path"],
            media_type=data["media_type"],
            size=int(data["size"]),
        )


@dataclass
class Job:
    id: str
    type: JobType
    status: JobStatus
    created_at: float
    updated_at: float
    params: Dict[str, Any] = field(default_factory=dict)
    result_files: List[ResultFile] = field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def new(cls, job_type: JobType, params: Dict[str, Any]) -> "Job":
        now = time.time()
        return cls(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            params=dict(params),
        )


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    sequence: int
    message: str
    timestamp: float
    status: Optional[JobStatus] = None
    final: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "sequence": self.sequence,
            "message": self.message,
            "timestamp": self.timestamp,
            "status": self.status.value if self.status else None,
            "final": self.final,
        }


# -----------------------------
# API response models
# -----------------------------

class JobSubmitResponse(BaseModel):
    job_id: str
    status: JobStatus


class ResultFileResponse(BaseModel):
    name: str
    media_type: str
    size: int
    url: str


class JobStatusResponse(BaseModel):
    job_id: str
    type: JobType
    status: JobStatus
    created_at: float
    updated_at: float
    message: Optional[str] = None
    error: Optional[str] = None
    files: List[ResultFileResponse]

    @classmethod
    def from_job(cls, job: Job, files: List[ResultFileResponse]) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            type=job.type,
            status=job.status,
            created_at=job.created_at,
            updated_at=job.updated_at,
            message=job.message,
            error=job.error,
            files=files,
        )


class JobCancelResponse(BaseModel):
    job_id: str
    status: JobStatus
    cancelled: bool
