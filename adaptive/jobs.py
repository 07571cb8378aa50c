"""Training job records and the single-slot job register."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TrainingTrigger(Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTO = "auto"
    DEGRADATION = "degradation"


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _now_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TrainingJob:
    id: str
    trigger: TrainingTrigger
    status: JobStatus = JobStatus.PENDING
    created_at: str = field(default_factory=_now_ts)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    resulting_version: Optional[str] = None
    metrics: Optional[dict] = None
    deployed: bool = False
    samples_used: int = 0
    train_size: int = 0
    validation_size: int = 0
    test_size: int = 0
    training_time_ms: float = 0.0

    @classmethod
    def new(cls, trigger: TrainingTrigger, created_at: Optional[str] = None) -> TrainingJob:
        return cls(
            id=f"job_{uuid.uuid4().hex[:12]}",
            trigger=trigger,
            created_at=created_at or _now_ts(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def transition(self, status: JobStatus, at: Optional[str] = None) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Illegal job transition {self.status.value} -> {status.value}")
        self.status = status
        ts = at or _now_ts()
        if status is JobStatus.RUNNING:
            self.started_at = ts
        elif status in (JobStatus.COMPLETED, JobStatus.FAILED):
            self.completed_at = ts

    def fail(self, error: str, at: Optional[str] = None) -> None:
        self.error = error
        self.transition(JobStatus.FAILED, at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "resulting_version": self.resulting_version,
            "model_version": self.resulting_version,
            "metrics": self.metrics,
            "deployed": self.deployed,
            "samples_used": self.samples_used,
            "train_size": self.train_size,
            "validation_size": self.validation_size,
            "test_size": self.test_size,
            "training_time_ms": self.training_time_ms,
        }


class JobSlot:
    """Atomic single-slot register. Holds at most one running job id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._job_id: Optional[str] = None

    def try_acquire(self, job_id: str) -> bool:
        with self._lock:
            if self._job_id is not None:
                return False
            self._job_id = job_id
            return True

    def release(self, job_id: str) -> None:
        with self._lock:
            if self._job_id == job_id:
                self._job_id = None

    @property
    def current(self) -> Optional[str]:
        return self._job_id

    @property
    def busy(self) -> bool:
        return self._job_id is not None
