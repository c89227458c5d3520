from enum import Enum
from typing import Any, Callable, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JobStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobRecord(BaseModel):
    """A job as the client sees it; the job store holds the authoritative copy"""

    id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[JobStatus] = None
    progress: Optional[float] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Optional[str]:
        return None if value in (None, "") else str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> Any:
        if isinstance(value, JobStatus):
            return value
        if value not in [status.value for status in JobStatus]:
            return None
        return value

    @property
    def is_finished(self) -> bool:
        return self.status == JobStatus.completed or (self.progress or 0) >= 100

    @property
    def is_active(self) -> bool:
        return not self.is_finished


def job_finished(record: Optional[JobRecord]) -> bool:
    return record is not None and record.is_finished


class PollConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    interval: float = Field(default=3.0, ge=0)
    max_interval: float = Field(default=15.0, ge=0)
    backoff_factor: float = Field(default=1.8, gt=1)
    jitter: float = Field(default=0.25, ge=0)
    timeout: float = Field(default=120.0, gt=0)
    stop_when: Optional[Callable[[Any], bool]] = None
    retryable_statuses: FrozenSet[int] = frozenset({429, 503})

    @model_validator(mode="after")
    def _check_intervals(self) -> "PollConfig":
        if self.interval > self.max_interval:
            raise ValueError("interval must not exceed max_interval")
        return self


class JobStoreConfig(BaseModel):
    request_timeout: float = 15.0
    min_request_gap: float = 0.9  # throttle to stay clear of 429s


class JobKind(BaseModel):
    """Tuning for one kind of job submission (create, import, ...)"""

    model_config = ConfigDict(frozen=True)

    name: str
    poll: PollConfig
    tick_interval: float = 0.4
    tick_step: float = 2.0
    optimistic_start: float = 0.0
    optimistic_ceiling: float = Field(default=95.0, lt=100)
    reset_delay: float = 0.8
    success_message: str
    failure_message: str


CREATE_JOB = JobKind(
    name="create",
    poll=PollConfig(interval=2.5, timeout=180.0, stop_when=job_finished),
    tick_interval=0.4,
    tick_step=2.0,
    optimistic_start=1.0,
    reset_delay=0.8,
    success_message="Created successfully!",
    failure_message="Create failed.",
)

IMPORT_JOB = JobKind(
    name="import",
    poll=PollConfig(interval=3.0, timeout=180.0, stop_when=job_finished),
    tick_interval=0.7,
    tick_step=3.0,
    optimistic_start=0.0,
    reset_delay=1.0,
    success_message="Job imported",
    failure_message="Import failed.",
)


class LifecyclePhase(str, Enum):
    idle = "idle"
    creating = "creating"
    polling = "polling"
    done = "done"
    error = "error"


class JobLifecycleState(BaseModel):
    phase: LifecyclePhase = LifecyclePhase.idle
    name: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    error: Optional[str] = None
    progress: float = 0.0
    notified_job_id: Optional[str] = None
