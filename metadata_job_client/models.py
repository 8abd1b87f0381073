from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    pending = "Pending"
    in_progress = "InProgress"
    succeeded = "Succeeded"
    failed = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.succeeded, JobState.failed)


class RunState(str, Enum):
    not_started = "NotStarted"
    polling = "Polling"
    stopped = "Stopped"


class ConcurrencyMode(str, Enum):
    concurrent = "concurrent"
    synchronous = "synchronous"


class WorkerFailurePolicy(str, Enum):
    surface = "surface"
    abort = "abort"


class StatusSnapshot(BaseModel):
    """One immutable read of a job's server-side status"""

    model_config = ConfigDict(frozen=True)

    done: bool
    state: JobState
    payload: Optional[Union[str, Dict[str, Any]]] = None
    raw_response: Dict[str, Any] = Field(default_factory=dict)
    elapsed_time: float = 0.0
    transport_error: Optional[str] = None

    @classmethod
    def from_response(
        cls, data: Dict[str, Any], elapsed_time: float
    ) -> "StatusSnapshot":
        return cls(
            done=data["done"],
            state=JobState(data["state"]),
            payload=data.get("payload"),
            raw_response=data,
            elapsed_time=elapsed_time,
        )

    @classmethod
    def transport_failure(cls, error: Exception) -> "StatusSnapshot":
        return cls(done=True, state=JobState.failed, transport_error=str(error))


class StatusPollingConfig(BaseModel):
    initial_delay: float = Field(default=1.0, gt=0)
    backoff_factor: float = Field(default=2.0, gt=1)
    max_delay: Optional[float] = Field(default=32.0, gt=0)  # None disables the cap
    max_poll_retries: int = Field(default=3, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    concurrency: ConcurrencyMode = ConcurrencyMode.concurrent
    failure_policy: WorkerFailurePolicy = WorkerFailurePolicy.surface
