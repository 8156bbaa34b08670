from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from agent.constants import JOB_TEST_ID, MAX_RUNS


class ResultType(str, Enum):
    image = "image"
    image_annotations = "image_annotations"
    pcap = "pcap"


class ClientState(str, Enum):
    idle = "idle"
    polling = "polling"
    running_job = "running_job"
    submitting = "submitting"
    stopped = "stopped"


class ClientEventKind(str, Enum):
    poll = "poll"
    run_finished = "run_finished"
    timeout = "timeout"
    signal = "signal"
    uncaught = "uncaught"
    stop = "stop"


def _json_flag(value: Any, field_name: str) -> bool:
    # JSON true/false are not accepted, only the numbers 0 and 1.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid task field {field_name!r}: {value!r}")
    if value == 0 or value == 1:
        return bool(value)
    raise ValueError(f"Invalid task field {field_name!r}: {value!r}")


class TaskDescriptor(BaseModel):
    """Job descriptor as returned by the coordinator's work endpoint.

    Unknown fields are kept so the run driver sees the full task.
    """

    test_id: str = Field(..., alias=JOB_TEST_ID)
    runs: int
    fvonly: bool = False
    replay: bool = False

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("test_id", mode="before")
    @classmethod
    def validate_test_id(cls, value: Any) -> str:
        if not isinstance(value, str) or not value:
            raise ValueError("Task has invalid/missing id")
        return value

    @field_validator("runs", mode="before")
    @classmethod
    def validate_runs(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("Task has invalid/missing number of runs")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("Task has invalid/missing number of runs")
        if value <= 0 or value > MAX_RUNS:
            raise ValueError("Task has invalid/missing number of runs")
        return int(value)

    @field_validator("fvonly", "replay", mode="before")
    @classmethod
    def validate_flag(cls, value: Any, info: ValidationInfo) -> bool:
        return _json_flag(value, info.field_name)


class JobSnapshot(BaseModel):
    id: str
    runs: int
    run_number: int
    is_first_view_only: bool
    is_replay: bool
    is_cache_warm: bool
    browser: Optional[str] = None
    error: Optional[str] = None
    event_name: Optional[str] = None
    pending_result_files: List[str] = Field(default_factory=list)
    pending_zip_files: List[str] = Field(default_factory=list)


class ClientSnapshot(BaseModel):
    state: ClientState
    location: str
    server_url: str
    agent_name: Optional[str] = None
    severity: Optional[str] = None
    current_job: Optional[JobSnapshot] = None
    handling_uncaught_exception: Optional[str] = None
    jobs_completed: int = 0
    last_poll_at: Optional[str] = None
