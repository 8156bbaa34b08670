from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from agent.constants import JOB_BROWSER, JOB_REPLAY, REPLAY_BROWSER_SUFFIX
from agent.schemas import JobSnapshot, ResultType, TaskDescriptor

_REPLAY_BROWSER = re.compile(r"(.*)" + re.escape(REPLAY_BROWSER_SUFFIX) + r"$", re.DOTALL)

Content = Union[bytes, str]


class InvalidTaskError(ValueError):
    """Raised when a job descriptor from the coordinator cannot be accepted."""


@dataclass
class ResultFile:
    """A file produced by a run, waiting to be uploaded."""

    result_type: Optional[ResultType]
    file_name: str
    content_type: str
    content: Content


def apply_legacy_shims(task: Dict[str, Any]) -> Dict[str, Any]:
    """Translate replay requests encoded in the browser name.

    Older coordinators ask for a replay-capture run by appending ``-wpr`` to
    the browser name instead of sending ``replay=1``.
    """
    browser = task.get(JOB_BROWSER)
    if isinstance(browser, str) and browser:
        match = _REPLAY_BROWSER.match(browser)
        if match:
            task[JOB_BROWSER] = match.group(1)
            task[JOB_REPLAY] = 1
    return task


def _describe_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(messages)


class Job:
    """A unit of work accepted from the coordinator, plus per-run progress.

    The run driver may update ``error``, ``is_cache_warm``, ``event_name`` and
    the result collections. Identity and run count never change after
    construction.
    """

    def __init__(
        self,
        task: Dict[str, Any],
        on_run_finished: Optional[Callable[["Job", int, bool], None]] = None,
    ) -> None:
        if not isinstance(task, dict):
            raise InvalidTaskError(f"Task must be a JSON object: {task!r}")
        try:
            descriptor = TaskDescriptor.model_validate(task)
        except ValidationError as exc:
            raise InvalidTaskError(
                f"Task rejected ({_describe_validation_error(exc)}): {task!r}"
            ) from exc
        self.task = task
        self.id: str = descriptor.test_id
        self.runs: int = descriptor.runs
        self.is_first_view_only: bool = descriptor.fvonly
        self.is_replay: bool = descriptor.replay
        self.run_number: int = 0 if self.is_replay else 1
        self.is_cache_warm = False
        self.error: Optional[str] = None
        self.event_name: Optional[str] = None
        self.result_files: List[ResultFile] = []
        self.zip_result_files: Dict[str, Content] = {}
        self.run_token: Optional[int] = None
        self._on_run_finished = on_run_finished

    @property
    def browser(self) -> Optional[str]:
        value = self.task.get(JOB_BROWSER)
        return value if isinstance(value, str) else None

    def add_result_file(self, result_file: ResultFile) -> None:
        self.result_files.append(result_file)

    def add_zip_result_file(self, file_name: str, content: Content) -> None:
        self.zip_result_files[file_name] = content

    def start_run(self, token: int) -> "JobRun":
        """Stamp the current run with ``token`` and return its handle."""
        self.run_token = token
        return JobRun(self, token)

    def run_finished(self, is_run_finished: bool = True) -> None:
        """Tell the owning client that the current run is over.

        ``is_run_finished=False`` reports a partial run, e.g. the first view
        of a run whose repeat view is still to come. Drivers that may report
        after their run was abandoned should finish through the
        :class:`JobRun` they were given instead.
        """
        if self.run_token is None:
            raise RuntimeError(f"Job {self.id} has no run in progress")
        self._report(self.run_token, is_run_finished)

    def _report(self, token: int, is_run_finished: bool) -> None:
        if self._on_run_finished is None:
            raise RuntimeError(f"Job {self.id} is not attached to a client")
        self._on_run_finished(self, token, is_run_finished)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            runs=self.runs,
            run_number=self.run_number,
            is_first_view_only=self.is_first_view_only,
            is_replay=self.is_replay,
            is_cache_warm=self.is_cache_warm,
            browser=self.browser,
            error=None if self.error is None else str(self.error),
            event_name=self.event_name,
            pending_result_files=[item.file_name for item in self.result_files],
            pending_zip_files=sorted(self.zip_result_files),
        )

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, run={self.run_number}/{self.runs}, replay={self.is_replay})"


class JobRun:
    """One run of a job, as handed to the run driver.

    The token is fixed when the run starts, so a driver that reports after
    its run was abandoned cannot end a later run of the same job.
    """

    def __init__(self, job: Job, token: int) -> None:
        self.job = job
        self.token = token
        self.run_number = job.run_number

    def run_finished(self, is_run_finished: bool = True) -> None:
        self.job._report(self.token, is_run_finished)

    def __repr__(self) -> str:
        return f"JobRun(job={self.job.id!r}, run={self.run_number}, token={self.token})"
