from __future__ import annotations

import io
import logging
import zipfile
from typing import Callable, List, Mapping, Optional, Tuple

from agent.constants import (
    RESULT_IMAGE_SERVLET,
    RESULTS_ZIP_CONTENT_TYPE,
    RESULTS_ZIP_NAME,
    WORK_DONE_SERVLET,
)
from agent.schemas import ResultType
from agent.services.artifacts import ArtifactStore
from agent.services.job import Content, Job, ResultFile
from agent.services.transport import CoordinatorTransport

LOGGER = logging.getLogger("scene.agent.submitter")

# Rendered data, uploaded without run/cache metadata.
IMAGE_SERVLET_TYPES = {ResultType.image.value, ResultType.pcap.value}


def create_file_name(job: Job, file_name: str) -> str:
    """Prefix ``file_name`` with the run number and cache state of ``job``."""
    prefix = str(job.run_number) + ("_Cached" if job.is_cache_warm else "")
    separator = "" if file_name.startswith(".") else "_"
    return prefix + separator + file_name


def create_zip(files: Mapping[str, Content], namer: Callable[[str], str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            entry_name = namer(name)
            LOGGER.debug("Adding %s (%d bytes) to results zip", entry_name, len(content))
            archive.writestr(entry_name, content)
    return buffer.getvalue()


def _role(result_file: ResultFile) -> Optional[str]:
    value = result_file.result_type
    if value is None or value == "":
        return None
    return value.value if isinstance(value, ResultType) else str(value)


class ResultSubmitter:
    """Upload one run's results to the coordinator, strictly in order."""

    def __init__(
        self,
        transport: CoordinatorTransport,
        *,
        location: str,
        api_key: Optional[str] = None,
        agent_id: Optional[str] = None,
        artifacts: Optional[ArtifactStore] = None,
    ) -> None:
        self._transport = transport
        self._location = location
        self._api_key = api_key
        self._agent_id = agent_id
        self._artifacts = artifacts

    def _identity_fields(self, job: Job) -> List[Tuple[str, str]]:
        fields = [("id", job.id), ("location", self._location)]
        if self._api_key:
            fields.append(("key", self._api_key))
        if self._agent_id:
            fields.append(("pc", self._agent_id))
        return fields

    def collect_files(self, job: Job) -> List[ResultFile]:
        """Take the job's pending output, bundling zip candidates last."""
        files = list(job.result_files)
        job.result_files = []
        zip_files = job.zip_result_files
        job.zip_result_files = {}
        if zip_files:
            files.append(
                ResultFile(
                    None,
                    RESULTS_ZIP_NAME,
                    RESULTS_ZIP_CONTENT_TYPE,
                    create_zip(zip_files, lambda name: create_file_name(job, name)),
                )
            )
        return files

    def post_result_file(
        self,
        job: Job,
        result_file: Optional[ResultFile],
        fields: Optional[List[Tuple[str, str]]] = None,
    ) -> str:
        """Send one part of the result, with an optional file."""
        servlet = WORK_DONE_SERVLET
        parts = self._identity_fields(job)
        file_part = None
        if result_file is not None:
            role = _role(result_file)
            if role in IMAGE_SERVLET_TYPES:
                servlet = RESULT_IMAGE_SERVLET
            else:
                parts.extend(fields or [])
                if role:
                    parts.append((role, "1"))
                parts.append(("_runNumber", str(job.run_number)))
                parts.append(("_cacheWarmed", "1" if job.is_cache_warm else "0"))
            file_name = create_file_name(job, result_file.file_name)
            file_part = ("file", file_name, result_file.content_type, result_file.content)
            self._keep_local_copy(job, file_name, result_file.content)
        else:
            parts.extend(fields or [])
        LOGGER.debug(
            "postResultFile: job=%s servlet=%s file=%s fields=%s",
            job.id,
            servlet,
            file_part[1] if file_part else None,
            [name for name, _value in parts],
        )
        return self._transport.post_multipart(servlet, parts, file_part)

    def _keep_local_copy(self, job: Job, file_name: str, content: Content) -> None:
        if self._artifacts is None or not LOGGER.isEnabledFor(logging.DEBUG):
            return
        try:
            path = self._artifacts.write_copy(job.id, file_name, content)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unable to keep a local copy of %s: %s", file_name, exc)
            return
        LOGGER.debug("Wrote a local copy of %s to %s", file_name, self._artifacts.relative(path))

    def submit(self, job: Job, is_job_finished: bool) -> int:
        """Upload all pending files, then the job/run metadata.

        Returns the number of requests issued. A ``TransportError`` stops the
        submission; files already sent are not retried.
        """
        LOGGER.debug("submitResult: job=%s run=%s finished=%s", job.id, job.run_number, is_job_finished)
        files = self.collect_files(job)
        requests_sent = 0
        error_reported = False
        for result_file in files:
            fields: List[Tuple[str, str]] = []
            if job.error and not error_reported and _role(result_file) not in IMAGE_SERVLET_TYPES:
                fields.append(("error", str(job.error)))
                error_reported = True
            self.post_result_file(job, result_file, fields)
            requests_sent += 1

        fields = []
        if is_job_finished:
            fields.append(("done", "1"))
        if job.error:
            fields.append(("testerror", str(job.error)))
        if fields:
            self.post_result_file(job, None, fields)
            requests_sent += 1
        LOGGER.info("Submitted %d request(s) for job %s run %s", requests_sent, job.id, job.run_number)
        return requests_sent
