from __future__ import annotations

import json
import socket
import threading
from email import policy
from email.parser import BytesParser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import pytest

from agent.config import AgentSettings
from agent.constants import GET_WORK_SERVLET, RESULT_IMAGE_SERVLET, WORK_DONE_SERVLET
from agent.schemas import ResultType
from agent.services.client import Client
from agent.services.job import Job, JobRun, ResultFile


class FakeCoordinator(BaseHTTPRequestHandler):
    """Serves queued getwork bodies and records multipart uploads."""

    bodies: List[str] = []
    polls: List[Dict[str, List[str]]] = []
    uploads: List[Dict[str, object]] = []
    upload_status = 200

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return None

    def _write(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        parts = urlsplit(self.path)
        if parts.path != "/wpt/" + GET_WORK_SERVLET:
            self._write(404, "<html>not found</html>")
            return
        cls = self.__class__
        cls.polls.append(parse_qs(parts.query))
        self._write(200, cls.bodies.pop(0) if cls.bodies else "")

    def do_POST(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length)
        header = f"Content-Type: {self.headers['Content-Type']}\r\n\r\n".encode("utf-8")
        message = BytesParser(policy=policy.HTTP).parsebytes(header + raw)
        fields: Dict[str, str] = {}
        upload: Optional[Tuple[str, bytes]] = None
        for part in message.iter_parts():
            name = part.get_param("name", header="content-disposition")
            file_name = part.get_filename()
            content = part.get_payload(decode=True) or b""
            if file_name:
                upload = (file_name, content)
            else:
                fields[name] = content.decode("utf-8")
        cls = self.__class__
        cls.uploads.append({"path": urlsplit(self.path).path, "fields": fields, "file": upload})
        self._write(cls.upload_status, "")


@pytest.fixture
def coordinator():
    FakeCoordinator.bodies = []
    FakeCoordinator.polls = []
    FakeCoordinator.uploads = []
    FakeCoordinator.upload_status = 200

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = ThreadingHTTPServer(("127.0.0.1", port), FakeCoordinator)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"127.0.0.1:{port}/wpt"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def _client(server_url: str) -> Client:
    settings = AgentSettings(
        server_url=server_url,
        location="Lab",
        name="agent-7",
        api_key="secret",
        job_timeout_seconds=10,
        job_finish_grace_seconds=0,
        no_job_pause_seconds=0.01,
        request_timeout_seconds=5,
    )
    return Client(settings)


def _run(client: Client) -> None:
    worker = threading.Thread(target=client.run, kwargs={"forever": False}, daemon=True)
    worker.start()
    worker.join(timeout=20)
    assert not worker.is_alive(), "client loop did not stop"


def _driver(run: JobRun) -> None:
    job = run.job
    job.add_result_file(ResultFile(ResultType.image, "screen.png", "image/png", b"\x89PNG"))
    job.add_result_file(ResultFile(None, "status.json", "application/json", '{"ok": true}'))
    job.add_zip_result_file("trace.json", "[]")
    run.run_finished(True)


@pytest.mark.integration
def test_job_round_trip_against_http_coordinator(coordinator: str) -> None:
    FakeCoordinator.bodies = [json.dumps({"Test ID": "T42", "runs": 2, "url": "https://example.com"})]
    client = _client(coordinator)
    client.on_start_job_run = _driver
    _run(client)

    assert FakeCoordinator.polls == [{"location": ["Lab"], "pc": ["agent-7"], "key": ["secret"], "f": ["json"]}]
    uploads = FakeCoordinator.uploads
    assert [upload["path"] for upload in uploads] == [
        "/wpt/" + RESULT_IMAGE_SERVLET,
        "/wpt/" + WORK_DONE_SERVLET,
        "/wpt/" + WORK_DONE_SERVLET,
        "/wpt/" + RESULT_IMAGE_SERVLET,
        "/wpt/" + WORK_DONE_SERVLET,
        "/wpt/" + WORK_DONE_SERVLET,
        "/wpt/" + WORK_DONE_SERVLET,
    ]
    assert [upload["file"][0] if upload["file"] else None for upload in uploads] == [  # type: ignore[index]
        "1_screen.png",
        "1_status.json",
        "1_results.zip",
        "2_screen.png",
        "2_status.json",
        "2_results.zip",
        None,
    ]
    status = uploads[1]["fields"]
    assert status["id"] == "T42"  # type: ignore[index]
    assert status["_runNumber"] == "1"  # type: ignore[index]
    assert status["_cacheWarmed"] == "0"  # type: ignore[index]
    assert uploads[4]["fields"]["_runNumber"] == "2"  # type: ignore[index]
    assert uploads[1]["file"][1] == b'{"ok": true}'  # type: ignore[index]
    assert uploads[-1]["fields"] == {"id": "T42", "location": "Lab", "key": "secret", "pc": "agent-7", "done": "1"}


@pytest.mark.integration
def test_rejected_upload_ends_the_job(coordinator: str) -> None:
    FakeCoordinator.bodies = [json.dumps({"Test ID": "T43", "runs": 3})]
    FakeCoordinator.upload_status = 500
    client = _client(coordinator)
    started: List[int] = []

    def _recording_driver(run: JobRun) -> None:
        started.append(run.run_number)
        _driver(run)

    client.on_start_job_run = _recording_driver
    done: List[Job] = []
    client.add_listener("done", done.append)
    _run(client)

    assert started == [1]
    assert len(FakeCoordinator.uploads) == 1
    assert [job.id for job in done] == ["T43"]


@pytest.mark.integration
def test_job_descriptor_is_read_as_utf8(coordinator: str) -> None:
    FakeCoordinator.bodies = [json.dumps({"Test ID": "T44", "runs": 1, "label": "café ☕"}, ensure_ascii=False)]
    client = _client(coordinator)
    labels: List[str] = []

    def _label_driver(run: JobRun) -> None:
        labels.append(run.job.task["label"])
        run.run_finished(True)

    client.on_start_job_run = _label_driver
    _run(client)

    assert labels == ["café ☕"]
