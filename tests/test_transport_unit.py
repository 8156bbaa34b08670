from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from agent.services.transport import CoordinatorTransport, TransportError


def _response(status: int, body: bytes, content_type: str = "text/plain") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.headers["Content-Type"] = content_type
    response.url = "http://coordinator.test/work/getwork.php"
    return response


class StubSession:
    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"url": url, **kwargs})
        return self._response

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"url": url, **kwargs})
        return self._response


def _transport(session: StubSession) -> CoordinatorTransport:
    return CoordinatorTransport("http://coordinator.test/wpt/", timeout=5, session=session)  # type: ignore[arg-type]


@pytest.mark.unit
def test_poll_body_without_charset_is_decoded_as_utf8() -> None:
    session = StubSession(_response(200, '{"label": "café"}'.encode("utf-8")))
    body = _transport(session).get("work/getwork.php", [("location", "Lab")])
    assert body == '{"label": "café"}'
    assert session.calls[0]["url"] == "http://coordinator.test/wpt/work/getwork.php"
    assert session.calls[0]["params"] == [("location", "Lab")]


@pytest.mark.unit
def test_poll_error_page_is_returned_as_text() -> None:
    session = StubSession(_response(502, b"<html>Bad Gateway</html>", "text/html"))
    assert _transport(session).get("work/getwork.php", []) == "<html>Bad Gateway</html>"


@pytest.mark.unit
def test_rejected_upload_raises() -> None:
    session = StubSession(_response(500, b""))
    with pytest.raises(TransportError):
        _transport(session).post_multipart("work/workdone.php", [("id", "T1")])


@pytest.mark.unit
def test_fields_only_upload_is_sent_as_multipart() -> None:
    session = StubSession(_response(200, b""))
    _transport(session).post_multipart("work/workdone.php", [("id", "T1"), ("done", "1")])
    call = session.calls[0]
    assert call["data"] == []
    assert call["files"] == [("id", (None, "T1")), ("done", (None, "1"))]
