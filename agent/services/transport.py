from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests

from agent.constants import DEFAULT_REQUEST_TIMEOUT_SECONDS

LOGGER = logging.getLogger("scene.agent.transport")

Fields = Sequence[Tuple[str, str]]
FilePart = Tuple[str, str, str, object]  # (part name, file name, content type, content)


class TransportError(RuntimeError):
    """A request to the coordinator failed."""


class CoordinatorTransport:
    """Plain HTTP access to the coordinator's work servlets."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    def url(self, servlet: str) -> str:
        return urljoin(self._base_url, servlet)

    def get(self, servlet: str, params: Fields) -> str:
        """Return the response body, decoded as UTF-8, whatever the HTTP status.

        Error pages are recognised by the caller from their content.
        """
        url = self.url(servlet)
        try:
            response = self._session.get(url, params=list(params), timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransportError(f"GET {url} failed: {exc}") from exc
        LOGGER.debug("GET %s -> %s (%d bytes)", response.url, response.status_code, len(response.content))
        # requests falls back to ISO-8859-1 for text/* without a charset.
        return response.content.decode("utf-8", errors="replace")

    def post_multipart(
        self,
        servlet: str,
        fields: Fields,
        file_part: Optional[FilePart] = None,
    ) -> str:
        url = self.url(servlet)
        data: List[Tuple[str, str]] = list(fields)
        files = None
        if file_part is not None:
            part_name, file_name, content_type, content = file_part
            files = [(part_name, (file_name, content, content_type))]
        elif data:
            # Force multipart/form-data even when there is no file.
            files = [(name, (None, value)) for name, value in data]
            data = []
        try:
            response = self._session.post(url, data=data, files=files, timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransportError(f"POST {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(f"POST {url} returned HTTP {response.status_code}")
        LOGGER.debug("POST %s -> %s", url, response.status_code)
        return response.text
