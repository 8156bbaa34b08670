from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

from agent.constants import (
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    JOB_FINISH_TIMEOUT_SECONDS,
    NO_JOB_PAUSE_SECONDS,
)

ENV_PREFIX = "SCENE_AGENT_"
ENV_FIELDS = {
    "server_url": "SERVER_URL",
    "location": "LOCATION",
    "name": "NAME",
    "device_serial": "DEVICE_SERIAL",
    "api_key": "API_KEY",
    "job_timeout_seconds": "JOB_TIMEOUT",
    "results_dir": "RESULTS_DIR",
}


def normalize_server_url(value: str) -> str:
    """Return the coordinator base URL with a scheme and a path ending in ``/``."""
    raw = (value or "").strip()
    if "://" not in raw:
        raw = "http://" + raw
    try:
        parts = urlsplit(raw)
        # Accessing .port validates the port component.
        parts.port
    except ValueError as exc:
        raise ValueError(f"Invalid server_url: {value!r}") from exc
    if not parts.hostname:
        raise ValueError(f"Invalid server_url: {value!r}")
    path = parts.path or "/"
    if not path.endswith("/"):
        path += "/"
    return f"{parts.scheme}://{parts.netloc}{path}"


class AgentSettings(BaseModel):
    server_url: str
    location: str = Field(..., min_length=1)
    name: Optional[str] = None
    device_serial: Optional[str] = None
    api_key: Optional[str] = None
    job_timeout_seconds: float = Field(default=DEFAULT_JOB_TIMEOUT_SECONDS, gt=0)
    job_finish_grace_seconds: float = Field(default=JOB_FINISH_TIMEOUT_SECONDS, ge=0)
    no_job_pause_seconds: float = Field(default=NO_JOB_PAUSE_SECONDS, ge=0)
    request_timeout_seconds: float = Field(default=DEFAULT_REQUEST_TIMEOUT_SECONDS, gt=0)
    results_dir: Path = Path("results")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, value: str) -> str:
        return normalize_server_url(value)

    @field_validator("name", "device_serial", "api_key", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def agent_id(self) -> Optional[str]:
        """Value sent as ``pc``: the agent name wins over the device serial."""
        return self.name or self.device_serial

    @property
    def run_deadline_seconds(self) -> float:
        return self.job_timeout_seconds + self.job_finish_grace_seconds


def _read_config_file(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return payload


def _read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field_name, suffix in ENV_FIELDS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None and value != "":
            values[field_name] = value
    return values


def load_settings(
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AgentSettings:
    """Merge defaults, config file, environment and explicit overrides.

    Later sources win. ``None`` override values are ignored so unset CLI
    options do not mask the other sources.
    """
    merged: Dict[str, Any] = {}
    if config_path is not None:
        merged.update(_read_config_file(config_path))
    merged.update(_read_environment(os.environ if environ is None else environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    return AgentSettings(**merged)
