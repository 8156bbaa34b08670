from __future__ import annotations

import os.path

import pytest

from agent.cli import build_parser, load_callable


@pytest.mark.unit
def test_load_callable_resolves_dotted_attribute() -> None:
    assert load_callable("os.path:join") is os.path.join
    assert load_callable("agent.cli:build_parser") is build_parser


@pytest.mark.unit
@pytest.mark.parametrize("spec", ["os.path.join", ":join", "os.path:", "agent.constants:SIGTERM"])
def test_load_callable_rejects_bad_specs(spec: str) -> None:
    with pytest.raises(ValueError):
        load_callable(spec)


@pytest.mark.unit
def test_parser_leaves_unset_options_empty() -> None:
    args = build_parser().parse_args(["--location", "Lab", "--once", "--job-timeout", "120"])
    assert args.location == "Lab"
    assert args.once
    assert args.job_timeout_seconds == 120.0
    assert args.server_url is None
    assert args.log_level == "INFO"
