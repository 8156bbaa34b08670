from __future__ import annotations

import argparse
import importlib
import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional

import uvicorn

from agent.config import load_settings
from agent.main import app
from agent.services.artifacts import ArtifactStore
from agent.services.client import Client, set_client
from agent.services.signals import install_signal_handlers

LOGGER = logging.getLogger("scene.agent.cli")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_callable(spec: str) -> Callable[..., Any]:
    """Resolve ``package.module:attribute`` to a callable."""
    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected module:callable, got {spec!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{spec} is not callable")
    return target


def install_exception_hooks(client: Client) -> None:
    """Report exceptions escaping worker threads (e.g. run drivers) to the client."""
    previous = threading.excepthook

    def _hook(args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit or args.exc_value is None:
            previous(args)
            return
        client.report_uncaught_exception(args.exc_value)

    threading.excepthook = _hook


def start_status_server(port: int, host: str = "127.0.0.1") -> threading.Thread:
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, daemon=True, name="scene-agent-status")
    thread.start()
    LOGGER.info("Serving agent status on http://%s:%s/api/status", host, port)
    return thread


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Poll a test coordinator for jobs and run them.")
    p.add_argument("--config", type=Path, help="JSON file with agent settings.")
    p.add_argument("--server-url", dest="server_url", help="Coordinator base URL.")
    p.add_argument("--location", help="Location name used for polling and result submission.")
    p.add_argument("--name", help="Agent name sent as pc=.")
    p.add_argument("--device-serial", dest="device_serial", help="Device id sent as pc= when no name is set.")
    p.add_argument("--api-key", dest="api_key")
    p.add_argument("--job-timeout", dest="job_timeout_seconds", type=float, help="Seconds until a run is aborted.")
    p.add_argument("--results-dir", dest="results_dir", type=Path, help="Where debug copies of results go.")
    p.add_argument("--driver", help="module:callable invoked with the JobRun when a run starts.")
    p.add_argument("--ready-check", dest="ready_check", help="module:callable checked before each poll.")
    p.add_argument("--abort-handler", dest="abort_handler", help="module:callable invoked with the JobRun to abort it.")
    p.add_argument("--once", action="store_true", help="Request a single job, then exit.")
    p.add_argument("--status-port", dest="status_port", type=int, help="Serve /api/status on this port.")
    p.add_argument(
        "--log-level",
        dest="log_level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    settings = load_settings(
        args.config,
        overrides={
            "server_url": args.server_url,
            "location": args.location,
            "name": args.name,
            "device_serial": args.device_serial,
            "api_key": args.api_key,
            "job_timeout_seconds": args.job_timeout_seconds,
            "results_dir": args.results_dir,
        },
    )

    client = Client(settings, artifacts=ArtifactStore(settings.results_dir))
    if args.driver:
        client.on_start_job_run = load_callable(args.driver)
    else:
        LOGGER.warning("No --driver given; every job will be aborted")
    if args.ready_check:
        client.on_is_ready = load_callable(args.ready_check)
    if args.abort_handler:
        client.on_abort_job = load_callable(args.abort_handler)
    set_client(client)

    install_signal_handlers(client.deliver_signal)
    install_exception_hooks(client)
    if args.status_port:
        start_status_server(args.status_port)

    client.run(forever=not args.once)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
