from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, List, Optional

from agent.constants import SIGABRT, SIGINT, SIGNAL_NAMES, SIGQUIT, SIGTERM

LOGGER = logging.getLogger("scene.agent.signals")


class Severity(IntEnum):
    """Shutdown intent, least to most severe."""

    quit_after_job = 1  # SIGQUIT (kill -3)
    abort_after_run = 2  # SIGABRT (kill -6)
    abort_run_now = 3  # SIGTERM (kill [-15])
    kill_on_int = 4  # SIGINT (kill -2, ^C)

    @classmethod
    def from_signal(cls, signal_name: str) -> "Severity":
        try:
            return _SEVERITY_BY_SIGNAL[signal_name]
        except KeyError as exc:
            raise ValueError(f"Unsupported signal: {signal_name}") from exc

    @property
    def signal_name(self) -> str:
        return SIGNAL_NAMES[self.value - 1]

    @property
    def destroys_run(self) -> bool:
        return self >= Severity.abort_run_now

    @property
    def drain_policy(self) -> str:
        return _DRAIN_POLICY[self]


_SEVERITY_BY_SIGNAL: Dict[str, Severity] = {
    SIGQUIT: Severity.quit_after_job,
    SIGABRT: Severity.abort_after_run,
    SIGTERM: Severity.abort_run_now,
    SIGINT: Severity.kill_on_int,
}

_DRAIN_POLICY: Dict[Severity, str] = {
    Severity.quit_after_job: "job finishes",
    Severity.abort_after_run: "run finishes",
    Severity.abort_run_now: "run aborts",
    Severity.kill_on_int: "run is killed",
}


def escalate(current: Optional[Severity], signal_name: str) -> Severity:
    """Return max(current, severity of ``signal_name``)."""
    incoming = Severity.from_signal(signal_name)
    if current is None:
        return incoming
    return max(current, incoming)


@dataclass(frozen=True)
class SignalDecision:
    signal_name: str
    previous: Optional[Severity]
    severity: Severity
    exit_now: bool
    defer_exit: bool
    abort_run: bool

    @property
    def error(self) -> str:
        return self.severity.signal_name


class SignalCoordinator:
    """Track the highest signal seen and translate each delivery into actions."""

    def __init__(self) -> None:
        self._severity: Optional[Severity] = None
        self._lock = threading.Lock()

    @property
    def severity(self) -> Optional[Severity]:
        return self._severity

    @property
    def signal_name(self) -> Optional[str]:
        return self._severity.signal_name if self._severity is not None else None

    @property
    def destroys_run(self) -> bool:
        return self._severity is not None and self._severity.destroys_run

    def should_abort_job(self, is_run_finished: bool) -> bool:
        """Whether a run that just ended must also end its job."""
        if self._severity is None:
            return False
        if self._severity.destroys_run:
            return True
        return self._severity is Severity.abort_after_run and is_run_finished

    def decide(self, signal_name: str, between_polls: bool) -> SignalDecision:
        with self._lock:
            previous = self._severity
            current = escalate(previous, signal_name)
            self._severity = current
        if between_polls:
            return SignalDecision(signal_name, previous, current, True, False, False)
        abort_run = current.destroys_run and not (previous is not None and previous.destroys_run)
        return SignalDecision(
            signal_name,
            previous,
            current,
            exit_now=False,
            defer_exit=previous is None,
            abort_run=abort_run,
        )


def install_signal_handlers(callback: Callable[[str], None]) -> List[str]:
    """Route the shutdown signals to ``callback(signal_name)``.

    Must run on the main thread. Signals the platform lacks are skipped.
    """
    installed: List[str] = []
    for name in SIGNAL_NAMES:
        signum = getattr(signal, name, None)
        if signum is None:
            continue

        def _handler(received: int, frame, _name: str = name) -> None:
            callback(_name)

        try:
            signal.signal(signum, _handler)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unable to install handler for %s: %s", name, exc)
            continue
        installed.append(name)
    LOGGER.debug("Installed signal handlers: %s", ", ".join(installed))
    return installed
