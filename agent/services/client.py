from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from agent.config import AgentSettings
from agent.constants import (
    GET_WORK_SERVLET,
    NO_DRIVER_ERROR,
    SHUTDOWN_RESPONSE,
    TIMEOUT_ERROR,
)
from agent.schemas import ClientEventKind, ClientSnapshot, ClientState
from agent.services.artifacts import ArtifactStore
from agent.services.job import InvalidTaskError, Job, JobRun, apply_legacy_shims
from agent.services.signals import SignalCoordinator
from agent.services.submitter import ResultSubmitter
from agent.services.transport import CoordinatorTransport, TransportError

LOGGER = logging.getLogger("scene.agent.client")


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())


@dataclass
class ClientEvent:
    kind: ClientEventKind
    job: Optional[Job] = None
    token: Optional[int] = None
    is_run_finished: bool = True
    signal_name: Optional[str] = None
    error: Optional[BaseException] = None


_ANY_STATE = [state for state in ClientState if state is not ClientState.stopped]

TRANSITIONS: Dict[Tuple[ClientState, ClientEventKind], str] = {
    (ClientState.idle, ClientEventKind.poll): "_request_next_job",
    (ClientState.running_job, ClientEventKind.timeout): "_on_timeout",
}
for _state in _ANY_STATE:
    # Stale finishes are recognised by token inside _finish_run.
    TRANSITIONS[(_state, ClientEventKind.run_finished)] = "_finish_run"
    TRANSITIONS[(_state, ClientEventKind.signal)] = "_on_signal"
    TRANSITIONS[(_state, ClientEventKind.uncaught)] = "_on_uncaught_event"
    TRANSITIONS[(_state, ClientEventKind.stop)] = "_on_stop"


class Client:
    """Poll the coordinator for jobs, drive their runs and submit results.

    All state changes happen on the thread that calls :meth:`run`, one event
    at a time. Other threads (timers, run drivers, signal handlers) only post
    events.

    Callbacks:
      ``on_start_job_run(run)``: start a run. Must call ``run.run_finished()``
      exactly once per run, even after an error. ``run.job`` is the Job.
      ``on_abort_job(run)``: abort the run. Must call ``run.run_finished()``
      when done.
      ``on_is_ready()``: raise to skip polling for the next pause.

    Listener events: ``job``, ``done``, ``nojob``, ``shutdown``.
    """

    def __init__(
        self,
        settings: AgentSettings,
        *,
        transport: Optional[CoordinatorTransport] = None,
        submitter: Optional[ResultSubmitter] = None,
        signals: Optional[SignalCoordinator] = None,
        artifacts: Optional[ArtifactStore] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport or CoordinatorTransport(
            settings.server_url,
            timeout=settings.request_timeout_seconds,
        )
        self._submitter = submitter or ResultSubmitter(
            self._transport,
            location=settings.location,
            api_key=settings.api_key,
            agent_id=settings.agent_id,
            artifacts=artifacts,
        )
        self._signals = signals or SignalCoordinator()
        # SimpleQueue.put is reentrant, so signal handlers may post while the
        # loop thread is itself posting.
        self._events: "queue.SimpleQueue[ClientEvent]" = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._state = ClientState.idle
        self._tokens = itertools.count(1)
        self._current_run: Optional[JobRun] = None
        self._timeout_timer: Optional[threading.Timer] = None
        self._no_job_timer: Optional[threading.Timer] = None
        self._handling_uncaught: Optional[BaseException] = None
        self._exit_pending = False
        self._forever = False
        self._listeners: Dict[str, List[Callable[..., None]]] = {}
        self._jobs_completed = 0
        self._last_poll_at: Optional[str] = None
        self.on_start_job_run: Optional[Callable[[JobRun], None]] = None
        self.on_abort_job: Optional[Callable[[JobRun], None]] = None
        self.on_is_ready: Optional[Callable[[], None]] = None
        LOGGER.debug(
            "Created Client (server=%s location=%s pc=%s)",
            settings.server_url,
            settings.location,
            settings.agent_id,
        )

    # Public API ----------------------------------------------------------------
    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def current_job(self) -> Optional[Job]:
        run = self._current_run
        return run.job if run is not None else None

    @property
    def signals(self) -> SignalCoordinator:
        return self._signals

    def add_listener(self, event_name: str, callback: Callable[..., None]) -> None:
        self._listeners.setdefault(event_name, []).append(callback)

    def remove_listener(self, event_name: str, callback: Callable[..., None]) -> None:
        callbacks = self._listeners.get(event_name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def run(self, forever: bool = True) -> None:
        """Process events until stopped.

        With ``forever=False`` only one job request is made and the loop ends
        after the first ``done``, ``nojob`` or ``shutdown``.
        """
        self._forever = forever
        self._exit_pending = False
        self._set_state(ClientState.idle)
        self._post(ClientEvent(ClientEventKind.poll))
        while self._state is not ClientState.stopped:
            event = self._events.get()
            self._dispatch(event)
        self._cancel_timers()
        LOGGER.info("Client stopped after %d job(s)", self._jobs_completed)

    def stop(self) -> None:
        self._post(ClientEvent(ClientEventKind.stop))

    def deliver_signal(self, signal_name: str) -> None:
        """Queue an OS signal; safe to call from a signal handler."""
        self._post(ClientEvent(ClientEventKind.signal, signal_name=signal_name))

    def report_uncaught_exception(self, error: BaseException) -> None:
        self._post(ClientEvent(ClientEventKind.uncaught, error=error))

    def snapshot(self) -> ClientSnapshot:
        job = self.current_job
        return ClientSnapshot(
            state=self._state,
            location=self._settings.location,
            server_url=self._settings.server_url,
            agent_name=self._settings.agent_id,
            severity=self._signals.signal_name,
            current_job=job.snapshot() if job is not None else None,
            handling_uncaught_exception=(
                str(self._handling_uncaught) if self._handling_uncaught is not None else None
            ),
            jobs_completed=self._jobs_completed,
            last_poll_at=self._last_poll_at,
        )

    # Event plumbing -------------------------------------------------------------
    def _post(self, event: ClientEvent) -> None:
        self._events.put(event)

    def _dispatch(self, event: ClientEvent) -> None:
        handler_name = TRANSITIONS.get((self._state, event.kind))
        if handler_name is None:
            LOGGER.debug("Ignoring %s event in state %s", event.kind.value, self._state.value)
            return
        try:
            getattr(self, handler_name)(event)
        except Exception as exc:
            self._on_uncaught_exception(exc)

    def _set_state(self, state: ClientState) -> None:
        if state is not self._state:
            LOGGER.debug("Client state %s -> %s", self._state.value, state.value)
        self._state = state

    def _emit(self, event_name: str, *args: object) -> None:
        for callback in list(self._listeners.get(event_name, [])):
            try:
                callback(*args)
            except Exception:
                LOGGER.exception("Listener for %s failed", event_name)

    def _start_timer(self, delay: float, event: ClientEvent) -> threading.Timer:
        timer = threading.Timer(delay, self._post, args=(event,))
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timeout_timer(self) -> None:
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_timeout_timer()
        if self._no_job_timer is not None:
            self._no_job_timer.cancel()
            self._no_job_timer = None

    # Polling --------------------------------------------------------------------
    def _poll_params(self) -> List[Tuple[str, str]]:
        params = [("location", self._settings.location)]
        if self._settings.agent_id:
            params.append(("pc", self._settings.agent_id))
        if self._settings.api_key:
            params.append(("key", self._settings.api_key))
        params.append(("f", "json"))
        return params

    def _request_next_job(self, event: ClientEvent) -> None:
        self._no_job_timer = None
        self._set_state(ClientState.polling)
        self._last_poll_at = _utcnow()
        if self.on_is_ready is not None:
            try:
                self.on_is_ready()
            except Exception as exc:
                LOGGER.warning("Agent is not ready: %s", exc)
                self._no_job()
                return

        LOGGER.info("Get work: %s (location=%s)", self._transport.url(GET_WORK_SERVLET), self._settings.location)
        try:
            body = self._transport.get(GET_WORK_SERVLET, self._poll_params())
        except TransportError as exc:
            LOGGER.warning("Got error: %s", exc)
            self._no_job()
            return

        if body == "":
            self._no_job()
        elif body[0] == "<":
            # Most likely an HTML error page.
            LOGGER.warning("Error response? %s", body)
            self._no_job()
        elif body == SHUTDOWN_RESPONSE:
            LOGGER.critical("Coordinator requested shutdown")
            self._emit("shutdown")
            self._shutdown()
        else:
            self._process_job_response(body)

    def _process_job_response(self, body: str) -> None:
        try:
            task = json.loads(body)
        except ValueError:
            LOGGER.warning("Ignoring job with invalid JSON: %r", body)
            self._no_job()
            return
        if isinstance(task, dict):
            apply_legacy_shims(task)
        try:
            job = Job(task, on_run_finished=self._post_run_finished)
        except InvalidTaskError as exc:
            LOGGER.error("Ignoring invalid job: %s", exc)
            self._no_job()
            return
        LOGGER.info("Got job: %s", job.snapshot().model_dump_json())
        self._emit("job", job)
        self._start_next_run(job)

    def _no_job(self) -> None:
        self._set_state(ClientState.idle)
        self._emit("nojob")
        if self._exit_pending:
            LOGGER.critical("Exiting due to %s.", self._signals.signal_name)
            self._shutdown()
        elif self._forever:
            self._no_job_timer = self._start_timer(
                self._settings.no_job_pause_seconds,
                ClientEvent(ClientEventKind.poll),
            )
        else:
            self._shutdown()

    def _on_done(self, job: Job) -> None:
        self._set_state(ClientState.idle)
        self._emit("done", job)
        if self._exit_pending:
            LOGGER.critical("Exiting due to %s.", self._signals.signal_name)
            self._shutdown()
        elif self._forever:
            self._post(ClientEvent(ClientEventKind.poll))
        else:
            self._shutdown()

    def _shutdown(self) -> None:
        self._cancel_timers()
        self._set_state(ClientState.stopped)

    def _on_stop(self, event: ClientEvent) -> None:
        LOGGER.info("Stop requested")
        self._shutdown()

    # Runs -----------------------------------------------------------------------
    def _post_run_finished(self, job: Job, token: int, is_run_finished: bool) -> None:
        self._post(
            ClientEvent(
                ClientEventKind.run_finished,
                job=job,
                token=token,
                is_run_finished=is_run_finished,
            )
        )

    def _current_token(self) -> Optional[int]:
        run = self._current_run
        return run.token if run is not None else None

    def _start_next_run(self, job: Job) -> None:
        job.error = None
        run = job.start_run(next(self._tokens))
        with self._lock:
            self._current_run = run
        self._set_state(ClientState.running_job)
        self._timeout_timer = self._start_timer(
            self._settings.run_deadline_seconds,
            ClientEvent(ClientEventKind.timeout, job=job, token=run.token),
        )
        LOGGER.info("Starting run %s/%s of job %s", job.run_number, job.runs, job.id)

        if self._signals.destroys_run:
            # A signal arrived while the job was being requested.
            job.error = self._signals.signal_name
            self._abort_job(run)
            return
        if self.on_start_job_run is None:
            job.error = NO_DRIVER_ERROR
            self._abort_job(run)
            return
        try:
            self.on_start_job_run(run)
        except Exception as exc:
            LOGGER.debug("on_start_job_run failed for job %s", job.id, exc_info=True)
            job.error = str(exc) or exc.__class__.__name__
            self._abort_job(run)

    def _abort_job(self, run: JobRun) -> None:
        LOGGER.error("Aborting job %s: %s", run.job.id, run.job.error)
        if self.on_abort_job is not None:
            self.on_abort_job(run)
        else:
            run.run_finished(True)

    def _on_timeout(self, event: ClientEvent) -> None:
        run = self._current_run
        if run is None or event.token != run.token:
            LOGGER.debug("Ignoring deadline of a run that already finished")
            return
        LOGGER.error("Job %s run %s timed out", run.job.id, run.run_number)
        run.job.error = TIMEOUT_ERROR
        self._abort_job(run)

    def _finish_run(self, event: ClientEvent) -> None:
        job = event.job
        if job is None:
            return
        is_run_finished = event.is_run_finished
        LOGGER.info(
            "Finished run %s/%s (is_run_finished=%s) of job %s",
            job.run_number,
            job.runs,
            is_run_finished,
            job.id,
        )
        if event.token is None or event.token != self._current_token():
            LOGGER.error("Timed-out job finished, but too late: %s run %s", job.id, job.run_number)
            self._handling_uncaught = None
            return

        is_job_finished = (job.run_number == job.runs and is_run_finished) or (
            # A failed replay-capture run ends the whole job.
            job.run_number == 0 and bool(job.error)
        )
        if not is_job_finished and self._signals.should_abort_job(is_run_finished):
            is_job_finished = True
            job.error = self._signals.signal_name
        # The replay-capture run is only reported when it failed.
        should_submit = job.run_number != 0 or bool(job.error)

        self._cancel_timeout_timer()
        with self._lock:
            self._current_run = None

        submit_error: Optional[Exception] = None
        if should_submit:
            self._set_state(ClientState.submitting)
            try:
                self._submitter.submit(job, is_job_finished)
            except TransportError as exc:
                submit_error = exc
        elif job.result_files or job.zip_result_files:
            LOGGER.debug("Discarding output of replay-capture run for job %s", job.id)
            job.result_files.clear()
            job.zip_result_files.clear()
        self._end_of_run(job, is_run_finished, is_job_finished, submit_error)

    def _end_of_run(
        self,
        job: Job,
        is_run_finished: bool,
        is_job_finished: bool,
        submit_error: Optional[Exception],
    ) -> None:
        self._handling_uncaught = None
        if submit_error is not None:
            LOGGER.error("Unable to submit result: %s", submit_error)
        if submit_error is not None or is_job_finished:
            self._jobs_completed += 1
            LOGGER.info("Job %s done (error=%s)", job.id, job.error)
            self._on_done(job)
            return
        if is_run_finished:
            if job.run_number >= job.runs:
                raise RuntimeError("Internal error: job.run_number >= job.runs")
            job.run_number += 1
        self._start_next_run(job)

    # Signals and faults ---------------------------------------------------------
    def _on_signal(self, event: ClientEvent) -> None:
        signal_name = event.signal_name or ""
        try:
            decision = self._signals.decide(signal_name, between_polls=self._no_job_timer is not None)
        except ValueError:
            LOGGER.warning("Ignoring unsupported signal %r", signal_name)
            return
        if decision.exit_now:
            LOGGER.critical("Received %s, exiting.", signal_name)
            self._shutdown()
            return
        if decision.defer_exit:
            self._exit_pending = True
        LOGGER.critical(
            "Received %s, will exit after the current %s.",
            signal_name,
            decision.severity.drain_policy,
        )
        run = self._current_run
        if run is not None and decision.abort_run:
            run.job.error = decision.error
            self._abort_job(run)

    def _on_uncaught_event(self, event: ClientEvent) -> None:
        if event.error is not None:
            self._on_uncaught_exception(event.error)

    def _on_uncaught_exception(self, error: BaseException) -> None:
        LOGGER.critical(
            "Unhandled exception in the client: %s",
            error,
            exc_info=(type(error), error, error.__traceback__),
        )
        if self._handling_uncaught is not None:
            LOGGER.critical(
                "Unhandled exception while handling another unhandled exception: %s",
                self._handling_uncaught,
            )
            # Stop handling the first one rather than looping on job finish.
            self._handling_uncaught = None
        elif self._current_run is not None:
            run = self._current_run
            LOGGER.critical("Unhandled exception while processing job %s", run.job.id)
            self._handling_uncaught = error
            run.job.error = str(error) or error.__class__.__name__
            run.run_finished(True)
        else:
            LOGGER.critical("Unhandled exception outside of job processing")
            if self._state in (ClientState.polling, ClientState.submitting):
                self._no_job()


_client: Optional[Client] = None


def set_client(client: Optional[Client]) -> None:
    global _client
    _client = client


def get_client() -> Client:
    """Return the process-wide client registered with :func:`set_client`."""
    if _client is None:
        raise RuntimeError("No agent client is registered")
    return _client
