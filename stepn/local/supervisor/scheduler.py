import time
import queue
import psutil
import logging
from typing import Dict, Mapping, Optional, Set

from stepn.local.config import effective_settings as config
from .graph import ServiceGraph
from .models import RunResult, ServiceReport, ServiceState
from .process_utils import LineSink
from .shutdown import graceful_shutdown_sequence
from .supervisor import (EVENT_EXITED, EVENT_FAILED, EVENT_READY, EVENT_SHUTDOWN,
                         ProcessSupervisor, SupervisorEvent)

log = logging.getLogger(__name__)


class Scheduler:
    """
    Starts every service of a graph as soon as all of its dependencies are ready.

    Supervisors report readiness, failure and exit by posting events onto a
    queue that only the scheduler loop consumes. The remaining-dependency
    counters are touched in that loop alone, so no service can be started twice
    or before its last dependency is ready.
    """

    def __init__(
        self,
        graph: ServiceGraph,
        sink: Optional[LineSink] = None,
        shell: Optional[str] = None,
        base_env: Optional[Mapping[str, str]] = None,
        exit_policy: Optional[str] = None,
        grace_period: Optional[float] = None,
    ) -> None:
        self.graph = graph
        self.exit_policy = (exit_policy or config.EXIT_POLICY).lower()
        if self.exit_policy not in config.EXIT_POLICIES:
            raise ValueError(f"Unknown exit policy '{self.exit_policy}'. Expected one of {', '.join(config.EXIT_POLICIES)}.")
        self.grace_period = config.GRACEFUL_SHUTDOWN_TIMEOUT if grace_period is None else grace_period

        self._events: "queue.Queue[SupervisorEvent]" = queue.Queue()
        self.supervisors: Dict[str, ProcessSupervisor] = {
            name: ProcessSupervisor(graph.service(name), self._events.put, sink=sink, shell=shell, base_env=base_env)
            for name in graph.processing_order()
        }
        self._remaining: Dict[str, int] = {name: len(graph.dependencies_of(name)) for name in graph}
        self._blocked_reasons: Dict[str, str] = {}
        self._finished: Set[str] = set()
        self._shutting_down = False
        self._has_run = False

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def state_of(self, name: str) -> ServiceState:
        return self.supervisors[name].state

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """Thread-safe: asks the running scheduler to stop every service."""
        self._events.put(SupervisorEvent(EVENT_SHUTDOWN, None, reason))

    def run(self) -> RunResult:
        """
        Runs the graph until every service has reached a terminal state.

        A KeyboardInterrupt received while starting or waiting starts the
        shutdown; a second one skips the grace period. If anything else escapes
        the loop, every started service is killed before the error propagates.

        :return: The per-service outcome of the run.
        """
        if self._has_run:
            raise RuntimeError("A scheduler can only run once.")
        self._has_run = True

        log.info("=" * 20 + f" Starting {len(self.graph)} services " + "=" * 20)
        log.debug(f"Processing order: {', '.join(self.graph.processing_order())}")
        start_time = time.monotonic()

        try:
            self._interruptible(self._start_roots)
            while len(self._finished) < len(self.supervisors):
                self._interruptible(self._process_next_event)
        except BaseException:
            self._begin_shutdown("scheduler aborted", force=True)
            raise

        result = self._build_result()
        log.info(f"Run finished in {time.monotonic() - start_time:.2f} seconds.")
        for name in result.blocked:
            log.error(f"Service '{name}' never started: {result[name].error}")
        for name in result.spawn_failed:
            log.error(f"Service '{name}' failed to start: {result[name].error}")
        return result

    #* --- Event handling ---
    def _interruptible(self, step) -> None:
        try:
            step()
        except KeyboardInterrupt:
            log.warning("Received interrupt from operator.")
            self._begin_shutdown("operator interrupt", force=self._shutting_down)

    def _start_roots(self) -> None:
        for name in self.graph.processing_order():
            if self._remaining[name] == 0:
                self._start(name)

    def _process_next_event(self) -> None:
        try:
            event = self._events.get(timeout=config.EVENT_POLL_INTERVAL)
        except queue.Empty:
            return
        self._dispatch(event)

    def _dispatch(self, event: SupervisorEvent) -> None:
        if event.kind == EVENT_READY:
            self._on_ready(event.service)
        elif event.kind == EVENT_FAILED:
            self._on_failed(event.service, event.payload)
        elif event.kind == EVENT_EXITED:
            self._on_exited(event.service, event.payload)
        elif event.kind == EVENT_SHUTDOWN:
            self._begin_shutdown(event.payload)
        else:
            log.error(f"Ignoring unknown scheduler event: {event}")

    def _on_ready(self, name: str) -> None:
        for dependent in self.graph.dependents_of(name):
            self._remaining[dependent] -= 1
            if self._remaining[dependent] == 0 and dependent not in self._finished:
                self._start(dependent)
            elif self._remaining[dependent] > 0:
                log.debug(f"'{dependent}' is waiting for {self._remaining[dependent]} more dependencies.")

    def _on_failed(self, name: str, error: Exception) -> None:
        for dependent in sorted(self.graph.transitive_dependents(name)):
            supervisor = self.supervisors[dependent]
            if dependent in self._finished or supervisor.started:
                continue
            supervisor.block()
            self._blocked_reasons[dependent] = f"dependency '{name}' failed: {error}"
            self._finished.add(dependent)
            log.error(f"Service '{dependent}' is blocked because '{name}' failed.")

    def _on_exited(self, name: str, returncode: Optional[int]) -> None:
        self._finished.add(name)
        if self._shutting_down:
            return
        supervisor = self.supervisors[name]
        if supervisor.state is ServiceState.SPAWN_FAILED:
            return
        log.warning(f"Service '{name}' exited on its own with code {returncode}.")
        if self.exit_policy == "shutdown":
            self._begin_shutdown(f"service '{name}' exited")

    #* --- Transitions ---
    def _start(self, name: str) -> None:
        if self._shutting_down:
            return
        deps = self.graph.dependencies_of(name)
        if deps:
            log.info(f"Dependencies of '{name}' are ready: {', '.join(sorted(deps))}")
        self.supervisors[name].start()

    def _begin_shutdown(self, reason: str, force: bool = False) -> None:
        if self._shutting_down and not force:
            log.debug(f"Shutdown already in progress, ignoring '{reason}'.")
            return
        self._shutting_down = True
        log.info(f"Stopping all services ({reason})...")

        to_stop: Set[psutil.Process] = set()
        for name, supervisor in self.supervisors.items():
            if name in self._finished:
                continue
            if not supervisor.started:
                supervisor.cancel()
                self._finished.add(name)
                log.info(f"Service '{name}' will not be started.")
                continue
            to_stop |= supervisor.request_shutdown()

        if to_stop:
            grace = 0 if force else self.grace_period
            log.info(f"Terminating {len(to_stop)} processes (grace period {grace:g}s)...")
            graceful_shutdown_sequence(to_stop, grace)

    def _build_result(self) -> RunResult:
        result = RunResult()
        for name, supervisor in self.supervisors.items():
            error = self._blocked_reasons.get(name)
            if error is None and supervisor.error is not None:
                error = str(supervisor.error)
            result.services[name] = ServiceReport(
                name=name,
                state=supervisor.state,
                returncode=supervisor.returncode,
                was_ready=supervisor.is_ready,
                error=error,
            )
        return result


def run(graph: ServiceGraph, **kwargs) -> RunResult:
    """Runs every service of `graph` and blocks until all of them have stopped."""
    return Scheduler(graph, **kwargs).run()
