import psutil
import logging
import threading
import subprocess
from collections import namedtuple
from typing import Callable, Mapping, Optional, Set

from .errors import SpawnFailedError, StepnError
from .models import Service, ServiceState
from .readiness import ReadinessWatcher
from .shutdown import graceful_shutdown_sequence
from .process_utils import (LineSink, build_environment, find_unresolvable_command, forward_stream, get_process_tree,
                            get_session_processes, iter_lines, log_line, spawn_shell_command)
from stepn.local.config import effective_settings as config

log = logging.getLogger(__name__)

# Messages posted by supervisors to the scheduler.
SupervisorEvent = namedtuple("SupervisorEvent", ["kind", "service", "payload"])
EVENT_READY = "ready"
EVENT_FAILED = "failed"
EVENT_EXITED = "exited"
EVENT_SHUTDOWN = "shutdown"

# Exit statuses with which a POSIX shell reports "cannot execute" and "command not found".
SHELL_SPAWN_FAILURE_CODES = (126, 127)


class ProcessSupervisor:
    """
    Owns the lifecycle of one service process.

    Once started it runs in its own thread: it waits out the start delay,
    spawns the command with the merged environment, tees every stdout line to
    the output sink and to the ReadinessWatcher, and reports readiness,
    failure and exit to the scheduler through `notify`.
    """

    def __init__(
        self,
        service: Service,
        notify: Callable[[SupervisorEvent], None],
        sink: Optional[LineSink] = None,
        shell: Optional[str] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.service = service
        self.name = service.name
        self._notify = notify
        self._sink = sink or log_line
        self._shell = shell
        self._base_env = base_env

        self._lock = threading.Lock()
        self._shutdown_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.state = ServiceState.PENDING
        self.process: Optional[subprocess.Popen] = None
        self.session_id: Optional[int] = None
        self.returncode: Optional[int] = None
        self.error: Optional[StepnError] = None
        self.watcher = ReadinessWatcher(self.name, service.triggers)

    def __repr__(self) -> str:
        return f"<ProcessSupervisor {self.name} state={self.state.value}>"

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def is_ready(self) -> bool:
        return self.watcher.is_ready

    #* --- Control (called by the scheduler) ---
    def start(self) -> None:
        """Starts supervising in a background thread. May only be called once."""
        with self._lock:
            if self._thread is not None:
                raise RuntimeError(f"Supervisor for '{self.name}' was already started.")
            if self.state.is_terminal:
                raise RuntimeError(f"Supervisor for '{self.name}' is already {self.state.value}.")
            self.state = ServiceState.WAITING if self.service.delay else ServiceState.STARTING
            self._thread = threading.Thread(target=self._run, daemon=True, name=f"{self.name}-supervisor")
        self._thread.start()

    def block(self) -> None:
        """Marks a never-started service as permanently blocked."""
        with self._lock:
            if self._thread is None and not self.state.is_terminal:
                self.state = ServiceState.BLOCKED

    def cancel(self) -> None:
        """Marks a never-started service as exited without spawning it."""
        with self._lock:
            self._shutdown_requested.set()
            if self._thread is None and not self.state.is_terminal:
                self.state = ServiceState.EXITED

    def request_shutdown(self) -> Set[psutil.Process]:
        """
        Asks the service to stop.

        A service still waiting for its start delay wakes up and exits without
        spawning. For a spawned service the caller receives every process of its
        session, so that several services can share one grace period. Background
        children that outlived the shell are included.

        :return: The processes to terminate; empty if nothing is running.
        """
        with self._lock:
            self._shutdown_requested.set()
            if self.process is None or self.state.is_terminal:
                return set()
            # poll() reaps an exited shell so it is not collected as a zombie below.
            procs = get_process_tree(self.process.pid) if self.process.poll() is None else set()
            procs |= get_session_processes(self.session_id)
            if procs:
                self.state = ServiceState.TERMINATING
            return procs

    def stop(self, timeout: Optional[float] = None) -> None:
        """Terminates the service: SIGTERM, wait up to `timeout`, then SIGKILL."""
        grace = config.GRACEFUL_SHUTDOWN_TIMEOUT if timeout is None else timeout
        graceful_shutdown_sequence(self.request_shutdown(), grace)
        self.join(grace)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits for the supervisor thread. Returns True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    #* --- Supervisor thread ---
    def _run(self) -> None:
        try:
            if self.service.delay and not self._wait_delay():
                return
            process = self._spawn()
            if process is not None:
                self._supervise(process)
        except Exception as e:
            log.critical(f"Supervisor for '{self.name}' crashed: {e}", exc_info=True)
            self.error = self.error or SpawnFailedError(self.name, str(e))
        finally:
            self._finish()

    def _wait_delay(self) -> bool:
        """Sleeps through the start delay. Returns False if shutdown arrived first."""
        log.info(f"{self.name}: Delaying {self.service.delay:g} secs")
        if self._shutdown_requested.wait(self.service.delay):
            log.info(f"Service '{self.name}' cancelled during its start delay.")
            return False
        return True

    def _spawn(self) -> Optional[subprocess.Popen]:
        env = build_environment(self.service.environment, self._base_env)
        with self._lock:
            if self._shutdown_requested.is_set():
                log.info(f"Service '{self.name}' cancelled before it was spawned.")
                return None
            self.state = ServiceState.STARTING
            log.info(f"Starting service '{self.name}': {self.service.command}")
            unresolvable = find_unresolvable_command(self.service.command, env)
            if unresolvable is not None:
                self.state = ServiceState.SPAWN_FAILED
                self.error = SpawnFailedError(self.name, unresolvable)
            else:
                try:
                    self.process = spawn_shell_command(self.service.command, env, self._shell)
                except OSError as e:
                    self.state = ServiceState.SPAWN_FAILED
                    self.error = SpawnFailedError(self.name, str(e))
                else:
                    self.session_id = self.process.pid
                    self.state = ServiceState.RUNNING

        if self.error is not None:
            log.error(str(self.error))
            self._notify(SupervisorEvent(EVENT_FAILED, self.name, self.error))
            return None

        log.info(f"Service '{self.name}' started with PID: {self.process.pid}")
        return self.process

    def _supervise(self, process: subprocess.Popen) -> None:
        stderr_reader = forward_stream(process.stderr, self.name, logging.ERROR, self._sink)
        if self.watcher.process_spawned():
            self._mark_ready()

        # Single reader: every line goes to the sink and to the watcher.
        try:
            for line in iter_lines(process.stdout):
                self._sink(self.name, line, logging.INFO)
                if self.watcher.feed(line):
                    self._mark_ready()
        finally:
            process.stdout.close()

        self.returncode = process.wait()
        stderr_reader.join()

        failure = self.watcher.process_exited(self.returncode)
        if self._shutdown_requested.is_set():
            return

        # Without triggers the service was ready on spawn, so a shell exec failure shows up only here.
        if self.returncode in SHELL_SPAWN_FAILURE_CODES and (failure is not None or not self.service.triggers):
            self.error = SpawnFailedError(self.name, "the shell could not execute the command", self.returncode)
            with self._lock:
                self.state = ServiceState.SPAWN_FAILED
        elif failure is not None:
            self.error = failure
        else:
            return
        log.error(str(self.error))
        self._notify(SupervisorEvent(EVENT_FAILED, self.name, self.error))

    def _mark_ready(self) -> None:
        with self._lock:
            if self.state is ServiceState.RUNNING:
                self.state = ServiceState.READY
        log.info(f"Service '{self.name}' is ready.")
        self._notify(SupervisorEvent(EVENT_READY, self.name, None))

    def _finish(self) -> None:
        with self._lock:
            if self.state is not ServiceState.SPAWN_FAILED:
                self.state = ServiceState.EXITED
        if self.process is not None:
            log.info(f"Service '{self.name}' exited with code {self.returncode}.")
        self._notify(SupervisorEvent(EVENT_EXITED, self.name, self.returncode))
