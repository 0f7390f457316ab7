import logging
import threading
from typing import Callable, Optional, Sequence, Set

from .errors import ProcessExitedBeforeReadyError

log = logging.getLogger(__name__)


class ReadinessWatcher:
    """
    Decides when a service counts as ready by scanning its output lines.

    The service is ready once every trigger substring has appeared in some line
    seen so far; order and repetition of the appearances do not matter. With no
    triggers the service is ready as soon as it is spawned.

    Readiness and failure are one-shot: whichever happens first is reported
    through its callback, and the other is never reported afterwards.
    """

    def __init__(
        self,
        service: str,
        triggers: Sequence[str] = (),
        on_ready: Optional[Callable[[], None]] = None,
        on_failed: Optional[Callable[[ProcessExitedBeforeReadyError], None]] = None,
    ) -> None:
        self.service = service
        self.triggers = tuple(triggers)
        self._pending: Set[str] = set(self.triggers)
        self._on_ready = on_ready
        self._on_failed = on_failed
        self._lock = threading.Lock()
        self._settled = False
        self.ready = threading.Event()
        self.error: Optional[ProcessExitedBeforeReadyError] = None

    @property
    def is_ready(self) -> bool:
        return self.ready.is_set()

    @property
    def missing(self) -> Set[str]:
        """Triggers that have not been seen yet."""
        with self._lock:
            return set(self._pending)

    def process_spawned(self) -> bool:
        """
        Called once the process is running.

        :return: True if this made the service ready (no triggers configured).
        """
        if self.triggers:
            return False
        return self._settle_ready()

    def feed(self, line: str) -> bool:
        """
        Inspects one output line.

        :return: True if this line completed the set of triggers.
        """
        with self._lock:
            if self._settled or not self._pending:
                return False
            self._pending = {trigger for trigger in self._pending if trigger not in line}
            if self._pending:
                return False
        return self._settle_ready()

    def process_exited(self, returncode: Optional[int] = None) -> Optional[ProcessExitedBeforeReadyError]:
        """
        Called once the process has exited.

        :return: The readiness failure if the service never became ready, else None.
        """
        with self._lock:
            if self._settled:
                return None
            self._settled = True
            self.error = ProcessExitedBeforeReadyError(self.service, self._pending, returncode)
        log.debug(f"Readiness of '{self.service}' failed: {self.error}")
        if self._on_failed:
            self._on_failed(self.error)
        return self.error

    def _settle_ready(self) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        self.ready.set()
        if self._on_ready:
            self._on_ready()
        return True
