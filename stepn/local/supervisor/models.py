from enum import Enum
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Mapping, Optional, Tuple


class ServiceState(str, Enum):
    """Lifecycle of a single service."""
    PENDING = "pending"            # waiting for dependencies
    WAITING = "waiting"            # sleeping through the start delay
    STARTING = "starting"
    RUNNING = "running"            # spawned, not ready yet
    READY = "ready"
    TERMINATING = "terminating"
    EXITED = "exited"
    BLOCKED = "blocked"            # a transitive dependency failed
    SPAWN_FAILED = "spawn_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ServiceState.EXITED, ServiceState.BLOCKED, ServiceState.SPAWN_FAILED})


@dataclass(frozen=True)
class Service:
    """
    Immutable description of one service.

    :param name: Unique service name.
    :param command: Shell command line.
    :param dependencies: Names of services that must be ready first.
    :param environment: Variables merged over the inherited environment.
    :param delay: Seconds to wait before spawning, once dependencies are ready.
    :param triggers: Substrings that must all appear in the output before the
        service counts as ready. Empty means ready as soon as it is spawned.
    """
    name: str
    command: str
    dependencies: FrozenSet[str] = frozenset()
    environment: Mapping[str, str] = field(default_factory=dict)
    delay: float = 0.0
    triggers: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.delay < 0:
            raise ValueError(f"Start delay of service '{self.name}' must not be negative.")
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))
        object.__setattr__(self, "triggers", tuple(self.triggers))


@dataclass
class ServiceReport:
    """Final outcome of one service after a run."""
    name: str
    state: ServiceState
    returncode: Optional[int] = None
    was_ready: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state in (ServiceState.BLOCKED, ServiceState.SPAWN_FAILED)


@dataclass
class RunResult:
    """Per-service outcome of a scheduler run."""
    services: Dict[str, ServiceReport] = field(default_factory=dict)

    def __getitem__(self, name: str) -> ServiceReport:
        return self.services[name]

    @property
    def blocked(self) -> Tuple[str, ...]:
        return tuple(sorted(n for n, r in self.services.items() if r.state is ServiceState.BLOCKED))

    @property
    def spawn_failed(self) -> Tuple[str, ...]:
        return tuple(sorted(n for n, r in self.services.items() if r.state is ServiceState.SPAWN_FAILED))

    @property
    def ok(self) -> bool:
        return not any(report.failed for report in self.services.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1
