"""Exception hierarchy raised while validating and running a service graph."""
from typing import Iterable, Optional, Sequence


class StepnError(Exception):
    """Base class for every error raised by stepn."""


#* --- Configuration ---
class ConfigError(StepnError):
    """The service configuration is invalid. Raised before any process starts."""


class UnknownDependencyError(ConfigError):
    def __init__(self, service: str, dependency: str) -> None:
        self.service = service
        self.dependency = dependency
        super().__init__(f"service '{service}' depends on '{dependency}', which is not defined")


class CyclicDependencyError(ConfigError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"circular dependency detected: {' -> '.join(self.cycle)}")


class DuplicateServiceError(ConfigError):
    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"service '{service}' is defined more than once")


class UnknownServiceError(ConfigError):
    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"service '{service}' is not defined")


#* --- Runtime ---
class SupervisorError(StepnError):
    """A supervisor could not bring its process up."""


class SpawnFailedError(SupervisorError):
    def __init__(self, service: str, reason: str, returncode: Optional[int] = None) -> None:
        self.service = service
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"failed to start service '{service}': {reason}")


class ReadinessError(StepnError):
    """A service never became ready."""


class ProcessExitedBeforeReadyError(ReadinessError):
    def __init__(self, service: str, missing: Iterable[str], returncode: Optional[int] = None) -> None:
        self.service = service
        self.missing = sorted(missing)
        self.returncode = returncode
        super().__init__(
            f"service '{service}' exited with code {returncode} before printing "
            f"{', '.join(repr(t) for t in self.missing)}"
        )
