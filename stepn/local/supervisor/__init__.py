"""
The Supervisor package.
Starts a graph of interdependent services and manages their lifecycle.

This package contains the ServiceGraph that validates the dependency relation,
the ReadinessWatcher that decides when a service is ready from its output, the
ProcessSupervisor that owns one child process, and the Scheduler that starts
each service once all of its dependencies are ready.
"""
from .errors import (ConfigError, CyclicDependencyError, DuplicateServiceError, ProcessExitedBeforeReadyError,
                     ReadinessError, SpawnFailedError, StepnError, SupervisorError, UnknownDependencyError,
                     UnknownServiceError)
from .graph import ServiceGraph
from .models import RunResult, Service, ServiceReport, ServiceState
from .oneshot import execute_oneshot
from .readiness import ReadinessWatcher
from .scheduler import Scheduler, run
from .supervisor import ProcessSupervisor

__all__ = [
    'Service', 'ServiceState', 'ServiceReport', 'RunResult',
    'ServiceGraph', 'ReadinessWatcher', 'ProcessSupervisor', 'Scheduler', 'run', 'execute_oneshot',
    'StepnError', 'ConfigError', 'UnknownDependencyError', 'CyclicDependencyError', 'DuplicateServiceError',
    'UnknownServiceError', 'SupervisorError', 'SpawnFailedError', 'ReadinessError', 'ProcessExitedBeforeReadyError',
]
