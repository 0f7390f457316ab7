import psutil
import logging
from typing import Iterable, List

log = logging.getLogger(__name__)


def _is_gone(proc: psutil.Process) -> bool:
    """True once a process has exited, including zombies nobody has reaped yet."""
    try:
        return not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        return False


def _send(processes: Iterable[psutil.Process], action: str) -> None:
    """Calls `terminate` or `kill` on every process, skipping those that vanished."""
    for proc in processes:
        try:
            log.debug(f"{action}: {proc.name()} (PID {proc.pid})")
            getattr(proc, action)()
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} exited before {action}.")
        except psutil.AccessDenied:
            log.warning(f"Not allowed to {action} PID {proc.pid}.")


def graceful_shutdown_sequence(processes: Iterable[psutil.Process], timeout: float) -> List[psutil.Process]:
    """
    Runs the full graceful shutdown sequence for the given processes.

    Every process receives SIGTERM at once and they share a single grace
    period; survivors are then killed. Zombies count as exited, so orphans
    left unreaped by the init process do not hold up the sequence.

    :param processes: psutil.Process objects to shut down.
    :param timeout: Seconds to wait for voluntary exit before force-killing.
    :return: The processes that had to be killed.
    """
    targets = [proc for proc in processes if not _is_gone(proc)]
    if not targets:
        return []

    _send(targets, "terminate")
    try:
        _, alive = psutil.wait_procs(targets, timeout=timeout)
    except psutil.NoSuchProcess:
        alive = []
    stubborn = [proc for proc in alive if not _is_gone(proc)]

    if stubborn:
        log.warning(f"{len(stubborn)} processes did not terminate within {timeout:g}s. Forcing shutdown...")
        _send(stubborn, "kill")
    return stubborn
