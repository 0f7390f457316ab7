import logging
from typing import Mapping, Optional, Sequence

from .errors import SpawnFailedError
from .models import Service
from .process_utils import (LineSink, build_environment, forward_stream, get_session_processes, iter_lines, log_line,
                            spawn_shell_command)
from .shutdown import graceful_shutdown_sequence
from stepn.local.config import effective_settings as config

log = logging.getLogger(__name__)


def execute_oneshot(
    service: Service,
    command: Sequence[str],
    sink: Optional[LineSink] = None,
    shell: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> int:
    """
    Runs a one-off command in the environment of a configured service.

    Dependencies, delay and readiness triggers of the service are ignored;
    only its environment overrides apply. Output is forwarded under the
    service's label.

    :param service: The service whose environment is used.
    :param command: The command words, joined with spaces into a shell command line.
    :return: The exit status of the command.
    :raises SpawnFailedError: If the shell cannot be started.
    """
    sink = sink or log_line
    command_line = " ".join(command)
    if not command_line.strip():
        raise ValueError("No command given.")

    log.info(f"Executing in the environment of '{service.name}': {command_line}")
    env = build_environment(service.environment, base_env)
    try:
        process = spawn_shell_command(command_line, env, shell)
    except OSError as e:
        raise SpawnFailedError(service.name, str(e)) from e

    stderr_reader = forward_stream(process.stderr, service.name, logging.ERROR, sink)
    try:
        for line in iter_lines(process.stdout):
            sink(service.name, line, logging.INFO)
    except KeyboardInterrupt:
        log.warning(f"Interrupted, stopping one-shot command for '{service.name}'.")
        process.poll()
        graceful_shutdown_sequence(get_session_processes(process.pid), config.GRACEFUL_SHUTDOWN_TIMEOUT)
        raise
    finally:
        process.stdout.close()
    returncode = process.wait()
    stderr_reader.join()
    log.debug(f"One-shot command for '{service.name}' exited with code {returncode}.")
    return returncode
