import sys
import signal
import logging
from typing import List, Optional, Tuple

import setproctitle

from stepn.log import compute_label_width, set_label_width, setup_logging
from stepn.local.config import effective_settings as config
from stepn.local.loader import load_config
from stepn.local.supervisor import ConfigError, Scheduler, SpawnFailedError, execute_oneshot

log = logging.getLogger("stepn")

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

HELP_TEXT = """
stepn - start interdependent local services in dependency order

Usage: stepn [command] [args] [--config PATH] [--verbose]

Commands:
  run [service ...]            Run all services, or only the given ones and what they depend on (default).
  execute <service> <cmd ...>  Run a one-off command with the environment of <service>.
  check-config                 Validate the configuration and print the start order.
  help                         Show this message.
"""


def print_help() -> int:
    print(HELP_TEXT.strip())
    return 0


def _raise_interrupt(signum, frame) -> None:
    """Routes SIGTERM into the same path as Ctrl+C."""
    raise KeyboardInterrupt


def _extract_options(args: List[str]) -> Tuple[List[str], Optional[str], bool]:
    """Removes --config/--verbose from the argument list and returns them separately."""
    remaining: List[str] = []
    config_path: Optional[str] = None
    verbose = False
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--verbose":
            verbose = True
        elif arg == "--config":
            if i + 1 >= len(args):
                raise ConfigError("--config needs a path.")
            config_path = args[i + 1]
            i += 1
        elif arg.startswith("--config="):
            config_path = arg.split("=", 1)[1]
        else:
            remaining.append(arg)
        i += 1
    return remaining, config_path, verbose


def _load_graph(config_path: Optional[str]):
    """Loads the configuration and applies the logging settings its `settings` block may change."""
    graph = load_config(config_path)
    if config.VERBOSE_LOGGING:
        setup_logging(logging.DEBUG)
    return graph


def run_services(names: List[str], config_path: Optional[str]) -> int:
    """Runs the configured services in the foreground until they stop or the operator interrupts."""
    graph = _load_graph(config_path)
    if names:
        graph = graph.subgraph(names)
    set_label_width(compute_label_width(graph.names))
    setproctitle.setproctitle(config.PROCESS_TITLE)

    scheduler = Scheduler(graph)
    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        result = scheduler.run()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    for name, report in result.services.items():
        log.debug(f"{name}: {report.state.value} (code {report.returncode}, ready={report.was_ready})")
    return result.exit_code


def execute_command(service_name: str, words: List[str], config_path: Optional[str]) -> int:
    """Runs a one-off command in the environment of a configured service."""
    graph = _load_graph(config_path)
    service = graph.service(service_name)
    set_label_width(compute_label_width([service.name]))
    try:
        return execute_oneshot(service, words)
    except SpawnFailedError as e:
        log.error(str(e))
        return 1


def check_config(config_path: Optional[str]) -> int:
    """Validates the configuration and prints the start order."""
    graph = load_config(config_path, apply_settings=False)
    print(f"Configuration OK: {len(graph)} services.")
    for name in graph.processing_order():
        deps = sorted(graph.dependencies_of(name))
        suffix = f" (after {', '.join(deps)})" if deps else ""
        print(f"  {name}{suffix}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the command-line application."""
    raw_args = list(sys.argv[1:] if argv is None else argv)
    setup_logging(logging.INFO)

    try:
        args, config_path, verbose = _extract_options(raw_args)
        if verbose or config.VERBOSE_LOGGING:
            setup_logging(logging.DEBUG)

        command, args = (args[0].lower(), args[1:]) if args else ("run", [])
        log.debug(f"Executing command: {command}, args: {args}")

        if command in ("run", "r"):
            return run_services(args, config_path)
        if command in ("execute", "e"):
            if len(args) < 2:
                log.error("Usage: stepn execute <service> <command ...>")
                return EXIT_CONFIG_ERROR
            return execute_command(args[0], args[1:], config_path)
        if command == "check-config":
            return check_config(config_path)
        if command in ("help", "-h", "--help"):
            return print_help()

        log.error(f"Unknown command: '{command}'. Type 'stepn help' for a list of commands.")
        return EXIT_CONFIG_ERROR

    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        log.warning("Interrupted.")
        return EXIT_INTERRUPTED
    except Exception as e:
        log.critical(f"An unexpected error occurred: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
