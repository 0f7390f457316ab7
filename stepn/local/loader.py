import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from stepn.local.config import effective_settings as config
from stepn.local.supervisor import ConfigError, Service, ServiceGraph

log = logging.getLogger(__name__)

KNOWN_KEYS = {"command", "depends_on", "health_checker", "environments", "delay_sec"}
UNSUPPORTED_KEYS = {"restart", "max_restarts"}


def _string_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, list):
        raise ConfigError(f"{what} must be a list of strings.")
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{what} must be a list of strings, got {item!r}.")
    return list(value)


def _parse_service(name: Any, raw: Any) -> Service:
    """
    Turns one entry of the `services` mapping into a Service.

    :raises ConfigError: If the entry is malformed.
    """
    if not isinstance(name, str) or not name:
        raise ConfigError(f"Service names must be non-empty strings, got {name!r}.")
    if not isinstance(raw, dict):
        raise ConfigError(f"Service '{name}' must be a mapping.")

    for key in sorted(set(raw) - KNOWN_KEYS):
        if key in UNSUPPORTED_KEYS:
            log.warning(f"Service '{name}': '{key}' is not supported and will be ignored.")
        else:
            log.warning(f"Service '{name}': unknown key '{key}' ignored.")

    command = raw.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConfigError(f"Service '{name}' needs a non-empty 'command'.")

    health_checker = raw.get("health_checker") or {}
    if not isinstance(health_checker, dict):
        raise ConfigError(f"Service '{name}': 'health_checker' must be a mapping.")
    triggers = _string_list(health_checker.get("output_trigger"), f"Service '{name}': 'health_checker.output_trigger'")

    environment = raw.get("environments") or {}
    if not isinstance(environment, dict):
        raise ConfigError(f"Service '{name}': 'environments' must be a mapping.")
    # YAML turns values like 3000 or true into non-strings; the environment only holds strings.
    environment = {str(key): "" if value is None else str(value) for key, value in environment.items()}

    delay = raw.get("delay_sec") or 0
    if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
        raise ConfigError(f"Service '{name}': 'delay_sec' must be a non-negative number, got {delay!r}.")

    return Service(
        name=name,
        command=command,
        dependencies=frozenset(_string_list(raw.get("depends_on"), f"Service '{name}': 'depends_on'")),
        environment=environment,
        delay=float(delay),
        triggers=tuple(triggers),
    )


def parse_config(data: Any) -> ServiceGraph:
    """
    Builds a validated ServiceGraph from an already parsed configuration document.

    :param data: The document, as returned by yaml.safe_load.
    :return: The validated graph.
    :raises ConfigError: If the document or the dependency relation is invalid.
    """
    if not isinstance(data, dict):
        raise ConfigError("The configuration must be a mapping with a 'services' key.")

    services = data.get("services")
    if not isinstance(services, dict) or not services:
        raise ConfigError("The configuration must define at least one service under 'services'.")

    return ServiceGraph(_parse_service(name, raw) for name, raw in services.items())


def load_config(path: Optional[Union[str, Path]] = None, apply_settings: bool = True) -> ServiceGraph:
    """
    Reads and validates a configuration file.

    The optional top-level `settings` mapping is applied to the effective
    settings, restricted to the names in MODIFIABLE_SETTINGS.

    :param path: The file to read; defaults to CONFIG_FILE_PATH.
    :param apply_settings: Whether to apply the file's `settings` block.
    :return: The validated graph.
    :raises ConfigError: If the file is missing, unreadable or invalid.
    """
    config_path = Path(path) if path is not None else Path(config.CONFIG_FILE_PATH)
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"{config_path} not found") from None
    except OSError as e:
        raise ConfigError(f"failed to read {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {config_path}: {e}") from e

    graph = parse_config(data)

    settings: Dict[str, Any] = data.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigError(f"'settings' in {config_path} must be a mapping.")
    if apply_settings and settings:
        applied = config.apply_overrides(settings)
        log.debug(f"Applied settings from {config_path}: {', '.join(applied) or 'none'}")

    log.info(f"Loaded {len(graph)} services from {config_path}")
    return graph
