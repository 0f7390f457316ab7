import logging
from pathlib import Path
from typing import Dict, Any, List

import stepn.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    A singleton class that merges default settings with file overrides.

    This class provides a unified, attribute-based access point for all
    runtime configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment / `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from the `settings:` block of the configuration file, for
       names in `MODIFIABLE_SETTINGS` only.
    """

    def __init__(self) -> None:
        """Initializes the settings object by loading defaults."""
        self._load_defaults()

    def _load_defaults(self) -> None:
        """
        Loads all uppercase attributes from the settings.py module as defaults.
        """
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def reset(self) -> None:
        """Discards every override and restores the module defaults."""
        self._load_defaults()

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return getattr(self, item, default)

    def apply_overrides(self, overrides: Dict[str, Any]) -> List[str]:
        """
        Applies a mapping of overrides on top of the current settings.

        Only names listed in `MODIFIABLE_SETTINGS` are accepted. Each value is
        coerced to the type of the default it replaces.

        :param overrides: A mapping of setting names to new values.
        :return: The names that were actually applied.
        """
        applied = []
        for key, value in overrides.items():
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue

            original_value = getattr(self, key)
            try:
                if isinstance(original_value, bool):
                    new_value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
                elif isinstance(original_value, Path):
                    new_value = Path(value)
                elif original_value is not None:
                    new_value = type(original_value)(value)
                else:
                    new_value = value
            except (ValueError, TypeError) as e:
                log.error(f"Could not convert value '{value}' for setting '{key}'. Error: {e}")
                continue

            if key == "EXIT_POLICY":
                new_value = new_value.lower()
                if new_value not in self.EXIT_POLICIES:
                    log.error(f"Unknown exit policy '{value}'. Expected one of {', '.join(self.EXIT_POLICIES)}.")
                    continue

            setattr(self, key, new_value)
            applied.append(key)
            log.debug(f"Overridden setting: {key} = {new_value}")
        return applied

# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
