import logging
import sys
from typing import Iterable

from stepn.local.config import effective_settings as config

PROC_LOGGER_PREFIX = "proc."


def compute_label_width(names: Iterable[str]) -> int:
    """
    Returns the column width used for service labels in forwarded output.

    :param names: The names of every service that may produce output.
    :return: The longest name length, never below the configured minimum.
    """
    widths = [len(name) for name in names]
    width = max(widths) if widths else config.LABEL_DEFAULT_WIDTH
    return max(width, config.LABEL_MIN_WIDTH)


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess output."""

    def __init__(self, label_width: int = 0) -> None:
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')
        self.label_width = label_width or config.LABEL_DEFAULT_WIDTH

    def format(self, record):
        # Output forwarded from a service is rendered behind its label only.
        if record.name.startswith(PROC_LOGGER_PREFIX):
            service = record.name[len(PROC_LOGGER_PREFIX):]
            return f"{service:<{self.label_width}}| {record.getMessage()}"
        return super().format(record)


def set_label_width(width: int) -> None:
    """Updates the label column width on every installed MainFormatter."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler.formatter, MainFormatter):
            handler.formatter.label_width = width


def setup_logging(console_level: int = logging.INFO, label_width: int = 0) -> None:
    """
    Configures the root logger for the application.
    Installs a single console handler writing to stdout, clearing any
    previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param label_width: The column width of service labels in forwarded output.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    # StreamHandler flushes after every record, so output is forwarded line by line.
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter(label_width))
    root_logger.addHandler(console_handler)
