"""
Logging module for the application.
This module provides functionality to set up console logging and to render
the output of managed services behind their service labels.
"""

from .setup import setup_logging, set_label_width, compute_label_width, MainFormatter, PROC_LOGGER_PREFIX

__all__ = ["setup_logging", "set_label_width", "compute_label_width", "MainFormatter", "PROC_LOGGER_PREFIX"]
