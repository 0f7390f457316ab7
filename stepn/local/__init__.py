"""
Local package for stepn.

This package provides the runtime settings through the effective_settings
singleton, the configuration file loader and the supervisor package.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
