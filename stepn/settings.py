"""
This module contains the default configuration settings for stepn.
It defines file locations, process supervision timings and the environment
injected into every managed service.
Values can be overridden through the environment (or a `.env` file), and the
names listed in MODIFIABLE_SETTINGS also through the `settings:` block of
the configuration file.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)

#* --- Core Paths ---
BASE_DIR = pathlib.Path.cwd()
CONFIG_FILE_PATH = pathlib.Path(os.getenv("STEPN_CONFIG", str(BASE_DIR / "proc.yaml")))

#* --- Process Spawning ---
SHELL_EXECUTABLE = os.getenv("STEPN_SHELL", "/bin/sh")
MARKER_ENV_NAME = "IS_STEPN"
MARKER_ENV_VALUE = "true"
PROCESS_TITLE = "Stepn - Runner"

#* --- Supervisor Settings ---
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("STEPN_GRACEFUL_SHUTDOWN_TIMEOUT", "10"))  # seconds before force-killing
EVENT_POLL_INTERVAL = 0.5  # seconds; wake-up interval of the scheduler loop
# 'isolate': a service exiting on its own is only logged.
# 'shutdown': a service exiting on its own stops every other service.
EXIT_POLICY = os.getenv("STEPN_EXIT_POLICY", "isolate").lower()
EXIT_POLICIES = ("isolate", "shutdown")

#* --- Output Settings ---
LABEL_MIN_WIDTH = 5
LABEL_DEFAULT_WIDTH = 10
VERBOSE_LOGGING = os.getenv("STEPN_VERBOSE", "False").lower() in ('true', '1', 't')

#* --- MODIFIABLE SETTINGS (Changeable from the config file's 'settings' block) ---
MODIFIABLE_SETTINGS = {
    "SHELL_EXECUTABLE",
    "GRACEFUL_SHUTDOWN_TIMEOUT",
    "EXIT_POLICY",
    "MARKER_ENV_NAME", "MARKER_ENV_VALUE",
    "VERBOSE_LOGGING",
}
