import os
import re
import sys
import shlex
import psutil
import shutil
import logging
import threading
import subprocess
from typing import IO, Any, Callable, Dict, Mapping, Optional, Set

from stepn.local.config import effective_settings as config
from stepn.log import PROC_LOGGER_PREFIX

log = logging.getLogger(__name__)

LineSink = Callable[[str, str, int], None]


#* --- Environment ---
def build_environment(overrides: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Builds the environment of a service process.

    Layers, lowest precedence first: the inherited environment, the stepn
    marker variable, then the service's explicit overrides.

    :param overrides: The service's environment overrides.
    :param base: The inherited environment; defaults to os.environ.
    :return: A new dictionary suitable for subprocess.Popen(env=...).
    """
    env = dict(os.environ if base is None else base)
    if config.MARKER_ENV_NAME:
        env[config.MARKER_ENV_NAME] = config.MARKER_ENV_VALUE
    env.update({str(key): str(value) for key, value in overrides.items()})
    return env


#* --- Command Resolution ---
# Words the shell resolves itself; they never need a PATH lookup.
SHELL_BUILTINS = frozenset({
    ".", ":", "[", "[[", "!", "{", "alias", "bg", "break", "case", "cd", "command", "continue", "do",
    "echo", "eval", "exec", "exit", "export", "false", "fg", "for", "function", "getopts", "hash", "if",
    "jobs", "kill", "local", "printf", "pwd", "read", "readonly", "return", "select", "set", "shift",
    "source", "test", "time", "times", "trap", "true", "type", "ulimit", "umask", "unalias", "unset",
    "until", "wait", "while",
})
_SHELL_SYNTAX_CHARS = set("$`(){};&|<>*?")
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def find_unresolvable_command(command: str, env: Mapping[str, str]) -> Optional[str]:
    """
    Checks that the first word of a shell command can be executed.

    Leading variable assignments are skipped. Builtins, keywords and words
    containing shell syntax are left for the shell to judge.

    :return: A reason the command cannot run, or None if it looks runnable.
    """
    try:
        words = shlex.split(command, comments=True)
    except ValueError:
        return None

    while words and _ASSIGNMENT.match(words[0]):
        words.pop(0)
    if not words:
        return None
    word = words[0]

    if word in SHELL_BUILTINS or _SHELL_SYNTAX_CHARS.intersection(word):
        return None
    if "/" in word:
        if not os.path.exists(word):
            return f"{word}: not found"
        if os.path.isdir(word) or not os.access(word, os.X_OK):
            return f"{word}: permission denied"
        return None
    if shutil.which(word, path=env.get("PATH", os.defpath)) is None:
        return f"{word}: command not found"
    return None


#* --- Process Creation ---
def _get_popen_session_flags() -> Dict[str, Any]:
    """Returns platform-specific Popen flags that detach the child into its own process group."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def spawn_shell_command(command: str, env: Mapping[str, str], shell: Optional[str] = None) -> subprocess.Popen:
    """
    Spawns `<shell> -c <command>` with piped, line-buffered output.

    :raises OSError: If the shell cannot be executed.
    """
    args = [shell or config.SHELL_EXECUTABLE, "-c", command]
    return subprocess.Popen(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        env=dict(env),
        **_get_popen_session_flags(),
    )


#* --- Output Forwarding ---
def log_line(process_name: str, line: str, level: int = logging.INFO) -> None:
    """Default sink: emits a line of service output through the `proc.<name>` logger."""
    logging.getLogger(f"{PROC_LOGGER_PREFIX}{process_name}").log(level, line)


def iter_lines(pipe: IO[bytes]):
    """Yields decoded lines from a subprocess pipe until it is closed."""
    for line_bytes in iter(pipe.readline, b""):
        yield line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")


def _read_pipe(pipe: IO[bytes], process_name: str, level: int, sink: LineSink) -> None:
    """Target function for reader threads. Forwards every line of a subprocess pipe."""
    try:
        for line in iter_lines(pipe):
            sink(process_name, line, level)
    except (OSError, ValueError) as e:
        log.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def forward_stream(pipe: IO[bytes], process_name: str, level: int = logging.ERROR,
                   sink: Optional[LineSink] = None) -> threading.Thread:
    """Starts a background thread that forwards a pipe to the sink without inspecting it."""
    thread = threading.Thread(
        target=_read_pipe,
        args=(pipe, process_name, level, sink or log_line),
        daemon=True,
        name=f"{process_name}-stderr",
    )
    thread.start()
    return thread


#* --- Process Status ---
def get_process_tree(pid: int) -> Set[psutil.Process]:
    """
    Returns the process with the given PID and all of its descendants.
    Processes that vanished in the meantime are left out.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return set()

    procs = {parent}
    try:
        procs.update(parent.children(recursive=True))
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} no longer exists, skipping children retrieval.")
    return procs


def get_session_processes(sid: int) -> Set[psutil.Process]:
    """
    Returns every live process in the session `sid`.

    Services are spawned as session leaders, so this also finds background
    children that outlived the shell and were re-parented away from its tree.
    """
    if sys.platform == "win32":
        return get_process_tree(sid)

    procs = set()
    for proc in psutil.process_iter():
        try:
            if os.getsid(proc.pid) == sid:
                procs.add(proc)
        except OSError:
            continue
    return procs
