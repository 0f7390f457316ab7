import time
import subprocess

import psutil
import pytest

from stepn.local.supervisor.process_utils import (build_environment, find_unresolvable_command, get_process_tree,
                                                  get_session_processes, iter_lines, spawn_shell_command)
from stepn.local.supervisor.shutdown import graceful_shutdown_sequence


def test_environment_merges_overrides_over_inherited():
    env = build_environment({"PORT": "3000"}, base={"PATH": "x"})
    assert env["PATH"] == "x"
    assert env["PORT"] == "3000"
    assert env["IS_STEPN"] == "true"


def test_override_replaces_inherited_key():
    env = build_environment({"PATH": "y", "IS_STEPN": "custom"}, base={"PATH": "x"})
    assert env["PATH"] == "y"
    assert env["IS_STEPN"] == "custom"


def test_marker_can_be_disabled(isolated_settings):
    isolated_settings.apply_overrides({"MARKER_ENV_NAME": ""})
    assert build_environment({}, base={"PATH": "x"}) == {"PATH": "x"}


def test_build_environment_does_not_mutate_base():
    base = {"PATH": "x"}
    build_environment({"PORT": "1"}, base=base)
    assert base == {"PATH": "x"}


def test_spawned_process_sees_environment():
    env = build_environment({"PORT": "3000"}, base={"PATH": "x"})
    process = spawn_shell_command('echo "$PATH $PORT $IS_STEPN"', env)
    lines = list(iter_lines(process.stdout))
    process.stdout.close()
    process.stderr.close()
    assert process.wait() == 0
    assert lines == ["x 3000 true"]


def test_process_tree_of_missing_pid_is_empty():
    process = subprocess.Popen(["true"])
    process.wait()
    assert get_process_tree(process.pid) == set()


def test_shutdown_sequence_kills_processes_ignoring_sigterm():
    process = subprocess.Popen(["sh", "-c", "trap '' TERM; sleep 30"], start_new_session=True)
    try:
        time.sleep(0.3)  # let the shell install its trap
        tree = get_process_tree(process.pid)
        assert psutil.Process(process.pid) in tree
        killed = graceful_shutdown_sequence(tree, timeout=0.5)
        assert process.wait(timeout=5) is not None
        assert killed
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()


def test_shutdown_sequence_with_nothing_to_stop():
    assert graceful_shutdown_sequence(set(), timeout=1) == []


@pytest.mark.parametrize("command", [
    "echo hi",
    "sh -c 'exit 0'",
    "PORT=1 DEBUG=2 sleep 1",
    "cd /tmp && make run",
    "$EDITOR notes.txt",
    "trap '' TERM; sleep 30",
    "/bin/sh -c true",
    "unbalanced 'quote",
    "# only a comment",
])
def test_runnable_commands_are_not_flagged(command):
    assert find_unresolvable_command(command, {"PATH": "/usr/bin:/bin"}) is None


def test_unknown_commands_are_flagged(tmp_path):
    script = tmp_path / "run.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    env = {"PATH": "/usr/bin:/bin"}

    assert "command not found" in find_unresolvable_command("stepn-test-missing --port 1", env)
    assert "command not found" in find_unresolvable_command("A=1 stepn-test-missing", env)
    assert "not found" in find_unresolvable_command(str(tmp_path / "missing.sh"), env)
    assert "permission denied" in find_unresolvable_command(str(script), env)
    assert "permission denied" in find_unresolvable_command(str(tmp_path), env)
    # The lookup uses the service's PATH, not the supervisor's.
    assert "command not found" in find_unresolvable_command("sleep 1", {"PATH": str(tmp_path)})


def test_session_processes_include_orphaned_background_children():
    process = subprocess.Popen(["sh", "-c", "sleep 30 & echo $!"], stdout=subprocess.PIPE, start_new_session=True)
    sleeper = psutil.Process(int(process.stdout.readline()))
    try:
        assert process.wait(timeout=5) == 0
        assert sleeper not in get_process_tree(process.pid)
        assert sleeper in get_session_processes(process.pid)
    finally:
        process.stdout.close()
        sleeper.kill()


def test_shutdown_sequence_skips_unreaped_zombies():
    process = subprocess.Popen(["true"])
    zombie = psutil.Process(process.pid)
    deadline = time.monotonic() + 5
    while zombie.status() != psutil.STATUS_ZOMBIE and time.monotonic() < deadline:
        time.sleep(0.05)
    try:
        started = time.monotonic()
        assert graceful_shutdown_sequence({zombie}, timeout=5) == []
        assert time.monotonic() - started < 2
    finally:
        process.wait()
