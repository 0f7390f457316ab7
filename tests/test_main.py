import signal
import textwrap

import pytest

from stepn import main as cli

CONFIG = """
services:
  db:
    command: echo db-ready
    health_checker:
      output_trigger: ["db-ready"]
  api:
    command: echo "api on $PORT"
    depends_on: [db]
    environments:
      PORT: 3000
  docs:
    command: echo docs
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "proc.yaml"
    path.write_text(textwrap.dedent(CONFIG))
    return path


@pytest.fixture(autouse=True)
def no_process_title(monkeypatch):
    monkeypatch.setattr(cli.setproctitle, "setproctitle", lambda title: None)


def test_check_config_prints_start_order(config_file, capsys):
    assert cli.main(["check-config", "--config", str(config_file)]) == 0
    out = capsys.readouterr().out
    assert "Configuration OK: 3 services." in out
    assert "  api (after db)" in out
    assert out.index("  db") < out.index("  api")


def test_config_errors_exit_with_status_2(tmp_path, capsys):
    path = tmp_path / "proc.yaml"
    path.write_text("services:\n  a: {command: x, depends_on: [a]}\n")
    assert cli.main(["run", f"--config={path}"]) == cli.EXIT_CONFIG_ERROR
    assert "circular dependency" in capsys.readouterr().out


def test_run_forwards_labelled_output(config_file, capsys):
    previous = signal.getsignal(signal.SIGTERM)
    assert cli.main(["--config", str(config_file)]) == 0
    assert signal.getsignal(signal.SIGTERM) is previous

    out = capsys.readouterr().out
    assert "api  | api on 3000" in out
    assert "db   | db-ready" in out
    assert "Processing order:" not in out


def test_verbose_logging_from_settings_block(tmp_path, capsys):
    path = tmp_path / "proc.yaml"
    path.write_text("settings:\n  VERBOSE_LOGGING: true\n" + textwrap.dedent(CONFIG))
    assert cli.main(["run", "--config", str(path)]) == 0

    out = capsys.readouterr().out
    assert "Processing order: db, api, docs" in out
    assert "api  | api on 3000" in out


def test_verbose_logging_from_settings_block_applies_to_execute(tmp_path, capsys):
    path = tmp_path / "proc.yaml"
    path.write_text("settings:\n  VERBOSE_LOGGING: true\n" + textwrap.dedent(CONFIG))
    assert cli.main(["execute", "api", "true", "--config", str(path)]) == 0
    assert "One-shot command for 'api' exited with code 0." in capsys.readouterr().out


def test_run_selected_services_with_dependencies(config_file, capsys):
    assert cli.main(["run", "api", "--config", str(config_file)]) == 0
    out = capsys.readouterr().out
    assert "api on 3000" in out
    assert "db-ready" in out
    assert "docs |" not in out


def test_run_unknown_service(config_file):
    assert cli.main(["run", "nope", "--config", str(config_file)]) == cli.EXIT_CONFIG_ERROR


def test_execute_uses_service_environment(config_file, capsys):
    assert cli.main(["execute", "api", "echo", "port=$PORT", "stepn=$IS_STEPN", "--config", str(config_file)]) == 0
    assert "api  | port=3000 stepn=true" in capsys.readouterr().out


def test_execute_returns_command_status(config_file):
    assert cli.main(["e", "api", "exit", "4", "--config", str(config_file)]) == 4


def test_execute_needs_a_command(config_file):
    assert cli.main(["execute", "api", "--config", str(config_file)]) == cli.EXIT_CONFIG_ERROR


def test_unknown_command(capsys):
    assert cli.main(["frobnicate"]) == cli.EXIT_CONFIG_ERROR


def test_help(capsys):
    assert cli.main(["help"]) == 0
    assert "Usage: stepn" in capsys.readouterr().out
