"""Tests for subprocess execution helpers."""

from __future__ import annotations

import sys
import time

import pytest

from ralph_pilot.subprocess_helper import (
    check_command_available,
    run_subprocess,
    run_subprocess_live,
    shell_argv,
    spawn_background,
    terminate_process,
)


def test_run_subprocess_captures_stdout_and_stdin() -> None:
    argv = [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"]
    result = run_subprocess(argv, input_text="hello")
    assert result.success
    assert result.stdout == "HELLO"


def test_run_subprocess_reports_nonzero_exit() -> None:
    result = run_subprocess([sys.executable, "-c", "import sys; sys.exit(3)"])
    assert result.failed
    assert result.returncode == 3


def test_run_subprocess_timeout_raises_runtime_error() -> None:
    with pytest.raises(RuntimeError, match="timed out"):
        run_subprocess([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.5)


def test_run_subprocess_missing_command_raises_runtime_error() -> None:
    with pytest.raises(RuntimeError, match="Command not found"):
        run_subprocess(["definitely-not-a-real-binary-xyz"])


def test_run_subprocess_check_raises_on_failure() -> None:
    with pytest.raises(RuntimeError, match="exit code 2"):
        run_subprocess([sys.executable, "-c", "import sys; sys.exit(2)"], check=True)


def test_run_subprocess_env_is_layered_over_environ() -> None:
    argv = [sys.executable, "-c", "import os; print(os.environ['PILOT_TEST_VAR'], bool(os.environ.get('PATH')))"]
    result = run_subprocess(argv, env={"PILOT_TEST_VAR": "yes"})
    assert result.stdout.strip() == "yes True"


def test_run_subprocess_live_captures_both_streams() -> None:
    argv = [
        sys.executable,
        "-c",
        "import sys; print('out'); print('err', file=sys.stderr)",
    ]
    result = run_subprocess_live(argv, forward_output=False)
    assert result.returncode == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


def test_run_subprocess_live_handles_closed_stdin_pipe() -> None:
    argv = [sys.executable, "-c", "import os; os._exit(0)"]
    result = run_subprocess_live(argv, input_text="late" * 100000, forward_output=False)
    assert result.returncode == 0


def test_run_subprocess_live_timeout_raises() -> None:
    argv = [sys.executable, "-c", "import time; print('started', flush=True); time.sleep(10)"]
    with pytest.raises(RuntimeError, match="timed out"):
        run_subprocess_live(argv, timeout=1, forward_output=False)


def test_shell_argv_runs_compound_commands() -> None:
    result = run_subprocess(shell_argv("echo one && echo two"))
    assert result.stdout.split() == ["one", "two"]


def test_terminate_process_stops_background_child() -> None:
    proc = spawn_background([sys.executable, "-c", "import time; time.sleep(30)"])
    time.sleep(0.2)
    assert proc.poll() is None
    terminate_process(proc, grace_seconds=1.0)
    assert proc.poll() is not None


def test_terminate_process_escalates_when_sigterm_ignored() -> None:
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    proc = spawn_background([sys.executable, "-c", code])
    time.sleep(0.5)
    terminate_process(proc, grace_seconds=0.5)
    assert proc.poll() is not None


def test_terminate_process_is_noop_for_exited_process() -> None:
    proc = spawn_background([sys.executable, "-c", "pass"])
    proc.wait(timeout=5)
    terminate_process(proc)
    assert proc.returncode == 0


def test_check_command_available() -> None:
    assert check_command_available("definitely-not-a-real-binary-xyz") is False
