"""Subprocess execution for validation commands, agents and preview servers.

Three shapes of process run in a loop:

- short captured commands (``git``, lint, tests) -> :func:`run_subprocess`
- the agent itself, streamed to the terminal while captured ->
  :func:`run_subprocess_live`
- a long-lived preview server -> :func:`spawn_background` /
  :func:`terminate_process`

Timeouts and missing executables raise ``RuntimeError`` with a readable
message; callers that must not raise (the validation runner, the agent
adapter) convert that into a failure result.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class SubprocessResult:
    """Outcome of a finished subprocess.

    Attributes:
        returncode: Exit code (0 = success)
        stdout: Captured standard output
        stderr: Captured standard error
        timed_out: True if the process was killed for exceeding its timeout
        cmd_str: Printable form of the command, for logs
    """

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        return self.returncode != 0


def _to_text(raw: Union[str, bytes, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return str(raw)


def _merge_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


def shell_argv(command: str) -> List[str]:
    """Wrap a shell command string for the platform shell.

    Validation commands come from AGENTS.md or package.json as free-form
    strings (pipes, ``&&``), so they are handed to a shell rather than split.
    """
    if os.name == "nt":
        return ["cmd", "/c", command]
    shell = shutil.which("bash") or shutil.which("sh") or "/bin/sh"
    return [shell, "-c", command]


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    check: bool = False,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> SubprocessResult:
    """Run a command to completion and capture its output.

    Args:
        argv: Command and arguments
        cwd: Working directory
        check: Raise ``RuntimeError`` on a non-zero exit
        timeout: Seconds before the process is killed
        input_text: Text written to stdin
        env: Extra environment variables layered over ``os.environ``

    Raises:
        RuntimeError: On timeout, missing executable, or (with ``check``)
            a non-zero exit
    """
    cmd_str = " ".join(argv)
    kwargs: dict = {"capture_output": True, "text": True}
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = _merge_env(env)
    if input_text is not None:
        kwargs["input"] = input_text

    try:
        cp = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(
            f"Command timed out after {timeout}s: {cmd_str}\n"
            f"Partial output:\n{_to_text(e.stdout)[:500]}{_to_text(e.stderr)[:500]}"
        ) from e
    except FileNotFoundError as e:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e

    result = SubprocessResult(
        returncode=cp.returncode,
        stdout=_to_text(cp.stdout),
        stderr=_to_text(cp.stderr),
        cmd_str=cmd_str,
    )
    if check and result.failed:
        raise RuntimeError(
            f"Command failed with exit code {result.returncode}: {cmd_str}\n"
            f"stderr: {result.stderr}"
        )
    return result


def run_subprocess_live(
    argv: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    forward_output: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> SubprocessResult:
    """Run a command while streaming its output, and capture it as well.

    Used for the agent, whose output can take many minutes to arrive.

    Raises:
        RuntimeError: On timeout (partial output included) or missing executable
    """
    cmd_str = " ".join(argv)
    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    def _pump(stream: IO[str], sink: list[str], to_stderr: bool) -> None:
        for line in iter(stream.readline, ""):
            if forward_output:
                print(line, end="", flush=True, file=sys.stderr if to_stderr else sys.stdout)
            sink.append(line)

    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=_merge_env(env),
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as e:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e

    with proc:
        if input_text is not None and proc.stdin is not None:
            try:
                proc.stdin.write(input_text)
                proc.stdin.flush()
            except OSError:
                # The process exited before reading stdin; its exit code says why.
                logger.debug("stdin closed early for %s", argv[0])
            finally:
                proc.stdin.close()

        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, stdout_lines, False), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, stderr_lines, True), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            try:
                proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                logger.warning("process %s did not exit after kill", proc.pid)
            for reader in readers:
                reader.join(timeout=1.0)
            raise RuntimeError(
                f"Command timed out after {timeout}s: {cmd_str}\n"
                f"Partial stdout:\n{''.join(stdout_lines)[:500]}\n"
                f"Partial stderr:\n{''.join(stderr_lines)[:500]}"
            ) from e

        for reader in readers:
            reader.join()

    return SubprocessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout="".join(stdout_lines),
        stderr="".join(stderr_lines),
        cmd_str=cmd_str,
    )


def spawn_background(
    argv: List[str],
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.Popen:
    """Start a long-lived process detached from the terminal's stdio.

    The child gets its own process group on POSIX so that
    :func:`terminate_process` also reaches grandchildren (``npm run dev``
    forks the real server).

    Raises:
        RuntimeError: If the executable is missing
    """
    kwargs: dict = {
        "cwd": str(cwd) if cwd is not None else None,
        "env": _merge_env(env),
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
    }
    if os.name != "nt":
        kwargs["start_new_session"] = True
    try:
        return subprocess.Popen(argv, **kwargs)
    except FileNotFoundError as e:
        raise RuntimeError(f"Command not found: {argv[0]}") from e


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name != "nt":
            os.killpg(os.getpgid(proc.pid), sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def terminate_process(proc: subprocess.Popen, grace_seconds: float = 1.0) -> None:
    """Stop a background process: SIGTERM, wait ``grace_seconds``, then SIGKILL."""
    if proc.poll() is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_seconds)
        return
    except subprocess.TimeoutExpired:
        logger.debug("pid %s ignored SIGTERM, killing", proc.pid)
    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("pid %s still running after SIGKILL", proc.pid)


def check_command_available(cmd: str) -> bool:
    """True if ``cmd`` resolves on PATH."""
    return shutil.which(cmd) is not None
