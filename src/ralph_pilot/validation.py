"""Discover and run the project's own checks (tests, lint, build).

Commands are found by an ordered list of sources; for each kind of check
the first source that yields anything wins:

1. ``[validation.commands]`` in the loop config
2. ``AGENTS.md`` bullets such as ``- **Test**: `npm test```
3. ``package.json`` scripts, run through the detected package manager
4. ``pyproject.toml`` tool tables (pytest, ruff, mypy)

Build detection has a last-resort TypeScript fallback (``npx tsc --noEmit``).
Running a command never raises: timeouts and missing executables become
failed results so the agent gets them as feedback.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .subprocess_helper import run_subprocess, shell_argv

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

LINT_TIMEOUT_SECONDS = 60
BUILD_TIMEOUT_SECONDS = 120
FULL_TIMEOUT_SECONDS = 300

NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'

CHECK_NAMES = ("test", "lint", "build", "typecheck")
BUILD_NAMES = ("build", "typecheck")


@dataclass(frozen=True)
class ValidationCommand:
    """A check to run, as a shell command string.

    Attributes:
        name: test, lint, build, typecheck, or a user-chosen label
        command: Shell command line
        source: Where it was discovered (config, agents_md, package_json, ...)
    """

    name: str
    command: str
    source: str = "config"

    @property
    def is_lint(self) -> bool:
        return "lint" in self.name.lower()

    @property
    def is_build(self) -> bool:
        n = self.name.lower()
        return any(b in n for b in BUILD_NAMES)


@dataclass
class ValidationResult:
    name: str
    command: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    duration_seconds: float = 0.0
    timed_out: bool = False

    def to_dict(self, max_chars: int = 2000) -> Dict[str, Any]:
        """Checkpoint form; long output is clipped to its tail."""

        def _clip(text: Optional[str]) -> Optional[str]:
            if text is None or len(text) <= max_chars:
                return text
            return "[...]\n" + text[-max_chars:]

        return {
            "name": self.name,
            "command": self.command,
            "success": self.success,
            "output": _clip(self.output),
            "error": _clip(self.error),
            "durationSeconds": round(self.duration_seconds, 3),
            "timedOut": self.timed_out,
        }


@dataclass
class ValidationReport:
    """All results for one iteration.

    Attributes:
        kind: lint, build, full, or skipped
        results: One entry per command, in run order
        skipped_reason: Why nothing ran, when kind is skipped
    """

    kind: str
    results: List[ValidationResult] = field(default_factory=list)
    skipped_reason: str = ""

    @property
    def passed(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failures(self) -> List[ValidationResult]:
        return [r for r in self.results if not r.success]

    @property
    def ran(self) -> bool:
        return bool(self.results)

    def error_messages(self, head_lines: int = 3) -> List[str]:
        """One message per failing command, for error signatures.

        Only the first non-blank lines are used; the tail of a test run
        (timings, counts) varies between otherwise identical failures.
        """
        messages: List[str] = []
        for r in self.failures:
            text = r.error or r.output or "failed"
            lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
            head = " | ".join(lines[:head_lines])[:300]
            messages.append(f"{r.name}: {head}")
        return messages

    def summary(self) -> str:
        if not self.results:
            return f"validation skipped ({self.skipped_reason})" if self.skipped_reason else "no checks"
        parts = [f"{r.name} {'ok' if r.success else 'FAILED'}" for r in self.results]
        return ", ".join(parts)


# -------------------------
# Discovery
# -------------------------


class CommandSource(ABC):
    """One place validation commands can be declared."""

    name: str = ""

    @abstractmethod
    def discover(self, project_root: Path) -> List[ValidationCommand]:
        """Return commands declared here, or an empty list."""


class ConfigCommandSource(CommandSource):
    name = "config"

    def __init__(self, commands: Optional[Mapping[str, str]] = None):
        self.commands = dict(commands or {})

    def discover(self, project_root: Path) -> List[ValidationCommand]:
        return [
            ValidationCommand(name=n, command=c, source=self.name)
            for n, c in self.commands.items()
            if c.strip()
        ]


def _agents_md_re(name: str) -> "re.Pattern[str]":
    return re.compile(r"[-*]\s*\*?\*?" + name + r"\*?\*?[:\s]+`([^`]+)`", re.IGNORECASE)


_AGENTS_MD_PATTERNS = {name: _agents_md_re(name) for name in CHECK_NAMES}


class AgentsMdCommandSource(CommandSource):
    """Commands documented in AGENTS.md (the agent keeps this file current)."""

    name = "agents_md"

    def __init__(self, filename: str = "AGENTS.md"):
        self.filename = filename

    def discover(self, project_root: Path) -> List[ValidationCommand]:
        path = project_root / self.filename
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return []

        commands: List[ValidationCommand] = []
        for check, pattern in _AGENTS_MD_PATTERNS.items():
            m = pattern.search(content)
            if m and m.group(1).strip():
                commands.append(ValidationCommand(check, m.group(1).strip(), self.name))
        return commands


def detect_package_manager(project_root: Path) -> str:
    """npm, pnpm, yarn or bun, judged by lockfile."""
    if (project_root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (project_root / "yarn.lock").exists():
        return "yarn"
    if (project_root / "bun.lockb").exists() or (project_root / "bun.lock").exists():
        return "bun"
    return "npm"


def run_script_command(package_manager: str, script: str) -> str:
    if package_manager == "yarn":
        return f"yarn {script}"
    return f"{package_manager} run {script}"


def read_package_scripts(project_root: Path) -> Dict[str, str]:
    """``scripts`` from package.json; empty when missing or invalid."""
    path = project_root / "package.json"
    try:
        pkg = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Ignoring invalid %s: %s", path, e)
        return {}
    scripts = pkg.get("scripts") if isinstance(pkg, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items()}


class PackageJsonCommandSource(CommandSource):
    name = "package_json"

    def discover(self, project_root: Path) -> List[ValidationCommand]:
        scripts = read_package_scripts(project_root)
        if not scripts:
            return []
        pm = detect_package_manager(project_root)
        commands: List[ValidationCommand] = []
        for check in CHECK_NAMES:
            script = scripts.get(check)
            if not script:
                continue
            if check == "test" and script.strip() == NPM_PLACEHOLDER_TEST:
                continue
            commands.append(ValidationCommand(check, run_script_command(pm, check), self.name))
        return commands


class PyprojectCommandSource(CommandSource):
    """Conventional commands for tools configured in pyproject.toml."""

    name = "pyproject"

    def discover(self, project_root: Path) -> List[ValidationCommand]:
        path = project_root / "pyproject.toml"
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Ignoring invalid %s: %s", path, e)
            return []

        tool = data.get("tool") or {}
        commands: List[ValidationCommand] = []
        if "pytest" in tool:
            commands.append(ValidationCommand("test", "pytest -q", self.name))
        if "ruff" in tool:
            commands.append(ValidationCommand("lint", "ruff check .", self.name))
        if "mypy" in tool:
            commands.append(ValidationCommand("typecheck", "mypy .", self.name))
        return commands


def default_sources(
    configured: Optional[Mapping[str, str]] = None, agents_file: str = "AGENTS.md"
) -> List[CommandSource]:
    return [
        ConfigCommandSource(configured),
        AgentsMdCommandSource(agents_file),
        PackageJsonCommandSource(),
        PyprojectCommandSource(),
    ]


def _first_yield(
    project_root: Path,
    sources: Iterable[CommandSource],
    keep=lambda c: True,
) -> List[ValidationCommand]:
    for source in sources:
        found = [c for c in source.discover(project_root) if keep(c)]
        if found:
            logger.debug(
                "validation commands from %s: %s", source.name, ", ".join(c.command for c in found)
            )
            return found
    return []


def detect_validation_commands(
    project_root: Path, sources: Optional[Sequence[CommandSource]] = None
) -> List[ValidationCommand]:
    """Every check from the highest-precedence source that declares any."""
    return _first_yield(project_root, sources or default_sources())


def detect_lint_commands(
    project_root: Path, sources: Optional[Sequence[CommandSource]] = None
) -> List[ValidationCommand]:
    """Lint checks only; empty means the caller should skip validation."""
    return _first_yield(project_root, sources or default_sources(), lambda c: c.is_lint)


def detect_build_commands(
    project_root: Path, sources: Optional[Sequence[CommandSource]] = None
) -> List[ValidationCommand]:
    """Build/typecheck checks, falling back to ``tsc --noEmit`` for TypeScript.

    Re-run every iteration: a package.json may appear mid-loop.
    """
    found = _first_yield(project_root, sources or default_sources(), lambda c: c.is_build)
    if not found and (project_root / "tsconfig.json").exists():
        found = [ValidationCommand("typecheck", "npx tsc --noEmit", "tsconfig")]
    return found


# -------------------------
# Running
# -------------------------


def run_validation_command(
    project_root: Path, command: ValidationCommand, timeout: float = FULL_TIMEOUT_SECONDS
) -> ValidationResult:
    """Run one check. Never raises."""
    started = time.monotonic()
    try:
        proc = run_subprocess(shell_argv(command.command), cwd=project_root, timeout=timeout)
    except RuntimeError as e:
        message = str(e)
        logger.warning("validation %s did not complete: %s", command.name, message.splitlines()[0])
        return ValidationResult(
            name=command.name,
            command=command.command,
            success=False,
            error=message,
            duration_seconds=time.monotonic() - started,
            timed_out="timed out" in message,
        )

    duration = time.monotonic() - started
    if proc.success:
        return ValidationResult(
            name=command.name,
            command=command.command,
            success=True,
            output=proc.stdout,
            duration_seconds=duration,
        )
    return ValidationResult(
        name=command.name,
        command=command.command,
        success=False,
        output=proc.stdout,
        error=proc.stderr or proc.stdout or f"exited with code {proc.returncode}",
        duration_seconds=duration,
    )


def run_validations(
    project_root: Path,
    commands: Sequence[ValidationCommand],
    timeout: float = FULL_TIMEOUT_SECONDS,
    kind: str = "full",
) -> ValidationReport:
    """Run every command, even after a failure, so the agent sees all problems."""
    report = ValidationReport(kind=kind)
    for command in commands:
        result = run_validation_command(project_root, command, timeout)
        logger.info(
            "%s: %s (%.1fs)", command.name, "passed" if result.success else "FAILED", result.duration_seconds
        )
        report.results.append(result)
    return report


def run_full_validation(
    project_root: Path,
    sources: Optional[Sequence[CommandSource]] = None,
    timeout: float = FULL_TIMEOUT_SECONDS,
) -> ValidationReport:
    commands = detect_validation_commands(project_root, sources)
    if not commands:
        return ValidationReport(kind="skipped", skipped_reason="no validation commands found")
    return run_validations(project_root, commands, timeout, kind="full")


def run_lint_validation(
    project_root: Path,
    sources: Optional[Sequence[CommandSource]] = None,
    timeout: float = LINT_TIMEOUT_SECONDS,
) -> ValidationReport:
    commands = detect_lint_commands(project_root, sources)
    if not commands:
        return ValidationReport(kind="skipped", skipped_reason="no lint command found")
    return run_validations(project_root, commands, timeout, kind="lint")


def run_build_validation(
    project_root: Path,
    sources: Optional[Sequence[CommandSource]] = None,
    timeout: float = BUILD_TIMEOUT_SECONDS,
) -> ValidationReport:
    commands = detect_build_commands(project_root, sources)
    if not commands:
        return ValidationReport(kind="skipped", skipped_reason="no build command found")
    return run_validations(project_root, commands, timeout, kind="build")


def format_validation_feedback(results: Iterable[ValidationResult]) -> str:
    """Markdown feedback for the agent; empty when everything passed."""
    failed = [r for r in results if not r.success]
    if not failed:
        return ""

    feedback = ["## Validation Failed\n"]
    for result in failed:
        feedback.append(f"### {result.command}")
        feedback.append("```")
        feedback.append((result.error or result.output or "").rstrip())
        feedback.append("```\n")
    feedback.append("Please fix the above issues before continuing.")
    return "\n".join(feedback)
