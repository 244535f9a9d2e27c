"""Agent runners: turn a prompt into one invocation of a coding agent CLI.

Each agent type has a builder that knows how its CLI takes a prompt
(``codex`` reads stdin, ``claude -p``, ``copilot --prompt``, anything else
gets the prompt appended). :class:`SubprocessAgentRunner` runs the result
and reports it as an :class:`AgentResult`; it never raises for a failed,
missing or timed-out agent.

Usage:
    >>> from ralph_pilot.agents import build_agent_invocation
    >>> argv, stdin = build_agent_invocation("codex", prompt, cfg)
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .config import Config, RunnerConfig
from .cost_tracker import TokenUsage
from .subprocess_helper import run_subprocess_live

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


def _substitute_prompt(argv: List[str], prompt: str) -> Optional[List[str]]:
    if "{prompt}" in argv:
        return [prompt if x == "{prompt}" else x for x in argv]
    return None


def _set_flag_value(argv: List[str], flag: str, value: str) -> List[str]:
    """Put ``value`` right after ``flag``, adding the flag if it is missing."""
    if flag in argv:
        i = argv.index(flag)
        if i == len(argv) - 1 or str(argv[i + 1]).startswith("-"):
            argv.insert(i + 1, value)
        else:
            argv[i + 1] = value
    else:
        argv.extend([flag, value])
    return argv


class AgentBuilder(ABC):
    """Knows how one agent CLI takes its prompt."""

    @abstractmethod
    def build_argv(self, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
        """Return ``(argv, stdin_text)``; stdin is None when the prompt is in argv."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    def with_model(self, argv: List[str], model: str) -> List[str]:
        """Add a model selection flag; the default leaves argv unchanged."""
        logger.debug("Agent %s has no model flag; ignoring model %s", self.name, model)
        return argv


class CodexAgentBuilder(AgentBuilder):
    """``codex exec --full-auto -`` with the prompt on stdin."""

    def build_argv(self, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
        argv = [str(x) for x in config.argv]
        substituted = _substitute_prompt(argv, prompt)
        if substituted is not None:
            return substituted, None
        if "-" not in argv:
            argv.append("-")
        return argv, prompt

    def with_model(self, argv: List[str], model: str) -> List[str]:
        if "--model" in argv or "-m" in argv:
            return argv
        at = argv.index("exec") + 1 if "exec" in argv else 1
        return argv[:at] + ["--model", model] + argv[at:]

    @property
    def name(self) -> str:
        return "codex"


class ClaudeAgentBuilder(AgentBuilder):
    """``claude -p "<prompt>"``; also used for ``claude-*`` wrapper scripts."""

    def build_argv(self, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
        argv = [str(x) for x in config.argv]
        substituted = _substitute_prompt(argv, prompt)
        if substituted is not None:
            return substituted, None
        return _set_flag_value(argv, "-p", prompt), None

    def with_model(self, argv: List[str], model: str) -> List[str]:
        if "--model" in argv:
            return argv
        return argv[:1] + ["--model", model] + argv[1:]

    @property
    def name(self) -> str:
        return "claude"


class CopilotAgentBuilder(AgentBuilder):
    """``copilot --prompt "<prompt>"``."""

    def build_argv(self, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
        argv = [str(x) for x in config.argv]
        substituted = _substitute_prompt(argv, prompt)
        if substituted is not None:
            return substituted, None
        return _set_flag_value(argv, "--prompt", prompt), None

    @property
    def name(self) -> str:
        return "copilot"


class GenericAgentBuilder(AgentBuilder):
    """Unknown agents get the prompt as their last argument, or on stdin when argv has ``-``."""

    def __init__(self, name: str):
        self._name = name.lower().strip()

    def build_argv(self, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
        argv = [str(x) for x in config.argv]
        substituted = _substitute_prompt(argv, prompt)
        if substituted is not None:
            return substituted, None
        if "-" in argv:
            return argv, prompt
        argv.append(prompt)
        return argv, None

    @property
    def name(self) -> str:
        return self._name


_AGENT_BUILDERS: Dict[str, AgentBuilder] = {
    "codex": CodexAgentBuilder(),
    "claude": ClaudeAgentBuilder(),
    "copilot": CopilotAgentBuilder(),
}


def register_agent_builder(name: str, builder: AgentBuilder) -> None:
    """Register a builder for a custom agent name."""
    _AGENT_BUILDERS[name.lower().strip()] = builder
    logger.info("Registered agent builder: %s", name)


def get_agent_builder(agent: str) -> AgentBuilder:
    """Builder for ``agent``; unknown names get the generic builder.

    Raises:
        ValueError: If the agent name is empty
    """
    agent_l = agent.lower().strip()
    if not agent_l:
        raise ValueError("Agent name cannot be empty")

    builder = _AGENT_BUILDERS.get(agent_l)
    if builder is not None:
        return builder
    if agent_l.startswith("claude-"):
        return _AGENT_BUILDERS["claude"]
    return GenericAgentBuilder(agent_l)


def build_agent_invocation(agent: str, prompt: str, config: RunnerConfig) -> Tuple[List[str], Optional[str]]:
    """Build ``(argv, stdin_text)`` for ``agent``.

    Example:
        >>> argv, stdin = build_agent_invocation("codex", "fix the bug", cfg)
        >>> argv
        ['codex', 'exec', '--full-auto', '-']
    """
    return get_agent_builder(agent).build_argv(prompt, config)


def get_runner_config(cfg: Config, agent: str) -> RunnerConfig:
    """Runner configuration for ``agent``.

    Raises:
        RuntimeError: If the agent is not configured
    """
    runner = cfg.runners.get(agent)
    if runner is None:
        available = ", ".join(sorted(cfg.runners.keys()))
        raise RuntimeError(f"Unknown agent '{agent}'. Available runners: {available}")
    return runner


# -------------------------
# Results and usage
# -------------------------


@dataclass
class AgentResult:
    """What one agent invocation produced."""

    stdout: str
    stderr: str = ""
    exit_code: int = 0
    duration_seconds: float = 0.0
    usage: Optional[TokenUsage] = None
    timed_out: bool = False

    @property
    def failed(self) -> bool:
        return self.timed_out or self.exit_code != 0

    def error_summary(self, max_lines: int = 5) -> str:
        """Short description of a failed run for feedback and error signatures."""
        if self.timed_out:
            return "agent timed out"
        tail = [ln for ln in (self.stderr or self.stdout).splitlines() if ln.strip()]
        detail = "\n".join(tail[-max_lines:])
        head = f"agent exited with code {self.exit_code}"
        return f"{head}: {detail}" if detail else head


class AgentRunner(Protocol):
    """Anything that can hand a prompt to an agent and report the outcome."""

    def run(self, prompt: str, cwd: Path, timeout: Optional[float]) -> AgentResult:
        ...


def _json_events(stdout: str) -> Iterator[Dict[str, Any]]:
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            yield obj


def _usage_from(raw: Dict[str, Any]) -> TokenUsage:
    def _int(key: str) -> int:
        try:
            return int(raw.get(key) or 0)
        except (TypeError, ValueError):
            return 0

    return TokenUsage(
        input_tokens=_int("input_tokens") or _int("prompt_tokens"),
        output_tokens=_int("output_tokens") or _int("completion_tokens"),
        cache_read_tokens=_int("cache_read_input_tokens") or _int("cached_input_tokens"),
        cache_write_tokens=_int("cache_creation_input_tokens"),
    )


def parse_usage(stdout: str) -> Optional[TokenUsage]:
    """Token usage reported in an agent's NDJSON output.

    A final ``result`` event carries the run total and wins. Otherwise the
    usage of every other event that has one (per-message or per-turn) is
    summed. Returns None when the output reports no usage at all.
    """
    final: Optional[TokenUsage] = None
    summed: Optional[TokenUsage] = None
    for event in _json_events(stdout):
        raw = event.get("usage")
        if not isinstance(raw, dict):
            message = event.get("message")
            raw = message.get("usage") if isinstance(message, dict) else None
        if not isinstance(raw, dict):
            continue
        usage = _usage_from(raw)
        if event.get("type") == "result":
            final = usage
            continue
        if summed is None:
            summed = TokenUsage()
        summed.input_tokens += usage.input_tokens
        summed.output_tokens += usage.output_tokens
        summed.cache_read_tokens += usage.cache_read_tokens
        summed.cache_write_tokens += usage.cache_write_tokens
    return final or summed


# -------------------------
# Subprocess runner
# -------------------------


class SubprocessAgentRunner:
    """Run an agent CLI as a child process.

    Args:
        agent: Agent name used to pick the argv builder
        runner_config: Command template for the agent
        model: Optional model to pass to agents that accept one
        forward_output: Stream the agent's output to the terminal as it runs
    """

    def __init__(
        self,
        agent: str,
        runner_config: RunnerConfig,
        model: Optional[str] = None,
        forward_output: bool = True,
    ):
        self.agent = agent
        self.runner_config = runner_config
        self.model = model
        self.forward_output = forward_output
        self.builder = get_agent_builder(agent)

    @classmethod
    def from_config(cls, cfg: Config, agent: str, model: Optional[str] = None, **kwargs: Any) -> "SubprocessAgentRunner":
        return cls(agent, get_runner_config(cfg, agent), model=model, **kwargs)

    def invocation(self, prompt: str) -> Tuple[List[str], Optional[str]]:
        argv, stdin_text = self.builder.build_argv(prompt, self.runner_config)
        if self.model:
            argv = self.builder.with_model(argv, self.model)
        return argv, stdin_text

    def run(self, prompt: str, cwd: Path, timeout: Optional[float] = None) -> AgentResult:
        argv, stdin_text = self.invocation(prompt)
        logger.info("Running agent %s (%s)", self.agent, argv[0])
        start = time.monotonic()
        try:
            result = run_subprocess_live(
                argv,
                cwd=cwd,
                timeout=timeout,
                input_text=stdin_text,
                forward_output=self.forward_output,
            )
        except RuntimeError as e:
            timed_out = "timed out" in str(e)
            logger.warning("Agent %s did not complete: %s", self.agent, str(e).splitlines()[0])
            return AgentResult(
                stdout="",
                stderr=str(e),
                exit_code=TIMEOUT_EXIT_CODE if timed_out else NOT_FOUND_EXIT_CODE,
                duration_seconds=time.monotonic() - start,
                timed_out=timed_out,
            )

        return AgentResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration_seconds=time.monotonic() - start,
            usage=parse_usage(result.stdout),
        )
