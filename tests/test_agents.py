"""Tests for agent invocation building, usage parsing and the subprocess runner."""

from __future__ import annotations

import json
import sys

import pytest

from ralph_pilot.agents import (
    AgentResult,
    GenericAgentBuilder,
    SubprocessAgentRunner,
    build_agent_invocation,
    get_agent_builder,
    get_runner_config,
    parse_usage,
)
from ralph_pilot.config import RunnerConfig, default_config


def test_codex_reads_prompt_from_stdin():
    argv, stdin = build_agent_invocation(
        "codex", "fix the bug", RunnerConfig(argv=["codex", "exec", "--full-auto"])
    )
    assert argv == ["codex", "exec", "--full-auto", "-"]
    assert stdin == "fix the bug"


def test_claude_fills_p_flag():
    argv, stdin = build_agent_invocation(
        "claude", "do it", RunnerConfig(argv=["claude", "-p", "--output-format", "stream-json"])
    )
    assert argv == ["claude", "-p", "do it", "--output-format", "stream-json"]
    assert stdin is None


def test_claude_variant_injects_p_flag():
    argv, stdin = build_agent_invocation("claude-zai", "do the thing", RunnerConfig(argv=["claude-zai"]))
    assert argv == ["claude-zai", "-p", "do the thing"]
    assert stdin is None


def test_copilot_uses_prompt_flag():
    argv, _ = build_agent_invocation("copilot", "x", RunnerConfig(argv=["copilot"]))
    assert argv == ["copilot", "--prompt", "x"]


def test_placeholder_is_replaced():
    argv, stdin = build_agent_invocation("claude", "hi", RunnerConfig(argv=["claude", "--msg", "{prompt}"]))
    assert argv == ["claude", "--msg", "hi"]
    assert stdin is None


def test_generic_agent_uses_stdin_when_dash_present():
    argv, stdin = build_agent_invocation("custom-agent", "hello world", RunnerConfig(argv=["my-wrapper", "-"]))
    assert argv == ["my-wrapper", "-"]
    assert stdin == "hello world"


def test_generic_agent_appends_prompt():
    assert isinstance(get_agent_builder("aider"), GenericAgentBuilder)
    argv, stdin = build_agent_invocation("aider", "go", RunnerConfig(argv=["aider", "--yes"]))
    assert argv == ["aider", "--yes", "go"]
    assert stdin is None


def test_empty_agent_name_rejected():
    with pytest.raises(ValueError):
        get_agent_builder("  ")


def test_get_runner_config_unknown_agent():
    cfg = default_config()
    assert get_runner_config(cfg, "codex").argv[0] == "codex"
    with pytest.raises(RuntimeError, match="Available runners"):
        get_runner_config(cfg, "nope")


def test_model_flag_placement():
    claude = SubprocessAgentRunner("claude", RunnerConfig(argv=["claude", "-p"]), model="opus")
    argv, _ = claude.invocation("p")
    assert argv == ["claude", "--model", "opus", "-p", "p"]

    codex = SubprocessAgentRunner("codex", RunnerConfig(argv=["codex", "exec", "-"]), model="o3")
    argv, stdin = codex.invocation("p")
    assert argv == ["codex", "exec", "--model", "o3", "-"]
    assert stdin == "p"


# -------------------------
# parse_usage
# -------------------------


def test_parse_usage_prefers_result_event():
    stdout = "\n".join(
        [
            json.dumps({"type": "assistant", "message": {"usage": {"input_tokens": 5, "output_tokens": 1}}}),
            "plain text line",
            json.dumps(
                {
                    "type": "result",
                    "usage": {
                        "input_tokens": 100,
                        "output_tokens": 40,
                        "cache_read_input_tokens": 7,
                        "cache_creation_input_tokens": 3,
                    },
                }
            ),
        ]
    )
    usage = parse_usage(stdout)
    assert (usage.input_tokens, usage.output_tokens) == (100, 40)
    assert (usage.cache_read_tokens, usage.cache_write_tokens) == (7, 3)
    assert not usage.estimated


def test_parse_usage_sums_turns_without_result():
    stdout = "\n".join(
        json.dumps({"type": "turn.completed", "usage": {"input_tokens": n, "output_tokens": 2, "cached_input_tokens": 1}})
        for n in (10, 20)
    )
    usage = parse_usage(stdout)
    assert usage.input_tokens == 30
    assert usage.output_tokens == 4
    assert usage.cache_read_tokens == 2


def test_parse_usage_none_for_plain_text():
    assert parse_usage("all done\n{not json") is None


# -------------------------
# SubprocessAgentRunner
# -------------------------


def _python_runner(code: str) -> SubprocessAgentRunner:
    return SubprocessAgentRunner(
        "fake",
        RunnerConfig(argv=[sys.executable, "-c", code, "{prompt}"]),
        forward_output=False,
    )


def test_runner_captures_output_and_usage(tmp_path):
    code = (
        "import json, sys\n"
        "print('got ' + sys.argv[1])\n"
        "print(json.dumps({'type': 'result', 'usage': {'input_tokens': 3, 'output_tokens': 2}}))\n"
    )
    result = _python_runner(code).run("hello", tmp_path, timeout=30)
    assert not result.failed
    assert "got hello" in result.stdout
    assert result.usage.input_tokens == 3


def test_runner_reports_exit_code(tmp_path):
    code = "import sys\nsys.stderr.write('boom\\n')\nsys.exit(3)\n"
    result = _python_runner(code).run("x", tmp_path, timeout=30)
    assert result.failed
    assert result.exit_code == 3
    assert result.error_summary() == "agent exited with code 3: boom"


def test_runner_timeout_is_failed_result(tmp_path):
    result = _python_runner("import time\ntime.sleep(10)\n").run("x", tmp_path, timeout=0.5)
    assert result.failed
    assert result.timed_out
    assert result.error_summary() == "agent timed out"


def test_runner_missing_executable(tmp_path):
    runner = SubprocessAgentRunner(
        "ghost", RunnerConfig(argv=["definitely-not-a-real-agent-xyz"]), forward_output=False
    )
    result = runner.run("x", tmp_path, timeout=5)
    assert result.failed
    assert result.exit_code == 127
    assert "Command not found" in result.stderr


def test_agent_result_defaults():
    assert not AgentResult(stdout="ok").failed


def test_registered_builder_is_used(monkeypatch):
    """Test that a custom builder replaces the generic fallback."""
    from ralph_pilot import agents

    class EchoBuilder(agents.AgentBuilder):
        def build_argv(self, prompt, config):
            return [*config.argv, "--say", prompt], None

        @property
        def name(self):
            return "echo"

    monkeypatch.setattr(agents, "_AGENT_BUILDERS", dict(agents._AGENT_BUILDERS))
    agents.register_agent_builder("Echo", EchoBuilder())
    argv, stdin = build_agent_invocation("echo", "hi", RunnerConfig(argv=["echo"]))
    assert argv == ["echo", "--say", "hi"]
    assert stdin is None
