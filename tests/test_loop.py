"""Tests for the iteration loop controller."""

from __future__ import annotations

import itertools
import json
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from ralph_pilot.agents import AgentResult
from ralph_pilot.circuit_breaker import CircuitBreakerStats
from ralph_pilot.config import Config, default_config
from ralph_pilot.cost_tracker import CostStats, TokenUsage
from ralph_pilot.loop import (
    NO_PROGRESS_ERROR,
    PAUSE_REQUEST_FILE,
    ExitReason,
    LoopController,
    LoopOptions,
    LoopResult,
    detect_completion,
    format_loop_result,
    output_signals_done,
    run_loop,
)
from ralph_pilot.plan import TaskCount, parse_plan
from ralph_pilot.session import FAILED, LOCK_FILE, PAUSED
from ralph_pilot.visual import VisualOptions, VisualValidationResult

DONE = "All tasks completed"
_WRITES = itertools.count(1)


class FakeAgent:
    """Stands in for the agent CLI.

    Each call rewrites ``work.txt`` with a longer body so the iteration shows
    progress (unless ``write`` is False), runs ``hook`` and returns the next
    scripted output.
    """

    def __init__(
        self,
        outputs: Optional[List[str]] = None,
        write: bool = True,
        exit_code: int = 0,
        stderr: str = "",
        hook: Optional[Callable[[int, Path], None]] = None,
    ):
        self.outputs = outputs or ["working on it"]
        self.write = write
        self.exit_code = exit_code
        self.stderr = stderr
        self.hook = hook
        self.prompts: List[str] = []

    def run(self, prompt: str, cwd: Path, timeout: Optional[float]) -> AgentResult:
        self.prompts.append(prompt)
        n = len(self.prompts)
        if self.write:
            (cwd / "work.txt").write_text("x" * next(_WRITES))
        if self.hook is not None:
            self.hook(n, cwd)
        stdout = self.outputs[min(n, len(self.outputs)) - 1]
        return AgentResult(
            stdout=stdout,
            stderr=self.stderr,
            exit_code=self.exit_code,
            usage=TokenUsage(input_tokens=1000, output_tokens=200),
        )


class FakeVisual:
    def __init__(self, result: Optional[VisualValidationResult] = None):
        self.result = result or VisualValidationResult(success=True, diff_ratio=0.01)
        self.strict: List[bool] = []

    def __call__(self, root: Path, references: List[Path], options: VisualOptions) -> VisualValidationResult:
        self.strict.append(options.strict)
        return self.result


def _config(commands=None, **loop) -> Config:
    cfg = default_config()
    return replace(
        cfg,
        loop=replace(cfg.loop, **loop),
        validation=replace(cfg.validation, commands=dict(commands or {})),
    )


def _options(root: Path, **kwargs) -> LoopOptions:
    kwargs.setdefault("max_iterations", 5)
    kwargs.setdefault("validate", False)
    kwargs.setdefault("visual", False)
    return LoopOptions(task="Build a landing page", project_root=root, **kwargs)


def _session(root: Path) -> dict:
    return json.loads((root / ".ralph-session.json").read_text())


# -------------------------
# Completion detection
# -------------------------


def test_output_signals_done_tokens():
    """Test the recognised completion phrases."""
    assert output_signals_done("work done\nAll tasks completed\n")
    assert output_signals_done("<promise>COMPLETE</promise>")
    assert output_signals_done("summary\nEXIT_SIGNAL: true\n")
    assert not output_signals_done("summary\nEXIT_SIGNAL: false\n")
    assert not output_signals_done("still going")
    assert output_signals_done("I am SHIPPED", completion_promise="SHIPPED")


def test_output_signals_done_inside_ndjson():
    """Test that done tokens inside stream-json events are found."""
    stdout = "\n".join(
        [
            json.dumps({"type": "assistant", "message": {"content": [{"text": "Working"}]}}),
            json.dumps({"type": "result", "result": "EXIT_SIGNAL: true"}),
        ]
    )
    assert output_signals_done(stdout)


def test_detect_completion_marker_and_plan(tmp_path: Path):
    """Test that a marker file or a fully checked plan counts as done."""
    marker = tmp_path / "DONE"
    empty = TaskCount()
    assert not detect_completion("", empty, marker)
    marker.write_text("")
    assert detect_completion("", empty, marker)

    assert detect_completion("", parse_plan("- [x] Build\n- [x] Test\n"))
    assert not detect_completion("", parse_plan("- [x] Build\n- [ ] Test\n"))


# -------------------------
# Terminal states
# -------------------------


def test_identical_failures_trip_breaker_at_third_iteration(tmp_path: Path):
    """Test that the same validation error every iteration stops the loop at 3."""
    cfg = _config(commands={"test": "echo 'AssertionError: expected 2 got 3' >&2; exit 1"})
    agent = FakeAgent(outputs=[DONE])
    result = LoopController(_options(tmp_path, validate=True), cfg, agent_runner=agent).run()

    assert not result.success
    assert result.exit_reason == ExitReason.CIRCUIT_BREAKER
    assert result.iterations == 3
    assert len(agent.prompts) == 3
    assert result.circuit_breaker.consecutive_failures == 3
    assert _session(tmp_path)["state"] == FAILED
    assert not (tmp_path / LOCK_FILE).exists()


def test_agent_errors_without_progress_trip_breaker(tmp_path: Path):
    """Test that a crashing agent that changes nothing is stopped."""
    agent = FakeAgent(write=False, exit_code=1, stderr="boom")
    result = LoopController(_options(tmp_path), _config(), agent_runner=agent).run()

    assert result.exit_reason == ExitReason.CIRCUIT_BREAKER
    assert result.iterations == 3
    signatures = result.circuit_breaker.error_signatures
    assert any("boom" in sig for sig in signatures)
    assert any("no progress" in sig for sig in signatures)


def test_completion_token_completes(tmp_path: Path):
    """Test that a done claim with nothing failing ends the loop successfully."""
    agent = FakeAgent(outputs=["step one", DONE])
    result = LoopController(_options(tmp_path), _config(), agent_runner=agent).run()

    assert result.success
    assert result.exit_reason == ExitReason.COMPLETED
    assert result.iterations == 2
    assert result.cost_stats.total_input_tokens == 2000
    assert not (tmp_path / ".ralph-session.json").exists()


def test_completion_marker_written_by_agent(tmp_path: Path):
    """Test that the marker counts, and a stale one is removed at start."""
    (tmp_path / ".ralph").mkdir()
    (tmp_path / ".ralph" / "DONE").write_text("old")

    def hook(n: int, cwd: Path) -> None:
        if n == 2:
            (cwd / ".ralph" / "DONE").write_text("")

    agent = FakeAgent(hook=hook)
    result = LoopController(_options(tmp_path), _config(), agent_runner=agent).run()
    assert result.exit_reason == ExitReason.COMPLETED
    assert result.iterations == 2


def test_completion_by_checked_plan(tmp_path: Path):
    """Test that checking off every plan task completes the loop."""
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("- [ ] Build page\n- [ ] Add styles\n")

    def hook(n: int, cwd: Path) -> None:
        if n == 1:
            plan.write_text("- [x] Build page\n- [ ] Add styles\n")
        else:
            plan.write_text("- [x] Build page\n- [x] Add styles\n")

    agent = FakeAgent(hook=hook)
    result = LoopController(_options(tmp_path), _config(), agent_runner=agent).run()
    assert result.exit_reason == ExitReason.COMPLETED
    assert result.iterations == 2
    assert "Add styles" in agent.prompts[1]


def test_max_iterations_fails_session(tmp_path: Path):
    """Test that running out of iterations is a failure, not a completion."""
    agent = FakeAgent()
    result = LoopController(_options(tmp_path, max_iterations=3), _config(), agent_runner=agent).run()

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    assert result.iterations == 3
    assert _session(tmp_path)["state"] == FAILED
    assert _session(tmp_path)["currentIteration"] == 3


def test_cost_limit_stops_loop(tmp_path: Path):
    """Test that the loop stops once cumulative cost reaches the ceiling."""
    agent = FakeAgent()
    result = LoopController(_options(tmp_path, max_cost_usd=0.001), _config(), agent_runner=agent).run()

    assert result.exit_reason == ExitReason.COST_LIMIT
    assert result.iterations == 1
    assert result.cost_stats.total_cost > 0.001
    assert "limit" in result.error


def test_unexpected_exception_fails_session(tmp_path: Path):
    """Test that an error escaping an iteration marks the session failed."""

    def hook(n: int, cwd: Path) -> None:
        raise ValueError("kaboom")

    agent = FakeAgent(hook=hook)
    with pytest.raises(ValueError, match="kaboom"):
        LoopController(_options(tmp_path), _config(), agent_runner=agent).run()

    data = _session(tmp_path)
    assert data["state"] == FAILED
    assert "kaboom" in data["checkpoint"]["lastOutput"]
    assert not (tmp_path / LOCK_FILE).exists()


# -------------------------
# Pause and resume
# -------------------------


def test_pause_file_then_resume(tmp_path: Path):
    """Test that a pause request stops after the iteration and a rerun resumes it."""

    def request_pause(n: int, cwd: Path) -> None:
        (cwd / PAUSE_REQUEST_FILE).write_text("")

    first = FakeAgent(exit_code=1, stderr="TypeError: x is undefined", hook=request_pause)
    paused = LoopController(_options(tmp_path), _config(), agent_runner=first).run()

    assert paused.exit_reason == ExitReason.PAUSED
    assert paused.iterations == 1
    assert _session(tmp_path)["state"] == PAUSED
    assert not (tmp_path / PAUSE_REQUEST_FILE).exists()

    second = FakeAgent(outputs=[DONE])
    resumed = LoopController(_options(tmp_path), _config(), agent_runner=second).run()

    assert resumed.exit_reason == ExitReason.COMPLETED
    assert resumed.iterations == 2
    assert resumed.session_id == paused.session_id
    assert "iteration 2/5" in second.prompts[0]
    assert "## Agent Error" in second.prompts[0]
    assert resumed.circuit_breaker.total_failures == 1
    assert resumed.circuit_breaker.total_successes == 1
    assert resumed.cost_stats.total_input_tokens == 2000


def test_request_pause_in_process(tmp_path: Path):
    """Test pausing through the controller method."""
    holder = {}

    def hook(n: int, cwd: Path) -> None:
        holder["controller"].request_pause()

    controller = LoopController(_options(tmp_path), _config(), agent_runner=FakeAgent(hook=hook))
    holder["controller"] = controller
    result = controller.run()
    assert result.exit_reason == ExitReason.PAUSED
    assert result.iterations == 1


def test_stale_pause_request_is_ignored(tmp_path: Path):
    """Test that a pause file left over from an earlier run does not pause."""
    (tmp_path / ".ralph").mkdir()
    (tmp_path / PAUSE_REQUEST_FILE).write_text("")
    result = LoopController(_options(tmp_path, max_iterations=2), _config(), agent_runner=FakeAgent()).run()
    assert result.exit_reason == ExitReason.MAX_ITERATIONS


def test_force_new_ignores_paused_session(tmp_path: Path):
    def request_pause(n: int, cwd: Path) -> None:
        (cwd / PAUSE_REQUEST_FILE).write_text("")

    paused = LoopController(_options(tmp_path), _config(), agent_runner=FakeAgent(hook=request_pause)).run()
    agent = FakeAgent(outputs=[DONE])
    fresh = LoopController(_options(tmp_path, force_new=True), _config(), agent_runner=agent).run()
    assert fresh.session_id != paused.session_id
    assert fresh.iterations == 1
    assert "iteration 1/5" in agent.prompts[0]


# -------------------------
# Feedback and validation
# -------------------------


def test_stall_is_reported_to_agent(tmp_path: Path):
    """Test that an iteration with no file changes adds no-progress feedback."""
    agent = FakeAgent(write=False)
    result = LoopController(_options(tmp_path, max_iterations=2), _config(), agent_runner=agent).run()

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    assert "## No Progress" in agent.prompts[1]
    assert result.circuit_breaker.error_signatures.get(NO_PROGRESS_ERROR) == 2


def test_validation_policy(tmp_path: Path):
    """Test which checks run for warm-up, intermediate and final iterations."""
    commands = {"lint": "exit 0", "test": "echo broken >&2; exit 1"}
    controller = LoopController(_options(tmp_path, validate=True), _config(commands), agent_runner=FakeAgent())
    none_done = TaskCount()

    report = controller._validate(1, 5, False, none_done)
    assert report.kind == "lint"
    assert [r.name for r in report.results] == ["lint"]
    assert report.passed

    report = controller._validate(2, 5, True, none_done)
    assert report.kind == "full"
    assert [r.name for r in report.failures] == ["test"]

    assert controller._validate(5, 5, False, none_done).kind == "full"

    warm = LoopController(
        _options(tmp_path, validate=True), _config(commands, validation_warmup=1), agent_runner=FakeAgent()
    )
    report = warm._validate(1, 5, False, none_done)
    assert report.kind == "skipped"
    assert "warm-up" in report.skipped_reason

    quiet = LoopController(
        _options(tmp_path, validate=True), _config(commands, intermediate_checks="none"), agent_runner=FakeAgent()
    )
    assert quiet._validate(1, 5, False, none_done).kind == "skipped"

    off = LoopController(_options(tmp_path, validate=False), _config(commands), agent_runner=FakeAgent())
    assert off._validate(5, 5, True, none_done).skipped_reason == "validation disabled"


def test_failing_final_validation_blocks_completion(tmp_path: Path):
    """Test that a done claim is rejected while the full suite fails."""
    cfg = _config(commands={"test": "echo 'Expected 1 to be 2' >&2; exit 1"})
    agent = FakeAgent(outputs=["working", DONE, DONE])
    result = LoopController(_options(tmp_path, validate=True, max_iterations=2), cfg, agent_runner=agent).run()

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    checkpoint = _session(tmp_path)["checkpoint"]
    assert checkpoint["validationResults"][0]["name"] == "test"
    assert "Validation Failed" in checkpoint["lastFeedback"]


# -------------------------
# Visual validation
# -------------------------


def _reference(root: Path) -> Path:
    ref = root / "design.png"
    ref.write_bytes(b"\x89PNG placeholder")
    return ref


def test_visual_runs_strict_when_completion_claimed(tmp_path: Path):
    """Test that visual checks run every iteration and go strict on a done claim."""
    visual = FakeVisual()
    agent = FakeAgent(outputs=["working", DONE])
    opts = _options(tmp_path, visual=True, design_screenshots=[_reference(tmp_path)])
    result = LoopController(opts, _config(), agent_runner=agent, visual_validator=visual).run()

    assert result.exit_reason == ExitReason.COMPLETED
    assert visual.strict == [False, True]


def test_visual_mismatch_blocks_completion(tmp_path: Path):
    """Test that visual issues are fed back and keep the loop going."""
    visual = FakeVisual(
        VisualValidationResult(success=False, issues=["Header is missing"], diff_ratio=0.12)
    )
    agent = FakeAgent(outputs=[DONE])
    opts = _options(tmp_path, visual=True, max_iterations=2, design_screenshots=[_reference(tmp_path)])
    result = LoopController(opts, _config(), agent_runner=agent, visual_validator=visual).run()

    assert result.exit_reason == ExitReason.MAX_ITERATIONS
    assert "## Visual Differences" in agent.prompts[1]
    assert "Header is missing" in agent.prompts[1]
    # Visual issues are not counted as errors.
    assert result.circuit_breaker.total_failures == 0


def test_visual_mismatch_does_not_reset_failure_streak(tmp_path: Path):
    """Test that alternating broken builds and visual mismatches still trip the breaker."""

    def toggle_breakage(n: int, cwd: Path) -> None:
        flag = cwd / "broken.flag"
        if n % 2:
            flag.write_text("")
        else:
            flag.unlink()

    cfg = _config(
        commands={"test": "test ! -f broken.flag || { echo 'TypeError: x is undefined' >&2; exit 1; }"},
        intermediate_checks="full",
    )
    visual = FakeVisual(VisualValidationResult(success=False, issues=["Header is missing"], diff_ratio=0.2))
    agent = FakeAgent(outputs=[DONE], hook=toggle_breakage)
    opts = _options(
        tmp_path, validate=True, visual=True, max_iterations=8, design_screenshots=[_reference(tmp_path)]
    )
    result = LoopController(opts, cfg, agent_runner=agent, visual_validator=visual).run()

    assert result.exit_reason == ExitReason.CIRCUIT_BREAKER
    assert result.iterations == 5
    assert visual.strict == [True, True]
    assert result.circuit_breaker.total_failures == 3
    assert result.circuit_breaker.total_successes == 0


def test_visual_skipped_when_disabled(tmp_path: Path):
    visual = FakeVisual()
    opts = _options(tmp_path, visual=False, design_screenshots=[_reference(tmp_path)])
    LoopController(opts, _config(), agent_runner=FakeAgent(outputs=[DONE]), visual_validator=visual).run()
    assert visual.strict == []


# -------------------------
# Rate limiting
# -------------------------


def test_rate_limit_waits_for_a_free_slot(tmp_path: Path):
    """Test that a second call inside the hour waits for the window to roll."""
    now = {"t": 0.0}
    sleeps: List[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["t"] += seconds

    controller = LoopController(
        _options(tmp_path, max_iterations=2, rate_limit_per_hour=1),
        _config(),
        agent_runner=FakeAgent(),
        sleep=sleep,
        timer=lambda: now["t"],
    )
    result = controller.run()
    assert result.iterations == 2
    assert sleeps == [3600.0]


def test_run_loop_wrapper(tmp_path: Path):
    result = run_loop(_options(tmp_path), _config(), agent_runner=FakeAgent(outputs=[DONE]))
    assert result.success


# -------------------------
# Reporting
# -------------------------


def test_format_loop_result_success():
    result = LoopResult(
        success=True,
        exit_reason=ExitReason.COMPLETED,
        iterations=4,
        duration_seconds=125,
        cost_stats=CostStats(total_cost=1.5),
    )
    lines = format_loop_result(result)
    assert lines[0] == "Task completed in 4 iteration(s)"
    assert "Duration: 2m 5s" in lines
    assert "Cost: $1.50" in lines


def test_format_loop_result_failure_lists_breaker_state():
    breaker = CircuitBreakerStats(
        consecutive_failures=3,
        total_failures=3,
        total_successes=1,
        error_signatures={"test: expected <n> got <n>": 3},
        is_open=True,
        trip_reason="3 consecutive failures",
    )
    result = LoopResult(
        success=False,
        exit_reason=ExitReason.CIRCUIT_BREAKER,
        iterations=4,
        duration_seconds=9,
        circuit_breaker=breaker,
        error="3 consecutive failures",
    )
    lines = format_loop_result(result)
    assert lines[0] == "Loop stopped: circuit_breaker"
    assert "Reason: 3 consecutive failures" in lines
    assert any("3 consecutive failure(s), 3 total, 1 success(es)" in line for line in lines)
    assert any("3x test: expected" in line for line in lines)

    data = result.to_dict()
    assert data["exitReason"] == "circuit_breaker"
    assert data["circuitBreaker"]["tripReason"] == "3 consecutive failures"


def test_claim_without_changes_is_not_a_stall(tmp_path: Path):
    """Test that confirming already-finished work completes instead of stalling."""
    agent = FakeAgent(outputs=[DONE], write=False)
    result = LoopController(_options(tmp_path), _config(), agent_runner=agent).run()
    assert result.exit_reason == ExitReason.COMPLETED
    assert result.circuit_breaker.total_failures == 0
