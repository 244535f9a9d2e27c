"""The iteration loop: drive an agent until the task is verified complete.

Each iteration builds a prompt sized for how far the loop has got, runs the
agent once, checks its work (validation commands, then visual comparison
when design references exist), feeds failures to the circuit breaker and
checkpoints the session. The loop then stops on completion, a tripped
breaker, the cost ceiling, the iteration ceiling or a pause request, or
goes round again with the collected feedback.
"""

from __future__ import annotations

import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .agents import AgentResult, AgentRunner, SubprocessAgentRunner
from .circuit_breaker import CircuitBreaker, CircuitBreakerStats
from .config import Config, load_config
from .context_builder import (
    ContextBuildOptions,
    build_iteration_context,
    build_spec_summary,
    build_task_with_skills,
    load_skills,
)
from .cost_tracker import CostStats, CostTracker, TokenUsage, format_cost, format_tokens
from .iteration_log import IterationEntry, IterationLog
from .output import print_output
from .plan import PlanTask, TaskCount, all_tasks_complete, count_tasks, current_task
from .session import LOCK_FILE, SessionLock, SessionOptions, SessionStore, utc_now
from .validation import (
    ValidationReport,
    default_sources,
    format_validation_feedback,
    run_build_validation,
    run_full_validation,
    run_lint_validation,
)
from .visual import VisualOptions, VisualValidationResult, find_design_screenshots, run_visual_validation
from .workspace import WorkspaceSnapshot, made_progress, new_commit

logger = logging.getLogger(__name__)

PAUSE_REQUEST_FILE = ".ralph/pause-requested"
NO_PROGRESS_ERROR = "no progress: iteration produced no file changes or commits"
LAST_OUTPUT_CHARS = 2000

EXIT_RE = re.compile(r"EXIT_SIGNAL:\s*(true|false)\s*$", re.IGNORECASE | re.MULTILINE)
DONE_TOKENS = ("All tasks completed", "<promise>COMPLETE</promise>")


class ExitReason(str, enum.Enum):
    COMPLETED = "completed"
    CIRCUIT_BREAKER = "circuit_breaker"
    MAX_ITERATIONS = "max_iterations"
    COST_LIMIT = "cost_limit"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class LoopOptions:
    """Per-run settings; ``None`` fields fall back to the loaded config.

    Attributes:
        task: What the agent should build
        project_root: Directory the agent works in
        agent: Runner name from ``[runners]``
        design_screenshots: Reference images; None discovers them from
            ``[visual] screenshots_dir``
        force_new: Start a new session even if a paused one exists
        skills: Append ``.ralph/skills/*.md`` to the task
    """

    task: str
    project_root: Path
    agent: str = "claude"
    max_iterations: Optional[int] = None
    validate: bool = True
    visual: bool = True
    design_screenshots: Optional[List[Path]] = None
    max_cost_usd: Optional[float] = None
    rate_limit_per_hour: Optional[int] = None
    model: Optional[str] = None
    force_new: bool = False
    skills: bool = True
    skip_plan_instructions: bool = False


@dataclass
class LoopResult:
    success: bool
    exit_reason: ExitReason
    iterations: int
    duration_seconds: float
    cost_stats: Optional[CostStats] = None
    circuit_breaker: Optional[CircuitBreakerStats] = None
    error: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        cost = self.cost_stats
        breaker = self.circuit_breaker
        return {
            "success": self.success,
            "exitReason": self.exit_reason.value,
            "iterations": self.iterations,
            "durationSeconds": round(self.duration_seconds, 1),
            "sessionId": self.session_id,
            "error": self.error,
            "cost": None
            if cost is None
            else {
                "totalCost": round(cost.total_cost, 6),
                "inputTokens": cost.total_input_tokens,
                "outputTokens": cost.total_output_tokens,
            },
            "circuitBreaker": None
            if breaker is None
            else {
                "consecutiveFailures": breaker.consecutive_failures,
                "totalFailures": breaker.total_failures,
                "totalSuccesses": breaker.total_successes,
                "tripReason": breaker.trip_reason,
            },
        }


@dataclass
class IterationOutcome:
    """Everything one iteration produced, before the loop decides."""

    iteration: int
    agent: AgentResult
    report: ValidationReport
    visual: Optional[VisualValidationResult]
    progressed: bool
    completion_claimed: bool
    usage: TokenUsage
    errors: List[str] = field(default_factory=list)
    feedback: Optional[str] = None

    @property
    def stalled(self) -> bool:
        return not self.progressed and not self.completion_claimed

    @property
    def verified(self) -> bool:
        visual_ok = self.visual is None or self.visual.success
        return not self.agent.failed and self.report.passed and visual_ok


# -------------------------
# Completion detection
# -------------------------


def _output_texts(output: str) -> Iterator[str]:
    """The raw output, then every string inside NDJSON lines."""
    yield output

    def _strings(obj: Any) -> Iterator[str]:
        if isinstance(obj, str):
            yield obj
        elif isinstance(obj, dict):
            for v in obj.values():
                yield from _strings(v)
        elif isinstance(obj, list):
            for v in obj:
                yield from _strings(v)

    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        yield from _strings(obj)


def output_signals_done(output: str, completion_promise: str = "") -> bool:
    """True if the agent said it is finished.

    Recognised: a trailing ``EXIT_SIGNAL: true`` line, "All tasks
    completed", ``<promise>COMPLETE</promise>`` and the configured promise.
    """
    tokens = DONE_TOKENS + ((completion_promise,) if completion_promise else ())
    for text in _output_texts(output or ""):
        m = EXIT_RE.search(text.strip())
        if m and m.group(1).lower() == "true":
            return True
        if any(token in text for token in tokens):
            return True
    return False


def detect_completion(
    output: str,
    plan: TaskCount,
    marker_path: Optional[Path] = None,
    completion_promise: str = "",
) -> bool:
    """Marker file, a done token in the output, or a fully checked plan."""
    if marker_path is not None and marker_path.exists():
        return True
    if output_signals_done(output, completion_promise):
        return True
    return all_tasks_complete(plan)


# -------------------------
# Controller
# -------------------------

VisualValidator = Callable[[Path, List[Path], VisualOptions], VisualValidationResult]


class LoopController:
    """Runs one loop session to a terminal state.

    Args:
        options: What to run
        config: Loaded configuration (read from the project when omitted)
        agent_runner: Agent boundary; defaults to the configured CLI runner
        visual_validator: Visual check; defaults to
            :func:`ralph_pilot.visual.run_visual_validation`
        clock: Wall clock for session timestamps
        sleep: Used for rate limiting and the pause between iterations
        timer: Monotonic seconds, for durations and the rate window
    """

    def __init__(
        self,
        options: LoopOptions,
        config: Optional[Config] = None,
        *,
        agent_runner: Optional[AgentRunner] = None,
        visual_validator: Optional[VisualValidator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        timer: Optional[Callable[[], float]] = None,
    ):
        self.options = options
        self.root = options.project_root
        self.config = config or load_config(self.root)
        cfg = self.config

        self.agent_runner: AgentRunner = agent_runner or SubprocessAgentRunner.from_config(
            cfg, options.agent, model=options.model
        )
        self.visual_validator: VisualValidator = visual_validator or run_visual_validation
        self.sleep = sleep or time.sleep
        self.timer = timer or time.monotonic

        self.store = SessionStore(self.root, cfg.files.session, cfg.session.expiry_hours, clock or utc_now)
        self.lock = SessionLock(self.root / LOCK_FILE) if cfg.session.lock else None
        self.iteration_log = IterationLog(self.root / cfg.files.iteration_log)
        self.sources = default_sources(cfg.validation.commands, cfg.files.agents)

        self.breaker = CircuitBreaker(
            cfg.circuit_breaker.max_consecutive_failures, cfg.circuit_breaker.max_same_error_count
        )
        self.costs = CostTracker(options.model or cfg.cost.model, cfg.cost.projection_min_iterations)
        self._pause_requested = False
        self._invocations: List[float] = []

    # Pausing

    @property
    def pause_request_path(self) -> Path:
        return self.root / PAUSE_REQUEST_FILE

    def request_pause(self) -> None:
        """Stop at the end of the current iteration."""
        self._pause_requested = True

    def _pause_pending(self) -> bool:
        if self.pause_request_path.exists():
            self.pause_request_path.unlink(missing_ok=True)
            self._pause_requested = True
        return self._pause_requested

    # Entry point

    def run(self) -> LoopResult:
        """Run until a terminal state.

        Raises:
            SessionLockedError: If another loop holds this directory
            SessionCorruptError: If the stored session cannot be read
        """
        if self.lock is not None:
            self.lock.acquire()
        try:
            return self._run()
        finally:
            if self.lock is not None:
                self.lock.release()

    def _run(self) -> LoopResult:
        opts = self.options
        cfg = self.config
        started = self.timer()

        requested_max = opts.max_iterations or cfg.loop.max_iterations
        max_cost = cfg.loop.max_cost_usd if opts.max_cost_usd is None else opts.max_cost_usd
        rate_limit = cfg.loop.rate_limit_per_hour if opts.rate_limit_per_hour is None else opts.rate_limit_per_hour

        session, resumed = self.store.start(
            opts.task,
            requested_max,
            opts.agent,
            SessionOptions(
                validate=opts.validate,
                visual=opts.visual,
                rate_limit=rate_limit,
                model=opts.model,
                max_cost_usd=max_cost,
            ),
            force_new=opts.force_new,
            interrupted_is_resumable=self.lock is not None,
        )
        self.pause_request_path.unlink(missing_ok=True)
        self._pause_requested = False

        feedback: Optional[str] = None
        if resumed:
            cp = session.checkpoint
            self.breaker = CircuitBreaker.from_dict(
                cp.circuit_breaker,
                cfg.circuit_breaker.max_consecutive_failures,
                cfg.circuit_breaker.max_same_error_count,
            )
            self.costs = CostTracker.from_dict(
                cp.cost_stats, opts.model or cfg.cost.model, cfg.cost.projection_min_iterations
            )
            feedback = cp.last_feedback
            if opts.max_iterations:
                session.max_iterations = opts.max_iterations
            print_output(
                f"Resuming session {session.id[:8]} at iteration {session.current_iteration + 1}",
                level="normal",
            )
        else:
            self.iteration_log.clear()
            (self.root / cfg.loop.completion_marker).unlink(missing_ok=True)

        max_iterations = session.max_iterations
        task = session.task
        skills = load_skills(self.root, cfg.files.skills_dir) if opts.skills else []
        task_with_skills = build_task_with_skills(task, skills)
        spec_summary = build_spec_summary(self.root, cfg.files.specs_dir, cfg.context.spec_summary_chars)
        references = self._design_references()

        def _result(reason: ExitReason, iteration: int, error: Optional[str] = None) -> LoopResult:
            return LoopResult(
                success=reason == ExitReason.COMPLETED,
                exit_reason=reason,
                iterations=iteration,
                duration_seconds=self.timer() - started,
                cost_stats=self.costs.stats(),
                circuit_breaker=self.breaker.stats(),
                error=error,
                session_id=session.id,
            )

        iteration = session.current_iteration
        try:
            if iteration >= max_iterations:
                self.store.fail("max iterations reached")
                return _result(ExitReason.MAX_ITERATIONS, iteration, "max iterations reached")

            while True:
                iteration += 1
                self._wait_for_rate_limit(rate_limit)
                outcome = self._run_iteration(
                    iteration, max_iterations, task, task_with_skills, spec_summary, feedback, references
                )
                feedback = outcome.feedback
                self._checkpoint(outcome)
                self._report_iteration(outcome, max_iterations)

                if self.breaker.is_tripped:
                    reason = self.breaker.trip_reason or "circuit breaker tripped"
                    self.store.fail(f"circuit breaker: {reason}")
                    return _result(ExitReason.CIRCUIT_BREAKER, iteration, reason)

                if outcome.completion_claimed and outcome.verified:
                    self.store.complete()
                    return _result(ExitReason.COMPLETED, iteration)

                if self.costs.exceeds(max_cost):
                    message = f"cost {format_cost(self.costs.total_cost)} reached limit {format_cost(max_cost)}"
                    self.store.fail(message)
                    return _result(ExitReason.COST_LIMIT, iteration, message)

                if iteration >= max_iterations:
                    self.store.fail("max iterations reached")
                    return _result(ExitReason.MAX_ITERATIONS, iteration, "max iterations reached")

                if self._pause_pending():
                    self.store.pause()
                    print_output(f"Paused after iteration {iteration}; run again to resume", level="quiet")
                    return _result(ExitReason.PAUSED, iteration)

                self._log_projection(iteration, max_iterations)
                if cfg.loop.sleep_seconds_between_iters > 0:
                    self.sleep(cfg.loop.sleep_seconds_between_iters)
        except KeyboardInterrupt:
            self.store.pause()
            raise
        except Exception as e:
            logger.exception("Loop aborted at iteration %d", iteration)
            self.store.fail(f"error: {e}")
            raise

    # One iteration

    def _run_iteration(
        self,
        iteration: int,
        max_iterations: int,
        task: str,
        task_with_skills: str,
        spec_summary: Optional[str],
        feedback: Optional[str],
        references: List[Path],
    ) -> IterationOutcome:
        cfg = self.config
        plan_path = self.root / cfg.files.plan
        plan = count_tasks(plan_path)

        context = build_iteration_context(
            ContextBuildOptions(
                full_task=task,
                task_with_skills=task_with_skills,
                current_task=current_task(plan),
                task_info=plan,
                iteration=iteration,
                max_iterations=max_iterations,
                validation_feedback=feedback,
                max_input_tokens=cfg.context.max_input_tokens,
                spec_summary=spec_summary,
                iteration_log=self.iteration_log.read_recent(cfg.context.iteration_log_entries),
                skip_plan_instructions=self.options.skip_plan_instructions,
                plan_file=cfg.files.plan,
                specs_dir=cfg.files.specs_dir,
                feedback_chars_trimmed=cfg.context.feedback_chars_trimmed,
                feedback_chars_minimal=cfg.context.feedback_chars_minimal,
                key_points_chars=cfg.context.key_points_chars,
            )
        )
        logger.info("Iteration %d/%d context: %s", iteration, max_iterations, context.debug_info)

        before = WorkspaceSnapshot.capture(self.root, cfg.files.session)
        timeout = cfg.loop.iteration_timeout_seconds or None
        agent = self.agent_runner.run(context.prompt, self.root, timeout)
        after = WorkspaceSnapshot.capture(self.root, cfg.files.session)

        progressed = made_progress(before, after)
        commit = new_commit(before, after)
        if commit:
            self.store.record_commit(commit)

        plan = count_tasks(plan_path)
        claimed = detect_completion(
            agent.stdout,
            plan,
            self.root / cfg.loop.completion_marker,
            cfg.loop.completion_promise,
        )

        report = self._validate(iteration, max_iterations, claimed, plan)

        visual: Optional[VisualValidationResult] = None
        if references and report.passed and not agent.failed:
            visual = self.visual_validator(
                self.root, references, VisualOptions.from_config(cfg.visual, strict=claimed)
            )

        usage = agent.usage or TokenUsage.estimate(context.prompt, agent.stdout)
        if visual is not None and visual.usage is not None:
            extra = visual.usage.to_token_usage()
            usage = TokenUsage(
                input_tokens=usage.input_tokens + extra.input_tokens,
                output_tokens=usage.output_tokens + extra.output_tokens,
                cache_read_tokens=usage.cache_read_tokens + extra.cache_read_tokens,
                cache_write_tokens=usage.cache_write_tokens + extra.cache_write_tokens,
                estimated=usage.estimated,
            )
        self.costs.record(iteration, usage)

        errors: List[str] = []
        if agent.failed:
            errors.append(agent.error_summary())
        errors.extend(report.error_messages())
        if not progressed and not claimed:
            errors.append(NO_PROGRESS_ERROR)
        if errors:
            self.breaker.record_failure(errors)
        elif visual is None or visual.success:
            self.breaker.record_success()
        else:
            # Visual mismatches neither count as failures nor reset the streak.
            logger.debug("Visual mismatch: circuit breaker streak left at %d", self.breaker.consecutive_failures)

        outcome = IterationOutcome(
            iteration=iteration,
            agent=agent,
            report=report,
            visual=visual,
            progressed=progressed,
            completion_claimed=claimed,
            usage=usage,
            errors=errors,
        )
        outcome.feedback = build_feedback(outcome)
        self.iteration_log.append(summarize_iteration(outcome, current_task(plan)))
        return outcome

    def _validate(self, iteration: int, max_iterations: int, claimed: bool, plan: TaskCount) -> ValidationReport:
        """Pick and run the checks for this iteration."""
        cfg = self.config
        vcfg = cfg.validation
        if not self.options.validate:
            return ValidationReport(kind="skipped", skipped_reason="validation disabled")

        final = claimed or iteration >= max_iterations
        if final:
            return run_full_validation(self.root, self.sources, vcfg.full_timeout_seconds)

        if plan.completed < cfg.loop.validation_warmup:
            return ValidationReport(
                kind="skipped",
                skipped_reason=f"warm-up ({plan.completed}/{cfg.loop.validation_warmup} tasks done)",
            )

        mode = cfg.loop.intermediate_checks
        if mode == "none":
            return ValidationReport(kind="skipped", skipped_reason="intermediate checks disabled")
        if mode == "full":
            return run_full_validation(self.root, self.sources, vcfg.full_timeout_seconds)
        if mode == "build":
            return run_build_validation(self.root, self.sources, vcfg.build_timeout_seconds)
        if mode == "lint+build":
            lint = run_lint_validation(self.root, self.sources, vcfg.lint_timeout_seconds)
            build = run_build_validation(self.root, self.sources, vcfg.build_timeout_seconds)
            results = lint.results + build.results
            if not results:
                return ValidationReport(kind="skipped", skipped_reason="no lint or build command found")
            return ValidationReport(kind="lint+build", results=results)
        return run_lint_validation(self.root, self.sources, vcfg.lint_timeout_seconds)

    def _design_references(self) -> List[Path]:
        if not self.options.visual or not self.config.visual.enabled:
            return []
        if self.options.design_screenshots is not None:
            return [Path(p) for p in self.options.design_screenshots]
        return find_design_screenshots(self.root, self.config.visual.screenshots_dir)

    def _checkpoint(self, outcome: IterationOutcome) -> None:
        stdout = outcome.agent.stdout or ""
        self.store.checkpoint(
            outcome.iteration,
            last_output=stdout[-LAST_OUTPUT_CHARS:],
            last_feedback=outcome.feedback,
            validation_results=[r.to_dict() for r in outcome.report.results],
            circuit_breaker=self.breaker.to_dict(),
            cost_stats=self.costs.to_dict(),
        )

    # Rate limiting and reporting

    def _wait_for_rate_limit(self, per_hour: int) -> None:
        """Block until an agent call is allowed in the rolling hour."""
        if per_hour <= 0:
            return
        window = 3600.0
        now = self.timer()
        self._invocations = [t for t in self._invocations if now - t < window]
        if len(self._invocations) >= per_hour:
            wait = window - (now - min(self._invocations))
            if wait > 0:
                print_output(f"Rate limit reached ({per_hour}/hour); waiting {wait:.0f}s", level="normal")
                self.sleep(wait)
            now = self.timer()
            self._invocations = [t for t in self._invocations if now - t < window]
        self._invocations.append(now)

    def _report_iteration(self, outcome: IterationOutcome, max_iterations: int) -> None:
        status = "ok" if not outcome.errors else "failed"
        print_output(
            f"Iteration {outcome.iteration}/{max_iterations}: {status} ({outcome.report.summary()})",
            level="normal",
        )
        if outcome.visual is not None and outcome.visual.diff_ratio is not None:
            print_output(
                f"  visual diff {outcome.visual.diff_ratio * 100:.1f}%, {len(outcome.visual.issues)} issue(s)",
                level="verbose",
            )
        print_output(
            f"  tokens {format_tokens(outcome.usage.total_tokens)}"
            f"{' (estimated)' if outcome.usage.estimated else ''}, total cost {format_cost(self.costs.total_cost)}",
            level="verbose",
        )

    def _log_projection(self, iteration: int, max_iterations: int) -> None:
        projected = self.costs.projected_remaining_cost(max_iterations - iteration)
        if projected is not None:
            logger.info("Projected cost for remaining iterations: %s", format_cost(projected))


# -------------------------
# Feedback and summaries
# -------------------------


def build_feedback(outcome: IterationOutcome) -> Optional[str]:
    """Feedback for the next prompt, or None when there is nothing to fix."""
    parts: List[str] = []
    if outcome.agent.failed:
        parts.append(f"## Agent Error\n\n{outcome.agent.error_summary()}")

    validation = format_validation_feedback(outcome.report.results)
    if validation:
        parts.append(validation)

    visual = outcome.visual
    if visual is not None and not visual.success:
        lines = ["## Visual Differences\n"]
        lines.extend(f"{i}. {issue}" for i, issue in enumerate(visual.issues, start=1))
        if visual.diff_image_path is not None:
            lines.append(f"\nDiff overlay: {visual.diff_image_path}")
        parts.append("\n".join(lines))

    if outcome.stalled:
        parts.append(
            "## No Progress\n\nThe last iteration changed no files and made no commits. "
            "Take a different approach."
        )
    return "\n\n".join(parts) if parts else None


def summarize_iteration(outcome: IterationOutcome, task: Optional[PlanTask] = None) -> IterationEntry:
    if outcome.agent.failed:
        verdict = "agent failed"
    elif not outcome.report.passed:
        verdict = "validation failed"
    elif outcome.visual is not None and not outcome.visual.success:
        verdict = "visual mismatch"
    elif outcome.stalled:
        verdict = "no progress"
    else:
        verdict = "passed"

    details: List[str] = []
    if task is not None:
        details.append(f"task: {task.name}")
    failing = [r.name for r in outcome.report.failures]
    if failing:
        details.append("failing: " + ", ".join(failing))
    if outcome.visual is not None and outcome.visual.diff_ratio is not None:
        details.append(f"visual diff {outcome.visual.diff_ratio * 100:.1f}%")
    if outcome.completion_claimed:
        details.append("completion claimed")
    return IterationEntry(outcome.iteration, verdict, "; ".join(details))


def format_loop_result(result: LoopResult) -> List[str]:
    """Final report lines: totals on success, the reason and breaker counters on failure."""
    minutes, seconds = divmod(int(result.duration_seconds), 60)
    duration = f"{minutes}m {seconds}s" if minutes else f"{seconds}s"
    cost = format_cost(result.cost_stats.total_cost) if result.cost_stats else format_cost(0.0)

    if result.success:
        return [
            f"Task completed in {result.iterations} iteration(s)",
            f"Duration: {duration}",
            f"Cost: {cost}",
        ]

    lines = [f"Loop stopped: {result.exit_reason.value}"]
    if result.error:
        lines.append(f"Reason: {result.error}")
    lines.append(f"Iterations: {result.iterations}")
    lines.append(f"Duration: {duration}")
    lines.append(f"Cost: {cost}")
    breaker = result.circuit_breaker
    if breaker is not None:
        lines.append(
            f"Circuit breaker: {breaker.consecutive_failures} consecutive failure(s), "
            f"{breaker.total_failures} total, {breaker.total_successes} success(es)"
        )
        top = sorted(breaker.error_signatures.items(), key=lambda kv: -kv[1])[:3]
        for sig, count in top:
            lines.append(f"  {count}x {sig[:100]}")
    return lines


def run_loop(options: LoopOptions, config: Optional[Config] = None, **collaborators: Any) -> LoopResult:
    """Build a :class:`LoopController` and run it."""
    return LoopController(options, config, **collaborators).run()
