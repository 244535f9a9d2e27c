"""Assemble the prompt for each loop iteration.

The first iteration gets everything: the full task, installed skills and the
current plan task with all of its subtasks. Later iterations lean on what the
agent has already written to disk, so the prompt narrows:

- iterations 2-3 ("trimmed"): a spec summary, the current task checklist
  and validation feedback compressed to ~2000 characters
- iteration 4+ ("minimal"): a short key-points excerpt, the checklist and
  feedback compressed to ~500 characters

Without a structured plan ("raw") the full task is repeated every time.
An optional token budget truncates the final prompt at a paragraph or line
boundary. Nothing here raises; a prompt is always produced.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .cost_tracker import estimate_tokens
from .plan import PlanTask, TaskCount

logger = logging.getLogger(__name__)

TIER_RAW = "raw"
TIER_FULL = "full"
TIER_TRIMMED = "trimmed"
TIER_MINIMAL = "minimal"

CHARS_PER_TOKEN_BUDGET = 3.5

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

FEEDBACK_CLOSING = "\nPlease fix the above issues before continuing."


@dataclass
class ContextBuildOptions:
    """Inputs for one prompt.

    Attributes:
        full_task: The original task text
        task_with_skills: Task text with skill instructions appended
        current_task: First incomplete plan task, if the plan has any
        task_info: Plan totals
        iteration: 1-based iteration number
        max_iterations: Iteration ceiling for this run
        validation_feedback: Feedback from the previous iteration
        max_input_tokens: Prompt budget; 0 means unlimited
        spec_summary: Abbreviated specs/ content for later iterations
        iteration_log: Recent one-line iteration summaries
        skip_plan_instructions: Omit plan-file rules (review/fix passes)
    """

    full_task: str
    task_with_skills: str
    current_task: Optional[PlanTask]
    task_info: TaskCount
    iteration: int
    max_iterations: int
    validation_feedback: Optional[str] = None
    max_input_tokens: int = 0
    spec_summary: Optional[str] = None
    iteration_log: Optional[str] = None
    skip_plan_instructions: bool = False
    plan_file: str = "IMPLEMENTATION_PLAN.md"
    specs_dir: str = "specs"
    feedback_chars_trimmed: int = 2000
    feedback_chars_minimal: int = 500
    key_points_chars: int = 500


@dataclass
class BuiltContext:
    prompt: str
    estimated_tokens: int
    was_trimmed: bool
    debug_info: str
    tier: str = TIER_FULL


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def compress_validation_feedback(feedback: Optional[str], max_chars: int = 2000) -> str:
    """Shrink validation feedback to roughly ``max_chars``.

    Section headers (``##``/``###``) are always kept; detail lines are kept
    while they fit. Once at least one failing section is in and the next
    would overflow, the rest are replaced by an omission count. The result
    can exceed ``max_chars`` only by the closing line and that count.
    """
    if not feedback:
        return ""

    stripped = strip_ansi(feedback)
    if len(stripped) <= max_chars:
        return stripped

    lines = stripped.split("\n")
    compressed: List[str] = ["## Validation Failed\n"]
    current_length = len(compressed[0])
    section_count = 0
    total_sections = sum(1 for line in lines if line.startswith("### "))

    for line in lines:
        if line.startswith("### "):
            if section_count >= 1 and current_length + len(line) + 1 > max_chars - 100:
                remaining = total_sections - section_count
                if remaining > 0:
                    compressed.append(f"\n[{remaining} more failing section(s) omitted]")
                break
            section_count += 1

        if line.startswith("### ") or line.startswith("## "):
            if line.strip() == "## Validation Failed":
                # Already emitted as the opening line.
                continue
            compressed.append(line)
            current_length += len(line) + 1
            continue

        if current_length + len(line) + 1 <= max_chars - 50:
            compressed.append(line)
            current_length += len(line) + 1

    compressed.append(FEEDBACK_CLOSING)
    return "\n".join(compressed)


def build_spec_summary(
    project_root: Path, specs_dir: str = "specs", max_chars: int = 1500
) -> Optional[str]:
    """Concatenate ``specs/*.md`` up to ``max_chars``, or None without specs."""
    directory = project_root / specs_dir
    try:
        spec_files = sorted(p for p in directory.iterdir() if p.suffix == ".md" and p.is_file())
    except OSError:
        return None
    if not spec_files:
        return None

    parts: List[str] = []
    total = 0
    for path in spec_files:
        available = max_chars - total
        if available <= 100:
            parts.append(f"\n[{len(spec_files) - len(parts)} more spec file(s) omitted]")
            break
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Skipping unreadable spec %s: %s", path, e)
            continue
        if len(content) > available:
            content = content[:available] + "\n[... truncated ...]"
        parts.append(content)
        total += len(content)

    return "\n---\n".join(parts) if parts else None


def build_trimmed_plan_context(
    task: PlanTask, info: TaskCount, plan_file: str = "IMPLEMENTATION_PLAN.md"
) -> str:
    """Current task checklist with completed/remaining counts."""
    lines: List[str] = []
    if info.completed > 0:
        lines.append(f"> {info.completed} task(s) already completed.")

    lines.append(f"\n## Current Task ({info.completed + 1}/{info.total}): {task.name}\n")

    if task.subtasks:
        lines.append("Subtasks:")
        lines.extend(f"- [{'x' if st.completed else ' '}] {st.name}" for st in task.subtasks)

    if info.pending > 1:
        lines.append(f"\n> {info.pending - 1} more task(s) remaining after this one.")

    lines.append(
        f"\nComplete these subtasks, then mark them done in {plan_file} by changing [ ] to [x]."
    )
    return "\n".join(lines)


def select_tier(iteration: int, has_structured_tasks: bool) -> str:
    if not has_structured_tasks:
        return TIER_RAW
    if iteration <= 1:
        return TIER_FULL
    if iteration <= 3:
        return TIER_TRIMMED
    return TIER_MINIMAL


def _preamble(opts: ContextBuildOptions) -> str:
    if opts.skip_plan_instructions:
        plan_rules = "- This is a fix/review pass. Focus on the specific instructions in the task below."
        finish_rule = "- Follow the completion instructions in the task below"
    else:
        plan_rules = (
            f"- Study {opts.plan_file} and work on ONE task at a time\n"
            f"- Mark each subtask [x] in {opts.plan_file} as soon as it is done\n"
            f"- Study {opts.specs_dir}/ for the original requirements"
        )
        finish_rule = '- When ALL tasks are complete, state "All tasks completed"'

    return (
        "You are a coding agent in an autonomous development loop "
        f"(iteration {opts.iteration}/{opts.max_iterations}).\n"
        "\n"
        "Rules:\n"
        "- The current working directory IS the project root. Create all files here, "
        "not in a new subdirectory.\n"
        f"{plan_rules}\n"
        "- Search the codebase before assuming something is not implemented\n"
        "- Implement completely, with no placeholders or stubs\n"
        "- Create files before importing them\n"
        "- Do not start dev servers or run long builds yourself; the loop runs lint "
        "between iterations and full validation at the end\n"
        f"{finish_rule}\n"
        "- If you learn how to run or build the project, update AGENTS.md\n"
    )


def _iteration_log_section(opts: ContextBuildOptions) -> str:
    if opts.iteration > 1 and opts.iteration_log:
        return (
            f"\n## Previous Iterations\n{opts.iteration_log}\n"
            "Use this history to avoid repeating failed approaches.\n"
        )
    return ""


def _build_raw(opts: ContextBuildOptions, task: Optional[PlanTask], debug: List[str]) -> str:
    preamble = _preamble(opts)
    if opts.iteration > 1:
        prompt = (
            f"{preamble}{_iteration_log_section(opts)}\n"
            "Continue working on the project.\n"
            f"If you haven't already, create {opts.plan_file} with structured tasks.\n"
            f"Study the {opts.specs_dir}/ directory for the original specification.\n"
            f"\n{opts.task_with_skills}"
        )
    else:
        prompt = f"{preamble}\n{opts.task_with_skills}"
    if opts.validation_feedback:
        compressed = compress_validation_feedback(opts.validation_feedback, opts.feedback_chars_trimmed)
        prompt = f"{prompt}\n\n{compressed}"
    debug.append("mode=raw (no structured tasks)")
    return prompt


def _build_full(opts: ContextBuildOptions, task: PlanTask, debug: List[str]) -> str:
    info = opts.task_info
    task_num = info.completed + 1
    subtasks = "\n".join(f"- [ ] {st.name}" for st in task.subtasks)
    prompt = (
        f"{_preamble(opts)}\n"
        f"{opts.task_with_skills}\n"
        f"\n## Current Task ({task_num}/{info.total}): {task.name}\n"
        f"\nSubtasks:\n{subtasks}\n"
        f"\nComplete these subtasks, then mark them done in {opts.plan_file} "
        "by changing [ ] to [x]."
    )
    debug.append("mode=full (iteration 1)")
    debug.append(f"included: preamble + full task + skills + task {task_num}/{info.total}")
    return prompt


def _build_trimmed(opts: ContextBuildOptions, task: PlanTask, debug: List[str]) -> str:
    plan_context = build_trimmed_plan_context(task, opts.task_info, opts.plan_file)
    if opts.spec_summary:
        spec_ref = f"\n## Spec Summary (reference, follow it faithfully)\n{opts.spec_summary}\n"
    else:
        spec_ref = f"\nStudy {opts.specs_dir}/ for requirements if needed."
    prompt = (
        f"{_preamble(opts)}{_iteration_log_section(opts)}\n"
        f"Continue working on the project. Check {opts.plan_file} for full progress.\n"
        f"{spec_ref}\n"
        f"{plan_context}"
    )
    if opts.validation_feedback:
        compressed = compress_validation_feedback(opts.validation_feedback, opts.feedback_chars_trimmed)
        prompt = f"{prompt}\n\n{compressed}"
        debug.append("included: compressed validation feedback")
    debug.append(f"mode=trimmed (iteration {opts.iteration})")
    debug.append("excluded: full task, skills")
    return prompt


def _build_minimal(opts: ContextBuildOptions, task: PlanTask, debug: List[str]) -> str:
    plan_context = build_trimmed_plan_context(task, opts.task_info, opts.plan_file)
    limit = opts.key_points_chars
    if opts.spec_summary:
        more = (
            f"\n[... see {opts.specs_dir}/ for full details ...]"
            if len(opts.spec_summary) > limit
            else ""
        )
        spec_hint = f"\nSpec key points:\n{opts.spec_summary[:limit]}{more}\n"
    else:
        spec_hint = f"\nSpecs in {opts.specs_dir}/."
    prompt = (
        f"{_preamble(opts)}{_iteration_log_section(opts)}\n"
        f"Continue working on the project. Check {opts.plan_file} for progress.\n"
        f"{spec_hint}\n"
        f"{plan_context}"
    )
    if opts.validation_feedback:
        compressed = compress_validation_feedback(opts.validation_feedback, opts.feedback_chars_minimal)
        prompt = f"{prompt}\n\n{compressed}"
        debug.append(f"included: minimal validation feedback ({opts.feedback_chars_minimal} chars)")
    debug.append(f"mode=minimal (iteration {opts.iteration})")
    debug.append("excluded: full task, skills, plan history")
    return prompt


def truncate_to_budget(prompt: str, max_input_tokens: int) -> str:
    """Cut ``prompt`` to fit ``max_input_tokens`` at a natural boundary.

    Prefers the last paragraph break before the target length, then the
    last line break; only when neither lies in the second half of the
    target is the text cut mid-line.
    """
    target = int(max_input_tokens * CHARS_PER_TOKEN_BUDGET)
    if len(prompt) <= target:
        return prompt
    cut = prompt.rfind("\n\n", 0, target)
    if cut < target * 0.5:
        cut = prompt.rfind("\n", 0, target)
    if cut < target * 0.5:
        cut = target
    return f"{prompt[:cut]}\n\n[Context truncated to fit {max_input_tokens} token budget]"


_BUILDERS = {
    TIER_RAW: _build_raw,
    TIER_FULL: _build_full,
    TIER_TRIMMED: _build_trimmed,
    TIER_MINIMAL: _build_minimal,
}


def build_iteration_context(opts: ContextBuildOptions) -> BuiltContext:
    """Build the prompt for ``opts.iteration``."""
    task = opts.current_task
    has_tasks = task is not None and opts.task_info.total > 0
    tier = select_tier(opts.iteration, has_tasks)
    debug: List[str] = []

    prompt = _BUILDERS[tier](opts, task, debug)
    was_trimmed = tier in (TIER_TRIMMED, TIER_MINIMAL)

    estimated = estimate_tokens(prompt)
    if opts.max_input_tokens > 0 and estimated > opts.max_input_tokens:
        truncated = truncate_to_budget(prompt, opts.max_input_tokens)
        if truncated != prompt:
            prompt = truncated
            was_trimmed = True
            debug.append(f"truncated: {estimated} -> ~{opts.max_input_tokens} tokens")

    final_tokens = estimate_tokens(prompt)
    debug.append(f"tokens: ~{final_tokens}")
    return BuiltContext(
        prompt=prompt,
        estimated_tokens=final_tokens,
        was_trimmed=was_trimmed,
        debug_info=" | ".join(debug),
        tier=tier,
    )


def load_skills(project_root: Path, skills_dir: str = ".ralph/skills") -> List[str]:
    """Skill instruction files (``*.md``) in name order."""
    directory = project_root / skills_dir
    try:
        paths = sorted(p for p in directory.iterdir() if p.suffix == ".md" and p.is_file())
    except OSError:
        return []
    skills: List[str] = []
    for path in paths:
        try:
            text = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable skill %s: %s", path, e)
            continue
        if text:
            skills.append(text)
    return skills


def build_task_with_skills(task: str, skills: List[str]) -> str:
    if not skills:
        return task
    return task + "\n\n## Skills\n\n" + "\n\n---\n\n".join(skills)
