"""Read the implementation plan checklist.

The plan file (``IMPLEMENTATION_PLAN.md`` by default) is written and updated
by the agent; the loop only reads it to learn how many tasks exist, how many
are checked off, and which task is next. Two layouts are recognised:

Heading tasks, subtasks as checkboxes::

    ### Task 1: Scaffold project
    - [x] Create package.json
    - [ ] Add lint script

Checkbox tasks, subtasks as nested checkboxes::

    - [ ] Scaffold project
      - [x] Create package.json
      - [ ] Add lint script

Anything inside fenced code blocks is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```")
_HEADING_RE = re.compile(r"^\s*(#{1,6})\s+(.+?)\s*$")
_CHECKBOX_RE = re.compile(r"^(\s*)[-*]\s+\[([^\]])\]\s+(.+?)\s*$")
_TASK_PREFIX_RE = re.compile(r"^(?:task\s+\d+(?:\.\d+)*\s*[:.)-]\s*)", re.IGNORECASE)
_HEADING_DONE_RE = re.compile(
    r"(\[[xX]\]|✓|✅|\((?:done|completed?)\))", re.IGNORECASE
)

# Task headings are ### and deeper; ## groups tasks into phases.
_TASK_HEADING_LEVEL = 3


@dataclass
class Subtask:
    name: str
    completed: bool


@dataclass
class PlanTask:
    """One actionable task from the plan."""

    name: str
    completed: bool
    index: int
    subtasks: List[Subtask] = field(default_factory=list)


@dataclass
class TaskCount:
    """Task totals for a plan.

    Attributes:
        total: Number of tasks
        completed: Tasks checked off
        pending: ``total - completed``
        tasks: The tasks in document order
    """

    total: int = 0
    completed: int = 0
    pending: int = 0
    tasks: List[PlanTask] = field(default_factory=list)


def _checked(marker: str) -> bool:
    return marker.strip().lower() == "x"


def _clean_heading(text: str) -> str:
    name = _HEADING_DONE_RE.sub("", text).strip()
    name = _TASK_PREFIX_RE.sub("", name).strip()
    return name or text.strip()


def _live_lines(text: str) -> List[str]:
    """Lines outside fenced code blocks (fenced lines become blank)."""
    out: List[str] = []
    in_fence = False
    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            out.append("")
            continue
        out.append("" if in_fence else line)
    return out


def _parse_heading_tasks(lines: List[str]) -> List[PlanTask]:
    tasks: List[PlanTask] = []
    current: Optional[PlanTask] = None
    heading_done = False

    def _close() -> None:
        nonlocal current
        if current is None:
            return
        if current.subtasks:
            all_done = all(st.completed for st in current.subtasks)
            current.completed = heading_done or all_done
            tasks.append(current)
        elif heading_done:
            current.completed = True
            tasks.append(current)
        current = None

    for line in lines:
        hm = _HEADING_RE.match(line)
        if hm:
            _close()
            if len(hm.group(1)) >= _TASK_HEADING_LEVEL:
                raw = hm.group(2)
                heading_done = bool(_HEADING_DONE_RE.search(raw))
                current = PlanTask(name=_clean_heading(raw), completed=False, index=0)
            continue
        if current is None:
            continue
        cm = _CHECKBOX_RE.match(line)
        if cm:
            current.subtasks.append(Subtask(name=cm.group(3), completed=_checked(cm.group(2))))
    _close()

    for i, task in enumerate(tasks):
        task.index = i
    return tasks


def _parse_checkbox_tasks(lines: List[str]) -> List[PlanTask]:
    boxes = []
    for line in lines:
        cm = _CHECKBOX_RE.match(line)
        if cm:
            indent = len(cm.group(1).expandtabs(4))
            boxes.append((indent, cm.group(3), _checked(cm.group(2))))
    if not boxes:
        return []

    top = min(indent for indent, _, _ in boxes)
    tasks: List[PlanTask] = []
    for indent, name, done in boxes:
        if indent == top or not tasks:
            tasks.append(PlanTask(name=name, completed=done, index=len(tasks)))
        else:
            tasks[-1].subtasks.append(Subtask(name=name, completed=done))

    for task in tasks:
        # A parent left unchecked after all its children are done still counts.
        if not task.completed and task.subtasks:
            task.completed = all(st.completed for st in task.subtasks)
    return tasks


def parse_plan(text: str) -> TaskCount:
    """Parse plan markdown into a :class:`TaskCount`."""
    lines = _live_lines(text)
    tasks = _parse_heading_tasks(lines)
    if not tasks:
        tasks = _parse_checkbox_tasks(lines)
    completed = sum(1 for t in tasks if t.completed)
    return TaskCount(
        total=len(tasks),
        completed=completed,
        pending=len(tasks) - completed,
        tasks=tasks,
    )


def count_tasks(plan_path: Path) -> TaskCount:
    """Count tasks in ``plan_path``; a missing or unreadable plan has none."""
    try:
        text = plan_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return TaskCount()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read plan %s: %s", plan_path, e)
        return TaskCount()
    return parse_plan(text)


def current_task(count: TaskCount) -> Optional[PlanTask]:
    """First incomplete task, or None when everything is done."""
    for task in count.tasks:
        if not task.completed:
            return task
    return None


def all_tasks_complete(count: TaskCount) -> bool:
    return count.total > 0 and count.pending == 0
