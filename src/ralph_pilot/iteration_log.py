"""Short per-iteration history fed back to the agent.

Each iteration appends one line to ``.ralph/iteration-log.md``. From the
second iteration on, the most recent entries are included in the prompt so
the agent can see which approaches already failed, without the cost of
replaying full output.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .atomic_file import atomic_write_text

logger = logging.getLogger(__name__)

_ENTRY_RE = re.compile(r"^- Iteration \d+:")
_HEADER = "# Iteration Log\n\n"
_DETAIL_MAX_CHARS = 160


@dataclass
class IterationEntry:
    """Summary of one finished iteration.

    Attributes:
        iteration: 1-based iteration number
        outcome: Short verdict, e.g. "validation failed" or "passed"
        details: Extra facts (failing commands, task, visual diff)
    """

    iteration: int
    outcome: str
    details: str = ""

    def render(self) -> str:
        details = " ".join(self.details.split())
        if len(details) > _DETAIL_MAX_CHARS:
            details = details[: _DETAIL_MAX_CHARS - 3] + "..."
        line = f"- Iteration {self.iteration}: {self.outcome}"
        if details:
            line += f"; {details}"
        return line


class IterationLog:
    """Append-only iteration log with a sliding read window."""

    def __init__(self, path: Path):
        self.path = path

    def entries(self) -> List[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Could not read iteration log %s: %s", self.path, e)
            return []
        return [line for line in text.splitlines() if _ENTRY_RE.match(line)]

    def append(self, entry: IterationEntry) -> None:
        lines = self.entries()
        lines.append(entry.render())
        atomic_write_text(self.path, _HEADER + "\n".join(lines) + "\n")

    def read_recent(self, max_entries: int = 10) -> Optional[str]:
        """The last ``max_entries`` entries as markdown, or None if empty."""
        lines = self.entries()
        if not lines or max_entries <= 0:
            return None
        window = lines[-max_entries:]
        omitted = len(lines) - len(window)
        if omitted:
            window.insert(0, f"({omitted} earlier iteration(s) omitted)")
        return "\n".join(window)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
