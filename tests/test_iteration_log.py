"""Tests for the iteration log."""

from __future__ import annotations

from pathlib import Path

from ralph_pilot.iteration_log import IterationEntry, IterationLog


def test_empty_log_reads_as_none(tmp_path: Path):
    log = IterationLog(tmp_path / ".ralph" / "iteration-log.md")
    assert log.read_recent() is None
    assert log.entries() == []


def test_append_and_read(tmp_path: Path):
    log = IterationLog(tmp_path / ".ralph" / "iteration-log.md")
    log.append(IterationEntry(1, "validation failed", "lint: 3 errors"))
    log.append(IterationEntry(2, "passed"))

    assert log.read_recent() == (
        "- Iteration 1: validation failed; lint: 3 errors\n- Iteration 2: passed"
    )
    assert log.path.read_text().startswith("# Iteration Log")


def test_sliding_window_keeps_latest(tmp_path: Path):
    """Test that only the most recent entries are returned."""
    log = IterationLog(tmp_path / "log.md")
    for i in range(1, 8):
        log.append(IterationEntry(i, "failed"))

    recent = log.read_recent(max_entries=3).splitlines()
    assert recent[0] == "(4 earlier iteration(s) omitted)"
    assert recent[1:] == [
        "- Iteration 5: failed",
        "- Iteration 6: failed",
        "- Iteration 7: failed",
    ]


def test_details_are_single_line_and_bounded():
    line = IterationEntry(3, "failed", "a\nb   c" + "x" * 500).render()
    assert "\n" not in line
    assert line.startswith("- Iteration 3: failed; a b c")
    assert line.endswith("...")


def test_clear(tmp_path: Path):
    log = IterationLog(tmp_path / "log.md")
    log.append(IterationEntry(1, "passed"))
    log.clear()
    assert log.read_recent() is None
