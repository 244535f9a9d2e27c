"""Tests for implementation plan parsing."""

from __future__ import annotations

from pathlib import Path

from ralph_pilot.plan import all_tasks_complete, count_tasks, current_task, parse_plan

HEADING_PLAN = """# Implementation Plan

## Phase 1

### Task 1: Scaffold project
- [x] Create package.json
- [x] Add lint script

### Task 2: Build landing page
- [x] Hero section
- [ ] Footer

## Phase 2

### Task 3: Contact form
- [ ] Form markup
- [ ] Validation
"""


def test_heading_tasks_are_counted():
    """Test that ### headings with checkbox subtasks become tasks."""
    count = parse_plan(HEADING_PLAN)

    assert count.total == 3
    assert count.completed == 1
    assert count.pending == 2
    assert [t.name for t in count.tasks] == [
        "Scaffold project",
        "Build landing page",
        "Contact form",
    ]


def test_current_task_is_first_incomplete():
    """Test that the current task is the first one with open subtasks."""
    task = current_task(parse_plan(HEADING_PLAN))

    assert task is not None
    assert task.name == "Build landing page"
    assert task.index == 1
    assert [(s.name, s.completed) for s in task.subtasks] == [
        ("Hero section", True),
        ("Footer", False),
    ]


def test_heading_done_marker_completes_task_without_subtasks():
    """Test that a heading tagged (done) counts as completed."""
    count = parse_plan("### Setup (done)\n\n### Deploy\n- [ ] push\n")
    assert count.total == 2
    assert count.tasks[0].completed is True
    assert count.tasks[0].name == "Setup"


def test_headings_without_checkboxes_are_not_tasks():
    """Test that prose sections such as ### Notes are skipped."""
    count = parse_plan("### Notes\nSome prose.\n\n### Task 1: Real\n- [ ] do it\n")
    assert count.total == 1
    assert count.tasks[0].name == "Real"


def test_checkbox_layout_with_nested_subtasks():
    """Test the flat checkbox layout with indented subtasks."""
    text = """- [ ] Scaffold
  - [x] package.json
  - [x] lint
- [ ] Landing page
  - [ ] hero
- [x] Readme
"""
    count = parse_plan(text)
    assert count.total == 3
    # Scaffold completes through its children even though the parent box is open.
    assert [t.completed for t in count.tasks] == [True, False, True]
    assert current_task(count).name == "Landing page"


def test_fenced_checkboxes_are_ignored():
    """Test that checkboxes inside code fences are not counted."""
    text = "### Task\n- [ ] real\n```\n- [ ] fake\n```\n"
    count = parse_plan(text)
    assert count.total == 1
    assert len(count.tasks[0].subtasks) == 1


def test_all_tasks_complete():
    """Test completion requires at least one task."""
    assert all_tasks_complete(parse_plan("- [x] one\n- [X] two\n")) is True
    assert all_tasks_complete(parse_plan("- [x] one\n- [ ] two\n")) is False
    assert all_tasks_complete(parse_plan("no tasks here")) is False


def test_missing_plan_file_has_no_tasks(tmp_path: Path):
    """Test that a missing plan yields an empty count."""
    count = count_tasks(tmp_path / "IMPLEMENTATION_PLAN.md")
    assert count.total == 0
    assert current_task(count) is None


def test_count_tasks_reads_file(tmp_path: Path):
    """Test reading the plan from disk."""
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text(HEADING_PLAN, encoding="utf-8")
    assert count_tasks(plan).completed == 1
