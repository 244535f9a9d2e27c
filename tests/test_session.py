"""Tests for session persistence, pause/resume and locking."""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ralph_pilot.session import (
    FAILED,
    PAUSED,
    RUNNING,
    SessionCorruptError,
    SessionLock,
    SessionLockedError,
    SessionOptions,
    SessionStore,
    format_session_info,
)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> SessionStore:
    return SessionStore(tmp_path, clock=clock)


def test_start_creates_running_session(store: SessionStore):
    """Test that a fresh directory gets a new running session on disk."""
    session, resumed = store.start("Build the app", 10, "claude")

    assert resumed is False
    assert session.state == RUNNING
    assert session.current_iteration == 0
    assert store.path.exists()
    data = json.loads(store.path.read_text())
    assert data["task"] == "Build the app"
    assert data["agentName"] == "claude"


def test_checkpoint_persists_iteration_and_fields(store: SessionStore, tmp_path: Path, clock):
    store.start("task", 10, "claude")
    store.checkpoint(3, last_output="ok", circuit_breaker={"consecutiveFailures": 1})

    reloaded = SessionStore(tmp_path, clock=clock).load()
    assert reloaded.current_iteration == 3
    assert reloaded.checkpoint.last_output == "ok"
    assert reloaded.checkpoint.circuit_breaker == {"consecutiveFailures": 1}


def test_checkpoint_rejects_unknown_fields(store: SessionStore):
    store.start("task", 10, "claude")
    with pytest.raises(TypeError):
        store.checkpoint(1, not_a_field=1)


def test_pause_then_resume(store: SessionStore, clock: FakeClock):
    """Test the running -> paused -> running transitions."""
    store.start("task", 10, "claude")
    paused = store.pause()
    assert paused.state == PAUSED
    assert paused.paused_at is not None

    clock.advance(hours=2)
    resumed = store.resume()
    assert resumed.state == RUNNING
    assert resumed.resumed_at is not None


def test_pause_only_from_running(store: SessionStore):
    store.start("task", 10, "claude")
    store.pause()
    assert store.pause() is None


def test_resume_only_from_paused(store: SessionStore):
    store.start("task", 10, "claude")
    assert store.resume() is None


def test_start_resumes_paused_session(store: SessionStore, tmp_path: Path, clock):
    """Test that starting again picks up a paused session and its counter."""
    store.start("task", 10, "claude")
    store.checkpoint(4)
    store.pause()

    fresh = SessionStore(tmp_path, clock=clock)
    session, resumed = fresh.start("task", 10, "claude")
    assert resumed is True
    assert session.current_iteration == 4
    assert session.state == RUNNING


def test_force_new_ignores_paused_session(store: SessionStore, tmp_path: Path, clock):
    first, _ = store.start("task", 10, "claude")
    store.pause()

    session, resumed = SessionStore(tmp_path, clock=clock).start("task", 10, "claude", force_new=True)
    assert resumed is False
    assert session.id != first.id


def test_paused_session_expires_after_24h(store: SessionStore, clock: FakeClock):
    """Test that a session paused 24h ago is treated as absent and removed on resume."""
    store.start("task", 10, "claude")
    store.pause()
    clock.advance(hours=24)

    assert store.load() is None
    assert store.resume() is None
    assert not store.path.exists()


def test_expiry_measured_from_pause_not_start(store: SessionStore, clock: FakeClock):
    store.start("task", 10, "claude")
    clock.advance(hours=20)
    store.pause()
    clock.advance(hours=10)
    assert store.load() is not None


def test_complete_deletes_file(store: SessionStore):
    store.start("task", 10, "claude")
    store.complete()
    assert not store.path.exists()


def test_fail_keeps_file_with_reason(store: SessionStore, tmp_path: Path, clock):
    store.start("task", 10, "claude")
    store.fail("circuit breaker: 3 consecutive failures")

    reloaded = SessionStore(tmp_path, clock=clock).load()
    assert reloaded.state == FAILED
    assert "circuit breaker" in reloaded.checkpoint.last_output


def test_failed_session_is_not_resumed(store: SessionStore, tmp_path: Path, clock):
    store.start("task", 10, "claude")
    store.fail("boom")
    _, resumed = SessionStore(tmp_path, clock=clock).start("task", 10, "claude")
    assert resumed is False


def test_interrupted_running_session_can_be_recovered(store: SessionStore, tmp_path: Path, clock):
    """Test that a session left running by a dead process is resumable on request."""
    store.start("task", 10, "claude")
    store.checkpoint(2)

    session, resumed = SessionStore(tmp_path, clock=clock).start(
        "task", 10, "claude", interrupted_is_resumable=True
    )
    assert resumed is True
    assert session.current_iteration == 2


def test_corrupt_file_raises(store: SessionStore):
    store.path.write_text("{not json")
    with pytest.raises(SessionCorruptError):
        store.load()


def test_missing_required_field_is_corrupt(store: SessionStore):
    store.path.write_text(json.dumps({"id": "x", "state": "running"}))
    with pytest.raises(SessionCorruptError):
        store.load()


def test_options_round_trip(store: SessionStore, tmp_path: Path, clock):
    store.start("task", 5, "codex", options=SessionOptions(validate=False, max_cost_usd=3.0))
    reloaded = SessionStore(tmp_path, clock=clock).load()
    assert reloaded.options.validate is False
    assert reloaded.options.max_cost_usd == 3.0


def test_format_session_info(store: SessionStore, clock: FakeClock):
    session, _ = store.start("x" * 80, 10, "claude")
    store.checkpoint(3)
    store.record_commit("feat: hero")
    clock.advance(hours=1, minutes=5)

    lines = format_session_info(session, now=clock())
    assert lines[0] == f"Session ID: {session.id[:8]}"
    assert "State: running" in lines
    assert "Progress: 3/10 iterations" in lines
    assert "Elapsed: 1h 5m" in lines
    assert any(line.endswith("...") for line in lines if line.startswith("Task:"))
    assert "Commits: 1" in lines


def test_lock_rejects_second_live_holder(tmp_path: Path):
    """Test that a lock held by another live process is refused."""
    lock_path = tmp_path / ".ralph" / "pilot.lock"
    lock_path.parent.mkdir()
    # The parent process is alive and is not us.
    lock_path.write_text(str(os.getppid()))

    with pytest.raises(SessionLockedError):
        SessionLock(lock_path).acquire()


def test_lock_takes_over_stale_lock(tmp_path: Path):
    lock_path = tmp_path / ".ralph" / "pilot.lock"
    lock_path.parent.mkdir()
    lock_path.write_text("999999999")

    with SessionLock(lock_path):
        assert lock_path.read_text() == str(os.getpid())
    assert not lock_path.exists()
