"""Durable loop session: pause, resume and crash recovery.

A session file (``.ralph-session.json`` at the project root) is rewritten
after every iteration. It is deleted when the loop completes, kept with
``state="failed"`` when the loop aborts, and ignored once it is older than
the expiry window (24h by default, measured from the pause time if paused,
otherwise from the start time).

A PID lock file next to the other loop state keeps two loops from driving
the same directory at once.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .atomic_file import atomic_write_json

logger = logging.getLogger(__name__)

SESSION_FILE = ".ralph-session.json"
LOCK_FILE = ".ralph/pilot.lock"

RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
SESSION_STATES = (RUNNING, PAUSED, COMPLETED, FAILED)

Clock = Callable[[], datetime]


class SessionCorruptError(ValueError):
    """The session file exists but cannot be parsed."""


class SessionLockedError(RuntimeError):
    """Another live loop process holds the session lock."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# -------------------------
# Dataclasses
# -------------------------


@dataclass
class SessionCheckpoint:
    """State needed to continue a loop where it stopped."""

    last_commit: Optional[str] = None
    last_output: Optional[str] = None
    last_feedback: Optional[str] = None
    validation_results: List[Dict[str, Any]] = field(default_factory=list)
    circuit_breaker: Dict[str, Any] = field(default_factory=dict)
    cost_stats: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionOptions:
    validate: bool = True
    visual: bool = True
    commit: bool = False
    push: bool = False
    rate_limit: int = 0
    model: Optional[str] = None
    max_cost_usd: float = 0.0


@dataclass
class LoopSession:
    id: str
    task: str
    started_at: str
    max_iterations: int
    cwd: str
    agent_name: str
    current_iteration: int = 0
    state: str = RUNNING
    paused_at: Optional[str] = None
    resumed_at: Optional[str] = None
    checkpoint: SessionCheckpoint = field(default_factory=SessionCheckpoint)
    options: SessionOptions = field(default_factory=SessionOptions)
    commits: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        cp = self.checkpoint
        return {
            "id": self.id,
            "startedAt": self.started_at,
            "pausedAt": self.paused_at,
            "resumedAt": self.resumed_at,
            "task": self.task,
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "state": self.state,
            "checkpoint": {
                "lastCommit": cp.last_commit,
                "lastOutput": cp.last_output,
                "lastFeedback": cp.last_feedback,
                "validationResults": cp.validation_results,
                "circuitBreakerState": cp.circuit_breaker,
                "costStats": cp.cost_stats,
            },
            "options": asdict(self.options),
            "commits": list(self.commits),
            "cwd": self.cwd,
            "agentName": self.agent_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopSession":
        """Build a session from its JSON form.

        Raises:
            KeyError, TypeError, ValueError: For missing or malformed fields
        """
        cp_raw = data.get("checkpoint") or {}
        checkpoint = SessionCheckpoint(
            last_commit=cp_raw.get("lastCommit"),
            last_output=cp_raw.get("lastOutput"),
            last_feedback=cp_raw.get("lastFeedback"),
            validation_results=list(cp_raw.get("validationResults") or []),
            circuit_breaker=dict(cp_raw.get("circuitBreakerState") or {}),
            cost_stats=dict(cp_raw.get("costStats") or {}),
        )
        opt_raw = data.get("options") or {}
        known = {f.name for f in fields(SessionOptions)}
        options = SessionOptions(**{k: v for k, v in opt_raw.items() if k in known})

        state = str(data["state"])
        if state not in SESSION_STATES:
            raise ValueError(f"unknown session state {state!r}")
        _parse_iso(str(data["startedAt"]))

        return cls(
            id=str(data["id"]),
            task=str(data["task"]),
            started_at=str(data["startedAt"]),
            max_iterations=int(data["maxIterations"]),
            cwd=str(data.get("cwd", "")),
            agent_name=str(data.get("agentName", "")),
            current_iteration=int(data.get("currentIteration", 0)),
            state=state,
            paused_at=data.get("pausedAt"),
            resumed_at=data.get("resumedAt"),
            checkpoint=checkpoint,
            options=options,
            commits=[str(c) for c in data.get("commits") or []],
        )


def is_expired(session: LoopSession, now: datetime, expiry_hours: float = 24.0) -> bool:
    """True once ``expiry_hours`` have passed since the pause (or start)."""
    reference = _parse_iso(session.paused_at or session.started_at)
    return now - reference >= timedelta(hours=expiry_hours)


# -------------------------
# Lock
# -------------------------


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # No signal-0 probe on Windows; trust the lock.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionLock:
    """PID lock file; stale locks left by dead processes are taken over."""

    def __init__(self, path: Path):
        self.path = path
        self._held = False

    def holder(self) -> Optional[int]:
        """PID of a live process holding the lock, if any."""
        try:
            pid = int(self.path.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return None
        if pid == os.getpid() or not _pid_alive(pid):
            return None
        return pid

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            SessionLockedError: If another live process holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self.holder()
                if pid is not None:
                    raise SessionLockedError(
                        f"Another ralph-pilot loop (pid {pid}) is running in this directory"
                    )
                logger.info("Removing stale lock %s", self.path)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(os.getpid()))
            self._held = True
            return
        raise SessionLockedError(f"Could not acquire {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            if self.path.read_text(encoding="utf-8").strip() == str(os.getpid()):
                self.path.unlink()
        except OSError as e:
            logger.debug("Lock release failed: %s", e)
        self._held = False

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


# -------------------------
# Store
# -------------------------


class SessionStore:
    """Load and persist the session for one project directory.

    Args:
        project_root: Directory the loop operates on
        filename: Session file name relative to ``project_root``
        expiry_hours: Age after which a session is ignored
        clock: Source of "now" (injectable for tests)
    """

    def __init__(
        self,
        project_root: Path,
        filename: str = SESSION_FILE,
        expiry_hours: float = 24.0,
        clock: Optional[Clock] = None,
    ):
        self.project_root = project_root
        self.path = project_root / filename
        self.expiry_hours = expiry_hours
        self.clock: Clock = clock or utc_now
        self.session: Optional[LoopSession] = None

    # Persistence

    def _read(self) -> Optional[LoopSession]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LoopSession.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SessionCorruptError(f"Corrupt session file {self.path}: {e}") from e

    def save(self, session: LoopSession) -> None:
        atomic_write_json(self.path, session.to_dict())
        self.session = session

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)
        self.session = None

    def load(self) -> Optional[LoopSession]:
        """The stored session, or None if absent or expired.

        Raises:
            SessionCorruptError: If the file exists but cannot be parsed
        """
        session = self._read()
        if session is None:
            return None
        if is_expired(session, self.clock(), self.expiry_hours):
            logger.info("Ignoring expired session %s", session.id[:8])
            return None
        return session

    def is_expired(self, session: LoopSession) -> bool:
        return is_expired(session, self.clock(), self.expiry_hours)

    def status(self) -> Optional[LoopSession]:
        """The session on disk whatever its state or age, for display.

        Raises:
            SessionCorruptError: If the file exists but cannot be parsed
        """
        return self._read()

    # Lifecycle

    def create(
        self,
        task: str,
        max_iterations: int,
        agent_name: str,
        options: Optional[SessionOptions] = None,
    ) -> LoopSession:
        session = LoopSession(
            id=str(uuid.uuid4()),
            task=task,
            started_at=_iso(self.clock()),
            max_iterations=max_iterations,
            cwd=str(self.project_root),
            agent_name=agent_name,
            options=options or SessionOptions(),
        )
        self.save(session)
        return session

    def start(
        self,
        task: str,
        max_iterations: int,
        agent_name: str,
        options: Optional[SessionOptions] = None,
        force_new: bool = False,
        interrupted_is_resumable: bool = False,
    ) -> Tuple[LoopSession, bool]:
        """Resume a paused, unexpired session or create a new one.

        Args:
            interrupted_is_resumable: Also resume a session left ``running``
                by a process that died (the caller has verified no live
                process holds the lock)

        Returns:
            ``(session, resumed)``
        """
        if not force_new:
            existing = self.load()
            if (
                existing is not None
                and existing.state == RUNNING
                and interrupted_is_resumable
            ):
                logger.info("Recovering interrupted session %s", existing.id[:8])
                existing.state = PAUSED
                existing.paused_at = existing.paused_at or _iso(self.clock())
                self.save(existing)
            if existing is not None and existing.state == PAUSED:
                resumed = self.resume()
                if resumed is not None:
                    return resumed, True
        return self.create(task, max_iterations, agent_name, options), False

    def checkpoint(self, iteration: int, **updates: Any) -> LoopSession:
        """Record the iteration counter and merge checkpoint fields.

        Raises:
            RuntimeError: If no session is active
        """
        if self.session is None:
            raise RuntimeError("No active session to checkpoint")
        session = self.session
        session.current_iteration = iteration
        for key, value in updates.items():
            if not hasattr(session.checkpoint, key):
                raise TypeError(f"unknown checkpoint field {key!r}")
            setattr(session.checkpoint, key, value)
        self.save(session)
        return session

    def record_commit(self, message: str) -> None:
        if self.session is None:
            return
        self.session.commits.append(message)
        self.session.checkpoint.last_commit = message
        self.save(self.session)

    def pause(self) -> Optional[LoopSession]:
        """Move a running session to paused; no-op (None) from any other state."""
        session = self.session or self.load()
        if session is None or session.state != RUNNING:
            return None
        session.state = PAUSED
        session.paused_at = _iso(self.clock())
        self.save(session)
        return session

    def resume(self) -> Optional[LoopSession]:
        """Move a paused, unexpired session back to running.

        An expired paused session is deleted and None returned.
        """
        session = self._read()
        if session is None or session.state != PAUSED:
            return None
        if self.is_expired(session):
            logger.info("Paused session %s expired, discarding", session.id[:8])
            self.delete()
            return None
        session.state = RUNNING
        session.resumed_at = _iso(self.clock())
        self.save(session)
        return session

    def complete(self) -> None:
        """Finish successfully; the session file is removed."""
        if self.session is not None:
            self.session.state = COMPLETED
        self.delete()

    def fail(self, reason: Optional[str] = None) -> None:
        """Mark the session failed and keep it on disk for inspection."""
        session = self.session or self._read()
        if session is None:
            return
        session.state = FAILED
        session.checkpoint.last_output = reason
        self.save(session)

    def clear(self) -> bool:
        """Discard any stored session. Returns True if one existed."""
        existed = self.path.exists()
        self.delete()
        return existed


# -------------------------
# Display
# -------------------------


def format_elapsed(start: datetime, now: datetime) -> str:
    minutes = max(0, int((now - start).total_seconds() // 60))
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    return f"{minutes}m"


def format_session_info(
    session: LoopSession, now: Optional[datetime] = None, expiry_hours: float = 24.0
) -> List[str]:
    """Human-readable status lines for ``ralph-pilot status``."""
    now = now or utc_now()
    expired = is_expired(session, now, expiry_hours)
    task = session.task if len(session.task) <= 60 else session.task[:60] + "..."

    lines = [
        f"Session ID: {session.id[:8]}",
        f"State: {session.state}{' (expired)' if expired else ''}",
        f"Task: {task}",
        f"Progress: {session.current_iteration}/{session.max_iterations} iterations",
        f"Elapsed: {format_elapsed(_parse_iso(session.started_at), now)}",
        f"Agent: {session.agent_name}",
    ]
    if session.commits:
        lines.append(f"Commits: {len(session.commits)}")
    if session.paused_at:
        lines.append(f"Paused: {session.paused_at}")
    if session.state == FAILED and session.checkpoint.last_output:
        lines.append(f"Failure: {session.checkpoint.last_output[:200]}")
    return lines
