"""Detect whether an iteration changed anything in the project.

In a git repository progress means a new HEAD or a different set of dirty
paths (loop bookkeeping under ``.ralph/`` and the session file excluded).
Outside git, a fingerprint of file modification times stands in.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

from .subprocess_helper import run_subprocess

logger = logging.getLogger(__name__)

_IGNORED_PREFIXES = (".ralph/",)
_SKIP_DIRS = {".git", ".ralph", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}


def _git(project_root: Path, *args: str) -> Optional[str]:
    try:
        result = run_subprocess(["git", *args], cwd=project_root, timeout=30)
    except RuntimeError as e:
        logger.debug("git %s failed: %s", args[0], e)
        return None
    if result.failed:
        return None
    return result.stdout


def is_git_repo(project_root: Path) -> bool:
    out = _git(project_root, "rev-parse", "--is-inside-work-tree")
    return (out or "").strip() == "true"


def git_head(project_root: Path) -> str:
    """Current HEAD commit hash; empty if there are no commits yet."""
    return (_git(project_root, "rev-parse", "--verify", "HEAD") or "").strip()


def git_changed_files(project_root: Path, ignore: Iterable[str] = (".ralph-session.json",)) -> FrozenSet[str]:
    """Dirty paths from ``git status --porcelain`` minus loop bookkeeping."""
    out = _git(project_root, "status", "--porcelain", "--untracked-files=all")
    if out is None:
        return frozenset()
    ignored = set(ignore)
    paths = set()
    for line in out.splitlines():
        if not line.strip():
            continue
        # porcelain: XY<space>path, renames as "old -> new"
        path = line[3:].strip() if len(line) > 3 else line.strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        if any(path.startswith(p) for p in _IGNORED_PREFIXES) or path in ignored:
            continue
        paths.add(path)
    return frozenset(paths)


def mtime_fingerprint(project_root: Path, ignore: Iterable[str] = (".ralph-session.json",)) -> str:
    ignored = set(ignore)
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(project_root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            path = Path(dirpath) / name
            rel = path.relative_to(project_root).as_posix()
            if rel in ignored:
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            digest.update(f"{rel}:{st.st_mtime_ns}:{st.st_size}\n".encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class WorkspaceSnapshot:
    head: str = ""
    changed: FrozenSet[str] = field(default_factory=frozenset)
    # Content hashes of dirty files, so editing an already-dirty file counts.
    changed_digest: str = ""
    fingerprint: str = ""
    is_git: bool = False

    @classmethod
    def capture(cls, project_root: Path, session_file: str = ".ralph-session.json") -> "WorkspaceSnapshot":
        ignore = (session_file,)
        if is_git_repo(project_root):
            changed = git_changed_files(project_root, ignore)
            return cls(
                head=git_head(project_root),
                changed=changed,
                changed_digest=_digest_files(project_root, changed),
                is_git=True,
            )
        return cls(fingerprint=mtime_fingerprint(project_root, ignore))


def _digest_files(project_root: Path, paths: Iterable[str]) -> str:
    digest = hashlib.sha256()
    for rel in sorted(paths):
        path = project_root / rel
        digest.update(rel.encode("utf-8"))
        try:
            if path.is_file():
                digest.update(hashlib.sha256(path.read_bytes()).digest())
        except OSError:
            continue
    return digest.hexdigest()


def made_progress(before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> bool:
    """True if the iteration committed or changed files."""
    if before.is_git != after.is_git:
        return True
    if after.is_git:
        return (
            before.head != after.head
            or before.changed != after.changed
            or before.changed_digest != after.changed_digest
        )
    return before.fingerprint != after.fingerprint


def new_commit(before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> Optional[str]:
    if after.is_git and after.head and after.head != before.head:
        return after.head
    return None
