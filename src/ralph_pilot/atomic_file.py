"""Crash-safe file writes for loop state.

The session checkpoint is rewritten after every iteration; a process killed
mid-write must leave either the previous checkpoint or the new one on disk,
never a truncated file. Each helper writes a sibling temp file and then
``replace()``s it over the target, which is atomic on one filesystem.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict


def _temp_path_for(path: Path) -> Path:
    return path.with_name(f".{path.name}.{os.getpid()}.tmp")


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write text to ``path`` atomically, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_path_for(path)
    try:
        temp_path.write_text(content, encoding=encoding)
        temp_path.replace(path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def atomic_write_json(path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Serialize ``data`` as JSON and write it atomically.

    Raises:
        TypeError: If data is not JSON-serializable
        OSError: If the write or rename fails
    """
    content = json.dumps(data, indent=indent, separators=(",", ": ")) + "\n"
    atomic_write_text(path, content)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write binary content (diff images) atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _temp_path_for(path)
    try:
        temp_path.write_bytes(content)
        temp_path.replace(path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
