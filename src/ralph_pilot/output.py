"""Verbosity-aware console output for the CLI.

Diagnostics go through :mod:`logging`; this module prints what the user
asked to see: run summaries, session status, and JSON for ``--format json``.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Optional

_VERBOSITIES = ("quiet", "normal", "verbose")
_FORMATS = ("text", "json")


@dataclass
class OutputConfig:
    """Output configuration.

    Attributes:
        verbosity: "quiet", "normal", or "verbose"
        format: "text" or "json"
    """

    verbosity: str = "normal"
    format: str = "text"


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    """Return the CLI-set config, or one derived from the environment."""
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("RALPH_PILOT_VERBOSITY", "normal")
    format_type = os.environ.get("RALPH_PILOT_FORMAT", "text")
    if verbosity not in _VERBOSITIES:
        verbosity = "normal"
    if format_type not in _FORMATS:
        format_type = "text"
    return OutputConfig(verbosity=verbosity, format=format_type)


def set_output_config(config: OutputConfig) -> None:
    global _output_config
    _output_config = config


def _should_print(level: str, verbosity: str) -> bool:
    if level in ("error", "quiet"):
        return True
    if level == "verbose":
        return verbosity == "verbose"
    return verbosity in ("normal", "verbose")


def print_output(message: str, level: str = "normal", file: Any = None, end: str = "\n") -> None:
    """Print ``message`` if the current verbosity admits ``level``.

    Levels: "error" (always, to stderr), "quiet" (always), "normal"
    (suppressed by quiet), "verbose" (verbose only). Text output is
    suppressed entirely in JSON mode.
    """
    config = get_output_config()
    if config.format == "json":
        return
    if not _should_print(level, config.verbosity):
        return
    if file is None:
        file = sys.stderr if level == "error" else sys.stdout
    print(message, file=file, end=end)


def format_json_output(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False)


def print_json_output(data: Dict[str, Any]) -> None:
    """Print ``data`` as JSON when in JSON mode."""
    if get_output_config().format == "json":
        print(format_json_output(data))
