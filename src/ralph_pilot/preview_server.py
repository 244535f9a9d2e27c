"""Start the project's dev server so screenshots can be taken.

The command comes from ``package.json`` (``dev``, ``start``, ``serve`` or
``preview``, first match). The port is read from ``--port N`` / ``-p N`` in
the script, else guessed from the framework, else 3000. A server already
answering on that port is reused and left running.
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from .subprocess_helper import shell_argv, spawn_background, terminate_process
from .validation import detect_package_manager, read_package_scripts, run_script_command

logger = logging.getLogger(__name__)

SCRIPT_PREFERENCE = ("dev", "start", "serve", "preview")
DEFAULT_PORT = 3000
POLL_INTERVAL_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 2.0

_PORT_RE = re.compile(r"--port[=\s]+(\d+)|-p\s+(\d+)")

# Checked in order; the first tool named in the script decides the port.
FRAMEWORK_PORTS = (
    ("vite", 5173),
    ("next", 3000),
    ("react-scripts", 3000),
    ("nuxt", 3000),
    ("astro", 4321),
    ("svelte", 5173),
    ("remix", 3000),
    ("gatsby", 8000),
)


@dataclass(frozen=True)
class DevCommand:
    script: str
    command: str
    port: int

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"


def detect_port(script_body: str) -> int:
    m = _PORT_RE.search(script_body)
    if m:
        return int(m.group(1) or m.group(2))
    for name, port in FRAMEWORK_PORTS:
        if name in script_body:
            return port
    return DEFAULT_PORT


def detect_dev_command(project_root: Path) -> Optional[DevCommand]:
    """The dev server script to run, or None if package.json has none."""
    scripts = read_package_scripts(project_root)
    for name in SCRIPT_PREFERENCE:
        body = scripts.get(name)
        if body:
            pm = detect_package_manager(project_root)
            return DevCommand(script=name, command=run_script_command(pm, name), port=detect_port(body))
    return None


def is_server_ready(url: str, timeout: float = REQUEST_TIMEOUT_SECONDS) -> bool:
    try:
        resp = requests.get(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException:
        return False
    return resp.status_code in (200, 304)


def wait_for_server(url: str, timeout: float = 30.0, interval: float = POLL_INTERVAL_SECONDS) -> bool:
    """Poll ``url`` until it answers 200/304 or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while True:
        if is_server_ready(url):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


class PreviewServer:
    """A running (or reused) preview server; use as a context manager."""

    def __init__(self, url: str, process: Optional[subprocess.Popen] = None):
        self.url = url
        self.process = process

    @property
    def owned(self) -> bool:
        """True if this loop started the process and must stop it."""
        return self.process is not None

    def stop(self, grace_seconds: float = 1.0) -> None:
        if self.process is None:
            return
        logger.debug("Stopping preview server pid %s", self.process.pid)
        terminate_process(self.process, grace_seconds)
        self.process = None

    def __enter__(self) -> "PreviewServer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


def start_preview_server(project_root: Path, timeout: float = 30.0) -> Optional[PreviewServer]:
    """Start (or reuse) the dev server and wait until it answers.

    Returns None when there is no dev script, the command cannot start, or
    the server never becomes ready; any process started is killed first.
    """
    dev = detect_dev_command(project_root)
    if dev is None:
        logger.info("No dev server script in package.json; skipping preview")
        return None

    if is_server_ready(dev.url):
        logger.info("Reusing server already running at %s", dev.url)
        return PreviewServer(dev.url)

    logger.info("Starting preview server: %s (port %d)", dev.command, dev.port)
    try:
        proc = spawn_background(
            shell_argv(dev.command),
            cwd=project_root,
            env={"BROWSER": "none", "CI": "true", "PORT": str(dev.port)},
        )
    except RuntimeError as e:
        logger.warning("Could not start preview server: %s", e)
        return None

    server = PreviewServer(dev.url, proc)
    if not wait_for_server(dev.url, timeout):
        logger.warning("Preview server at %s not ready after %.0fs", dev.url, timeout)
        server.stop()
        return None
    return server
