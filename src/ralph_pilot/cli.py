from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import load_config
from .cost_tracker import format_cost
from .logging_config import setup_logging
from .loop import PAUSE_REQUEST_FILE, LoopOptions, format_loop_result, run_loop
from .output import OutputConfig, get_output_config, print_json_output, print_output, set_output_config
from .session import SessionCorruptError, SessionLockedError, SessionStore, format_session_info
from .visual import IMAGE_SUFFIXES, fetch_reference_images

logger = logging.getLogger(__name__)

REFERENCES_DIR = ".ralph/references"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _project_root() -> Path:
    return Path(os.getcwd()).resolve()


class _PilotArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(EXIT_USAGE, f"Error: {message}\n")


def _read_task(args: argparse.Namespace, root: Path) -> str:
    if args.task_file:
        path = Path(args.task_file)
        if not path.is_absolute():
            path = root / path
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ValueError(f"Cannot read task file {path}: {e}") from e
    return " ".join(args.task or []).strip()


def _resolve_design(entries: Optional[List[str]], root: Path) -> Optional[List[Path]]:
    """Expand ``--design`` values into reference image paths.

    Directories contribute their image files; http(s) URLs are downloaded
    into ``.ralph/references``. None means "use the configured directory".
    """
    if not entries:
        return None

    paths: List[Path] = []
    urls: List[str] = []
    for entry in entries:
        if entry.startswith(("http://", "https://")):
            urls.append(entry)
            continue
        path = Path(entry)
        if not path.is_absolute():
            path = root / path
        if path.is_dir():
            paths.extend(
                sorted(p for p in path.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
            )
        elif path.is_file():
            paths.append(path)
        else:
            raise ValueError(f"Design reference not found: {entry}")

    if urls:
        fetched = fetch_reference_images(urls, root / REFERENCES_DIR)
        if len(fetched) < len(urls):
            print_output(
                f"Downloaded {len(fetched)} of {len(urls)} design reference(s)", level="normal"
            )
        paths.extend(fetched)
    return paths


# -------------------------
# commands
# -------------------------


def cmd_run(args: argparse.Namespace) -> int:
    root = _project_root()
    try:
        task = _read_task(args, root)
        design = _resolve_design(args.design, root)
        cfg = load_config(root)
    except ValueError as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_USAGE

    store = SessionStore(root, cfg.files.session, cfg.session.expiry_hours)
    if not task:
        # A paused session carries its own task.
        try:
            existing = None if args.new else store.load()
        except SessionCorruptError as e:
            print_output(f"Error: {e}", level="error")
            return EXIT_USAGE
        if existing is None:
            print_output("Error: a task is required (pass it as text or with --task-file)", level="error")
            return EXIT_USAGE
        task = existing.task

    if args.agent not in cfg.runners:
        print_output(
            f"Error: unknown agent {args.agent!r}. Available runners: {', '.join(sorted(cfg.runners))}",
            level="error",
        )
        return EXIT_USAGE

    options = LoopOptions(
        task=task,
        project_root=root,
        agent=args.agent,
        max_iterations=args.max_iterations,
        validate=not args.no_validate,
        visual=not args.no_visual,
        design_screenshots=design,
        max_cost_usd=args.max_cost,
        rate_limit_per_hour=args.rate_limit,
        model=args.model,
        force_new=args.new,
        skip_plan_instructions=args.skip_plan_instructions,
    )

    try:
        result = run_loop(options, cfg)
    except SessionLockedError as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_USAGE
    except SessionCorruptError as e:
        print_output(f"Error: {e}", level="error")
        print_output("Run 'ralph-pilot clear' to discard it.", level="error")
        return EXIT_USAGE
    except KeyboardInterrupt:
        print_output("\nInterrupted; session paused. Run again to resume.", level="quiet")
        return EXIT_FAILED

    if get_output_config().format == "json":
        print_json_output(result.to_dict())
    else:
        for line in format_loop_result(result):
            print_output(line, level="quiet")
    return EXIT_OK if result.success else EXIT_FAILED


def cmd_status(args: argparse.Namespace) -> int:
    root = _project_root()
    cfg = load_config(root)
    store = SessionStore(root, cfg.files.session, cfg.session.expiry_hours)
    try:
        session = store.status()
    except SessionCorruptError as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_USAGE

    if session is None:
        print_json_output({"session": None})
        print_output("No session in this directory.", level="quiet")
        return EXIT_OK

    data = session.to_dict()
    data["expired"] = store.is_expired(session)
    print_json_output({"session": data})

    for line in format_session_info(session, expiry_hours=cfg.session.expiry_hours):
        print_output(line, level="quiet")
    cost = session.checkpoint.cost_stats or {}
    if "totalCost" in cost:
        print_output(f"Cost so far: {format_cost(float(cost['totalCost']))}", level="normal")
    breaker = session.checkpoint.circuit_breaker or {}
    if breaker.get("tripReason"):
        print_output(f"Circuit breaker: {breaker['tripReason']}", level="normal")
    feedback = session.checkpoint.last_feedback
    if feedback:
        print_output("\nLast feedback:", level="verbose")
        print_output(feedback, level="verbose")
    return EXIT_OK


def cmd_pause(args: argparse.Namespace) -> int:
    """Ask a running loop to stop after its current iteration."""
    root = _project_root()
    request = root / PAUSE_REQUEST_FILE
    request.parent.mkdir(parents=True, exist_ok=True)
    request.write_text("", encoding="utf-8")
    print_json_output({"pauseRequested": True})
    print_output("Pause requested; the loop stops after the current iteration.", level="quiet")
    return EXIT_OK


def cmd_clear(args: argparse.Namespace) -> int:
    root = _project_root()
    cfg = load_config(root)
    store = SessionStore(root, cfg.files.session, cfg.session.expiry_hours)
    existed = store.clear()
    (root / PAUSE_REQUEST_FILE).unlink(missing_ok=True)
    print_json_output({"cleared": existed})
    print_output("Session cleared." if existed else "No session to clear.", level="quiet")
    return EXIT_OK


# -------------------------
# parser
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    p = _PilotArgumentParser(
        prog="ralph-pilot",
        description="ralph-pilot: run a coding agent in a verified loop until the task is done",
    )
    p.add_argument("--version", action="version", version=f"ralph-pilot {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show per-iteration detail")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only print the final result")
    common.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    common.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", parents=[common], help="Start or resume the loop")
    p_run.add_argument("task", nargs="*", help="Task description")
    p_run.add_argument("--task-file", default=None, help="Read the task from a file")
    p_run.add_argument("--agent", default="claude", help="Runner from [runners] (default: claude)")
    p_run.add_argument("--model", default=None, help="Model passed to the agent and used for pricing")
    p_run.add_argument("--max-iterations", type=int, default=None, help="Iteration ceiling")
    p_run.add_argument("--max-cost", type=float, default=None, help="Stop once cost reaches this many USD")
    p_run.add_argument("--rate-limit", type=int, default=None, help="Max agent calls per hour (0 = off)")
    p_run.add_argument(
        "--design",
        nargs="+",
        default=None,
        metavar="DIR|FILE|URL",
        help="Design reference images (default: [visual] screenshots_dir)",
    )
    p_run.add_argument("--no-visual", action="store_true", help="Skip visual validation")
    p_run.add_argument("--no-validate", action="store_true", help="Skip validation commands")
    p_run.add_argument("--new", action="store_true", help="Ignore any paused session and start over")
    p_run.add_argument(
        "--skip-plan-instructions",
        action="store_true",
        help="Do not ask the agent to maintain the implementation plan",
    )
    p_run.set_defaults(func=cmd_run)

    p_status = sub.add_parser("status", parents=[common], help="Show the stored session")
    p_status.set_defaults(func=cmd_status)

    p_pause = sub.add_parser("pause", parents=[common], help="Pause a running loop after this iteration")
    p_pause.set_defaults(func=cmd_pause)

    p_clear = sub.add_parser("clear", parents=[common], help="Discard the stored session")
    p_clear.set_defaults(func=cmd_clear)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        verbosity = "verbose"
    elif args.quiet:
        verbosity = "quiet"
    else:
        verbosity = get_output_config().verbosity
    set_output_config(OutputConfig(verbosity=verbosity, format=args.format))
    setup_logging(
        verbose=verbosity == "verbose",
        quiet=verbosity == "quiet" or args.format == "json",
        log_file=Path(args.log_file) if args.log_file else None,
    )
    logger.debug("ralph-pilot %s: %s", __version__, args.cmd)

    try:
        return int(args.func(args))
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except Exception as e:
        logger.exception("%s", e)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
