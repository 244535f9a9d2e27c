from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RALPH_PILOT_CONFIG"

INTERMEDIATE_CHECKS = ("lint", "build", "lint+build", "full", "none")
VISION_PROVIDERS = ("auto", "anthropic", "openai", "openrouter", "none")


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 10
    iteration_timeout_seconds: int = 1800
    rate_limit_per_hour: int = 0  # 0 = disabled
    sleep_seconds_between_iters: int = 0
    # Skip validation until this many plan tasks are checked off.
    validation_warmup: int = 0
    intermediate_checks: str = "lint"  # lint|build|lint+build|full|none
    max_cost_usd: float = 0.0  # 0 = no ceiling
    completion_promise: str = ""
    completion_marker: str = ".ralph/DONE"


@dataclass(frozen=True)
class ContextConfig:
    max_input_tokens: int = 0  # 0 = unlimited
    spec_summary_chars: int = 1500
    key_points_chars: int = 500
    feedback_chars_trimmed: int = 2000
    feedback_chars_minimal: int = 500
    iteration_log_entries: int = 10


@dataclass(frozen=True)
class ValidationConfig:
    # name -> shell command; when non-empty, discovery is skipped.
    commands: Dict[str, str] = field(default_factory=dict)
    lint_timeout_seconds: int = 60
    build_timeout_seconds: int = 120
    full_timeout_seconds: int = 300


@dataclass(frozen=True)
class VisualConfig:
    enabled: bool = True
    screenshots_dir: str = "public/images/screenshots"
    lenient_threshold: float = 0.05
    strict_threshold: float = 0.02
    pixel_threshold: float = 0.1
    include_aa: bool = False
    viewport_width: int = 1920
    viewport_height: int = 1080
    server_timeout_seconds: int = 30
    navigation_timeout_seconds: int = 30
    provider: str = "auto"  # auto|anthropic|openai|openrouter|none
    model: str = ""
    auto_install: bool = True


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_consecutive_failures: int = 3
    max_same_error_count: int = 5


@dataclass(frozen=True)
class CostConfig:
    model: str = "claude-sonnet-4"
    projection_min_iterations: int = 3


@dataclass(frozen=True)
class SessionConfig:
    expiry_hours: float = 24.0
    lock: bool = True


@dataclass(frozen=True)
class FilesConfig:
    plan: str = "IMPLEMENTATION_PLAN.md"
    agents: str = "AGENTS.md"
    specs_dir: str = "specs"
    skills_dir: str = ".ralph/skills"
    iteration_log: str = ".ralph/iteration-log.md"
    session: str = ".ralph-session.json"


@dataclass(frozen=True)
class RunnerConfig:
    argv: List[str]


@dataclass(frozen=True)
class Config:
    loop: LoopConfig
    context: ContextConfig
    validation: ValidationConfig
    visual: VisualConfig
    circuit_breaker: CircuitBreakerConfig
    cost: CostConfig
    session: SessionConfig
    files: FilesConfig
    runners: Dict[str, RunnerConfig]


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    return default


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    raw = data.get(name, {}) or {}
    return raw if isinstance(raw, dict) else {}


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (recursively for dicts), return new dict."""

    out: Dict[str, Any] = dict(a)
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def config_paths(project_root: Path) -> List[Path]:
    """Config files that exist for ``project_root``, lowest precedence first."""

    paths: List[Path] = []

    p1 = project_root / ".ralph" / "pilot.toml"
    if p1.exists():
        paths.append(p1)

    p2 = project_root / "ralph-pilot.toml"
    if p2.exists():
        paths.append(p2)

    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        p3 = Path(env)
        if not p3.is_absolute():
            p3 = (project_root / p3).resolve()
        if p3.exists():
            paths.append(p3)
        else:
            logger.warning("%s points at missing file %s", CONFIG_ENV_VAR, p3)

    return paths


def _load_config_data(project_root: Path) -> Tuple[Dict[str, Any], List[Path]]:
    paths = config_paths(project_root)
    data: Dict[str, Any] = {}
    for p in paths:
        data = _deep_merge(data, _load_toml(p))
    return data, paths


def _check_ratio(name: str, value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Invalid {name}: {value}. Must be between 0 and 1.")
    return value


def _check_choice(name: str, value: str, choices: Tuple[str, ...]) -> str:
    v = value.strip().lower()
    if v not in choices:
        raise ValueError(f"Invalid {name}: {value!r}. Must be one of {', '.join(choices)}.")
    return v


# -------------------------
# Section parsers
# -------------------------


def _parse_loop(raw: Dict[str, Any]) -> LoopConfig:
    d = LoopConfig()
    max_iterations = _coerce_int(raw.get("max_iterations"), d.max_iterations)
    if max_iterations < 1:
        raise ValueError(f"Invalid loop.max_iterations: {max_iterations}. Must be >= 1.")
    max_cost = _coerce_float(raw.get("max_cost_usd"), d.max_cost_usd)
    if max_cost < 0:
        raise ValueError(f"Invalid loop.max_cost_usd: {max_cost}. Must be >= 0.")
    return LoopConfig(
        max_iterations=max_iterations,
        iteration_timeout_seconds=_coerce_int(
            raw.get("iteration_timeout_seconds"), d.iteration_timeout_seconds
        ),
        rate_limit_per_hour=max(0, _coerce_int(raw.get("rate_limit_per_hour"), 0)),
        sleep_seconds_between_iters=max(
            0, _coerce_int(raw.get("sleep_seconds_between_iters"), 0)
        ),
        validation_warmup=max(0, _coerce_int(raw.get("validation_warmup"), 0)),
        intermediate_checks=_check_choice(
            "loop.intermediate_checks",
            str(raw.get("intermediate_checks", d.intermediate_checks)),
            INTERMEDIATE_CHECKS,
        ),
        max_cost_usd=max_cost,
        completion_promise=str(raw.get("completion_promise", "")).strip(),
        completion_marker=str(raw.get("completion_marker", d.completion_marker)),
    )


def _parse_context(raw: Dict[str, Any]) -> ContextConfig:
    d = ContextConfig()
    return ContextConfig(
        max_input_tokens=max(0, _coerce_int(raw.get("max_input_tokens"), 0)),
        spec_summary_chars=_coerce_int(raw.get("spec_summary_chars"), d.spec_summary_chars),
        key_points_chars=_coerce_int(raw.get("key_points_chars"), d.key_points_chars),
        feedback_chars_trimmed=_coerce_int(
            raw.get("feedback_chars_trimmed"), d.feedback_chars_trimmed
        ),
        feedback_chars_minimal=_coerce_int(
            raw.get("feedback_chars_minimal"), d.feedback_chars_minimal
        ),
        iteration_log_entries=_coerce_int(
            raw.get("iteration_log_entries"), d.iteration_log_entries
        ),
    )


def _parse_validation(raw: Dict[str, Any]) -> ValidationConfig:
    d = ValidationConfig()
    commands: Dict[str, str] = {}
    raw_cmds = raw.get("commands", {})
    if isinstance(raw_cmds, dict):
        commands = {str(k): str(v) for k, v in raw_cmds.items() if str(v).strip()}
    elif isinstance(raw_cmds, list):
        # Bare list form: names are derived from position.
        commands = {f"check-{i + 1}": str(v) for i, v in enumerate(raw_cmds) if str(v).strip()}
    return ValidationConfig(
        commands=commands,
        lint_timeout_seconds=_coerce_int(raw.get("lint_timeout_seconds"), d.lint_timeout_seconds),
        build_timeout_seconds=_coerce_int(
            raw.get("build_timeout_seconds"), d.build_timeout_seconds
        ),
        full_timeout_seconds=_coerce_int(raw.get("full_timeout_seconds"), d.full_timeout_seconds),
    )


def _parse_visual(raw: Dict[str, Any]) -> VisualConfig:
    d = VisualConfig()
    lenient = _check_ratio(
        "visual.lenient_threshold", _coerce_float(raw.get("lenient_threshold"), d.lenient_threshold)
    )
    strict = _check_ratio(
        "visual.strict_threshold", _coerce_float(raw.get("strict_threshold"), d.strict_threshold)
    )
    return VisualConfig(
        enabled=_coerce_bool(raw.get("enabled"), d.enabled),
        screenshots_dir=str(raw.get("screenshots_dir", d.screenshots_dir)),
        lenient_threshold=lenient,
        strict_threshold=strict,
        pixel_threshold=_check_ratio(
            "visual.pixel_threshold", _coerce_float(raw.get("pixel_threshold"), d.pixel_threshold)
        ),
        include_aa=_coerce_bool(raw.get("include_aa"), d.include_aa),
        viewport_width=_coerce_int(raw.get("viewport_width"), d.viewport_width),
        viewport_height=_coerce_int(raw.get("viewport_height"), d.viewport_height),
        server_timeout_seconds=_coerce_int(
            raw.get("server_timeout_seconds"), d.server_timeout_seconds
        ),
        navigation_timeout_seconds=_coerce_int(
            raw.get("navigation_timeout_seconds"), d.navigation_timeout_seconds
        ),
        provider=_check_choice(
            "visual.provider", str(raw.get("provider", d.provider)), VISION_PROVIDERS
        ),
        model=str(raw.get("model", d.model)).strip(),
        auto_install=_coerce_bool(raw.get("auto_install"), d.auto_install),
    )


def _parse_runners(raw: Dict[str, Any]) -> Dict[str, RunnerConfig]:
    # Claude runs headless with stream-json so token usage can be read back.
    default_runners: Dict[str, RunnerConfig] = {
        "claude": RunnerConfig(
            argv=["claude", "-p", "--output-format", "stream-json", "--verbose"]
        ),
        "codex": RunnerConfig(argv=["codex", "exec", "--full-auto", "-"]),
        "copilot": RunnerConfig(argv=["copilot", "--prompt"]),
    }

    runners: Dict[str, RunnerConfig] = {}
    for name, rc in default_runners.items():
        entry = raw.get(name)
        if isinstance(entry, dict) and isinstance(entry.get("argv"), list):
            runners[name] = RunnerConfig(argv=[str(x) for x in entry["argv"]])
        else:
            runners[name] = rc

    for name, entry in raw.items():
        if name in runners:
            continue
        if isinstance(entry, dict) and isinstance(entry.get("argv"), list):
            runners[name] = RunnerConfig(argv=[str(x) for x in entry["argv"]])

    return runners


# -------------------------
# Public API
# -------------------------


def load_config(project_root: Path) -> Config:
    """Load and normalize configuration for ``project_root``.

    Precedence (later wins): ``.ralph/pilot.toml``, ``./ralph-pilot.toml``,
    ``$RALPH_PILOT_CONFIG``. Missing sections fall back to defaults, so the
    result is always usable.

    Raises:
        ValueError: For values that would make the loop meaningless
    """

    data, read_paths = _load_config_data(project_root)
    if read_paths:
        logger.debug("Loaded config from %s", ", ".join(str(p) for p in read_paths))

    breaker_raw = _section(data, "circuit_breaker")
    cost_raw = _section(data, "cost")
    session_raw = _section(data, "session")
    files_raw = _section(data, "files")

    breaker = CircuitBreakerConfig(
        max_consecutive_failures=max(
            1, _coerce_int(breaker_raw.get("max_consecutive_failures"), 3)
        ),
        max_same_error_count=max(1, _coerce_int(breaker_raw.get("max_same_error_count"), 5)),
    )

    cost = CostConfig(
        model=str(cost_raw.get("model", CostConfig.model)).strip() or CostConfig.model,
        projection_min_iterations=max(
            1, _coerce_int(cost_raw.get("projection_min_iterations"), 3)
        ),
    )

    session = SessionConfig(
        expiry_hours=_coerce_float(session_raw.get("expiry_hours"), SessionConfig.expiry_hours),
        lock=_coerce_bool(session_raw.get("lock"), SessionConfig.lock),
    )

    files = FilesConfig(
        plan=str(files_raw.get("plan", FilesConfig.plan)),
        agents=str(files_raw.get("agents", FilesConfig.agents)),
        specs_dir=str(files_raw.get("specs_dir", FilesConfig.specs_dir)),
        skills_dir=str(files_raw.get("skills_dir", FilesConfig.skills_dir)),
        iteration_log=str(files_raw.get("iteration_log", FilesConfig.iteration_log)),
        session=str(files_raw.get("session", FilesConfig.session)),
    )

    return Config(
        loop=_parse_loop(_section(data, "loop")),
        context=_parse_context(_section(data, "context")),
        validation=_parse_validation(_section(data, "validation")),
        visual=_parse_visual(_section(data, "visual")),
        circuit_breaker=breaker,
        cost=cost,
        session=session,
        files=files,
        runners=_parse_runners(_section(data, "runners")),
    )


def default_config() -> Config:
    """Config with every default applied and no files consulted."""
    return Config(
        loop=LoopConfig(),
        context=ContextConfig(),
        validation=ValidationConfig(),
        visual=VisualConfig(),
        circuit_breaker=CircuitBreakerConfig(),
        cost=CostConfig(),
        session=SessionConfig(),
        files=FilesConfig(),
        runners=_parse_runners({}),
    )
