"""Visual validation: compare the running app against design screenshots.

Three layers, cheapest first:

1. Pixel diff (Pillow + pixelmatch). At or under the threshold the reference
   passes and nothing else runs.
2. LLM vision. Above the lenient threshold, the reference, the screenshot
   and the diff overlay go to a vision model that lists concrete issues.
3. Strict gate. In strict mode the vision model is skipped and the raw pixel
   percentage is reported against the tighter threshold.

Anything that prevents the comparison (no browser, no dev server, no usable
reference) skips validation and reports success.
"""

from __future__ import annotations

import base64
import importlib
import io
import logging
import os
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import requests
from PIL import Image, UnidentifiedImageError
from pixelmatch.contrib.PIL import pixelmatch

from .atomic_file import atomic_write_bytes
from .config import VisualConfig
from .cost_tracker import TokenUsage
from .preview_server import start_preview_server
from .subprocess_helper import run_subprocess

logger = logging.getLogger(__name__)

try:
    from playwright.sync_api import sync_playwright

    PLAYWRIGHT_AVAILABLE = True
except ImportError:
    PLAYWRIGHT_AVAILABLE = False

DIFF_IMAGE_PATH = ".ralph/visual-diff.png"
VISUAL_MATCH = "VISUAL_MATCH"
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
VISION_TIMEOUT_SECONDS = 60.0
VISION_MAX_TOKENS = 2048
SETTLE_MS = 1000

_ISSUE_RE = re.compile(r"^\d+\.\s+\*?\*?(.+)")

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "openrouter": "anthropic/claude-sonnet-4",
}

API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

CHAT_COMPLETIONS_URLS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
}

VISION_SYSTEM_PROMPT = (
    "You are a pixel-perfect UI comparison expert. You compare a design mockup "
    "against a screenshot of the real implementation and identify visual "
    "differences.\n\n"
    "Be precise and actionable. Only report real differences a developer needs to fix."
)

VISION_COMPARISON_PROMPT = """Compare these three images carefully.

**Image 1**: the TARGET DESIGN. This is what the page SHOULD look like.
**Image 2**: the CURRENT IMPLEMENTATION screenshot. This is what was built.
**Image 3**: a PIXEL DIFF overlay. Red pixels mark where the first two differ.

Use the overlay to locate differences, then list ONLY concrete visual differences:

1. **Missing elements**: components in the design but absent from the implementation
2. **Positioning errors**: elements in the wrong place (say where they belong)
3. **Spacing/sizing**: gaps, padding or margins that clearly differ (give rough pixel values)
4. **Color differences**: wrong colors, opacity or gradients (give hex values where you can)
5. **Typography**: font size, weight or line-height mismatches
6. **Image issues**: wrong crop, missing images, wrong aspect ratio or stacking
7. **Layout structure**: wrong flex direction, missing grid, wrong element order

If the implementation matches the design well (sub-pixel and font rendering
differences are fine), respond with exactly:
VISUAL_MATCH

Otherwise list each issue as a numbered item naming the element and what must change."""

IMAGE_LABELS = (
    "TARGET DESIGN:",
    "CURRENT IMPLEMENTATION:",
    "PIXEL DIFF OVERLAY (red = different):",
)


# -------------------------
# Results
# -------------------------


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "LLMUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    def to_token_usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_input_tokens,
            cache_write_tokens=self.cache_creation_input_tokens,
        )


@dataclass(frozen=True)
class PixelDiffResult:
    diff_ratio: float
    diff_pixels: int
    total_pixels: int
    diff_image: bytes


@dataclass
class VisionVerdict:
    matches: bool
    issues: List[str] = field(default_factory=list)
    usage: Optional[LLMUsage] = None


@dataclass
class VisualValidationResult:
    success: bool
    issues: List[str] = field(default_factory=list)
    diff_ratio: Optional[float] = None
    diff_image_path: Optional[Path] = None
    usage: Optional[LLMUsage] = None
    skipped_reason: str = ""

    @classmethod
    def skipped(cls, reason: str) -> "VisualValidationResult":
        logger.info("Visual validation skipped: %s", reason)
        return cls(success=True, skipped_reason=reason)


@dataclass(frozen=True)
class VisualOptions:
    strict: bool = False
    lenient_threshold: float = 0.05
    strict_threshold: float = 0.02
    pixel_threshold: float = 0.1
    include_aa: bool = False
    viewport: Tuple[int, int] = (1920, 1080)
    server_timeout: float = 30.0
    navigation_timeout: float = 30.0
    provider: str = "auto"
    model: str = ""
    auto_install: bool = True

    @classmethod
    def from_config(cls, cfg: VisualConfig, strict: bool = False) -> "VisualOptions":
        return cls(
            strict=strict,
            lenient_threshold=cfg.lenient_threshold,
            strict_threshold=cfg.strict_threshold,
            pixel_threshold=cfg.pixel_threshold,
            include_aa=cfg.include_aa,
            viewport=(cfg.viewport_width, cfg.viewport_height),
            server_timeout=float(cfg.server_timeout_seconds),
            navigation_timeout=float(cfg.navigation_timeout_seconds),
            provider=cfg.provider,
            model=cfg.model,
            auto_install=cfg.auto_install,
        )

    @property
    def threshold(self) -> float:
        return self.strict_threshold if self.strict else self.lenient_threshold


# -------------------------
# Layer 1: pixel diff
# -------------------------


def _open_rgba(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGBA")


def pixel_diff(
    reference_png: bytes,
    implementation_png: bytes,
    threshold: float = 0.1,
    include_aa: bool = False,
) -> PixelDiffResult:
    """Count differing pixels over the region both images cover.

    Raises:
        PIL.UnidentifiedImageError: If either input is not a decodable image
    """
    reference = _open_rgba(reference_png)
    implementation = _open_rgba(implementation_png)

    width = min(reference.width, implementation.width)
    height = min(reference.height, implementation.height)
    box = (0, 0, width, height)
    if reference.size != (width, height):
        reference = reference.crop(box)
    if implementation.size != (width, height):
        implementation = implementation.crop(box)

    overlay = Image.new("RGBA", (width, height))
    total = width * height
    diff_pixels = 0
    if total:
        diff_pixels = pixelmatch(
            reference,
            implementation,
            overlay,
            threshold=threshold,
            includeAA=include_aa,
        )

    buf = io.BytesIO()
    overlay.save(buf, format="PNG")
    return PixelDiffResult(
        diff_ratio=diff_pixels / total if total else 0.0,
        diff_pixels=diff_pixels,
        total_pixels=total,
        diff_image=buf.getvalue(),
    )


# -------------------------
# Browser
# -------------------------

_install_attempted = False


def ensure_playwright(auto_install: bool = True) -> bool:
    """Make Playwright and Chromium importable, installing at most once per process."""
    global PLAYWRIGHT_AVAILABLE, sync_playwright, _install_attempted

    if PLAYWRIGHT_AVAILABLE:
        return True
    if not auto_install or _install_attempted:
        return False
    _install_attempted = True

    logger.info("Playwright not found; installing it and Chromium")
    steps = (
        [sys.executable, "-m", "pip", "install", "playwright"],
        [sys.executable, "-m", "playwright", "install", "chromium"],
    )
    for argv in steps:
        try:
            result = run_subprocess(argv, timeout=600)
        except RuntimeError as e:
            logger.warning("Playwright install failed: %s", e)
            return False
        if result.failed:
            logger.warning(
                "Playwright install step failed (%s): %s",
                result.cmd_str,
                (result.stderr or result.stdout).strip()[-300:],
            )
            return False

    importlib.invalidate_caches()
    try:
        sync_playwright = importlib.import_module("playwright.sync_api").sync_playwright
    except ImportError as e:
        logger.warning("Playwright still not importable after install: %s", e)
        return False
    PLAYWRIGHT_AVAILABLE = True
    return True


def capture_screenshot(url: str, viewport: Tuple[int, int] = (1920, 1080), timeout: float = 30.0) -> Optional[bytes]:
    """Full-page PNG of ``url`` from headless Chromium, or None on any failure."""
    if not PLAYWRIGHT_AVAILABLE:
        return None

    width, height = viewport
    try:
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=True)
            try:
                page = browser.new_page(
                    viewport={"width": width, "height": height},
                    device_scale_factor=1,
                )
                page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
                page.wait_for_timeout(SETTLE_MS)
                return page.screenshot(full_page=True, type="png")
            finally:
                browser.close()
    except Exception as e:
        logger.warning("Screenshot of %s failed: %s", url, e)
        return None


# -------------------------
# Layer 2: vision model
# -------------------------


def resolve_provider(provider: str = "auto") -> Optional[str]:
    """Explicit provider, or the first one with an API key in the environment."""
    if provider == "none":
        return None
    if provider != "auto":
        return provider
    for name in ("anthropic", "openai", "openrouter"):
        if os.environ.get(API_KEY_ENV[name]):
            return name
    return None


def parse_comparison_response(text: str) -> Tuple[bool, List[str]]:
    """``(matches, issues)`` from a vision model reply.

    Numbered items become issues, with the lines under each folded into it.
    A reply that is neither the match sentinel nor a numbered list is kept
    as a single issue, cut to 500 characters.
    """
    trimmed = (text or "").strip()
    if VISUAL_MATCH in trimmed:
        return True, []

    issues: List[str] = []
    current = ""
    for line in trimmed.splitlines():
        m = _ISSUE_RE.match(line)
        if m:
            if current:
                issues.append(current.strip())
            current = m.group(1).replace("**", "").strip()
        elif current and line.strip():
            current += " " + line.strip()
        elif current:
            issues.append(current.strip())
            current = ""
    if current:
        issues.append(current.strip())

    if not issues and trimmed:
        issues.append(trimmed[:500])
    return not issues, issues


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _compare_with_anthropic(api_key: str, images: Sequence[bytes], model: str) -> VisionVerdict:
    import anthropic

    content = []
    for label, data in zip(IMAGE_LABELS, images):
        content.append({"type": "text", "text": label})
        content.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": _b64(data)},
            }
        )
    content.append({"type": "text", "text": VISION_COMPARISON_PROMPT})

    client = anthropic.Anthropic(api_key=api_key, timeout=VISION_TIMEOUT_SECONDS)
    try:
        response = client.messages.create(
            model=model,
            max_tokens=VISION_MAX_TOKENS,
            system=VISION_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": content}],
        )
    except anthropic.APIError as e:
        logger.warning("Anthropic vision request failed: %s", e)
        return VisionVerdict(True, [f"Vision API error: {str(e)[:200]}"])

    text = "".join(getattr(block, "text", "") for block in response.content if block.type == "text")
    usage = LLMUsage(
        input_tokens=response.usage.input_tokens or 0,
        output_tokens=response.usage.output_tokens or 0,
        cache_creation_input_tokens=getattr(response.usage, "cache_creation_input_tokens", None) or 0,
        cache_read_input_tokens=getattr(response.usage, "cache_read_input_tokens", None) or 0,
    )
    matches, issues = parse_comparison_response(text)
    return VisionVerdict(matches, issues, usage)


def _compare_with_chat_completions(
    provider: str, api_key: str, images: Sequence[bytes], model: str
) -> VisionVerdict:
    content = []
    for label, data in zip(IMAGE_LABELS, images):
        content.append({"type": "text", "text": label})
        content.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{_b64(data)}"}})
    content.append({"type": "text", "text": VISION_COMPARISON_PROMPT})

    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    if provider == "openrouter":
        headers["X-Title"] = "ralph-pilot"

    payload = {
        "model": model,
        "max_tokens": VISION_MAX_TOKENS,
        "messages": [
            {"role": "system", "content": VISION_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ],
    }
    try:
        resp = requests.post(
            CHAT_COMPLETIONS_URLS[provider],
            headers=headers,
            json=payload,
            timeout=VISION_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.warning("%s vision request failed: %s", provider, e)
        return VisionVerdict(True, [f"Vision API error: {str(e)[:200]}"])

    if resp.status_code != 200:
        logger.warning("%s vision request returned HTTP %d", provider, resp.status_code)
        return VisionVerdict(True, [f"Vision API error ({resp.status_code}): {resp.text[:200]}"])

    try:
        data = resp.json()
    except ValueError as e:
        logger.warning("%s vision response was not JSON: %s", provider, e)
        return VisionVerdict(True, [f"Vision API error: invalid JSON response: {resp.text[:200]}"])
    if not isinstance(data, dict):
        return VisionVerdict(True, ["Vision API error: unexpected response shape"])
    choices = data.get("choices") or [{}]
    text = ((choices[0] or {}).get("message") or {}).get("content") or ""
    raw_usage = data.get("usage") or {}
    usage = LLMUsage(
        input_tokens=int(raw_usage.get("prompt_tokens") or 0),
        output_tokens=int(raw_usage.get("completion_tokens") or 0),
    )
    matches, issues = parse_comparison_response(text)
    return VisionVerdict(matches, issues, usage)


def compare_with_vision(
    reference: bytes,
    implementation: bytes,
    diff: bytes,
    provider: str = "auto",
    model: str = "",
) -> VisionVerdict:
    """Ask a vision model what differs; no provider or key counts as a match."""
    name = resolve_provider(provider)
    if name is None:
        return VisionVerdict(True, ["No vision provider configured; skipping visual comparison"])
    if name not in API_KEY_ENV:
        return VisionVerdict(True, [f"Unknown vision provider {name!r}; skipping visual comparison"])

    api_key = os.environ.get(API_KEY_ENV[name], "")
    if not api_key:
        return VisionVerdict(True, [f"No API key for {name} ({API_KEY_ENV[name]}); skipping visual comparison"])

    images = (reference, implementation, diff)
    chosen = model or DEFAULT_MODELS[name]
    logger.debug("Vision comparison via %s (%s)", name, chosen)
    if name == "anthropic":
        return _compare_with_anthropic(api_key, images, chosen)
    return _compare_with_chat_completions(name, api_key, images, chosen)


# -------------------------
# Reference images
# -------------------------


def find_design_screenshots(project_root: Path, screenshots_dir: str) -> List[Path]:
    base = project_root / screenshots_dir
    if not base.is_dir():
        return []
    return sorted(p for p in base.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)


def _download(url: str, dest: Path, timeout: float) -> Optional[Path]:
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Could not download reference image %s: %s", url, e)
        return None
    atomic_write_bytes(dest, resp.content)
    return dest


def fetch_reference_images(
    urls: Sequence[str],
    dest_dir: Path,
    max_workers: int = 4,
    timeout: float = 30.0,
) -> List[Path]:
    """Download reference images in parallel and wait for all of them.

    Returns the paths that were saved, in the order of ``urls``; failed
    downloads are logged and left out.
    """
    if not urls:
        return []
    dest_dir.mkdir(parents=True, exist_ok=True)
    targets = []
    for i, url in enumerate(urls, start=1):
        suffix = Path(url.split("?", 1)[0]).suffix.lower()
        if suffix not in IMAGE_SUFFIXES:
            suffix = ".png"
        targets.append((url, dest_dir / f"reference-{i}{suffix}"))

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(pool.map(lambda t: _download(t[0], t[1], timeout), targets))
    return [p for p in results if p is not None]


# -------------------------
# Orchestration
# -------------------------

VisionFn = Callable[[bytes, bytes, bytes], VisionVerdict]
CaptureFn = Callable[[str, Tuple[int, int], float], Optional[bytes]]


def _strict_issue(diff: PixelDiffResult, threshold: float) -> str:
    return (
        f"Pixel diff is {diff.diff_ratio * 100:.1f}% ({diff.diff_pixels:,} pixels), "
        f"above the {threshold * 100:.0f}% strict threshold. "
        f"See {DIFF_IMAGE_PATH} for the overlay and fine-tune spacing, colors "
        "and font sizes to match the design."
    )


def _write_diff_image(project_root: Path, data: bytes) -> Optional[Path]:
    path = project_root / DIFF_IMAGE_PATH
    try:
        atomic_write_bytes(path, data)
    except OSError as e:
        logger.debug("Could not write %s: %s", path, e)
        return None
    return path


def run_visual_validation(
    project_root: Path,
    design_screenshots: Iterable[Path],
    options: Optional[VisualOptions] = None,
    *,
    vision: Optional[VisionFn] = None,
    capture: Optional[CaptureFn] = None,
    server_factory: Optional[Callable[[Path, float], object]] = None,
) -> VisualValidationResult:
    """Compare the running app against each design screenshot.

    The implementation is captured once per run. Every reference over the
    active threshold contributes issues: vision-model findings in normal
    mode, the raw pixel percentage in strict mode.
    """
    opts = options or VisualOptions()

    references = [Path(p) for p in design_screenshots if Path(p).is_file()]
    if not references:
        return VisualValidationResult.skipped("no design screenshots found")

    if capture is None:
        if not ensure_playwright(opts.auto_install):
            return VisualValidationResult.skipped("Playwright is not available")
        capture = capture_screenshot
    if vision is None:
        vision = partial(compare_with_vision, provider=opts.provider, model=opts.model)

    factory = server_factory or start_preview_server
    server = factory(project_root, opts.server_timeout)
    if server is None:
        return VisualValidationResult.skipped("preview server did not start")

    issues: List[str] = []
    usage: Optional[LLMUsage] = None
    worst = 0.0
    diff_path: Optional[Path] = None
    compared = 0
    try:
        screenshot = capture(server.url, opts.viewport, opts.navigation_timeout)
        if not screenshot:
            return VisualValidationResult.skipped("screenshot capture failed")

        for ref_path in references:
            try:
                ref_bytes = ref_path.read_bytes()
                diff = pixel_diff(ref_bytes, screenshot, opts.pixel_threshold, opts.include_aa)
            except (OSError, UnidentifiedImageError) as e:
                logger.warning("Skipping unreadable design screenshot %s: %s", ref_path, e)
                continue

            compared += 1
            # The overlay on disk is always the worst reference so far.
            if compared == 1 or diff.diff_ratio > worst:
                worst = diff.diff_ratio
                diff_path = _write_diff_image(project_root, diff.diff_image) or diff_path
            pct = diff.diff_ratio * 100

            if diff.diff_ratio <= opts.threshold:
                logger.info(
                    "%s: pixel diff %.1f%% (%s)",
                    ref_path.name,
                    pct,
                    "strict check passed" if opts.strict else "within tolerance",
                )
                continue

            logger.info("%s: pixel diff %.1f%% (%d pixels differ)", ref_path.name, pct, diff.diff_pixels)
            if opts.strict:
                issues.append(_strict_issue(diff, opts.strict_threshold))
                continue

            verdict = vision(ref_bytes, screenshot, diff.diff_image)
            if not verdict.matches:
                issues.extend(verdict.issues)
            if verdict.usage is not None:
                if usage is None:
                    usage = LLMUsage()
                usage.add(verdict.usage)
    finally:
        server.stop()

    if not compared:
        return VisualValidationResult.skipped("no readable design screenshots")

    return VisualValidationResult(
        success=not issues,
        issues=issues,
        diff_ratio=worst,
        diff_image_path=diff_path,
        usage=usage,
    )
