"""
Overlay burn-in fallback.

When the Quality Gate cannot find the plan's overlay text in a render, the
text (and optional logo) is composited into the video pixels with ffmpeg so
it is guaranteed visible.

Critical overlays (prices, percentages, numbers, CTAs and anything in the
first second of the hook beat) get larger type, a heavier shadow and an
opaque background box. If the burn-in fails the original artifact is kept.
"""

import os
import hashlib
import re
import asyncio
import logging
import tempfile
from typing import Optional, Protocol

from .models import BeatType, CamelModel, Overlay, OverlayPosition, Plan
from .storage import download_bytes, upload_to_r2

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FRAME_WIDTH = 1080
FRAME_HEIGHT = 1920
SAFE_AREA_RATIO = 0.1
FADE_SECONDS = 0.3
HOOK_HEADLINE_SECONDS = 1.0
LOGO_MARGIN = 20

FONT_FILE = os.getenv("OVERLAY_FONT_FILE", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf")
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")

FONT_SIZES = {
    "small": (32, 40),
    "medium": (48, 56),
    "large": (64, 72),
    "xlarge": (96, 104),
}   # (normal, critical)

SHADOW = {False: ("0x000000@0.7", 2), True: ("0x000000@0.9", 3)}
BOX = {False: (0.7, 10), True: (0.8, 15)}

PRICE_PATTERN = re.compile(r"\$\d+(\.\d{2})?|€\d+(\.\d{2})?|£\d+(\.\d{2})?")
NUMBER_PATTERN = re.compile(r"\d+%?")
CTA_KEYWORDS = (
    "shop now", "buy now", "get yours", "order now", "learn more",
    "sign up", "try free", "claim offer", "limited time",
)


class BurnInOverlay(Overlay):
    critical: bool = False


class BurnInResult(CamelModel):
    success: bool
    output_url: Optional[str] = None
    error: Optional[str] = None
    critical_count: int = 0


class OverlayRenderer(Protocol):
    async def render(
        self, input_url: str, filter_graph: str, logo_url: Optional[str], output_key: str
    ) -> str: ...


# ── Classification ───────────────────────────────────────────────────────────

def is_critical_text(text: str) -> bool:
    lowered = text.lower()
    return bool(
        PRICE_PATTERN.search(text)
        or NUMBER_PATTERN.search(text)
        or any(keyword in lowered for keyword in CTA_KEYWORDS)
    )


def overlays_for_burn_in(plan: Plan, render_duration: Optional[float] = None) -> list[BurnInOverlay]:
    """Plan overlays inside the rendered window, tagged critical or cosmetic."""
    result = []
    for beat in plan.beats:
        for overlay in beat.overlays:
            if render_duration is not None and overlay.start_time >= render_duration:
                continue
            headline = (
                beat.type == BeatType.HOOK
                and overlay.start_time < beat.start_time + HOOK_HEADLINE_SECONDS
            )
            fields = overlay.model_dump()
            if render_duration is not None:
                fields["end_time"] = min(overlay.end_time, render_duration)
            result.append(BurnInOverlay(**fields, critical=headline or is_critical_text(overlay.text)))
    return result


# ── Filter graph ─────────────────────────────────────────────────────────────

def _num(value: float) -> str:
    return f"{value:g}"


def _ffmpeg_color(color: str) -> str:
    return "0x" + color.lstrip("#") if color.startswith("#") else color


def escape_drawtext(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace("'", "’")
        .replace(":", "\\:")
        .replace("%", "\\%")
    )


def position_expr(position: OverlayPosition, width: int = FRAME_WIDTH) -> tuple[str, str]:
    """x/y drawtext expressions for one of the 9 canonical positions."""
    m = round(width * SAFE_AREA_RATIO)
    xs = {"left": f"{m}", "center": "(w-text_w)/2", "right": f"w-text_w-{m}"}
    ys = {"top": f"{m}", "center": "(h-text_h)/2", "bottom": f"h-text_h-{m}"}

    name = position.value
    row, _, col = name.partition("_")
    if not col:
        # top / center / bottom are horizontally centered
        row, col = name, "center"
    return xs[col], ys[row]


def build_text_filter(
    overlay: Overlay,
    critical: bool,
    input_label: str,
    output_label: str,
    width: int = FRAME_WIDTH,
) -> str:
    x, y = position_expr(overlay.position, width)
    normal, large = FONT_SIZES.get(overlay.font_size.value, (64, 72))
    shadow_color, shadow_offset = SHADOW[critical]
    start, end = overlay.start_time, overlay.end_time

    alpha = "1"
    if overlay.animation.value == "fade":
        alpha = (
            f"if(lt(t,{_num(start + FADE_SECONDS)}),(t-{_num(start)})/{_num(FADE_SECONDS)},"
            f"if(gt(t,{_num(end - FADE_SECONDS)}),({_num(end)}-t)/{_num(FADE_SECONDS)},1))"
        )

    parts = [
        f"{input_label}drawtext=text='{escape_drawtext(overlay.text)}'",
        f"fontfile={FONT_FILE}",
        f"fontsize={large if critical else normal}",
        f"fontcolor={_ffmpeg_color(overlay.color)}",
        f"x={x}",
        f"y={y}",
        f"enable='between(t,{_num(start)},{_num(end)})'",
        f"alpha='{alpha}'",
        f"shadowcolor={shadow_color}",
        f"shadowx={shadow_offset}",
        f"shadowy={shadow_offset}",
    ]
    if critical or overlay.background_color:
        box_alpha, border = BOX[critical]
        box_color = _ffmpeg_color(overlay.background_color or "#000000")
        parts += ["box=1", f"boxcolor={box_color}@{box_alpha}", f"boxborderw={border}"]
    return ":".join(parts) + output_label


def build_filter_graph(
    overlays: list[BurnInOverlay],
    has_logo: bool = False,
    width: int = FRAME_WIDTH,
) -> str:
    """Chain the logo overlay and one drawtext per overlay; the final label is [vout]."""
    filters: list[str] = []
    current = "[0:v]"
    steps = len(overlays) + (1 if has_logo else 0)
    step = 0

    def _next_label() -> str:
        return "[vout]" if step == steps else f"[v{step}]"

    if has_logo:
        step += 1
        label = _next_label()
        filters.append(f"{current}[1:v]overlay=W-w-{LOGO_MARGIN}:{LOGO_MARGIN}:format=auto,format=yuv420p{label}")
        current = label

    for overlay in overlays:
        step += 1
        label = _next_label()
        filters.append(build_text_filter(overlay, overlay.critical, current, label, width))
        current = label

    return ";".join(filters)


# ═════════════════════════════════════════════════════════════════════════════
# OverlayFallback
# ═════════════════════════════════════════════════════════════════════════════

class OverlayFallback:
    def __init__(self, renderer: OverlayRenderer, width: int = FRAME_WIDTH):
        self.renderer = renderer
        self.width = width

    async def burn_in(
        self,
        artifact_url: str,
        overlays: list[Overlay],
        logo_url: Optional[str] = None,
        output_key: Optional[str] = None,
    ) -> BurnInResult:
        """Composite overlays into the video. Never raises; failures come back as data."""
        tagged = [
            o if isinstance(o, BurnInOverlay) else BurnInOverlay(**o.model_dump(), critical=is_critical_text(o.text))
            for o in overlays
        ]
        if not tagged and not logo_url:
            return BurnInResult(success=True, output_url=artifact_url)

        critical_count = sum(1 for o in tagged if o.critical)
        graph = build_filter_graph(tagged, has_logo=bool(logo_url), width=self.width)
        key = output_key or f"renders/burned/{hashlib.sha1(artifact_url.encode()).hexdigest()[:16]}.mp4"

        logger.info(
            f"Burning in {len(tagged)} overlay(s) ({critical_count} critical), "
            f"logo={'yes' if logo_url else 'no'} → {key}"
        )
        try:
            output_url = await self.renderer.render(artifact_url, graph, logo_url, key)
        except Exception as e:
            logger.warning(f"Overlay burn-in failed for {artifact_url}, keeping original: {e}")
            return BurnInResult(success=False, error=str(e), critical_count=critical_count)

        return BurnInResult(success=True, output_url=output_url, critical_count=critical_count)


# ── ffmpeg renderer ──────────────────────────────────────────────────────────

class FFmpegOverlayRenderer:
    """Runs ffmpeg locally and uploads the result to R2."""

    def __init__(self, timeout: float = 300):
        self.timeout = timeout

    async def render(
        self, input_url: str, filter_graph: str, logo_url: Optional[str], output_key: str
    ) -> str:
        with tempfile.TemporaryDirectory(prefix="burnin_") as tmp:
            input_path = os.path.join(tmp, "input.mp4")
            output_path = os.path.join(tmp, "output.mp4")
            with open(input_path, "wb") as f:
                f.write(await download_bytes(input_url))

            cmd = [FFMPEG_BIN, "-y", "-i", input_path]
            if logo_url:
                logo_path = os.path.join(tmp, "logo.png")
                with open(logo_path, "wb") as f:
                    f.write(await download_bytes(logo_url))
                cmd += ["-i", logo_path]
            cmd += [
                "-filter_complex", filter_graph,
                "-map", "[vout]", "-map", "0:a?",
                "-c:v", "libx264", "-preset", "medium", "-crf", "23",
                "-c:a", "copy",
                output_path,
            ]

            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise RuntimeError(f"ffmpeg timed out after {self.timeout}s")
            if proc.returncode != 0:
                tail = stderr.decode("utf-8", errors="replace")[-500:]
                raise RuntimeError(f"ffmpeg exited with {proc.returncode}: {tail}")

            with open(output_path, "rb") as f:
                data = f.read()

        return await upload_to_r2(output_key, data, "video/mp4")
