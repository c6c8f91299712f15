"""Tests for overlay burn-in: classification, filter graph and fallback behaviour."""
import hashlib
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from render_worker.pipeline.models import Overlay, OverlayPosition, Plan
from render_worker.pipeline import overlay_fallback
from render_worker.pipeline.overlay_fallback import (
    BurnInOverlay,
    FFmpegOverlayRenderer,
    OverlayFallback,
    build_filter_graph,
    build_text_filter,
    escape_drawtext,
    is_critical_text,
    overlays_for_burn_in,
    position_expr,
)

URL = "https://cdn.test/renders/run-1.mp4"


def _overlay(text: str = "Feel the chill", start: float = 1, end: float = 3, **kwargs) -> Overlay:
    return Overlay(text=text, start_time=start, end_time=end, **kwargs)


class TestCriticalText:
    @pytest.mark.parametrize("text,critical", [
        ("Only $19.99", True),
        ("€5 off", True),
        ("50% off", True),
        ("Rated by 1000 users", True),
        ("Shop now", True),
        ("Limited time deal", True),
        ("Feel the chill", False),
    ])
    def test_is_critical(self, text, critical):
        assert is_critical_text(text) is critical

    def test_hook_headline_is_critical(self, plan_dict):
        plan_dict["beats"][1]["overlays"] = [{"text": "Feel the chill", "startTime": 7, "endTime": 10}]
        plan = Plan.model_validate(plan_dict)
        tagged = {o.text: o.critical for o in overlays_for_burn_in(plan)}
        assert tagged == {"Stop scrolling now": True, "Feel the chill": False, "Shop now": True}

    def test_preview_window_drops_later_overlays(self, plan_dict):
        plan = Plan.model_validate(plan_dict)
        overlays = overlays_for_burn_in(plan, render_duration=8)
        assert [o.text for o in overlays] == ["Stop scrolling now"]


class TestFilterGraph:
    @pytest.mark.parametrize("position,expected", [
        (OverlayPosition.TOP_LEFT, ("108", "108")),
        (OverlayPosition.TOP, ("(w-text_w)/2", "108")),
        (OverlayPosition.CENTER, ("(w-text_w)/2", "(h-text_h)/2")),
        (OverlayPosition.CENTER_RIGHT, ("w-text_w-108", "(h-text_h)/2")),
        (OverlayPosition.BOTTOM, ("(w-text_w)/2", "h-text_h-108")),
    ])
    def test_positions_respect_safe_area(self, position, expected):
        assert position_expr(position) == expected

    def test_escape_drawtext(self):
        assert escape_drawtext("50%: it's") == "50\\%\\: it’s"

    def test_cosmetic_overlay_filter(self):
        f = build_text_filter(_overlay(), critical=False, input_label="[0:v]", output_label="[vout]")
        assert f.startswith("[0:v]drawtext=text='Feel the chill'")
        assert f.endswith("[vout]")
        assert "fontsize=64" in f
        assert "enable='between(t,1,3)'" in f
        assert "box=1" not in f

    def test_critical_overlay_gets_box_and_larger_type(self):
        f = build_text_filter(_overlay("Shop now"), critical=True, input_label="[0:v]", output_label="[v1]")
        assert "fontsize=72" in f
        assert "box=1" in f
        assert "boxborderw=15" in f
        assert "shadowx=3" in f

    def test_fade_alpha(self):
        f = build_text_filter(_overlay(), critical=False, input_label="[0:v]", output_label="[vout]")
        assert "alpha='if(lt(t,1.3),(t-1)/0.3,if(gt(t,2.7),(3-t)/0.3,1))'" in f

    def test_chain_ends_in_vout(self):
        overlays = [BurnInOverlay(**_overlay().model_dump()), BurnInOverlay(**_overlay("Shop now").model_dump())]
        graph = build_filter_graph(overlays)
        first, second = graph.split(";")
        assert first.startswith("[0:v]drawtext") and first.endswith("[v1]")
        assert second.startswith("[v1]drawtext") and second.endswith("[vout]")

    def test_logo_is_composited_first(self):
        graph = build_filter_graph([BurnInOverlay(**_overlay().model_dump())], has_logo=True)
        first, second = graph.split(";")
        assert first == "[0:v][1:v]overlay=W-w-20:20:format=auto,format=yuv420p[v1]"
        assert second.startswith("[v1]drawtext")


class TestOverlayFallback:
    def test_successful_burn_in(self, renderer):
        fallback = OverlayFallback(renderer)
        result = asyncio.run(fallback.burn_in(
            URL, [_overlay("Shop now"), _overlay()], output_key="renders/v/run-1_burned.mp4",
        ))
        assert result.success is True
        assert result.output_url == renderer.output_url
        assert result.critical_count == 1
        assert renderer.keys == ["renders/v/run-1_burned.mp4"]
        assert renderer.graphs[0].endswith("[vout]")

    def test_failure_keeps_original_and_does_not_raise(self, renderer):
        renderer.error = RuntimeError("ffmpeg exited with 1")
        result = asyncio.run(OverlayFallback(renderer).burn_in(URL, [_overlay()]))
        assert result.success is False
        assert result.output_url is None
        assert "ffmpeg exited with 1" in result.error

    def test_nothing_to_burn_returns_original(self, renderer):
        result = asyncio.run(OverlayFallback(renderer).burn_in(URL, []))
        assert result.success is True
        assert result.output_url == URL
        assert renderer.graphs == []

    def test_logo_only(self, renderer):
        result = asyncio.run(OverlayFallback(renderer).burn_in(URL, [], logo_url="https://cdn.test/logo.png"))
        assert result.success is True
        assert renderer.graphs == ["[0:v][1:v]overlay=W-w-20:20:format=auto,format=yuv420p[vout]"]

    def test_default_output_key_is_stable_for_an_artifact(self, renderer):
        fallback = OverlayFallback(renderer)
        asyncio.run(fallback.burn_in(URL, [_overlay()]))
        asyncio.run(fallback.burn_in(URL, [_overlay()]))
        asyncio.run(fallback.burn_in("https://cdn.test/renders/run-2.mp4", [_overlay()]))

        first, again, other = renderer.keys
        assert first == again == "renders/burned/" + hashlib.sha1(URL.encode()).hexdigest()[:16] + ".mp4"
        assert other != first


class TestFFmpegOverlayRenderer:
    @pytest.fixture
    def io(self, monkeypatch):
        """Stub downloads, uploads and the ffmpeg process; records the command line."""
        state = {"cmd": None, "returncode": 0, "stderr": b""}
        download = AsyncMock(return_value=b"video-bytes")
        upload = AsyncMock(return_value="https://media.test/renders/out.mp4")

        async def fake_exec(*cmd, **kwargs):
            state["cmd"] = list(cmd)
            with open(cmd[-1], "wb") as f:
                f.write(b"burned-bytes")
            proc = MagicMock()
            proc.returncode = state["returncode"]
            if state.get("hang"):
                proc.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
            else:
                proc.communicate = AsyncMock(return_value=(b"", state["stderr"]))
            proc.wait = AsyncMock(return_value=-9)
            state["proc"] = proc
            return proc

        monkeypatch.setattr(overlay_fallback, "download_bytes", download)
        monkeypatch.setattr(overlay_fallback, "upload_to_r2", upload)
        monkeypatch.setattr(overlay_fallback.asyncio, "create_subprocess_exec", fake_exec)
        state["download"] = download
        state["upload"] = upload
        return state

    def test_render_uploads_output(self, io):
        url = asyncio.run(FFmpegOverlayRenderer().render(URL, "[0:v]null[vout]", None, "renders/v/r.mp4"))

        assert url == "https://media.test/renders/out.mp4"
        io["upload"].assert_awaited_once_with("renders/v/r.mp4", b"burned-bytes", "video/mp4")
        cmd = io["cmd"]
        assert cmd[cmd.index("-filter_complex") + 1] == "[0:v]null[vout]"
        assert cmd.count("-i") == 1

    def test_logo_is_a_second_input(self, io):
        asyncio.run(FFmpegOverlayRenderer().render(URL, "graph", "https://cdn.test/logo.png", "k.mp4"))
        assert io["cmd"].count("-i") == 2
        assert io["download"].await_count == 2

    def test_ffmpeg_failure_raises_with_stderr_tail(self, io):
        io["returncode"] = 1
        io["stderr"] = b"No such filter: 'drawtxt'"

        with pytest.raises(RuntimeError, match="ffmpeg exited with 1: No such filter"):
            asyncio.run(FFmpegOverlayRenderer().render(URL, "graph", None, "k.mp4"))
        io["upload"].assert_not_awaited()

    def test_timed_out_ffmpeg_is_killed_and_reaped(self, io):
        io["hang"] = True

        with pytest.raises(RuntimeError, match="ffmpeg timed out after 5s"):
            asyncio.run(FFmpegOverlayRenderer(timeout=5).render(URL, "graph", None, "k.mp4"))
        io["proc"].kill.assert_called_once()
        io["proc"].wait.assert_awaited_once()
        io["upload"].assert_not_awaited()
