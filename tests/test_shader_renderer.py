from __future__ import annotations

import numpy as np
import pytest

from resonance import shader_renderer
from resonance.audio_features import AudioFeatureTrack
from resonance.shader_renderer import (
    CompileError,
    ContextCreationError,
    FramePool,
    RendererState,
    ShaderRenderer,
)
from resonance.shaders import ShaderKind
from resonance.style import ShaderConfig


def _track(frames: int = 4, fps: int = 30) -> AudioFeatureTrack:
    ramp = np.linspace(0.0, 1.0, frames, dtype=np.float32)
    return AudioFeatureTrack(
        fps=fps,
        times=np.arange(frames, dtype=np.float64) / fps,
        energy=ramp.copy(),
        bass=ramp.copy(),
        mid=ramp.copy(),
        high=ramp.copy(),
        transient=np.zeros(frames, dtype=np.float32),
        pitch=np.full(frames, 440.0, dtype=np.float32),
    )


def _config(kind: ShaderKind = ShaderKind.FLOW_NOISE, width: int = 16, height: int = 8) -> ShaderConfig:
    return ShaderConfig(
        shader_kind=kind,
        color_primary=(1.0, 0.0, 0.0),
        color_secondary=(0.0, 1.0, 0.0),
        color_accent=(0.0, 0.0, 1.0),
        intensity=0.5,
        width=width,
        height=height,
        fps=30,
    )


def _ready_renderer(kind: ShaderKind = ShaderKind.FLOW_NOISE) -> ShaderRenderer:
    renderer = ShaderRenderer(pool_size=2)
    renderer.create_context(16, 8)
    renderer.compile(kind)
    return renderer


def test_lifecycle_states_and_release(fake_gl) -> None:
    renderer = ShaderRenderer(backend="egl")
    assert renderer.state is RendererState.UNINITIALIZED

    renderer.create_context(16, 8)
    assert renderer.state is RendererState.CONTEXT_READY
    assert fake_gl.create_kwargs[0] == {"standalone": True, "require": 330, "backend": "egl"}

    renderer.compile("cell-tessellation")
    assert renderer.state is RendererState.COMPILED
    assert renderer.kind is ShaderKind.CELL_TESSELLATION

    frame = renderer.render_frame(0, _track(), _config(ShaderKind.CELL_TESSELLATION))
    assert renderer.state is RendererState.RENDERING
    frame.release()
    renderer.finish()
    assert renderer.state is RendererState.FINISHED

    renderer.release()
    renderer.release()
    assert renderer.released
    assert fake_gl.live_contexts == []


def test_rendered_rows_are_flipped_to_top_down(fake_gl) -> None:
    renderer = _ready_renderer()
    frame = renderer.render_frame(0, _track(), _config())

    assert frame.pixels.shape == (8, 16, 4)
    assert frame.pixels.dtype == np.uint8
    # GL row 0 (bottom) must become the last image row.
    assert frame.pixels[-1, 0, 0] == 0
    assert frame.pixels[0, 0, 0] == 7
    assert len(frame.tobytes()) == 16 * 8 * 4
    frame.release()
    renderer.release()


def test_uniforms_follow_features(fake_gl) -> None:
    renderer = _ready_renderer()
    track = _track()
    program = fake_gl.contexts[0].programs[0]

    for index in range(3):
        renderer.render_frame(index, track, _config()).release()
        assert program.members["time"].value == pytest.approx(index / 30)
        assert program.members["energy"].value == pytest.approx(float(track.energy[index]))
    assert program.members["resolution"].value == (16.0, 8.0)
    assert program.members["flow_speed"].value is not None
    assert renderer.frames_rendered == 3
    renderer.release()


def test_frames_must_be_rendered_in_order(fake_gl) -> None:
    renderer = _ready_renderer()
    with pytest.raises(ValueError):
        renderer.render_frame(1, _track(), _config())
    renderer.render_frame(0, _track(), _config()).release()
    with pytest.raises(ValueError):
        renderer.render_frame(0, _track(), _config())
    renderer.release()


def test_resolution_mismatch_is_rejected(fake_gl) -> None:
    renderer = _ready_renderer()
    with pytest.raises(ValueError):
        renderer.render_frame(0, _track(), _config(width=32, height=8))
    renderer.release()


def test_pool_exhaustion_when_frames_are_not_released(fake_gl) -> None:
    renderer = _ready_renderer()
    track = _track()
    held = [renderer.render_frame(i, track, _config()) for i in range(2)]
    with pytest.raises(RuntimeError):
        renderer.render_frame(2, track, _config())
    for frame in held:
        frame.release()
    renderer.release()


def test_frame_pool_reuses_buffers() -> None:
    pool = FramePool(4, 2, capacity=1)
    first = pool.acquire(0)
    buffer = first.pixels
    first.release()
    first.release()
    assert pool.available == 1
    assert pool.acquire(1).pixels is buffer
    with pytest.raises(ValueError):
        FramePool(4, 2, capacity=0)


def test_compile_error_reports_kind_and_diagnostic(fake_gl) -> None:
    fake_gl.compile_error = "0:12(3): error: syntax error, unexpected '}'"
    renderer = ShaderRenderer()
    renderer.create_context(16, 8)

    with pytest.raises(CompileError) as excinfo:
        renderer.compile(ShaderKind.REACTION_DIFFUSION)

    assert excinfo.value.kind is ShaderKind.REACTION_DIFFUSION
    assert "syntax error" in excinfo.value.diagnostic
    assert excinfo.value.reason().startswith("CompileError: reaction-diffusion")
    assert renderer.state is RendererState.FAILED
    renderer.release()
    assert fake_gl.live_contexts == []


def test_context_failure_raises_context_creation_error(fake_gl) -> None:
    fake_gl.context_error = "cannot open display"
    renderer = ShaderRenderer()
    with pytest.raises(ContextCreationError) as excinfo:
        renderer.create_context(16, 8)
    assert "cannot open display" in str(excinfo.value)
    assert renderer.state is RendererState.FAILED
    renderer.release()


def test_missing_moderngl_raises_context_creation_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shader_renderer, "moderngl", None)
    renderer = ShaderRenderer()
    with pytest.raises(ContextCreationError):
        renderer.create_context(16, 8)


def test_context_manager_releases_on_error(fake_gl) -> None:
    with pytest.raises(KeyError):
        with ShaderRenderer() as renderer:
            renderer.create_context(16, 8)
            raise KeyError("boom")
    assert renderer.state is RendererState.FAILED
    assert renderer.released
    assert fake_gl.live_contexts == []
