from __future__ import annotations

import math
import re

import pytest

from resonance import shaders
from resonance.audio_features import AudioFeatureSample
from resonance.shaders import BASE_UNIFORMS, ShaderKind, program_for
from resonance.style import ShaderConfig


def _sample(**overrides: float) -> AudioFeatureSample:
    values = dict(
        time_seconds=0.0,
        energy=0.5,
        bass=0.25,
        mid=0.75,
        high=0.1,
        transient=0.0,
        pitch_estimate=2205.0,
    )
    values.update(overrides)
    return AudioFeatureSample(**values)


def _config(kind: ShaderKind = ShaderKind.FLOW_NOISE, **overrides) -> ShaderConfig:
    values = dict(
        shader_kind=kind,
        color_primary=(1.0, 0.0, 0.0),
        color_secondary=(0.0, 1.0, 0.0),
        color_accent=(0.0, 0.0, 1.0),
        intensity=0.5,
        width=64,
        height=32,
        fps=30,
        sample_rate=22_050,
        seed=12345,
    )
    values.update(overrides)
    return ShaderConfig(**values)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("flow-noise", ShaderKind.FLOW_NOISE),
        ("FRACTAL_ZOOM", ShaderKind.FRACTAL_ZOOM),
        (" reaction-diffusion ", ShaderKind.REACTION_DIFFUSION),
        ("perlin-noise", ShaderKind.FLOW_NOISE),
        ("fractal-mandelbrot", ShaderKind.FRACTAL_ZOOM),
        ("voronoi-cells", ShaderKind.CELL_TESSELLATION),
    ],
)
def test_shader_kind_parse(raw: str, expected: ShaderKind) -> None:
    assert ShaderKind.parse(raw) is expected


def test_unknown_shader_kind_is_rejected() -> None:
    with pytest.raises(ValueError) as excinfo:
        ShaderKind.parse("plasma")
    assert "flow-noise" in str(excinfo.value)


def test_every_kind_has_a_program_with_sources() -> None:
    assert set(shaders.PROGRAMS) == set(ShaderKind)
    for kind in ShaderKind:
        program = program_for(kind)
        assert program.kind is kind
        fragment = program.fragment_source()
        assert fragment.startswith("#version 330")
        assert "void main()" in fragment
        for name in BASE_UNIFORMS:
            assert re.search(rf"uniform\s+\w+\s+{name};", fragment)
        assert "in_position" in program.vertex_source()
    assert set(shaders.describe_catalog()) == {kind.value for kind in ShaderKind}


@pytest.mark.parametrize("kind", list(ShaderKind))
def test_uniform_values_cover_declared_uniforms(kind: ShaderKind) -> None:
    program = program_for(kind)
    values = program.uniform_values(time=1.5, sample=_sample(), config=_config(kind))

    assert set(BASE_UNIFORMS) <= set(values)
    assert values["time"] == pytest.approx(1.5)
    assert values["resolution"] == (64.0, 32.0)
    assert values["bass"] == pytest.approx(0.25)
    # Pitch is normalised against Nyquist.
    assert values["pitch"] == pytest.approx(0.2)
    assert values["seed"] == pytest.approx(34.5)
    for name in values:
        if name not in BASE_UNIFORMS:
            assert f" {name};" in program.fragment_source()


def test_pitch_uniform_is_clamped() -> None:
    program = program_for(ShaderKind.FLOW_NOISE)
    values = program.uniform_values(time=0.0, sample=_sample(pitch_estimate=50_000.0), config=_config())
    assert values["pitch"] == 1.0


def test_fractal_zoom_loops() -> None:
    program = program_for(ShaderKind.FRACTAL_ZOOM)
    config = _config(ShaderKind.FRACTAL_ZOOM, intensity=0.5)
    rate = 0.08 * (0.5 + 0.5)
    period = program.CYCLE_DEPTH / rate

    start = program.uniform_values(time=0.0, sample=_sample(), config=config)
    later = program.uniform_values(time=period * 0.5, sample=_sample(), config=config)
    one_second = program.uniform_values(time=1.0, sample=_sample(), config=config)
    looped = program.uniform_values(time=period + 1.0, sample=_sample(), config=config)

    assert start["zoom"] == pytest.approx(1.5)
    assert later["zoom"] == pytest.approx(1.5 * math.exp(-program.CYCLE_DEPTH / 2))
    assert looped["zoom"] == pytest.approx(one_second["zoom"])


def test_reaction_diffusion_follows_bands() -> None:
    program = program_for(ShaderKind.REACTION_DIFFUSION)
    quiet = program.uniform_values(time=0.0, sample=_sample(bass=0.0, mid=0.0), config=_config())
    loud = program.uniform_values(time=0.0, sample=_sample(bass=1.0, mid=1.0), config=_config())
    assert loud["feed"] > quiet["feed"]
    assert loud["kill"] < quiet["kill"]
