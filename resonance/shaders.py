"""
Fixed catalog of shader programs.

`ShaderKind` is the closed set of variants a job may request. Each variant
has a `ShaderProgram` subclass that knows its GLSL source and the uniform
values it derives from time, audio features and the job's ShaderConfig.
Sources live under `resonance/glsl`; every fragment stage is prefixed with
`common.glsl` (version directive, shared uniforms, noise helpers).
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
import math
from typing import TYPE_CHECKING, ClassVar, Dict, Tuple, Type

from . import PACKAGE_ROOT

if TYPE_CHECKING:  # pragma: no cover
    from .audio_features import AudioFeatureSample
    from .style import ShaderConfig

GLSL_ROOT = PACKAGE_ROOT / "glsl"

# Uniforms every program receives; variants may add their own.
BASE_UNIFORMS: Tuple[str, ...] = (
    "time",
    "resolution",
    "primary_color",
    "secondary_color",
    "accent_color",
    "intensity",
    "energy",
    "bass",
    "mid",
    "high",
    "transient",
    "pitch",
    "seed",
)


class ShaderKind(str, Enum):
    FLOW_NOISE = "flow-noise"
    FRACTAL_ZOOM = "fractal-zoom"
    REACTION_DIFFUSION = "reaction-diffusion"
    PARTICLE_FLOW = "particle-flow"
    CELL_TESSELLATION = "cell-tessellation"

    @classmethod
    def parse(cls, value: "str | ShaderKind") -> "ShaderKind":
        if isinstance(value, ShaderKind):
            return value
        key = str(value).strip().lower().replace("_", "-")
        key = LEGACY_NAMES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown shader kind '{value}'. Expected one of: {allowed}") from None


# Names used by older project records.
LEGACY_NAMES: Dict[str, str] = {
    "perlin-noise": ShaderKind.FLOW_NOISE.value,
    "fractal-mandelbrot": ShaderKind.FRACTAL_ZOOM.value,
    "voronoi-cells": ShaderKind.CELL_TESSELLATION.value,
}


@lru_cache(maxsize=None)
def _read_source(name: str) -> str:
    path = GLSL_ROOT / name
    if not path.is_file():
        raise FileNotFoundError(f"Shader source '{name}' not found under {GLSL_ROOT}")
    return path.read_text()


class ShaderProgram:
    """Capability interface implemented once per ShaderKind."""

    kind: ClassVar[ShaderKind]
    source_name: ClassVar[str]
    description: ClassVar[str] = ""

    def vertex_source(self) -> str:
        return _read_source("fullscreen.vert")

    def fragment_source(self) -> str:
        return _read_source("common.glsl") + "\n" + _read_source(self.source_name)

    def uniform_values(
        self,
        *,
        time: float,
        sample: "AudioFeatureSample",
        config: "ShaderConfig",
    ) -> Dict[str, object]:
        nyquist = config.sample_rate / 2.0 if config.sample_rate else 0.0
        pitch = float(sample.pitch_estimate) / nyquist if nyquist > 0 else 0.0
        values: Dict[str, object] = {
            "time": float(time),
            "resolution": (float(config.width), float(config.height)),
            "primary_color": config.color_primary,
            "secondary_color": config.color_secondary,
            "accent_color": config.color_accent,
            "intensity": float(config.intensity),
            "energy": float(sample.energy),
            "bass": float(sample.bass),
            "mid": float(sample.mid),
            "high": float(sample.high),
            "transient": float(sample.transient),
            "pitch": min(max(pitch, 0.0), 1.0),
            "seed": float(config.seed % 1000) / 10.0,
        }
        values.update(self.extra_uniforms(time=time, sample=sample, config=config))
        return values

    def extra_uniforms(
        self,
        *,
        time: float,
        sample: "AudioFeatureSample",
        config: "ShaderConfig",
    ) -> Dict[str, object]:
        return {}


class FlowNoiseProgram(ShaderProgram):
    kind = ShaderKind.FLOW_NOISE
    source_name = "flow_noise.frag"
    description = "Layered fractal noise warped by bass, detail driven by mids."

    def extra_uniforms(self, *, time, sample, config):
        return {"flow_speed": 0.3 + 0.7 * float(config.intensity)}


class FractalZoomProgram(ShaderProgram):
    kind = ShaderKind.FRACTAL_ZOOM
    source_name = "fractal_zoom.frag"
    description = "Mandelbrot zoom toward a seahorse-valley point, looping every cycle."

    # Zoom depth loops so single-precision floats never run out of detail.
    CYCLE_DEPTH = 9.0

    def extra_uniforms(self, *, time, sample, config):
        rate = 0.08 * (0.5 + float(config.intensity))
        depth = (time * rate) % self.CYCLE_DEPTH
        return {
            "zoom": 1.5 * math.exp(-depth),
            "max_iterations": float(64 + int(128 * float(config.intensity))),
        }


class ReactionDiffusionProgram(ShaderProgram):
    kind = ShaderKind.REACTION_DIFFUSION
    source_name = "reaction_diffusion.frag"
    description = "Stateless Turing-style spots and stripes breathing with the bass."

    def extra_uniforms(self, *, time, sample, config):
        return {
            "feed": 0.03 + 0.02 * float(sample.bass),
            "kill": 0.06 - 0.01 * float(sample.mid),
        }


class ParticleFlowProgram(ShaderProgram):
    kind = ShaderKind.PARTICLE_FLOW
    source_name = "particle_flow.frag"
    description = "Glowing particles drifting through a noise flow field."

    def extra_uniforms(self, *, time, sample, config):
        return {"particle_count": float(48 + int(80 * float(config.intensity)))}


class CellTessellationProgram(ShaderProgram):
    kind = ShaderKind.CELL_TESSELLATION
    source_name = "cell_tessellation.frag"
    description = "Animated Voronoi cells with bass-weighted borders."

    def extra_uniforms(self, *, time, sample, config):
        return {"cell_scale": 4.0 + 6.0 * float(config.intensity)}


PROGRAMS: Dict[ShaderKind, Type[ShaderProgram]] = {
    cls.kind: cls
    for cls in (
        FlowNoiseProgram,
        FractalZoomProgram,
        ReactionDiffusionProgram,
        ParticleFlowProgram,
        CellTessellationProgram,
    )
}


def program_for(kind: "ShaderKind | str") -> ShaderProgram:
    return PROGRAMS[ShaderKind.parse(kind)]()


def describe_catalog() -> Dict[str, str]:
    return {kind.value: PROGRAMS[kind].description for kind in ShaderKind}


__all__ = [
    "BASE_UNIFORMS",
    "PROGRAMS",
    "ShaderKind",
    "ShaderProgram",
    "describe_catalog",
    "program_for",
]
