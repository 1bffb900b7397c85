"""
Turns a job's free-form `style_parameters` into an immutable ShaderConfig.

Recognised keys:

- `shader`: a ShaderKind value (default `render.default_shader`).
- `style`: a named palette (`organic`, `psychedelic`, `cinematic`, `minimal`).
- `colors` / `primary`, `secondary`, `accent`: hex colours overriding the palette.
- `intensity`: float clamped to [0, 1].
- `effects`: post FX settings (`tone_curve`, `vignette`, `grain`, ...).
- `seed`: integer; derived from the job id when absent.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from hashlib import sha256
from typing import Any, Dict, Mapping, Optional, Tuple

from .config_schema import WorkerConfig
from .errors import StyleError
from .jobs import Job
from .postfx import PostFXConfig
from .shaders import ShaderKind

Color = Tuple[float, float, float]

PALETTES: Dict[str, Dict[str, str]] = {
    "organic": {"primary": "#C45D3A", "secondary": "#F8F6F3", "accent": "#2A2621"},
    "psychedelic": {"primary": "#FF006E", "secondary": "#8338EC", "accent": "#3A86FF"},
    "cinematic": {"primary": "#1A1A2E", "secondary": "#16213E", "accent": "#E94560"},
    "minimal": {"primary": "#FFFFFF", "secondary": "#F5F5F5", "accent": "#000000"},
}
DEFAULT_PALETTE = "organic"
DEFAULT_INTENSITY = 0.5


@dataclass(frozen=True, slots=True)
class ShaderConfig:
    shader_kind: ShaderKind
    color_primary: Color
    color_secondary: Color
    color_accent: Color
    intensity: float
    width: int
    height: int
    fps: int
    duration_seconds: Optional[float] = None
    sample_rate: int = 22_050
    seed: int = 0
    postfx: PostFXConfig = field(default_factory=PostFXConfig)

    @property
    def resolution(self) -> Tuple[int, int]:
        return self.width, self.height

    def with_duration(self, duration_seconds: float) -> "ShaderConfig":
        return replace(self, duration_seconds=float(duration_seconds))

    def describe(self) -> Dict[str, Any]:
        return {
            "shader": self.shader_kind.value,
            "colors": [_to_hex(c) for c in (self.color_primary, self.color_secondary, self.color_accent)],
            "intensity": self.intensity,
            "resolution": f"{self.width}x{self.height}",
            "fps": self.fps,
            "duration_seconds": self.duration_seconds,
            "seed": self.seed,
            "postfx": self.postfx.enabled,
        }


def parse_hex_color(value: Any) -> Color:
    """Parse `#rrggbb` / `#rgb` (leading `#` optional) into 0-1 floats."""
    if not isinstance(value, str):
        raise StyleError(f"colour must be a hex string, got {value!r}")
    text = value.strip().lstrip("#")
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    if len(text) != 6:
        raise StyleError(f"invalid hex colour '{value}'")
    try:
        channels = [int(text[i : i + 2], 16) for i in (0, 2, 4)]
    except ValueError:
        raise StyleError(f"invalid hex colour '{value}'") from None
    return tuple(channel / 255.0 for channel in channels)  # type: ignore[return-value]


def _to_hex(color: Color) -> str:
    return "#" + "".join(f"{int(round(c * 255)):02x}" for c in color)


def parse_resolution(value: Optional[str], config: WorkerConfig) -> Tuple[int, int]:
    presets = config.render.resolution_presets
    name = (value or config.render.default_resolution).strip().lower()
    if name in presets:
        width, height = presets[name]
        return int(width), int(height)
    if "x" in name:
        raw_width, raw_height = name.split("x", 1)
        try:
            width, height = int(raw_width), int(raw_height)
        except ValueError:
            raise StyleError(f"invalid resolution '{value}'") from None
        if width <= 0 or height <= 0 or width % 2 or height % 2:
            raise StyleError(f"resolution '{value}' must use positive even dimensions")
        return width, height
    raise StyleError(
        f"unknown resolution '{value}'. Expected WIDTHxHEIGHT or one of: {', '.join(sorted(presets))}"
    )


def _resolve_colors(style: Mapping[str, Any]) -> Tuple[Color, Color, Color]:
    palette_name = str(style.get("style") or style.get("palette") or DEFAULT_PALETTE).lower()
    if palette_name not in PALETTES:
        raise StyleError(
            f"unknown palette '{palette_name}'. Expected one of: {', '.join(sorted(PALETTES))}"
        )
    chosen = dict(PALETTES[palette_name])

    colors = style.get("colors") or {}
    if isinstance(colors, (list, tuple)):
        colors = dict(zip(("primary", "secondary", "accent"), colors))
    if not isinstance(colors, Mapping):
        raise StyleError("colors must be a mapping or a list of hex strings")
    for slot in ("primary", "secondary", "accent"):
        override = colors.get(slot) or style.get(slot) or style.get(f"color_{slot}")
        if override:
            chosen[slot] = override

    return (
        parse_hex_color(chosen["primary"]),
        parse_hex_color(chosen["secondary"]),
        parse_hex_color(chosen["accent"]),
    )


def _resolve_intensity(style: Mapping[str, Any]) -> float:
    raw = style.get("intensity", DEFAULT_INTENSITY)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise StyleError(f"intensity must be a number, got {raw!r}") from None
    if value != value:
        raise StyleError("intensity must be a number, got NaN")
    return min(max(value, 0.0), 1.0)


def _derive_seed(job_id: str) -> int:
    return int.from_bytes(sha256(job_id.encode("utf-8")).digest()[:4], "big")


def resolve_shader_config(job: Job, config: WorkerConfig) -> ShaderConfig:
    style = job.style_parameters or {}

    raw_shader = style.get("shader") or style.get("shader_kind") or config.render.default_shader
    try:
        kind = ShaderKind.parse(raw_shader)
    except ValueError as exc:
        raise StyleError(str(exc)) from None
    if kind not in config.render.enabled_kinds():
        raise StyleError(f"shader '{kind.value}' is not enabled on this worker")

    primary, secondary, accent = _resolve_colors(style)
    width, height = parse_resolution(job.target_resolution, config)

    fps = job.target_fps or config.render.default_fps
    if not 1 <= int(fps) <= 120:
        raise StyleError(f"target fps {fps} is outside 1..120")

    duration = job.duration_seconds
    if duration is not None:
        if duration <= 0:
            raise StyleError(f"duration {duration} must be positive")
        duration = min(float(duration), config.render.max_duration_seconds)

    effects = style.get("effects") or {}
    if not isinstance(effects, Mapping):
        raise StyleError("effects must be a mapping")
    try:
        postfx = PostFXConfig.from_mapping(effects)
    except (TypeError, ValueError) as exc:
        raise StyleError(f"invalid effects: {exc}") from None

    seed = style.get("seed")
    try:
        seed_value = int(seed) if seed is not None else _derive_seed(job.id)
    except (TypeError, ValueError):
        raise StyleError(f"seed must be an integer, got {seed!r}") from None

    return ShaderConfig(
        shader_kind=kind,
        color_primary=primary,
        color_secondary=secondary,
        color_accent=accent,
        intensity=_resolve_intensity(style),
        width=width,
        height=height,
        fps=int(fps),
        duration_seconds=duration,
        sample_rate=config.audio.sample_rate,
        seed=seed_value,
        postfx=postfx,
    )


__all__ = ["PALETTES", "ShaderConfig", "parse_hex_color", "parse_resolution", "resolve_shader_config"]
