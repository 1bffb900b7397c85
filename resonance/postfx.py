"""
Optional post-processing applied to rendered frames before encoding.

Operations are implemented with NumPy on the RGB channels of an RGBA uint8
frame; alpha is left untouched. The `PostFXProcessor` class keeps the state
needed by temporal effects (motion trails, grain RNG continuity) so a job's
frames must be fed in order.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Tuple

import numpy as np

LOG = logging.getLogger("resonance.postfx")

TONE_CURVES = ("linear", "filmlog", "punch", "pastel")


def _log_debug(message: str, **payload: object) -> None:
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("%s | %s", message, payload)


@dataclass(frozen=True, slots=True)
class PostFXConfig:
    tone_curve: str = "linear"
    vignette_strength: float = 0.0
    grain_intensity: float = 0.0
    chroma_shift: float = 0.0
    motion_trails: bool = False

    @property
    def enabled(self) -> bool:
        return (
            self.tone_curve != "linear"
            or self.vignette_strength > 0
            or self.grain_intensity > 0
            or abs(self.chroma_shift) > 1e-6
            or self.motion_trails
        )

    def validate(self) -> None:
        if self.tone_curve not in TONE_CURVES:
            raise ValueError(
                f"Unknown tone curve '{self.tone_curve}'. Expected one of: {', '.join(TONE_CURVES)}"
            )
        if not 0.0 <= self.vignette_strength <= 1.0:
            raise ValueError("vignette strength must be within [0, 1].")
        if not 0.0 <= self.grain_intensity <= 1.0:
            raise ValueError("grain intensity must be within [0, 1].")
        if abs(self.chroma_shift) > 0.05:
            raise ValueError("chroma shift must be within [-0.05, 0.05].")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "PostFXConfig":
        config = cls(
            tone_curve=str(raw.get("tone_curve", "linear")).lower(),
            vignette_strength=float(raw.get("vignette", raw.get("vignette_strength", 0.0))),
            grain_intensity=float(raw.get("grain", raw.get("grain_intensity", 0.0))),
            chroma_shift=float(raw.get("chroma_shift", 0.0)),
            motion_trails=bool(raw.get("motion_trails", False)),
        )
        config.validate()
        return config


def _tone_curve(frame: np.ndarray, curve: str) -> np.ndarray:
    if curve == "filmlog":
        return np.log1p(frame * 5.0) / np.log1p(5.0)
    if curve == "punch":
        return np.power(frame, 0.85) * 0.95 + 0.05 * frame
    if curve == "pastel":
        return np.power(frame, 1.25) * 0.9 + 0.1
    return frame


def _build_vignette(width: int, height: int, strength: float) -> np.ndarray:
    xs = np.linspace(-1.0, 1.0, width, dtype=np.float32)
    ys = np.linspace(-1.0, 1.0, height, dtype=np.float32)
    xv, yv = np.meshgrid(xs, ys)
    radius = np.sqrt(xv**2 + yv**2) / np.sqrt(2.0)
    mask = 1.0 - strength * np.clip(radius, 0.0, 1.0) ** 2
    return mask.astype(np.float32)


def _apply_chroma_shift(frame: np.ndarray, offset_ratio: float) -> np.ndarray:
    if abs(offset_ratio) < 1e-6:
        return frame
    height, width, _ = frame.shape
    pixels = max(1, int(abs(offset_ratio) * min(width, height)))
    direction = 1 if offset_ratio >= 0 else -1
    shifted = frame.copy()
    shifted[..., 0] = np.roll(frame[..., 0], shift=direction * pixels, axis=1)
    shifted[..., 2] = np.roll(frame[..., 2], shift=-direction * pixels, axis=0)
    return shifted


@dataclass
class PostFXProcessor:
    config: PostFXConfig
    resolution: Tuple[int, int]
    seed: int

    def __post_init__(self) -> None:
        width, height = self.resolution
        self._rng = np.random.default_rng(self.seed)
        self._vignette = (
            _build_vignette(width, height, self.config.vignette_strength)
            if self.config.vignette_strength > 0
            else None
        )
        self._trail_state: np.ndarray | None = None
        self._frames_processed = 0

    def process(self, pixels: np.ndarray) -> np.ndarray:
        """
        Apply configured post-processing in place to one RGBA uint8 frame (H, W, 4).
        """
        width, height = self.resolution
        if pixels.shape != (height, width, 4) or pixels.dtype != np.uint8:
            raise ValueError(f"Frames must be uint8 with shape ({height}, {width}, 4).")

        rgb = pixels[..., :3].astype(np.float32) / 255.0
        rgb = _tone_curve(rgb, self.config.tone_curve)

        if self._vignette is not None:
            rgb = rgb * self._vignette[:, :, None]

        rgb = _apply_chroma_shift(rgb, self.config.chroma_shift)

        if self.config.motion_trails:
            rgb = self._apply_motion_trails(rgb)

        if self.config.grain_intensity > 0:
            rgb = self._apply_grain(rgb)

        pixels[..., :3] = np.clip(np.rint(rgb * 255.0), 0, 255).astype(np.uint8)
        self._frames_processed += 1
        if self._frames_processed == 1:
            _log_debug("postfx.first_frame", config=self.config, resolution=self.resolution)
        return pixels

    # ------------------------------------------------------------------ #
    # Effect implementations
    # ------------------------------------------------------------------ #

    def _apply_motion_trails(self, frame: np.ndarray) -> np.ndarray:
        alpha = 0.82
        if self._trail_state is None:
            self._trail_state = frame.copy()
        self._trail_state = alpha * self._trail_state + (1.0 - alpha) * frame
        return np.clip(0.7 * frame + 0.3 * self._trail_state, 0.0, 1.0)

    def _apply_grain(self, frame: np.ndarray) -> np.ndarray:
        height, width, _ = frame.shape
        noise = self._rng.standard_normal((height, width, 1)).astype(np.float32)
        # Average neighbouring samples to avoid harsh speckles.
        noise = (noise + np.roll(noise, 1, axis=0) + np.roll(noise, 1, axis=1)) / 3.0
        return frame + noise * float(self.config.grain_intensity) * 0.15


__all__ = ["PostFXConfig", "PostFXProcessor", "TONE_CURVES"]
