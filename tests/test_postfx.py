from __future__ import annotations

import numpy as np
import pytest

from resonance.postfx import PostFXConfig, PostFXProcessor


def _make_frame(width: int = 32, height: int = 32) -> np.ndarray:
    ramp = np.linspace(0, 255, width * height * 3).astype(np.uint8)
    frame = np.full((height, width, 4), 255, dtype=np.uint8)
    frame[..., :3] = ramp.reshape(height, width, 3)
    return frame


def test_postfx_processor_deterministic_seed() -> None:
    config = PostFXConfig(
        tone_curve="filmlog",
        grain_intensity=0.2,
        chroma_shift=0.01,
        vignette_strength=0.4,
        motion_trails=True,
    )
    proc_a = PostFXProcessor(config=config, resolution=(32, 32), seed=123)
    proc_b = PostFXProcessor(config=config, resolution=(32, 32), seed=123)

    for _ in range(3):
        out_a = proc_a.process(_make_frame())
        out_b = proc_b.process(_make_frame())
        assert out_a.dtype == np.uint8
        assert np.array_equal(out_a, out_b)


def test_postfx_modifies_frame_in_place_and_keeps_alpha() -> None:
    config = PostFXConfig(vignette_strength=0.8)
    processor = PostFXProcessor(config=config, resolution=(32, 16), seed=7)
    frame = _make_frame(32, 16)
    original = frame.copy()

    result = processor.process(frame)

    assert result is frame
    assert np.all(frame[..., 3] == 255)
    # Corners darken, centre is untouched by the vignette.
    assert frame[0, 0, :3].sum() <= original[0, 0, :3].sum()
    assert not np.array_equal(frame[..., :3], original[..., :3])


def test_linear_config_is_disabled_and_identity() -> None:
    config = PostFXConfig()
    assert not config.enabled
    processor = PostFXProcessor(config=config, resolution=(32, 32), seed=1)
    frame = _make_frame()
    expected = frame.copy()
    processor.process(frame)
    assert np.array_equal(frame, expected)


def test_postfx_rejects_invalid_shape() -> None:
    processor = PostFXProcessor(config=PostFXConfig(), resolution=(16, 16), seed=1)
    with pytest.raises(ValueError):
        processor.process(np.zeros((16, 16, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        processor.process(np.zeros((16, 16, 4), dtype=np.float32))


def test_from_mapping_accepts_short_keys_and_validates() -> None:
    config = PostFXConfig.from_mapping({"tone_curve": "Punch", "vignette": 0.3, "grain": 0.1})
    assert config.tone_curve == "punch"
    assert config.vignette_strength == pytest.approx(0.3)
    assert config.grain_intensity == pytest.approx(0.1)
    assert config.enabled

    with pytest.raises(ValueError):
        PostFXConfig.from_mapping({"tone_curve": "sepia"})
    with pytest.raises(ValueError):
        PostFXConfig.from_mapping({"vignette": 2.0})


def test_from_mapping_reads_chroma_shift_and_trails() -> None:
    config = PostFXConfig.from_mapping({"chroma_shift": 0.02, "motion_trails": True})
    assert config.chroma_shift == pytest.approx(0.02)
    assert config.motion_trails
    assert config.enabled
    assert not PostFXConfig.from_mapping({}).enabled

    with pytest.raises(ValueError):
        PostFXConfig.from_mapping({"chroma_shift": 0.2})
