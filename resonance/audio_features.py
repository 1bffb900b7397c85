"""
Audio fetching, decoding and per-frame feature extraction.

Produces one `AudioFeatureSample` per output video frame: RMS energy, band
energies (bass/mid/high), a transient measure and a spectral-centroid pitch
estimate. Values other than pitch are normalised per track against a high
percentile so quiet and loud masters drive the shaders equally. Results are
cached under `<cache_root>/<track>.npz` with checksum validation to avoid
recomputation when a job is re-run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from hashlib import sha256
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

import json
import logging
import math
import zipfile

try:
    import librosa  # type: ignore
except ImportError:  # pragma: no cover - exercised when dependency missing
    librosa = None  # type: ignore[assignment]
import numpy as np
import requests

from .errors import PipelineError

LOG = logging.getLogger("resonance.audio")

FRAME_LENGTH = 2048
CHUNK_FRAMES = 512
BANDS: Dict[str, Tuple[float, Optional[float]]] = {
    "bass": (20.0, 250.0),
    "mid": (250.0, 4000.0),
    "high": (4000.0, None),
}
NORMALISED_CHANNELS = ("energy", "bass", "mid", "high", "transient")


class DecodeError(PipelineError):
    """Audio could not be decoded (corrupt, unsupported or empty)."""

    category = "DecodeError"


class AudioFetchError(PipelineError):
    """The audio reference could not be resolved to a local file."""

    category = "AudioFetchError"


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True))


@dataclass(slots=True)
class FeatureLayout:
    sample_rate: int
    fps: int
    window_length: int = FRAME_LENGTH
    normalization_percentile: float = 95.0
    duration_seconds: Optional[float] = None
    max_duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "sample_rate": self.sample_rate,
            "fps": self.fps,
            "window_length": self.window_length,
            "normalization_percentile": self.normalization_percentile,
            "duration_seconds": self.duration_seconds,
            "max_duration_seconds": self.max_duration_seconds,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "FeatureLayout":
        duration = payload.get("duration_seconds")
        max_duration = payload.get("max_duration_seconds")
        return cls(
            sample_rate=int(payload["sample_rate"]),
            fps=int(payload["fps"]),
            window_length=int(payload["window_length"]),
            normalization_percentile=float(payload["normalization_percentile"]),
            duration_seconds=float(duration) if duration is not None else None,
            max_duration_seconds=float(max_duration) if max_duration is not None else None,
        )


@dataclass(frozen=True, slots=True)
class AudioFeatureSample:
    time_seconds: float
    energy: float
    bass: float
    mid: float
    high: float
    transient: float
    pitch_estimate: float


@dataclass(slots=True)
class AudioFeatureTrack:
    """One feature sample per output frame; arrays are read-only after construction."""

    fps: int
    times: np.ndarray
    energy: np.ndarray
    bass: np.ndarray
    mid: np.ndarray
    high: np.ndarray
    transient: np.ndarray
    pitch: np.ndarray

    def __post_init__(self) -> None:
        length = self.times.shape[0]
        for name in ("energy", "bass", "mid", "high", "transient", "pitch"):
            array = getattr(self, name)
            if array.shape != (length,):
                raise ValueError(f"Feature '{name}' has shape {array.shape}, expected ({length},).")
            array.setflags(write=False)
        if length and np.any(np.diff(self.times) <= 0):
            raise ValueError("Feature times must be strictly increasing.")
        self.times.setflags(write=False)

    @property
    def frame_count(self) -> int:
        return int(self.times.shape[0])

    @property
    def duration_seconds(self) -> float:
        return self.frame_count / float(self.fps)

    def __len__(self) -> int:
        return self.frame_count

    def sample(self, index: int) -> AudioFeatureSample:
        return AudioFeatureSample(
            time_seconds=float(self.times[index]),
            energy=float(self.energy[index]),
            bass=float(self.bass[index]),
            mid=float(self.mid[index]),
            high=float(self.high[index]),
            transient=float(self.transient[index]),
            pitch_estimate=float(self.pitch[index]),
        )

    def sample_at(self, time_seconds: float) -> AudioFeatureSample:
        """Linearly interpolated sample, clamped to the first/last frame."""
        if self.frame_count == 0:
            raise IndexError("Feature track is empty.")
        t = float(time_seconds)

        def lerp(values: np.ndarray) -> float:
            return float(np.interp(t, self.times, values))

        return AudioFeatureSample(
            time_seconds=t,
            energy=lerp(self.energy),
            bass=lerp(self.bass),
            mid=lerp(self.mid),
            high=lerp(self.high),
            transient=lerp(self.transient),
            pitch_estimate=lerp(self.pitch),
        )

    def to_cache_payload(self) -> Dict[str, np.ndarray]:
        return {
            "times": self.times.astype(np.float64),
            "energy": self.energy.astype(np.float32),
            "bass": self.bass.astype(np.float32),
            "mid": self.mid.astype(np.float32),
            "high": self.high.astype(np.float32),
            "transient": self.transient.astype(np.float32),
            "pitch": self.pitch.astype(np.float32),
        }


@dataclass(slots=True)
class FeatureResult:
    track: AudioFeatureTrack
    layout: FeatureLayout
    cache_path: Optional[Path]
    checksum: str
    source_audio: Path
    audio_duration_seconds: float
    cache_hit: bool = field(default=False)


# ---------------------------------------------------------------------------
# Fetching and decoding
# ---------------------------------------------------------------------------


def fetch_audio(audio_url: str, work_dir: Path, *, timeout: float = 60.0) -> Path:
    """Resolve `audio_url` (http(s)://, file:// or a plain path) to a local file."""
    if not audio_url or not str(audio_url).strip():
        raise AudioFetchError("job has no audio reference")

    parsed = urlparse(str(audio_url))
    if parsed.scheme in {"http", "https"}:
        suffix = Path(parsed.path).suffix or ".audio"
        work_dir.mkdir(parents=True, exist_ok=True)
        target = work_dir / f"source{suffix}"
        _log("audio.fetch", url=f"{parsed.scheme}://{parsed.netloc}{parsed.path}", target=str(target))
        try:
            with requests.get(audio_url, stream=True, timeout=timeout) as response:
                response.raise_for_status()
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=1 << 16):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            target.unlink(missing_ok=True)
            raise AudioFetchError(f"download failed: {exc}") from exc
        return target

    if parsed.scheme == "file":
        path = Path(url2pathname(parsed.path))
    elif parsed.scheme and len(parsed.scheme) > 1:
        raise AudioFetchError(f"unsupported audio URL scheme '{parsed.scheme}'")
    else:
        path = Path(audio_url)

    if not path.is_file():
        raise AudioFetchError(f"audio source not found: {path}")
    return path


def decode_audio(audio_path: Path, sample_rate: int) -> np.ndarray:
    if librosa is None:
        raise ImportError(
            "librosa is required for feature extraction. "
            "Install the project dependencies (pip install -e .)."
        )
    try:
        y, _ = librosa.load(str(audio_path), sr=sample_rate, mono=True)
    except Exception as exc:  # librosa surfaces backend-specific error types
        raise DecodeError(f"could not decode {Path(audio_path).name}: {exc}") from exc

    y = np.asarray(y, dtype=np.float32)
    if y.size == 0:
        raise DecodeError(f"{Path(audio_path).name} contains no audio samples")
    if not np.all(np.isfinite(y)):
        raise DecodeError(f"{Path(audio_path).name} decoded to non-finite samples")
    return y


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def frame_count_for(duration_seconds: float, fps: int) -> int:
    # Rounded first so 10.0 * 30 never becomes 301 through float noise.
    return int(math.ceil(round(duration_seconds * fps, 6)))


def _normalise(values: np.ndarray, percentile: float) -> np.ndarray:
    reference = float(np.percentile(values, percentile)) if values.size else 0.0
    if reference <= 1e-12:
        reference = float(values.max()) if values.size else 0.0
    if reference <= 1e-12:
        return np.zeros_like(values, dtype=np.float32)
    return np.clip(values / reference, 0.0, 1.0).astype(np.float32)


def analyze_signal(
    y: np.ndarray,
    sample_rate: int,
    *,
    fps: int,
    duration_seconds: float,
    window_length: int = FRAME_LENGTH,
    normalization_percentile: float = 95.0,
) -> AudioFeatureTrack:
    """Compute the per-frame feature track for a decoded mono signal."""
    frame_count = frame_count_for(duration_seconds, fps)
    if frame_count < 1:
        raise DecodeError("audio is shorter than one video frame")

    hop = sample_rate / float(fps)
    n_fft = max(int(window_length), 2 * int(math.ceil(hop)))
    n_fft += n_fft % 2
    half = n_fft // 2

    centers = np.round(np.arange(frame_count) * hop).astype(np.int64)
    right_pad = half + max(0, int(centers[-1]) - y.shape[0] + 1)
    padded = np.pad(y.astype(np.float32), (half, right_pad))
    windows = np.lib.stride_tricks.sliding_window_view(padded, n_fft)

    hann = librosa.filters.get_window("hann", n_fft, fftbins=True).astype(np.float32)
    freqs = librosa.fft_frequencies(sr=sample_rate, n_fft=n_fft)
    masks = {}
    for name, (low, high) in BANDS.items():
        upper = freqs <= high if high is not None else np.ones_like(freqs, dtype=bool)
        masks[name] = (freqs >= low) & upper

    rms = np.empty(frame_count, dtype=np.float64)
    bands = {name: np.empty(frame_count, dtype=np.float64) for name in BANDS}
    centroid = np.empty(frame_count, dtype=np.float64)

    for start in range(0, frame_count, CHUNK_FRAMES):
        stop = min(start + CHUNK_FRAMES, frame_count)
        block = windows[centers[start:stop]]
        rms[start:stop] = np.sqrt(np.mean(np.square(block, dtype=np.float64), axis=1))
        magnitude = np.abs(np.fft.rfft(block * hann, axis=1))
        power = np.square(magnitude)
        for name, mask in masks.items():
            bands[name][start:stop] = np.sqrt(power[:, mask].sum(axis=1))
        centroid[start:stop] = librosa.feature.spectral_centroid(S=magnitude.T, freq=freqs)[0]

    transient = np.diff(rms, prepend=rms[0]).clip(min=0.0)

    channels = {
        "energy": rms,
        "bass": bands["bass"],
        "mid": bands["mid"],
        "high": bands["high"],
        "transient": transient,
    }
    normalised = {
        name: _normalise(values, normalization_percentile) for name, values in channels.items()
    }

    return AudioFeatureTrack(
        fps=int(fps),
        times=np.arange(frame_count, dtype=np.float64) / float(fps),
        energy=normalised["energy"],
        bass=normalised["bass"],
        mid=normalised["mid"],
        high=normalised["high"],
        transient=normalised["transient"],
        pitch=np.nan_to_num(centroid).astype(np.float32),
    )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def _checksum_file(path: Path) -> str:
    digest = sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _cache_metadata(
    checksum: str,
    layout: FeatureLayout,
    source_path: Path,
    audio_duration: float,
) -> Dict[str, object]:
    return {
        "checksum": checksum,
        "layout": layout.to_dict(),
        "source": str(source_path),
        "audio_duration": audio_duration,
    }


def _load_cached_result(
    cache_path: Path, checksum: str, layout: FeatureLayout
) -> Optional[FeatureResult]:
    if not cache_path.exists():
        return None

    try:
        with np.load(cache_path, allow_pickle=False) as data:
            metadata = json.loads(str(data["metadata"]))
            if metadata.get("checksum") != checksum:
                return None
            if metadata.get("layout") != layout.to_dict():
                return None

            track = AudioFeatureTrack(
                fps=layout.fps,
                times=data["times"],
                energy=data["energy"],
                bass=data["bass"],
                mid=data["mid"],
                high=data["high"],
                transient=data["transient"],
                pitch=data["pitch"],
            )
    except (OSError, EOFError, KeyError, ValueError, zipfile.BadZipFile) as exc:
        LOG.warning("Discarding unreadable feature cache %s: %s", cache_path, exc)
        cache_path.unlink(missing_ok=True)
        return None

    _log(
        "features.cache_hit",
        cache_path=str(cache_path),
        checksum=checksum,
        frames=track.frame_count,
    )
    return FeatureResult(
        track=track,
        layout=FeatureLayout.from_dict(metadata["layout"]),
        cache_path=cache_path,
        checksum=checksum,
        source_audio=Path(metadata["source"]),
        audio_duration_seconds=float(metadata["audio_duration"]),
        cache_hit=True,
    )


def _save_cache(cache_path: Path, feature_result: FeatureResult) -> None:
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    payload = feature_result.track.to_cache_payload()
    metadata = _cache_metadata(
        checksum=feature_result.checksum,
        layout=feature_result.layout,
        source_path=feature_result.source_audio,
        audio_duration=feature_result.audio_duration_seconds,
    )
    # Renamed into place only once fully written.
    tmp_path = cache_path.with_name(cache_path.name + ".tmp")
    with tmp_path.open("wb") as handle:
        np.savez_compressed(handle, **payload, metadata=json.dumps(metadata))
    tmp_path.replace(cache_path)


def compute_features(
    *,
    audio_path: Path,
    fps: int,
    duration_seconds: Optional[float],
    sample_rate: int,
    window_length: int = FRAME_LENGTH,
    normalization_percentile: float = 95.0,
    max_duration_seconds: Optional[float] = None,
    cache_root: Optional[Path] = None,
    track_id: Optional[str] = None,
) -> FeatureResult:
    """
    Decode `audio_path` and compute one feature sample per output frame.

    The analysed duration is `duration_seconds` when given, otherwise the
    decoded audio length; both are capped at `max_duration_seconds`. When
    `cache_root` and `track_id` are set, a matching cache entry (same audio
    checksum and layout) is returned without decoding.
    """
    audio_path = Path(audio_path)
    if not audio_path.is_file():
        raise DecodeError(f"audio source not found: {audio_path}")
    if duration_seconds is not None and duration_seconds <= 0:
        raise DecodeError(f"invalid duration {duration_seconds}")

    layout = FeatureLayout(
        sample_rate=int(sample_rate),
        fps=int(fps),
        window_length=int(window_length),
        normalization_percentile=float(normalization_percentile),
        duration_seconds=duration_seconds,
        max_duration_seconds=max_duration_seconds,
    )
    checksum = _checksum_file(audio_path)
    cache_path = cache_root / f"{track_id}.npz" if cache_root and track_id else None
    if cache_path is not None:
        cached = _load_cached_result(cache_path, checksum, layout)
        if cached:
            return cached

    _log(
        "features.compute",
        track_id=track_id,
        cache_path=str(cache_path) if cache_path else None,
        sample_rate=sample_rate,
        fps=fps,
    )

    y = decode_audio(audio_path, sample_rate)
    audio_duration = y.shape[0] / float(sample_rate)
    duration = duration_seconds if duration_seconds is not None else audio_duration
    if max_duration_seconds is not None:
        duration = min(duration, max_duration_seconds)

    track = analyze_signal(
        y,
        sample_rate,
        fps=fps,
        duration_seconds=duration,
        window_length=window_length,
        normalization_percentile=normalization_percentile,
    )
    result = FeatureResult(
        track=track,
        layout=layout,
        cache_path=cache_path,
        checksum=checksum,
        source_audio=audio_path,
        audio_duration_seconds=audio_duration,
    )
    if cache_path is not None:
        _save_cache(cache_path, result)
        _log(
            "features.cache_write",
            track_id=track_id,
            cache_path=str(cache_path),
            frames=track.frame_count,
        )
    return result


__all__ = [
    "AudioFeatureSample",
    "AudioFeatureTrack",
    "AudioFetchError",
    "DecodeError",
    "FeatureLayout",
    "FeatureResult",
    "analyze_signal",
    "compute_features",
    "decode_audio",
    "fetch_audio",
    "frame_count_for",
]
