"""
Configuration schema and loader utilities for the Resonance worker.

The schema is intentionally lightweight (dataclasses + manual validation) so
that we avoid adding heavy dependencies. Configurations are expressed as YAML
and can be combined with preset overlays stored under `resonance/presets`.
Connectivity settings may also come from the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

import copy
import json
import os

import yaml

from . import PACKAGE_ROOT
from .jobs import JobStatus
from .shaders import ShaderKind

ENV_DATABASE_URL = "RESONANCE_DATABASE_URL"
ENV_CONCURRENCY = "RESONANCE_WORKER_CONCURRENCY"
ENV_CONFIG_PATH = "RESONANCE_CONFIG"

DEFAULT_RESOLUTION_PRESETS: Dict[str, Tuple[int, int]] = {
    "sd": (854, 480),
    "480p": (854, 480),
    "720p": (1280, 720),
    "hd": (1920, 1080),
    "1080p": (1920, 1080),
    "4k": (3840, 2160),
    "2160p": (3840, 2160),
}


class ConfigError(ValueError):
    """Raised when the worker configuration is unusable; fatal at startup."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class StoreConfig:
    url: Optional[str] = None
    table: str = "render_jobs"
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0

    def validate(self) -> None:
        if not self.url:
            raise ConfigError(
                f"store.url is required (set it in the config file or via {ENV_DATABASE_URL})."
            )
        if not self.table:
            raise ConfigError("store.table cannot be empty.")
        if self.retry_attempts < 1:
            raise ConfigError("store.retry_attempts must be >= 1.")
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("store retry delays must satisfy 0 <= base <= max.")


@dataclass(slots=True)
class RuntimeConfig:
    workers: int = 1
    executor: str = "process"
    poll_interval: float = 5.0
    cancel_poll_interval: float = 1.0
    eligible_statuses: List[str] = field(default_factory=lambda: [JobStatus.QUEUED.value])
    output_root: Path = Path("renders")
    work_root: Path = Path("/tmp/resonance-render")
    progress_interval_frames: int = 30
    worker_id: Optional[str] = None

    def validate(self) -> None:
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ConfigError("runtime.workers must be an integer >= 1.")
        if self.executor not in {"process", "thread"}:
            raise ConfigError("runtime.executor must be 'process' or 'thread'.")
        if self.poll_interval <= 0:
            raise ConfigError("runtime.poll_interval must be > 0.")
        if self.cancel_poll_interval <= 0:
            raise ConfigError("runtime.cancel_poll_interval must be > 0.")
        if self.progress_interval_frames < 1:
            raise ConfigError("runtime.progress_interval_frames must be >= 1.")
        if not self.eligible_statuses:
            raise ConfigError("runtime.eligible_statuses cannot be empty.")
        allowed = {JobStatus.QUEUED, JobStatus.DRAFT, JobStatus.FAILED}
        for value in self.eligible_statuses:
            try:
                status = JobStatus.parse(value)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            if status not in allowed:
                raise ConfigError(
                    f"runtime.eligible_statuses may only contain "
                    f"{sorted(s.value for s in allowed)}; got '{value}'."
                )

    def eligible(self) -> Tuple[JobStatus, ...]:
        return tuple(JobStatus.parse(value) for value in self.eligible_statuses)


@dataclass(slots=True)
class AudioConfig:
    sample_rate: int = 22_050
    window_length: int = 2048
    normalization_percentile: float = 95.0
    cache_root: Optional[Path] = None
    download_timeout: float = 60.0

    def validate(self) -> None:
        if self.sample_rate <= 0:
            raise ConfigError("audio.sample_rate must be > 0.")
        if self.window_length < 64:
            raise ConfigError("audio.window_length must be >= 64 samples.")
        if not 0.0 < self.normalization_percentile <= 100.0:
            raise ConfigError("audio.normalization_percentile must be within (0, 100].")
        if self.download_timeout <= 0:
            raise ConfigError("audio.download_timeout must be > 0.")


@dataclass(slots=True)
class RenderSettings:
    default_fps: int = 30
    default_resolution: str = "hd"
    max_duration_seconds: float = 420.0
    default_shader: str = ShaderKind.FLOW_NOISE.value
    enabled_shaders: List[str] = field(default_factory=lambda: [kind.value for kind in ShaderKind])
    resolution_presets: Dict[str, Tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_RESOLUTION_PRESETS)
    )
    gl_backend: Optional[str] = None
    pool_size: int = 2

    def validate(self) -> None:
        if not 1 <= self.default_fps <= 120:
            raise ConfigError("render.default_fps must be between 1 and 120 FPS.")
        if self.max_duration_seconds <= 0:
            raise ConfigError("render.max_duration_seconds must be > 0.")
        if self.pool_size < 1:
            raise ConfigError("render.pool_size must be >= 1.")
        for name, size in self.resolution_presets.items():
            if len(size) != 2:
                raise ConfigError(f"render.resolution_presets.{name} must contain width and height.")
            width, height = int(size[0]), int(size[1])
            if width <= 0 or height <= 0:
                raise ConfigError(f"render.resolution_presets.{name} values must be positive.")
            if width % 2 or height % 2:
                raise ConfigError(f"render.resolution_presets.{name} values must be even.")
        if self.default_resolution.lower() not in self.resolution_presets:
            raise ConfigError(
                f"render.default_resolution '{self.default_resolution}' is not a known preset."
            )
        if not self.enabled_shaders:
            raise ConfigError("render.enabled_shaders cannot be empty.")
        try:
            enabled = {ShaderKind.parse(value) for value in self.enabled_shaders}
            default = ShaderKind.parse(self.default_shader)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        if default not in enabled:
            raise ConfigError(f"render.default_shader '{default.value}' is not enabled.")

    def enabled_kinds(self) -> Tuple[ShaderKind, ...]:
        return tuple(ShaderKind.parse(value) for value in self.enabled_shaders)


@dataclass(slots=True)
class EncoderConfig:
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 20
    mux_audio: bool = True
    audio_codec: str = "aac"
    verify_output: bool = True
    preview: bool = True

    def validate(self) -> None:
        if not self.ffmpeg_path:
            raise ConfigError("encoder.ffmpeg_path cannot be empty.")
        if not 0 <= self.crf <= 51:
            raise ConfigError("encoder.crf must be within [0, 51].")


@dataclass(slots=True)
class WorkerConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    render: RenderSettings = field(default_factory=RenderSettings)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        self.store.validate()
        self.runtime.validate()
        self.audio.validate()
        self.render.validate()
        self.encoder.validate()

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-serializable summary (useful for logging)."""
        return {
            "store": {
                "url": _redact_url(self.store.url),
                "table": self.store.table,
                "retry_attempts": self.store.retry_attempts,
            },
            "runtime": {
                "workers": self.runtime.workers,
                "executor": self.runtime.executor,
                "poll_interval": self.runtime.poll_interval,
                "eligible_statuses": list(self.runtime.eligible_statuses),
                "output_root": str(self.runtime.output_root),
                "work_root": str(self.runtime.work_root),
            },
            "audio": {
                "sample_rate": self.audio.sample_rate,
                "window_length": self.audio.window_length,
                "normalization_percentile": self.audio.normalization_percentile,
                "cache_root": str(self.audio.cache_root) if self.audio.cache_root else None,
            },
            "render": {
                "default_fps": self.render.default_fps,
                "default_resolution": self.render.default_resolution,
                "default_shader": self.render.default_shader,
                "enabled_shaders": list(self.render.enabled_shaders),
                "max_duration_seconds": self.render.max_duration_seconds,
                "gl_backend": self.render.gl_backend,
            },
            "encoder": {
                "ffmpeg_path": self.encoder.ffmpeg_path,
                "video_codec": self.encoder.video_codec,
                "crf": self.encoder.crf,
                "mux_audio": self.encoder.mux_audio,
            },
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.describe(), indent=2)


def _redact_url(url: Optional[str]) -> Optional[str]:
    if not url or "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


# ---------------------------------------------------------------------------
# Loading utilities
# ---------------------------------------------------------------------------


def _load_yaml_file(path: Path) -> Mapping[str, Any]:
    raw = yaml.safe_load(path.read_text())
    if raw is None:
        raise ValueError(f"Configuration file '{path}' is empty.")
    if not isinstance(raw, Mapping):
        raise TypeError(f"Configuration '{path}' must be a mapping at top level.")
    return raw


def _deep_update(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> None:
    for key, value in overlay.items():
        if (
            isinstance(value, Mapping)
            and key in base
            and isinstance(base[key], MutableMapping)
        ):
            _deep_update(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def load_preset_dict(name: str) -> Mapping[str, Any]:
    """Load a preset overlay by name."""
    preset_path = PACKAGE_ROOT / "presets" / f"{name}.yaml"
    if not preset_path.exists():
        available = sorted(p.stem for p in (PACKAGE_ROOT / "presets").glob("*.yaml"))
        raise FileNotFoundError(
            f"Preset '{name}' not found. Available presets: {', '.join(available)}"
        )
    return _load_yaml_file(preset_path)


def available_presets() -> List[str]:
    return sorted(p.stem for p in (PACKAGE_ROOT / "presets").glob("*.yaml"))


def apply_presets(
    base_config: MutableMapping[str, Any], preset_names: Iterable[str]
) -> MutableMapping[str, Any]:
    """Apply one or more preset overlays to the base config mapping."""
    for name in preset_names:
        overlay = load_preset_dict(name)
        _deep_update(base_config, overlay)
    return base_config


def apply_overrides(
    mapping: MutableMapping[str, Any], overrides: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    # Dotted paths, e.g. `"runtime.workers": 2`, `"render.default_shader": "fractal-zoom"`
    for dotted_key, value in overrides.items():
        parts = dotted_key.split(".")
        cursor: MutableMapping[str, Any] = mapping
        for part in parts[:-1]:
            if part not in cursor or not isinstance(cursor[part], MutableMapping):
                cursor[part] = {}
            cursor = cursor[part]  # type: ignore[assignment]
        cursor[parts[-1]] = value
    return mapping


def _resolve_path(value: Any, base_dir: Path) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def _parse_presets(raw: Optional[Mapping[str, Any]]) -> Dict[str, Tuple[int, int]]:
    presets = dict(DEFAULT_RESOLUTION_PRESETS)
    for name, size in (raw or {}).items():
        if isinstance(size, str) and "x" in size.lower():
            width, height = size.lower().split("x", 1)
            presets[str(name).lower()] = (int(width), int(height))
        else:
            presets[str(name).lower()] = (int(size[0]), int(size[1]))
    return presets


def parse_config_mapping(
    mapping: Mapping[str, Any],
    config_dir: Path,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> WorkerConfig:
    env = os.environ if environ is None else environ

    store_cfg = mapping.get("store", {}) or {}
    runtime_cfg = mapping.get("runtime", {}) or {}
    audio_cfg = mapping.get("audio", {}) or {}
    render_cfg = mapping.get("render", {}) or {}
    encoder_cfg = mapping.get("encoder", {}) or {}

    store_url = env.get(ENV_DATABASE_URL) or store_cfg.get("url")
    workers = env.get(ENV_CONCURRENCY) or runtime_cfg.get("workers", 1)
    try:
        workers = int(workers)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid worker count '{workers}'.") from exc

    cache_root = audio_cfg.get("cache_root")

    config = WorkerConfig(
        store=StoreConfig(
            url=str(store_url) if store_url else None,
            table=str(store_cfg.get("table", "render_jobs")),
            retry_attempts=int(store_cfg.get("retry_attempts", 5)),
            retry_base_delay=float(store_cfg.get("retry_base_delay", 0.5)),
            retry_max_delay=float(store_cfg.get("retry_max_delay", 10.0)),
        ),
        runtime=RuntimeConfig(
            workers=workers,
            executor=str(runtime_cfg.get("executor", "process")).lower(),
            poll_interval=float(runtime_cfg.get("poll_interval", 5.0)),
            cancel_poll_interval=float(runtime_cfg.get("cancel_poll_interval", 1.0)),
            eligible_statuses=[
                str(value).lower()
                for value in runtime_cfg.get("eligible_statuses", [JobStatus.QUEUED.value])
            ],
            output_root=_resolve_path(runtime_cfg.get("output_root", "renders"), config_dir),
            work_root=_resolve_path(
                runtime_cfg.get("work_root", "/tmp/resonance-render"), config_dir
            ),
            progress_interval_frames=int(runtime_cfg.get("progress_interval_frames", 30)),
            worker_id=runtime_cfg.get("worker_id"),
        ),
        audio=AudioConfig(
            sample_rate=int(audio_cfg.get("sample_rate", 22_050)),
            window_length=int(audio_cfg.get("window_length", 2048)),
            normalization_percentile=float(audio_cfg.get("normalization_percentile", 95.0)),
            cache_root=_resolve_path(cache_root, config_dir) if cache_root else None,
            download_timeout=float(audio_cfg.get("download_timeout", 60.0)),
        ),
        render=RenderSettings(
            default_fps=int(render_cfg.get("default_fps", 30)),
            default_resolution=str(render_cfg.get("default_resolution", "hd")).lower(),
            max_duration_seconds=float(render_cfg.get("max_duration_seconds", 420.0)),
            default_shader=str(render_cfg.get("default_shader", ShaderKind.FLOW_NOISE.value)),
            enabled_shaders=[
                str(value)
                for value in render_cfg.get("enabled_shaders", [k.value for k in ShaderKind])
            ],
            resolution_presets=_parse_presets(render_cfg.get("resolution_presets")),
            gl_backend=render_cfg.get("gl_backend"),
            pool_size=int(render_cfg.get("pool_size", 2)),
        ),
        encoder=EncoderConfig(
            ffmpeg_path=str(encoder_cfg.get("ffmpeg_path", "ffmpeg")),
            ffprobe_path=str(encoder_cfg.get("ffprobe_path", "ffprobe")),
            video_codec=str(encoder_cfg.get("video_codec", "libx264")),
            preset=str(encoder_cfg.get("preset", "medium")),
            crf=int(encoder_cfg.get("crf", 20)),
            mux_audio=bool(encoder_cfg.get("mux_audio", True)),
            audio_codec=str(encoder_cfg.get("audio_codec", "aac")),
            verify_output=bool(encoder_cfg.get("verify_output", True)),
            preview=bool(encoder_cfg.get("preview", True)),
        ),
        metadata=dict(mapping.get("metadata", {}) or {}),
    )

    config.validate()
    return config


def load_worker_config(
    config_path: Optional[Path] = None,
    *,
    extra_presets: Optional[Sequence[str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WorkerConfig:
    """
    Load `worker.yaml`, optionally applying preset overlays and inline overrides.

    Parameters
    ----------
    config_path:
        Path to the YAML configuration file. When omitted, only defaults,
        presets, overrides and the environment contribute.
    extra_presets:
        Optional sequence of preset names (without `.yaml`) to overlay on top
        of the base configuration.
    overrides:
        Optional mapping of dotted key paths to values.
    environ:
        Environment mapping; defaults to `os.environ`.
    """
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file '{config_path}' does not exist.")
        raw_mapping: MutableMapping[str, Any] = dict(_load_yaml_file(config_path))
        config_dir = config_path.parent.resolve()
    else:
        raw_mapping = {}
        config_dir = Path.cwd()

    if extra_presets:
        apply_presets(raw_mapping, extra_presets)

    if overrides:
        apply_overrides(raw_mapping, overrides)

    return parse_config_mapping(raw_mapping, config_dir, environ=environ)


def write_config_template(path: Path) -> None:
    """Write a default worker.yaml template to `path`."""
    template_path = PACKAGE_ROOT / "templates" / "worker.yaml"
    if not template_path.exists():
        raise FileNotFoundError("Bundled worker.yaml template is missing.")
    path.write_text(template_path.read_text())
