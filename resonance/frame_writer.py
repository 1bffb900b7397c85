"""
Utilities for piping rendered frames to FFmpeg, verifying the result and
generating preview assets.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
import math
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

try:  # pragma: no cover - optional for environments without imageio
    import imageio.v3 as imageio
except Exception:  # pragma: no cover
    imageio = None  # type: ignore[assignment]

from .errors import PipelineError
from .shader_renderer import RenderFrame

LOG = logging.getLogger("resonance.frame_writer")

STDERR_TAIL_BYTES = 2000


class EncodeError(PipelineError):
    """Raised when FFmpeg cannot be started or exits with a non-zero status."""

    category = "EncodeError"

    def __init__(self, message: str, *, exit_code: Optional[int] = None, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        detail = message
        if stderr:
            detail = f"{message}: {stderr.strip()}"
        super().__init__(detail)


@dataclass(slots=True)
class VideoProbe:
    frame_count: int
    duration_seconds: float
    width: int
    height: int


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


class FFMpegWriter:
    """
    One FFmpeg child process per job, fed raw RGBA frames over stdin.

    Frames must arrive in ascending index order starting at 0; each pushed
    frame is returned to its pool once written.
    """

    def __init__(
        self,
        *,
        output_path: Path,
        frame_rate: int,
        resolution: Sequence[int],
        audio_path: Optional[Path] = None,
        duration: Optional[float] = None,
        ffmpeg_path: str = "ffmpeg",
        video_codec: str = "libx264",
        preset: str = "medium",
        crf: int = 20,
        audio_codec: str = "aac",
        preview_path: Optional[Path] = None,
        preview_index: Optional[int] = None,
    ) -> None:
        self.output_path = Path(output_path)
        self.frame_rate = int(frame_rate)
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.audio_path = audio_path
        self.duration_limit = duration
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.preset = preset
        self.crf = crf
        self.audio_codec = audio_codec
        self.preview_path = preview_path
        self.preview_index = preview_index if preview_index is not None else 0

        self.frames_written = 0
        self.finished = False
        self.aborted = False
        self.preview_written: Optional[Path] = None
        self._start_time = time.perf_counter()
        self._stderr_file = tempfile.TemporaryFile()
        self._process = self._spawn_ffmpeg()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def build_command(self) -> list[str]:
        width, height = self.resolution

        video_input = [
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgba",
            "-s",
            f"{width}x{height}",
            "-r",
            str(self.frame_rate),
            "-i",
            "-",
        ]

        audio_input: list[str] = []
        audio_output: list[str] = ["-an"]
        if self.audio_path is not None:
            audio_input = ["-i", str(self.audio_path)]
            audio_output = ["-map", "1:a:0?", "-c:a", self.audio_codec, "-b:a", "192k"]

        output_args = [
            "-map",
            "0:v:0",
            *audio_output,
            "-c:v",
            self.video_codec,
            "-preset",
            self.preset,
            "-crf",
            str(self.crf),
            "-pix_fmt",
            "yuv420p",
            "-movflags",
            "+faststart",
        ]
        # Audio is trimmed to the video length; rounding up keeps the last frame.
        if self.audio_path is not None and self.duration_limit is not None:
            output_args += ["-t", f"{math.ceil(self.duration_limit * 1000) / 1000:.3f}"]
        output_args.append(str(self.output_path))

        return [self.ffmpeg_path, "-y", "-loglevel", "error", *video_input, *audio_input, *output_args]

    def _spawn_ffmpeg(self) -> subprocess.Popen:
        _ensure_parent(self.output_path)
        cmd = self.build_command()
        LOG.debug("FFmpeg command: %s", " ".join(cmd))
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=self._stderr_file,
            )
        except OSError as exc:
            self._stderr_file.close()
            raise EncodeError(f"could not start {self.ffmpeg_path}: {exc}") from exc

    def _stderr_tail(self) -> str:
        try:
            self._stderr_file.seek(0)
            data = self._stderr_file.read()
        except (OSError, ValueError):
            return ""
        return data[-STDERR_TAIL_BYTES:].decode("utf-8", errors="replace")

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #

    def push_frame(self, frame: RenderFrame) -> None:
        try:
            if self.finished or self.aborted:
                raise RuntimeError("Encoder is closed.")
            if frame.index != self.frames_written:
                raise ValueError(
                    f"Frames must be pushed in order: expected {self.frames_written}, got {frame.index}."
                )
            width, height = self.resolution
            if frame.pixels.shape != (height, width, 4):
                raise ValueError(f"Frame must have shape ({height}, {width}, 4).")
            stdin = self._process.stdin
            if stdin is None or stdin.closed:
                raise EncodeError("FFmpeg process has no stdin.")
            try:
                stdin.write(frame.tobytes())
            except (BrokenPipeError, OSError) as exc:
                exit_code = self._process.wait()
                raise EncodeError(
                    f"FFmpeg stopped accepting frames (exit status {exit_code})",
                    exit_code=exit_code,
                    stderr=self._stderr_tail(),
                ) from exc
            if self.preview_path is not None and frame.index == self.preview_index:
                self._save_preview(frame.pixels)
            self.frames_written += 1
        finally:
            frame.release()

    def _save_preview(self, pixels: np.ndarray) -> None:
        if imageio is None:
            return
        _ensure_parent(self.preview_path)
        imageio.imwrite(self.preview_path, np.ascontiguousarray(pixels[..., :3]))
        self.preview_written = self.preview_path

    # ------------------------------------------------------------------ #
    # Close & metadata
    # ------------------------------------------------------------------ #

    def finish(self) -> Path:
        """Close stdin, wait for FFmpeg and validate its exit status."""
        if self.finished:
            return self.output_path
        if self.aborted:
            raise RuntimeError("Encoder was aborted.")
        stdin = self._process.stdin
        if stdin and not stdin.closed:
            try:
                stdin.close()
            except (BrokenPipeError, OSError):
                LOG.debug("FFmpeg stdin already closed")
        returncode = self._process.wait()
        stderr = self._stderr_tail()
        self._stderr_file.close()
        if returncode != 0:
            self.aborted = True
            self.output_path.unlink(missing_ok=True)
            LOG.error("FFmpeg stderr: %s", stderr)
            raise EncodeError(
                f"FFmpeg exited with status {returncode}", exit_code=returncode, stderr=stderr
            )
        self.finished = True
        LOG.debug(
            "Encoded %d frames to %s in %.2fs",
            self.frames_written,
            self.output_path,
            time.perf_counter() - self._start_time,
        )
        return self.output_path

    def abort(self) -> None:
        """Kill and reap FFmpeg and delete any partial output. Idempotent."""
        if self.finished or self.aborted:
            return
        self.aborted = True
        if self._process.poll() is None:
            self._process.kill()
        stdin = self._process.stdin
        if stdin and not stdin.closed:
            try:
                stdin.close()
            except (BrokenPipeError, OSError):
                LOG.debug("FFmpeg stdin already closed")
        self._process.wait()
        self._stderr_file.close()
        self.output_path.unlink(missing_ok=True)
        if self.preview_written is not None:
            self.preview_written.unlink(missing_ok=True)
            self.preview_written = None

    @property
    def duration(self) -> float:
        return self.frames_written / max(self.frame_rate, 1)

    def to_metadata(self) -> dict:
        return {
            "output": str(self.output_path),
            "frames": self.frames_written,
            "frame_rate": self.frame_rate,
            "duration_seconds": self.duration,
            "resolution": list(self.resolution),
            "preview": str(self.preview_written) if self.preview_written else None,
        }


def probe_video(path: Path, *, ffprobe_path: str = "ffprobe") -> VideoProbe:
    """Count the packets of the first video stream with ffprobe."""
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-count_packets",
        "-show_entries",
        "stream=nb_read_packets,width,height:format=duration",
        "-of",
        "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as exc:
        raise EncodeError(f"could not start {ffprobe_path}: {exc}") from exc
    if result.returncode != 0:
        raise EncodeError(
            f"ffprobe exited with status {result.returncode}",
            exit_code=result.returncode,
            stderr=result.stderr[-STDERR_TAIL_BYTES:],
        )
    try:
        payload = json.loads(result.stdout)
        stream = payload["streams"][0]
        return VideoProbe(
            frame_count=int(stream["nb_read_packets"]),
            duration_seconds=float(payload.get("format", {}).get("duration", 0.0)),
            width=int(stream["width"]),
            height=int(stream["height"]),
        )
    except (ValueError, KeyError, IndexError) as exc:
        raise EncodeError(f"unexpected ffprobe output for {path}: {exc}") from exc


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "EncodeError",
    "FFMpegWriter",
    "VideoProbe",
    "compute_sha256",
    "probe_video",
]
