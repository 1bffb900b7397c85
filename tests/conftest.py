from __future__ import annotations

import json
import re
import subprocess
import wave
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import numpy as np
import pytest
import sqlalchemy as sa

from resonance import frame_writer, shader_renderer
from resonance.config_schema import WorkerConfig, parse_config_mapping
from resonance.store import JobStore

SAMPLE_RATE = 22_050


def write_wav(
    path: Path,
    seconds: float,
    *,
    sample_rate: int = SAMPLE_RATE,
    freq: float = 440.0,
    amplitude: float = 0.5,
    signal: Optional[np.ndarray] = None,
) -> Path:
    if signal is None:
        t = np.arange(int(round(seconds * sample_rate))) / sample_rate
        signal = amplitude * np.sin(2.0 * np.pi * freq * t)
    pcm = np.clip(np.asarray(signal) * 32767.0, -32768, 32767).astype("<i2")
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm.tobytes())
    return path


@pytest.fixture
def wav_factory(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "track.wav", seconds: float = 1.0, **kwargs) -> Path:
        return write_wav(tmp_path / "audio" / name, seconds, **kwargs)

    return _make


# --------------------------------------------------------------------------- #
# Fake moderngl
# --------------------------------------------------------------------------- #


class FakeGLError(Exception):
    pass


class FakeReleasable:
    def __init__(self) -> None:
        self.released = False

    def release(self) -> None:
        self.released = True


class FakeUniform:
    def __init__(self, name: str) -> None:
        self.name = name
        self.value = None


class FakeProgram(FakeReleasable):
    def __init__(self, fragment_shader: str) -> None:
        super().__init__()
        names = re.findall(r"uniform\s+\w+\s+(\w+)\s*;", fragment_shader)
        self.members = {name: FakeUniform(name) for name in names}

    def get(self, name: str, default=None):
        return self.members.get(name, default)


class FakeVertexArray(FakeReleasable):
    def __init__(self, gl: "FakeModernGL") -> None:
        super().__init__()
        self._gl = gl

    def render(self, mode: int) -> None:
        index = self._gl.draws
        self._gl.draws += 1
        if self._gl.on_render is not None:
            self._gl.on_render(index)


class FakeFramebuffer(FakeReleasable):
    def __init__(self, size) -> None:
        super().__init__()
        self.width, self.height = size

    def use(self) -> None:
        return None

    def clear(self, *args) -> None:
        return None

    def read_into(self, buffer, components: int = 3, alignment: int = 1, **_) -> None:
        assert components == 4
        view = np.frombuffer(buffer, dtype=np.uint8).reshape(self.height, self.width, 4)
        # Each GL row (bottom-up) is filled with its row number.
        view[...] = (np.arange(self.height) % 256).astype(np.uint8)[:, None, None]


class FakeContext(FakeReleasable):
    def __init__(self, gl: "FakeModernGL") -> None:
        super().__init__()
        self._gl = gl
        self.info = {"GL_RENDERER": "fake"}
        self.programs: list[FakeProgram] = []

    def renderbuffer(self, size, components: int = 4):
        rb = FakeReleasable()
        rb.size = size
        return rb

    def framebuffer(self, color_attachments):
        return FakeFramebuffer(color_attachments[0].size)

    def program(self, vertex_shader: str, fragment_shader: str) -> FakeProgram:
        assert vertex_shader.startswith("#version 330")
        assert fragment_shader.startswith("#version 330")
        if self._gl.compile_error:
            raise FakeGLError(self._gl.compile_error)
        program = FakeProgram(fragment_shader)
        self.programs.append(program)
        return program

    def buffer(self, data: bytes):
        return FakeReleasable()

    def vertex_array(self, program, content):
        return FakeVertexArray(self._gl)


class FakeModernGL:
    Error = FakeGLError
    TRIANGLE_STRIP = 5

    def __init__(self) -> None:
        self.contexts: list[FakeContext] = []
        self.create_kwargs: list[dict] = []
        self.draws = 0
        self.compile_error: Optional[str] = None
        self.context_error: Optional[str] = None
        self.on_render: Optional[Callable[[int], None]] = None

    def create_context(self, **kwargs) -> FakeContext:
        self.create_kwargs.append(kwargs)
        if self.context_error:
            raise Exception(self.context_error)
        ctx = FakeContext(self)
        self.contexts.append(ctx)
        return ctx

    @property
    def live_contexts(self) -> list[FakeContext]:
        return [ctx for ctx in self.contexts if not ctx.released]


@pytest.fixture
def fake_gl(monkeypatch: pytest.MonkeyPatch) -> FakeModernGL:
    gl = FakeModernGL()
    monkeypatch.setattr(shader_renderer, "moderngl", gl)
    return gl


# --------------------------------------------------------------------------- #
# Fake FFmpeg / ffprobe
# --------------------------------------------------------------------------- #


class FakeStdin:
    def __init__(self, process: "FakeProcess") -> None:
        self.closed = False
        self._process = process

    def write(self, data) -> int:
        if self._process.break_after is not None and self._process.writes >= self._process.break_after:
            raise BrokenPipeError("broken pipe")
        self._process.bytes_written += len(data)
        self._process.writes += 1
        return len(data)

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, cmd: list[str], stderr, *, returncode: int, stderr_text: bytes, break_after) -> None:
        self.cmd = cmd
        self.output_path = Path(cmd[-1])
        size = cmd[cmd.index("-s") + 1]
        width, height = (int(v) for v in size.split("x"))
        self.frame_size = width * height * 4
        self.width, self.height = width, height
        self.fps = int(cmd[cmd.index("-r") + 1])
        self._stderr = stderr
        self._final_code = returncode
        self._stderr_text = stderr_text
        self.break_after = break_after
        self.stdin = FakeStdin(self)
        self.returncode: Optional[int] = None
        self.bytes_written = 0
        self.writes = 0
        self.killed = False

    @property
    def frames(self) -> int:
        return self.bytes_written // self.frame_size

    def poll(self) -> Optional[int]:
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None) -> int:
        if self.returncode is None:
            self.returncode = self._final_code
            if self._stderr_text and hasattr(self._stderr, "write"):
                self._stderr.write(self._stderr_text)
            if self.returncode == 0:
                self.output_path.parent.mkdir(parents=True, exist_ok=True)
                self.output_path.write_bytes(b"video" * max(1, self.frames))
        return self.returncode


class FakeFFmpeg:
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.returncode = 0
        self.stderr_text = b""
        self.break_after: Optional[int] = None
        self.probe_calls: list[list[str]] = []

    def popen(self, cmd, stdin=None, stdout=None, stderr=None, **_):
        process = FakeProcess(
            list(cmd),
            stderr,
            returncode=self.returncode,
            stderr_text=self.stderr_text,
            break_after=self.break_after,
        )
        self.processes.append(process)
        return process

    def run(self, cmd, capture_output: bool = False, text: bool = False, **_):
        self.probe_calls.append(list(cmd))
        target = Path(cmd[-1])
        for process in reversed(self.processes):
            if process.output_path == target:
                payload = {
                    "streams": [
                        {
                            "nb_read_packets": str(process.frames),
                            "width": process.width,
                            "height": process.height,
                        }
                    ],
                    "format": {"duration": f"{process.frames / process.fps:.6f}"},
                }
                return SimpleNamespace(returncode=0, stdout=json.dumps(payload), stderr="")
        return SimpleNamespace(returncode=1, stdout="", stderr=f"{target}: No such file")


def patch_writer_subprocess(monkeypatch: pytest.MonkeyPatch, **calls: Callable) -> SimpleNamespace:
    """Swap the `subprocess` module seen by frame_writer only; librosa/audioread keep the real one."""
    namespace = SimpleNamespace(
        Popen=subprocess.Popen,
        run=subprocess.run,
        PIPE=subprocess.PIPE,
        DEVNULL=subprocess.DEVNULL,
    )
    for name, call in calls.items():
        setattr(namespace, name, call)
    monkeypatch.setattr(frame_writer, "subprocess", namespace)
    return namespace


@pytest.fixture
def fake_ffmpeg(monkeypatch: pytest.MonkeyPatch) -> FakeFFmpeg:
    ffmpeg = FakeFFmpeg()
    patch_writer_subprocess(monkeypatch, Popen=ffmpeg.popen, run=ffmpeg.run)
    return ffmpeg


# --------------------------------------------------------------------------- #
# Store / config
# --------------------------------------------------------------------------- #


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def store(db_url: str) -> JobStore:
    job_store = JobStore(sa.create_engine(db_url), sleep=lambda _: None)
    job_store.create_schema()
    yield job_store
    job_store.dispose()


@pytest.fixture
def worker_config(tmp_path: Path, db_url: str) -> WorkerConfig:
    mapping = {
        "store": {"url": db_url, "retry_base_delay": 0.0, "retry_max_delay": 0.0},
        "runtime": {
            "executor": "thread",
            "poll_interval": 0.01,
            "cancel_poll_interval": 0.01,
            "output_root": "renders",
            "work_root": "work",
            "progress_interval_frames": 30,
            "worker_id": "test-worker",
        },
        "audio": {"sample_rate": SAMPLE_RATE, "cache_root": "cache"},
        "render": {
            "default_resolution": "tiny",
            "resolution_presets": {"tiny": "16x8"},
        },
        "encoder": {"preview": False},
    }
    return parse_config_mapping(mapping, tmp_path, environ={})
