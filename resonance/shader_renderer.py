"""
Off-screen GPU renderer built on moderngl.

One `ShaderRenderer` drives one job: it owns a standalone GL context, an
RGBA framebuffer at the output resolution, the compiled program for the
job's ShaderKind and a small pool of frame buffers that are handed to the
encoder and returned after writing.

Lifecycle: Uninitialized -> ContextReady -> Compiled -> Rendering ->
Finished | Failed. `release()` is idempotent and must be called on every
exit path.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import threading
from typing import Deque, Optional, Tuple

import numpy as np

try:
    import moderngl  # type: ignore
except ImportError:  # pragma: no cover - exercised when dependency missing
    moderngl = None  # type: ignore[assignment]

from .audio_features import AudioFeatureTrack
from .errors import PipelineError
from .shaders import ShaderKind, ShaderProgram, program_for
from .style import ShaderConfig

LOG = logging.getLogger("resonance.renderer")

GL_VERSION = 330
FULLSCREEN_QUAD = np.array([-1.0, -1.0, 1.0, -1.0, -1.0, 1.0, 1.0, 1.0], dtype="f4")


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True))


class ContextCreationError(PipelineError):
    """No usable GPU / GL context could be created."""

    category = "ContextCreationError"


class CompileError(PipelineError):
    """A shader program failed to compile or link."""

    category = "CompileError"

    def __init__(self, kind: ShaderKind, diagnostic: str) -> None:
        self.kind = kind
        self.diagnostic = diagnostic.strip()
        super().__init__(f"{kind.value}: {self.diagnostic}")


class RendererState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONTEXT_READY = "context_ready"
    COMPILED = "compiled"
    RENDERING = "rendering"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(slots=True)
class RenderFrame:
    """RGBA pixels (height, width, 4) for one frame index, borrowed from a FramePool."""

    index: int
    pixels: np.ndarray
    pool: Optional["FramePool"] = field(default=None, repr=False)

    def tobytes(self) -> memoryview:
        return memoryview(self.pixels).cast("B")

    def release(self) -> None:
        if self.pool is not None:
            pool, self.pool = self.pool, None
            pool.give_back(self.pixels)


class FramePool:
    """Fixed set of preallocated frame buffers; no allocation per frame."""

    def __init__(self, width: int, height: int, capacity: int = 2) -> None:
        if capacity < 1:
            raise ValueError("Frame pool capacity must be >= 1.")
        self.width = int(width)
        self.height = int(height)
        self.capacity = int(capacity)
        self._lock = threading.Lock()
        self._free: Deque[np.ndarray] = deque(
            np.zeros((self.height, self.width, 4), dtype=np.uint8) for _ in range(self.capacity)
        )

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._free)

    def acquire(self, index: int) -> RenderFrame:
        with self._lock:
            if not self._free:
                raise RuntimeError(
                    f"Frame pool exhausted ({self.capacity} buffers); frames must be released after encoding."
                )
            pixels = self._free.popleft()
        return RenderFrame(index=index, pixels=pixels, pool=self)

    def give_back(self, pixels: np.ndarray) -> None:
        with self._lock:
            if len(self._free) >= self.capacity:
                raise RuntimeError("Frame returned to a pool that is already full.")
            self._free.append(pixels)


class ShaderRenderer:
    def __init__(self, *, backend: Optional[str] = None, pool_size: int = 2) -> None:
        self.backend = backend
        self.pool_size = pool_size
        self.state = RendererState.UNINITIALIZED
        self.kind: Optional[ShaderKind] = None
        self.size: Optional[Tuple[int, int]] = None
        self.frames_rendered = 0
        self._ctx = None
        self._fbo = None
        self._vbo = None
        self._vao = None
        self._gl_program = None
        self._program: Optional[ShaderProgram] = None
        self._pool: Optional[FramePool] = None
        self._readback: Optional[bytearray] = None
        self._readback_view: Optional[np.ndarray] = None
        self._next_index = 0

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _require(self, *states: RendererState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise RuntimeError(f"Renderer is {self.state.value}; expected one of: {expected}.")

    def create_context(self, width: int, height: int) -> None:
        self._require(RendererState.UNINITIALIZED)
        if moderngl is None:
            self.state = RendererState.FAILED
            raise ContextCreationError("moderngl is not installed")

        kwargs = {"standalone": True, "require": GL_VERSION}
        if self.backend:
            kwargs["backend"] = self.backend
        try:
            ctx = moderngl.create_context(**kwargs)
        except Exception as exc:  # moderngl reports driver failures as plain Exception
            self.state = RendererState.FAILED
            raise ContextCreationError(f"could not create GL {GL_VERSION} context: {exc}") from exc

        self._ctx = ctx
        try:
            color = ctx.renderbuffer((int(width), int(height)), components=4)
            self._fbo = ctx.framebuffer(color_attachments=[color])
        except Exception as exc:  # out of memory or unsupported size
            self.release()
            self.state = RendererState.FAILED
            raise ContextCreationError(f"could not allocate {width}x{height} framebuffer: {exc}") from exc

        self.size = (int(width), int(height))
        self._pool = FramePool(int(width), int(height), capacity=self.pool_size)
        self._readback = bytearray(int(width) * int(height) * 4)
        self._readback_view = np.frombuffer(self._readback, dtype=np.uint8).reshape(
            int(height), int(width), 4
        )
        self.state = RendererState.CONTEXT_READY
        _log(
            "renderer.context",
            width=int(width),
            height=int(height),
            backend=self.backend,
            gl_renderer=str(getattr(ctx, "info", {}).get("GL_RENDERER", "unknown")),
        )

    def compile(self, kind: "ShaderKind | str") -> None:
        self._require(RendererState.CONTEXT_READY)
        program = program_for(kind)
        try:
            gl_program = self._ctx.program(
                vertex_shader=program.vertex_source(),
                fragment_shader=program.fragment_source(),
            )
        except moderngl.Error as exc:
            self.state = RendererState.FAILED
            raise CompileError(program.kind, str(exc)) from exc

        self._gl_program = gl_program
        self._vbo = self._ctx.buffer(FULLSCREEN_QUAD.tobytes())
        self._vao = self._ctx.vertex_array(gl_program, [(self._vbo, "2f", "in_position")])
        self._program = program
        self.kind = program.kind
        self.state = RendererState.COMPILED
        _log("renderer.compiled", shader=program.kind.value)

    def render_frame(
        self,
        frame_index: int,
        features: AudioFeatureTrack,
        config: ShaderConfig,
    ) -> RenderFrame:
        """Render `frame_index` into a pooled buffer; the caller must release it."""
        self._require(RendererState.COMPILED, RendererState.RENDERING)
        if frame_index != self._next_index:
            raise ValueError(
                f"Frames must be rendered in order: expected {self._next_index}, got {frame_index}."
            )
        if (config.width, config.height) != self.size:
            raise ValueError(f"Config resolution {config.resolution} does not match context {self.size}.")

        self.state = RendererState.RENDERING
        time = frame_index / float(config.fps)
        sample = features.sample_at(time)
        uniforms = self._program.uniform_values(time=time, sample=sample, config=config)
        frame = self._pool.acquire(frame_index)
        try:
            for name, value in uniforms.items():
                member = self._gl_program.get(name, None)
                # Unused uniforms are optimised out by the GLSL compiler.
                if member is not None:
                    member.value = value
            self._fbo.use()
            self._fbo.clear(0.0, 0.0, 0.0, 1.0)
            self._vao.render(moderngl.TRIANGLE_STRIP)
            self._fbo.read_into(self._readback, components=4, alignment=1)
            # GL rows start at the bottom.
            np.copyto(frame.pixels, self._readback_view[::-1])
        except Exception:
            frame.release()
            self.state = RendererState.FAILED
            raise

        self._next_index += 1
        self.frames_rendered += 1
        return frame

    def finish(self) -> None:
        self._require(RendererState.COMPILED, RendererState.RENDERING)
        self.state = RendererState.FINISHED

    def release(self) -> None:
        """Free GL objects and the context. Safe to call any number of times."""
        for attr in ("_vao", "_vbo", "_gl_program", "_fbo", "_ctx"):
            resource = getattr(self, attr)
            if resource is not None:
                setattr(self, attr, None)
                try:
                    resource.release()
                except Exception as exc:  # context already lost
                    LOG.warning("Failed to release %s: %s", attr.lstrip("_"), exc)
        self._program = None
        self._readback_view = None
        self._readback = None
        if self.state not in {RendererState.FAILED, RendererState.UNINITIALIZED}:
            self.state = RendererState.FINISHED

    @property
    def released(self) -> bool:
        return self._ctx is None

    def __enter__(self) -> "ShaderRenderer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self.state is not RendererState.UNINITIALIZED:
            self.state = RendererState.FAILED
        self.release()


__all__ = [
    "CompileError",
    "ContextCreationError",
    "FramePool",
    "RenderFrame",
    "RendererState",
    "ShaderRenderer",
]
