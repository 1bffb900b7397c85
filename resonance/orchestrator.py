"""
Job-level orchestration for the Resonance worker.

`process_job` takes one claimed job through audio analysis, shader rendering
and FFmpeg packaging, keeping the persisted status in step:

    Analyzing -> Generating -> Completed
                     \\-> Failed(reason) | Canceled

Every exit path releases the GL context, reaps the encoder and persists a
terminal state.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Optional, Tuple

from .audio_features import compute_features, fetch_audio
from .cancellation import CANCEL_STATUSES, CancellationToken, CancellationWatcher, JobCanceled
from .config_schema import WorkerConfig
from .errors import PipelineError
from .frame_writer import EncodeError, FFMpegWriter, compute_sha256, probe_video
from .jobs import Job, JobStatus, RenderResult
from .postfx import PostFXProcessor
from .shader_renderer import ShaderRenderer
from .store import JobStore, StoreError
from .style import resolve_shader_config

LOG = logging.getLogger("resonance.orchestrator")

VIDEO_NAME = "video.mp4"
PREVIEW_NAME = "preview.png"
SUMMARY_NAME = "summary.json"


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True, default=str))


def output_dir_for(job_id: str, config: WorkerConfig) -> Path:
    return Path(config.runtime.output_root) / job_id


def _enter_generating(store: JobStore, job: Job) -> None:
    if store.transition(job.id, (JobStatus.ANALYZING,), JobStatus.GENERATING, progress=0):
        return
    status = store.status_of(job.id)
    if status is None or status in CANCEL_STATUSES:
        raise JobCanceled(f"record is {status.value if status else 'missing'}")
    raise JobCanceled(f"record left Analyzing unexpectedly (now {status.value})")


def _report_progress(store: JobStore, job_id: str, done: int, total: int) -> None:
    try:
        store.update_progress(job_id, int(100 * done / max(total, 1)))
    except StoreError as exc:
        LOG.warning("Progress update for %s failed: %s", job_id, exc)


def _persist_failure(store: JobStore, job_id: str, reason: str) -> None:
    try:
        if not store.fail(job_id, reason):
            LOG.warning("Job %s was no longer in flight; failure not recorded", job_id)
    except StoreError as exc:
        LOG.error("Could not persist failure of %s: %s", job_id, exc)


def _persist_cancel(store: JobStore, job_id: str) -> Tuple[JobStatus, Optional[str]]:
    """Mark the job canceled unless it already settled; returns the persisted status and error."""
    try:
        store.mark_canceled(job_id)
        record = store.get(job_id)
    except StoreError as exc:
        LOG.error("Could not persist cancellation of %s: %s", job_id, exc)
        return JobStatus.CANCELED, None
    if record is None:
        return JobStatus.CANCELED, None
    status = JobStatus.parse(record["status"])
    if status is JobStatus.FAILED:
        return status, record.get("error")
    if status.terminal or status in CANCEL_STATUSES:
        return status, None
    return JobStatus.CANCELED, None


def process_job(
    job: Job,
    config: WorkerConfig,
    *,
    store: JobStore,
    token: Optional[CancellationToken] = None,
    renderer: Optional[ShaderRenderer] = None,
    watch_cancellation: bool = True,
) -> RenderResult:
    """
    Render one claimed job and persist its terminal status.

    Pipeline steps:
    - Style resolution and audio fetch.
    - Feature extraction (one sample per output frame, cached per job).
    - Sequential shader rendering with optional post FX, streamed to FFmpeg.
    - Output verification, checksum and summary.json next to the video.

    Errors never propagate: they end the job as Failed with the error's
    reason, or as Canceled when the token fires.
    """
    token = token or CancellationToken()
    started = time.perf_counter()
    timings: dict[str, float] = {}
    output_dir = output_dir_for(job.id, config)
    work_dir = Path(config.runtime.work_root) / job.id
    video_path = output_dir / VIDEO_NAME
    frame_count = 0

    renderer = renderer or ShaderRenderer(
        backend=config.render.gl_backend, pool_size=config.render.pool_size
    )
    writer: Optional[FFMpegWriter] = None
    watcher: Optional[CancellationWatcher] = None
    if watch_cancellation:
        watcher = CancellationWatcher(
            store, job.id, token, interval=config.runtime.cancel_poll_interval
        )
        watcher.start()

    _log("job.started", job_id=job.id, audio_url=job.audio_url, status=job.status.value)

    try:
        shader_config = resolve_shader_config(job, config)
        token.raise_if_canceled()

        t0 = time.perf_counter()
        audio_path = fetch_audio(
            job.audio_url, work_dir, timeout=config.audio.download_timeout
        )
        feature_result = compute_features(
            audio_path=audio_path,
            fps=shader_config.fps,
            duration_seconds=shader_config.duration_seconds,
            sample_rate=config.audio.sample_rate,
            window_length=config.audio.window_length,
            normalization_percentile=config.audio.normalization_percentile,
            max_duration_seconds=config.render.max_duration_seconds,
            cache_root=config.audio.cache_root,
            track_id=job.id,
        )
        track = feature_result.track
        frame_count = track.frame_count
        shader_config = shader_config.with_duration(track.duration_seconds)
        timings["features_sec"] = time.perf_counter() - t0
        token.raise_if_canceled()

        _enter_generating(store, job)

        t1 = time.perf_counter()
        renderer.create_context(shader_config.width, shader_config.height)
        renderer.compile(shader_config.shader_kind)

        processor = (
            PostFXProcessor(
                config=shader_config.postfx,
                resolution=shader_config.resolution,
                seed=shader_config.seed,
            )
            if shader_config.postfx.enabled
            else None
        )

        output_dir.mkdir(parents=True, exist_ok=True)
        writer = FFMpegWriter(
            output_path=video_path,
            frame_rate=shader_config.fps,
            resolution=shader_config.resolution,
            audio_path=audio_path if config.encoder.mux_audio else None,
            duration=track.duration_seconds,
            ffmpeg_path=config.encoder.ffmpeg_path,
            video_codec=config.encoder.video_codec,
            preset=config.encoder.preset,
            crf=config.encoder.crf,
            audio_codec=config.encoder.audio_codec,
            preview_path=output_dir / PREVIEW_NAME if config.encoder.preview else None,
            preview_index=frame_count // 2,
        )

        interval = config.runtime.progress_interval_frames
        for index in range(frame_count):
            token.raise_if_canceled()
            frame = renderer.render_frame(index, track, shader_config)
            if processor is not None:
                try:
                    processor.process(frame.pixels)
                except Exception:
                    frame.release()
                    raise
            writer.push_frame(frame)
            if (index + 1) % interval == 0 and index + 1 < frame_count:
                _report_progress(store, job.id, index + 1, frame_count)
        renderer.finish()
        timings["render_sec"] = time.perf_counter() - t1

        token.raise_if_canceled()
        t2 = time.perf_counter()
        writer.finish()
        if writer.frames_written != frame_count:
            raise EncodeError(f"wrote {writer.frames_written} of {frame_count} frames")
        if config.encoder.verify_output:
            probe = probe_video(video_path, ffprobe_path=config.encoder.ffprobe_path)
            if probe.frame_count != frame_count:
                raise EncodeError(
                    f"encoded video has {probe.frame_count} frames, expected {frame_count}"
                )
        checksum = compute_sha256(video_path)
        timings["encode_sec"] = time.perf_counter() - t2
        timings["total_sec"] = time.perf_counter() - started

        result = RenderResult(
            job_id=job.id,
            status=JobStatus.COMPLETED,
            video_path=video_path,
            frame_count=frame_count,
            elapsed_seconds=timings["total_sec"],
            timings=timings,
            checksum=checksum,
        )
        encoder = writer.to_metadata()
        summary = {
            **result.to_dict(),
            "video_url": result.video_url,
            "preview": encoder["preview"],
            "encoder": encoder,
            "shader": shader_config.describe(),
            "feature_cache": str(feature_result.cache_path) if feature_result.cache_path else None,
            "feature_checksum": feature_result.checksum,
            "audio_duration_sec": feature_result.audio_duration_seconds,
            "gl_renderer_frames": renderer.frames_rendered,
        }
        (output_dir / SUMMARY_NAME).write_text(json.dumps(summary, indent=2))

        if not store.complete(job.id, video_url=result.video_url, frame_count=frame_count):
            raise JobCanceled("record changed before completion")

        _log(
            "job.completed",
            job_id=job.id,
            frames=frame_count,
            shader=shader_config.shader_kind.value,
            video_path=str(video_path),
            elapsed_sec=round(result.elapsed_seconds, 3),
        )
        return result

    except JobCanceled as exc:
        _discard_outputs(writer, output_dir)
        status, error = _persist_cancel(store, job.id)
        _log("job.canceled", job_id=job.id, reason=exc.reason, status=status.value)
        return RenderResult(
            job_id=job.id,
            status=status,
            frame_count=0,
            elapsed_seconds=time.perf_counter() - started,
            error=error,
            timings=timings,
        )
    except PipelineError as exc:
        reason = exc.reason()
        _discard_outputs(writer, output_dir)
        _persist_failure(store, job.id, reason)
        _log("job.failed", job_id=job.id, reason=reason)
        return _failed(job, reason, started, timings)
    except Exception as exc:
        LOG.exception("Unexpected error while processing job %s", job.id)
        reason = f"InternalError: {type(exc).__name__}: {exc}"
        _discard_outputs(writer, output_dir)
        _persist_failure(store, job.id, reason)
        _log("job.failed", job_id=job.id, reason=reason)
        return _failed(job, reason, started, timings)
    finally:
        if watcher is not None:
            watcher.stop()
            watcher.join(timeout=max(config.runtime.cancel_poll_interval * 2, 1.0))
        if writer is not None:
            writer.abort()
        renderer.release()
        shutil.rmtree(work_dir, ignore_errors=True)


def _discard_outputs(writer: Optional[FFMpegWriter], output_dir: Path) -> None:
    if writer is not None:
        writer.abort()
    shutil.rmtree(output_dir, ignore_errors=True)


def _failed(job: Job, reason: str, started: float, timings: dict[str, float]) -> RenderResult:
    return RenderResult(
        job_id=job.id,
        status=JobStatus.FAILED,
        elapsed_seconds=time.perf_counter() - started,
        error=reason,
        timings=timings,
    )


__all__ = ["output_dir_for", "process_job"]
