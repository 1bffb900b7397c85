"""Job value types and the status state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional


class JobStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, value: "str | JobStatus") -> "JobStatus":
        if isinstance(value, JobStatus):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown job status '{value}'. Expected one of: {allowed}") from None

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED)

    def can_transition(self, target: "JobStatus") -> bool:
        return target in TRANSITIONS[self]


IN_FLIGHT: FrozenSet[JobStatus] = frozenset(
    {JobStatus.QUEUED, JobStatus.ANALYZING, JobStatus.GENERATING}
)

# Forward along the pipeline, plus retry (Failed -> Queued) and cancellation.
# Claiming may skip Queued when the poller is configured to pick up
# Draft/Failed records directly.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.QUEUED, JobStatus.ANALYZING}),
    JobStatus.QUEUED: frozenset(
        {JobStatus.ANALYZING, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.DRAFT}
    ),
    JobStatus.ANALYZING: frozenset(
        {JobStatus.GENERATING, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.DRAFT}
    ),
    JobStatus.GENERATING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.DRAFT}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED, JobStatus.ANALYZING}),
    JobStatus.CANCELED: frozenset({JobStatus.QUEUED}),
}


@dataclass(frozen=True, slots=True)
class Job:
    id: str
    project_id: Optional[str]
    audio_url: str
    style_parameters: Mapping[str, Any] = field(default_factory=dict)
    duration_seconds: Optional[float] = None
    target_fps: Optional[int] = None
    target_resolution: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Job":
        style = record.get("style_parameters") or {}
        if not isinstance(style, Mapping):
            raise TypeError(f"Job {record.get('id')}: style_parameters must be a mapping.")
        duration = record.get("duration_seconds")
        fps = record.get("target_fps")
        return cls(
            id=str(record["id"]),
            project_id=record.get("project_id"),
            audio_url=str(record.get("audio_url") or ""),
            style_parameters=dict(style),
            duration_seconds=float(duration) if duration is not None else None,
            target_fps=int(fps) if fps is not None else None,
            target_resolution=record.get("target_resolution"),
            status=JobStatus.parse(record.get("status") or JobStatus.DRAFT),
        )


@dataclass(slots=True)
class RenderResult:
    job_id: str
    status: JobStatus
    video_path: Optional[Path] = None
    frame_count: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)
    checksum: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is JobStatus.COMPLETED

    @property
    def video_url(self) -> Optional[str]:
        if self.video_path is None:
            return None
        return self.video_path.resolve().as_uri()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "video_path": str(self.video_path) if self.video_path else None,
            "frame_count": self.frame_count,
            "elapsed_seconds": self.elapsed_seconds,
            "error": self.error,
            "timings": dict(self.timings),
            "checksum": self.checksum,
        }


__all__ = ["IN_FLIGHT", "Job", "JobStatus", "RenderResult", "TRANSITIONS"]
