"""Shared base class for errors that end a job with a persisted reason."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """
    Base for terminal pipeline failures.

    Subclasses set `category`; `reason()` produces the human-readable string
    stored in the job record's `error` field.
    """

    category = "PipelineError"

    def reason(self) -> str:
        detail = str(self).strip()
        if not detail:
            return self.category
        return f"{self.category}: {detail}"


class StyleError(PipelineError):
    """Raised when a job's style parameters cannot be turned into a ShaderConfig."""

    category = "StyleError"


__all__ = ["PipelineError", "StyleError"]
