"""Typed failures raised by the publication pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(RuntimeError):
    """Base class carrying the failing stage and, where known, the object key."""

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        chapter_id: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.key = key
        self.chapter_id = chapter_id
        if stage:
            self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "stage": self.stage,
            "key": self.key,
            "chapterId": self.chapter_id,
            "message": self.message,
        }


class SourceNotFound(PipelineError):
    stage = "locate"


class ConversionFailure(PipelineError):
    stage = "optimize"


class RelocationFailure(PipelineError):
    stage = "relocate"


class TransactionFailure(PipelineError):
    stage = "commit"


class CleanupFailure(PipelineError):
    """Only ever reported inside a sweep report."""

    stage = "cleanup"


class ChapterNotFound(PipelineError):
    stage = "lookup"


class InvalidTransition(PipelineError):
    stage = "lookup"


class UnpublishableChapter(PipelineError):
    stage = "locate"


class PublishCancelled(PipelineError):
    stage = "relocate"


__all__ = [
    "ChapterNotFound",
    "CleanupFailure",
    "ConversionFailure",
    "InvalidTransition",
    "PipelineError",
    "PublishCancelled",
    "RelocationFailure",
    "SourceNotFound",
    "TransactionFailure",
    "UnpublishableChapter",
]
