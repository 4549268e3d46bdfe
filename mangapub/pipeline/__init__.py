"""Publication pipeline: locate, optimize, relocate, commit and sweep."""

from .errors import (
    ChapterNotFound,
    CleanupFailure,
    ConversionFailure,
    InvalidTransition,
    PipelineError,
    PublishCancelled,
    RelocationFailure,
    SourceNotFound,
    TransactionFailure,
    UnpublishableChapter,
)
from .moderation import ApproveResult, ModerationOrchestrator, PendingChapter, RejectResult

__all__ = [
    "ApproveResult",
    "ChapterNotFound",
    "CleanupFailure",
    "ConversionFailure",
    "InvalidTransition",
    "ModerationOrchestrator",
    "PendingChapter",
    "PipelineError",
    "PublishCancelled",
    "RejectResult",
    "RelocationFailure",
    "SourceNotFound",
    "TransactionFailure",
    "UnpublishableChapter",
]
