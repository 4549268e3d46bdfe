"""Approve and reject entry points sequencing the publication pipeline."""

from __future__ import annotations

import logging
import posixpath
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config import AppConfig
from ..services import naming
from ..services.events import emit_task_event
from ..services.object_store import ObjectStore, ObjectStoreError, build_object_store
from ..services.settings import WebPConfig, WebPConfigStore
from ..services.storage import ChapterRecord, ChapterRepository, ChapterStatus, PageRecord
from .errors import ChapterNotFound, InvalidTransition, PipelineError, UnpublishableChapter
from .locator import StagingLocator
from .metadata import MetadataSynchronizer, PageUpdate, PublishStats
from .optimizer import ImageOptimizer
from .relocator import DEFAULT_CONCURRENCY, ObjectRelocator, RelocationOutcome, RelocationTask
from .sweeper import CleanupSweeper, SweepReport


LOGGER = logging.getLogger(__name__)

PUBLISHED_PAGE = "published"
DEGRADED = "degraded"


@dataclass(frozen=True)
class SkippedPage:
    page_id: int
    page_index: int
    reason: str
    reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageId": self.page_id,
            "pageIndex": self.page_index,
            "reason": self.reason,
            "reference": self.reference,
        }


@dataclass(frozen=True)
class RelocatedPage:
    index: int
    dest_key: str
    url: Optional[str]
    source_key: Optional[str]
    strategy: str
    action: str
    transferred: bool
    page_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageId": self.page_id,
            "index": self.index,
            "key": self.dest_key,
            "url": self.url,
            "sourceKey": self.source_key,
            "strategy": self.strategy,
            "action": self.action,
            "transferred": self.transferred,
        }


@dataclass
class ApproveResult:
    chapter_id: int
    published_prefix: str
    relocated: List[RelocatedPage] = field(default_factory=list)
    skipped_pages: List[SkippedPage] = field(default_factory=list)
    stats: PublishStats = field(default_factory=PublishStats)
    cleanup: Optional[SweepReport] = None
    degraded: bool = False

    @property
    def relocated_count(self) -> int:
        return len(self.relocated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "chapterId": self.chapter_id,
            "publishedPrefix": self.published_prefix,
            "relocatedCount": self.relocated_count,
            "relocated": [page.to_dict() for page in self.relocated],
            "skippedPages": [page.to_dict() for page in self.skipped_pages],
            "stats": self.stats.to_dict(),
            "degraded": self.degraded,
            "cleanup": self.cleanup.to_dict() if self.cleanup else None,
        }


@dataclass
class RejectResult:
    chapter_id: int
    status: ChapterStatus
    deleted_page_count: int
    cleanup: SweepReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "chapterId": self.chapter_id,
            "status": self.status.value,
            "deletedPageCount": self.deleted_page_count,
            "cleanupCounts": dict(self.cleanup.prefix_counts, exact=self.cleanup.exact_deleted),
            "errors": [error.to_dict() for error in self.cleanup.errors],
        }


@dataclass(frozen=True)
class PendingChapter:
    chapter: ChapterRecord
    page_count: int
    slug: str


@dataclass(frozen=True)
class _Plan:
    tasks: List[RelocationTask]
    strategies: Dict[int, str]
    skipped: List[SkippedPage]
    dropped_page_ids: List[int]
    degraded: bool


class ModerationOrchestrator:
    """Run approve and reject for one chapter at a time."""

    def __init__(
        self,
        repository: ChapterRepository,
        staging: ObjectStore,
        permanent: ObjectStore,
        *,
        settings: Optional[WebPConfigStore] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._repository = repository
        self._staging = staging
        self._permanent = permanent
        self._settings = settings or WebPConfigStore(repository)
        self._concurrency = concurrency
        self._synchronizer = MetadataSynchronizer(repository)
        self._sweeper = CleanupSweeper(staging, permanent)

    @classmethod
    def from_config(
        cls, config: AppConfig, repository: Optional[ChapterRepository] = None
    ) -> "ModerationOrchestrator":
        repository = repository or ChapterRepository(config)
        return cls(
            repository,
            build_object_store(config.staging_store),
            build_object_store(config.permanent_store),
            concurrency=config.publish_concurrency,
        )

    @property
    def repository(self) -> ChapterRepository:
        return self._repository

    @property
    def staging(self) -> ObjectStore:
        return self._staging

    @property
    def permanent(self) -> ObjectStore:
        return self._permanent

    @property
    def settings(self) -> WebPConfigStore:
        return self._settings

    @property
    def synchronizer(self) -> MetadataSynchronizer:
        return self._synchronizer

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def slug_for(self, chapter: ChapterRecord) -> str:
        manga = self._repository.get_manga(chapter.manga_id)
        if manga is None:
            return naming.manga_slug(chapter.manga_id)
        return naming.manga_slug(
            manga.id, manga.slug, manga.title_romaji, manga.original_title, manga.title
        )

    def _require_chapter(self, chapter_id: int) -> ChapterRecord:
        chapter = self._repository.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFound(f"Chapter {chapter_id} does not exist", chapter_id=chapter_id)
        return chapter

    def _staged_listing(self, chapter: ChapterRecord) -> List[str]:
        prefixes = [naming.staging_prefix(chapter.manga_id, chapter.id)]
        prefixes.extend(naming.legacy_staging_prefixes(chapter.id))
        keys: List[str] = []
        for prefix in prefixes:
            try:
                keys.extend(
                    item.key
                    for item in self._staging.list_prefix(prefix)
                    if naming.belongs_to_prefix(item.key, prefix)
                )
            except ObjectStoreError as error:
                raise PipelineError(
                    f"Unable to list staging prefix {prefix}: {error}",
                    key=prefix,
                    chapter_id=chapter.id,
                    stage="locate",
                ) from error
        return keys

    def _plan(
        self,
        chapter: ChapterRecord,
        slug: str,
        pages: Sequence[PageRecord],
        listing: Sequence[str],
    ) -> _Plan:
        def dest(index: int) -> str:
            return naming.destination_key(slug, chapter.volume, chapter.chapter_number, index)

        # Pages already committed to the permanent store need no staged source.
        published: Dict[int, str] = {}
        for page in pages:
            key = self._permanent.key_for(page.location)
            if key and key.startswith(naming.permanent_prefix(slug, chapter.volume, chapter.chapter_number)):
                published[page.id] = key
        locator = StagingLocator(
            naming.staging_prefix(chapter.manga_id, chapter.id), normalizer=self._staging.key_for
        )
        resolutions = {
            resolution.page.id: resolution
            for resolution in locator.resolve_all([page for page in pages if page.id not in published], listing)
        }

        tasks: List[RelocationTask] = []
        strategies: Dict[int, str] = {}
        skipped: List[SkippedPage] = []
        dropped: List[int] = []
        for page in sorted(pages, key=lambda item: (item.page_index, item.id)):
            if page.id in published:
                index = len(tasks) + 1
                current = published[page.id]
                moved = current != dest(index)
                tasks.append(
                    RelocationTask(
                        chapter_id=chapter.id,
                        index=index,
                        dest_key=dest(index),
                        source_key=current if moved else None,
                        page_id=page.id,
                        file_name=page.file_name,
                        source_is_permanent=moved,
                    )
                )
                strategies[index] = PUBLISHED_PAGE
                continue
            resolution = resolutions[page.id]
            if resolution.key is None:
                skipped.append(SkippedPage(page.id, page.page_index, resolution.strategy, page.location))
                dropped.append(page.id)
                continue
            index = len(tasks) + 1
            tasks.append(
                RelocationTask(
                    chapter_id=chapter.id,
                    index=index,
                    dest_key=dest(index),
                    source_key=resolution.key,
                    page_id=page.id,
                    file_name=page.file_name,
                )
            )
            strategies[index] = resolution.strategy

        if tasks:
            return _Plan(tasks, strategies, skipped, dropped, degraded=False)
        if pages:
            raise UnpublishableChapter(
                f"None of the {len(pages)} page(s) of chapter {chapter.id} could be located in staging",
                chapter_id=chapter.id,
            )

        # No page rows at all: publish whatever was staged, in natural order.
        staged = [
            key
            for key in sorted(set(listing), key=naming.natural_sort_key)
            if key.rsplit(".", 1)[-1].lower() in naming.IMAGE_EXTENSIONS
        ]
        if not staged:
            raise UnpublishableChapter(
                f"Chapter {chapter.id} has no pages and nothing staged", chapter_id=chapter.id
            )
        LOGGER.warning(
            "Chapter %s has no page rows; publishing %s staged object(s) in positional order",
            chapter.id,
            len(staged),
        )
        for index, key in enumerate(staged, start=1):
            tasks.append(
                RelocationTask(
                    chapter_id=chapter.id,
                    index=index,
                    dest_key=dest(index),
                    source_key=key,
                    file_name=posixpath.basename(key),
                )
            )
            strategies[index] = DEGRADED
        return _Plan(tasks, strategies, [], [], degraded=True)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def approve(
        self,
        chapter_id: int,
        *,
        force: bool = False,
        delete_staging: bool = True,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ApproveResult:
        """Publish a chapter; re-running it after success transfers nothing."""

        start = time.perf_counter()
        chapter = self._require_chapter(chapter_id)
        if chapter.chapter_status is ChapterStatus.REJECTED:
            raise InvalidTransition(
                f"Chapter {chapter_id} was rejected; create a new chapter to publish again",
                chapter_id=chapter_id,
            )
        slug = self.slug_for(chapter)
        webp: WebPConfig = self._settings.load()
        emit_task_event(
            "approve",
            "Publishing chapter",
            payload={"chapter_id": chapter_id, "slug": slug, "status": chapter.status, "force": force},
        )

        pages = self._repository.list_pages(chapter_id)
        listing = self._staged_listing(chapter)
        plan = self._plan(chapter, slug, pages, listing)

        relocator = ObjectRelocator(
            self._staging, self._permanent, ImageOptimizer(webp), concurrency=self._concurrency
        )
        deadline = time.monotonic() + timeout if timeout is not None else None
        outcomes = relocator.run(plan.tasks, force=force, cancel_event=cancel_event, deadline=deadline)
        stats = PublishStats.from_outcomes(outcomes)

        updates = [
            PageUpdate(
                page_index=outcome.task.index,
                image_key=outcome.task.dest_key,
                image_url=self._permanent.public_url(outcome.task.dest_key),
                page_id=outcome.task.page_id,
                file_name=outcome.task.file_name,
            )
            for outcome in outcomes
        ]
        self._synchronizer.commit(chapter_id, updates, stats, dropped_page_ids=plan.dropped_page_ids)

        cleanup: Optional[SweepReport] = None
        if delete_staging:
            staged_sources = [
                outcome.task.source_key
                for outcome in outcomes
                if outcome.task.source_key and not outcome.task.source_is_permanent
            ]
            cleanup = self._sweeper.sweep(chapter, slug, staged_keys=staged_sources)

        result = ApproveResult(
            chapter_id=chapter_id,
            published_prefix=naming.permanent_prefix(slug, chapter.volume, chapter.chapter_number),
            relocated=[self._relocated(outcome, plan.strategies) for outcome in outcomes],
            skipped_pages=plan.skipped,
            stats=stats,
            cleanup=cleanup,
            degraded=plan.degraded,
        )
        emit_task_event(
            "approve",
            "Chapter published",
            payload={
                "chapter_id": chapter_id,
                "relocated": result.relocated_count,
                "transferred": sum(1 for page in result.relocated if page.transferred),
                "skipped": len(result.skipped_pages),
                "compression_ratio": stats.compression_ratio,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return result

    def _relocated(self, outcome: RelocationOutcome, strategies: Dict[int, str]) -> RelocatedPage:
        task = outcome.task
        return RelocatedPage(
            index=task.index,
            dest_key=task.dest_key,
            url=self._permanent.public_url(task.dest_key),
            source_key=task.source_key,
            strategy=strategies.get(task.index, ""),
            action=outcome.action,
            transferred=not outcome.skipped,
            page_id=task.page_id,
        )

    def reject(
        self,
        chapter_id: int,
        *,
        reason: Optional[str] = None,
        terminal: bool = False,
    ) -> RejectResult:
        """Drop a chapter's pages and every object it may have left behind."""

        snapshot = self._synchronizer.discard(chapter_id, terminal=terminal, reason=reason)
        slug = self.slug_for(snapshot.chapter)
        cleanup = self._sweeper.sweep(
            snapshot.chapter,
            slug,
            include_permanent=True,
            exact_keys=snapshot.page_locations,
        )
        emit_task_event(
            "reject",
            "Chapter rejected",
            payload={
                "chapter_id": chapter_id,
                "status": snapshot.status.value,
                "deleted_pages": snapshot.deleted_page_count,
                "deleted_objects": cleanup.total_deleted,
                "reason": reason,
            },
        )
        return RejectResult(
            chapter_id=chapter_id,
            status=snapshot.status,
            deleted_page_count=snapshot.deleted_page_count,
            cleanup=cleanup,
        )

    def pending(self, *, limit: int = 200) -> List[PendingChapter]:
        """Chapters awaiting review: ``ready`` ones and ``draft`` ones with pages."""

        results: List[PendingChapter] = []
        for chapter in self._repository.list_chapters_by_status(
            [ChapterStatus.READY, ChapterStatus.DRAFT], limit=limit
        ):
            count = self._repository.count_pages(chapter.id)
            if chapter.chapter_status is ChapterStatus.DRAFT and count == 0:
                continue
            results.append(PendingChapter(chapter, count, self.slug_for(chapter)))
        return results


__all__ = [
    "ApproveResult",
    "ModerationOrchestrator",
    "PendingChapter",
    "RejectResult",
    "RelocatedPage",
    "SkippedPage",
]
