"""Chapter intake: create drafts, stage uploaded pages and hand chapters to review."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional

from ..pipeline.errors import ChapterNotFound, ConversionFailure
from ..pipeline.optimizer import PROCESSING_METADATA_KEY, QUALITY_METADATA_KEY, ImageOptimizer
from . import naming
from .object_store import ObjectStore, ObjectStoreError
from .settings import WebPConfigStore
from .storage import ChapterRecord, ChapterRepository, ChapterStatus, utc_timestamp


LOGGER = logging.getLogger(__name__)

DEFAULT_VOLUME = 1
_OPEN_STATUSES = (ChapterStatus.DRAFT, ChapterStatus.READY)


class IntakeError(RuntimeError):
    """Raised when an upload or chapter state change is not acceptable."""


@dataclass(frozen=True)
class StartedChapter:
    chapter: ChapterRecord
    staging_prefix: str


@dataclass(frozen=True)
class StagedPage:
    page_id: int
    page_index: int
    key: str
    url: Optional[str]
    size: int
    quality: Optional[int]


class ChapterIntake:
    """Uploader-facing operations that fill the staging store."""

    def __init__(
        self,
        repository: ChapterRepository,
        staging: ObjectStore,
        *,
        settings: Optional[WebPConfigStore] = None,
    ) -> None:
        self._repository = repository
        self._staging = staging
        self._settings = settings or WebPConfigStore(repository)

    def _open_chapter(self, chapter_id: int) -> ChapterRecord:
        chapter = self._repository.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFound(f"Chapter {chapter_id} does not exist", chapter_id=chapter_id)
        if chapter.chapter_status not in _OPEN_STATUSES:
            raise IntakeError(f"Chapter {chapter_id} is {chapter.status} and no longer accepts pages")
        return chapter

    def start(
        self,
        manga_id: int,
        chapter_number: int,
        *,
        volume: Optional[int] = None,
        title: Optional[str] = None,
    ) -> StartedChapter:
        if self._repository.get_manga(manga_id) is None:
            raise IntakeError(f"Manga {manga_id} does not exist")
        if int(chapter_number) < 0:
            raise IntakeError("Chapter number must not be negative")
        chapter_id = self._repository.add_chapter(
            manga_id,
            int(chapter_number),
            volume=DEFAULT_VOLUME if volume is None else int(volume),
            title=title,
        )
        chapter = self._repository.get_chapter(chapter_id)
        assert chapter is not None
        LOGGER.info("Started chapter %s for manga %s", chapter_id, manga_id)
        return StartedChapter(chapter, naming.staging_prefix(manga_id, chapter_id))

    def stage_page(
        self,
        chapter_id: int,
        data: bytes,
        *,
        file_name: Optional[str] = None,
        page_index: Optional[int] = None,
    ) -> StagedPage:
        """Encode an upload at upload quality and store it under the staging prefix.

        The page row is inserted before the object is written so that the
        ``(chapter_id, page_index)`` uniqueness constraint decides between
        concurrent uploads of the same index. The row is removed again when
        the staging write fails.
        """

        chapter = self._open_chapter(chapter_id)
        if not data:
            raise IntakeError("Uploaded page is empty")
        index = int(page_index) if page_index is not None else self._repository.next_page_index(chapter_id)
        if index < 1:
            raise IntakeError("Page index must be 1 or greater")

        optimizer = ImageOptimizer(self._settings.load())
        key = f"{naming.staging_prefix(chapter.manga_id, chapter_id)}{index:03d}.{naming.TARGET_EXTENSION}"
        try:
            image = optimizer.optimize_upload(data, key=key)
        except ConversionFailure as error:
            raise IntakeError(f"Unsupported image upload: {error}") from error

        url = self._staging.public_url(key)
        try:
            page_id = self._repository.add_page(
                chapter_id, index, image_key=key, image_url=url, file_name=file_name
            )
        except sqlite3.IntegrityError as error:
            raise IntakeError(f"Page {index} already exists for chapter {chapter_id}") from error

        metadata = {PROCESSING_METADATA_KEY: image.action, "original-size": str(image.original_size)}
        if image.quality is not None:
            metadata[QUALITY_METADATA_KEY] = str(image.quality)
        if file_name:
            metadata["original-name"] = file_name
        try:
            self._staging.put(key, image.data, content_type=image.content_type, metadata=metadata)
        except ObjectStoreError as error:
            self._repository.delete_page(page_id)
            raise IntakeError(f"Unable to store page {index}: {error}") from error

        LOGGER.debug("Staged page %s of chapter %s at %s", index, chapter_id, key)
        return StagedPage(page_id, index, key, url, image.size, image.quality)

    def register_pages(self, chapter_id: int, pages: Iterable[Mapping[str, Any]]) -> int:
        """Register objects uploaded directly to staging (``index``, ``key``, ``url``, ``name``)."""

        self._open_chapter(chapter_id)
        entries: List[tuple] = []
        for entry in pages:
            try:
                index = int(entry.get("index"))
            except (TypeError, ValueError) as error:
                raise IntakeError(f"Invalid page index: {entry.get('index')!r}") from error
            if index < 1:
                raise IntakeError("Page index must be 1 or greater")
            key = entry.get("key") or None
            url = entry.get("url") or None
            if not key and not url:
                raise IntakeError(f"Page {index} needs a key or url")
            entries.append((chapter_id, index, key, url, entry.get("name") or None))
        if not entries:
            raise IntakeError("No pages supplied")

        try:
            with self._repository.transaction("register_pages", chapter_id=chapter_id) as connection:
                for values in entries:
                    self._repository.execute(
                        connection,
                        """
                        INSERT INTO chapter_pages(chapter_id, page_index, image_key, image_url, file_name)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        values,
                        action="chapter_pages.insert",
                        table="chapter_pages",
                    )
        except sqlite3.IntegrityError as error:
            raise IntakeError(f"Duplicate page index for chapter {chapter_id}") from error
        LOGGER.info("Registered %s page(s) for chapter %s", len(entries), chapter_id)
        return len(entries)

    def commit(self, chapter_id: int) -> ChapterRecord:
        """Move a draft with at least one page to ``ready``."""

        chapter = self._open_chapter(chapter_id)
        count = self._repository.count_pages(chapter_id)
        if count == 0:
            raise IntakeError(f"Chapter {chapter_id} has no pages to submit")
        with self._repository.transaction("submit", chapter_id=chapter_id) as connection:
            self._repository.execute(
                connection,
                "UPDATE chapters SET status = ?, pages_count = ?, updated_at = ? WHERE id = ?",
                (ChapterStatus.READY.value, count, utc_timestamp(), chapter.id),
                action="chapters.submit",
                table="chapters",
            )
        LOGGER.info("Chapter %s submitted for review with %s page(s)", chapter_id, count)
        updated = self._repository.get_chapter(chapter_id)
        assert updated is not None
        return updated


__all__ = ["ChapterIntake", "DEFAULT_VOLUME", "IntakeError", "StagedPage", "StartedChapter"]
