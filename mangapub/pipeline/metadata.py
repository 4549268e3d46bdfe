"""Atomic chapter and page metadata updates for publish and reject."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from ..services.storage import ChapterRecord, ChapterRepository, ChapterStatus, utc_timestamp
from .errors import ChapterNotFound, InvalidTransition, PipelineError, TransactionFailure
from .optimizer import compression_stats
from .relocator import RelocationOutcome


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageUpdate:
    """New location for a page row; ``page_id`` is ``None`` for rows to create."""

    page_index: int
    image_key: str
    image_url: Optional[str] = None
    page_id: Optional[int] = None
    file_name: Optional[str] = None


@dataclass(frozen=True)
class PublishStats:
    pages_count: int = 0
    original_bytes: int = 0
    total_file_size: int = 0
    saved_bytes: int = 0
    compression_ratio: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[RelocationOutcome]) -> "PublishStats":
        items = list(outcomes)
        original = sum(outcome.original_size for outcome in items)
        final = sum(outcome.final_size for outcome in items)
        saved, ratio = compression_stats(original, final)
        return cls(
            pages_count=len(items),
            original_bytes=original,
            total_file_size=final,
            saved_bytes=saved,
            compression_ratio=ratio,
        )

    def to_dict(self) -> dict:
        return {
            "pagesCount": self.pages_count,
            "originalBytes": self.original_bytes,
            "totalFileSize": self.total_file_size,
            "savedBytes": self.saved_bytes,
            "compressionRatio": self.compression_ratio,
        }


@dataclass(frozen=True)
class DiscardSnapshot:
    """State captured by :meth:`MetadataSynchronizer.discard` before deleting rows."""

    chapter: ChapterRecord
    page_locations: List[str] = field(default_factory=list)
    deleted_page_count: int = 0
    status: ChapterStatus = ChapterStatus.DRAFT


class MetadataSynchronizer:
    """Apply the relational side of publish and reject in single transactions."""

    def __init__(self, repository: ChapterRepository) -> None:
        self._repository = repository

    def _load_chapter(self, connection: sqlite3.Connection, chapter_id: int) -> ChapterRecord:
        chapter = self._repository.get_chapter(chapter_id, connection=connection)
        if chapter is None:
            raise ChapterNotFound(f"Chapter {chapter_id} does not exist", chapter_id=chapter_id)
        if chapter.chapter_status is ChapterStatus.REJECTED:
            raise InvalidTransition(
                f"Chapter {chapter_id} was rejected and can no longer change", chapter_id=chapter_id
            )
        return chapter

    def commit(
        self,
        chapter_id: int,
        updates: Sequence[PageUpdate],
        stats: PublishStats,
        *,
        dropped_page_ids: Sequence[int] = (),
    ) -> None:
        """Publish *chapter_id* with exactly the pages in *updates*.

        Rows listed in *dropped_page_ids* are deleted; every other existing row
        must appear in *updates*, otherwise the page set changed underneath the
        publish attempt and nothing is written.
        """

        repository = self._repository
        try:
            with repository.transaction("publish", chapter_id=chapter_id, pages=len(updates)) as connection:
                self._load_chapter(connection, chapter_id)
                rows = repository.list_pages(chapter_id, connection=connection)
                dropped = set(int(page_id) for page_id in dropped_page_ids)
                updated = {int(update.page_id) for update in updates if update.page_id is not None}
                unaccounted = sorted(row.id for row in rows if row.id not in dropped | updated)
                if unaccounted or not updated <= {row.id for row in rows}:
                    raise TransactionFailure(
                        f"Page rows of chapter {chapter_id} changed during publish",
                        chapter_id=chapter_id,
                    )

                for page_id in sorted(dropped):
                    repository.execute(
                        connection,
                        "DELETE FROM chapter_pages WHERE id = ? AND chapter_id = ?",
                        (page_id, chapter_id),
                        action="chapter_pages.drop_unresolved",
                        table="chapter_pages",
                    )

                # Park survivors above every index in play so renumbering never collides.
                offset = max([row.page_index for row in rows] + [u.page_index for u in updates] + [0])
                repository.execute(
                    connection,
                    "UPDATE chapter_pages SET page_index = page_index + ? WHERE chapter_id = ?",
                    (offset, chapter_id),
                    action="chapter_pages.park",
                    table="chapter_pages",
                )
                for update in updates:
                    if update.page_id is None:
                        repository.execute(
                            connection,
                            """
                            INSERT INTO chapter_pages(chapter_id, page_index, image_key, image_url, file_name)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (chapter_id, update.page_index, update.image_key, update.image_url, update.file_name),
                            action="chapter_pages.insert",
                            table="chapter_pages",
                        )
                        continue
                    repository.execute(
                        connection,
                        """
                        UPDATE chapter_pages
                        SET page_index = ?, image_key = ?, image_url = ?
                        WHERE id = ? AND chapter_id = ?
                        """,
                        (update.page_index, update.image_key, update.image_url, update.page_id, chapter_id),
                        action="chapter_pages.relocate",
                        table="chapter_pages",
                    )

                now = utc_timestamp()
                repository.execute(
                    connection,
                    """
                    UPDATE chapters
                    SET status = ?, pages_count = ?, compression_ratio = ?, total_file_size = ?,
                        updated_at = ?, published_at = COALESCE(published_at, ?)
                    WHERE id = ?
                    """,
                    (
                        ChapterStatus.PUBLISHED.value,
                        len(updates),
                        int(stats.compression_ratio),
                        int(stats.total_file_size),
                        now,
                        now,
                        chapter_id,
                    ),
                    action="chapters.publish",
                    table="chapters",
                )
        except PipelineError:
            raise
        except sqlite3.Error as error:
            raise TransactionFailure(
                f"Publishing chapter {chapter_id} failed: {error}", chapter_id=chapter_id
            ) from error
        LOGGER.info("Chapter %s published with %s page(s)", chapter_id, len(updates))

    def discard(
        self,
        chapter_id: int,
        *,
        terminal: bool = False,
        reason: Optional[str] = None,
    ) -> DiscardSnapshot:
        """Delete the chapter's page rows and reset it to ``draft`` (``rejected`` if terminal)."""

        status = ChapterStatus.REJECTED if terminal else ChapterStatus.DRAFT
        repository = self._repository
        try:
            with repository.transaction("reject", chapter_id=chapter_id, terminal=terminal) as connection:
                chapter = self._load_chapter(connection, chapter_id)
                pages = repository.list_pages(chapter_id, connection=connection)
                locations = [page.location for page in pages if page.location]
                repository.execute(
                    connection,
                    "DELETE FROM chapter_pages WHERE chapter_id = ?",
                    (chapter_id,),
                    action="chapter_pages.delete_all",
                    table="chapter_pages",
                )
                now = utc_timestamp()
                repository.execute(
                    connection,
                    """
                    UPDATE chapters
                    SET status = ?, pages_count = 0, compression_ratio = NULL, total_file_size = NULL,
                        published_at = NULL, rejected_at = ?, rejection_reason = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, now, reason, now, chapter_id),
                    action="chapters.reject",
                    table="chapters",
                )
        except PipelineError:
            raise
        except sqlite3.Error as error:
            raise TransactionFailure(
                f"Rejecting chapter {chapter_id} failed: {error}", chapter_id=chapter_id
            ) from error
        LOGGER.info("Chapter %s rejected (%s page rows removed, status=%s)", chapter_id, len(pages), status.value)
        return DiscardSnapshot(
            chapter=chapter,
            page_locations=locations,
            deleted_page_count=len(pages),
            status=status,
        )


__all__ = ["DiscardSnapshot", "MetadataSynchronizer", "PageUpdate", "PublishStats"]
