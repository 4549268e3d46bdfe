"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .events import DB_QUERY


class ChapterStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    PUBLISHED = "published"
    REJECTED = "rejected"


@dataclass
class MangaRecord:
    id: int
    title: str
    title_romaji: Optional[str]
    original_title: Optional[str]
    slug: Optional[str]


@dataclass
class ChapterRecord:
    id: int
    manga_id: int
    volume: int
    chapter_number: int
    title: Optional[str]
    status: str
    pages_count: int
    compression_ratio: Optional[int]
    total_file_size: Optional[int]
    created_at: str
    updated_at: str
    published_at: Optional[str]
    rejected_at: Optional[str]
    rejection_reason: Optional[str]

    @property
    def chapter_status(self) -> ChapterStatus:
        return ChapterStatus(self.status)


@dataclass
class PageRecord:
    id: int
    chapter_id: int
    page_index: int
    image_key: Optional[str]
    image_url: Optional[str]
    file_name: Optional[str]

    @property
    def location(self) -> Optional[str]:
        """The stored location reference, preferring the bare key."""

        return (self.image_key or "").strip() or (self.image_url or "").strip() or None


_CHAPTER_COLUMNS = (
    "id, manga_id, volume, chapter_number, title, status, pages_count, compression_ratio, "
    "total_file_size, created_at, updated_at, published_at, rejected_at, rejection_reason"
)
_PAGE_COLUMNS = "id, chapter_id, page_index, image_key, image_url, file_name"


LOGGER = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """Return the current UTC time in the format stored by the schema defaults."""

    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class ChapterRepository:
    """Repository exposing chapter, page and title helpers."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path: Path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter(DB_QUERY, action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        """Run a parameterized statement on *connection* with event tracking."""

        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount is not None and cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    def _open(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        with self._track_db_event("connect", database=str(self._db_path)):
            connection = sqlite3.connect(self._db_path, isolation_level=None)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for single-statement helpers."""

        connection = self._open()
        try:
            yield connection
        finally:
            connection.close()

    @contextlib.contextmanager
    def transaction(self, action: str, **payload: Any) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``; commit on success, roll back on error."""

        with self._track_db_event(f"transaction.{action}", **payload) as event:
            connection = self._open()
            try:
                connection.execute("BEGIN IMMEDIATE")
                try:
                    yield connection
                except BaseException:
                    connection.rollback()
                    event["result"] = "rolled_back"
                    LOGGER.debug("Transaction %s rolled back", action)
                    raise
                connection.commit()
                event["result"] = "committed"
                LOGGER.debug("Transaction %s committed", action)
            finally:
                connection.close()

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------
    def add_manga(
        self,
        title: str,
        *,
        title_romaji: Optional[str] = None,
        original_title: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> int:
        LOGGER.debug("Adding manga '%s'", title)
        with self._connect() as connection:
            cursor = self.execute(
                connection,
                "INSERT INTO manga(title, title_romaji, original_title, slug) VALUES (?, ?, ?, ?)",
                (title, title_romaji, original_title, slug),
                action="manga.insert",
                table="manga",
            )
            return int(cursor.lastrowid)

    def get_manga(self, manga_id: int) -> Optional[MangaRecord]:
        with self._connect() as connection:
            row = self.execute(
                connection,
                "SELECT id, title, title_romaji, original_title, slug FROM manga WHERE id = ?",
                (manga_id,),
                action="manga.get",
                table="manga",
            ).fetchone()
            return MangaRecord(**row) if row else None

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    def add_chapter(
        self,
        manga_id: int,
        chapter_number: int,
        *,
        volume: int = 0,
        title: Optional[str] = None,
        status: ChapterStatus = ChapterStatus.DRAFT,
    ) -> int:
        LOGGER.debug(
            "Adding chapter %s (volume %s) for manga_id=%s", chapter_number, volume, manga_id
        )
        with self._track_db_event(
            "add_chapter", table="chapters", manga_id=manga_id, chapter_number=chapter_number
        ) as event:
            with self._connect() as connection:
                cursor = self.execute(
                    connection,
                    """
                    INSERT INTO chapters(manga_id, volume, chapter_number, title, status)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (manga_id, int(volume), int(chapter_number), title, ChapterStatus(status).value),
                    action="chapters.insert",
                    table="chapters",
                )
                event["chapter_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_chapter(
        self, chapter_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> Optional[ChapterRecord]:
        statement = f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE id = ?"
        if connection is not None:
            row = self.execute(
                connection, statement, (chapter_id,), action="chapters.get", table="chapters"
            ).fetchone()
            return ChapterRecord(**row) if row else None
        with self._connect() as own_connection:
            row = self.execute(
                own_connection, statement, (chapter_id,), action="chapters.get", table="chapters"
            ).fetchone()
            return ChapterRecord(**row) if row else None

    def list_chapters_by_status(
        self, statuses: Sequence[ChapterStatus], *, limit: int = 200
    ) -> List[ChapterRecord]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        with self._connect() as connection:
            rows = self.execute(
                connection,
                f"""
                SELECT {_CHAPTER_COLUMNS} FROM chapters
                WHERE status IN ({placeholders})
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                [ChapterStatus(status).value for status in statuses] + [int(limit)],
                action="chapters.list_by_status",
                table="chapters",
            ).fetchall()
            return [ChapterRecord(**row) for row in rows]

    def update_chapter_status(self, chapter_id: int, status: ChapterStatus) -> bool:
        LOGGER.debug("Setting chapter id=%s status to %s", chapter_id, status)
        with self._connect() as connection:
            cursor = self.execute(
                connection,
                "UPDATE chapters SET status = ?, updated_at = ? WHERE id = ?",
                (ChapterStatus(status).value, utc_timestamp(), chapter_id),
                action="chapters.update_status",
                table="chapters",
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------
    def add_page(
        self,
        chapter_id: int,
        page_index: int,
        *,
        image_key: Optional[str] = None,
        image_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> int:
        with self._connect() as connection:
            cursor = self.execute(
                connection,
                """
                INSERT INTO chapter_pages(chapter_id, page_index, image_key, image_url, file_name)
                VALUES (?, ?, ?, ?, ?)
                """,
                (chapter_id, int(page_index), image_key, image_url, file_name),
                action="chapter_pages.insert",
                table="chapter_pages",
            )
            LOGGER.debug(
                "Page %s registered for chapter_id=%s (key=%s)", page_index, chapter_id, image_key
            )
            return int(cursor.lastrowid)

    def next_page_index(self, chapter_id: int) -> int:
        with self._connect() as connection:
            row = self.execute(
                connection,
                "SELECT COALESCE(MAX(page_index), 0) + 1 FROM chapter_pages WHERE chapter_id = ?",
                (chapter_id,),
                action="chapter_pages.next_index",
                table="chapter_pages",
            ).fetchone()
            return int(row[0]) if row else 1

    def delete_page(self, page_id: int) -> bool:
        with self._connect() as connection:
            cursor = self.execute(
                connection,
                "DELETE FROM chapter_pages WHERE id = ?",
                (page_id,),
                action="chapter_pages.delete",
                table="chapter_pages",
            )
            return cursor.rowcount > 0

    def list_pages(
        self, chapter_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> List[PageRecord]:
        statement = (
            f"SELECT {_PAGE_COLUMNS} FROM chapter_pages WHERE chapter_id = ? ORDER BY page_index, id"
        )
        if connection is not None:
            rows = self.execute(
                connection, statement, (chapter_id,), action="chapter_pages.list", table="chapter_pages"
            ).fetchall()
            return [PageRecord(**row) for row in rows]
        with self._connect() as own_connection:
            rows = self.execute(
                own_connection,
                statement,
                (chapter_id,),
                action="chapter_pages.list",
                table="chapter_pages",
            ).fetchall()
            return [PageRecord(**row) for row in rows]

    def count_pages(self, chapter_id: int) -> int:
        with self._connect() as connection:
            row = self.execute(
                connection,
                "SELECT COUNT(*) FROM chapter_pages WHERE chapter_id = ?",
                (chapter_id,),
                action="chapter_pages.count",
                table="chapter_pages",
            ).fetchone()
            return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # System configuration
    # ------------------------------------------------------------------
    def get_system_config(self, key: str) -> Optional[str]:
        with self._connect() as connection:
            row = self.execute(
                connection,
                "SELECT config_value FROM system_config WHERE config_key = ?",
                (key,),
                action="system_config.get",
                table="system_config",
            ).fetchone()
            return str(row[0]) if row else None

    def set_system_config(self, key: str, value: str) -> None:
        with self._connect() as connection:
            self.execute(
                connection,
                """
                INSERT INTO system_config(config_key, config_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_at = excluded.updated_at
                """,
                (key, value, utc_timestamp()),
                action="system_config.upsert",
                table="system_config",
            )


__all__ = [
    "ChapterRecord",
    "ChapterRepository",
    "ChapterStatus",
    "MangaRecord",
    "PageRecord",
    "utc_timestamp",
]
