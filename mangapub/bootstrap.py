"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Callable, Dict

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


SCHEMA_VERSION = 2


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS manga (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    title_romaji TEXT,
    original_title TEXT,
    slug TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS chapters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    manga_id INTEGER NOT NULL,
    volume INTEGER NOT NULL DEFAULT 0,
    chapter_number INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'ready', 'published', 'rejected')),
    pages_count INTEGER NOT NULL DEFAULT 0,
    compression_ratio INTEGER,
    total_file_size INTEGER,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    published_at TEXT,
    FOREIGN KEY(manga_id) REFERENCES manga(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS chapter_pages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chapter_id INTEGER NOT NULL,
    page_index INTEGER NOT NULL CHECK (page_index >= 1),
    image_key TEXT,
    image_url TEXT,
    file_name TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(chapter_id, page_index),
    FOREIGN KEY(chapter_id) REFERENCES chapters(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chapters_status ON chapters(status);
"""

_SCHEMA_V2 = """
ALTER TABLE chapters ADD COLUMN rejected_at TEXT;
ALTER TABLE chapters ADD COLUMN rejection_reason TEXT;

CREATE TABLE IF NOT EXISTS system_config (
    config_key TEXT PRIMARY KEY,
    config_value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

# Each migration upgrades the database from ``version - 1`` to ``version``.
MIGRATIONS: Dict[int, str] = {1: _SCHEMA_V1, 2: _SCHEMA_V2}


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully (schema v%s)", SCHEMA_VERSION)

    def _ensure_directories(self) -> None:
        directories = [("storage", self._config.storage_root), ("database", self._config.database_file.parent)]
        for store in (self._config.staging_store, self._config.permanent_store):
            if store.kind == "local" and store.root is not None:
                directories.append((f"{store.name} store", store.root))

        for label, path in directories:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"Unable to prepare {label} directory '{path}'. It is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured %s directory exists: %s", label, path)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(f"Unable to open database: {error}") from error
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            current = int(connection.execute("PRAGMA user_version").fetchone()[0])
            if current > SCHEMA_VERSION:
                raise BootstrapError(
                    f"Database schema v{current} is newer than supported v{SCHEMA_VERSION}"
                )
            for version in range(current + 1, SCHEMA_VERSION + 1):
                self._apply_migration(connection, version, MIGRATIONS[version])
        finally:
            connection.close()

    @staticmethod
    def _apply_migration(connection: sqlite3.Connection, version: int, script: str) -> None:
        LOGGER.info("Applying schema migration v%s", version)
        try:
            # executescript commits implicitly, so the version bump rides in the same script.
            connection.executescript(
                f"BEGIN;\n{script}\nPRAGMA user_version = {int(version)};\nCOMMIT;"
            )
        except sqlite3.Error as error:
            connection.rollback()
            raise BootstrapError(f"Schema migration v{version} failed: {error}") from error


def initialize_app(
    config_path: Path | None = None,
    *,
    loader: Callable[..., AppConfig] = load_config,
) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = loader(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "MIGRATIONS", "SCHEMA_VERSION", "initialize_app"]
