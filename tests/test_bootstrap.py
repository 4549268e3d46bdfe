from __future__ import annotations

import sqlite3

import pytest

from mangapub.bootstrap import MIGRATIONS, SCHEMA_VERSION, BootstrapError, Bootstrapper
from mangapub.config import AppConfig


def _columns(connection: sqlite3.Connection, table: str) -> set:
    return {row[1] for row in connection.execute(f"PRAGMA table_info({table})")}


def test_bootstrap_creates_schema_and_store_directories(temp_config: AppConfig) -> None:
    assert temp_config.database_file.exists()
    assert temp_config.staging_store.root is not None and temp_config.staging_store.root.is_dir()
    assert temp_config.permanent_store.root is not None and temp_config.permanent_store.root.is_dir()

    with sqlite3.connect(temp_config.database_file) as connection:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        version = connection.execute("PRAGMA user_version").fetchone()[0]
        chapter_columns = _columns(connection, "chapters")

    assert {"manga", "chapters", "chapter_pages", "system_config"} <= tables
    assert version == SCHEMA_VERSION
    assert {"rejected_at", "rejection_reason", "published_at", "pages_count"} <= chapter_columns


def test_bootstrap_is_idempotent(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()
    Bootstrapper(temp_config).initialize()

    with sqlite3.connect(temp_config.database_file) as connection:
        assert connection.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION


def test_bootstrap_upgrades_version_one_database(temp_config: AppConfig) -> None:
    temp_config.database_file.unlink()
    connection = sqlite3.connect(temp_config.database_file)
    try:
        Bootstrapper._apply_migration(connection, 1, MIGRATIONS[1])
        connection.execute("INSERT INTO manga(title) VALUES ('Legacy')")
        connection.commit()
    finally:
        connection.close()

    Bootstrapper(temp_config).initialize()

    with sqlite3.connect(temp_config.database_file) as connection:
        assert connection.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        assert "rejection_reason" in _columns(connection, "chapters")
        assert connection.execute("SELECT title FROM manga").fetchone()[0] == "Legacy"


def test_bootstrap_refuses_newer_schema(temp_config: AppConfig) -> None:
    with sqlite3.connect(temp_config.database_file) as connection:
        connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")

    with pytest.raises(BootstrapError):
        Bootstrapper(temp_config).initialize()
