from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Callable, Optional, Tuple

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mangapub.bootstrap import Bootstrapper
from mangapub.config import AppConfig
from mangapub.pipeline.moderation import ModerationOrchestrator
from mangapub.services.object_store import LocalObjectStore, build_object_store
from mangapub.services.storage import ChapterRecord, ChapterRepository, ChapterStatus


PUBLIC_BASE_URL = "http://cdn.test/objects"


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/mangapub.db\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    for name in ("MANGAPUB_ADMIN_API_KEY", "MANGAPUB_PERMANENT_PUBLIC_BASE_URL"):
        monkeypatch.delenv(name, raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/mangapub.db",
            "publish_concurrency": 2,
            "stores": {
                "staging": {"kind": "local", "root": "objects/staging"},
                "permanent": {
                    "kind": "local",
                    "root": "objects/public",
                    "public_base_url": PUBLIC_BASE_URL + "/",
                },
            },
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> ChapterRepository:
    return ChapterRepository(temp_config)


@pytest.fixture()
def staging(temp_config: AppConfig) -> LocalObjectStore:
    store = build_object_store(temp_config.staging_store)
    assert isinstance(store, LocalObjectStore)
    return store


@pytest.fixture()
def permanent(temp_config: AppConfig) -> LocalObjectStore:
    store = build_object_store(temp_config.permanent_store)
    assert isinstance(store, LocalObjectStore)
    return store


@pytest.fixture()
def orchestrator(
    repository: ChapterRepository, staging: LocalObjectStore, permanent: LocalObjectStore
) -> ModerationOrchestrator:
    return ModerationOrchestrator(repository, staging, permanent, concurrency=2)


@pytest.fixture()
def image_bytes() -> Callable[..., bytes]:
    """Return a factory producing encoded test images."""

    def _build(
        image_format: str = "JPEG",
        size: Tuple[int, int] = (64, 96),
        *,
        color: Tuple[int, int, int] = (200, 40, 90),
        quality: Optional[int] = None,
        mode: str = "RGB",
    ) -> bytes:
        image = Image.new(mode, size, color if mode == "RGB" else 0)
        # Some detail so the encoders have something to compress.
        for x in range(0, size[0], 7):
            for y in range(0, size[1], 5):
                image.putpixel((x, y), (x % 255, y % 255, 30) if mode == "RGB" else x % 255)
        buffer = io.BytesIO()
        options = {} if quality is None else {"quality": quality}
        image.save(buffer, format=image_format, **options)
        return buffer.getvalue()

    return _build


@pytest.fixture()
def make_chapter(repository: ChapterRepository) -> Callable[..., ChapterRecord]:
    """Create a manga (once per title) and a chapter under it."""

    manga_ids = {}

    def _create(
        *,
        title: str = "Sample Title",
        chapter_number: int = 5,
        volume: int = 1,
        status: ChapterStatus = ChapterStatus.READY,
    ) -> ChapterRecord:
        if title not in manga_ids:
            manga_ids[title] = repository.add_manga(title)
        chapter_id = repository.add_chapter(
            manga_ids[title], chapter_number, volume=volume, status=status
        )
        chapter = repository.get_chapter(chapter_id)
        assert chapter is not None
        return chapter

    return _create
