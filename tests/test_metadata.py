from __future__ import annotations

import sqlite3

import pytest

from mangapub.pipeline.errors import ChapterNotFound, InvalidTransition, TransactionFailure
from mangapub.pipeline.metadata import MetadataSynchronizer, PageUpdate, PublishStats
from mangapub.pipeline.relocator import RelocationOutcome, RelocationTask
from mangapub.services.storage import ChapterRepository, ChapterStatus


STATS = PublishStats(pages_count=2, original_bytes=1000, total_file_size=400, saved_bytes=600, compression_ratio=60)


def _seed(repository: ChapterRepository, make_chapter):
    chapter = make_chapter()
    ids = [
        repository.add_page(chapter.id, index, image_key=f"staging/manga/1/chapters/{chapter.id}/{index}.jpg")
        for index in (2, 5, 9)
    ]
    return chapter, ids


def test_commit_renumbers_drops_and_publishes(repository: ChapterRepository, make_chapter) -> None:
    chapter, (first, dropped, last) = _seed(repository, make_chapter)
    synchronizer = MetadataSynchronizer(repository)

    synchronizer.commit(
        chapter.id,
        [
            PageUpdate(1, "slug/vol-1/ch-5/p0001.webp", "http://cdn.test/p1", page_id=first),
            PageUpdate(2, "slug/vol-1/ch-5/p0002.webp", "http://cdn.test/p2", page_id=last),
        ],
        STATS,
        dropped_page_ids=[dropped],
    )

    pages = repository.list_pages(chapter.id)
    assert [(page.id, page.page_index, page.image_key) for page in pages] == [
        (first, 1, "slug/vol-1/ch-5/p0001.webp"),
        (last, 2, "slug/vol-1/ch-5/p0002.webp"),
    ]
    assert pages[1].image_url == "http://cdn.test/p2"
    published = repository.get_chapter(chapter.id)
    assert published.chapter_status is ChapterStatus.PUBLISHED
    assert published.pages_count == 2
    assert published.compression_ratio == 60
    assert published.total_file_size == 400
    assert published.published_at is not None


def test_commit_creates_rows_for_new_pages(repository: ChapterRepository, make_chapter) -> None:
    chapter = make_chapter()

    MetadataSynchronizer(repository).commit(
        chapter.id,
        [PageUpdate(index, f"slug/p{index:04d}.webp", file_name=f"{index}.jpg") for index in (1, 2)],
        STATS,
    )

    pages = repository.list_pages(chapter.id)
    assert [(page.page_index, page.file_name) for page in pages] == [(1, "1.jpg"), (2, "2.jpg")]
    assert repository.get_chapter(chapter.id).pages_count == 2


def test_republish_keeps_first_publication_time(repository: ChapterRepository, make_chapter) -> None:
    chapter, ids = _seed(repository, make_chapter)
    synchronizer = MetadataSynchronizer(repository)
    updates = [PageUpdate(position, f"slug/p{position:04d}.webp", page_id=page_id) for position, page_id in enumerate(ids, 1)]

    synchronizer.commit(chapter.id, updates, STATS)
    first_published = repository.get_chapter(chapter.id).published_at
    synchronizer.commit(chapter.id, updates, STATS)

    assert repository.get_chapter(chapter.id).published_at == first_published


def test_commit_refuses_unaccounted_rows(repository: ChapterRepository, make_chapter) -> None:
    chapter, (first, _, _) = _seed(repository, make_chapter)

    with pytest.raises(TransactionFailure):
        MetadataSynchronizer(repository).commit(
            chapter.id, [PageUpdate(1, "slug/p0001.webp", page_id=first)], STATS
        )

    assert repository.get_chapter(chapter.id).chapter_status is ChapterStatus.READY
    assert [page.page_index for page in repository.list_pages(chapter.id)] == [2, 5, 9]


def test_injected_failure_rolls_back_everything(
    repository: ChapterRepository, make_chapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    chapter, (first, dropped, last) = _seed(repository, make_chapter)
    before = repository.list_pages(chapter.id)
    original_execute = repository.execute

    def _failing_execute(connection, statement, parameters=None, *, action, table=None):
        if action == "chapters.publish":
            raise sqlite3.OperationalError("disk I/O error")
        return original_execute(connection, statement, parameters, action=action, table=table)

    monkeypatch.setattr(repository, "execute", _failing_execute)

    with pytest.raises(TransactionFailure) as excinfo:
        MetadataSynchronizer(repository).commit(
            chapter.id,
            [
                PageUpdate(1, "slug/p0001.webp", page_id=first),
                PageUpdate(2, "slug/p0002.webp", page_id=last),
            ],
            STATS,
            dropped_page_ids=[dropped],
        )

    assert excinfo.value.stage == "commit"
    assert excinfo.value.chapter_id == chapter.id
    monkeypatch.undo()
    assert repository.list_pages(chapter.id) == before
    unchanged = repository.get_chapter(chapter.id)
    assert unchanged.chapter_status is ChapterStatus.READY
    assert unchanged.published_at is None


def test_commit_rejects_missing_and_rejected_chapters(repository: ChapterRepository, make_chapter) -> None:
    synchronizer = MetadataSynchronizer(repository)
    rejected = make_chapter(status=ChapterStatus.REJECTED)

    with pytest.raises(ChapterNotFound):
        synchronizer.commit(9999, [], STATS)
    with pytest.raises(InvalidTransition):
        synchronizer.commit(rejected.id, [], STATS)


def test_discard_captures_locations_and_resets_chapter(repository: ChapterRepository, make_chapter) -> None:
    chapter, _ = _seed(repository, make_chapter)

    snapshot = MetadataSynchronizer(repository).discard(chapter.id, reason="blurry scans")

    assert snapshot.deleted_page_count == 3
    assert snapshot.status is ChapterStatus.DRAFT
    assert snapshot.page_locations == [
        f"staging/manga/1/chapters/{chapter.id}/{index}.jpg" for index in (2, 5, 9)
    ]
    assert repository.count_pages(chapter.id) == 0
    reset = repository.get_chapter(chapter.id)
    assert reset.chapter_status is ChapterStatus.DRAFT
    assert reset.pages_count == 0
    assert reset.rejection_reason == "blurry scans"
    assert reset.rejected_at is not None
    assert reset.published_at is None


def test_terminal_discard_blocks_further_changes(repository: ChapterRepository, make_chapter) -> None:
    chapter, _ = _seed(repository, make_chapter)
    synchronizer = MetadataSynchronizer(repository)

    snapshot = synchronizer.discard(chapter.id, terminal=True)

    assert snapshot.status is ChapterStatus.REJECTED
    assert repository.get_chapter(chapter.id).chapter_status is ChapterStatus.REJECTED
    with pytest.raises(InvalidTransition):
        synchronizer.discard(chapter.id)


def test_publish_stats_from_outcomes() -> None:
    outcomes = [
        RelocationOutcome(RelocationTask(1, 1, "a"), False, 1000, 300, "converted", 80),
        RelocationOutcome(RelocationTask(1, 2, "b"), True, 500, 500, "existing"),
    ]

    stats = PublishStats.from_outcomes(outcomes)

    assert stats == PublishStats(
        pages_count=2, original_bytes=1500, total_file_size=800, saved_bytes=700, compression_ratio=47
    )
    assert stats.to_dict()["compressionRatio"] == 47
    assert PublishStats.from_outcomes([]).compression_ratio == 0
