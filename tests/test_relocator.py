from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from mangapub.pipeline.errors import PublishCancelled, RelocationFailure, SourceNotFound
from mangapub.pipeline.optimizer import CONVERTED, REPROCESSED, ImageOptimizer
from mangapub.pipeline.relocator import CACHE_CONTROL, ObjectRelocator, RelocationTask
from mangapub.services.object_store import LocalObjectStore


class SlowStagingStore(LocalObjectStore):
    """Track how many reads overlap."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def get(self, key: str) -> bytes:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.05)
            return super().get(key)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def stores(tmp_path: Path):
    staging = SlowStagingStore("staging", tmp_path / "staging")
    permanent = LocalObjectStore("permanent", tmp_path / "public")
    return staging, permanent


def _task(index: int, *, source: Optional[str] = None) -> RelocationTask:
    return RelocationTask(
        chapter_id=4,
        index=index,
        dest_key=f"slug/vol-1/ch-5/p{index:04d}.webp",
        source_key=source,
        page_id=100 + index,
    )


def _stage(staging: LocalObjectStore, image_bytes, count: int) -> List[str]:
    keys = []
    for index in range(count):
        key = f"staging/manga/1/chapters/4/{index}.jpg"
        staging.put(key, image_bytes("JPEG"), content_type="image/jpeg")
        keys.append(key)
    return keys


def test_relocate_writes_optimized_object_with_headers(stores, image_bytes) -> None:
    staging, permanent = stores
    [source] = _stage(staging, image_bytes, 1)
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer(), clock=lambda: "2024-01-01T00:00:00.000Z")

    outcome = relocator.relocate(_task(1, source=source))

    assert not outcome.skipped
    assert outcome.action == CONVERTED
    head = permanent.head("slug/vol-1/ch-5/p0001.webp")
    assert head is not None
    assert head.content_type == "image/webp"
    assert head.cache_control == CACHE_CONTROL
    assert head.metadata["chapter-id"] == "4"
    assert head.metadata["page-index"] == "1"
    assert head.metadata["original-key"] == source
    assert head.metadata["processing-type"] == CONVERTED
    assert head.metadata["webp-quality"] == "80"
    assert head.metadata["published-at"] == "2024-01-01T00:00:00.000Z"
    assert int(head.metadata["final-size"]) == head.size
    assert staging.exists(source)


def test_relocate_skips_existing_destination(stores, image_bytes) -> None:
    staging, permanent = stores
    [source] = _stage(staging, image_bytes, 1)
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())
    first = relocator.relocate(_task(1, source=source))
    written = permanent.get("slug/vol-1/ch-5/p0001.webp")

    again = relocator.relocate(_task(1, source=source))
    without_source = relocator.relocate(_task(1))

    assert again.skipped and without_source.skipped
    assert again.action == "existing"
    assert again.original_size == first.original_size
    assert again.final_size == first.final_size
    assert permanent.get("slug/vol-1/ch-5/p0001.webp") == written


def test_destination_written_from_another_source_is_replaced(stores, image_bytes) -> None:
    staging, permanent = stores
    first, second = _stage(staging, image_bytes, 2)
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())
    relocator.relocate(_task(1, source=second))

    outcome = relocator.relocate(_task(1, source=first))

    assert not outcome.skipped
    assert outcome.action == CONVERTED
    assert permanent.head("slug/vol-1/ch-5/p0001.webp").metadata["original-key"] == first


def test_forced_relocation_reencodes_published_copy(stores, image_bytes) -> None:
    staging, permanent = stores
    [source] = _stage(staging, image_bytes, 1)
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())
    relocator.relocate(_task(1, source=source))

    outcome = relocator.relocate(_task(1), force=True)

    assert not outcome.skipped
    assert outcome.action == REPROCESSED
    assert permanent.head("slug/vol-1/ch-5/p0001.webp").metadata["original-key"] == "slug/vol-1/ch-5/p0001.webp"


def test_moved_published_page_is_read_from_permanent_store(stores, image_bytes) -> None:
    staging, permanent = stores
    permanent.put("slug/vol-1/ch-5/p0003.webp", image_bytes("WEBP", quality=70), metadata={"webp-quality": "70"})
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())
    task = RelocationTask(
        chapter_id=4,
        index=2,
        dest_key="slug/vol-1/ch-5/p0002.webp",
        source_key="slug/vol-1/ch-5/p0003.webp",
        source_is_permanent=True,
    )

    outcome = relocator.relocate(task)

    assert outcome.action == "passthrough"
    assert permanent.get("slug/vol-1/ch-5/p0002.webp") == permanent.get("slug/vol-1/ch-5/p0003.webp")


def test_missing_sources_fail_the_task(stores) -> None:
    staging, permanent = stores
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())

    with pytest.raises(SourceNotFound) as missing_source:
        relocator.relocate(_task(1, source="staging/manga/1/chapters/4/ghost.jpg"))
    with pytest.raises(RelocationFailure) as no_source:
        relocator.relocate(_task(2))

    assert missing_source.value.key == "staging/manga/1/chapters/4/ghost.jpg"
    assert no_source.value.key == "slug/vol-1/ch-5/p0002.webp"
    assert permanent.list_prefix("slug/") == []


def test_run_bounds_concurrency_and_keeps_task_order(stores, image_bytes) -> None:
    staging, permanent = stores
    sources = _stage(staging, image_bytes, 8)
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer(), concurrency=2)

    outcomes = relocator.run([_task(index + 1, source=key) for index, key in enumerate(sources)])

    assert 1 <= staging.peak <= 2
    assert [outcome.task.index for outcome in outcomes] == list(range(1, 9))
    assert len({outcome.task.dest_key for outcome in outcomes}) == 8
    assert all(outcome.saved_bytes >= 0 and 0 <= outcome.compression_ratio <= 100 for outcome in outcomes)


def test_run_stops_scheduling_after_first_failure(stores, image_bytes) -> None:
    staging, permanent = stores
    sources = _stage(staging, image_bytes, 4)
    tasks = [_task(1, source=sources[0]), _task(2, source="staging/manga/1/chapters/4/ghost.jpg")]
    tasks += [_task(index + 3, source=key) for index, key in enumerate(sources[1:])]
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer(), concurrency=1)

    with pytest.raises(SourceNotFound):
        relocator.run(tasks)

    assert [item.key for item in permanent.list_prefix("slug/")] == ["slug/vol-1/ch-5/p0001.webp"]


def test_run_honours_cancellation_and_deadline(stores, image_bytes) -> None:
    staging, permanent = stores
    sources = _stage(staging, image_bytes, 2)
    tasks = [_task(index + 1, source=key) for index, key in enumerate(sources)]
    relocator = ObjectRelocator(staging, permanent, ImageOptimizer())
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(PublishCancelled):
        relocator.run(tasks, cancel_event=cancel)
    with pytest.raises(PublishCancelled):
        relocator.run(tasks, deadline=time.monotonic() - 1)

    assert permanent.list_prefix("slug/") == []
    assert relocator.run([]) == []


def test_concurrency_must_be_positive(stores) -> None:
    staging, permanent = stores

    with pytest.raises(ValueError):
        ObjectRelocator(staging, permanent, ImageOptimizer(), concurrency=0)
