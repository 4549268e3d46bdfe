"""Copy optimized page images into the permanent store."""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..services.events import emit_task_event
from ..services.object_store import ObjectHead, ObjectNotFound, ObjectStore, ObjectStoreError
from ..services.storage import utc_timestamp
from .errors import PipelineError, PublishCancelled, RelocationFailure, SourceNotFound
from .optimizer import (
    PROCESSING_METADATA_KEY,
    QUALITY_METADATA_KEY,
    ImageOptimizer,
    OptimizedImage,
    PriorImageMeta,
    compression_stats,
)


LOGGER = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"
DEFAULT_CONCURRENCY = 3
ORIGINAL_KEY_METADATA = "original-key"


@dataclass(frozen=True)
class RelocationTask:
    """One page to place at ``dest_key``; ``source_key`` is ``None`` when already published."""

    chapter_id: int
    index: int
    dest_key: str
    source_key: Optional[str] = None
    page_id: Optional[int] = None
    file_name: Optional[str] = None
    source_is_permanent: bool = False


@dataclass(frozen=True)
class RelocationOutcome:
    task: RelocationTask
    skipped: bool
    original_size: int
    final_size: int
    action: str
    quality: Optional[int] = None

    @property
    def saved_bytes(self) -> int:
        return compression_stats(self.original_size, self.final_size)[0]

    @property
    def compression_ratio(self) -> int:
        return compression_stats(self.original_size, self.final_size)[1]


def _int_metadata(head: ObjectHead, name: str, default: int) -> int:
    try:
        return int(head.metadata.get(name, default))
    except (TypeError, ValueError):
        return default


class ObjectRelocator:
    """Place optimized bytes at deterministic keys with a bounded worker pool."""

    def __init__(
        self,
        staging: ObjectStore,
        permanent: ObjectStore,
        optimizer: ImageOptimizer,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._staging = staging
        self._permanent = permanent
        self._optimizer = optimizer
        self._concurrency = int(concurrency)
        self._clock = clock

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def _existing(self, task: RelocationTask, head: ObjectHead) -> RelocationOutcome:
        LOGGER.debug("Destination %s already present; skipping", task.dest_key)
        return RelocationOutcome(
            task=task,
            skipped=True,
            original_size=_int_metadata(head, "original-size", head.size),
            final_size=int(head.size),
            action="existing",
            quality=PriorImageMeta.from_head(head).recorded_quality,
        )

    @staticmethod
    def _holds_source(task: RelocationTask, head: ObjectHead) -> bool:
        """Whether the object at the destination was produced from the task's source.

        Dense indexes shift when the set of resolved pages changes between
        attempts, so an existing destination may hold a different page.
        """

        if task.source_key is None:
            return True
        return head.metadata.get(ORIGINAL_KEY_METADATA) == task.source_key

    def _fetch(self, store: ObjectStore, key: str, task: RelocationTask) -> tuple:
        try:
            head = store.head(key)
            if head is None:
                raise ObjectNotFound(f"No such key: {key}", key=key, store=store.name)
            return head, store.get(key)
        except ObjectNotFound as error:
            raise SourceNotFound(
                f"Source object {key} is no longer in the {store.name} store",
                key=key,
                chapter_id=task.chapter_id,
            ) from error
        except ObjectStoreError as error:
            raise RelocationFailure(
                f"Unable to read {store.name} object {key}: {error}",
                key=key,
                chapter_id=task.chapter_id,
            ) from error

    def _metadata(self, task: RelocationTask, source_key: str, image: OptimizedImage) -> Dict[str, str]:
        metadata = {
            "chapter-id": str(task.chapter_id),
            "page-index": str(task.index),
            ORIGINAL_KEY_METADATA: source_key,
            PROCESSING_METADATA_KEY: image.action,
            "original-size": str(image.original_size),
            "final-size": str(image.size),
            "compression-ratio": str(image.compression_ratio),
            "published-at": self._clock(),
        }
        if image.quality is not None:
            metadata[QUALITY_METADATA_KEY] = str(image.quality)
        return metadata

    def relocate(self, task: RelocationTask, *, force: bool = False) -> RelocationOutcome:
        """Optimize and write one page unless its destination already exists."""

        if not force:
            try:
                head = self._permanent.head(task.dest_key)
            except ObjectStoreError as error:
                raise RelocationFailure(
                    f"Existence check failed: {error}", key=task.dest_key, chapter_id=task.chapter_id
                ) from error
            if head is not None and self._holds_source(task, head):
                return self._existing(task, head)
            if head is not None:
                LOGGER.info(
                    "Destination %s was written from %s; replacing it with %s",
                    task.dest_key,
                    head.metadata.get(ORIGINAL_KEY_METADATA) or "an unknown source",
                    task.source_key,
                )
            if task.source_key is None:
                raise RelocationFailure(
                    "Destination is missing and no staged source is known",
                    key=task.dest_key,
                    chapter_id=task.chapter_id,
                )

        # A forced run without a staged source re-encodes the published copy in place.
        if task.source_key and not task.source_is_permanent:
            source_store = self._staging
        else:
            source_store = self._permanent
        source_key = task.source_key or task.dest_key
        source_head, data = self._fetch(source_store, source_key, task)

        image = self._optimizer.optimize(
            data, PriorImageMeta.from_head(source_head), force=force, key=source_key
        )
        try:
            self._permanent.put(
                task.dest_key,
                image.data,
                content_type=image.content_type,
                cache_control=CACHE_CONTROL,
                metadata=self._metadata(task, source_key, image),
            )
        except ObjectStoreError as error:
            raise RelocationFailure(
                f"Unable to write {task.dest_key}: {error}", key=task.dest_key, chapter_id=task.chapter_id
            ) from error

        LOGGER.debug("Relocated %s -> %s (%s)", source_key, task.dest_key, image.action)
        return RelocationOutcome(
            task=task,
            skipped=False,
            original_size=image.original_size,
            final_size=image.size,
            action=image.action,
            quality=image.quality,
        )

    def run(
        self,
        tasks: Sequence[RelocationTask],
        *,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> List[RelocationOutcome]:
        """Relocate *tasks* with at most ``concurrency`` in flight.

        ``deadline`` is a :func:`time.monotonic` timestamp. On the first failure,
        cancellation or an expired deadline no further tasks are submitted;
        tasks already running are allowed to finish.
        """

        if not tasks:
            return []
        start = time.perf_counter()
        results: List[Optional[RelocationOutcome]] = [None] * len(tasks)
        pending = iter(enumerate(tasks))
        in_flight: Dict[Future, int] = {}
        failure: Optional[PipelineError] = None
        stopped = False

        def _should_stop() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and time.monotonic() >= deadline

        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="relocate") as executor:
            while True:
                while failure is None and not stopped and len(in_flight) < self._concurrency:
                    if _should_stop():
                        stopped = True
                        break
                    item = next(pending, None)
                    if item is None:
                        break
                    position, task = item
                    context = contextvars.copy_context()
                    in_flight[executor.submit(context.run, self.relocate, task, force=force)] = position
                if not in_flight:
                    break
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    position = in_flight.pop(future)
                    try:
                        results[position] = future.result()
                    except PipelineError as error:
                        LOGGER.error("Relocation of %s failed: %s", tasks[position].dest_key, error)
                        failure = failure or error
                    except Exception as error:  # noqa: BLE001 - surfaced as a typed failure below
                        LOGGER.exception("Unexpected relocation error for %s", tasks[position].dest_key)
                        failure = failure or RelocationFailure(
                            str(error), key=tasks[position].dest_key, chapter_id=tasks[position].chapter_id
                        )

        completed = [outcome for outcome in results if outcome is not None]
        emit_task_event(
            "relocate",
            "Relocation batch finished",
            payload={
                "chapter_id": tasks[0].chapter_id,
                "total": len(tasks),
                "completed": len(completed),
                "skipped": sum(1 for outcome in completed if outcome.skipped),
                "status": "failed" if failure else ("cancelled" if stopped else "ok"),
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.WARNING if failure or stopped else logging.INFO,
        )
        if failure is not None:
            raise failure
        if len(completed) < len(tasks):
            raise PublishCancelled(
                f"Publish attempt stopped after {len(completed)} of {len(tasks)} pages",
                chapter_id=tasks[0].chapter_id,
            )
        return completed


__all__ = [
    "CACHE_CONTROL",
    "DEFAULT_CONCURRENCY",
    "ORIGINAL_KEY_METADATA",
    "ObjectRelocator",
    "RelocationOutcome",
    "RelocationTask",
]
