"""Best-effort removal of staging leftovers and abandoned permanent objects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..services import naming
from ..services.events import emit_task_event
from ..services.object_store import ObjectStore
from ..services.storage import ChapterRecord
from .errors import CleanupFailure


LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts per ``store:prefix`` target plus every failure encountered."""

    prefix_counts: Dict[str, int] = field(default_factory=dict)
    exact_deleted: int = 0
    errors: List[CleanupFailure] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return self.exact_deleted + sum(self.prefix_counts.values())

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, object]:
        return {
            "prefixCounts": dict(self.prefix_counts),
            "exactDeleted": self.exact_deleted,
            "totalDeleted": self.total_deleted,
            "errors": [error.to_dict() for error in self.errors],
        }


class CleanupSweeper:
    """Delete chapter artifacts from every prefix convention; never raises."""

    def __init__(self, staging: ObjectStore, permanent: ObjectStore) -> None:
        self._staging = staging
        self._permanent = permanent

    def targets(
        self, chapter: ChapterRecord, slug: str, *, include_permanent: bool = False
    ) -> List[Tuple[ObjectStore, str]]:
        """Return the ``(store, prefix)`` pairs a chapter may occupy."""

        prefixes = [naming.staging_prefix(chapter.manga_id, chapter.id)]
        prefixes.extend(naming.legacy_staging_prefixes(chapter.id))
        targets: List[Tuple[ObjectStore, str]] = [(self._staging, prefix) for prefix in dict.fromkeys(prefixes)]
        if include_permanent:
            targets.append(
                (self._permanent, naming.permanent_prefix(slug, chapter.volume, chapter.chapter_number))
            )
            targets.append(
                (self._permanent, naming.legacy_permanent_prefix(slug, chapter.volume, chapter.chapter_number))
            )
        return targets

    def route(self, reference: str, chapter_id: Optional[int] = None) -> Tuple[ObjectStore, str]:
        """Pick the store holding *reference* and return it with the bare key."""

        staged = self._staging.key_for(reference)
        if staged and naming.is_staging_key(staged, chapter_id):
            return self._staging, staged
        return self._permanent, self._permanent.key_for(reference)

    def _delete_exact(
        self,
        references: Iterable[str],
        staged_keys: Iterable[str],
        chapter_id: int,
        report: SweepReport,
    ) -> None:
        routed = [self.route(reference, chapter_id) for reference in references if reference]
        routed.extend((self._staging, self._staging.key_for(key)) for key in staged_keys if key)
        grouped: Dict[int, Tuple[ObjectStore, List[str]]] = {}
        for store, key in routed:
            if key:
                grouped.setdefault(id(store), (store, []))[1].append(key)

        for store, keys in grouped.values():
            try:
                result = store.delete_many(keys)
            except Exception as error:  # noqa: BLE001 - cleanup never fails the caller
                LOGGER.warning("Exact-key cleanup in %s failed: %s", store.name, error)
                report.errors.append(
                    CleanupFailure(str(error), key=keys[0], chapter_id=chapter_id)
                )
                continue
            report.exact_deleted += result.deleted_count
            for key, message in result.errors.items():
                report.errors.append(CleanupFailure(message, key=key, chapter_id=chapter_id))

    def sweep_targets(
        self,
        targets: Sequence[Tuple[ObjectStore, str]],
        *,
        chapter_id: int,
        exact_keys: Iterable[str] = (),
        staged_keys: Iterable[str] = (),
    ) -> SweepReport:
        """Delete exact keys first, then every target prefix.

        *exact_keys* are routed by key convention; *staged_keys* always belong
        to the staging store.
        """

        report = SweepReport()
        self._delete_exact(exact_keys, staged_keys, chapter_id, report)
        for store, prefix in targets:
            label = f"{store.name}:{prefix}"
            try:
                result = store.delete_prefix(
                    prefix, include=lambda key, prefix=prefix: naming.belongs_to_prefix(key, prefix)
                )
            except Exception as error:  # noqa: BLE001 - each target is attempted independently
                LOGGER.warning("Cleanup of %s failed: %s", label, error)
                report.prefix_counts[label] = 0
                report.errors.append(CleanupFailure(str(error), key=prefix, chapter_id=chapter_id))
                continue
            report.prefix_counts[label] = result.deleted_count
            for key, message in result.errors.items():
                report.errors.append(CleanupFailure(message, key=key, chapter_id=chapter_id))

        emit_task_event(
            "cleanup",
            "Chapter cleanup finished",
            payload={
                "chapter_id": chapter_id,
                "deleted": report.total_deleted,
                "targets": len(targets),
                "errors": len(report.errors),
            },
            level=logging.WARNING if report.errors else logging.INFO,
        )
        return report

    def sweep(
        self,
        chapter: ChapterRecord,
        slug: str,
        *,
        include_permanent: bool = False,
        exact_keys: Iterable[str] = (),
        staged_keys: Iterable[str] = (),
    ) -> SweepReport:
        return self.sweep_targets(
            self.targets(chapter, slug, include_permanent=include_permanent),
            chapter_id=chapter.id,
            exact_keys=exact_keys,
            staged_keys=staged_keys,
        )


__all__ = ["CleanupSweeper", "SweepReport"]
