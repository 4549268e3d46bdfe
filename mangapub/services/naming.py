"""Slug and object-key conventions for staged and published chapters."""

from __future__ import annotations

import re
from typing import List, Optional

__all__ = [
    "IMAGE_EXTENSIONS",
    "TARGET_EXTENSION",
    "STAGING_ROOT",
    "romaji_slug",
    "manga_slug",
    "staging_prefix",
    "legacy_staging_prefixes",
    "permanent_prefix",
    "legacy_permanent_prefix",
    "destination_key",
    "is_staging_key",
    "belongs_to_prefix",
    "natural_sort_key",
]

IMAGE_EXTENSIONS = ("webp", "jpg", "jpeg", "png", "avif")
TARGET_EXTENSION = "webp"
STAGING_ROOT = "staging/"

_CYRILLIC = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "e",
    "ж": "zh", "з": "z", "и": "i", "й": "i", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "h", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "sch", "ъ": "",
    "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
}
_LEGACY_STAGING_TEMPLATES = (
    "staging/manga/{chapter_id}/",
    "chapters/{chapter_id}/",
    "temp/chapters/{chapter_id}/",
)
_NUMBER_PATTERN = re.compile(r"(\d+)")
_CURRENT_STAGING_PATTERN = re.compile(r"^staging/manga/\d+/chapters/\d+/")


def romaji_slug(value: Optional[str]) -> str:
    """Return a URL-safe ASCII slug for *value*, transliterating Cyrillic."""

    text = (value or "").strip().lower()
    text = "".join(_CYRILLIC.get(char, char) for char in text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-")
    return text


def manga_slug(
    manga_id: int,
    *candidates: Optional[str],
) -> str:
    """Return the first non-empty slug among *candidates*, else ``manga-{id}``."""

    for candidate in candidates:
        slug = romaji_slug(candidate)
        if slug:
            return slug
    return f"manga-{manga_id}"


def staging_prefix(manga_id: int, chapter_id: int) -> str:
    return f"{STAGING_ROOT}manga/{int(manga_id)}/chapters/{int(chapter_id)}/"


def legacy_staging_prefixes(chapter_id: int) -> List[str]:
    """Prefixes older uploaders used for the same chapter."""

    return [template.format(chapter_id=int(chapter_id)) for template in _LEGACY_STAGING_TEMPLATES]


def permanent_prefix(slug: str, volume: int, chapter: int) -> str:
    return f"{slug}/vol-{int(volume)}/ch-{int(chapter)}/"


def legacy_permanent_prefix(slug: str, volume: int, chapter: int) -> str:
    return f"manga/{slug}/v{int(volume)}/ch{int(chapter)}/"


def destination_key(slug: str, volume: int, chapter: int, index: int) -> str:
    """Return the deterministic permanent key for the 1-based page *index*."""

    if index < 1:
        raise ValueError(f"Page index must be 1-based, got {index}")
    return f"{permanent_prefix(slug, volume, chapter)}p{int(index):04d}.{TARGET_EXTENSION}"


def is_staging_key(key: str, chapter_id: Optional[int] = None) -> bool:
    """Return ``True`` when *key* lives under a staging convention."""

    if key.startswith(STAGING_ROOT):
        return True
    if chapter_id is None:
        return False
    return any(key.startswith(prefix) for prefix in legacy_staging_prefixes(chapter_id))


def natural_sort_key(value: str) -> tuple:
    """Sort key ordering ``p2`` before ``p10`` and ignoring case."""

    base = value.rsplit("/", 1)[-1].lower()
    parts = _NUMBER_PATTERN.split(base)
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts if part)


def belongs_to_prefix(key: str, prefix: str) -> bool:
    """Return ``True`` when *key* under *prefix* belongs to the chapter *prefix* names.

    The legacy ``staging/manga/{chapter_id}/`` layout overlaps the current
    ``staging/manga/{manga_id}/chapters/...`` one; keys of the current layout
    only belong to a prefix inside their own chapter folder.
    """

    if not key.startswith(prefix):
        return False
    current = _CURRENT_STAGING_PATTERN.match(key)
    return current is None or prefix.startswith(current.group(0))
