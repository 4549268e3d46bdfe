"""Resolve chapter page records to the objects actually sitting in staging.

Uploaders over the years have named staged files in several ways, so the
locator walks an ordered list of strategies and stops at the first hit:

1. the stored location reference (key or URL) normalised to a bare key;
2. the original file name, bare or with an image extension appended, then by
   its stem;
3. positional names derived from the page index (``007.jpg``, ``7.png``);
4. pairing by rank when staged object count equals page count.

Everything here is a pure function of the page records and a listing that
was fetched once per chapter.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from ..services.naming import IMAGE_EXTENSIONS, natural_sort_key
from ..services.object_store import normalize_key
from ..services.storage import PageRecord


STORED_REFERENCE = "stored_reference"
FILE_NAME = "file_name"
POSITIONAL = "positional"
ORDINAL = "ordinal"
NOT_FOUND = "not_found"
DUPLICATE_SOURCE = "duplicate_source"

_ZERO_STEMS = {"0", "00", "000", "0000"}


def _stem(name: str) -> str:
    base = posixpath.basename(name)
    stem, dot, _ = base.rpartition(".")
    return stem if dot and stem else base


@dataclass(frozen=True)
class Resolution:
    page: PageRecord
    key: Optional[str]
    strategy: str
    tried: Tuple[str, ...] = ()

    @property
    def found(self) -> bool:
        return self.key is not None


class StagingListing:
    """Lookup tables over one staging prefix listing."""

    def __init__(self, keys: Iterable[str]) -> None:
        ordered = sorted({key for key in keys if key and not key.endswith("/")}, key=natural_sort_key)
        self.keys: List[str] = ordered
        self._exact: Set[str] = set(ordered)
        self._lower: Dict[str, str] = {}
        self._names: Dict[str, str] = {}
        self._names_lower: Dict[str, str] = {}
        self._stems_lower: Dict[str, str] = {}
        for key in ordered:
            name = posixpath.basename(key)
            self._lower.setdefault(key.lower(), key)
            self._names.setdefault(name, key)
            self._names_lower.setdefault(name.lower(), key)
            self._stems_lower.setdefault(_stem(name).lower(), key)
        self.zero_based = any(_stem(key) in _ZERO_STEMS for key in ordered)

    def __len__(self) -> int:
        return len(self.keys)

    def match_key(self, key: str) -> Optional[str]:
        if key in self._exact:
            return key
        return self._lower.get(key.lower())

    def match_name(self, name: str, *, exact_case: bool) -> Optional[str]:
        if exact_case:
            return self._names.get(name)
        return self._names_lower.get(name.lower())

    def match_stem(self, stem: str) -> Optional[str]:
        return self._stems_lower.get(stem.lower())


ListingLike = Union[StagingListing, Sequence[str]]


@dataclass
class StagingLocator:
    """Ordered strategy list resolving a page to a staged key."""

    prefix: str
    normalizer: Callable[[Optional[str]], str] = normalize_key
    extensions: Sequence[str] = field(default=IMAGE_EXTENSIONS)

    def _reference_candidates(self, page: PageRecord) -> List[str]:
        reference = self.normalizer(page.location)
        if not reference:
            return []
        candidates = [reference]
        if not reference.startswith(self.prefix):
            candidates.append(self.prefix + reference)
        return candidates

    def _name_candidates(self, name: str) -> List[str]:
        return [name] + [f"{name}.{ext}" for ext in self.extensions]

    def _by_reference(self, page: PageRecord, listing: StagingListing, tried: List[str]) -> Optional[str]:
        for candidate in self._reference_candidates(page):
            tried.append(candidate)
            match = listing.match_key(candidate)
            if match:
                return match
        return None

    def _by_file_name(self, page: PageRecord, listing: StagingListing, tried: List[str]) -> Optional[str]:
        name = (page.file_name or "").strip()
        if not name:
            name = posixpath.basename(self.normalizer(page.location))
        name = posixpath.basename(name)
        if not name:
            return None
        candidates = self._name_candidates(name)
        tried.extend(candidates)
        for exact_case in (True, False):
            for candidate in candidates:
                match = listing.match_name(candidate, exact_case=exact_case)
                if match:
                    return match
        return listing.match_stem(_stem(name))

    def _by_position(self, page: PageRecord, listing: StagingListing, tried: List[str]) -> Optional[str]:
        number = int(page.page_index) - (1 if listing.zero_based else 0)
        if number < 0:
            return None
        for stem in dict.fromkeys((f"{number:03d}", str(number))):
            for candidate in self._name_candidates(stem)[1:]:
                tried.append(candidate)
                match = listing.match_name(candidate, exact_case=False)
                if match:
                    return match
        return None

    def resolve(
        self,
        page: PageRecord,
        listing: ListingLike,
        *,
        page_position: int,
        page_total: int,
    ) -> Resolution:
        """Resolve *page*; ``page_position`` is its 1-based rank among *page_total* pages."""

        if not isinstance(listing, StagingListing):
            listing = StagingListing(listing)
        tried: List[str] = []
        for strategy, finder in (
            (STORED_REFERENCE, self._by_reference),
            (FILE_NAME, self._by_file_name),
            (POSITIONAL, self._by_position),
        ):
            key = finder(page, listing, tried)
            if key:
                return Resolution(page, key, strategy, tuple(tried))

        if page_total and len(listing) == page_total and 1 <= page_position <= page_total:
            return Resolution(page, listing.keys[page_position - 1], ORDINAL, tuple(tried))
        return Resolution(page, None, NOT_FOUND, tuple(tried))

    def resolve_all(self, pages: Sequence[PageRecord], listing: ListingLike) -> List[Resolution]:
        """Resolve every page in index order; a key can only be claimed once."""

        if not isinstance(listing, StagingListing):
            listing = StagingListing(listing)
        ordered = sorted(pages, key=lambda page: (page.page_index, page.id))
        claimed: Set[str] = set()
        results: List[Resolution] = []
        for position, page in enumerate(ordered, start=1):
            resolution = self.resolve(page, listing, page_position=position, page_total=len(ordered))
            if resolution.key is not None and resolution.key in claimed:
                resolution = Resolution(page, None, DUPLICATE_SOURCE, resolution.tried)
            elif resolution.key is not None:
                claimed.add(resolution.key)
            results.append(resolution)
        return results


__all__ = [
    "DUPLICATE_SOURCE",
    "FILE_NAME",
    "NOT_FOUND",
    "ORDINAL",
    "POSITIONAL",
    "STORED_REFERENCE",
    "Resolution",
    "StagingListing",
    "StagingLocator",
]
