"""URL-safe unique slugs derived from market titles."""

from __future__ import annotations

import re
import unicodedata
from typing import Callable, Iterator, TypeVar

import structlog

from predlaunch.errors import SlugExhausted, SlugTaken

log = structlog.get_logger(__name__)

T = TypeVar("T")

SLUG_MAX_LEN = 120
TITLE_MAX_LEN = 100
FALLBACK_SLUG = "market"

_NON_WORD = re.compile(r"[^a-z0-9\s_-]")
_SPACES = re.compile(r"[\s_]+")
_DASHES = re.compile(r"-+")


def to_slug(text: str) -> str:
    """Lowercase, transliterate to ASCII, keep [a-z0-9-], collapse separators, cap length."""
    if not text:
        return ""
    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    s = ascii_text.lower().strip()
    s = _NON_WORD.sub("", s)
    s = _SPACES.sub("-", s)
    s = _DASHES.sub("-", s).strip("-")
    return s[:SLUG_MAX_LEN].rstrip("-")


def derive_title(question: str) -> str:
    """Title from the question: trimmed, at most 100 chars, trailing ?!. removed."""
    title = question.strip()
    if len(title) > TITLE_MAX_LEN:
        title = title[:TITLE_MAX_LEN].strip()
    return re.sub(r"[?!.]+$", "", title).strip() or question.strip()


class SlugAllocator:
    """Finds the first free slug among base, base-1, base-2, ...

    is_taken is a cheap pre-check; the persistence layer's uniqueness constraint is
    the real guarantee. When claim() raises SlugTaken (a concurrent writer won the
    same slug) the allocator moves on to the next suffix.
    """

    def __init__(self, is_taken: Callable[[str], bool], max_attempts: int = 50) -> None:
        self._is_taken = is_taken
        self.max_attempts = max_attempts

    @staticmethod
    def candidates(base: str) -> Iterator[str]:
        yield base
        n = 1
        while True:
            suffix = f"-{n}"
            yield base[: SLUG_MAX_LEN - len(suffix)].rstrip("-") + suffix
            n += 1

    def base_slug(self, title: str) -> str:
        return to_slug(title) or FALLBACK_SLUG

    def allocate(self, title: str, claim: Callable[[str], T] | None = None) -> T | str:
        """Return claim(slug) for the first slug that could be claimed, or the slug if no claim."""
        base = self.base_slug(title)
        for attempt, slug in enumerate(self.candidates(base), start=1):
            if attempt > self.max_attempts:
                break
            if self._is_taken(slug):
                continue
            if claim is None:
                return slug
            try:
                return claim(slug)
            except SlugTaken:
                log.info("slug_race_lost", slug=slug, attempt=attempt)
                continue
        raise SlugExhausted(base, self.max_attempts)
