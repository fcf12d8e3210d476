"""Field fallback: degrade a rejected field list through fixed levels.

Level 1 is the caller's list, level 2 a basic field set, level 3 a minimal
one and level 4 whatever the backend's schema introspection reports. Fields
the backend names as invalid are cached per entity type for the life of the
process and never requested again until the cache is cleared.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol, TypeVar

from bridgesync.errors import BridgeSyncError, FallbackExhaustedError, InvalidFieldError
from bridgesync.models.query import FieldFallbackStatus

log = logging.getLogger(__name__)

T = TypeVar("T")

BASIC_FIELDS = ("id", "name", "display_name", "create_date", "write_date")
MINIMAL_FIELDS = ("id", "name", "display_name")
MAX_LEVEL = 4

DEFAULT_INVALID_FIELD_PATTERN = r"Invalid field ['\"]([^'\"]+)['\"]"

QueryFunc = Callable[[list[str]], Awaitable[T]]
SchemaFunc = Callable[[], Awaitable[Iterable[str]]]


# ---------------------------------------------------------------------------
# Known-bad field cache
# ---------------------------------------------------------------------------


class InvalidFieldCache:
    """Entity type -> fields the backend rejected.

    Writers take a lock and publish a fresh dict of frozensets; readers use
    whatever snapshot is current without locking.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, frozenset[str]] = {}

    def get(self, entity_type: str) -> frozenset[str]:
        return self._data.get(entity_type, frozenset())

    def add(self, entity_type: str, *fields: str) -> frozenset[str]:
        with self._lock:
            current = self._data.get(entity_type, frozenset())
            updated = current.union(fields)
            if updated != current:
                self._data = {**self._data, entity_type: updated}
            return updated

    def clear(self, entity_type: str | None = None) -> None:
        with self._lock:
            if entity_type is None:
                self._data = {}
            elif entity_type in self._data:
                self._data = {k: v for k, v in self._data.items() if k != entity_type}

    def snapshot(self) -> dict[str, frozenset[str]]:
        return dict(self._data)

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._data


default_cache = InvalidFieldCache()


# ---------------------------------------------------------------------------
# Error matching
# ---------------------------------------------------------------------------


class FieldErrorMatcher(Protocol):
    def is_field_error(self, exc: BaseException) -> bool: ...

    def extract_field(self, exc: BaseException) -> str | None: ...


class RegexFieldErrorMatcher:
    """Recognizes ``Invalid field 'x'`` style messages anywhere in the error."""

    def __init__(self, pattern: str = DEFAULT_INVALID_FIELD_PATTERN, marker: str = "Invalid field") -> None:
        self._pattern = re.compile(pattern)
        self._marker = marker.lower()

    @staticmethod
    def _text(exc: BaseException) -> str:
        if isinstance(exc, BridgeSyncError):
            return f"{exc.message} {exc.details}"
        return str(exc)

    def is_field_error(self, exc: BaseException) -> bool:
        if isinstance(exc, InvalidFieldError):
            return True
        text = self._text(exc)
        return self._marker in text.lower() or self._pattern.search(text) is not None

    def extract_field(self, exc: BaseException) -> str | None:
        if isinstance(exc, InvalidFieldError) and exc.field:
            return exc.field
        match = self._pattern.search(self._text(exc))
        return match.group(1) if match else None


default_matcher = RegexFieldErrorMatcher()


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


def _dedupe(fields: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for f in fields:
        if f not in seen:
            seen.add(f)
            out.append(f)
    return out


class FieldFallbackStrategy:
    """One query attempt chain. Levels only move forward."""

    def __init__(
        self,
        entity_type: str,
        fields: Iterable[str],
        *,
        cache: InvalidFieldCache | None = None,
        matcher: FieldErrorMatcher | None = None,
        fetch_schema: SchemaFunc | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.original_fields = _dedupe(fields)
        self._cache = cache if cache is not None else default_cache
        self._matcher = matcher or default_matcher
        self._fetch_schema = fetch_schema
        self.level = 1
        self.retry_count = 0
        self.invalid_fields: list[str] = []
        self.current_fields = self._strip(self.original_fields)

    def _strip(self, fields: Iterable[str]) -> list[str]:
        bad = self._cache.get(self.entity_type)
        return [f for f in _dedupe(fields) if f not in bad]

    @property
    def status(self) -> FieldFallbackStatus:
        return FieldFallbackStatus(
            entity_type=self.entity_type,
            level=self.level,
            retry_count=self.retry_count,
            original_fields=list(self.original_fields),
            current_fields=list(self.current_fields),
            invalid_fields=list(self.invalid_fields),
            cached_invalid_fields=sorted(self._cache.get(self.entity_type)),
        )

    def _mark_invalid(self, field: str) -> None:
        self._cache.add(self.entity_type, field)
        if field not in self.invalid_fields:
            self.invalid_fields.append(field)
        log.info("Marked field %r invalid for %s (level %d)", field, self.entity_type, self.level)

    def _exhausted(self, first_error: BaseException | None) -> FallbackExhaustedError:
        invalid = _dedupe([*self.invalid_fields, *sorted(self._cache.get(self.entity_type))])
        return FallbackExhaustedError(self.entity_type, invalid, first_error, level=self.level)

    async def _level_fields(self, first_error: BaseException | None) -> list[str]:
        if self.level == 2:
            return list(BASIC_FIELDS)
        if self.level == 3:
            return list(MINIMAL_FIELDS)
        if self._fetch_schema is None:
            log.debug("No schema source for %s, cannot enter level 4", self.entity_type)
            raise self._exhausted(first_error) from first_error
        try:
            return list(await self._fetch_schema())
        except Exception as exc:
            log.warning("Schema fetch failed for %s: %s", self.entity_type, exc)
            raise self._exhausted(first_error or exc) from exc

    async def _next_level(self, first_error: BaseException | None) -> None:
        while self.level < MAX_LEVEL:
            self.level += 1
            self.current_fields = self._strip(await self._level_fields(first_error))
            if self.current_fields:
                log.debug(
                    "Fallback for %s moved to level %d: %s",
                    self.entity_type, self.level, self.current_fields,
                )
                return
            log.debug("Fallback level %d empty for %s, skipping", self.level, self.entity_type)
        raise self._exhausted(first_error) from first_error

    async def run(self, query: QueryFunc[T]) -> T:
        first_error: BaseException | None = None
        while True:
            # Another chain may have cached more bad fields since the last attempt.
            self.current_fields = self._strip(self.current_fields)
            if not self.current_fields:
                await self._next_level(first_error)
                continue

            try:
                return await query(list(self.current_fields))
            except Exception as exc:
                if not self._matcher.is_field_error(exc):
                    raise
                if first_error is None:
                    first_error = exc
                self.retry_count += 1
                field = self._matcher.extract_field(exc)
                if field:
                    self._mark_invalid(field)
                if field and field in self.current_fields:
                    continue
                await self._next_level(first_error)


async def query_with_fallback(
    entity_type: str,
    fields: Iterable[str],
    query: QueryFunc[T],
    *,
    cache: InvalidFieldCache | None = None,
    matcher: FieldErrorMatcher | None = None,
    fetch_schema: SchemaFunc | None = None,
) -> T:
    strategy = FieldFallbackStrategy(
        entity_type, fields, cache=cache, matcher=matcher, fetch_schema=fetch_schema
    )
    return await strategy.run(query)
