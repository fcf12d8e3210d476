"""Tests for the field fallback strategy and its cache."""


import pytest

from bridgesync.errors import BridgeSyncError, FallbackExhaustedError, NotFoundError, RequestRejectedError
from bridgesync.fallback import (
    BASIC_FIELDS,
    MINIMAL_FIELDS,
    FieldFallbackStrategy,
    InvalidFieldCache,
    RegexFieldErrorMatcher,
    query_with_fallback,
)


class FakeQuery:
    """Rejects any field outside ``valid`` with an Invalid field error."""

    def __init__(self, valid, message="Invalid field '{}' on model 'widget'"):
        self.valid = set(valid)
        self.message = message
        self.calls = []

    async def __call__(self, fields):
        self.calls.append(list(fields))
        for f in fields:
            if f not in self.valid:
                raise RequestRejectedError(self.message.format(f), status=400)
        return [{f: f"v-{f}" for f in fields}]


# --- cache ---


def test_cache_grows_and_clears():
    cache = InvalidFieldCache()
    assert cache.get("widget") == frozenset()
    cache.add("widget", "a")
    before = cache.get("widget")
    cache.add("widget", "b")
    assert before == frozenset({"a"})
    assert cache.get("widget") == frozenset({"a", "b"})

    cache.add("gadget", "z")
    cache.clear("widget")
    assert "widget" not in cache
    assert cache.get("gadget") == frozenset({"z"})
    cache.clear()
    assert cache.snapshot() == {}


# --- matcher ---


def test_regex_matcher_extracts_field():
    matcher = RegexFieldErrorMatcher()
    err = BridgeSyncError("Invalid field \"ghost\" on model widget")
    assert matcher.is_field_error(err)
    assert matcher.extract_field(err) == "ghost"
    assert not matcher.is_field_error(BridgeSyncError("Access denied"))


def test_custom_matcher_pattern():
    matcher = RegexFieldErrorMatcher(r"Unknown column `(\w+)`", marker="Unknown column")
    err = RuntimeError("Unknown column `legacy_code` in field list")
    assert matcher.is_field_error(err)
    assert matcher.extract_field(err) == "legacy_code"


# --- strategy ---


async def test_ghost_field_is_dropped_and_cached():
    cache = InvalidFieldCache()
    query = FakeQuery({"id", "name"})

    result = await query_with_fallback("widget", ["id", "name", "ghost_field"], query, cache=cache)

    assert query.calls == [["id", "name", "ghost_field"], ["id", "name"]]
    assert result == [{"id": "v-id", "name": "v-name"}]
    assert cache.get("widget") == frozenset({"ghost_field"})


async def test_cached_field_never_requested_again():
    cache = InvalidFieldCache()
    cache.add("widget", "ghost_field")
    query = FakeQuery({"id", "name"})

    await query_with_fallback("widget", ["id", "ghost_field", "name"], query, cache=cache)
    assert query.calls == [["id", "name"]]

    cache.clear("widget")
    query.valid.add("ghost_field")
    await query_with_fallback("widget", ["id", "ghost_field", "name"], query, cache=cache)
    assert query.calls[-1] == ["id", "ghost_field", "name"]


async def test_moves_to_basic_level_when_caller_fields_run_out():
    cache = InvalidFieldCache()
    query = FakeQuery(set(BASIC_FIELDS))
    strategy = FieldFallbackStrategy("widget", ["foo", "bar"], cache=cache)

    await strategy.run(query)

    assert query.calls[-1] == list(BASIC_FIELDS)
    assert strategy.level == 2
    assert strategy.status.invalid_fields == ["foo", "bar"]
    assert strategy.status.retry_count == 2


async def test_unparseable_field_error_advances_level():
    query_calls = []

    async def query(fields):
        query_calls.append(list(fields))
        if len(query_calls) == 1:
            raise BridgeSyncError("Invalid field in request")
        return []

    strategy = FieldFallbackStrategy("widget", ["a", "b"], cache=InvalidFieldCache())
    await strategy.run(query)
    assert query_calls == [["a", "b"], list(BASIC_FIELDS)]


async def test_levels_skip_when_emptied_by_cache():
    cache = InvalidFieldCache()
    cache.add("widget", *BASIC_FIELDS)
    schema_calls = []

    async def schema():
        schema_calls.append(1)
        return ["id", "code"]

    query = FakeQuery({"id", "code"})
    strategy = FieldFallbackStrategy("widget", ["nope"], cache=cache, fetch_schema=schema)
    result = await strategy.run(query)

    # Level 2 and 3 are fully cached as invalid, so the chain jumps to the schema.
    assert strategy.level == 4
    assert schema_calls == [1]
    assert query.calls == [["nope"], ["code"]]
    assert result == [{"code": "v-code"}]


async def test_exhaustion_raises_with_context_and_stops_calling():
    cache = InvalidFieldCache()
    query = FakeQuery(set())

    async def schema():
        return ["x"]

    with pytest.raises(FallbackExhaustedError) as exc_info:
        await query_with_fallback("widget", ["a"], query, cache=cache, fetch_schema=schema)

    err = exc_info.value
    assert err.entity_type == "widget"
    assert "a" in err.invalid_fields
    assert set(MINIMAL_FIELDS) <= set(err.invalid_fields)
    assert "x" in err.invalid_fields
    assert "Invalid field 'a'" in err.original.message
    assert query.calls[-1] == ["x"]


async def test_exhausted_without_schema_source():
    query = FakeQuery(set())
    with pytest.raises(FallbackExhaustedError) as exc_info:
        await query_with_fallback("widget", ["a"], query, cache=InvalidFieldCache())
    assert exc_info.value.level == 4


async def test_schema_fetch_failure_exhausts():
    async def schema():
        raise NotFoundError("no such model", status=404)

    query = FakeQuery(set())
    with pytest.raises(FallbackExhaustedError) as exc_info:
        await query_with_fallback("widget", ["a"], query, cache=InvalidFieldCache(), fetch_schema=schema)
    assert isinstance(exc_info.value.__cause__, NotFoundError)


async def test_non_field_errors_propagate_unchanged():
    async def query(fields):
        raise NotFoundError("model gone", status=404)

    with pytest.raises(NotFoundError):
        await query_with_fallback("widget", ["a"], query, cache=InvalidFieldCache())


async def test_retry_picks_up_fields_cached_by_other_chains():
    cache = InvalidFieldCache()
    calls = []

    async def query(fields):
        calls.append(list(fields))
        if len(calls) == 1:
            # A concurrent chain for the same entity learns about "ghost" meanwhile.
            cache.add("widget", "ghost")
            raise RequestRejectedError("Invalid field 'other'")
        return "ok"

    result = await query_with_fallback("widget", ["id", "ghost", "other"], query, cache=cache)
    assert result == "ok"
    assert calls == [["id", "ghost", "other"], ["id"]]
    assert cache.get("widget") == frozenset({"ghost", "other"})
