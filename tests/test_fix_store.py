"""FixStore implementations: in-memory and SQLite share upsert semantics.

Tests:
- A pattern is keyed by signature and counts occurrences
- A fix is keyed by (pattern, description) and counts outcomes
- 4 applications with 3 successes → confidence 0.75
- proven_fixes honours both the confidence and the application thresholds
- known_fixes filters by signature and confidence
- errors_to_avoid ranks by occurrences and attaches the best known fix
- HttpFixStore maps transport and status failures to FixStoreError
- HttpFixStore rejects non-object bodies and malformed records with FixStoreError
"""

from __future__ import annotations

import httpx
import pytest

from botflow_agent.learning.models import ErrorPattern
from botflow_agent.learning.store import (
    FixStoreError,
    HttpFixStore,
    InMemoryFixStore,
    SqliteFixStore,
)


def _pattern(signature: str = "err_abc", error_type: str = "MESSAGE_LENGTH") -> ErrorPattern:
    return ErrorPattern(
        error_signature=signature,
        error_type=error_type,
        error_description="Message exceeds 200 characters",
        field_name="Message",
    )


async def _open(kind: str, tmp_path):
    if kind == "sqlite":
        return await SqliteFixStore.open(str(tmp_path / "learning.db"))
    return InMemoryFixStore()


STORES = pytest.mark.parametrize("kind", ["memory", "sqlite"])


# ---------------------------------------------------------------------------
# Shared semantics
# ---------------------------------------------------------------------------


class TestUpsertSemantics:
    @STORES
    @pytest.mark.asyncio
    async def test_pattern_upsert_counts(self, kind, tmp_path):
        """Same signature twice → same id, two occurrences."""
        store = await _open(kind, tmp_path)
        try:
            first = await store.upsert_pattern(_pattern())
            second = await store.upsert_pattern(_pattern())
            assert first == second
            avoid = await store.errors_to_avoid(10)
            assert len(avoid) == 1
            assert avoid[0].occurrences == 2
            assert avoid[0].error_type == "MESSAGE_LENGTH"
        finally:
            await store.close()

    @STORES
    @pytest.mark.asyncio
    async def test_confidence_and_proven_thresholds(self, kind, tmp_path):
        """applied=4, success=3 → 0.75; proven at min_applied 3, not at 5."""
        store = await _open(kind, tmp_path)
        try:
            pid = await store.upsert_pattern(_pattern())
            diff = {"field": "Message", "before": "long", "after": "short"}
            for success in (True, True, False, True):
                await store.record_fix(pid, "Shortened message", success, diff)

            proven = await store.proven_fixes(min_confidence=0.7, min_applied=3)
            assert len(proven) == 1
            fix = proven[0]
            assert fix.applied_count == 4
            assert fix.success_count == 3
            assert fix.failure_count == 1
            assert fix.confidence == pytest.approx(0.75)
            assert fix.fix_diff == diff
            assert fix.error_signature == "err_abc"
            assert fix.error_type == "MESSAGE_LENGTH"

            assert await store.proven_fixes(min_confidence=0.7, min_applied=5) == []
            assert await store.proven_fixes(min_confidence=0.8, min_applied=3) == []
        finally:
            await store.close()

    @STORES
    @pytest.mark.asyncio
    async def test_distinct_descriptions_are_distinct_fixes(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            pid = await store.upsert_pattern(_pattern())
            a = await store.record_fix(pid, "Shortened message", True)
            b = await store.record_fix(pid, "Split into two nodes", False)
            assert a != b
            assert await store.record_fix(pid, "Shortened message", True) == a
        finally:
            await store.close()

    @STORES
    @pytest.mark.asyncio
    async def test_known_fixes_by_signature(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            pid = await store.upsert_pattern(_pattern("err_one"))
            other = await store.upsert_pattern(_pattern("err_two", "VARIABLE_CASE"))
            await store.record_fix(pid, "Good fix", True)
            await store.record_fix(other, "Bad fix", False)

            known = await store.known_fixes(["err_one", "err_two"], min_confidence=0.5)
            assert [f.fix_description for f in known] == ["Good fix"]
            assert await store.known_fixes(["err_missing"]) == []
            assert await store.known_fixes([]) == []
        finally:
            await store.close()

    @STORES
    @pytest.mark.asyncio
    async def test_errors_to_avoid_ranking_and_known_fix(self, kind, tmp_path):
        store = await _open(kind, tmp_path)
        try:
            rare = await store.upsert_pattern(_pattern("err_rare", "VARIABLE_CASE"))
            for _ in range(3):
                frequent = await store.upsert_pattern(_pattern("err_frequent"))
            await store.record_fix(frequent, "Keep messages under 200 characters", True)
            await store.record_fix(rare, "Never works", False)

            avoid = await store.errors_to_avoid(10)
            assert [a.occurrences for a in avoid] == [3, 1]
            assert avoid[0].known_fix == "Keep messages under 200 characters"
            assert avoid[1].known_fix is None
            assert len(await store.errors_to_avoid(1)) == 1
        finally:
            await store.close()


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "persist.db")
    store = await SqliteFixStore.open(path)
    pid = await store.upsert_pattern(_pattern())
    await store.record_fix(pid, "Shortened message", True)
    await store.close()

    reopened = await SqliteFixStore.open(path)
    try:
        known = await reopened.known_fixes(["err_abc"])
        assert len(known) == 1
        assert known[0].applied_count == 1
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_requires_setup():
    store = SqliteFixStore(":memory:")
    with pytest.raises(FixStoreError):
        await store.errors_to_avoid()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _http_store(handler) -> HttpFixStore:
    store = HttpFixStore("http://learning.test", api_key="k")
    store._client = httpx.AsyncClient(base_url="http://learning.test", transport=httpx.MockTransport(handler))
    return store


class TestHttpFixStore:
    @pytest.mark.asyncio
    async def test_upsert_returns_pattern_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200, json={"pattern_id": 42})

        store = _http_store(handler)
        assert await store.upsert_pattern(_pattern()) == "42"
        assert seen["path"] == "/patterns"
        await store.close()

    @pytest.mark.asyncio
    async def test_status_error_raises(self):
        store = _http_store(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(FixStoreError, match="HTTP 503"):
            await store.errors_to_avoid()
        await store.close()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        store = _http_store(handler)
        with pytest.raises(FixStoreError):
            await store.record_fix("1", "desc", True)
        await store.close()

    @pytest.mark.asyncio
    async def test_known_fixes_filters_confidence(self):
        body = {"fixes": [
            {"id": 1, "error_pattern_id": 9, "fix_description": "ok", "applied_count": 4, "success_count": 4,
             "error_patterns": {"error_signature": "err_abc", "error_type": "MESSAGE_LENGTH"}},
            {"id": 2, "error_pattern_id": 9, "fix_description": "poor", "applied_count": 4, "success_count": 1},
        ]}
        store = _http_store(lambda request: httpx.Response(200, json=body))
        fixes = await store.known_fixes(["err_abc"], min_confidence=0.5)
        assert [f.fix_description for f in fixes] == ["ok"]
        assert fixes[0].error_signature == "err_abc"
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], None, "ok"])
    async def test_non_object_body_raises(self, body):
        store = _http_store(lambda request: httpx.Response(200, json=body))
        with pytest.raises(FixStoreError, match="unexpected response body"):
            await store.errors_to_avoid()
        with pytest.raises(FixStoreError):
            await store.upsert_pattern(_pattern())
        await store.close()

    @pytest.mark.asyncio
    async def test_malformed_records_raise(self):
        body = {"fixes": [{"error_pattern_id": 9, "fix_description": "x", "applied_count": "many"}]}
        store = _http_store(lambda request: httpx.Response(200, json=body))
        with pytest.raises(FixStoreError, match="malformed fixes"):
            await store.proven_fixes()
        await store.close()

    @pytest.mark.asyncio
    async def test_records_not_a_list_raise(self):
        store = _http_store(lambda request: httpx.Response(200, json={"errors_to_avoid": {"a": 1}}))
        with pytest.raises(FixStoreError, match="expected a list"):
            await store.errors_to_avoid()
        await store.close()
