"""Fix-confidence repositories.

FixStore is the narrow interface the learning client talks to. Three
implementations ship:

    HttpFixStore    - the shared error-learning service (credentialed HTTP)
    SqliteFixStore  - a local aiosqlite database
    InMemoryFixStore - process-local dicts, used in tests and dry runs

Every implementation raises FixStoreError when the backing store cannot be
reached or answers with something it cannot decode. Upsert semantics are
identical across them: a pattern is keyed by signature and counts
occurrences, a fix is keyed by (pattern, description) and counts
applications, successes and failures.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from botflow_agent.learning.models import ErrorPattern, ErrorToAvoid, FixAttempt

logger = logging.getLogger("botflow_agent.learning.store")

KNOWN_FIX_MIN_CONFIDENCE = 0.5


class FixStoreError(Exception):
    """The repository could not be reached or rejected the request."""


def guidance_signature(text: str) -> str:
    return "guidance_" + hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


class FixStore(ABC):
    """Pattern / fix repository."""

    @abstractmethod
    async def upsert_pattern(self, pattern: ErrorPattern) -> str:
        """Insert or bump a pattern by signature; return its id."""

    @abstractmethod
    async def record_fix(
        self,
        pattern_id: str,
        fix_description: str,
        success: bool,
        fix_diff: dict[str, Any] | None = None,
    ) -> str:
        """Insert or update a fix's counters; return its id."""

    @abstractmethod
    async def errors_to_avoid(self, limit: int = 20) -> list[ErrorToAvoid]:
        """Most frequent patterns first, each with its best known fix if any."""

    @abstractmethod
    async def known_fixes(
        self, signatures: list[str], min_confidence: float = KNOWN_FIX_MIN_CONFIDENCE
    ) -> list[FixAttempt]:
        """Fixes for the given signatures, highest confidence first."""

    @abstractmethod
    async def proven_fixes(
        self, min_confidence: float = 0.7, min_applied: int = 3, limit: int = 50
    ) -> list[FixAttempt]:
        """Fixes meeting both thresholds, highest confidence first."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryFixStore(FixStore):
    def __init__(self) -> None:
        self.patterns: dict[str, ErrorPattern] = {}
        self.fixes: dict[tuple[str, str], FixAttempt] = {}
        self._ids = itertools.count(1)

    def _pattern_by_id(self, pattern_id: str) -> ErrorPattern | None:
        for p in self.patterns.values():
            if p.id == pattern_id:
                return p
        return None

    def _joined(self, fix: FixAttempt) -> FixAttempt:
        p = self._pattern_by_id(fix.error_pattern_id)
        if p is not None:
            fix.error_signature = p.error_signature
            fix.error_type = p.error_type
            fix.field_name = p.field_name
        return fix

    async def upsert_pattern(self, pattern: ErrorPattern) -> str:
        now = time.time()
        existing = self.patterns.get(pattern.error_signature)
        if existing is not None:
            existing.occurrence_count += 1
            existing.last_seen_at = now
            existing.node_context = existing.node_context or pattern.node_context
            return existing.id  # type: ignore[return-value]
        stored = ErrorPattern(
            error_signature=pattern.error_signature,
            error_type=pattern.error_type,
            error_description=pattern.error_description,
            field_name=pattern.field_name,
            node_context=pattern.node_context,
            occurrence_count=1,
            id=str(next(self._ids)),
            first_seen_at=now,
            last_seen_at=now,
        )
        self.patterns[pattern.error_signature] = stored
        return stored.id  # type: ignore[return-value]

    async def record_fix(self, pattern_id, fix_description, success, fix_diff=None) -> str:
        key = (pattern_id, fix_description)
        fix = self.fixes.get(key)
        if fix is None:
            fix = FixAttempt(
                id=str(next(self._ids)),
                error_pattern_id=pattern_id,
                fix_description=fix_description,
                fix_diff=fix_diff,
            )
            self.fixes[key] = fix
        fix.applied_count += 1
        if success:
            fix.success_count += 1
        else:
            fix.failure_count += 1
        fix.fix_diff = fix_diff or fix.fix_diff
        fix.last_applied_at = time.time()
        return fix.id  # type: ignore[return-value]

    def _sorted(self, fixes: list[FixAttempt]) -> list[FixAttempt]:
        return sorted((self._joined(f) for f in fixes), key=lambda f: f.confidence, reverse=True)

    async def errors_to_avoid(self, limit: int = 20) -> list[ErrorToAvoid]:
        patterns = sorted(self.patterns.values(), key=lambda p: p.occurrence_count, reverse=True)[:limit]
        out = []
        for p in patterns:
            best = self._sorted([
                f for f in self.fixes.values()
                if f.error_pattern_id == p.id and f.confidence >= KNOWN_FIX_MIN_CONFIDENCE
            ])
            out.append(ErrorToAvoid(
                error_type=p.error_type,
                field=p.field_name,
                description=p.error_description,
                occurrences=p.occurrence_count,
                known_fix=best[0].fix_description if best else None,
            ))
        return out

    async def known_fixes(self, signatures, min_confidence=KNOWN_FIX_MIN_CONFIDENCE) -> list[FixAttempt]:
        ids = {self.patterns[s].id for s in signatures if s in self.patterns}
        return self._sorted([
            f for f in self.fixes.values()
            if f.error_pattern_id in ids and f.confidence >= min_confidence
        ])

    async def proven_fixes(self, min_confidence=0.7, min_applied=3, limit=50) -> list[FixAttempt]:
        return self._sorted([
            f for f in self.fixes.values() if f.is_proven(min_confidence, min_applied)
        ])[:limit]


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _decode(from_dict, data: dict, key: str) -> list:
    records = data.get(key) or []
    if not isinstance(records, list):
        raise FixStoreError(f"{key!r} is {type(records).__name__}, expected a list")
    try:
        return [from_dict(r) for r in records]
    except (AttributeError, TypeError, ValueError) as e:
        raise FixStoreError(f"malformed {key} record: {e}") from e


class HttpFixStore(FixStore):
    """Client for the shared error-learning service.

    Routes:
        POST /patterns          upsert pattern → {"pattern_id"}
        POST /fixes             upsert fix → {"fix_id"}
        GET  /fixes             proven fixes (min_confidence, min_applied, limit)
        GET  /errors-to-avoid   ranked patterns (limit)
        POST /query-fixes       fixes for {"error_signatures": [...]}
    """

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 10.0) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
            headers["apikey"] = api_key
        self._client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            r = await self._client.request(method, path, **kwargs)
            r.raise_for_status()
            data = r.json() if r.text.strip() else {}
        except httpx.HTTPStatusError as e:
            logger.error("%s %s -> %s", method, path, e.response.status_code)
            raise FixStoreError(f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise FixStoreError(str(e)) from e
        if not isinstance(data, dict):
            logger.error("%s %s returned %s, expected an object", method, path, type(data).__name__)
            raise FixStoreError(f"unexpected response body: {type(data).__name__}")
        return data

    async def upsert_pattern(self, pattern: ErrorPattern) -> str:
        data = await self._request("POST", "/patterns", json={
            "error_signature": pattern.error_signature,
            "error_type": pattern.error_type,
            "field_name": pattern.field_name,
            "error_description": pattern.error_description,
            "node_context": pattern.node_context,
        })
        pattern_id = data.get("pattern_id")
        if pattern_id is None:
            raise FixStoreError("pattern upsert returned no id")
        return str(pattern_id)

    async def record_fix(self, pattern_id, fix_description, success, fix_diff=None) -> str:
        data = await self._request("POST", "/fixes", json={
            "error_pattern_id": pattern_id,
            "fix_description": fix_description,
            "fix_diff": fix_diff,
            "success": success,
        })
        fix_id = data.get("fix_id")
        if fix_id is None:
            raise FixStoreError("fix upsert returned no id")
        return str(fix_id)

    async def errors_to_avoid(self, limit: int = 20) -> list[ErrorToAvoid]:
        data = await self._request("GET", "/errors-to-avoid", params={"limit": limit})
        return _decode(ErrorToAvoid.from_dict, data, "errors_to_avoid")

    async def known_fixes(self, signatures, min_confidence=KNOWN_FIX_MIN_CONFIDENCE) -> list[FixAttempt]:
        if not signatures:
            return []
        data = await self._request("POST", "/query-fixes", json={"error_signatures": list(signatures)})
        fixes = _decode(FixAttempt.from_dict, data, "fixes")
        return [f for f in fixes if f.confidence >= min_confidence]

    async def proven_fixes(self, min_confidence=0.7, min_applied=3, limit=50) -> list[FixAttempt]:
        data = await self._request("GET", "/fixes", params={
            "min_confidence": min_confidence,
            "min_applied": min_applied,
            "limit": limit,
        })
        return _decode(FixAttempt.from_dict, data, "fixes")


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_CREATE_PATTERNS = """
CREATE TABLE IF NOT EXISTS error_patterns (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    error_signature   TEXT    UNIQUE NOT NULL,
    error_type        TEXT    NOT NULL,
    field_name        TEXT,
    error_description TEXT    NOT NULL,
    node_context      TEXT,
    occurrence_count  INTEGER DEFAULT 1,
    first_seen_at     REAL    NOT NULL,
    last_seen_at      REAL    NOT NULL
)
"""

_CREATE_FIXES = """
CREATE TABLE IF NOT EXISTS fix_attempts (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    error_pattern_id  INTEGER NOT NULL REFERENCES error_patterns(id) ON DELETE CASCADE,
    fix_description   TEXT    NOT NULL,
    fix_diff          TEXT,
    applied_count     INTEGER DEFAULT 1,
    success_count     INTEGER DEFAULT 0,
    failure_count     INTEGER DEFAULT 0,
    created_at        REAL    NOT NULL,
    last_applied_at   REAL    NOT NULL,
    UNIQUE (error_pattern_id, fix_description)
)
"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_error_patterns_occurrence ON error_patterns (occurrence_count DESC)",
    "CREATE INDEX IF NOT EXISTS idx_fix_attempts_pattern ON fix_attempts (error_pattern_id)",
)

_CONFIDENCE = "(CASE WHEN f.applied_count > 0 THEN CAST(f.success_count AS REAL) / f.applied_count ELSE 0 END)"

_FIX_SELECT = f"""
SELECT f.id, f.error_pattern_id, f.fix_description, f.fix_diff, f.applied_count,
       f.success_count, f.failure_count, f.last_applied_at,
       p.error_signature, p.error_type, p.field_name
FROM fix_attempts f JOIN error_patterns p ON p.id = f.error_pattern_id
"""


class SqliteFixStore(FixStore):
    """aiosqlite-backed repository for single-host deployments.

    Lifecycle:
        store = await SqliteFixStore.open("learning.db")
        ...
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = None

    async def setup(self) -> None:
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.execute(_CREATE_PATTERNS)
        await self._conn.execute(_CREATE_FIXES)
        for stmt in _CREATE_INDEXES:
            await self._conn.execute(stmt)
        await self._conn.commit()
        logger.info("SqliteFixStore ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str) -> "SqliteFixStore":
        store = cls(db_path)
        await store.setup()
        return store

    def _require_conn(self):
        if self._conn is None:
            raise FixStoreError("SqliteFixStore used before setup()")
        return self._conn

    async def _fetch(self, sql: str, params: tuple = ()) -> list[tuple]:
        import aiosqlite
        conn = self._require_conn()
        try:
            async with conn.execute(sql, params) as cur:
                return list(await cur.fetchall())
        except aiosqlite.Error as e:
            raise FixStoreError(str(e)) from e

    async def _write(self, sql: str, params: tuple) -> None:
        import aiosqlite
        conn = self._require_conn()
        try:
            await conn.execute(sql, params)
            await conn.commit()
        except aiosqlite.Error as e:
            raise FixStoreError(str(e)) from e

    @staticmethod
    def _row_to_fix(row: tuple) -> FixAttempt:
        return FixAttempt(
            id=str(row[0]),
            error_pattern_id=str(row[1]),
            fix_description=row[2],
            fix_diff=json.loads(row[3]) if row[3] else None,
            applied_count=row[4],
            success_count=row[5],
            failure_count=row[6],
            last_applied_at=row[7],
            error_signature=row[8],
            error_type=row[9],
            field_name=row[10],
        )

    async def upsert_pattern(self, pattern: ErrorPattern) -> str:
        now = time.time()
        context = json.dumps(pattern.node_context) if pattern.node_context else None
        await self._write(
            """
            INSERT INTO error_patterns
                (error_signature, error_type, field_name, error_description, node_context,
                 occurrence_count, first_seen_at, last_seen_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT (error_signature) DO UPDATE SET
                occurrence_count = occurrence_count + 1,
                last_seen_at = excluded.last_seen_at,
                node_context = COALESCE(error_patterns.node_context, excluded.node_context)
            """,
            (pattern.error_signature, pattern.error_type, pattern.field_name,
             pattern.error_description, context, now, now),
        )
        rows = await self._fetch(
            "SELECT id FROM error_patterns WHERE error_signature = ?", (pattern.error_signature,)
        )
        return str(rows[0][0])

    async def record_fix(self, pattern_id, fix_description, success, fix_diff=None) -> str:
        now = time.time()
        diff = json.dumps(fix_diff) if fix_diff else None
        await self._write(
            """
            INSERT INTO fix_attempts
                (error_pattern_id, fix_description, fix_diff, applied_count,
                 success_count, failure_count, created_at, last_applied_at)
            VALUES (?, ?, ?, 1, ?, ?, ?, ?)
            ON CONFLICT (error_pattern_id, fix_description) DO UPDATE SET
                applied_count = applied_count + 1,
                success_count = success_count + excluded.success_count,
                failure_count = failure_count + excluded.failure_count,
                last_applied_at = excluded.last_applied_at,
                fix_diff = COALESCE(excluded.fix_diff, fix_attempts.fix_diff)
            """,
            (int(pattern_id), fix_description, diff, 1 if success else 0, 0 if success else 1, now, now),
        )
        rows = await self._fetch(
            "SELECT id FROM fix_attempts WHERE error_pattern_id = ? AND fix_description = ?",
            (int(pattern_id), fix_description),
        )
        return str(rows[0][0])

    async def errors_to_avoid(self, limit: int = 20) -> list[ErrorToAvoid]:
        patterns = await self._fetch(
            "SELECT id, error_type, field_name, error_description, occurrence_count "
            "FROM error_patterns ORDER BY occurrence_count DESC, last_seen_at DESC LIMIT ?",
            (limit,),
        )
        out = []
        for pid, error_type, field_name, description, occurrences in patterns:
            best = await self._fetch(
                f"SELECT f.fix_description FROM fix_attempts f WHERE f.error_pattern_id = ? "
                f"AND {_CONFIDENCE} >= ? ORDER BY {_CONFIDENCE} DESC LIMIT 1",
                (pid, KNOWN_FIX_MIN_CONFIDENCE),
            )
            out.append(ErrorToAvoid(
                error_type=error_type,
                field=field_name,
                description=description,
                occurrences=occurrences,
                known_fix=best[0][0] if best else None,
            ))
        return out

    async def known_fixes(self, signatures, min_confidence=KNOWN_FIX_MIN_CONFIDENCE) -> list[FixAttempt]:
        if not signatures:
            return []
        marks = ", ".join("?" for _ in signatures)
        rows = await self._fetch(
            f"{_FIX_SELECT} WHERE p.error_signature IN ({marks}) AND {_CONFIDENCE} >= ? "
            f"ORDER BY {_CONFIDENCE} DESC",
            (*signatures, min_confidence),
        )
        return [self._row_to_fix(r) for r in rows]

    async def proven_fixes(self, min_confidence=0.7, min_applied=3, limit=50) -> list[FixAttempt]:
        rows = await self._fetch(
            f"{_FIX_SELECT} WHERE {_CONFIDENCE} >= ? AND f.applied_count >= ? "
            f"ORDER BY {_CONFIDENCE} DESC LIMIT ?",
            (min_confidence, min_applied, limit),
        )
        return [self._row_to_fix(r) for r in rows]
