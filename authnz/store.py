"""
store.py — persistence contract and the in-memory reference adapter.

The engine keeps two tables: ``session`` (in-flight authorization requests,
keyed by correlation uid) and ``grant`` (authorization codes, keyed by
code). Production stores must make ``update(..., expect=...)`` a single
conditional write; it is what keeps a code from being redeemed twice.
"""

import asyncio
import logging
import time
from typing import Any, Protocol

from authnz.constants import STEP_COOKIE_MAX_AGE

logger = logging.getLogger("authnz")

TABLES = ("grant", "session")


class Store(Protocol):
    """Storage adapter used by the engine.

    The engine reads records by attribute (``meta.status``, ``grant.used``)
    and patches them with enums and ``Step`` lists, so ``fetch`` must hand
    back the ``AuthorizationRequestMeta`` / ``Grant`` objects it was given,
    not a serialized form of them.
    """

    async def insert(self, table: str, payload: Any, key: str | None = None) -> None: ...

    async def fetch(self, table: str, key: str) -> Any | None: ...

    async def update(self, table: str, key: str, patch: dict[str, Any],
                     expect: dict[str, Any] | None = None) -> bool: ...


def _get(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _set(record: Any, name: str, value: Any) -> None:
    if isinstance(record, dict):
        record[name] = value
    else:
        setattr(record, name, value)


def _is_stale(table: str, record: Any, now: float, session_ttl: float) -> bool:
    if table == "grant":
        expires_at = _get(record, "expires_at")
        return bool(_get(record, "used")) or (expires_at is not None and now > expires_at)
    updated_at = _get(record, "updated_at")
    return updated_at is not None and now - updated_at > session_ttl


class InMemoryStore:
    """Process-local store. State is lost on restart.

    Used or expired codes and sessions idle past ``session_ttl`` are dropped
    whenever a new row is inserted.
    """

    def __init__(self, session_ttl: float = STEP_COOKIE_MAX_AGE):
        self._tables: dict[str, dict[str, Any]] = {t: {} for t in TABLES}
        self._lock = asyncio.Lock()
        self.session_ttl = session_ttl

    def _table(self, table: str) -> dict[str, Any]:
        try:
            return self._tables[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    def _prune(self) -> None:
        now = time.time()
        for table, rows in self._tables.items():
            stale = [k for k, record in rows.items() if _is_stale(table, record, now, self.session_ttl)]
            for key in stale:
                del rows[key]
            if stale:
                logger.debug("store prune: table=%s removed=%d", table, len(stale))

    async def insert(self, table: str, payload: Any, key: str | None = None) -> None:
        if key is None:
            key = _get(payload, "code") if table == "grant" else _get(payload, "uid")
        if key is None:
            raise ValueError(f"insert into {table}: no key given and none derivable")
        async with self._lock:
            rows = self._table(table)
            self._prune()
            rows[key] = payload
        logger.debug("store insert: table=%s key=%s", table, key)

    async def fetch(self, table: str, key: str) -> Any | None:
        record = self._table(table).get(key) if key else None
        logger.debug("store fetch: table=%s key=%s found=%s", table, key, record is not None)
        return record

    async def update(self, table: str, key: str, patch: dict[str, Any],
                     expect: dict[str, Any] | None = None) -> bool:
        async with self._lock:
            record = self._table(table).get(key)
            if record is None:
                logger.debug("store update: table=%s key=%s missing", table, key)
                return False
            if expect and any(_get(record, k) != v for k, v in expect.items()):
                logger.debug("store update: table=%s key=%s precondition failed", table, key)
                return False
            for name, value in patch.items():
                _set(record, name, value)
        logger.debug("store update: table=%s key=%s fields=%s", table, key, sorted(patch))
        return True
