"""
Key-value persistence port with SQLite (aiosqlite) and in-memory backends,
plus a versioned collection loader that fails closed on unknown layouts.

Every roster and the call history live under one key each, serialised as
``{"schema_version": N, "items": [...]}``.
"""

from __future__ import annotations

import abc
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Generic, Optional, TypeVar

import aiosqlite
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from app.errors import SchemaVersionError

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""

M = TypeVar("M", bound=BaseModel)


class KeyValueStore(abc.ABC):
    """Minimal async key-value port. Values are opaque strings."""

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    async def keys(self) -> list[str]: ...


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return sorted(self._data)


class SQLiteKeyValueStore(KeyValueStore):
    """Async SQLite wrapper storing one row per key."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("kv_store_connected", path=str(self._path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Call connect() first")
        return self._db

    async def get(self, key: str) -> Optional[str]:
        cursor = await self._conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self._conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        await self._conn.commit()

    async def delete(self, key: str) -> None:
        await self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        await self._conn.commit()

    async def keys(self) -> list[str]:
        cursor = await self._conn.execute("SELECT key FROM kv_store ORDER BY key ASC")
        rows = await cursor.fetchall()
        return [r["key"] for r in rows]


class VersionedCollection(Generic[M]):
    """
    An ordered list of pydantic models stored under a single key.

    Loading data written with another ``schema_version`` (or data that does
    not validate) raises ``SchemaVersionError``; there is no best-effort
    upgrade of older shapes.
    """

    def __init__(self, store: KeyValueStore, key: str, model: type[M], version: int = 1):
        self.store = store
        self.key = key
        self.version = version
        self._adapter = TypeAdapter(list[model])

    async def load(self) -> list[M]:
        raw = await self.store.get(self.key)
        if raw is None:
            return []
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            log.error("collection_unreadable", key=self.key)
            raise SchemaVersionError(self.key, None, self.version, "is not valid JSON")

        found = envelope.get("schema_version") if isinstance(envelope, dict) else None
        if found != self.version:
            log.error("collection_version_mismatch", key=self.key, found=found, expected=self.version)
            raise SchemaVersionError(self.key, found, self.version)

        try:
            return self._adapter.validate_python(envelope.get("items", []))
        except ValidationError as e:
            log.error("collection_invalid_items", key=self.key, errors=e.error_count())
            raise SchemaVersionError(
                self.key, found, self.version, f"has {e.error_count()} item(s) that failed validation"
            ) from e

    async def save(self, items: list[M]) -> None:
        payload = {
            "schema_version": self.version,
            "items": self._adapter.dump_python(items, mode="json"),
        }
        await self.store.set(self.key, json.dumps(payload))
