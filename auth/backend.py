"""
auth/backend.py -- Durable key-value persistence for credential records.

The credential store never talks to a database directly. It reads and writes
plain dict records keyed by API key through the narrow CredentialBackend
interface, so the storage engine can be swapped without touching auth logic:

  get(api_key)                  -> record | None
  put(api_key, kind, record)    -- insert or replace
  delete(api_key)               -> bool
  move(old_key, new_key, kind, record)
                                -- delete + insert in ONE transaction
                                   (key rotation must never leave both or
                                   neither key valid)
  load_all()                    -> {api_key: (kind, record)}

Every write returns only after it has been committed. There is no buffering.

Implementations:
  SqlCredentialBackend    -- SQLAlchemy Core, one `credentials` table, JSON
                             record column. SQLite gets WAL mode, same as
                             every other store in this codebase.
  MemoryCredentialBackend -- dict guarded by a lock. Non-durable; for tests
                             and throwaway dev servers.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'keyrelay_credentials.db'}"

# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class CredentialBackend(Protocol):
    def get(self, api_key: str) -> tuple[str, dict] | None: ...

    def put(self, api_key: str, kind: str, record: dict) -> None: ...

    def delete(self, api_key: str) -> bool: ...

    def move(self, old_key: str, new_key: str, kind: str, record: dict) -> None: ...

    def load_all(self) -> dict[str, tuple[str, dict]]: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_credentials = Table(
    "credentials",
    _metadata,
    Column("api_key", String(80), primary_key=True),
    Column("kind", String(10), nullable=False),  # "user" | "app"
    Column("record", Text, nullable=False),  # JSON object
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety (per connection)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlCredentialBackend:
    """CredentialBackend over SQLAlchemy Core.

    Usage:
        backend = SqlCredentialBackend("sqlite:///credentials.db")
        backend.put("app_abc...", "app", {...})
        backend.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def get(self, api_key: str) -> tuple[str, dict] | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.api_key == api_key)).fetchone()
        return (row.kind, json.loads(row.record)) if row is not None else None

    def put(self, api_key: str, kind: str, record: dict) -> None:
        """Insert or replace the record stored under api_key."""
        payload = json.dumps(record)
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.api_key == api_key)
                .values(kind=kind, record=payload, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                conn.execute(
                    _credentials.insert().values(api_key=api_key, kind=kind, record=payload, updated_at=_now_iso())
                )
            conn.commit()

    def delete(self, api_key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_credentials.delete().where(_credentials.c.api_key == api_key))
            conn.commit()
        return result.rowcount > 0

    def move(self, old_key: str, new_key: str, kind: str, record: dict) -> None:
        """Re-key a record atomically. Both statements commit together or not at all.

        Raises KeyError if old_key is no longer present (concurrent revoke).
        """
        with self.engine.begin() as conn:
            result = conn.execute(_credentials.delete().where(_credentials.c.api_key == old_key))
            if result.rowcount == 0:
                raise KeyError(old_key)
            conn.execute(
                _credentials.insert().values(
                    api_key=new_key, kind=kind, record=json.dumps(record), updated_at=_now_iso()
                )
            )

    def load_all(self) -> dict[str, tuple[str, dict]]:
        with self.engine.connect() as conn:
            rows = conn.execute(_credentials.select()).fetchall()
        return {row.api_key: (row.kind, json.loads(row.record)) for row in rows}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemoryCredentialBackend:
    """Process-lifetime CredentialBackend. Records are deep-copied via JSON on
    the way in and out so callers can never mutate stored state by reference."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, str]] = {}

    def get(self, api_key: str) -> tuple[str, dict] | None:
        with self._lock:
            entry = self._data.get(api_key)
        return (entry[0], json.loads(entry[1])) if entry is not None else None

    def put(self, api_key: str, kind: str, record: dict) -> None:
        with self._lock:
            self._data[api_key] = (kind, json.dumps(record))

    def delete(self, api_key: str) -> bool:
        with self._lock:
            return self._data.pop(api_key, None) is not None

    def move(self, old_key: str, new_key: str, kind: str, record: dict) -> None:
        with self._lock:
            if old_key not in self._data:
                raise KeyError(old_key)
            del self._data[old_key]
            self._data[new_key] = (kind, json.dumps(record))

    def load_all(self) -> dict[str, tuple[str, dict]]:
        with self._lock:
            items = list(self._data.items())
        return {key: (kind, json.loads(raw)) for key, (kind, raw) in items}

    def close(self) -> None:
        pass
