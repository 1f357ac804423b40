from __future__ import annotations

from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class MemoryKeyValueStore:
    """String store kept in process memory. Used when persistence is disabled."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._values: dict[str, str] = {}

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class SqlKeyValueStore:
    """
    Durable string store. Uses SQLAlchemy and supports both SQLite and PostgreSQL URLs.

    Each key holds one opaque string; there is no compare-and-swap, so concurrent
    writers to the same key resolve as last write wins.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.kv_entries = Table(
            "kv_entries",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("value", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.kv_entries.c.value).where(self.kv_entries.c.key == key)
                ).first()
        if not row:
            return None
        return row[0]

    def set(self, key: str, value: str) -> None:
        with self._lock:
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.kv_entries.c.key).where(self.kv_entries.c.key == key)
                ).first()
                if existing:
                    conn.execute(
                        self.kv_entries.update()
                        .where(self.kv_entries.c.key == key)
                        .values(value=value, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.kv_entries.insert().values(
                            key=key,
                            value=value,
                            updated_at_utc=now,
                        )
                    )

    def delete(self, key: str) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(delete(self.kv_entries).where(self.kv_entries.c.key == key))
