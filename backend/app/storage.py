"""Namespaced JSON blobs over a synchronous string store.

Every blob is written as ``{"schema_version": N, "data": ...}``. Blobs written by
the earlier browser client carry no envelope; they are read as version 0 and
upgraded in memory through the registered migrations. The upgraded shape is only
written back on the next mutation of that key.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("prospection.storage")

T = TypeVar("T")

CURRENT_SCHEMA_VERSION = 1

Migration = Callable[[Any], Any]


class StringBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


_MIGRATIONS: dict[tuple[str, int], Migration] = {}


def register_migration(key: str, from_version: int) -> Callable[[Migration], Migration]:
    def decorator(fn: Migration) -> Migration:
        _MIGRATIONS[(key, from_version)] = fn
        return fn

    return decorator


def migrate(key: str, data: Any, version: int) -> Any:
    while version < CURRENT_SCHEMA_VERSION:
        step = _MIGRATIONS.get((key, version))
        if step is not None:
            data = step(data)
        version += 1
    return data


def _unwrap(raw: Any) -> tuple[Any, int]:
    if isinstance(raw, dict) and set(raw) == {"schema_version", "data"}:
        version = raw["schema_version"]
        if isinstance(version, int) and not isinstance(version, bool):
            return raw["data"], version
    return raw, 0


class JsonStore:
    """
    get/set of JSON values under ``<namespace>_<key>``.

    ``backend=None`` stands for an execution context without persistent storage:
    reads return the default and writes do nothing.
    """

    def __init__(self, backend: Optional[StringBackend], namespace: str = "prospection") -> None:
        self.backend = backend
        self.namespace = namespace

    def full_key(self, key: str) -> str:
        return f"{self.namespace}_{key}"

    def get_json(self, key: str, default: T) -> T:
        if self.backend is None:
            return default
        full_key = self.full_key(key)
        try:
            raw = self.backend.get(full_key)
        except SQLAlchemyError:
            logger.warning("store_read_failed key=%s", full_key, exc_info=True)
            return default
        if raw is None or raw == "":
            return default
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("store_parse_failed key=%s", full_key)
            return default
        data, version = _unwrap(parsed)
        if version > CURRENT_SCHEMA_VERSION:
            logger.warning(
                "store_schema_too_new key=%s version=%s supported=%s",
                full_key,
                version,
                CURRENT_SCHEMA_VERSION,
            )
            return default
        if version < CURRENT_SCHEMA_VERSION:
            try:
                data = migrate(key, data, version)
            except (TypeError, ValueError, KeyError, AttributeError):
                logger.warning("store_migration_failed key=%s version=%s", full_key, version)
                return default
        if data is None:
            return default
        return data

    def set_json(self, key: str, value: Any) -> None:
        if self.backend is None:
            return
        envelope = {"schema_version": CURRENT_SCHEMA_VERSION, "data": value}
        self.backend.set(self.full_key(key), json.dumps(envelope))

    def remove(self, key: str) -> None:
        if self.backend is None:
            return
        self.backend.delete(self.full_key(key))


LEGACY_VISIT_STATUS = {
    "ja_visitei": "already_visited",
    "visitar_depois": "visit_later",
    "sem_interesse": "not_interested",
}
LEGACY_POTENTIAL = {"alto": "high", "medio": "medium", "baixo": "low"}
LEGACY_PIPELINE = {
    "novos": "new",
    "visitados": "visited",
    "em_negociacao": "negotiating",
    "cliente_fechado": "closed_won",
}
LEGACY_BUSINESS_FIELDS = {"userRatingsTotal": "rating_count", "cnpj": "tax_id"}


@register_migration("visitStatus", 0)
def _migrate_visit_status(data: dict) -> dict:
    output = {}
    for business_id, record in data.items():
        if isinstance(record, dict) and "status" in record:
            record = dict(record)
            record["status"] = LEGACY_VISIT_STATUS.get(record["status"], record["status"])
        output[business_id] = record
    return output


@register_migration("potential", 0)
def _migrate_potential(data: dict) -> dict:
    return {key: LEGACY_POTENTIAL.get(value, value) for key, value in data.items()}


@register_migration("pipeline", 0)
def _migrate_pipeline(data: dict) -> dict:
    return {key: LEGACY_PIPELINE.get(value, value) for key, value in data.items()}


def _migrate_business(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    return {LEGACY_BUSINESS_FIELDS.get(field, field): value for field, value in record.items()}


@register_migration("businesses", 0)
def _migrate_businesses(data: dict) -> dict:
    return {key: _migrate_business(value) for key, value in data.items()}
