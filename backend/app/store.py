from __future__ import annotations

import logging
import math
from datetime import date, timedelta
from threading import RLock
from typing import Any, Generic, Optional, TypeVar

from pydantic import TypeAdapter, ValidationError

from backend.app.models import (
    GoalSettings,
    NextActionRecord,
    PipelineStage,
    PotentialLevel,
    ProspectionBusiness,
    VisitRecord,
    VisitStatus,
)
from backend.app.storage import JsonStore

logger = logging.getLogger("prospection.store")

V = TypeVar("V")

KEYS = {
    "visit_status": "visitStatus",
    "potential": "potential",
    "notes": "notes",
    "pipeline": "pipeline",
    "next_action": "nextAction",
    "last_contact": "lastContact",
    "contract_value": "contractValue",
    "negotiation_start": "negotiationStart",
    "daily_goal": "dailyGoal",
    "monthly_goal": "monthlyGoal",
    "businesses": "businesses",
    "contacted_ids": "contactedBusinesses",
    "contacted_data": "contactedBusinessesData",
}

DEFAULT_DAILY_GOAL = 20
DEFAULT_MONTHLY_GOAL = 200


class StoreNotFoundError(Exception):
    pass


class StoreConflictError(Exception):
    pass


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class SparseMap(Generic[V]):
    """
    One per-business map persisted as a single JSON object.

    Every write reads the whole map, changes one key and writes the map back
    while holding the store lock, so concurrent writers to different businesses
    do not drop each other's entries. Absent keys mean "no data"; entries that
    no longer validate are skipped.
    """

    def __init__(self, json_store: JsonStore, key: str, value_type: Any, lock: Any = None) -> None:
        self._json_store = json_store
        self.key = key
        self._adapter: TypeAdapter[V] = TypeAdapter(value_type)
        self._lock = lock if lock is not None else RLock()

    def _raw(self) -> dict[str, Any]:
        raw = self._json_store.get_json(self.key, {})
        if not isinstance(raw, dict):
            logger.warning("map_not_an_object key=%s", self.key)
            return {}
        return raw

    def _parse(self, business_id: str, value: Any) -> Optional[V]:
        try:
            return self._adapter.validate_python(value)
        except ValidationError:
            logger.warning("map_entry_invalid key=%s business_id=%s", self.key, business_id)
            return None

    def all(self) -> dict[str, V]:
        output: dict[str, V] = {}
        for business_id, value in self._raw().items():
            parsed = self._parse(business_id, value)
            if parsed is not None:
                output[business_id] = parsed
        return output

    def get(self, business_id: str) -> Optional[V]:
        raw = self._raw()
        if business_id not in raw:
            return None
        return self._parse(business_id, raw[business_id])

    def set(self, business_id: str, value: V) -> None:
        with self._lock:
            raw = self._raw()
            raw[business_id] = self._adapter.dump_python(value, mode="json")
            self._json_store.set_json(self.key, raw)

    def remove(self, business_id: str) -> None:
        with self._lock:
            raw = self._raw()
            if business_id in raw:
                del raw[business_id]
                self._json_store.set_json(self.key, raw)


class PotentialMap(SparseMap[PotentialLevel]):
    def clear(self, business_id: str) -> None:
        """Unset the rating entirely; a cleared potential reads as None, never low."""
        self.remove(business_id)


class NotesMap(SparseMap[str]):
    def get(self, business_id: str) -> str:
        value = super().get(business_id)
        return value if value is not None else ""


class PipelineMap(SparseMap[PipelineStage]):
    def get(self, business_id: str) -> PipelineStage:
        value = super().get(business_id)
        return value if value is not None else PipelineStage.new


class ContractValueMap(SparseMap[int]):
    def set(self, business_id: str, value: int) -> None:
        super().set(business_id, max(0, int(value)))


class GoalsRepository:
    def __init__(self, json_store: JsonStore, lock: Any = None) -> None:
        self._json_store = json_store
        self._lock = lock if lock is not None else RLock()

    def _read(self, key: str, default: int) -> int:
        value = self._json_store.get_json(key, default)
        # json.loads accepts Infinity and NaN.
        if not _is_count(value) or not math.isfinite(value) or value < 0:
            return default
        return int(value)

    def _write(self, key: str, goal: Any) -> None:
        if not _is_count(goal) or not math.isfinite(goal):
            logger.info("goal_ignored key=%s value=%r", key, goal)
            return
        with self._lock:
            self._json_store.set_json(key, max(0, math.floor(goal)))

    def get_daily_goal(self) -> int:
        return self._read(KEYS["daily_goal"], DEFAULT_DAILY_GOAL)

    def set_daily_goal(self, goal: Any) -> None:
        self._write(KEYS["daily_goal"], goal)

    def get_monthly_goal(self) -> int:
        return self._read(KEYS["monthly_goal"], DEFAULT_MONTHLY_GOAL)

    def set_monthly_goal(self, goal: Any) -> None:
        self._write(KEYS["monthly_goal"], goal)

    def settings(self) -> GoalSettings:
        return GoalSettings(
            daily_goal=self.get_daily_goal(),
            monthly_goal=self.get_monthly_goal(),
        )


class BusinessSnapshots:
    def __init__(self, json_store: JsonStore, lock: Any = None) -> None:
        self._map: SparseMap[ProspectionBusiness] = SparseMap(
            json_store, KEYS["businesses"], ProspectionBusiness, lock
        )

    def add_or_update(self, business: ProspectionBusiness) -> None:
        self._map.set(business.id, business)

    def all(self) -> list[ProspectionBusiness]:
        return list(self._map.all().values())

    def get(self, business_id: str) -> ProspectionBusiness:
        business = self._map.get(business_id)
        if not business:
            raise StoreNotFoundError(f"business not found: {business_id}")
        return business

    def exists(self, business_id: str) -> bool:
        return self._map.get(business_id) is not None


class ContactedBusinesses:
    """The separate list of businesses the user reached out to."""

    def __init__(self, json_store: JsonStore, lock: Any = None) -> None:
        self._json_store = json_store
        self._business_adapter = TypeAdapter(ProspectionBusiness)
        self._lock = lock if lock is not None else RLock()

    def ids(self) -> set[str]:
        raw = self._json_store.get_json(KEYS["contacted_ids"], [])
        if not isinstance(raw, list):
            return set()
        return {str(value) for value in raw}

    def all(self) -> list[ProspectionBusiness]:
        raw = self._json_store.get_json(KEYS["contacted_data"], [])
        if not isinstance(raw, list):
            return []
        output: list[ProspectionBusiness] = []
        for item in raw:
            try:
                output.append(self._business_adapter.validate_python(item))
            except ValidationError:
                logger.warning("contacted_entry_invalid")
        return output

    def add(self, business: ProspectionBusiness) -> None:
        with self._lock:
            ids = self.ids()
            ids.add(business.id)
            self._json_store.set_json(KEYS["contacted_ids"], sorted(ids))

            contacted = self.all()
            if not any(item.id == business.id for item in contacted):
                contacted.append(business)
                self._json_store.set_json(
                    KEYS["contacted_data"],
                    [item.model_dump(mode="json") for item in contacted],
                )

    def remove(self, business_id: str) -> None:
        with self._lock:
            remaining = [item for item in self.all() if item.id != business_id]
            self._json_store.set_json(
                KEYS["contacted_data"],
                [item.model_dump(mode="json") for item in remaining],
            )
            ids = self.ids()
            ids.discard(business_id)
            self._json_store.set_json(KEYS["contacted_ids"], sorted(ids))

    def clear(self) -> None:
        with self._lock:
            self._json_store.remove(KEYS["contacted_data"])
            self._json_store.remove(KEYS["contacted_ids"])


class ProspectionStore:
    def __init__(self, json_store: JsonStore) -> None:
        self.json_store = json_store
        # Shared by every map; reentrant so workflow code can hold it across several writes.
        self.lock = RLock()
        self.visit_status: SparseMap[VisitRecord] = SparseMap(
            json_store, KEYS["visit_status"], VisitRecord, self.lock
        )
        self.potential = PotentialMap(json_store, KEYS["potential"], PotentialLevel, self.lock)
        self.notes = NotesMap(json_store, KEYS["notes"], str, self.lock)
        self.pipeline = PipelineMap(json_store, KEYS["pipeline"], PipelineStage, self.lock)
        self.next_action: SparseMap[NextActionRecord] = SparseMap(
            json_store, KEYS["next_action"], NextActionRecord, self.lock
        )
        self.last_contact: SparseMap[date] = SparseMap(
            json_store, KEYS["last_contact"], date, self.lock
        )
        self.contract_value = ContractValueMap(json_store, KEYS["contract_value"], int, self.lock)
        self.negotiation_start: SparseMap[date] = SparseMap(
            json_store, KEYS["negotiation_start"], date, self.lock
        )
        self.goals = GoalsRepository(json_store, self.lock)
        self.businesses = BusinessSnapshots(json_store, self.lock)
        self.contacted = ContactedBusinesses(json_store, self.lock)

    def visited_today_count(self, today: Optional[date] = None) -> int:
        day = today or date.today()
        return sum(
            1
            for record in self.visit_status.all().values()
            if record.status == VisitStatus.already_visited and record.date == day
        )

    def visited_this_week_count(self, today: Optional[date] = None) -> int:
        day = today or date.today()
        monday = day - timedelta(days=day.weekday())
        sunday = monday + timedelta(days=6)
        return sum(
            1
            for record in self.visit_status.all().values()
            if record.status == VisitStatus.already_visited
            and record.date is not None
            and monday <= record.date <= sunday
        )
