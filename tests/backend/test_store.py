from __future__ import annotations

import json
from datetime import date, timedelta

import pytest

from backend.app.models import (
    NextAction,
    NextActionRecord,
    PipelineStage,
    PotentialLevel,
    ProspectionBusiness,
    VisitRecord,
    VisitStatus,
)
from backend.app.persistence import MemoryKeyValueStore
from backend.app.storage import JsonStore
from backend.app.store import ProspectionStore, StoreNotFoundError


@pytest.mark.parametrize(
    ("map_name", "value"),
    [
        ("visit_status", VisitRecord(status=VisitStatus.already_visited, date=date(2026, 10, 20))),
        ("visit_status", VisitRecord(status=VisitStatus.visit_later)),
        ("potential", PotentialLevel.medium),
        ("notes", "Owner prefers mornings"),
        ("pipeline", PipelineStage.negotiating),
        ("next_action", NextActionRecord(action=NextAction.send_proposal, due=date(2026, 11, 2))),
        ("last_contact", date(2026, 10, 18)),
        ("contract_value", 4500),
        ("negotiation_start", date(2026, 10, 1)),
    ],
)
def test_set_then_get_returns_same_value(store: ProspectionStore, map_name: str, value) -> None:
    sparse_map = getattr(store, map_name)
    sparse_map.set("b1", value)
    assert sparse_map.get("b1") == value
    assert sparse_map.all() == {"b1": value}


def test_maps_are_sparse_with_documented_defaults(store: ProspectionStore) -> None:
    assert store.visit_status.get("unknown") is None
    assert store.potential.get("unknown") is None
    assert store.notes.get("unknown") == ""
    assert store.pipeline.get("unknown") == PipelineStage.new
    assert store.pipeline.all() == {}
    assert store.contract_value.get("unknown") is None


def test_clear_potential_unsets_instead_of_low(store: ProspectionStore) -> None:
    store.potential.set("b1", PotentialLevel.high)
    store.potential.clear("b1")
    assert store.potential.get("b1") is None
    assert "b1" not in store.potential.all()


def test_writes_to_one_business_keep_others(store: ProspectionStore) -> None:
    store.notes.set("b1", "first")
    store.notes.set("b2", "second")
    store.notes.set("b1", "updated")
    assert store.notes.all() == {"b1": "updated", "b2": "second"}


def test_invalid_entries_are_skipped() -> None:
    backend = MemoryKeyValueStore()
    backend.set(
        "prospection_pipeline",
        json.dumps({"schema_version": 1, "data": {"b1": "visited", "b2": "archived"}}),
    )
    store = ProspectionStore(JsonStore(backend))
    assert store.pipeline.all() == {"b1": PipelineStage.visited}
    assert store.pipeline.get("b2") == PipelineStage.new


def test_contract_value_is_clamped_to_non_negative(store: ProspectionStore) -> None:
    store.contract_value.set("b1", -300)
    assert store.contract_value.get("b1") == 0


def test_goals_default_and_clamp(store: ProspectionStore) -> None:
    assert store.goals.get_daily_goal() == 20
    assert store.goals.get_monthly_goal() == 200

    store.goals.set_daily_goal(12.9)
    store.goals.set_monthly_goal(-5)
    assert store.goals.get_daily_goal() == 12
    assert store.goals.get_monthly_goal() == 0

    store.goals.set_daily_goal("thirty")
    store.goals.set_daily_goal(float("nan"))
    assert store.goals.get_daily_goal() == 12


def test_corrupted_goal_resets_to_default() -> None:
    backend = MemoryKeyValueStore()
    backend.set("prospection_dailyGoal", json.dumps({"schema_version": 1, "data": -4}))
    backend.set("prospection_monthlyGoal", json.dumps({"schema_version": 1, "data": "lots"}))
    goals = ProspectionStore(JsonStore(backend)).goals.settings()
    assert goals.daily_goal == 20
    assert goals.monthly_goal == 200


def test_non_finite_goal_resets_to_default() -> None:
    backend = MemoryKeyValueStore()
    backend.set("prospection_dailyGoal", "Infinity")
    backend.set("prospection_monthlyGoal", json.dumps({"schema_version": 1, "data": float("nan")}))
    goals = ProspectionStore(JsonStore(backend)).goals.settings()
    assert goals.daily_goal == 20
    assert goals.monthly_goal == 200


def test_visited_counts_only_include_already_visited(store: ProspectionStore, today: date) -> None:
    monday = today - timedelta(days=today.weekday())
    store.visit_status.set("today", VisitRecord(status=VisitStatus.already_visited, date=today))
    store.visit_status.set("monday", VisitRecord(status=VisitStatus.already_visited, date=monday))
    store.visit_status.set(
        "sunday", VisitRecord(status=VisitStatus.already_visited, date=monday + timedelta(days=6))
    )
    store.visit_status.set(
        "last_week",
        VisitRecord(status=VisitStatus.already_visited, date=monday - timedelta(days=1)),
    )
    store.visit_status.set("later", VisitRecord(status=VisitStatus.visit_later))

    assert store.visited_today_count(today) == 1
    assert store.visited_this_week_count(today) == 3


def test_stray_date_on_other_status_is_not_counted(today: date) -> None:
    backend = MemoryKeyValueStore()
    backend.set(
        "prospection_visitStatus",
        json.dumps(
            {
                "schema_version": 1,
                "data": {"b1": {"status": "not_interested", "date": today.isoformat()}},
            }
        ),
    )
    store = ProspectionStore(JsonStore(backend))
    assert store.visit_status.get("b1") == VisitRecord(status=VisitStatus.not_interested)
    assert store.visited_today_count(today) == 0
    assert store.visited_this_week_count(today) == 0


def test_visit_record_requires_date_when_visited() -> None:
    with pytest.raises(ValueError):
        VisitRecord(status=VisitStatus.already_visited)


def test_business_snapshots_upsert_by_id(store: ProspectionStore) -> None:
    store.businesses.add_or_update(
        ProspectionBusiness(id="b1", name="Padaria", address="Rua A, 10", phone="+5511")
    )
    store.businesses.add_or_update(
        ProspectionBusiness(id="b1", name="Padaria Nova", address="Rua A, 10")
    )
    snapshots = store.businesses.all()
    assert len(snapshots) == 1
    assert snapshots[0].name == "Padaria Nova"
    assert snapshots[0].phone is None

    with pytest.raises(StoreNotFoundError):
        store.businesses.get("missing")


def test_contacted_list_add_remove_clear(store: ProspectionStore) -> None:
    first = ProspectionBusiness(id="b1", name="Padaria", address="Rua A, 10")
    second = ProspectionBusiness(id="b2", name="Oficina", address="Rua B, 20")
    store.contacted.add(first)
    store.contacted.add(first)
    store.contacted.add(second)
    assert store.contacted.ids() == {"b1", "b2"}
    assert [item.id for item in store.contacted.all()] == ["b1", "b2"]

    store.contacted.remove("b1")
    assert store.contacted.ids() == {"b2"}
    assert [item.id for item in store.contacted.all()] == ["b2"]

    store.contacted.clear()
    assert store.contacted.ids() == set()
    assert store.contacted.all() == []


def test_un_namespaced_contacted_list_is_not_read() -> None:
    backend = MemoryKeyValueStore()
    backend.set("contactedBusinesses", json.dumps(["b1"]))
    backend.set(
        "contactedBusinessesData",
        json.dumps([{"id": "b1", "name": "Padaria", "address": "Rua A, 1", "cnpj": "123"}]),
    )
    store = ProspectionStore(JsonStore(backend))
    assert store.contacted.ids() == set()
    assert store.contacted.all() == []

    store.contacted.clear()
    assert backend.get("contactedBusinessesData") is not None


def test_store_without_backend_never_raises() -> None:
    store = ProspectionStore(JsonStore(None))
    store.notes.set("b1", "lost")
    store.goals.set_daily_goal(40)
    assert store.notes.get("b1") == ""
    assert store.goals.get_daily_goal() == 20
    assert store.visited_today_count() == 0
