"""Mutations that touch more than one prospection map.

Each map is written separately; an interruption between writes can leave a
partial update behind (for example a stage without its negotiation stamp).
A snapshot passed alongside a mutation must carry the same business id.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from backend.app.models import (
    ContactChannel,
    NextAction,
    NextActionRecord,
    PipelineStage,
    PotentialLevel,
    ProspectionBusiness,
    ProspectionCard,
    VisitRecord,
    VisitStatus,
)
from backend.app.services.scoring import (
    compute_opportunity_score,
    days_since_last_contact,
    is_next_action_overdue,
    probability_of_closing,
)
from backend.app.store import ProspectionStore, StoreConflictError

logger = logging.getLogger("prospection.workflow")


def _check_snapshot(business_id: str, business: Optional[ProspectionBusiness]) -> None:
    if business is not None and business.id != business_id:
        raise StoreConflictError(
            f"snapshot id {business.id} does not match business {business_id}"
        )


def _remember(store: ProspectionStore, business: Optional[ProspectionBusiness]) -> None:
    if business is not None:
        store.businesses.add_or_update(business)


def apply_visit_outcome(
    store: ProspectionStore,
    business_id: str,
    status: VisitStatus,
    today: date,
    business: Optional[ProspectionBusiness] = None,
) -> VisitRecord:
    _check_snapshot(business_id, business)
    record = VisitRecord(
        status=status,
        date=today if status == VisitStatus.already_visited else None,
    )
    with store.lock:
        store.visit_status.set(business_id, record)
        advance = status == VisitStatus.already_visited
        if advance and store.pipeline.get(business_id) == PipelineStage.new:
            store.pipeline.set(business_id, PipelineStage.visited)
        _remember(store, business)
    logger.info("visit_recorded business_id=%s status=%s", business_id, status.value)
    return record


def move_to_stage(
    store: ProspectionStore,
    business_id: str,
    stage: PipelineStage,
    today: date,
    business: Optional[ProspectionBusiness] = None,
    purge_stale: bool = False,
) -> PipelineStage:
    _check_snapshot(business_id, business)
    with store.lock:
        previous = store.pipeline.get(business_id)
        store.pipeline.set(business_id, stage)
        if stage == PipelineStage.negotiating and previous != PipelineStage.negotiating:
            store.negotiation_start.set(business_id, today)
        if purge_stale and previous != stage:
            if previous == PipelineStage.negotiating:
                store.negotiation_start.remove(business_id)
            if previous == PipelineStage.closed_won:
                store.contract_value.remove(business_id)
        _remember(store, business)
    logger.info(
        "stage_changed business_id=%s from=%s to=%s",
        business_id,
        previous.value,
        stage.value,
    )
    return stage


def set_potential(
    store: ProspectionStore,
    business_id: str,
    level: PotentialLevel,
    business: Optional[ProspectionBusiness] = None,
) -> None:
    _check_snapshot(business_id, business)
    with store.lock:
        store.potential.set(business_id, level)
        _remember(store, business)


def clear_potential(store: ProspectionStore, business_id: str) -> None:
    store.potential.clear(business_id)


def set_notes(
    store: ProspectionStore,
    business_id: str,
    text: str,
    business: Optional[ProspectionBusiness] = None,
) -> None:
    _check_snapshot(business_id, business)
    with store.lock:
        store.notes.set(business_id, text)
        _remember(store, business)


def schedule_next_action(
    store: ProspectionStore,
    business_id: str,
    action: NextAction,
    due: date,
    business: Optional[ProspectionBusiness] = None,
) -> NextActionRecord:
    _check_snapshot(business_id, business)
    record = NextActionRecord(action=action, due=due)
    with store.lock:
        store.next_action.set(business_id, record)
        _remember(store, business)
    return record


def set_contract_value(
    store: ProspectionStore,
    business_id: str,
    value: int,
    business: Optional[ProspectionBusiness] = None,
) -> int:
    _check_snapshot(business_id, business)
    with store.lock:
        store.contract_value.set(business_id, value)
        _remember(store, business)
    return max(0, int(value))


def record_contact(
    store: ProspectionStore,
    business: ProspectionBusiness,
    channel: ContactChannel,
    today: date,
) -> None:
    with store.lock:
        store.last_contact.set(business.id, today)
        store.businesses.add_or_update(business)
        store.contacted.add(business)
    logger.info("contact_recorded business_id=%s channel=%s", business.id, channel.value)


def build_prospection_card(
    store: ProspectionStore,
    business_id: str,
    today: date,
    business: Optional[ProspectionBusiness] = None,
) -> ProspectionCard:
    if business is None and store.businesses.exists(business_id):
        business = store.businesses.get(business_id)
    visit = store.visit_status.get(business_id)
    potential = store.potential.get(business_id)
    stage = store.pipeline.get(business_id)
    next_action = store.next_action.get(business_id)
    last_contact = store.last_contact.get(business_id)

    score = compute_opportunity_score(
        business or ProspectionBusiness(id=business_id), potential
    )
    probability = probability_of_closing(
        potential=potential,
        stage=stage,
        visit_status=visit.status if visit else None,
        rating=business.rating if business else None,
        opportunity_score=score.score,
    )
    return ProspectionCard(
        business_id=business_id,
        business=business,
        visit=visit,
        potential=potential,
        notes=store.notes.get(business_id),
        stage=stage,
        next_action=next_action,
        next_action_overdue=bool(next_action and is_next_action_overdue(next_action.due, today)),
        last_contact=last_contact,
        days_since_last_contact=days_since_last_contact(last_contact, today),
        contract_value=store.contract_value.get(business_id),
        negotiation_start=store.negotiation_start.get(business_id),
        opportunity_score=score,
        probability_of_closing=probability,
        contacted=business_id in store.contacted.ids(),
    )
