from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Optional

from backend.app.models import (
    CityCount,
    DashboardSummary,
    GoalProgress,
    MarketDensity,
    PipelineReport,
    PipelineStage,
    PotentialLevel,
    ProspectionBusiness,
    VisitStatus,
)
from backend.app.services.scoring import (
    FORGOTTEN_NEGOTIATION_DAYS,
    gamification_level,
    is_forgotten_opportunity,
    round_half_up,
)
from backend.app.store import ProspectionStore

SATURATION_MIN_TOTAL = 10
SATURATION_STREET_THRESHOLD = 15
STREET_BUCKET_LENGTH = 40
COMPETITIVE_DENSITY = 15
GOOD_DENSITY = 8

POTENTIAL_RANK = {
    PotentialLevel.high: 3,
    PotentialLevel.medium: 2,
    PotentialLevel.low: 1,
}


def filter_businesses(
    businesses: list[ProspectionBusiness],
    *,
    require_phone: bool = False,
    require_email: bool = False,
) -> list[ProspectionBusiness]:
    output = list(businesses)
    if require_phone:
        output = [business for business in output if business.phone]
    if require_email:
        output = [business for business in output if business.email]
    return output


def summarize(businesses: list[ProspectionBusiness], store: ProspectionStore) -> DashboardSummary:
    visits = store.visit_status.all()
    potentials = store.potential.all()
    stages = store.pipeline.all()

    total = len(businesses)
    high_potential = 0
    visited = 0
    negotiating = 0
    closed_won = 0
    for business in businesses:
        if potentials.get(business.id) == PotentialLevel.high:
            high_potential += 1
        visit = visits.get(business.id)
        if visit and visit.status == VisitStatus.already_visited:
            visited += 1
        stage = stages.get(business.id, PipelineStage.new)
        if stage == PipelineStage.negotiating:
            negotiating += 1
        elif stage == PipelineStage.closed_won:
            closed_won += 1

    conversion_pct = round_half_up(closed_won / visited * 100) if visited > 0 else 0
    return DashboardSummary(
        total=total,
        high_potential=high_potential,
        visited=visited,
        negotiating=negotiating,
        closed_won=closed_won,
        conversion_pct=conversion_pct,
        pending=total - visited,
    )


def street_bucket(address: Optional[str]) -> str:
    if not address:
        return ""
    first_segment = address.split(",", 1)[0]
    return " ".join(first_segment.strip().lower().split())[:STREET_BUCKET_LENGTH]


def is_saturated(businesses: list[ProspectionBusiness]) -> bool:
    if len(businesses) < SATURATION_MIN_TOTAL:
        return False
    buckets = Counter(street_bucket(business.address) for business in businesses)
    buckets.pop("", None)
    return any(count >= SATURATION_STREET_THRESHOLD for count in buckets.values())


def market_density(total: int) -> Optional[MarketDensity]:
    if total >= COMPETITIVE_DENSITY:
        return MarketDensity.competitive
    if total >= GOOD_DENSITY:
        return MarketDensity.good_density
    return None


def forgotten_opportunities(
    businesses: list[ProspectionBusiness],
    store: ProspectionStore,
    today: date,
    threshold_days: int = FORGOTTEN_NEGOTIATION_DAYS,
) -> list[ProspectionBusiness]:
    stages = store.pipeline.all()
    starts = store.negotiation_start.all()
    return [
        business
        for business in businesses
        if is_forgotten_opportunity(
            stages.get(business.id), starts.get(business.id), today, threshold_days
        )
    ]


def top_opportunities(
    businesses: list[ProspectionBusiness],
    store: ProspectionStore,
    limit: int = 5,
) -> list[ProspectionBusiness]:
    potentials = store.potential.all()
    visits = store.visit_status.all()

    def sort_key(business: ProspectionBusiness) -> tuple[int, float, int]:
        potential = potentials.get(business.id)
        visit = visits.get(business.id)
        already_visited = bool(visit and visit.status == VisitStatus.already_visited)
        return (
            -POTENTIAL_RANK.get(potential, 1),
            -(business.rating or 0.0),
            0 if already_visited else 1,
        )

    return sorted(businesses, key=sort_key)[:limit]


def pipeline_revenue(store: ProspectionStore) -> int:
    stages = store.pipeline.all()
    values = store.contract_value.all()
    return sum(
        values.get(business.id, 0)
        for business in store.businesses.all()
        if stages.get(business.id) == PipelineStage.closed_won
    )


def top_cities(store: ProspectionStore, limit: int = 5) -> list[CityCount]:
    counts = Counter(
        business.city.strip()
        for business in store.businesses.all()
        if business.city and business.city.strip()
    )
    return [CityCount(city=city, count=count) for city, count in counts.most_common(limit)]


def goal_progress(store: ProspectionStore, today: date) -> GoalProgress:
    goals = store.goals.settings()
    visited_today = store.visited_today_count(today)
    daily_pct = (
        min(100, round_half_up(visited_today / goals.daily_goal * 100)) if goals.daily_goal else 0
    )
    return GoalProgress(
        daily_goal=goals.daily_goal,
        monthly_goal=goals.monthly_goal,
        visited_today=visited_today,
        visited_this_week=store.visited_this_week_count(today),
        daily_pct=daily_pct,
    )


def pipeline_report(
    store: ProspectionStore,
    today: date,
    threshold_days: int = FORGOTTEN_NEGOTIATION_DAYS,
) -> PipelineReport:
    snapshots = store.businesses.all()
    stages = store.pipeline.all()
    closed_won = sum(
        1 for business in snapshots if stages.get(business.id) == PipelineStage.closed_won
    )
    return PipelineReport(
        closed_won=closed_won,
        level=gamification_level(closed_won),
        pipeline_revenue=pipeline_revenue(store),
        top_cities=top_cities(store),
        forgotten=forgotten_opportunities(snapshots, store, today, threshold_days),
    )
