from __future__ import annotations

import math
from datetime import date, datetime
from typing import Optional, Union

from backend.app.models import (
    GamificationLevel,
    OpportunityScore,
    PipelineStage,
    PotentialLevel,
    ProspectionBusiness,
    VisitStatus,
)

MAX_OPPORTUNITY_SCORE = 10
HIGH_RATING_THRESHOLD = 4.3
FORGOTTEN_NEGOTIATION_DAYS = 15

POTENTIAL_SCORE_POINTS = {
    PotentialLevel.high: 2,
    PotentialLevel.medium: 1,
    PotentialLevel.low: 0,
}

POTENTIAL_PROBABILITY_POINTS = {
    PotentialLevel.high: 25,
    PotentialLevel.medium: 15,
    PotentialLevel.low: 5,
}

# Highest threshold first; each is an inclusive lower bound on closed deals.
GAMIFICATION_LEVELS = [
    (10, GamificationLevel(label="Gold", emoji="🥇")),
    (5, GamificationLevel(label="Silver", emoji="🥈")),
    (1, GamificationLevel(label="Bronze", emoji="🥉")),
]
BEGINNER_LEVEL = GamificationLevel(label="Beginner", emoji="🌱")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _has_high_rating(rating: Optional[float]) -> bool:
    return rating is not None and rating > HIGH_RATING_THRESHOLD


def compute_opportunity_score(
    business: ProspectionBusiness, potential: Optional[PotentialLevel]
) -> OpportunityScore:
    score = 0
    if business.phone:
        score += 2
    if business.email:
        score += 1
    if _has_high_rating(business.rating):
        score += 1
    if potential is not None:
        score += POTENTIAL_SCORE_POINTS.get(potential, 0)
    return OpportunityScore(
        score=max(0, min(score, MAX_OPPORTUNITY_SCORE)),
        max=MAX_OPPORTUNITY_SCORE,
    )


def probability_of_closing(
    *,
    potential: Optional[PotentialLevel],
    stage: Optional[PipelineStage],
    visit_status: Optional[VisitStatus],
    rating: Optional[float],
    opportunity_score: Optional[int],
) -> int:
    if stage == PipelineStage.closed_won:
        return 100

    probability = 10
    if potential is not None:
        probability += POTENTIAL_PROBABILITY_POINTS.get(potential, 0)
    if stage == PipelineStage.negotiating:
        probability += 20
    if visit_status == VisitStatus.already_visited:
        probability += 15
    if _has_high_rating(rating):
        probability += 10
    score = opportunity_score or 0
    probability += round_half_up(score * 15 / MAX_OPPORTUNITY_SCORE)
    return max(0, min(probability, 100))


def _coerce_date(value: Union[date, str, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        return None


def days_since_last_contact(
    last_contact: Union[date, str, None], today: Optional[date] = None
) -> Optional[int]:
    contacted_on = _coerce_date(last_contact)
    if contacted_on is None:
        return None
    days = ((today or date.today()) - contacted_on).days
    if days < 0:
        return None
    return days


def gamification_level(closed_won_count: int) -> GamificationLevel:
    for threshold, level in GAMIFICATION_LEVELS:
        if closed_won_count >= threshold:
            return level
    return BEGINNER_LEVEL


def is_next_action_overdue(due: Union[date, str, None], today: Optional[date] = None) -> bool:
    due_on = _coerce_date(due)
    if due_on is None:
        return False
    return due_on < (today or date.today())


def is_forgotten_opportunity(
    stage: Optional[PipelineStage],
    negotiation_start: Union[date, str, None],
    today: Optional[date] = None,
    threshold_days: int = FORGOTTEN_NEGOTIATION_DAYS,
) -> bool:
    if stage != PipelineStage.negotiating:
        return False
    started_on = _coerce_date(negotiation_start)
    if started_on is None:
        return False
    return ((today or date.today()) - started_on).days > threshold_days
