from __future__ import annotations

import datetime
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class VisitStatus(str, Enum):
    already_visited = "already_visited"
    visit_later = "visit_later"
    not_interested = "not_interested"


class PotentialLevel(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class PipelineStage(str, Enum):
    new = "new"
    visited = "visited"
    negotiating = "negotiating"
    closed_won = "closed_won"


class NextAction(str, Enum):
    call = "call"
    visit = "visit"
    send_proposal = "send_proposal"
    await_response = "await_response"


class ContactChannel(str, Enum):
    whatsapp = "whatsapp"
    email = "email"


class MarketDensity(str, Enum):
    competitive = "competitive"
    good_density = "good_density"


class VisitRecord(BaseModel):
    status: VisitStatus
    date: Optional[datetime.date] = None

    @model_validator(mode="after")
    def validate_visit_date(self) -> "VisitRecord":
        if self.status == VisitStatus.already_visited and self.date is None:
            raise ValueError("date is required when status is already_visited")
        if self.status != VisitStatus.already_visited:
            # A stray date on any other status carries no meaning.
            self.date = None
        return self


class NextActionRecord(BaseModel):
    action: NextAction
    due: date


class ProspectionBusiness(BaseModel):
    """Denormalized snapshot kept so prospection lists survive new searches."""

    id: str = Field(min_length=1, max_length=255)
    name: str = Field(default="", max_length=255)
    address: str = Field(default="", max_length=500)
    phone: Optional[str] = Field(default=None, max_length=40)
    email: Optional[str] = Field(default=None, max_length=255)
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    rating_count: Optional[int] = Field(default=None, ge=0)
    tax_id: Optional[str] = Field(default=None, max_length=40)
    city: Optional[str] = Field(default=None, max_length=120)


class GoalSettings(BaseModel):
    daily_goal: int = Field(default=20, ge=0)
    monthly_goal: int = Field(default=200, ge=0)


class OpportunityScore(BaseModel):
    score: int
    max: int = 10


class GamificationLevel(BaseModel):
    label: str
    emoji: str


class ProspectionCard(BaseModel):
    business_id: str
    business: Optional[ProspectionBusiness]
    visit: Optional[VisitRecord]
    potential: Optional[PotentialLevel]
    notes: str
    stage: PipelineStage
    next_action: Optional[NextActionRecord]
    next_action_overdue: bool
    last_contact: Optional[date]
    days_since_last_contact: Optional[int]
    contract_value: Optional[int]
    negotiation_start: Optional[date]
    opportunity_score: OpportunityScore
    probability_of_closing: int
    contacted: bool


class DashboardSummary(BaseModel):
    total: int
    high_potential: int
    visited: int
    negotiating: int
    closed_won: int
    conversion_pct: int
    pending: int


class GoalProgress(BaseModel):
    daily_goal: int
    monthly_goal: int
    visited_today: int
    visited_this_week: int
    daily_pct: int


class CityCount(BaseModel):
    city: str
    count: int


class PipelineReport(BaseModel):
    closed_won: int
    level: GamificationLevel
    pipeline_revenue: int
    top_cities: list[CityCount]
    forgotten: list[ProspectionBusiness]


class VisitUpdateRequest(BaseModel):
    status: VisitStatus
    business: Optional[ProspectionBusiness] = None


class PotentialUpdateRequest(BaseModel):
    level: PotentialLevel
    business: Optional[ProspectionBusiness] = None


class NotesUpdateRequest(BaseModel):
    text: str = Field(default="", max_length=5000)
    business: Optional[ProspectionBusiness] = None


class StageUpdateRequest(BaseModel):
    stage: PipelineStage
    business: Optional[ProspectionBusiness] = None


class NextActionUpdateRequest(BaseModel):
    action: NextAction
    due: date
    business: Optional[ProspectionBusiness] = None


class ContractValueUpdateRequest(BaseModel):
    value: int = Field(ge=0)
    business: Optional[ProspectionBusiness] = None


class ContactRequest(BaseModel):
    channel: ContactChannel
    business: ProspectionBusiness


class GoalsUpdateRequest(BaseModel):
    daily_goal: Optional[int] = None
    monthly_goal: Optional[int] = None


class DashboardRequest(BaseModel):
    businesses: list[ProspectionBusiness] = Field(default_factory=list)
    require_phone: bool = False
    require_email: bool = False


class DashboardResponse(BaseModel):
    summary: DashboardSummary
    saturated: bool
    market_density: Optional[MarketDensity]
    top_opportunities: list[ProspectionBusiness]
    forgotten: list[ProspectionBusiness]
