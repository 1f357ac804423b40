from __future__ import annotations

from datetime import date
from typing import Callable

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.models import (
    ContactRequest,
    ContractValueUpdateRequest,
    DashboardRequest,
    DashboardResponse,
    GoalProgress,
    GoalSettings,
    GoalsUpdateRequest,
    NextActionUpdateRequest,
    NotesUpdateRequest,
    PipelineReport,
    PotentialUpdateRequest,
    ProspectionBusiness,
    ProspectionCard,
    StageUpdateRequest,
    VisitUpdateRequest,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import MemoryKeyValueStore, SqlKeyValueStore
from backend.app.services import aggregation, workflow
from backend.app.settings import Settings, load_settings
from backend.app.storage import JsonStore
from backend.app.store import ProspectionStore, StoreConflictError, StoreNotFoundError


def create_app(clock: Callable[[], date] = date.today) -> FastAPI:
    app = FastAPI(title="Prospection CRM API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    backend = (
        SqlKeyValueStore(settings.database_url)
        if settings.persistence_enabled
        else MemoryKeyValueStore()
    )
    app.state.store = ProspectionStore(JsonStore(backend, namespace=settings.store_namespace))
    app.state.backend = backend
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.clock = clock

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> ProspectionStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_today(request: Request) -> date:
    return request.app.state.clock()


def card_response(request: Request, business_id: str) -> ProspectionCard:
    return workflow.build_prospection_card(get_store(request), business_id, get_today(request))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        backend = request.app.state.backend
        if settings.persistence_enabled and not backend.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/prospection/businesses", response_model=list[ProspectionBusiness])
    def list_businesses(request: Request) -> list[ProspectionBusiness]:
        return get_store(request).businesses.all()

    @router.get("/prospection/businesses/{business_id}", response_model=ProspectionBusiness)
    def get_business(business_id: str, request: Request) -> ProspectionBusiness:
        try:
            return get_store(request).businesses.get(business_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.get("/prospection/businesses/{business_id}/card", response_model=ProspectionCard)
    def get_card(business_id: str, request: Request) -> ProspectionCard:
        return card_response(request, business_id)

    @router.put("/prospection/businesses/{business_id}/visit", response_model=ProspectionCard)
    def update_visit(
        business_id: str, payload: VisitUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.apply_visit_outcome(
                get_store(request),
                business_id,
                payload.status,
                get_today(request),
                business=payload.business,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.put("/prospection/businesses/{business_id}/potential", response_model=ProspectionCard)
    def update_potential(
        business_id: str, payload: PotentialUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.set_potential(
                get_store(request), business_id, payload.level, business=payload.business
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.delete(
        "/prospection/businesses/{business_id}/potential", response_model=ProspectionCard
    )
    def delete_potential(business_id: str, request: Request) -> ProspectionCard:
        workflow.clear_potential(get_store(request), business_id)
        return card_response(request, business_id)

    @router.put("/prospection/businesses/{business_id}/notes", response_model=ProspectionCard)
    def update_notes(
        business_id: str, payload: NotesUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.set_notes(
                get_store(request), business_id, payload.text, business=payload.business
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.put("/prospection/businesses/{business_id}/stage", response_model=ProspectionCard)
    def update_stage(
        business_id: str, payload: StageUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.move_to_stage(
                get_store(request),
                business_id,
                payload.stage,
                get_today(request),
                business=payload.business,
                purge_stale=get_settings(request).purge_stale_stage_values,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.put(
        "/prospection/businesses/{business_id}/next-action", response_model=ProspectionCard
    )
    def update_next_action(
        business_id: str, payload: NextActionUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.schedule_next_action(
                get_store(request),
                business_id,
                payload.action,
                payload.due,
                business=payload.business,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.put(
        "/prospection/businesses/{business_id}/contract-value", response_model=ProspectionCard
    )
    def update_contract_value(
        business_id: str, payload: ContractValueUpdateRequest, request: Request
    ) -> ProspectionCard:
        try:
            workflow.set_contract_value(
                get_store(request), business_id, payload.value, business=payload.business
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return card_response(request, business_id)

    @router.post("/prospection/businesses/{business_id}/contact", response_model=ProspectionCard)
    def record_contact(
        business_id: str, payload: ContactRequest, request: Request
    ) -> ProspectionCard:
        if payload.business.id != business_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="business id does not match path",
            )
        workflow.record_contact(
            get_store(request), payload.business, payload.channel, get_today(request)
        )
        return card_response(request, business_id)

    @router.get("/prospection/goals", response_model=GoalSettings)
    def get_goals(request: Request) -> GoalSettings:
        return get_store(request).goals.settings()

    @router.put("/prospection/goals", response_model=GoalSettings)
    def update_goals(payload: GoalsUpdateRequest, request: Request) -> GoalSettings:
        goals = get_store(request).goals
        if payload.daily_goal is not None:
            goals.set_daily_goal(payload.daily_goal)
        if payload.monthly_goal is not None:
            goals.set_monthly_goal(payload.monthly_goal)
        return goals.settings()

    @router.get("/prospection/goals/progress", response_model=GoalProgress)
    def get_goal_progress(request: Request) -> GoalProgress:
        return aggregation.goal_progress(get_store(request), get_today(request))

    @router.post("/prospection/dashboard", response_model=DashboardResponse)
    def dashboard(payload: DashboardRequest, request: Request) -> DashboardResponse:
        store = get_store(request)
        businesses = aggregation.filter_businesses(
            payload.businesses,
            require_phone=payload.require_phone,
            require_email=payload.require_email,
        )
        return DashboardResponse(
            summary=aggregation.summarize(businesses, store),
            saturated=aggregation.is_saturated(businesses),
            market_density=aggregation.market_density(len(businesses)),
            top_opportunities=aggregation.top_opportunities(businesses, store),
            forgotten=aggregation.forgotten_opportunities(
                businesses,
                store,
                get_today(request),
                get_settings(request).forgotten_negotiation_days,
            ),
        )

    @router.get("/prospection/report", response_model=PipelineReport)
    def report(request: Request) -> PipelineReport:
        return aggregation.pipeline_report(
            get_store(request),
            get_today(request),
            get_settings(request).forgotten_negotiation_days,
        )

    @router.get("/contacts", response_model=list[ProspectionBusiness])
    def list_contacts(request: Request) -> list[ProspectionBusiness]:
        return get_store(request).contacted.all()

    @router.delete("/contacts/{business_id}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_contact(business_id: str, request: Request) -> Response:
        get_store(request).contacted.remove(business_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.delete("/contacts", status_code=status.HTTP_204_NO_CONTENT)
    def clear_contacts(request: Request) -> Response:
        get_store(request).contacted.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
