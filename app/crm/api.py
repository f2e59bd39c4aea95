from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.query import ListParams
from app.crm.reporting import dashboard_service
from app.crm.schemas import (
    ActivityComplete,
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    CompanyCreate,
    CompanyDetail,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactDetail,
    ContactRead,
    ContactUpdate,
    DashboardMetrics,
    DashboardStats,
    DealCreate,
    DealDetail,
    DealRead,
    DealStageChange,
    DealUpdate,
    LeadConvertResponse,
    LeadCreate,
    LeadDetail,
    LeadRead,
    LeadUpdate,
    MessageResponse,
    Page,
    PipelineBoard,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageReorder,
    PipelineStageUpdate,
)
from app.crm.service import (
    ActorUser,
    activity_service,
    company_service,
    contact_service,
    deal_service,
    lead_service,
    pipeline_service,
)

leads_router = APIRouter(prefix="/leads", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/contacts", tags=["crm.contacts"])
companies_router = APIRouter(prefix="/companies", tags=["crm.companies"])
deals_router = APIRouter(prefix="/deals", tags=["crm.deals"])
activities_router = APIRouter(prefix="/activities", tags=["crm.activities"])
pipeline_router = APIRouter(prefix="/pipeline", tags=["crm.pipeline"])
dashboard_router = APIRouter(prefix="/dashboard", tags=["crm.dashboard"])


@dataclass
class ErrorEnvelope:
    error: str
    message: str
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    error: str | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Error"
    payload = ErrorEnvelope(error=error or phrase, message=message, correlation_id=correlation_id)
    response = JSONResponse(status_code=status_code, content=payload.__dict__)
    if correlation_id:
        response.headers["x-correlation-id"] = correlation_id
    return response


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(user_id=auth_user.sub, correlation_id=correlation_id)


def get_list_params(
    page: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    search: str | None = Query(default=None),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: str | None = Query(default=None, alias="sortOrder"),
) -> ListParams:
    settings = get_settings()
    return ListParams.build(
        page=page,
        limit=limit,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        default_limit=settings.list_default_limit,
        max_limit=settings.list_max_limit,
    )


def _failed(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, message=str(exc.detail))


@leads_router.get("", response_model=Page[LeadRead])
def list_leads(
    request: Request,
    params: ListParams = Depends(get_list_params),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    db: Session = Depends(get_db),
) -> dict | JSONResponse:
    try:
        return lead_service.list_leads(db, params, status=status_filter, source=source, assigned_to=assigned_to)
    except HTTPException as exc:
        return _failed(request, exc)


@leads_router.get("/{lead_id}", response_model=LeadDetail)
def get_lead(
    request: Request,
    lead_id: str,
    db: Session = Depends(get_db),
) -> LeadDetail | JSONResponse:
    try:
        return lead_service.get_lead(db, lead_id)
    except HTTPException as exc:
        return _failed(request, exc)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@leads_router.put("/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: str,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@leads_router.delete("/{lead_id}", response_model=MessageResponse)
def delete_lead(
    request: Request,
    lead_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return lead_service.delete_lead(db, user, lead_id)
    except HTTPException as exc:
        return _failed(request, exc)


@leads_router.post("/{lead_id}/convert", response_model=LeadConvertResponse)
def convert_lead(
    request: Request,
    lead_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConvertResponse | JSONResponse:
    try:
        return lead_service.convert_lead(db, user, lead_id)
    except HTTPException as exc:
        return _failed(request, exc)


@contacts_router.get("", response_model=Page[ContactRead])
def list_contacts(
    request: Request,
    params: ListParams = Depends(get_list_params),
    company_id: str | None = Query(default=None, alias="companyId"),
    db: Session = Depends(get_db),
) -> dict | JSONResponse:
    try:
        return contact_service.list_contacts(db, params, company_id=company_id)
    except HTTPException as exc:
        return _failed(request, exc)


@contacts_router.get("/{contact_id}", response_model=ContactDetail)
def get_contact(
    request: Request,
    contact_id: str,
    db: Session = Depends(get_db),
) -> ContactDetail | JSONResponse:
    try:
        return contact_service.get_contact(db, contact_id)
    except HTTPException as exc:
        return _failed(request, exc)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@contacts_router.put("/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: str,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@contacts_router.delete("/{contact_id}", response_model=MessageResponse)
def delete_contact(
    request: Request,
    contact_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return contact_service.delete_contact(db, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc)


@companies_router.get("", response_model=Page[CompanyRead])
def list_companies(
    request: Request,
    params: ListParams = Depends(get_list_params),
    industry: str | None = Query(default=None),
    size: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict | JSONResponse:
    try:
        return company_service.list_companies(db, params, industry=industry, size=size)
    except HTTPException as exc:
        return _failed(request, exc)


@companies_router.get("/{company_id}", response_model=CompanyDetail)
def get_company(
    request: Request,
    company_id: str,
    db: Session = Depends(get_db),
) -> CompanyDetail | JSONResponse:
    try:
        return company_service.get_company(db, company_id)
    except HTTPException as exc:
        return _failed(request, exc)


@companies_router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return company_service.create_company(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@companies_router.put("/{company_id}", response_model=CompanyRead)
def update_company(
    request: Request,
    company_id: str,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return company_service.update_company(db, user, company_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@companies_router.delete("/{company_id}", response_model=MessageResponse)
def delete_company(
    request: Request,
    company_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return company_service.delete_company(db, user, company_id)
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.get("", response_model=Page[DealRead] | PipelineBoard)
def list_deals(
    request: Request,
    params: ListParams = Depends(get_list_params),
    stage_id: str | None = Query(default=None, alias="stageId"),
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    view: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict | PipelineBoard | JSONResponse:
    try:
        if view == "pipeline":
            return deal_service.pipeline_board(
                db,
                search=params.search,
                stage_id=stage_id,
                status=status_filter,
                assigned_to=assigned_to,
            )
        return deal_service.list_deals(
            db,
            params,
            stage_id=stage_id,
            status=status_filter,
            assigned_to=assigned_to,
        )
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.get("/{deal_id}", response_model=DealDetail)
def get_deal(
    request: Request,
    deal_id: str,
    db: Session = Depends(get_db),
) -> DealDetail | JSONResponse:
    try:
        return deal_service.get_deal(db, deal_id)
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.put("/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: str,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.patch("/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: str,
    dto: DealStageChange,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.change_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@deals_router.delete("/{deal_id}", response_model=MessageResponse)
def delete_deal(
    request: Request,
    deal_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return deal_service.delete_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.get("", response_model=Page[ActivityRead])
def list_activities(
    request: Request,
    params: ListParams = Depends(get_list_params),
    activity_type: str | None = Query(default=None, alias="type"),
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: str | None = Query(default=None, alias="userId"),
    lead_id: str | None = Query(default=None, alias="leadId"),
    contact_id: str | None = Query(default=None, alias="contactId"),
    deal_id: str | None = Query(default=None, alias="dealId"),
    company_id: str | None = Query(default=None, alias="companyId"),
    upcoming: bool = Query(default=False),
    overdue: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict | JSONResponse:
    try:
        return activity_service.list_activities(
            db,
            params,
            activity_type=activity_type,
            status=status_filter,
            user_id=user_id,
            lead_id=lead_id,
            contact_id=contact_id,
            deal_id=deal_id,
            company_id=company_id,
            upcoming=upcoming,
            overdue=overdue,
        )
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.get("/{activity_id}", response_model=ActivityRead)
def get_activity(
    request: Request,
    activity_id: str,
    db: Session = Depends(get_db),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.get_activity(db, activity_id)
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.create_activity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.put("/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: str,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.update_activity(db, user, activity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.patch("/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: str,
    dto: ActivityComplete | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.complete_activity(db, user, activity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@activities_router.delete("/{activity_id}", response_model=MessageResponse)
def delete_activity(
    request: Request,
    activity_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return activity_service.delete_activity(db, user, activity_id)
    except HTTPException as exc:
        return _failed(request, exc)


@pipeline_router.get("/stages", response_model=list[PipelineStageRead])
def list_stages(
    request: Request,
    db: Session = Depends(get_db),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        return pipeline_service.list_stages(db)
    except HTTPException as exc:
        return _failed(request, exc)


@pipeline_router.post("/stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_service.create_stage(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@pipeline_router.post("/stages/reorder", response_model=list[PipelineStageRead])
def reorder_stages(
    request: Request,
    dto: PipelineStageReorder,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        return pipeline_service.reorder_stages(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@pipeline_router.put("/stages/{stage_id}", response_model=PipelineStageRead)
def update_stage(
    request: Request,
    stage_id: str,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_service.update_stage(db, user, stage_id, dto)
    except HTTPException as exc:
        return _failed(request, exc)


@pipeline_router.delete("/stages/{stage_id}", response_model=MessageResponse)
def delete_stage(
    request: Request,
    stage_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageResponse | JSONResponse:
    try:
        return pipeline_service.delete_stage(db, user, stage_id)
    except HTTPException as exc:
        return _failed(request, exc)


@dashboard_router.get("/stats", response_model=DashboardStats)
def dashboard_stats(
    request: Request,
    db: Session = Depends(get_db),
) -> DashboardStats | JSONResponse:
    try:
        return dashboard_service.stats(db)
    except HTTPException as exc:
        return _failed(request, exc)


@dashboard_router.get("/metrics", response_model=DashboardMetrics)
def dashboard_metrics(
    request: Request,
    period: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> DashboardMetrics | JSONResponse:
    try:
        return dashboard_service.metrics(db, period=period)
    except HTTPException as exc:
        return _failed(request, exc)


crm_routers = [
    leads_router,
    contacts_router,
    companies_router,
    deals_router,
    activities_router,
    pipeline_router,
    dashboard_router,
]
