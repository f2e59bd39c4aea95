from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import Select, and_, func, inspect, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.metrics import observe_activity_completion, observe_lead_conversion, observe_stage_transition
from app.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMLead,
    CRMPipelineStage,
    CRMUser,
    utcnow,
)
from app.crm.query import (
    ListParams,
    equality_filters,
    fetch_page,
    page_payload,
    resolve_sort_column,
    search_clause,
)
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
    PipelineBoard,
    PipelineBoardColumn,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageReorder,
    PipelineStageUpdate,
)

logger = logging.getLogger("app.crm")
tracer = trace.get_tracer("app.crm")

TERMINAL_STAGE_NAMES = {"Closed Won": "won", "Closed Lost": "lost"}
DEFAULT_STAGE_COLOR = "#6366f1"


@dataclass
class ActorUser:
    user_id: str
    correlation_id: str | None = None


def outcome_for_stage_name(name: str) -> str:
    return TERMINAL_STAGE_NAMES.get(name, "open")


def stage_transition_values(stage: CRMPipelineStage | None, now: datetime) -> dict[str, Any]:
    """Deal fields implied by entering ``stage``; an unknown stage reopens the deal at 0%."""
    if stage is None:
        return {"status": "open", "actual_close_date": None, "probability": 0}
    outcome = stage.outcome if stage.outcome in {"won", "lost"} else "open"
    return {
        "status": outcome,
        "actual_close_date": now if outcome != "open" else None,
        "probability": stage.probability,
    }


def split_lead_name(name: str) -> tuple[str, str]:
    parts = name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _columns(entity: Any) -> dict[str, Any]:
    return {attr.key: getattr(entity, attr.key) for attr in inspect(entity).mapper.column_attrs}


def activity_select() -> Select[Any]:
    return (
        select(
            CRMActivity,
            CRMLead.name.label("lead_name"),
            CRMContact.first_name.label("contact_first_name"),
            CRMContact.last_name.label("contact_last_name"),
            CRMDeal.name.label("deal_name"),
            CRMUser.name.label("user_name"),
        )
        .outerjoin(CRMLead, CRMLead.id == CRMActivity.lead_id)
        .outerjoin(CRMContact, CRMContact.id == CRMActivity.contact_id)
        .outerjoin(CRMDeal, CRMDeal.id == CRMActivity.deal_id)
        .outerjoin(CRMUser, CRMUser.id == CRMActivity.user_id)
    )


def activity_read(row: Any) -> ActivityRead:
    activity, lead_name, contact_first_name, contact_last_name, deal_name, user_name = row
    return ActivityRead.model_validate(
        {
            **_columns(activity),
            "lead_name": lead_name,
            "contact_first_name": contact_first_name,
            "contact_last_name": contact_last_name,
            "deal_name": deal_name,
            "user_name": user_name,
        }
    )


def recent_activities(session: Session, condition: Any, limit: int | None = None) -> list[ActivityRead]:
    resolved_limit = limit if limit is not None else get_settings().detail_activity_limit
    rows = session.execute(
        activity_select().where(condition).order_by(CRMActivity.created_at.desc()).limit(resolved_limit)
    ).all()
    return [activity_read(row) for row in rows]


def _deal_select(*extra_columns: Any) -> Select[Any]:
    return (
        select(
            CRMDeal,
            CRMContact.first_name.label("contact_first_name"),
            CRMContact.last_name.label("contact_last_name"),
            CRMCompany.name.label("company_name"),
            CRMPipelineStage.name.label("stage_name"),
            CRMPipelineStage.color.label("stage_color"),
            *extra_columns,
        )
        .outerjoin(CRMContact, CRMContact.id == CRMDeal.contact_id)
        .outerjoin(CRMCompany, CRMCompany.id == CRMDeal.company_id)
        .outerjoin(CRMPipelineStage, CRMPipelineStage.id == CRMDeal.stage_id)
    )


def _deal_values(row: Any) -> dict[str, Any]:
    deal, contact_first_name, contact_last_name, company_name, stage_name, stage_color = row[:6]
    return {
        **_columns(deal),
        "contact_first_name": contact_first_name,
        "contact_last_name": contact_last_name,
        "company_name": company_name,
        "stage_name": stage_name,
        "stage_color": stage_color,
    }


def _deal_read(row: Any) -> DealRead:
    return DealRead.model_validate(_deal_values(row))


def related_deals(session: Session, condition: Any) -> list[DealRead]:
    rows = session.execute(_deal_select().where(condition).order_by(CRMDeal.created_at.desc())).all()
    return [_deal_read(row) for row in rows]


class EntityService:
    model: Any
    entity_type: str
    label: str
    event_prefix: str

    def _get_or_404(self, session: Session, entity_id: str) -> Any:
        entity = session.get(self.model, entity_id)
        if entity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.label} not found")
        return entity

    def _reload(self, session: Session, entity_id: str) -> Any:
        entity = session.scalar(
            select(self.model).where(self.model.id == entity_id).execution_options(populate_existing=True)
        )
        if entity is None:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.label} not found")
        return entity

    def _apply_update(
        self,
        session: Session,
        entity_id: str,
        values: dict[str, Any],
        expected_row_version: int | None = None,
    ) -> Any:
        conditions = [self.model.id == entity_id]
        if expected_row_version is not None:
            conditions.append(self.model.row_version == expected_row_version)
        result = session.execute(
            update(self.model)
            .where(and_(*conditions))
            .values(**values, updated_at=utcnow(), row_version=self.model.row_version + 1)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        return self._reload(session, entity_id)

    def _detach(self, session: Session, model: Any, column_name: str, entity_id: str, now: datetime) -> None:
        column = getattr(model, column_name)
        session.execute(
            update(model)
            .where(column == entity_id)
            .values({column_name: None, "updated_at": now, "row_version": model.row_version + 1})
        )

    def _audit(
        self,
        actor_user: ActorUser,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )

    def _publish(self, actor_user: ActorUser, event_name: str, payload: dict[str, Any]) -> None:
        envelope = events.build_envelope(f"{self.event_prefix}.{event_name}", actor_user.user_id, payload)
        envelope["correlation_id"] = actor_user.correlation_id
        events.publish(envelope)

    def _delete(self, session: Session, actor_user: ActorUser, entity: Any, before: dict[str, Any]) -> MessageResponse:
        entity_id = entity.id
        session.delete(entity)
        self._audit(actor_user, entity_id, "delete", before, None)
        self._publish(actor_user, "deleted", {f"{self.event_prefix.split('.')[-1]}_id": entity_id})
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise
        return MessageResponse(message=f"{self.label} deleted successfully")


class CompanyService(EntityService):
    model = CRMCompany
    entity_type = "crm.company"
    label = "Company"
    event_prefix = "crm.company"
    sortable = {
        "created_at": CRMCompany.created_at,
        "updated_at": CRMCompany.updated_at,
        "name": CRMCompany.name,
        "industry": CRMCompany.industry,
        "size": CRMCompany.size,
        "city": CRMCompany.city,
        "country": CRMCompany.country,
    }

    def list_companies(
        self,
        session: Session,
        params: ListParams,
        *,
        industry: str | None = None,
        size: str | None = None,
    ) -> dict[str, Any]:
        conditions = equality_filters({CRMCompany.industry: industry, CRMCompany.size: size})
        clause = search_clause(params.search, [CRMCompany.name, CRMCompany.domain, CRMCompany.city])
        if clause is not None:
            conditions.append(clause)
        stmt = select(CRMCompany).where(and_(True, *conditions))
        rows, total = fetch_page(session, stmt, params, [resolve_sort_column(params, self.sortable, "created_at")])
        return page_payload([self._to_read(row[0]) for row in rows], total, params)

    def get_company(self, session: Session, company_id: str) -> CompanyDetail:
        company = self._get_or_404(session, company_id)
        contacts = session.scalars(
            select(CRMContact).where(CRMContact.company_id == company.id).order_by(CRMContact.first_name)
        ).all()
        return CompanyDetail.model_validate(
            {
                **_columns(company),
                "contacts": [
                    ContactRead.model_validate({**_columns(contact), "company_name": company.name})
                    for contact in contacts
                ],
                "deals": related_deals(session, CRMDeal.company_id == company.id),
                "activities": recent_activities(session, CRMActivity.company_id == company.id),
            }
        )

    def create_company(self, session: Session, actor_user: ActorUser, dto: CompanyCreate) -> CompanyRead:
        company = CRMCompany(**dto.model_dump())
        session.add(company)
        session.flush()
        created = self._to_read(company)
        self._audit(actor_user, company.id, "create", None, created.model_dump(mode="json"))
        self._publish(actor_user, "created", {"company_id": company.id, "name": company.name})
        session.commit()
        return self._to_read(self._reload(session, company.id))

    def update_company(
        self,
        session: Session,
        actor_user: ActorUser,
        company_id: str,
        dto: CompanyUpdate,
    ) -> CompanyRead:
        company = self._get_or_404(session, company_id)
        before = self._to_read(company).model_dump(mode="json")
        updated = self._to_read(self._apply_update(session, company_id, dto.changes(), dto.row_version))
        self._audit(actor_user, company_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"company_id": company_id, "fields": sorted(dto.changes())})
        session.commit()
        return updated

    def delete_company(self, session: Session, actor_user: ActorUser, company_id: str) -> MessageResponse:
        company = self._get_or_404(session, company_id)
        before = self._to_read(company).model_dump(mode="json")
        now = utcnow()
        for model in (CRMContact, CRMDeal, CRMActivity):
            self._detach(session, model, "company_id", company_id, now)
        return self._delete(session, actor_user, company, before)

    def _to_read(self, company: CRMCompany) -> CompanyRead:
        return CompanyRead.model_validate(company)


class ContactService(EntityService):
    model = CRMContact
    entity_type = "crm.contact"
    label = "Contact"
    event_prefix = "crm.contact"
    sortable = {
        "created_at": CRMContact.created_at,
        "updated_at": CRMContact.updated_at,
        "first_name": CRMContact.first_name,
        "last_name": CRMContact.last_name,
        "email": CRMContact.email,
        "title": CRMContact.title,
    }

    def _select(self) -> Select[Any]:
        return select(CRMContact, CRMCompany.name.label("company_name")).outerjoin(
            CRMCompany, CRMCompany.id == CRMContact.company_id
        )

    def list_contacts(
        self,
        session: Session,
        params: ListParams,
        *,
        company_id: str | None = None,
    ) -> dict[str, Any]:
        conditions = equality_filters({CRMContact.company_id: company_id})
        clause = search_clause(params.search, [CRMContact.first_name, CRMContact.last_name, CRMContact.email])
        if clause is not None:
            conditions.append(clause)
        stmt = self._select().where(and_(True, *conditions))
        rows, total = fetch_page(session, stmt, params, [resolve_sort_column(params, self.sortable, "created_at")])
        return page_payload([self._to_read(contact, company_name) for contact, company_name in rows], total, params)

    def get_contact(self, session: Session, contact_id: str) -> ContactDetail:
        row = session.execute(self._select().where(CRMContact.id == contact_id)).first()
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        contact, company_name = row
        return ContactDetail.model_validate(
            {
                **_columns(contact),
                "company_name": company_name,
                "activities": recent_activities(session, CRMActivity.contact_id == contact.id),
                "deals": related_deals(session, CRMDeal.contact_id == contact.id),
            }
        )

    def read_contact(self, session: Session, contact_id: str) -> ContactRead:
        row = session.execute(self._select().where(CRMContact.id == contact_id)).first()
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return self._to_read(*row)

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        payload = dto.model_dump()
        payload["tags"] = payload.get("tags") or []
        contact = CRMContact(**payload)
        session.add(contact)
        session.flush()
        self._audit(actor_user, contact.id, "create", None, self._to_read(contact).model_dump(mode="json"))
        self._publish(actor_user, "created", {"contact_id": contact.id, "company_id": contact.company_id})
        session.commit()
        return self.read_contact(session, contact.id)

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: str,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_or_404(session, contact_id)
        before = self._to_read(contact).model_dump(mode="json")
        payload = dto.changes()
        if "tags" in payload:
            payload["tags"] = payload["tags"] or []
        self._apply_update(session, contact_id, payload, dto.row_version)
        updated = self.read_contact(session, contact_id)
        self._audit(actor_user, contact_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"contact_id": contact_id, "fields": sorted(payload)})
        session.commit()
        return updated

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: str) -> MessageResponse:
        contact = self._get_or_404(session, contact_id)
        before = self._to_read(contact).model_dump(mode="json")
        now = utcnow()
        self._detach(session, CRMDeal, "contact_id", contact_id, now)
        self._detach(session, CRMActivity, "contact_id", contact_id, now)
        self._detach(session, CRMLead, "converted_contact_id", contact_id, now)
        return self._delete(session, actor_user, contact, before)

    def _to_read(self, contact: CRMContact, company_name: str | None = None) -> ContactRead:
        values = _columns(contact)
        values["tags"] = values.get("tags") or []
        values["company_name"] = company_name
        return ContactRead.model_validate(values)


class LeadService(EntityService):
    model = CRMLead
    entity_type = "crm.lead"
    label = "Lead"
    event_prefix = "crm.lead"
    sortable = {
        "created_at": CRMLead.created_at,
        "updated_at": CRMLead.updated_at,
        "name": CRMLead.name,
        "email": CRMLead.email,
        "company_name": CRMLead.company_name,
        "status": CRMLead.status,
        "source": CRMLead.source,
        "score": CRMLead.score,
    }

    def list_leads(
        self,
        session: Session,
        params: ListParams,
        *,
        status: str | None = None,
        source: str | None = None,
        assigned_to: str | None = None,
    ) -> dict[str, Any]:
        conditions = equality_filters(
            {CRMLead.status: status, CRMLead.source: source, CRMLead.assigned_to: assigned_to}
        )
        clause = search_clause(params.search, [CRMLead.name, CRMLead.email, CRMLead.company_name])
        if clause is not None:
            conditions.append(clause)
        stmt = select(CRMLead).where(and_(True, *conditions))
        rows, total = fetch_page(session, stmt, params, [resolve_sort_column(params, self.sortable, "created_at")])
        return page_payload([self._to_read(row[0]) for row in rows], total, params)

    def get_lead(self, session: Session, lead_id: str) -> LeadDetail:
        lead = self._get_or_404(session, lead_id)
        return LeadDetail.model_validate(
            {**_columns(lead), "activities": recent_activities(session, CRMActivity.lead_id == lead.id)}
        )

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if dto.status == "converted":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Leads can only become converted through the convert endpoint",
            )
        payload = dto.model_dump()
        payload["status"] = payload.get("status") or "new"
        payload["score"] = payload["score"] if payload.get("score") is not None else 0
        lead = CRMLead(**payload)
        session.add(lead)
        session.flush()
        self._audit(actor_user, lead.id, "create", None, self._to_read(lead).model_dump(mode="json"))
        self._publish(actor_user, "created", {"lead_id": lead.id, "status": lead.status})
        session.commit()
        return self._to_read(self._reload(session, lead.id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: str, dto: LeadUpdate) -> LeadRead:
        lead = self._get_or_404(session, lead_id)
        payload = dto.changes()
        requested_status = payload.get("status")
        if requested_status is not None and requested_status != lead.status:
            if lead.status == "converted":
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Converted lead status cannot be changed",
                )
            if requested_status == "converted":
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Leads can only become converted through the convert endpoint",
                )

        before = self._to_read(lead).model_dump(mode="json")
        updated = self._to_read(self._apply_update(session, lead_id, payload, dto.row_version))
        self._audit(actor_user, lead_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"lead_id": lead_id, "status": updated.status})
        session.commit()
        return updated

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: str) -> MessageResponse:
        lead = self._get_or_404(session, lead_id)
        before = self._to_read(lead).model_dump(mode="json")
        self._detach(session, CRMActivity, "lead_id", lead_id, utcnow())
        return self._delete(session, actor_user, lead, before)

    def convert_lead(self, session: Session, actor_user: ActorUser, lead_id: str) -> LeadConvertResponse:
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", lead_id)
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            lead = self._get_or_404(session, lead_id)
            if lead.status == "converted":
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Lead already converted")

            before = self._to_read(lead).model_dump(mode="json")
            first_name, last_name = split_lead_name(lead.name)
            now = utcnow()
            try:
                contact = CRMContact(
                    first_name=first_name,
                    last_name=last_name,
                    email=lead.email,
                    phone=lead.phone,
                    title=lead.title,
                    notes=lead.notes,
                    tags=[],
                )
                session.add(contact)
                session.flush()

                result = session.execute(
                    update(CRMLead)
                    .where(and_(CRMLead.id == lead_id, CRMLead.status != "converted"))
                    .values(
                        status="converted",
                        converted_contact_id=contact.id,
                        converted_at=now,
                        updated_at=now,
                        row_version=CRMLead.row_version + 1,
                    )
                )
                if result.rowcount == 0:
                    session.rollback()
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Lead already converted")

                converted = self._to_read(self._reload(session, lead_id))
                contact_read = contact_service._to_read(contact)
                self._audit(actor_user, lead_id, "convert", before, converted.model_dump(mode="json"))
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type=contact_service.entity_type,
                    entity_id=contact.id,
                    action="create",
                    before=None,
                    after=contact_read.model_dump(mode="json"),
                    correlation_id=actor_user.correlation_id,
                )
                self._publish(actor_user, "converted", {"lead_id": lead_id, "contact_id": contact.id})
                session.commit()
            except HTTPException:
                raise
            except Exception as exc:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception(
                    "lead.convert_failed",
                    extra={"entity_type": self.entity_type, "entity_id": lead_id, "error": str(exc)},
                )
                raise

            span.set_attribute("contact_id", contact.id)

        observe_lead_conversion()
        logger.info("lead.converted", extra={"entity_type": self.entity_type, "entity_id": lead_id})
        return LeadConvertResponse(
            message="Lead converted successfully",
            contact=contact_service.read_contact(session, contact.id),
        )

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class PipelineService(EntityService):
    model = CRMPipelineStage
    entity_type = "crm.pipeline_stage"
    label = "Stage"
    event_prefix = "crm.stage"

    def list_stages(self, session: Session) -> list[PipelineStageRead]:
        stages = session.scalars(self._ordered()).all()
        return [self._to_read(stage) for stage in stages]

    def first_stage(self, session: Session) -> CRMPipelineStage | None:
        return session.scalars(self._ordered().limit(1)).first()

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        max_position = session.scalar(select(func.max(CRMPipelineStage.position)))
        stage = CRMPipelineStage(
            name=dto.name,
            position=(max_position or 0) + 1,
            color=dto.color or DEFAULT_STAGE_COLOR,
            probability=dto.probability if dto.probability is not None else 0,
            outcome=dto.outcome or outcome_for_stage_name(dto.name),
        )
        session.add(stage)
        session.flush()
        self._audit(actor_user, stage.id, "create", None, self._to_read(stage).model_dump(mode="json"))
        self._publish(actor_user, "created", {"stage_id": stage.id, "position": stage.position})
        session.commit()
        return self._to_read(self._reload(session, stage.id))

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: str,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        stage = self._get_or_404(session, stage_id)
        payload = dto.changes()
        if "name" in payload and "outcome" not in payload and payload["name"] in TERMINAL_STAGE_NAMES:
            payload["outcome"] = TERMINAL_STAGE_NAMES[payload["name"]]
        before = self._to_read(stage).model_dump(mode="json")
        updated = self._to_read(self._apply_update(session, stage_id, payload, dto.row_version))
        self._audit(actor_user, stage_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"stage_id": stage_id, "fields": sorted(payload)})
        session.commit()
        return updated

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: PipelineStageReorder,
    ) -> list[PipelineStageRead]:
        before = [stage.model_dump(mode="json") for stage in self.list_stages(session)]
        now = utcnow()
        for position, stage_id in enumerate(dto.stage_ids, start=1):
            session.execute(
                update(CRMPipelineStage)
                .where(CRMPipelineStage.id == stage_id)
                .values(position=position, updated_at=now, row_version=CRMPipelineStage.row_version + 1)
            )
        session.flush()
        session.expire_all()
        reordered = self.list_stages(session)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id="*",
            action="reorder",
            before={"stages": before},
            after={"stages": [stage.model_dump(mode="json") for stage in reordered]},
            correlation_id=actor_user.correlation_id,
        )
        self._publish(actor_user, "reordered", {"stage_ids": list(dto.stage_ids)})
        session.commit()
        return reordered

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: str) -> MessageResponse:
        stage = self._get_or_404(session, stage_id)
        deal_count = session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.stage_id == stage_id)) or 0
        if deal_count:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot delete stage with {deal_count} deals. Move or delete deals first.",
            )
        before = self._to_read(stage).model_dump(mode="json")
        return self._delete(session, actor_user, stage, before)

    def _ordered(self) -> Select[tuple[CRMPipelineStage]]:
        return select(CRMPipelineStage).order_by(CRMPipelineStage.position, CRMPipelineStage.created_at)

    def _to_read(self, stage: CRMPipelineStage) -> PipelineStageRead:
        return PipelineStageRead.model_validate(stage)


class DealService(EntityService):
    model = CRMDeal
    entity_type = "crm.deal"
    label = "Deal"
    event_prefix = "crm.deal"
    sortable = {
        "created_at": CRMDeal.created_at,
        "updated_at": CRMDeal.updated_at,
        "name": CRMDeal.name,
        "value": CRMDeal.value,
        "probability": CRMDeal.probability,
        "status": CRMDeal.status,
        "expected_close_date": CRMDeal.expected_close_date,
        "actual_close_date": CRMDeal.actual_close_date,
    }

    def _conditions(
        self,
        search: str | None,
        stage_id: str | None,
        status: str | None,
        assigned_to: str | None,
    ) -> list[Any]:
        conditions = equality_filters(
            {CRMDeal.stage_id: stage_id, CRMDeal.status: status, CRMDeal.assigned_to: assigned_to}
        )
        clause = search_clause(
            search,
            [CRMDeal.name, CRMContact.first_name, CRMContact.last_name, CRMCompany.name],
        )
        if clause is not None:
            conditions.append(clause)
        return conditions

    def list_deals(
        self,
        session: Session,
        params: ListParams,
        *,
        stage_id: str | None = None,
        status: str | None = None,
        assigned_to: str | None = None,
    ) -> dict[str, Any]:
        stmt = _deal_select().where(and_(True, *self._conditions(params.search, stage_id, status, assigned_to)))
        rows, total = fetch_page(session, stmt, params, [resolve_sort_column(params, self.sortable, "created_at")])
        return page_payload([_deal_read(row) for row in rows], total, params)

    def pipeline_board(
        self,
        session: Session,
        *,
        search: str | None = None,
        stage_id: str | None = None,
        status: str | None = None,
        assigned_to: str | None = None,
    ) -> PipelineBoard:
        stages = session.scalars(
            select(CRMPipelineStage).order_by(CRMPipelineStage.position, CRMPipelineStage.created_at)
        ).all()
        rows = session.execute(
            _deal_select()
            .where(and_(True, *self._conditions(search, stage_id, status, assigned_to)))
            .order_by(CRMDeal.created_at.desc())
        ).all()
        deals_by_stage: dict[str | None, list[DealRead]] = {}
        for row in rows:
            deal = _deal_read(row)
            deals_by_stage.setdefault(deal.stage_id, []).append(deal)

        columns = []
        for stage in stages:
            stage_deals = deals_by_stage.get(stage.id, [])
            columns.append(
                PipelineBoardColumn.model_validate(
                    {
                        **_columns(stage),
                        "deals": stage_deals,
                        "total_value": sum(deal.value for deal in stage_deals),
                    }
                )
            )
        return PipelineBoard(pipeline=columns)

    def get_deal(self, session: Session, deal_id: str) -> DealDetail:
        row = session.execute(
            _deal_select(CRMContact.email.label("contact_email")).where(CRMDeal.id == deal_id)
        ).first()
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return DealDetail.model_validate(
            {
                **_deal_values(row),
                "contact_email": row[6],
                "activities": recent_activities(session, CRMActivity.deal_id == deal_id),
            }
        )

    def read_deal(self, session: Session, deal_id: str) -> DealRead:
        row = session.execute(_deal_select().where(CRMDeal.id == deal_id)).first()
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return _deal_read(row)

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        payload = dto.model_dump()
        if dto.stage_id is None:
            stage = pipeline_service.first_stage(session)
            payload["stage_id"] = stage.id if stage is not None else None
        else:
            stage = session.get(CRMPipelineStage, dto.stage_id)

        derived = stage_transition_values(stage, utcnow())
        if dto.probability is not None:
            derived.pop("probability")
        payload.update(derived)
        payload["currency"] = payload.get("currency") or "USD"

        deal = CRMDeal(**payload)
        session.add(deal)
        session.flush()
        self._audit(actor_user, deal.id, "create", None, DealRead.model_validate(deal).model_dump(mode="json"))
        self._publish(actor_user, "created", {"deal_id": deal.id, "stage_id": deal.stage_id, "value": deal.value})
        session.commit()
        return self.read_deal(session, deal.id)

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: str, dto: DealUpdate) -> DealRead:
        deal = self._get_or_404(session, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        payload = dto.changes()
        if "stage_id" in payload and payload["stage_id"] != deal.stage_id:
            stage = session.get(CRMPipelineStage, payload["stage_id"]) if payload["stage_id"] else None
            derived = stage_transition_values(stage, utcnow())
            if "probability" in payload:
                derived.pop("probability")
            payload.update(derived)

        self._apply_update(session, deal_id, payload, dto.row_version)
        updated = self.read_deal(session, deal_id)
        self._audit(actor_user, deal_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"deal_id": deal_id, "fields": sorted(payload)})
        session.commit()
        return updated

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: str,
        dto: DealStageChange,
    ) -> DealRead:
        with tracer.start_as_current_span("crm.deal.change_stage") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("stage_id", dto.stage_id)
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            deal = self._get_or_404(session, deal_id)
            before = DealRead.model_validate(deal).model_dump(mode="json")
            from_stage_id = deal.stage_id
            stage = session.get(CRMPipelineStage, dto.stage_id)
            values = {"stage_id": dto.stage_id, **stage_transition_values(stage, utcnow())}
            self._apply_update(session, deal_id, values, dto.row_version)
            updated = self.read_deal(session, deal_id)
            span.set_attribute("deal_status", updated.status)

            self._audit(actor_user, deal_id, "change_stage", before, updated.model_dump(mode="json"))
            transition = {
                "deal_id": deal_id,
                "from_stage_id": from_stage_id,
                "to_stage_id": dto.stage_id,
                "status": updated.status,
                "probability": updated.probability,
            }
            self._publish(actor_user, "stage_changed", transition)
            if updated.status == "won":
                self._publish(actor_user, "closed_won", {"deal_id": deal_id, "value": updated.value})
            elif updated.status == "lost":
                self._publish(actor_user, "closed_lost", {"deal_id": deal_id, "value": updated.value})
            session.commit()

        observe_stage_transition(updated.status)
        logger.info(
            "deal.stage_changed",
            extra={
                "entity_type": self.entity_type,
                "entity_id": deal_id,
                "stage_id": dto.stage_id,
                "outcome": updated.status,
            },
        )
        return updated

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: str) -> MessageResponse:
        deal = self._get_or_404(session, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        self._detach(session, CRMActivity, "deal_id", deal_id, utcnow())
        return self._delete(session, actor_user, deal, before)


class ActivityService(EntityService):
    model = CRMActivity
    entity_type = "crm.activity"
    label = "Activity"
    event_prefix = "crm.activity"
    sortable = {
        "due_date": CRMActivity.due_date,
        "created_at": CRMActivity.created_at,
        "updated_at": CRMActivity.updated_at,
        "completed_at": CRMActivity.completed_at,
        "priority": CRMActivity.priority,
        "status": CRMActivity.status,
        "type": CRMActivity.type,
        "subject": CRMActivity.subject,
    }

    def list_activities(
        self,
        session: Session,
        params: ListParams,
        *,
        activity_type: str | None = None,
        status: str | None = None,
        user_id: str | None = None,
        lead_id: str | None = None,
        contact_id: str | None = None,
        deal_id: str | None = None,
        company_id: str | None = None,
        upcoming: bool = False,
        overdue: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        moment = now or utcnow()
        conditions = equality_filters(
            {
                CRMActivity.type: activity_type,
                CRMActivity.status: status,
                CRMActivity.user_id: user_id,
                CRMActivity.lead_id: lead_id,
                CRMActivity.contact_id: contact_id,
                CRMActivity.deal_id: deal_id,
                CRMActivity.company_id: company_id,
            }
        )
        if upcoming:
            conditions.extend([CRMActivity.status == "pending", CRMActivity.due_date >= moment])
        if overdue:
            conditions.extend([CRMActivity.status == "pending", CRMActivity.due_date < moment])
        clause = search_clause(params.search, [CRMActivity.subject, CRMActivity.description])
        if clause is not None:
            conditions.append(clause)

        stmt = activity_select().where(and_(True, *conditions))
        order_by = [resolve_sort_column(params, self.sortable, "due_date"), CRMActivity.created_at.desc()]
        rows, total = fetch_page(session, stmt, params, order_by)
        return page_payload([activity_read(row) for row in rows], total, params)

    def get_activity(self, session: Session, activity_id: str) -> ActivityRead:
        row = session.execute(activity_select().where(CRMActivity.id == activity_id)).first()
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")
        return activity_read(row)

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        payload = dto.model_dump()
        payload["status"] = payload.get("status") or "pending"
        payload["priority"] = payload.get("priority") or "medium"
        activity = CRMActivity(**payload)
        session.add(activity)
        session.flush()
        self._audit(
            actor_user,
            activity.id,
            "create",
            None,
            ActivityRead.model_validate(activity).model_dump(mode="json"),
        )
        self._publish(actor_user, "created", {"activity_id": activity.id, "type": activity.type})
        session.commit()
        return self.get_activity(session, activity.id)

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: str,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self._get_or_404(session, activity_id)
        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        payload = dto.changes()
        self._apply_update(session, activity_id, payload, dto.row_version)
        updated = self.get_activity(session, activity_id)
        self._audit(actor_user, activity_id, "update", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "updated", {"activity_id": activity_id, "fields": sorted(payload)})
        session.commit()
        return updated

    def complete_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: str,
        dto: ActivityComplete | None = None,
    ) -> ActivityRead:
        activity = self._get_or_404(session, activity_id)
        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        values = {
            "status": "completed",
            "completed_at": utcnow(),
            "outcome": dto.outcome if dto is not None else None,
        }
        self._apply_update(session, activity_id, values)
        updated = self.get_activity(session, activity_id)
        self._audit(actor_user, activity_id, "complete", before, updated.model_dump(mode="json"))
        self._publish(actor_user, "completed", {"activity_id": activity_id, "outcome": updated.outcome})
        session.commit()
        observe_activity_completion(updated.type)
        return updated

    def delete_activity(self, session: Session, actor_user: ActorUser, activity_id: str) -> MessageResponse:
        activity = self._get_or_404(session, activity_id)
        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        return self._delete(session, actor_user, activity, before)


company_service = CompanyService()
contact_service = ContactService()
lead_service = LeadService()
pipeline_service = PipelineService()
deal_service = DealService()
activity_service = ActivityService()
