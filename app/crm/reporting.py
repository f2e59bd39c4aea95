from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.models import CRMActivity, CRMCompany, CRMContact, CRMDeal, CRMLead, CRMPipelineStage, utcnow
from app.crm.schemas import (
    ClosedDealsSummary,
    DashboardMetrics,
    DashboardStats,
    DealsByStageRow,
    LeadsByStatusRow,
)
from app.crm.service import activity_read, activity_select


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(slots=True)
class DashboardService:
    recent_activity_limit: int | None = None
    upcoming_activity_limit: int | None = None

    def stats(self, session: Session, now: datetime | None = None) -> DashboardStats:
        moment = now or utcnow()
        settings = get_settings()
        recent_limit = self.recent_activity_limit or settings.dashboard_recent_activity_limit
        upcoming_limit = self.upcoming_activity_limit or settings.dashboard_upcoming_activity_limit

        total_leads = self._count(session, CRMLead, CRMLead.status != "converted")
        total_contacts = self._count(session, CRMContact)
        total_companies = self._count(session, CRMCompany)
        open_count, open_value = self._deal_totals(session, CRMDeal.status == "open")
        won_count, won_value = self._deal_totals(session, CRMDeal.status == "won")
        pending_activities = self._count(session, CRMActivity, CRMActivity.status == "pending")
        overdue_activities = self._count(
            session,
            CRMActivity,
            and_(CRMActivity.status == "pending", CRMActivity.due_date < moment),
        )

        stage_rows = session.execute(
            select(
                CRMPipelineStage.name,
                CRMPipelineStage.color,
                func.count(CRMDeal.id),
                func.coalesce(func.sum(CRMDeal.value), 0),
            )
            .outerjoin(CRMDeal, and_(CRMDeal.stage_id == CRMPipelineStage.id, CRMDeal.status == "open"))
            .group_by(CRMPipelineStage.id, CRMPipelineStage.name, CRMPipelineStage.color, CRMPipelineStage.position)
            .order_by(CRMPipelineStage.position)
        ).all()
        status_rows = session.execute(
            select(CRMLead.status, func.count(CRMLead.id)).group_by(CRMLead.status).order_by(CRMLead.status)
        ).all()

        recent = session.execute(
            activity_select().order_by(CRMActivity.created_at.desc()).limit(recent_limit)
        ).all()
        upcoming = session.execute(
            activity_select()
            .where(and_(CRMActivity.status == "pending", CRMActivity.due_date >= moment))
            .order_by(CRMActivity.due_date.asc())
            .limit(upcoming_limit)
        ).all()

        return DashboardStats(
            total_leads=total_leads,
            total_contacts=total_contacts,
            total_companies=total_companies,
            total_deals=open_count,
            total_value=open_value,
            won_deals=won_count,
            won_value=won_value,
            pending_activities=pending_activities,
            overdue_activities=overdue_activities,
            deals_by_stage=[
                DealsByStageRow(stage=name, color=color, count=int(count), value=float(value or 0))
                for name, color, count, value in stage_rows
            ],
            leads_by_status=[LeadsByStatusRow(status=lead_status, count=int(count)) for lead_status, count in status_rows],
            recent_activities=[activity_read(row) for row in recent],
            upcoming_activities=[activity_read(row) for row in upcoming],
        )

    def metrics(self, session: Session, period: int | None = None, now: datetime | None = None) -> DashboardMetrics:
        moment = now or utcnow()
        days = period or get_settings().metrics_default_period_days
        window_start = moment - timedelta(days=days)
        in_window = and_(CRMDeal.actual_close_date >= window_start, CRMDeal.actual_close_date <= moment)

        won_count, won_value = self._deal_totals(session, and_(CRMDeal.status == "won", in_window))
        lost_count, lost_value = self._deal_totals(session, and_(CRMDeal.status == "lost", in_window))
        closed = won_count + lost_count
        conversion_rate = round(won_count / closed * 100, 1) if closed else 0.0

        avg_deal_value = session.scalar(select(func.avg(CRMDeal.value)).where(CRMDeal.status == "won"))

        close_rows = session.execute(
            select(CRMDeal.created_at, CRMDeal.actual_close_date).where(
                and_(
                    CRMDeal.status == "won",
                    CRMDeal.actual_close_date.is_not(None),
                    CRMDeal.created_at.is_not(None),
                )
            )
        ).all()
        durations = [
            (_as_utc(closed_at) - _as_utc(created_at)).total_seconds() / 86400
            for created_at, closed_at in close_rows
        ]
        avg_days_to_close = _round_half_up(sum(durations) / len(durations)) if durations else 0

        return DashboardMetrics(
            period=days,
            closed_deals=ClosedDealsSummary(
                won=won_count,
                lost=lost_count,
                won_value=won_value,
                lost_value=lost_value,
            ),
            conversion_rate=conversion_rate,
            avg_deal_value=float(avg_deal_value or 0),
            avg_days_to_close=avg_days_to_close,
        )

    def _count(self, session: Session, model: Any, condition: Any = None) -> int:
        stmt = select(func.count()).select_from(model)
        if condition is not None:
            stmt = stmt.where(condition)
        return int(session.scalar(stmt) or 0)

    def _deal_totals(self, session: Session, condition: Any) -> tuple[int, float]:
        count, value = session.execute(
            select(func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0)).where(condition)
        ).one()
        return int(count or 0), float(value or 0)


dashboard_service = DashboardService()
