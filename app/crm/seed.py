from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.crm.models import CRMPipelineStage, CRMUser

logger = logging.getLogger("app.crm.seed")

# id, name, position, color, probability, outcome
DEFAULT_STAGES: tuple[tuple[str, str, int, str, int, str], ...] = (
    ("stage_1", "Prospecting", 1, "#6366f1", 10, "open"),
    ("stage_2", "Qualification", 2, "#8b5cf6", 25, "open"),
    ("stage_3", "Proposal", 3, "#ec4899", 50, "open"),
    ("stage_4", "Negotiation", 4, "#f59e0b", 75, "open"),
    ("stage_5", "Closed Won", 5, "#10b981", 100, "won"),
    ("stage_6", "Closed Lost", 6, "#ef4444", 0, "lost"),
)


def seed_default_user(session: Session, settings: Settings | None = None) -> CRMUser:
    resolved = settings or get_settings()
    user = session.get(CRMUser, resolved.default_user_id)
    if user is None:
        user = CRMUser(
            id=resolved.default_user_id,
            email=resolved.default_user_email,
            name=resolved.default_user_name,
            role="admin",
        )
        session.add(user)
        session.flush()
    return user


def seed_default_stages(session: Session) -> list[CRMPipelineStage]:
    existing = session.scalar(select(func.count()).select_from(CRMPipelineStage)) or 0
    if existing:
        return []
    stages = [
        CRMPipelineStage(
            id=stage_id,
            name=name,
            position=position,
            color=color,
            probability=probability,
            outcome=outcome,
        )
        for stage_id, name, position, color, probability, outcome in DEFAULT_STAGES
    ]
    session.add_all(stages)
    session.flush()
    return stages


def seed_defaults(session: Session, settings: Settings | None = None) -> None:
    seed_default_user(session, settings)
    created = seed_default_stages(session)
    session.commit()
    logger.info("seed.completed stages_created=%d", len(created))
