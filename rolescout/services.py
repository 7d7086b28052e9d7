"""Shared business logic for the rolescout CLI and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rolescout import config
from rolescout.models import Contact, Deal, DealContact
from rolescout.schemas import DealContactOut, RoleStatistics
from rolescout.signals import DealScope
from rolescout.stats import compute_statistics
from rolescout.taxonomy import ROLE_FIELD_PATTERNS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deal contacts
# ---------------------------------------------------------------------------


def get_deal_contacts(session: Session, workspace_id: str, deal_id: str) -> list[DealContactOut]:
    """A deal's role assignments with contact details, most confident first."""
    rows = session.execute(
        select(DealContact, Contact)
        .join(Contact, Contact.id == DealContact.contact_id)
        .where(DealContact.workspace_id == workspace_id, DealContact.deal_id == deal_id)
        .order_by(
            DealContact.role_confidence.is_(None),
            DealContact.role_confidence.desc(),
            DealContact.created_at,
            DealContact.id,
        )
    ).all()
    return [
        DealContactOut(
            id=dc.id,
            deal_id=dc.deal_id,
            contact_id=dc.contact_id,
            name=contact.full_name,
            email=contact.email,
            title=contact.title,
            source=dc.source,
            buying_role=dc.buying_role,
            role_source=dc.role_source,
            role_confidence=dc.role_confidence,
            seniority_verified=dc.seniority_verified,
            department_verified=dc.department_verified,
        )
        for dc, contact in rows
    ]


def deal_exists(session: Session, workspace_id: str, deal_id: str) -> bool:
    return session.execute(
        select(Deal.id).where(Deal.workspace_id == workspace_id, Deal.id == deal_id)
    ).first() is not None


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def role_statistics(
    session: Session, workspace_id: str, deal_id: str | None = None, include_closed_deals: bool = False,
) -> RoleStatistics:
    scope = DealScope(workspace_id, deal_id, include_closed_deals)
    return compute_statistics(session, scope, config.get_settings().threading_rule)


# ---------------------------------------------------------------------------
# Role-field mappings
# ---------------------------------------------------------------------------


def describe_mappings(session: Session, workspace_id: str) -> dict[str, Any]:
    return {
        "workspace_id": workspace_id,
        "custom": config.get_role_field_mappings(session, workspace_id),
        "built_in": {role: list(fields) for role, fields in ROLE_FIELD_PATTERNS.items()},
    }


def update_mappings(
    session: Session, workspace_id: str, mappings: Any, updated_by: str = "",
) -> dict[str, Any]:
    """Validate, persist and commit mappings; raises ConfigValidationError."""
    valid = config.set_role_field_mappings(session, workspace_id, mappings, updated_by=updated_by)
    session.commit()
    log.info("Saved %d role-field mappings for workspace %s", len(valid), workspace_id)
    return describe_mappings(session, workspace_id)
