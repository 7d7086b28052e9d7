"""Confidence boost: verified enrichment confirming an already-assigned role."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rolescout.db import write_guard
from rolescout.gate import MAX_CONFIDENCE
from rolescout.models import DealContact
from rolescout.resolvers import ENRICHMENT_INFERENCE
from rolescout.signals import DealScope
from rolescout.taxonomy import RESOLVED_ROLES, infer_role_from_enrichment

log = logging.getLogger(__name__)

CONFIRMED_SUFFIX = "+enrichment_confirmed"
BOOST_STEP = 0.20


@dataclass(frozen=True)
class Boost:
    row_id: int
    deal_id: str
    old_confidence: float
    old_source: str | None
    new_confidence: float
    new_source: str


def boosted_confidence(confidence: float) -> float:
    return round(min(MAX_CONFIDENCE, confidence + BOOST_STEP), 2)


def propose_boosts(session: Session, scope: DealScope) -> list[Boost]:
    rows = session.execute(
        select(DealContact).where(
            DealContact.workspace_id == scope.workspace_id,
            DealContact.deal_id.in_(scope.deal_ids()),
            DealContact.buying_role.in_(sorted(RESOLVED_ROLES)),
            DealContact.seniority_verified.is_not(None),
            DealContact.department_verified.is_not(None),
            DealContact.role_confidence < MAX_CONFIDENCE,
        ).order_by(DealContact.id)
    ).scalars().all()

    boosts = []
    for row in rows:
        source = row.role_source or ""
        if source == ENRICHMENT_INFERENCE or source.endswith(CONFIRMED_SUFFIX):
            continue
        guess = infer_role_from_enrichment(row.seniority_verified, row.department_verified)
        if guess is None or guess.role != row.buying_role:
            continue
        boosts.append(Boost(
            row_id=row.id,
            deal_id=row.deal_id,
            old_confidence=row.role_confidence,
            old_source=row.role_source,
            new_confidence=boosted_confidence(row.role_confidence),
            new_source=f"{source}{CONFIRMED_SUFFIX}",
        ))
    return boosts


def apply_boost(session: Session, boost: Boost) -> bool:
    """Compare-and-set on the confidence and source that were read."""
    source_clause = (
        DealContact.role_source.is_(None) if boost.old_source is None
        else DealContact.role_source == boost.old_source
    )
    stmt = (
        update(DealContact)
        .where(DealContact.id == boost.row_id, DealContact.role_confidence == boost.old_confidence, source_clause)
        .values(role_confidence=boost.new_confidence, role_source=boost.new_source)
        .execution_options(synchronize_session=False)
    )
    with write_guard(session):
        try:
            changed = session.execute(stmt).rowcount
            session.commit()
        except Exception:
            session.rollback()
            raise
    if not changed:
        log.debug("Boost of row %s lost a race, skipping", boost.row_id)
    return bool(changed)
