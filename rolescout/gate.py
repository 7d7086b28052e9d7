"""Gate and merge layer: the only code path that writes role assignments.

Two checks guard every write:

* the cross-source gate - a strategy with threshold *T* stays silent when any
  row for the (deal, contact) pair already has ``role_confidence >= T``;
* per-source monotonicity - the row keyed by (workspace, deal, contact, source)
  is only overwritten by a strictly higher confidence.

Discovery stages pass ``gate_threshold=None``: they only ever seed pairs that
have no rows at all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rolescout.db import write_guard
from rolescout.models import DealContact

log = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class Candidate:
    deal_id: str
    contact_id: str
    role: str
    confidence: float
    source: str
    evidence: str = ""


@dataclass(frozen=True)
class Proposal:
    """A candidate plus the gate it must pass (None = discovery-only)."""
    candidate: Candidate
    gate: float | None


def _pair_clause(workspace_id: str, deal_id: str, contact_id: str):
    return (
        DealContact.workspace_id == workspace_id,
        DealContact.deal_id == deal_id,
        DealContact.contact_id == contact_id,
    )


def pair_has_rows(session: Session, workspace_id: str, deal_id: str, contact_id: str) -> bool:
    return bool(session.execute(
        select(exists().where(*_pair_clause(workspace_id, deal_id, contact_id)))
    ).scalar())


def pair_confidence_at_least(
    session: Session, workspace_id: str, deal_id: str, contact_id: str, threshold: float,
) -> bool:
    return bool(session.execute(
        select(exists().where(
            *_pair_clause(workspace_id, deal_id, contact_id),
            DealContact.role_confidence >= threshold,
        ))
    ).scalar())


def _conditional_update(session: Session, workspace_id: str, candidate: Candidate) -> int:
    stmt = (
        update(DealContact)
        .where(
            *_pair_clause(workspace_id, candidate.deal_id, candidate.contact_id),
            DealContact.source == candidate.source,
            or_(DealContact.role_confidence.is_(None), DealContact.role_confidence < candidate.confidence),
        )
        .values(
            buying_role=candidate.role,
            role_source=candidate.source,
            role_confidence=candidate.confidence,
        )
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount


def _key_exists(session: Session, workspace_id: str, candidate: Candidate) -> bool:
    return bool(session.execute(
        select(exists().where(
            *_pair_clause(workspace_id, candidate.deal_id, candidate.contact_id),
            DealContact.source == candidate.source,
        ))
    ).scalar())


def _upsert(session: Session, workspace_id: str, candidate: Candidate) -> bool:
    if _conditional_update(session, workspace_id, candidate):
        return True
    if _key_exists(session, workspace_id, candidate):
        # Row exists with an equal or higher confidence for this source.
        return False
    row = DealContact(
        workspace_id=workspace_id,
        deal_id=candidate.deal_id,
        contact_id=candidate.contact_id,
        source=candidate.source,
        buying_role=candidate.role,
        role_source=candidate.source,
        role_confidence=candidate.confidence,
    )
    session.add(row)
    try:
        session.flush()
        return True
    except IntegrityError:
        # Another writer inserted the key first; its row now carries the bar.
        session.rollback()
        log.debug(
            "Insert race on %s/%s/%s, retrying conditional update",
            candidate.deal_id, candidate.contact_id, candidate.source,
        )
        return bool(_conditional_update(session, workspace_id, candidate))


def try_assign(
    session: Session, workspace_id: str, candidate: Candidate, gate_threshold: float | None,
) -> bool:
    """Gate, then conditionally upsert *candidate*; commits its own transaction.

    Returns True when a row was inserted or raised, False when the candidate
    was gated out or lost to an equal/higher confidence on the same key.
    """
    with write_guard(session):
        try:
            if gate_threshold is None:
                blocked = pair_has_rows(session, workspace_id, candidate.deal_id, candidate.contact_id)
            else:
                blocked = pair_confidence_at_least(
                    session, workspace_id, candidate.deal_id, candidate.contact_id, gate_threshold,
                )
            if blocked:
                session.rollback()
                return False
            written = _upsert(session, workspace_id, candidate)
            session.commit()
        except Exception:
            session.rollback()
            raise
    if written:
        log.debug(
            "Assigned %s on %s/%s at %.2f (%s) %s",
            candidate.role, candidate.deal_id, candidate.contact_id,
            candidate.confidence, candidate.source, candidate.evidence,
        )
    return written
