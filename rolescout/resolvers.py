"""Resolver strategies: each reads current state and proposes role candidates.

Proposals are computed up front for a whole stage; the orchestrator then feeds
them through :func:`rolescout.gate.try_assign`, which re-checks the gate against
whatever has been written since.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from rolescout.config import get_role_field_mappings
from rolescout.db import write_guard
from rolescout.gate import Candidate, Proposal
from rolescout.models import DealContact
from rolescout.signals import (
    ActivityProfile,
    DealScope,
    activity_profiles,
    conversation_participant_pairs,
    deal_custom_fields,
    deals_without_contacts,
    load_contacts,
    load_deals,
    load_pair_rows,
    match_contact_by_value,
    senior_account_contacts,
    sibling_roles,
    unresolved_pairs,
    workspace_has_conversations,
)
from rolescout.taxonomy import (
    RESOLVED_ROLES,
    UNKNOWN,
    RoleGuess,
    infer_role_from_enrichment,
    infer_role_from_title,
    merge_field_patterns,
    normalize,
)
from rolescout.utils import scalar_text

log = logging.getLogger(__name__)

# Source tags
CRM_CONTACT_ROLE = "crm_contact_role"
CRM_DEAL_FIELD = "crm_deal_field"
CONVERSATION_PARTICIPANT = "conversation_participant"
CROSS_DEAL_MATCH = "cross_deal_match"
TITLE_MATCH = "title_match"
ENRICHMENT_INFERENCE = "enrichment_inference"
ACTIVITY_INFERENCE = "activity_inference"
ACTIVITY_DISCOVERY = "activity_discovery"
ACCOUNT_SENIORITY_MATCH = "account_seniority_match"

CRM_DEAL_FIELD_CONFIDENCE = 0.90
CONVERSATION_CONFIDENCE = 0.65
CROSS_DEAL_CONFIDENCE = 0.70
CROSS_DEAL_MIN_SIBLING_CONFIDENCE = 0.50
ACTIVITY_DISCOVERY_CONFIDENCE = 0.35
ACTIVITY_DISCOVERY_MIN_ACTIVITIES = 2
ACCOUNT_MATCH_CONFIDENCE = 0.25
ACCOUNT_MATCH_LIMIT = 10


def _title_role(title: str | None) -> str:
    guess = infer_role_from_title(title)
    return guess.role if guess else UNKNOWN


# ---------------------------------------------------------------------------
# Stage 1: normalize CRM-native labels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleFix:
    row_id: int
    deal_id: str
    buying_role: str


def propose_normalization(session: Session, scope: DealScope) -> list[RoleFix]:
    rows = session.execute(
        select(DealContact.id, DealContact.deal_id, DealContact.role, DealContact.buying_role).where(
            DealContact.workspace_id == scope.workspace_id,
            DealContact.deal_id.in_(scope.deal_ids()),
            DealContact.role_source == CRM_CONTACT_ROLE,
            or_(DealContact.buying_role.is_(None), DealContact.buying_role.not_in(sorted(RESOLVED_ROLES))),
        ).order_by(DealContact.id)
    ).all()
    fixes = []
    for row_id, deal_id, raw_label, current in rows:
        canonical = normalize(raw_label)
        if canonical != UNKNOWN and canonical != current:
            fixes.append(RoleFix(row_id, deal_id, canonical))
    return fixes


def apply_normalization(session: Session, fix: RoleFix) -> bool:
    """Write the canonical label; confidence is left as the CRM sync set it."""
    stmt = (
        update(DealContact)
        .where(
            DealContact.id == fix.row_id,
            or_(DealContact.buying_role.is_(None), DealContact.buying_role.not_in(sorted(RESOLVED_ROLES))),
        )
        .values(buying_role=fix.buying_role)
        .execution_options(synchronize_session=False)
    )
    with write_guard(session):
        try:
            changed = session.execute(stmt).rowcount
            session.commit()
        except Exception:
            session.rollback()
            raise
    return bool(changed)


# ---------------------------------------------------------------------------
# Stage 2: CRM deal custom fields
# ---------------------------------------------------------------------------


def propose_crm_deal_fields(session: Session, scope: DealScope) -> list[Proposal]:
    patterns = merge_field_patterns(get_role_field_mappings(session, scope.workspace_id))
    proposals: list[Proposal] = []
    seen: set[tuple[str, str]] = set()
    for deal in load_deals(session, scope):
        fields = deal_custom_fields(deal)
        if not fields:
            continue
        for role, field_names in patterns.items():
            for field_name in field_names:
                if field_name not in fields:
                    continue
                value = fields[field_name]
                contact = match_contact_by_value(session, scope.workspace_id, value, deal.account_id)
                if contact is None or (deal.id, contact.id) in seen:
                    continue
                seen.add((deal.id, contact.id))
                proposals.append(Proposal(
                    Candidate(
                        deal.id, contact.id, role, CRM_DEAL_FIELD_CONFIDENCE, CRM_DEAL_FIELD,
                        evidence=f"{field_name}={scalar_text(value)}",
                    ),
                    gate=CRM_DEAL_FIELD_CONFIDENCE,
                ))
    return proposals


# ---------------------------------------------------------------------------
# Stage 3: conversation participants
# ---------------------------------------------------------------------------


def propose_conversation_participants(session: Session, scope: DealScope) -> list[Proposal]:
    if not workspace_has_conversations(session, scope.workspace_id):
        log.info("No conversations in workspace %s, skipping participant resolution", scope.workspace_id)
        return []
    existing = load_pair_rows(session, scope)
    proposals = []
    for deal_id, contact in conversation_participant_pairs(session, scope):
        if (deal_id, contact.id) in existing:
            continue
        proposals.append(Proposal(
            Candidate(
                deal_id, contact.id, _title_role(contact.title), CONVERSATION_CONFIDENCE,
                CONVERSATION_PARTICIPANT, evidence="conversation participant",
            ),
            gate=None,
        ))
    return proposals


# ---------------------------------------------------------------------------
# Stage 4: cross-deal propagation
# ---------------------------------------------------------------------------


def propose_cross_deal_matches(session: Session, scope: DealScope) -> list[Proposal]:
    accounts = {deal.id: deal.account_id for deal in load_deals(session, scope) if deal.account_id}
    pairs = [pair for pair in unresolved_pairs(load_pair_rows(session, scope)) if pair[0] in accounts]
    if not pairs:
        return []
    siblings = sibling_roles(
        session, scope.workspace_id, (contact_id for _, contact_id in pairs),
        CROSS_DEAL_MIN_SIBLING_CONFIDENCE,
    )
    proposals = []
    for deal_id, contact_id in pairs:
        for sibling in siblings.get((accounts[deal_id], contact_id), []):
            if sibling.deal_id == deal_id:
                continue
            proposals.append(Proposal(
                Candidate(
                    deal_id, contact_id, sibling.buying_role, CROSS_DEAL_CONFIDENCE, CROSS_DEAL_MATCH,
                    evidence=f"{sibling.buying_role} on deal {sibling.deal_id} at {sibling.role_confidence:.2f}",
                ),
                gate=CROSS_DEAL_CONFIDENCE,
            ))
            break
    return proposals


# ---------------------------------------------------------------------------
# Stage 5: title / enrichment inference
# ---------------------------------------------------------------------------


def propose_title_inference(session: Session, scope: DealScope) -> list[Proposal]:
    pairs = unresolved_pairs(load_pair_rows(session, scope))
    contacts = load_contacts(session, scope.workspace_id, (contact_id for _, contact_id in pairs))
    proposals = []
    for (deal_id, contact_id), rows in pairs.items():
        guess: RoleGuess | None = None
        source = TITLE_MATCH
        verified = next((r for r in rows if r.seniority_verified and r.department_verified), None)
        if verified is not None:
            guess = infer_role_from_enrichment(verified.seniority_verified, verified.department_verified)
            source = ENRICHMENT_INFERENCE
        if guess is None:
            contact = contacts.get(contact_id)
            guess = infer_role_from_title(contact.title if contact else None)
            source = TITLE_MATCH
        if guess is None:
            continue
        proposals.append(Proposal(
            Candidate(deal_id, contact_id, guess.role, guess.confidence, source),
            gate=guess.confidence,
        ))
    return proposals


# ---------------------------------------------------------------------------
# Stage 6: activity-pattern inference
# ---------------------------------------------------------------------------


def classify_activity(profile: ActivityProfile) -> RoleGuess | None:
    """Map an engagement mixture to a role; rules are checked in order."""
    if profile.meetings >= 3 and profile.active_days >= 5:
        return RoleGuess("champion", 0.40)
    if profile.meetings >= 1 and profile.emails < 2:
        return RoleGuess("decision_maker", 0.35)
    if profile.emails >= 5 and profile.meetings <= 1:
        return RoleGuess("influencer", 0.35)
    if profile.meetings == 1 and profile.total <= 2:
        return RoleGuess("end_user", 0.30)
    return None


def propose_activity_inference(session: Session, scope: DealScope) -> list[Proposal]:
    pair_rows = load_pair_rows(session, scope)
    unresolved = unresolved_pairs(pair_rows)
    proposals = []
    for pair, profile in sorted(activity_profiles(session, scope).items()):
        if pair in pair_rows and pair not in unresolved:
            continue
        guess = classify_activity(profile)
        if guess is None:
            continue
        proposals.append(Proposal(
            Candidate(
                pair[0], pair[1], guess.role, guess.confidence, ACTIVITY_INFERENCE,
                evidence=(
                    f"{profile.meetings} meetings, {profile.emails} emails, "
                    f"{profile.calls} calls over {profile.active_days} days"
                ),
            ),
            gate=guess.confidence,
        ))
    return proposals


# ---------------------------------------------------------------------------
# Stage 8: discovery sweeps
# ---------------------------------------------------------------------------


def propose_activity_discovery(session: Session, scope: DealScope) -> list[Proposal]:
    existing = load_pair_rows(session, scope)
    candidates = {
        pair: profile for pair, profile in activity_profiles(session, scope).items()
        if pair not in existing and profile.total >= ACTIVITY_DISCOVERY_MIN_ACTIVITIES
    }
    contacts = load_contacts(session, scope.workspace_id, (contact_id for _, contact_id in candidates))
    proposals = []
    for (deal_id, contact_id), profile in sorted(candidates.items()):
        contact = contacts.get(contact_id)
        proposals.append(Proposal(
            Candidate(
                deal_id, contact_id, _title_role(contact.title if contact else None),
                ACTIVITY_DISCOVERY_CONFIDENCE, ACTIVITY_DISCOVERY,
                evidence=f"{profile.total} activities",
            ),
            gate=None,
        ))
    return proposals


def propose_account_discovery(session: Session, scope: DealScope) -> list[Proposal]:
    proposals = []
    for deal in deals_without_contacts(session, scope):
        if not deal.account_id:
            continue
        for contact in senior_account_contacts(session, scope.workspace_id, deal.account_id, ACCOUNT_MATCH_LIMIT):
            proposals.append(Proposal(
                Candidate(
                    deal.id, contact.id, _title_role(contact.title), ACCOUNT_MATCH_CONFIDENCE,
                    ACCOUNT_SENIORITY_MATCH, evidence=f"senior title {contact.title!r}",
                ),
                gate=None,
            ))
    return proposals
