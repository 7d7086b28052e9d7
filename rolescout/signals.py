"""Read-only signal extraction over deals, contacts, activities and conversations.

Each resolver pulls its evidence through these helpers; nothing here writes.
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator

from rapidfuzz import fuzz, process
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from rolescout.models import Activity, Contact, Conversation, Deal, DealContact
from rolescout.taxonomy import RESOLVED_ROLES, SENIOR_TITLE_RE, is_resolved
from rolescout.utils import json_parse, normalize_name, scalar_text

log = logging.getLogger(__name__)

CLOSED_STAGES = ("closed_won", "closed_lost")
CRM_ID_RE = re.compile(r"^[A-Za-z0-9]{15,18}$")
FUZZY_NAME_CUTOFF = 95.0
_CHUNK = 500

Pair = tuple[str, str]  # (deal_id, contact_id)


def _chunks(items: list[str], size: int = _CHUNK) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ---------------------------------------------------------------------------
# Deal scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DealScope:
    """The deal filter shared by every stage and the statistics of one run."""
    workspace_id: str
    deal_id: str | None = None
    include_closed_deals: bool = False

    def clauses(self) -> list[Any]:
        clauses: list[Any] = [Deal.workspace_id == self.workspace_id]
        if self.deal_id:
            clauses.append(Deal.id == self.deal_id)
        if not self.include_closed_deals:
            clauses.append(or_(Deal.stage_normalized.is_(None), Deal.stage_normalized.not_in(CLOSED_STAGES)))
        return clauses

    def deal_ids(self):
        return select(Deal.id).where(*self.clauses())


def load_deals(session: Session, scope: DealScope) -> list[Deal]:
    return list(session.execute(select(Deal).where(*scope.clauses()).order_by(Deal.id)).scalars().all())


def load_pair_rows(session: Session, scope: DealScope) -> dict[Pair, list[DealContact]]:
    """All assignment rows for in-scope deals, grouped by (deal, contact)."""
    rows = session.execute(
        select(DealContact)
        .where(DealContact.workspace_id == scope.workspace_id, DealContact.deal_id.in_(scope.deal_ids()))
        .order_by(DealContact.deal_id, DealContact.contact_id, DealContact.id)
    ).scalars().all()
    grouped: dict[Pair, list[DealContact]] = defaultdict(list)
    for row in rows:
        grouped[(row.deal_id, row.contact_id)].append(row)
    return dict(grouped)


def unresolved_pairs(pair_rows: dict[Pair, list[DealContact]]) -> dict[Pair, list[DealContact]]:
    """Pairs that have rows, none of which carries a resolved role."""
    return {
        pair: rows for pair, rows in pair_rows.items()
        if not any(is_resolved(r.buying_role) for r in rows)
    }


def load_contacts(session: Session, workspace_id: str, contact_ids: Iterable[str]) -> dict[str, Contact]:
    ids = sorted(set(contact_ids))
    out: dict[str, Contact] = {}
    for chunk in _chunks(ids):
        for contact in session.execute(
            select(Contact).where(Contact.workspace_id == workspace_id, Contact.id.in_(chunk))
        ).scalars():
            out[contact.id] = contact
    return out


def deal_custom_fields(deal: Deal) -> dict[str, Any]:
    raw = json_parse(deal.custom_fields_json, {})
    return raw if isinstance(raw, dict) else {}


# ---------------------------------------------------------------------------
# Contact matching (CRM deal fields)
# ---------------------------------------------------------------------------


def _unique(contacts: list[Contact], label: str, value: str) -> Contact | None:
    if len(contacts) == 1:
        return contacts[0]
    if contacts:
        log.debug("Ambiguous %s match for %r (%d contacts), dropping", label, value, len(contacts))
    return None


def match_contact_by_value(
    session: Session, workspace_id: str, raw_value: Any, account_id: str | None,
) -> Contact | None:
    """Resolve a deal custom-field value to exactly one contact.

    Tries email, then CRM-native id, then "first last" name (scoped to the
    deal's account when known).  Zero or several matches yield None.
    """
    value = scalar_text(raw_value)
    if value is None:
        return None

    if "@" in value:
        found = session.execute(
            select(Contact).where(
                Contact.workspace_id == workspace_id,
                func.lower(Contact.email) == value.lower(),
            )
        ).scalars().all()
        if found:
            return _unique(list(found), "email", value)

    if CRM_ID_RE.match(value):
        found = session.execute(
            select(Contact).where(Contact.workspace_id == workspace_id, Contact.source_id == value)
        ).scalars().all()
        if found:
            return _unique(list(found), "CRM id", value)

    parts = value.split()
    if len(parts) >= 2:
        first, last = parts[0], " ".join(parts[1:])
        stmt = select(Contact).where(
            Contact.workspace_id == workspace_id,
            func.lower(Contact.first_name) == first.lower(),
            func.lower(Contact.last_name) == last.lower(),
        )
        if account_id:
            stmt = stmt.where(Contact.account_id == account_id)
        return _unique(list(session.execute(stmt).scalars().all()), "name", value)

    return None


# ---------------------------------------------------------------------------
# Conversation participants
# ---------------------------------------------------------------------------


@dataclass
class ContactDirectory:
    """Email and name indexes over a workspace's contacts."""
    by_email: dict[str, list[Contact]] = field(default_factory=lambda: defaultdict(list))
    by_name: dict[str, list[Contact]] = field(default_factory=lambda: defaultdict(list))

    @classmethod
    def build(cls, contacts: Iterable[Contact]) -> ContactDirectory:
        directory = cls()
        for contact in contacts:
            if contact.email:
                directory.by_email[contact.email.strip().lower()].append(contact)
            name = normalize_name(contact.full_name)
            if name:
                directory.by_name[name].append(contact)
        return directory

    def match(self, participant: dict[str, Any]) -> Contact | None:
        email = scalar_text(participant.get("email"))
        if email:
            hits = self.by_email.get(email.lower(), [])
            if hits:
                return _unique(hits, "participant email", email)

        name = normalize_name(scalar_text(participant.get("name")))
        if not name:
            return None
        hits = self.by_name.get(name)
        if hits:
            return _unique(hits, "participant name", name)

        fuzzy = process.extract(
            name, list(self.by_name.keys()), scorer=fuzz.ratio,
            score_cutoff=FUZZY_NAME_CUTOFF, limit=None,
        )
        if len(fuzzy) != 1:
            if fuzzy:
                log.debug("Ambiguous fuzzy name %r (%d candidates), dropping", name, len(fuzzy))
            return None
        return _unique(self.by_name[fuzzy[0][0]], "participant fuzzy name", name)


def workspace_has_conversations(session: Session, workspace_id: str) -> bool:
    return session.execute(
        select(Conversation.id).where(Conversation.workspace_id == workspace_id).limit(1)
    ).first() is not None


def conversation_participant_pairs(session: Session, scope: DealScope) -> list[tuple[str, Contact]]:
    """Distinct (deal_id, contact) pairs for participants on in-scope deal conversations."""
    conversations = session.execute(
        select(Conversation).where(
            Conversation.workspace_id == scope.workspace_id,
            Conversation.deal_id.is_not(None),
            Conversation.deal_id.in_(scope.deal_ids()),
        ).order_by(Conversation.id)
    ).scalars().all()
    if not conversations:
        return []

    directory = ContactDirectory.build(
        session.execute(select(Contact).where(Contact.workspace_id == scope.workspace_id)).scalars()
    )
    seen: set[Pair] = set()
    out: list[tuple[str, Contact]] = []
    for conv in conversations:
        participants = json_parse(conv.participants_json, [])
        if not isinstance(participants, list):
            continue
        for participant in participants:
            if not isinstance(participant, dict):
                continue
            contact = directory.match(participant)
            if contact is None or (conv.deal_id, contact.id) in seen:
                continue
            seen.add((conv.deal_id, contact.id))
            out.append((conv.deal_id, contact))
    return out


# ---------------------------------------------------------------------------
# Cross-deal evidence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SiblingRole:
    deal_id: str
    buying_role: str
    role_confidence: float
    updated_at: datetime | None


def sibling_roles(
    session: Session, workspace_id: str, contact_ids: Iterable[str], min_confidence: float,
) -> dict[tuple[str, str], list[SiblingRole]]:
    """Resolved roles by (account_id, contact_id), best first."""
    out: dict[tuple[str, str], list[SiblingRole]] = defaultdict(list)
    for chunk in _chunks(sorted(set(contact_ids))):
        rows = session.execute(
            select(
                Deal.account_id, DealContact.contact_id, DealContact.deal_id,
                DealContact.buying_role, DealContact.role_confidence, DealContact.updated_at,
            )
            .select_from(DealContact)
            .join(Deal, and_(Deal.id == DealContact.deal_id, Deal.workspace_id == DealContact.workspace_id))
            .where(
                DealContact.workspace_id == workspace_id,
                DealContact.contact_id.in_(chunk),
                Deal.account_id.is_not(None),
                DealContact.buying_role.in_(sorted(RESOLVED_ROLES)),
                DealContact.role_confidence >= min_confidence,
            )
        ).all()
        for account_id, contact_id, deal_id, role, confidence, updated_at in rows:
            out[(account_id, contact_id)].append(SiblingRole(deal_id, role, confidence, updated_at))
    for roles in out.values():
        roles.sort(key=lambda r: (-r.role_confidence, -(r.updated_at.timestamp() if r.updated_at else 0), r.deal_id))
    return dict(out)


# ---------------------------------------------------------------------------
# Activity profiles
# ---------------------------------------------------------------------------


@dataclass
class ActivityProfile:
    total: int = 0
    meetings: int = 0
    emails: int = 0
    calls: int = 0
    first_activity: datetime | None = None
    last_activity: datetime | None = None

    def add(self, activity_type: str, timestamp: datetime) -> None:
        self.total += 1
        kind = (activity_type or "").strip().lower()
        if kind == "meeting":
            self.meetings += 1
        elif kind == "email":
            self.emails += 1
        elif kind == "call":
            self.calls += 1
        if self.first_activity is None or timestamp < self.first_activity:
            self.first_activity = timestamp
        if self.last_activity is None or timestamp > self.last_activity:
            self.last_activity = timestamp

    @property
    def active_days(self) -> int:
        """Calendar days spanned by the engagement, first to last interaction inclusive."""
        if self.first_activity is None or self.last_activity is None:
            return 0
        return (self.last_activity.date() - self.first_activity.date()).days + 1


def activity_profiles(session: Session, scope: DealScope) -> dict[Pair, ActivityProfile]:
    """Per-(deal, contact) activity mixture for in-scope deals and known contacts."""
    rows = session.execute(
        select(Activity.deal_id, Activity.contact_id, Activity.activity_type, Activity.timestamp)
        .join(Contact, and_(Contact.id == Activity.contact_id, Contact.workspace_id == Activity.workspace_id))
        .where(
            Activity.workspace_id == scope.workspace_id,
            Activity.deal_id.is_not(None),
            Activity.contact_id.is_not(None),
            Activity.deal_id.in_(scope.deal_ids()),
        )
    ).all()
    profiles: dict[Pair, ActivityProfile] = defaultdict(ActivityProfile)
    for deal_id, contact_id, activity_type, timestamp in rows:
        profiles[(deal_id, contact_id)].add(activity_type, timestamp)
    return dict(profiles)


# ---------------------------------------------------------------------------
# Account seniority
# ---------------------------------------------------------------------------


def deals_without_contacts(session: Session, scope: DealScope) -> list[Deal]:
    linked = select(DealContact.id).where(
        DealContact.workspace_id == Deal.workspace_id, DealContact.deal_id == Deal.id,
    ).exists()
    return list(session.execute(
        select(Deal).where(*scope.clauses(), ~linked).order_by(Deal.id)
    ).scalars().all())


def senior_account_contacts(
    session: Session, workspace_id: str, account_id: str, limit: int = 10,
) -> list[Contact]:
    """Most recently updated contacts at the account whose title reads as senior."""
    contacts = session.execute(
        select(Contact)
        .where(Contact.workspace_id == workspace_id, Contact.account_id == account_id, Contact.title.is_not(None))
        .order_by(Contact.updated_at.desc(), Contact.id)
    ).scalars()
    out: list[Contact] = []
    for contact in contacts:
        if SENIOR_TITLE_RE.search(contact.title or ""):
            out.append(contact)
            if len(out) >= limit:
                break
    return out
