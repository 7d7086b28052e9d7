"""Coverage and distribution metrics over the assignment set."""
from __future__ import annotations

from collections import Counter, defaultdict
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from rolescout.config import ThreadingRule
from rolescout.models import DealContact
from rolescout.schemas import ContactsResolved, RoleStatistics
from rolescout.signals import DealScope, load_deals
from rolescout.taxonomy import RESOLVED_ROLES, UNKNOWN, is_resolved


def is_fully_threaded(roles: Iterable[str], rule: ThreadingRule | None = None) -> bool:
    rule = rule or ThreadingRule()
    distinct = {r for r in roles if r in RESOLVED_ROLES}
    if len(distinct) < rule.min_distinct_roles:
        return False
    if any(r not in distinct for r in rule.required_roles):
        return False
    if rule.required_any and not distinct.intersection(rule.required_any):
        return False
    return True


def effective_roles(rows: Iterable[DealContact]) -> dict[str, str]:
    """contact_id -> role of its highest-confidence resolved row (``unknown`` if none)."""
    best: dict[str, DealContact] = {}
    out: dict[str, str] = {}
    for row in rows:
        out.setdefault(row.contact_id, UNKNOWN)
        if not is_resolved(row.buying_role):
            continue
        current = best.get(row.contact_id)
        if current is None or (row.role_confidence or 0.0) > (current.role_confidence or 0.0):
            best[row.contact_id] = row
            out[row.contact_id] = row.buying_role
    return out


def compute_statistics(session: Session, scope: DealScope, rule: ThreadingRule | None = None) -> RoleStatistics:
    deals = load_deals(session, scope)
    rows = session.execute(
        select(DealContact).where(
            DealContact.workspace_id == scope.workspace_id,
            DealContact.deal_id.in_(scope.deal_ids()),
        ).order_by(DealContact.id)
    ).scalars().all()

    by_source = Counter(row.role_source or UNKNOWN for row in rows)
    by_role = Counter(row.buying_role or UNKNOWN for row in rows)
    by_deal: dict[str, list[DealContact]] = defaultdict(list)
    for row in rows:
        by_deal[row.deal_id].append(row)

    stats = RoleStatistics(
        total_deals=len(deals),
        contacts_resolved=ContactsResolved(total=len(rows), by_source=dict(by_source)),
        role_distribution=dict(by_role),
    )
    contact_total = 0
    role_total = 0
    deals_by_role: Counter[str] = Counter()
    for deal in deals:
        roles = effective_roles(by_deal.get(deal.id, []))
        resolved = {r for r in roles.values() if r != UNKNOWN}
        contact_total += len(roles)
        role_total += len(resolved)
        deals_by_role.update(resolved)
        if not roles:
            stats.deals_with_no_contacts += 1
            continue
        if not resolved:
            stats.deals_with_no_roles += 1
        if "champion" in resolved:
            stats.deals_with_champion += 1
        if "economic_buyer" in resolved:
            stats.deals_with_economic_buyer += 1
        if is_fully_threaded(resolved, rule):
            stats.deals_fully_threaded += 1

    stats.deals_by_role = dict(deals_by_role)
    if deals:
        stats.avg_contacts_per_deal = round(contact_total / len(deals), 2)
        stats.avg_roles_per_deal = round(role_total / len(deals), 2)
    return stats
