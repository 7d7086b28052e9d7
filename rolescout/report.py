"""Markdown summary of a resolution run."""
from __future__ import annotations

from rolescout.boost import BOOST_STEP, CONFIRMED_SUFFIX
from rolescout.config import ThreadingRule, get_settings
from rolescout.schemas import ResolutionResult
from rolescout.taxonomy import UNKNOWN

# Nominal (upper-bound) confidence per source, for the sources table.
NOMINAL_CONFIDENCE = {
    "crm_contact_role": "0.95",
    "crm_deal_field": "0.90",
    "cross_deal_match": "0.70",
    "enrichment_inference": "0.70",
    "conversation_participant": "0.65",
    "title_match": "0.55",
    "activity_inference": "0.40",
    "activity_discovery": "0.35",
    "account_seniority_match": "0.25",
}


def _pct(num: int, total: int) -> int:
    return round(num / total * 100) if total > 0 else 0


def _nominal(source: str) -> str:
    if source.endswith(CONFIRMED_SUFFIX):
        base = NOMINAL_CONFIDENCE.get(source.removesuffix(CONFIRMED_SUFFIX))
        return f"{base} +{BOOST_STEP:.2f}" if base else "-"
    return NOMINAL_CONFIDENCE.get(source, "-")


def generate_resolution_report(result: ResolutionResult, rule: ThreadingRule | None = None) -> str:
    rule = rule or get_settings().threading_rule
    total_rows = result.contacts_resolved.total
    unresolved = result.role_distribution.get(UNKNOWN, 0)
    resolved = sum(result.role_distribution.values()) - unresolved
    discovered = result.new_discoveries.total

    mapped = f"- Total contacts mapped: {total_rows}"
    if discovered:
        mapped += f" ({discovered} newly discovered)"
    lines = [
        "# Contact Role Resolution Report",
        "",
        "## Summary",
        f"- Deals processed: {result.deals_processed}",
        mapped,
        f"- Roles resolved: {resolved} / {total_rows} ({_pct(resolved, total_rows)}%)",
        f"- Average contacts per deal: {result.avg_contacts_per_deal}",
        f"- Average roles per deal: {result.avg_roles_per_deal}",
        "",
        "## Resolution Sources",
        "| Source | Count | Confidence |",
        "|--------|-------|-----------|",
    ]
    for source, count in sorted(result.contacts_resolved.by_source.items(), key=lambda kv: (-kv[1], kv[0])):
        lines.append(f"| {source} | {count} | {_nominal(source)} |")
    if unresolved:
        lines.append(f"| Unresolved | {unresolved} | - |")

    lines.extend([
        "",
        "## Buying Committee Coverage",
        "| Role | Count | % of Deals |",
        "|------|-------|-----------|",
    ])
    for role, count in sorted(result.role_distribution.items(), key=lambda kv: (-kv[1], kv[0])):
        if role == UNKNOWN:
            continue
        deals = result.deals_by_role.get(role, 0)
        lines.append(f"| {role} | {count} | {_pct(deals, result.total_deals)}% |")

    total_deals = result.total_deals
    lines.extend([
        "",
        "## Deal Threading Quality",
        f"- **Deals with champion**: {result.deals_with_champion} ({_pct(result.deals_with_champion, total_deals)}%)",
        f"- **Deals with economic buyer**: {result.deals_with_economic_buyer} "
        f"({_pct(result.deals_with_economic_buyer, total_deals)}%)",
        f"- **Fully threaded deals** ({rule.describe()}): {result.deals_fully_threaded} "
        f"({_pct(result.deals_fully_threaded, total_deals)}%)",
        "",
        "## Gaps",
    ])
    if result.deals_with_no_contacts:
        lines.append(f"- **{result.deals_with_no_contacts} deals have zero contacts** (all resolution sources exhausted)")
    if result.deals_with_no_roles:
        lines.append(f"- **{result.deals_with_no_roles} deals have contacts but no identified roles**")
    if total_deals - result.deals_with_champion > 0:
        lines.append(f"- **{total_deals - result.deals_with_champion} deals missing champion**")
    if total_deals - result.deals_with_economic_buyer > 0:
        lines.append(f"- **{total_deals - result.deals_with_economic_buyer} deals missing economic buyer**")

    if discovered:
        lines.extend([
            "",
            "## New Discoveries",
            f"- From activities: {result.new_discoveries.from_activities}",
            f"- From conversations: {result.new_discoveries.from_conversations}",
            f"- From account seniority match: {result.new_discoveries.from_account_match}",
        ])

    lines.extend(["", "---", f"*Resolution completed in {round(result.execution_ms / 1000)}s*", ""])
    return "\n".join(lines)
