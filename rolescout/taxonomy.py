"""Buying-role vocabulary and the static tables used to infer roles.

Everything here is immutable configuration: the canonical role set, the
CRM label synonyms, the deal custom-field patterns, the title regexes and the
seniority x department lattice.  The functions are pure.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

UNKNOWN = "unknown"

CANONICAL_ROLES: frozenset[str] = frozenset({
    "champion",
    "economic_buyer",
    "decision_maker",
    "technical_evaluator",
    "influencer",
    "coach",
    "blocker",
    "end_user",
    "executive_sponsor",
    UNKNOWN,
})

# Roles a resolver can actually assert (everything but unknown)
RESOLVED_ROLES: frozenset[str] = CANONICAL_ROLES - {UNKNOWN}

# ---------------------------------------------------------------------------
# CRM label synonyms
# ---------------------------------------------------------------------------

ROLE_SYNONYMS: dict[str, str] = {
    # Salesforce / HubSpot picklist values
    "decision maker": "decision_maker",
    "economic buyer": "economic_buyer",
    "executive sponsor": "executive_sponsor",
    "champion": "champion",
    "influencer": "influencer",
    "evaluator": "technical_evaluator",
    "technical evaluator": "technical_evaluator",
    "end user": "end_user",
    "business user": "end_user",
    "coach": "coach",
    "blocker": "blocker",
    "budget holder": "economic_buyer",
    "budget authority": "economic_buyer",
    "project lead": "champion",
    "project manager": "champion",
    "sponsor": "executive_sponsor",
    "internal champion": "champion",
    "technical buyer": "technical_evaluator",
    "legal": "influencer",
    "procurement": "influencer",
    "it": "technical_evaluator",
    # already-canonical spellings
    **{role: role for role in CANONICAL_ROLES if role != UNKNOWN},
}


def normalize(raw_label: str | None) -> str:
    """Map a free-text CRM role label to a canonical role, ``unknown`` if no match."""
    if not raw_label:
        return UNKNOWN
    return ROLE_SYNONYMS.get(raw_label.strip().lower(), UNKNOWN)


def is_resolved(role: str | None) -> bool:
    return bool(role) and role in RESOLVED_ROLES


# ---------------------------------------------------------------------------
# Deal custom-field patterns: role -> CRM field names
# ---------------------------------------------------------------------------

ROLE_FIELD_PATTERNS: dict[str, tuple[str, ...]] = {
    "champion": (
        "champion", "champion_name", "champion_contact",
        "champion__c", "Champion__c", "internal_champion",
    ),
    "economic_buyer": (
        "economic_buyer", "eb", "budget_holder", "budget_owner",
        "Economic_Buyer__c", "Budget_Authority__c",
    ),
    "decision_maker": (
        "decision_maker", "dm", "final_approver", "executive_sponsor",
        "Decision_Maker__c", "Final_Approver__c",
    ),
    "technical_evaluator": (
        "technical_evaluator", "tech_eval", "technical_contact",
        "Technical_Evaluator__c", "Tech_Lead__c",
    ),
}


def merge_field_patterns(custom_mappings: dict[str, str] | None) -> dict[str, list[str]]:
    """Built-in patterns plus workspace ``{field: role}`` mappings, as ``{role: [fields]}``."""
    merged: dict[str, list[str]] = {role: list(fields) for role, fields in ROLE_FIELD_PATTERNS.items()}
    for field, role in (custom_mappings or {}).items():
        fields = merged.setdefault(role, [])
        if field not in fields:
            fields.append(field)
    return merged


# ---------------------------------------------------------------------------
# Title and enrichment inference
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleGuess:
    role: str
    confidence: float


_TECH = r"(Engineer\w*|Tech\w*|IT|R&D|Product\w*)\b"

# Ordered; first match wins.
TITLE_ROLE_MAP: tuple[tuple[re.Pattern[str], RoleGuess], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), RoleGuess(role, confidence))
    for pattern, role, confidence in (
        # C-suite
        (r"\b(CEO|CTO|CRO|COO|CFO|CMO|CIO|CISO|Chief)\b", "decision_maker", 0.55),
        # VP
        (r"\b(VP|Vice President)\b.*\b(Sales|Revenue|Business|Commercial)\b", "economic_buyer", 0.50),
        (r"\b(VP|Vice President)\b.*\b" + _TECH, "technical_evaluator", 0.50),
        (r"\b(VP|Vice President)\b", "decision_maker", 0.45),
        # Director
        (r"\bDirector\b.*\b" + _TECH, "technical_evaluator", 0.50),
        (r"\bDirector\b.*\b(Sales|Revenue|Business|Procurement)\b", "economic_buyer", 0.45),
        (r"\bDirector\b.*\b(Ops|Operations|Process|Manufacturing)\b", "champion", 0.45),
        (r"\bDirector\b", "influencer", 0.40),
        # Manager / Lead / Head
        (r"\b(Manager|Lead|Head)\b.*\b" + _TECH, "technical_evaluator", 0.45),
        (r"\b(Manager|Lead|Head)\b.*\b(Project|Program|Process|Ops)\b", "champion", 0.45),
        (r"\b(Manager|Lead|Head)\b", "influencer", 0.40),
        # Functional roles
        (r"\b(Procurement|Purchasing|Buyer|Supply Chain)\b", "influencer", 0.50),
        (r"\b(Legal|Counsel|Attorney|Compliance)\b", "influencer", 0.50),
        (r"\b(Engineer|Developer|Architect|Scientist)\b", "end_user", 0.45),
        (r"\b(Analyst|Consultant)\b", "influencer", 0.35),
        (r"\b(Intern|Assistant|Coordinator)\b", "end_user", 0.30),
    )
)

SENIOR_TITLE_RE = re.compile(r"(VP|Director|Chief|Head|Manager|Lead|President)", re.IGNORECASE)


def infer_role_from_title(title: str | None) -> RoleGuess | None:
    if not title or not title.strip():
        return None
    for pattern, guess in TITLE_ROLE_MAP:
        if pattern.search(title):
            return guess
    return None


_TECH_DEPARTMENTS = frozenset({"it", "engineering", "product"})
_BUSINESS_DEPARTMENTS = frozenset({"executive", "finance", "operations"})
_BUDGET_DEPARTMENTS = frozenset({"finance", "operations"})
_IC_LEVELS = frozenset({"ic", "individual_contributor"})


def infer_role_from_enrichment(seniority: str | None, department: str | None) -> RoleGuess | None:
    """Seniority x department lattice for verified enrichment attributes.

    Verified data outranks a parsed title, so the lattice tops out at 0.70
    while title regexes stop at 0.55.
    """
    if not seniority or not department:
        return None
    seniority = seniority.strip().lower()
    department = department.strip().lower()
    technical = department in _TECH_DEPARTMENTS

    if seniority == "c_level":
        if department in _BUSINESS_DEPARTMENTS:
            return RoleGuess("decision_maker", 0.70)
        if technical:
            return RoleGuess("executive_sponsor", 0.70)
        return RoleGuess("decision_maker", 0.65)

    if seniority in ("vp", "svp"):
        if department in _BUDGET_DEPARTMENTS:
            return RoleGuess("economic_buyer", 0.65)
        if technical:
            return RoleGuess("decision_maker", 0.65)
        return RoleGuess("decision_maker", 0.60)

    if seniority == "director":
        return RoleGuess("technical_evaluator", 0.60) if technical else RoleGuess("champion", 0.60)

    if seniority == "manager":
        return RoleGuess("technical_evaluator", 0.55) if technical else RoleGuess("champion", 0.55)

    if seniority in _IC_LEVELS and technical:
        return RoleGuess("technical_evaluator", 0.50)

    return None
