"""Pydantic result schemas returned by the engine, CLI and MCP server."""
from __future__ import annotations

from pydantic import BaseModel


class ContactsResolved(BaseModel):
    total: int = 0
    by_source: dict[str, int] = {}


class NewDiscoveries(BaseModel):
    from_activities: int = 0
    from_conversations: int = 0
    from_account_match: int = 0

    @property
    def total(self) -> int:
        return self.from_activities + self.from_conversations + self.from_account_match


class RoleStatistics(BaseModel):
    total_deals: int = 0
    contacts_resolved: ContactsResolved = ContactsResolved()
    role_distribution: dict[str, int] = {}
    deals_with_no_contacts: int = 0
    deals_with_no_roles: int = 0
    deals_with_champion: int = 0
    deals_with_economic_buyer: int = 0
    deals_fully_threaded: int = 0
    avg_contacts_per_deal: float = 0.0
    avg_roles_per_deal: float = 0.0
    deals_by_role: dict[str, int] = {}


class ResolutionResult(RoleStatistics):
    deals_processed: int = 0
    stage_counts: dict[str, int] = {}
    new_discoveries: NewDiscoveries = NewDiscoveries()
    execution_ms: int = 0


class DealContactOut(BaseModel):
    id: int
    deal_id: str
    contact_id: str
    name: str
    email: str | None = None
    title: str | None = None
    source: str
    buying_role: str | None = None
    role_source: str | None = None
    role_confidence: float | None = None
    seniority_verified: str | None = None
    department_verified: str | None = None
