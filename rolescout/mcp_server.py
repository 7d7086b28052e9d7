from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from rolescout import services
from rolescout.config import ConfigValidationError
from rolescout.db import init_db, session_scope
from rolescout.engine import ResolutionAborted, resolve_roles
from rolescout.report import NOMINAL_CONFIDENCE, generate_resolution_report
from rolescout.taxonomy import CANONICAL_ROLES

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def rolescout_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "RoleScout",
    instructions=(
        "RoleScout resolves the buying role each contact plays on a CRM deal. "
        "Run resolve_contact_roles(workspace_id) to refresh assignments, then "
        "get_role_statistics() for coverage and get_deal_contacts() to inspect a deal."
    ),
    lifespan=rolescout_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("rolescout://overview")
def rolescout_overview() -> str:
    """Overview of RoleScout: roles, sources and workflow."""
    return json.dumps({
        "system": "RoleScout - buying-role resolution for CRM deals",
        "description": (
            "Fuses CRM contact roles, deal custom fields, conversation participants, sibling deals, "
            "titles, verified enrichment and activity patterns into one role per (deal, contact), "
            "never letting a weaker signal overwrite a stronger one."
        ),
        "roles": sorted(CANONICAL_ROLES),
        "sources": NOMINAL_CONFIDENCE,
        "workflow": [
            "1. resolve_contact_roles(workspace_id) - run the resolution chain.",
            "2. get_role_statistics(workspace_id) - coverage and threading quality.",
            "3. get_deal_contacts(workspace_id, deal_id) - assignments on one deal.",
            "4. set_role_field_mappings(workspace_id, mappings) - teach it custom CRM fields.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Resolution
# ---------------------------------------------------------------------------


@mcp.tool()
def resolve_contact_roles(
    workspace_id: str, deal_id: str | None = None, include_closed_deals: bool = False,
) -> dict:
    """Resolve buying roles for every contact on open deals (or one deal).

    Args:
        workspace_id: Workspace to resolve.
        deal_id: Optional single deal to scope the run to.
        include_closed_deals: Also process closed_won / closed_lost deals.
    """
    try:
        result = resolve_roles(workspace_id, deal_id, include_closed_deals=include_closed_deals)
    except ResolutionAborted as exc:
        return {"error": str(exc), "stage": exc.stage, "completed": exc.completed}
    return result.model_dump()


@mcp.tool()
def generate_contact_role_report(
    workspace_id: str, deal_id: str | None = None, include_closed_deals: bool = False,
) -> dict:
    """Run resolution and return a markdown report alongside the raw result."""
    try:
        result = resolve_roles(workspace_id, deal_id, include_closed_deals=include_closed_deals)
    except ResolutionAborted as exc:
        return {"error": str(exc), "stage": exc.stage, "completed": exc.completed}
    return {"report": generate_resolution_report(result), "result": result.model_dump()}


# ---------------------------------------------------------------------------
# Tools: Inspection
# ---------------------------------------------------------------------------


@mcp.tool()
def get_deal_contacts(workspace_id: str, deal_id: str) -> dict:
    """List the contacts linked to a deal with their resolved roles and confidence."""
    with session_scope() as session:
        if not services.deal_exists(session, workspace_id, deal_id):
            return {"error": f"Deal {deal_id} not found"}
        contacts = services.get_deal_contacts(session, workspace_id, deal_id)
        return {"deal_id": deal_id, "contacts": [c.model_dump() for c in contacts]}


@mcp.tool()
def get_role_statistics(
    workspace_id: str, deal_id: str | None = None, include_closed_deals: bool = False,
) -> dict:
    """Coverage statistics over current assignments, without running resolution."""
    with session_scope() as session:
        return services.role_statistics(session, workspace_id, deal_id, include_closed_deals).model_dump()


# ---------------------------------------------------------------------------
# Tools: Configuration
# ---------------------------------------------------------------------------


@mcp.tool()
def get_role_field_mappings(workspace_id: str) -> dict:
    """Show the built-in and custom CRM field -> buying role mappings."""
    with session_scope() as session:
        return services.describe_mappings(session, workspace_id)


@mcp.tool()
def set_role_field_mappings(workspace_id: str, mappings: dict[str, str], updated_by: str = "mcp") -> dict:
    """Replace the workspace's custom field mappings, e.g. {"Sponsor__c": "champion"}."""
    with session_scope() as session:
        try:
            return services.update_mappings(session, workspace_id, mappings, updated_by=updated_by)
        except ConfigValidationError as exc:
            return {"error": str(exc), "field": exc.field}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the RoleScout MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
