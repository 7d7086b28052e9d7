"""Orchestrator for the contact-role resolution chain.

Stages run strictly in priority order; each is a barrier.  A stage first reads
current state and builds its proposals, then applies them on a bounded worker
pool partitioned by deal, so every (deal, contact, source) key has a single
writer.  Later stages see everything earlier stages committed.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from rolescout import boost, resolvers
from rolescout.config import Settings, get_settings
from rolescout.db import SessionFactory, get_session, session_scope
from rolescout.gate import Proposal, try_assign
from rolescout.schemas import NewDiscoveries, ResolutionResult
from rolescout.signals import DealScope
from rolescout.stats import compute_statistics

log = logging.getLogger(__name__)


class ResolutionAborted(Exception):
    """Storage failed mid-run; rows committed by completed stages are kept."""
    def __init__(self, stage: str, completed: dict[str, int]):
        super().__init__(f"Role resolution aborted during stage {stage!r}")
        self.stage = stage
        self.completed = completed


@dataclass(frozen=True)
class Stage:
    name: str
    propose: Callable[[Session, DealScope], list[Any]]
    apply: Callable[[Session, Any], bool] | None = None  # None -> gated proposal


STAGES: tuple[Stage, ...] = (
    Stage("normalized", resolvers.propose_normalization, resolvers.apply_normalization),
    Stage(resolvers.CRM_DEAL_FIELD, resolvers.propose_crm_deal_fields),
    Stage(resolvers.CONVERSATION_PARTICIPANT, resolvers.propose_conversation_participants),
    Stage(resolvers.CROSS_DEAL_MATCH, resolvers.propose_cross_deal_matches),
    Stage("title_inference", resolvers.propose_title_inference),
    Stage(resolvers.ACTIVITY_INFERENCE, resolvers.propose_activity_inference),
    Stage("enrichment_boost", boost.propose_boosts, boost.apply_boost),
    Stage(resolvers.ACTIVITY_DISCOVERY, resolvers.propose_activity_discovery),
    Stage(resolvers.ACCOUNT_SENIORITY_MATCH, resolvers.propose_account_discovery),
)


def _deal_of(item: Any) -> str:
    return item.candidate.deal_id if isinstance(item, Proposal) else item.deal_id


def _apply_batch(
    stage: Stage, workspace_id: str, items: list[Any], session_factory: SessionFactory,
) -> int:
    written = 0
    with session_scope(session_factory) as session:
        for item in items:
            if stage.apply is not None:
                ok = stage.apply(session, item)
            else:
                ok = try_assign(session, workspace_id, item.candidate, item.gate)
            written += int(ok)
    return written


def _run_stage(
    stage: Stage, scope: DealScope, session_factory: SessionFactory, concurrency: int,
) -> int:
    with session_scope(session_factory) as session:
        items = stage.propose(session, scope)
    if not items:
        log.info("[%s] no candidates", stage.name)
        return 0

    by_deal: dict[str, list[Any]] = defaultdict(list)
    for item in items:
        by_deal[_deal_of(item)].append(item)

    if concurrency <= 1 or len(by_deal) == 1:
        written = sum(
            _apply_batch(stage, scope.workspace_id, batch, session_factory) for batch in by_deal.values()
        )
    else:
        written = 0
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            futures = {
                executor.submit(_apply_batch, stage, scope.workspace_id, batch, session_factory): deal_id
                for deal_id, batch in by_deal.items()
            }
            for future in as_completed(futures):
                written += future.result()

    log.info("[%s] %d written from %d candidates across %d deals", stage.name, written, len(items), len(by_deal))
    return written


def resolve_roles(
    workspace_id: str,
    deal_id: str | None = None,
    *,
    include_closed_deals: bool = False,
    session_factory: SessionFactory | None = None,
    concurrency: int | None = None,
    settings: Settings | None = None,
) -> ResolutionResult:
    """Run the full priority chain for a workspace (or one deal) and report on it.

    Raises ResolutionAborted when storage becomes unreachable; the exception
    carries the failing stage and the per-stage counts completed so far.
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session
    concurrency = max(1, concurrency if concurrency is not None else settings.concurrency)
    scope = DealScope(workspace_id, deal_id, include_closed_deals)
    started = time.perf_counter()

    log.info(
        "Resolving contact roles for workspace %s (deal=%s, include_closed=%s, concurrency=%d)",
        workspace_id, deal_id or "*", include_closed_deals, concurrency,
    )

    counts: dict[str, int] = {}
    for stage in STAGES:
        try:
            counts[stage.name] = _run_stage(stage, scope, session_factory, concurrency)
        except DBAPIError as exc:
            log.error("Stage %s failed: %s", stage.name, exc)
            raise ResolutionAborted(stage.name, dict(counts)) from exc

    try:
        with session_scope(session_factory) as session:
            stats = compute_statistics(session, scope, settings.threading_rule)
    except DBAPIError as exc:
        log.error("Statistics failed: %s", exc)
        raise ResolutionAborted("statistics", dict(counts)) from exc

    execution_ms = int((time.perf_counter() - started) * 1000)
    log.info(
        "Resolution complete for workspace %s in %dms: %d rows across %d deals",
        workspace_id, execution_ms, stats.contacts_resolved.total, stats.total_deals,
    )
    return ResolutionResult(
        **stats.model_dump(),
        deals_processed=stats.total_deals,
        stage_counts=counts,
        new_discoveries=NewDiscoveries(
            from_activities=counts.get(resolvers.ACTIVITY_DISCOVERY, 0),
            from_conversations=counts.get(resolvers.CONVERSATION_PARTICIPANT, 0),
            from_account_match=counts.get(resolvers.ACCOUNT_SENIORITY_MATCH, 0),
        ),
        execution_ms=execution_ms,
    )
