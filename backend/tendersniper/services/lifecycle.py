"""
Opportunity lifecycle: the status graph and the only code allowed to move an
opportunity along it.

    ANALYSIS_PENDING → AUTO_REJECTED | WAITING_CLIENT_DECISION
    WAITING_CLIENT_DECISION → APPROVED | REJECTED
    APPROVED → DCE_REQUESTED | READY (fast-track clients)
    DCE_REQUESTED → EXTRACTED → READY

Every move is a conditional UPDATE on the status the caller saw, so a change
made concurrently by another request is refused instead of overwritten. Each
applied move appends a StatusEvent. Going back to ANALYSIS_PENDING is only
possible through reset_for_reanalysis().
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.models.db_models import OpportunityRow
from tendersniper.models.schemas import (
    OpportunityStatus, ScreeningDecision, ScreeningResult, StatusEvent,
)
from tendersniper.services import db_ops

logger = logging.getLogger(__name__)

S = OpportunityStatus

ALLOWED_TRANSITIONS: dict[OpportunityStatus, frozenset[OpportunityStatus]] = {
    S.ANALYSIS_PENDING: frozenset({S.AUTO_REJECTED, S.WAITING_CLIENT_DECISION}),
    S.AUTO_REJECTED: frozenset(),
    S.WAITING_CLIENT_DECISION: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.DCE_REQUESTED, S.READY}),
    S.REJECTED: frozenset(),
    S.DCE_REQUESTED: frozenset({S.EXTRACTED}),
    S.EXTRACTED: frozenset({S.READY}),
    S.READY: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

REANALYSIS_REASON = "reanalysis"


class OpportunityNotFoundError(LookupError):
    pass


class InvalidTransitionError(Exception):
    """Raised when a status change is not on the graph or lost a race."""

    def __init__(self, opportunity_id: str, current: Optional[OpportunityStatus], target: OpportunityStatus,
                 detail: str = ""):
        self.opportunity_id = opportunity_id
        self.current = current
        self.target = target
        current_name = current.value if current else "?"
        message = f"Opportunity {opportunity_id}: {current_name} → {target.value} not allowed"
        super().__init__(f"{message} ({detail})" if detail else message)


def can_transition(current: OpportunityStatus, target: OpportunityStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def history_follows_graph(events: Iterable[StatusEvent]) -> bool:
    """
    True if a status history only uses declared edges.

    The first event is the creation (no from_status, into ANALYSIS_PENDING);
    later moves into ANALYSIS_PENDING must be re-analysis resets.
    """
    previous: Optional[OpportunityStatus] = None
    for i, event in enumerate(events):
        if i == 0:
            if event.from_status is not None or event.to_status != S.ANALYSIS_PENDING:
                return False
        elif event.from_status != previous:
            return False
        elif event.to_status == S.ANALYSIS_PENDING:
            if event.reason != REANALYSIS_REASON:
                return False
        elif not can_transition(event.from_status, event.to_status):
            return False
        previous = event.to_status
    return True


async def _load(session: AsyncSession, opportunity_id: str) -> OpportunityRow:
    row = await db_ops.get_opportunity_row(session, opportunity_id)
    if row is None:
        raise OpportunityNotFoundError(f"Opportunity {opportunity_id} not found")
    return row


async def transition(
    session: AsyncSession,
    opportunity_id: str,
    target: OpportunityStatus,
    reason: str = "",
    **values,
) -> bool:
    """
    Move an opportunity to `target`, writing any extra column `values` in the
    same UPDATE.

    Returns False when the opportunity is already in `target` (no-op, nothing
    written), True when the move was applied. Raises InvalidTransitionError
    for an undeclared edge or when the status changed underneath us.
    """
    row = await _load(session, opportunity_id)
    current = row.status
    if current == target:
        return False
    if not can_transition(current, target):
        raise InvalidTransitionError(opportunity_id, current, target)

    result = await session.execute(
        update(OpportunityRow)
        .where(OpportunityRow.id == opportunity_id, OpportunityRow.status == current)
        .values(status=target, updated_at=datetime.utcnow(), **values)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(opportunity_id, current, target, "status changed concurrently")

    await db_ops.record_status_event(session, opportunity_id, current, target, reason)
    logger.info(f"Opportunity {opportunity_id}: {current.value} → {target.value}"
                + (f" ({reason})" if reason else ""))
    return True


async def apply_screening(
    session: AsyncSession,
    opportunity_id: str,
    result: ScreeningResult,
) -> OpportunityStatus:
    """Record an AI verdict and move out of ANALYSIS_PENDING."""
    if result.fallback:
        # A fallback verdict was never actually screened
        raise ValueError("refusing to apply a fallback screening result")
    target = (
        S.WAITING_CLIENT_DECISION
        if result.decision == ScreeningDecision.VALIDATED
        else S.AUTO_REJECTED
    )
    await transition(
        session,
        opportunity_id,
        target,
        reason="screening",
        analysis=result.analysis_payload(),
        match_score=result.score,
        processed_at=datetime.utcnow(),
    )
    return target


async def reset_for_reanalysis(session: AsyncSession, opportunity_id: str) -> OpportunityStatus:
    """
    Send an opportunity back to ANALYSIS_PENDING from any state.

    The stale analysis, score, decision token and processed_at are cleared in
    the same UPDATE, and any open fulfillment ticket is closed. Returns the
    status the opportunity had before the reset.
    """
    row = await _load(session, opportunity_id)
    current = row.status

    result = await session.execute(
        update(OpportunityRow)
        .where(OpportunityRow.id == opportunity_id, OpportunityRow.status == current)
        .values(
            status=S.ANALYSIS_PENDING,
            analysis=None,
            match_score=0.0,
            decision_token=None,
            processed_at=None,
            updated_at=datetime.utcnow(),
        )
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(opportunity_id, current, S.ANALYSIS_PENDING, "status changed concurrently")

    await db_ops.close_fulfillment_requests(session, opportunity_id)
    if current != S.ANALYSIS_PENDING:
        await db_ops.record_status_event(session, opportunity_id, current, S.ANALYSIS_PENDING, REANALYSIS_REASON)
    logger.info(f"Opportunity {opportunity_id}: reset for re-analysis (was {current.value})")
    return current


async def request_document_package(session: AsyncSession, opportunity_id: str) -> bool:
    """
    APPROVED → DCE_REQUESTED and open a fulfillment ticket.

    Idempotent: on an opportunity already in DCE_REQUESTED this only makes
    sure a ticket is open. Returns True if the status moved.
    """
    row = await _load(session, opportunity_id)
    if row.status == S.DCE_REQUESTED:
        await db_ops.open_fulfillment_request(session, opportunity_id)
        return False
    if row.status != S.APPROVED:
        raise InvalidTransitionError(opportunity_id, row.status, S.DCE_REQUESTED)

    moved = await transition(session, opportunity_id, S.DCE_REQUESTED, reason="package requested")
    await db_ops.open_fulfillment_request(session, opportunity_id)
    return moved
