"""Tests for the opportunity status graph."""
from datetime import datetime

import pytest

from tendersniper.models.schemas import (
    ClientSummary, FulfillmentStatus, OpportunityStatus, ScreeningDecision, ScreeningResult, StatusEvent,
)
from tendersniper.services import db_ops, lifecycle

S = OpportunityStatus


def _event(from_status, to_status, reason=""):
    return StatusEvent(from_status=from_status, to_status=to_status, reason=reason, created_at=datetime(2026, 10, 1))


class TestGraph:
    @pytest.mark.parametrize("current,target", [
        (S.ANALYSIS_PENDING, S.WAITING_CLIENT_DECISION),
        (S.ANALYSIS_PENDING, S.AUTO_REJECTED),
        (S.WAITING_CLIENT_DECISION, S.APPROVED),
        (S.WAITING_CLIENT_DECISION, S.REJECTED),
        (S.APPROVED, S.DCE_REQUESTED),
        (S.APPROVED, S.READY),
        (S.DCE_REQUESTED, S.EXTRACTED),
        (S.EXTRACTED, S.READY),
    ])
    def test_declared_edges(self, current, target):
        assert lifecycle.can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        (S.ANALYSIS_PENDING, S.APPROVED),
        (S.WAITING_CLIENT_DECISION, S.READY),
        (S.REJECTED, S.APPROVED),
        (S.AUTO_REJECTED, S.WAITING_CLIENT_DECISION),
        (S.READY, S.DCE_REQUESTED),
    ])
    def test_undeclared_edges(self, current, target):
        assert lifecycle.can_transition(current, target) is False

    def test_terminal_states(self):
        assert lifecycle.TERMINAL_STATES == {S.AUTO_REJECTED, S.REJECTED, S.READY}


class TestHistoryFollowsGraph:
    def test_full_path(self):
        events = [
            _event(None, S.ANALYSIS_PENDING, "sourced"),
            _event(S.ANALYSIS_PENDING, S.WAITING_CLIENT_DECISION),
            _event(S.WAITING_CLIENT_DECISION, S.APPROVED),
            _event(S.APPROVED, S.DCE_REQUESTED),
            _event(S.DCE_REQUESTED, S.EXTRACTED),
            _event(S.EXTRACTED, S.READY),
        ]
        assert lifecycle.history_follows_graph(events) is True

    def test_reanalysis_reset_allowed(self):
        events = [
            _event(None, S.ANALYSIS_PENDING),
            _event(S.ANALYSIS_PENDING, S.AUTO_REJECTED),
            _event(S.AUTO_REJECTED, S.ANALYSIS_PENDING, lifecycle.REANALYSIS_REASON),
        ]
        assert lifecycle.history_follows_graph(events) is True

    def test_skipped_state_rejected(self):
        events = [_event(None, S.ANALYSIS_PENDING), _event(S.ANALYSIS_PENDING, S.APPROVED)]
        assert lifecycle.history_follows_graph(events) is False

    def test_broken_chain_rejected(self):
        events = [_event(None, S.ANALYSIS_PENDING), _event(S.APPROVED, S.READY)]
        assert lifecycle.history_follows_graph(events) is False

    def test_back_to_pending_without_reset_rejected(self):
        events = [
            _event(None, S.ANALYSIS_PENDING),
            _event(S.ANALYSIS_PENDING, S.AUTO_REJECTED),
            _event(S.AUTO_REJECTED, S.ANALYSIS_PENDING),
        ]
        assert lifecycle.history_follows_graph(events) is False


class TestTransition:
    async def test_applies_and_records(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())

        moved = await lifecycle.transition(session, opportunity_id, S.WAITING_CLIENT_DECISION, reason="test")
        await session.commit()

        assert moved is True
        row = await db_ops.get_opportunity_row(session, opportunity_id)
        assert row.status == S.WAITING_CLIENT_DECISION
        events = await db_ops.list_status_events(session, opportunity_id)
        assert events[-1].from_status == S.ANALYSIS_PENDING
        assert events[-1].reason == "test"

    async def test_same_status_is_noop(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())

        assert await lifecycle.transition(session, opportunity_id, S.ANALYSIS_PENDING) is False
        assert len(await db_ops.list_status_events(session, opportunity_id)) == 1

    async def test_invalid_edge_raises(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender(), status=S.REJECTED)

        with pytest.raises(lifecycle.InvalidTransitionError):
            await lifecycle.transition(session, opportunity_id, S.APPROVED)

    async def test_unknown_opportunity(self, session):
        with pytest.raises(lifecycle.OpportunityNotFoundError):
            await lifecycle.transition(session, "missing", S.APPROVED)


class TestApplyScreening:
    async def test_validated_waits_for_client(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())
        result = ScreeningResult(
            decision=ScreeningDecision.VALIDATED,
            reasoning="Bon profil",
            score=82,
            client_summary=ClientSummary(title="Nettoyage"),
        )

        status = await lifecycle.apply_screening(session, opportunity_id, result)
        await session.commit()

        assert status == S.WAITING_CLIENT_DECISION
        row = await db_ops.get_opportunity_row(session, opportunity_id)
        assert row.match_score == 82
        assert row.analysis["reasoning"] == "Bon profil"
        assert row.processed_at is not None

    async def test_rejected_is_auto_rejected(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())
        result = ScreeningResult(decision=ScreeningDecision.REJECTED, reasoning="Hors périmètre", score=10)

        assert await lifecycle.apply_screening(session, opportunity_id, result) == S.AUTO_REJECTED

    async def test_fallback_refused(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())
        result = ScreeningResult(decision=ScreeningDecision.REJECTED, reasoning="n/a", fallback=True)

        with pytest.raises(ValueError):
            await lifecycle.apply_screening(session, opportunity_id, result)


class TestReanalysis:
    async def test_reset_clears_verdict_and_tickets(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(
            client.id, await seed.tender(),
            status=S.DCE_REQUESTED, analysis={"reasoning": "old"}, match_score=70.0, decision_token="tok",
        )
        await db_ops.open_fulfillment_request(session, opportunity_id)
        await session.commit()

        previous = await lifecycle.reset_for_reanalysis(session, opportunity_id)
        await session.commit()

        assert previous == S.DCE_REQUESTED
        row = await db_ops.get_opportunity_row(session, opportunity_id)
        assert row.status == S.ANALYSIS_PENDING
        assert row.analysis is None
        assert row.match_score == 0.0
        assert row.decision_token is None
        tickets = await db_ops.list_fulfillment_requests(session, opportunity_id)
        assert all(t.status == FulfillmentStatus.READY for t in tickets)
        events = await db_ops.list_status_events(session, opportunity_id)
        assert events[-1].reason == lifecycle.REANALYSIS_REASON


class TestRequestDocumentPackage:
    async def test_from_approved_opens_ticket(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender(), status=S.APPROVED)

        assert await lifecycle.request_document_package(session, opportunity_id) is True
        await session.commit()

        row = await db_ops.get_opportunity_row(session, opportunity_id)
        assert row.status == S.DCE_REQUESTED
        assert len(await db_ops.list_fulfillment_requests(session, opportunity_id)) == 1

    async def test_repeat_request_is_idempotent(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender(), status=S.APPROVED)

        await lifecycle.request_document_package(session, opportunity_id)
        assert await lifecycle.request_document_package(session, opportunity_id) is False
        await session.commit()

        assert len(await db_ops.list_fulfillment_requests(session, opportunity_id)) == 1

    async def test_refused_before_approval(self, seed, session):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender(), status=S.WAITING_CLIENT_DECISION)

        with pytest.raises(lifecycle.InvalidTransitionError):
            await lifecycle.request_document_package(session, opportunity_id)
