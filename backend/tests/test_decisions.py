"""Tests for client decisions: one-time links and chat replies."""
import pytest

from tendersniper.models.schemas import InboundMessage, OpportunityStatus
from tendersniper.services import db_ops, lifecycle
from tendersniper.services.decisions import (
    CLARIFICATION_PROMPT, NOTHING_PENDING_REPLY, InvalidDecisionToken,
    consume_decision_token, handle_inbound_reply, interpret_reply, normalize_phone,
)

S = OpportunityStatus


async def _waiting(seed, token="tok-1", **client_overrides):
    client = await seed.client(**client_overrides)
    return await seed.opportunity(
        client.id, await seed.tender(), status=S.WAITING_CLIENT_DECISION, decision_token=token,
    )


class TestConsumeDecisionToken:
    async def test_accept_requests_package(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed)

        outcome = await consume_decision_token(session, "tok-1", "accept", recording_notifier)

        assert outcome.status == S.DCE_REQUESTED
        assert outcome.fast_tracked is False
        row = await seed.opportunity_row(opportunity_id)
        assert row.status == S.DCE_REQUESTED
        assert row.decision_token is None
        assert len(await db_ops.list_fulfillment_requests(session, opportunity_id)) == 1
        assert recording_notifier.admin_messages == [("package", opportunity_id)]

    async def test_reject_is_terminal(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed)

        outcome = await consume_decision_token(session, "tok-1", "reject", recording_notifier)

        assert outcome.status == S.REJECTED
        assert (await seed.opportunity_row(opportunity_id)).status == S.REJECTED
        assert recording_notifier.admin_messages == []

    async def test_token_cannot_be_reused(self, seed, session, recording_notifier):
        await _waiting(seed)
        await consume_decision_token(session, "tok-1", "reject", recording_notifier)

        with pytest.raises(InvalidDecisionToken):
            await consume_decision_token(session, "tok-1", "accept", recording_notifier)

    async def test_unknown_token(self, session, recording_notifier):
        with pytest.raises(InvalidDecisionToken):
            await consume_decision_token(session, "nope", "accept", recording_notifier)

    async def test_bad_choice(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed)
        with pytest.raises(InvalidDecisionToken):
            await consume_decision_token(session, "tok-1", "maybe", recording_notifier)
        assert (await seed.opportunity_row(opportunity_id)).status == S.WAITING_CLIENT_DECISION

    async def test_fast_track_client_goes_ready(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed, auto_fulfill_on_accept=True)

        outcome = await consume_decision_token(session, "tok-1", "accept", recording_notifier)

        assert outcome.fast_tracked is True
        assert outcome.status == S.READY
        assert await db_ops.list_fulfillment_requests(session, opportunity_id) == []
        events = await db_ops.list_status_events(session, opportunity_id)
        assert [e.to_status for e in events][-2:] == [S.APPROVED, S.READY]

    async def test_history_stays_on_graph(self, seed, session, recording_notifier):
        client = await seed.client()
        opportunity_id = await seed.opportunity(client.id, await seed.tender())
        await lifecycle.transition(session, opportunity_id, S.WAITING_CLIENT_DECISION)
        token = await recording_notifier.ensure_decision_token(session, opportunity_id)
        await session.commit()

        await consume_decision_token(session, token, "accept", recording_notifier)

        events = await db_ops.list_status_events(session, opportunity_id)
        assert lifecycle.history_follows_graph(events) is True


class TestInboundReplies:
    @pytest.mark.parametrize("body,expected", [
        ("OUI", "accept"), ("oui merci", "accept"), ("1", "accept"), ("Ok !", "accept"),
        ("NON", "reject"), ("2", "reject"), ("stop", "reject"),
        ("peut-être", None), ("", None), ("merci oui", None),
    ])
    def test_interpret_reply(self, body, expected):
        choice = interpret_reply(body)
        assert (choice.value if choice else None) == expected

    def test_normalize_phone(self):
        assert normalize_phone("whatsapp:+33 6 12-34.56.78") == "+33612345678"

    async def test_yes_applies_to_latest_waiting(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed)

        reply = await handle_inbound_reply(
            session, InboundMessage(sender_id="whatsapp:+33612345678", message_body="Oui"), recording_notifier,
        )

        assert reply.opportunity_id == opportunity_id
        assert reply.status == S.DCE_REQUESTED

    async def test_unrecognized_reply_asks_again(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed)

        reply = await handle_inbound_reply(
            session, InboundMessage(sender_id="+33612345678", message_body="Combien ?"), recording_notifier,
        )

        assert reply.reply == CLARIFICATION_PROMPT
        assert (await seed.opportunity_row(opportunity_id)).status == S.WAITING_CLIENT_DECISION

    async def test_nothing_pending(self, session, recording_notifier):
        reply = await handle_inbound_reply(
            session, InboundMessage(sender_id="+33700000000", message_body="oui"), recording_notifier,
        )
        assert reply.reply == NOTHING_PENDING_REPLY
        assert reply.opportunity_id is None

    async def test_opportunity_without_token_gets_one(self, seed, session, recording_notifier):
        opportunity_id = await _waiting(seed, token=None)

        reply = await handle_inbound_reply(
            session, InboundMessage(sender_id="+33612345678", message_body="non"), recording_notifier,
        )

        assert reply.status == S.REJECTED
        assert (await seed.opportunity_row(opportunity_id)).status == S.REJECTED
