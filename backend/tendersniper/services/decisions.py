"""Client go/no-go decisions, from e-mail links or chat replies."""
import logging
import re
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.models.db_models import OpportunityRow
from tendersniper.models.schemas import (
    DecisionChoice, DecisionOutcome, InboundMessage, InboundReply, OpportunityStatus,
)
from tendersniper.services import db_ops, lifecycle
from tendersniper.services.notifier import Notifier

logger = logging.getLogger(__name__)

AFFIRMATIVE_REPLIES = {"oui", "yes", "ok", "go", "1"}
NEGATIVE_REPLIES = {"non", "no", "stop", "2"}

CLARIFICATION_PROMPT = (
    "Je n'ai pas compris votre réponse. Répondez OUI (ou 1) pour recevoir le dossier, "
    "NON (ou 2) pour passer ce marché."
)
NOTHING_PENDING_REPLY = "Aucune opportunité n'attend votre décision pour le moment."


class InvalidDecisionToken(Exception):
    """Unknown, already consumed, or malformed decision token."""


async def consume_decision_token(
    session: AsyncSession,
    token: str,
    choice: Union[DecisionChoice, str],
    notifier: Optional[Notifier] = None,
) -> DecisionOutcome:
    """
    Apply a client's decision and burn the token.

    The token is cleared in the same conditional UPDATE that sets the
    status, so of two concurrent clicks exactly one wins; the other (and
    any later reuse) raises InvalidDecisionToken.

    On accept, fast-track clients go straight to READY; everyone else gets
    a package request and the admin is alerted. Alert failures are logged
    and never reach the client.
    """
    try:
        choice = DecisionChoice(choice)
    except ValueError:
        raise InvalidDecisionToken(f"unknown choice {choice!r}")
    if not token:
        raise InvalidDecisionToken("empty token")

    opp = await db_ops.get_opportunity_by_token(session, token)
    if opp is None or opp.status != OpportunityStatus.WAITING_CLIENT_DECISION:
        raise InvalidDecisionToken("token not found or no longer valid")
    context = await db_ops.get_opportunity_context(session, opp.id)
    _, tender, client = context
    opportunity_id, tender_title, notice_url = opp.id, tender.title, tender.notice_url
    client_name, fast_track = client.name, bool(client.auto_fulfill_on_accept)

    target = OpportunityStatus.APPROVED if choice == DecisionChoice.ACCEPT else OpportunityStatus.REJECTED
    result = await session.execute(
        update(OpportunityRow)
        .where(
            OpportunityRow.id == opportunity_id,
            OpportunityRow.decision_token == token,
            OpportunityRow.status == OpportunityStatus.WAITING_CLIENT_DECISION,
        )
        .values(status=target, decision_token=None, updated_at=datetime.utcnow())
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidDecisionToken("token already consumed")
    await db_ops.record_status_event(
        session, opportunity_id, OpportunityStatus.WAITING_CLIENT_DECISION, target, f"client {choice.value}",
    )
    await session.commit()
    logger.info(f"Decision: {client_name} chose {choice.value} for opportunity {opportunity_id}")

    if choice == DecisionChoice.REJECT:
        return DecisionOutcome(opportunity_id=opportunity_id, status=target, tender_title=tender_title)

    if fast_track:
        await lifecycle.transition(session, opportunity_id, OpportunityStatus.READY, reason="fast-track client")
        await session.commit()
        return DecisionOutcome(
            opportunity_id=opportunity_id,
            status=OpportunityStatus.READY,
            tender_title=tender_title,
            fast_tracked=True,
        )

    await lifecycle.request_document_package(session, opportunity_id)
    await session.commit()

    notifier = notifier or Notifier()
    results = await notifier.notify_package_requested(client_name, tender_title, opportunity_id, notice_url)
    for r in results:
        if r.error:
            logger.warning(f"Decision: admin alert via {r.channel} failed for {opportunity_id}: {r.error}")

    return DecisionOutcome(
        opportunity_id=opportunity_id,
        status=OpportunityStatus.DCE_REQUESTED,
        tender_title=tender_title,
    )


def normalize_phone(sender_id: str) -> str:
    # Chat gateways prefix the channel, e.g. "whatsapp:+33612345678"
    value = sender_id.split(":", 1)[-1]
    return re.sub(r"[\s.\-()]", "", value)


def interpret_reply(body: str) -> Optional[DecisionChoice]:
    """Map a short reply to a decision; None when it is neither yes nor no."""
    words = re.findall(r"\w+", (body or "").lower())
    if not words:
        return None
    first = words[0]
    if first in AFFIRMATIVE_REPLIES:
        return DecisionChoice.ACCEPT
    if first in NEGATIVE_REPLIES:
        return DecisionChoice.REJECT
    return None


async def handle_inbound_reply(
    session: AsyncSession,
    message: InboundMessage,
    notifier: Optional[Notifier] = None,
) -> InboundReply:
    """Apply a chat reply to the sender's most recent opportunity awaiting a decision."""
    notifier = notifier or Notifier()
    phone = normalize_phone(message.sender_id)
    opp = await db_ops.get_latest_waiting_opportunity_for_phone(session, phone)
    if opp is None:
        logger.info(f"Inbound reply from {phone}: no opportunity awaiting decision")
        return InboundReply(reply=NOTHING_PENDING_REPLY)

    choice = interpret_reply(message.message_body)
    if choice is None:
        return InboundReply(reply=CLARIFICATION_PROMPT, opportunity_id=opp.id, status=opp.status)

    opportunity_id = opp.id
    token = opp.decision_token or await notifier.ensure_decision_token(session, opportunity_id)
    try:
        outcome = await consume_decision_token(session, token, choice, notifier)
    except InvalidDecisionToken:
        return InboundReply(reply=NOTHING_PENDING_REPLY, opportunity_id=opportunity_id)

    if outcome.status == OpportunityStatus.REJECTED:
        reply = f"C'est noté, nous passons « {outcome.tender_title} »."
    elif outcome.fast_tracked:
        reply = f"C'est noté ! Le dossier de « {outcome.tender_title} » est disponible."
    else:
        reply = f"C'est noté ! Nous préparons le dossier de « {outcome.tender_title} »."
    return InboundReply(reply=reply, opportunity_id=outcome.opportunity_id, status=outcome.status)
