"""
Notification dispatcher: decision tokens, client alerts and admin alerts.

Every send returns a DispatchResult and never raises. Callers decide whether
to look at it; a failed alert never undoes or blocks the operation that
triggered it. A channel without credentials logs the message instead (mock
mode) and reports skipped=True.
"""
import logging
import uuid
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import ClientSummary, DceFile, DispatchResult
from tendersniper.services import db_ops
from tendersniper.services.email_alerts import (
    build_admin_alert_html, build_opportunity_alert_html, build_package_ready_html, send_email,
)

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class Notifier:
    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    # ------------------------------------------------------------------
    # Decision tokens
    # ------------------------------------------------------------------

    async def ensure_decision_token(self, session: AsyncSession, opportunity_id: str) -> str:
        """Issue a token on first need; an existing token is reused, never replaced."""
        token = await db_ops.set_decision_token_if_absent(session, opportunity_id, str(uuid.uuid4()))
        if token is None:
            raise LookupError(f"Opportunity {opportunity_id} not found")
        return token

    def decision_links(self, token: str) -> tuple[str, str]:
        base = self.settings.public_base_url.rstrip("/")
        return (
            f"{base}/api/v1/decision/{token}/accept",
            f"{base}/api/v1/decision/{token}/reject",
        )

    # ------------------------------------------------------------------
    # Client messages
    # ------------------------------------------------------------------

    async def send_opportunity_alert(self, session: AsyncSession, opportunity_id: str) -> DispatchResult:
        """
        E-mail the client a validated opportunity with accept / reject links.

        The token is committed before anything is sent so the links in the
        message always resolve.
        """
        try:
            context = await db_ops.get_opportunity_context(session, opportunity_id)
            if context is None:
                return DispatchResult(channel="email", error=f"opportunity {opportunity_id} not found")
            opp, tender, client = context

            token = await self.ensure_decision_token(session, opportunity_id)
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Notifier: could not prepare alert for {opportunity_id}: {e}")
            return DispatchResult(channel="email", error=str(e))

        accept_url, reject_url = self.decision_links(token)
        analysis = opp.analysis or {}
        summary = None
        if analysis.get("client_summary"):
            try:
                summary = ClientSummary.model_validate(analysis["client_summary"])
            except ValueError as e:
                logger.warning(f"Notifier: stored client summary unreadable for {opportunity_id}: {e}")

        html = build_opportunity_alert_html(
            client_name=client.name,
            tender_title=tender.title,
            accept_url=accept_url,
            reject_url=reject_url,
            summary=summary,
            reasoning=analysis.get("reasoning", ""),
            score=opp.match_score or 0.0,
            notice_url=tender.notice_url,
        )
        result = await send_email(client.email, f"Opportunité : {tender.title[:120]}", html, self.settings)
        if result.skipped:
            logger.info(f"Notifier: accept link for {opportunity_id}: {accept_url}")
        return result

    async def send_package_ready(
        self,
        recipient: Optional[str],
        client_name: str,
        tender_title: str,
        files: list[DceFile],
    ) -> DispatchResult:
        html = build_package_ready_html(client_name, tender_title, files, self.settings.public_base_url)
        return await send_email(recipient, f"Dossier prêt : {tender_title[:120]}", html, self.settings)

    # ------------------------------------------------------------------
    # Admin alerts
    # ------------------------------------------------------------------

    async def send_telegram(self, message: str) -> DispatchResult:
        token = self.settings.telegram_bot_token
        chat_id = self.settings.telegram_admin_chat_id
        if not token or not chat_id:
            logger.info(f"[MOCK TELEGRAM] credentials missing. Message: {message}")
            return DispatchResult(channel="telegram", skipped=True)

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(
                    TELEGRAM_API_URL.format(token=token),
                    json={"chat_id": chat_id, "text": message, "disable_web_page_preview": True},
                )
            if response.status_code != 200:
                logger.error(f"Telegram API error: {response.status_code}")
                return DispatchResult(channel="telegram", error=f"Telegram status {response.status_code}")
            return DispatchResult(channel="telegram", sent=True)
        except Exception as e:
            logger.error(f"Telegram alert failed: {e}")
            return DispatchResult(channel="telegram", error=str(e))

    async def send_admin_alert(self, message: str, subject: str = "Tender Sniper : alerte") -> list[DispatchResult]:
        """Telegram and the admin mailbox. Returns one result per channel."""
        results = [await self.send_telegram(message)]
        if self.settings.admin_email:
            results.append(await send_email(
                self.settings.admin_email, subject, build_admin_alert_html(message), self.settings,
            ))
        return results

    async def notify_validated_opportunity(
        self, client_name: str, tender_title: str, score: float, opportunity_id: str,
    ) -> list[DispatchResult]:
        message = (
            f"🎯 Nouvelle opportunité validée pour {client_name}\n"
            f"{tender_title}\n"
            f"Score : {score:.0f}/100\n"
            f"ID : {opportunity_id}"
        )
        return await self.send_admin_alert(message, "Tender Sniper : opportunité validée")

    async def notify_package_requested(
        self, client_name: str, tender_title: str, opportunity_id: str, notice_url: Optional[str] = None,
    ) -> list[DispatchResult]:
        message = (
            f"📥 {client_name} veut le DCE\n"
            f"{tender_title}\n"
            f"Avis : {notice_url or 'n/a'}\n"
            f"Dépôt : {self.settings.public_base_url.rstrip('/')}/api/v1/admin/opportunities/{opportunity_id}/dce"
        )
        return await self.send_admin_alert(message, "Tender Sniper : DCE demandé")
