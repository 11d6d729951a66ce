"""
Sourcing agent: one batch run of the Tender Sniper pipeline.

Phase 1 (sourcing), per active client: fetch BOAMP notices since the
client's watermark, keep the ones the matcher accepts, upsert each tender
and open an ANALYSIS_PENDING opportunity for the pair. Then move the
watermark forward.

Phase 2 (screening): take the oldest pending opportunities, up to
SCREENING_BATCH_SIZE, screen each with the AI and notify the client of
validated ones. Whatever does not fit in the batch waits for the next run.

One failing client, record or opportunity is rolled back, counted and
logged; the rest of the batch carries on.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tendersniper.core.config import get_settings
from tendersniper.core.database import get_session_factory
from tendersniper.models.schemas import (
    BatchStats, ClientProfile, FetchResult, OpportunityStatus, SniperRules,
)
from tendersniper.services import db_ops, lifecycle
from tendersniper.services.analyzer import TenderScreener
from tendersniper.services.boamp_api import BoampClient
from tendersniper.services.matcher import MatchingEngine
from tendersniper.services.notifier import Notifier
from tendersniper.services.piste_auth import PisteAuthClient

logger = logging.getLogger(__name__)


def build_screening_text(title: str, summary: str, deadline: Optional[datetime], full_text: Optional[str]) -> str:
    parts = [title]
    if summary:
        parts.append(summary)
    if deadline:
        parts.append(f"Date limite de réception des offres : {deadline:%d/%m/%Y %H:%M}")
    if full_text:
        parts.append(f"AVIS COMPLET :\n{full_text}")
    return "\n\n".join(parts)


class SourcingAgent:
    """
    Runs the sourcing and screening phases.

    Collaborators are injectable; by default they are built from settings.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        fetcher: Optional[BoampClient] = None,
        screener: Optional[TenderScreener] = None,
        notifier: Optional[Notifier] = None,
        matcher: Optional[MatchingEngine] = None,
        settings=None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        if self.session_factory is None:
            raise RuntimeError("Database not initialised")
        self.fetcher = fetcher or BoampClient(self.settings, auth=PisteAuthClient(settings=self.settings))
        self.screener = screener or TenderScreener(self.settings)
        self.notifier = notifier or Notifier(self.settings)
        self.matcher = matcher or MatchingEngine(self.settings)

    async def run(self) -> BatchStats:
        """Execute one batch. Never raises for per-item failures."""
        started = datetime.utcnow()
        clock = time.monotonic()
        stats = BatchStats(run_at=started)
        logger.info("Sourcing run started")

        async with self.session_factory() as session:
            clients = await db_ops.get_active_clients(session)
        stats.clients = len(clients)

        for client in clients:
            try:
                await self._source_client(client, started, stats)
            except Exception as e:
                stats.errors += 1
                logger.error(f"Sourcing failed for client {client.name}: {e}", exc_info=True)

        await self._screen_pending(stats)

        stats.duration_seconds = round(time.monotonic() - clock, 2)
        await self._log_run(stats)
        logger.info(
            f"Sourcing run complete: {stats.clients} clients, {stats.fetched} fetched, "
            f"{stats.matched} matched, {stats.opportunities_created} new, "
            f"{stats.screened} screened ({stats.validated} validated, {stats.auto_rejected} rejected), "
            f"{stats.notifications} notified, {stats.errors} errors in {stats.duration_seconds}s"
        )
        return stats

    # ------------------------------------------------------------------
    # Sourcing
    # ------------------------------------------------------------------

    def watermark_for(self, client: ClientProfile, now: datetime) -> datetime:
        return client.last_sourcing_at or now - timedelta(hours=self.settings.sourcing_lookback_hours)

    @staticmethod
    def next_watermark(
        result: FetchResult,
        watermark: datetime,
        started: datetime,
        failed_published: list[datetime],
    ) -> datetime:
        """
        Where the next fetch starts. A cut-short fetch only vouches for what
        it returned, and a record that failed to persist pins the watermark
        at its publication date so the next run fetches it again.
        """
        if result.complete:
            candidate = started
        else:
            candidate = max(result.latest_published_at or watermark, watermark)
        if failed_published:
            candidate = min(candidate, max(min(failed_published), watermark))
        return candidate

    async def _source_client(self, client: ClientProfile, started: datetime, stats: BatchStats) -> None:
        watermark = self.watermark_for(client, started)
        result = await self.fetcher.search_since(watermark, client.regions, client.keywords)
        stats.fetched += len(result.records)

        failed_published: list[datetime] = []
        async with self.session_factory() as session:
            for raw in result.records:
                if not self.matcher.matches(raw, client):
                    continue
                stats.matched += 1
                try:
                    tender_id = await db_ops.upsert_tender(session, raw)
                    opportunity_id = await db_ops.create_opportunity_if_absent(session, client.id, tender_id)
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    stats.errors += 1
                    # Undated records hold the watermark where it is
                    failed_published.append(raw.published_at or watermark)
                    logger.error(f"Sourcing: record {raw.external_id} failed for {client.name}: {e}")
                    continue
                if opportunity_id:
                    stats.opportunities_created += 1
                    logger.info(f"Match: new opportunity for {client.name}: {raw.title[:60]}")

            next_watermark = self.next_watermark(result, watermark, started, failed_published)
            await db_ops.set_client_watermark(session, client.id, next_watermark)
            await session.commit()

    # ------------------------------------------------------------------
    # Screening
    # ------------------------------------------------------------------

    async def _screen_pending(self, stats: BatchStats) -> None:
        async with self.session_factory() as session:
            pending = await db_ops.get_pending_opportunity_ids(session, self.settings.screening_batch_size)
        if pending:
            logger.info(f"Screening {len(pending)} pending opportunities")

        for opportunity_id in pending:
            async with self.session_factory() as session:
                try:
                    await self._screen_one(session, opportunity_id, stats)
                except Exception as e:
                    await session.rollback()
                    stats.errors += 1
                    logger.error(f"Screening failed for opportunity {opportunity_id}: {e}", exc_info=True)

    async def _screen_one(self, session: AsyncSession, opportunity_id: str, stats: BatchStats) -> None:
        context = await db_ops.get_opportunity_context(session, opportunity_id)
        if context is None:
            return
        opp, tender, client = context
        if opp.status != OpportunityStatus.ANALYSIS_PENDING:
            return
        title, client_name = tender.title, client.name

        full_text = await self.fetcher.fetch_full_text(tender.external_id)
        text = build_screening_text(title, tender.summary or "", tender.deadline, full_text)
        rules = SniperRules(**(client.rules or {}))

        result = await self.screener.screen_tender(text, rules, client_name)
        stats.screened += 1
        if result.fallback:
            # Left in ANALYSIS_PENDING, retried next run
            stats.errors += 1
            logger.warning(f"Screening unavailable for {opportunity_id} ({result.error}), left pending")
            return

        status = await lifecycle.apply_screening(session, opportunity_id, result)
        await session.commit()

        if status != OpportunityStatus.WAITING_CLIENT_DECISION:
            stats.auto_rejected += 1
            return

        stats.validated += 1
        dispatch = await self.notifier.send_opportunity_alert(session, opportunity_id)
        if dispatch.sent:
            stats.notifications += 1
        elif dispatch.error:
            stats.errors += 1
            logger.warning(f"Alert for {opportunity_id} not delivered: {dispatch.error}")
        await self.notifier.notify_validated_opportunity(client_name, title, result.score, opportunity_id)

    async def _log_run(self, stats: BatchStats) -> None:
        async with self.session_factory() as session:
            try:
                await db_ops.log_batch_run(session, stats)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.warning(f"Could not record batch run: {e}")
