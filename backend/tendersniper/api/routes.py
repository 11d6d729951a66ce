"""API routes for Tender Sniper."""
import logging
from html import escape
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.agents.scheduler import JOB_ID, get_last_result, get_scheduler, record_result
from tendersniper.agents.sourcing import SourcingAgent
from tendersniper.core.config import Settings, get_settings
from tendersniper.core.database import get_session_factory
from tendersniper.models.schemas import (
    BatchStats, CaptureFailure, CaptureResult, InboundMessage, InboundReply,
    OpportunityDetail, OpportunityStatus, PendingPackageRequest,
)
from tendersniper.services import db_ops, lifecycle
from tendersniper.services.dce_capture import DceCapturePipeline
from tendersniper.services.decisions import InvalidDecisionToken, consume_decision_token, handle_inbound_reply
from tendersniper.services.notifier import Notifier

logger = logging.getLogger(__name__)
router = APIRouter()

_CAPTURE_FAILURE_STATUS = {
    CaptureFailure.OPPORTUNITY_NOT_FOUND: 404,
    CaptureFailure.INVALID_STATE: 409,
    CaptureFailure.INTERNAL_ERROR: 500,
}


# --- Dependencies (overridden in tests) ---

async def get_session() -> AsyncIterator[AsyncSession]:
    factory = get_session_factory()
    if factory is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    async with factory() as session:
        yield session


def get_app_settings() -> Settings:
    return get_settings()


def get_notifier() -> Notifier:
    return Notifier()


def get_capture_pipeline() -> DceCapturePipeline:
    return DceCapturePipeline()


def get_sourcing_agent() -> SourcingAgent:
    return SourcingAgent()


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if not settings.cron_secret:
        if settings.debug:
            return
        raise HTTPException(status_code=401, detail="CRON_SECRET not configured")
    if authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _capture_response(result: CaptureResult) -> CaptureResult:
    if not result.success:
        status_code = _CAPTURE_FAILURE_STATUS.get(result.reason, 422)
        raise HTTPException(
            status_code=status_code,
            detail={"reason": result.reason.value if result.reason else None, "message": result.message},
        )
    return result


# --- Batch ---

@router.get("/cron/daily-sourcing", tags=["Sourcing"], response_model=BatchStats,
            dependencies=[Depends(verify_cron_secret)])
async def daily_sourcing(agent: SourcingAgent = Depends(get_sourcing_agent)):
    """
    Run one sourcing batch: fetch, match, create opportunities, screen the
    oldest pending ones and notify validated matches.
    """
    try:
        stats = await agent.run()
    except Exception as e:
        logger.error(f"Cron sourcing failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Sourcing run failed")
    record_result(stats.model_dump(mode="json"))
    return stats


@router.get("/sourcing/status", tags=["Sourcing"])
async def sourcing_status():
    """Last run counters and next scheduled run."""
    scheduler = get_scheduler()
    next_run = None
    if scheduler and scheduler.running:
        job = scheduler.get_job(JOB_ID)
        if job and job.next_run_time:
            next_run = job.next_run_time.isoformat()
    return {
        "next_run_at": next_run,
        "last_run": get_last_result(),
        "scheduler_running": scheduler.running if scheduler else False,
    }


# --- Client decisions ---

def _decision_page(title: str, message: str, tender_title: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="fr">
<head><meta charset="UTF-8"><title>{escape(title)}</title></head>
<body style="font-family:Arial,sans-serif;background:#f8fafc;display:flex;
             justify-content:center;align-items:center;min-height:100vh;margin:0;">
  <div style="max-width:420px;background:#fff;border-radius:10px;padding:32px;
              text-align:center;box-shadow:0 1px 3px rgba(0,0,0,.1);">
    <h1 style="font-size:22px;color:#0f172a;">{escape(title)}</h1>
    <p style="color:#475569;">{escape(message)}</p>
    <div style="background:#f1f5f9;padding:12px;border-radius:6px;text-align:left;font-size:14px;">
      <strong>Rappel du marché :</strong><br>{escape(tender_title)}
    </div>
  </div>
</body>
</html>"""


@router.get("/decision/{token}/{choice}", tags=["Decisions"], response_class=HTMLResponse)
async def decision_link(
    token: str,
    choice: str,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    """One-time accept / reject link sent in the opportunity e-mail."""
    try:
        outcome = await consume_decision_token(session, token, choice, notifier)
    except InvalidDecisionToken as e:
        logger.info(f"Decision link refused: {e}")
        raise HTTPException(status_code=404, detail="Lien invalide ou expiré")

    if outcome.status == OpportunityStatus.REJECTED:
        title, message = "Rejeté", "Nous ne vous relancerons plus sur cette offre."
    elif outcome.fast_tracked:
        title, message = "C'est noté !", "Le dossier de consultation est disponible."
    else:
        title, message = "C'est noté !", "Nous préparons le dossier pour ce marché."
    return HTMLResponse(_decision_page(title, message, outcome.tender_title))


@router.post("/webhooks/inbound", tags=["Decisions"], response_model=InboundReply)
async def inbound_webhook(
    message: InboundMessage,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Chat reply (OUI / NON) from a client."""
    return await handle_inbound_reply(session, message, notifier)


# --- Admin fulfillment ---

@router.get("/admin/requests", tags=["Admin"], response_model=list[PendingPackageRequest])
async def pending_requests(session: AsyncSession = Depends(get_session)):
    """Opportunities waiting for their document package."""
    return await db_ops.list_pending_package_requests(session)


@router.post("/admin/opportunities/{opportunity_id}/dce", tags=["Admin"], response_model=CaptureResult)
async def upload_dce(
    opportunity_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    pipeline: DceCapturePipeline = Depends(get_capture_pipeline),
):
    """
    Manual fulfillment: the request body is the DCE zip archive.

    Files are extracted, classified and attached, the ticket is closed and the
    client is told the package is ready.
    """
    archive = await request.body()
    if not archive:
        raise HTTPException(status_code=400, detail="Empty body, expected a zip archive")
    result = await pipeline.capture(session, opportunity_id, archive=archive)
    return _capture_response(result)


# --- Opportunities ---

@router.get("/opportunities/{opportunity_id}", tags=["Opportunities"], response_model=OpportunityDetail)
async def get_opportunity(opportunity_id: str, session: AsyncSession = Depends(get_session)):
    """Opportunity with its tender, files, status history and package requests."""
    context = await db_ops.get_opportunity_context(session, opportunity_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    opp, tender, client = context
    files = await db_ops.list_opportunity_files(session, opportunity_id)
    return OpportunityDetail(
        opportunity=db_ops.opportunity_from_row(opp, files),
        tender=db_ops.tender_from_row(tender),
        client_name=client.name,
        history=await db_ops.list_status_events(session, opportunity_id),
        fulfillment_requests=await db_ops.list_fulfillment_requests(session, opportunity_id),
    )


@router.post("/opportunities/{opportunity_id}/capture", tags=["Opportunities"], response_model=CaptureResult)
async def capture_package(
    opportunity_id: str,
    session: AsyncSession = Depends(get_session),
    pipeline: DceCapturePipeline = Depends(get_capture_pipeline),
):
    """Locate the DCE from the notice page, download and attach it."""
    result = await pipeline.capture(session, opportunity_id)
    return _capture_response(result)


@router.post("/opportunities/{opportunity_id}/request-package", tags=["Opportunities"])
async def request_package(
    opportunity_id: str,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Ask the admin for the document package of an approved opportunity."""
    try:
        moved = await lifecycle.request_document_package(session, opportunity_id)
        await session.commit()
    except lifecycle.OpportunityNotFoundError:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    except lifecycle.InvalidTransitionError as e:
        await session.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    if moved:
        context = await db_ops.get_opportunity_context(session, opportunity_id)
        if context:
            _, tender, client = context
            await notifier.notify_package_requested(client.name, tender.title, opportunity_id, tender.notice_url)
    return {"opportunity_id": opportunity_id, "status": OpportunityStatus.DCE_REQUESTED, "requested": moved}


@router.post("/opportunities/{opportunity_id}/reanalyze", tags=["Opportunities"])
async def reanalyze(opportunity_id: str, session: AsyncSession = Depends(get_session)):
    """Send an opportunity back to AI screening; picked up by the next run."""
    try:
        previous = await lifecycle.reset_for_reanalysis(session, opportunity_id)
        await session.commit()
    except lifecycle.OpportunityNotFoundError:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    except lifecycle.InvalidTransitionError as e:
        await session.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "opportunity_id": opportunity_id,
        "previous_status": previous,
        "status": OpportunityStatus.ANALYSIS_PENDING,
    }
