"""Database helpers for Tender Sniper.

Every write that can race with another batch run is a single statement guarded
by a uniqueness constraint (``ON CONFLICT``) or by a conditional UPDATE, never a
read-then-write. Functions here do not commit: the caller owns the unit of work
and commits (or rolls back) once the whole step succeeded.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.models.db_models import (
    BatchRunRow, ClientRow, FulfillmentRequestRow, OpportunityFileRow, OpportunityRow,
    StatusEventRow, TenderRow,
)
from tendersniper.models.schemas import (
    BatchStats, ClientProfile, DceFile, FulfillmentRequest, FulfillmentStatus, Opportunity,
    OpportunityStatus, PendingPackageRequest, RawTender, SniperRules, StatusEvent, Tender,
)

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession):
    """Dialect-specific INSERT that supports on_conflict_* clauses."""
    if session.bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

def client_from_row(row: ClientRow) -> ClientProfile:
    return ClientProfile(
        id=row.id,
        name=row.name,
        email=row.email,
        whatsapp_phone=row.whatsapp_phone,
        keywords=row.keywords or [],
        regions=row.regions or [],
        rules=SniperRules(**(row.rules or {})),
        active=bool(row.active),
        auto_fulfill_on_accept=bool(row.auto_fulfill_on_accept),
        partial_keyword_match=row.partial_keyword_match,
        last_sourcing_at=row.last_sourcing_at,
    )


async def upsert_client(session: AsyncSession, client: ClientProfile) -> ClientProfile:
    """Insert or update a client profile. Profile editing itself lives outside the core."""
    if not client.id:
        client = client.model_copy(update={"id": new_id()})
    values = {
        "name": client.name,
        "email": client.email,
        "whatsapp_phone": client.whatsapp_phone,
        "keywords": client.keywords,
        "regions": client.regions,
        "rules": client.rules.model_dump(),
        "active": client.active,
        "auto_fulfill_on_accept": client.auto_fulfill_on_accept,
        "partial_keyword_match": client.partial_keyword_match,
    }
    insert = _insert(session)
    stmt = insert(ClientRow).values(id=client.id, last_sourcing_at=client.last_sourcing_at, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
    await session.execute(stmt)
    return client


async def get_active_clients(session: AsyncSession) -> list[ClientProfile]:
    result = await session.execute(
        select(ClientRow).where(ClientRow.active.is_(True)).order_by(ClientRow.created_at)
    )
    return [client_from_row(row) for row in result.scalars().all()]


async def get_client(session: AsyncSession, client_id: str) -> Optional[ClientProfile]:
    row = await session.get(ClientRow, client_id)
    return client_from_row(row) if row else None


async def set_client_watermark(session: AsyncSession, client_id: str, at: datetime) -> None:
    await session.execute(
        update(ClientRow).where(ClientRow.id == client_id).values(last_sourcing_at=at)
    )


# ---------------------------------------------------------------------------
# Tenders
# ---------------------------------------------------------------------------

def tender_from_row(row: TenderRow) -> Tender:
    return Tender(
        id=row.id,
        external_id=row.external_id,
        title=row.title,
        summary=row.summary or "",
        deadline=row.deadline,
        notice_url=row.notice_url,
        raw_payload=row.raw_payload,
    )


async def upsert_tender(session: AsyncSession, raw: RawTender) -> str:
    """
    Insert or refresh a tender keyed by its external id; return the local id.

    On conflict (same external_id) the mutable fields are overwritten and
    first_seen_at is preserved, so the last call's fields win.
    """
    now = datetime.utcnow()
    insert = _insert(session)
    stmt = insert(TenderRow).values(
        id=new_id(),
        external_id=raw.external_id,
        title=raw.title or "Sans titre",
        summary=raw.summary,
        deadline=raw.deadline,
        notice_url=raw.notice_url,
        raw_payload=raw.payload or None,
        first_seen_at=now,  # not in set_ below, so kept on conflict
        last_updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={
            "title": stmt.excluded.title,
            "summary": stmt.excluded.summary,
            "deadline": stmt.excluded.deadline,
            "notice_url": stmt.excluded.notice_url,
            "raw_payload": stmt.excluded.raw_payload,
            "last_updated_at": stmt.excluded.last_updated_at,
        },
    ).returning(TenderRow.id)
    result = await session.execute(stmt)
    return result.scalar_one()


async def get_tender_by_external_id(session: AsyncSession, external_id: str) -> Optional[Tender]:
    result = await session.execute(select(TenderRow).where(TenderRow.external_id == external_id))
    row = result.scalar_one_or_none()
    return tender_from_row(row) if row else None


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------

def opportunity_from_row(row: OpportunityRow, files: Optional[list[DceFile]] = None) -> Opportunity:
    return Opportunity(
        id=row.id,
        client_id=row.client_id,
        tender_id=row.tender_id,
        status=row.status,
        match_score=row.match_score or 0.0,
        analysis=row.analysis,
        decision_token=row.decision_token,
        dce_url=row.dce_url,
        files=files or [],
        processed_at=row.processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def create_opportunity_if_absent(
    session: AsyncSession,
    client_id: str,
    tender_id: str,
) -> Optional[str]:
    """
    Create an ANALYSIS_PENDING opportunity for the pair, or do nothing.

    Returns the new id, or None when the pair already exists. The unique
    (client_id, tender_id) constraint makes this safe under concurrent runs.
    """
    now = datetime.utcnow()
    insert = _insert(session)
    stmt = insert(OpportunityRow).values(
        id=new_id(),
        client_id=client_id,
        tender_id=tender_id,
        status=OpportunityStatus.ANALYSIS_PENDING,
        match_score=0.0,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(
        index_elements=["client_id", "tender_id"],
    ).returning(OpportunityRow.id)
    result = await session.execute(stmt)
    opportunity_id = result.scalar_one_or_none()
    if opportunity_id:
        await record_status_event(
            session, opportunity_id, None, OpportunityStatus.ANALYSIS_PENDING, "sourced"
        )
    return opportunity_id


async def get_opportunity_row(session: AsyncSession, opportunity_id: str) -> Optional[OpportunityRow]:
    result = await session.execute(
        select(OpportunityRow).where(OpportunityRow.id == opportunity_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_opportunity_context(
    session: AsyncSession,
    opportunity_id: str,
) -> Optional[tuple[OpportunityRow, TenderRow, ClientRow]]:
    """Opportunity joined with its tender and client."""
    result = await session.execute(
        select(OpportunityRow, TenderRow, ClientRow)
        .join(TenderRow, TenderRow.id == OpportunityRow.tender_id)
        .join(ClientRow, ClientRow.id == OpportunityRow.client_id)
        .where(OpportunityRow.id == opportunity_id)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    return (row[0], row[1], row[2]) if row else None


async def get_pending_opportunity_ids(session: AsyncSession, limit: int) -> list[str]:
    """Oldest ANALYSIS_PENDING opportunities first (FIFO)."""
    result = await session.execute(
        select(OpportunityRow.id)
        .where(OpportunityRow.status == OpportunityStatus.ANALYSIS_PENDING)
        .order_by(OpportunityRow.created_at.asc(), OpportunityRow.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def set_dce_url(session: AsyncSession, opportunity_id: str, dce_url: str) -> None:
    await session.execute(
        update(OpportunityRow)
        .where(OpportunityRow.id == opportunity_id)
        .values(dce_url=dce_url, updated_at=datetime.utcnow())
    )


async def get_opportunity_by_token(session: AsyncSession, token: str) -> Optional[OpportunityRow]:
    result = await session.execute(
        select(OpportunityRow)
        .where(OpportunityRow.decision_token == token)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_latest_waiting_opportunity_for_phone(
    session: AsyncSession,
    phone: str,
) -> Optional[OpportunityRow]:
    result = await session.execute(
        select(OpportunityRow)
        .join(ClientRow, ClientRow.id == OpportunityRow.client_id)
        .where(
            ClientRow.whatsapp_phone == phone,
            OpportunityRow.status == OpportunityStatus.WAITING_CLIENT_DECISION,
        )
        .order_by(OpportunityRow.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def set_decision_token_if_absent(
    session: AsyncSession,
    opportunity_id: str,
    token: str,
) -> Optional[str]:
    """Store token unless one is already set; return the token now on the row."""
    await session.execute(
        update(OpportunityRow)
        .where(OpportunityRow.id == opportunity_id, OpportunityRow.decision_token.is_(None))
        .values(decision_token=token)
    )
    result = await session.execute(
        select(OpportunityRow.decision_token).where(OpportunityRow.id == opportunity_id)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

async def replace_opportunity_files(
    session: AsyncSession,
    opportunity_id: str,
    files: list[DceFile],
) -> None:
    """Supersede the opportunity's file set: delete then recreate, same transaction."""
    await session.execute(
        delete(OpportunityFileRow).where(OpportunityFileRow.opportunity_id == opportunity_id)
    )
    now = datetime.utcnow()
    session.add_all([
        OpportunityFileRow(
            opportunity_id=opportunity_id,
            position=position,
            name=f.name,
            url=f.url,
            category=f.category,
            is_priority=f.is_priority,
            created_at=now,
        )
        for position, f in enumerate(files)
    ])
    await session.flush()


async def list_opportunity_files(session: AsyncSession, opportunity_id: str) -> list[DceFile]:
    result = await session.execute(
        select(OpportunityFileRow)
        .where(OpportunityFileRow.opportunity_id == opportunity_id)
        .order_by(OpportunityFileRow.position)
    )
    return [
        DceFile(name=r.name, url=r.url, category=r.category, is_priority=bool(r.is_priority))
        for r in result.scalars().all()
    ]


# ---------------------------------------------------------------------------
# Status history
# ---------------------------------------------------------------------------

async def record_status_event(
    session: AsyncSession,
    opportunity_id: str,
    from_status: Optional[OpportunityStatus],
    to_status: OpportunityStatus,
    reason: str = "",
) -> None:
    session.add(StatusEventRow(
        opportunity_id=opportunity_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        created_at=datetime.utcnow(),
    ))
    await session.flush()


async def list_status_events(session: AsyncSession, opportunity_id: str) -> list[StatusEvent]:
    result = await session.execute(
        select(StatusEventRow)
        .where(StatusEventRow.opportunity_id == opportunity_id)
        .order_by(StatusEventRow.id)
    )
    return [
        StatusEvent(
            from_status=r.from_status,
            to_status=r.to_status,
            reason=r.reason or "",
            created_at=r.created_at,
        )
        for r in result.scalars().all()
    ]


# ---------------------------------------------------------------------------
# Fulfillment tickets
# ---------------------------------------------------------------------------

async def open_fulfillment_request(session: AsyncSession, opportunity_id: str) -> bool:
    """Open a PENDING ticket unless one is already open. Returns True if created."""
    insert = _insert(session)
    stmt = insert(FulfillmentRequestRow).values(
        id=new_id(),
        opportunity_id=opportunity_id,
        status=FulfillmentStatus.PENDING,
        open_key=opportunity_id,
        created_at=datetime.utcnow(),
    ).on_conflict_do_nothing(index_elements=["open_key"]).returning(FulfillmentRequestRow.id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def close_fulfillment_requests(session: AsyncSession, opportunity_id: str) -> int:
    """Mark open tickets READY. Returns how many were closed."""
    result = await session.execute(
        update(FulfillmentRequestRow)
        .where(
            FulfillmentRequestRow.opportunity_id == opportunity_id,
            FulfillmentRequestRow.status == FulfillmentStatus.PENDING,
        )
        .values(status=FulfillmentStatus.READY, open_key=None, closed_at=datetime.utcnow())
    )
    return result.rowcount or 0


async def list_fulfillment_requests(session: AsyncSession, opportunity_id: str) -> list[FulfillmentRequest]:
    result = await session.execute(
        select(FulfillmentRequestRow)
        .where(FulfillmentRequestRow.opportunity_id == opportunity_id)
        .order_by(FulfillmentRequestRow.created_at)
    )
    return [
        FulfillmentRequest(
            id=r.id,
            opportunity_id=r.opportunity_id,
            status=r.status,
            created_at=r.created_at,
            closed_at=r.closed_at,
        )
        for r in result.scalars().all()
    ]


async def list_pending_package_requests(session: AsyncSession) -> list[PendingPackageRequest]:
    """Opportunities waiting for a document package, most recent first."""
    result = await session.execute(
        select(OpportunityRow, TenderRow, ClientRow, FulfillmentRequestRow)
        .join(TenderRow, TenderRow.id == OpportunityRow.tender_id)
        .join(ClientRow, ClientRow.id == OpportunityRow.client_id)
        .outerjoin(
            FulfillmentRequestRow,
            and_(
                FulfillmentRequestRow.opportunity_id == OpportunityRow.id,
                FulfillmentRequestRow.status == FulfillmentStatus.PENDING,
            ),
        )
        .where(OpportunityRow.status == OpportunityStatus.DCE_REQUESTED)
        .order_by(OpportunityRow.updated_at.desc())
    )
    return [
        PendingPackageRequest(
            opportunity_id=opp.id,
            client_name=client.name,
            tender_title=tender.title,
            tender_external_id=tender.external_id,
            notice_url=tender.notice_url,
            request_id=ticket.id if ticket else None,
            requested_at=ticket.created_at if ticket else None,
        )
        for opp, tender, client, ticket in result.all()
    ]


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------

async def log_batch_run(session: AsyncSession, stats: BatchStats) -> None:
    """Insert a row into batch_runs."""
    session.add(BatchRunRow(
        run_at=stats.run_at,
        clients=stats.clients,
        fetched=stats.fetched,
        matched=stats.matched,
        opportunities_created=stats.opportunities_created,
        screened=stats.screened,
        validated=stats.validated,
        notifications=stats.notifications,
        errors=stats.errors,
        duration_seconds=stats.duration_seconds,
    ))
    await session.flush()
    logger.debug(f"DB: logged batch run at {stats.run_at}")
