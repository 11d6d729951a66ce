"""SQLAlchemy ORM table definitions for Tender Sniper.

These are the persistent representations. The Pydantic models in schemas.py
remain the canonical runtime models; these classes are for DB I/O only.
"""
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from tendersniper.core.database import Base
from tendersniper.models.schemas import FileCategory, FulfillmentStatus, OpportunityStatus

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, length=32)


class ClientRow(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    whatsapp_phone = Column(String, index=True)
    keywords = Column(JSONType, default=list)
    regions = Column(JSONType, default=list)
    rules = Column(JSONType, default=dict)
    active = Column(Boolean, default=True)
    auto_fulfill_on_accept = Column(Boolean, default=False)
    partial_keyword_match = Column(Boolean, nullable=True)
    last_sourcing_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class TenderRow(Base):
    __tablename__ = "tenders"

    id = Column(String, primary_key=True)
    external_id = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False)
    summary = Column(Text, default="")
    deadline = Column(DateTime)
    notice_url = Column(String)
    raw_payload = Column(JSONType)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_updated_at = Column(DateTime, default=datetime.utcnow)


class OpportunityRow(Base):
    __tablename__ = "opportunities"
    __table_args__ = (
        UniqueConstraint("client_id", "tender_id", name="uq_opportunity_client_tender"),
    )

    id = Column(String, primary_key=True)
    client_id = Column(String, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    tender_id = Column(String, ForeignKey("tenders.id"), nullable=False)
    # ANALYSIS_PENDING → WAITING_CLIENT_DECISION → APPROVED → DCE_REQUESTED → EXTRACTED → READY
    status = Column(_enum(OpportunityStatus, "opportunity_status"), nullable=False,
                    default=OpportunityStatus.ANALYSIS_PENDING, index=True)
    match_score = Column(Float, default=0.0)
    analysis = Column(JSONType)
    decision_token = Column(String, unique=True)
    dce_url = Column(String)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)


class OpportunityFileRow(Base):
    __tablename__ = "opportunity_files"
    __table_args__ = (
        UniqueConstraint("opportunity_id", "name", name="uq_opportunity_file_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    opportunity_id = Column(String, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    category = Column(_enum(FileCategory, "file_category"), nullable=False, default=FileCategory.OTHER)
    is_priority = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class StatusEventRow(Base):
    __tablename__ = "opportunity_status_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    opportunity_id = Column(String, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(_enum(OpportunityStatus, "opportunity_status"), nullable=True)
    to_status = Column(_enum(OpportunityStatus, "opportunity_status"), nullable=False)
    reason = Column(String, default="")
    created_at = Column(DateTime, default=datetime.utcnow)


class FulfillmentRequestRow(Base):
    __tablename__ = "fulfillment_requests"

    id = Column(String, primary_key=True)
    opportunity_id = Column(String, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(_enum(FulfillmentStatus, "fulfillment_status"), nullable=False,
                    default=FulfillmentStatus.PENDING)
    # Equals opportunity_id while PENDING, NULL once closed: at most one open ticket
    open_key = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime)


class BatchRunRow(Base):
    __tablename__ = "batch_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_at = Column(DateTime, default=datetime.utcnow)
    clients = Column(Integer, default=0)
    fetched = Column(Integer, default=0)
    matched = Column(Integer, default=0)
    opportunities_created = Column(Integer, default=0)
    screened = Column(Integer, default=0)
    validated = Column(Integer, default=0)
    notifications = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    duration_seconds = Column(Float, default=0.0)
