"""Data models for Tender Sniper."""
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from typing import Any, Optional
from datetime import datetime
from enum import Enum


class OpportunityStatus(str, Enum):
    """Lifecycle of a (client, tender) pairing."""
    ANALYSIS_PENDING = "ANALYSIS_PENDING"
    AUTO_REJECTED = "AUTO_REJECTED"                    # terminal, screened out by AI
    WAITING_CLIENT_DECISION = "WAITING_CLIENT_DECISION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"                              # terminal, client said no
    DCE_REQUESTED = "DCE_REQUESTED"
    EXTRACTED = "EXTRACTED"
    READY = "READY"


class FileCategory(str, Enum):
    ADMINISTRATIVE = "ADMINISTRATIVE"
    TECHNICAL = "TECHNICAL"
    FINANCIAL = "FINANCIAL"
    OTHER = "OTHER"


# Models trained on French tender vocabulary answer in French half the time
_FRENCH_CATEGORIES = {
    "ADMINISTRATIF": FileCategory.ADMINISTRATIVE,
    "TECHNIQUE": FileCategory.TECHNICAL,
    "FINANCIER": FileCategory.FINANCIAL,
    "AUTRE": FileCategory.OTHER,
}


class ScreeningDecision(str, Enum):
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"


class FulfillmentStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


_URGENCY_ALIASES = {
    "BASSE": Urgency.LOW, "FAIBLE": Urgency.LOW,
    "MOYENNE": Urgency.MEDIUM, "NORMALE": Urgency.MEDIUM, "NORMAL": Urgency.MEDIUM,
    "HAUTE": Urgency.HIGH, "URGENT": Urgency.HIGH, "ELEVEE": Urgency.HIGH,
}


class DecisionChoice(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class CaptureFailure(str, Enum):
    """Distinguishable reasons a DCE capture aborted."""
    OPPORTUNITY_NOT_FOUND = "OPPORTUNITY_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    NO_SOURCE_URL = "NO_SOURCE_URL"
    SCRAPE_FAILED = "SCRAPE_FAILED"
    LANDING_PAGE_ONLY = "LANDING_PAGE_ONLY"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    ARCHIVE_TOO_LARGE = "ARCHIVE_TOO_LARGE"
    NOT_AN_ARCHIVE = "NOT_AN_ARCHIVE"
    EMPTY_ARCHIVE = "EMPTY_ARCHIVE"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# Clients and tenders
# ---------------------------------------------------------------------------

class SniperRules(BaseModel):
    """A client's accept/reject heuristics, fed to AI screening."""
    min_profitability: float = Field(default=10.0, ge=0, le=100)
    forbidden_keywords: list[str] = Field(default_factory=list)
    required_certifications: list[str] = Field(default_factory=list)


class ClientProfile(BaseModel):
    """Targeting profile of one client."""
    id: str = ""
    name: str
    email: Optional[str] = None
    whatsapp_phone: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list, description="Département codes, empty = nationwide")
    rules: SniperRules = Field(default_factory=SniperRules)
    active: bool = True
    auto_fulfill_on_accept: bool = Field(
        default=False,
        description="Skip the admin fulfillment loop when the client accepts",
    )
    partial_keyword_match: Optional[bool] = Field(
        default=None,
        description="Override the global out-of-order keyword fallback for this client",
    )
    last_sourcing_at: Optional[datetime] = None


class RawTender(BaseModel):
    """A notice as returned by the tender source, before persistence."""
    external_id: str
    title: str
    summary: str = ""
    regions: list[str] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    notice_url: Optional[str] = None
    enrichment_text: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


class Tender(BaseModel):
    id: str
    external_id: str
    title: str
    summary: str = ""
    deadline: Optional[datetime] = None
    notice_url: Optional[str] = None
    raw_payload: Optional[dict[str, Any]] = None


class FetchResult(BaseModel):
    records: list[RawTender] = Field(default_factory=list)
    complete: bool = True
    pages_fetched: int = 0

    @property
    def latest_published_at(self) -> Optional[datetime]:
        dates = [r.published_at for r in self.records if r.published_at]
        return max(dates) if dates else None


# ---------------------------------------------------------------------------
# AI screening
# ---------------------------------------------------------------------------

class ClientSummary(BaseModel):
    """Client-facing digest of a validated tender."""
    title: str
    summary: str = ""
    budget: Optional[str] = None
    deadline: Optional[str] = None
    location: Optional[str] = None
    duration: Optional[str] = None
    key_points: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM

    @field_validator("urgency", mode="before")
    @classmethod
    def _coerce_urgency(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().upper()
            if key in Urgency.__members__:
                return key
            return _URGENCY_ALIASES.get(key, Urgency.MEDIUM)
        return value


class TenderScreeningResponse(BaseModel):
    """Strict shape expected back from the tender-mode prompt."""
    decision: ScreeningDecision
    reasoning: str
    score: float = Field(ge=0, le=100, validation_alias=AliasChoices("score", "match_score", "confidence"))
    client_summary: Optional[ClientSummary] = None

    @model_validator(mode="after")
    def _summary_required_when_validated(self) -> "TenderScreeningResponse":
        if self.decision == ScreeningDecision.VALIDATED and self.client_summary is None:
            raise ValueError("client_summary is required for a VALIDATED decision")
        return self


class ScreeningResult(BaseModel):
    """Outcome of screening one tender for one client."""
    decision: ScreeningDecision
    reasoning: str
    score: float = 0.0
    client_summary: Optional[ClientSummary] = None
    fallback: bool = False   # True when the AI could not be trusted; never applied
    demo: bool = False
    error: Optional[str] = None

    def analysis_payload(self) -> dict:
        return {
            "decision": self.decision.value,
            "reasoning": self.reasoning,
            "score": self.score,
            "client_summary": self.client_summary.model_dump(mode="json") if self.client_summary else None,
            "demo": self.demo,
        }


class FileClassification(BaseModel):
    name: str
    category: FileCategory
    is_priority: bool = False

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().upper()
            return _FRENCH_CATEGORIES.get(key, key)
        return value


class FileClassificationResponse(BaseModel):
    files: list[FileClassification]


# ---------------------------------------------------------------------------
# Opportunities, files, tickets
# ---------------------------------------------------------------------------

class DceFile(BaseModel):
    name: str
    url: str
    category: FileCategory = FileCategory.OTHER
    is_priority: bool = False


class StatusEvent(BaseModel):
    from_status: Optional[OpportunityStatus] = None
    to_status: OpportunityStatus
    reason: str = ""
    created_at: datetime


class Opportunity(BaseModel):
    id: str
    client_id: str
    tender_id: str
    status: OpportunityStatus = OpportunityStatus.ANALYSIS_PENDING
    match_score: float = 0.0
    analysis: Optional[dict[str, Any]] = None
    decision_token: Optional[str] = None
    dce_url: Optional[str] = None
    files: list[DceFile] = Field(default_factory=list)
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class FulfillmentRequest(BaseModel):
    id: str
    opportunity_id: str
    status: FulfillmentStatus = FulfillmentStatus.PENDING
    created_at: datetime
    closed_at: Optional[datetime] = None


class OpportunityDetail(BaseModel):
    opportunity: Opportunity
    tender: Tender
    client_name: str
    history: list[StatusEvent] = Field(default_factory=list)
    fulfillment_requests: list[FulfillmentRequest] = Field(default_factory=list)


class PendingPackageRequest(BaseModel):
    """Row of the admin "pending requests" board."""
    opportunity_id: str
    client_name: str
    tender_title: str
    tender_external_id: str
    notice_url: Optional[str] = None
    request_id: Optional[str] = None
    requested_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------

class ScrapeResult(BaseModel):
    landing_url: str
    file_url: Optional[str] = None
    is_direct_download: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.file_url is not None


class CaptureResult(BaseModel):
    success: bool
    opportunity_id: str
    message: str = ""
    reason: Optional[CaptureFailure] = None
    file_count: int = 0
    files: list[DceFile] = Field(default_factory=list)


class DispatchResult(BaseModel):
    """Outcome of a best-effort notification. Never raised, only returned."""
    channel: str
    sent: bool = False
    skipped: bool = False   # channel not configured, logged instead
    error: Optional[str] = None


class DecisionOutcome(BaseModel):
    opportunity_id: str
    status: OpportunityStatus
    tender_title: str
    fast_tracked: bool = False


class InboundMessage(BaseModel):
    sender_id: str
    message_body: str


class InboundReply(BaseModel):
    reply: str
    opportunity_id: Optional[str] = None
    status: Optional[OpportunityStatus] = None


class BatchStats(BaseModel):
    """Counters for one orchestrator run."""
    run_at: datetime = Field(default_factory=datetime.utcnow)
    clients: int = 0
    fetched: int = 0
    matched: int = 0
    opportunities_created: int = 0
    screened: int = 0
    validated: int = 0
    auto_rejected: int = 0
    notifications: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
