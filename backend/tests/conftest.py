"""Shared test fixtures for the Tender Sniper test suite."""
import io
import zipfile
from datetime import datetime
from types import SimpleNamespace
from typing import Optional

import httpx
import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from tendersniper.core.config import Settings
from tendersniper.core.database import create_schema, make_engine
from tendersniper.models.db_models import OpportunityRow
from tendersniper.models.schemas import (
    ClientProfile, FetchResult, OpportunityStatus, RawTender, SniperRules,
)
from tendersniper.services import db_ops


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: no external credentials, fast timeouts."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        anthropic_api_key="",
        sendgrid_api_key="",
        admin_email="",
        telegram_bot_token="",
        telegram_admin_chat_id="",
        piste_client_id="",
        piste_client_secret="",
        cron_secret="test-cron-secret",
        public_base_url="https://sniper.example.fr",
        ai_timeout_seconds=0.2,
        boamp_page_size=2,
        boamp_max_pages=3,
        screening_batch_size=10,
        dce_storage_dir=str(tmp_path / "dce"),
        dce_max_archive_mb=1,
    )


@pytest.fixture
async def engine():
    engine = make_engine("sqlite+aiosqlite://")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Data builders
# ---------------------------------------------------------------------------

def make_raw_tender(external_id: str = "24-12345", **overrides) -> RawTender:
    fields = {
        "external_id": external_id,
        "title": "Prestations de nettoyage des bureaux",
        "summary": "Nettoyage quotidien des locaux administratifs.",
        "regions": ["75"],
        "published_at": datetime(2026, 10, 1),
        "notice_url": f"https://www.boamp.fr/pages/avis/?q=idweb:{external_id}",
    }
    fields.update(overrides)
    return RawTender(**fields)


def make_zip(entries: dict[str, Optional[bytes]], compression: int = zipfile.ZIP_STORED) -> bytes:
    """Zip archive from {path: bytes}; a None value adds a directory entry."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in entries.items():
            if data is None:
                archive.writestr(zipfile.ZipInfo(name if name.endswith("/") else name + "/"), b"")
            else:
                archive.writestr(name, data)
    return buffer.getvalue()


class Seeder:
    """Commits fixtures rows so every other session sees them."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def client(self, **overrides) -> ClientProfile:
        fields = {
            "name": "Apoem Nettoyage",
            "email": "contact@apoem.fr",
            "whatsapp_phone": "+33612345678",
            "keywords": ["nettoyage"],
            "regions": [],
            "rules": SniperRules(forbidden_keywords=["amiante"]),
        }
        fields.update(overrides)
        async with self.session_factory() as session:
            client = await db_ops.upsert_client(session, ClientProfile(**fields))
            await session.commit()
        return client

    async def tender(self, external_id: str = "24-12345", **overrides) -> str:
        async with self.session_factory() as session:
            tender_id = await db_ops.upsert_tender(session, make_raw_tender(external_id, **overrides))
            await session.commit()
        return tender_id

    async def opportunity(
        self,
        client_id: str,
        tender_id: str,
        status: OpportunityStatus = OpportunityStatus.ANALYSIS_PENDING,
        **values,
    ) -> str:
        async with self.session_factory() as session:
            opportunity_id = await db_ops.create_opportunity_if_absent(session, client_id, tender_id)
            if status != OpportunityStatus.ANALYSIS_PENDING or values:
                await session.execute(
                    update(OpportunityRow)
                    .where(OpportunityRow.id == opportunity_id)
                    .values(status=status, **values)
                )
            await session.commit()
        return opportunity_id

    async def opportunity_row(self, opportunity_id: str) -> OpportunityRow:
        async with self.session_factory() as session:
            return await db_ops.get_opportunity_row(session, opportunity_id)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeMessages:
    """Stands in for anthropic.AsyncAnthropic().messages."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = await reply(**kwargs)
        return SimpleNamespace(content=[SimpleNamespace(text=reply)])


class FakeAnthropic:
    def __init__(self, *replies):
        self.messages = FakeMessages(replies)


class MemoryStorage:
    def __init__(self):
        self.saved: dict[str, bytes] = {}

    async def upload(self, data: bytes, filename: str) -> str:
        url = f"/dce/{len(self.saved)}-{filename.replace('/', '_')}"
        self.saved[url] = data
        return url


class FakeFetcher:
    """BoampClient replacement returning canned results."""

    def __init__(self, results: Optional[list[FetchResult]] = None, full_text: Optional[str] = None):
        self.results = list(results or [])
        self.full_text = full_text
        self.calls = []

    async def search_since(self, since, regions=None, keywords=None) -> FetchResult:
        self.calls.append({"since": since, "regions": regions, "keywords": keywords})
        if not self.results:
            return FetchResult(records=[], complete=True)
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]

    async def fetch_full_text(self, external_id: str) -> Optional[str]:
        return self.full_text


class RecordingNotifier:
    """Notifier double: records calls, sends nothing."""

    def __init__(self, alert_result=None):
        from tendersniper.models.schemas import DispatchResult
        self.alert_result = alert_result or DispatchResult(channel="email", sent=True)
        self.alerts = []
        self.admin_messages = []
        self.package_ready = []

    async def ensure_decision_token(self, session, opportunity_id):
        import uuid
        return await db_ops.set_decision_token_if_absent(session, opportunity_id, str(uuid.uuid4()))

    async def send_opportunity_alert(self, session, opportunity_id):
        await self.ensure_decision_token(session, opportunity_id)
        await session.commit()
        self.alerts.append(opportunity_id)
        return self.alert_result

    async def notify_validated_opportunity(self, client_name, tender_title, score, opportunity_id):
        self.admin_messages.append(("validated", opportunity_id))
        return []

    async def notify_package_requested(self, client_name, tender_title, opportunity_id, notice_url=None):
        self.admin_messages.append(("package", opportunity_id))
        return []

    async def send_package_ready(self, recipient, client_name, tender_title, files):
        self.package_ready.append((recipient, len(files)))
        from tendersniper.models.schemas import DispatchResult
        return DispatchResult(channel="email", sent=True)


def mock_transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


@pytest.fixture
def fake_anthropic():
    return FakeAnthropic


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()
