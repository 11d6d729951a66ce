"""
DCE capture: turn a tender's document package into classified, stored files
attached to an opportunity.

    resolve URL → download → unpack → upload (bounded parallel)
    → classify → persist files + status → close tickets → notify client

Each step fails with its own CaptureFailure reason. Persisting replaces the
whole file set, so running a capture twice never duplicates files.
"""
import asyncio
import io
import logging
import zipfile
from pathlib import PurePosixPath
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import (
    CaptureFailure, CaptureResult, DceFile, OpportunityStatus,
)
from tendersniper.services import db_ops, lifecycle
from tendersniper.services.analyzer import TenderScreener
from tendersniper.services.dce_scraper import DceScraper
from tendersniper.services.dce_storage import LocalStorage
from tendersniper.services.notifier import Notifier

logger = logging.getLogger(__name__)

S = OpportunityStatus

CAPTURABLE_STATES = frozenset({S.APPROVED, S.DCE_REQUESTED, S.EXTRACTED, S.READY})

_IGNORED_NAMES = {".DS_Store", "Thumbs.db", "desktop.ini"}


class CaptureError(Exception):
    def __init__(self, reason: CaptureFailure, message: str):
        self.reason = reason
        self.message = message
        super().__init__(f"{reason.value}: {message}")


def _is_metadata_entry(name: str) -> bool:
    path = PurePosixPath(name)
    if "__MACOSX" in path.parts:
        return True
    return path.name.startswith("._") or path.name in _IGNORED_NAMES


def extract_archive_entries(data: bytes, max_bytes: Optional[int] = None) -> list[tuple[str, bytes]]:
    """
    (path, bytes) for every real file in a zip archive, in archive order.

    Directories and platform metadata (__MACOSX/, ._*, .DS_Store, Thumbs.db)
    are dropped. Raises CaptureError when the bytes are not a zip, hold no
    eligible file, or would unpack to more than max_bytes.
    """
    buffer = io.BytesIO(data)
    if not zipfile.is_zipfile(buffer):
        raise CaptureError(CaptureFailure.NOT_AN_ARCHIVE, "downloaded content is not a zip archive")

    entries: list[tuple[str, bytes]] = []
    try:
        with zipfile.ZipFile(buffer) as archive:
            eligible: list[zipfile.ZipInfo] = []
            seen: set[str] = set()
            for info in archive.infolist():
                name = info.filename
                if info.is_dir() or _is_metadata_entry(name):
                    continue
                if name in seen:
                    logger.warning(f"DCE: duplicate entry {name} in archive, keeping the first")
                    continue
                seen.add(name)
                eligible.append(info)

            # Declared sizes bound what read() returns, so check them before unpacking
            unpacked = sum(info.file_size for info in eligible)
            if max_bytes is not None and unpacked > max_bytes:
                raise CaptureError(
                    CaptureFailure.ARCHIVE_TOO_LARGE,
                    f"archive unpacks to {unpacked} bytes, limit is {max_bytes} bytes",
                )
            for info in eligible:
                entries.append((info.filename, archive.read(info)))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError, RuntimeError) as e:
        raise CaptureError(CaptureFailure.NOT_AN_ARCHIVE, f"unreadable archive: {e}") from e

    if not entries:
        raise CaptureError(CaptureFailure.EMPTY_ARCHIVE, "archive contains no eligible file")
    return entries


class DceCapturePipeline:
    def __init__(
        self,
        screener: Optional[TenderScreener] = None,
        storage=None,
        scraper: Optional[DceScraper] = None,
        notifier: Optional[Notifier] = None,
        settings=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.screener = screener or TenderScreener(self.settings)
        self.storage = storage or LocalStorage()
        self.scraper = scraper or DceScraper(transport=transport)
        self.notifier = notifier or Notifier(self.settings)
        self._transport = transport

    async def capture(
        self,
        session: AsyncSession,
        opportunity_id: str,
        archive: Optional[bytes] = None,
    ) -> CaptureResult:
        """
        Capture the document package of one opportunity.

        With `archive` (admin upload) the bytes are used as-is; otherwise the
        archive is located from the known DCE URL or by scraping the notice
        page. Never raises: failures come back as CaptureResult with a reason.
        """
        try:
            return await self._capture(session, opportunity_id, archive)
        except CaptureError as e:
            await session.rollback()
            logger.warning(f"DCE capture aborted for {opportunity_id}: {e}")
            return CaptureResult(success=False, opportunity_id=opportunity_id, reason=e.reason, message=e.message)
        except Exception as e:
            await session.rollback()
            logger.error(f"DCE capture failed for {opportunity_id}: {e}", exc_info=True)
            return CaptureResult(
                success=False,
                opportunity_id=opportunity_id,
                reason=CaptureFailure.INTERNAL_ERROR,
                message=str(e),
            )

    async def _capture(self, session: AsyncSession, opportunity_id: str, archive: Optional[bytes]) -> CaptureResult:
        context = await db_ops.get_opportunity_context(session, opportunity_id)
        if context is None:
            raise CaptureError(CaptureFailure.OPPORTUNITY_NOT_FOUND, f"opportunity {opportunity_id} not found")
        opp, tender, client = context
        status = opp.status
        known_url, notice_url = opp.dce_url, tender.notice_url
        client_name, client_email, tender_title = client.name, client.email, tender.title

        if status not in CAPTURABLE_STATES:
            raise CaptureError(CaptureFailure.INVALID_STATE, f"cannot capture a package in status {status.value}")

        # (a)-(b) locate and download, unless the archive was handed to us
        dce_url = None
        if archive is None:
            dce_url = await self._resolve_archive_url(known_url, notice_url)
            archive = await self._download(dce_url)
        self._check_size(len(archive))

        # (c) unpack
        entries = extract_archive_entries(archive, max_bytes=self.max_archive_bytes)
        logger.info(f"DCE: {len(entries)} file(s) in archive for {opportunity_id}")

        # (d) upload
        urls = await self._upload_all(entries)

        # (e)-(f) classify and join by name
        names = [name for name, _ in entries]
        classifications = {c.name: c for c in await self.screener.classify_files(names)}
        files = [
            DceFile(
                name=name,
                url=urls[name],
                category=classifications[name].category,
                is_priority=classifications[name].is_priority,
            )
            for name in names
        ]

        # (g) files and status in one transaction
        if status == S.APPROVED:
            await lifecycle.transition(session, opportunity_id, S.DCE_REQUESTED, reason="package capture")
            status = S.DCE_REQUESTED
        await db_ops.replace_opportunity_files(session, opportunity_id, files)
        if dce_url:
            await db_ops.set_dce_url(session, opportunity_id, dce_url)
        if status == S.DCE_REQUESTED:
            await lifecycle.transition(session, opportunity_id, S.EXTRACTED, reason=f"{len(files)} files captured")
            status = S.EXTRACTED
        await session.commit()

        # (h) close tickets and deliver
        closed = await db_ops.close_fulfillment_requests(session, opportunity_id)
        if status == S.EXTRACTED:
            await lifecycle.transition(session, opportunity_id, S.READY, reason="package delivered")
        await session.commit()
        logger.info(f"DCE: opportunity {opportunity_id} ready ({len(files)} files, {closed} ticket(s) closed)")

        # (i) best effort
        await self.notifier.send_package_ready(client_email, client_name, tender_title, files)

        return CaptureResult(
            success=True,
            opportunity_id=opportunity_id,
            message=f"{len(files)} fichiers extraits",
            file_count=len(files),
            files=files,
        )

    async def _resolve_archive_url(self, known_url: Optional[str], notice_url: Optional[str]) -> str:
        if known_url:
            return known_url
        if not notice_url:
            raise CaptureError(CaptureFailure.NO_SOURCE_URL, "no DCE URL and no notice URL to scrape")

        result = await self.scraper.resolve(notice_url)
        if result.error:
            raise CaptureError(CaptureFailure.SCRAPE_FAILED, result.error)
        if not result.is_direct_download or not result.file_url:
            raise CaptureError(
                CaptureFailure.LANDING_PAGE_ONLY,
                f"no downloadable archive found, only the page {result.landing_url}",
            )
        return result.file_url

    @property
    def max_archive_bytes(self) -> int:
        return self.settings.dce_max_archive_mb * 1024 * 1024

    def _check_size(self, size: int) -> None:
        if size > self.max_archive_bytes:
            raise CaptureError(
                CaptureFailure.ARCHIVE_TOO_LARGE,
                f"archive is {size} bytes, limit is {self.settings.dce_max_archive_mb} MB",
            )

    async def _download(self, url: str) -> bytes:
        """Archive bytes, read into memory up to the size cap."""
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.dce_download_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = int(response.headers.get("content-length") or 0)
                    self._check_size(declared)
                    chunks, total = [], 0
                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        self._check_size(total)
                        chunks.append(chunk)
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(CaptureFailure.DOWNLOAD_FAILED, f"download of {url} failed: {e}") from e

        logger.info(f"DCE: downloaded {total} bytes from {url}")
        return b"".join(chunks)

    async def _upload_all(self, entries: list[tuple[str, bytes]]) -> dict[str, str]:
        semaphore = asyncio.Semaphore(max(1, self.settings.dce_upload_concurrency))

        async def upload(name: str, data: bytes) -> tuple[str, str]:
            async with semaphore:
                return name, await self.storage.upload(data, name)

        try:
            uploaded = await asyncio.gather(*(upload(name, data) for name, data in entries))
        except Exception as e:
            raise CaptureError(CaptureFailure.UPLOAD_FAILED, f"file upload failed: {e}") from e
        return dict(uploaded)
