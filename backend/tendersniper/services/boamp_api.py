"""BOAMP integration: paged search of the official bulletin through its
OpenDataSoft explore API, plus the full-text notice dataset."""
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import FetchResult, RawTender
from tendersniper.services.piste_auth import PisteAuthClient

logger = logging.getLogger(__name__)

NOTICE_PAGE_URL = "https://www.boamp.fr/pages/avis/?q=idweb:{idweb}"
SUMMARY_MAX_CHARS = 1000
ENRICHMENT_MAX_CHARS = 20000

_DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; TenderSniper/1.0)",
    "Accept": "application/json",
}


def _quote(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_where_clause(
    since: datetime,
    regions: Optional[list[str]] = None,
    keywords: Optional[list[str]] = None,
) -> str:
    """ODSQL filter: publication date lower bound, optional département and keyword hints."""
    clauses = [f'dateparution >= "{since.strftime("%Y-%m-%d")}"']
    if regions:
        clauses.append("(" + " OR ".join(f"code_departement={_quote(r)}" for r in regions) + ")")
    if keywords:
        clauses.append("(" + " OR ".join(f"search(objet, {_quote(k)})" for k in keywords) + ")")
    return " AND ".join(clauses)


def _parse_date(value: Any) -> Optional[datetime]:
    """ISO date or datetime string → naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_donnees(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            value = json.loads(raw)
            return value if isinstance(value, dict) else {}
        except ValueError:
            return {}
    return {}


def _flatten_text(value: Any) -> list[str]:
    """Every string leaf of a donnees tree, in document order."""
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, dict):
        value = list(value.values())
    if isinstance(value, list):
        return [text for item in value for text in _flatten_text(item)]
    return []


def parse_record(item: dict) -> Optional[RawTender]:
    """Map one BOAMP record onto a RawTender. Returns None for unusable records."""
    idweb = item.get("idweb") or item.get("id")
    if not idweb:
        return None
    idweb = str(idweb)

    donnees = _parse_donnees(item.get("donnees"))
    summary = ""
    objet = donnees.get("OBJET")
    if isinstance(objet, dict) and objet.get("OBJET_COMPLET"):
        summary = str(objet["OBJET_COMPLET"])

    departements = item.get("code_departement") or []
    if not isinstance(departements, list):
        departements = [departements]

    return RawTender(
        external_id=idweb,
        title=item.get("objet") or "Marché public",
        summary=summary[:SUMMARY_MAX_CHARS],
        regions=[str(d) for d in departements if d not in (None, "")],
        published_at=_parse_date(item.get("dateparution")),
        deadline=_parse_date(item.get("datelimitereception")),
        notice_url=item.get("url_avis") or NOTICE_PAGE_URL.format(idweb=idweb),
        enrichment_text=" ".join(_flatten_text(donnees))[:ENRICHMENT_MAX_CHARS],
        payload=item,
    )


class BoampClient:
    """Client for the BOAMP OpenDataSoft datasets."""

    def __init__(
        self,
        settings=None,
        auth: Optional[PisteAuthClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.auth = auth
        self._transport = transport

    async def _headers(self) -> dict:
        headers = dict(_DEFAULT_HEADERS)
        if self.auth is not None and self.auth.configured:
            headers["Authorization"] = f"Bearer {await self.auth.get_token()}"
        return headers

    async def search_since(
        self,
        since: datetime,
        regions: Optional[list[str]] = None,
        keywords: Optional[list[str]] = None,
    ) -> FetchResult:
        """
        Fetch notices published since `since`, oldest first.

        Pages are requested until one comes back empty or short, or the page
        cap is reached. Any failure stops the loop and returns what was
        collected so far with complete=False; this never raises.

        Regions are always sent as a server-side filter. Keywords only when
        BOAMP_KEYWORD_PREFILTER is on: upstream full-text search is stricter
        than our matcher and would drop out-of-order matches.
        """
        page_size = self.settings.boamp_page_size
        max_pages = self.settings.boamp_max_pages
        where = build_where_clause(
            since,
            regions=regions,
            keywords=keywords if self.settings.boamp_keyword_prefilter else None,
        )

        records: list[RawTender] = []
        pages = 0
        complete = False
        try:
            headers = await self._headers()
            async with httpx.AsyncClient(
                timeout=self.settings.boamp_timeout_seconds,
                headers=headers,
                transport=self._transport,
            ) as client:
                while pages < max_pages:
                    params = {
                        "where": where,
                        "order_by": "dateparution asc",
                        "limit": page_size,
                        "offset": pages * page_size,
                    }
                    response = await client.get(self.settings.boamp_search_url, params=params)
                    response.raise_for_status()
                    results = response.json().get("results") or []
                    pages += 1

                    for item in results:
                        tender = parse_record(item)
                        if tender:
                            records.append(tender)

                    if len(results) < page_size:
                        complete = True
                        break

            if not complete:
                logger.warning(f"BOAMP: page cap ({max_pages}) reached, remaining notices left for next run")

        except httpx.HTTPStatusError as e:
            logger.error(f"BOAMP API error: {e.response.status_code} - {e.response.text[:200]}")
        except Exception as e:
            logger.error(f"BOAMP request failed after {pages} page(s): {e}")

        logger.info(
            f"Fetched {len(records)} notices from BOAMP since {since:%Y-%m-%d} "
            f"({pages} page(s), {'complete' if complete else 'partial'})"
        )
        return FetchResult(records=records, complete=complete, pages_fetched=pages)

    async def fetch_full_text(self, external_id: str) -> Optional[str]:
        """
        Plain text of the full notice from the boamp-html dataset.
        Returns None on any failure, never raises.
        """
        params = {"where": f"idweb:{_quote(external_id)}", "limit": 1}
        try:
            headers = await self._headers()
            async with httpx.AsyncClient(
                timeout=self.settings.boamp_timeout_seconds,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.get(self.settings.boamp_html_url, params=params)
                response.raise_for_status()
                results = response.json().get("results") or []
        except Exception as e:
            logger.warning(f"BOAMP: full text unavailable for {external_id}: {e}")
            return None

        if not results or not results[0].get("avis_html"):
            logger.info(f"BOAMP: no HTML notice for {external_id}")
            return None

        text = BeautifulSoup(results[0]["avis_html"], "html.parser").get_text(" ", strip=True)
        return re.sub(r"\s+", " ", text).strip() or None
