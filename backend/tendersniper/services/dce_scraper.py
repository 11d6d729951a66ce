"""Finds the DCE archive link on a buyer profile page."""
import logging
from typing import Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from tendersniper.models.schemas import ScrapeResult

logger = logging.getLogger(__name__)

_DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/zip,*/*",
}

_LINK_KEYWORDS = ("télécharger", "telecharger", "dce", "dossier", "download", "pièces", "pieces")
_STRONG_PHRASES = ("télécharger le dossier", "télécharger le dce", "telecharger le dossier", "telecharger le dce")
_ZIP_CONTENT_TYPES = ("application/zip", "application/x-zip-compressed", "application/x-zip")


def _is_zip_url(url: str) -> bool:
    return url.lower().split("?", 1)[0].split("#", 1)[0].endswith(".zip")


def find_download_link(html: str, base_url: str) -> Optional[str]:
    """
    Pick the most likely archive link on a page, or None.

    In order: a .zip link whose text looks like a download, then any link
    saying "télécharger le dossier/DCE", then any .zip link.
    """
    soup = BeautifulSoup(html, "html.parser")
    anchors = [
        (urljoin(base_url, a["href"]), a.get_text(" ", strip=True).lower())
        for a in soup.find_all("a", href=True)
    ]

    for href, text in anchors:
        if _is_zip_url(href) and any(k in text for k in _LINK_KEYWORDS):
            return href
    for href, text in anchors:
        if any(p in text for p in _STRONG_PHRASES):
            return href
    for href, _ in anchors:
        if _is_zip_url(href):
            return href
    return None


class DceScraper:
    """Resolves a notice or buyer-profile URL to a downloadable archive."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self._transport = transport
        self.timeout = timeout

    async def resolve(self, page_url: str) -> ScrapeResult:
        """
        Follow `page_url` and report what is there. Never raises.

        is_direct_download is True only when file_url points at an archive
        (the page itself, or a link found on it); otherwise file_url is the
        landing page and the caller must not try to unpack it.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=_DEFAULT_HEADERS,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", page_url) as response:
                    response.raise_for_status()
                    final_url = str(response.url)
                    content_type = response.headers.get("content-type", "").lower()
                    if _is_zip_url(final_url) or any(t in content_type for t in _ZIP_CONTENT_TYPES):
                        logger.info(f"DCE scraper: {page_url} is already an archive")
                        return ScrapeResult(landing_url=final_url, file_url=final_url, is_direct_download=True)
                    await response.aread()
                    html = response.text
        except Exception as e:
            logger.error(f"DCE scraper error for {page_url}: {e}")
            return ScrapeResult(landing_url=page_url, error=str(e))

        link = find_download_link(html, final_url)
        if link:
            logger.info(f"DCE scraper: found download link {link}")
            return ScrapeResult(landing_url=final_url, file_url=link, is_direct_download=True)

        logger.info(f"DCE scraper: no download link on {final_url}, landing page only")
        return ScrapeResult(landing_url=final_url, file_url=final_url, is_direct_download=False)
