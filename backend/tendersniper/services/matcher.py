"""Matching engine that decides whether a tender concerns a client.

Two rules, both must hold:

- region: a client without regions is nationwide; otherwise at least one of
  the tender's département codes must be in the client's set.
- keyword: a client must declare at least one keyword. A keyword matches when
  its normalized form is a substring of the tender's searchable text, or, as a
  fallback, when every word longer than two characters appears somewhere in
  that text, in any order.

The fallback deliberately favours recall: "nettoyage bureaux" matches
"bureaux ... prestations de nettoyage". Losing a relevant tender costs the
client more than screening one extra, and AI screening filters the noise.
It is controlled by PARTIAL_KEYWORD_MATCH and can be overridden per client.
"""
import logging
from typing import Optional, Union

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import ClientProfile, RawTender

logger = logging.getLogger(__name__)

_MIN_FALLBACK_WORD_LENGTH = 3


def normalize(text: Optional[str]) -> str:
    return (text or "").lower().strip()


def searchable_text(tender: RawTender) -> str:
    """Title, summary and any enrichment text, normalized."""
    return normalize(" ".join(
        part for part in (tender.title, tender.summary, tender.enrichment_text) if part
    ))


def region_matches(tender_regions: list[str], client_regions: list[str]) -> bool:
    if not client_regions:
        return True
    wanted = {str(r).strip() for r in client_regions}
    return any(str(r).strip() in wanted for r in tender_regions)


def keyword_matches(keyword: str, content: str, allow_partial: bool = True) -> bool:
    """`content` must already be normalized."""
    needle = normalize(keyword)
    if not needle:
        return False
    if needle in content:
        return True
    if not allow_partial:
        return False
    words = [w for w in needle.split() if len(w) >= _MIN_FALLBACK_WORD_LENGTH]
    # A keyword made only of short words ("le", "bt") would otherwise match everything
    return bool(words) and all(w in content for w in words)


def matches(
    tender: RawTender,
    client: Union[ClientProfile, dict],
    allow_partial: bool = True,
) -> bool:
    """Pure predicate: does this tender concern this client?"""
    if isinstance(client, dict):
        keywords = client.get("keywords") or []
        regions = client.get("regions") or []
    else:
        keywords = client.keywords
        regions = client.regions

    if not region_matches(tender.regions, regions):
        return False
    if not keywords:
        return False

    content = searchable_text(tender)
    return any(keyword_matches(kw, content, allow_partial) for kw in keywords)


class MatchingEngine:
    """Applies matches() with the configured partial-match policy."""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    def allow_partial(self, client: ClientProfile) -> bool:
        if client.partial_keyword_match is not None:
            return client.partial_keyword_match
        return self.settings.partial_keyword_match

    def matches(self, tender: RawTender, client: ClientProfile) -> bool:
        return matches(tender, client, allow_partial=self.allow_partial(client))

    def filter_for_client(self, tenders: list[RawTender], client: ClientProfile) -> list[RawTender]:
        allow_partial = self.allow_partial(client)
        matched = [t for t in tenders if matches(t, client, allow_partial=allow_partial)]
        logger.debug(f"Matcher: {len(matched)}/{len(tenders)} tenders for client {client.name}")
        return matched
