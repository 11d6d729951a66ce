"""Claude-powered tender screening and DCE file classification.

Both modes treat the model as an untrusted collaborator: every call is
bounded by a timeout, every answer is parsed against a pydantic schema, and
any failure degrades to a result that never validates a tender by itself.
"""
import asyncio
import json
import logging
import re
from pathlib import PurePosixPath
from typing import Optional

import anthropic
from pydantic import ValidationError

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import (
    ClientSummary, FileCategory, FileClassification, FileClassificationResponse,
    ScreeningDecision, ScreeningResult, SniperRules, TenderScreeningResponse, Urgency,
)

logger = logging.getLogger(__name__)

TENDER_TEXT_MAX_CHARS = 15000


class AIResponseError(Exception):
    """The model answered, but not with what we asked for."""


# ---------------------------------------------------------------------------
# Filename heuristic
# ---------------------------------------------------------------------------

_ADMINISTRATIVE_TOKENS = {"RC", "CCAP", "CCAG", "AE", "ATTRI", "ATTRI1", "DUME", "REGLEMENT", "ACTE"}
_TECHNICAL_TOKENS = {"CCTP", "CCTG", "PLAN", "PLANS", "TECHNIQUE", "PROGRAMME", "SCHEMA"}
_FINANCIAL_TOKENS = {"DPGF", "BPU", "DQE", "DE", "DEVIS", "ESTIMATIF", "PRIX", "FINANCIER"}
_PRIORITY_TOKENS = {"RC", "CCTP"}
_DC_FORM = re.compile(r"^DC\d+$")


def _filename_tokens(name: str) -> set[str]:
    stem = PurePosixPath(name).stem.upper()
    return {t for t in re.split(r"[^0-9A-Z]+", stem) if t}


def classify_filename(name: str) -> FileClassification:
    """
    Classify a DCE file from its name alone.

    Conventional French tender abbreviations: RC/CCAP/AE/DC* are
    administrative, CCTP and plans technical, DPGF/BPU/DQE financial.
    RC and CCTP are the documents a bid manager reads first.
    """
    tokens = _filename_tokens(name)
    lowered = name.lower()

    if tokens & _ADMINISTRATIVE_TOKENS or any(_DC_FORM.match(t) for t in tokens) \
            or "glement de consultation" in lowered:
        category = FileCategory.ADMINISTRATIVE
    elif tokens & _TECHNICAL_TOKENS:
        category = FileCategory.TECHNICAL
    elif tokens & _FINANCIAL_TOKENS:
        category = FileCategory.FINANCIAL
    else:
        category = FileCategory.OTHER

    is_priority = bool(tokens & _PRIORITY_TOKENS) or "glement de consultation" in lowered
    return FileClassification(name=name, category=category, is_priority=is_priority)


def _strip_fences(text: str) -> str:
    text = text.strip()
    # Handle potential markdown wrapping
    if text.startswith("```"):
        text = text.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
    return text


def find_forbidden_keyword(text: str, rules: SniperRules) -> Optional[str]:
    lowered = text.lower()
    for keyword in rules.forbidden_keywords:
        needle = keyword.lower().strip()
        if needle and needle in lowered:
            return keyword
    return None


class TenderScreener:
    """Screens tenders for a client and classifies DCE files, using Claude."""

    def __init__(self, settings=None, client=None):
        self.settings = settings or get_settings()
        self.client = client
        if self.client is None and self.settings.anthropic_api_key:
            self.client = anthropic.AsyncAnthropic(api_key=self.settings.anthropic_api_key)

    async def _complete(self, model: str, prompt: str, max_tokens: int) -> str:
        """One JSON-only completion, bounded by the configured timeout."""
        response = await asyncio.wait_for(
            self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            ),
            timeout=self.settings.ai_timeout_seconds,
        )
        if not response.content:
            raise AIResponseError("empty completion")
        return _strip_fences(response.content[0].text)

    # ------------------------------------------------------------------
    # Tender mode
    # ------------------------------------------------------------------

    def _tender_prompt(self, text: str, rules: SniperRules, client_name: str) -> str:
        return f"""You are a French public procurement analyst screening a BOAMP notice for a client.

CLIENT: {client_name or 'Unknown'}
CLIENT RULES:
{json.dumps(rules.model_dump(), ensure_ascii=False, indent=2)}

NOTICE:
{text[:TENDER_TEXT_MAX_CHARS]}

Decide whether this tender is worth the client's time. Reject it if it hits a
forbidden keyword, requires a certification the client does not list, or is
unlikely to reach the client's minimum profitability.

Respond with ONLY a JSON object (no markdown, no explanation), in French:
{{
    "decision": "VALIDATED" | "REJECTED",
    "reasoning": "<2-4 sentences: strengths, risks, recommended angle>",
    "score": <0-100>,
    "client_summary": {{
        "title": "<short title>",
        "summary": "<3 sentences for the client>",
        "budget": "<estimated amount or null>",
        "deadline": "<response deadline or null>",
        "location": "<place of execution or null>",
        "duration": "<contract duration or null>",
        "key_points": ["<point>", "..."],
        "urgency": "LOW" | "MEDIUM" | "HIGH"
    }}
}}
client_summary is required when decision is VALIDATED and may be null otherwise."""

    def _fallback(self, reason: str) -> ScreeningResult:
        return ScreeningResult(
            decision=ScreeningDecision.REJECTED,
            reasoning="Analyse IA indisponible, à reprendre au prochain passage.",
            score=0.0,
            fallback=True,
            error=reason,
        )

    def _demo_result(self, text: str) -> ScreeningResult:
        title = text.strip().split("\n", 1)[0][:120] or "Marché public"
        return ScreeningResult(
            decision=ScreeningDecision.VALIDATED,
            reasoning="[DEMO] Validation de démonstration, aucune analyse IA n'a été faite.",
            score=50.0,
            client_summary=ClientSummary(
                title=title,
                summary="[DEMO] Résumé indisponible sans clé API.",
                urgency=Urgency.MEDIUM,
            ),
            demo=True,
        )

    async def screen_tender(
        self,
        text: str,
        rules: Optional[SniperRules] = None,
        client_name: str = "",
    ) -> ScreeningResult:
        """
        Screen one tender's text against a client's rules. Never raises.

        A forbidden keyword rejects locally without calling the model. Any
        failure returns a fallback result (decision REJECTED, fallback=True)
        that callers must not apply as a verdict.
        """
        rules = rules or SniperRules()

        forbidden = find_forbidden_keyword(text, rules)
        if forbidden:
            return ScreeningResult(
                decision=ScreeningDecision.REJECTED,
                reasoning=f"Mot-clé exclu par le client : « {forbidden} ».",
                score=0.0,
            )

        if not self.client:
            if self.settings.ai_demo_mode:
                logger.warning("AI demo mode: validating tender without analysis")
                return self._demo_result(text)
            return self._fallback("ANTHROPIC_API_KEY not configured")

        try:
            raw = await self._complete(
                self.settings.screening_model,
                self._tender_prompt(text, rules, client_name),
                self.settings.ai_max_tokens,
            )
            parsed = TenderScreeningResponse.model_validate(json.loads(raw))
        except asyncio.TimeoutError:
            logger.warning(f"Tender screening timed out after {self.settings.ai_timeout_seconds}s")
            return self._fallback("timeout")
        except (json.JSONDecodeError, ValidationError, AIResponseError) as e:
            logger.warning(f"Tender screening returned an invalid answer: {e}")
            return self._fallback(f"invalid response: {e}")
        except Exception as e:
            logger.error(f"Tender screening failed: {e}")
            return self._fallback(str(e))

        return ScreeningResult(
            decision=parsed.decision,
            reasoning=parsed.reasoning,
            score=parsed.score,
            client_summary=parsed.client_summary,
        )

    # ------------------------------------------------------------------
    # File mode
    # ------------------------------------------------------------------

    def _files_prompt(self, filenames: list[str]) -> str:
        listing = "\n".join(filenames)
        return f"""You are a French public procurement expert. Classify each file of this
DCE (dossier de consultation des entreprises) into exactly one category:
ADMINISTRATIVE, TECHNICAL, FINANCIAL, OTHER.

RULES:
- RC (règlement de consultation), CCAP, AE, DC1/DC2 -> ADMINISTRATIVE
- CCTP, plans, technical definitions -> TECHNICAL
- DPGF, BPU, DQE, devis estimatif -> FINANCIAL
- RC and CCTP are priority files (is_priority = true)

FILES:
{listing}

Respond with ONLY a JSON object (no markdown, no explanation), with the names exactly as given:
{{"files": [{{"name": "<file name>", "category": "<CATEGORY>", "is_priority": true | false}}]}}"""

    async def classify_files(self, filenames: list[str]) -> list[FileClassification]:
        """
        Classify DCE filenames, one entry per input name, in input order.

        Names the model invents are ignored; names it skips, and every name
        when the call fails, are classified from the filename. Never raises.
        """
        if not filenames:
            return []

        by_name: dict[str, FileClassification] = {}
        if self.client:
            try:
                raw = await self._complete(
                    self.settings.classification_model,
                    self._files_prompt(filenames),
                    max(self.settings.ai_max_tokens, 60 * len(filenames)),
                )
                parsed = FileClassificationResponse.model_validate(json.loads(raw))
                wanted = set(filenames)
                by_name = {f.name: f for f in parsed.files if f.name in wanted}
            except asyncio.TimeoutError:
                logger.warning("File classification timed out, using filename heuristic")
            except Exception as e:
                logger.warning(f"File classification failed, using filename heuristic: {e}")

        missing = [n for n in filenames if n not in by_name]
        if by_name and missing:
            logger.info(f"File classification: {len(missing)} name(s) classified by heuristic")
        return [by_name.get(name) or classify_filename(name) for name in filenames]
