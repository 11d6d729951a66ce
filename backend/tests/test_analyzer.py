"""Tests for AI tender screening and DCE file classification."""
import asyncio
import json

from conftest import FakeAnthropic

from tendersniper.models.schemas import FileCategory, ScreeningDecision, SniperRules, Urgency
from tendersniper.services.analyzer import TenderScreener, classify_filename, find_forbidden_keyword

VALIDATED_ANSWER = json.dumps({
    "decision": "VALIDATED",
    "reasoning": "Périmètre conforme, délais tenables.",
    "score": 78,
    "client_summary": {
        "title": "Nettoyage des écoles",
        "summary": "Entretien quotidien de 12 écoles.",
        "budget": "250 000 €",
        "key_points": ["3 ans", "12 sites"],
        "urgency": "HAUTE",
    },
})


class TestClassifyFilename:
    def test_rc_is_priority_administrative(self):
        result = classify_filename("RC_marche_2026.pdf")
        assert result.category == FileCategory.ADMINISTRATIVE
        assert result.is_priority is True

    def test_cctp_is_priority_technical(self):
        result = classify_filename("Lot1-CCTP.docx")
        assert result.category == FileCategory.TECHNICAL
        assert result.is_priority is True

    def test_financial_documents(self):
        assert classify_filename("DPGF_lot2.xlsx").category == FileCategory.FINANCIAL
        assert classify_filename("BPU.pdf").category == FileCategory.FINANCIAL

    def test_dc_forms(self):
        assert classify_filename("DC1.docx").category == FileCategory.ADMINISTRATIVE

    def test_token_match_not_substring(self):
        # "DE" inside DESCRIPTION is not a token
        assert classify_filename("description_generale.pdf").category == FileCategory.OTHER

    def test_reglement_spelled_out(self):
        result = classify_filename("Règlement de consultation.pdf")
        assert result.category == FileCategory.ADMINISTRATIVE
        assert result.is_priority is True


class TestForbiddenKeyword:
    def test_case_insensitive(self):
        assert find_forbidden_keyword("Désamiantage et AMIANTE", SniperRules(forbidden_keywords=["amiante"])) == "amiante"

    def test_none_when_clean(self):
        assert find_forbidden_keyword("Nettoyage", SniperRules(forbidden_keywords=["amiante", " "])) is None


class TestScreenTender:
    async def test_validated_answer_parsed(self, settings):
        screener = TenderScreener(settings, client=FakeAnthropic(VALIDATED_ANSWER))

        result = await screener.screen_tender("Nettoyage des écoles", SniperRules(), "Apoem")

        assert result.decision == ScreeningDecision.VALIDATED
        assert result.fallback is False
        assert result.score == 78
        assert result.client_summary.urgency == Urgency.HIGH

    async def test_markdown_fences_stripped(self, settings):
        screener = TenderScreener(settings, client=FakeAnthropic(f"```json\n{VALIDATED_ANSWER}\n```"))
        result = await screener.screen_tender("Nettoyage", SniperRules())
        assert result.decision == ScreeningDecision.VALIDATED

    async def test_forbidden_keyword_rejects_without_calling_model(self, settings):
        fake = FakeAnthropic(VALIDATED_ANSWER)
        screener = TenderScreener(settings, client=fake)

        result = await screener.screen_tender(
            "Travaux de retrait d'amiante", SniperRules(forbidden_keywords=["amiante"]),
        )

        assert result.decision == ScreeningDecision.REJECTED
        assert result.fallback is False
        assert fake.messages.calls == []

    async def test_timeout_returns_fallback(self, settings):
        async def slow(**kwargs):
            await asyncio.sleep(5)
            return VALIDATED_ANSWER

        settings.ai_timeout_seconds = 0.05
        screener = TenderScreener(settings, client=FakeAnthropic(slow))

        result = await screener.screen_tender("Nettoyage", SniperRules())

        assert result.fallback is True
        assert result.decision == ScreeningDecision.REJECTED
        assert result.error == "timeout"

    async def test_invalid_json_returns_fallback(self, settings):
        screener = TenderScreener(settings, client=FakeAnthropic("Je pense que oui."))
        result = await screener.screen_tender("Nettoyage", SniperRules())
        assert result.fallback is True

    async def test_validated_without_summary_is_invalid(self, settings):
        answer = json.dumps({"decision": "VALIDATED", "reasoning": "ok", "score": 90})
        screener = TenderScreener(settings, client=FakeAnthropic(answer))
        result = await screener.screen_tender("Nettoyage", SniperRules())
        assert result.fallback is True

    async def test_api_error_returns_fallback(self, settings):
        screener = TenderScreener(settings, client=FakeAnthropic(RuntimeError("overloaded")))
        result = await screener.screen_tender("Nettoyage", SniperRules())
        assert result.fallback is True
        assert "overloaded" in result.error

    async def test_no_key_is_fallback(self, settings):
        screener = TenderScreener(settings)
        assert screener.client is None
        result = await screener.screen_tender("Nettoyage", SniperRules())
        assert result.fallback is True

    async def test_demo_mode_validates_marked_result(self, settings):
        settings.ai_demo_mode = True
        screener = TenderScreener(settings)
        result = await screener.screen_tender("Nettoyage des écoles\nsuite", SniperRules())
        assert result.decision == ScreeningDecision.VALIDATED
        assert result.demo is True
        assert result.client_summary.title == "Nettoyage des écoles"


class TestClassifyFiles:
    async def test_one_entry_per_input_in_order(self, settings):
        answer = json.dumps({"files": [
            {"name": "B.pdf", "category": "FINANCIER", "is_priority": False},
            {"name": "A.pdf", "category": "TECHNIQUE", "is_priority": True},
            {"name": "invented.pdf", "category": "OTHER", "is_priority": False},
        ]})
        screener = TenderScreener(settings, client=FakeAnthropic(answer))

        result = await screener.classify_files(["A.pdf", "B.pdf", "RC.pdf"])

        assert [c.name for c in result] == ["A.pdf", "B.pdf", "RC.pdf"]
        assert result[0].category == FileCategory.TECHNICAL
        assert result[1].category == FileCategory.FINANCIAL
        # skipped by the model: heuristic
        assert result[2].category == FileCategory.ADMINISTRATIVE

    async def test_failure_falls_back_to_heuristic(self, settings):
        screener = TenderScreener(settings, client=FakeAnthropic("not json"))
        result = await screener.classify_files(["CCTP.pdf", "DPGF.xlsx"])
        assert [c.category for c in result] == [FileCategory.TECHNICAL, FileCategory.FINANCIAL]

    async def test_empty_list(self, settings):
        assert await TenderScreener(settings).classify_files([]) == []
