import asyncio

import httpx
import pytest

from lubebot.agent_pipeline import (
    APOLOGY_TEXT,
    SEARCH_FAILED_NOTICE,
    AdvisorPipeline,
    build_pipeline,
)
from lubebot.catalog import CatalogCache, CatalogProvider
from lubebot.config import load_settings
from lubebot.errors import EmptyMessageError
from lubebot.intent import IntentType
from lubebot.intent_resolver import IntentResolver
from lubebot.knowledge.assembler import KnowledgeAssembler
from lubebot.product_search import ProductSearchEngine
from lubebot.response_validator import ResponseValidator

from .conftest import CATALOG_URL, FakeClassifier, FakeGemini, FlakyCatalogHandler

BASE_URL = "https://shop.test/products/"
NINJA = "我的 Ninja 400 要換機油"


def _pipeline(store, cache, classifier=None, gemini=None):
    return AdvisorPipeline(
        store=store,
        resolver=IntentResolver(store, classifier),
        assembler=KnowledgeAssembler(store),
        search_engine=ProductSearchEngine(store),
        catalog_cache=cache,
        validator=ResponseValidator(store),
        gemini=gemini,
        product_base_url=BASE_URL,
    )


def _cache(handler, attempts=3):
    provider = CatalogProvider(
        CATALOG_URL, timeout=1.0, attempts=attempts, backoff=0, transport=httpx.MockTransport(handler)
    )
    return CatalogCache(provider, ttl_sec=1800)


def _parts(result):
    return [candidate.entry.part_number for candidate in result.candidates]


class TestScenarios:
    def test_geared_motorcycle_prefers_manual_clutch_oil(self, store, catalog_cache):
        result = asyncio.run(_pipeline(store, catalog_cache).answer(NINJA))
        assert result.intent.is_motorcycle
        assert result.intent.vehicle_sub_type == "manual"
        assert _parts(result)[:2] == ["LM1502", "LM1503"]
        scores = {candidate.entry.part_number: candidate.score for candidate in result.candidates}
        assert scores["LM1618"] < scores["LM1502"]
        assert "## Product list" in result.prompt_text
        assert "JASO MA2" in result.prompt_text

    def test_price_question_skips_search(self, store, catalog_cache):
        result = asyncio.run(_pipeline(store, catalog_cache).answer("how much does it cost"))
        assert result.intent.type is IntentType.PRICE_INQUIRY
        assert catalog_cache.fetch_count == 0
        assert result.candidates == []
        assert "## Product list" not in result.prompt_text
        assert any(log["step"] == "search" and log["status"] == "skipped" for log in result.thinking_logs)

    def test_invented_identifier_is_stripped(self, store, catalog_cache):
        gemini = FakeGemini(
            "1. Motorbike 4T Synth 10W-40 Street Race\n   - LM1502\n"
            "2. Motorbike 4T Synth 10W-60 Ultra\n   - LM9999\n"
        )
        reply = asyncio.run(_pipeline(store, catalog_cache, gemini=gemini).reply(NINJA))
        assert reply.validation.has_invalid_identifiers
        assert reply.validation.invalid_identifiers == ["LM9999"]
        assert "LM9999" not in reply.answer_text
        assert "LM1502" in reply.answer_text

    def test_catalog_recovers_within_retry_budget(self, store, sample_records):
        handler = FlakyCatalogHandler(sample_records, failures=2)
        result = asyncio.run(_pipeline(store, _cache(handler)).answer(NINJA))
        assert handler.requests == 3
        assert _parts(result)[0] == "LM1502"
        assert SEARCH_FAILED_NOTICE not in result.prompt_text

    def test_older_grade_request_explains_upgrade_and_asks_for_details(self, store, catalog_cache):
        payload = {
            "vehicles": [],
            "productCategory": "機油",
            "certifications": ["API SM"],
            "needsMoreInfo": ["年份"],
        }
        pipeline = _pipeline(store, catalog_cache, classifier=FakeClassifier(payload))
        result = asyncio.run(pipeline.answer("推薦 API SM 機油"))
        assert result.intent.needs_more_info == ("年份",)
        assert "backward compatible with API SM" in result.prompt_text
        assert "carry API SN" in result.prompt_text
        assert "## Ask before recommending" in result.prompt_text
        assert any(log["step"] == "notice" for log in result.thinking_logs)

    def test_second_call_within_ttl_hits_cache(self, store, catalog_cache, catalog_handler):
        pipeline = _pipeline(store, catalog_cache)
        first = asyncio.run(pipeline.answer(NINJA))
        second = asyncio.run(pipeline.answer(NINJA))
        assert catalog_cache.fetch_count == 1
        assert catalog_handler.requests == 1
        assert _parts(first) == _parts(second)


class TestAnswer:
    @pytest.mark.parametrize("message", ["", "   ", "\n"])
    def test_empty_message_rejected(self, store, catalog_cache, message):
        with pytest.raises(EmptyMessageError):
            asyncio.run(_pipeline(store, catalog_cache).answer(message))
        assert catalog_cache.fetch_count == 0

    def test_catalog_down_becomes_notice(self, store, sample_records):
        handler = FlakyCatalogHandler(sample_records, failures=10)
        result = asyncio.run(_pipeline(store, _cache(handler)).answer(NINJA))
        assert result.candidates == []
        assert SEARCH_FAILED_NOTICE in result.prompt_text
        assert result.knowledge.core_identity

    def test_long_override_skips_search(self, store, catalog_cache):
        override = "Motorbike 4T 10W-40 LM1502 " * 6
        result = asyncio.run(_pipeline(store, catalog_cache).answer(NINJA, catalog_context_override=override))
        assert catalog_cache.fetch_count == 0
        assert override.strip() in result.prompt_text

    def test_short_override_is_ignored(self, store, catalog_cache):
        result = asyncio.run(_pipeline(store, catalog_cache).answer(NINJA, catalog_context_override="ZZ-OVERRIDE"))
        assert catalog_cache.fetch_count == 1
        assert "ZZ-OVERRIDE" not in result.prompt_text

    def test_thinking_logs_cover_steps(self, store, catalog_cache):
        result = asyncio.run(_pipeline(store, catalog_cache).answer(NINJA))
        steps = [log["step"] for log in result.thinking_logs]
        assert steps[0] == "resolve"
        assert steps[-1] == "compose"
        assert set(steps) == {"resolve", "knowledge", "search", "compose"}


class TestReply:
    def test_no_client_returns_apology(self, store, catalog_cache):
        reply = asyncio.run(_pipeline(store, catalog_cache).reply(NINJA))
        assert reply.answer_text == APOLOGY_TEXT

    def test_failed_generation_returns_apology(self, store, catalog_cache):
        reply = asyncio.run(_pipeline(store, catalog_cache, gemini=FakeGemini(fail=True)).reply(NINJA))
        assert reply.answer_text == APOLOGY_TEXT

    def test_blocked_generation_returns_apology(self, store, catalog_cache):
        reply = asyncio.run(_pipeline(store, catalog_cache, gemini=FakeGemini("")).reply(NINJA))
        assert reply.answer_text == APOLOGY_TEXT

    def test_history_and_prompt_are_sent(self, store, catalog_cache):
        gemini = FakeGemini("Genuine products carry the import label.")
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        reply = asyncio.run(_pipeline(store, catalog_cache, gemini=gemini).reply("這是正品嗎", history))
        call = gemini.calls[0]
        assert [content["role"] for content in call["contents"]] == ["user", "model", "user"]
        assert call["contents"][-1]["parts"][0]["text"] == "這是正品嗎"
        assert call["system_instruction"] == reply.pipeline.prompt_text
        assert reply.validation is None
        assert reply.answer_text == "Genuine products carry the import label."

    def test_override_reply_validates_against_catalog(self, store, catalog_cache):
        override = "Motorbike 4T 10W-40 LM1502 " * 6
        gemini = FakeGemini("Use LM1502 or LM8888.")
        reply = asyncio.run(
            _pipeline(store, catalog_cache, gemini=gemini).reply(NINJA, catalog_context_override=override)
        )
        assert reply.validation.invalid_identifiers == ["LM8888"]
        assert catalog_cache.fetch_count == 1


def test_build_pipeline_without_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("KNOWLEDGE_DIR", raising=False)
    pipeline = build_pipeline(load_settings())
    assert isinstance(pipeline, AdvisorPipeline)
    result = asyncio.run(pipeline.answer("how much does it cost"))
    assert not result.used_ai_classifier
    assert result.intent.type is IntentType.PRICE_INQUIRY
