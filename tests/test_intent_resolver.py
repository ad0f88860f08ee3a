import asyncio

import pytest

from lubebot.errors import MalformedUpstreamResultError, UpstreamUnavailableError
from lubebot.intent import IntentType, MatchMethod
from lubebot.intent_resolver import (
    IntentResolver,
    format_history,
    parse_classifier_result,
)

from .conftest import FakeClassifier

SCOOTER_PAYLOAD = {
    "vehicles": [
        {
            "vehicleName": "勁戰",
            "vehicleType": "摩托車",
            "vehicleSubType": "速克達",
            "brand": "山葉",
            "certifications": "JASO MB",
        }
    ],
    "productCategory": "機油",
    "needsProductRecommendation": True,
    "searchKeywords": ["Scooter", "Motorbike"],
    "wixQueries": [
        {"field": "title", "value": "Scooter", "method": "contains", "limit": 99},
        {"field": "cert", "value": "JASO MB", "method": "eq"},
        {"field": "", "value": "ignored"},
    ],
}


def _resolve(store, message, classifier=None, history=None):
    resolver = IntentResolver(store, classifier, search_limit=20)
    return asyncio.run(resolver.resolve(message, history or []))


class TestAiPath:
    def test_converts_classifier_result(self, store):
        intent = _resolve(store, "我的勁戰要用什麼機油", FakeClassifier(SCOOTER_PAYLOAD))
        assert intent.used_ai_classifier
        assert intent.type is IntentType.PRODUCT_RECOMMENDATION
        assert intent.vehicle_type == "motorcycle"
        assert intent.vehicle_sub_type == "scooter"
        assert intent.is_motorcycle
        assert intent.vehicle_brand == "Yamaha"
        assert intent.product_category == "oil"
        assert intent.certifications == ("JASO MB",)
        assert intent.search_keywords == ("Scooter", "Motorbike")
        assert "product_recommendation" in intent.needs_templates

    def test_missing_details_are_carried(self, store):
        payload = {
            "vehicles": [{"vehicleName": "Focus", "vehicleType": "汽車"}],
            "productCategory": "機油",
            "needsMoreInfo": ["年份", "燃油類型", "年份"],
        }
        intent = _resolve(store, "Focus 要用什麼機油", FakeClassifier(payload))
        assert intent.needs_more_info == ("年份", "燃油類型")
        assert intent.summary()["needs_more_info"] == ["年份", "燃油類型"]

    def test_single_missing_detail_string_is_accepted(self, store):
        payload = {"vehicles": [], "productCategory": "機油", "needsMoreInfo": "vehicle model"}
        intent = _resolve(store, "推薦機油", FakeClassifier(payload))
        assert intent.needs_more_info == ("vehicle model",)

    def test_rules_path_asks_for_nothing(self, store):
        assert _resolve(store, "Ninja 400 機油推薦").needs_more_info == ()

    def test_search_tasks_are_bounded(self, store):
        intent = _resolve(store, "勁戰機油", FakeClassifier(SCOOTER_PAYLOAD))
        assert len(intent.search_tasks) == 2
        title_task, cert_task = intent.search_tasks
        assert title_task.result_limit == 30
        assert cert_task.match_method is MatchMethod.EQUALS
        assert cert_task.result_limit == 20

    def test_invalid_payload_falls_back_to_rules(self, store):
        intent = _resolve(store, "Ninja 400 機油推薦", FakeClassifier({"vehicles": []}))
        assert not intent.used_ai_classifier
        assert intent.vehicle_type == "motorcycle"

    def test_unavailable_classifier_falls_back_to_rules(self, store):
        classifier = FakeClassifier(error=UpstreamUnavailableError("timeout"))
        intent = _resolve(store, "Ninja 400 機油推薦", classifier)
        assert classifier.calls == ["Ninja 400 機油推薦"]
        assert not intent.used_ai_classifier
        assert isinstance(intent.type, IntentType)

    def test_unexpected_classifier_error_falls_back(self, store):
        intent = _resolve(store, "機油推薦", FakeClassifier(error=RuntimeError("boom")))
        assert not intent.used_ai_classifier


class TestParseClassifierResult:
    def test_needs_vehicle_or_category(self):
        with pytest.raises(MalformedUpstreamResultError):
            parse_classifier_result({"vehicles": []})
        assert parse_classifier_result({"vehicles": [], "productCategory": "additive"})

    def test_rejects_non_objects_and_bad_shapes(self):
        with pytest.raises(MalformedUpstreamResultError):
            parse_classifier_result(["vehicles"])
        with pytest.raises(MalformedUpstreamResultError):
            parse_classifier_result({"productCategory": "oil"})
        with pytest.raises(MalformedUpstreamResultError):
            parse_classifier_result({"vehicles": "car"})


class TestRulePath:
    def test_geared_motorcycle_model(self, store):
        intent = _resolve(store, "我的 Ninja 400 要換機油")
        assert intent.vehicle_type == "motorcycle"
        assert intent.is_motorcycle
        assert intent.vehicle_brand == "Kawasaki"
        assert intent.vehicle_model == "ninja"
        assert intent.vehicle_sub_type == "manual"
        assert intent.product_category == "oil"
        assert intent.type is IntentType.PRODUCT_RECOMMENDATION

    def test_car_brand_and_model(self, store):
        intent = _resolve(store, "Toyota Altis 機油推薦 0W-20")
        assert intent.vehicle_type == "car"
        assert intent.vehicle_brand == "Toyota"
        assert intent.vehicle_model == "Altis"
        assert intent.viscosity == "0W-20"
        assert intent.needs_specs

    def test_additive_category(self, store):
        intent = _resolve(store, "引擎有異音 想找添加劑")
        assert intent.product_category == "additive"
        assert intent.needs_symptoms

    def test_unknown_vehicle_stays_none(self, store):
        intent = _resolve(store, "推薦一瓶機油")
        assert intent.vehicle_type is None

    def test_certification_and_viscosity_from_text(self, store):
        intent = _resolve(store, "要 JASO MA2 10w40 機油")
        assert intent.certifications == ("JASO MA2",)
        assert intent.viscosity == "10W-40"

    def test_electric_vehicle_scenario(self, store):
        intent = _resolve(store, "Gogoro 電動機車要保養什麼")
        assert intent.is_electric_vehicle
        assert intent.special_scenario == "pure_ev_motorcycle"
        assert "ev_notice" in intent.needs_templates

    def test_hybrid_scenario(self, store):
        assert _resolve(store, "油電車 機油").special_scenario == "hybrid"

    def test_missing_tables_still_resolve(self, tmp_path):
        from lubebot.knowledge.knowledge_store import KnowledgeStore

        empty_store = KnowledgeStore(tmp_path)
        intent = _resolve(empty_store, "how much")
        assert intent.type is IntentType.PRICE_INQUIRY
        assert intent.vehicle_type is None


class TestEnhancement:
    def test_price_overrides_ai(self, store):
        intent = _resolve(store, "勁戰機油多少錢", FakeClassifier(SCOOTER_PAYLOAD))
        assert intent.used_ai_classifier
        assert intent.type is IntentType.PRICE_INQUIRY
        assert intent.needs_templates == ("price_inquiry",)
        assert not intent.needs_product_recommendation

    def test_override_drops_missing_details(self, store):
        payload = {**SCOOTER_PAYLOAD, "needsMoreInfo": ["年份"]}
        intent = _resolve(store, "勁戰機油多少錢", FakeClassifier(payload))
        assert intent.type is IntentType.PRICE_INQUIRY
        assert intent.needs_more_info == ()

    def test_authentication_wins_over_price(self, store):
        intent = _resolve(store, "這是正品嗎 價格多少")
        assert intent.type is IntentType.AUTHENTICATION

    def test_price_question_without_product(self, store):
        intent = _resolve(store, "how much does it cost")
        assert intent.type is IntentType.PRICE_INQUIRY
        assert not intent.wants_products

    def test_purchase_and_cooperation(self, store):
        assert _resolve(store, "哪裡買得到").type is IntentType.PURCHASE_INQUIRY
        assert _resolve(store, "想談批發合作").type is IntentType.COOPERATION_INQUIRY


def test_format_history_truncates_and_limits():
    history = [{"role": "user", "content": "x" * 150}] + [
        {"role": "assistant", "content": f"turn {i}"} for i in range(5)
    ]
    text = format_history(history, max_turns=4, turn_chars=100)
    assert text.count("\n") == 3
    assert "x" not in text
    assert format_history([], 4, 100) == "(none)"
