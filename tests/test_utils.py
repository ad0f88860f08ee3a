from lubebot.utils import (
    contains_any,
    keyword_in,
    normalize_key,
    normalize_text,
    safe_json_loads,
    truncate,
    viscosity_grades,
)


class TestNormalize:
    def test_folds_width_and_case(self):
        assert normalize_text("ＪＡＳＯ  MA2") == "jaso ma2"

    def test_keeps_cjk(self):
        assert normalize_text("機油 推薦") == "機油 推薦"

    def test_strips_accents(self):
        assert normalize_text("Café") == "cafe"

    def test_key_removes_spaces(self):
        assert normalize_key("Part No") == "partno"


class TestKeywordMatching:
    def test_ascii_needs_word_edges(self):
        assert keyword_in("sym jet sl", "sym")
        assert not keyword_in("symptom check", "sym")

    def test_cjk_is_substring(self):
        assert keyword_in("我的勁戰要換機油", "勁戰")

    def test_contains_any_returns_original_keyword(self):
        assert contains_any("How MUCH is it?", ["price", "how much"]) == "how much"
        assert contains_any("", ["price"]) is None


def test_truncate():
    assert truncate("abcdef", 3) == "abc..."
    assert truncate("abc", 3) == "abc"


def test_safe_json_loads_handles_fences_and_garbage():
    assert safe_json_loads('```json\n{"vehicles": []}\n```') == {"vehicles": []}
    assert safe_json_loads("not json") is None
    assert safe_json_loads("{broken") is None
    assert safe_json_loads("[1, 2]") is None


def test_viscosity_grades():
    assert viscosity_grades("Motorbike 4T 10W-40 / ５w30") == ["10W-40", "5W-30"]
    assert viscosity_grades("10w40 and 10W-40") == ["10W-40"]
    assert viscosity_grades("LM1502") == []
    assert viscosity_grades("") == []
