from lubebot.certification import (
    certification_tokens,
    compatible_upgrades,
    detect_certifications,
    exact_match,
    has_certification,
    normalize_certification,
    substring_match,
)


class TestNormalize:
    def test_spacing_and_dashes(self):
        assert normalize_certification("JASO MA 2") == normalize_certification("jaso-ma2")

    def test_longlife_shorthand(self):
        assert normalize_certification("BMW LL-04 Approval") == "BMWLONGLIFE04"
        assert normalize_certification("BMW Longlife-04") == "BMWLONGLIFE04"

    def test_tokens_split_on_separators(self):
        assert certification_tokens("VW 504.00/507.00, MB 229.51") == ["VW504.00", "507.00", "MB229.51"]


class TestMatching:
    def test_exact_token(self):
        assert exact_match("JASO MA2", "JASO MA2, API SN")
        assert not exact_match("JASO MA", "JASO MA2, API SN")

    def test_ma_does_not_match_inside_ma2(self):
        assert not substring_match("JASO MA", "JASO MA2")
        assert substring_match("JASO MA", "JASO MA, MB")

    def test_substring_inside_longer_token(self):
        assert substring_match("API SP", "API SP/SN PLUS")
        assert has_certification("BMW LL-04, MB 229.51", "BMW Longlife-04")

    def test_empty_inputs(self):
        assert not exact_match("", "JASO MA2")
        assert not substring_match("JASO MA2", "")


def test_detect_certifications_in_message():
    found = detect_certifications("要 jaso ma2 跟 API SP 的 5W-30")
    assert found == ["JASO MA2", "API SP"]


class TestCompatibleUpgrades:
    def test_newer_api_grades(self, store):
        table = store.load_named("search-reference")["certification_compatibility"]
        assert compatible_upgrades("API SN", table) == ["API SQ", "API SP"]
        assert compatible_upgrades("api-sl", table)[:2] == ["API SQ", "API SP"]

    def test_jaso_ma_accepts_ma2(self, store):
        table = store.load_named("search-reference")["certification_compatibility"]
        assert compatible_upgrades("JASO MA", table) == ["JASO MA2"]

    def test_oem_and_missing_table(self, store):
        table = store.load_named("search-reference")["certification_compatibility"]
        assert compatible_upgrades("VW 504.00", table) == []
        assert compatible_upgrades("API SN", None) == []
        assert compatible_upgrades("", table) == []
