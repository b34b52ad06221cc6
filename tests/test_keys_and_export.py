"""
tests/test_keys_and_export.py — Hierarchy keys, percent-change formula,
export accumulator and trade weighting.
"""

from __future__ import annotations

import math

import pytest

from tariffprop.constants import CUSTOM_BEA_ORDER, NUM_BEA_CODES
from tariffprop.export import (
    ExportAccumulator,
    TariffExport,
    apply_trade_weighting,
    ordered_import_vector,
    percent_change,
)
from tariffprop.keys import ChapterKey, HS4Key, SectionKey, make_key


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

class TestKeys:

    def test_structural_equality_and_hashing(self):
        assert ChapterKey("1", "01") == ChapterKey("1", "01")
        assert len({HS4Key("1", "01", "0101"), HS4Key("1", "01", "0101")}) == 1

    def test_levels_never_collide(self):
        assert SectionKey("1") != ChapterKey("1", "01")
        assert ChapterKey("1", "01") != HS4Key("1", "01", "0101")

    def test_underscore_ids_do_not_collide(self):
        a = ChapterKey("1_0", "1")
        b = ChapterKey("1", "0_1")
        assert str(a) == str(b) == "1_0_1"
        assert a != b

    def test_display_form(self):
        assert str(SectionKey("16")) == "16"
        assert str(HS4Key("16", "85", "8517")) == "16_85_8517"

    def test_parents(self):
        key = HS4Key("16", "85", "8517")
        assert key.chapter == ChapterKey("16", "85")
        assert key.section == SectionKey("16")
        assert key.level == "hs4"

    @pytest.mark.parametrize("level, args, expected", [
        ("section", ("1",), SectionKey("1")),
        ("chapter", ("1", "01"), ChapterKey("1", "01")),
        ("hs4", ("1", "01", "0101"), HS4Key("1", "01", "0101")),
        ("section", ("1", "01", "0101"), SectionKey("1")),
    ])
    def test_make_key(self, level, args, expected):
        assert make_key(level, *args) == expected

    def test_make_key_coerces_ids_to_str(self):
        assert make_key("chapter", 1, 2) == ChapterKey("1", "2")

    def test_make_key_rejects_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown level type"):
            make_key("heading", "1")

    def test_make_key_requires_components(self):
        with pytest.raises(ValueError, match="chapter_id"):
            make_key("chapter", "1")
        with pytest.raises(ValueError, match="hs4_code"):
            make_key("hs4", "1", "01")


# ---------------------------------------------------------------------------
# Percent change
# ---------------------------------------------------------------------------

class TestPercentChange:

    def test_formula(self):
        assert percent_change(15.0, 5.0) == pytest.approx(10.0 / 105.0)
        assert percent_change(0.0, 25.0) == pytest.approx(-25.0 / 125.0)

    def test_both_zero(self):
        assert percent_change(0.0, 0.0) == 0.0

    def test_unchanged_is_zero(self):
        assert percent_change(7.5, 7.5) == 0.0

    def test_zero_denominator(self):
        assert percent_change(10.0, -100.0) == 0.0

    def test_non_finite_clamped(self):
        assert percent_change(math.inf, 5.0) == 0.0
        assert percent_change(math.nan, 5.0) == 0.0


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

class TestExportAccumulator:

    def test_upsert_keeps_first_export_order(self):
        acc = ExportAccumulator()
        acc.upsert("CHN", {}, {"111": 0.1})
        acc.upsert("MEX", {}, {"111": 0.2})
        acc.upsert("CHN", {}, {"111": 0.3})
        assert acc.iso_list == ["CHN", "MEX"]
        assert acc.tau_c[0][0] == 0.3
        assert acc.tau_c[1][0] == 0.2

    def test_rows_follow_bea_order(self):
        acc = ExportAccumulator()
        acc.upsert("CHN", {}, {"Other": 0.5, "111": 0.1})
        row = acc.tau_c[0]
        assert len(row) == NUM_BEA_CODES
        assert row[0] == 0.1
        assert row[-1] == 0.5

    def test_remove(self):
        acc = ExportAccumulator()
        acc.upsert("CHN", {"111": 1.0}, {"111": 0.1})
        acc.upsert("MEX", {}, {})
        assert acc.remove("CHN") is True
        assert acc.remove("CHN") is False
        assert acc.iso_list == ["MEX"]
        assert len(acc.tau_c) == 1
        assert "CHN" not in acc.original_tariffs_by_country

    def test_snapshot_is_a_copy(self):
        acc = ExportAccumulator()
        acc.upsert("CHN", {}, {"111": 0.1})
        snap = acc.snapshot(import_weighted=False, section_tariffs={})
        acc.upsert("CHN", {}, {"111": 0.9})
        assert snap.row("CHN")[0] == 0.1
        assert snap.row("JPN") is None

    def test_bea_order_is_fixed(self):
        assert NUM_BEA_CODES == 140
        assert CUSTOM_BEA_ORDER[:3] == ("111", "112", "113FF")
        assert CUSTOM_BEA_ORDER[-2:] == ("Used", "Other")
        assert len(set(CUSTOM_BEA_ORDER)) == NUM_BEA_CODES


# ---------------------------------------------------------------------------
# Trade weighting
# ---------------------------------------------------------------------------

def _export(iso_list: list[str], rows: list[list[float]], codes: list[str]) -> TariffExport:
    return TariffExport(
        iso_list=iso_list,
        bea_codes=codes,
        tau_c=rows,
        import_weighted=False,
        section_tariffs={},
    )


class TestTradeWeighting:

    def test_ordered_vector(self):
        weights = {"CHN": {"b": 0.4, "a": 0.6}}
        assert ordered_import_vector(weights, "CHN", ["a", "b", "c"]) == [0.6, 0.4, 0.0]

    def test_equal_fallback(self):
        assert ordered_import_vector({}, "CHN", ["a", "b", "c", "d"]) == [0.25] * 4

    def test_default_order_length(self):
        assert len(ordered_import_vector({}, "CHN")) == NUM_BEA_CODES

    def test_element_wise(self):
        export = _export(["CHN", "MEX"], [[0.1, 0.2], [0.4, 0.4]], ["a", "b"])
        weighted = apply_trade_weighting(export, {"CHN": {"a": 0.5, "b": 0.5}})
        assert weighted.tau_c[0] == [pytest.approx(0.05), pytest.approx(0.1)]
        # MEX has no data: equal 1/2 weights
        assert weighted.tau_c[1] == [pytest.approx(0.2), pytest.approx(0.2)]
        assert weighted.import_weighted is True
        assert export.import_weighted is False

    def test_length_mismatch_left_unweighted(self):
        export = _export(["CHN"], [[0.1, 0.2, 0.3]], ["a", "b"])
        weighted = apply_trade_weighting(export, {"CHN": {"a": 0.5, "b": 0.5}})
        assert weighted.tau_c == [[0.1, 0.2, 0.3]]
