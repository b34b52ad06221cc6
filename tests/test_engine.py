"""
tests/test_engine.py — Unit tests for the tariff propagation engine.

Covers:
    - Weight pre-calculation (normalisation, equal-weight fallback, fan-out)
    - Downward propagation (section → everything, chapter → unpinned HS4)
    - Upward propagation (weighted, independent chapter / section moves)
    - Provenance flags
    - Rejected edits never mutate state
    - Path-dependent original population
    - BEA aggregation and the percent-change export
    - Clear semantics

All tests run against the synthetic dataset in conftest.py.
"""

from __future__ import annotations

import pytest

from tariffprop.constants import CUSTOM_BEA_ORDER, NUM_BEA_CODES
from tariffprop.engine import (
    ChapterWeights,
    EngineNotInitializedError,
    TariffPropagation,
)
from tariffprop.keys import ChapterKey, HS4Key, SectionKey
from tariffprop.sources import TariffDataset

CC = "CHN"


def _col(code: str) -> int:
    return CUSTOM_BEA_ORDER.index(code)


# ---------------------------------------------------------------------------
# Initialisation
# ---------------------------------------------------------------------------

class TestInitialize:

    def test_operations_before_initialize_raise(self):
        engine = TariffPropagation()
        with pytest.raises(EngineNotInitializedError):
            engine.update_tariff("section", "1", None, None, 5.0, CC)
        with pytest.raises(EngineNotInitializedError):
            engine.pre_calculate_weights(CC)
        with pytest.raises(EngineNotInitializedError):
            engine.calculate_bea_tariffs(CC)
        with pytest.raises(EngineNotInitializedError):
            engine.generate_tariff_data(CC)

    def test_not_initialized_error_is_runtime_error(self):
        assert issubclass(EngineNotInitializedError, RuntimeError)

    def test_initialize_returns_engine(self, dataset: TariffDataset):
        engine = TariffPropagation()
        assert engine.initialize(dataset=dataset) is engine
        assert engine.initialized

    def test_initialize_with_explicit_inputs(self, dataset: TariffDataset):
        engine = TariffPropagation().initialize(
            hierarchy=dataset.hierarchy,
            section_weights=dataset.section_weights,
            bea_section_weights=dataset.bea_section_weights,
            bea_import_weights=dataset.bea_import_weights,
            original_tariff_lookup=dataset.original_tariff_lookup,
        )
        engine.pre_calculate_weights(CC)
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 5.0

    def test_reinitialize_resets_originals_and_cache(self, engine: TariffPropagation, dataset: TariffDataset):
        engine.pre_calculate_weights(CC)
        assert engine.original_tariffs and engine.cached_chapter_weights
        engine.initialize(dataset=dataset)
        assert engine.original_tariffs == {}
        assert engine.cached_chapter_weights == {}


# ---------------------------------------------------------------------------
# Weight pre-calculation
# ---------------------------------------------------------------------------

class TestPreCalculateWeights:

    def test_relative_weights_are_normalised(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        cached = engine.cached_chapter_weights[CC]["1"]["01"]
        assert cached == ChapterWeights(
            total_weight=4.0,
            hs4_relative_weights={"0101": 0.75, "0102": 0.25},
        )

    def test_zero_weights_fall_back_to_equal(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        cached = engine.cached_chapter_weights[CC]["1"]["02"]
        assert cached.total_weight == 1.0
        assert cached.hs4_relative_weights == {"0201": 0.5, "0202": 0.5}

    def test_missing_weight_gets_zero_share(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        cached = engine.cached_chapter_weights[CC]["2"]["06"]
        assert cached.total_weight == 4.0
        assert cached.hs4_relative_weights == {"0601": 0.5, "0602": 0.5, "0603": 0.0}

    def test_relative_weights_sum_to_one(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        for section in engine.cached_chapter_weights[CC].values():
            for chapter in section.values():
                assert sum(chapter.hs4_relative_weights.values()) == pytest.approx(1.0)

    def test_originals_fanned_out(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 5.0
        assert engine.get_tariff_value("chapter", "1", "02", None, CC, "original") == 5.0
        assert engine.get_tariff_value("hs4", "1", "01", "0102", CC, "original") == 5.0
        assert engine.get_tariff_value("hs4", "2", "06", "0603", CC, "original") == 10.0

    def test_originals_not_refetched(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("section", "1", None, None, 7.0, CC, "original")
        engine.pre_calculate_weights(CC)
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 7.0

    def test_falsy_country_is_noop(self, engine: TariffPropagation):
        engine.pre_calculate_weights("")
        assert engine.cached_chapter_weights == {}
        assert engine.original_tariffs == {}

    def test_missing_weight_source_is_noop(self, dataset: TariffDataset):
        engine = TariffPropagation().initialize(
            hierarchy=dataset.hierarchy,
            original_tariff_lookup=dataset.original_tariff_lookup,
        )
        engine.pre_calculate_weights(CC)
        assert engine.cached_chapter_weights == {}
        assert engine.original_tariffs == {}

    def test_empty_weight_source_falls_back_to_equal_weights(self, dataset: TariffDataset):
        engine = TariffPropagation().initialize(
            hierarchy=dataset.hierarchy,
            section_weights={},
            original_tariff_lookup=dataset.original_tariff_lookup,
        )
        engine.pre_calculate_weights(CC)
        cached = engine.cached_chapter_weights[CC]["1"]["01"]
        assert cached.hs4_relative_weights == {"0101": 0.5, "0102": 0.5}
        assert engine.get_tariff_value("hs4", "2", "06", "0601", CC, "original") == 10.0

    def test_chapter_without_subcategories_has_no_entry(self):
        engine = TariffPropagation().initialize(
            hierarchy={"9": {"chapters": {"90": {"name": "x"}, "91": {"subcategories": {}}}}},
            section_weights={CC: {}},
        )
        engine.pre_calculate_weights(CC)
        section = engine.cached_chapter_weights[CC]["9"]
        assert "90" not in section
        assert section["91"] == ChapterWeights(total_weight=0.0, hs4_relative_weights={})

    def test_country_without_weights_gets_equal_shares(self, engine: TariffPropagation):
        engine.pre_calculate_weights("MEX")
        cached = engine.cached_chapter_weights["MEX"]["2"]["06"]
        assert cached.total_weight == 1.0
        assert cached.hs4_relative_weights["0603"] == pytest.approx(1 / 3)


# ---------------------------------------------------------------------------
# Section edits
# ---------------------------------------------------------------------------

class TestSectionEdits:

    def test_propagates_to_every_descendant(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        for chapter_id, hs4_codes in (("01", ("0101", "0102")), ("02", ("0201", "0202"))):
            assert engine.get_tariff_value("chapter", "1", chapter_id, None, CC) == 20.0
            for code in hs4_codes:
                assert engine.get_tariff_value("hs4", "1", chapter_id, code, CC) == 20.0

    def test_other_sections_untouched(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        assert engine.get_tariff_value("section", "2", None, None, CC) == 0.0
        assert engine.get_tariff_value("hs4", "2", "06", "0601", CC) == 0.0

    def test_flags(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        assert engine.is_directly_set("section", "1", None, None, CC) is True
        assert engine.is_directly_set("chapter", "1", "01", None, CC) is False
        assert engine.is_directly_set("hs4", "1", "01", "0101", CC) is False
        assert engine.directly_set_tariffs[CC][HS4Key("1", "01", "0101")] is False

    def test_overrides_pinned_descendants(self, engine: TariffPropagation):
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        assert engine.get_tariff_value("hs4", "1", "01", "0101", CC) == 20.0
        assert engine.is_directly_set("hs4", "1", "01", "0101", CC) is False


# ---------------------------------------------------------------------------
# Chapter edits
# ---------------------------------------------------------------------------

class TestChapterEdits:

    def test_pinned_hs4_survives(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        engine.update_tariff("chapter", "1", "01", None, 30.0, CC)
        assert engine.get_tariff_value("hs4", "1", "01", "0101", CC) == 13.0
        assert engine.get_tariff_value("hs4", "1", "01", "0102", CC) == 30.0
        assert engine.is_directly_set("hs4", "1", "01", "0101", CC) is True
        assert engine.is_directly_set("chapter", "1", "01", None, CC) is True

    def test_original_edit_ignores_pins(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        engine.update_tariff("chapter", "1", "01", None, 30.0, CC, "original")
        assert engine.get_tariff_value("hs4", "1", "01", "0101", CC, "original") == 30.0
        assert engine.get_tariff_value("hs4", "1", "01", "0101", CC) == 13.0

    def test_upward_weighted_change(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("chapter", "1", "01", None, 15.0, CC)
        # change 15 - 5 = 10, chapter weight 0.5
        assert engine.get_tariff_value("section", "1", None, None, CC) == pytest.approx(10.0)
        assert engine.is_directly_set("section", "1", None, None, CC) is False

    def test_change_measured_from_existing_value(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("chapter", "1", "01", None, 15.0, CC)
        engine.update_tariff("chapter", "1", "01", None, 25.0, CC)
        assert engine.get_tariff_value("section", "1", None, None, CC) == pytest.approx(15.0)

    def test_sibling_chapter_untouched(self, engine: TariffPropagation):
        engine.update_tariff("chapter", "1", "01", None, 15.0, CC)
        assert engine.get_tariff_value("chapter", "1", "02", None, CC) == 0.0


# ---------------------------------------------------------------------------
# HS4 edits
# ---------------------------------------------------------------------------

class TestHS4Edits:

    @pytest.mark.parametrize("precalculate", [True, False])
    def test_weighted_upward_propagation(self, engine: TariffPropagation, precalculate: bool):
        if precalculate:
            engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        assert engine.get_tariff_value("hs4", "1", "01", "0101", CC) == 13.0
        # change 8, relative weight 3/4
        assert engine.get_tariff_value("chapter", "1", "01", None, CC) == pytest.approx(11.0)
        # change 8, raw weight 3
        assert engine.get_tariff_value("section", "1", None, None, CC) == pytest.approx(29.0)

    def test_section_not_derived_from_chapter(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        chapter = engine.get_tariff_value("chapter", "1", "01", None, CC)
        section = engine.get_tariff_value("section", "1", None, None, CC)
        assert section != pytest.approx(5.0 + (chapter - 5.0) * 0.5)

    def test_flags(self, engine: TariffPropagation):
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        assert engine.is_directly_set("hs4", "1", "01", "0101", CC) is True
        assert engine.is_directly_set("chapter", "1", "01", None, CC) is False
        assert engine.is_directly_set("section", "1", None, None, CC) is False
        assert engine.is_directly_set("hs4", "1", "01", "0102", CC) is False

    def test_zero_weight_does_not_propagate(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "02", "0201", 50.0, CC)
        assert engine.get_tariff_value("hs4", "1", "02", "0201", CC) == 50.0
        assert ChapterKey("1", "02") not in engine.current_tariffs[CC]
        assert SectionKey("1") not in engine.current_tariffs[CC]

    def test_repeated_edit_uses_previous_value(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC)
        engine.update_tariff("hs4", "1", "01", "0101", 5.0, CC)
        assert engine.get_tariff_value("chapter", "1", "01", None, CC) == pytest.approx(5.0)
        assert engine.get_tariff_value("section", "1", None, None, CC) == pytest.approx(5.0)


# ---------------------------------------------------------------------------
# Rejected edits
# ---------------------------------------------------------------------------

class TestRejectedEdits:

    @pytest.mark.parametrize("args", [
        ("section", "99", None, None),
        ("chapter", "1", "99", None),
        ("hs4", "1", "01", "9999"),
        ("hs4", "1", "02", "0101"),
    ])
    def test_unknown_node_returns_none_without_mutation(self, engine: TariffPropagation, args):
        assert engine.update_tariff(*args, 10.0, CC) is None
        assert engine.current_tariffs == {}
        assert engine.directly_set_tariffs == {}
        assert engine.original_tariffs == {}

    def test_missing_country_returns_none(self, engine: TariffPropagation):
        assert engine.update_tariff("section", "1", None, None, 10.0, "") is None
        assert engine.current_tariffs == {}

    def test_unknown_level_raises(self, engine: TariffPropagation):
        with pytest.raises(ValueError, match="level"):
            engine.update_tariff("heading", "1", None, None, 10.0, CC)

    def test_unknown_tariff_type_raises(self, engine: TariffPropagation):
        with pytest.raises(ValueError, match="tariff type"):
            engine.update_tariff("section", "1", None, None, 10.0, CC, "baseline")

    def test_result_references_current_store(self, engine: TariffPropagation):
        result = engine.update_tariff("chapter", "1", "01", None, 10.0, CC)
        assert result is not None
        assert result.level_type == "chapter"
        assert result.chapter_id == "01"
        assert result.country_code == CC
        assert result.current_tariffs is engine.current_tariffs


# ---------------------------------------------------------------------------
# Original-tariff edits
# ---------------------------------------------------------------------------

class TestOriginalEdits:

    def test_flags_untouched(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 7.0, CC, "original")
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 7.0
        assert engine.get_tariff_value("section", "1", None, None, CC) == 0.0
        assert engine.directly_set_tariffs[CC] == {}

    def test_upward_propagation_in_original_store(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("hs4", "1", "01", "0101", 13.0, CC, "original")
        assert engine.get_tariff_value("chapter", "1", "01", None, CC, "original") == pytest.approx(11.0)
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == pytest.approx(29.0)
        assert CC not in engine.current_tariffs or not engine.current_tariffs[CC]


# ---------------------------------------------------------------------------
# Path-dependent original population
# ---------------------------------------------------------------------------

class TestOriginalPopulation:

    def test_update_first_populates_sections_only(self, engine: TariffPropagation):
        engine.update_tariff("section", "2", None, None, 12.0, CC)
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 5.0
        assert engine.get_tariff_value("chapter", "1", "01", None, CC, "original") == 0.0

    def test_precalculate_after_update_does_not_fan_out(self, engine: TariffPropagation):
        engine.update_tariff("section", "2", None, None, 12.0, CC)
        engine.pre_calculate_weights(CC)
        assert engine.get_tariff_value("chapter", "1", "01", None, CC, "original") == 0.0

    def test_bea_calculation_populates_sections_only(self, engine: TariffPropagation):
        engine.calculate_original_bea_tariffs(CC)
        assert set(engine.original_tariffs[CC]) == {SectionKey("1"), SectionKey("2")}

    def test_sections_without_source_value_skipped(self, dataset: TariffDataset):
        engine = TariffPropagation().initialize(
            hierarchy=dataset.hierarchy,
            section_weights=dataset.section_weights,
            original_tariff_lookup=lambda cc, sid: None,
        )
        engine.pre_calculate_weights(CC)
        assert engine.original_tariffs[CC] == {}


# ---------------------------------------------------------------------------
# BEA aggregation
# ---------------------------------------------------------------------------

class TestBeaAggregation:

    def test_original_bea_tariffs(self, engine: TariffPropagation):
        bea = engine.calculate_original_bea_tariffs(CC)
        assert bea == {
            "111": pytest.approx(5.0),
            "112": pytest.approx(8.75),
            "113FF": 0.0,
        }

    def test_current_bea_prefers_current(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        bea = engine.calculate_bea_tariffs(CC)
        assert bea["111"] == pytest.approx(20.0)
        # section 2 falls back to its original, 10
        assert bea["112"] == pytest.approx(12.5)
        assert bea["113FF"] == 0.0

    def test_country_without_bea_weights(self, engine: TariffPropagation):
        assert engine.calculate_bea_tariffs("JPN") == {}
        assert engine.calculate_original_bea_tariffs("JPN") == {}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

class TestGenerateTariffData:

    def test_percent_change_formula(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        export = engine.generate_tariff_data(CC)
        row = export.row(CC)
        assert row[_col("111")] == pytest.approx(15.0 / 105.0)
        assert row[_col("112")] == pytest.approx(3.75 / 108.75)
        assert row[_col("113FF")] == 0.0
        assert row[_col("Other")] == 0.0

    def test_no_edits_gives_zero_row(self, engine: TariffPropagation):
        export = engine.generate_tariff_data(CC)
        assert export.row(CC) == [0.0] * NUM_BEA_CODES

    def test_shape(self, engine: TariffPropagation):
        engine.generate_tariff_data(CC)
        export = engine.generate_tariff_data("MEX")
        assert export.iso_list == [CC, "MEX"]
        assert export.bea_codes == list(CUSTOM_BEA_ORDER)
        assert len(export.tau_c) == len(export.iso_list)
        assert all(len(row) == NUM_BEA_CODES for row in export.tau_c)

    def test_revisit_updates_in_place(self, engine: TariffPropagation):
        engine.generate_tariff_data(CC)
        engine.generate_tariff_data("MEX")
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        export = engine.generate_tariff_data(CC)
        assert export.iso_list == [CC, "MEX"]
        assert export.row(CC)[_col("111")] == pytest.approx(15.0 / 105.0)
        assert engine.iso_list == [CC, "MEX"]
        assert len(engine.tau_c) == 2

    def test_provided_originals_override(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        export = engine.generate_tariff_data(CC, {"111": 0.0})
        row = export.row(CC)
        assert row[_col("111")] == pytest.approx(0.2)
        assert row[_col("112")] == pytest.approx(0.125)
        assert engine.original_tariffs_by_country[CC]["112"] == 0.0

    def test_empty_provided_originals_count_as_given(self, engine: TariffPropagation):
        export = engine.generate_tariff_data(CC, {})
        assert export.row(CC)[_col("111")] == pytest.approx(0.05)

    def test_import_weighting(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 12.0, "MEX")
        export = engine.generate_tariff_data("MEX")
        assert export.import_weighted is True
        assert export.row("MEX")[_col("111")] == pytest.approx(10.0 / 102.0 * 0.25)
        assert engine.percent_change_by_country["MEX"]["111"] == pytest.approx(10.0 / 102.0 * 0.25)

    def test_unweighted_country(self, engine: TariffPropagation):
        assert engine.generate_tariff_data(CC).import_weighted is False

    def test_section_tariffs(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        export = engine.generate_tariff_data(CC)
        assert export.section_tariffs == {
            CC: {
                "original": {"1": 5.0, "2": 10.0},
                "current": {"1": 20.0},
            },
        }

    def test_wire_format(self, engine: TariffPropagation):
        payload = engine.generate_tariff_data(CC).to_dict()
        assert set(payload) == {
            "iso_list", "bea_codes", "tau_c", "tauCForCalculations",
            "importWeighted", "sectionTariffs",
        }
        assert payload["tauCForCalculations"][CC] == payload["tau_c"][0]

    def test_missing_country_returns_none(self, engine: TariffPropagation):
        assert engine.generate_tariff_data("") is None
        assert engine.iso_list == []


# ---------------------------------------------------------------------------
# Queries and clearing
# ---------------------------------------------------------------------------

class TestQueries:

    def test_unknown_country_defaults(self, engine: TariffPropagation):
        assert engine.get_tariff_value("section", "1", None, None, "JPN") == 0.0
        assert engine.is_directly_set("section", "1", None, None, "JPN") is False
        assert engine.get_tariff_value("section", "1", None, None, "") == 0.0

    def test_hs_code_weight(self, engine: TariffPropagation):
        assert engine.get_hs_code_weight("1", "0101", CC) == 3.0
        assert engine.get_hs_code_weight("1", "01", CC) == 0.5
        assert engine.get_hs_code_weight("1", "0201", CC) == 0.0
        assert engine.get_hs_code_weight("2", "0603", CC) == 0.0
        assert engine.get_hs_code_weight("1", "0101", "MEX") == 0.0
        assert engine.get_hs_code_weight("1", "0101", "") == 0.0


class TestClear:

    def test_clear_country_keeps_originals(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        engine.generate_tariff_data(CC)
        engine.generate_tariff_data("MEX")
        engine.clear_country_data(CC)
        assert CC not in engine.current_tariffs
        assert CC not in engine.directly_set_tariffs
        assert engine.iso_list == ["MEX"]
        assert len(engine.tau_c) == 1
        assert engine.get_tariff_value("section", "1", None, None, CC, "original") == 5.0
        assert CC not in engine.original_tariffs_by_country

    def test_clear_country_noop_for_falsy(self, engine: TariffPropagation):
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        engine.clear_country_data("")
        assert CC in engine.current_tariffs

    def test_clear_all_keeps_originals_and_cache(self, engine: TariffPropagation):
        engine.pre_calculate_weights(CC)
        engine.update_tariff("section", "1", None, None, 20.0, CC)
        engine.generate_tariff_data(CC)
        engine.clear_all_data()
        assert engine.current_tariffs == {}
        assert engine.directly_set_tariffs == {}
        assert engine.iso_list == []
        assert engine.tau_c == []
        assert engine.original_tariffs[CC]
        assert engine.cached_chapter_weights[CC]
