"""
tariffprop.engine — Bidirectional tariff propagation engine.

Keeps a three-level tree (Section → Chapter → HS4) of tariff rates
consistent under edits at any level, per country:

    - Edits propagate DOWN by direct assignment.
    - Edits propagate UP by weighted change (weights from the weight source).
    - Every node in the "current" scenario carries a provenance flag:
      True if it was the target of the latest user edit, False if its
      value was derived by propagation.

State (all owned by one TariffPropagation instance, never shared):

    current_tariffs       country → HierarchyKey → float
    original_tariffs      country → HierarchyKey → float   (baseline)
    directly_set_tariffs  country → HierarchyKey → bool    (current only)
    cached_chapter_weights country → section → chapter → ChapterWeights
    exports               ExportAccumulator (iso_list, tau_c, ...)

Tariff values are percentages (5.0 means 5%), never fractions.

Error contract:
    - Missing prerequisite data (no country code, unknown section, chapter
      or HS4 code) is logged as a structured event and returns
      None / 0.0 / False / {} without mutating state.
    - Programmer errors raise: EngineNotInitializedError when an operation
      that needs input data runs before initialize(), ValueError for an
      unknown level type or tariff type.

Original baseline population is path dependent. pre_calculate_weights()
fans each section baseline out to every chapter and HS4 key below it;
update_tariff() and the BEA aggregations only write section keys. Whichever
runs first for a country decides the depth. Both paths log which one won.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from tariffprop.constants import (
    CUSTOM_BEA_ORDER,
    TARIFF_CURRENT,
    TARIFF_ORIGINAL,
    VALID_TARIFF_TYPES,
)
from tariffprop.export import ExportAccumulator, TariffExport, percent_change
from tariffprop.keys import ChapterKey, HierarchyKey, HS4Key, SectionKey, make_key

logger = logging.getLogger("tariffprop.engine")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class OriginalTariff:
    """Baseline tariff for one (country, section) pair.

    us_tariff is None when the source has no value for the section;
    such sections are skipped rather than stored as 0.
    """

    us_tariff: Optional[float] = None
    code: Optional[int] = None


OriginalTariffLookup = Callable[[str, str], Optional[OriginalTariff]]


@dataclass(frozen=True, slots=True)
class ChapterWeights:
    """Memoized chapter weights for one country.

    total_weight == 1.0 with equal hs4_relative_weights means the weight
    source had nothing positive for this chapter.
    """

    total_weight: float
    hs4_relative_weights: dict[str, float]


@dataclass(frozen=True)
class UpdateResult:
    level_type: str
    section_id: str
    chapter_id: Optional[str]
    hs4_code: Optional[str]
    country_code: str
    current_tariffs: dict[str, dict[HierarchyKey, float]]


class EngineNotInitializedError(RuntimeError):
    """Raised when an operation needing input data runs before initialize()."""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TariffPropagation:
    """Per-session tariff propagation state and operations.

    Usage::

        engine = TariffPropagation().initialize(
            hierarchy=hierarchy,
            section_weights=section_weights,
            bea_section_weights=bea_section_weights,
            bea_import_weights=bea_import_weights,
            original_tariff_lookup=lookup,
        )
        engine.pre_calculate_weights("CHN")
        engine.update_tariff("hs4", "16", "85", "8517", 25.0, "CHN")
        export = engine.generate_tariff_data("CHN")

    Not thread-safe. One instance per session.
    """

    def __init__(self, bea_order: Sequence[str] = CUSTOM_BEA_ORDER) -> None:
        self.current_tariffs: dict[str, dict[HierarchyKey, float]] = {}
        self.original_tariffs: dict[str, dict[HierarchyKey, float]] = {}
        self.directly_set_tariffs: dict[str, dict[HierarchyKey, bool]] = {}
        self.cached_chapter_weights: dict[str, dict[str, dict[str, ChapterWeights]]] = {}

        self.hierarchy: Mapping[str, Any] = {}
        self.section_weights: Mapping[str, Any] = {}
        self.bea_section_weights: Mapping[str, Any] = {}
        self.bea_import_weights: Mapping[str, Any] = {}
        self.original_tariff_lookup: Optional[OriginalTariffLookup] = None
        self._weights_loaded = False

        self.exports = ExportAccumulator(bea_order=tuple(bea_order))
        self._initialized = False

    # -- export accumulator views -------------------------------------------

    @property
    def bea_order(self) -> tuple[str, ...]:
        return self.exports.bea_order

    @property
    def iso_list(self) -> list[str]:
        return self.exports.iso_list

    @property
    def tau_c(self) -> list[list[float]]:
        return self.exports.tau_c

    @property
    def original_tariffs_by_country(self) -> dict[str, dict[str, float]]:
        return self.exports.original_tariffs_by_country

    @property
    def percent_change_by_country(self) -> dict[str, dict[str, float]]:
        return self.exports.percent_change_by_country

    @property
    def initialized(self) -> bool:
        return self._initialized

    # -- wiring --------------------------------------------------------------

    def initialize(
        self,
        hierarchy: Optional[Mapping[str, Any]] = None,
        section_weights: Optional[Mapping[str, Any]] = None,
        bea_section_weights: Optional[Mapping[str, Any]] = None,
        bea_import_weights: Optional[Mapping[str, Any]] = None,
        original_tariff_lookup: Optional[OriginalTariffLookup] = None,
        *,
        dataset: Any = None,
    ) -> TariffPropagation:
        """Wire the external data in. Resets the weight cache and originals.

        Either pass the five inputs, or a TariffDataset via `dataset`.
        Current tariffs, flags and exports are left as they are.
        """
        if dataset is not None:
            hierarchy = dataset.hierarchy
            section_weights = dataset.section_weights
            bea_section_weights = dataset.bea_section_weights
            bea_import_weights = dataset.bea_import_weights
            original_tariff_lookup = dataset.original_tariff_lookup

        self.hierarchy = hierarchy or {}
        self.section_weights = section_weights or {}
        self._weights_loaded = section_weights is not None
        self.bea_section_weights = bea_section_weights or {}
        self.bea_import_weights = bea_import_weights or {}
        self.original_tariff_lookup = original_tariff_lookup

        self.cached_chapter_weights = {}
        self.original_tariffs = {}
        self._initialized = True

        logger.debug(json.dumps({
            "event": "engine_initialized",
            "sections": len(self.hierarchy),
            "weighted_countries": len(self.section_weights),
            "bea_countries": len(self.bea_section_weights),
            "import_weighted_countries": len(self.bea_import_weights),
            "original_lookup": self.original_tariff_lookup is not None,
        }))
        return self

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise EngineNotInitializedError(
                f"{operation}() called before initialize()."
            )

    @staticmethod
    def _check_tariff_type(tariff_type: str) -> None:
        if tariff_type not in VALID_TARIFF_TYPES:
            raise ValueError(
                f"Unknown tariff type '{tariff_type}'. "
                f"Must be one of {sorted(VALID_TARIFF_TYPES)}."
            )

    def _store(self, tariff_type: str) -> dict[str, dict[HierarchyKey, float]]:
        return self.original_tariffs if tariff_type == TARIFF_ORIGINAL else self.current_tariffs

    # -- hierarchy access ----------------------------------------------------

    def _chapters(self, section_id: str) -> Mapping[str, Any]:
        section = self.hierarchy.get(section_id)
        if not section:
            return {}
        return section.get("chapters") or {}

    @staticmethod
    def _subcategories(chapter: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
        if not chapter:
            return {}
        return chapter.get("subcategories") or {}

    def _node_exists(self, key: HierarchyKey) -> bool:
        if key.section_id not in self.hierarchy:
            return False
        if isinstance(key, SectionKey):
            return True
        chapters = self._chapters(key.section_id)
        if key.chapter_id not in chapters:
            return False
        if isinstance(key, ChapterKey):
            return True
        return key.hs4_code in self._subcategories(chapters[key.chapter_id])

    def get_hs_code_weight(self, section_id: str, code: str, country_code: str) -> float:
        """Raw weight of a chapter or HS4 code within its section, 0 if absent."""
        if not country_code:
            return 0.0
        country_weights = self.section_weights.get(country_code) or {}
        section_weights = country_weights.get(section_id) or {}
        weight = section_weights.get(code)
        return float(weight) if weight else 0.0

    # -- original baseline ---------------------------------------------------

    def _populate_original_tariffs(self, country_code: str, fan_out: bool, trigger: str) -> None:
        """Load section baselines for a country once, if none are stored yet.

        fan_out=True also writes the section value to every chapter and
        HS4 key below the section.
        """
        originals = self.original_tariffs.setdefault(country_code, {})
        if originals or self.original_tariff_lookup is None:
            return

        populated = 0
        for section_id in self.hierarchy:
            data = self.original_tariff_lookup(country_code, section_id)
            if data is None or data.us_tariff is None:
                continue
            value = float(data.us_tariff)
            originals[SectionKey(section_id)] = value
            populated += 1

            if not fan_out:
                continue
            for chapter_id, chapter in self._chapters(section_id).items():
                originals[ChapterKey(section_id, chapter_id)] = value
                for hs4_code in self._subcategories(chapter):
                    originals[HS4Key(section_id, chapter_id, hs4_code)] = value

        logger.debug(json.dumps({
            "event": "original_tariffs_populated",
            "country_code": country_code,
            "trigger": trigger,
            "fan_out": fan_out,
            "sections": populated,
            "keys": len(originals),
        }))

    # -- weight pre-calculation ----------------------------------------------

    def pre_calculate_weights(self, country_code: str) -> None:
        """Rebuild the chapter weight cache for a country.

        Also populates the country's original tariffs (with full fan-out)
        if none are stored yet. Call whenever the active country changes.
        """
        self._require_initialized("pre_calculate_weights")
        if not country_code or not self.hierarchy or not self._weights_loaded:
            if not country_code:
                reason = "missing_country_code"
            elif not self.hierarchy:
                reason = "hierarchy_not_loaded"
            else:
                reason = "weights_not_loaded"
            logger.error(json.dumps({
                "event": "precalculate_skipped",
                "country_code": country_code,
                "reason": reason,
            }))
            return

        self._populate_original_tariffs(country_code, fan_out=True, trigger="pre_calculate_weights")

        country_cache = self.cached_chapter_weights.setdefault(country_code, {})
        for section_id, section in self.hierarchy.items():
            if not section or not section.get("chapters"):
                continue
            section_cache = country_cache.setdefault(section_id, {})
            for chapter_id, chapter in section["chapters"].items():
                if not chapter or chapter.get("subcategories") is None:
                    continue
                section_cache[chapter_id] = self._chapter_weights(
                    section_id, chapter["subcategories"], country_code,
                )

    def _chapter_weights(
        self,
        section_id: str,
        subcategories: Mapping[str, Any],
        country_code: str,
    ) -> ChapterWeights:
        raw: dict[str, float] = {}
        total = 0.0
        for hs4_code in subcategories:
            weight = self.get_hs_code_weight(section_id, hs4_code, country_code)
            if weight > 0:
                raw[hs4_code] = weight
                total += weight

        if total <= 0:
            if not subcategories:
                return ChapterWeights(total_weight=0.0, hs4_relative_weights={})
            equal = 1.0 / len(subcategories)
            return ChapterWeights(
                total_weight=1.0,
                hs4_relative_weights={code: equal for code in subcategories},
            )

        return ChapterWeights(
            total_weight=total,
            hs4_relative_weights={code: raw.get(code, 0.0) / total for code in subcategories},
        )

    # -- bidirectional update ------------------------------------------------

    def update_tariff(
        self,
        level_type: str,
        section_id: str,
        chapter_id: Optional[str],
        hs4_code: Optional[str],
        new_value: float,
        country_code: str,
        tariff_type: str = TARIFF_CURRENT,
    ) -> Optional[UpdateResult]:
        """Set one node's tariff and propagate the edit through the tree.

        Args:
            level_type: "section", "chapter" or "hs4".
            section_id, chapter_id, hs4_code: path to the node; unused
                trailing components may be None.
            new_value: tariff in percent.
            country_code: ISO code of the partner country.
            tariff_type: "current" (tracked, pinning-aware) or "original".

        Returns:
            UpdateResult, or None if the country code is missing or the
            node does not exist in the hierarchy.
        """
        self._require_initialized("update_tariff")
        self._check_tariff_type(tariff_type)

        if not country_code:
            logger.error(json.dumps({
                "event": "update_rejected",
                "reason": "missing_country_code",
                "level_type": level_type,
                "section_id": section_id,
            }))
            return None

        key = make_key(level_type, section_id, chapter_id, hs4_code)
        if key.section_id not in self.hierarchy or not self._node_exists(key):
            logger.error(json.dumps({
                "event": "update_rejected",
                "reason": "unknown_section" if key.section_id not in self.hierarchy else "unknown_node",
                "country_code": country_code,
                "key": str(key),
            }))
            return None

        self.current_tariffs.setdefault(country_code, {})
        self.directly_set_tariffs.setdefault(country_code, {})
        self._populate_original_tariffs(country_code, fan_out=False, trigger="update_tariff")

        store = self._store(tariff_type)[country_code]
        flags = self.directly_set_tariffs[country_code]
        track = tariff_type == TARIFF_CURRENT
        original_section = self.original_tariffs[country_code].get(SectionKey(key.section_id)) or 0.0
        value = float(new_value)

        if isinstance(key, SectionKey):
            self._apply_section_edit(key, value, store, flags, track)
        elif isinstance(key, ChapterKey):
            self._apply_chapter_edit(key, value, store, flags, track, original_section, country_code)
        else:
            self._apply_hs4_edit(key, value, store, flags, track, original_section, country_code)

        logger.debug(json.dumps({
            "event": "tariff_updated",
            "country_code": country_code,
            "key": str(key),
            "tariff_type": tariff_type,
            "value": value,
        }))

        return UpdateResult(
            level_type=key.level,
            section_id=key.section_id,
            chapter_id=chapter_id,
            hs4_code=hs4_code,
            country_code=country_code,
            current_tariffs=self.current_tariffs,
        )

    def _apply_section_edit(
        self,
        key: SectionKey,
        value: float,
        store: dict[HierarchyKey, float],
        flags: dict[HierarchyKey, bool],
        track: bool,
    ) -> None:
        store[key] = value
        if track:
            flags[key] = True

        # Downward propagation always overrides, pinned children included.
        for chapter_id, chapter in self._chapters(key.section_id).items():
            chapter_key = ChapterKey(key.section_id, chapter_id)
            store[chapter_key] = value
            if track:
                flags[chapter_key] = False
            for hs4_code in self._subcategories(chapter):
                hs4_key = HS4Key(key.section_id, chapter_id, hs4_code)
                store[hs4_key] = value
                if track:
                    flags[hs4_key] = False

    def _apply_chapter_edit(
        self,
        key: ChapterKey,
        value: float,
        store: dict[HierarchyKey, float],
        flags: dict[HierarchyKey, bool],
        track: bool,
        original_section: float,
        country_code: str,
    ) -> None:
        previous = store.get(key)
        change = value - (previous if previous is not None else original_section)

        store[key] = value
        if track:
            flags[key] = True

        chapter = self._chapters(key.section_id).get(key.chapter_id)
        for hs4_code in self._subcategories(chapter):
            hs4_key = HS4Key(key.section_id, key.chapter_id, hs4_code)
            # Pinned HS4 codes survive a current-scenario chapter edit.
            if not track or not flags.get(hs4_key):
                store[hs4_key] = value

        chapter_weight = self.get_hs_code_weight(key.section_id, key.chapter_id, country_code)
        if chapter_weight > 0:
            self._adjust(store, key.section, change * chapter_weight, original_section)
            if track:
                flags[key.section] = False

    def _apply_hs4_edit(
        self,
        key: HS4Key,
        value: float,
        store: dict[HierarchyKey, float],
        flags: dict[HierarchyKey, bool],
        track: bool,
        original_section: float,
        country_code: str,
    ) -> None:
        previous = store.get(key)
        change = value - (previous if previous is not None else original_section)

        store[key] = value
        if track:
            flags[key] = True

        relative_weight, hs4_weight = self._hs4_weights(key, country_code)

        # Chapter and section move independently from the same change;
        # the section is not re-derived from the chapter's new value.
        if relative_weight > 0:
            self._adjust(store, key.chapter, change * relative_weight, original_section)
            if track:
                flags[key.chapter] = False

        if hs4_weight > 0:
            self._adjust(store, key.section, change * hs4_weight, original_section)
            if track:
                flags[key.section] = False

    def _hs4_weights(self, key: HS4Key, country_code: str) -> tuple[float, float]:
        """Return (share of the HS4 code within its chapter, raw HS4 weight)."""
        hs4_weight = self.get_hs_code_weight(key.section_id, key.hs4_code, country_code)

        cached = (
            self.cached_chapter_weights
            .get(country_code, {})
            .get(key.section_id, {})
            .get(key.chapter_id)
        )
        if cached is not None:
            total = cached.total_weight or 0.0
        else:
            chapter = self._chapters(key.section_id).get(key.chapter_id)
            total = sum(
                self.get_hs_code_weight(key.section_id, code, country_code)
                for code in self._subcategories(chapter)
            )

        relative_weight = hs4_weight / total if total > 0 and hs4_weight > 0 else 0.0
        return relative_weight, hs4_weight

    @staticmethod
    def _adjust(
        store: dict[HierarchyKey, float],
        target: HierarchyKey,
        delta: float,
        fallback: float,
    ) -> None:
        if target in store:
            store[target] += delta
        else:
            store[target] = fallback + delta

    # -- BEA aggregation -----------------------------------------------------

    def calculate_original_bea_tariffs(self, country_code: str) -> dict[str, float]:
        """Weighted average of original section tariffs per BEA code."""
        self._require_initialized("calculate_original_bea_tariffs")
        if not country_code:
            return {}
        self._populate_original_tariffs(
            country_code, fan_out=False, trigger="calculate_original_bea_tariffs",
        )
        return self._bea_tariffs(country_code, prefer_current=False)

    def calculate_bea_tariffs(self, country_code: str) -> dict[str, float]:
        """Weighted average of section tariffs per BEA code.

        Uses the current section value where one exists, else the original.
        """
        self._require_initialized("calculate_bea_tariffs")
        if not country_code:
            return {}
        self._populate_original_tariffs(
            country_code, fan_out=False, trigger="calculate_bea_tariffs",
        )
        return self._bea_tariffs(country_code, prefer_current=True)

    def _bea_tariffs(self, country_code: str, prefer_current: bool) -> dict[str, float]:
        bea_weights = self.bea_section_weights.get(country_code)
        if not bea_weights:
            logger.debug(json.dumps({
                "event": "bea_weights_missing",
                "country_code": country_code,
            }))
            return {}

        originals = self.original_tariffs.get(country_code, {})
        current = self.current_tariffs.get(country_code, {}) if prefer_current else {}

        bea_tariffs: dict[str, float] = {}
        for bea_code, section_weights in bea_weights.items():
            weighted_sum = 0.0
            total_weight = 0.0
            for section_id, weight in (section_weights or {}).items():
                section_key = SectionKey(str(section_id))
                tariff = current.get(section_key)
                if tariff is None:
                    tariff = originals.get(section_key) or 0.0
                weighted_sum += tariff * weight
                total_weight += weight
            bea_tariffs[bea_code] = weighted_sum / total_weight if total_weight > 0 else 0.0
        return bea_tariffs

    # -- export ---------------------------------------------------------------

    def generate_tariff_data(
        self,
        country_code: str,
        provided_original_bea_tariffs: Optional[Mapping[str, float]] = None,
    ) -> Optional[TariffExport]:
        """Compute the country's percent-change row and return the export bundle.

        Args:
            country_code: ISO code of the partner country.
            provided_original_bea_tariffs: overrides the computed original
                BEA tariffs when given (an empty mapping counts as given).

        Returns:
            TariffExport covering every country exported so far, or None
            if the country code is missing.
        """
        self._require_initialized("generate_tariff_data")
        if not country_code:
            logger.error(json.dumps({
                "event": "export_rejected",
                "reason": "missing_country_code",
            }))
            return None

        current_bea = self.calculate_bea_tariffs(country_code)
        calculated_original_bea = self.calculate_original_bea_tariffs(country_code)
        originals = (
            provided_original_bea_tariffs
            if provided_original_bea_tariffs is not None
            else calculated_original_bea
        )
        import_weights = self.bea_import_weights.get(country_code) or {}

        original_vector: dict[str, float] = {}
        change_vector: dict[str, float] = {}
        for bea_code in self.bea_order:
            original = float(originals.get(bea_code) or 0.0)
            current = float(current_bea.get(bea_code) or 0.0)
            original_vector[bea_code] = original

            change = percent_change(current, original)
            weight = import_weights.get(bea_code)
            if weight is not None:
                change *= float(weight)
            change_vector[bea_code] = change

        self.exports.upsert(country_code, original_vector, change_vector)

        logger.info(json.dumps({
            "event": "tariff_data_generated",
            "country_code": country_code,
            "countries_exported": len(self.exports.iso_list),
            "nonzero_changes": sum(1 for v in change_vector.values() if abs(v) > 1e-4),
            "import_weighted": bool(import_weights),
        }))

        return self.exports.snapshot(
            import_weighted=bool(import_weights),
            section_tariffs=self._section_tariffs(),
        )

    def _section_tariffs(self) -> dict[str, dict[str, dict[str, float]]]:
        def section_level(store: Mapping[HierarchyKey, float]) -> dict[str, float]:
            return {
                key.section_id: value
                for key, value in store.items()
                if isinstance(key, SectionKey)
            }

        return {
            iso: {
                "original": section_level(self.original_tariffs.get(iso, {})),
                "current": section_level(self.current_tariffs.get(iso, {})),
            }
            for iso in self.exports.iso_list
        }

    # -- queries ----------------------------------------------------------------

    def get_tariff_value(
        self,
        level_type: str,
        section_id: str,
        chapter_id: Optional[str],
        hs4_code: Optional[str],
        country_code: str,
        tariff_type: str = TARIFF_CURRENT,
    ) -> float:
        """Stored tariff for a node, 0.0 if the country or node has none."""
        self._check_tariff_type(tariff_type)
        if not country_code:
            return 0.0
        key = make_key(level_type, section_id, chapter_id, hs4_code)
        store = self._store(tariff_type).get(country_code)
        if not store:
            return 0.0
        return store.get(key, 0.0)

    def is_directly_set(
        self,
        level_type: str,
        section_id: str,
        chapter_id: Optional[str],
        hs4_code: Optional[str],
        country_code: str,
    ) -> bool:
        if not country_code:
            return False
        key = make_key(level_type, section_id, chapter_id, hs4_code)
        flags = self.directly_set_tariffs.get(country_code)
        if not flags:
            return False
        return flags.get(key) is True

    def clear_country_data(self, country_code: str) -> None:
        """Drop a country's current tariffs, flags and export row.

        Original tariffs are kept.
        """
        if not country_code:
            return
        self.current_tariffs.pop(country_code, None)
        self.directly_set_tariffs.pop(country_code, None)
        self.exports.remove(country_code)

    def clear_all_data(self) -> None:
        """Reset current tariffs, flags and exports. Originals and the
        weight cache are kept."""
        self.current_tariffs = {}
        self.directly_set_tariffs = {}
        self.exports.clear()
