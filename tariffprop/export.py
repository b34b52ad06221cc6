"""
tariffprop.export — Export vectors for the downstream price model.

The engine turns section tariffs into BEA-code tariffs, then into a
percent-change row per country:

    percent_change = (current - original) / (100 + original)

which is the fractional price effect of moving a tariff from `original`
to `current` (both in percent). Rows are laid out in CUSTOM_BEA_ORDER and
collected in an ExportAccumulator, one row per country, in the order the
countries were first exported.

Wire format (TariffExport.to_dict()):
    {
      "iso_list": [str, ...],
      "bea_codes": [str, ...],               # CUSTOM_BEA_ORDER
      "tau_c": [[float, ...], ...],          # one row per iso_list entry
      "tauCForCalculations": {iso: [float, ...]},
      "importWeighted": bool,
      "sectionTariffs": {iso: {"original": {section: float},
                               "current": {section: float}}}
    }
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Sequence

from tariffprop.constants import CUSTOM_BEA_ORDER, PERCENT_BASE


def percent_change(current: float, original: float) -> float:
    """Fractional price effect of a tariff move. Never NaN or Inf.

    Both zero → exactly 0.0. A zero denominator (original == -100) → 0.0.
    """
    if original == 0 and current == 0:
        return 0.0
    denominator = PERCENT_BASE + original
    if denominator == 0:
        return 0.0
    value = (current - original) / denominator
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


@dataclass(frozen=True)
class TariffExport:
    """Snapshot of the export accumulator after one generate call."""

    iso_list: list[str]
    bea_codes: list[str]
    tau_c: list[list[float]]
    import_weighted: bool
    section_tariffs: dict[str, dict[str, dict[str, float]]]

    @property
    def tau_c_by_country(self) -> dict[str, list[float]]:
        return dict(zip(self.iso_list, self.tau_c))

    def row(self, country_code: str) -> Optional[list[float]]:
        """tau_c row for one country, or None if it was never exported."""
        try:
            return self.tau_c[self.iso_list.index(country_code)]
        except ValueError:
            return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iso_list": list(self.iso_list),
            "bea_codes": list(self.bea_codes),
            "tau_c": [list(r) for r in self.tau_c],
            "tauCForCalculations": {k: list(v) for k, v in self.tau_c_by_country.items()},
            "importWeighted": self.import_weighted,
            "sectionTariffs": self.section_tariffs,
        }


@dataclass
class ExportAccumulator:
    """Per-country export rows, upserted in place.

    iso_list and tau_c are parallel: tau_c[i] belongs to iso_list[i].
    """

    bea_order: tuple[str, ...] = CUSTOM_BEA_ORDER
    iso_list: list[str] = field(default_factory=list)
    tau_c: list[list[float]] = field(default_factory=list)
    original_tariffs_by_country: dict[str, dict[str, float]] = field(default_factory=dict)
    percent_change_by_country: dict[str, dict[str, float]] = field(default_factory=dict)

    def upsert(
        self,
        country_code: str,
        original_vector: dict[str, float],
        percent_change_vector: dict[str, float],
    ) -> None:
        row = [percent_change_vector.get(code, 0.0) for code in self.bea_order]
        if country_code in self.iso_list:
            self.tau_c[self.iso_list.index(country_code)] = row
        else:
            self.iso_list.append(country_code)
            self.tau_c.append(row)
        self.original_tariffs_by_country[country_code] = original_vector
        self.percent_change_by_country[country_code] = percent_change_vector

    def remove(self, country_code: str) -> bool:
        if country_code not in self.iso_list:
            return False
        index = self.iso_list.index(country_code)
        del self.iso_list[index]
        del self.tau_c[index]
        self.original_tariffs_by_country.pop(country_code, None)
        self.percent_change_by_country.pop(country_code, None)
        return True

    def clear(self) -> None:
        self.iso_list = []
        self.tau_c = []
        self.original_tariffs_by_country = {}
        self.percent_change_by_country = {}

    def snapshot(
        self,
        import_weighted: bool,
        section_tariffs: dict[str, dict[str, dict[str, float]]],
    ) -> TariffExport:
        return TariffExport(
            iso_list=list(self.iso_list),
            bea_codes=list(self.bea_order),
            tau_c=[list(r) for r in self.tau_c],
            import_weighted=import_weighted,
            section_tariffs=section_tariffs,
        )


# ---------------------------------------------------------------------------
# Trade weighting (applied by callers on top of an export)
# ---------------------------------------------------------------------------

def ordered_import_vector(
    import_weights: Mapping[str, Mapping[str, float]],
    country_code: str,
    bea_order: Sequence[str] = CUSTOM_BEA_ORDER,
) -> list[float]:
    """Import shares for one country, in BEA order.

    Countries without import data get equal weights (1/n each).
    Codes missing for a known country get 0.
    """
    country_weights = import_weights.get(country_code)
    if not country_weights:
        return [1.0 / len(bea_order)] * len(bea_order)
    return [float(country_weights.get(code) or 0.0) for code in bea_order]


def apply_trade_weighting(
    export: TariffExport,
    import_weights: Mapping[str, Mapping[str, float]],
) -> TariffExport:
    """Return a copy of `export` whose rows are multiplied element-wise by
    each country's ordered import vector.

    A row whose length does not match the BEA order is kept unweighted.
    """
    weighted: list[list[float]] = []
    for iso, row in zip(export.iso_list, export.tau_c):
        vector = ordered_import_vector(import_weights, iso, export.bea_codes)
        if len(vector) != len(row):
            weighted.append(list(row))
            continue
        weighted.append([t * w for t, w in zip(row, vector)])
    return replace(export, tau_c=weighted, import_weighted=True)
