"""
tariffprop.scenario — Scenario requests and caller-side orchestration.

The engine only knows "set this node to this value". Everything a tariff
editor does around that lives here:

    - Pass-through: the share of an entered tariff that reaches prices,
      in [0, 1]. Every current-scenario value is scaled by it.
    - Input modes:
        "change"            entered × pass-through becomes the current value
        "original_current"  original + entered × pass-through becomes the
                            current value; selecting a country seeds the
                            current store from the originals
    - All-industry tariff: one section edit per section when set and >= 0.
      0 resets every section to its baseline.
    - Global tariff: the all-industry tariff across many countries.

Request schema:
    {
      "country_code": str,                  # upper-cased
      "mode": "change" | "original_current",
      "pass_through": float,                # clamped to [0, 1], NaN → 1.0
      "all_industry_tariff": float | null,  # applied when >= 0
      "edits": [
        {"level": "section" | "chapter" | "hs4",
         "section_id": str, "chapter_id": str?, "hs4_code": str?,
         "value": float, "tariff_type": "current" | "original"}
      ],
      "original_bea_tariffs": {bea_code: float} | null
    }

Unknown fields are ignored. Edits are rejected (ValidationError) when a
level is unknown, an id its level needs is missing, or a value is not a
finite number.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from tariffprop.constants import (
    DEFAULT_PASS_THROUGH,
    LEVEL_CHAPTER,
    LEVEL_HS4,
    LEVEL_SECTION,
    MODE_CHANGE,
    MODE_ORIGINAL_CURRENT,
    TARIFF_CURRENT,
    TARIFF_ORIGINAL,
    VALID_LEVEL_TYPES,
    VALID_MODES,
    VALID_TARIFF_TYPES,
)
from tariffprop.engine import TariffPropagation, UpdateResult
from tariffprop.export import TariffExport

logger = logging.getLogger("tariffprop.scenario")


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

def _check_finite_tariffs(v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
    if v is None:
        return None
    for bea_code, value in v.items():
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"original tariff for '{bea_code}' must be a finite number.")
    return v


def _coerce_id(v: Any) -> Optional[str]:
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def normalize_pass_through(value: Any) -> float:
    """Clamp a pass-through rate to [0, 1]. Unparseable or NaN → 1.0."""
    try:
        fval = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PASS_THROUGH
    if math.isnan(fval):
        return DEFAULT_PASS_THROUGH
    return max(0.0, min(1.0, fval))


def normalize_mode(value: Any) -> str:
    if value is None:
        return MODE_CHANGE
    mode = str(value).strip().lower()
    if mode not in VALID_MODES:
        raise ValueError(f"Unknown mode '{value}'. Must be one of {sorted(VALID_MODES)}.")
    return mode


class TariffEdit(BaseModel):
    """One node edit."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    level: str = Field(..., alias="levelType")
    section_id: str = Field(..., alias="sectionId")
    chapter_id: Optional[str] = Field(default=None, alias="chapterId")
    hs4_code: Optional[str] = Field(default=None, alias="hs4Code")
    value: float
    tariff_type: str = Field(default=TARIFF_CURRENT, alias="tariffType")

    @field_validator("level")
    @classmethod
    def _check_level(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in VALID_LEVEL_TYPES:
            raise ValueError(f"Unknown level '{v}'. Must be one of {sorted(VALID_LEVEL_TYPES)}.")
        return v

    @field_validator("section_id", "chapter_id", "hs4_code", mode="before")
    @classmethod
    def _normalize_ids(cls, v: Any) -> Optional[str]:
        return _coerce_id(v)

    @field_validator("value")
    @classmethod
    def _check_finite(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("value must be a finite number.")
        return v

    @field_validator("tariff_type")
    @classmethod
    def _check_tariff_type(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in VALID_TARIFF_TYPES:
            raise ValueError(f"Unknown tariff_type '{v}'. Must be one of {sorted(VALID_TARIFF_TYPES)}.")
        return v

    @model_validator(mode="after")
    def _check_path(self) -> TariffEdit:
        if not self.section_id:
            raise ValueError("section_id must not be empty.")
        if self.level in (LEVEL_CHAPTER, LEVEL_HS4) and not self.chapter_id:
            raise ValueError(f"chapter_id is required for level '{self.level}'.")
        if self.level == LEVEL_HS4 and not self.hs4_code:
            raise ValueError("hs4_code is required for level 'hs4'.")
        return self


class ScenarioRequest(BaseModel):
    """A full scenario for one country: settings, edits, then export."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    country_code: str = Field(..., alias="countryCode")
    mode: str = MODE_CHANGE
    pass_through: float = Field(default=DEFAULT_PASS_THROUGH, alias="passThrough")
    all_industry_tariff: Optional[float] = Field(default=None, alias="allIndustryTariff")
    edits: List[TariffEdit] = Field(default_factory=list)
    provided_original_bea_tariffs: Optional[Dict[str, float]] = Field(
        default=None, alias="original_bea_tariffs",
    )

    @field_validator("country_code")
    @classmethod
    def _normalize_country_code(cls, v: str) -> str:
        v = str(v).strip().upper()
        if not v:
            raise ValueError("country_code must not be empty.")
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v: Any) -> str:
        return normalize_mode(v)

    @field_validator("pass_through", mode="before")
    @classmethod
    def _normalize_pass_through(cls, v: Any) -> float:
        return normalize_pass_through(v)

    @field_validator("all_industry_tariff", mode="before")
    @classmethod
    def _normalize_all_industry(cls, v: Any) -> Optional[float]:
        if v is None:
            return None
        try:
            fval = float(v)
        except (TypeError, ValueError):
            return None
        if math.isnan(fval) or math.isinf(fval):
            return None
        return fval

    @field_validator("provided_original_bea_tariffs")
    @classmethod
    def _check_provided_originals(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        return _check_finite_tariffs(v)


class ExportOptions(BaseModel):
    """Optional body of an export request."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    original_bea_tariffs: Optional[Dict[str, float]] = None
    trade_weighted: bool = Field(default=False, alias="tradeWeighted")

    @field_validator("original_bea_tariffs")
    @classmethod
    def _check_originals(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        return _check_finite_tariffs(v)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def seed_current_from_original(engine: TariffPropagation, country_code: str) -> int:
    """Copy a country's positive original tariffs into its current store.

    Directly-set flags are left untouched. Returns the number of keys copied.
    """
    originals = engine.original_tariffs.get(country_code)
    if not originals:
        return 0
    current = engine.current_tariffs.setdefault(country_code, {})
    copied = 0
    for key, value in originals.items():
        if value > 0:
            current[key] = value
            copied += 1
    return copied


def select_country(engine: TariffPropagation, country_code: str, mode: str = MODE_CHANGE) -> None:
    """Make a country the active one: build its weight cache and baseline."""
    mode = normalize_mode(mode)
    engine.pre_calculate_weights(country_code)
    seeded = 0
    if mode == MODE_ORIGINAL_CURRENT and country_code:
        seeded = seed_current_from_original(engine, country_code)
    logger.debug(json.dumps({
        "event": "country_selected",
        "country_code": country_code,
        "mode": mode,
        "seeded_keys": seeded,
    }))


def _scenario_value(
    engine: TariffPropagation,
    country_code: str,
    edit: TariffEdit,
    mode: str,
    pass_through: float,
) -> float:
    if edit.tariff_type == TARIFF_ORIGINAL:
        return edit.value
    scaled = edit.value * pass_through
    if mode == MODE_ORIGINAL_CURRENT:
        original = engine.get_tariff_value(
            edit.level, edit.section_id, edit.chapter_id, edit.hs4_code,
            country_code, TARIFF_ORIGINAL,
        )
        return original + scaled
    return scaled


def apply_edit(
    engine: TariffPropagation,
    country_code: str,
    edit: TariffEdit,
    mode: str = MODE_CHANGE,
    pass_through: float = DEFAULT_PASS_THROUGH,
) -> Optional[UpdateResult]:
    """Apply one edit through the engine. Returns None if the engine rejects it.

    Original-tariff edits are written as entered. Current-tariff edits are
    scaled by pass-through and, in original_current mode, added to the
    node's original value.
    """
    mode = normalize_mode(mode)
    value = _scenario_value(engine, country_code, edit, mode, normalize_pass_through(pass_through))
    return engine.update_tariff(
        edit.level,
        edit.section_id,
        edit.chapter_id,
        edit.hs4_code,
        value,
        country_code,
        edit.tariff_type,
    )


def apply_all_industry_tariff(
    engine: TariffPropagation,
    country_code: str,
    value: Optional[float],
    mode: str = MODE_CHANGE,
    pass_through: float = DEFAULT_PASS_THROUGH,
) -> int:
    """Set every section of a country from one tariff.

    No-op when value is None or negative. A value of 0 still applies, so it
    resets every section to its baseline. Returns the number of sections
    updated.
    """
    if value is None or value < 0:
        return 0

    updated = 0
    for section_id in list(engine.hierarchy):
        edit = TariffEdit(level=LEVEL_SECTION, section_id=section_id, value=value)
        if apply_edit(engine, country_code, edit, mode, pass_through) is not None:
            updated += 1
    return updated


def apply_global_tariff(
    engine: TariffPropagation,
    countries: Iterable[str],
    value: float,
    mode: str = MODE_CHANGE,
    pass_through: float = DEFAULT_PASS_THROUGH,
) -> Optional[TariffExport]:
    """Apply the all-industry tariff to each country and export each one.

    Returns the export after the last country, or None if no country
    was exported.
    """
    export: Optional[TariffExport] = None
    for country_code in countries:
        select_country(engine, country_code, mode)
        apply_all_industry_tariff(engine, country_code, value, mode, pass_through)
        export = engine.generate_tariff_data(country_code) or export
    return export


def run_scenario(engine: TariffPropagation, request: ScenarioRequest) -> Optional[TariffExport]:
    """Run one ScenarioRequest end to end and return the export bundle."""
    country_code = request.country_code
    select_country(engine, country_code, request.mode)

    sections = apply_all_industry_tariff(
        engine, country_code, request.all_industry_tariff, request.mode, request.pass_through,
    )

    rejected = 0
    for edit in request.edits:
        if apply_edit(engine, country_code, edit, request.mode, request.pass_through) is None:
            rejected += 1

    logger.info(json.dumps({
        "event": "scenario_applied",
        "country_code": country_code,
        "mode": request.mode,
        "pass_through": request.pass_through,
        "all_industry_sections": sections,
        "edits": len(request.edits),
        "rejected_edits": rejected,
    }))

    return engine.generate_tariff_data(country_code, request.provided_original_bea_tariffs)
