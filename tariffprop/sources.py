"""
tariffprop.sources — File-backed data sources for the propagation engine.

Reads the engine's external inputs from a data directory of JSON files:

    metadata/section_to_chapters_full_rewritten.json     hierarchy
    metadata/country_iso_mapping.json                    [{country, iso}]
    calculations/weighting/section_weights.json          country → section → code → w
    calculations/weighting/bea_section_weights.json      country → bea → section → w
    calculations/weighting/bea_import_weights.json       {scheme: country → bea → w}
    tariff_data/<measure>.json                           bilateral section tariffs

Design contract:
    - Files are read once, at load time. Nothing here is called from
      inside the engine's hot paths except BilateralTariffLookup.
    - A missing or malformed required file raises DataSourceError.
      Loading is a startup concern; callers decide whether to abort.
    - The country ISO mapping is optional. Without it, CountryDirectory
      only passes 3-letter ISO codes through.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from tariffprop.constants import DEFAULT_TARIFF_YEAR, IMPORT_SCHEMES, TARIFF_MEASURES
from tariffprop.engine import OriginalTariff

logger = logging.getLogger("tariffprop.sources")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DATA_DIR: Path = Path(
    os.getenv("TARIFFPROP_DATA_DIR", "") or Path(__file__).resolve().parent / "data"
)
"""Root of the JSON data layout. Controlled by TARIFFPROP_DATA_DIR.
Default: tariffprop/data next to this module."""

TARIFF_MEASURE: str = os.getenv("TARIFFPROP_TARIFF_MEASURE", "weighted_winsorized").strip()
"""Which tariff_data/<measure>.json file feeds original tariffs."""

TARIFF_YEAR: int = int(os.getenv("TARIFFPROP_TARIFF_YEAR", str(DEFAULT_TARIFF_YEAR)))
"""Year read from the bilateral tariff data's sector_data."""

IMPORT_SCHEME: str = os.getenv("TARIFFPROP_IMPORT_SCHEME", "direct").strip()
"""Which scheme of the import-weight file is used ("direct" or "indirect")."""

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

HIERARCHY_PATH = Path("metadata") / "section_to_chapters_full_rewritten.json"
COUNTRY_MAPPING_PATH = Path("metadata") / "country_iso_mapping.json"
SECTION_WEIGHTS_PATH = Path("calculations") / "weighting" / "section_weights.json"
BEA_SECTION_WEIGHTS_PATH = Path("calculations") / "weighting" / "bea_section_weights.json"
BEA_IMPORT_WEIGHTS_PATH = Path("calculations") / "weighting" / "bea_import_weights.json"
TARIFF_DATA_DIR = Path("tariff_data")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DataSourceError(Exception):
    """Raised when a data file is missing, unreadable or malformed."""

    def __init__(self, path: Path, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"{path}: {detail}")


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def load_json(path: Path) -> Any:
    """Parse one JSON file. Raises DataSourceError if missing or malformed."""
    path = Path(path)
    if not path.is_file():
        raise DataSourceError(path, "file not found")
    try:
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise DataSourceError(path, f"invalid JSON at line {exc.lineno}: {exc.msg}") from exc
    except OSError as exc:
        raise DataSourceError(path, f"unreadable: {exc.strerror}") from exc


def load_import_weights(raw: Any, scheme: str = IMPORT_SCHEMES[0]) -> dict[str, dict[str, float]]:
    """Select per-country import weights from the raw import-weight file.

    The file either holds the mapping directly, or one mapping per scheme
    ({"direct": ..., "indirect": ...}).
    """
    if scheme not in IMPORT_SCHEMES:
        raise ValueError(f"Unknown import scheme '{scheme}'. Must be one of {list(IMPORT_SCHEMES)}.")
    if not isinstance(raw, Mapping):
        return {}
    if any(key in raw for key in IMPORT_SCHEMES):
        return dict(raw.get(scheme) or {})
    return dict(raw)


# ---------------------------------------------------------------------------
# Original tariff lookup
# ---------------------------------------------------------------------------


class BilateralTariffLookup:
    """Callable (iso, section_id) → OriginalTariff over bilateral tariff data.

    Section names come from the `sectors` list ({code, name}) of the first
    country entry that has one. Values are read from
    bilateral[iso]["sector_data"][year][section_name]["us_to_country"].
    """

    def __init__(self, bilateral_tariffs: Mapping[str, Any], year: int = DEFAULT_TARIFF_YEAR) -> None:
        self.bilateral_tariffs = bilateral_tariffs or {}
        self.year = year
        self.section_names = self._section_names(self.bilateral_tariffs)

    @staticmethod
    def _section_names(bilateral_tariffs: Mapping[str, Any]) -> dict[str, str]:
        for entry in bilateral_tariffs.values():
            sectors = entry.get("sectors") if isinstance(entry, Mapping) else None
            if not sectors:
                continue
            return {
                str(sector["code"]): sector["name"]
                for sector in sectors
                if sector.get("code") is not None and sector.get("name")
            }
        return {}

    def __call__(self, country_code: str, section_id: str) -> OriginalTariff:
        country = self.bilateral_tariffs.get(country_code)
        if not country:
            return OriginalTariff(us_tariff=0.0)

        section_name = self.section_names.get(str(section_id))
        if not section_name:
            logger.error(json.dumps({
                "event": "section_name_missing",
                "country_code": country_code,
                "section_id": section_id,
            }))
            return OriginalTariff(us_tariff=0.0)

        sector_data = country.get("sector_data") or {}
        by_year = sector_data.get(str(self.year)) or sector_data.get(self.year) or {}
        section = by_year.get(section_name)
        if not section:
            return OriginalTariff(us_tariff=0.0)

        code: Optional[int]
        try:
            code = int(section_id)
        except (TypeError, ValueError):
            code = None
        return OriginalTariff(us_tariff=float(section.get("us_to_country") or 0.0), code=code)


# ---------------------------------------------------------------------------
# Country directory
# ---------------------------------------------------------------------------


class CountryDirectory:
    """ISO code ↔ country name lookups from [{"country": ..., "iso": ...}]."""

    def __init__(self, mapping: Optional[list[Mapping[str, str]]] = None) -> None:
        self._iso_by_name: dict[str, str] = {}
        self._name_by_iso: dict[str, str] = {}
        for item in mapping or []:
            name, iso = item.get("country"), item.get("iso")
            if not name or not iso:
                continue
            self._iso_by_name[name] = iso
            self._name_by_iso[iso] = name

    def __len__(self) -> int:
        return len(self._name_by_iso)

    def iso_for(self, name_or_iso: str) -> Optional[str]:
        """ISO code for a country name. A 3-letter upper-case input is
        returned unchanged."""
        if not name_or_iso:
            return None
        if len(name_or_iso) == 3 and name_or_iso.isalpha() and name_or_iso.isupper():
            return name_or_iso
        return self._iso_by_name.get(name_or_iso)

    def name_for(self, iso: str) -> Optional[str]:
        return self._name_by_iso.get(iso)


# ---------------------------------------------------------------------------
# Dataset bundle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TariffDataset:
    """Everything TariffPropagation.initialize() needs, loaded together."""

    hierarchy: dict[str, Any]
    section_weights: dict[str, Any]
    bea_section_weights: dict[str, Any]
    bea_import_weights: dict[str, dict[str, float]]
    original_tariff_lookup: BilateralTariffLookup
    countries: CountryDirectory = field(default_factory=CountryDirectory)
    measure: str = TARIFF_MEASURES[-1]
    year: int = DEFAULT_TARIFF_YEAR

    @classmethod
    def from_directory(
        cls,
        data_dir: Path | str = DATA_DIR,
        measure: str = TARIFF_MEASURE,
        year: int = TARIFF_YEAR,
        import_scheme: str = IMPORT_SCHEME,
    ) -> TariffDataset:
        """Load every data file under data_dir.

        Raises:
            DataSourceError: a required file is missing or malformed.
            ValueError: unknown tariff measure or import scheme.
        """
        if measure not in TARIFF_MEASURES:
            raise ValueError(f"Unknown tariff measure '{measure}'. Must be one of {list(TARIFF_MEASURES)}.")
        root = Path(data_dir)

        mapping_path = root / COUNTRY_MAPPING_PATH
        countries = CountryDirectory(load_json(mapping_path) if mapping_path.is_file() else None)

        dataset = cls(
            hierarchy=load_json(root / HIERARCHY_PATH),
            section_weights=load_json(root / SECTION_WEIGHTS_PATH),
            bea_section_weights=load_json(root / BEA_SECTION_WEIGHTS_PATH),
            bea_import_weights=load_import_weights(
                load_json(root / BEA_IMPORT_WEIGHTS_PATH), import_scheme,
            ),
            original_tariff_lookup=BilateralTariffLookup(
                load_json(root / TARIFF_DATA_DIR / f"{measure}.json"), year,
            ),
            countries=countries,
            measure=measure,
            year=year,
        )

        logger.info(json.dumps({
            "event": "dataset_loaded",
            "data_dir": str(root),
            "measure": measure,
            "year": year,
            "import_scheme": import_scheme,
            "sections": len(dataset.hierarchy),
            "countries": len(countries),
        }))
        return dataset
