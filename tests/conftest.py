"""
tests/conftest.py — Shared synthetic tariff data.

Two sections, three chapters, seven HS4 codes:

    "1"  Live Animals          original CHN 5.0, MEX 2.0
         "01"  0101 (w 3), 0102 (w 1)          chapter weight 0.5
         "02"  0201 (w 0), 0202 (w 0)          chapter weight 0.5
    "2"  Vegetable Products    original CHN 10.0
         "06"  0601 (w 2), 0602 (w 2), 0603    chapter weight 1.0

BEA section weights (CHN):
    "111"   ← section 1 (1.0)
    "112"   ← section 1 (1.0), section 2 (3.0)
    "113FF" ← nothing (zero total weight)

Only MEX carries import weights.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from tariffprop.engine import TariffPropagation
from tariffprop.sources import BilateralTariffLookup, CountryDirectory, TariffDataset


HIERARCHY: dict[str, Any] = {
    "1": {
        "name": "Live Animals",
        "chapters": {
            "01": {"subcategories": {"0101": {}, "0102": {}}},
            "02": {"subcategories": {"0201": {}, "0202": {}}},
        },
    },
    "2": {
        "name": "Vegetable Products",
        "chapters": {
            "06": {"subcategories": {"0601": {}, "0602": {}, "0603": {}}},
        },
    },
}

SECTION_WEIGHTS: dict[str, Any] = {
    "CHN": {
        "1": {"01": 0.5, "02": 0.5, "0101": 3.0, "0102": 1.0, "0201": 0, "0202": 0},
        "2": {"06": 1.0, "0601": 2.0, "0602": 2.0},
    },
}

BEA_SECTION_WEIGHTS: dict[str, Any] = {
    "CHN": {
        "111": {"1": 1.0},
        "112": {"1": 1.0, "2": 3.0},
        "113FF": {},
    },
    "MEX": {
        "111": {"1": 1.0},
    },
}

BEA_IMPORT_WEIGHTS: dict[str, Any] = {
    "direct": {"MEX": {"111": 0.25}},
    "indirect": {"MEX": {"111": 0.75}},
}

BILATERAL_TARIFFS: dict[str, Any] = {
    "CHN": {
        "sectors": [
            {"code": 1, "name": "Live Animals"},
            {"code": 2, "name": "Vegetable Products"},
        ],
        "sector_data": {
            "2021": {
                "Live Animals": {"us_to_country": 5.0},
                "Vegetable Products": {"us_to_country": 10.0},
            },
            "2020": {
                "Live Animals": {"us_to_country": 4.0},
            },
        },
    },
    "MEX": {
        "sector_data": {
            "2021": {
                "Live Animals": {"us_to_country": 2.0},
            },
        },
    },
}

COUNTRY_MAPPING: list[dict[str, str]] = [
    {"country": "China", "iso": "CHN"},
    {"country": "Mexico", "iso": "MEX"},
]


def write_data_dir(root: Path, measure: str = "weighted_winsorized") -> Path:
    """Lay the synthetic data out the way TariffDataset.from_directory expects."""
    files = {
        root / "metadata" / "section_to_chapters_full_rewritten.json": HIERARCHY,
        root / "metadata" / "country_iso_mapping.json": COUNTRY_MAPPING,
        root / "calculations" / "weighting" / "section_weights.json": SECTION_WEIGHTS,
        root / "calculations" / "weighting" / "bea_section_weights.json": BEA_SECTION_WEIGHTS,
        root / "calculations" / "weighting" / "bea_import_weights.json": BEA_IMPORT_WEIGHTS,
        root / "tariff_data" / f"{measure}.json": BILATERAL_TARIFFS,
    }
    for path, payload in files.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload), encoding="utf-8")
    return root


@pytest.fixture()
def dataset() -> TariffDataset:
    return TariffDataset(
        hierarchy=HIERARCHY,
        section_weights=SECTION_WEIGHTS,
        bea_section_weights=BEA_SECTION_WEIGHTS,
        bea_import_weights=BEA_IMPORT_WEIGHTS["direct"],
        original_tariff_lookup=BilateralTariffLookup(BILATERAL_TARIFFS, 2021),
        countries=CountryDirectory(COUNTRY_MAPPING),
    )


@pytest.fixture()
def engine(dataset: TariffDataset) -> TariffPropagation:
    return TariffPropagation().initialize(dataset=dataset)


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    return write_data_dir(tmp_path / "data")
