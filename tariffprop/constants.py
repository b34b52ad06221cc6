"""
tariffprop.constants — Single source of truth for tariff engine constants.

Every module that needs these values MUST import from here.
No hardcoded duplicates anywhere in the codebase.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Hierarchy levels
# ---------------------------------------------------------------------------

LEVEL_SECTION: str = "section"
LEVEL_CHAPTER: str = "chapter"
LEVEL_HS4: str = "hs4"

VALID_LEVEL_TYPES: frozenset[str] = frozenset({LEVEL_SECTION, LEVEL_CHAPTER, LEVEL_HS4})

KEY_SEPARATOR: str = "_"
"""Joins path components in the display form of a hierarchy key.
Display only; keys are never parsed back from strings."""

# ---------------------------------------------------------------------------
# Tariff stores
# ---------------------------------------------------------------------------

TARIFF_CURRENT: str = "current"
TARIFF_ORIGINAL: str = "original"

VALID_TARIFF_TYPES: frozenset[str] = frozenset({TARIFF_CURRENT, TARIFF_ORIGINAL})

# ---------------------------------------------------------------------------
# Input modes (caller-side)
# ---------------------------------------------------------------------------

MODE_CHANGE: str = "change"
"""Entered value x pass-through becomes the node's current value."""

MODE_ORIGINAL_CURRENT: str = "original_current"
"""Entered value x pass-through is added on top of the node's original value."""

VALID_MODES: frozenset[str] = frozenset({MODE_CHANGE, MODE_ORIGINAL_CURRENT})

DEFAULT_PASS_THROUGH: float = 1.0

# ---------------------------------------------------------------------------
# Percent-change formula
# ---------------------------------------------------------------------------

PERCENT_BASE: float = 100.0
"""percent_change = (current - original) / (PERCENT_BASE + original).
Tariffs are percentages, so the denominator is the gross price factor x 100."""

# ---------------------------------------------------------------------------
# Bilateral tariff data
# ---------------------------------------------------------------------------

DEFAULT_TARIFF_YEAR: int = 2021

TARIFF_MEASURES: tuple[str, ...] = (
    "statutory",
    "simple",
    "weighted",
    "winsorized",
    "weighted_winsorized",
)

IMPORT_SCHEMES: tuple[str, ...] = ("direct", "indirect")

# ---------------------------------------------------------------------------
# BEA export order, frozen
# ---------------------------------------------------------------------------

CUSTOM_BEA_ORDER: tuple[str, ...] = (
    "111", "112", "113FF", "211", "212", "213", "2211", "2212NW", "23EH", "23MR",
    "23OC", "23OR", "23OT", "23PC", "23SF", "23TH", "321", "327", "3311IS", "3313NF",
    "332", "33311", "33312", "33313", "3332OM", "3341", "3342", "3344", "3345", "334X",
    "335", "336111", "336112", "33612", "3362BP", "3364", "3365AO", "337", "3391", "3399",
    "311", "3121", "3122", "313TT", "315AL", "322", "323", "324", "3251", "3252",
    "3254", "325X", "326", "4231", "4234", "4236", "4238", "423X", "4242", "4244",
    "4247", "424X", "425", "42ID", "441", "445", "452", "444", "446", "447",
    "448", "454", "4A0X", "481", "482", "483", "484", "485", "486", "48A",
    "492", "493", "5111", "5112", "512", "515", "5171", "5172", "5174OT", "518",
    "519", "521CI", "523", "524113", "5241X", "5242", "525", "HSO", "HST", "ORE",
    "532RL", "5411", "5415", "5412", "5413", "5416", "5417", "5418", "541X", "55",
    "5613", "5617", "561X", "562", "61", "6211", "6212", "6213", "6214", "6215OH",
    "622", "623", "624", "711AS", "713", "721", "722", "811", "812", "813",
    "814", "GFGD", "GFGN", "GFE", "GSLGE", "GSLGH", "GSLGO", "GSLE", "Used", "Other",
)
"""Column order of every exported tau_c row. The downstream price model
indexes its matrices in this order. Never sort, never filter."""

NUM_BEA_CODES: int = len(CUSTOM_BEA_ORDER)
