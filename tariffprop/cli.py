"""
tariffprop.cli — Run a tariff scenario file against a data directory.

Usage:
    python -m tariffprop.cli --scenario scenario.json
    python -m tariffprop.cli --scenario scenario.json --data-dir ./data --json
    python -m tariffprop.cli --scenario scenario.json --measure statutory --year 2021 --quiet

The scenario file holds one ScenarioRequest object, or a list of them.
All scenarios run against one engine, so the export accumulates one
tau_c row per country.

Exit codes:
    0: OK, every scenario ran.
    1: Data source error, a data file is missing or malformed.
    2: Invalid scenario, the scenario file is missing, malformed, or fails
       validation.

Output:
    Default: human-readable summary to stdout.
    --json: the export bundle (wire names) to stdout.
    --quiet: no output, only exit code.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tariffprop.constants import IMPORT_SCHEMES, TARIFF_MEASURES
from tariffprop.engine import TariffPropagation
from tariffprop.export import TariffExport, apply_trade_weighting
from tariffprop.scenario import ScenarioRequest, run_scenario
from tariffprop.sources import (
    DATA_DIR,
    IMPORT_SCHEME,
    TARIFF_MEASURE,
    TARIFF_YEAR,
    DataSourceError,
    TariffDataset,
    load_json,
)

EXIT_OK = 0
EXIT_DATA_SOURCE = 1
EXIT_INVALID_SCENARIO = 2

EXIT_CODE_LABELS: dict[int, str] = {
    EXIT_OK: "OK",
    EXIT_DATA_SOURCE: "DATA_SOURCE_ERROR",
    EXIT_INVALID_SCENARIO: "INVALID_SCENARIO",
}

# |percent change| below this counts as unchanged in the summary
_CHANGE_EPSILON = 1e-4


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tariffprop",
        description="Apply tariff scenarios and print the BEA percent-change export.",
    )
    parser.add_argument(
        "--scenario",
        required=True,
        help="Path to a scenario JSON file (object or list of objects).",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Override the data directory (default: TARIFFPROP_DATA_DIR or tariffprop/data).",
    )
    parser.add_argument(
        "--measure",
        choices=TARIFF_MEASURES,
        default=TARIFF_MEASURE,
        help="Bilateral tariff measure feeding original tariffs.",
    )
    parser.add_argument(
        "--year",
        type=int,
        default=TARIFF_YEAR,
        help="Tariff data year.",
    )
    parser.add_argument(
        "--import-scheme",
        choices=IMPORT_SCHEMES,
        default=IMPORT_SCHEME,
        help="Import-weight scheme.",
    )
    parser.add_argument(
        "--trade-weighted",
        action="store_true",
        help="Multiply each tau_c row by the country's ordered import vector.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output the export bundle as JSON.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all output. Exit code only.",
    )
    return parser


def _load_scenarios(path: Path) -> list[ScenarioRequest]:
    """Parse the scenario file. Raises DataSourceError or ValidationError."""
    raw: Any = load_json(path)
    items = raw if isinstance(raw, list) else [raw]
    return [ScenarioRequest(**item) for item in items]


def _report_error(label: str, detail: Any, args: argparse.Namespace) -> None:
    if args.quiet:
        return
    if args.json_output:
        print(json.dumps({"error": label, "details": detail}, indent=2, ensure_ascii=False))
    else:
        print(f"Error: {label}", file=sys.stderr)
        print(f"  {detail}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Run the scenario file. Returns exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        scenarios = _load_scenarios(Path(args.scenario))
    except DataSourceError as exc:
        _report_error(EXIT_CODE_LABELS[EXIT_INVALID_SCENARIO], str(exc), args)
        return EXIT_INVALID_SCENARIO
    except (ValidationError, TypeError) as exc:
        detail = (
            exc.errors(include_url=False, include_context=False)
            if isinstance(exc, ValidationError)
            else str(exc)
        )
        _report_error(EXIT_CODE_LABELS[EXIT_INVALID_SCENARIO], detail, args)
        return EXIT_INVALID_SCENARIO

    data_dir = Path(args.data_dir) if args.data_dir else DATA_DIR
    try:
        dataset = TariffDataset.from_directory(data_dir, args.measure, args.year, args.import_scheme)
    except DataSourceError as exc:
        _report_error(EXIT_CODE_LABELS[EXIT_DATA_SOURCE], str(exc), args)
        return EXIT_DATA_SOURCE

    engine = TariffPropagation().initialize(dataset=dataset)
    bundle: TariffExport | None = None
    for request in scenarios:
        bundle = run_scenario(engine, request) or bundle

    if bundle is not None and args.trade_weighted:
        bundle = apply_trade_weighting(bundle, dataset.bea_import_weights)

    if args.quiet:
        return EXIT_OK

    if args.json_output:
        print(json.dumps(bundle.to_dict() if bundle is not None else {}, indent=2, ensure_ascii=False))
        return EXIT_OK

    # Human-readable output
    print(f"Data:      {data_dir}")
    print(f"Measure:   {args.measure} ({args.year})")
    print(f"Scenarios: {len(scenarios)}")
    if bundle is None:
        print("Countries: 0")
        return EXIT_OK

    print(f"Countries: {len(bundle.iso_list)}")
    print(f"Weighted:  {'yes' if bundle.import_weighted else 'no'}")
    for iso, row in zip(bundle.iso_list, bundle.tau_c):
        changed = [(code, v) for code, v in zip(bundle.bea_codes, row) if abs(v) > _CHANGE_EPSILON]
        print(f"  {iso}: {len(changed)} of {len(row)} BEA codes changed")
        for code, value in sorted(changed, key=lambda cv: -abs(cv[1]))[:5]:
            print(f"    {code:<8} {value:+.4%}")

    print(f"\nExit code: {EXIT_OK}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
