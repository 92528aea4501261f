#!/usr/bin/env python3
"""Validate authored case manifests for common authoring mistakes."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CASE = REPO_ROOT / "cases" / "chest-pain.json"

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from casebook.case_schema import validate_manifest
from casebook.scoring import extract_scoring_key
from casebook.settings import load_settings
from tools.softlock import analyze_dead_ends


def load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate clinical case manifests.")
    parser.add_argument(
        "case_paths",
        nargs="*",
        default=[str(DEFAULT_CASE)],
        help="Paths to case manifest JSON files.",
    )
    return parser.parse_args(argv)


def validate_file(case_path: Path) -> bool:
    try:
        data = load_json(case_path)
    except json.JSONDecodeError as exc:  # pragma: no cover
        print(f"Failed to parse JSON from {case_path}: {exc}")
        return False

    errors: List[str] = validate_manifest(data)
    if errors:
        print(f"Validation failed for {case_path} (path: message):")
        for err in errors:
            print(f" - {err}")
        return False

    warnings = analyze_dead_ends(data)
    if warnings:
        print(f"Dead-end warnings for {case_path} (path: message):")
        for warning in warnings:
            print(f" - {warning}")

    scored = len(extract_scoring_key(data))
    print(f"Validation passed for {case_path} ({scored} scored choice(s)).")
    return True


def main(argv: Sequence[str]) -> None:
    load_settings().configure_logging()
    args = parse_args(argv[1:])
    results = [validate_file(Path(raw).resolve()) for raw in args.case_paths]
    if not all(results):
        sys.exit(1)


if __name__ == "__main__":
    main(sys.argv)
