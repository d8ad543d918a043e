#!/usr/bin/env python3
from __future__ import annotations

import argparse
import csv
import json
import os
import sys
from pathlib import Path
from typing import Iterable

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.session import get_session_factory_for  # noqa: E402
from services.errors import AdminOpsError  # noqa: E402
from services.import_service import import_gear, validate_rows  # noqa: E402

CSV_FIELDS = ("name", "barcode", "serial_number", "status", "notes")


def read_rows(lines: Iterable[str]) -> list[dict[str, str]]:
    """Parse CSV lines into import rows keyed by the known gear fields."""
    reader = csv.DictReader(lines)
    rows: list[dict[str, str]] = []
    for record in reader:
        normalized = {str(key or "").strip().lower(): value for key, value in record.items()}
        if not any(str(value or "").strip() for value in normalized.values()):
            continue
        rows.append({field: normalized.get(field) or "" for field in CSV_FIELDS})
    return rows


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import gear rows for one tenant from a CSV file.",
    )
    parser.add_argument("csv_path", help="CSV with name,barcode,serial_number,status,notes columns")
    parser.add_argument("--tenant-id", required=True, help="Tenant that owns the imported gear")
    parser.add_argument("--user-id", required=True, help="Profile id recorded as the importer")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("ITX_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to ITX_DB_URL env var.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate rows without writing.")
    return parser


def main() -> int:
    args = _build_parser().parse_args()

    with open(args.csv_path, newline="", encoding="utf-8-sig") as handle:
        rows = read_rows(handle)

    try:
        if args.dry_run:
            plan = validate_rows(rows)
            result = {
                "valid": len(plan.accepted),
                "skipped": len(plan.skipped),
                "skipped_rows": plan.skipped,
            }
        else:
            if not args.db_url:
                print("ITX_DB_URL is not set. Provide --db-url or export env first.")
                return 2
            with get_session_factory_for(args.db_url)() as db:
                result = import_gear(db, args.tenant_id, args.user_id, rows)
    except AdminOpsError as exc:
        print(f"Import failed: {exc.message}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
