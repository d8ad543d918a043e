#!/usr/bin/env python3
"""Database overview, schema drift and integrity checks for ItemTraxx."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "gear",
    "students",
    "gear_status_history",
    "tenant_policies",
    "profiles",
    "app_runtime_config",
    "rate_limit_counters",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "gear": [
        "id",
        "tenant_id",
        "name",
        "barcode",
        "serial_number",
        "status",
        "notes",
        "checked_out_by",
        "checked_out_at",
        "created_at",
        "deleted_at",
    ],
    "students": ["id", "tenant_id", "first_name", "last_name", "student_id", "email"],
    "gear_status_history": ["id", "tenant_id", "gear_id", "status", "note", "changed_at", "changed_by"],
    "tenant_policies": ["tenant_id", "checkout_due_hours"],
    "profiles": ["id", "tenant_id", "role"],
    "rate_limit_counters": ["bucket_key", "window_start", "request_count"],
}

# Columns the service tolerates being absent while a migration rolls out.
OPTIONAL_COLUMNS: dict[str, list[str]] = {
    "gear": ["updated_at"],
    "tenant_policies": [
        "escalation_level_1_hours",
        "escalation_level_2_hours",
        "escalation_level_3_hours",
    ],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = table in tables
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _print_drift_report(engine: Engine, tables: set[str]) -> None:
    _print_section("Optional Column Drift")
    for table, optional in OPTIONAL_COLUMNS.items():
        if table not in tables:
            print(f"{table}: missing")
            continue
        actual = _column_names(engine, table)
        absent = [name for name in optional if name not in actual]
        if absent:
            print(f"{table}: fallback active, missing={','.join(absent)}")
        else:
            print(f"{table}: up to date")


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "gear" in tables:
        checks.append(
            _count_check(
                engine,
                "gear:duplicate_barcode_per_tenant",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT tenant_id, LOWER(barcode) AS barcode_key
                    FROM gear
                    GROUP BY tenant_id, LOWER(barcode)
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "gear:checked_out_without_timestamp",
                """
                SELECT COUNT(*)
                FROM gear
                WHERE status = 'checked_out' AND checked_out_at IS NULL AND deleted_at IS NULL
                """,
            )
        )

    if "gear" in tables and "students" in tables:
        checks.append(
            _count_check(
                engine,
                "gear:orphan_checked_out_by",
                """
                SELECT COUNT(*)
                FROM gear g
                LEFT JOIN students s ON s.id = g.checked_out_by
                WHERE g.checked_out_by IS NOT NULL AND s.id IS NULL
                """,
            )
        )

    if "gear_status_history" in tables and "gear" in tables:
        checks.append(
            _count_check(
                engine,
                "gear_status_history:orphan_gear_id",
                """
                SELECT COUNT(*)
                FROM gear_status_history h
                LEFT JOIN gear g ON g.id = h.gear_id
                WHERE g.id IS NULL
                """,
            )
        )

    if "tenant_policies" in tables:
        policy_columns = _column_names(engine, "tenant_policies")
        if set(OPTIONAL_COLUMNS["tenant_policies"]) <= policy_columns:
            checks.append(
                _count_check(
                    engine,
                    "tenant_policies:non_monotonic_escalation",
                    """
                    SELECT COUNT(*)
                    FROM tenant_policies
                    WHERE escalation_level_1_hours < checkout_due_hours
                       OR escalation_level_2_hours <= escalation_level_1_hours
                       OR escalation_level_3_hours <= escalation_level_2_hours
                    """,
                )
            )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="ItemTraxx DB overview")
    parser.add_argument("--db-url", default=os.environ.get("ITX_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("ITX_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = _table_names(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_drift_report(engine, tables)
    _print_results("Integrity Checks", _run_integrity_checks(engine, tables))
    _print_row_counts(engine, tables)
    return 0


if __name__ == "__main__":
    sys.exit(main())
