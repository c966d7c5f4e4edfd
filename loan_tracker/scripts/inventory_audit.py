#!/usr/bin/env python3
"""Inventory integrity checks for the loan tracker database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "items",
    "item_variants",
    "people",
    "loans",
    "audit_logs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "items": ["id", "name", "total_quantity", "available_quantity", "version", "consumable", "created_at"],
    "item_variants": ["id", "item_id", "name", "total_quantity", "available_quantity", "version", "created_at"],
    "people": ["id", "name", "date_of_birth", "photo_url", "created_at"],
    "loans": [
        "id",
        "item_id",
        "variant_id",
        "person_id",
        "quantity",
        "notes",
        "condition_notes",
        "condition_photo",
        "loaned_at",
        "returned_at",
    ],
    "audit_logs": ["id", "entity_type", "entity_id", "action", "details", "created_at"],
}

# available = total - sum(active loan quantity), per fulfillment target.
ITEM_CONSERVATION_SQL = """
    SELECT i.id, i.name, i.total_quantity, i.available_quantity,
           COALESCE((
               SELECT SUM(l.quantity) FROM loans l
               WHERE l.item_id = i.id AND l.variant_id IS NULL AND l.returned_at IS NULL
           ), 0) AS on_loan
    FROM items i
    WHERE NOT EXISTS (SELECT 1 FROM item_variants v WHERE v.item_id = i.id)
"""

VARIANT_CONSERVATION_SQL = """
    SELECT v.id, v.name, v.total_quantity, v.available_quantity,
           COALESCE((
               SELECT SUM(l.quantity) FROM loans l
               WHERE l.variant_id = v.id AND l.returned_at IS NULL
           ), 0) AS on_loan
    FROM item_variants v
"""


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


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_bounds_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for table in ("items", "item_variants"):
        if table not in tables:
            continue
        checks.append(
            _count_check(
                engine,
                f"{table}:available_out_of_bounds",
                f"SELECT COUNT(*) FROM {table} WHERE available_quantity < 0 OR available_quantity > total_quantity",
            )
        )
    if "loans" in tables:
        checks.append(_count_check(engine, "loans:non_positive_quantity", "SELECT COUNT(*) FROM loans WHERE quantity <= 0"))
        checks.append(
            _count_check(
                engine,
                "loans:active_without_item",
                "SELECT COUNT(*) FROM loans WHERE returned_at IS NULL AND item_id IS NULL",
            )
        )
        checks.append(
            _count_check(
                engine,
                "loans:variant_of_other_item",
                """
                SELECT COUNT(*)
                FROM loans l
                JOIN item_variants v ON v.id = l.variant_id
                WHERE l.item_id IS NOT NULL AND v.item_id <> l.item_id
                """,
            )
        )
    return checks


def _conservation_rows(engine: Engine, label: str, sql: str) -> list[CheckResult]:
    results: list[CheckResult] = []
    for row_id, name, total, available, on_loan in _rows(engine, sql):
        expected = int(total) - int(on_loan)
        results.append(
            CheckResult(
                f"conservation:{label}:{name}",
                int(available) == expected,
                f"id={row_id} total={total} available={available} on_loan={on_loan}",
            )
        )
    return results


def _run_conservation_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    if not {"items", "item_variants", "loans"} <= tables:
        return [CheckResult("conservation", False, "tables missing")]
    return _conservation_rows(engine, "item", ITEM_CONSERVATION_SQL) + _conservation_rows(
        engine, "variant", VARIANT_CONSERVATION_SQL
    )


def _print_results(title: str, rows: Iterable[CheckResult], only_failures: bool = False) -> int:
    _print_section(title)
    failures = 0
    for row in rows:
        if not row.ok:
            failures += 1
        elif only_failures:
            continue
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")
    return failures


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Loan tracker inventory audit")
    parser.add_argument("--db-url", default=os.environ.get("LOAN_TRACKER_DB_URL", ""))
    parser.add_argument("--failures-only", action="store_true", help="only print failing conservation rows")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LOAN_TRACKER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = _existing_tables(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    failures = 0
    failures += _print_results("Table Existence", _run_existence_checks(engine, tables))
    failures += _print_results("Column Checks", _run_column_checks(engine, tables))
    failures += _print_results("Bounds Checks", _run_bounds_checks(engine, tables))
    failures += _print_results("Conservation", _run_conservation_checks(engine, tables), args.failures_only)
    _print_row_counts(engine, tables)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
