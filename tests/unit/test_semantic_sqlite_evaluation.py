"""Runs compiled SQL against an in-memory SQLite database and checks the numbers."""
import sqlite3
from typing import Iterator

import pytest

from findly.packages.semantic.findly_semantic.loader import load_registry
from findly.packages.semantic.findly_semantic.query import SemanticQueryEngine
from findly.packages.semantic.findly_semantic.registry import RegistryHolder

DEFINITIONS = """
data_sources:
  - name: orders
    table: orders
    measures:
      - name: amount
      - name: quantity
        expr: qty
  - name: web_orders
    table: web_orders
    measures:
      - name: web_amount
        expr: amount
  - name: store_orders
    table: store_orders
    measures:
      - name: store_amount
        expr: amount
dimensions:
  - name: order_date
    expr: created_at
    type: TIME
    type_params:
      time_granularity: DAY
      is_primary: true
    data_source_names: [orders]
  - name: sale_date
    type: TIME
    type_params:
      time_granularity: DAY
      is_primary: true
    data_source_names: [web_orders, store_orders]
metrics:
  - name: total_amount
    type: MEASURE_PROXY
    measures: [amount]
  - name: amount_mtd
    type: CUMULATIVE
    measures: [amount]
    grain_to_date: MONTH
  - name: amount_3d
    type: CUMULATIVE
    measures: [amount]
    window: 3 days
  - name: amount_per_item
    type: RATIO
    numerator: amount
    denominator: quantity
  - name: channel_amount
    type: SQL_EXPRESSION
    expression: web_amount + store_amount
"""

ORDER_ROWS = [
    ("2024-01-30 09:15:00", 4, 2),
    ("2024-01-30 17:40:00", 6, 3),
    ("2024-01-31 11:00:00", 20, 4),
    ("2024-02-01 08:05:00", 5, 0),
    ("2024-02-02 22:30:00", 7, 7),
]


@pytest.fixture()
def connection() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(":memory:")
    conn.execute("CREATE TABLE orders (created_at TEXT, amount INTEGER, qty INTEGER)")
    conn.executemany("INSERT INTO orders VALUES (?, ?, ?)", ORDER_ROWS)
    conn.execute("CREATE TABLE web_orders (sale_date TEXT, amount INTEGER)")
    conn.execute("CREATE TABLE store_orders (sale_date TEXT, amount INTEGER)")
    conn.executemany(
        "INSERT INTO web_orders VALUES (?, ?)",
        [("2024-01-01 10:00:00", 5), ("2024-01-02 10:00:00", 2)],
    )
    conn.executemany(
        "INSERT INTO store_orders VALUES (?, ?)",
        [("2024-01-01 12:00:00", 3), ("2024-01-02 12:00:00", 4)],
    )
    yield conn
    conn.close()


@pytest.fixture()
def sqlite_engine() -> SemanticQueryEngine:
    return SemanticQueryEngine(RegistryHolder(load_registry(DEFINITIONS)), dialect="sqlite")


def _run(engine: SemanticQueryEngine, connection: sqlite3.Connection, request: dict) -> list:
    artifact = engine.compile(request)
    return connection.execute(artifact.generated_sql).fetchall()


def test_month_to_date_restarts_each_month(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {"metrics": ["amount_mtd"], "dimensions": ["order_date"], "order": ["order_date"]},
    )

    assert rows == [
        ("2024-01-30", 10),
        ("2024-01-31", 30),
        ("2024-02-01", 5),
        ("2024-02-02", 12),
    ]


def test_rolling_window_covers_trailing_days(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {"metrics": ["amount_3d"], "dimensions": ["order_date"], "order": ["order_date"]},
    )

    assert [value for _, value in rows] == [10, 30, 35, 32]


def test_date_range_keeps_only_days_inside_the_range(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {
            "metrics": ["total_amount"],
            "dimensions": ["order_date"],
            "dateRange": {"start": "2024-01-31", "end": "2024-02-01"},
            "order": ["order_date"],
        },
    )

    assert rows == [("2024-01-31", 20), ("2024-02-01", 5)]


def test_ratio_with_zero_denominator_yields_null(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {"metrics": ["amount_per_item"], "dimensions": ["order_date"], "order": ["order_date"]},
    )

    values = dict(rows)
    assert values["2024-01-30"] == 2
    assert values["2024-01-31"] == 5
    assert values["2024-02-01"] is None
    assert values["2024-02-02"] == 1


def test_expression_over_two_sources_adds_both_sides(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {"metrics": ["channel_amount"], "dimensions": ["sale_date"], "order": ["sale_date"]},
    )

    assert rows == [("2024-01-01", 8), ("2024-01-02", 6)]


def test_month_grain_rolls_days_into_month_buckets(sqlite_engine, connection) -> None:
    rows = _run(
        sqlite_engine,
        connection,
        {
            "metrics": ["total_amount"],
            "dimensions": ["order_date"],
            "dateRange": {"start": "2024-01-01", "end": "2024-02-29", "granularity": "MONTH"},
            "order": ["order_date"],
        },
    )

    assert rows == [("2024-01-01", 30), ("2024-02-01", 12)]
