from datetime import date, datetime
from typing import Any, Optional

import sqlglot
from sqlglot import exp
from sqlglot.dialects.dialect import Dialect

from findly.packages.semantic.findly_semantic.errors import DefinitionValidationError, UnsupportedDialect
from findly.packages.semantic.findly_semantic.model import DateGranularity

NUMERIC_TYPES = {"integer", "int", "int64", "decimal", "numeric", "float", "float64", "double", "real"}
BOOLEAN_TYPES = {"bool", "boolean"}

SUPPORTED_DIALECTS = {"bigquery", "postgres", "sqlite"}
_DIALECT_ALIASES = {"postgresql": "postgres", "bq": "bigquery"}


def normalize_dialect(dialect: Optional[str]) -> str:
    key = (dialect or "bigquery").strip().lower()
    key = _DIALECT_ALIASES.get(key, key)
    if key not in SUPPORTED_DIALECTS:
        raise UnsupportedDialect(
            f"Unsupported SQL dialect '{dialect}'. Expected one of {', '.join(sorted(SUPPORTED_DIALECTS))}.",
            [str(dialect)],
        )
    return key


def column(name: str) -> exp.Column:
    return exp.Column(this=exp.to_identifier(name))


def parse_expression(sql: str, dialect: str, owner: str) -> exp.Expression:
    try:
        return sqlglot.parse_one(sql, read=dialect)
    except sqlglot.ParseError as exc:
        raise DefinitionValidationError(f"Expression '{sql}' of '{owner}' is not valid SQL: {exc}", [owner]) from exc


def format_literal(value: Any, data_type: Optional[str] = None) -> exp.Expression:
    if value is None:
        return exp.Null()

    if isinstance(value, bool):
        return exp.Boolean(this=value)

    if isinstance(value, (int, float)):
        return exp.Literal.number(value)

    if isinstance(value, (date, datetime)):
        return exp.Literal.string(value.isoformat())

    value_str = str(value)
    normalized_type = (data_type or "").strip().lower()

    if normalized_type in BOOLEAN_TYPES:
        lowered = value_str.lower()
        if lowered in {"true", "1", "yes"}:
            return exp.Boolean(this=True)
        if lowered in {"false", "0", "no"}:
            return exp.Boolean(this=False)

    if normalized_type in NUMERIC_TYPES and _is_numeric(value_str):
        return exp.Literal.number(value_str)

    return exp.Literal.string(value_str)


def ordered(value: exp.Expression, dialect: str, descending: bool = False) -> exp.Ordered:
    # Match the NULL placement the dialect parser assumes when none is written.
    null_ordering = Dialect.get_or_raise(dialect).NULL_ORDERING
    nulls_first = (null_ordering == "nulls_are_small") != descending and null_ordering != "nulls_are_last"
    return exp.Ordered(this=value, desc=descending, nulls_first=nulls_first)


def date_trunc(granularity: DateGranularity, value: exp.Expression, dialect: str) -> exp.Expression:
    """
    Truncate a time value to the start of its grain.

    Time columns are always cast before truncation, range predicates then compare
    truncated values with >= and <= instead of BETWEEN against a DATETIME column.
    """
    unit = DateGranularity(granularity)
    if dialect == "bigquery":
        casted = exp.Cast(this=value, to=exp.DataType.build("DATETIME"))
        return exp.Anonymous(this="DATE_TRUNC", expressions=[casted, exp.Var(this=unit.value)])
    if dialect == "postgres":
        casted = exp.Cast(this=value, to=exp.DataType.build("TIMESTAMP"))
        return exp.Anonymous(this="DATE_TRUNC", expressions=[exp.Literal.string(unit.value.lower()), casted])
    if dialect == "sqlite":
        return _sqlite_date_trunc(unit, value)
    raise UnsupportedDialect(f"Unsupported SQL dialect '{dialect}'.", [dialect])


def _sqlite_date_trunc(unit: DateGranularity, value: exp.Expression) -> exp.Expression:
    modifiers: list[exp.Expression] = []
    if unit == DateGranularity.WEEK:
        # Weeks start on Sunday.
        modifiers = [exp.Literal.string("-6 days"), exp.Literal.string("weekday 0")]
    elif unit == DateGranularity.MONTH:
        modifiers = [exp.Literal.string("start of month")]
    elif unit == DateGranularity.QUARTER:
        month = exp.Cast(
            this=exp.Anonymous(this="STRFTIME", expressions=[exp.Literal.string("%m"), value.copy()]),
            to=exp.DataType.build("INT"),
        )
        offset = exp.Mod(
            this=exp.Paren(this=exp.Sub(this=month, expression=exp.Literal.number(1))),
            expression=exp.Literal.number(3),
        )
        modifiers = [
            exp.Literal.string("start of month"),
            exp.Anonymous(this="PRINTF", expressions=[exp.Literal.string("-%d months"), offset]),
        ]
    elif unit == DateGranularity.YEAR:
        modifiers = [exp.Literal.string("start of year")]
    return exp.Anonymous(this="DATE", expressions=[value, *modifiers])


def build_date_range_condition(
    column_expr: exp.Expression,
    start: date,
    end: date,
    granularity: DateGranularity,
    dialect: str,
) -> exp.Expression:
    lower = date_trunc(granularity, exp.Literal.string(start.isoformat()), dialect)
    upper = date_trunc(granularity, exp.Literal.string(end.isoformat()), dialect)
    return exp.and_(
        exp.GTE(this=column_expr.copy(), expression=lower),
        exp.LTE(this=column_expr.copy(), expression=upper),
    )


def _is_numeric(value: str) -> bool:
    try:
        float(value)
        return True
    except ValueError:
        return False
