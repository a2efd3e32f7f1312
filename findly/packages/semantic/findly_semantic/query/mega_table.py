import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

import sqlglot
from sqlglot import exp

from findly.packages.semantic.findly_semantic.errors import UnresolvedMeasureReference, UnsupportedDialect
from findly.packages.semantic.findly_semantic.model import (
    Aggregation,
    CumulativeMetric,
    ExpressionMetric,
    MeasureProxyMetric,
    RatioMetric,
)
from findly.packages.semantic.findly_semantic.query.dialect import column, date_trunc, parse_expression
from findly.packages.semantic.findly_semantic.query.resolver import ResolvedDimension, ResolvedRequest
from findly.packages.semantic.findly_semantic.registry import SemanticRegistry

# Identifies the source (property or account) each mega table row came from.
SOURCE_KEY_COLUMN = "_data_source_key"


@dataclass(frozen=True)
class MeasureColumn:
    alias: str
    measure: str
    source: str
    aggregation: Aggregation
    # Metric whose constraint filters this column, if any.
    constrained_by: Optional[str] = None
    constraint: Optional[str] = None


@dataclass(frozen=True)
class MegaTableSQL:
    name: str
    aggregated_name: str
    mega_table: exp.Expression
    aggregated: exp.Select
    dimension_columns: Tuple[str, ...]
    time_column: Optional[str]
    measure_columns: Tuple[MeasureColumn, ...]

    def measure_column(self, measure: str, constrained_by: Optional[str] = None) -> MeasureColumn:
        for candidate in self.measure_columns:
            if candidate.measure == measure and candidate.constrained_by == constrained_by:
                return candidate
        raise UnresolvedMeasureReference(f"Measure '{measure}' is not part of the mega table.", [measure])


def aggregate_measure(value: exp.Expression, aggregation: Aggregation, dialect: str) -> exp.Expression:
    """Aggregate a raw measure column with the measure's declared aggregation."""
    if aggregation == Aggregation.SUM:
        return exp.Sum(this=value)
    if aggregation == Aggregation.SUM_BOOLEAN:
        return exp.Sum(this=exp.Cast(this=value, to=exp.DataType.build("INT")))
    if aggregation == Aggregation.COUNT_DISTINCT:
        return exp.Count(this=exp.Distinct(expressions=[value]))
    if aggregation == Aggregation.MIN:
        return exp.Min(this=value)
    if aggregation == Aggregation.MAX:
        return exp.Max(this=value)
    if aggregation == Aggregation.AVERAGE:
        return exp.Avg(this=value)
    if aggregation == Aggregation.MEDIAN:
        column_sql = value.sql(dialect=dialect)
        if dialect == "bigquery":
            return sqlglot.parse_one(f"APPROX_QUANTILES({column_sql}, 2)[OFFSET(1)]", read=dialect)
        if dialect == "postgres":
            return sqlglot.parse_one(f"PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY {column_sql})", read=dialect)
        raise UnsupportedDialect(f"MEDIAN aggregation is not available in dialect '{dialect}'.", [dialect])
    raise UnresolvedMeasureReference(f"Unsupported aggregation '{aggregation}'.", [str(aggregation)])


class MegaTableBuilder:
    """
    Builds the two common table expressions every query reads from.

    The mega table holds one row per source row with dimension values already
    truncated to their output grain and a literal source key (property id, else
    source name). The aggregated mega table groups it by the requested
    dimensions and that key, applying each measure's own aggregation once.
    """

    def __init__(
        self,
        registry: SemanticRegistry,
        dialect: str,
        mega_table_name: str,
        aggregated_name: str,
    ) -> None:
        self._registry = registry
        self._dialect = dialect
        self._mega_table_name = mega_table_name
        self._aggregated_name = aggregated_name
        self._logger = logging.getLogger(__name__)

    def build(self, resolved: ResolvedRequest) -> MegaTableSQL:
        dimension_columns = tuple(dimension.name for dimension in resolved.dimensions)
        hidden = self._hidden_dimensions(resolved)
        time_column = resolved.primary_time.name if resolved.primary_time else None

        reserved: Set[str] = {name.lower() for name in dimension_columns}
        reserved.add(SOURCE_KEY_COLUMN)
        reserved.update(dimension.name.lower() for dimension in hidden)
        measure_columns = self._measure_columns(resolved, reserved)

        selects = [
            self._source_select(source, resolved, hidden, measure_columns) for source in resolved.used_sources
        ]
        mega_table: exp.Expression = selects[0]
        for select in selects[1:]:
            mega_table = exp.Union(this=mega_table, expression=select, distinct=False)

        aggregated = exp.select(
            *[column(name) for name in dimension_columns],
            column(SOURCE_KEY_COLUMN),
            *[
                exp.alias_(aggregate_measure(column(item.alias), item.aggregation, self._dialect), item.alias)
                for item in measure_columns
            ],
        ).from_(self._mega_table_name)
        aggregated = aggregated.group_by(
            *[column(name) for name in dimension_columns], column(SOURCE_KEY_COLUMN)
        )

        self._logger.debug(
            f"Mega table over {', '.join(resolved.used_sources)} with {len(dimension_columns)} dimensions "
            f"and {len(measure_columns)} measure columns"
        )
        return MegaTableSQL(
            name=self._mega_table_name,
            aggregated_name=self._aggregated_name,
            mega_table=mega_table,
            aggregated=aggregated,
            dimension_columns=dimension_columns,
            time_column=time_column,
            measure_columns=tuple(measure_columns),
        )

    def _hidden_dimensions(self, resolved: ResolvedRequest) -> List[ResolvedDimension]:
        """Columns the WHERE clause needs that are not grouped."""
        grouped = {dimension.name for dimension in resolved.dimensions}
        hidden: List[ResolvedDimension] = []
        candidates: List[ResolvedDimension] = []
        if resolved.primary_time is not None:
            candidates.append(
                ResolvedDimension(
                    dimension=resolved.primary_time.dimension,
                    data_sources=resolved.primary_time.data_sources,
                    granularity=resolved.date_granularity,
                )
            )
        candidates.extend(flt.dimension for flt in resolved.where_filters if flt.dimension is not None)
        for candidate in candidates:
            if candidate.name in grouped:
                continue
            grouped.add(candidate.name)
            hidden.append(candidate)
        return hidden

    def _measure_columns(self, resolved: ResolvedRequest, reserved: Set[str]) -> List[MeasureColumn]:
        wanted: List[Tuple[str, Optional[str], Optional[str]]] = []
        for resolved_metric in resolved.metrics:
            metric = resolved_metric.metric
            if isinstance(metric, MeasureProxyMetric):
                owner = metric.name if metric.constraint else None
                wanted.append((metric.measure, owner, metric.constraint))
            elif isinstance(metric, RatioMetric):
                owner = metric.name if metric.constraint else None
                wanted.append((metric.numerator, owner, metric.constraint))
                wanted.append((metric.denominator, owner, metric.constraint))
            elif isinstance(metric, CumulativeMetric):
                wanted.append((metric.measure, None, None))
            elif isinstance(metric, ExpressionMetric):
                wanted.extend((measure, None, None) for measure in resolved_metric.measures)

        columns: List[MeasureColumn] = []
        seen: Set[Tuple[str, Optional[str]]] = set()
        for measure, owner, constraint in wanted:
            if (measure, owner) in seen:
                continue
            seen.add((measure, owner))
            source = resolved.source_for_measure(measure)
            alias = _unique_alias(f"{owner}__{measure}" if owner else measure, source, reserved)
            reserved.add(alias.lower())
            columns.append(
                MeasureColumn(
                    alias=alias,
                    measure=measure,
                    source=source,
                    aggregation=self._registry.get_measure(measure, source).aggregation,
                    constrained_by=owner,
                    constraint=constraint,
                )
            )
        return columns

    def _source_select(
        self,
        source_name: str,
        resolved: ResolvedRequest,
        hidden: Sequence[ResolvedDimension],
        measure_columns: Sequence[MeasureColumn],
    ) -> exp.Select:
        data_source = self._registry.get_data_source(source_name)
        projections: List[exp.Expression] = []
        for dimension in [*resolved.dimensions, *hidden]:
            projections.append(exp.alias_(self._dimension_value(dimension), dimension.name))
        source_key = data_source.metadata.property_id or data_source.name
        projections.append(exp.alias_(exp.Literal.string(source_key), SOURCE_KEY_COLUMN))

        for item in measure_columns:
            if item.source != source_name:
                projections.append(exp.alias_(exp.Null(), item.alias))
                continue
            measure = self._registry.get_measure(item.measure, source_name)
            value = parse_expression(measure.expr, self._dialect, measure.name)
            if item.constraint:
                condition = parse_expression(item.constraint, self._dialect, item.constrained_by or measure.name)
                value = exp.Case(ifs=[exp.If(this=condition, true=value)])
            projections.append(exp.alias_(value, item.alias))

        return exp.select(*projections).from_(exp.to_table(data_source.table, dialect=self._dialect))

    def _dimension_value(self, dimension: ResolvedDimension) -> exp.Expression:
        value = parse_expression(dimension.dimension.expr, self._dialect, dimension.name)
        if dimension.dimension.is_time and dimension.granularity is not None:
            return date_trunc(dimension.granularity, value, self._dialect)
        return value


def _unique_alias(base: str, source: str, reserved: Set[str]) -> str:
    # Collisions get the source prefix, then a numeric suffix.
    if base.lower() not in reserved:
        return base
    prefixed = f"{source}__{base}"
    candidate = prefixed
    suffix = 2
    while candidate.lower() in reserved:
        candidate = f"{prefixed}_{suffix}"
        suffix += 1
    return candidate
