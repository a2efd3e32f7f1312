import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlglot import exp

from findly.packages.semantic.findly_semantic.errors import SemanticQueryError, UnresolvedMeasureReference
from findly.packages.semantic.findly_semantic.model import (
    Aggregation,
    AllTime,
    CumulativeMetric,
    DateGranularity,
    ExpressionMetric,
    GrainToDate,
    MeasureProxyMetric,
    RatioMetric,
    RollingWindow,
)
from findly.packages.semantic.findly_semantic.query.dialect import column, date_trunc, ordered, parse_expression
from findly.packages.semantic.findly_semantic.query.mega_table import MeasureColumn, MegaTableSQL
from findly.packages.semantic.findly_semantic.query.resolver import ResolvedMetric, ResolvedRequest


@dataclass(frozen=True)
class CompiledMetric:
    name: str
    value: exp.Expression
    is_window: bool = False

    @property
    def expression(self) -> exp.Expression:
        return exp.alias_(self.value.copy(), self.name)


def zero_guard(denominator: exp.Expression) -> exp.Expression:
    if isinstance(denominator, exp.Nullif):
        return denominator
    return exp.Nullif(this=denominator, expression=exp.Literal.number(0))


def rolling_preceding_rows(window: RollingWindow, granularity: DateGranularity) -> int:
    periods = math.ceil(window.count * window.unit.nominal_days / granularity.nominal_days)
    return max(periods - 1, 0)


class MetricExpressionCompiler:
    """
    Compiles metrics into expressions over the aggregated mega table.

    Each measure is read from a single source, so within a group only one
    aggregated row (the one carrying that source key) holds a non-NULL value.
    Measures are therefore rolled up with an identity aggregate (SUM, or
    MIN/MAX for MIN/MAX measures) that keeps the final SELECT a valid grouped
    query.
    """

    def __init__(self, dialect: str) -> None:
        self._dialect = dialect
        self._logger = logging.getLogger(__name__)

    def compile(self, resolved_metric: ResolvedMetric, mega: MegaTableSQL, resolved: ResolvedRequest) -> CompiledMetric:
        metric = resolved_metric.metric
        if isinstance(metric, MeasureProxyMetric):
            owner = metric.name if metric.constraint else None
            value = self._rollup(mega.measure_column(metric.measure, owner))
            compiled = CompiledMetric(name=metric.name, value=value)
        elif isinstance(metric, RatioMetric):
            owner = metric.name if metric.constraint else None
            numerator = self._rollup(mega.measure_column(metric.numerator, owner))
            denominator = self._rollup(mega.measure_column(metric.denominator, owner))
            compiled = CompiledMetric(name=metric.name, value=exp.Div(this=numerator, expression=zero_guard(denominator)))
        elif isinstance(metric, CumulativeMetric):
            compiled = self._compile_cumulative(metric, mega, resolved)
        elif isinstance(metric, ExpressionMetric):
            compiled = CompiledMetric(name=metric.name, value=self._compile_expression(resolved_metric, mega))
        else:
            raise SemanticQueryError(f"Unsupported metric type for '{resolved_metric.name}'.", [resolved_metric.name])

        self._logger.debug(f"Compiled metric '{compiled.name}': {compiled.value.sql(dialect=self._dialect)}")
        return compiled

    def _rollup(self, item: MeasureColumn) -> exp.Expression:
        value = column(item.alias)
        if item.aggregation == Aggregation.MIN:
            return exp.Min(this=value)
        if item.aggregation == Aggregation.MAX:
            return exp.Max(this=value)
        return exp.Sum(this=value)

    def _compile_cumulative(
        self,
        metric: CumulativeMetric,
        mega: MegaTableSQL,
        resolved: ResolvedRequest,
    ) -> CompiledMetric:
        value = self._rollup(mega.measure_column(metric.measure))
        ordering = self._ordering_dimension(mega, resolved)
        if ordering is None:
            # Without a grouped time axis the accumulation covers the whole range.
            return CompiledMetric(name=metric.name, value=value)

        ordering_name, granularity = ordering
        partition: List[exp.Expression] = [
            column(name) for name in mega.dimension_columns if name != ordering_name
        ]
        policy = metric.policy
        if isinstance(policy, GrainToDate):
            partition.append(date_trunc(policy.grain, column(ordering_name), self._dialect))
            spec = exp.WindowSpec(kind="ROWS", start="UNBOUNDED", start_side="PRECEDING", end="CURRENT ROW")
        elif isinstance(policy, RollingWindow):
            preceding = rolling_preceding_rows(policy, granularity)
            spec = exp.WindowSpec(
                kind="ROWS",
                start=exp.Literal.number(preceding),
                start_side="PRECEDING",
                end="CURRENT ROW",
            )
        elif isinstance(policy, AllTime):
            spec = exp.WindowSpec(kind="ROWS", start="UNBOUNDED", start_side="PRECEDING", end="CURRENT ROW")
        else:
            raise SemanticQueryError(f"Unsupported cumulative policy on '{metric.name}'.", [metric.name])

        window = exp.Window(
            this=value,
            partition_by=partition or None,
            order=exp.Order(expressions=[ordered(column(ordering_name), self._dialect)]),
            spec=spec,
        )
        return CompiledMetric(name=metric.name, value=window, is_window=True)

    @staticmethod
    def _ordering_dimension(mega: MegaTableSQL, resolved: ResolvedRequest) -> Optional[Tuple[str, DateGranularity]]:
        grouped_time = [dimension for dimension in resolved.dimensions if dimension.dimension.is_time]
        if not grouped_time:
            return None
        for dimension in grouped_time:
            if dimension.name == mega.time_column:
                return dimension.name, dimension.granularity or DateGranularity.DAY
        first = grouped_time[0]
        return first.name, first.granularity or DateGranularity.DAY

    def _compile_expression(self, resolved_metric: ResolvedMetric, mega: MegaTableSQL) -> exp.Expression:
        metric = resolved_metric.metric
        tree = parse_expression(metric.expression, self._dialect, metric.name)

        def _substitute(node: exp.Expression) -> exp.Expression:
            if isinstance(node, exp.Column):
                if node.name not in resolved_metric.measures:
                    raise UnresolvedMeasureReference(
                        f"Metric '{metric.name}' references '{node.name}', which is not one of its measures.",
                        [metric.name, node.name],
                    )
                return self._rollup(mega.measure_column(node.name))
            return node

        compiled = tree.transform(_substitute)
        for division in list(compiled.find_all(exp.Div)):
            denominator = division.args.get("expression")
            if isinstance(denominator, exp.Literal) and not denominator.is_string and _nonzero(denominator):
                continue
            division.set("expression", zero_guard(denominator))
        return compiled


def _nonzero(literal: exp.Literal) -> bool:
    try:
        return float(literal.this) != 0
    except ValueError:
        return False
