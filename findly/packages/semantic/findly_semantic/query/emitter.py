from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict
from sqlglot import exp

from findly.packages.semantic.findly_semantic.model import DataSourceLocation, DateGranularity, DimensionType
from findly.packages.semantic.findly_semantic.query.clauses import AssembledQuery
from findly.packages.semantic.findly_semantic.query.mega_table import MegaTableSQL
from findly.packages.semantic.findly_semantic.query.metric_compiler import CompiledMetric
from findly.packages.semantic.findly_semantic.query.resolver import ResolvedRequest
from findly.packages.semantic.findly_semantic.registry import SemanticRegistry

_FB_TIME_INCREMENTS = {
    DateGranularity.DAY: "1",
    DateGranularity.WEEK: "7",
    DateGranularity.MONTH: "monthly",
}
# Finest insights level first.
_FB_LEVEL_PREFIXES = (("ad_", "ad"), ("adset_", "adset"), ("campaign_", "campaign"))


class GeneratedSQLQueryParts(BaseModel):
    """Compiled output of one request; never mutated after emission."""

    model_config = ConfigDict(frozen=True)

    mega_table_with_statement: str
    mega_table_aggregated_with_statement: str
    generated_sql: str
    generated_sql_without_megatable_schema: str
    where_clause: str = ""
    date_where_clause: str = ""
    group_by_columns: Tuple[str, ...] = ()
    having_clause: str = ""
    order_by: str = ""
    limit: str = ""
    metrics: Tuple[str, ...] = ()
    metrics_expression: Tuple[str, ...] = ()
    date_ranges: str = ""
    incompatible_metrics: Tuple[str, ...] = ()
    incompatible_dimensions: Tuple[str, ...] = ()
    sql_explanation: str = ""
    final_summary_answer: str = ""
    level: str = ""
    time_increment: str = ""


class QueryArtifactEmitter:
    def __init__(self, registry: SemanticRegistry, dialect: str) -> None:
        self._registry = registry
        self._dialect = dialect

    def emit(
        self,
        resolved: ResolvedRequest,
        mega: MegaTableSQL,
        metrics: Sequence[CompiledMetric],
        assembled: AssembledQuery,
    ) -> GeneratedSQLQueryParts:
        request = resolved.request
        level, time_increment = self._insights_parameters(resolved)
        return GeneratedSQLQueryParts(
            mega_table_with_statement=self._with_statement(mega.name, assembled.mega_table),
            mega_table_aggregated_with_statement=self._with_statement(mega.aggregated_name, assembled.aggregated),
            generated_sql=assembled.query.sql(dialect=self._dialect),
            generated_sql_without_megatable_schema=assembled.select.sql(dialect=self._dialect),
            where_clause=self._render(assembled.where),
            date_where_clause=self._render(assembled.date_where),
            group_by_columns=assembled.group_by,
            having_clause=self._render(assembled.having),
            order_by=", ".join(term.sql(dialect=self._dialect) for term in assembled.order_by),
            limit="" if assembled.limit is None else str(assembled.limit),
            metrics=tuple(metric.name for metric in metrics),
            metrics_expression=tuple(metric.expression.sql(dialect=self._dialect) for metric in metrics),
            date_ranges=request.date_range.describe() if request.date_range else "",
            incompatible_metrics=resolved.incompatible_metrics,
            incompatible_dimensions=resolved.incompatible_dimensions,
            sql_explanation=explain(resolved, metrics, assembled),
            final_summary_answer="",
            level=level,
            time_increment=time_increment,
        )

    def _with_statement(self, name: str, body: exp.Expression) -> str:
        cte = exp.CTE(this=body.copy(), alias=exp.TableAlias(this=exp.to_identifier(name)))
        return cte.sql(dialect=self._dialect)

    def _render(self, expression: Optional[exp.Expression]) -> str:
        return expression.sql(dialect=self._dialect) if expression is not None else ""

    def _insights_parameters(self, resolved: ResolvedRequest) -> Tuple[str, str]:
        request = resolved.request
        location = self._registry.get_data_source(resolved.anchor_source).metadata.location
        if location != DataSourceLocation.FB_ADS:
            return request.level or "", request.time_increment or ""

        level = request.level
        if not level:
            level = "account"
            fields = [
                dimension.name
                for dimension in resolved.dimensions
                if dimension.dimension.type == DimensionType.FB_ADS_FIELD
            ]
            for prefix, candidate in _FB_LEVEL_PREFIXES:
                if any(name.startswith(prefix) for name in fields):
                    level = candidate
                    break
        time_increment = request.time_increment or _FB_TIME_INCREMENTS.get(resolved.date_granularity, "all_days")
        return level, time_increment


def explain(resolved: ResolvedRequest, metrics: Sequence[CompiledMetric], assembled: AssembledQuery) -> str:
    request = resolved.request
    parts: List[str] = []
    subject = ", ".join(metric.name for metric in metrics) or "distinct values"
    parts.append(f"Computes {subject}")
    if assembled.group_by:
        parts.append(f" grouped by {', '.join(assembled.group_by)}")
    parts.append(f" from data source {', '.join(resolved.used_sources)}")
    if request.date_range is not None:
        parts.append(
            f" for {request.date_range.describe()} at {resolved.date_granularity.value.lower()} granularity"
        )
    filtered = [flt.item.member for flt in (*resolved.where_filters, *resolved.having_filters)]
    if filtered:
        parts.append(f", filtered on {', '.join(filtered)}")
    parts.append(".")
    if resolved.incompatible_metrics:
        parts.append(f" Incompatible metrics left out: {', '.join(resolved.incompatible_metrics)}.")
    if resolved.incompatible_dimensions:
        parts.append(f" Incompatible dimensions left out: {', '.join(resolved.incompatible_dimensions)}.")
    return "".join(parts)
