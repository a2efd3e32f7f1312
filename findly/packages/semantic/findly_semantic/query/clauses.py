import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from sqlglot import exp

from findly.packages.semantic.findly_semantic.errors import InvalidFilterTarget, InvalidOrderByTarget
from findly.packages.semantic.findly_semantic.query.dialect import (
    build_date_range_condition,
    column,
    format_literal,
    ordered,
)
from findly.packages.semantic.findly_semantic.query.mega_table import MegaTableSQL
from findly.packages.semantic.findly_semantic.query.metric_compiler import CompiledMetric
from findly.packages.semantic.findly_semantic.query.query_model import FilterItem
from findly.packages.semantic.findly_semantic.query.resolver import ResolvedRequest


@dataclass(frozen=True)
class AssembledQuery:
    mega_table: exp.Expression
    aggregated: exp.Select
    select: exp.Select
    query: exp.Select
    where: Optional[exp.Expression]
    date_where: Optional[exp.Expression]
    group_by: Tuple[str, ...]
    having: Optional[exp.Expression]
    order_by: Tuple[exp.Ordered, ...]
    limit: Optional[int]


def build_filter_expression(
    expression: exp.Expression,
    operator: str,
    values: Sequence[Any],
    data_type: Optional[str],
) -> exp.Expression:
    formatted_values = [format_literal(value, data_type) for value in values]

    if operator == "equals":
        if len(formatted_values) == 1:
            return exp.EQ(this=expression, expression=formatted_values[0])
        return exp.In(this=expression, expressions=formatted_values)
    if operator == "not_equals":
        if len(formatted_values) == 1:
            return exp.NEQ(this=expression, expression=formatted_values[0])
        return exp.Not(this=exp.In(this=expression, expressions=formatted_values))
    if operator == "in":
        return exp.In(this=expression, expressions=formatted_values)
    if operator == "not_in":
        return exp.Not(this=exp.In(this=expression, expressions=formatted_values))
    if operator == "contains":
        likes = [
            exp.Like(this=expression.copy(), expression=format_literal(f"%{value}%")) for value in values
        ]
        return likes[0] if len(likes) == 1 else exp.Paren(this=exp.or_(*likes))
    if operator == "gt":
        return exp.GT(this=expression, expression=formatted_values[0])
    if operator == "gte":
        return exp.GTE(this=expression, expression=formatted_values[0])
    if operator == "lt":
        return exp.LT(this=expression, expression=formatted_values[0])
    if operator == "lte":
        return exp.LTE(this=expression, expression=formatted_values[0])
    if operator == "set":
        return exp.Not(this=exp.Is(this=expression, expression=exp.Null()))
    if operator == "not_set":
        return exp.Is(this=expression, expression=exp.Null())

    raise InvalidFilterTarget(f"Unsupported filter operator '{operator}'.", [operator])


class ClauseAssembler:
    def __init__(self, dialect: str) -> None:
        self._dialect = dialect
        self._logger = logging.getLogger(__name__)

    def assemble(
        self,
        resolved: ResolvedRequest,
        mega: MegaTableSQL,
        metrics: Sequence[CompiledMetric],
    ) -> AssembledQuery:
        request = resolved.request

        date_where: Optional[exp.Expression] = None
        if request.date_range is not None and mega.time_column is not None:
            date_where = build_date_range_condition(
                column(mega.time_column),
                request.date_range.start,
                request.date_range.end,
                resolved.date_granularity,
                self._dialect,
            )

        conditions: List[exp.Expression] = [
            self._filter_condition(flt.item, column(flt.item.member), flt.dimension.dimension.value_type)
            for flt in resolved.where_filters
            if flt.dimension is not None
        ]
        if date_where is not None:
            conditions.append(date_where)
        where = exp.and_(*conditions) if conditions else None

        compiled_by_name = {metric.name: metric for metric in metrics}
        having_conditions: List[exp.Expression] = []
        for flt in resolved.having_filters:
            compiled = compiled_by_name.get(flt.item.member)
            if compiled is None or compiled.is_window:
                raise InvalidFilterTarget(
                    f"Filter on metric '{flt.item.member}' cannot be applied after aggregation.",
                    [flt.item.member],
                )
            having_conditions.append(self._filter_condition(flt.item, compiled.value.copy(), "float"))
        having = exp.and_(*having_conditions) if having_conditions else None

        group_by = mega.dimension_columns
        order_by = self._order_by(resolved, group_by, metrics, self._dialect)

        aggregated = mega.aggregated.where(where) if where is not None else mega.aggregated.copy()

        select = exp.select(
            *[column(name) for name in group_by],
            *[metric.expression for metric in metrics],
        ).from_(mega.aggregated_name)
        if group_by:
            select = select.group_by(*[column(name) for name in group_by])
        if having is not None:
            select = select.having(having)
        if order_by:
            select = select.order_by(*[term.copy() for term in order_by])
        if request.limit is not None:
            select = select.limit(request.limit)

        query = select.with_(mega.name, as_=mega.mega_table.copy()).with_(mega.aggregated_name, as_=aggregated.copy())
        self._logger.debug(
            f"Assembled query with {len(group_by)} group by columns, "
            f"{len(conditions)} row filters and {len(having_conditions)} post-aggregation filters"
        )
        return AssembledQuery(
            mega_table=mega.mega_table,
            aggregated=aggregated,
            select=select,
            query=query,
            where=where,
            date_where=date_where,
            group_by=group_by,
            having=having,
            order_by=order_by,
            limit=request.limit,
        )

    @staticmethod
    def _filter_condition(item: FilterItem, target: exp.Expression, data_type: Optional[str]) -> exp.Expression:
        return build_filter_expression(target, item.operator, item.values, data_type)

    @staticmethod
    def _order_by(
        resolved: ResolvedRequest,
        group_by: Sequence[str],
        metrics: Sequence[CompiledMetric],
        dialect: str,
    ) -> Tuple[exp.Ordered, ...]:
        selected = [*group_by, *(metric.name for metric in metrics)]
        terms: List[exp.Ordered] = []
        for item in resolved.request.order:
            if item.member not in selected:
                raise InvalidOrderByTarget(
                    f"Cannot order by '{item.member}': it is not a selected column ({', '.join(selected)}).",
                    [item.member],
                )
            terms.append(ordered(column(item.member), dialect, descending=item.direction == "DESC"))
        return tuple(terms)
