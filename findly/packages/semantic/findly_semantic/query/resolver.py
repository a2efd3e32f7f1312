import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from sqlglot import exp

from findly.packages.semantic.findly_semantic.errors import (
    AmbiguousPrimaryTime,
    DefinitionNotFound,
    InvalidFilterTarget,
    NoCommonDataSource,
    SemanticQueryError,
    UnresolvedMeasureReference,
)
from findly.packages.semantic.findly_semantic.model import (
    CumulativeMetric,
    DateGranularity,
    Dimension,
    ExpressionMetric,
    MeasureProxyMetric,
    Metric,
    RatioMetric,
)
from findly.packages.semantic.findly_semantic.query.dialect import parse_expression
from findly.packages.semantic.findly_semantic.query.query_model import FilterItem, QueryRequest
from findly.packages.semantic.findly_semantic.registry import SemanticRegistry


@dataclass(frozen=True)
class ResolvedDimension:
    dimension: Dimension
    data_sources: FrozenSet[str]
    granularity: Optional[DateGranularity] = None

    @property
    def name(self) -> str:
        return self.dimension.name


@dataclass(frozen=True)
class ResolvedMetric:
    metric: Metric
    measures: Tuple[str, ...]
    data_sources: FrozenSet[str]

    @property
    def name(self) -> str:
        return self.metric.name


@dataclass(frozen=True)
class ResolvedFilter:
    item: FilterItem
    dimension: Optional[ResolvedDimension] = None
    metric: Optional[ResolvedMetric] = None


@dataclass(frozen=True)
class ResolvedRequest:
    request: QueryRequest
    metrics: Tuple[ResolvedMetric, ...]
    dimensions: Tuple[ResolvedDimension, ...]
    incompatible_metrics: Tuple[str, ...]
    incompatible_dimensions: Tuple[str, ...]
    anchor_source: str
    data_sources: Tuple[str, ...]
    measure_sources: Tuple[Tuple[str, str], ...]
    primary_time: Optional[ResolvedDimension]
    date_granularity: DateGranularity
    where_filters: Tuple[ResolvedFilter, ...]
    having_filters: Tuple[ResolvedFilter, ...]

    def source_for_measure(self, measure: str) -> str:
        for name, source in self.measure_sources:
            if name == measure:
                return source
        raise UnresolvedMeasureReference(f"Measure '{measure}' was not resolved to a data source.", [measure])

    @property
    def used_sources(self) -> Tuple[str, ...]:
        """Sources the mega table reads rows from, anchor first when it supplies measures."""
        sources: List[str] = []
        for _, source in sorted(self.measure_sources, key=lambda pair: pair[1] != self.anchor_source):
            if source not in sources:
                sources.append(source)
        return tuple(sources) or (self.anchor_source,)


def expression_measure_names(
    metric: ExpressionMetric,
    registry: SemanticRegistry,
    dialect: str,
) -> Tuple[str, ...]:
    """Measure names referenced by an expression metric, in order of first appearance."""
    tree = parse_expression(metric.expression, dialect, metric.name)
    allowed = set(metric.measures)
    names: List[str] = []
    for node in tree.find_all(exp.Column, bfs=False):
        token = node.name
        known = token in allowed if allowed else registry.is_measure(token)
        if not known:
            raise UnresolvedMeasureReference(
                f"Metric '{metric.name}' references '{token}', which is not one of its measures.",
                [metric.name, token],
            )
        if token not in names:
            names.append(token)
    if not names:
        raise UnresolvedMeasureReference(
            f"Metric '{metric.name}' expression does not reference any measure.", [metric.name]
        )
    return tuple(names)


class Resolver:
    """Classifies requested items against the data sources that expose them."""

    def __init__(self, registry: SemanticRegistry, dialect: str, default_granularity: DateGranularity) -> None:
        self._registry = registry
        self._dialect = dialect
        self._default_granularity = default_granularity
        self._logger = logging.getLogger(__name__)

    def resolve(self, request: QueryRequest) -> ResolvedRequest:
        metric_names = _unique(request.metrics)
        dimension_names = _unique(request.dimensions)
        if not metric_names and not dimension_names:
            raise SemanticQueryError("A query request needs at least one metric or dimension.")

        metrics = _unique_metrics([self._resolve_metric(name) for name in metric_names])
        dimensions = [
            ResolvedDimension(
                dimension=self._registry.get_dimension(name),
                data_sources=frozenset(self._registry.get_dimension(name).data_source_names),
            )
            for name in dimension_names
        ]

        anchor, common = self._choose_sources(metrics, dimensions)
        compatible_metrics = [metric for metric in metrics if anchor in metric.data_sources]
        compatible_dimensions = [dimension for dimension in dimensions if anchor in dimension.data_sources]
        incompatible_metrics = [metric.name for metric in metrics if anchor not in metric.data_sources]
        incompatible_dimensions = [
            dimension.name for dimension in dimensions if anchor not in dimension.data_sources
        ]

        primary_time = self._resolve_primary_time(compatible_dimensions, anchor)
        date_granularity = self._date_granularity(request, primary_time, compatible_dimensions)
        needs_time_axis = (
            request.date_range is not None
            or any(dimension.dimension.is_time for dimension in compatible_dimensions)
            or any(isinstance(metric.metric, CumulativeMetric) for metric in compatible_metrics)
        )
        if not needs_time_axis:
            primary_time = None
        elif primary_time is None:
            raise AmbiguousPrimaryTime(
                f"Data source '{anchor}' has no primary time dimension to apply the date range to.", [anchor]
            )
        compatible_dimensions = [
            self._with_granularity(dimension, primary_time, date_granularity) for dimension in compatible_dimensions
        ]
        if primary_time is not None:
            primary_time = self._with_granularity(primary_time, primary_time, date_granularity)

        where_filters, having_filters = self._resolve_filters(request.filters, compatible_metrics, anchor)

        required_dimensions = [dimension.dimension for dimension in compatible_dimensions]
        required_dimensions.extend(
            flt.dimension.dimension for flt in where_filters if flt.dimension is not None
        )
        if primary_time is not None:
            required_dimensions.append(primary_time.dimension)

        measure_sources: Dict[str, str] = {}
        kept_metrics: List[ResolvedMetric] = []
        for metric in compatible_metrics:
            chosen = self._choose_measure_sources(metric, common, required_dimensions)
            if chosen is None:
                self._logger.warning(
                    f"Metric '{metric.name}' has no data source exposing all requested dimensions; excluding it."
                )
                incompatible_metrics.append(metric.name)
                continue
            for measure, source in chosen.items():
                measure_sources.setdefault(measure, source)
            kept_metrics.append(metric)

        if not kept_metrics and not compatible_dimensions:
            requested = [metric.name for metric in metrics] + [dimension.name for dimension in dimensions]
            raise NoCommonDataSource(
                f"No requested item can be served from data source '{anchor}' with the required dimensions.",
                requested,
            )

        for flt in having_filters:
            if flt.metric is not None and flt.metric.name not in {metric.name for metric in kept_metrics}:
                raise InvalidFilterTarget(
                    f"Filter on metric '{flt.item.member}' targets a metric that is not selected.",
                    [flt.item.member],
                )

        if incompatible_metrics or incompatible_dimensions:
            self._logger.warning(
                f"Excluded incompatible items: metrics={incompatible_metrics} dimensions={incompatible_dimensions}"
            )

        resolved = ResolvedRequest(
            request=request,
            metrics=tuple(kept_metrics),
            dimensions=tuple(compatible_dimensions),
            incompatible_metrics=tuple(metric.name for metric in metrics if metric.name in incompatible_metrics),
            incompatible_dimensions=tuple(incompatible_dimensions),
            anchor_source=anchor,
            data_sources=common,
            measure_sources=tuple(measure_sources.items()),
            primary_time=primary_time,
            date_granularity=date_granularity,
            where_filters=tuple(where_filters),
            having_filters=tuple(having_filters),
        )
        self._logger.debug(
            f"Resolved request on '{anchor}' (common sources: {', '.join(common)}), "
            f"primary time: {primary_time.name if primary_time else None}"
        )
        return resolved

    def _resolve_metric(self, name: str) -> ResolvedMetric:
        metric = self._registry.get_metric(name)
        if isinstance(metric, MeasureProxyMetric):
            measures: Tuple[str, ...] = (metric.measure,)
            sources = frozenset(self._registry.measure_sources(metric.measure))
        elif isinstance(metric, RatioMetric):
            measures = (metric.numerator, metric.denominator)
            sources = frozenset(self._registry.measure_sources(metric.numerator)) & frozenset(
                self._registry.measure_sources(metric.denominator)
            )
        elif isinstance(metric, CumulativeMetric):
            measures = (metric.measure,)
            sources = frozenset(self._registry.measure_sources(metric.measure))
        elif isinstance(metric, ExpressionMetric):
            measures = expression_measure_names(metric, self._registry, self._dialect)
            sources = frozenset(
                source for measure in measures for source in self._registry.measure_sources(measure)
            )
        else:
            raise SemanticQueryError(f"Unsupported metric type for '{name}'.", [name])
        self._logger.debug(f"Metric '{metric.name}' measures={measures} sources={sorted(sources)}")
        return ResolvedMetric(metric=metric, measures=measures, data_sources=sources)

    def _choose_sources(
        self,
        metrics: Sequence[ResolvedMetric],
        dimensions: Sequence[ResolvedDimension],
    ) -> Tuple[str, Tuple[str, ...]]:
        candidates: Set[str] = set()
        for item in [*metrics, *dimensions]:
            candidates.update(item.data_sources)

        def coverage(source: str) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
            return (
                tuple(metric.name for metric in metrics if source in metric.data_sources),
                tuple(dimension.name for dimension in dimensions if source in dimension.data_sources),
            )

        requested = [*(metric.name for metric in metrics), *(dimension.name for dimension in dimensions)]
        ranked = sorted(
            candidates,
            key=lambda source: (-len(coverage(source)[0]), -len(coverage(source)[1]), source),
        )
        if not ranked:
            raise NoCommonDataSource("No data source backs the requested items.", requested)

        anchor = ranked[0]
        best = coverage(anchor)
        covered = len(best[0]) + len(best[1])
        if covered == 0 or (covered == 1 and len(requested) > 1):
            raise NoCommonDataSource(
                f"Requested items {', '.join(requested)} do not share a data source.", requested
            )
        common = tuple([anchor, *(source for source in sorted(candidates) if source != anchor and coverage(source) == best)])
        return anchor, common

    def _resolve_primary_time(
        self,
        dimensions: Sequence[ResolvedDimension],
        anchor: str,
    ) -> Optional[ResolvedDimension]:
        time_dimensions = [dimension for dimension in dimensions if dimension.dimension.is_time]
        if len(time_dimensions) > 1:
            primaries = [dimension for dimension in time_dimensions if dimension.dimension.is_primary_time]
            if len(primaries) != 1:
                names = [dimension.name for dimension in time_dimensions]
                raise AmbiguousPrimaryTime(
                    f"Time dimensions {', '.join(names)} were requested together but "
                    f"{len(primaries)} of them are primary; exactly one must be.",
                    names,
                )
            return primaries[0]
        if time_dimensions:
            return time_dimensions[0]

        fallback = self._registry.primary_time_dimension(anchor)
        if fallback is None:
            return None
        return ResolvedDimension(dimension=fallback, data_sources=frozenset(fallback.data_source_names))

    def _date_granularity(
        self,
        request: QueryRequest,
        primary_time: Optional[ResolvedDimension],
        dimensions: Sequence[ResolvedDimension],
    ) -> DateGranularity:
        """Grain of the primary time axis: the date range's, else the finest requested time grain."""
        if request.date_range is not None and request.date_range.granularity is not None:
            return request.date_range.granularity
        grains = [
            dimension.dimension.granularity
            for dimension in dimensions
            if dimension.dimension.is_time and dimension.dimension.granularity is not None
        ]
        if grains:
            return min(grains, key=lambda grain: grain.rank)
        if primary_time is not None and primary_time.dimension.granularity is not None:
            return primary_time.dimension.granularity
        return self._default_granularity

    @staticmethod
    def _with_granularity(
        dimension: ResolvedDimension,
        primary_time: Optional[ResolvedDimension],
        primary_granularity: DateGranularity,
    ) -> ResolvedDimension:
        if not dimension.dimension.is_time:
            return dimension
        granularity = dimension.dimension.granularity
        if primary_time is not None and dimension.name == primary_time.name:
            granularity = primary_granularity
        return ResolvedDimension(
            dimension=dimension.dimension,
            data_sources=dimension.data_sources,
            granularity=granularity,
        )

    def _resolve_filters(
        self,
        filters: Sequence[FilterItem],
        metrics: Sequence[ResolvedMetric],
        anchor: str,
    ) -> Tuple[List[ResolvedFilter], List[ResolvedFilter]]:
        where: List[ResolvedFilter] = []
        having: List[ResolvedFilter] = []
        selected = {metric.name: metric for metric in metrics}
        for item in filters:
            if item.member in selected:
                metric = selected[item.member]
                if isinstance(metric.metric, CumulativeMetric):
                    raise InvalidFilterTarget(
                        f"Cumulative metric '{item.member}' cannot be filtered after aggregation.", [item.member]
                    )
                having.append(ResolvedFilter(item=item, metric=metric))
            elif self._registry.has_dimension(item.member):
                dimension = self._registry.get_dimension(item.member)
                if anchor not in dimension.data_source_names:
                    raise NoCommonDataSource(
                        f"Filter dimension '{item.member}' is not available in data source '{anchor}'.",
                        [item.member],
                    )
                resolved = ResolvedDimension(
                    dimension=dimension,
                    data_sources=frozenset(dimension.data_source_names),
                    granularity=dimension.granularity,
                )
                where.append(ResolvedFilter(item=item, dimension=resolved))
            elif self._registry.has_metric(item.member):
                raise InvalidFilterTarget(
                    f"Filter on metric '{item.member}' targets a metric that is not selected.", [item.member]
                )
            else:
                raise DefinitionNotFound(f"Unknown filter member '{item.member}'.", [item.member])
        return where, having

    def _choose_measure_sources(
        self,
        metric: ResolvedMetric,
        common: Tuple[str, ...],
        required_dimensions: Sequence[Dimension],
    ) -> Optional[Dict[str, str]]:
        chosen: Dict[str, str] = {}
        for measure in metric.measures:
            defining = self._registry.measure_sources(measure)
            candidates = [source for source in common if source in defining]
            candidates.extend(source for source in sorted(defining) if source not in candidates)
            usable = [
                source
                for source in candidates
                if all(source in dimension.data_source_names for dimension in required_dimensions)
            ]
            if not usable:
                return None
            chosen[measure] = usable[0]
        return chosen


def _unique(names: Sequence[str]) -> List[str]:
    seen: Set[str] = set()
    unique: List[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def _unique_metrics(metrics: Sequence[ResolvedMetric]) -> List[ResolvedMetric]:
    # A metric may be requested once by name and once by id.
    seen: Set[str] = set()
    unique: List[ResolvedMetric] = []
    for metric in metrics:
        if metric.name not in seen:
            seen.add(metric.name)
            unique.append(metric)
    return unique
