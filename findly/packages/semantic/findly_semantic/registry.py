import logging
import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from findly.packages.semantic.findly_semantic.errors import DefinitionNotFound, DefinitionValidationError
from findly.packages.semantic.findly_semantic.model import (
    CumulativeMetric,
    DataSource,
    DataSourceLocation,
    DefinitionBatch,
    Dimension,
    ExpressionMetric,
    Measure,
    MeasureProxyMetric,
    Metric,
    RatioMetric,
)


class SemanticRegistry:
    """
    Read-only snapshot of validated definitions.

    Instances are never mutated after construction; a reload builds a new
    instance and publishes it through RegistryHolder.
    """

    def __init__(self, batch: DefinitionBatch) -> None:
        self._data_sources: Dict[str, DataSource] = {}
        self._dimensions: Dict[str, Dimension] = {}
        self._metrics: Dict[str, Metric] = {}
        self._metrics_by_id: Dict[str, Metric] = {}
        self._measure_sources: Dict[str, List[str]] = {}
        self._build_indexes(batch)
        _validate_definitions(self)

    @classmethod
    def from_batch(cls, batch: DefinitionBatch) -> "SemanticRegistry":
        return cls(batch)

    @classmethod
    def empty(cls) -> "SemanticRegistry":
        return cls(DefinitionBatch())

    @property
    def data_sources(self) -> Tuple[DataSource, ...]:
        return tuple(self._data_sources.values())

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return tuple(self._dimensions.values())

    @property
    def metrics(self) -> Tuple[Metric, ...]:
        return tuple(self._metrics.values())

    def get_data_source(self, name: str) -> DataSource:
        data_source = self._data_sources.get(name)
        if data_source is None:
            raise DefinitionNotFound(f"Unknown data source '{name}'.", [name])
        return data_source

    def get_dimension(self, name: str) -> Dimension:
        dimension = self._dimensions.get(name)
        if dimension is None:
            raise DefinitionNotFound(f"Unknown dimension '{name}'.", [name])
        return dimension

    def get_metric(self, name: str) -> Metric:
        metric = self._metrics.get(name) or self._metrics_by_id.get(name)
        if metric is None:
            raise DefinitionNotFound(f"Unknown metric '{name}'.", [name])
        return metric

    def has_dimension(self, name: str) -> bool:
        return name in self._dimensions

    def has_metric(self, name: str) -> bool:
        return name in self._metrics or name in self._metrics_by_id

    def is_measure(self, name: str) -> bool:
        return name in self._measure_sources

    def measure_sources(self, name: str) -> Tuple[str, ...]:
        sources = self._measure_sources.get(name)
        if sources is None:
            raise DefinitionNotFound(f"Unknown measure '{name}'.", [name])
        return tuple(sources)

    def get_measure(self, name: str, data_source: str) -> Measure:
        measure = self.get_data_source(data_source).get_measure(name)
        if measure is None:
            raise DefinitionNotFound(f"Measure '{name}' is not defined in data source '{data_source}'.", [name])
        return measure

    def primary_time_dimension(self, data_source: str) -> Optional[Dimension]:
        for dimension in self._dimensions.values():
            if dimension.is_primary_time and data_source in dimension.data_source_names:
                return dimension
        return None

    def _build_indexes(self, batch: DefinitionBatch) -> None:
        for data_source in batch.data_sources:
            if data_source.name in self._data_sources:
                raise DefinitionValidationError(
                    f"Duplicate data source '{data_source.name}'.", [data_source.name]
                )
            self._data_sources[data_source.name] = data_source
            for measure in data_source.measures:
                self._measure_sources.setdefault(measure.name, []).append(data_source.name)

        for dimension in batch.dimensions:
            if dimension.name in self._dimensions:
                raise DefinitionValidationError(f"Duplicate dimension '{dimension.name}'.", [dimension.name])
            self._dimensions[dimension.name] = dimension

        for metric in batch.metrics:
            if metric.name in self._metrics:
                raise DefinitionValidationError(f"Duplicate metric name '{metric.name}'.", [metric.name])
            if metric.id in self._metrics_by_id:
                raise DefinitionValidationError(f"Duplicate metric id '{metric.id}'.", [metric.name])
            self._metrics[metric.name] = metric
            self._metrics_by_id[metric.id] = metric


class RegistryHolder:
    """
    Publishes registry snapshots with an atomic reference swap.

    Readers call snapshot() once per request and keep using that instance;
    reload() builds the replacement off to the side, so a failed reload leaves
    the current snapshot in place.
    """

    def __init__(self, registry: Optional[SemanticRegistry] = None) -> None:
        self._registry = registry or SemanticRegistry.empty()
        self._version = 0
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> SemanticRegistry:
        return self._registry

    def reload(self, batch: DefinitionBatch) -> SemanticRegistry:
        with self._lock:
            try:
                registry = SemanticRegistry.from_batch(batch)
            except DefinitionValidationError as exc:
                self._logger.error(f"Registry reload rejected, keeping version {self._version}: {exc}")
                raise
            self._registry = registry
            self._version += 1
            self._logger.info(
                f"Published registry version {self._version} with {len(registry.metrics)} metrics "
                f"and {len(registry.dimensions)} dimensions."
            )
            return registry


def _normalize_expression(expression: str) -> str:
    return re.sub(r"\s+", "", expression).lower()


def _validate_definitions(registry: SemanticRegistry) -> None:
    _validate_dimensions(registry)
    _validate_primary_time(registry)
    _validate_metrics(registry)


def _validate_dimensions(registry: SemanticRegistry) -> None:
    for dimension in registry.dimensions:
        for source_name in dimension.data_source_names:
            if source_name not in {source.name for source in registry.data_sources}:
                raise DefinitionValidationError(
                    f"Dimension '{dimension.name}' references unknown data source '{source_name}'.",
                    [dimension.name],
                )
            location = registry.get_data_source(source_name).metadata.location
            if dimension.type.is_fb_ads and location != DataSourceLocation.FB_ADS:
                raise DefinitionValidationError(
                    f"Dimension '{dimension.name}' of type {dimension.type.value} requires an FB_ADS data source, "
                    f"but '{source_name}' is located in {location.value}.",
                    [dimension.name],
                )


def _validate_primary_time(registry: SemanticRegistry) -> None:
    for data_source in registry.data_sources:
        if not data_source.measures:
            continue
        primaries = [
            dimension.name
            for dimension in registry.dimensions
            if dimension.is_primary_time and data_source.name in dimension.data_source_names
        ]
        if len(primaries) != 1:
            raise DefinitionValidationError(
                f"Data source '{data_source.name}' defines measures and needs exactly one primary time dimension, "
                f"found {len(primaries)} ({', '.join(primaries) or 'none'}).",
                [data_source.name, *primaries],
            )


def _require_measures(metric: Metric, names: Iterable[str], registry: SemanticRegistry, role: str) -> None:
    for name in names:
        if not registry.is_measure(name):
            raise DefinitionValidationError(
                f"Metric '{metric.name}' {role} '{name}' is not a measure of any data source.",
                [metric.name, name],
            )


def _validate_metrics(registry: SemanticRegistry) -> None:
    proxy_targets: Dict[str, str] = {}
    expressions: Dict[str, str] = {}

    for metric in registry.metrics:
        # Metric and dimension names share the output column namespace.
        if registry.has_dimension(metric.name):
            raise DefinitionValidationError(
                f"Metric '{metric.name}' has the same name as a dimension.", [metric.name]
            )
        if isinstance(metric, MeasureProxyMetric):
            _require_measures(metric, [metric.measure], registry, "measure")
            owner = proxy_targets.get(metric.measure)
            if owner is not None:
                raise DefinitionValidationError(
                    f"Measure proxies '{owner}' and '{metric.name}' both reference measure '{metric.measure}'.",
                    [metric.name],
                )
            proxy_targets[metric.measure] = metric.name
        elif isinstance(metric, RatioMetric):
            # Ratio terms must be measures even when a metric shares the name.
            _require_measures(metric, [metric.numerator, metric.denominator], registry, "ratio term")
        elif isinstance(metric, CumulativeMetric):
            _require_measures(metric, [metric.measure], registry, "measure")
        elif isinstance(metric, ExpressionMetric):
            _require_measures(metric, metric.measures, registry, "measure")
            normalized = _normalize_expression(metric.expression)
            owner = expressions.get(normalized)
            if owner is not None:
                raise DefinitionValidationError(
                    f"Metrics '{owner}' and '{metric.name}' share the same expression.",
                    [metric.name],
                )
            expressions[normalized] = metric.name
        else:
            raise DefinitionValidationError(f"Unsupported metric '{metric.name}'.", [metric.name])
