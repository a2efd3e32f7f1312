import logging
from typing import Any, Dict, Optional

from findly.packages.common.findly_common.config import settings
from findly.packages.semantic.findly_semantic.errors import QueryTooLarge
from findly.packages.semantic.findly_semantic.model import DateGranularity
from findly.packages.semantic.findly_semantic.query.cancellation import CancellationToken
from findly.packages.semantic.findly_semantic.query.clauses import ClauseAssembler
from findly.packages.semantic.findly_semantic.query.dialect import normalize_dialect
from findly.packages.semantic.findly_semantic.query.emitter import GeneratedSQLQueryParts, QueryArtifactEmitter
from findly.packages.semantic.findly_semantic.query.mega_table import MegaTableBuilder
from findly.packages.semantic.findly_semantic.query.metric_compiler import MetricExpressionCompiler
from findly.packages.semantic.findly_semantic.query.query_model import QueryRequest
from findly.packages.semantic.findly_semantic.query.resolver import Resolver
from findly.packages.semantic.findly_semantic.registry import RegistryHolder, SemanticRegistry


class SemanticQueryEngine:
    """
    Core semantic query compiler.

    The engine keeps no per-request state: each compile() call takes one
    registry snapshot and runs the resolver, mega-table builder, metric
    compiler, clause assembler and emitter against it, checking the
    cancellation token between stages.
    """

    def __init__(
        self,
        registry: RegistryHolder | SemanticRegistry,
        *,
        dialect: Optional[str] = None,
        mega_table_name: Optional[str] = None,
        aggregated_name: Optional[str] = None,
        max_dimensions: Optional[int] = None,
        max_metrics: Optional[int] = None,
        default_granularity: Optional[str] = None,
    ) -> None:
        self._registry = registry
        self._dialect = normalize_dialect(dialect or settings.SEMANTIC_SQL_DIALECT)
        self._mega_table_name = mega_table_name or settings.SEMANTIC_MEGA_TABLE_NAME
        self._aggregated_name = aggregated_name or settings.SEMANTIC_MEGA_TABLE_AGGREGATED_NAME
        self._max_dimensions = max_dimensions if max_dimensions is not None else settings.SEMANTIC_MAX_DIMENSIONS
        self._max_metrics = max_metrics if max_metrics is not None else settings.SEMANTIC_MAX_METRICS
        self._default_granularity = DateGranularity(
            default_granularity or settings.SEMANTIC_DEFAULT_TIME_GRANULARITY
        )
        self._logger = logging.getLogger(__name__)

    @property
    def dialect(self) -> str:
        return self._dialect

    def snapshot(self) -> SemanticRegistry:
        if isinstance(self._registry, RegistryHolder):
            return self._registry.snapshot()
        return self._registry

    def compile(
        self,
        request: QueryRequest | Dict[str, Any],
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> GeneratedSQLQueryParts:
        parsed = request if isinstance(request, QueryRequest) else QueryRequest.model_validate(request)
        token = cancellation or CancellationToken()
        self._check_size(parsed)

        registry = self.snapshot()
        self._logger.info(
            f"Compiling request for metrics={parsed.metrics} dimensions={parsed.dimensions} ({self._dialect})"
        )

        token.raise_if_cancelled("resolve")
        resolved = Resolver(registry, self._dialect, self._default_granularity).resolve(parsed)

        token.raise_if_cancelled("build_mega_table")
        mega = MegaTableBuilder(registry, self._dialect, self._mega_table_name, self._aggregated_name).build(resolved)

        token.raise_if_cancelled("compile_metrics")
        compiler = MetricExpressionCompiler(self._dialect)
        metrics = [compiler.compile(metric, mega, resolved) for metric in resolved.metrics]

        token.raise_if_cancelled("assemble_clauses")
        assembled = ClauseAssembler(self._dialect).assemble(resolved, mega, metrics)

        token.raise_if_cancelled("emit")
        artifact = QueryArtifactEmitter(registry, self._dialect).emit(resolved, mega, metrics, assembled)
        self._logger.info(
            f"Compiled {len(artifact.metrics)} metrics over {len(artifact.group_by_columns)} dimensions; "
            f"incompatible metrics={list(artifact.incompatible_metrics)} "
            f"dimensions={list(artifact.incompatible_dimensions)}"
        )
        return artifact

    def _check_size(self, request: QueryRequest) -> None:
        dimensions = set(request.dimensions)
        metrics = set(request.metrics)
        if len(dimensions) > self._max_dimensions:
            raise QueryTooLarge(
                f"Request asks for {len(dimensions)} dimensions, the limit is {self._max_dimensions}.",
                sorted(dimensions),
            )
        if len(metrics) > self._max_metrics:
            raise QueryTooLarge(
                f"Request asks for {len(metrics)} metrics, the limit is {self._max_metrics}.",
                sorted(metrics),
            )
