from .errors import (
    AmbiguousPrimaryTime,
    CompilationCancelled,
    DefinitionNotFound,
    DefinitionValidationError,
    InvalidFilterTarget,
    InvalidOrderByTarget,
    NoCommonDataSource,
    QueryTooLarge,
    SemanticLayerError,
    SemanticModelError,
    SemanticQueryError,
    UnresolvedMeasureReference,
    UnsupportedDialect,
)
from .loader import load_definitions, load_registry
from .model import (
    DataSource,
    DatasourceMetadata,
    DefinitionBatch,
    Dimension,
    Measure,
    Metric,
)
from .registry import RegistryHolder, SemanticRegistry

__all__ = [
    "AmbiguousPrimaryTime",
    "CompilationCancelled",
    "DataSource",
    "DatasourceMetadata",
    "DefinitionBatch",
    "DefinitionNotFound",
    "DefinitionValidationError",
    "Dimension",
    "InvalidFilterTarget",
    "InvalidOrderByTarget",
    "Measure",
    "Metric",
    "NoCommonDataSource",
    "QueryTooLarge",
    "RegistryHolder",
    "SemanticLayerError",
    "SemanticModelError",
    "SemanticQueryError",
    "SemanticRegistry",
    "UnresolvedMeasureReference",
    "UnsupportedDialect",
    "load_definitions",
    "load_registry",
]
