from typing import Iterable


class SemanticLayerError(Exception):
    """Base class for every failure raised by the semantic compiler."""

    def __init__(self, message: str, identifiers: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.identifiers = tuple(identifiers)


class SemanticModelError(SemanticLayerError):
    """Raised when metric or dimension definitions cannot be used."""


class DefinitionNotFound(SemanticModelError):
    """Raised when a requested metric, dimension or measure is not defined."""


class DefinitionValidationError(SemanticModelError):
    """Raised when a definition batch violates a registry invariant."""


class SemanticQueryError(SemanticLayerError):
    """Raised when a query request cannot be compiled."""


class NoCommonDataSource(SemanticQueryError):
    """Raised when the requested items share no data source."""


class AmbiguousPrimaryTime(SemanticQueryError):
    """Raised when the primary time axis of a request cannot be decided."""


class UnresolvedMeasureReference(SemanticQueryError):
    """Raised when a metric expression names something that is not a measure."""


class InvalidOrderByTarget(SemanticQueryError):
    """Raised when ORDER BY names a column the query does not select."""


class InvalidFilterTarget(SemanticQueryError):
    """Raised when a post-aggregation filter cannot be applied to its metric."""


class QueryTooLarge(SemanticQueryError):
    """Raised when a request exceeds the configured dimension or metric limits."""


class UnsupportedDialect(SemanticQueryError):
    """Raised when SQL is requested for a dialect the compiler cannot render."""


class CompilationCancelled(SemanticQueryError):
    """Raised when the caller abandoned the request between pipeline stages."""
