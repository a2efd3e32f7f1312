from .cancellation import CancellationToken
from .emitter import GeneratedSQLQueryParts
from .engine import SemanticQueryEngine
from .query_model import DateRange, FilterItem, OrderItem, QueryRequest

__all__ = [
    "CancellationToken",
    "DateRange",
    "FilterItem",
    "GeneratedSQLQueryParts",
    "OrderItem",
    "QueryRequest",
    "SemanticQueryEngine",
]
