from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable, TypeVar

import yaml
from pydantic import TypeAdapter, ValidationError

from findly.packages.semantic.findly_semantic.errors import DefinitionValidationError
from findly.packages.semantic.findly_semantic.model import (
    DataSource,
    DefinitionBatch,
    Dimension,
    Metric,
    MetricType,
)
from findly.packages.semantic.findly_semantic.registry import SemanticRegistry

_T = TypeVar("_T")
_METRIC_ADAPTER: TypeAdapter[Metric] = TypeAdapter(Metric)


def load_definitions(source: str | Mapping[str, Any] | Path) -> DefinitionBatch:
    """Parse a YAML document (or an already decoded mapping) into a definition batch."""
    if isinstance(source, Path):
        return load_definitions(source.read_text(encoding="utf-8"))
    if isinstance(source, Mapping):
        payload = dict(source)
    else:
        try:
            payload = yaml.safe_load(source)
        except yaml.YAMLError as exc:
            raise DefinitionValidationError(f"Unable to parse definitions payload: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise DefinitionValidationError("Definitions payload must be a mapping.")

    return DefinitionBatch(
        data_sources=[
            _build("data source", entry, DataSource.model_validate)
            for entry in _named_entries(payload.get("data_sources"), "data_sources")
        ],
        dimensions=[
            _build("dimension", entry, Dimension.model_validate)
            for entry in _named_entries(payload.get("dimensions"), "dimensions")
        ],
        metrics=[
            _build("metric", _normalize_metric(entry), _METRIC_ADAPTER.validate_python)
            for entry in _named_entries(payload.get("metrics"), "metrics")
        ],
    )


def load_registry(source: str | Mapping[str, Any] | Path) -> SemanticRegistry:
    return SemanticRegistry.from_batch(load_definitions(source))


def _named_entries(source: Any, section: str) -> list[dict[str, Any]]:
    # Sections may be lists of records or mappings keyed by record name.
    if source is None:
        return []
    if isinstance(source, Mapping):
        entries = []
        for name, body in source.items():
            if not isinstance(body, Mapping):
                raise DefinitionValidationError(f"Entry '{name}' in '{section}' must be a mapping.", [str(name)])
            entries.append({"name": str(name), **body})
        return entries
    if isinstance(source, list):
        for entry in source:
            if not isinstance(entry, Mapping):
                raise DefinitionValidationError(f"Entries in '{section}' must be mappings.")
        return [dict(entry) for entry in source]
    raise DefinitionValidationError(f"Section '{section}' must be a list or a mapping.")


def _normalize_metric(entry: dict[str, Any]) -> dict[str, Any]:
    raw_type = entry.get("type")
    if raw_type is None:
        raise DefinitionValidationError(f"Metric '{entry.get('name')}' is missing a type.", [str(entry.get("name"))])
    try:
        metric_type = MetricType(str(raw_type))
    except ValueError as exc:
        raise DefinitionValidationError(
            f"Metric '{entry.get('name')}' has unsupported type '{raw_type}'.", [str(entry.get("name"))]
        ) from exc
    return {**entry, "type": metric_type}


def _normalize_measures(entry: dict[str, Any]) -> dict[str, Any]:
    measures = []
    for measure in entry.get("measures") or []:
        if isinstance(measure, Mapping) and "agg" in measure and "aggregation" not in measure:
            measure = {key: value for key, value in measure.items() if key != "agg"} | {"aggregation": measure["agg"]}
        measures.append(measure)
    return {**entry, "measures": measures}


def _build(kind: str, entry: dict[str, Any], validate: Callable[[Any], _T]) -> _T:
    if kind == "data source":
        entry = _normalize_measures(entry)
    try:
        return validate(entry)
    except ValidationError as exc:
        name = str(entry.get("name") or "<unnamed>")
        problems = "; ".join(error["msg"] for error in exc.errors())
        raise DefinitionValidationError(f"Invalid {kind} '{name}': {problems}", [name]) from exc


__all__ = ["load_definitions", "load_registry"]
