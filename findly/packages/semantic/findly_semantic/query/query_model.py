from datetime import date
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from findly.packages.semantic.findly_semantic.model import DateGranularity

FILTER_OPERATORS = {
    "equals",
    "not_equals",
    "in",
    "not_in",
    "contains",
    "gt",
    "gte",
    "lt",
    "lte",
    "set",
    "not_set",
}
_OPERATOR_ALIASES = {
    "eq": "equals",
    "equal": "equals",
    "=": "equals",
    "ne": "not_equals",
    "notequals": "not_equals",
    "!=": "not_equals",
    "notin": "not_in",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "notset": "not_set",
}


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    granularity: Optional[DateGranularity] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}.")
        return self

    def describe(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


class FilterItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    member: str
    operator: str = "equals"
    values: List[Any] = Field(default_factory=list)

    @field_validator("operator")
    @classmethod
    def _normalize_operator(cls, value: str) -> str:
        normalized = value.strip().lower()
        normalized = _OPERATOR_ALIASES.get(normalized, normalized)
        if normalized not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator '{value}'.")
        return normalized

    @model_validator(mode="after")
    def _check_values(self) -> "FilterItem":
        if self.operator not in {"set", "not_set"} and not self.values:
            raise ValueError(f"Filter on '{self.member}' with operator '{self.operator}' needs at least one value.")
        return self


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    member: str
    direction: str = "ASC"

    @field_validator("direction")
    @classmethod
    def _normalize_direction(cls, value: str) -> str:
        return "DESC" if str(value or "asc").strip().lower() == "desc" else "ASC"


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    metrics: List[str] = Field(default_factory=list)
    dimensions: List[str] = Field(default_factory=list)
    filters: List[FilterItem] = Field(default_factory=list)
    date_range: Optional[DateRange] = Field(default=None, alias="dateRange")
    order: List[OrderItem] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=0)
    # Facebook Ads insights parameters, passed through to the artifact.
    level: Optional[str] = None
    time_increment: Optional[str] = Field(default=None, alias="timeIncrement")

    @field_validator("filters", mode="before")
    @classmethod
    def _filters_from_mapping(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        filters = []
        for member, raw in value.items():
            if isinstance(raw, (list, tuple, set)):
                filters.append({"member": member, "operator": "in", "values": list(raw)})
            else:
                filters.append({"member": member, "operator": "equals", "values": [raw]})
        return filters

    @field_validator("order", mode="before")
    @classmethod
    def _normalize_order(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [{"member": member, "direction": direction} for member, direction in value.items()]
        if isinstance(value, list):
            items = []
            for entry in value:
                if isinstance(entry, str):
                    if entry.startswith("-"):
                        items.append({"member": entry[1:], "direction": "DESC"})
                    else:
                        items.append({"member": entry, "direction": "ASC"})
                elif isinstance(entry, dict) and "member" not in entry and len(entry) == 1:
                    member, direction = next(iter(entry.items()))
                    items.append({"member": member, "direction": direction})
                else:
                    items.append(entry)
            return items
        return value
