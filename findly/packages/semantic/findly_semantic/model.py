import re
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator


class _CaseInsensitiveEnum(str, Enum):
    @classmethod
    def _missing_(cls, value: object) -> Any:
        if isinstance(value, str):
            normalized = value.strip().upper()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class DataSourceLocation(_CaseInsensitiveEnum):
    UNKNOWN = "UNKNOWN"
    SEMANTIC_LAYER = "SEMANTIC_LAYER"
    GA4 = "GA4"
    FB_ADS = "FB_ADS"


class DateGranularity(_CaseInsensitiveEnum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    QUARTER = "QUARTER"
    YEAR = "YEAR"

    @property
    def rank(self) -> int:
        return _GRANULARITY_ORDER.index(self)

    @property
    def nominal_days(self) -> int:
        return _NOMINAL_DAYS[self]


_GRANULARITY_ORDER = [
    DateGranularity.DAY,
    DateGranularity.WEEK,
    DateGranularity.MONTH,
    DateGranularity.QUARTER,
    DateGranularity.YEAR,
]
_NOMINAL_DAYS = {
    DateGranularity.DAY: 1,
    DateGranularity.WEEK: 7,
    DateGranularity.MONTH: 30,
    DateGranularity.QUARTER: 91,
    DateGranularity.YEAR: 365,
}


class Aggregation(_CaseInsensitiveEnum):
    SUM = "SUM"
    SUM_BOOLEAN = "SUM_BOOLEAN"
    COUNT_DISTINCT = "COUNT_DISTINCT"
    MIN = "MIN"
    MAX = "MAX"
    AVERAGE = "AVERAGE"
    MEDIAN = "MEDIAN"


class DimensionType(_CaseInsensitiveEnum):
    # Slices such as product type, colour or region.
    CATEGORICAL = "CATEGORICAL"
    # Aggregation axis at a day/week/month/quarter/year grain.
    TIME = "TIME"
    FB_ADS_FIELD = "FB_ADS_FIELD"
    FB_ADS_BREAKDOWN = "FB_ADS_BREAKDOWN"
    FB_ADS_ACTION_BREAKDOWN = "FB_ADS_ACTION_BREAKDOWN"
    FB_ADS_SUMMARY_ACTION_BREAKDOWN = "FB_ADS_SUMMARY_ACTION_BREAKDOWN"

    @property
    def is_fb_ads(self) -> bool:
        return self.value.startswith("FB_ADS_")


class MetricType(_CaseInsensitiveEnum):
    MEASURE_PROXY = "MEASURE_PROXY"
    CUMULATIVE = "CUMULATIVE"
    RATIO = "RATIO"
    DERIVED = "DERIVED"
    SQL_EXPRESSION = "SQL_EXPRESSION"


class MetricValueType(_CaseInsensitiveEnum):
    UNKNOWN = "UNKNOWN"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    SECONDS = "SECONDS"
    MILLISECONDS = "MILLISECONDS"
    MINUTES = "MINUTES"
    HOURS = "HOURS"
    STANDARD = "STANDARD"
    CURRENCY = "CURRENCY"
    FEET = "FEET"
    MILES = "MILES"
    METERS = "METERS"
    KILOMETERS = "KILOMETERS"
    STRING = "STRING"
    NUMERIC_STRING = "NUMERIC_STRING"
    LIST_ADS_ACTION_STATS = "LIST_ADS_ACTION_STATS"
    LIST_ADS_INSIGHTS_DDA_RESULT = "LIST_ADS_INSIGHTS_DDA_RESULT"
    LIST_ADS_HISTOGRAM_STATS = "LIST_ADS_HISTOGRAM_STATS"


class _Definition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class DatasourceMetadata(_Definition):
    location: DataSourceLocation = DataSourceLocation.UNKNOWN
    property_id: Optional[str] = None
    property_name: Optional[str] = None


class Measure(_Definition):
    name: str
    expr: str
    aggregation: Aggregation = Aggregation.SUM
    description: Optional[str] = None
    value_type: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_expr(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("expr"):
            return {**data, "expr": data.get("name")}
        return data


class DataSource(_Definition):
    name: str
    table: str
    description: Optional[str] = None
    metadata: DatasourceMetadata = Field(default_factory=DatasourceMetadata)
    measures: Tuple[Measure, ...] = ()

    @model_validator(mode="after")
    def _unique_measures(self) -> "DataSource":
        seen: set[str] = set()
        for measure in self.measures:
            if measure.name in seen:
                raise ValueError(f"Duplicate measure '{measure.name}' in data source '{self.name}'.")
            seen.add(measure.name)
        return self

    def get_measure(self, name: str) -> Optional[Measure]:
        for measure in self.measures:
            if measure.name == name:
                return measure
        return None


class DimensionTypeParams(_Definition):
    time_granularity: DateGranularity = DateGranularity.DAY
    is_primary: bool = False


class Dimension(_Definition):
    name: str
    expr: str
    type: DimensionType = DimensionType.CATEGORICAL
    type_params: Optional[DimensionTypeParams] = None
    description: Optional[str] = None
    display_name: Optional[str] = None
    value_type: Optional[str] = None
    # Advisory sample only, never used for validation.
    top_n_values: Tuple[str, ...] = ()
    data_source_names: Tuple[str, ...]

    @model_validator(mode="before")
    @classmethod
    def _default_expr(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("expr"):
            return {**data, "expr": data.get("name")}
        return data

    @model_validator(mode="after")
    def _check_type_params(self) -> "Dimension":
        if not self.data_source_names:
            raise ValueError(f"Dimension '{self.name}' must belong to at least one data source.")
        if self.type == DimensionType.TIME and self.type_params is None:
            raise ValueError(f"Time dimension '{self.name}' requires type_params.")
        if self.type != DimensionType.TIME and self.type_params is not None:
            raise ValueError(f"Dimension '{self.name}' is not a time dimension but defines type_params.")
        return self

    @property
    def is_time(self) -> bool:
        return self.type == DimensionType.TIME

    @property
    def is_primary_time(self) -> bool:
        return self.type_params is not None and self.type_params.is_primary

    @property
    def granularity(self) -> Optional[DateGranularity]:
        return self.type_params.time_granularity if self.type_params else None


_WINDOW_RE = re.compile(r"^\s*(\d+)\s+(day|week|month|quarter|year)s?\s*$", re.I)


class AllTime(_Definition):
    kind: Literal["all_time"] = "all_time"


class RollingWindow(_Definition):
    kind: Literal["window"] = "window"
    count: PositiveInt
    unit: DateGranularity

    @classmethod
    def parse(cls, text: str) -> "RollingWindow":
        match = _WINDOW_RE.match(text or "")
        if not match:
            raise ValueError(f"Unsupported cumulative window '{text}'. Expected '<n> <day|week|month|quarter|year>'.")
        count, unit = match.groups()
        return cls(count=int(count), unit=DateGranularity(unit))

    def __str__(self) -> str:
        return f"{self.count} {self.unit.value.lower()}"


class GrainToDate(_Definition):
    kind: Literal["grain_to_date"] = "grain_to_date"
    grain: DateGranularity


CumulativePolicy = Annotated[Union[AllTime, RollingWindow, GrainToDate], Field(discriminator="kind")]


class _MetricBase(_Definition):
    id: str = ""
    name: str
    description: Optional[str] = None
    display_name: Optional[str] = None
    view_id_of_table: Optional[str] = None
    table_name: Optional[str] = None
    value_type: MetricValueType = MetricValueType.UNKNOWN
    is_numeric: bool = True

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            return {**data, "id": data.get("name") or ""}
        return data


def _single_measure(data: Any, metric_kind: str) -> Any:
    if not isinstance(data, dict) or data.get("measure"):
        return data
    measures = data.get("measures") or []
    if len(measures) != 1:
        raise ValueError(
            f"{metric_kind} metric '{data.get('name')}' must reference exactly one measure, got {len(measures)}."
        )
    payload = {key: value for key, value in data.items() if key != "measures"}
    payload["measure"] = measures[0]
    return payload


class MeasureProxyMetric(_MetricBase):
    type: Literal[MetricType.MEASURE_PROXY] = MetricType.MEASURE_PROXY
    measure: str
    constraint: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_measures(cls, data: Any) -> Any:
        data = _single_measure(data, "Measure proxy")
        if isinstance(data, dict):
            # Proxies ignore any expression they were declared with.
            data = {key: value for key, value in data.items() if key != "expression"}
        return data


class RatioMetric(_MetricBase):
    type: Literal[MetricType.RATIO] = MetricType.RATIO
    numerator: str
    denominator: str
    constraint: Optional[str] = None

    @model_validator(mode="after")
    def _distinct_terms(self) -> "RatioMetric":
        if self.numerator == self.denominator:
            raise ValueError(f"Ratio metric '{self.name}' uses '{self.numerator}' as both numerator and denominator.")
        return self


class CumulativeMetric(_MetricBase):
    type: Literal[MetricType.CUMULATIVE] = MetricType.CUMULATIVE
    measure: str
    policy: CumulativePolicy = Field(default_factory=AllTime)

    @model_validator(mode="before")
    @classmethod
    def _fold_policy(cls, data: Any) -> Any:
        data = _single_measure(data, "Cumulative")
        if not isinstance(data, dict) or "policy" in data:
            return data
        window = data.get("window")
        grain_to_date = data.get("grain_to_date")
        if window and grain_to_date:
            raise ValueError(f"Cumulative metric '{data.get('name')}' cannot set both window and grain_to_date.")
        payload = {key: value for key, value in data.items() if key not in {"window", "grain_to_date"}}
        if window:
            payload["policy"] = RollingWindow.parse(str(window))
        elif grain_to_date:
            payload["policy"] = GrainToDate(grain=DateGranularity(str(grain_to_date)))
        return payload


class ExpressionMetric(_MetricBase):
    type: Literal[MetricType.DERIVED, MetricType.SQL_EXPRESSION] = MetricType.SQL_EXPRESSION
    expression: str
    measures: Tuple[str, ...] = ()

    @field_validator("expression")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Expression metrics require a non-empty expression.")
        return value.strip()


Metric = Annotated[
    Union[MeasureProxyMetric, RatioMetric, CumulativeMetric, ExpressionMetric],
    Field(discriminator="type"),
]


class DefinitionBatch(BaseModel):
    """A complete set of definitions handed over by the loading collaborator."""

    data_sources: List[DataSource] = Field(default_factory=list)
    dimensions: List[Dimension] = Field(default_factory=list)
    metrics: List[Metric] = Field(default_factory=list)
