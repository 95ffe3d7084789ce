from types import MappingProxyType
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, FiniteFloat, field_validator, model_validator
from pydantic.alias_generators import to_camel


# Cells must round-trip through JSON, so Infinity and NaN are rejected.
RawValue = Union[int, FiniteFloat, str, None]
Number = Union[int, float]

NUMERIC = "NUMERIC"
DATE = "DATE"
STRING = "STRING"

# Variable formats the host can declare, folded onto the three core types.
_NUMERIC_FORMATS = (
    "NUMERIC", "COMMA", "DOT", "SCIENTIFIC", "DOLLAR", "PERCENT",
    "CCA", "CCB", "CCC", "CCD", "CCE", "RESTRICTED_NUMERIC",
)
_DATE_FORMATS = (
    "DATE", "ADATE", "EDATE", "SDATE", "JDATE", "QYR", "MOYR", "WKYR",
    "DATETIME", "TIME", "DTIME", "WKDAY", "MONTH",
)
CORE_TYPES = MappingProxyType({
    **{f: NUMERIC for f in _NUMERIC_FORMATS},
    **{f: DATE for f in _DATE_FORMATS},
    "STRING": STRING,
})


class WireModel(BaseModel):
    """Base for every message shape: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# -----------------------------
# Variable metadata
# -----------------------------
class MissingRange(WireModel):
    min: float
    max: float

    @model_validator(mode="after")
    def _ordered(self) -> "MissingRange":
        if self.min > self.max:
            raise ValueError(f"missing range min ({self.min}) is greater than max ({self.max})")
        return self


class MissingSpec(WireModel):
    discrete: Optional[List[RawValue]] = None
    range: Optional[MissingRange] = None


class ValueLabel(WireModel):
    value: RawValue
    label: str


class VariableMeta(WireModel):
    name: str
    label: str = ""
    type: Literal["NUMERIC", "DATE", "STRING"] = NUMERIC
    decimals: int = Field(default=0, ge=0)
    missing: Optional[MissingSpec] = None
    value_labels: List[ValueLabel] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _core_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().upper()
            return CORE_TYPES.get(key, key)
        return v

    @property
    def display_label(self) -> str:
        return self.label or self.name


# -----------------------------
# Frequency engine
# -----------------------------
class VariableData(WireModel):
    variable: VariableMeta
    data: List[RawValue]
    # Case weights by position; unusable weights drop the case.
    weights: Optional[List[Any]] = None


class FrequencyRequest(WireModel):
    variable_data: List[VariableData]
    percentile_method: Literal["waverage", "haverage"] = "waverage"


class Percentile(WireModel):
    percent: int
    value: Optional[float] = None


class FrequencyRow(WireModel):
    label: str
    value: RawValue = None
    frequency: Number
    percent_of_total: float
    percent_of_valid: Optional[float] = None
    cumulative_percent: Optional[float] = None


class VariableFrequencyResult(WireModel):
    variable_name: str
    variable_label: str
    valid_rows: List[FrequencyRow]
    missing_rows: List[FrequencyRow]
    total_n: Number
    valid_n: Number
    missing_n: Number
    mode: List[RawValue] = Field(default_factory=list)
    percentiles: Optional[List[Percentile]] = None


# -----------------------------
# Duplicate-case engine
# -----------------------------
class ColumnRef(WireModel):
    column_index: int = Field(ge=0)
    name: Optional[str] = None


class DuplicateRequest(WireModel):
    data: List[List[RawValue]]
    matching_variables: List[ColumnRef] = Field(min_length=1)
    sorting_variables: List[ColumnRef] = Field(default_factory=list)
    sort_order: Literal["ascending", "descending"] = "ascending"
    primary_case_indicator: Literal["first", "last"] = "last"
    primary_name: str = "PrimaryLast"
    sequential_count: bool = False
    sequential_name: str = "MatchSequence"
    move_matching_to_top: bool = False
    display_frequencies: bool = False


class DuplicateGroup(WireModel):
    key: List[str]
    members: List[int]


class DuplicateResult(WireModel):
    reordered_data: List[List[RawValue]]
    primary_values: List[int]
    sequence_values: Optional[List[int]] = None
    primary_frequencies: List[FrequencyRow]
    sequence_frequencies: Optional[List[FrequencyRow]] = None
    total_duplicates: int
    total_groups: int
    groups: List[DuplicateGroup]
