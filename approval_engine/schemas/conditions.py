"""
Trigger Condition Schemas

Structured predicate shapes evaluated against an entity snapshot. Each clause
carries a ``kind`` tag so stored JSON round-trips to the right model.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

HOUR_PATTERN = r"^([0-1][0-9]|2[0-3]):00$"


class ComparisonOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"


class ThresholdOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"


class ThresholdCondition(BaseModel):
    """Numeric threshold on one field, optionally bound to a currency"""

    kind: Literal["threshold"] = "threshold"
    field: str = Field(default="amount", min_length=1, max_length=100)
    operator: ThresholdOperator
    value: float = Field(..., ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v):
        return v.upper() if v else v


class FieldCondition(BaseModel):
    """Comparison of one entity field against a literal"""

    kind: Literal["field"] = "field"
    field: str = Field(..., min_length=1, max_length=100)
    operator: ComparisonOperator
    value: Any = None

    @model_validator(mode="after")
    def check_membership_value(self):
        if self.operator in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
            if not isinstance(self.value, list):
                raise ValueError(f"operator '{self.operator.value}' requires a list value")
        return self


class TimeRange(BaseModel):
    start: str = Field(..., pattern=HOUR_PATTERN)
    end: str = Field(..., pattern=HOUR_PATTERN)

    @property
    def start_hour(self) -> int:
        return int(self.start[:2])

    @property
    def end_hour(self) -> int:
        return int(self.end[:2])


class TimeCondition(BaseModel):
    """Day-of-week (0=Sunday) and inclusive hour window"""

    kind: Literal["time"] = "time"
    day_of_week: Optional[List[int]] = None
    time_range: Optional[TimeRange] = None
    exclude_holidays: bool = False

    @field_validator("day_of_week")
    @classmethod
    def check_days(cls, v):
        if v is not None:
            for day in v:
                if day < 0 or day > 6:
                    raise ValueError("day_of_week values must be between 0 and 6")
        return v


ConditionClause = Annotated[
    Union[ThresholdCondition, FieldCondition, TimeCondition],
    Field(discriminator="kind"),
]


class TriggerConditions(BaseModel):
    """Condition groups, ANDed together"""

    threshold: Optional[ThresholdCondition] = None
    field_conditions: List[FieldCondition] = Field(default_factory=list)
    time_conditions: Optional[TimeCondition] = None

    def is_empty(self) -> bool:
        return (
            self.threshold is None
            and not self.field_conditions
            and self.time_conditions is None
        )

    def clauses(self) -> List[Union[ThresholdCondition, FieldCondition, TimeCondition]]:
        """All clauses in evaluation order"""
        result: List[Union[ThresholdCondition, FieldCondition, TimeCondition]] = []
        if self.threshold is not None:
            result.append(self.threshold)
        result.extend(self.field_conditions)
        if self.time_conditions is not None:
            result.append(self.time_conditions)
        return result


class StepConditions(BaseModel):
    """Conditions attached to a step

    ``when`` is the predicate checked by data_validation and conditional_logic
    steps. ``branch_to`` / ``else_branch_to`` name the step that follows a
    conditional_logic step; a missing else branch falls through sequentially.
    """

    when: TriggerConditions = Field(default_factory=TriggerConditions)
    branch_to: Optional[int] = Field(None, ge=1)
    else_branch_to: Optional[int] = Field(None, ge=1)

    def is_empty(self) -> bool:
        return self.when.is_empty() and self.branch_to is None


class EntitySnapshot(BaseModel):
    """Flat field map of a business entity at a point in time"""

    fields: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class EvaluationResult(BaseModel):
    matched: bool
    matched_conditions: List[ConditionClause] = Field(default_factory=list)
    failed_condition: Optional[ConditionClause] = None
