"""
Achievement catalog schemas

Criteria descriptors are a tagged union on `kind`:
- threshold: {metric, operator, value, triggers}, evaluated in memory
- custom: {rule, params}, resolved through the criteria registry
- opaque: anything this version does not understand; stored, never satisfied
"""
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from typing import Annotated, Optional, Dict, Any, List, Literal, Union
import logging

from progression.schemas import ACHIEVEMENT_TRIGGERS

logger = logging.getLogger(__name__)

ALLOWED_METRICS = {
    'total_xp', 'current_streak', 'longest_streak',
    'lessons_completed', 'perfect_exercises',
}

ALLOWED_OPERATORS = {'>=', '>', '==', '<=', '<'}


class ThresholdCriteria(BaseModel):
    """
    Metric comparison.

    Examples:
    - {"kind": "threshold", "metric": "total_xp", "operator": ">=", "value": 1000}
    - {"kind": "threshold", "metric": "current_streak", "value": 14,
       "triggers": ["streak_updated", "lesson_completed"]}
    """
    kind: Literal["threshold"] = "threshold"
    metric: str
    operator: str = Field(default=">=")
    value: int = Field(..., gt=0, description="Required value (must be > 0)")
    triggers: List[str] = Field(default_factory=list, description="Empty means any trigger")

    @field_validator('metric')
    @classmethod
    def validate_metric(cls, v: str) -> str:
        if v not in ALLOWED_METRICS:
            raise ValueError(f"metric must be one of {ALLOWED_METRICS}, got: {v}")
        return v

    @field_validator('operator')
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if v not in ALLOWED_OPERATORS:
            raise ValueError(f"operator must be one of {ALLOWED_OPERATORS}, got: {v}")
        return v

    @field_validator('triggers')
    @classmethod
    def validate_triggers(cls, v: List[str]) -> List[str]:
        unknown = set(v) - set(ACHIEVEMENT_TRIGGERS)
        if unknown:
            raise ValueError(f"unknown triggers: {unknown}")
        return v


class CustomCriteria(BaseModel):
    kind: Literal["custom"] = "custom"
    rule: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class OpaqueCriteria(BaseModel):
    kind: Literal["opaque"] = "opaque"
    payload: Dict[str, Any] = Field(default_factory=dict)


CriteriaDescriptor = Annotated[
    Union[ThresholdCriteria, CustomCriteria, OpaqueCriteria],
    Field(discriminator='kind')
]

_criteria_adapter = TypeAdapter(CriteriaDescriptor)


def parse_criteria(raw: Optional[Dict[str, Any]]) -> Optional[CriteriaDescriptor]:
    """
    Parse a stored criteria payload.

    Unknown or malformed payloads are kept as OpaqueCriteria so newer
    catalog rows never break older readers.
    """
    if raw is None:
        return None
    try:
        return _criteria_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Unrecognized achievement criteria kept as opaque: {e.error_count()} error(s)")
        return OpaqueCriteria(payload=dict(raw))


class AchievementDefinition(BaseModel):
    """Static catalog entry"""
    id: str
    code: str = Field(..., min_length=1, pattern=r"^[a-z0-9_]+$")
    name: str
    description: str = ""
    icon: Optional[str] = None
    criteria: Optional[CriteriaDescriptor] = None
    xp_reward: int = Field(default=0, ge=0)
    is_active: bool = True
