"""Unlock criteria as closed tagged variants.

Badge and challenge definitions store criteria as JSON. They are parsed
here into pydantic models keyed on ``type``; anything that does not parse
becomes UnknownCriteria, which never matches.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sportxp.exceptions import InvalidCriteriaError

logger = logging.getLogger(__name__)

_ACTIVITY_TYPE = AliasChoices("activity_type", "activityType")


class _Criteria(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# ---------------------------------------------------------------------------
# Badge criteria
# ---------------------------------------------------------------------------


class ActivityCountCriteria(_Criteria):
    type: Literal["activity_count"]
    activity_type: str | None = Field(default=None, validation_alias=_ACTIVITY_TYPE)
    count: int = Field(ge=0)


class ActivityCreationCountCriteria(_Criteria):
    """``host_events`` is an alias of ``activity_creation_count``."""

    type: Literal["activity_creation_count", "host_events"]
    count: int = Field(ge=0)


class DistanceTotalCriteria(_Criteria):
    type: Literal["distance_total"]
    activity_type: str | None = Field(default=None, validation_alias=_ACTIVITY_TYPE)
    km: float = Field(ge=0)


class DurationTotalCriteria(_Criteria):
    type: Literal["duration_total"]
    activity_type: str | None = Field(default=None, validation_alias=_ACTIVITY_TYPE)
    minutes: int = Field(ge=0)


class StreakDaysCriteria(_Criteria):
    type: Literal["streak_days"]
    days: int = Field(ge=0)


class SocialConnectionsCriteria(_Criteria):
    """No social graph behind it; always evaluates false."""

    type: Literal["social_connections"]
    count: int = Field(default=0, ge=0)


class CombinedCriteria(_Criteria):
    """Logical AND over nested criteria."""

    type: Literal["combined"]
    criteria: list[BadgeCriteria] = Field(default_factory=list)


class UnknownCriteria(_Criteria):
    type: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


BadgeCriteria = Annotated[
    Union[
        ActivityCountCriteria,
        ActivityCreationCountCriteria,
        DistanceTotalCriteria,
        DurationTotalCriteria,
        StreakDaysCriteria,
        SocialConnectionsCriteria,
        CombinedCriteria,
    ],
    Field(discriminator="type"),
]

CombinedCriteria.model_rebuild()

_badge_criteria_adapter: TypeAdapter[BadgeCriteria] = TypeAdapter(BadgeCriteria)

AnyBadgeCriteria = Union[
    ActivityCountCriteria,
    ActivityCreationCountCriteria,
    DistanceTotalCriteria,
    DurationTotalCriteria,
    StreakDaysCriteria,
    SocialConnectionsCriteria,
    CombinedCriteria,
    UnknownCriteria,
]


def parse_badge_criteria(raw: Any) -> AnyBadgeCriteria:
    """Parse stored criteria; never raises."""
    if not isinstance(raw, dict):
        return UnknownCriteria(raw={"value": raw}, error="criteria is not an object")
    try:
        return _badge_criteria_adapter.validate_python(raw)
    except ValidationError as exc:
        return UnknownCriteria(type=raw.get("type"), raw=raw, error=str(exc.errors()[0]["msg"]))


def parse_badge_criteria_strict(raw: Any) -> AnyBadgeCriteria:
    """Parse stored criteria, raising InvalidCriteriaError instead of falling back."""
    criteria = parse_badge_criteria(raw)
    if isinstance(criteria, UnknownCriteria):
        raise InvalidCriteriaError(raw, criteria.error or "unknown criteria type")
    return criteria


# ---------------------------------------------------------------------------
# Trigger relevance
# ---------------------------------------------------------------------------

TRIGGER_ACTIVITY_CREATED = "activity_created"
TRIGGER_ACTIVITY_COMPLETE = "activity_complete"
TRIGGER_STREAK = "streak"

_TRIGGER_CRITERIA: dict[str, frozenset[str]] = {
    TRIGGER_ACTIVITY_CREATED: frozenset({"activity_creation_count", "host_events"}),
    TRIGGER_ACTIVITY_COMPLETE: frozenset(
        {"activity_count", "distance_total", "duration_total", "streak_days", "combined"}
    ),
    TRIGGER_STREAK: frozenset({"streak_days", "combined"}),
}


def relevant_criteria_types(trigger_type: str) -> frozenset[str] | None:
    """Criteria tags a trigger can change. None means every badge is relevant."""
    return _TRIGGER_CRITERIA.get(trigger_type)


def is_relevant(trigger_type: str, criteria_type: str | None) -> bool:
    relevant = relevant_criteria_types(trigger_type)
    return relevant is None or criteria_type in relevant


# ---------------------------------------------------------------------------
# Challenge criteria
# ---------------------------------------------------------------------------

PERIOD_METRICS = frozenset({"activities_in_period", "distance_in_period", "duration_in_period"})
TOTAL_METRICS = frozenset({"activity_count", "distance_total", "duration_total"})
CHALLENGE_METRICS = PERIOD_METRICS | TOTAL_METRICS | {"sport_specific", "sport_variety", "social_connections"}

Period = Literal["day", "week", "weekend", "month", "any"]


class ChallengeCriteria(_Criteria):
    """Metric + optional period window + optional activity filter.

    ``action`` selects which activity action feeds the metric: completions
    (default) or creations.
    """

    type: str
    period: Period | None = None
    activity_type: str | None = Field(default=None, validation_alias=_ACTIVITY_TYPE)
    activity_types: list[str] | None = None
    sport_type: str | None = Field(default=None, validation_alias=AliasChoices("sport_type", "sportType"))
    action: Literal["complete", "create"] = "complete"
    count: float | None = None
    km: float | None = None
    minutes: float | None = None
    unique_sports: int | None = None

    @property
    def is_known(self) -> bool:
        return self.type in CHALLENGE_METRICS

    def allowed_activity_types(self) -> set[str] | None:
        """None means any sport."""
        types: set[str] = set()
        if self.activity_type:
            types.add(self.activity_type)
        if self.activity_types:
            types.update(self.activity_types)
        if not types or "any" in types:
            return None
        return types


def parse_challenge_criteria(raw: Any) -> ChallengeCriteria | None:
    """Parse challenge criteria; None when the payload is unusable."""
    if not isinstance(raw, dict):
        return None
    try:
        return ChallengeCriteria.model_validate(raw)
    except ValidationError:
        logger.warning("Invalid challenge criteria: %s", raw)
        return None
