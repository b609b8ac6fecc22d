"""
Static, deterministic rule table.

Rules are loaded once at startup into an immutable RuleTable and passed by
reference to the rule engine. Thresholds are configuration: a JSON file can
override the defaults below, but nothing mutates the table at runtime.
"""

import json
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.domain.models import RuleCategory, Severity, SubjectClass


class RuleKind(str, Enum):
    """Which evaluator decides the rule."""

    FEEDING_DELAY = "feeding_delay"
    FREQUENT_FEEDING = "frequent_feeding"
    LOW_DAILY_TOTAL = "low_daily_total"
    SLEEP_DURATION = "sleep_duration"
    WEIGHT_STALENESS = "weight_staleness"
    MEDICATION_MISSED = "medication_missed"


class AppliesTo(str, Enum):
    ALL = "all"
    PREMATURE_ONLY = "premature_only"
    FULL_TERM_ONLY = "full_term_only"

    def matches(self, subject_class: SubjectClass) -> bool:
        if self is AppliesTo.ALL:
            return True
        if self is AppliesTo.PREMATURE_ONLY:
            return subject_class is SubjectClass.PREMATURE
        return subject_class is SubjectClass.FULL_TERM


class Rule(BaseModel):
    """A single monitoring rule. Immutable."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(min_length=1)
    category: RuleCategory
    kind: RuleKind
    applies_to: AppliesTo = AppliesTo.ALL
    threshold_value: float = Field(gt=0.0)
    critical_threshold: float | None = Field(default=None, gt=0.0)
    unit: str
    severity: Severity
    name: str
    description: str

    @model_validator(mode="after")
    def critical_below_threshold(self) -> "Rule":
        if self.critical_threshold is not None and self.critical_threshold >= self.threshold_value:
            raise ValueError("critical_threshold must be below threshold_value")
        return self


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(
        rule_id="feeding_delay",
        category=RuleCategory.FEEDING,
        kind=RuleKind.FEEDING_DELAY,
        applies_to=AppliesTo.FULL_TERM_ONLY,
        threshold_value=4,
        unit="hours",
        severity=Severity.HIGH,
        name="Feeding Delay Alert",
        description="Subject has not been fed for more than the recommended interval",
    ),
    Rule(
        rule_id="feeding_delay_premature",
        category=RuleCategory.FEEDING,
        kind=RuleKind.FEEDING_DELAY,
        applies_to=AppliesTo.PREMATURE_ONLY,
        threshold_value=3,
        unit="hours",
        severity=Severity.HIGH,
        name="Feeding Delay Alert (Premature)",
        description="Premature subject has not been fed for more than 3 hours",
    ),
    Rule(
        rule_id="frequent_feeding",
        category=RuleCategory.FEEDING,
        kind=RuleKind.FREQUENT_FEEDING,
        threshold_value=1,
        unit="hours",
        severity=Severity.MEDIUM,
        name="Frequent Feeding Alert",
        description="Feeds are closer together than recommended (less than 1 hour apart)",
    ),
    Rule(
        rule_id="low_daily_feeding_total",
        category=RuleCategory.FEEDING,
        kind=RuleKind.LOW_DAILY_TOTAL,
        threshold_value=150,
        critical_threshold=75,
        unit="ml",
        severity=Severity.MEDIUM,
        name="Low Daily Feeding Total Alert",
        description="Total feeding today is below the recommended minimum (150ml per day)",
    ),
    Rule(
        rule_id="low_sleep_duration",
        category=RuleCategory.SLEEP,
        kind=RuleKind.SLEEP_DURATION,
        threshold_value=10,
        unit="hours",
        severity=Severity.LOW,
        name="Low Sleep Duration Alert",
        description="Total logged sleep today is below the recommended minimum (10 hours)",
    ),
    Rule(
        rule_id="weight_not_updated",
        category=RuleCategory.WEIGHT,
        kind=RuleKind.WEIGHT_STALENESS,
        threshold_value=7,
        unit="days",
        severity=Severity.MEDIUM,
        name="Weight Tracking Reminder",
        description="Weight has not been updated in the last 7 days",
    ),
    Rule(
        rule_id="medication_missed",
        category=RuleCategory.MEDICATION,
        kind=RuleKind.MEDICATION_MISSED,
        threshold_value=1,
        unit="hours",
        severity=Severity.MEDIUM,
        name="Medication Adherence Alert",
        description="A scheduled dose was not logged as given",
    ),
)


class RuleTable:
    """Read-only view over the deployed rules."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        ordered = tuple(rules)
        by_id: dict[str, Rule] = {}
        for rule in ordered:
            if rule.rule_id in by_id:
                raise ValueError(f"Duplicate rule id: {rule.rule_id}")
            by_id[rule.rule_id] = rule
        self._rules = ordered
        self._by_id = MappingProxyType(by_id)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def get(self, rule_id: str) -> Rule | None:
        return self._by_id.get(rule_id)

    def for_subject_class(self, subject_class: SubjectClass) -> tuple[Rule, ...]:
        return tuple(r for r in self._rules if r.applies_to.matches(subject_class))

    def by_category(self, category: RuleCategory) -> tuple[Rule, ...]:
        return tuple(r for r in self._rules if r.category is category)


def load_rule_table(path: str | Path | None = None) -> RuleTable:
    """
    Build the rule table.

    Without a path the built-in defaults are used. A JSON file may carry a
    list of rule objects; entries replace defaults with the same rule_id and
    new ids are appended.
    """
    if path is None:
        return RuleTable(DEFAULT_RULES)

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Rules file {path} must contain a JSON list")

    try:
        overrides = [Rule.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ValueError(f"Invalid rule in {path}: {e}") from e

    merged = {r.rule_id: r for r in DEFAULT_RULES}
    for rule in overrides:
        merged[rule.rule_id] = rule
    return RuleTable(merged.values())
