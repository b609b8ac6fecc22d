"""
Tests for the rule table in `core/domain/rules.py`.

Covers:
- Default table contents and subject-class filtering
- Immutability of rules
- Validation of thresholds
- JSON overrides merged by rule id
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from core.domain.models import RuleCategory, Severity, SubjectClass
from core.domain.rules import DEFAULT_RULES, AppliesTo, Rule, RuleKind, RuleTable, load_rule_table


class TestDefaultTable:
    def test_rule_ids_are_unique(self) -> None:
        table = load_rule_table()
        assert len(table) == len(DEFAULT_RULES)
        assert len({r.rule_id for r in table}) == len(table)

    def test_premature_subjects_get_stricter_feeding_delay(self) -> None:
        table = load_rule_table()
        premature = {r.rule_id for r in table.for_subject_class(SubjectClass.PREMATURE)}
        full_term = {r.rule_id for r in table.for_subject_class(SubjectClass.FULL_TERM)}

        assert "feeding_delay_premature" in premature
        assert "feeding_delay" not in premature
        assert "feeding_delay" in full_term
        assert "feeding_delay_premature" not in full_term
        assert table.get("feeding_delay_premature").threshold_value < table.get("feeding_delay").threshold_value

    def test_low_daily_total_has_critical_threshold(self) -> None:
        rule = load_rule_table().get("low_daily_feeding_total")
        assert rule is not None
        assert rule.threshold_value == 150
        assert rule.critical_threshold == 75
        assert rule.severity is Severity.MEDIUM

    def test_by_category(self) -> None:
        sleep_rules = load_rule_table().by_category(RuleCategory.SLEEP)
        assert [r.rule_id for r in sleep_rules] == ["low_sleep_duration"]


class TestRuleValidation:
    def test_rules_are_frozen(self) -> None:
        rule = DEFAULT_RULES[0]
        with pytest.raises(ValidationError):
            rule.threshold_value = 99  # type: ignore[misc]

    def test_critical_must_be_below_threshold(self) -> None:
        with pytest.raises(ValidationError):
            Rule(
                rule_id="bad",
                category=RuleCategory.FEEDING,
                kind=RuleKind.LOW_DAILY_TOTAL,
                threshold_value=100,
                critical_threshold=120,
                unit="ml",
                severity=Severity.MEDIUM,
                name="Bad",
                description="critical above threshold",
            )

    def test_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Rule(
                rule_id="zero",
                category=RuleCategory.SLEEP,
                kind=RuleKind.SLEEP_DURATION,
                threshold_value=0,
                unit="hours",
                severity=Severity.LOW,
                name="Zero",
                description="",
            )

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate rule id"):
            RuleTable([DEFAULT_RULES[0], DEFAULT_RULES[0]])

    @pytest.mark.parametrize(
        "applies_to,subject_class,expected",
        [
            (AppliesTo.ALL, SubjectClass.PREMATURE, True),
            (AppliesTo.PREMATURE_ONLY, SubjectClass.FULL_TERM, False),
            (AppliesTo.FULL_TERM_ONLY, SubjectClass.FULL_TERM, True),
        ],
    )
    def test_applies_to_matches(
        self, applies_to: AppliesTo, subject_class: SubjectClass, expected: bool
    ) -> None:
        assert applies_to.matches(subject_class) is expected


class TestRuleOverrides:
    def test_override_replaces_default_and_appends_new(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(
            json.dumps(
                [
                    {
                        "rule_id": "low_sleep_duration",
                        "category": "sleep",
                        "kind": "sleep_duration",
                        "threshold_value": 12,
                        "unit": "hours",
                        "severity": "MEDIUM",
                        "name": "Low Sleep",
                        "description": "Less than 12 hours of sleep today",
                    },
                    {
                        "rule_id": "weight_not_updated_strict",
                        "category": "weight",
                        "kind": "weight_staleness",
                        "applies_to": "premature_only",
                        "threshold_value": 3,
                        "unit": "days",
                        "severity": "HIGH",
                        "name": "Weight (premature)",
                        "description": "Premature subjects are weighed every 3 days",
                    },
                ]
            )
        )

        table = load_rule_table(rules_file)

        assert table.get("low_sleep_duration").threshold_value == 12
        assert table.get("weight_not_updated_strict").applies_to is AppliesTo.PREMATURE_ONLY
        assert len(table) == len(DEFAULT_RULES) + 1

    def test_invalid_override_raises_value_error(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(json.dumps([{"rule_id": "broken"}]))
        with pytest.raises(ValueError, match="Invalid rule"):
            load_rule_table(rules_file)

    def test_non_list_file_rejected(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(json.dumps({"rules": []}))
        with pytest.raises(ValueError, match="JSON list"):
            load_rule_table(rules_file)
