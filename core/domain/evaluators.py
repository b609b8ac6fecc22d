"""
Pure rule evaluators: the "decide" half of the rule engine.

Each evaluator maps a rule plus a small, already-fetched window of events to a
RuleDecision. Nothing here touches the store, the clock or a channel, which
keeps every decision a plain, auditable comparison against a threshold.

An empty decision (no alert, nothing to resolve) means "leave state as it is".
That is how missing data suppresses alerting for subjects that have not been
onboarded for a category yet.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from typing import Any

from pydantic import BaseModel, Field

from core.domain.models import EventLog, Reminder, ReminderStatus, ReminderType, Severity
from core.domain.rules import Rule, RuleKind

NO_SLEEP_LOG_TODAY = "no_sleep_log_today"
LOW_SLEEP_REMINDER = "low_sleep_reminder"

# A dose logged shortly before its scheduled time still counts as given.
MEDICATION_EARLY_TOLERANCE = timedelta(minutes=30)
MEDICATION_LOOKBACK = timedelta(hours=24)


class AlertDraft(BaseModel):
    severity: Severity
    title: str
    description: str
    message: str
    trigger_data: dict[str, Any] = Field(default_factory=dict)


class ReminderDraft(BaseModel):
    rule_id: str
    type: ReminderType
    message: str
    trigger_data: dict[str, Any] = Field(default_factory=dict)


class RuleDecision(BaseModel):
    """What should happen to the alert/reminders of one rule."""

    rule: Rule
    alert: AlertDraft | None = None
    resolve_alert: bool = False
    reminders: list[ReminderDraft] = Field(default_factory=list)
    resolve_reminder_rule_ids: list[str] = Field(default_factory=list)

    @property
    def violated(self) -> bool:
        return self.alert is not None

    @property
    def is_noop(self) -> bool:
        return (
            self.alert is None
            and not self.resolve_alert
            and not self.reminders
            and not self.resolve_reminder_rule_ids
        )


@dataclass
class EvaluationInputs:
    """
    Fetched data for one evaluation. Only the fields a category needs are filled.

    recent_feedings is newest first.
    """

    now: datetime
    day_start: datetime
    day_end: datetime
    recent_feedings: Sequence[EventLog] = field(default_factory=list)
    todays_feedings: Sequence[EventLog] = field(default_factory=list)
    todays_sleeps: Sequence[EventLog] = field(default_factory=list)
    has_any_sleep_log: bool = False
    last_weight_update: datetime | None = None
    has_confirmed_schedule: bool = False
    medicine_reminders: Sequence[Reminder] = field(default_factory=list)
    medication_events: Sequence[EventLog] = field(default_factory=list)


def day_window(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Local calendar day containing `now`, as [start, end) in that timezone."""
    local = now.astimezone(tz)
    start = datetime.combine(local.date(), time.min, tzinfo=tz)
    end = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def _round1(value: float) -> float:
    return round(value, 1)


def _hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def feeding_delay(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    if not inputs.recent_feedings:
        return RuleDecision(rule=rule)

    last = inputs.recent_feedings[0]
    hours = _round1(_hours_between(inputs.now, last.timestamp))
    reminder_id = f"{rule.rule_id}_reminder"

    if _hours_between(inputs.now, last.timestamp) <= rule.threshold_value:
        return RuleDecision(rule=rule, resolve_alert=True, resolve_reminder_rule_ids=[reminder_id])

    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=rule.severity,
            title=rule.name,
            description=rule.description,
            message=(
                f"Feeding delayed. Last feeding was {hours} hours ago "
                f"(threshold: {rule.threshold_value:g}h)."
            ),
            trigger_data={
                "checked": "hours_since_last_feed",
                "value": hours,
                "threshold": rule.threshold_value,
                "unit": rule.unit,
                "last_event_at": last.timestamp.isoformat(),
            },
        ),
        reminders=[
            ReminderDraft(
                rule_id=reminder_id,
                type=ReminderType.FEEDING,
                message=f"Time to feed. Last feeding was {hours} hours ago.",
                trigger_data={
                    "hours_since_last": hours,
                    "last_feed_time": last.timestamp.isoformat(),
                    "threshold_hours": rule.threshold_value,
                },
            )
        ],
    )


def frequent_feeding(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    if len(inputs.recent_feedings) < 2:
        return RuleDecision(rule=rule)

    newest, previous = inputs.recent_feedings[0], inputs.recent_feedings[1]
    gap = _hours_between(newest.timestamp, previous.timestamp)
    if gap >= rule.threshold_value:
        return RuleDecision(rule=rule, resolve_alert=True)

    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=rule.severity,
            title=rule.name,
            description=rule.description,
            message=(
                f"Feeds are {_round1(gap)} hours apart, less than the recommended "
                f"{rule.threshold_value:g} hour minimum."
            ),
            trigger_data={
                "checked": "hours_between_feeds",
                "value": _round1(gap),
                "threshold": rule.threshold_value,
                "unit": rule.unit,
            },
        ),
    )


def low_daily_total(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    total = sum(log.quantity or 0.0 for log in inputs.todays_feedings)

    # Nothing logged today: the feeding delay rule covers missing feeds.
    if total <= 0:
        return RuleDecision(rule=rule)
    if total >= rule.threshold_value:
        return RuleDecision(rule=rule, resolve_alert=True)

    is_critical = rule.critical_threshold is not None and total < rule.critical_threshold
    severity = Severity.HIGH if is_critical else Severity.MEDIUM
    percent = round(total / rule.threshold_value * 100)
    if is_critical:
        title = "Critical: Very Low Daily Feeding"
        message = (
            f"CRITICAL: Total feeding today is only {total:g}{rule.unit} "
            f"({percent}% of minimum). Feed immediately."
        )
    else:
        title = rule.name
        message = (
            f"Total feeding today is {total:g}{rule.unit} "
            f"({percent}% of {rule.threshold_value:g}{rule.unit} minimum)."
        )

    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=severity,
            title=title,
            description=rule.description,
            message=message,
            trigger_data={
                "checked": "daily_total_feeding",
                "value": total,
                "threshold": rule.threshold_value,
                "critical_threshold": rule.critical_threshold,
                "is_critical": is_critical,
                "feed_count": len(inputs.todays_feedings),
                "unit": rule.unit,
            },
        ),
    )


def sleep_duration(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    if not inputs.has_any_sleep_log:
        return RuleDecision(rule=rule)

    if not inputs.todays_sleeps:
        # Logged before, but not today yet: nudge only.
        return RuleDecision(
            rule=rule,
            resolve_alert=True,
            reminders=[
                ReminderDraft(
                    rule_id=NO_SLEEP_LOG_TODAY,
                    type=ReminderType.SLEEP,
                    message="No sleep log added today. Please track sleep.",
                    trigger_data={"total_sleep_hours": 0.0, "recommended_hours": rule.threshold_value},
                )
            ],
            resolve_reminder_rule_ids=[LOW_SLEEP_REMINDER],
        )

    total_minutes = sum(log.duration or 0.0 for log in inputs.todays_sleeps)
    total_hours = total_minutes / 60
    if total_hours >= rule.threshold_value:
        return RuleDecision(
            rule=rule,
            resolve_alert=True,
            resolve_reminder_rule_ids=[NO_SLEEP_LOG_TODAY, LOW_SLEEP_REMINDER],
        )

    hours = _round1(total_hours)
    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=rule.severity,
            title=rule.name,
            description=rule.description,
            message=(
                f"Slept less than recommended today. Total: {hours} hours "
                f"(minimum: {rule.threshold_value:g} hours)."
            ),
            trigger_data={
                "checked": "total_sleep_hours_today",
                "value": hours,
                "threshold": rule.threshold_value,
                "total_sleep_minutes": total_minutes,
                "sleep_count": len(inputs.todays_sleeps),
                "unit": rule.unit,
            },
        ),
        reminders=[
            ReminderDraft(
                rule_id=LOW_SLEEP_REMINDER,
                type=ReminderType.SLEEP,
                message=(
                    f"Sleep is below recommended. Total today: {hours} hours "
                    f"(needs {rule.threshold_value:g} hours)."
                ),
                trigger_data={
                    "total_sleep_hours": hours,
                    "recommended_hours": rule.threshold_value,
                    "sleep_count": len(inputs.todays_sleeps),
                },
            )
        ],
        resolve_reminder_rule_ids=[NO_SLEEP_LOG_TODAY],
    )


def weight_staleness(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    if inputs.last_weight_update is None:
        return RuleDecision(rule=rule)

    days = (inputs.now - inputs.last_weight_update).total_seconds() / 86400
    if days <= rule.threshold_value:
        return RuleDecision(rule=rule, resolve_alert=True)

    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=rule.severity,
            title=rule.name,
            description=rule.description,
            message=(
                f"Weight was last updated {round(days)} days ago, exceeding the recommended "
                f"interval of {rule.threshold_value:g} days."
            ),
            trigger_data={
                "checked": "days_since_weight_update",
                "value": _round1(days),
                "threshold": rule.threshold_value,
                "unit": rule.unit,
                "last_weight_update": inputs.last_weight_update.isoformat(),
            },
        ),
    )


def _dose_was_given(reminder: Reminder, events: Sequence[EventLog]) -> bool:
    earliest = reminder.scheduled_for - MEDICATION_EARLY_TOLERANCE
    for event in events:
        if not event.given or event.timestamp < earliest:
            continue
        if event.medicine_name and reminder.medicine_name:
            if event.medicine_name.casefold() != reminder.medicine_name.casefold():
                continue
        return True
    return False


def medication_missed(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    if not inputs.has_confirmed_schedule:
        return RuleDecision(rule=rule)

    grace = timedelta(hours=rule.threshold_value)
    missed = [
        r
        for r in inputs.medicine_reminders
        if r.type is ReminderType.MEDICINE
        and r.status is not ReminderStatus.DISMISSED
        and inputs.now - MEDICATION_LOOKBACK <= r.scheduled_for <= inputs.now - grace
        and not _dose_was_given(r, inputs.medication_events)
    ]
    if not missed:
        return RuleDecision(rule=rule, resolve_alert=True)

    names = sorted({r.medicine_name or "medicine" for r in missed})
    return RuleDecision(
        rule=rule,
        alert=AlertDraft(
            severity=rule.severity,
            title=rule.name,
            description=rule.description,
            message=f"{len(missed)} scheduled dose(s) not logged as given: {', '.join(names)}.",
            trigger_data={
                "checked": "missed_doses",
                "value": len(missed),
                "threshold": rule.threshold_value,
                "unit": rule.unit,
                "missed_doses": [
                    {
                        "reminder_id": r.id,
                        "medicine_name": r.medicine_name,
                        "dose_time": r.dose_time,
                        "scheduled_for": r.scheduled_for.isoformat(),
                    }
                    for r in sorted(missed, key=lambda r: r.scheduled_for)
                ],
            },
        ),
    )


EVALUATORS: dict[RuleKind, Callable[[Rule, EvaluationInputs], RuleDecision]] = {
    RuleKind.FEEDING_DELAY: feeding_delay,
    RuleKind.FREQUENT_FEEDING: frequent_feeding,
    RuleKind.LOW_DAILY_TOTAL: low_daily_total,
    RuleKind.SLEEP_DURATION: sleep_duration,
    RuleKind.WEIGHT_STALENESS: weight_staleness,
    RuleKind.MEDICATION_MISSED: medication_missed,
}


def decide(rule: Rule, inputs: EvaluationInputs) -> RuleDecision:
    return EVALUATORS[rule.kind](rule, inputs)
