"""
Rule engine: fetch, decide, upsert, notify.

For each rule category the engine reads the smallest window of events the
category needs, asks the pure evaluators for a decision per rule, and applies
the decision through the store's conditional upserts. Notification intent
(`is_new` / `severity_escalated`) comes back from the upsert step, so the
notify step never re-derives it.

Categories are isolated from each other: a store or evaluator failure in one
category is logged and recorded in `failed_categories`, and evaluation moves
on to the next.
"""

import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, tzinfo

import structlog

from core.domain.evaluators import (
    MEDICATION_EARLY_TOLERANCE,
    MEDICATION_LOOKBACK,
    EvaluationInputs,
    RuleDecision,
    day_window,
    decide,
)
from core.domain.exceptions import SubjectNotFoundError, TransientStoreError
from core.domain.models import (
    Alert,
    AlertOutcome,
    Channel,
    EvaluationResult,
    EventType,
    Reminder,
    ReminderType,
    RuleCategory,
    Severity,
    Subject,
    utcnow,
)
from core.domain.rules import Rule, RuleTable
from core.services.dispatcher import NotificationDispatcher
from core.services.store import MonitorStore

logger = structlog.get_logger(__name__)

# Feeding rules only ever look at the two newest feeds.
RECENT_FEEDING_WINDOW = 2


def new_id() -> str:
    return uuid.uuid4().hex


class RuleEngine:
    """Evaluates the rule table for one subject at a time."""

    def __init__(
        self,
        store: MonitorStore,
        rules: RuleTable,
        dispatcher: NotificationDispatcher,
        tz: tzinfo,
        reminder_channels: Iterable[Channel] = (Channel.PUSH, Channel.SMS),
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.store = store
        self.rules = rules
        self.dispatcher = dispatcher
        self.tz = tz
        self.reminder_channels = frozenset(reminder_channels)
        self._clock = clock
        self._new_id = id_factory
        self.logger = logger.bind(component="rule_engine")

    async def evaluate(self, subject_id: str, owner_id: str) -> EvaluationResult:
        subject = await self.store.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id)

        now = self._clock()
        result = EvaluationResult()

        by_category: dict[RuleCategory, list[Rule]] = {}
        for rule in self.rules.for_subject_class(subject.subject_class):
            by_category.setdefault(rule.category, []).append(rule)

        for category, rules in by_category.items():
            try:
                inputs = await self._fetch_inputs(category, subject, now)
                for rule in rules:
                    await self._apply(decide(rule, inputs), subject, owner_id, now, result)
            except TransientStoreError as e:
                self.logger.warning(
                    "category_skipped_store_unavailable",
                    subject_id=subject_id,
                    category=category.value,
                    error=str(e),
                )
                result.failed_categories.append(category)
            except Exception as e:
                self.logger.exception(
                    "category_evaluation_failed",
                    subject_id=subject_id,
                    category=category.value,
                    error=str(e),
                )
                result.failed_categories.append(category)

        for outcome in result.alerts:
            if not outcome.should_notify:
                continue
            try:
                await self.dispatcher.send(outcome.alert)
            except Exception as e:
                self.logger.exception(
                    "alert_dispatch_failed",
                    subject_id=subject_id,
                    alert_id=outcome.alert.id,
                    error=str(e),
                )

        self.logger.info(
            "evaluation_completed",
            subject_id=subject_id,
            subject_class=subject.subject_class.value,
            alerts=len(result.alerts),
            reminders=len(result.reminders),
            failed_categories=[c.value for c in result.failed_categories],
        )
        return result

    async def _fetch_inputs(
        self, category: RuleCategory, subject: Subject, now: datetime
    ) -> EvaluationInputs:
        day_start, day_end = day_window(now, self.tz)
        inputs = EvaluationInputs(now=now, day_start=day_start, day_end=day_end)

        if category is RuleCategory.FEEDING:
            inputs.recent_feedings = await self.store.recent_events(
                subject.id, EventType.FEEDING, RECENT_FEEDING_WINDOW
            )
            if inputs.recent_feedings:
                inputs.todays_feedings = await self.store.events_between(
                    subject.id, EventType.FEEDING, day_start, day_end
                )

        elif category is RuleCategory.SLEEP:
            inputs.todays_sleeps = await self.store.events_between(
                subject.id, EventType.SLEEP, day_start, day_end
            )
            inputs.has_any_sleep_log = bool(inputs.todays_sleeps) or bool(
                await self.store.recent_events(subject.id, EventType.SLEEP, 1)
            )

        elif category is RuleCategory.WEIGHT:
            candidates = [subject.weight_updated_at]
            latest = await self.store.recent_events(subject.id, EventType.WEIGHT, 1)
            if latest:
                candidates.append(latest[0].timestamp)
            known = [c for c in candidates if c is not None]
            inputs.last_weight_update = max(known) if known else None

        elif category is RuleCategory.MEDICATION:
            inputs.has_confirmed_schedule = await self.store.has_confirmed_schedule(subject.id)
            if inputs.has_confirmed_schedule:
                window_start = now - MEDICATION_LOOKBACK
                inputs.medicine_reminders = await self.store.reminders_between(
                    subject.id, ReminderType.MEDICINE, window_start, now + timedelta(microseconds=1)
                )
                inputs.medication_events = await self.store.events_between(
                    subject.id,
                    EventType.MEDICATION,
                    window_start - MEDICATION_EARLY_TOLERANCE,
                    now + timedelta(microseconds=1),
                )

        return inputs

    async def _apply(
        self,
        decision: RuleDecision,
        subject: Subject,
        owner_id: str,
        now: datetime,
        result: EvaluationResult,
    ) -> None:
        rule = decision.rule

        if decision.alert is not None:
            draft = decision.alert
            upsert = await self.store.upsert_active_alert(
                Alert(
                    id=self._new_id(),
                    subject_id=subject.id,
                    owner_id=owner_id,
                    rule_id=rule.rule_id,
                    category=rule.category,
                    severity=draft.severity,
                    title=draft.title,
                    description=draft.description,
                    message=draft.message,
                    trigger_data=draft.trigger_data,
                    created_at=now,
                    updated_at=now,
                )
            )
            escalated = (
                not upsert.is_new
                and upsert.alert.severity is Severity.HIGH
                and upsert.previous_severity is not Severity.HIGH
            )
            result.alerts.append(
                AlertOutcome(alert=upsert.alert, is_new=upsert.is_new, severity_escalated=escalated)
            )
            self.logger.info(
                "alert_created" if upsert.is_new else "alert_updated",
                subject_id=subject.id,
                rule_id=rule.rule_id,
                alert_id=upsert.alert.id,
                severity=upsert.alert.severity.value,
                severity_escalated=escalated,
            )
        elif decision.resolve_alert:
            resolved = await self.store.resolve_alerts(subject.id, owner_id, rule.rule_id, now)
            if resolved:
                self.logger.info("alert_resolved", subject_id=subject.id, rule_id=rule.rule_id)

        for reminder_draft in decision.reminders:
            outcome = await self.store.upsert_active_reminder(
                Reminder(
                    id=self._new_id(),
                    subject_id=subject.id,
                    owner_id=owner_id,
                    type=reminder_draft.type,
                    rule_id=reminder_draft.rule_id,
                    message=reminder_draft.message,
                    scheduled_for=now,
                    next_trigger_at=now,
                    channels=set(self.reminder_channels),
                    trigger_data=reminder_draft.trigger_data,
                    created_at=now,
                    updated_at=now,
                )
            )
            result.reminders.append(outcome)
            if outcome.is_new:
                self.logger.info(
                    "reminder_created",
                    subject_id=subject.id,
                    rule_id=reminder_draft.rule_id,
                    reminder_id=outcome.reminder.id,
                )

        if decision.resolve_reminder_rule_ids:
            resolved = await self.store.resolve_reminders(
                subject.id, owner_id, decision.resolve_reminder_rule_ids, now
            )
            if resolved:
                self.logger.info(
                    "reminders_resolved",
                    subject_id=subject.id,
                    rule_ids=decision.resolve_reminder_rule_ids,
                    count=resolved,
                )
