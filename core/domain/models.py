"""
Domain models for caregiving rule monitoring.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation but could be swapped to dataclasses if needed.
"""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DOSE_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

PREMATURE_GESTATIONAL_WEEKS = 37
DEFAULT_GESTATIONAL_WEEKS = 40


def utcnow() -> datetime:
    return datetime.now(UTC)


class Severity(str, Enum):
    """Alert severity levels. Only HIGH reaches a delivery channel."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RuleCategory(str, Enum):
    FEEDING = "feeding"
    SLEEP = "sleep"
    WEIGHT = "weight"
    MEDICATION = "medication"


class SubjectClass(str, Enum):
    FULL_TERM = "full_term"
    PREMATURE = "premature"


class EventType(str, Enum):
    """Types of caregiving events logged against a subject."""

    FEEDING = "feeding"
    SLEEP = "sleep"
    MEDICATION = "medication"
    WEIGHT = "weight"


class ReminderType(str, Enum):
    FEEDING = "feeding"
    SLEEP = "sleep"
    MEDICINE = "medicine"
    CUSTOM = "custom"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self is not ReminderStatus.PENDING


TERMINAL_STATUSES = frozenset(
    {ReminderStatus.SENT, ReminderStatus.FAILED, ReminderStatus.DISMISSED}
)


class Channel(str, Enum):
    """Delivery mechanisms. PUSH is the primary channel."""

    PUSH = "push"
    SMS = "sms"


class Subject(BaseModel):
    """The tracked subject (e.g. an infant) and the caregiver that owns it."""

    id: str
    owner_id: str
    name: str = ""
    gestational_age_weeks: int = Field(default=DEFAULT_GESTATIONAL_WEEKS, gt=0, le=45)
    weight_updated_at: datetime | None = None

    @property
    def subject_class(self) -> SubjectClass:
        if self.gestational_age_weeks < PREMATURE_GESTATIONAL_WEEKS:
            return SubjectClass.PREMATURE
        return SubjectClass.FULL_TERM


class UserProfile(BaseModel):
    """Recipient details looked up before any channel send."""

    id: str
    device_token: str | None = None
    phone_number: str | None = None


class EventLog(BaseModel):
    """A single caregiving log entry (read-only for the monitor)."""

    model_config = ConfigDict(frozen=True)

    id: str
    subject_id: str
    owner_id: str
    type: EventType
    timestamp: datetime
    quantity: float | None = Field(default=None, ge=0.0, description="Feeding volume in ml")
    duration: float | None = Field(default=None, ge=0.0, description="Sleep duration in minutes")
    given: bool | None = Field(default=None, description="Medication administered")
    medicine_name: str | None = None


class Alert(BaseModel):
    """Persistent record of a currently-or-previously violated rule."""

    id: str
    subject_id: str
    owner_id: str
    rule_id: str
    category: RuleCategory
    severity: Severity
    title: str
    description: str
    message: str = ""
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Reminder(BaseModel):
    """An actionable, time-triggered nudge (rule-derived or schedule-derived)."""

    id: str
    subject_id: str
    owner_id: str
    type: ReminderType
    rule_id: str | None = None
    message: str = ""
    medicine_name: str | None = None
    dosage: str | None = None
    dose_time: str | None = None
    dose_date: str | None = Field(default=None, description="Local calendar date, YYYY-MM-DD")
    scheduled_for: datetime
    next_trigger_at: datetime
    channels: set[Channel] = Field(default_factory=lambda: {Channel.PUSH, Channel.SMS})
    status: ReminderStatus = ReminderStatus.PENDING
    is_active: bool = True
    attempt_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def dedup_key(self) -> tuple[str, str, str, str] | None:
        """(subject, medicine, dose time, calendar date) for schedule-derived reminders."""
        if self.medicine_name is None or self.dose_time is None or self.dose_date is None:
            return None
        return (self.subject_id, self.medicine_name, self.dose_time, self.dose_date)


class ScheduleItem(BaseModel):
    """One medicine in a confirmed plan."""

    name: str = Field(min_length=1)
    dosage: str = ""
    frequency: str = ""
    times_of_day: list[str] = Field(default_factory=list)
    suggested_start_time: str = "08:00"

    @field_validator("times_of_day")
    @classmethod
    def validate_times(cls, v: list[str]) -> list[str]:
        for t in v:
            if not DOSE_TIME_PATTERN.match(t):
                raise ValueError(f"dose time {t!r} must be HH:mm")
        return v

    @field_validator("suggested_start_time")
    @classmethod
    def validate_start_time(cls, v: str) -> str:
        if not DOSE_TIME_PATTERN.match(v):
            raise ValueError(f"suggested start time {v!r} must be HH:mm")
        return v

    @property
    def dose_times(self) -> list[str]:
        # A plan without explicit times falls back to one daily dose.
        return sorted(set(self.times_of_day)) or [self.suggested_start_time]


class Schedule(BaseModel):
    """A confirmed medication plan."""

    id: str | None = None
    items: list[ScheduleItem] = Field(min_length=1)


class ChannelResult(BaseModel):
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


class DeliveryResult(BaseModel):
    """Per-channel outcome of one dispatch, folded into a single status."""

    results: dict[Channel, ChannelResult] = Field(default_factory=dict)

    @property
    def attempted(self) -> bool:
        return bool(self.results)

    @property
    def any_success(self) -> bool:
        return any(r.success for r in self.results.values())

    @property
    def status(self) -> ReminderStatus:
        # Any successful channel counts as delivered.
        return ReminderStatus.SENT if self.any_success else ReminderStatus.FAILED

    @property
    def error_summary(self) -> str | None:
        errors = [
            f"{channel.value}: {result.error or 'failed'}"
            for channel, result in sorted(self.results.items(), key=lambda kv: kv[0].value)
            if not result.success
        ]
        return "; ".join(errors) or None


class AlertOutcome(BaseModel):
    """Result of the upsert step, carrying the intent the notify step acts on."""

    alert: Alert
    is_new: bool
    severity_escalated: bool = False

    @property
    def should_notify(self) -> bool:
        return self.alert.severity is Severity.HIGH and (self.is_new or self.severity_escalated)


class ReminderOutcome(BaseModel):
    reminder: Reminder
    is_new: bool


class EvaluationResult(BaseModel):
    alerts: list[AlertOutcome] = Field(default_factory=list)
    reminders: list[ReminderOutcome] = Field(default_factory=list)
    failed_categories: list[RuleCategory] = Field(default_factory=list)


class ExpansionResult(BaseModel):
    """Reminder ids produced by a schedule expansion; skipped ids already existed."""

    created: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: int = 0

    @property
    def reminder_ids(self) -> list[str]:
        return sorted(self.created + self.skipped)


class SubjectStatus(BaseModel):
    """Dashboard view: either all good or the list of active alerts."""

    is_all_good: bool
    alert_count: int
    overall_severity: Literal["none", "low", "medium", "high"]
    reasons: list[str]
    active_alerts: list[Alert]
    summary: str
    generated_at: datetime = Field(default_factory=utcnow)
