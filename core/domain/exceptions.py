"""
Error taxonomy for the monitoring core.

- TransientStoreError: store hiccups (quota, timeouts). Logged, operation skipped this cycle.
- DeliveryError: a single channel failed. Never escapes the dispatcher.
- DataError: caller contract violations. Surfaced to the route layer.
"""


class MonitorError(Exception):
    """Base class for all monitoring errors."""


class TransientStoreError(MonitorError):
    """The document store is temporarily unavailable or over quota."""


class DeliveryError(MonitorError):
    """A delivery channel could not hand the message to its provider."""

    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class DataError(MonitorError):
    """Invalid input supplied by the caller."""


class SubjectNotFoundError(DataError):
    def __init__(self, subject_id: str) -> None:
        super().__init__(f"Subject {subject_id} not found")
        self.subject_id = subject_id


class OwnershipError(DataError):
    def __init__(self, subject_id: str, owner_id: str) -> None:
        super().__init__(f"Owner {owner_id} does not have access to subject {subject_id}")
        self.subject_id = subject_id
        self.owner_id = owner_id


class InvalidScheduleError(DataError):
    """The medication schedule is malformed."""


class ReminderNotFoundError(DataError):
    def __init__(self, reminder_id: str) -> None:
        super().__init__(f"Reminder {reminder_id} not found")
        self.reminder_id = reminder_id
