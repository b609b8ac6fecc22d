"""
MongoDB-backed MonitorStore (motor).

Unique partial indexes carry the invariants:
- alerts: one active document per (subject_id, owner_id, rule_id)
- reminders: one active rule reminder per (subject_id, owner_id, rule_id)
- reminders: one document per dedup key (subject_id, medicine_name, dose_time, dose_date)

Conditional writes use find_one_and_update; a lost insert race surfaces as
DuplicateKeyError and is retried as an update. Driver timeouts and
reconnects are reported as TransientStoreError.
"""

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    WTimeoutError,
)

from core.config import DatabaseConfig
from core.domain.exceptions import TransientStoreError
from core.domain.models import (
    TERMINAL_STATUSES,
    Alert,
    EventLog,
    EventType,
    Reminder,
    ReminderOutcome,
    ReminderStatus,
    ReminderType,
    Subject,
    UserProfile,
)
from core.services.store import AlertUpsert

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Server error codes that mean "try again later" rather than "bad request".
TRANSIENT_ERROR_CODES = {50, 91, 189, 11600, 11602, 16500}


def to_document(model: BaseModel) -> dict[str, Any]:
    doc = model.model_dump(mode="python")
    if "channels" in doc:
        doc["channels"] = sorted(c.value for c in doc["channels"])
    doc["_id"] = doc["id"]
    return doc


def to_model(model_cls: type[ModelT], doc: dict[str, Any]) -> ModelT:
    data = dict(doc)
    data.setdefault("id", str(data.get("_id")))
    data.pop("_id", None)
    return model_cls.model_validate(data)


def from_document(model_cls: type[ModelT], doc: dict[str, Any] | None) -> ModelT | None:
    return None if doc is None else to_model(model_cls, doc)


@asynccontextmanager
async def transient_errors() -> AsyncIterator[None]:
    try:
        yield
    except (ConnectionFailure, ExecutionTimeout, WTimeoutError) as e:
        raise TransientStoreError(str(e)) from e
    except OperationFailure as e:
        if e.code in TRANSIENT_ERROR_CODES:
            raise TransientStoreError(str(e)) from e
        raise


class MongoMonitorStore:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self.subjects = db["subjects"]
        self.users = db["users"]
        self.events = db["events"]
        self.schedules = db["schedules"]
        self.alerts = db["alerts"]
        self.reminders = db["reminders"]
        self.logger = logger.bind(component="mongo_store")

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "MongoMonitorStore":
        client = AsyncIOMotorClient(config.url, tz_aware=True, serverSelectionTimeoutMS=config.timeout_ms)
        return cls(client[config.name])

    async def ensure_indexes(self) -> None:
        async with transient_errors():
            await self.alerts.create_index(
                [("subject_id", ASCENDING), ("owner_id", ASCENDING), ("rule_id", ASCENDING)],
                name="one_active_alert_per_rule",
                unique=True,
                partialFilterExpression={"is_active": True},
            )
            await self.reminders.create_index(
                [("status", ASCENDING), ("next_trigger_at", ASCENDING)], name="due_reminders"
            )
            await self.reminders.create_index(
                [
                    ("subject_id", ASCENDING),
                    ("medicine_name", ASCENDING),
                    ("dose_time", ASCENDING),
                    ("dose_date", ASCENDING),
                ],
                name="reminder_dedup_key",
                unique=True,
                partialFilterExpression={"dose_date": {"$type": "string"}},
            )
            await self.reminders.create_index(
                [("subject_id", ASCENDING), ("owner_id", ASCENDING), ("rule_id", ASCENDING)],
                name="one_active_reminder_per_rule",
                unique=True,
                partialFilterExpression={"is_active": True, "rule_id": {"$type": "string"}},
            )
            await self.events.create_index(
                [("subject_id", ASCENDING), ("type", ASCENDING), ("timestamp", DESCENDING)],
                name="events_by_subject_type_time",
            )
        self.logger.info("indexes_ensured")

    # Reads

    async def get_subject(self, subject_id: str) -> Subject | None:
        async with transient_errors():
            return from_document(Subject, await self.subjects.find_one({"_id": subject_id}))

    async def get_profile(self, user_id: str) -> UserProfile | None:
        async with transient_errors():
            return from_document(UserProfile, await self.users.find_one({"_id": user_id}))

    async def recent_events(
        self, subject_id: str, event_type: EventType, limit: int
    ) -> list[EventLog]:
        cursor = (
            self.events.find({"subject_id": subject_id, "type": event_type.value})
            .sort("timestamp", DESCENDING)
            .limit(limit)
        )
        async with transient_errors():
            return [to_model(EventLog, doc) for doc in await cursor.to_list(length=limit)]

    async def events_between(
        self, subject_id: str, event_type: EventType, start: datetime, end: datetime
    ) -> list[EventLog]:
        cursor = self.events.find(
            {
                "subject_id": subject_id,
                "type": event_type.value,
                "timestamp": {"$gte": start, "$lt": end},
            }
        ).sort("timestamp", ASCENDING)
        async with transient_errors():
            return [to_model(EventLog, doc) for doc in await cursor.to_list(length=None)]

    async def has_confirmed_schedule(self, subject_id: str) -> bool:
        async with transient_errors():
            doc = await self.schedules.find_one(
                {"subject_id": subject_id, "confirmed": True}, projection={"_id": 1}
            )
        return doc is not None

    # Alerts

    async def upsert_active_alert(self, candidate: Alert) -> AlertUpsert:
        key = {
            "subject_id": candidate.subject_id,
            "owner_id": candidate.owner_id,
            "rule_id": candidate.rule_id,
            "is_active": True,
        }
        update = {
            "$set": {
                "severity": candidate.severity.value,
                "title": candidate.title,
                "description": candidate.description,
                "message": candidate.message,
                "trigger_data": candidate.trigger_data,
                "updated_at": candidate.updated_at,
            }
        }
        async with transient_errors():
            for _ in range(2):
                before = await self.alerts.find_one_and_update(
                    key, update, return_document=ReturnDocument.BEFORE
                )
                if before is not None:
                    previous = to_model(Alert, before)
                    updated = previous.model_copy(update={k: getattr(candidate, k) for k in update["$set"]})
                    return AlertUpsert(alert=updated, is_new=False, previous_severity=previous.severity)
                try:
                    await self.alerts.insert_one(to_document(candidate))
                    return AlertUpsert(alert=candidate, is_new=True)
                except DuplicateKeyError:
                    # Another evaluation created it first; update that one instead.
                    continue
        raise TransientStoreError(f"alert upsert for rule {candidate.rule_id} kept conflicting")

    async def resolve_alerts(
        self, subject_id: str, owner_id: str, rule_id: str, now: datetime
    ) -> int:
        async with transient_errors():
            result = await self.alerts.update_many(
                {"subject_id": subject_id, "owner_id": owner_id, "rule_id": rule_id, "is_active": True},
                {"$set": {"is_active": False, "resolved": True, "updated_at": now}},
            )
        return result.modified_count

    async def active_alerts(self, subject_id: str, owner_id: str) -> list[Alert]:
        cursor = self.alerts.find(
            {"subject_id": subject_id, "owner_id": owner_id, "is_active": True}
        ).sort("created_at", ASCENDING)
        async with transient_errors():
            return [to_model(Alert, doc) for doc in await cursor.to_list(length=None)]

    # Reminders

    async def upsert_active_reminder(self, candidate: Reminder) -> ReminderOutcome:
        key = {
            "subject_id": candidate.subject_id,
            "owner_id": candidate.owner_id,
            "rule_id": candidate.rule_id,
            "is_active": True,
        }
        update = {
            "$set": {
                "message": candidate.message,
                "trigger_data": candidate.trigger_data,
                "updated_at": candidate.updated_at,
            }
        }
        async with transient_errors():
            for _ in range(2):
                after = await self.reminders.find_one_and_update(
                    key, update, return_document=ReturnDocument.AFTER
                )
                if after is not None:
                    return ReminderOutcome(reminder=to_model(Reminder, after), is_new=False)
                try:
                    await self.reminders.insert_one(to_document(candidate))
                    return ReminderOutcome(reminder=candidate, is_new=True)
                except DuplicateKeyError:
                    continue
        raise TransientStoreError(f"reminder upsert for rule {candidate.rule_id} kept conflicting")

    async def resolve_reminders(
        self, subject_id: str, owner_id: str, rule_ids: Iterable[str], now: datetime
    ) -> int:
        base = {
            "subject_id": subject_id,
            "owner_id": owner_id,
            "rule_id": {"$in": list(rule_ids)},
            "is_active": True,
        }
        async with transient_errors():
            # Pending ones must never be sent once their condition has cleared.
            pending = await self.reminders.update_many(
                {**base, "status": ReminderStatus.PENDING.value},
                {
                    "$set": {
                        "is_active": False,
                        "status": ReminderStatus.DISMISSED.value,
                        "updated_at": now,
                    }
                },
            )
            rest = await self.reminders.update_many(
                base, {"$set": {"is_active": False, "updated_at": now}}
            )
        return pending.modified_count + rest.modified_count

    async def create_reminder_unique(self, candidate: Reminder) -> ReminderOutcome:
        if candidate.dedup_key is None:
            raise ValueError("create_reminder_unique needs medicine_name, dose_time and dose_date")
        async with transient_errors():
            try:
                await self.reminders.insert_one(to_document(candidate))
                return ReminderOutcome(reminder=candidate, is_new=True)
            except DuplicateKeyError:
                existing = await self.find_reminder_by_dedup_key(
                    candidate.subject_id,
                    candidate.medicine_name or "",
                    candidate.dose_time or "",
                    candidate.dose_date or "",
                )
        if existing is None:
            raise TransientStoreError("dedup conflict but no existing reminder found")
        return ReminderOutcome(reminder=existing, is_new=False)

    async def find_reminder_by_dedup_key(
        self, subject_id: str, medicine_name: str, dose_time: str, dose_date: str
    ) -> Reminder | None:
        async with transient_errors():
            doc = await self.reminders.find_one(
                {
                    "subject_id": subject_id,
                    "medicine_name": medicine_name,
                    "dose_time": dose_time,
                    "dose_date": dose_date,
                }
            )
        return from_document(Reminder, doc)

    async def get_reminder(self, reminder_id: str) -> Reminder | None:
        async with transient_errors():
            return from_document(Reminder, await self.reminders.find_one({"_id": reminder_id}))

    async def due_reminders(self, now: datetime, limit: int) -> list[Reminder]:
        cursor = (
            self.reminders.find(
                {"status": ReminderStatus.PENDING.value, "next_trigger_at": {"$lte": now}}
            )
            .sort("next_trigger_at", ASCENDING)
            .limit(limit)
        )
        async with transient_errors():
            return [to_model(Reminder, doc) for doc in await cursor.to_list(length=limit)]

    async def record_delivery(
        self, reminder_id: str, status: ReminderStatus, error: str | None, now: datetime
    ) -> Reminder | None:
        async with transient_errors():
            doc = await self.reminders.find_one_and_update(
                {"_id": reminder_id, "status": ReminderStatus.PENDING.value},
                {
                    "$set": {
                        "status": status.value,
                        "last_error": error,
                        "last_attempt_at": now,
                        "updated_at": now,
                    },
                    "$inc": {"attempt_count": 1},
                },
                return_document=ReturnDocument.AFTER,
            )
        return from_document(Reminder, doc)

    async def dismiss_reminder(self, reminder_id: str, now: datetime) -> Reminder | None:
        async with transient_errors():
            doc = await self.reminders.find_one_and_update(
                {"_id": reminder_id, "status": {"$ne": ReminderStatus.DISMISSED.value}},
                {
                    "$set": {
                        "status": ReminderStatus.DISMISSED.value,
                        "is_active": False,
                        "updated_at": now,
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                doc = await self.reminders.find_one({"_id": reminder_id})
        return from_document(Reminder, doc)

    async def delete_terminal_reminders(self, cutoff: datetime, limit: int) -> int:
        cursor = (
            self.reminders.find(
                {
                    "status": {"$in": [s.value for s in TERMINAL_STATUSES]},
                    "scheduled_for": {"$lte": cutoff},
                },
                projection={"_id": 1},
            )
            .sort("scheduled_for", ASCENDING)
            .limit(limit)
        )
        async with transient_errors():
            ids = [doc["_id"] for doc in await cursor.to_list(length=limit)]
            if not ids:
                return 0
            result = await self.reminders.delete_many({"_id": {"$in": ids}})
        return result.deleted_count

    async def reminders_between(
        self, subject_id: str, reminder_type: ReminderType, start: datetime, end: datetime
    ) -> list[Reminder]:
        cursor = self.reminders.find(
            {
                "subject_id": subject_id,
                "type": reminder_type.value,
                "scheduled_for": {"$gte": start, "$lt": end},
            }
        ).sort("scheduled_for", ASCENDING)
        async with transient_errors():
            return [to_model(Reminder, doc) for doc in await cursor.to_list(length=None)]
