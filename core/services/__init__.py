"""
Core services for the application.

This package contains the main service implementations: rule evaluation,
reminder generation, notification dispatch, background scheduling and caching.
"""

from .cache import CacheRegistry, TTLCache
from .dispatcher import ChannelProvider, NotificationDispatcher, NotificationMessage, Recipient
from .monitoring import CareMonitoringService, build_service
from .reminder_generator import ReminderGenerator
from .result import Result
from .rule_engine import RuleEngine
from .scheduler import BackgroundScheduler, PollSummary
from .store import InMemoryMonitorStore, MonitorStore

__all__ = [
    "BackgroundScheduler",
    "CacheRegistry",
    "CareMonitoringService",
    "ChannelProvider",
    "InMemoryMonitorStore",
    "MonitorStore",
    "NotificationDispatcher",
    "NotificationMessage",
    "PollSummary",
    "Recipient",
    "ReminderGenerator",
    "Result",
    "RuleEngine",
    "TTLCache",
    "build_service",
]
