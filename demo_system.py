"""
End-to-end demo of the monitoring pipeline against the in-memory store.

This script walks through:
1. Configuration loading
2. Rule evaluation after a logged feeding
3. Medication schedule confirmation and reminder expansion
4. One background poll delivering due reminders
5. Caller errors and the dashboard status view

Push and SMS go through logging providers, so no credentials are needed.

Run with: uv run python demo_system.py
"""

import asyncio
import uuid
from datetime import timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.providers.logging_provider import LoggingProvider
from core.config import AppConfig, SchedulerConfig, get_config, print_config_summary
from core.domain.exceptions import DataError
from core.domain.models import Channel, EventLog, EventType, Subject, UserProfile, utcnow
from core.log import configure_logging
from core.services.monitoring import CareMonitoringService
from core.services.store import InMemoryMonitorStore

console = Console()

SUBJECT_ID = "demo-subject"
OWNER_ID = "demo-owner"


def build_demo_service() -> tuple[CareMonitoringService, InMemoryMonitorStore, list[LoggingProvider]]:
    store = InMemoryMonitorStore()
    store.add_subject(Subject(id=SUBJECT_ID, owner_id=OWNER_ID, name="Ada", gestational_age_weeks=39))
    store.add_profile(
        UserProfile(id=OWNER_ID, device_token="demo-device-token", phone_number="+15551234567")
    )

    providers = [LoggingProvider(Channel.PUSH), LoggingProvider(Channel.SMS)]
    config = AppConfig(scheduler=SchedulerConfig(send_delay_seconds=0.0))
    return CareMonitoringService(store, providers=providers, config=config), store, providers


def log_event(store: InMemoryMonitorStore, event_type: EventType, hours_ago: float, **fields) -> None:
    store.add_event(
        EventLog(
            id=uuid.uuid4().hex,
            subject_id=SUBJECT_ID,
            owner_id=OWNER_ID,
            type=event_type,
            timestamp=utcnow() - timedelta(hours=hours_ago),
            **fields,
        )
    )


async def demo_configuration() -> bool:
    console.print(Panel("🔧 Configuration", style="blue"))
    try:
        config = get_config()
        configure_logging(config.logging)
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"❌ Configuration failed: {e}", style="red")
        return False


async def demo_rule_evaluation(service: CareMonitoringService, store: InMemoryMonitorStore) -> bool:
    console.print(Panel("📋 Rule Evaluation", style="blue"))

    log_event(store, EventType.FEEDING, hours_ago=5, quantity=90)
    log_event(store, EventType.SLEEP, hours_ago=3, duration=180)

    result = await service.on_event_logged(SUBJECT_ID, OWNER_ID)

    table = Table(title="Alerts")
    table.add_column("Rule", style="cyan")
    table.add_column("Severity", style="magenta")
    table.add_column("New", style="green")
    table.add_column("Notify", style="yellow")
    for outcome in result.alerts:
        table.add_row(
            outcome.alert.rule_id,
            outcome.alert.severity.value,
            "yes" if outcome.is_new else "no",
            "yes" if outcome.should_notify else "no",
        )
    console.print(table)

    for outcome in result.reminders:
        console.print(f"⏰ Reminder {outcome.reminder.rule_id}: {outcome.reminder.message}")

    if result.failed_categories:
        console.print(f"⚠️  Skipped categories: {result.failed_categories}", style="yellow")
    return bool(result.alerts)


async def demo_schedule(service: CareMonitoringService) -> bool:
    console.print(Panel("💊 Medication Schedule", style="blue"))

    now = utcnow()
    soon = (now + timedelta(minutes=1)).strftime("%H:%M")
    schedule = {
        "items": [
            {"name": "Vitamin D", "dosage": "400 IU", "times_of_day": ["08:00", "20:00"]},
            {"name": "Iron", "dosage": "1 ml", "times_of_day": [soon]},
        ]
    }

    first = await service.on_schedule_confirmed(SUBJECT_ID, OWNER_ID, schedule)
    second = await service.on_schedule_confirmed(SUBJECT_ID, OWNER_ID, schedule)

    console.print(f"✅ Expanded into {len(first)} reminders")
    if first != second:
        console.print("❌ Re-confirming produced different reminders", style="red")
        return False
    console.print("✅ Re-confirming the same plan created nothing new", style="green")
    return True


async def demo_poll(service: CareMonitoringService, providers: list[LoggingProvider]) -> bool:
    console.print(Panel("📤 Background Poll", style="blue"))

    summary = await service.scheduler.poll_due_reminders()

    table = Table(title="Poll Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for field, value in summary.model_dump().items():
        table.add_row(field, str(value))
    console.print(table)

    for provider in providers:
        console.print(f"{provider.channel.value}: {len(provider.sent)} message(s)")
        for _, message in provider.sent:
            console.print(f"  • {message.title}: {message.body}")
    return summary.errors == 0


async def demo_status_and_errors(service: CareMonitoringService) -> bool:
    console.print(Panel("🛡️ Status and Caller Errors", style="blue"))

    status = await service.subject_status(SUBJECT_ID, OWNER_ID)
    console.print(status.summary, style="green" if status.is_all_good else "yellow")
    for reason in status.reasons:
        console.print(f"  • {reason}")

    rollup = await service.daily_rollup(SUBJECT_ID, OWNER_ID)
    console.print(
        f"Today: {rollup.feeding_count} feeding(s), {rollup.feeding_total_ml:.0f}ml, "
        f"{rollup.sleep_hours}h sleep"
    )

    try:
        await service.on_event_logged(SUBJECT_ID, "someone-else")
    except DataError as e:
        console.print(f"✅ Rejected foreign caller: {e}", style="green")
        return True

    console.print("❌ Foreign caller was not rejected", style="red")
    return False


async def run_demo() -> None:
    console.print(Panel("🍼 Care Monitor - System Demo", style="bold blue"))

    results = [("Configuration", await demo_configuration())]

    service, store, providers = build_demo_service()
    steps = [
        ("Rule Evaluation", lambda: demo_rule_evaluation(service, store)),
        ("Medication Schedule", lambda: demo_schedule(service)),
        ("Background Poll", lambda: demo_poll(service, providers)),
        ("Status and Errors", lambda: demo_status_and_errors(service)),
    ]

    try:
        for step_name, step in steps:
            console.print(f"\n{'=' * 60}")
            try:
                results.append((step_name, await step()))
            except Exception as e:
                console.print(f"❌ {step_name} failed with exception: {e}", style="red")
                results.append((step_name, False))
    finally:
        await service.stop()

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Demo Results")
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step_name, ok in results:
        summary_table.add_row(step_name, "✅ PASSED" if ok else "❌ FAILED")
        passed += ok
    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} steps passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
