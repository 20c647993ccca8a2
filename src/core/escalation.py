"""
Promise Keeper — Escalation Scanner.

A recurring tick that walks every open obligation and sends each
escalation stage at most once:

    ≤ 24h left        → 24-hour reminder to the assignee
    ≤ 4h left         → 4-hour reminder
    0 < left ≤ 1h     → 1-hour reminder
    past due          → escalation to the triage chat + notice to the assignee

Every crossed, unsent stage fires in the same tick, so a process that was
down for a day catches up in one pass. A stage's flag is persisted only
after its delivery succeeded; a failed or timed-out delivery leaves the
flag unset and the next tick retries it.

This module is provider-agnostic: it depends on the ObligationRepository,
NotificationPort and Clock protocols, not on Telegram or SQLite.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from src.core.due_date import format_due_date, localize
from src.data.models import (
    SCANNABLE_STATUSES,
    EscalationStage,
    Obligation,
    ObligationStatus,
)

if TYPE_CHECKING:
    from src.core.failures import FailureRecorder
    from src.ports.clock_port import Clock
    from src.ports.notification_port import NotificationPort
    from src.ports.obligation_port import ObligationRepository

logger = logging.getLogger(__name__)


async def deliver_with_timeout(
    notifier: NotificationPort, recipient: str, message: str, timeout: float,
) -> bool:
    """Deliver one message; raises asyncio.TimeoutError past `timeout` seconds."""
    return await asyncio.wait_for(notifier.deliver(recipient, message), timeout)


def hours_until(due: datetime, now: datetime) -> float:
    """Signed hours from `now` to `due`. Naive `due` is read in now's timezone."""
    return (localize(due, now) - now).total_seconds() / 3600


@dataclass(frozen=True)
class EscalationThresholds:
    """Reminder thresholds in hours before the deadline."""

    reminder_24h: float = 24
    reminder_4h: float = 4
    reminder_1h: float = 1
    triage_chat_id: str = ""
    delivery_timeout: float = 10

    @classmethod
    def from_settings(cls, settings=None) -> EscalationThresholds:
        if settings is None:
            from src.config import settings
        return cls(
            reminder_24h=settings.REMINDER_THRESHOLD_24H,
            reminder_4h=settings.REMINDER_THRESHOLD_4H,
            reminder_1h=settings.REMINDER_THRESHOLD_1H,
            triage_chat_id=settings.TRIAGE_CHAT_ID,
            delivery_timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )

    def crossed(self, hours_left: float) -> list[EscalationStage]:
        """Stages whose threshold has been crossed, least urgent first."""
        stages = []
        if hours_left <= self.reminder_24h:
            stages.append(EscalationStage.REMINDER_24H)
        if hours_left <= self.reminder_4h:
            stages.append(EscalationStage.REMINDER_4H)
        if 0 < hours_left <= self.reminder_1h:
            stages.append(EscalationStage.REMINDER_1H)
        if hours_left <= 0:
            stages.append(EscalationStage.OVERDUE)
        return stages


@dataclass
class ScanReport:
    """What one scan tick did."""

    scanned: int = 0
    fired: list[tuple[int, EscalationStage]] = field(default_factory=list)
    failed: int = 0


_REMINDER_LABELS = {
    EscalationStage.REMINDER_24H: "📅 Follow-up due within 24 hours",
    EscalationStage.REMINDER_4H: "⏰ Follow-up due within 4 hours",
    EscalationStage.REMINDER_1H: "⚠️ Follow-up due within the hour",
}


def _reminder_message(obligation: Obligation, stage: EscalationStage, now: datetime) -> str:
    lines = [
        f"{_REMINDER_LABELS[stage]}",
        "",
        f"\"{obligation.promise_text}\"",
        f"Due {format_due_date(obligation.due_at, now)}",
        f"Follow-up ID: {obligation.id}",
    ]
    if obligation.source_url:
        lines.append(f"View original: {obligation.source_url}")
    lines.append("Reply /done <id> when finished or /extend <id> <hours> for more time.")
    return "\n".join(lines)


def _overdue_hours(obligation: Obligation, now: datetime) -> int:
    return max(int(-hours_until(obligation.due_at, now)), 0)


def _triage_message(obligation: Obligation, now: datetime) -> str:
    lines = [
        f"🚨 Overdue follow-up #{obligation.id}",
        f"Assignee: {obligation.assignee}",
        f"Promise: \"{obligation.promise_text}\"",
        f"Was due: {obligation.due_at.strftime('%Y-%m-%d %H:%M')}",
        f"Overdue by {_overdue_hours(obligation, now)} hours",
    ]
    if obligation.source_url:
        lines.append(f"View original: {obligation.source_url}")
    lines.append("Use /take <id> to take ownership.")
    return "\n".join(lines)


def _assignee_overdue_message(obligation: Obligation, now: datetime) -> str:
    return (
        f"🚨 Your follow-up is overdue (by {_overdue_hours(obligation, now)} hours):\n\n"
        f"\"{obligation.promise_text}\"\n"
        f"Follow-up ID: {obligation.id}\n\n"
        "It has been escalated to the team. Reply /done <id> once it's handled."
    )


class EscalationScanner:
    """Walks open obligations and fires every crossed, unsent stage."""

    def __init__(
        self,
        repository: ObligationRepository,
        notifier: NotificationPort,
        clock: Clock,
        recorder: FailureRecorder,
        thresholds: EscalationThresholds | None = None,
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._clock = clock
        self._recorder = recorder
        self._thresholds = thresholds or EscalationThresholds.from_settings()

    async def scan(self) -> ScanReport:
        """Run one tick. Never raises; failures go to the recorder."""
        report = ScanReport()
        now = self._clock.now()
        try:
            obligations = self._repo.list_by_statuses(SCANNABLE_STATUSES)
        except Exception as exc:
            self._recorder.record_exception("followup_scan", "escalation.load", exc)
            report.failed += 1
            return report

        for obligation in obligations:
            if obligation.due_at is None:
                continue
            report.scanned += 1
            try:
                await self._process(obligation, now, report)
            except Exception as exc:
                self._recorder.record_exception(
                    f"obligation:{obligation.id}", "escalation.process", exc,
                )
                report.failed += 1

        if report.fired or report.failed:
            logger.info(
                "Escalation scan: %d scanned, %d stages sent, %d failures",
                report.scanned, len(report.fired), report.failed,
            )
        return report

    async def _process(self, obligation: Obligation, now: datetime, report: ScanReport) -> None:
        hours_left = hours_until(obligation.due_at, now)

        for stage in self._thresholds.crossed(hours_left):
            if obligation.ledger.is_sent(stage):
                continue
            event_id = f"obligation:{obligation.id}:{stage.value}"

            try:
                delivered = await self._send(obligation, stage, now)
            except Exception as exc:
                self._recorder.record_exception(event_id, "escalation.delivery", exc)
                report.failed += 1
                continue
            if not delivered:
                self._recorder.record(event_id, "escalation.delivery", detail="delivery rejected")
                report.failed += 1
                continue

            ledger = obligation.ledger
            ledger.mark_sent(stage, now)
            changes: dict = {"ledger": ledger}
            if obligation.status == ObligationStatus.OPEN:
                changes["status"] = ObligationStatus.WAITING
            try:
                obligation = self._repo.update(obligation.id, **changes)
            except Exception as exc:
                # Delivered but not persisted: the stage may be re-sent next tick.
                self._recorder.record_exception(event_id, "escalation.persist", exc)
                report.failed += 1
                continue

            report.fired.append((obligation.id, stage))
            logger.info("Sent %s for follow-up #%d", stage.value, obligation.id)
            self._audit(obligation, stage, hours_left)

    def _audit(self, obligation: Obligation, stage: EscalationStage, hours_left: float) -> None:
        try:
            self._repo.add_audit(
                obligation.id,
                f"followup_{stage.value}",
                {"hours_until_due": round(hours_left, 2), "assignee": obligation.assignee},
                actor="escalation_scanner",
            )
        except Exception as exc:
            self._recorder.record_exception(
                f"obligation:{obligation.id}:{stage.value}", "escalation.audit", exc,
            )

    async def _deliver(self, recipient: str, message: str) -> bool:
        return await deliver_with_timeout(
            self._notifier, recipient, message, self._thresholds.delivery_timeout,
        )

    async def _send(self, obligation: Obligation, stage: EscalationStage, now: datetime) -> bool:
        if stage != EscalationStage.OVERDUE:
            return await self._deliver(
                obligation.assignee, _reminder_message(obligation, stage, now),
            )

        triage = self._thresholds.triage_chat_id
        if not triage:
            logger.warning(
                "TRIAGE_CHAT_ID not set; overdue follow-up #%d only sent to assignee",
                obligation.id,
            )
            return await self._deliver(
                obligation.assignee, _assignee_overdue_message(obligation, now),
            )

        posted = await self._deliver(triage, _triage_message(obligation, now))
        if not posted:
            return False

        # Flag rides on the triage post; a failed direct notice is only recorded.
        event_id = f"obligation:{obligation.id}:overdue_dm"
        try:
            if not await self._deliver(
                obligation.assignee, _assignee_overdue_message(obligation, now),
            ):
                self._recorder.record(event_id, "escalation.delivery", detail="delivery rejected")
        except Exception as exc:
            self._recorder.record_exception(event_id, "escalation.delivery", exc)
        return True
