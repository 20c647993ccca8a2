"""
Promise Keeper — SLA Monitor.

Operational tasks carry a first-response deadline (`sla_at`). Each tick:

- Nudge: a task whose deadline is exactly SLA_NUDGE_MINUTES_BEFORE minutes
  away (whole minutes) gets one nudge to its assignee. The `sla_nudge_sent`
  flag guards against a second nudge when two ticks land in the same minute.
- Breach: any task past its deadline and not done counts as breached on
  every tick. The escalation for a breach fires once, guarded by its own
  `sla_breach_escalated` flag.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from src.core.due_date import localize
from src.core.escalation import deliver_with_timeout, hours_until
from src.data.models import ObligationStatus, SlaLedger, SlaStage, SlaTask

if TYPE_CHECKING:
    from src.core.failures import FailureRecorder
    from src.ports.clock_port import Clock
    from src.ports.notification_port import NotificationPort
    from src.ports.obligation_port import SlaTaskRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlaRules:
    nudge_minutes_before: int = 5
    default_sla_minutes: int = 10
    triage_chat_id: str = ""
    delivery_timeout: float = 10

    @classmethod
    def from_settings(cls, settings=None) -> SlaRules:
        if settings is None:
            from src.config import settings
        return cls(
            nudge_minutes_before=settings.SLA_NUDGE_MINUTES_BEFORE,
            default_sla_minutes=settings.DEFAULT_SLA_MINUTES,
            triage_chat_id=settings.TRIAGE_CHAT_ID,
            delivery_timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )


@dataclass
class SlaTickReport:
    nudged: list[int] = field(default_factory=list)
    breached: list[int] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)
    failed: int = 0


def minutes_until(sla_at: datetime, now: datetime) -> int:
    """Whole minutes until the deadline, floored (negative once past)."""
    return math.floor((localize(sla_at, now) - now).total_seconds() / 60)


class SlaMonitor:
    """Pre-deadline nudges and breach escalation for operational tasks."""

    def __init__(
        self,
        repository: SlaTaskRepository,
        notifier: NotificationPort,
        clock: Clock,
        recorder: FailureRecorder,
        rules: SlaRules | None = None,
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._clock = clock
        self._recorder = recorder
        self._rules = rules or SlaRules.from_settings()

    def start_sla_timer(self, task_id: int, minutes: int | None = None) -> SlaTask:
        """Set sla_at = now + minutes and clear both stage flags."""
        minutes = minutes or self._rules.default_sla_minutes
        sla_at = self._clock.now() + timedelta(minutes=minutes)
        task = self._repo.update(task_id, sla_at=sla_at, ledger=SlaLedger())
        logger.info("SLA timer started for task #%d: due %s", task_id, sla_at.isoformat())
        return task

    def _load(self) -> list[SlaTask] | None:
        try:
            return self._repo.list_for_sla()
        except Exception as exc:
            self._recorder.record_exception("sla_tick", "sla.load", exc)
            return None

    def breached_tasks(self, tasks: list[SlaTask] | None = None) -> list[SlaTask]:
        """Tasks past their deadline and not done, evaluated against now."""
        now = self._clock.now()
        if tasks is None:
            tasks = self._load() or []
        return [
            t for t in tasks
            if t.sla_at is not None
            and t.status != ObligationStatus.DONE
            and hours_until(t.sla_at, now) <= 0
        ]

    async def _deliver(self, recipient: str, message: str, event_id: str) -> bool:
        try:
            delivered = await deliver_with_timeout(
                self._notifier, recipient, message, self._rules.delivery_timeout,
            )
        except Exception as exc:
            self._recorder.record_exception(event_id, "sla.delivery", exc)
            return False
        if not delivered:
            self._recorder.record(event_id, "sla.delivery", detail="delivery rejected")
        return delivered

    def _persist(self, task: SlaTask, stage: SlaStage, now: datetime) -> bool:
        task.ledger.mark_sent(stage, now)
        try:
            self._repo.update(task.id, ledger=task.ledger)
        except Exception as exc:
            self._recorder.record_exception(f"sla_task:{task.id}:{stage.value}", "sla.persist", exc)
            return False
        return True

    async def check_nudges(self, tasks: list[SlaTask], report: SlaTickReport) -> None:
        now = self._clock.now()
        for task in tasks:
            if task.sla_at is None or task.ledger.is_sent(SlaStage.NUDGE):
                continue
            if minutes_until(task.sla_at, now) != self._rules.nudge_minutes_before:
                continue
            if not task.assignee:
                logger.debug("SLA task #%d has no assignee to nudge", task.id)
                continue

            event_id = f"sla_task:{task.id}:{SlaStage.NUDGE.value}"
            message = (
                f"⏳ SLA reminder: \"{task.title}\" needs a first response within "
                f"{self._rules.nudge_minutes_before} minutes.\n"
                f"Task ID: {task.id}"
            )
            if not await self._deliver(task.assignee, message, event_id):
                report.failed += 1
                continue
            if self._persist(task, SlaStage.NUDGE, now):
                report.nudged.append(task.id)
            else:
                report.failed += 1

    async def check_breaches(self, tasks: list[SlaTask], report: SlaTickReport) -> None:
        now = self._clock.now()
        for task in self.breached_tasks(tasks):
            report.breached.append(task.id)
            if task.ledger.is_sent(SlaStage.BREACH):
                continue

            recipient = task.escalate_to or self._rules.triage_chat_id or task.assignee
            if not recipient:
                logger.warning("SLA breach on task #%d has nobody to notify", task.id)
                continue

            event_id = f"sla_task:{task.id}:{SlaStage.BREACH.value}"
            late = max(-minutes_until(task.sla_at, now), 0)
            message = (
                f"🔴 SLA breached: \"{task.title}\" ({task.category})\n"
                f"Assignee: {task.assignee or 'unassigned'}\n"
                f"Deadline passed {late} minutes ago.\n"
                f"Task ID: {task.id}"
            )
            if not await self._deliver(recipient, message, event_id):
                report.failed += 1
                continue
            if self._persist(task, SlaStage.BREACH, now):
                report.escalated.append(task.id)
            else:
                report.failed += 1

    async def tick(self) -> SlaTickReport:
        """One monitor pass. Never raises."""
        report = SlaTickReport()
        tasks = self._load()
        if tasks is None:
            report.failed += 1
            return report

        for check in (self.check_nudges, self.check_breaches):
            try:
                await check(tasks, report)
            except Exception as exc:
                self._recorder.record_exception("sla_tick", f"sla.{check.__name__}", exc)
                report.failed += 1

        if report.breached:
            logger.warning("%d SLA task(s) currently breached", len(report.breached))
        return report
