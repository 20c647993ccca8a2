"""Tests for src.core.sla — SLA timer, pre-deadline nudge and breach escalation."""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from src.core.sla import SlaMonitor, SlaRules, minutes_until
from src.data.models import ObligationNotFound, ObligationStatus, SlaStage

TRIAGE = "-100999"


@pytest.fixture
def monitor(sla_db, notifier, clock, recorder):
    rules = SlaRules(nudge_minutes_before=5, default_sla_minutes=10, triage_chat_id=TRIAGE, delivery_timeout=1)
    return SlaMonitor(sla_db, notifier, clock, recorder, rules)


def _task(db, clock, delta, **kwargs):
    kwargs.setdefault("assignee", "111")
    return db.create("Guest locked out", sla_at=clock.now() + delta, **kwargs)


class TestMinutesUntil:
    def test_floors(self, clock):
        now = clock.now()
        assert minutes_until(now + timedelta(minutes=5), now) == 5
        assert minutes_until(now + timedelta(minutes=5, seconds=59), now) == 5
        assert minutes_until(now + timedelta(minutes=4, seconds=59), now) == 4
        assert minutes_until(now - timedelta(seconds=30), now) == -1


class TestStartSlaTimer:
    def test_default_minutes(self, monitor, sla_db, clock):
        task = sla_db.create("Guest locked out", assignee="111")
        started = monitor.start_sla_timer(task.id)
        assert started.sla_at == clock.now() + timedelta(minutes=10)

    def test_explicit_minutes_and_reset_flags(self, monitor, sla_db, clock):
        task = _task(sla_db, clock, timedelta(minutes=-1))
        sla_db.update(task.id, ledger=_sent(task.ledger, SlaStage.BREACH, clock))
        restarted = monitor.start_sla_timer(task.id, minutes=30)
        assert restarted.sla_at == clock.now() + timedelta(minutes=30)
        assert not restarted.ledger.any_sent()

    def test_unknown_task(self, monitor):
        with pytest.raises(ObligationNotFound):
            monitor.start_sla_timer(404)


def _sent(ledger, stage, clock):
    ledger.mark_sent(stage, clock.now())
    return ledger


class TestNudge:
    @pytest.mark.asyncio
    async def test_nudge_on_exact_minute(self, monitor, sla_db, clock, notifier):
        task = _task(sla_db, clock, timedelta(minutes=5, seconds=20))
        report = await monitor.tick()
        assert report.nudged == [task.id]
        assert notifier.deliver.call_args.args[0] == "111"
        assert sla_db.get(task.id).ledger.is_sent(SlaStage.NUDGE)

    @pytest.mark.asyncio
    async def test_no_nudge_outside_the_minute(self, monitor, sla_db, clock, notifier):
        _task(sla_db, clock, timedelta(minutes=6, seconds=1))
        _task(sla_db, clock, timedelta(minutes=4, seconds=59))
        report = await monitor.tick()
        assert report.nudged == []
        notifier.deliver.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_tick_in_same_minute_does_not_renudge(self, monitor, sla_db, clock, notifier):
        _task(sla_db, clock, timedelta(minutes=5, seconds=50))
        await monitor.tick()
        clock.advance(seconds=20)
        report = await monitor.tick()
        assert report.nudged == []
        assert notifier.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_nudge_not_flagged(self, monitor, sla_db, clock, notifier):
        task = _task(sla_db, clock, timedelta(minutes=5))
        notifier.deliver = AsyncMock(return_value=False)
        report = await monitor.tick()
        assert report.failed == 1
        assert not sla_db.get(task.id).ledger.is_sent(SlaStage.NUDGE)

    @pytest.mark.asyncio
    async def test_unassigned_task_not_nudged(self, monitor, sla_db, clock, notifier):
        _task(sla_db, clock, timedelta(minutes=5), assignee=None)
        report = await monitor.tick()
        assert report.nudged == []
        notifier.deliver.assert_not_called()


class TestBreach:
    @pytest.mark.asyncio
    async def test_breach_counted_every_tick_escalated_once(self, monitor, sla_db, clock, notifier):
        task = _task(sla_db, clock, timedelta(minutes=-2))
        first = await monitor.tick()
        assert first.breached == [task.id]
        assert first.escalated == [task.id]
        assert notifier.deliver.call_args.args[0] == TRIAGE

        clock.advance(minutes=1)
        second = await monitor.tick()
        assert second.breached == [task.id]
        assert second.escalated == []
        assert notifier.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_escalate_to_overrides_triage(self, monitor, sla_db, clock, notifier):
        _task(sla_db, clock, timedelta(minutes=-2), escalate_to="-100555")
        await monitor.tick()
        assert notifier.deliver.call_args.args[0] == "-100555"

    @pytest.mark.asyncio
    async def test_breach_flag_separate_from_nudge(self, monitor, sla_db, clock):
        task = _task(sla_db, clock, timedelta(minutes=5))
        await monitor.tick()
        clock.advance(minutes=6)
        report = await monitor.tick()
        assert report.escalated == [task.id]
        ledger = sla_db.get(task.id).ledger
        assert ledger.is_sent(SlaStage.NUDGE)
        assert ledger.is_sent(SlaStage.BREACH)

    @pytest.mark.asyncio
    async def test_done_task_not_breached(self, monitor, sla_db, clock):
        task = _task(sla_db, clock, timedelta(minutes=-2))
        sla_db.update(task.id, status=ObligationStatus.DONE)
        report = await monitor.tick()
        assert report.breached == []

    @pytest.mark.asyncio
    async def test_failed_escalation_retried(self, monitor, sla_db, clock, notifier, recorder):
        task = _task(sla_db, clock, timedelta(minutes=-2))
        notifier.deliver = AsyncMock(side_effect=ConnectionError("connection reset"))
        report = await monitor.tick()
        assert report.escalated == []
        assert recorder.stats().by_reason == {"connection_error": 1}

        notifier.deliver = AsyncMock(return_value=True)
        retry = await monitor.tick()
        assert retry.escalated == [task.id]

    def test_breached_tasks_computed_from_now(self, monitor, sla_db, clock):
        task = _task(sla_db, clock, timedelta(minutes=1))
        assert monitor.breached_tasks() == []
        clock.advance(minutes=1)
        assert [t.id for t in monitor.breached_tasks()] == [task.id]
