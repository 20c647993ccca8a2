"""Tests for src.data.db — ObligationDB, SlaTaskDB and FailureDB (SQLite storage)."""

import pytest
from datetime import datetime, timedelta, timezone

from src.data.models import (
    EscalationLedger,
    EscalationStage,
    FailureReason,
    ObligationNotFound,
    ObligationStatus,
    SlaLedger,
    SlaStage,
)

UTC = timezone.utc
DUE = datetime(2026, 10, 14, 17, 0, tzinfo=UTC)


def _create(db, assignee="111", source_ref="-100:1", **kwargs):
    return db.create(title="Follow-up: check lock", assignee=assignee, due_at=DUE,
                     source_ref=source_ref, **kwargs)


# ---------------------------------------------------------------------------
# ObligationDB
# ---------------------------------------------------------------------------


class TestObligationCreate:
    def test_create_returns_open_obligation(self, obligation_db):
        o = _create(obligation_db, priority=2, metadata={"promise_text": "check lock"})
        assert o.id is not None
        assert o.status == ObligationStatus.OPEN
        assert o.priority == 2
        assert o.due_at == DUE
        assert o.metadata["promise_text"] == "check lock"
        assert not o.ledger.any_sent()

    def test_ledger_keys_kept_out_of_evidence(self, obligation_db):
        o = _create(obligation_db, evidence={"manually_created": True})
        assert o.evidence == {"manually_created": True}

    def test_get_missing(self, obligation_db):
        assert obligation_db.get(999) is None


class TestFindOpen:
    def test_finds_by_assignee_and_source(self, obligation_db):
        o = _create(obligation_db)
        assert obligation_db.find_open("111", "-100:1").id == o.id

    def test_other_assignee_or_source(self, obligation_db):
        _create(obligation_db)
        assert obligation_db.find_open("222", "-100:1") is None
        assert obligation_db.find_open("111", "-100:2") is None

    def test_done_is_not_open(self, obligation_db):
        o = _create(obligation_db)
        obligation_db.update(o.id, status=ObligationStatus.DONE)
        assert obligation_db.find_open("111", "-100:1") is None

    @pytest.mark.parametrize("status", [
        ObligationStatus.IN_PROGRESS, ObligationStatus.WAITING, ObligationStatus.BLOCKED,
    ])
    def test_not_done_statuses_are_open(self, obligation_db, status):
        o = _create(obligation_db)
        obligation_db.update(o.id, status=status)
        assert obligation_db.find_open("111", "-100:1").id == o.id


class TestObligationUpdate:
    def test_update_ledger_round_trip(self, obligation_db):
        o = _create(obligation_db)
        ledger = EscalationLedger()
        ledger.mark_sent(EscalationStage.REMINDER_24H, DUE - timedelta(hours=20))
        updated = obligation_db.update(o.id, ledger=ledger, status=ObligationStatus.WAITING)
        assert updated.status == ObligationStatus.WAITING
        assert updated.ledger.sent_stages() == [EscalationStage.REMINDER_24H]
        assert updated.ledger.sent_at["reminder_24h_sent"] == DUE - timedelta(hours=20)

    def test_evidence_is_merged(self, obligation_db):
        o = _create(obligation_db, evidence={"a": 1})
        updated = obligation_db.update(o.id, evidence={"b": 2})
        assert updated.evidence == {"a": 1, "b": 2}

    def test_evidence_update_keeps_ledger(self, obligation_db):
        o = _create(obligation_db)
        ledger = EscalationLedger()
        ledger.mark_sent(EscalationStage.REMINDER_4H, DUE)
        obligation_db.update(o.id, ledger=ledger)
        updated = obligation_db.update(o.id, evidence={"deadline_extended": True})
        assert updated.ledger.is_sent(EscalationStage.REMINDER_4H)

    def test_metadata_is_merged(self, obligation_db):
        o = _create(obligation_db, metadata={"channel": "-100"})
        updated = obligation_db.update(o.id, metadata={"promise_text": "x"})
        assert updated.metadata == {"channel": "-100", "promise_text": "x"}

    def test_simple_fields(self, obligation_db):
        o = _create(obligation_db)
        new_due = DUE + timedelta(hours=2)
        updated = obligation_db.update(o.id, assignee="222", due_at=new_due, priority=1)
        assert updated.assignee == "222"
        assert updated.due_at == new_due
        assert updated.priority == 1

    def test_unknown_field_rejected(self, obligation_db):
        o = _create(obligation_db)
        with pytest.raises(ValueError):
            obligation_db.update(o.id, colour="red")

    def test_unknown_id(self, obligation_db):
        with pytest.raises(ObligationNotFound):
            obligation_db.update(999, status=ObligationStatus.DONE)


class TestObligationListing:
    def test_list_by_statuses_in_id_order(self, obligation_db):
        a = _create(obligation_db, source_ref="-100:1")
        b = _create(obligation_db, source_ref="-100:2")
        c = _create(obligation_db, source_ref="-100:3")
        obligation_db.update(b.id, status=ObligationStatus.DONE)
        listed = obligation_db.list_by_statuses([ObligationStatus.OPEN])
        assert [o.id for o in listed] == [a.id, c.id]

    def test_list_by_statuses_empty(self, obligation_db):
        _create(obligation_db)
        assert obligation_db.list_by_statuses([]) == []

    def test_list_by_source(self, obligation_db):
        _create(obligation_db, assignee="111")
        _create(obligation_db, assignee="222")
        _create(obligation_db, source_ref="-100:9")
        assert len(obligation_db.list_by_source("-100:1")) == 2

    def test_list_for_assignee_by_due(self, obligation_db):
        late = obligation_db.create(title="late", assignee="111", due_at=DUE + timedelta(days=1))
        early = obligation_db.create(title="early", assignee="111", due_at=DUE)
        obligation_db.create(title="other", assignee="222", due_at=DUE)
        assert [o.id for o in obligation_db.list_for_assignee("111")] == [early.id, late.id]


class TestAudits:
    def test_add_and_list(self, obligation_db):
        o = _create(obligation_db)
        obligation_db.add_audit(o.id, "follow_up_auto_created", {"kind": "specific_time"}, actor="111")
        obligation_db.add_audit(o.id, "followup_satisfied")
        audits = obligation_db.list_audits(o.id)
        assert [a.action for a in audits] == ["follow_up_auto_created", "followup_satisfied"]
        assert audits[0].data == {"kind": "specific_time"}
        assert audits[0].actor == "111"


# ---------------------------------------------------------------------------
# SlaTaskDB
# ---------------------------------------------------------------------------


class TestSlaTaskDB:
    def test_create_and_get(self, sla_db):
        task = sla_db.create("Guest locked out", assignee="111", sla_at=DUE, category="access")
        fetched = sla_db.get(task.id)
        assert fetched.title == "Guest locked out"
        assert fetched.category == "access"
        assert fetched.sla_at == DUE
        assert not fetched.ledger.any_sent()

    def test_list_for_sla_sorted_across_offsets(self, sla_db):
        plus2 = timezone(timedelta(hours=2))
        later = sla_db.create("later", sla_at=DUE)                                      # 17:00Z
        earlier = sla_db.create("earlier", sla_at=datetime(2026, 10, 14, 18, 0, tzinfo=plus2))  # 16:00Z
        assert [t.id for t in sla_db.list_for_sla()] == [earlier.id, later.id]

    def test_list_for_sla_skips_done_and_untimed(self, sla_db):
        done = sla_db.create("done", sla_at=DUE)
        sla_db.update(done.id, status=ObligationStatus.DONE)
        sla_db.create("no deadline")
        assert sla_db.list_for_sla() == []

    def test_update_ledger(self, sla_db):
        task = sla_db.create("x", sla_at=DUE)
        ledger = SlaLedger()
        ledger.mark_sent(SlaStage.NUDGE, DUE)
        updated = sla_db.update(task.id, ledger=ledger)
        assert updated.ledger.is_sent(SlaStage.NUDGE)
        assert not updated.ledger.is_sent(SlaStage.BREACH)

    def test_update_unknown(self, sla_db):
        with pytest.raises(ObligationNotFound):
            sla_db.update(42, status=ObligationStatus.DONE)

    def test_update_rejects_unknown_field(self, sla_db):
        task = sla_db.create("x")
        with pytest.raises(ValueError):
            sla_db.update(task.id, priority=1)


# ---------------------------------------------------------------------------
# FailureDB
# ---------------------------------------------------------------------------


class TestFailureDB:
    def _append(self, db, at, source="escalation.delivery"):
        return db.append(
            event_id="obligation:1:reminder_24h_sent",
            source=source,
            failure_reason=FailureReason.TIMEOUT,
            error_message="timed out",
            recovery_action="fail_open",
            created_at=at,
        )

    def test_append_and_count(self, failure_db):
        self._append(failure_db, DUE)
        self._append(failure_db, DUE - timedelta(hours=2))
        assert failure_db.count_since(DUE - timedelta(hours=1)) == 1

    def test_list_since_newest_first(self, failure_db):
        self._append(failure_db, DUE - timedelta(minutes=30), source="old")
        self._append(failure_db, DUE, source="new")
        records = failure_db.list_since(DUE - timedelta(hours=1))
        assert [r.source for r in records] == ["new", "old"]
        assert records[0].failure_reason == FailureReason.TIMEOUT

    def test_delete_before(self, failure_db):
        self._append(failure_db, DUE - timedelta(days=40))
        self._append(failure_db, DUE)
        assert failure_db.delete_before(DUE - timedelta(days=30)) == 1
        assert failure_db.count_since(DUE - timedelta(days=365)) == 1
