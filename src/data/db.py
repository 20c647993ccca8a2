"""
Promise Keeper — SQLite storage.

Obligations, SLA tasks, their audit trail and the failure log persist in
SQLite across restarts. Stage flags live inside each row's evidence JSON
under stable keys (`reminder_24h_sent`, `reminder_24h_sent_at`, ...);
those keys are the idempotency ledger.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from src.data.models import (
    ACTIVE_STATUSES,
    AuditEntry,
    EscalationLedger,
    FailureReason,
    FailureRecord,
    Obligation,
    ObligationNotFound,
    ObligationStatus,
    SlaLedger,
    SlaTask,
)

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dt_to_str(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _str_to_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _utc_key(dt: datetime) -> str:
    """Fixed-width UTC string so SQLite text comparison orders correctly."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class _SQLiteDB:
    """Connection handling shared by the stores below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


class ObligationDB(_SQLiteDB):
    """SQLite-backed obligation repository, plus the obligation audit trail."""

    _SIMPLE_FIELDS = ("title", "assignee", "priority", "source_url")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS obligations (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    title       TEXT    NOT NULL,
                    assignee    TEXT    NOT NULL,
                    status      TEXT    NOT NULL DEFAULT 'OPEN',
                    priority    INTEGER NOT NULL DEFAULT 4,
                    due_at      TEXT,
                    source_ref  TEXT,
                    source_url  TEXT,
                    evidence    TEXT    NOT NULL DEFAULT '{}',
                    metadata    TEXT    NOT NULL DEFAULT '{}',
                    created_by  TEXT    NOT NULL DEFAULT 'manual',
                    created_at  TEXT    NOT NULL,
                    updated_at  TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_obligations_owner_source
                ON obligations (assignee, source_ref, status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audits (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    obligation_id INTEGER NOT NULL,
                    action        TEXT    NOT NULL,
                    actor         TEXT,
                    data          TEXT    NOT NULL DEFAULT '{}',
                    created_at    TEXT    NOT NULL
                )
            """)
        logger.debug("Obligations table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_obligation(row: sqlite3.Row) -> Obligation:
        evidence = json.loads(row["evidence"] or "{}")
        ledger = EscalationLedger.from_evidence(evidence)
        for key in EscalationLedger.evidence_keys():
            evidence.pop(key, None)
        return Obligation(
            id=row["id"],
            title=row["title"],
            assignee=row["assignee"],
            due_at=_str_to_dt(row["due_at"]),
            status=ObligationStatus(row["status"]),
            priority=row["priority"],
            source_ref=row["source_ref"],
            source_url=row["source_url"],
            ledger=ledger,
            evidence=evidence,
            metadata=json.loads(row["metadata"] or "{}"),
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def create(
        self,
        title: str,
        assignee: str,
        due_at: datetime | None,
        *,
        priority: int = 4,
        source_ref: str | None = None,
        source_url: str | None = None,
        evidence: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str = "manual",
    ) -> Obligation:
        """Insert a new OPEN obligation with an empty stage ledger."""
        now = _utc_now()
        stored_evidence = {**(evidence or {}), **EscalationLedger().to_evidence()}
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO obligations
                    (title, assignee, status, priority, due_at, source_ref,
                     source_url, evidence, metadata, created_by, created_at, updated_at)
                VALUES (?, ?, 'OPEN', ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title, assignee, priority, _dt_to_str(due_at), source_ref,
                    source_url, json.dumps(stored_evidence, default=str),
                    json.dumps(metadata or {}, default=str), created_by, now, now,
                ),
            )
            obligation_id = cursor.lastrowid

        logger.info("Obligation added: #%d '%s' for %s", obligation_id, title, assignee)
        return self.get(obligation_id)

    def get(self, obligation_id: int) -> Obligation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM obligations WHERE id = ?", (obligation_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_obligation(row)

    def find_open(self, assignee: str, source_ref: str) -> Obligation | None:
        """Return the not-yet-done obligation for (assignee, source_ref), if any."""
        statuses = [s.value for s in ACTIVE_STATUSES]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM obligations
                WHERE assignee = ? AND source_ref = ?
                  AND status IN ({_placeholders(len(statuses))})
                ORDER BY id LIMIT 1
                """,
                (assignee, source_ref, *statuses),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_obligation(row)

    def list_by_statuses(
        self, statuses: Sequence[ObligationStatus],
    ) -> list[Obligation]:
        values = [ObligationStatus(s).value for s in statuses]
        if not values:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM obligations WHERE status IN ({_placeholders(len(values))}) "
                "ORDER BY id",
                values,
            ).fetchall()
        return [self._row_to_obligation(r) for r in rows]

    def list_by_source(
        self, source_ref: str, statuses: Sequence[ObligationStatus] = ACTIVE_STATUSES,
    ) -> list[Obligation]:
        """Obligations anchored to a message or thread."""
        values = [ObligationStatus(s).value for s in statuses]
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM obligations
                WHERE source_ref = ? AND status IN ({_placeholders(len(values))})
                ORDER BY id
                """,
                (source_ref, *values),
            ).fetchall()
        return [self._row_to_obligation(r) for r in rows]

    def list_for_assignee(
        self, assignee: str, statuses: Sequence[ObligationStatus] = ACTIVE_STATUSES,
    ) -> list[Obligation]:
        values = [ObligationStatus(s).value for s in statuses]
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM obligations
                WHERE assignee = ? AND status IN ({_placeholders(len(values))})
                ORDER BY due_at
                """,
                (assignee, *values),
            ).fetchall()
        return [self._row_to_obligation(r) for r in rows]

    def update(self, obligation_id: int, **changes: Any) -> Obligation:
        """Apply a partial update.

        Accepted keys: title, assignee, priority, source_url, status, due_at,
        ledger (stage flags merged in), evidence and metadata (dicts merged
        into the stored ones). Raises ObligationNotFound for unknown ids.
        """
        unknown = set(changes) - {
            *self._SIMPLE_FIELDS, "status", "due_at", "ledger", "evidence", "metadata",
        }
        if unknown:
            raise ValueError(f"Unknown obligation fields: {sorted(unknown)}")

        with self._connect() as conn:
            row = conn.execute(
                "SELECT evidence, metadata FROM obligations WHERE id = ?",
                (obligation_id,),
            ).fetchone()
            if row is None:
                raise ObligationNotFound(f"Obligation {obligation_id} not found")

            columns: dict[str, Any] = {
                k: changes[k] for k in self._SIMPLE_FIELDS if k in changes
            }
            if "status" in changes:
                columns["status"] = ObligationStatus(changes["status"]).value
            if "due_at" in changes:
                columns["due_at"] = _dt_to_str(changes["due_at"])

            if "evidence" in changes or "ledger" in changes:
                evidence = json.loads(row["evidence"] or "{}")
                evidence.update(changes.get("evidence") or {})
                if changes.get("ledger") is not None:
                    evidence.update(changes["ledger"].to_evidence())
                columns["evidence"] = json.dumps(evidence, default=str)
            if "metadata" in changes:
                metadata = json.loads(row["metadata"] or "{}")
                metadata.update(changes["metadata"] or {})
                columns["metadata"] = json.dumps(metadata, default=str)

            columns["updated_at"] = _utc_now()
            assignments = ", ".join(f"{col} = ?" for col in columns)
            conn.execute(
                f"UPDATE obligations SET {assignments} WHERE id = ?",
                (*columns.values(), obligation_id),
            )

        logger.debug("Obligation #%d updated: %s", obligation_id, sorted(changes))
        return self.get(obligation_id)

    def add_audit(
        self,
        obligation_id: int,
        action: str,
        data: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audits (obligation_id, action, actor, data, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (obligation_id, action, actor, json.dumps(data or {}, default=str), _utc_now()),
            )

    def list_audits(self, obligation_id: int) -> list[AuditEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audits WHERE obligation_id = ? ORDER BY id",
                (obligation_id,),
            ).fetchall()
        return [
            AuditEntry(
                id=r["id"],
                obligation_id=r["obligation_id"],
                action=r["action"],
                actor=r["actor"],
                data=json.loads(r["data"] or "{}"),
                created_at=r["created_at"],
            )
            for r in rows
        ]


class SlaTaskDB(_SQLiteDB):
    """SQLite-backed storage for operational tasks with a first-response SLA."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sla_tasks (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    title       TEXT NOT NULL,
                    category    TEXT NOT NULL DEFAULT 'general',
                    status      TEXT NOT NULL DEFAULT 'OPEN',
                    assignee    TEXT,
                    sla_at      TEXT,
                    escalate_to TEXT,
                    evidence    TEXT NOT NULL DEFAULT '{}',
                    created_at  TEXT NOT NULL
                )
            """)
        logger.debug("SLA tasks table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> SlaTask:
        return SlaTask(
            id=row["id"],
            title=row["title"],
            category=row["category"],
            status=ObligationStatus(row["status"]),
            assignee=row["assignee"],
            sla_at=_str_to_dt(row["sla_at"]),
            escalate_to=row["escalate_to"],
            ledger=SlaLedger.from_evidence(json.loads(row["evidence"] or "{}")),
            created_at=row["created_at"],
        )

    def create(
        self,
        title: str,
        assignee: str | None = None,
        sla_at: datetime | None = None,
        category: str = "general",
        escalate_to: str | None = None,
    ) -> SlaTask:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sla_tasks
                    (title, category, status, assignee, sla_at, escalate_to, evidence, created_at)
                VALUES (?, ?, 'OPEN', ?, ?, ?, ?, ?)
                """,
                (
                    title, category, assignee, _dt_to_str(sla_at), escalate_to,
                    json.dumps(SlaLedger().to_evidence()), _utc_now(),
                ),
            )
            task_id = cursor.lastrowid
        logger.info("SLA task added: #%d '%s'", task_id, title)
        return self.get(task_id)

    def get(self, task_id: int) -> SlaTask | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sla_tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_for_sla(self) -> list[SlaTask]:
        """Open/in-progress tasks that carry an SLA deadline, earliest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sla_tasks "
                "WHERE status IN ('OPEN', 'IN_PROGRESS') AND sla_at IS NOT NULL"
            ).fetchall()
        tasks = [self._row_to_task(r) for r in rows]
        tasks.sort(key=lambda t: _utc_key(t.sla_at))
        return tasks

    def update(self, task_id: int, **changes: Any) -> SlaTask:
        """Partial update: status, assignee, sla_at, escalate_to, ledger."""
        unknown = set(changes) - {"status", "assignee", "sla_at", "escalate_to", "ledger"}
        if unknown:
            raise ValueError(f"Unknown SLA task fields: {sorted(unknown)}")

        with self._connect() as conn:
            row = conn.execute(
                "SELECT evidence FROM sla_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if row is None:
                raise ObligationNotFound(f"SLA task {task_id} not found")

            columns: dict[str, Any] = {}
            if "status" in changes:
                columns["status"] = ObligationStatus(changes["status"]).value
            if "assignee" in changes:
                columns["assignee"] = changes["assignee"]
            if "sla_at" in changes:
                columns["sla_at"] = _dt_to_str(changes["sla_at"])
            if "escalate_to" in changes:
                columns["escalate_to"] = changes["escalate_to"]
            if changes.get("ledger") is not None:
                evidence = json.loads(row["evidence"] or "{}")
                evidence.update(changes["ledger"].to_evidence())
                columns["evidence"] = json.dumps(evidence)
            if not columns:
                return self.get(task_id)

            assignments = ", ".join(f"{col} = ?" for col in columns)
            conn.execute(
                f"UPDATE sla_tasks SET {assignments} WHERE id = ?",
                (*columns.values(), task_id),
            )
        return self.get(task_id)


class FailureDB(_SQLiteDB):
    """Append-only failure log read by the health check."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS failures (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id        TEXT NOT NULL,
                    source          TEXT NOT NULL,
                    failure_reason  TEXT NOT NULL,
                    error_message   TEXT,
                    recovery_action TEXT NOT NULL DEFAULT 'fail_open',
                    created_at      TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_failures_created ON failures (created_at)"
            )
        logger.debug("Failures table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> FailureRecord:
        return FailureRecord(
            id=row["id"],
            event_id=row["event_id"],
            source=row["source"],
            failure_reason=FailureReason(row["failure_reason"]),
            error_message=row["error_message"],
            recovery_action=row["recovery_action"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def append(
        self,
        event_id: str,
        source: str,
        failure_reason: FailureReason,
        error_message: str | None,
        recovery_action: str,
        created_at: datetime,
    ) -> FailureRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO failures
                    (event_id, source, failure_reason, error_message, recovery_action, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id, source, FailureReason(failure_reason).value,
                    error_message, recovery_action, _utc_key(created_at),
                ),
            )
            record_id = cursor.lastrowid
        return FailureRecord(
            id=record_id,
            event_id=event_id,
            source=source,
            failure_reason=FailureReason(failure_reason),
            error_message=error_message,
            recovery_action=recovery_action,
            created_at=created_at,
        )

    def count_since(self, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM failures WHERE created_at >= ?", (_utc_key(since),)
            ).fetchone()
        return int(row[0])

    def list_since(self, since: datetime, limit: int = 100) -> list[FailureRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM failures WHERE created_at >= ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (_utc_key(since), limit),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def delete_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM failures WHERE created_at < ?", (_utc_key(cutoff),)
            )
        deleted = cursor.rowcount
        logger.info("Pruned %d failure records older than %s", deleted, cutoff.isoformat())
        return deleted
