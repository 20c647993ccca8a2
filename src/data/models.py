"""
Promise Keeper — Data Models.

Obligations are commitments people made in chat ("I'll check and get back
to you by 5pm"), persisted with a computed due time and a stage ledger
recording which escalation reminders have already gone out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar


class ObligationStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING = "WAITING"
    BLOCKED = "BLOCKED"
    DONE = "DONE"


# Statuses the escalation scanner and SLA monitor look at.
SCANNABLE_STATUSES = (
    ObligationStatus.OPEN,
    ObligationStatus.IN_PROGRESS,
    ObligationStatus.WAITING,
)

# Anything not DONE counts as open for duplicate detection.
ACTIVE_STATUSES = SCANNABLE_STATUSES + (ObligationStatus.BLOCKED,)


class TimeframeKind(str, Enum):
    SPECIFIC_TIME = "specific_time"
    END_OF_DAY = "end_of_day"
    TOMORROW = "tomorrow"
    TODAY = "today"
    LATER_TODAY = "later_today"
    IN_MINUTES = "in_minutes"
    IN_HOURS = "in_hours"
    IN_DAYS = "in_days"
    NEXT_WEEK = "next_week"
    THIS_WEEK = "this_week"
    SPECIFIC_DAY = "specific_day"
    FEW_MINUTES = "few_minutes"
    FEW_HOURS = "few_hours"
    WITHIN = "within"
    DEFAULT = "default"


class TimeUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class EscalationStage(str, Enum):
    """Follow-up ladder. Values double as persisted evidence keys."""

    REMINDER_24H = "reminder_24h_sent"
    REMINDER_4H = "reminder_4h_sent"
    REMINDER_1H = "reminder_1h_sent"
    OVERDUE = "overdue_escalated"


class SlaStage(str, Enum):
    NUDGE = "sla_nudge_sent"
    BREACH = "sla_breach_escalated"


class FailureReason(str, Enum):
    DATABASE_ERROR = "database_error"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    QUERY_ERROR = "query_error"
    UNKNOWN = "unknown"


class ObligationNotFound(LookupError):
    """Raised when an obligation or SLA task id does not exist."""


# ---------------------------------------------------------------------------
# Stage ledger
# ---------------------------------------------------------------------------


@dataclass
class StageLedger:
    """Fixed set of named (sent, sent_at) pairs: the idempotency ledger.

    Subclasses pin the stage enumeration. Only known stages can be marked,
    and only known keys are read back from stored evidence.
    """

    STAGES: ClassVar[tuple[Enum, ...]] = ()

    sent_at: dict[str, datetime | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        known = {s.value for s in self.STAGES}
        unknown = set(self.sent_at) - known
        if unknown:
            raise ValueError(f"Unknown stages for {type(self).__name__}: {sorted(unknown)}")
        for stage in self.STAGES:
            self.sent_at.setdefault(stage.value, None)

    def _key(self, stage: Enum) -> str:
        if stage not in self.STAGES:
            raise ValueError(f"{stage!r} is not a stage of {type(self).__name__}")
        return stage.value

    def is_sent(self, stage: Enum) -> bool:
        return self.sent_at[self._key(stage)] is not None

    def mark_sent(self, stage: Enum, at: datetime) -> None:
        key = self._key(stage)
        if self.sent_at[key] is None:
            self.sent_at[key] = at

    def sent_stages(self) -> list[Enum]:
        return [s for s in self.STAGES if self.sent_at[s.value] is not None]

    def any_sent(self) -> bool:
        return any(v is not None for v in self.sent_at.values())

    def to_evidence(self) -> dict[str, Any]:
        """Flatten to the stable `<stage>` / `<stage>_at` evidence keys."""
        out: dict[str, Any] = {}
        for stage in self.STAGES:
            at = self.sent_at[stage.value]
            out[stage.value] = at is not None
            out[f"{stage.value}_at"] = at.isoformat() if at else None
        return out

    @classmethod
    def from_evidence(cls, evidence: dict[str, Any] | None) -> StageLedger:
        evidence = evidence or {}
        sent_at: dict[str, datetime | None] = {}
        for stage in cls.STAGES:
            if not evidence.get(stage.value):
                continue
            raw = evidence.get(f"{stage.value}_at")
            # A flag without a timestamp still counts as sent.
            sent_at[stage.value] = (
                datetime.fromisoformat(raw) if raw else datetime.min
            )
        return cls(sent_at=sent_at)

    @classmethod
    def evidence_keys(cls) -> set[str]:
        keys = set()
        for stage in cls.STAGES:
            keys.add(stage.value)
            keys.add(f"{stage.value}_at")
        return keys


@dataclass
class EscalationLedger(StageLedger):
    STAGES: ClassVar[tuple[Enum, ...]] = tuple(EscalationStage)


@dataclass
class SlaLedger(StageLedger):
    STAGES: ClassVar[tuple[Enum, ...]] = tuple(SlaStage)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Obligation:
    """A tracked commitment with a computed due date and escalation ledger."""

    id: int
    title: str
    assignee: str                      # chat-platform user id of the promiser
    due_at: datetime | None
    status: ObligationStatus = ObligationStatus.OPEN
    priority: int = 4                  # 1 = highest
    source_ref: str | None = None      # "<chat_id>:<message_id>" of thread root
    source_url: str | None = None
    ledger: EscalationLedger = field(default_factory=EscalationLedger)
    evidence: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = "manual"
    created_at: str = ""

    @property
    def promise_text(self) -> str:
        return self.metadata.get("promise_text") or self.title


@dataclass
class SlaTask:
    """An operational task with a first-response deadline."""

    id: int
    title: str
    status: ObligationStatus = ObligationStatus.OPEN
    assignee: str | None = None
    sla_at: datetime | None = None
    category: str = "general"
    escalate_to: str | None = None     # overrides TRIAGE_CHAT_ID
    ledger: SlaLedger = field(default_factory=SlaLedger)
    created_at: str = ""


@dataclass
class AuditEntry:
    id: int
    obligation_id: int
    action: str
    actor: str | None
    data: dict[str, Any]
    created_at: str


@dataclass
class FailureRecord:
    """One monitoring/delivery/persistence failure. Append-only."""

    id: int
    event_id: str
    source: str
    failure_reason: FailureReason
    error_message: str | None
    recovery_action: str
    created_at: datetime
