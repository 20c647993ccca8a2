"""Storage ports — the narrow persistence interfaces the engine relies on.

Implemented by the SQLite classes in src.data.db; tests may substitute
in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from src.data.models import (
    FailureReason,
    FailureRecord,
    Obligation,
    ObligationStatus,
    SlaTask,
)


class ObligationRepository(Protocol):
    def find_open(self, assignee: str, source_ref: str) -> Obligation | None: ...

    def get(self, obligation_id: int) -> Obligation | None: ...

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
    ) -> Obligation: ...

    def update(self, obligation_id: int, **changes: Any) -> Obligation: ...

    def list_by_statuses(
        self, statuses: Sequence[ObligationStatus],
    ) -> list[Obligation]: ...

    def add_audit(
        self,
        obligation_id: int,
        action: str,
        data: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> None: ...


class SlaTaskRepository(Protocol):
    def get(self, task_id: int) -> SlaTask | None: ...

    def list_for_sla(self) -> list[SlaTask]: ...

    def update(self, task_id: int, **changes: Any) -> SlaTask: ...


class FailureStore(Protocol):
    def append(
        self,
        event_id: str,
        source: str,
        failure_reason: FailureReason,
        error_message: str | None,
        recovery_action: str,
        created_at: datetime,
    ) -> FailureRecord: ...

    def count_since(self, since: datetime) -> int: ...

    def list_since(self, since: datetime, limit: int = 100) -> list[FailureRecord]: ...

    def delete_before(self, cutoff: datetime) -> int: ...
