"""
Promise Keeper — Follow-up lifecycle.

Turns detected commitments into obligations and applies the external
triggers that move them along: satisfaction (manual, thread update,
reaction), deadline extension and ownership transfer.

Writes to the repository are the business action; acknowledgements,
audit entries and courtesy notifications are side effects that fail open
into the FailureRecorder and never roll the write back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from src.core.due_date import (
    DueDateRules,
    calculate_due_date,
    determine_priority,
    format_due_date,
    localize,
)
from src.core.escalation import deliver_with_timeout
from src.core.matcher import (
    extract_promise_text,
    find_commitment,
    is_completion_reaction,
    is_completion_update,
)
from src.core.timeframe import resolve_timeframe
from src.data.models import (
    ACTIVE_STATUSES,
    Obligation,
    ObligationNotFound,
    ObligationStatus,
)

if TYPE_CHECKING:
    from src.core.failures import FailureRecorder
    from src.core.patterns import CompiledPatterns
    from src.ports.clock_port import Clock
    from src.ports.notification_port import NotificationPort
    from src.ports.obligation_port import ObligationRepository

logger = logging.getLogger(__name__)

_MANUAL_DEFAULT_DUE = timedelta(hours=24)
_MANUAL_DEFAULT_PRIORITY = 2


class ExternalEvent(BaseModel):
    """An obligation request from a third-party integration.

    JSON example:
    {
        "title": "Guest reports broken lock",
        "assignee": "481516",
        "source_ref": "conduit:thread-2342",
        "source_kind": "conduit",
        "text": "Please check the lock within 2 hours"
    }

    `due_at` wins over `text`; with neither, the default horizon applies.
    """
    title: str
    assignee: str
    source_ref: str
    source_kind: str = "external"
    source_url: str | None = None
    due_at: datetime | None = None
    text: str | None = None


@dataclass
class DetectionResult:
    """Outcome of the detection pipeline for one message."""

    outcome: str                       # "created" | "duplicate" | "no_commitment" | "failed"
    obligation: Obligation | None = None

    @property
    def created(self) -> bool:
        return self.outcome == "created"


class FollowUpService:
    """Creates obligations and applies lifecycle transitions to them."""

    def __init__(
        self,
        repository: ObligationRepository,
        notifier: NotificationPort,
        clock: Clock,
        recorder: FailureRecorder,
        rules: DueDateRules | None = None,
        patterns: CompiledPatterns | None = None,
        delivery_timeout: float | None = None,
    ) -> None:
        if delivery_timeout is None:
            from src.config import settings
            delivery_timeout = settings.DELIVERY_TIMEOUT_SECONDS

        self._repo = repository
        self._notifier = notifier
        self._clock = clock
        self._recorder = recorder
        self._rules = rules or DueDateRules.from_settings()
        self._patterns = patterns
        self._timeout = delivery_timeout

    # -- side effects (fail-open) ----------------------------------------

    def _audit(
        self, obligation_id: int, action: str,
        data: dict[str, Any] | None = None, actor: str | None = None,
    ) -> None:
        try:
            self._repo.add_audit(obligation_id, action, data, actor=actor)
        except Exception as exc:
            self._recorder.record_exception(
                f"obligation:{obligation_id}:{action}", "followup.audit", exc,
            )

    async def _notify(self, recipient: str | None, message: str, event_id: str) -> bool:
        if not recipient:
            return False
        try:
            delivered = await deliver_with_timeout(
                self._notifier, recipient, message, self._timeout,
            )
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.notify", exc)
            return False
        if not delivered:
            self._recorder.record(event_id, "followup.notify", detail="delivery rejected")
        return delivered

    async def _acknowledge(self, obligation: Obligation, now: datetime) -> None:
        if not obligation.source_ref:
            return
        text = (
            f"⏰ Follow-up detected! I'll remind you "
            f"{format_due_date(obligation.due_at, now)} if no update is provided.\n\n"
            f"Promise: \"{obligation.promise_text}\"\n"
            f"Follow-up ID: {obligation.id}"
        )
        event_id = f"obligation:{obligation.id}:acknowledge"
        try:
            acknowledged = await asyncio.wait_for(
                self._notifier.acknowledge(obligation.source_ref, text), self._timeout,
            )
            if not acknowledged:
                self._recorder.record(event_id, "followup.acknowledge", detail="acknowledgement rejected")
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.acknowledge", exc)

    def _require(self, obligation_id: int) -> Obligation:
        obligation = self._repo.get(obligation_id)
        if obligation is None:
            raise ObligationNotFound(f"Obligation {obligation_id} not found")
        return obligation

    # -- creation ---------------------------------------------------------

    async def detect_from_text(
        self,
        text: str,
        author: str,
        source_ref: str,
        *,
        channel: str | None = None,
        participants: list[str] | None = None,
        source_url: str | None = None,
    ) -> DetectionResult:
        """Run the detection pipeline on one chat message.

        `source_ref` identifies the thread root (or the message itself when
        it is not in a thread) and is the duplicate-suppression key together
        with the author.
        """
        match = find_commitment(text, self._patterns)
        if match is None:
            return DetectionResult("no_commitment")

        event_id = f"message:{source_ref}"
        try:
            existing = self._repo.find_open(author, source_ref)
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.detect", exc)
            return DetectionResult("failed")
        if existing is not None:
            logger.debug(
                "Duplicate follow-up suppressed: %s already has #%d for %s",
                author, existing.id, source_ref,
            )
            return DetectionResult("duplicate", existing)

        now = self._clock.now()
        timeframe = resolve_timeframe(text, self._patterns)
        due_at = calculate_due_date(timeframe, now, self._rules)
        promise = extract_promise_text(match)

        try:
            obligation = self._repo.create(
                title=f"Follow-up: {promise}",
                assignee=author,
                due_at=due_at,
                priority=determine_priority(timeframe),
                source_ref=source_ref,
                source_url=source_url,
                metadata={
                    "original_message": text,
                    "promise_text": promise,
                    "extracted_timeframe": timeframe.model_dump(mode="json"),
                    "detected_patterns": match.pattern_sources,
                    "channel": channel,
                    "participants": participants or [author],
                },
                created_by="follow_up_detector",
            )
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.detect", exc)
            return DetectionResult("failed")
        logger.info(
            "Follow-up #%d created for %s: '%s' due %s",
            obligation.id, author, promise, due_at.isoformat(),
        )

        self._audit(
            obligation.id, "follow_up_auto_created",
            {
                "timeframe": timeframe.model_dump(mode="json"),
                "due_at": due_at.isoformat(),
                "detected_patterns": match.pattern_sources,
            },
            actor=author,
        )
        await self._acknowledge(obligation, now)
        return DetectionResult("created", obligation)

    async def create_manual(
        self,
        title: str,
        assignee: str,
        due_at: datetime | None = None,
        *,
        created_by: str | None = None,
        priority: int = _MANUAL_DEFAULT_PRIORITY,
        source_url: str | None = None,
        description: str | None = None,
    ) -> Obligation:
        """Create an obligation with an explicit due date (default: 24h out)."""
        now = self._clock.now()
        due_at = now + _MANUAL_DEFAULT_DUE if due_at is None else localize(due_at, now)

        obligation = self._repo.create(
            title=title or "Manual Follow-up",
            assignee=assignee,
            due_at=due_at,
            priority=priority,
            source_url=source_url,
            evidence={
                "manually_created": True,
                "created_by": created_by or assignee,
                "original_request": description,
            },
            created_by=created_by or assignee,
        )
        logger.info("Manual follow-up #%d created for %s", obligation.id, assignee)
        self._audit(
            obligation.id, "followup_manually_created",
            {"due_at": due_at.isoformat()}, actor=created_by or assignee,
        )
        return obligation

    async def create_from_external_event(self, event: ExternalEvent) -> DetectionResult:
        """Create an obligation for an inbound third-party event, deduplicated."""
        event_id = f"external:{event.source_ref}"
        try:
            existing = self._repo.find_open(event.assignee, event.source_ref)
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.external", exc)
            return DetectionResult("failed")
        if existing is not None:
            logger.debug("External event %s already tracked as #%d", event.source_ref, existing.id)
            return DetectionResult("duplicate", existing)

        now = self._clock.now()
        timeframe = resolve_timeframe(event.text or "", self._patterns)
        if event.due_at is not None:
            due_at = localize(event.due_at, now)
        else:
            due_at = calculate_due_date(timeframe, now, self._rules)

        try:
            obligation = self._repo.create(
                title=event.title,
                assignee=event.assignee,
                due_at=due_at,
                priority=determine_priority(timeframe),
                source_ref=event.source_ref,
                source_url=event.source_url,
                metadata={
                    "original_message": event.text,
                    "promise_text": event.title,
                    "extracted_timeframe": timeframe.model_dump(mode="json"),
                    "source_kind": event.source_kind,
                },
                created_by=event.source_kind,
            )
        except Exception as exc:
            self._recorder.record_exception(event_id, "followup.external", exc)
            return DetectionResult("failed")
        logger.info("Obligation #%d created from %s event", obligation.id, event.source_kind)
        self._audit(
            obligation.id, "followup_externally_created",
            {"source_kind": event.source_kind, "due_at": due_at.isoformat()},
        )
        return DetectionResult("created", obligation)

    # -- transitions ------------------------------------------------------

    async def satisfy(
        self,
        obligation_id: int,
        note: str = "",
        *,
        actor: str | None = None,
        method: str = "manual",
    ) -> Obligation:
        """Mark an obligation DONE, whatever stages have already fired."""
        obligation = self._require(obligation_id)
        if obligation.status == ObligationStatus.DONE:
            return obligation

        now = self._clock.now()
        obligation = self._repo.update(
            obligation_id,
            status=ObligationStatus.DONE,
            evidence={
                "completed_at": now.isoformat(),
                "completion_method": method,
                "completion_note": note,
                "completed_by": actor,
            },
        )
        logger.info("Follow-up #%d satisfied (%s)", obligation_id, method)
        self._audit(obligation_id, "followup_satisfied", {"note": note, "method": method}, actor)
        return obligation

    async def extend_deadline(
        self,
        obligation_id: int,
        new_due: datetime,
        reason: str = "",
        *,
        actor: str | None = None,
    ) -> Obligation:
        """Move the due date. Stage flags already sent stay sent."""
        obligation = self._require(obligation_id)
        now = self._clock.now()
        new_due = localize(new_due, now)
        updated = self._repo.update(
            obligation_id,
            due_at=new_due,
            evidence={
                "deadline_extended": True,
                "extension_reason": reason,
                "extended_by": actor,
                "extended_at": now.isoformat(),
                "previous_due_at": obligation.due_at.isoformat() if obligation.due_at else None,
            },
        )
        logger.info("Follow-up #%d deadline extended to %s", obligation_id, new_due.isoformat())
        self._audit(
            obligation_id, "followup_deadline_extended",
            {
                "original_due": obligation.due_at.isoformat() if obligation.due_at else None,
                "new_due": new_due.isoformat(),
                "reason": reason,
            },
            actor,
        )
        return updated

    async def transfer_ownership(
        self,
        obligation_id: int,
        new_assignee: str,
        *,
        actor: str | None = None,
    ) -> Obligation:
        """Reassign in place; the stage ledger is preserved, not reset."""
        obligation = self._require(obligation_id)
        if obligation.status == ObligationStatus.DONE:
            raise ValueError(f"Obligation {obligation_id} is already done")

        previous = obligation.assignee
        now = self._clock.now()
        updated = self._repo.update(
            obligation_id,
            assignee=new_assignee,
            evidence={
                "ownership_transferred": True,
                "previous_assignee": previous,
                "new_assignee": new_assignee,
                "transferred_at": now.isoformat(),
            },
        )
        logger.info("Follow-up #%d ownership %s -> %s", obligation_id, previous, new_assignee)
        self._audit(
            obligation_id, "followup_ownership_transferred",
            {"previous_assignee": previous, "new_assignee": new_assignee},
            actor or new_assignee,
        )

        event_id = f"obligation:{obligation_id}:transfer"
        if previous and previous != new_assignee:
            await self._notify(
                previous,
                f"📋 Ownership of your follow-up \"{obligation.title}\" "
                f"was taken over by {new_assignee}.",
                event_id,
            )
        await self._notify(
            new_assignee,
            f"✅ You've taken ownership of follow-up: \"{obligation.title}\"\n\n"
            f"It is now assigned to you (ID {obligation_id}).",
            event_id,
        )
        return updated

    async def complete_from_thread_update(
        self, text: str, author: str, thread_ref: str,
    ) -> list[Obligation]:
        """Close the author's obligations on a thread when they post an update."""
        if not is_completion_update(text, self._patterns):
            return []

        completed = []
        for obligation in self._repo.list_by_source(thread_ref, ACTIVE_STATUSES):
            if obligation.assignee != author:
                continue
            completed.append(
                await self.satisfy(obligation.id, text, actor=author, method="thread_update")
            )
        return completed

    async def complete_from_reaction(
        self, author: str, source_ref: str, reaction: str,
    ) -> list[Obligation]:
        """Close the author's obligations on a message they reacted ✅ to."""
        if not is_completion_reaction(reaction, self._patterns):
            return []

        completed = []
        for obligation in self._repo.list_by_source(source_ref, ACTIVE_STATUSES):
            if obligation.assignee != author:
                continue
            done = await self.satisfy(
                obligation.id, f"Reacted {reaction}", actor=author, method="reaction",
            )
            completed.append(done)
            await self._notify(
                author,
                f"✅ Follow-up marked complete: \"{done.title}\"\n\nThanks for the update!",
                f"obligation:{done.id}:reaction",
            )
        return completed
