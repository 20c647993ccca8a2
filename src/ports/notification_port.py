"""Notification port — abstract interface for delivering chat messages.

Core modules depend on this protocol, never on a specific messaging provider.
The channel does not deduplicate; at-most-once per stage is enforced by the
stage ledger on each obligation.
"""

from __future__ import annotations

from typing import Protocol


class DeliveryError(Exception):
    """Raised when a channel reports that a message was not delivered."""


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def deliver(self, recipient: str, message: str) -> bool: ...

    async def acknowledge(self, source_ref: str, message: str) -> bool: ...
