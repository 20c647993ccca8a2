"""
Promise Keeper — Telegram Bot.

Telegram is both the conversation source and the delivery channel:
messages in monitored chats are scanned for commitments, reminders go out
as direct messages, and overdue escalations land in the triage chat.

This module is the composition root. It builds the storage, the failure
recorder (with the one in-process counter both monitor jobs share), the
notifier, the follow-up service, the escalation scanner and the SLA
monitor, and registers the recurring jobs on the application's JobQueue.

Security-first: operator commands from unauthorized users are silently
ignored. Chat scanning is limited to MONITORED_CHAT_IDS.
"""

from __future__ import annotations

import logging
from datetime import time as dt_time
from datetime import timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    MessageReactionHandler,
    filters,
)

from src.adapters.telegram_notifier import make_source_ref
from src.config import settings
from src.core.due_date import format_due_date, localize
from src.data.models import ObligationNotFound

if TYPE_CHECKING:
    from src.core.escalation import EscalationScanner
    from src.core.failures import FailureRecorder
    from src.core.followup import FollowUpService
    from src.core.sla import SlaMonitor
    from src.ports.clock_port import Clock
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorators
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores commands from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def is_monitored_chat(chat_id: int | str) -> bool:
    """Empty MONITORED_CHAT_IDS (or "*") means every chat the bot is in."""
    monitored = settings.MONITORED_CHAT_IDS
    if not monitored or "*" in monitored:
        return True
    return str(chat_id) in monitored


def monitored_chat_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that drops chat traffic from unmonitored chats and from bots."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        user = update.effective_user
        if chat is None or user is None or user.is_bot:
            return
        if not is_monitored_chat(chat.id):
            logger.debug("Ignoring update from unmonitored chat %s", chat.id)
            return
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Chat monitoring: commitments, thread updates, reactions
# ---------------------------------------------------------------------------


@monitored_chat_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Scan a chat message: close obligations on a thread update, else detect."""
    service: FollowUpService = context.bot_data["followups"]
    message = update.effective_message
    if message is None or not message.text:
        return

    chat_id = update.effective_chat.id
    author = str(update.effective_user.id)
    participants = [author]

    # Replies anchor to the message they answer; top-level messages anchor to themselves.
    parent = message.reply_to_message
    if parent is not None:
        thread_ref = make_source_ref(chat_id, parent.message_id)
        completed = await service.complete_from_thread_update(message.text, author, thread_ref)
        if completed:
            logger.info(
                "Thread update by %s closed %d follow-up(s) on %s",
                author, len(completed), thread_ref,
            )
            return
        if parent.from_user is not None and str(parent.from_user.id) != author:
            participants.append(str(parent.from_user.id))
    else:
        thread_ref = make_source_ref(chat_id, message.message_id)

    await service.detect_from_text(
        message.text,
        author,
        thread_ref,
        channel=str(chat_id),
        participants=participants,
        source_url=message.link,
    )


@monitored_chat_only
async def handle_reaction(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """A completion reaction from the assignee closes that message's obligations.

    Telegram only delivers reaction updates to bots that are chat admins.
    """
    service: FollowUpService = context.bot_data["followups"]
    reaction = update.message_reaction
    if reaction is None or reaction.user is None:
        return

    source_ref = make_source_ref(reaction.chat.id, reaction.message_id)
    author = str(reaction.user.id)
    for new in reaction.new_reaction:
        emoji = getattr(new, "emoji", None)
        if not emoji:
            continue
        if await service.complete_from_reaction(author, source_ref, emoji):
            return


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *Promise Keeper*!\n\n"
        "I watch your team chats for promises like \"I'll get back to you by 5pm\" "
        "and remind whoever made them before the deadline:\n"
        "• Reply \"done\" in the thread or react ✅ to close a follow-up\n"
        "• Use /followups to see what you still owe\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/followups — List your open follow-ups\n"
        "/done <id> [note] — Mark a follow-up as done\n"
        "/extend <id> <hours> [reason] — Push a deadline back\n"
        "/take <id> — Take ownership of a follow-up\n"
        "/health — Failure rate and engine health\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


def _parse_id(args: list[str] | None) -> int | None:
    if not args:
        return None
    try:
        return int(args[0])
    except ValueError:
        return None


@authorized_only
async def cmd_followups(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /followups — list the caller's open obligations."""
    repo = context.bot_data["obligations"]
    clock: Clock = context.bot_data["clock"]

    try:
        obligations = repo.list_for_assignee(str(update.effective_user.id))
    except Exception as exc:
        logger.error("/followups error: %s", exc)
        await update.message.reply_text("Couldn't load follow-ups. Please try again.")
        return

    if not obligations:
        await update.message.reply_text("No open follow-ups. 🎉")
        return

    now = clock.now()
    lines = ["*Open follow-ups:*\n"]
    for o in obligations:
        due = format_due_date(o.due_at, now) if o.due_at else "no deadline"
        lines.append(f"`{o.id}` — {o.promise_text} (due {due}, {o.status.value.lower()})")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <id> [note] — mark a follow-up as satisfied."""
    service: FollowUpService = context.bot_data["followups"]

    obligation_id = _parse_id(context.args)
    if obligation_id is None:
        await update.message.reply_text("Usage: /done <id> [note]\nUse /followups to see IDs.")
        return

    note = " ".join(context.args[1:])
    try:
        obligation = await service.satisfy(
            obligation_id, note, actor=str(update.effective_user.id),
        )
    except ObligationNotFound:
        await update.message.reply_text(f"No follow-up with ID {obligation_id}.")
        return
    except Exception as exc:
        logger.error("/done error: %s", exc)
        await update.message.reply_text(f"Couldn't close follow-up {obligation_id}. Please try again.")
        return

    await update.message.reply_text(f"✅ Marked '{obligation.title}' as done.")


@authorized_only
async def cmd_extend(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /extend <id> <hours> [reason] — move the due date later."""
    service: FollowUpService = context.bot_data["followups"]
    repo = context.bot_data["obligations"]
    clock: Clock = context.bot_data["clock"]

    args = context.args or []
    obligation_id = _parse_id(args)
    try:
        hours = float(args[1]) if len(args) > 1 else None
    except ValueError:
        hours = None
    if obligation_id is None or hours is None or hours <= 0:
        await update.message.reply_text("Usage: /extend <id> <hours> [reason]")
        return

    obligation = repo.get(obligation_id)
    if obligation is None:
        await update.message.reply_text(f"No follow-up with ID {obligation_id}.")
        return

    # Extend from the current deadline, or from now if it already passed.
    now = clock.now()
    due = localize(obligation.due_at, now) if obligation.due_at else None
    base = due if due and due > now else now
    new_due = base + timedelta(hours=hours)
    try:
        await service.extend_deadline(
            obligation_id, new_due, " ".join(args[2:]), actor=str(update.effective_user.id),
        )
    except Exception as exc:
        logger.error("/extend error: %s", exc)
        await update.message.reply_text(f"Couldn't extend follow-up {obligation_id}. Please try again.")
        return

    await update.message.reply_text(
        f"⏳ Follow-up {obligation_id} now due {new_due.strftime('%Y-%m-%d %H:%M')}."
    )


@authorized_only
async def cmd_take(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /take <id> — reassign a follow-up to the caller."""
    service: FollowUpService = context.bot_data["followups"]

    obligation_id = _parse_id(context.args)
    if obligation_id is None:
        await update.message.reply_text("Usage: /take <id>")
        return

    try:
        await service.transfer_ownership(obligation_id, str(update.effective_user.id))
    except ObligationNotFound:
        await update.message.reply_text(f"No follow-up with ID {obligation_id}.")
    except ValueError as exc:
        await update.message.reply_text(str(exc))
    except Exception as exc:
        logger.error("/take error: %s", exc)
        await update.message.reply_text(f"Couldn't take follow-up {obligation_id}. Please try again.")


@authorized_only
async def cmd_health(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /health — failure rate over the last hour plus counter breakdown."""
    recorder: FailureRecorder = context.bot_data["recorder"]

    report = recorder.health()
    icon = {"healthy": "🟢", "degraded": "🟡", "critical": "🔴"}[report.status]
    lines = [
        f"{icon} Engine {report.status}",
        f"Failures in the last hour: {report.failure_rate} (threshold {report.threshold})",
    ]
    breakdown = recorder.counter.breakdown()
    if breakdown:
        lines.append("")
        lines.append("Since last reset:")
        for key, count in sorted(breakdown.items(), key=lambda kv: -kv[1]):
            lines.append(f"• {key}: {count}")
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    clock: Clock | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        clock: Clock implementation. Defaults to SystemClock in settings.TIMEZONE.
    """
    from src.core.escalation import EscalationScanner
    from src.core.failures import FailureCounter, FailureRecorder
    from src.core.followup import FollowUpService
    from src.core.sla import SlaMonitor
    from src.data.db import FailureDB, ObligationDB, SlaTaskDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    if clock is None:
        from src.adapters.system_clock import SystemClock
        clock = SystemClock()

    obligations = ObligationDB()
    recorder = FailureRecorder(FailureDB(), clock, FailureCounter(clock))
    followups = FollowUpService(obligations, notifier, clock, recorder)
    scanner = EscalationScanner(obligations, notifier, clock, recorder)
    sla_monitor = SlaMonitor(SlaTaskDB(), notifier, clock, recorder)

    # Store services in bot_data for handler access
    app.bot_data["notifier"] = notifier
    app.bot_data["clock"] = clock
    app.bot_data["obligations"] = obligations
    app.bot_data["recorder"] = recorder
    app.bot_data["followups"] = followups
    app.bot_data["sla"] = sla_monitor

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("followups", cmd_followups))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("extend", cmd_extend))
    app.add_handler(CommandHandler("take", cmd_take))
    app.add_handler(CommandHandler("health", cmd_health))

    # Chat monitoring
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    app.add_handler(MessageReactionHandler(handle_reaction))

    _setup_jobs(app, scanner, sla_monitor, recorder)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_jobs(
    app: Application,
    scanner: EscalationScanner,
    sla_monitor: SlaMonitor,
    recorder: FailureRecorder,
) -> None:
    """Register the follow-up scan, the SLA tick and the daily failure cleanup.

    JobQueue runs at most one instance of each job at a time, so a slow
    tick delays the next one instead of overlapping it.
    """

    async def _followup_scan_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scanner.scan()

    async def _sla_tick_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await sla_monitor.tick()

    async def _failure_cleanup_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        deleted = recorder.cleanup()
        recorder.counter.reset()
        logger.info("Daily failure cleanup removed %d records", deleted)

    app.job_queue.run_repeating(
        _followup_scan_job,
        interval=settings.FOLLOWUP_CHECK_INTERVAL_SECONDS,
        first=10,
        name="followup_scan",
    )
    app.job_queue.run_repeating(
        _sla_tick_job,
        interval=settings.SLA_CHECK_INTERVAL_SECONDS,
        first=5,
        name="sla_tick",
    )

    tz = ZoneInfo(settings.TIMEZONE)
    app.job_queue.run_daily(
        _failure_cleanup_job,
        time=dt_time(hour=settings.FAILURE_CLEANUP_HOUR, minute=0, tzinfo=tz),
        name="failure_cleanup",
    )

    logger.info(
        "Jobs scheduled: follow-up scan every %ds, SLA tick every %ds, cleanup at %02d:00 %s",
        settings.FOLLOWUP_CHECK_INTERVAL_SECONDS,
        settings.SLA_CHECK_INTERVAL_SECONDS,
        settings.FAILURE_CLEANUP_HOUR,
        settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    if not settings.TELEGRAM_BOT_TOKEN:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set. Add it to .env to run the bot.")

    logger.info("Starting Promise Keeper bot...")
    app = build_app()
    # Reaction updates are opt-in.
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
