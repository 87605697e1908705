"""Inbound message routing.

The router keeps one low-water-mark, ``RouterState.last_timestamp``: every
message at or before it has been handled.  The mark moves forward one message
at a time and only after that message is done, so a failure leaves the
failing message and everything after it for the next tick.
"""

from __future__ import annotations

import asyncio
import logging
import re
from html import escape
from typing import TYPE_CHECKING

from tgclaw.db import get_messages_since, get_new_messages
from tgclaw.models import Message, RegisteredGroup

if TYPE_CHECKING:
    from tgclaw.app import App

log = logging.getLogger(__name__)


def trigger_pattern(trigger: str) -> re.Pattern[str]:
    """Match *trigger* at the start of a message, e.g. ``@Andy`` but not ``@Andyx``."""
    return re.compile(rf"^{re.escape(trigger)}(?!\w)", re.IGNORECASE)


def format_messages(messages: list[Message]) -> str:
    lines = [
        f'<message sender="{escape(m.sender_name or m.sender)}" '
        f'time="{m.timestamp}">{escape(m.content)}</message>'
        for m in messages
    ]
    return "<messages>\n" + "\n".join(lines) + "\n</messages>"


def should_respond(app: App, group: RegisteredGroup, content: str) -> bool:
    """The main group gets every message; other groups need their trigger."""
    if app.state.is_main(group.folder):
        return True
    trigger = group.trigger or app.settings.default_trigger
    return bool(trigger_pattern(trigger).match(content.strip()))


async def _ask_agent(
    app: App, group: RegisteredGroup, prompt: str, chat_id: str
) -> str | None:
    try:
        output = await app.run_agent(group, prompt, chat_id)
    except Exception:
        log.exception("Agent error for group %s", group.name)
        return None
    if output.status == "error":
        log.error("Worker error for group %s: %s", group.name, output.error)
        return None
    return output.result


async def process_message(app: App, msg: Message) -> None:
    group = app.state.registered_groups.get(msg.chat_id)
    if group is None:
        log.debug("Message from unregistered chat %s", msg.chat_id)
        return

    if not should_respond(app, group, msg.content):
        log.debug("Message in %s does not match trigger", msg.chat_id)
        return

    # Everything since the agent last answered in this chat, so the session
    # sees messages that arrived without a trigger.
    router = app.state.router
    since = router.last_agent_timestamp.get(msg.chat_id, "")
    missed = get_messages_since(
        app.db, msg.chat_id, since, app.settings.reply_prefix
    )
    if not missed:
        return

    log.info("Processing %d messages for group %s", len(missed), group.name)
    async with app.typing(msg.chat_id):
        response = await _ask_agent(app, group, format_messages(missed), msg.chat_id)

    if response:
        router.last_agent_timestamp[msg.chat_id] = msg.timestamp
        await app.send_message(msg.chat_id, f"{app.settings.reply_prefix}{response}")


async def process_new_messages(app: App) -> int:
    """Handle every message past the low-water-mark; returns how many were handled."""
    state = app.state
    messages = get_new_messages(
        app.db,
        list(state.registered_groups),
        state.router.last_timestamp,
        app.settings.reply_prefix,
    )
    if messages:
        log.info("New messages: %d", len(messages))

    handled = 0
    for msg in messages:
        try:
            await process_message(app, msg)
        except Exception:
            log.exception("Error processing message %s, will retry", msg.id)
            break
        state.router.last_timestamp = msg.timestamp
        state.save_router_state()
        handled += 1
    return handled


async def run_message_loop(app: App) -> None:
    log.info("tgclaw running (trigger: %s)", app.settings.default_trigger)
    while True:
        try:
            await process_new_messages(app)
        except Exception:
            log.exception("Error in message loop")
        await asyncio.sleep(app.settings.poll_interval)
