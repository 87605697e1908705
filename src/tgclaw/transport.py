"""Telegram Bot API transport."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from tgclaw.models import Message
from tgclaw.scheduling import to_iso

log = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096
POLL_RETRY_SECONDS = 5.0

InboundHandler = Callable[[str, str | None, Message], Awaitable[None]]


class TelegramError(RuntimeError):
    """The Bot API answered with ``ok: false``."""


class Channel(Protocol):
    async def send_message(self, chat_id: str, text: str) -> None: ...

    async def set_typing(self, chat_id: str) -> None: ...

    async def get_chat_title(self, chat_id: str) -> str | None: ...


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *text* into chunks Telegram accepts, preferring line breaks."""
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def parse_update(update: dict[str, Any]) -> tuple[str, str | None, Message] | None:
    """Turn a ``getUpdates`` entry into ``(chat_id, chat_name, message)``.

    Returns None for anything that is not a text message.
    """
    msg = update.get("message")
    if not msg or "text" not in msg:
        return None

    chat = msg["chat"]
    sender = msg.get("from") or {}
    sender_name = " ".join(
        part for part in (sender.get("first_name"), sender.get("last_name")) if part
    )
    if chat.get("type") == "private":
        chat_name = sender_name
    else:
        chat_name = chat.get("title") or sender_name

    chat_id = str(chat["id"])
    return (
        chat_id,
        chat_name or None,
        Message(
            id=str(msg["message_id"]),
            chat_id=chat_id,
            sender=str(sender.get("id", "")),
            sender_name=sender_name,
            content=msg["text"],
            timestamp=to_iso(datetime.fromtimestamp(msg["date"], tz=timezone.utc)),
            is_from_me=bool(sender.get("is_bot")),
        ),
    )


class TelegramChannel:
    def __init__(
        self,
        token: str,
        *,
        client: httpx.AsyncClient | None = None,
        api_base: str = TELEGRAM_API,
        poll_timeout: int = 30,
    ) -> None:
        self._base = f"{api_base}/bot{token}"
        self._poll_timeout = poll_timeout
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=poll_timeout + 10.0)
        )
        self._offset = 0

    async def _call(self, method: str, **params: Any) -> Any:
        resp = await self._client.post(f"{self._base}/{method}", json=params)
        try:
            data = resp.json()
        except ValueError as e:
            # Proxies answer outages with HTML error pages.
            raise TelegramError(
                f"{method} failed: HTTP {resp.status_code} with non-JSON body"
            ) from e
        if not data.get("ok"):
            raise TelegramError(
                f"{method} failed: {data.get('description', resp.status_code)}"
            )
        return data["result"]

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe")

    async def send_message(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text):
            await self._call("sendMessage", chat_id=chat_id, text=chunk)
        log.info("Message sent: chat=%s length=%d", chat_id, len(text))

    async def set_typing(self, chat_id: str) -> None:
        await self._call("sendChatAction", chat_id=chat_id, action="typing")

    async def get_chat_title(self, chat_id: str) -> str | None:
        chat = await self._call("getChat", chat_id=chat_id)
        return chat.get("title")

    async def get_updates(self) -> list[dict[str, Any]]:
        updates = await self._call(
            "getUpdates",
            offset=self._offset,
            timeout=self._poll_timeout,
            allowed_updates=["message"],
        )
        if updates:
            self._offset = updates[-1]["update_id"] + 1
        return updates

    async def poll_updates(self, on_message: InboundHandler) -> None:
        """Long-poll ``getUpdates`` forever, handing text messages to *on_message*."""
        log.info("Telegram polling started")
        while True:
            try:
                updates = await self.get_updates()
            except (httpx.HTTPError, TelegramError):
                log.warning("Telegram polling failed, retrying", exc_info=True)
                await asyncio.sleep(POLL_RETRY_SECONDS)
                continue
            except Exception:
                log.exception("Unexpected error polling Telegram, retrying")
                await asyncio.sleep(POLL_RETRY_SECONDS)
                continue

            for update in updates:
                try:
                    parsed = parse_update(update)
                    if parsed is None:
                        continue
                    await on_message(*parsed)
                except Exception:
                    log.exception("Error handling update %s", update.get("update_id"))

    async def aclose(self) -> None:
        await self._client.aclose()
