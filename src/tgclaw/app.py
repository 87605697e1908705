"""The running process: shared state plus the loops that act on it."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from tgclaw.config import Settings
from tgclaw.db import (
    DbConnection,
    get_all_chats,
    get_all_tasks,
    get_last_group_sync,
    get_tasks_for_group,
    set_last_group_sync,
    store_chat_metadata,
    store_message,
    update_chat_name,
)
from tgclaw.ipc import run_ipc_watcher
from tgclaw.models import (
    AvailableGroup,
    Message,
    RegisteredGroup,
    WorkerInput,
    WorkerOutput,
)
from tgclaw.router import run_message_loop
from tgclaw.scheduler import run_scheduler
from tgclaw.state import AppState
from tgclaw.transport import Channel
from tgclaw.worker import run_worker, write_groups_snapshot, write_tasks_snapshot

log = logging.getLogger(__name__)

# Telegram drops the typing indicator after about five seconds.
TYPING_REFRESH_SECONDS = 4.0


class App:
    def __init__(
        self,
        settings: Settings,
        db: DbConnection,
        state: AppState,
        channel: Channel | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.state = state
        self.channel = channel

    async def send_message(self, chat_id: str, text: str) -> None:
        """Best-effort send; failures are logged and never raised."""
        if self.channel is None:
            log.warning("No channel configured, dropping message to %s", chat_id)
            return
        try:
            await self.channel.send_message(chat_id, text)
        except Exception:
            log.exception("Failed to send message to %s", chat_id)

    @asynccontextmanager
    async def typing(self, chat_id: str) -> AsyncIterator[None]:
        """Keep the typing indicator alive for the duration of the block."""
        if self.channel is None:
            yield
            return

        channel = self.channel

        async def _send() -> None:
            try:
                await channel.set_typing(chat_id)
            except Exception:
                log.debug("Failed to update typing status for %s", chat_id)

        async def _refresh() -> None:
            while True:
                await asyncio.sleep(TYPING_REFRESH_SECONDS)
                await _send()

        await _send()
        task = asyncio.create_task(_refresh())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_available_groups(self) -> list[AvailableGroup]:
        registered = set(self.state.registered_groups)
        return [
            AvailableGroup(
                chat_id=chat.chat_id,
                name=chat.name,
                last_activity=chat.last_message_time,
                is_registered=chat.chat_id in registered,
            )
            for chat in get_all_chats(self.db)
        ]

    def write_snapshots(self, group_folder: str, is_main: bool) -> None:
        ipc_dir = self.settings.ipc_dir
        tasks = (
            get_all_tasks(self.db)
            if is_main
            else get_tasks_for_group(self.db, group_folder)
        )
        write_tasks_snapshot(ipc_dir, group_folder, is_main, tasks)
        write_groups_snapshot(
            ipc_dir, group_folder, is_main, self.get_available_groups()
        )

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_id: str,
        *,
        context_mode: str = "group",
    ) -> WorkerOutput:
        """Run the worker for *group*.

        With ``context_mode="group"`` the run resumes the group's session and
        stores the session it ends with; ``"isolated"`` runs start fresh and
        leave the group session untouched.
        """
        is_main = self.state.is_main(group.folder)
        shared = context_mode == "group"
        self.write_snapshots(group.folder, is_main)

        output = await run_worker(
            self.settings,
            WorkerInput(
                prompt=prompt,
                group_folder=group.folder,
                chat_id=chat_id,
                session_id=self.state.sessions.get(group.folder) if shared else None,
                is_main=is_main,
                worker_config=group.worker_config,
            ),
        )

        if shared and output.new_session_id:
            self.state.set_session(group.folder, output.new_session_id)
        return output

    def register_group(self, chat_id: str, group: RegisteredGroup) -> None:
        self.state.register_group(chat_id, group, self.settings.groups_dir)

    async def sync_group_metadata(self, force: bool = False) -> None:
        """Refresh stored titles of registered chats from Telegram."""
        if not force:
            last_sync = get_last_group_sync(self.db)
            if last_sync:
                age = datetime.now(timezone.utc) - datetime.fromisoformat(last_sync)
                if age.total_seconds() < self.settings.group_sync_interval:
                    log.debug("Skipping group sync, last synced at %s", last_sync)
                    return

        if self.channel is None:
            return

        count = 0
        for chat_id in list(self.state.registered_groups):
            try:
                title = await self.channel.get_chat_title(chat_id)
            except Exception:
                log.warning("Failed to fetch chat info for %s", chat_id, exc_info=True)
                continue
            if title:
                update_chat_name(self.db, chat_id, title)
                count += 1

        set_last_group_sync(self.db)
        log.info("Group metadata synced: %d chats", count)

    async def on_inbound(
        self, chat_id: str, chat_name: str | None, msg: Message
    ) -> None:
        """Record chat activity; keep message content for registered chats only."""
        store_chat_metadata(self.db, chat_id, msg.timestamp, chat_name)
        if chat_id in self.state.registered_groups:
            store_message(self.db, msg)

    async def _group_sync_loop(self) -> None:
        while True:
            try:
                await self.sync_group_metadata()
            except Exception:
                log.exception("Periodic group sync failed")
            await asyncio.sleep(self.settings.group_sync_interval)

    async def run(self) -> None:
        """Run every loop until cancelled; cancelling one cancels all."""
        poll_updates = getattr(self.channel, "poll_updates", None)

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._group_sync_loop(), name="group-sync")
            tg.create_task(run_scheduler(self), name="scheduler")
            tg.create_task(run_ipc_watcher(self), name="ipc-watcher")
            tg.create_task(run_message_loop(self), name="message-loop")
            if poll_updates is not None:
                tg.create_task(poll_updates(self.on_inbound), name="telegram")
