import asyncio
import logging
import sys
from textwrap import dedent

import click
import httpx

from tgclaw.app import App
from tgclaw.authz import folder_owner_conflict, is_valid_folder
from tgclaw.config import settings
from tgclaw.db import DbConnection, get_all_tasks, get_task_run_logs, init_db
from tgclaw.models import RegisteredGroup
from tgclaw.scheduler import run_scheduler
from tgclaw.scheduling import now_iso
from tgclaw.state import AppState
from tgclaw.transport import TelegramChannel, TelegramError, parse_update

log = logging.getLogger(__name__)

_TOKEN_HELP = dedent("""\
    TGCLAW_TELEGRAM_BOT_TOKEN is not set.

    To get a bot token:
      1. Open Telegram and talk to @BotFather
      2. Send /newbot and follow the instructions
      3. Add the token to ~/.local/share/tgclaw/.env or ./.env:
         TGCLAW_TELEGRAM_BOT_TOKEN=your_token_here
    """)


def _load() -> tuple[DbConnection, AppState]:
    db = init_db(settings.db_path)
    state = AppState(settings.data, settings.main_group_folder)
    state.load()
    return db, state


def _require_token() -> str:
    if not settings.telegram_bot_token:
        click.echo(_TOKEN_HELP, err=True)
        sys.exit(1)
    return settings.telegram_bot_token


async def _connect(token: str) -> tuple[TelegramChannel, dict]:
    channel = TelegramChannel(token)
    try:
        me = await channel.get_me()
    except (httpx.HTTPError, TelegramError) as e:
        await channel.aclose()
        click.echo(f"Failed to authenticate with Telegram: {e}", err=True)
        click.echo("Check TGCLAW_TELEGRAM_BOT_TOKEN.", err=True)
        sys.exit(1)
    log.info("Connected to Telegram as @%s", me.get("username"))
    return channel, me


@click.group(invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """tgclaw: Telegram groups and scheduled tasks for Claude agents"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
def run() -> None:
    """Run the bot: message router, scheduler and IPC watcher."""
    token = _require_token()
    db, state = _load()

    async def _run() -> None:
        channel, _ = await _connect(token)
        try:
            await App(settings, db, state, channel).run()
        finally:
            await channel.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        db.close()


@main.command()
def scheduler() -> None:
    """Run only the task scheduler (results are sent if a bot token is set)."""
    db, state = _load()

    async def _run() -> None:
        channel = (
            TelegramChannel(settings.telegram_bot_token)
            if settings.telegram_bot_token
            else None
        )
        try:
            await run_scheduler(App(settings, db, state, channel))
        finally:
            if channel is not None:
                await channel.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        log.info("Shutting down")


@main.command()
def tasks() -> None:
    """List all scheduled tasks and their status."""
    db, _ = _load()
    all_tasks = get_all_tasks(db)
    if not all_tasks:
        click.echo("No scheduled tasks.")
        return
    click.echo(
        f"{'ID':<28} {'Group':<16} {'Prompt':<40} {'Status':<10} {'Next Run'}"
    )
    click.echo("-" * 120)
    for task in all_tasks:
        click.echo(
            f"{task.id:<28} {task.group_folder:<16} {task.prompt[:40]:<40}"
            f" {task.status:<10} {task.next_run}"
        )


@main.command("task-logs")
@click.argument("task_id")
@click.option("--limit", default=10, show_default=True)
def task_logs(task_id: str, limit: int) -> None:
    """Show the most recent runs of a task."""
    db, _ = _load()
    logs = get_task_run_logs(db, task_id, limit=limit)
    if not logs:
        click.echo(f"No runs recorded for {task_id}.")
        return
    for entry in logs:
        detail = entry.error if entry.status == "error" else entry.result
        click.echo(
            f"{entry.run_at} {entry.status:<7} {entry.duration_ms:>7}ms "
            f"{(detail or '')[:80]}"
        )


@main.command()
def groups() -> None:
    """List registered groups."""
    _, state = _load()
    if not state.registered_groups:
        click.echo("No registered groups.")
        return
    for chat_id, group in state.registered_groups.items():
        marker = " (main)" if state.is_main(group.folder) else ""
        click.echo(f"{chat_id} | {group.name} | {group.folder}{marker} | {group.trigger}")


@main.command()
@click.argument("chat_id")
@click.argument("name")
@click.argument("folder")
@click.option("--trigger", default=None, help="Defaults to @<assistant name>.")
def register(chat_id: str, name: str, folder: str, trigger: str | None) -> None:
    """Register a chat (restart a running bot to pick it up).

    Use the main group folder to set up the privileged group.
    """
    if not is_valid_folder(folder):
        raise click.BadParameter(
            "use letters, digits, - and _ only", param_hint="FOLDER"
        )
    _, state = _load()
    owner = folder_owner_conflict(chat_id, folder, state.registered_groups)
    if owner is not None:
        raise click.BadParameter(
            f"folder already belongs to chat {owner}", param_hint="FOLDER"
        )
    state.register_group(
        chat_id,
        RegisteredGroup(
            name=name,
            folder=folder,
            trigger=trigger or settings.default_trigger,
            added_at=now_iso(),
        ),
        settings.groups_dir,
    )
    click.echo(f"Registered {name} ({chat_id}) in folder {folder}.")


@main.command()
def auth() -> None:
    """Check that the bot token is accepted by Telegram."""
    token = _require_token()

    async def _check() -> dict:
        channel, me = await _connect(token)
        await channel.aclose()
        return me

    me = asyncio.run(_check())
    click.echo(
        f"Authenticated as @{me.get('username')} "
        f"({me.get('first_name')}, id {me.get('id')})"
    )


@main.command("chat-id")
def show_chat_ids() -> None:
    """Print the chat id of every message the bot receives (Ctrl+C to stop)."""
    token = _require_token()

    async def _listen() -> None:
        channel, _ = await _connect(token)
        click.echo("Send a message to the bot in Telegram...")
        try:
            while True:
                for update in await channel.get_updates():
                    parsed = parse_update(update)
                    if parsed is None:
                        continue
                    cid, chat_name, _ = parsed
                    click.echo(f"Chat ID: {cid} ({chat_name})")
                    await channel.send_message(cid, f"This chat ID is: {cid}")
        finally:
            await channel.aclose()

    try:
        asyncio.run(_listen())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
