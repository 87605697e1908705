"""Mailbox drain: the only way a worker can make the host act.

Layout under ``settings.ipc_dir``::

    <folder>/messages/*.json   outbound messages
    <folder>/tasks/*.json      task and admin requests
    errors/                    quarantined files, renamed <folder>-<name>

The folder a file is found in is its sender.  Payloads never name their own
sender, and every request passes through :mod:`tgclaw.authz` before anything
is changed.  Applied and denied requests are deleted; files that cannot be
decoded or that blow up while being applied are quarantined.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, assert_never

from pydantic import TypeAdapter

from tgclaw import authz
from tgclaw.db import create_task, delete_task, get_task, update_task
from tgclaw.models import (
    CancelTaskRequest,
    MailboxRequest,
    PauseTaskRequest,
    RefreshGroupsRequest,
    RegisteredGroup,
    RegisterGroupRequest,
    ResumeTaskRequest,
    ScheduleTaskRequest,
    SendMessageRequest,
    message_request_adapter,
    task_request_adapter,
)
from tgclaw.scheduling import ScheduleError, compute_next_run, now_iso

if TYPE_CHECKING:
    from tgclaw.app import App

log = logging.getLogger(__name__)

ERRORS_DIR = "errors"

_PAST_TENSE = {
    "pause_task": "paused",
    "resume_task": "resumed",
    "cancel_task": "cancelled",
}


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def list_source_groups(ipc_dir: Path) -> list[str]:
    return sorted(
        p.name for p in ipc_dir.iterdir() if p.is_dir() and p.name != ERRORS_DIR
    )


def quarantine(ipc_dir: Path, source_group: str, path: Path) -> Path:
    errors_dir = ipc_dir / ERRORS_DIR
    errors_dir.mkdir(parents=True, exist_ok=True)
    target = errors_dir / f"{source_group}-{path.name}"
    path.rename(target)
    return target


async def _drain_queue(
    app: App,
    queue_dir: Path,
    source_group: str,
    is_main: bool,
    adapter: TypeAdapter[Any],
) -> None:
    try:
        files = sorted(queue_dir.glob("*.json"))
    except OSError:
        log.exception("Error reading IPC directory %s", queue_dir)
        return

    for path in files:
        try:
            request = adapter.validate_json(path.read_bytes())
            await dispatch(request, source_group, is_main, app)
        except Exception:
            log.exception(
                "Error processing IPC file %s from %s", path.name, source_group
            )
            try:
                quarantine(app.settings.ipc_dir, source_group, path)
            except OSError:
                log.exception("Could not quarantine %s", path)
            continue
        path.unlink(missing_ok=True)


async def process_ipc_files(app: App) -> None:
    """Drain every group's mailbox once."""
    ipc_dir = app.settings.ipc_dir
    ipc_dir.mkdir(parents=True, exist_ok=True)
    try:
        source_groups = list_source_groups(ipc_dir)
    except OSError:
        log.exception("Error reading IPC base directory")
        return

    for source_group in source_groups:
        is_main = app.state.is_main(source_group)
        base = ipc_dir / source_group
        await _drain_queue(
            app, base / "messages", source_group, is_main, message_request_adapter
        )
        await _drain_queue(
            app, base / "tasks", source_group, is_main, task_request_adapter
        )


async def dispatch(
    request: MailboxRequest, source_group: str, is_main: bool, app: App
) -> None:
    """Apply *request* from *source_group* if it is allowed.

    *source_group* and *is_main* come from the directory the request was read
    from.  Denials are logged and dropped; there is no channel back to the
    requester.
    """
    match request:
        case SendMessageRequest():
            await _send_message(request, source_group, is_main, app)
        case ScheduleTaskRequest():
            _schedule_task(request, source_group, is_main, app)
        case PauseTaskRequest() | ResumeTaskRequest() | CancelTaskRequest():
            _modify_task(request, source_group, is_main, app)
        case RefreshGroupsRequest():
            await _refresh_groups(source_group, is_main, app)
        case RegisterGroupRequest():
            _register_group(request, source_group, is_main, app)
        case _:
            assert_never(request)


async def _send_message(
    request: SendMessageRequest, source_group: str, is_main: bool, app: App
) -> None:
    if not authz.can_send_message(
        source_group, is_main, request.chat_id, app.state.registered_groups
    ):
        log.warning(
            "Unauthorized IPC message blocked: source=%s chat=%s",
            source_group,
            request.chat_id,
        )
        return
    await app.send_message(
        request.chat_id, f"{app.settings.reply_prefix}{request.text}"
    )
    log.info("IPC message sent: source=%s chat=%s", source_group, request.chat_id)


def _schedule_task(
    request: ScheduleTaskRequest, source_group: str, is_main: bool, app: App
) -> None:
    target = request.group_folder
    if not authz.can_schedule_task(source_group, is_main, target):
        log.warning(
            "Unauthorized schedule_task blocked: source=%s target=%s",
            source_group,
            target,
        )
        return

    # The chat comes from the registry, never from the payload.
    chat_id = app.state.chat_id_for_folder(target)
    if chat_id is None:
        log.warning("Cannot schedule task: group %s is not registered", target)
        return

    try:
        next_run = compute_next_run(
            request.schedule_type, request.schedule_value, tz=app.settings.timezone
        )
    except ScheduleError as e:
        log.warning("Refusing schedule_task from %s: %s", source_group, e)
        return

    task_id = new_task_id()
    create_task(
        app.db,
        task_id=task_id,
        group_folder=target,
        chat_id=chat_id,
        prompt=request.prompt,
        schedule_type=request.schedule_type,
        schedule_value=request.schedule_value,
        next_run=next_run,
        context_mode=request.context_mode,
    )
    log.info(
        "Task %s created via IPC: source=%s target=%s mode=%s next=%s",
        task_id,
        source_group,
        target,
        request.context_mode,
        next_run,
    )


def _modify_task(
    request: PauseTaskRequest | ResumeTaskRequest | CancelTaskRequest,
    source_group: str,
    is_main: bool,
    app: App,
) -> None:
    task = get_task(app.db, request.task_id)
    if task is None or not authz.can_modify_task(source_group, is_main, task):
        log.warning(
            "Unauthorized or unknown %s blocked: source=%s task=%s",
            request.type,
            source_group,
            request.task_id,
        )
        return

    # Completed tasks have no next run left to pause or resume.
    if task.status == "completed" and not isinstance(request, CancelTaskRequest):
        log.info("Ignoring %s for completed task %s", request.type, task.id)
        return

    match request:
        case PauseTaskRequest():
            update_task(app.db, request.task_id, status="paused")
        case ResumeTaskRequest():
            update_task(app.db, request.task_id, status="active")
        case CancelTaskRequest():
            delete_task(app.db, request.task_id)
    log.info(
        "Task %s %s via IPC by %s",
        request.task_id,
        _PAST_TENSE[request.type],
        source_group,
    )


async def _refresh_groups(source_group: str, is_main: bool, app: App) -> None:
    if not authz.can_administer(is_main):
        log.warning("Unauthorized refresh_groups blocked: source=%s", source_group)
        return
    log.info("Group metadata refresh requested via IPC by %s", source_group)
    await app.sync_group_metadata(force=True)
    app.write_snapshots(source_group, is_main)


def _register_group(
    request: RegisterGroupRequest, source_group: str, is_main: bool, app: App
) -> None:
    if not authz.can_administer(is_main):
        log.warning(
            "Unauthorized register_group blocked: source=%s chat=%s",
            source_group,
            request.chat_id,
        )
        return

    missing = authz.missing_registration_fields(request)
    if missing:
        log.warning("Invalid register_group request, missing %s", ", ".join(missing))
        return
    if not authz.is_valid_folder(request.folder):
        log.warning("Refusing register_group with folder %r", request.folder)
        return
    owner = authz.folder_owner_conflict(
        request.chat_id, request.folder, app.state.registered_groups
    )
    if owner is not None:
        log.warning(
            "Refusing register_group: folder %s already belongs to chat %s, "
            "requested for chat %s",
            request.folder,
            owner,
            request.chat_id,
        )
        return

    app.register_group(
        request.chat_id,
        RegisteredGroup(
            name=request.name,
            folder=request.folder,
            trigger=request.trigger,
            added_at=now_iso(),
            worker_config=request.worker_config,
        ),
    )


async def run_ipc_watcher(app: App) -> None:
    log.info("IPC watcher started (per-group namespaces)")
    while True:
        try:
            await process_ipc_files(app)
        except Exception:
            log.exception("Error in IPC watcher")
        await asyncio.sleep(app.settings.ipc_poll_interval)
