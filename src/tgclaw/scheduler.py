from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from tgclaw.db import get_due_tasks, get_task, log_task_run, update_task_after_run
from tgclaw.models import ScheduledTask
from tgclaw.scheduling import ScheduleError, compute_next_run, to_iso

if TYPE_CHECKING:
    from tgclaw.app import App

log = logging.getLogger(__name__)


def next_run_after(task: ScheduledTask, now: datetime, tz: str) -> str | None:
    """Next run of *task* after a run at *now*; None retires the task.

    The schedule itself is never changed by a run.  A ``once`` task always
    retires, and so does a task whose stored schedule no longer evaluates.
    """
    if task.schedule_type == "once":
        return None
    try:
        return compute_next_run(task.schedule_type, task.schedule_value, now, tz)
    except ScheduleError:
        log.warning("Retiring task %s: unusable schedule", task.id, exc_info=True)
        return None


async def run_task(app: App, task: ScheduledTask, now: datetime | None = None) -> None:
    start_time = now or datetime.now(timezone.utc)
    started = time.monotonic()

    result_text: str | None = None
    error_msg: str | None = None

    group = app.state.group_for_folder(task.group_folder)
    if group is None:
        error_msg = f"Group not found: {task.group_folder}"
        log.error("Task %s belongs to unregistered group %s", task.id, task.group_folder)
    else:
        log.info("Running task %s for group %s", task.id, task.group_folder)
        try:
            output = await app.run_agent(
                group, task.prompt, task.chat_id, context_mode=task.context_mode
            )
            if output.status == "error":
                error_msg = output.error or "Unknown error"
            else:
                result_text = output.result
        except Exception as e:
            log.exception("Task %s failed", task.id)
            error_msg = str(e) or type(e).__name__

    duration_ms = int((time.monotonic() - started) * 1000)

    # Recurring tasks advance even on error.
    next_run = next_run_after(task, start_time, app.settings.timezone)
    if error_msg:
        result_summary = f"Error: {error_msg}"
    else:
        result_summary = result_text[:200] if result_text else "Completed"

    update_task_after_run(
        app.db,
        task.id,
        next_run=next_run,
        last_result=result_summary,
        last_run=to_iso(start_time),
    )
    log_task_run(
        app.db,
        task_id=task.id,
        run_at=to_iso(start_time),
        duration_ms=duration_ms,
        status="error" if error_msg else "success",
        result=result_text,
        error=error_msg,
    )
    log.info(
        "Task %s finished in %dms (%s), next run: %s",
        task.id,
        duration_ms,
        "error" if error_msg else "success",
        next_run,
    )

    if result_text and not error_msg:
        await app.send_message(task.chat_id, f"{app.settings.reply_prefix}{result_text}")


async def run_due_tasks(app: App, now: datetime | None = None) -> int:
    """Run every task due at *now*, oldest ``next_run`` first."""
    due_tasks = get_due_tasks(
        app.db, to_iso(now or datetime.now(timezone.utc))
    )
    if due_tasks:
        log.info("Found %d due tasks", len(due_tasks))

    ran = 0
    for due in due_tasks:
        # A mailbox request may have paused or cancelled it since the query.
        task = get_task(app.db, due.id)
        if task is None or task.status != "active":
            continue
        await run_task(app, task)
        ran += 1
    return ran


async def run_scheduler(app: App) -> None:
    log.info("Scheduler started")

    while True:
        try:
            await run_due_tasks(app)
        except Exception:
            log.exception("Error in scheduler loop")
        await asyncio.sleep(app.settings.scheduler_poll_interval)
