"""MCP tools exposed to a worker.

Each tool writes one request file into the worker's own mailbox,
``ipc/<group_folder>/{messages,tasks}/``.  The host drains those directories
and decides what to honour; nothing written here is trusted beyond the
directory it lands in.
"""

import json
import os
import time
import uuid
from pathlib import Path
from textwrap import dedent
from typing import Any

from claude_agent_sdk import SdkMcpTool, create_sdk_mcp_server, tool

from tgclaw.scheduling import ScheduleError, compute_next_run


def write_request(queue_dir: Path, payload: dict[str, Any]) -> Path:
    """Write *payload* atomically so the host never reads a partial file."""
    queue_dir.mkdir(parents=True, exist_ok=True)
    name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}.json"
    tmp = queue_dir / f"{name}.tmp"
    tmp.write_text(json.dumps(payload), encoding="utf-8")
    path = queue_dir / name
    os.replace(tmp, path)
    return path


def _text(message: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": message}]}


def build_tools(
    ipc_dir: Path, *, group_folder: str, chat_id: str, is_main: bool
) -> list[SdkMcpTool]:
    messages_dir = ipc_dir / group_folder / "messages"
    tasks_dir = ipc_dir / group_folder / "tasks"

    @tool(
        "send_message",
        dedent("""\
        Send a message to the chat right away, while you keep working.
        Defaults to the current chat.  Only the main group may address \
        other chats."""),
        {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "chat_id": {
                    "type": "string",
                    "description": "Target chat id (defaults to the current chat).",
                },
            },
            "required": ["text"],
        },
    )
    async def send_message(args: dict[str, Any]) -> dict[str, Any]:
        write_request(
            messages_dir,
            {
                "type": "message",
                "chatId": args.get("chat_id") or chat_id,
                "text": args["text"],
            },
        )
        return _text("Message queued for delivery.")

    @tool(
        "schedule_task",
        dedent("""\
        Schedule a task to run at specified times.
        Supports cron expressions, intervals (milliseconds), or one-time execution.
        Results are sent to the chat of the group that owns the task."""),
        {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "What the agent should do when the task fires.",
                },
                "schedule_type": {
                    "type": "string",
                    "enum": ["cron", "interval", "once"],
                    "description": (
                        '"cron": recurring via cron expression (e.g. "0 9 * * *"). '
                        '"interval": recurring every N milliseconds (e.g. "3600000"). '
                        '"once": one-shot at an ISO 8601 timestamp (e.g. "2025-03-01T12:00:00").'
                    ),
                },
                "schedule_value": {"type": "string"},
                "context_mode": {
                    "type": "string",
                    "enum": ["group", "isolated"],
                    "description": (
                        '"group": the run continues the group conversation. '
                        '"isolated": the run starts from a blank session (default).'
                    ),
                },
                "group_folder": {
                    "type": "string",
                    "description": "Owning group folder (main group only).",
                },
            },
            "required": ["prompt", "schedule_type", "schedule_value"],
        },
    )
    async def schedule_task(args: dict[str, Any]) -> dict[str, Any]:
        schedule_type = args["schedule_type"]
        schedule_value = str(args["schedule_value"])
        try:
            compute_next_run(schedule_type, schedule_value)
        except ScheduleError as e:
            return _text(f"Not scheduled: {e}")

        target = args.get("group_folder") if is_main else None
        write_request(
            tasks_dir,
            {
                "type": "schedule_task",
                "prompt": args["prompt"],
                "schedule_type": schedule_type,
                "schedule_value": schedule_value,
                "context_mode": args.get("context_mode", "isolated"),
                "groupFolder": target or group_folder,
            },
        )
        return _text(f"Task requested ({schedule_type}: {schedule_value}).")

    @tool(
        "list_tasks",
        "List scheduled tasks visible to this group.",
        {"type": "object", "properties": {}},
    )
    async def list_tasks(args: dict[str, Any]) -> dict[str, Any]:
        snapshot = ipc_dir / group_folder / "current_tasks.json"
        try:
            tasks = json.loads(snapshot.read_text(encoding="utf-8"))
        except (FileNotFoundError, ValueError):
            tasks = []
        if not tasks:
            return _text("No tasks scheduled.")

        lines = ["Tasks:"]
        for task in tasks:
            prefix = f"  {task['id']}: "
            if is_main:
                prefix += f"[{task['group_folder']}] "
            lines.append(
                f"{prefix}{task['prompt'][:50]} "
                f"({task['status']}, next: {task['next_run']})"
            )
        return _text("\n".join(lines))

    def _task_action(action: str, description: str) -> SdkMcpTool:
        @tool(f"{action}_task", description, {"task_id": str})
        async def handler(args: dict[str, Any]) -> dict[str, Any]:
            write_request(tasks_dir, {"type": f"{action}_task", "taskId": args["task_id"]})
            return _text(f"Requested {action} of task {args['task_id']}.")

        return handler

    tools = [
        send_message,
        schedule_task,
        list_tasks,
        _task_action("pause", "Pause a scheduled task."),
        _task_action("resume", "Resume a paused task."),
        _task_action("cancel", "Cancel and delete a scheduled task."),
    ]

    if not is_main:
        return tools

    @tool(
        "refresh_groups",
        "Refresh chat names from Telegram and rewrite available_groups.json.",
        {"type": "object", "properties": {}},
    )
    async def refresh_groups(args: dict[str, Any]) -> dict[str, Any]:
        write_request(tasks_dir, {"type": "refresh_groups"})
        return _text("Group refresh requested.")

    @tool(
        "register_group",
        "Register a chat so the assistant responds there.",
        {
            "type": "object",
            "properties": {
                "chat_id": {"type": "string"},
                "name": {"type": "string"},
                "folder": {
                    "type": "string",
                    "description": "Workspace folder name (letters, digits, - and _).",
                },
                "trigger": {"type": "string", "description": 'e.g. "@Andy"'},
            },
            "required": ["chat_id", "name", "folder", "trigger"],
        },
    )
    async def register_group(args: dict[str, Any]) -> dict[str, Any]:
        write_request(
            tasks_dir,
            {
                "type": "register_group",
                "chatId": args["chat_id"],
                "name": args["name"],
                "folder": args["folder"],
                "trigger": args["trigger"],
            },
        )
        return _text(f"Registration of {args['name']} requested.")

    return [*tools, refresh_groups, register_group]


def make_mcp_server(
    ipc_dir: Path, *, group_folder: str, chat_id: str, is_main: bool
):
    return create_sdk_mcp_server(
        name="tgclaw",
        tools=build_tools(
            ipc_dir, group_folder=group_folder, chat_id=chat_id, is_main=is_main
        ),
    )
