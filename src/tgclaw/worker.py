"""Worker invocation: one Claude agent run on behalf of a registered group.

Before each run the caller writes two read-only snapshots into the group's
IPC directory so the agent can see its scheduled tasks and the chats it may
address; the agent answers back only through its mailbox (see
:mod:`tgclaw.tools`).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    HookContext,
    HookMatcher,
    ResultMessage,
    TextBlock,
)

from tgclaw.config import Settings
from tgclaw.models import AvailableGroup, ScheduledTask, WorkerInput, WorkerOutput
from tgclaw.tools import make_mcp_server

log = logging.getLogger(__name__)

# Suppress the "Using bundled Claude Code CLI: ..." INFO line that fires on
# every subprocess spawn.
logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    logging.WARNING
)

TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"

# Only the main group gets a shell.  Other groups' file tools may not touch
# anything outside groups/<folder>.
SHELL_TOOLS = ["Bash"]
FILE_TOOLS = ["Read", "Write", "Edit", "MultiEdit", "NotebookEdit", "Glob", "Grep"]

_ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "mcp__tgclaw__*",
]


def _write_snapshot(path: Path, payload: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(tmp, path)
    return path


def write_tasks_snapshot(
    ipc_dir: Path, group_folder: str, is_main: bool, tasks: list[ScheduledTask]
) -> Path:
    """The main group sees every task; other groups only their own."""
    visible = tasks if is_main else [t for t in tasks if t.group_folder == group_folder]
    return _write_snapshot(
        ipc_dir / group_folder / TASKS_SNAPSHOT,
        [
            t.model_dump(
                include={
                    "id",
                    "group_folder",
                    "prompt",
                    "schedule_type",
                    "schedule_value",
                    "status",
                    "next_run",
                }
            )
            for t in visible
        ],
    )


def write_groups_snapshot(
    ipc_dir: Path, group_folder: str, is_main: bool, groups: list[AvailableGroup]
) -> Path:
    """The main group sees every known chat; other groups registered ones only."""
    visible = groups if is_main else [g for g in groups if g.is_registered]
    return _write_snapshot(
        ipc_dir / group_folder / GROUPS_SNAPSHOT,
        {"groups": [g.model_dump() for g in visible]},
    )


async def collect_response(
    client: ClaudeSDKClient,
) -> tuple[str, ResultMessage | None]:
    """Drain ``client.receive_response()`` into ``(text, result_message)``.

    Text blocks are concatenated in order.  When the stream carried no text
    blocks at all, ``ResultMessage.result`` is used instead so that a reply is
    never silently lost.
    """
    parts: list[str] = []
    final: ResultMessage | None = None

    async for message in client.receive_response():
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    parts.append(block.text)
        elif isinstance(message, ResultMessage):
            final = message
            if not parts and message.result:
                parts.append(message.result)

    return "".join(parts), final


def _deny(reason: str) -> dict[str, Any]:
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": reason,
        }
    }


def workspace_guard(workspace: Path):
    """PreToolUse hook refusing file tool calls that reach outside *workspace*.

    Relative paths are resolved against the workspace, which is also the
    agent's working directory.
    """
    root = workspace.resolve()

    async def guard(
        input_data: dict[str, Any], tool_use_id: str | None, context: HookContext
    ) -> dict[str, Any]:
        tool_input = input_data.get("tool_input") or {}
        for key in ("file_path", "notebook_path", "path"):
            value = tool_input.get(key)
            if not value:
                continue
            target = (root / Path(value).expanduser()).resolve()
            if not target.is_relative_to(root):
                log.warning(
                    "Blocked %s outside workspace %s: %s",
                    input_data.get("tool_name"),
                    root,
                    value,
                )
                return _deny(f"{value} is outside this group's workspace")
        return {}

    return guard


def build_options(settings: Settings, worker_input: WorkerInput) -> ClaudeAgentOptions:
    group_dir = settings.groups_dir / worker_input.group_folder
    config = worker_input.worker_config or {}

    if worker_input.is_main:
        allowed_tools = [*SHELL_TOOLS, *_ALLOWED_TOOLS]
        disallowed_tools: list[str] = []
        hooks = None
    else:
        allowed_tools = list(_ALLOWED_TOOLS)
        disallowed_tools = list(SHELL_TOOLS)
        hooks = {
            "PreToolUse": [
                HookMatcher(
                    matcher="|".join(FILE_TOOLS),
                    hooks=[workspace_guard(group_dir)],
                )
            ]
        }

    return ClaudeAgentOptions(
        cwd=str(group_dir),
        permission_mode="bypassPermissions",
        mcp_servers={
            "tgclaw": make_mcp_server(
                settings.ipc_dir,
                group_folder=worker_input.group_folder,
                chat_id=worker_input.chat_id,
                is_main=worker_input.is_main,
            ),
        },
        model=config.get("model") or settings.model,
        allowed_tools=allowed_tools,
        disallowed_tools=disallowed_tools,
        hooks=hooks,
        setting_sources=["project"],
        resume=worker_input.session_id,
        cli_path=settings.cli_path,
        env={"SHELL": "/bin/bash"},
    )


async def run_worker(settings: Settings, worker_input: WorkerInput) -> WorkerOutput:
    (settings.groups_dir / worker_input.group_folder).mkdir(parents=True, exist_ok=True)
    options = build_options(settings, worker_input)

    try:
        async with ClaudeSDKClient(options) as client:
            await client.query(worker_input.prompt)
            text, result = await collect_response(client)
    except Exception as exc:
        log.exception("Worker failed for group %s", worker_input.group_folder)
        return WorkerOutput(status="error", error=str(exc))

    if result is None:
        return WorkerOutput(status="error", error="Worker produced no result")
    if result.is_error:
        return WorkerOutput(
            status="error",
            error=result.result or result.subtype,
            new_session_id=result.session_id,
        )
    return WorkerOutput(
        status="success",
        result=text or None,
        new_session_id=result.session_id,
    )
