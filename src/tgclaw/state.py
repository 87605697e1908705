"""Process-scoped registries persisted as JSON snapshots under the data dir.

``registered_groups.json`` maps chat id to :class:`RegisteredGroup`,
``sessions.json`` maps group folder to the worker's session id, and
``router_state.json`` holds the message router's low-water-mark.  Each file
is loaded once at startup and rewritten whenever its registry changes.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from tgclaw.models import RegisteredGroup

log = logging.getLogger(__name__)

_groups_adapter = TypeAdapter(dict[str, RegisteredGroup])
_sessions_adapter = TypeAdapter(dict[str, str])


class RouterState(BaseModel):
    last_timestamp: str = ""
    last_agent_timestamp: dict[str, str] = Field(default_factory=dict)


def _load_json(path: Path, adapter: TypeAdapter[Any], default: Any) -> Any:
    try:
        return adapter.validate_json(path.read_bytes())
    except FileNotFoundError:
        return default
    except (ValidationError, ValueError):
        log.exception("Ignoring unreadable state file %s", path)
        return default


def _save_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class AppState:
    def __init__(self, data_dir: Path, main_group_folder: str = "main") -> None:
        self.data_dir = data_dir
        self.main_group_folder = main_group_folder
        self.registered_groups: dict[str, RegisteredGroup] = {}
        self.sessions: dict[str, str] = {}
        self.router = RouterState()

    @property
    def _groups_path(self) -> Path:
        return self.data_dir / "registered_groups.json"

    @property
    def _sessions_path(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def _router_path(self) -> Path:
        return self.data_dir / "router_state.json"

    def load(self) -> None:
        self.registered_groups = _load_json(self._groups_path, _groups_adapter, {})
        self.sessions = _load_json(self._sessions_path, _sessions_adapter, {})
        self.router = _load_json(
            self._router_path, TypeAdapter(RouterState), RouterState()
        )
        log.info("State loaded: %d registered groups", len(self.registered_groups))

    def save_router_state(self) -> None:
        _save_json(self._router_path, self.router.model_dump())

    def set_session(self, group_folder: str, session_id: str) -> None:
        self.sessions[group_folder] = session_id
        _save_json(self._sessions_path, self.sessions)

    def register_group(
        self, chat_id: str, group: RegisteredGroup, groups_dir: Path
    ) -> None:
        self.registered_groups[chat_id] = group
        _save_json(
            self._groups_path,
            {
                jid: g.model_dump(exclude_none=True)
                for jid, g in self.registered_groups.items()
            },
        )
        (groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        log.info(
            "Group registered: chat=%s name=%r folder=%s",
            chat_id,
            group.name,
            group.folder,
        )

    def is_main(self, group_folder: str) -> bool:
        return group_folder == self.main_group_folder

    def chat_id_for_folder(self, group_folder: str) -> str | None:
        for chat_id, group in self.registered_groups.items():
            if group.folder == group_folder:
                return chat_id
        return None

    def group_for_folder(self, group_folder: str) -> RegisteredGroup | None:
        chat_id = self.chat_id_for_folder(group_folder)
        return self.registered_groups[chat_id] if chat_id is not None else None
