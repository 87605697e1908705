"""Authorization rules for mailbox requests.

Every check takes the *source* folder and the *is_main* flag the mailbox
derived from where the request file was found.  Nothing here reads identity
from the request payload.
"""

from __future__ import annotations

import re

from tgclaw.models import RegisterGroupRequest, RegisteredGroup, ScheduledTask

_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def is_valid_folder(folder: str) -> bool:
    """A folder must be a single safe path component."""
    return bool(_FOLDER_RE.match(folder)) and folder != "errors"


def can_send_message(
    source_group: str,
    is_main: bool,
    chat_id: str,
    registered_groups: dict[str, RegisteredGroup],
) -> bool:
    if is_main:
        return True
    target = registered_groups.get(chat_id)
    return target is not None and target.folder == source_group


def can_schedule_task(source_group: str, is_main: bool, target_folder: str) -> bool:
    return is_main or target_folder == source_group


def can_modify_task(
    source_group: str, is_main: bool, task: ScheduledTask | None
) -> bool:
    if task is None:
        return False
    return is_main or task.group_folder == source_group


def can_administer(is_main: bool) -> bool:
    """Refreshing chat metadata and registering groups are main-only."""
    return is_main


def missing_registration_fields(request: RegisterGroupRequest) -> list[str]:
    return [
        name
        for name in ("chat_id", "name", "folder", "trigger")
        if not getattr(request, name)
    ]


def folder_owner_conflict(
    chat_id: str, folder: str, registered_groups: dict[str, RegisteredGroup]
) -> str | None:
    """Chat id already holding *folder*, if it is not *chat_id*.

    A folder belongs to one chat, so there is one main group and every task
    folder resolves to a single chat.
    """
    for owner, group in registered_groups.items():
        if group.folder == folder and owner != chat_id:
            return owner
    return None
