from __future__ import annotations

from pathlib import Path

import pytest

from tgclaw.app import App
from tgclaw.config import Settings
from tgclaw.db import ThreadSafeConnection, init_db
from tgclaw.models import RegisteredGroup
from tgclaw.state import AppState

MAIN_CHAT = "100"
ALPHA_CHAT = "-200"
BETA_CHAT = "-300"

MAIN_GROUP = RegisteredGroup(
    name="Main", folder="main", trigger="@Andy", added_at="2025-01-01T00:00:00.000+00:00"
)
ALPHA_GROUP = RegisteredGroup(
    name="Alpha", folder="alpha", trigger="@Andy", added_at="2025-01-01T00:00:00.000+00:00"
)
BETA_GROUP = RegisteredGroup(
    name="Beta", folder="beta", trigger="@Andy", added_at="2025-01-01T00:00:00.000+00:00"
)


class FakeChannel:
    """Records outbound traffic instead of talking to Telegram."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.titles: dict[str, str] = {}
        self.fail_sends = False

    async def send_message(self, chat_id: str, text: str) -> None:
        if self.fail_sends:
            raise RuntimeError("network down")
        self.sent.append((chat_id, text))

    async def set_typing(self, chat_id: str) -> None:
        self.typing.append(chat_id)

    async def get_chat_title(self, chat_id: str) -> str | None:
        return self.titles.get(chat_id)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(_env_file=None, data=tmp_path / "data")


@pytest.fixture
def db(settings: Settings) -> ThreadSafeConnection:
    return init_db(settings.db_path)


@pytest.fixture
def state(settings: Settings) -> AppState:
    state = AppState(settings.data, settings.main_group_folder)
    state.registered_groups = {
        MAIN_CHAT: MAIN_GROUP,
        ALPHA_CHAT: ALPHA_GROUP,
        BETA_CHAT: BETA_GROUP,
    }
    return state


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def app(
    settings: Settings, db: ThreadSafeConnection, state: AppState, channel: FakeChannel
) -> App:
    return App(settings, db, state, channel)
