from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "TGCLAW_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "tgclaw" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "tgclaw"
    assistant_name: str = "Andy"
    main_group_folder: str = "main"
    timezone: str = "UTC"
    poll_interval: float = 2.0  # Message router period in seconds
    scheduler_poll_interval: float = 60.0
    ipc_poll_interval: float = 1.0
    group_sync_interval: int = 24 * 60 * 60
    model: str = "claude-opus-4-6"
    cli_path: Path | None = None
    telegram_bot_token: str | None = None
    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {value!r}") from exc
        return value

    @property
    def db_path(self) -> Path:
        return self.data / "store" / "messages.db"

    @property
    def ipc_dir(self) -> Path:
        return self.data / "ipc"

    @property
    def groups_dir(self) -> Path:
        return self.data / "groups"

    @property
    def default_trigger(self) -> str:
        return f"@{self.assistant_name}"

    @property
    def reply_prefix(self) -> str:
        """Prefix of every outbound message; also how our own messages are
        recognised when they come back through the inbound feed."""
        return f"{self.assistant_name}: "


settings = Settings()
