# bothost/config.py
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    # Snapshot storage (two whole-document JSON files)
    data_dir: str = "data"
    bots_file: str = "bots.json"
    commands_file: str = "commands.json"

    # Telegram Bot API
    telegram_api_base: str = "https://api.telegram.org"
    telegram_poll_timeout: int = 30  # getUpdates long-poll timeout (seconds)
    credential_check_timeout_seconds: float = 10.0  # getMe round-trip at bot creation

    # Lifecycle
    session_stop_grace_seconds: float = 5.0  # after this the poll task is abandoned

    # Command handlers
    handler_timeout_seconds: float = 15.0
    webhook_action_timeout_seconds: float = 10.0
    max_reply_chars: int = 4096  # Telegram sendMessage text limit
    default_start_greeting: str = "Hello from BotHost!"

    # HTTP
    allowed_origins: list[str] = ["*"]
    enable_request_logging: bool = True

    # Monitoring
    enable_metrics: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def bots_path(self) -> Path:
        return Path(self.data_dir) / self.bots_file

    @property
    def commands_path(self) -> Path:
        return Path(self.data_dir) / self.commands_file


def warn_on_risky_config(s: "Settings") -> list[str]:
    """Return human-readable warnings for settings that work but are risky."""
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("allowed_origins=* in production (management API is unauthenticated).")

    if s.session_stop_grace_seconds <= 0:
        warnings.append("session_stop_grace_seconds<=0: stopping a bot will never wait for its poll task.")

    if s.handler_timeout_seconds < s.webhook_action_timeout_seconds:
        warnings.append(
            "handler_timeout_seconds is shorter than webhook_action_timeout_seconds "
            "(webhook actions are cut off by the handler timeout)."
        )

    return warnings


settings = Settings()
for _msg in warn_on_risky_config(settings):
    print(f"[WARN][config] {_msg}")
