from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    username: str
    tick_seconds: float
    resume_delay_seconds: float
    confirmation_timeout_seconds: float
    llm_api_key: str | None
    llm_base_url: str
    llm_model: str
    llm_timeout_seconds: float
    gmail_access_token: str | None
    slack_bot_token: str | None
    telegram_bot_token: str | None
    discord_bot_token: str | None
    x_bearer_token: str | None
    imessage_enabled: bool
    host: str
    port: int
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".followthrough")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        return Settings(
            log_level=os.getenv("FOLLOWTHROUGH_LOG_LEVEL", "info"),
            log_dir=os.getenv("FOLLOWTHROUGH_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("FOLLOWTHROUGH_DATA_DIR") or default_data_dir,
            username=os.getenv("FOLLOWTHROUGH_USER", "default"),
            tick_seconds=float(os.getenv("FOLLOWTHROUGH_TICK_SECONDS", "30")),
            resume_delay_seconds=float(os.getenv("FOLLOWTHROUGH_RESUME_DELAY_SECONDS", "5")),
            confirmation_timeout_seconds=float(os.getenv("FOLLOWTHROUGH_CONFIRM_TIMEOUT_SECONDS", "300")),
            llm_api_key=os.getenv("ANTHROPIC_API_KEY"),
            llm_base_url=os.getenv("FOLLOWTHROUGH_LLM_BASE_URL", "https://api.anthropic.com"),
            llm_model=os.getenv("FOLLOWTHROUGH_LLM_MODEL", "claude-sonnet-4-20250514"),
            llm_timeout_seconds=float(os.getenv("FOLLOWTHROUGH_LLM_TIMEOUT", "30")),
            gmail_access_token=os.getenv("GMAIL_ACCESS_TOKEN"),
            slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            discord_bot_token=os.getenv("DISCORD_BOT_TOKEN"),
            x_bearer_token=os.getenv("X_BEARER_TOKEN"),
            imessage_enabled=_flag("FOLLOWTHROUGH_IMESSAGE_ENABLED"),
            host=os.getenv("FOLLOWTHROUGH_HOST", "127.0.0.1"),
            port=int(os.getenv("FOLLOWTHROUGH_PORT", "18791")),
            clear_logs_on_launch=_flag("FOLLOWTHROUGH_CLEAR_LOGS_ON_LAUNCH"),
        )
