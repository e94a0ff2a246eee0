"""Runtime configuration for the task queue, dispatchers and provisioning."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_BOT_USERNAMES: tuple[str, ...] = (
    "aportopost_bot",
    "justaskmari_bot",
    "aportomessage_bot",
    "aportostats_bot",
)
DEFAULT_ADMIN_BOT_USERNAMES: tuple[str, ...] = ("aportopost_bot", "aportomessage_bot")
DEFAULT_READ_ONLY_BOT_USERNAMES: tuple[str, ...] = ("justaskmari_bot",)
DEFAULT_PROMO_URL = "https://t.me/aportomessage_bot/app?startapp=promo"


@dataclass(slots=True)
class TelegramSettings:
    """Chat platform credentials and client options."""

    api_id: int | None = None
    api_hash: str = ""
    session: str = ""
    bot_token: str = ""
    connection_retries: int = 5
    dialogs_limit: int = 100


@dataclass(slots=True)
class DispatchSettings:
    """Dispatch loop pacing and continuation trigger settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    inline_wait_limit_seconds: int = 15
    chat_task_delay_seconds: float = 1.0
    topic_task_delay_seconds: float = 0.5
    unified_task_delay_seconds: float = 0.5
    idle_seconds: float = 3.0
    error_backoff_seconds: float = 5.0
    stale_processing_seconds: int = 1_800
    trigger_url: str | None = None
    trigger_timeout_seconds: float = 10.0
    secret_key: str | None = None


@dataclass(slots=True)
class ProvisioningSettings:
    """Ecosystem provisioning defaults."""

    bot_usernames: tuple[str, ...] = DEFAULT_BOT_USERNAMES
    admin_bot_usernames: tuple[str, ...] = DEFAULT_ADMIN_BOT_USERNAMES
    read_only_bot_usernames: tuple[str, ...] = DEFAULT_READ_ONLY_BOT_USERNAMES
    admin_rank: str = "Bot Admin"
    follow_up_delay_seconds: int = 60
    short_link_code_length: int = 6
    promo_url: str = DEFAULT_PROMO_URL


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".ecosystem_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    provisioning: ProvisioningSettings = field(default_factory=ProvisioningSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        dispatch_defaults = DispatchSettings()
        settings = cls(
            db_path=db_path or Path(os.getenv("ECOSYSTEM_QUEUE_DB_PATH", ".ecosystem_queue.db")),
            sqlite_busy_timeout_ms=_env_int("ECOSYSTEM_QUEUE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            telegram=TelegramSettings(
                api_id=_env_optional_int("ECOSYSTEM_QUEUE_TELEGRAM_API_ID"),
                api_hash=os.getenv("ECOSYSTEM_QUEUE_TELEGRAM_API_HASH", "").strip(),
                session=os.getenv("ECOSYSTEM_QUEUE_TELEGRAM_SESSION", "").strip(),
                bot_token=os.getenv("ECOSYSTEM_QUEUE_TELEGRAM_BOT_TOKEN", "").strip(),
                connection_retries=_env_int("ECOSYSTEM_QUEUE_TELEGRAM_CONNECTION_RETRIES", 5),
                dialogs_limit=_env_int("ECOSYSTEM_QUEUE_DIALOGS_LIMIT", 100),
            ),
            dispatch=DispatchSettings(
                worker_id=os.getenv("ECOSYSTEM_QUEUE_WORKER_ID", dispatch_defaults.worker_id),
                inline_wait_limit_seconds=_env_int("ECOSYSTEM_QUEUE_INLINE_WAIT_LIMIT_SECONDS", 15),
                chat_task_delay_seconds=_env_float("ECOSYSTEM_QUEUE_CHAT_TASK_DELAY_SECONDS", 1.0),
                topic_task_delay_seconds=_env_float(
                    "ECOSYSTEM_QUEUE_TOPIC_TASK_DELAY_SECONDS",
                    0.5,
                ),
                unified_task_delay_seconds=_env_float(
                    "ECOSYSTEM_QUEUE_UNIFIED_TASK_DELAY_SECONDS",
                    0.5,
                ),
                idle_seconds=_env_float("ECOSYSTEM_QUEUE_IDLE_SECONDS", 3.0),
                error_backoff_seconds=_env_float("ECOSYSTEM_QUEUE_ERROR_BACKOFF_SECONDS", 5.0),
                stale_processing_seconds=_env_int(
                    "ECOSYSTEM_QUEUE_STALE_PROCESSING_SECONDS",
                    1_800,
                ),
                trigger_url=os.getenv("ECOSYSTEM_QUEUE_TRIGGER_URL", "").strip() or None,
                trigger_timeout_seconds=_env_float(
                    "ECOSYSTEM_QUEUE_TRIGGER_TIMEOUT_SECONDS",
                    10.0,
                ),
                secret_key=(
                    os.getenv("ECOSYSTEM_QUEUE_SECRET_KEY", os.getenv("APP_SECRET_KEY", "")).strip()
                    or None
                ),
            ),
            provisioning=ProvisioningSettings(
                bot_usernames=_env_csv("ECOSYSTEM_QUEUE_BOT_USERNAMES", DEFAULT_BOT_USERNAMES),
                admin_bot_usernames=_env_csv(
                    "ECOSYSTEM_QUEUE_ADMIN_BOT_USERNAMES",
                    DEFAULT_ADMIN_BOT_USERNAMES,
                ),
                read_only_bot_usernames=_env_csv(
                    "ECOSYSTEM_QUEUE_READ_ONLY_BOT_USERNAMES",
                    DEFAULT_READ_ONLY_BOT_USERNAMES,
                ),
                admin_rank=os.getenv("ECOSYSTEM_QUEUE_ADMIN_RANK", "Bot Admin"),
                follow_up_delay_seconds=_env_int("ECOSYSTEM_QUEUE_FOLLOW_UP_DELAY_SECONDS", 60),
                short_link_code_length=_env_int("ECOSYSTEM_QUEUE_SHORT_LINK_CODE_LENGTH", 6),
                promo_url=os.getenv("ECOSYSTEM_QUEUE_PROMO_URL", DEFAULT_PROMO_URL).strip(),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for values no component can work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ECOSYSTEM_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.telegram.dialogs_limit <= 0:
            raise ValueError("ECOSYSTEM_QUEUE_DIALOGS_LIMIT must be > 0.")
        if self.dispatch.inline_wait_limit_seconds < 0:
            raise ValueError("ECOSYSTEM_QUEUE_INLINE_WAIT_LIMIT_SECONDS must be >= 0.")
        if self.dispatch.stale_processing_seconds <= 0:
            raise ValueError("ECOSYSTEM_QUEUE_STALE_PROCESSING_SECONDS must be > 0.")
        for name, value in (
            ("ECOSYSTEM_QUEUE_CHAT_TASK_DELAY_SECONDS", self.dispatch.chat_task_delay_seconds),
            ("ECOSYSTEM_QUEUE_TOPIC_TASK_DELAY_SECONDS", self.dispatch.topic_task_delay_seconds),
            (
                "ECOSYSTEM_QUEUE_UNIFIED_TASK_DELAY_SECONDS",
                self.dispatch.unified_task_delay_seconds,
            ),
            ("ECOSYSTEM_QUEUE_IDLE_SECONDS", self.dispatch.idle_seconds),
            ("ECOSYSTEM_QUEUE_ERROR_BACKOFF_SECONDS", self.dispatch.error_backoff_seconds),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.dispatch.trigger_url is not None:
            _validate_url(self.dispatch.trigger_url, "ECOSYSTEM_QUEUE_TRIGGER_URL")
        if self.provisioning.follow_up_delay_seconds < 0:
            raise ValueError("ECOSYSTEM_QUEUE_FOLLOW_UP_DELAY_SECONDS must be >= 0.")
        if self.provisioning.short_link_code_length < 4:  # noqa: PLR2004
            raise ValueError("ECOSYSTEM_QUEUE_SHORT_LINK_CODE_LENGTH must be >= 4.")
        unknown_admins = set(self.provisioning.admin_bot_usernames) - set(
            self.provisioning.bot_usernames,
        )
        if unknown_admins:
            raise ValueError(
                "Admin bots must also be listed in ECOSYSTEM_QUEUE_BOT_USERNAMES: "
                f"{sorted(unknown_admins)}",
            )
        _validate_url(self.provisioning.promo_url, "ECOSYSTEM_QUEUE_PROMO_URL")

    def validate_for_telegram(self) -> None:
        """Raise configuration error if chat platform credentials are missing."""

        if self.telegram.api_id is None:
            raise ValueError("ECOSYSTEM_QUEUE_TELEGRAM_API_ID is required.")
        if not self.telegram.api_hash:
            raise ValueError("ECOSYSTEM_QUEUE_TELEGRAM_API_HASH is required.")
        if not self.telegram.session:
            raise ValueError(
                "ECOSYSTEM_QUEUE_TELEGRAM_SESSION is required "
                "(a StringSession exported from an authorized login).",
            )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return _env_int(name, 0)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip().lstrip("@")
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _validate_url(value: str, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
