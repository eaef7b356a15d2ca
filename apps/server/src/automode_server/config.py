from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_CLI_ARGS = "--print --output-format stream-json --verbose"
DEFAULT_CORS_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


@dataclass(frozen=True)
class AutoModeSettings:
    max_concurrency: int = 3
    use_worktrees: bool = True
    default_model: str = DEFAULT_MODEL
    max_turns: int = 50
    poll_interval_seconds: float = 2.0
    shutdown_grace_seconds: float = 5.0
    auto_commit: bool = False
    provider: str = "mock"
    cli_bin: str = "claude"
    cli_args: str = DEFAULT_CLI_ARGS
    command_timeout_seconds: float = 120.0
    state_file: str | None = None
    event_webhook_url: str | None = None
    event_webhook_token: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None
    cors_allow_origins: tuple[str, ...] = ("null",)
    cors_allow_origin_regex: str = DEFAULT_CORS_ORIGIN_REGEX

    @classmethod
    def from_env(cls) -> "AutoModeSettings":
        return cls(
            max_concurrency=max(1, _env_int("AUTOMODE_MAX_CONCURRENCY", 3)),
            use_worktrees=_env_bool("AUTOMODE_USE_WORKTREES", True),
            default_model=_env_or_default("AUTOMODE_DEFAULT_MODEL", DEFAULT_MODEL),
            max_turns=max(1, _env_int("AUTOMODE_MAX_TURNS", 50)),
            poll_interval_seconds=max(0.01, _env_float("AUTOMODE_POLL_INTERVAL_SECONDS", 2.0)),
            shutdown_grace_seconds=max(0.0, _env_float("AUTOMODE_SHUTDOWN_GRACE_SECONDS", 5.0)),
            auto_commit=_env_bool("AUTOMODE_AUTO_COMMIT", False),
            provider=_env_or_default("AUTOMODE_PROVIDER", "mock").lower(),
            cli_bin=_env_or_default("AUTOMODE_CLI_BIN", "claude"),
            cli_args=_env_or_default("AUTOMODE_CLI_ARGS", DEFAULT_CLI_ARGS),
            command_timeout_seconds=max(1.0, _env_float("AUTOMODE_COMMAND_TIMEOUT_SECONDS", 120.0)),
            state_file=_env_optional("AUTOMODE_STATE_FILE"),
            event_webhook_url=_env_optional("AUTOMODE_EVENT_WEBHOOK_URL"),
            event_webhook_token=_env_optional("AUTOMODE_EVENT_WEBHOOK_TOKEN"),
            log_level=_env_or_default("AUTOMODE_LOG_LEVEL", "INFO").upper(),
            log_file=_env_optional("AUTOMODE_LOG_FILE"),
            cors_allow_origins=tuple(_parse_csv_env("AUTOMODE_CORS_ALLOW_ORIGINS", default="null")),
            cors_allow_origin_regex=_env_or_default("AUTOMODE_CORS_ALLOW_ORIGIN_REGEX", DEFAULT_CORS_ORIGIN_REGEX),
        )


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = _env_optional(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = _env_optional(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
