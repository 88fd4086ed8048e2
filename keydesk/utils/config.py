"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_tuple(name: str) -> tuple[str, ...]:
    value = os.getenv(name, "")
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = "KeyDesk Card Provisioning"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    database_path: Path = Path("data/keydesk.db")
    database_timeout_seconds: float = 5.0
    outbox_path: Path = Path("data/agent_outbox.db")

    # Local hardware agent
    bridge_service_url: str = "http://localhost:3001"
    health_check_timeout_seconds: float = 3.0
    reader_status_timeout_seconds: float = 5.0
    reader_reconnect_timeout_seconds: float = 10.0
    card_detect_timeout_seconds: float = 10.0
    card_write_timeout_seconds: float = 30.0
    health_poll_interval_seconds: float = 30.0

    # Sequence orchestration
    card_detect_poll_interval_seconds: float = 0.1
    card_wait_stall_seconds: float = 60.0
    delay_between_cards_seconds: float = 1.0
    blocking_card_types: tuple[str, ...] = field(default_factory=tuple)

    # Agents and queue
    agent_liveness_window_seconds: int = 120
    agent_poll_interval_seconds: float = 5.0
    agent_max_report_retries: int = 5
    pairing_token_ttl_seconds: int = 300
    issue_unclaimed_timeout_seconds: int = 900
    issue_list_default_limit: int = 50
    issue_list_max_limit: int = 200

    # Agent id whose queue this console host also works, sharing its reader
    desk_agent_id: str = ""

    cloud_api_url: str = "http://localhost:8000"
    api_base_url: str = "http://127.0.0.1:8000"


def validate_settings(settings: Settings) -> None:
    from keydesk.domain.models import CardType

    positive_fields = (
        "database_timeout_seconds",
        "health_check_timeout_seconds",
        "reader_status_timeout_seconds",
        "reader_reconnect_timeout_seconds",
        "card_detect_timeout_seconds",
        "card_write_timeout_seconds",
        "health_poll_interval_seconds",
        "card_detect_poll_interval_seconds",
        "card_wait_stall_seconds",
        "agent_liveness_window_seconds",
        "agent_poll_interval_seconds",
        "pairing_token_ttl_seconds",
        "issue_unclaimed_timeout_seconds",
        "issue_list_default_limit",
        "issue_list_max_limit",
    )
    for name in positive_fields:
        if getattr(settings, name) <= 0:
            raise ValueError(f"{name} must be > 0")
    if settings.delay_between_cards_seconds < 0:
        raise ValueError("delay_between_cards_seconds must be >= 0")
    if settings.agent_max_report_retries < 0:
        raise ValueError("agent_max_report_retries must be >= 0")
    if settings.issue_list_default_limit > settings.issue_list_max_limit:
        raise ValueError("issue_list_default_limit must not exceed issue_list_max_limit")
    known = {card_type.value for card_type in CardType}
    unknown = [item for item in settings.blocking_card_types if item not in known]
    if unknown:
        raise ValueError(f"Unknown blocking card types: {', '.join(unknown)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings from the environment once per process."""
    settings = Settings(
        app_name=_env_str("APP_NAME", Settings.app_name),
        app_version=_env_str("APP_VERSION", Settings.app_version),
        log_level=_env_str("LOG_LEVEL", Settings.log_level),
        database_path=Path(_env_str("DATABASE_PATH", str(Settings.database_path))),
        database_timeout_seconds=_env_float(
            "DATABASE_TIMEOUT_SECONDS", Settings.database_timeout_seconds
        ),
        outbox_path=Path(_env_str("OUTBOX_PATH", str(Settings.outbox_path))),
        bridge_service_url=_env_str("BRIDGE_SERVICE_URL", Settings.bridge_service_url),
        health_check_timeout_seconds=_env_float(
            "HEALTH_CHECK_TIMEOUT_SECONDS", Settings.health_check_timeout_seconds
        ),
        reader_status_timeout_seconds=_env_float(
            "READER_STATUS_TIMEOUT_SECONDS", Settings.reader_status_timeout_seconds
        ),
        reader_reconnect_timeout_seconds=_env_float(
            "READER_RECONNECT_TIMEOUT_SECONDS", Settings.reader_reconnect_timeout_seconds
        ),
        card_detect_timeout_seconds=_env_float(
            "CARD_DETECT_TIMEOUT_SECONDS", Settings.card_detect_timeout_seconds
        ),
        card_write_timeout_seconds=_env_float(
            "CARD_WRITE_TIMEOUT_SECONDS", Settings.card_write_timeout_seconds
        ),
        health_poll_interval_seconds=_env_float(
            "HEALTH_POLL_INTERVAL_SECONDS", Settings.health_poll_interval_seconds
        ),
        card_detect_poll_interval_seconds=_env_float(
            "CARD_DETECT_POLL_INTERVAL_SECONDS", Settings.card_detect_poll_interval_seconds
        ),
        card_wait_stall_seconds=_env_float(
            "CARD_WAIT_STALL_SECONDS", Settings.card_wait_stall_seconds
        ),
        delay_between_cards_seconds=_env_float(
            "DELAY_BETWEEN_CARDS_SECONDS", Settings.delay_between_cards_seconds
        ),
        blocking_card_types=_env_tuple("BLOCKING_CARD_TYPES"),
        agent_liveness_window_seconds=_env_int(
            "AGENT_LIVENESS_WINDOW_SECONDS", Settings.agent_liveness_window_seconds
        ),
        agent_poll_interval_seconds=_env_float(
            "AGENT_POLL_INTERVAL_SECONDS", Settings.agent_poll_interval_seconds
        ),
        agent_max_report_retries=_env_int(
            "AGENT_MAX_REPORT_RETRIES", Settings.agent_max_report_retries
        ),
        pairing_token_ttl_seconds=_env_int(
            "PAIRING_TOKEN_TTL_SECONDS", Settings.pairing_token_ttl_seconds
        ),
        issue_unclaimed_timeout_seconds=_env_int(
            "ISSUE_UNCLAIMED_TIMEOUT_SECONDS", Settings.issue_unclaimed_timeout_seconds
        ),
        issue_list_default_limit=_env_int(
            "ISSUE_LIST_DEFAULT_LIMIT", Settings.issue_list_default_limit
        ),
        issue_list_max_limit=_env_int("ISSUE_LIST_MAX_LIMIT", Settings.issue_list_max_limit),
        desk_agent_id=_env_str("DESK_AGENT_ID", Settings.desk_agent_id),
        cloud_api_url=_env_str("CLOUD_API_URL", Settings.cloud_api_url),
        api_base_url=_env_str("API_BASE_URL", Settings.api_base_url),
    )
    validate_settings(settings)
    return settings
