# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings from an INI file with environment variable fallbacks.

Environment variables (all prefixed with TRICKLE_):
  TRICKLE_CONFIG - Path to config.ini file (default: config.ini)
  TRICKLE_LOG_LEVEL - Logging level (default: INFO)
  TRICKLE_DB_PATH - Database path (default: /data/trickle.db)
  TRICKLE_HOST - Server host (default: 0.0.0.0)
  TRICKLE_PORT - Server port (default: 8000)
  TRICKLE_API_TOKEN - API authentication token
  TRICKLE_SMTP_HOST, TRICKLE_SMTP_PORT, TRICKLE_SMTP_USER,
  TRICKLE_SMTP_PASSWORD, TRICKLE_SMTP_USE_TLS - SMTP relay
  TRICKLE_VERIFIED_SENDERS - Comma-separated verified addresses or domains
  TRICKLE_MAX_SEND_RATE - Provider max send rate, messages/second (default: 1)
  TRICKLE_MAX_24_HOUR_SEND - Provider daily sending quota (default: none)
  TRICKLE_DEFAULT_RATE_LIMIT - Default seconds between sends (default: 60)
  TRICKLE_MAX_RECIPIENTS - Maximum unique recipients per job (default: 10000)
  TRICKLE_ATTACHMENTS_DIR - Attachment storage directory
  TRICKLE_POLL_INTERVAL - Seconds between trigger dispatch cycles (default: 1)
  TRICKLE_MAX_CONCURRENT_DELIVERIES - Parallel deliveries (default: 10)
  TRICKLE_JOB_RETENTION_SECONDS - Job lifetime (default: 7 days)
  TRICKLE_EVENT_RETENTION_SECONDS - Event lifetime (default: 30 days)
  TRICKLE_TEST_MODE - Disable automatic dispatch (default: False)

Config file sections/keys:
  [storage] db_path, attachments_dir
  [server] host, port, api_token
  [smtp] host, port, user, password, use_tls
  [provider] verified_senders, max_send_rate, max_24_hour_send
  [delivery] default_rate_limit, max_recipients, poll_interval,
             max_concurrent_deliveries, test_mode
  [retention] job_seconds, event_seconds

Values in the file take precedence over the environment.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .models import DEFAULT_RATE_LIMIT

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class Settings:
    db_path: str = "/data/trickle.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    verified_senders: list[str] | None = None
    max_send_rate: float = 1.0
    max_24_hour_send: int | None = None
    default_rate_limit: int = DEFAULT_RATE_LIMIT
    max_recipients: int = 10000
    attachments_dir: str = "/data/attachments"
    poll_interval: float = 1.0
    max_concurrent_deliveries: int = 10
    job_retention_seconds: int = 7 * 24 * 3600
    event_retention_seconds: int = 30 * 24 * 3600
    test_mode: bool = False
    log_level: str = "INFO"


def load_settings(config_path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from ``config_path`` (or ``TRICKLE_CONFIG``) and the environment.

    Raises:
        ValueError: If a numeric option cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("TRICKLE_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None, default: int) -> int:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_optional_int(section: str, option: str, fallback: str | None) -> int | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return None
        return int(value)

    def get_float(section: str, option: str, fallback: str | None, default: float) -> float:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None, default: bool) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        return default

    def get_list(section: str, option: str, fallback: str | None) -> list[str] | None:
        value = get(section, option, fallback)
        if value is None:
            return None
        return [item.strip() for item in value.split(",") if item.strip()]

    token = get("server", "api_token", env.get("TRICKLE_API_TOKEN"))
    return Settings(
        db_path=os.path.expanduser(get("storage", "db_path", env.get("TRICKLE_DB_PATH")) or Settings.db_path),
        host=get("server", "host", env.get("TRICKLE_HOST")) or Settings.host,
        port=get_int("server", "port", env.get("TRICKLE_PORT"), Settings.port),
        api_token=(token.strip() or None) if token else None,
        smtp_host=get("smtp", "host", env.get("TRICKLE_SMTP_HOST")) or None,
        smtp_port=get_int("smtp", "port", env.get("TRICKLE_SMTP_PORT"), Settings.smtp_port),
        smtp_user=get("smtp", "user", env.get("TRICKLE_SMTP_USER")) or None,
        smtp_password=get("smtp", "password", env.get("TRICKLE_SMTP_PASSWORD")) or None,
        smtp_use_tls=get_bool("smtp", "use_tls", env.get("TRICKLE_SMTP_USE_TLS"), True),
        verified_senders=get_list("provider", "verified_senders", env.get("TRICKLE_VERIFIED_SENDERS")),
        max_send_rate=get_float("provider", "max_send_rate", env.get("TRICKLE_MAX_SEND_RATE"), 1.0),
        max_24_hour_send=get_optional_int("provider", "max_24_hour_send", env.get("TRICKLE_MAX_24_HOUR_SEND")),
        default_rate_limit=get_int(
            "delivery", "default_rate_limit", env.get("TRICKLE_DEFAULT_RATE_LIMIT"), DEFAULT_RATE_LIMIT
        ),
        max_recipients=get_int("delivery", "max_recipients", env.get("TRICKLE_MAX_RECIPIENTS"), 10000),
        attachments_dir=os.path.expanduser(
            get("storage", "attachments_dir", env.get("TRICKLE_ATTACHMENTS_DIR")) or Settings.attachments_dir
        ),
        poll_interval=get_float("delivery", "poll_interval", env.get("TRICKLE_POLL_INTERVAL"), 1.0),
        max_concurrent_deliveries=get_int(
            "delivery", "max_concurrent_deliveries", env.get("TRICKLE_MAX_CONCURRENT_DELIVERIES"), 10
        ),
        job_retention_seconds=get_int(
            "retention", "job_seconds", env.get("TRICKLE_JOB_RETENTION_SECONDS"), Settings.job_retention_seconds
        ),
        event_retention_seconds=get_int(
            "retention",
            "event_seconds",
            env.get("TRICKLE_EVENT_RETENTION_SECONDS"),
            Settings.event_retention_seconds,
        ),
        test_mode=get_bool("delivery", "test_mode", env.get("TRICKLE_TEST_MODE"), False),
        log_level=(env.get("TRICKLE_LOG_LEVEL") or "INFO").upper(),
    )


def build_core(settings: Settings):
    """Create a TrickleCore wired from ``settings``.

    An SMTP provider is used when ``smtp_host`` is set, otherwise messages
    are only logged (dry run).
    """
    from .core import TrickleCore
    from .provider import DryRunProvider, SMTPProvider

    if settings.smtp_host:
        provider = SMTPProvider(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            max_send_rate=settings.max_send_rate,
            verified_senders=settings.verified_senders,
            max_24_hour_send=settings.max_24_hour_send,
        )
    else:
        provider = DryRunProvider(settings.max_send_rate, settings.verified_senders, settings.max_24_hour_send)
    return TrickleCore(
        db_path=settings.db_path,
        provider=provider,
        attachments_dir=settings.attachments_dir,
        default_rate_limit=settings.default_rate_limit,
        max_recipients=settings.max_recipients,
        poll_interval=settings.poll_interval,
        max_concurrent_deliveries=settings.max_concurrent_deliveries,
        job_retention_seconds=settings.job_retention_seconds,
        event_retention_seconds=settings.event_retention_seconds,
        test_mode=settings.test_mode,
    )
