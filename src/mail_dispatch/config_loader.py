# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail dispatcher.

Settings come from an INI file (``mail-dispatch.ini`` by default, or the
path in ``MD_CONFIG``); any ``MD_*`` environment variable overrides the
corresponding file value.

Example:
    Configuration file format::

        [mailer]
        url_base = http://example.com/
        mail_delivery_method = network-relay
        use_mailer_queue = false
        limit_per_minute = 0
        limit_per_hour = 0
        datadir = ./data

        [smtp]
        server = smtp.example.com:587
        username = notifier
        password = secret
        use_tls = true
        timeout = 10

        [sendmail]
        executable = /usr/sbin/sendmail

        [file_sink]
        path = ./data/mailer.testfile

        [server]
        host = 127.0.0.1
        port = 8025
        api_token = change-me

    Loading::

        settings = load_settings()
        server = load_server_options()
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ConfigurationError
from .logger import get_logger
from .models import MailerSettings

DEFAULT_CONFIG_FILE = "mail-dispatch.ini"

# (section, option, env var, settings field)
SETTING_SOURCES = (
    ("mailer", "url_base", "MD_URL_BASE", "url_base"),
    ("mailer", "mail_delivery_method", "MD_DELIVERY_METHOD", "mail_delivery_method"),
    ("mailer", "use_mailer_queue", "MD_USE_MAILER_QUEUE", "use_mailer_queue"),
    ("mailer", "limit_per_minute", "MD_LIMIT_PER_MINUTE", "limit_per_minute"),
    ("mailer", "limit_per_hour", "MD_LIMIT_PER_HOUR", "limit_per_hour"),
    ("mailer", "datadir", "MD_DATADIR", "datadir"),
    ("mailer", "db_path", "MD_DB_PATH", "db_path"),
    ("smtp", "server", "MD_SMTP_SERVER", "smtp_server"),
    ("smtp", "username", "MD_SMTP_USERNAME", "smtp_username"),
    ("smtp", "password", "MD_SMTP_PASSWORD", "smtp_password"),
    ("smtp", "use_tls", "MD_SMTP_USE_TLS", "smtp_use_tls"),
    ("smtp", "timeout", "MD_SMTP_TIMEOUT", "smtp_timeout"),
    ("sendmail", "executable", "MD_SENDMAIL", "sendmail_path"),
    ("file_sink", "path", "MD_FILE_SINK", "file_sink_path"),
)

logger = get_logger("ConfigLoader")


def config_path_from_env(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    return Path(env.get("MD_CONFIG", DEFAULT_CONFIG_FILE))


def read_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> configparser.ConfigParser:
    """Parse the INI file. A missing file yields an empty parser.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed.
    """
    config_path = Path(path) if path is not None else config_path_from_env(env)
    parser = configparser.ConfigParser()
    if not config_path.exists():
        logger.debug("Config file %s not found, using defaults and environment", config_path)
        return parser
    try:
        parser.read(config_path)
    except configparser.Error as exc:
        raise ConfigurationError(f"Invalid config file {config_path}: {exc}") from exc
    return parser


def _lookup(parser: configparser.ConfigParser, env: Mapping[str, str], section: str, option: str, var: str) -> str | None:
    if env.get(var, "").strip():
        return env[var]
    if parser.has_option(section, option):
        return parser.get(section, option)
    return None


def load_settings(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> MailerSettings:
    """Build :class:`MailerSettings` from the INI file and ``MD_*`` variables.

    Empty values are treated as unset so the model defaults apply.

    Raises:
        ConfigurationError: On unreadable files or invalid values.
    """
    env = os.environ if env is None else env
    parser = read_config(path, env)

    values: dict[str, Any] = {}
    for section, option, var, field in SETTING_SOURCES:
        value = _lookup(parser, env, section, option, var)
        if value is None or not value.strip():
            continue
        values[field] = value.strip()

    try:
        return MailerSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid mailer settings: {exc}") from exc


def load_server_options(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return ``host``, ``port`` and ``api_token`` for the HTTP server."""
    env = os.environ if env is None else env
    parser = read_config(path, env)

    host = _lookup(parser, env, "server", "host", "MD_HOST") or "127.0.0.1"
    port = _lookup(parser, env, "server", "port", "MD_PORT") or "8025"
    token = _lookup(parser, env, "server", "api_token", "MD_API_TOKEN")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid server port: {port!r}") from exc
    token = token.strip() if isinstance(token, str) else None
    return {"host": host, "port": port_number, "api_token": token or None}
