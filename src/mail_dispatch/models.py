# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for delivery configuration.

Models:
    - DeliveryMethod: Closed set of transport kinds.
    - DisabledConfig, LocalAgentConfig, NetworkRelayConfig, FileSinkConfig,
      TestSinkConfig: One frozen config per transport kind, each carrying
      only the fields that kind needs.
    - TransportConfig: Discriminated union of the above, keyed by ``method``.
    - MailerSettings: Process-wide settings snapshot shared by every
      dispatch call.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigurationError

DEFAULT_SENDMAIL_PATH = "/usr/lib/sendmail.exe" if os.name == "nt" else "/usr/sbin/sendmail"
TEST_SINK_FILENAME = "mailer.testfile"


class DeliveryMethod(str, Enum):
    """Delivery methods understood by the transport selector.

    Attributes:
        DISABLED: Mail is silently dropped before staging or rate checks.
        LOCAL_AGENT: Pipe to a sendmail-compatible executable.
        NETWORK_RELAY: Submit over SMTP to a relay host.
        FILE_SINK: Append to an mbox file.
        TEST_SINK: Append to the inspectable test mailbox.
    """

    DISABLED = "disabled"
    LOCAL_AGENT = "local-agent"
    NETWORK_RELAY = "network-relay"
    FILE_SINK = "file-sink"
    TEST_SINK = "test-sink"

    @classmethod
    def parse(cls, value: str | DeliveryMethod) -> DeliveryMethod:
        """Resolve a method name, accepting the legacy parameter names."""
        if isinstance(value, DeliveryMethod):
            return value
        key = str(value).strip()
        legacy = LEGACY_METHOD_NAMES.get(key.lower())
        if legacy is not None:
            return legacy
        return cls(key.lower())


LEGACY_METHOD_NAMES = {
    "none": DeliveryMethod.DISABLED,
    "sendmail": DeliveryMethod.LOCAL_AGENT,
    "smtp": DeliveryMethod.NETWORK_RELAY,
    "test": DeliveryMethod.TEST_SINK,
}


class _FrozenConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class DisabledConfig(_FrozenConfig):
    method: Literal["disabled"] = "disabled"


class LocalAgentConfig(_FrozenConfig):
    method: Literal["local-agent"] = "local-agent"
    executable: str = DEFAULT_SENDMAIL_PATH
    search_path: str = "/usr/lib:/usr/sbin:/usr/ucblib"


class NetworkRelayConfig(_FrozenConfig):
    """SMTP relay parameters.

    Attributes:
        host: Relay hostname.
        port: Relay port; ``None`` picks 465 with TLS, otherwise 25.
        username: Optional SASL username.
        password: Optional SASL password.
        use_tls: Direct TLS on 465, STARTTLS on other ports.
        helo: Name announced in EHLO; defaults to the site hostname.
        timeout: Connection-level timeout in seconds.
    """

    method: Literal["network-relay"] = "network-relay"
    host: Annotated[str, Field(min_length=1)]
    port: Annotated[int | None, Field(default=None, ge=1, le=65535)]
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    helo: str | None = None
    timeout: Annotated[float, Field(default=10.0, gt=0)]

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return 465 if self.use_tls else 25


class FileSinkConfig(_FrozenConfig):
    method: Literal["file-sink"] = "file-sink"
    path: Path


class TestSinkConfig(_FrozenConfig):
    __test__: ClassVar[bool] = False

    method: Literal["test-sink"] = "test-sink"
    path: Path


TransportConfig = Annotated[
    Union[DisabledConfig, LocalAgentConfig, NetworkRelayConfig, FileSinkConfig, TestSinkConfig],
    Field(discriminator="method"),
]


class MailerSettings(BaseModel):
    """Immutable snapshot of the mailer configuration.

    Attributes:
        url_base: Public base URL of the site; drives thread markers and the
            hostname appended to bare From addresses.
        mail_delivery_method: Which transport to use.
        use_mailer_queue: Hand non-transactional sends to the job queue.
        limit_per_minute: Max sends per recipient per minute (0 = unlimited).
        limit_per_hour: Max sends per recipient per hour (0 = unlimited).
        datadir: Directory for the test sink and the default database.
        db_path: SQLite database holding staged messages and send rates.
        smtp_server: ``host[:port]`` of the relay.
        smtp_username: Relay SASL username.
        smtp_password: Relay SASL password.
        smtp_use_tls: Use TLS with the relay.
        smtp_timeout: Relay connection timeout.
        sendmail_path: Local agent executable.
        file_sink_path: Target of the file sink.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    url_base: str = "http://localhost/"
    mail_delivery_method: DeliveryMethod = DeliveryMethod.LOCAL_AGENT
    use_mailer_queue: bool = False
    limit_per_minute: Annotated[int, Field(default=0, ge=0)]
    limit_per_hour: Annotated[int, Field(default=0, ge=0)]
    datadir: Path = Path("data")
    db_path: str | None = None
    smtp_server: str | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = False
    smtp_timeout: Annotated[float, Field(default=10.0, gt=0)]
    sendmail_path: str = DEFAULT_SENDMAIL_PATH
    file_sink_path: Path | None = None

    @field_validator("mail_delivery_method", mode="before")
    @classmethod
    def accept_legacy_method_names(cls, v):
        """Allow ``None``/``Sendmail``/``SMTP``/``Test`` as method names."""
        if isinstance(v, str):
            return DeliveryMethod.parse(v)
        return v

    @property
    def rate_limiting_enabled(self) -> bool:
        return bool(self.limit_per_minute or self.limit_per_hour)

    @property
    def database_path(self) -> str:
        return self.db_path or str(self.datadir / "mail_dispatch.db")

    def transport_config(self) -> TransportConfig:
        """Build the transport config variant for the configured method."""
        method = self.mail_delivery_method
        if method is DeliveryMethod.DISABLED:
            return DisabledConfig()
        if method is DeliveryMethod.LOCAL_AGENT:
            return LocalAgentConfig(executable=self.sendmail_path)
        if method is DeliveryMethod.NETWORK_RELAY:
            if not self.smtp_server:
                raise ConfigurationError("smtp_server is required for the network-relay method")
            host, _, port = self.smtp_server.partition(":")
            return NetworkRelayConfig(
                host=host,
                port=int(port) if port else None,
                username=self.smtp_username or None,
                password=self.smtp_password or None,
                use_tls=self.smtp_use_tls,
                timeout=self.smtp_timeout,
            )
        if method is DeliveryMethod.FILE_SINK:
            return FileSinkConfig(path=self.file_sink_path or self.datadir / "mailer.mbox")
        return TestSinkConfig(path=self.file_sink_path or self.datadir / TEST_SINK_FILENAME)
