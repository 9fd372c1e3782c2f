# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the mail dispatcher.

Every error carries a machine-readable ``code`` so callers (CLI, HTTP API,
job workers) can report failures without parsing messages. Normal early
exits such as a disabled delivery method or a suppressed recipient are not
errors: they are reported through :class:`mail_dispatch.dispatcher.DispatchResult`.
"""

from __future__ import annotations

from email.message import EmailMessage


class MailDispatchError(RuntimeError):
    """Base class for all dispatcher failures."""

    code = "mail_dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)


class ConfigurationError(MailDispatchError):
    """Raised when the delivery configuration is invalid or incomplete."""

    code = "invalid_configuration"


class RateLimitExceeded(MailDispatchError):
    """Raised when a recipient already reached one of its send limits.

    Attributes:
        recipient: The address that was rejected.
        window: ``"minute"`` or ``"hour"``.
        limit: The configured limit for that window.
    """

    code = "email_limit_exceeded"

    def __init__(self, recipient: str, window: str, limit: int):
        super().__init__(f"Email rate limit of {limit} per {window} reached for {recipient}")
        self.recipient = recipient
        self.window = window
        self.limit = limit


class TransportError(MailDispatchError):
    """Raised when a transport fails to hand the message over.

    Attributes:
        cause: The underlying I/O or protocol exception.
        mail: The message that could not be delivered.
    """

    code = "mail_send_error"

    def __init__(self, cause: BaseException | str, mail: EmailMessage | None = None):
        super().__init__(str(cause))
        self.cause = cause
        self.mail = mail


class TemplateRenderError(MailDispatchError):
    """Raised when the message renderer cannot produce a template."""

    code = "template_error"

    def __init__(self, template: str, cause: BaseException):
        super().__init__(f"Failed to render template {template}: {cause}")
        self.template = template
        self.cause = cause


class StagingPersistenceError(MailDispatchError):
    """Raised when a message cannot be written to the staging table."""

    code = "staging_error"
