# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message construction and the single wire codec used by the dispatcher.

Messages are stdlib :class:`email.message.EmailMessage` objects. The same
``parse_message``/``serialize_message`` pair is used for raw-text sends,
staged rows and file sinks, so a staged message replays byte-for-byte the
way it would have been sent immediately.
"""

from __future__ import annotations

from datetime import datetime
from email import policy
from email.generator import Generator
from email.message import EmailMessage
from email.parser import Parser
from email.utils import format_datetime, getaddresses
from io import StringIO

CHARSET = "UTF-8"

_parser = Parser(_class=EmailMessage, policy=policy.default)


def parse_message(raw: str | bytes) -> EmailMessage:
    """Parse serialized message text into an :class:`EmailMessage`."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return _parser.parsestr(raw)


def serialize_message(msg: EmailMessage, mangle_from: bool = False) -> str:
    """Return the canonical wire text of ``msg``.

    With ``mangle_from`` body lines starting with ``From `` are written as
    ``>From `` so the text can be appended to an mbox file.
    """
    if not mangle_from:
        return msg.as_string(policy=policy.default)
    buf = StringIO()
    Generator(buf, mangle_from_=True, policy=policy.default).flatten(msg)
    return buf.getvalue()


def ensure_message(msg: EmailMessage | str | bytes) -> EmailMessage:
    """Accept either a structured message or raw text."""
    if isinstance(msg, EmailMessage):
        return msg
    return parse_message(msg)


def compose_message(header_text: str, text_body: str, html_body: str | None = None) -> EmailMessage:
    """Build a message from rendered headers and one or two body renderings.

    With a single text part the message carries no overall content-type
    override. With both text and HTML the envelope becomes
    ``multipart/alternative`` with a shared ``charset`` parameter, which some
    mail clients need even for empty parts.

    Args:
        header_text: RFC 5322 header block, one ``Name: value`` per line.
        text_body: Plain-text rendering.
        html_body: Optional HTML rendering.
    """
    msg = parse_message(header_text.strip("\n") + "\n\n")
    msg.set_content(text_body, subtype="plain", charset=CHARSET, cte="quoted-printable")
    if html_body is not None:
        msg.add_alternative(html_body, subtype="html", charset=CHARSET, cte="quoted-printable")
        msg.set_param("charset", CHARSET)
    return msg


def recipients(msg: EmailMessage) -> list[str]:
    """Collect envelope recipients from To, Cc and Bcc."""
    fields: list[str] = []
    for name in ("To", "Cc", "Bcc"):
        fields.extend(str(v) for v in msg.get_all(name, []))
    return [addr for _name, addr in getaddresses(fields) if addr]


def rfc2822_now() -> str:
    """Current local time formatted for a ``Date`` header."""
    return format_datetime(datetime.now().astimezone())


def set_header(msg: EmailMessage, name: str, value: str) -> None:
    """Set ``name`` to ``value``, replacing any existing occurrence."""
    if name in msg:
        msg.replace_header(name, value)
    else:
        msg[name] = value
