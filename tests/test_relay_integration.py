"""Tests with a real SMTP server using aiosmtpd."""

import socket
from typing import Any

import pytest
from aiosmtpd.controller import Controller

from mail_dispatch.dispatcher import DispatchStatus, create_dispatcher
from mail_dispatch.errors import TransportError

from conftest import make_raw


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


class CapturingHandler:
    """SMTP handler that captures received messages."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []
        self.reject_next = False

    async def handle_DATA(self, server, session, envelope):
        if self.reject_next:
            self.reject_next = False
            return "550 Mailbox not found"

        self.messages.append({
            "from": envelope.mail_from,
            "to": envelope.rcpt_tos,
            "data": envelope.content.decode("utf-8", errors="replace"),
        })
        return "250 Message accepted for delivery"


@pytest.fixture
def smtp_handler():
    return CapturingHandler()


@pytest.fixture
def smtp_server(smtp_handler):
    """Start a fake SMTP server on a free port."""
    port = get_free_port()
    controller = Controller(smtp_handler, hostname="127.0.0.1", port=port)
    controller.start()
    yield controller, port
    controller.stop()


@pytest.mark.asyncio
async def test_send_through_real_relay(settings_factory, smtp_server, smtp_handler):
    _, port = smtp_server
    settings = settings_factory(
        url_base="https://bugs.example.org/",
        mail_delivery_method="network-relay",
        smtp_server=f"127.0.0.1:{port}",
    )
    dispatcher = await create_dispatcher(settings)
    try:
        result = await dispatcher.send(make_raw(subject="Over the wire"), send_now=True)
        await dispatcher.send(make_raw(to="other@example.com", subject="Second"), send_now=True)
    finally:
        await dispatcher.aclose()

    assert result.status is DispatchStatus.SENT
    assert len(smtp_handler.messages) == 2
    first = smtp_handler.messages[0]
    assert first["from"] == "bugzilla-daemon@bugs.example.org"
    assert first["to"] == ["user@example.com"]
    assert "Subject: Over the wire" in first["data"]
    assert "Date:" in first["data"]
    assert smtp_handler.messages[1]["to"] == ["other@example.com"]


@pytest.mark.asyncio
async def test_rejected_message_raises_transport_error(settings_factory, smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.reject_next = True
    settings = settings_factory(mail_delivery_method="network-relay", smtp_server=f"127.0.0.1:{port}")
    dispatcher = await create_dispatcher(settings)
    try:
        with pytest.raises(TransportError):
            await dispatcher.send(make_raw(), send_now=True)
        result = await dispatcher.send(make_raw(subject="Retry"), send_now=True)
    finally:
        await dispatcher.aclose()

    assert result.status is DispatchStatus.SENT
    assert [m["data"].count("Subject: Retry") for m in smtp_handler.messages] == [1]


@pytest.mark.asyncio
async def test_connection_refused_raises_transport_error(settings_factory):
    port = get_free_port()
    settings = settings_factory(
        mail_delivery_method="network-relay",
        smtp_server=f"127.0.0.1:{port}",
        smtp_timeout=2,
    )
    dispatcher = await create_dispatcher(settings)
    try:
        with pytest.raises(TransportError):
            await dispatcher.send(make_raw(), send_now=True)
    finally:
        await dispatcher.aclose()
