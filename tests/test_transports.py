import mailbox
import os
import stat
from dataclasses import dataclass

import aiosmtplib
import pytest

from mail_dispatch.errors import ConfigurationError, TransportError
from mail_dispatch.models import (
    DisabledConfig,
    FileSinkConfig,
    LocalAgentConfig,
    NetworkRelayConfig,
    TestSinkConfig,
)
from mail_dispatch.smtp_pool import SMTPPool
from mail_dispatch.transports import (
    DisabledTransport,
    FileSinkTransport,
    LocalAgentTransport,
    NetworkRelayTransport,
    TestSinkTransport,
    TransportSelector,
)

from conftest import make_message


def write_agent(tmp_path, exit_code=0):
    """Fake sendmail recording its arguments and stdin."""
    script = tmp_path / "sendmail"
    script.write_text(
        "#!/bin/sh\n"
        f'printf "%s\\n" "$@" > "{tmp_path}/args"\n'
        f'cat > "{tmp_path}/stdin"\n'
        f"exit {exit_code}\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return LocalAgentConfig(executable=str(script), search_path=os.environ.get("PATH", "/usr/bin:/bin"))


class DummySMTP:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sent = []
        self.fail_with = None
        self.closed = False

    async def connect(self):
        pass

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        return 250, "OK"

    async def send_message(self, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)

    async def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture
def smtp_clients(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("mail_dispatch.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_disabled_transport_does_nothing():
    assert await DisabledTransport().send(make_message()) is None


def test_local_agent_command_line():
    transport = LocalAgentTransport(LocalAgentConfig(executable="/usr/sbin/sendmail"))
    msg = make_message(to="a@example.com, b@example.com", sender="Bugzilla <bz@example.com>")
    assert transport.command(msg) == [
        "/usr/sbin/sendmail", "-i", "-f", "bz@example.com", "--", "a@example.com", "b@example.com",
    ]


@pytest.mark.asyncio
async def test_local_agent_pipes_message(tmp_path):
    transport = LocalAgentTransport(write_agent(tmp_path))
    await transport.send(make_message(subject="Piped", sender="bz@example.com"))

    assert "Subject: Piped" in (tmp_path / "stdin").read_text()
    assert (tmp_path / "args").read_text().split() == ["-i", "-f", "bz@example.com", "--", "user@example.com"]


@pytest.mark.asyncio
async def test_local_agent_nonzero_exit_is_transport_error(tmp_path):
    transport = LocalAgentTransport(write_agent(tmp_path, exit_code=75))
    msg = make_message()
    with pytest.raises(TransportError) as excinfo:
        await transport.send(msg)
    assert "75" in str(excinfo.value)
    assert excinfo.value.mail is msg


@pytest.mark.asyncio
async def test_local_agent_missing_executable(tmp_path):
    transport = LocalAgentTransport(LocalAgentConfig(executable=str(tmp_path / "missing")))
    with pytest.raises(TransportError) as excinfo:
        await transport.send(make_message())
    assert isinstance(excinfo.value.cause, OSError)


@pytest.mark.asyncio
async def test_relay_sends_through_pool(smtp_clients):
    config = NetworkRelayConfig(host="smtp.local", port=587, username="u", password="p", use_tls=True)
    transport = NetworkRelayTransport(config, SMTPPool(), helo="example.com")

    await transport.send(make_message(subject="one"))
    await transport.send(make_message(subject="two"))

    assert len(smtp_clients) == 1
    client = smtp_clients[0]
    assert [m["Subject"] for m in client.sent] == ["one", "two"]
    assert client.kwargs["start_tls"] is True
    assert client.kwargs["use_tls"] is False
    assert client.kwargs["local_hostname"] == "example.com"
    assert client.login_credentials == ("u", "p")


@pytest.mark.asyncio
async def test_relay_rejection_is_transport_error(smtp_clients):
    transport = NetworkRelayTransport(NetworkRelayConfig(host="smtp.local"), SMTPPool())
    await transport.send(make_message())
    smtp_clients[0].fail_with = aiosmtplib.SMTPResponseException(550, "mailbox unavailable")

    msg = make_message()
    with pytest.raises(TransportError) as excinfo:
        await transport.send(msg)
    assert isinstance(excinfo.value.cause, aiosmtplib.SMTPResponseException)
    assert excinfo.value.mail is msg
    # protocol rejection keeps the session
    assert len(transport.pool.pool) == 1


@pytest.mark.asyncio
async def test_relay_disconnect_drops_connection(smtp_clients):
    transport = NetworkRelayTransport(NetworkRelayConfig(host="smtp.local"), SMTPPool())
    await transport.send(make_message())
    smtp_clients[0].fail_with = aiosmtplib.SMTPServerDisconnected("gone")

    with pytest.raises(TransportError):
        await transport.send(make_message())
    assert smtp_clients[0].closed is True
    assert transport.pool.pool == {}

    await transport.send(make_message())
    assert len(smtp_clients) == 2


@pytest.mark.asyncio
async def test_file_sink_appends_mbox_entries(tmp_path):
    path = tmp_path / "out" / "mailer.mbox"
    transport = FileSinkTransport(FileSinkConfig(path=path))
    await transport.send(make_message(subject="first"))
    await transport.send(make_message(subject="second"))

    text = path.read_text()
    assert text.startswith("\n\nFrom - ")
    box = mailbox.mbox(path)
    try:
        assert [m["Subject"] for m in box] == ["first", "second"]
    finally:
        box.close()


@pytest.mark.asyncio
async def test_file_sink_write_failure(tmp_path):
    target = tmp_path / "dir-not-file"
    target.mkdir()
    transport = FileSinkTransport(FileSinkConfig(path=target))
    with pytest.raises(TransportError):
        await transport.send(make_message())


@pytest.mark.asyncio
async def test_test_sink_reads_back_and_clears(tmp_path):
    transport = TestSinkTransport(TestSinkConfig(path=tmp_path / "mailer.testfile"))
    assert transport.messages() == []

    await transport.send(make_message(subject="captured"))
    messages = transport.messages()
    assert len(messages) == 1
    assert messages[0]["Subject"] == "captured"

    transport.clear()
    assert transport.messages() == []


@pytest.mark.asyncio
async def test_sink_quotes_body_lines_starting_with_from(tmp_path):
    transport = TestSinkTransport(TestSinkConfig(path=tmp_path / "mailer.testfile"))
    await transport.send(make_message(subject="one", body="Hi,\nFrom the team\n"))
    await transport.send(make_message(subject="two"))

    messages = transport.messages()
    assert [m["Subject"] for m in messages] == ["one", "two"]
    assert "From the team" in messages[0].get_content()
    assert "\n>From the team\n" in (tmp_path / "mailer.testfile").read_text()


def test_selector_caches_by_config(tmp_path):
    selector = TransportSelector()
    config = TestSinkConfig(path=tmp_path / "a")
    first = selector.resolve(config)
    assert isinstance(first, TestSinkTransport)
    assert selector.resolve(TestSinkConfig(path=tmp_path / "a")) is first
    assert selector.resolve(TestSinkConfig(path=tmp_path / "b")) is not first
    assert isinstance(selector.resolve(DisabledConfig()), DisabledTransport)


def test_selector_shares_pool_between_relays():
    selector = TransportSelector(helo="example.com")
    relay = selector.resolve(NetworkRelayConfig(host="smtp.local"))
    assert isinstance(relay, NetworkRelayTransport)
    assert relay.pool is selector.pool
    assert relay.helo == "example.com"


@dataclass(frozen=True)
class CarrierPigeonConfig:
    method: str = "carrier-pigeon"


def test_selector_rejects_unknown_method():
    with pytest.raises(ConfigurationError):
        TransportSelector().resolve(CarrierPigeonConfig())


@pytest.mark.asyncio
async def test_selector_close_closes_pool(smtp_clients):
    selector = TransportSelector()
    relay = selector.resolve(NetworkRelayConfig(host="smtp.local"))
    await relay.send(make_message())
    await selector.close()
    assert smtp_clients[0].closed is True
