import asyncio

import pytest
import pytest_asyncio

from mail_dispatch.message import parse_message
from mail_dispatch.models import MailerSettings
from mail_dispatch.persistence import Persistence


def make_raw(to="user@example.com", subject="Hello", sender="bugzilla-daemon", body="Body text.", extra=""):
    headers = [f"From: {sender}", f"To: {to}", f"Subject: {subject}"]
    if extra:
        headers.append(extra)
    return "\n".join(headers) + "\n\n" + body + "\n"


def make_message(**kwargs):
    return parse_message(make_raw(**kwargs))


def stage_directly(db_path, *raw_messages):
    """Write staging rows from outside any running event loop."""

    async def _stage():
        p = Persistence(db_path)
        await p.init_db()
        for raw in raw_messages:
            await p.insert_staged(raw)
        await p.close()

    asyncio.run(_stage())


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "mail.db"))
    await p.init_db()
    try:
        yield p
    finally:
        await p.close()


@pytest.fixture
def settings_factory(tmp_path):
    def factory(**overrides):
        values = {
            "url_base": "http://example.com/",
            "mail_delivery_method": "test-sink",
            "datadir": tmp_path,
            "db_path": str(tmp_path / "mail.db"),
        }
        values.update(overrides)
        return MailerSettings(**values)

    return factory
