import pytest

from tenant_mail_relay.credentials import CredentialsStore, TransportCredentials
from tenant_mail_relay.errors import TransportError, ValidationError
from tenant_mail_relay.persistence import Persistence
from tenant_mail_relay.transport import MailTransport, build_message, parse_mailbox


class DummySMTP:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.logins = []
        self.sent = []
        self.closed = False
        self.quit_called = False
        self.fail_connect: Exception | None = None
        self.fail_send: Exception | None = None
        DummySMTP.instances.append(self)

    async def connect(self):
        if self.fail_connect:
            raise self.fail_connect

    async def login(self, user, password):
        self.logins.append((user, password))

    async def send_message(self, message, sender=None, recipients=None):
        if self.fail_send:
            raise self.fail_send
        self.sent.append({"message": message, "sender": sender, "recipients": recipients})

    async def quit(self):
        self.quit_called = True

    def close(self):
        self.closed = True


@pytest.fixture
def dummy_smtp(monkeypatch):
    DummySMTP.instances = []
    monkeypatch.setattr("tenant_mail_relay.transport.aiosmtplib.SMTP", DummySMTP)
    return DummySMTP


async def make_transport(tmp_path, creds=None) -> MailTransport:
    persistence = Persistence(str(tmp_path / "transport.db"))
    await persistence.init_db()
    store = CredentialsStore(persistence, creds)
    return MailTransport("smtp.local", 2525, store, timeout=5)


def test_parse_mailbox():
    assert parse_mailbox("Alice <alice@example.com>") == ("Alice", "alice@example.com")
    assert parse_mailbox("bob@example.com") == ("", "bob@example.com")
    with pytest.raises(ValidationError, match="bad address"):
        parse_mailbox("not an address")


def test_build_message_plain_text():
    msg, sender, recipients = build_message(
        "Alice <alice@example.com>", ["b@x.com", "C <c@y.com>"], "hi", "body"
    )
    assert sender == "alice@example.com"
    assert recipients == ["b@x.com", "c@y.com"]
    assert msg["Subject"] == "hi"
    assert msg.get_content_type() == "text/plain"
    assert msg.get_content().strip() == "body"


def test_build_message_with_html_is_multipart():
    msg, _, _ = build_message("a@example.com", ["b@x.com"], "hi", "plain", "<p>html</p>")
    assert msg.get_content_type() == "multipart/alternative"
    parts = [part.get_content_type() for part in msg.iter_parts()]
    assert parts == ["text/plain", "text/html"]


def test_build_message_rejects_empty_recipients():
    with pytest.raises(ValidationError, match="to list is empty"):
        build_message("a@example.com", [], "hi", "body")


@pytest.mark.asyncio
async def test_send_uses_starttls_and_login(tmp_path, dummy_smtp):
    transport = await make_transport(tmp_path, TransportCredentials(user="u", password="p"))
    await transport.send("a@example.com", ["b@x.com"], "hi", "body")

    [smtp] = dummy_smtp.instances
    assert smtp.kwargs["hostname"] == "smtp.local"
    assert smtp.kwargs["port"] == 2525
    assert smtp.kwargs["start_tls"] is True
    assert smtp.kwargs["timeout"] == 5
    assert smtp.logins == [("u", "p")]
    assert smtp.sent[0]["sender"] == "a@example.com"
    assert smtp.sent[0]["recipients"] == ["b@x.com"]
    assert smtp.quit_called


@pytest.mark.asyncio
async def test_send_without_credentials_skips_login(tmp_path, dummy_smtp):
    transport = await make_transport(tmp_path)
    await transport.send("a@example.com", ["b@x.com"], "hi", "body")
    assert dummy_smtp.instances[0].logins == []


@pytest.mark.asyncio
async def test_credentials_update_applies_to_next_send(tmp_path, dummy_smtp):
    transport = await make_transport(tmp_path, TransportCredentials(user="old", password="p"))
    await transport.send("a@example.com", ["b@x.com"], "hi", "body")
    await transport.credentials.set("new", "p2")
    await transport.send("a@example.com", ["b@x.com"], "hi", "body")
    assert [smtp.logins for smtp in dummy_smtp.instances] == [[("old", "p")], [("new", "p2")]]


@pytest.mark.asyncio
async def test_connection_failure_becomes_transport_error(tmp_path, monkeypatch):
    class RefusingSMTP(DummySMTP):
        async def connect(self):
            raise ConnectionRefusedError("refused")

    monkeypatch.setattr("tenant_mail_relay.transport.aiosmtplib.SMTP", RefusingSMTP)
    transport = await make_transport(tmp_path)
    with pytest.raises(TransportError, match="smtp send: refused"):
        await transport.send("a@example.com", ["b@x.com"], "hi", "body")


@pytest.mark.asyncio
async def test_send_failure_closes_connection(tmp_path, monkeypatch):
    import aiosmtplib

    class RejectingSMTP(DummySMTP):
        async def send_message(self, message, sender=None, recipients=None):
            raise aiosmtplib.SMTPException("rejected")

        async def quit(self):
            raise aiosmtplib.SMTPServerDisconnected("gone")

    monkeypatch.setattr("tenant_mail_relay.transport.aiosmtplib.SMTP", RejectingSMTP)
    transport = await make_transport(tmp_path)
    with pytest.raises(TransportError):
        await transport.send("a@example.com", ["b@x.com"], "hi", "body")
    assert DummySMTP.instances[-1].closed


@pytest.mark.asyncio
async def test_bad_address_is_validation_error(tmp_path, dummy_smtp):
    transport = await make_transport(tmp_path)
    with pytest.raises(ValidationError):
        await transport.send("a@example.com", ["nobody"], "hi", "body")
    assert dummy_smtp.instances == []


@pytest.mark.parametrize(
    "from_addr, to, subject",
    [
        ("a@example.com", ["b@x.com"], "hi\r\nBcc: evil@x.com"),
        ("a@example.com", ["b@x.com"], "hi\nthere"),
        ("a@example.com", ['"Bob\nX" <b@x.com>'], "hi"),
    ],
)
def test_build_message_rejects_line_breaks_in_headers(from_addr, to, subject):
    with pytest.raises(ValidationError, match="bad header"):
        build_message(from_addr, to, subject, "body")


@pytest.mark.asyncio
async def test_send_rejects_line_breaks_before_connecting(tmp_path, dummy_smtp):
    transport = await make_transport(tmp_path)
    with pytest.raises(ValidationError):
        await transport.send("a@example.com", ["b@x.com"], "hi\r\nBcc: evil@x.com", "body")
    assert dummy_smtp.instances == []
