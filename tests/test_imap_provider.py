"""Tests for the IMAP provider against a scripted imaplib stand-in."""

import asyncio
import imaplib
from datetime import datetime, timezone

import pytest

from mailbak.errors import (
    InvalidArgumentError,
    MailConnectionError,
    NotConnectedError,
    NotFoundError,
    ProviderError,
)
from mailbak.factory import get_provider_for_account
from mailbak.models import ImapAccount
from mailbak.providers import ImapProvider
from mailbak.providers.imap import (
    build_folder_tree,
    parse_list_response,
    quote,
    quote_mailbox,
    split_fetch_response,
)

from conftest import MULTIPART_RAW, SIMPLE_RAW, make_message


LIST_DATA = [
    b'(\\HasNoChildren) "/" "INBOX"',
    b'(\\HasChildren \\Noselect) "/" "Work"',
    b'(\\HasNoChildren) "/" "Work/Projects"',
    (b'(\\HasNoChildren) "/" {9}', b'Odd "One"'),
]

FETCH_DATA = [
    (b'1 (UID 11 FLAGS (\\Seen) INTERNALDATE "15-Jan-2024 10:30:00 +0000" BODY[] {%d}' % len(SIMPLE_RAW), SIMPLE_RAW),
    b')',
    (b'2 (UID 12 FLAGS () BODY[] {%d}' % len(MULTIPART_RAW), MULTIPART_RAW),
    b')',
]


class FakeImap:
    """Records commands; INBOX holds two messages."""

    instances: list["FakeImap"] = []
    fail_login = False
    fetch_data = FETCH_DATA

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.appended = []
        self.created = []
        self.logged_out = False
        FakeImap.instances.append(self)

    def login(self, user, password):
        if FakeImap.fail_login:
            raise imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        self.user = user
        return "OK", [b"Logged in"]

    def logout(self):
        self.logged_out = True
        return "BYE", [b"Logging out"]

    def list(self, directory, pattern):
        return "OK", LIST_DATA

    def select(self, mailbox, readonly=False):
        if mailbox == '"INBOX"':
            return "OK", [b"2"]
        return "NO", [b"Mailbox doesn't exist"]

    def fetch(self, message_set, items):
        self.fetched = message_set
        return "OK", FakeImap.fetch_data

    def uid(self, command, *args):
        # imaplib sends str arguments as ASCII
        for arg in args:
            if isinstance(arg, str):
                arg.encode("ascii")
        if command == "SEARCH":
            if args[-1] == '"<report-1@example.com>"':
                return "OK", [b"11"]
            return "OK", [b""]
        if command == "FETCH" and args[0] == "11":
            return "OK", FETCH_DATA[:2]
        return "OK", [None]

    def append(self, mailbox, flags, date_time, message):
        self.appended.append((mailbox, flags, date_time, message))
        return "OK", [b"APPEND completed"]

    def create(self, mailbox):
        self.created.append(mailbox)
        return "OK", [b"CREATE completed"]

    def delete(self, mailbox):
        return "NO", [b"Cannot delete"]

    def status(self, mailbox, names):
        counts = {'"INBOX"': 2, '"Work/Projects"': 5, '"Odd \\"One\\""': 1}
        return "OK", [f'{mailbox} (MESSAGES {counts[mailbox]})'.encode()]


@pytest.fixture
def fake_imap(monkeypatch):
    FakeImap.instances = []
    FakeImap.fail_login = False
    FakeImap.fetch_data = FETCH_DATA
    monkeypatch.setattr(imaplib, "IMAP4_SSL", FakeImap)
    return FakeImap


@pytest.fixture
def account():
    return ImapAccount(
        id="imap_1",
        name="me",
        email="me@example.com",
        host="imap.example.com",
        username="me@example.com",
    )


def connected(account) -> ImapProvider:
    provider = ImapProvider(account, "secret")
    asyncio.run(provider.connect())
    return provider


class TestQuote:
    def test_plain(self):
        assert quote("INBOX") == '"INBOX"'

    def test_escapes(self):
        assert quote('a "b" \\c') == '"a \\"b\\" \\\\c"'

    def test_mailbox_modified_utf7(self):
        assert quote_mailbox("INBOX") == '"INBOX"'
        assert quote_mailbox("Archivé") == '"Archiv&AOk-"'
        assert quote_mailbox("A&B") == '"A&-B"'


class TestListParsing:
    def test_parse(self):
        entries = parse_list_response(LIST_DATA)
        assert entries[0] == (["\\HasNoChildren"], "/", "INBOX")
        assert entries[1] == (["\\HasChildren", "\\Noselect"], "/", "Work")
        assert entries[3] == (["\\HasNoChildren"], "/", 'Odd "One"')

    def test_nil_delimiter_and_atom(self):
        entries = parse_list_response([b'() NIL INBOX'])
        assert entries == [([], None, "INBOX")]

    def test_modified_utf7_names_decoded(self):
        entries = parse_list_response([b'(\\HasNoChildren) "/" "Archiv&AOk-"', b'() "/" "A&-B"'])
        assert [name for _, _, name in entries] == ["Archivé", "A&B"]

    def test_tree(self):
        roots = build_folder_tree(parse_list_response(LIST_DATA))
        assert [f.path for f in roots] == ["INBOX", "Work", 'Odd "One"']
        work = roots[1]
        assert not work.selectable
        assert [(c.name, c.path) for c in work.children] == [("Projects", "Work/Projects")]


class TestSplitFetch:
    def test_pairs(self):
        pairs = split_fetch_response(FETCH_DATA)
        assert len(pairs) == 2
        assert b"UID 11" in pairs[0][0]
        assert pairs[0][1] == SIMPLE_RAW
        assert pairs[1][1] == MULTIPART_RAW


class TestImapProvider:
    def test_connect_via_factory(self, fake_imap, account):
        provider = get_provider_for_account(account, {"password": "secret"})
        assert isinstance(provider, ImapProvider)

        async def go():
            async with provider:
                return await provider.get_messages("INBOX")

        messages = asyncio.run(go())
        conn = fake_imap.instances[0]
        assert (conn.host, conn.port, conn.user) == ("imap.example.com", 993, "me@example.com")
        assert conn.logged_out
        assert not provider.is_connected
        assert len(messages) == 2
        assert all(m.folder == "INBOX" for m in messages)
        assert messages[0].uid == 11
        assert messages[0].native_id == "11"
        assert messages[0].id == "<report-1@example.com>"
        assert messages[0].flags == ["\\Seen"]
        assert messages[0].raw == SIMPLE_RAW
        assert messages[1].flags == []
        assert messages[1].attachments[0].filename == "cat.png"

    def test_limit_fetches_latest(self, fake_imap, account):
        provider = connected(account)
        asyncio.run(provider.get_messages("INBOX", limit=1))
        assert fake_imap.instances[0].fetched == "2:2"

    def test_login_failure(self, fake_imap, account):
        fake_imap.fail_login = True
        provider = ImapProvider(account, "wrong")
        with pytest.raises(MailConnectionError):
            asyncio.run(provider.connect())
        assert not provider.is_connected
        assert asyncio.run(provider.test_connection()) is False

    def test_not_connected(self, fake_imap, account):
        provider = ImapProvider(account, "secret")
        with pytest.raises(NotConnectedError):
            asyncio.run(provider.get_folders())
        asyncio.run(provider.connect())
        asyncio.run(provider.disconnect())
        with pytest.raises(NotConnectedError):
            asyncio.run(provider.get_messages("INBOX"))

    def test_get_folders(self, fake_imap, account):
        folders = asyncio.run(connected(account).get_folders())
        assert [f.name for f in folders] == ["INBOX", "Work", 'Odd "One"']

    def test_unknown_folder(self, fake_imap, account):
        with pytest.raises(NotFoundError):
            asyncio.run(connected(account).get_messages("Nope"))

    def test_get_message_by_uid_and_message_id(self, fake_imap, account):
        provider = connected(account)
        by_uid = asyncio.run(provider.get_message("INBOX", "11"))
        by_mid = asyncio.run(provider.get_message("INBOX", "<report-1@example.com>"))
        assert by_uid.id == by_mid.id == "<report-1@example.com>"
        with pytest.raises(NotFoundError):
            asyncio.run(provider.get_message("INBOX", "<missing@example.com>"))

    def test_internaldate_used_without_date_header(self, fake_imap, account):
        provider = ImapProvider(account, "secret")
        attrs = b'1 (UID 3 FLAGS () INTERNALDATE "02-Feb-2024 09:00:00 +0000"'
        message = provider._to_message(attrs, b"Subject: no date\r\n\r\nbody\r\n", "INBOX")
        assert message.date == datetime(2024, 2, 2, 9, 0, tzinfo=timezone.utc)

    def test_upload(self, fake_imap, account):
        provider = connected(account)
        m = make_message(raw=SIMPLE_RAW, flags=["\\Seen", "\\Recent"])
        asyncio.run(provider.upload_messages("Archive", [m]))
        [(mailbox, flags, date_time, raw)] = fake_imap.instances[0].appended
        assert mailbox == '"Archive"'
        assert flags == "(\\Seen)"
        assert date_time.startswith('"15-Jan-2024')
        assert raw == SIMPLE_RAW

    def test_upload_requires_raw(self, fake_imap, account):
        provider = connected(account)
        with pytest.raises(InvalidArgumentError):
            asyncio.run(provider.upload_messages("INBOX", [make_message(raw=SIMPLE_RAW), make_message(2)]))
        assert fake_imap.instances[0].appended == []

    def test_folder_management(self, fake_imap, account):
        provider = connected(account)
        asyncio.run(provider.create_folder("New"))
        assert fake_imap.instances[0].created == ['"New"']
        with pytest.raises(Exception, match="Failed to delete"):
            asyncio.run(provider.delete_folder("INBOX"))

    def test_total_count_skips_noselect(self, fake_imap, account):
        assert asyncio.run(connected(account).get_total_message_count()) == 8

    def test_non_ascii_folder_names(self, fake_imap, account):
        provider = connected(account)
        asyncio.run(provider.create_folder("Archivé"))
        assert fake_imap.instances[0].created == ['"Archiv&AOk-"']
        asyncio.run(provider.upload_messages("Archivé", [make_message(raw=SIMPLE_RAW)]))
        assert fake_imap.instances[0].appended[0][0] == '"Archiv&AOk-"'

    def test_non_ascii_search_is_provider_error(self, fake_imap, account):
        provider = connected(account)
        with pytest.raises(ProviderError):
            asyncio.run(provider.get_message("INBOX", "<café@example.com>"))

    def test_empty_body_skipped(self, fake_imap, account):
        fake_imap.fetch_data = FETCH_DATA + [(b'3 (UID 13 FLAGS () BODY[] {0}', b''), b')']
        messages = asyncio.run(connected(account).get_messages("INBOX"))
        assert [m.uid for m in messages] == [11, 12]

    def test_connection_check_leaves_disconnected(self, fake_imap, account):
        provider = ImapProvider(account, "secret")
        assert asyncio.run(provider.test_connection()) is True
        assert not provider.is_connected
        assert fake_imap.instances[0].logged_out
