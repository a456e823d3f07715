"""Tests for the JMAP provider against an in-memory server."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from mailbak.errors import (
    InvalidArgumentError,
    MailConnectionError,
    NotConnectedError,
    NotFoundError,
    ProviderError,
)
from mailbak.models import JmapAccount
from mailbak.providers import JmapProvider, ProviderSettings
from mailbak.providers.jmap import (
    CORE,
    MAIL,
    flags_to_keywords,
    format_utc_date,
    keywords_to_flags,
)

from conftest import SIMPLE_RAW, make_message


SESSION_URL = "https://jmap.example.com/session"


def email(n: int, **kwargs) -> dict:
    data = {
        "id": f"M{n}",
        "blobId": f"blob-{n}",
        "messageId": [f"m{n}@example.com"],
        "mailboxIds": {"mb-inbox": True},
        "keywords": {"$seen": True},
        "from": [{"name": "Alice", "email": "alice@example.com"}],
        "to": [{"name": None, "email": "bob@example.com"}],
        "subject": f"Message {n}",
        "receivedAt": f"2024-01-1{n}T10:30:00Z",
        "headers": [{"name": "Subject", "value": f" Message {n}"}],
        "textBody": [{"partId": "1"}],
        "htmlBody": [],
        "bodyValues": {"1": {"value": f"Body {n}"}},
        "attachments": [],
    }
    data.update(kwargs)
    return data


class FakeServer:
    """Routes session, API, upload and download requests."""

    def __init__(self, session: dict | None = None):
        self.session = session or {
            "apiUrl": "https://jmap.example.com/api",
            "uploadUrl": "https://jmap.example.com/upload/{accountId}",
            "downloadUrl": "https://jmap.example.com/download/{accountId}/{blobId}/{name}?type={type}",
            "capabilities": {CORE: {"maxObjectsInGet": 2}, MAIL: {}},
            "primaryAccounts": {MAIL: "acc1"},
        }
        self.mailboxes = [
            {"id": "mb-inbox", "name": "Inbox", "role": "inbox", "parentId": None, "totalEmails": 3, "unreadEmails": 1},
            {"id": "mb-work", "name": "Work", "role": None, "parentId": None, "totalEmails": 0, "unreadEmails": 0},
            {"id": "mb-sub", "name": "Projects", "role": None, "parentId": "mb-work", "totalEmails": 2, "unreadEmails": 0},
            {"id": "mb-broken", "name": "Broken", "role": None, "parentId": None, "totalEmails": 0, "unreadEmails": 0},
        ]
        self.emails = [
            email(1, keywords={"$seen": True, "$flagged": True, "custom": True},
                  htmlBody=[{"partId": "2"}],
                  bodyValues={"1": {"value": "Body 1"}, "2": {"value": "<p>Body 1</p>"}},
                  attachments=[{"name": "a.txt", "type": "text/plain", "size": 3, "blobId": "blob-att", "cid": None}]),
            email(2, messageId=None, keywords={}),
            email(3),
        ]
        self.queries = []
        self.get_batches = []
        self.imports = []
        self.uploads = []
        self.import_error = None
        self.auth_headers = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.auth_headers.append(request.headers.get("authorization"))
        url = str(request.url)
        if url == SESSION_URL:
            return httpx.Response(200, json=self.session)
        if url == self.session["apiUrl"]:
            body = json.loads(request.content)
            responses = [self.call(name, args, call_id) for name, args, call_id in body["methodCalls"]]
            return httpx.Response(200, json={"methodResponses": responses})
        if url.startswith("https://jmap.example.com/upload/acc1"):
            self.uploads.append(request.content)
            return httpx.Response(201, json={"blobId": "blob-up", "size": len(request.content)})
        if url.startswith("https://jmap.example.com/download/acc1/blob-1/"):
            return httpx.Response(200, content=SIMPLE_RAW)
        if url.startswith("https://jmap.example.com/download/acc1/blob-att/"):
            return httpx.Response(200, content=b"abc")
        return httpx.Response(404)

    def call(self, name: str, args: dict, call_id: str) -> list:
        assert args["accountId"] == "acc1"
        if name == "Mailbox/get":
            return [name, {"list": self.mailboxes}, call_id]
        if name == "Email/query":
            self.queries.append(args)
            filter = args["filter"]
            if filter.get("inMailbox") == "mb-broken":
                return ["error", {"type": "serverFail", "description": "boom"}, call_id]
            if "header" in filter:
                wanted = filter["header"][1]
                ids = [e["id"] for e in self.emails if wanted in (e["messageId"] or [])]
                return [name, {"ids": ids[:1]}, call_id]
            ids = [e["id"] for e in self.emails if filter["inMailbox"] in e["mailboxIds"]]
            position, limit = args["position"], args["limit"]
            return [name, {"ids": ids[position:position + limit], "total": len(ids)}, call_id]
        if name == "Email/get":
            self.get_batches.append(args["ids"])
            return [name, {"list": [e for e in self.emails if e["id"] in args["ids"]]}, call_id]
        if name == "Email/import":
            self.imports.append(args["emails"]["import-1"])
            if self.import_error:
                return [name, {"notCreated": {"import-1": self.import_error}}, call_id]
            return [name, {"created": {"import-1": {"id": "M9"}}}, call_id]
        if name == "Mailbox/set":
            if "create" in args:
                new = args["create"]["new-mailbox"]
                self.mailboxes.append({"id": "mb-new", "name": new["name"], "parentId": None})
                return [name, {"created": {"new-mailbox": {"id": "mb-new"}}}, call_id]
            [target] = args["destroy"]
            if target not in {mb["id"] for mb in self.mailboxes}:
                return [name, {"notDestroyed": {target: {"type": "notFound"}}}, call_id]
            return [name, {"destroyed": [target]}, call_id]
        return ["error", {"type": "unknownMethod"}, call_id]


@pytest.fixture
def account():
    return JmapAccount(id="jmap_1", name="me", email="me@example.com", session_url=SESSION_URL, username="me")


@pytest.fixture
def server():
    return FakeServer()


def make_provider(account, server, settings=None) -> JmapProvider:
    return JmapProvider(account, "pw", settings, transport=httpx.MockTransport(server.handler))


def connected(account, server, settings=None) -> JmapProvider:
    provider = make_provider(account, server, settings)
    asyncio.run(provider.connect())
    return provider


class TestKeywords:
    def test_to_flags(self):
        assert keywords_to_flags({"$seen": True, "$draft": True, "$answered": False, "work": True}) == [
            "\\Seen", "\\Draft", "work",
        ]

    def test_to_keywords(self):
        assert flags_to_keywords(["\\Seen", "\\Flagged", "\\Recent", "work"]) == {
            "$seen": True, "$flagged": True, "work": True,
        }

    def test_format_date(self):
        assert format_utc_date(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)) == "2024-01-15T10:30:00Z"


class TestSession:
    def test_connect(self, account, server):
        provider = connected(account, server)
        assert provider.is_connected
        assert provider.account_id == "acc1"
        assert provider.max_objects_in_get == 2
        assert server.auth_headers[0].startswith("Basic ")

    def test_missing_mail_capability(self, account):
        server = FakeServer()
        server.session["capabilities"] = {CORE: {}}
        with pytest.raises(MailConnectionError, match="does not support mail"):
            asyncio.run(make_provider(account, server).connect())

    def test_missing_api_url(self, account):
        server = FakeServer()
        del server.session["apiUrl"]
        with pytest.raises(MailConnectionError):
            asyncio.run(make_provider(account, server).connect())

    def test_http_failure(self, account):
        provider = JmapProvider(account, "pw", transport=httpx.MockTransport(lambda r: httpx.Response(401)))
        with pytest.raises(MailConnectionError):
            asyncio.run(provider.connect())
        assert not provider.is_connected
        assert asyncio.run(provider.test_connection()) is False

    def test_connection_check_leaves_disconnected(self, account, server):
        provider = make_provider(account, server)
        assert asyncio.run(provider.test_connection()) is True
        assert not provider.is_connected

    def test_not_connected(self, account, server):
        provider = make_provider(account, server)
        with pytest.raises(NotConnectedError):
            asyncio.run(provider.get_folders())
        asyncio.run(provider.connect())
        asyncio.run(provider.disconnect())
        with pytest.raises(NotConnectedError):
            asyncio.run(provider.get_messages("mb-inbox"))


class TestJmapProvider:
    def test_get_folders_tree(self, account, server):
        folders = asyncio.run(connected(account, server).get_folders())
        assert [f.name for f in folders] == ["Inbox", "Work", "Broken"]
        assert folders[0].flags == ["inbox"]
        assert folders[0].message_count == 3
        assert [(c.name, c.path) for c in folders[1].children] == [("Projects", "mb-sub")]

    def test_get_messages_pages_and_chunks(self, account, server):
        provider = connected(account, server, ProviderSettings(jmap_page_size=2))
        messages = asyncio.run(provider.get_messages("mb-inbox"))
        assert [m.native_id for m in messages] == ["M1", "M2", "M3"]
        assert [q["position"] for q in server.queries] == [0, 2]
        assert server.get_batches == [["M1", "M2"], ["M3"]]

        first, second, _ = messages
        assert first.id == "<m1@example.com>"
        assert first.subject == "Message 1"
        assert first.from_addr.name == "Alice"
        assert first.to[0].name is None
        assert first.text == "Body 1"
        assert first.html == "<p>Body 1</p>"
        assert first.flags == ["\\Seen", "\\Flagged", "custom"]
        assert first.labels == ["Inbox"]
        assert first.folder == "mb-inbox"
        assert first.headers == {"Subject": "Message 1"}
        assert first.date == datetime(2024, 1, 11, 10, 30, tzinfo=timezone.utc)
        assert first.attachments[0].blob_id == "blob-att"
        assert first.raw is None
        assert second.id == "M2"
        assert second.html is None

    def test_limit(self, account, server):
        messages = asyncio.run(connected(account, server).get_messages("mb-inbox", limit=2))
        assert len(messages) == 2
        assert server.queries[0]["limit"] == 2

    def test_unknown_mailbox(self, account, server):
        with pytest.raises(NotFoundError):
            asyncio.run(connected(account, server).get_messages("mb-missing"))

    def test_method_error(self, account, server):
        with pytest.raises(ProviderError) as exc:
            asyncio.run(connected(account, server).get_messages("mb-broken"))
        assert exc.value.description == "boom"

    def test_get_message(self, account, server):
        provider = connected(account, server)
        assert asyncio.run(provider.get_message("mb-inbox", "M3")).native_id == "M3"
        assert asyncio.run(provider.get_message("mb-inbox", "<m1@example.com>")).native_id == "M1"
        assert server.queries[-1]["filter"] == {"header": ["Message-ID", "m1@example.com"]}
        with pytest.raises(NotFoundError):
            asyncio.run(provider.get_message("mb-inbox", "<none@example.com>"))

    def test_upload(self, account, server):
        provider = connected(account, server)
        message = make_message(raw=SIMPLE_RAW, flags=["\\Seen", "\\Recent"])
        asyncio.run(provider.upload_messages("mb-work", [message]))
        assert server.uploads == [SIMPLE_RAW]
        [imported] = server.imports
        assert imported == {
            "blobId": "blob-up",
            "mailboxIds": {"mb-work": True},
            "keywords": {"$seen": True},
            "receivedAt": "2024-01-15T10:30:00Z",
        }

    def test_upload_not_created(self, account, server):
        server.import_error = {"type": "invalidEmail", "description": "bad message"}
        with pytest.raises(ProviderError, match="bad message"):
            asyncio.run(connected(account, server).upload_messages("mb-work", [make_message(raw=SIMPLE_RAW)]))

    def test_upload_requires_raw(self, account, server):
        with pytest.raises(InvalidArgumentError):
            asyncio.run(connected(account, server).upload_messages("mb-work", [make_message()]))
        assert server.uploads == []

    def test_folder_management(self, account, server):
        provider = connected(account, server)
        asyncio.run(provider.create_folder("Archive"))
        assert server.mailboxes[-1]["name"] == "Archive"
        asyncio.run(provider.delete_folder("mb-new"))
        with pytest.raises(ProviderError):
            asyncio.run(provider.delete_folder("mb-missing"))

    def test_total_count(self, account, server):
        assert asyncio.run(connected(account, server).get_total_message_count()) == 5

    def test_downloads(self, account, server):
        provider = connected(account, server)
        [first] = asyncio.run(provider.get_messages("mb-inbox", limit=1))
        assert asyncio.run(provider.fetch_raw(first)) == SIMPLE_RAW
        assert asyncio.run(provider.fetch_attachment(first, first.attachments[0])) == b"abc"
