"""Shared pytest fixtures: a scripted in-memory IMAP server and message builders."""

import re
import time
from email.message import EmailMessage
from typing import Any

import pytest

import imap_client
from config import Settings
from models import ImapConfig

_SECTION = re.compile(r"BODY\.PEEK\[\]<(\d+)\.(\d+)>")

ENV_VARS = (
    "IMAP_USER", "IMAP_PASSWORD", "IMAP_HOST", "IMAP_PORT", "IMAP_TLS",
    "EMAIL_COUNT", "FETCH_STRATEGY", "APP_ENV", "FUNCTION_TIMEOUT",
    "CONNECT_TIMEOUT", "AUTH_TIMEOUT", "CONNECTION_TIMEOUT", "COMMAND_TIMEOUT",
    "RETRIEVAL_BUDGET", "FETCH_TIMEOUT", "CLOSE_TIMEOUT",
)


class FakeServer:
    """State shared by every FakeIMAPClient created during one test."""

    def __init__(self) -> None:
        self.messages: dict[int, bytes] = {}
        self.search_result: list[int] | None = None
        self.connect_error: Exception | None = None
        self.login_error: Exception | None = None
        self.login_delay = 0.0
        self.select_error: Exception | None = None
        self.search_error: Exception | None = None
        self.fetch_errors: dict[int, Exception] = {}
        self.fetch_delays: dict[int, float] = {}
        self.clients: list["FakeIMAPClient"] = []
        self.fetched: list[tuple[int, str]] = []


class FakeIMAPClient:
    def __init__(self, server: FakeServer, host: str, port: int | None = None, **kwargs: Any) -> None:
        if server.connect_error is not None:
            raise server.connect_error
        self.server = server
        self.host = host
        self.port = port
        self.kwargs = kwargs
        self.credentials: tuple[str, str] | None = None
        self.selected: tuple[str, bool] | None = None
        self.logout_calls = 0
        self.shutdown_calls = 0
        server.clients.append(self)

    def login(self, user: str, password: str) -> bytes:
        if self.server.login_delay:
            time.sleep(self.server.login_delay)
        if self.server.login_error is not None:
            raise self.server.login_error
        self.credentials = (user, password)
        return b"Logged in"

    def select_folder(self, folder: str, readonly: bool = False) -> dict[bytes, Any]:
        if self.server.select_error is not None:
            raise self.server.select_error
        self.selected = (folder, readonly)
        return {b"EXISTS": len(self.server.messages), b"UIDVALIDITY": 42}

    def search(self, criteria: Any) -> list[int]:
        if self.server.search_error is not None:
            raise self.server.search_error
        if self.server.search_result is not None:
            return list(self.server.search_result)
        return list(self.server.messages)

    def fetch(self, uids: list[int], data: list[str]) -> dict[int, dict[bytes, Any]]:
        uid = uids[0]
        self.server.fetched.append((uid, data[0]))
        if uid in self.server.fetch_delays:
            time.sleep(self.server.fetch_delays[uid])
        if uid in self.server.fetch_errors:
            raise self.server.fetch_errors[uid]
        if uid not in self.server.messages:
            return {}
        offset, size = (int(n) for n in _SECTION.match(data[0]).groups())
        chunk = self.server.messages[uid][offset:offset + size]
        return {uid: {f"BODY[]<{offset}>".encode(): chunk, b"SEQ": uid}}

    def logout(self) -> bytes:
        self.logout_calls += 1
        return b"Logging out"

    def shutdown(self) -> None:
        self.shutdown_calls += 1

    @property
    def released(self) -> bool:
        return bool(self.logout_calls or self.shutdown_calls)


@pytest.fixture
def fake_server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    server = FakeServer()
    monkeypatch.setattr(
        imap_client, "IMAPClient",
        lambda host, **kwargs: FakeIMAPClient(server, host, **kwargs),
    )
    return server


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every variable the settings read so tests start from defaults."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        user="reader@example.com",
        password="app-password",
        host="imap.example.com",
        connect_timeout=1.0,
        auth_timeout=0.5,
        connection_timeout=2.0,
        command_timeout=1.0,
        read_timeout=1.0,
        close_timeout=1.0,
        max_message_bytes=4096,
    )


@pytest.fixture
def settings(clean_env: pytest.MonkeyPatch) -> Settings:
    return Settings(
        imap_user="reader@example.com",
        imap_password="app-password",
        imap_host="imap.example.com",
        email_count="3",
        connect_timeout=1.0,
        auth_timeout=0.5,
        connection_timeout=2.0,
        command_timeout=0.5,
        fetch_timeout=0.5,
        retrieval_budget=2.0,
        close_timeout=0.5,
        function_timeout=10.0,
    )


def make_raw_email(
    subject: str | None = "Hello",
    sender: str | None = "Alice <alice@example.com>",
    to: str | None = "Bob <bob@example.com>",
    date: str | None = "Mon, 02 Mar 2026 09:00:00 +0000",
    text: str | None = "Hi Bob",
    html: str | None = None,
    attachments: tuple[tuple[str, str, str, bytes], ...] = (),
) -> bytes:
    """Build RFC822 bytes. ``attachments`` holds (filename, maintype, subtype, data)."""
    msg = EmailMessage()
    for header, value in (("Subject", subject), ("From", sender), ("To", to), ("Date", date)):
        if value is not None:
            msg[header] = value
    if text is not None:
        msg.set_content(text)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    elif html is not None:
        msg.set_content(html, subtype="html")
    for filename, maintype, subtype, data in attachments:
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


def fill_mailbox(server: FakeServer, uids: list[int]) -> None:
    for uid in uids:
        server.messages[uid] = make_raw_email(subject=f"Message {uid}", text=f"Body of {uid}")
