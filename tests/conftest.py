"""Pytest fixtures for webmail tests."""

import logging
import re
from email.message import EmailMessage
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from unittest.mock import MagicMock

import pytest

from webmail.config import ImapSettings, SecurityConfig, ServerConfig, WebConfig
from webmail.imap_client import ImapSession, SessionState
from webmail.models import EmailCredentials, ImapCredentials, SmtpCredentials

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HEADER_KEY = b"BODY[HEADER.FIELDS (FROM TO SUBJECT DATE)]"

BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def imap_credentials():
    return ImapCredentials(
        host="imap.example.com", port=993, user="me@example.com", password="imap-secret"
    )


@pytest.fixture
def smtp_credentials():
    return SmtpCredentials(
        host="smtp.example.com",
        port=465,
        user="me@example.com",
        password="smtp-secret",
        secure=True,
    )


@pytest.fixture
def email_credentials(smtp_credentials, imap_credentials):
    return EmailCredentials(smtp=smtp_credentials, imap=imap_credentials)


@pytest.fixture
def security_config():
    return SecurityConfig(encryption_key="", session_secret="test-session-secret")


@pytest.fixture
def server_config(security_config):
    """Configuration with in-memory stores and auth disabled."""
    return ServerConfig(security=security_config, web=WebConfig(auth_enabled=False))


def build_raw_message(
    subject: str,
    sender: str = "alice@example.com",
    to: str = "me@example.com",
    body: str = "Hello there",
    date: Optional[datetime] = None,
    message_id: Optional[str] = None,
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = format_datetime(date or BASE_DATE)
    msg["Message-ID"] = message_id or f"<{abs(hash(subject))}@example.com>"
    msg.set_content(body)
    return msg.as_bytes()


def header_block(
    subject: str,
    sender: str = "alice@example.com",
    to: str = "me@example.com",
    date: Optional[datetime] = None,
) -> bytes:
    return (
        f"From: {sender}\r\nTo: {to}\r\nSubject: {subject}\r\n"
        f"Date: {format_datetime(date or BASE_DATE)}\r\n\r\n"
    ).encode()


def fetch_item(
    seq: int,
    subject: Optional[str] = None,
    uid: Optional[int] = None,
    flags: Iterable[bytes] = (b"\\Seen",),
    body: str = "Hello there",
    labels: Optional[List[bytes]] = None,
) -> Dict[bytes, Any]:
    """One message as imapclient returns it from a FETCH."""
    subject = subject or f"Message {seq}"
    date = BASE_DATE + timedelta(minutes=seq)
    item: Dict[bytes, Any] = {
        b"SEQ": seq,
        b"UID": uid if uid is not None else 1000 + seq,
        b"FLAGS": tuple(flags),
        HEADER_KEY: header_block(subject, date=date),
        b"BODY[TEXT]": f"{body}\r\n".encode(),
        b"BODY[]": build_raw_message(
            subject, body=body, date=date, message_id=f"<msg-{seq}@example.com>"
        ),
    }
    if labels is not None:
        item[b"X-GM-LABELS"] = tuple(labels)
    return item


def mailbox_fetch(total: int, **item_kwargs) -> Callable[[str, List[str]], Dict[int, Dict]]:
    """``client.fetch`` side effect serving a mailbox of ``total`` messages."""

    def _fetch(range_spec: str, attributes: List[str]) -> Dict[int, Dict]:
        low, high = (int(n) for n in re.match(r"(\d+):(\d+)", range_spec).groups())
        return {seq: fetch_item(seq, **item_kwargs) for seq in range(low, high + 1)}

    return _fetch


@pytest.fixture
def mock_client():
    """A MagicMock standing in for a connected imapclient.IMAPClient."""
    client = MagicMock()
    client.select_folder.return_value = {b"EXISTS": 0}
    client.list_folders.return_value = []
    client.capabilities.return_value = (b"IMAP4REV1", b"IDLE")
    return client


@pytest.fixture
def fast_settings():
    return ImapSettings(
        connect_timeout=0.2,
        auth_timeout=0.2,
        fetch_timeout=0.3,
        retry_attempts=3,
        retry_base_delay=1.0,
    )


@pytest.fixture
def live_session(imap_credentials, mock_client, fast_settings):
    """An ImapSession in READY state backed by ``mock_client``."""
    session = ImapSession(imap_credentials, fast_settings, user_id="user-1")
    session.client = mock_client
    session.state = SessionState.READY
    return session


class ScriptedSession:
    """ImapSession stand-in whose connect() outcome is scripted."""

    def __init__(self, credentials, settings=None, user_id=None, outcome=None):
        self.credentials = credentials
        self.settings = settings
        self.user_id = user_id
        self.outcome = outcome
        self.state = SessionState.DISCONNECTED
        self.folder_map = None
        self.closed = False
        self.aborted = False

    def connect(self):
        self.state = SessionState.CONNECTING
        if callable(self.outcome):
            self.outcome()
        elif isinstance(self.outcome, BaseException):
            self.state = SessionState.DISCONNECTED
            raise self.outcome
        self.state = SessionState.READY

    def begin_operation(self):
        self.state = SessionState.FETCHING

    def end_operation(self):
        if self.state is SessionState.FETCHING:
            self.state = SessionState.READY

    def capabilities(self):
        return {"IMAP4REV1"}

    def close(self):
        self.closed = True
        self.state = SessionState.DISCONNECTED

    def abort(self):
        self.aborted = True
        self.state = SessionState.DISCONNECTED


@pytest.fixture
def scripted_sessions():
    """Factory of ScriptedSession objects following a list of connect outcomes.

    Returns ``(factory, created)``; ``created`` collects every session made.
    """
    created: List[ScriptedSession] = []
    outcomes: List[Any] = []

    def factory(credentials, settings=None, user_id=None):
        outcome = outcomes.pop(0) if outcomes else None
        session = ScriptedSession(credentials, settings, user_id, outcome)
        created.append(session)
        return session

    factory.outcomes = outcomes  # type: ignore[attr-defined]
    return factory, created


@pytest.fixture
def make_fetch_item():
    return fetch_item


@pytest.fixture
def make_mailbox():
    return mailbox_fetch


@pytest.fixture
def make_raw_message():
    return build_raw_message
