"""IMAP session wrapper around imapclient.

An ``ImapSession`` is one live connection owned by a single request. All
methods here block and are meant to run in a worker thread; the
``ConnectionManager`` drives them from asyncio and enforces wall-clock
budgets.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import imapclient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from webmail.config import ImapSettings
from webmail.errors import (
    ConnectionFailed,
    FetchStreamError,
    InvalidCredentials,
    MailboxNotFound,
    MailTimeout,
)
from webmail.models import ImapCredentials

logger = logging.getLogger(__name__)

GMAIL_CAPABILITY = "X-GM-EXT-1"


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FETCHING = "fetching"
    CLOSING = "closing"


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ImapSession:
    """A single IMAP connection and its state machine."""

    def __init__(
        self,
        credentials: ImapCredentials,
        settings: Optional[ImapSettings] = None,
        user_id: Optional[str] = None,
    ):
        """Initialize the session.

        Args:
            credentials: Decrypted IMAP account settings
            settings: Timeouts and keep-alive policy
            user_id: Owning user, for log context only
        """
        self.credentials = credentials
        self.settings = settings or ImapSettings()
        self.user_id = user_id
        self.client: Optional[imapclient.IMAPClient] = None
        self.state = SessionState.DISCONNECTED
        # Logical folder -> mailbox path, filled once by FolderMapper
        self.folder_map: Optional[Dict[str, str]] = None
        self._capabilities: Optional[Set[str]] = None
        self._lock = threading.Lock()

    @property
    def host(self) -> str:
        return self.credentials.host

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self.state = state

    def connect(self) -> None:
        """Connect and authenticate.

        Raises:
            InvalidCredentials: If the server rejects the login
            MailTimeout: If the connect or auth phase times out
            ConnectionFailed: On any other network or protocol failure
        """
        self._set_state(SessionState.CONNECTING)
        client = None
        try:
            client = imapclient.IMAPClient(
                self.credentials.host,
                port=self.credentials.port or None,
                ssl=self.settings.use_ssl,
                use_uid=False,
                timeout=imapclient.SocketTimeout(
                    connect=self.settings.connect_timeout,
                    read=self.settings.auth_timeout,
                ),
            )
            self.client = client
            client.login(self.credentials.user, self.credentials.password or "")
            self._configure_socket(client)
        except LoginError as e:
            self._discard(client)
            logger.warning(f"IMAP login rejected for {self.credentials.user}: {e}")
            raise InvalidCredentials("Invalid email credentials") from e
        except socket.timeout as e:
            self._discard(client)
            raise MailTimeout("connect") from e
        except (IMAPClientAbortError, IMAPClientError, OSError) as e:
            self._discard(client)
            logger.warning(f"IMAP connection to {self.credentials.host} failed: {e}")
            raise ConnectionFailed(f"Failed to connect to IMAP server: {e}") from e

        with self._lock:
            if self.state is not SessionState.CONNECTING:
                # Aborted by the connection manager while we were handshaking.
                aborted = True
            else:
                aborted = False
                self.state = SessionState.READY
        if aborted:
            self._discard(client)
            raise MailTimeout("connect")
        logger.info(f"Connected to IMAP server {self.credentials.host}")

    def _configure_socket(self, client: imapclient.IMAPClient) -> None:
        sock = client.socket()
        # Reads during a fetch may legitimately take longer than the auth phase.
        sock.settimeout(self.settings.fetch_timeout)
        if not self.settings.keepalive:
            return
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 60)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 15)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 4)

    def _discard(self, client: Optional[imapclient.IMAPClient]) -> None:
        if client is not None:
            try:
                client.shutdown()
            except Exception as e:
                logger.debug(f"Ignoring error while discarding IMAP socket: {e}")
        self.client = None
        self._set_state(SessionState.DISCONNECTED)

    def _get_client(self) -> imapclient.IMAPClient:
        if self.client is None or self.state in (
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
            SessionState.CLOSING,
        ):
            raise ConnectionFailed("IMAP session is not connected")
        return self.client

    def begin_operation(self) -> None:
        with self._lock:
            if self.state is not SessionState.READY or self.client is None:
                raise ConnectionFailed(
                    f"IMAP session not ready (state={self.state.value})"
                )
            self.state = SessionState.FETCHING

    def end_operation(self) -> None:
        with self._lock:
            if self.state is SessionState.FETCHING:
                self.state = SessionState.READY

    def capabilities(self) -> Set[str]:
        if self._capabilities is None:
            client = self._get_client()
            self._capabilities = {_to_str(c).upper() for c in client.capabilities()}
        return self._capabilities

    @property
    def is_gmail(self) -> bool:
        host = (self.credentials.host or "").lower()
        if "gmail" in host or "googlemail" in host:
            return True
        try:
            return GMAIL_CAPABILITY in self.capabilities()
        except (IMAPClientError, OSError, ConnectionFailed):
            return False

    def list_mailboxes(self) -> List[Tuple[List[str], str, str]]:
        """Return ``(flags, delimiter, name)`` for every mailbox on the server."""
        client = self._get_client()
        try:
            raw = client.list_folders()
        except (IMAPClientError, OSError) as e:
            raise FetchStreamError(f"Failed to list mailboxes: {e}") from e

        mailboxes = []
        for flags, delimiter, name in raw:
            mailboxes.append(
                (
                    [_to_str(f) for f in flags or ()],
                    _to_str(delimiter) if delimiter else "/",
                    _to_str(name),
                )
            )
        logger.debug(f"Listed {len(mailboxes)} mailboxes on {self.credentials.host}")
        return mailboxes

    def select_readonly(self, mailbox: str) -> int:
        """Open ``mailbox`` read-only and return its message count.

        Raises:
            MailboxNotFound: If the server refuses to open the mailbox
        """
        client = self._get_client()
        try:
            info = client.select_folder(mailbox, readonly=True)
        except socket.timeout as e:
            raise MailTimeout("fetch") from e
        except (IMAPClientAbortError, OSError) as e:
            raise FetchStreamError(f"Connection lost opening {mailbox}: {e}") from e
        except IMAPClientError as e:
            logger.error(f"Error selecting folder {mailbox}: {e}")
            raise MailboxNotFound(mailbox) from e
        total = info.get(b"EXISTS", 0)
        logger.debug(f"Selected folder '{mailbox}' ({total} messages)")
        return int(total or 0)

    def fetch_range(
        self, end: int, start: int, attributes: Sequence[str]
    ) -> Dict[int, Dict[bytes, Any]]:
        """Issue one sequence-range fetch ``end:start``."""
        if end < 1 or start < end:
            raise ValueError(f"Invalid sequence range {end}:{start}")
        client = self._get_client()
        try:
            return client.fetch(f"{end}:{start}", list(attributes))
        except socket.timeout as e:
            raise MailTimeout("fetch") from e
        except (IMAPClientError, OSError) as e:
            raise FetchStreamError(f"Fetch of {end}:{start} failed: {e}") from e

    def close(self) -> None:
        """Log out gracefully; falls back to a socket shutdown."""
        with self._lock:
            if self.state in (SessionState.DISCONNECTED, SessionState.CLOSING):
                return
            self.state = SessionState.CLOSING
            client = self.client
        if client is not None:
            try:
                client.logout()
            except Exception as e:
                logger.warning(f"Error during IMAP logout: {e}")
                try:
                    client.shutdown()
                except Exception:
                    logger.debug("IMAP socket already closed")
        self.client = None
        self._set_state(SessionState.DISCONNECTED)
        logger.info("Disconnected from IMAP server")

    def abort(self) -> None:
        """Tear the connection down immediately, without LOGOUT.

        Safe to call from another thread while an operation is blocked on
        the socket; the blocked call fails and the session ends DISCONNECTED.
        """
        with self._lock:
            client = self.client
            self.client = None
            self.state = SessionState.DISCONNECTED
        if client is not None:
            try:
                client.shutdown()
            except Exception as e:
                logger.debug(f"Ignoring error during IMAP abort: {e}")
        logger.info(f"Aborted IMAP session to {self.credentials.host}")
