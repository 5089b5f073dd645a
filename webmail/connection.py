"""IMAP connection lifecycle: connect with retry, bounded operations, teardown."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from webmail.config import ImapSettings
from webmail.credentials import CredentialResolver
from webmail.errors import ConnectionFailed, MailTimeout
from webmail.imap_client import ImapSession, SessionState
from webmail.models import ImapCredentials

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[..., ImapSession]


class ConnectionManager:
    """Opens, drives and tears down per-request IMAP sessions.

    Sessions are never shared between requests: every ``session()`` block
    gets its own connection and the connection is closed when the block
    exits, whatever the outcome.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        settings: Optional[ImapSettings] = None,
        session_factory: SessionFactory = ImapSession,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.resolver = resolver
        self.settings = settings or ImapSettings()
        self.session_factory = session_factory
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
        return self.settings.retry_base_delay * (2 ** (attempt - 1))

    async def open_session(
        self, user_id: str, credentials: Optional[ImapCredentials] = None
    ) -> ImapSession:
        """Connect a new session for ``user_id``.

        Only ``ConnectionFailed`` is retried. Login rejection and connect
        timeouts surface immediately.

        Raises:
            CredentialsNotFound: If the user has no email configuration
            InvalidCredentials: If the server rejects the login
            MailTimeout: If connect + auth exceed their budget (phase="connect")
            ConnectionFailed: After the last retry attempt fails
        """
        if credentials is None:
            credentials = (await self.resolver.resolve(user_id)).imap

        attempts = self.settings.retry_attempts
        budget = self.settings.connect_timeout + self.settings.auth_timeout
        last_error: Optional[ConnectionFailed] = None

        for attempt in range(1, attempts + 1):
            session = self.session_factory(credentials, self.settings, user_id=user_id)
            try:
                await asyncio.wait_for(asyncio.to_thread(session.connect), timeout=budget)
                if attempt > 1:
                    logger.info(f"IMAP connect for user {user_id} succeeded on attempt {attempt}")
                return session
            except asyncio.TimeoutError:
                session.abort()
                logger.error(f"IMAP connect for user {user_id} timed out after {budget}s")
                raise MailTimeout("connect")
            except asyncio.CancelledError:
                session.abort()
                raise
            except ConnectionFailed as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"IMAP connect attempt {attempt}/{attempts} for user {user_id} failed: "
                    f"{e.message}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise ConnectionFailed(
            f"Could not connect to {credentials.host} after {attempts} attempts: "
            f"{last_error.message if last_error else 'unknown error'}"
        ) from last_error

    async def run(
        self,
        session: ImapSession,
        operation: Callable[[ImapSession], T],
        phase: str = "fetch",
        timeout: Optional[float] = None,
    ) -> T:
        """Run a blocking ``operation(session)`` under a wall-clock budget.

        On timeout or cancellation the session is aborted, never left in
        FETCHING.
        """
        budget = timeout if timeout is not None else self.settings.fetch_timeout

        def _call() -> T:
            session.begin_operation()
            try:
                return operation(session)
            finally:
                session.end_operation()

        try:
            return await asyncio.wait_for(asyncio.to_thread(_call), timeout=budget)
        except asyncio.TimeoutError:
            logger.error(f"IMAP {phase} exceeded {budget}s; aborting session")
            session.abort()
            raise MailTimeout(phase)
        except asyncio.CancelledError:
            logger.info(f"IMAP {phase} cancelled; aborting session")
            session.abort()
            raise

    async def close(self, session: ImapSession) -> None:
        if session.state is SessionState.DISCONNECTED:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(session.close), timeout=self.settings.connect_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("IMAP logout timed out; dropping connection")
            session.abort()

    @asynccontextmanager
    async def session(
        self, user_id: str, credentials: Optional[ImapCredentials] = None
    ) -> AsyncIterator[ImapSession]:
        """Scope a session to a block; it is closed on every exit path."""
        session = await self.open_session(user_id, credentials)
        try:
            yield session
        except BaseException:
            session.abort()
            raise
        finally:
            await self.close(session)

    async def verify(self, credentials: ImapCredentials, user_id: str = "-") -> None:
        """Open and close a throwaway session to prove ``credentials`` work."""
        async with self.session(user_id, credentials) as session:
            await self.run(session, lambda s: s.capabilities(), phase="verify")
