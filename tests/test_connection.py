"""Tests for the connection manager: retry, budgets, and teardown."""

import asyncio
import threading
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from webmail.connection import ConnectionManager
from webmail.errors import (
    ConnectionFailed,
    CredentialsNotFound,
    InvalidCredentials,
    MailTimeout,
)
from webmail.imap_client import SessionState


def _manager(settings, factory=None, sleep=None, resolver=None):
    kwargs = {}
    if factory is not None:
        kwargs["session_factory"] = factory
    return ConnectionManager(
        resolver or MagicMock(), settings, sleep=sleep or AsyncMock(), **kwargs
    )


class TestOpenSession:
    """Connect with bounded retry."""

    @pytest.mark.asyncio
    async def test_two_failures_then_success(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        factory.outcomes.extend(
            [ConnectionFailed("reset by peer"), ConnectionFailed("reset by peer"), None]
        )
        sleep = AsyncMock()
        manager = _manager(fast_settings, factory, sleep)

        session = await manager.open_session("user-1", imap_credentials)

        assert session is created[-1]
        assert len(created) == 3
        assert session.state is SessionState.READY
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        factory.outcomes.extend([ConnectionFailed("down")] * 3)
        sleep = AsyncMock()
        manager = _manager(fast_settings, factory, sleep)

        with pytest.raises(ConnectionFailed) as exc_info:
            await manager.open_session("user-1", imap_credentials)

        assert "after 3 attempts" in exc_info.value.message
        assert len(created) == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_credentials_not_retried(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        factory.outcomes.append(InvalidCredentials("bad password"))
        sleep = AsyncMock()
        manager = _manager(fast_settings, factory, sleep)

        with pytest.raises(InvalidCredentials):
            await manager.open_session("user-1", imap_credentials)

        assert len(created) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_timeout_not_retried(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        factory.outcomes.append(MailTimeout("connect"))
        manager = _manager(fast_settings, factory)

        with pytest.raises(MailTimeout) as exc_info:
            await manager.open_session("user-1", imap_credentials)

        assert exc_info.value.phase == "connect"
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_connect_budget_aborts_session(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        factory.outcomes.append(lambda: time.sleep(1.0))
        manager = _manager(fast_settings, factory)

        with pytest.raises(MailTimeout) as exc_info:
            await manager.open_session("user-1", imap_credentials)

        assert exc_info.value.phase == "connect"
        assert created[0].aborted is True
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_resolves_credentials_when_not_given(
        self, scripted_sessions, email_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=email_credentials)
        manager = _manager(fast_settings, factory, resolver=resolver)

        await manager.open_session("user-1")

        resolver.resolve.assert_awaited_once_with("user-1")
        assert created[0].credentials is email_credentials.imap
        assert created[0].user_id == "user-1"

    @pytest.mark.asyncio
    async def test_missing_configuration_propagates(self, scripted_sessions, fast_settings):
        factory, created = scripted_sessions
        resolver = MagicMock()
        resolver.resolve = AsyncMock(side_effect=CredentialsNotFound("not configured"))
        manager = _manager(fast_settings, factory, resolver=resolver)

        with pytest.raises(CredentialsNotFound):
            await manager.open_session("user-1")
        assert created == []

    def test_backoff_doubles(self, fast_settings):
        manager = _manager(fast_settings)
        assert [manager.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestRun:
    """Operation budgets on a live session."""

    @pytest.mark.asyncio
    async def test_returns_result_and_restores_ready(self, live_session, fast_settings):
        manager = _manager(fast_settings)

        result = await manager.run(live_session, lambda s: "done")

        assert result == "done"
        assert live_session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_fetch_timeout_aborts_session(
        self, live_session, mock_client, fast_settings
    ):
        released = threading.Event()
        mock_client.fetch.side_effect = lambda *args: released.wait(5)
        mock_client.shutdown.side_effect = released.set
        manager = _manager(fast_settings)

        with pytest.raises(MailTimeout) as exc_info:
            await manager.run(live_session, lambda s: s.fetch_range(1, 5, ["UID"]))

        assert exc_info.value.phase == "fetch"
        assert exc_info.value.to_dict()["code"] == "TIMEOUT"
        assert live_session.state is SessionState.DISCONNECTED
        mock_client.shutdown.assert_called_once()
        mock_client.logout.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_and_connect_timeouts_are_distinguishable(
        self, live_session, mock_client, fast_settings, scripted_sessions, imap_credentials
    ):
        released = threading.Event()
        mock_client.fetch.side_effect = lambda *args: released.wait(5)
        mock_client.shutdown.side_effect = released.set
        factory, _ = scripted_sessions
        factory.outcomes.append(lambda: time.sleep(1.0))
        manager = _manager(fast_settings, factory)

        with pytest.raises(MailTimeout) as fetch_timeout:
            await manager.run(live_session, lambda s: s.fetch_range(1, 5, ["UID"]))
        with pytest.raises(MailTimeout) as connect_timeout:
            await manager.open_session("user-1", imap_credentials)

        assert fetch_timeout.value.phase == "fetch"
        assert connect_timeout.value.phase == "connect"

    @pytest.mark.asyncio
    async def test_cancellation_aborts_session(self, live_session, mock_client, fast_settings):
        released = threading.Event()
        mock_client.fetch.side_effect = lambda *args: released.wait(5)
        mock_client.shutdown.side_effect = released.set
        manager = _manager(fast_settings)

        task = asyncio.create_task(
            manager.run(live_session, lambda s: s.fetch_range(1, 5, ["UID"]))
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert live_session.state is SessionState.DISCONNECTED
        mock_client.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_run_requires_ready_session(self, live_session, fast_settings):
        live_session.state = SessionState.DISCONNECTED
        manager = _manager(fast_settings)

        with pytest.raises(ConnectionFailed):
            await manager.run(live_session, lambda s: "never")


class TestSessionScope:
    """The ``session()`` context manager always releases the connection."""

    @pytest.mark.asyncio
    async def test_closed_on_success(self, scripted_sessions, imap_credentials, fast_settings):
        factory, created = scripted_sessions
        manager = _manager(fast_settings, factory)

        async with manager.session("user-1", imap_credentials) as session:
            assert session.state is SessionState.READY

        assert created[0].closed is True
        assert created[0].state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_aborted_on_error(self, scripted_sessions, imap_credentials, fast_settings):
        factory, created = scripted_sessions
        manager = _manager(fast_settings, factory)

        with pytest.raises(RuntimeError):
            async with manager.session("user-1", imap_credentials):
                raise RuntimeError("boom")

        assert created[0].aborted is True
        assert created[0].state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_verify_opens_and_closes(
        self, scripted_sessions, imap_credentials, fast_settings
    ):
        factory, created = scripted_sessions
        manager = _manager(fast_settings, factory)

        await manager.verify(imap_credentials, "user-1")

        assert len(created) == 1
        assert created[0].closed is True
