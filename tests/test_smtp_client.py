"""Tests for the SMTP transport."""

import smtplib
import socket
from unittest.mock import patch

import pytest

from webmail.errors import InvalidCredentials, InvalidRecipient, MailTimeout, SmtpSendFailed
from webmail.models import SmtpCredentials
from webmail.smtp_client import (
    OutgoingAttachment,
    SmtpTransport,
    validate_recipient,
    with_provider_defaults,
)


def _patch_server(name):
    patcher = patch(f"webmail.smtp_client.smtplib.{name}")
    mock_cls = patcher.start()
    server = mock_cls.return_value
    server.__enter__.return_value = server
    server.has_extn.return_value = True
    return patcher, mock_cls, server


@pytest.fixture
def smtp_ssl():
    patcher, mock_cls, server = _patch_server("SMTP_SSL")
    yield mock_cls, server
    patcher.stop()


@pytest.fixture
def smtp_plain():
    patcher, mock_cls, server = _patch_server("SMTP")
    yield mock_cls, server
    patcher.stop()


@pytest.fixture
def transport():
    return SmtpTransport()


class TestSend:
    def test_sends_over_implicit_tls(self, transport, smtp_ssl, smtp_credentials):
        mock_cls, server = smtp_ssl

        message_id = transport.send_blocking(
            smtp_credentials, "bob@example.org", "Hello", "Body text"
        )

        assert mock_cls.call_args.args[:2] == ("smtp.example.com", 465)
        server.login.assert_called_once_with("me@example.com", "smtp-secret")
        sent = server.send_message.call_args.args[0]
        assert sent["To"] == "bob@example.org"
        assert sent["From"] == "me@example.com"
        assert sent["Message-ID"] == message_id
        assert message_id.endswith("@example.com>")

    def test_starttls_on_587(self, transport, smtp_plain, smtp_credentials):
        mock_cls, server = smtp_plain
        smtp_credentials.port = 587
        smtp_credentials.secure = False

        transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")

        assert mock_cls.call_args.args[:2] == ("smtp.example.com", 587)
        server.starttls.assert_called_once()

    def test_failed_starttls_closes_socket(self, transport, smtp_plain, smtp_credentials):
        _, server = smtp_plain
        smtp_credentials.port = 587
        smtp_credentials.secure = False
        server.starttls.side_effect = smtplib.SMTPNotSupportedError("no tls")

        with pytest.raises(SmtpSendFailed):
            transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")

        server.close.assert_called_once()
        server.send_message.assert_not_called()

    def test_failed_ehlo_closes_socket(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl
        server.ehlo.side_effect = smtplib.SMTPServerDisconnected("gone")

        with pytest.raises(SmtpSendFailed):
            transport.verify_blocking(smtp_credentials)

        server.close.assert_called_once()
        server.__enter__.assert_not_called()

    def test_attachments_and_html(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl

        transport.send_blocking(
            smtp_credentials,
            "bob@example.org",
            "Report",
            "<p>See attached</p>",
            attachments=[OutgoingAttachment("r.csv", b"a,b\n1,2\n", "text/csv")],
            html=True,
        )

        sent = server.send_message.call_args.args[0]
        parts = list(sent.iter_attachments())
        assert [p.get_filename() for p in parts] == ["r.csv"]
        assert sent.get_body(("html",)) is not None

    @pytest.mark.parametrize("address", ["", "bob", "bob@", "bob @example.org"])
    def test_malformed_recipient(self, transport, smtp_ssl, smtp_credentials, address):
        mock_cls, _ = smtp_ssl

        with pytest.raises(InvalidRecipient):
            transport.send_blocking(smtp_credentials, address, "Hi", "x")
        mock_cls.assert_not_called()

    def test_authentication_failure(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad login")

        with pytest.raises(InvalidCredentials):
            transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")

    def test_recipient_refused(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused(
            {"bob@example.org": (550, b"no such user")}
        )

        with pytest.raises(InvalidRecipient):
            transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")

    def test_timeout(self, transport, smtp_ssl, smtp_credentials):
        mock_cls, _ = smtp_ssl
        mock_cls.side_effect = socket.timeout("timed out")

        with pytest.raises(MailTimeout) as exc_info:
            transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")
        assert exc_info.value.phase == "send"

    def test_other_failure(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl
        server.send_message.side_effect = smtplib.SMTPDataError(554, b"rejected")

        with pytest.raises(SmtpSendFailed):
            transport.send_blocking(smtp_credentials, "bob@example.org", "Hi", "x")

    @pytest.mark.asyncio
    async def test_async_send(self, transport, smtp_ssl, smtp_credentials):
        message_id = await transport.send(smtp_credentials, "bob@example.org", "Hi", "x")

        assert message_id.startswith("<")


class TestVerify:
    def test_verify_logs_in_without_sending(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl

        transport.verify_blocking(smtp_credentials)

        server.login.assert_called_once()
        server.send_message.assert_not_called()

    def test_verify_rejects_bad_login(self, transport, smtp_ssl, smtp_credentials):
        _, server = smtp_ssl
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad login")

        with pytest.raises(InvalidCredentials):
            transport.verify_blocking(smtp_credentials)

    def test_verify_connection_refused(self, transport, smtp_ssl, smtp_credentials):
        mock_cls, _ = smtp_ssl
        mock_cls.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(SmtpSendFailed):
            transport.verify_blocking(smtp_credentials)


def test_validate_recipient_strips():
    assert validate_recipient("  bob@example.org ") == "bob@example.org"


def test_provider_defaults_fill_missing_host():
    creds = with_provider_defaults(SmtpCredentials(host="", port=0, user="me@gmail.com"))

    assert (creds.host, creds.port, creds.secure) == ("smtp.gmail.com", 465, True)


def test_provider_defaults_keep_explicit_settings(smtp_credentials):
    assert with_provider_defaults(smtp_credentials) is smtp_credentials
