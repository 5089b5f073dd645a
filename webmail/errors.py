"""Error taxonomy shared by the mail pipeline and the HTTP layer."""

from typing import Optional


class MailError(Exception):
    """Base class for errors that cross the HTTP boundary.

    Each subclass carries a stable ``code`` and the HTTP status it maps to.
    The message is human readable and safe to return to the client.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class CredentialsNotFound(MailError):
    """The user has no SMTP/IMAP configuration yet."""

    code = "EMAIL_NOT_CONFIGURED"
    status_code = 412

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["setup"] = "/settings/email"
        return payload


class ConfigurationInvalid(MailError):
    code = "CONFIGURATION_INVALID"
    status_code = 400


class ConnectionFailed(MailError):
    """Transient network failure reaching the mail server. Retryable."""

    code = "CONNECTION_FAILED"
    status_code = 502


class InvalidCredentials(MailError):
    """The mail server rejected the login. Never retried."""

    code = "INVALID_CREDENTIALS"
    status_code = 401


class MailTimeout(MailError):
    """A connect or fetch phase exceeded its budget."""

    code = "TIMEOUT"
    status_code = 504

    def __init__(self, phase: str, message: Optional[str] = None):
        super().__init__(message or f"Mail server timed out during {phase}")
        self.phase = phase

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["phase"] = self.phase
        return payload


class MailboxNotFound(MailError):
    code = "MAILBOX_NOT_FOUND"
    status_code = 404

    def __init__(self, mailbox: str, message: Optional[str] = None):
        super().__init__(message or f"Mailbox '{mailbox}' could not be opened")
        self.mailbox = mailbox


class FetchStreamError(MailError):
    code = "FETCH_FAILED"
    status_code = 502


class InvalidRecipient(MailError):
    code = "INVALID_RECIPIENT"
    status_code = 400


class SmtpSendFailed(MailError):
    code = "SMTP_FAILED"
    status_code = 502


class ConversationNotFound(MailError):
    code = "CONVERSATION_NOT_FOUND"
    status_code = 404
