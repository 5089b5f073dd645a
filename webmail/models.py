"""Data models for credentials, fetched mail and stored conversations."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from webmail.errors import ConfigurationInvalid

CONVERSATION_STATUSES = ("inbox", "sent", "archived", "trash")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class SmtpCredentials:
    host: str
    port: int
    user: str
    password: Optional[str] = None
    secure: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmtpCredentials":
        return cls(
            host=data.get("host") or "",
            port=int(data.get("port") or 0),
            user=data.get("user") or "",
            password=data.get("password"),
            secure=bool(data.get("secure", True)),
        )

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "user": self.user,
        }
        if include_password:
            data["password"] = self.password
        return data

    def __repr__(self) -> str:
        return f"SmtpCredentials(host={self.host!r}, port={self.port}, user={self.user!r})"


@dataclass
class ImapCredentials:
    host: str
    port: int
    user: str
    password: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImapCredentials":
        return cls(
            host=data.get("host") or "",
            port=int(data.get("port") or 0),
            user=data.get("user") or "",
            password=data.get("password"),
        )

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {"host": self.host, "port": self.port, "user": self.user}
        if include_password:
            data["password"] = self.password
        return data

    def __repr__(self) -> str:
        return f"ImapCredentials(host={self.host!r}, port={self.port}, user={self.user!r})"


@dataclass
class EmailCredentials:
    """A user's SMTP and IMAP account settings."""

    smtp: SmtpCredentials
    imap: ImapCredentials

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailCredentials":
        return cls(
            smtp=SmtpCredentials.from_dict(data.get("smtp") or {}),
            imap=ImapCredentials.from_dict(data.get("imap") or {}),
        )

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        return {
            "smtp": self.smtp.to_dict(include_password),
            "imap": self.imap.to_dict(include_password),
        }

    def validate(self) -> None:
        """Raise ConfigurationInvalid listing every missing field."""
        missing = []
        for label, section in (("SMTP", self.smtp), ("IMAP", self.imap)):
            if not section.host:
                missing.append(f"{label} Host")
            if not section.port:
                missing.append(f"{label} Port")
            if not section.user:
                missing.append(f"{label} Username")
            if not section.password:
                missing.append(f"{label} Password")
        if missing:
            raise ConfigurationInvalid(
                f"Incomplete email configuration. Missing: {', '.join(missing)}"
            )


@dataclass
class EmailSummary:
    """One normalized message of a folder page."""

    id: int
    from_: str = ""
    to: str = ""
    subject: str = "(No Subject)"
    date: Optional[datetime] = None
    flags: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    content: str = ""
    message_id: Optional[str] = None
    seq: Optional[int] = None
    uid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_,
            "to": self.to,
            "subject": self.subject,
            "date": _isoformat(self.date),
            "flags": list(self.flags),
            "labels": list(self.labels),
            "content": self.content,
            "messageId": self.message_id,
        }


@dataclass
class Pagination:
    total: int
    pages: int
    current: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pages": self.pages,
            "current": self.current,
            "hasMore": self.has_more,
        }


@dataclass
class PageResult:
    emails: List[EmailSummary]
    pagination: Pagination
    success: bool = True

    @classmethod
    def empty(cls, total: int, pages: int, page: int) -> "PageResult":
        return cls(
            emails=[],
            pagination=Pagination(total=total, pages=pages, current=page, has_more=False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "emails": [e.to_dict() for e in self.emails],
            "pagination": self.pagination.to_dict(),
        }


@dataclass
class ConversationMessage:
    content: str
    created_at: datetime = field(default_factory=utcnow)
    sender: Optional[str] = None  # local user id
    external_sender: Optional[str] = None
    external_id: Optional[str] = None
    read: bool = False
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "createdAt": _isoformat(self.created_at),
            "from": self.sender,
            "externalSender": self.external_sender,
            "externalId": self.external_id,
            "read": self.read,
            "attachments": list(self.attachments),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            content=data.get("content", ""),
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            sender=data.get("from"),
            external_sender=data.get("externalSender"),
            external_id=data.get("externalId"),
            read=bool(data.get("read", False)),
            attachments=list(data.get("attachments") or []),
        )


@dataclass
class Conversation:
    """A locally persisted thread, keyed by its derived conversation id."""

    conversation_id: str
    owner: str
    subject: str
    status: str
    participants: List[str] = field(default_factory=list)
    messages: List[ConversationMessage] = field(default_factory=list)
    last_message_at: datetime = field(default_factory=utcnow)
    to_email: Optional[str] = None
    deleted_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.status not in CONVERSATION_STATUSES:
            raise ValueError(
                f"Invalid conversation status '{self.status}'. "
                f"Must be one of {', '.join(CONVERSATION_STATUSES)}."
            )

    def has_external_id(self, external_id: Optional[str]) -> bool:
        if not external_id:
            return False
        return any(m.external_id == external_id for m in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "owner": self.owner,
            "subject": self.subject,
            "status": self.status,
            "participants": list(self.participants),
            "toEmail": self.to_email,
            "lastMessageAt": _isoformat(self.last_message_at),
            "deletedAt": _isoformat(self.deleted_at),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            conversation_id=data["conversationId"],
            owner=data["owner"],
            subject=data.get("subject", ""),
            status=data.get("status", "inbox"),
            participants=list(data.get("participants") or []),
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages") or []],
            last_message_at=_parse_datetime(data.get("lastMessageAt")) or utcnow(),
            to_email=data.get("toEmail"),
            deleted_at=_parse_datetime(data.get("deletedAt")),
        )
