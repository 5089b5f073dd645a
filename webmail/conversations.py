"""
Locally persisted conversation threads.

Threads are keyed per owner by a conversation id derived from the sorted
participant addresses and the subject with reply/forward prefixes removed,
so every message of a logical thread lands in the same document.
"""

import asyncio
import copy
import email.utils
import logging
import math
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from webmail.errors import ConversationNotFound
from webmail.models import (
    CONVERSATION_STATUSES,
    Conversation,
    ConversationMessage,
    EmailSummary,
    utcnow,
)

logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"^\s*(re|fwd?)\s*:\s*", re.IGNORECASE)

# Logical IMAP folder -> conversation status for fetched mail
FOLDER_STATUS = {
    "inbox": "inbox",
    "sent": "sent",
    "archive": "archived",
    "all": "archived",
    "trash": "trash",
}


def normalize_subject(subject: Optional[str]) -> str:
    cleaned = (subject or "").strip().lower()
    while True:
        stripped = _PREFIX_RE.sub("", cleaned, count=1)
        if stripped == cleaned:
            return cleaned.strip()
        cleaned = stripped


def normalize_address(value: Optional[str]) -> str:
    _name, address = email.utils.parseaddr(value or "")
    return (address or value or "").strip().lower()


def conversation_id(sender: str, recipient: str, subject: Optional[str]) -> str:
    """Thread key: sorted participant addresses joined with '-', then the subject."""
    participants = sorted([normalize_address(sender), normalize_address(recipient)])
    return f"{'-'.join(participants)}-{normalize_subject(subject)}"


def external_key(folder: str, summary: EmailSummary) -> Optional[str]:
    """Idempotency key for a fetched message: ``folder:uid``, else its Message-ID."""
    if summary.uid is not None:
        return f"{folder.strip().lower()}:{summary.uid}"
    return summary.message_id


@dataclass
class ConversationPage:
    conversations: List[Conversation]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": True,
            "emails": [c.to_dict() for c in self.conversations],
            "pagination": {
                "total": self.total,
                "pages": self.pages,
                "current": self.page,
                "hasMore": self.has_more,
            },
        }


class ConversationStore(ABC):
    """Document store for conversations. Every method is blocking."""

    @abstractmethod
    def append_message(
        self,
        owner: str,
        conversation_id: str,
        participants: Sequence[str],
        subject: str,
        status: str,
        message: ConversationMessage,
        to_email: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        """Find or create the thread and append ``message`` atomically.

        Returns the thread and whether the message was appended; a message
        whose ``external_id`` is already in the thread is not appended again.
        """

    @abstractmethod
    def get(self, owner: str, id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    def list_conversations(
        self, owner: str, status: str, offset: int, limit: int, search: str = ""
    ) -> Tuple[List[Conversation], int]:
        """Threads newest first, plus the total matching count."""

    @abstractmethod
    def set_status(self, owner: str, ids: Sequence[str], status: str) -> int:
        ...

    @abstractmethod
    def delete_from_trash(self, owner: str, id: str) -> bool:
        ...


def _matches(conversation: Conversation, search: str) -> bool:
    needle = search.lower()
    if needle in conversation.subject.lower():
        return True
    return any(needle in (m.content or "").lower() for m in conversation.messages)


class InMemoryConversationStore(ConversationStore):
    def __init__(self):
        self._threads: Dict[Tuple[str, str], Conversation] = {}
        self._lock = threading.Lock()

    def append_message(
        self,
        owner,
        conversation_id,
        participants,
        subject,
        status,
        message,
        to_email=None,
    ):
        with self._lock:
            key = (owner, conversation_id)
            conversation = self._threads.get(key)
            if conversation is None:
                conversation = Conversation(
                    conversation_id=conversation_id,
                    owner=owner,
                    subject=subject,
                    status=status,
                    participants=sorted(set(participants)),
                    last_message_at=message.created_at,
                    to_email=to_email,
                )
                self._threads[key] = conversation
            elif conversation.has_external_id(message.external_id):
                return copy.deepcopy(conversation), False

            conversation.messages.append(copy.deepcopy(message))
            if message.created_at > conversation.last_message_at:
                conversation.last_message_at = message.created_at
            return copy.deepcopy(conversation), True

    def get(self, owner, id):
        with self._lock:
            for conversation in self._threads.values():
                if conversation.owner == owner and conversation.id == id:
                    return copy.deepcopy(conversation)
        return None

    def list_conversations(self, owner, status, offset, limit, search=""):
        with self._lock:
            matching = [
                c
                for c in self._threads.values()
                if c.owner == owner
                and c.status == status
                and (not search or _matches(c, search))
            ]
        matching.sort(key=lambda c: c.last_message_at, reverse=True)
        return copy.deepcopy(matching[offset : offset + limit]), len(matching)

    def set_status(self, owner, ids, status):
        wanted = set(ids)
        moved = 0
        with self._lock:
            for conversation in self._threads.values():
                if conversation.owner == owner and conversation.id in wanted:
                    conversation.status = status
                    conversation.deleted_at = utcnow() if status == "trash" else None
                    moved += 1
        return moved

    def delete_from_trash(self, owner, id):
        with self._lock:
            for key, conversation in list(self._threads.items()):
                if (
                    conversation.owner == owner
                    and conversation.id == id
                    and conversation.status == "trash"
                ):
                    del self._threads[key]
                    return True
        return False


def _check_status(status: str) -> str:
    if status not in CONVERSATION_STATUSES:
        raise ValueError(
            f"Invalid folder '{status}'. Must be one of {', '.join(CONVERSATION_STATUSES)}."
        )
    return status


class ConversationService:
    """Async facade over a ``ConversationStore``."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def append_message(
        self,
        owner: str,
        conversation_id: str,
        participants: Sequence[str],
        subject: str,
        message: ConversationMessage,
        status: str = "inbox",
        to_email: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        conversation, appended = await asyncio.to_thread(
            self.store.append_message,
            owner,
            conversation_id,
            list(participants),
            subject,
            _check_status(status),
            message,
            to_email,
        )
        if not appended:
            logger.debug(
                f"Message {message.external_id} already in conversation {conversation.id}"
            )
        return conversation, appended

    async def record_sent(
        self,
        owner: str,
        sender: str,
        recipient: str,
        subject: str,
        content: str,
        message_id: Optional[str] = None,
        attachments: Optional[List[Dict[str, object]]] = None,
    ) -> Conversation:
        """Persist an outgoing message into its ``sent`` thread."""
        message = ConversationMessage(
            content=content,
            sender=owner,
            external_id=message_id,
            read=True,
            attachments=list(attachments or []),
        )
        conversation, _ = await self.append_message(
            owner,
            conversation_id(sender, recipient, subject),
            [normalize_address(sender), normalize_address(recipient)],
            subject or "(No Subject)",
            message,
            status="sent",
            to_email=recipient,
        )
        return conversation

    async def store_fetched(
        self,
        owner: str,
        owner_address: str,
        folder: str,
        summaries: Sequence[EmailSummary],
    ) -> int:
        """Merge fetched mail into threads; returns how many messages were new.

        Safe to call repeatedly with overlapping pages.
        """
        status = FOLDER_STATUS.get(folder.strip().lower(), "inbox")
        stored = 0
        for summary in summaries:
            key = external_key(folder, summary)
            message = ConversationMessage(
                content=summary.content or "No content",
                created_at=summary.date or utcnow(),
                external_sender=summary.from_,
                external_id=key,
                read="\\Seen" in summary.flags,
            )
            _, appended = await self.append_message(
                owner,
                conversation_id(summary.from_ or "unknown", owner_address, summary.subject),
                [normalize_address(summary.from_), normalize_address(owner_address)],
                summary.subject,
                message,
                status=status,
                to_email=owner_address,
            )
            stored += int(appended)
        logger.info(f"Stored {stored} of {len(summaries)} fetched messages for user {owner}")
        return stored

    async def list(
        self, owner: str, status: str, page: int = 1, limit: int = 20, search: str = ""
    ) -> ConversationPage:
        _check_status(status)
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        conversations, total = await asyncio.to_thread(
            self.store.list_conversations,
            owner,
            status,
            (page - 1) * limit,
            limit,
            search.strip(),
        )
        return ConversationPage(conversations=conversations, total=total, page=page, limit=limit)

    async def get(self, owner: str, id: str, status: Optional[str] = None) -> Conversation:
        """One thread with its messages; ``status`` restricts it to a folder."""
        conversation = await asyncio.to_thread(self.store.get, owner, id)
        if conversation is None or (status is not None and conversation.status != status):
            raise ConversationNotFound("Email not found")
        return conversation

    async def move(self, owner: str, id: str, folder: str) -> None:
        moved = await asyncio.to_thread(self.store.set_status, owner, [id], _check_status(folder))
        if not moved:
            raise ConversationNotFound("Email not found")
        logger.info(f"Moved conversation {id} to {folder}")

    async def bulk_move(self, owner: str, ids: Sequence[str], folder: str) -> int:
        moved = await asyncio.to_thread(
            self.store.set_status, owner, list(ids), _check_status(folder)
        )
        logger.info(f"Moved {moved} conversations to {folder}")
        return moved

    async def delete(self, owner: str, id: str) -> None:
        """Permanently delete a thread; only threads in trash can be deleted."""
        deleted = await asyncio.to_thread(self.store.delete_from_trash, owner, id)
        if not deleted:
            raise ConversationNotFound("Email not found in trash")
        logger.info(f"Permanently deleted conversation {id}")
