"""
Fetch a page of a live mailbox and normalize it.

Pages are counted from the newest message: page 1 holds the ``limit``
highest sequence numbers. The whole page is requested with one
``end:start`` sequence-range FETCH; each message's response parts are
collected in a ``MessageAccumulator`` regardless of the order they arrive
in, and a message only counts once its required parts are present when the
end marker is seen.
"""

import logging
import math
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from webmail.connection import ConnectionManager
from webmail.errors import FetchStreamError
from webmail.folders import FolderMapper
from webmail.imap_client import ImapSession
from webmail.models import EmailSummary, PageResult, Pagination
from webmail.parsing import (
    extract_content,
    extract_message_id,
    parse_header_block,
)

logger = logging.getLogger(__name__)

HEADER_FIELDS = "BODY.PEEK[HEADER.FIELDS (FROM TO SUBJECT DATE)]"
BODY_TEXT = "BODY.PEEK[TEXT]"
BODY_FULL = "BODY.PEEK[]"
BASE_ATTRIBUTES = ("UID", "FLAGS", HEADER_FIELDS, BODY_TEXT, BODY_FULL)
GMAIL_LABELS = "X-GM-LABELS"

# Response keys come back without .PEEK; match on the normalized prefix
PART_PREFIXES = (
    ("BODY[HEADER", "header"),
    ("BODY[TEXT]", "text"),
    ("BODY[]", "full"),
)
REQUIRED_PARTS = frozenset({"header", "full"})


@dataclass
class PageRange:
    start: int
    end: int
    has_more: bool


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total > 0 else 0


def compute_page_range(total: int, page: int, limit: int) -> Optional[PageRange]:
    """Sequence range for ``page``, or None when the page is empty.

    ``start`` is the newest message on the page and ``end`` the oldest;
    neither is ever below 1.
    """
    if page < 1 or limit < 1:
        raise ValueError(f"page and limit must be positive (page={page}, limit={limit})")
    if total <= 0 or (page - 1) * limit >= total:
        return None
    start = max(1, total - (page - 1) * limit)
    end = max(1, start - limit + 1)
    return PageRange(start=start, end=end, has_more=end > 1)


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass
class MessageAccumulator:
    """Parts and attributes received so far for one sequence number."""

    seq: int
    parts: Dict[str, bytes] = field(default_factory=dict)
    uid: Optional[int] = None
    flags: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    completion: Future = field(default_factory=Future)

    @property
    def is_complete(self) -> bool:
        return REQUIRED_PARTS.issubset(self.parts)

    def add_part(self, name: str, data: Optional[bytes]) -> None:
        self.parts[name] = data or b""

    def set_attributes(self, uid=None, flags=None, labels=None) -> None:
        if uid is not None:
            self.uid = int(uid)
        if flags is not None:
            self.flags = [_to_str(f) for f in flags]
        if labels is not None:
            self.labels = [_to_str(label) for label in labels]

    def end(self) -> None:
        """End marker: resolve the completion future exactly once."""
        if self.completion.done():
            return
        if self.is_complete:
            self.completion.set_result(self)
        else:
            missing = ", ".join(sorted(REQUIRED_PARTS - set(self.parts)))
            self.completion.set_exception(
                FetchStreamError(f"Message {self.seq} incomplete: missing {missing}")
            )


class FetchAssembler:
    """Reassembles per-message structures from FETCH response items."""

    def __init__(self):
        self._messages: Dict[int, MessageAccumulator] = {}

    def accumulator(self, seq: int) -> MessageAccumulator:
        if seq not in self._messages:
            self._messages[seq] = MessageAccumulator(seq=seq)
        return self._messages[seq]

    def feed(self, seq: int, item: Dict[Any, Any]) -> None:
        """Record one response item; a message may be fed several times."""
        acc = self.accumulator(seq)
        for raw_key, value in item.items():
            key = _to_str(raw_key).upper()
            if key == "UID":
                acc.set_attributes(uid=value)
            elif key == "FLAGS":
                acc.set_attributes(flags=value or ())
            elif key == GMAIL_LABELS:
                acc.set_attributes(labels=value or ())
            else:
                for prefix, name in PART_PREFIXES:
                    if key.startswith(prefix):
                        acc.add_part(name, value)
                        break

    def finish(self, expected: Iterable[int]) -> List[MessageAccumulator]:
        """Mark the end of the stream and return completed messages.

        Sequence numbers that got no response at all (expunged between
        SELECT and FETCH) are skipped; a message that arrived incomplete
        fails the whole page.

        Raises:
            FetchStreamError: If any received message is incomplete
        """
        expected = list(expected)
        absent = [seq for seq in expected if seq not in self._messages]
        if absent:
            logger.warning(f"No FETCH data for sequence numbers {absent}; skipping")

        for acc in self._messages.values():
            acc.end()
        return [acc.completion.result() for acc in self._messages.values()]


def summarize(acc: MessageAccumulator) -> EmailSummary:
    headers = parse_header_block(acc.parts.get("header"))
    full = acc.parts.get("full")
    return EmailSummary(
        id=acc.uid if acc.uid is not None else acc.seq,
        from_=headers["from"],
        to=headers["to"],
        subject=headers["subject"],
        date=headers["date"],
        flags=acc.flags,
        labels=acc.labels,
        content=extract_content(full, acc.parts.get("text")),
        message_id=extract_message_id(full),
        seq=acc.seq,
        uid=acc.uid,
    )


class FetchEngine:
    """Produces a ``PageResult`` for one folder page of a live session."""

    def __init__(self, manager: ConnectionManager, mapper: Optional[FolderMapper] = None):
        self.manager = manager
        self.mapper = mapper or FolderMapper()

    def attributes_for(self, session: ImapSession) -> List[str]:
        attributes = list(BASE_ATTRIBUTES)
        if session.is_gmail:
            attributes.append(GMAIL_LABELS)
        return attributes

    def fetch_page_blocking(
        self, session: ImapSession, folder: str, page: int, limit: int
    ) -> PageResult:
        mailbox = self.mapper.map_folder(folder, session)
        total = session.select_readonly(mailbox)
        pages = page_count(total, limit)

        if total == 0:
            logger.debug(f"Mailbox '{mailbox}' is empty")
            return PageResult.empty(total=0, pages=0, page=page)

        page_range = compute_page_range(total, page, limit)
        if page_range is None:
            logger.debug(f"Page {page} is past the end of '{mailbox}' ({pages} pages)")
            return PageResult.empty(total=total, pages=pages, page=page)

        response = session.fetch_range(
            page_range.end, page_range.start, self.attributes_for(session)
        )

        assembler = FetchAssembler()
        for seq, item in response.items():
            assembler.feed(int(seq), item)
        completed = assembler.finish(range(page_range.end, page_range.start + 1))

        emails = [summarize(acc) for acc in completed]
        emails.sort(key=lambda e: e.seq or 0, reverse=True)

        logger.info(
            f"Fetched {len(emails)} messages from '{mailbox}' "
            f"(seq {page_range.end}:{page_range.start} of {total})"
        )
        return PageResult(
            emails=emails,
            pagination=Pagination(
                total=total,
                pages=pages,
                current=page,
                has_more=page_range.has_more,
            ),
        )

    async def fetch_page(
        self, session: ImapSession, folder: str, page: int, limit: int
    ) -> PageResult:
        """Fetch one page under the manager's fetch budget.

        Raises:
            MailboxNotFound: If the mapped mailbox cannot be opened
            FetchStreamError: If the fetch fails or a message is incomplete
            MailTimeout: If the fetch budget is exceeded (phase="fetch")
        """
        return await self.manager.run(
            session,
            lambda s: self.fetch_page_blocking(s, folder, page, limit),
            phase="fetch",
        )
