"""
Logical folder names -> provider mailbox paths.

Resolution order:
1. special-use attributes (RFC 6154) advertised in the server's LIST
   response, discovered once per session and cached on it;
2. a static table of well-known provider paths;
3. the requested name unchanged.

Mapping never fails. A path that does not exist surfaces later, when the
fetch engine tries to open it.
"""

import logging
from typing import Dict, List, Optional, Tuple

from webmail.errors import FetchStreamError
from webmail.imap_client import ImapSession

logger = logging.getLogger(__name__)

INBOX = "INBOX"

# Special-use attribute -> logical folder names it satisfies
SPECIAL_USE: Dict[str, Tuple[str, ...]] = {
    "\\Sent": ("sent",),
    "\\Drafts": ("drafts",),
    "\\Junk": ("spam",),
    "\\Trash": ("trash",),
    "\\Archive": ("archive",),
    "\\All": ("all", "archive"),
    "\\Flagged": ("starred",),
    "\\Important": ("important",),
}

ALIASES = {
    "junk": "spam",
    "bulk": "spam",
    "bin": "trash",
    "deleted": "trash",
    "deleted items": "trash",
    "sent mail": "sent",
    "sent items": "sent",
    "draft": "drafts",
    "all mail": "all",
    "flagged": "starred",
}


def _gmail_table(root: str) -> Dict[str, str]:
    return {
        "sent": f"{root}/Sent Mail",
        "drafts": f"{root}/Drafts",
        "spam": f"{root}/Spam",
        "trash": f"{root}/Trash",
        "archive": f"{root}/All Mail",
        "all": f"{root}/All Mail",
        "starred": f"{root}/Starred",
        "important": f"{root}/Important",
    }


PROVIDER_FOLDERS: Dict[str, Dict[str, str]] = {
    "gmail": _gmail_table("[Gmail]"),
    "googlemail": _gmail_table("[Google Mail]"),
    "outlook": {
        "sent": "Sent Items",
        "drafts": "Drafts",
        "spam": "Junk Email",
        "trash": "Deleted Items",
        "archive": "Archive",
    },
    "yahoo": {
        "sent": "Sent",
        "drafts": "Draft",
        "spam": "Bulk Mail",
        "trash": "Trash",
        "archive": "Archive",
    },
    "generic": {
        "sent": "Sent",
        "drafts": "Drafts",
        "spam": "Junk",
        "trash": "Trash",
        "archive": "Archive",
    },
}


def normalize_logical(name: str) -> str:
    key = (name or "").strip().lower()
    return ALIASES.get(key, key)


LOGICAL_NAMES = frozenset([INBOX.lower()] + [n for names in SPECIAL_USE.values() for n in names])


def canonical_folder(name: str) -> str:
    """Stable name for caching: logical folders normalized, mailbox paths verbatim."""
    key = normalize_logical(name)
    return key if key in LOGICAL_NAMES else name


def detect_provider(host: Optional[str], user: Optional[str] = None) -> str:
    """Guess the mail provider from the IMAP host and login address."""
    host = (host or "").lower()
    user = (user or "").lower()
    if user.endswith("@googlemail.com") or "googlemail" in host:
        return "googlemail"
    if "gmail" in host or user.endswith("@gmail.com"):
        return "gmail"
    if any(h in host for h in ("outlook", "office365", "hotmail", "live.com")):
        return "outlook"
    if "yahoo" in host or user.endswith(("@yahoo.com", "@ymail.com")):
        return "yahoo"
    return "generic"


def build_special_use_map(mailboxes: List[Tuple[List[str], str, str]]) -> Dict[str, str]:
    """Build logical -> path from LIST entries carrying special-use flags.

    ``\\Archive`` takes precedence over ``\\All`` for the archive folder.
    """
    table: Dict[str, str] = {}
    explicit_archive = False
    for flags, _delimiter, name in mailboxes:
        for flag in flags:
            # Servers differ in case ("\\Sent" vs "\\SENT")
            canonical = next((k for k in SPECIAL_USE if k.lower() == flag.lower()), None)
            if canonical is None:
                continue
            for logical in SPECIAL_USE[canonical]:
                if logical == "archive":
                    if canonical == "\\Archive":
                        table["archive"] = name
                        explicit_archive = True
                    elif not explicit_archive:
                        table["archive"] = name
                else:
                    table.setdefault(logical, name)
    return table


class FolderMapper:
    """Resolves logical folder names against a live session."""

    def discover(self, session: ImapSession) -> Dict[str, str]:
        """Special-use table for ``session``, listed at most once per session."""
        if session.folder_map is not None:
            return session.folder_map
        try:
            mailboxes = session.list_mailboxes()
        except FetchStreamError as e:
            logger.warning(f"Mailbox discovery failed, using provider defaults: {e}")
            mailboxes = []
        session.folder_map = build_special_use_map(mailboxes)
        if session.folder_map:
            logger.debug(f"Discovered special-use folders: {session.folder_map}")
        return session.folder_map

    def map_folder(self, logical: str, session: ImapSession) -> str:
        key = normalize_logical(logical)
        if key == "inbox":
            return INBOX

        discovered = self.discover(session)
        if key in discovered:
            return discovered[key]

        provider = detect_provider(session.credentials.host, session.credentials.user)
        static = PROVIDER_FOLDERS[provider]
        if key in static:
            return static[key]

        logger.debug(f"No mapping for folder '{logical}', using it verbatim")
        return logical
