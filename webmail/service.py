"""Service wiring and the request-level mail operations."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from webmail.auth import AuthManager
from webmail.cache import ResultCache, TTLCache
from webmail.config import DatabaseBackend, PaginationConfig, ServerConfig
from webmail.connection import ConnectionManager, SessionFactory
from webmail.conversations import (
    ConversationService,
    ConversationStore,
    InMemoryConversationStore,
)
from webmail.credentials import CredentialResolver, InMemoryUserConfigStore, UserConfigStore
from webmail.crypto import SecretBox
from webmail.fetch import FetchEngine
from webmail.folders import FolderMapper, canonical_folder
from webmail.imap_client import ImapSession
from webmail.models import EmailCredentials, PageResult
from webmail.smtp_client import OutgoingAttachment, SmtpTransport

logger = logging.getLogger(__name__)


class MailService:
    """Folder pages, sending, and account configuration for one process."""

    def __init__(
        self,
        resolver: CredentialResolver,
        manager: ConnectionManager,
        fetcher: FetchEngine,
        cache: ResultCache,
        smtp: SmtpTransport,
        conversations: ConversationService,
        pagination: Optional[PaginationConfig] = None,
    ):
        self.resolver = resolver
        self.manager = manager
        self.fetcher = fetcher
        self.cache = cache
        self.smtp = smtp
        self.conversations = conversations
        self.pagination = pagination or PaginationConfig()

    async def get_folder_page(
        self,
        user_id: str,
        folder: str,
        page: int = 1,
        limit: Optional[int] = None,
        refresh: bool = False,
    ) -> Tuple[PageResult, bool]:
        """Return ``(page_result, served_from_cache)``.

        ``limit`` is clamped to ``pagination.max_limit``. ``refresh`` drops the
        cached page and always fetches live.
        """
        if page < 1:
            raise ValueError("page must be at least 1")
        limit = self.pagination.clamp(limit)
        cache_folder = canonical_folder(folder)

        cached = self.cache.get(user_id, cache_folder, page, limit, refresh=refresh)
        if cached is not None:
            logger.debug(f"Cache hit for {user_id}/{folder} page {page}")
            return cached, True

        async with self.manager.session(user_id) as session:
            result = await self.fetcher.fetch_page(session, folder, page, limit)

        self.cache.set(user_id, cache_folder, page, limit, result)
        return result, False

    async def send_email(
        self,
        user_id: str,
        to: str,
        subject: str,
        content: str,
        attachments: Optional[List[OutgoingAttachment]] = None,
        html: bool = False,
    ) -> str:
        """Send through the user's SMTP account and record it in a sent thread."""
        credentials = await self.resolver.resolve(user_id)
        message_id = await self.smtp.send(
            credentials.smtp, to, subject, content, attachments, html
        )
        await self.conversations.record_sent(
            user_id,
            credentials.smtp.user,
            to,
            subject,
            content,
            message_id=message_id,
            attachments=[
                {"filename": a.filename, "contentType": a.content_type}
                for a in attachments or []
            ],
        )
        self.cache.invalidate_folder(user_id, "sent")
        return message_id

    async def get_email_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.resolver.describe(user_id)

    async def update_email_config(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, live-test, then persist new credentials.

        Nothing is written unless both the IMAP and SMTP checks pass, so a
        failed update leaves the previous configuration in place.
        """
        credentials = EmailCredentials.from_dict(data)
        credentials.validate()

        await self.manager.verify(credentials.imap, user_id)
        await self.smtp.verify(credentials.smtp)

        await self.resolver.save(user_id, credentials)
        dropped = self.cache.invalidate_user(user_id)
        logger.info(
            f"Email configuration updated for user {user_id} "
            f"({dropped} cached pages dropped)"
        )
        return credentials.to_dict(include_password=False)

    async def sync_folder(
        self, user_id: str, folder: str = "inbox", limit: Optional[int] = None
    ) -> int:
        """Store the newest page of ``folder`` into conversations."""
        credentials = await self.resolver.resolve(user_id)
        result, _ = await self.get_folder_page(user_id, folder, 1, limit, refresh=True)
        return await self.conversations.store_fetched(
            user_id, credentials.imap.user, folder, result.emails
        )


@dataclass
class Services:
    """Everything the web layer needs, built once per process."""

    config: ServerConfig
    auth: AuthManager
    mail: MailService
    conversations: ConversationService
    database: Any = None

    def close(self) -> None:
        if self.database is not None:
            self.database.close()


def _build_stores(config: ServerConfig) -> Tuple[UserConfigStore, ConversationStore, Any]:
    if config.database.backend == DatabaseBackend.POSTGRES:
        from webmail.database import (
            PostgresConversationStore,
            PostgresDatabase,
            PostgresUserConfigStore,
        )

        db = PostgresDatabase(config.database.postgres)
        db.initialize()
        return PostgresUserConfigStore(db), PostgresConversationStore(db), db

    logger.info("Using in-memory stores; data is lost on restart")
    return InMemoryUserConfigStore(), InMemoryConversationStore(), None


def build_services(
    config: ServerConfig,
    user_store: Optional[UserConfigStore] = None,
    conversation_store: Optional[ConversationStore] = None,
    smtp: Optional[SmtpTransport] = None,
    session_factory: Optional[SessionFactory] = None,
) -> Services:
    """Construct and inject the process-wide collaborators."""
    database = None
    if user_store is None or conversation_store is None:
        default_users, default_conversations, database = _build_stores(config)
        user_store = user_store if user_store is not None else default_users
        conversation_store = (
            conversation_store if conversation_store is not None else default_conversations
        )

    resolver = CredentialResolver(
        user_store,
        SecretBox(config.security),
        cache=TTLCache(default_ttl=config.cache.credentials_ttl),
        ttl=config.cache.credentials_ttl,
    )
    manager = ConnectionManager(
        resolver, config.imap, session_factory=session_factory or ImapSession
    )
    conversations = ConversationService(conversation_store)
    mail = MailService(
        resolver=resolver,
        manager=manager,
        fetcher=FetchEngine(manager, FolderMapper()),
        cache=ResultCache(ttl=config.cache.result_ttl),
        smtp=smtp or SmtpTransport(config.smtp),
        conversations=conversations,
        pagination=config.pagination,
    )
    return Services(
        config=config,
        auth=AuthManager(config.security, enabled=config.web.auth_enabled),
        mail=mail,
        conversations=conversations,
        database=database,
    )
