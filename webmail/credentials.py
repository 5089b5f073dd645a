"""Per-user SMTP/IMAP credential storage and resolution."""

import asyncio
import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from webmail.cache import TTLCache
from webmail.crypto import InvalidToken, SecretBox
from webmail.errors import ConfigurationInvalid, CredentialsNotFound
from webmail.models import EmailCredentials

logger = logging.getLogger(__name__)

CREDENTIALS_TTL = 300


class UserConfigStore(ABC):
    """Persistence for per-user email configuration.

    Records are stored exactly as given: passwords are already encrypted by
    the caller and the store never sees plaintext.
    """

    @abstractmethod
    def get_email_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def save_email_config(self, user_id: str, config: Dict[str, Any]) -> None:
        ...


class InMemoryUserConfigStore(UserConfigStore):
    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get_email_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(user_id)
            return copy.deepcopy(record) if record else None

    def save_email_config(self, user_id: str, config: Dict[str, Any]) -> None:
        with self._lock:
            self._records[user_id] = copy.deepcopy(config)


def _cache_key(user_id: str) -> str:
    return f"credentials:{user_id}"


class CredentialResolver:
    """Fetches and decrypts a user's credentials, caching plaintext briefly."""

    def __init__(
        self,
        store: UserConfigStore,
        secrets: SecretBox,
        cache: Optional[TTLCache] = None,
        ttl: float = CREDENTIALS_TTL,
    ):
        self.store = store
        self.secrets = secrets
        self.cache = cache if cache is not None else TTLCache(default_ttl=ttl)
        self.ttl = ttl

    async def resolve(self, user_id: str) -> EmailCredentials:
        """Return decrypted credentials for ``user_id``.

        Raises:
            CredentialsNotFound: If the user has not configured email
            ConfigurationInvalid: If a stored password cannot be decrypted
        """
        cached = self.cache.get(_cache_key(user_id))
        if cached is not None:
            return cached

        record = await asyncio.to_thread(self.store.get_email_config, user_id)
        if not record or not (record.get("smtp") or {}).get("host") or not (
            record.get("imap") or {}
        ).get("host"):
            logger.info(f"Email not configured for user {user_id}")
            raise CredentialsNotFound("Email configuration not found")

        credentials = EmailCredentials.from_dict(record)
        try:
            credentials.smtp.password = self.secrets.decrypt(
                credentials.smtp.password or ""
            )
            credentials.imap.password = self.secrets.decrypt(
                credentials.imap.password or ""
            )
        except InvalidToken:
            logger.error(f"Stored email password for user {user_id} failed to decrypt")
            raise ConfigurationInvalid(
                "Stored email password could not be decrypted; please re-enter it"
            )

        self.cache.set(_cache_key(user_id), credentials, self.ttl)
        logger.debug(f"Resolved email credentials for user {user_id}")
        return credentials

    async def save(self, user_id: str, credentials: EmailCredentials) -> None:
        """Encrypt and persist ``credentials``, replacing any previous record."""
        record = credentials.to_dict(include_password=True)
        record["smtp"]["password"] = self.secrets.encrypt(credentials.smtp.password or "")
        record["imap"]["password"] = self.secrets.encrypt(credentials.imap.password or "")
        await asyncio.to_thread(self.store.save_email_config, user_id, record)
        self.invalidate(user_id)
        logger.info(f"Saved email configuration for user {user_id}")

    async def describe(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Stored configuration without passwords, or None."""
        record = await asyncio.to_thread(self.store.get_email_config, user_id)
        if not record:
            return None
        return EmailCredentials.from_dict(record).to_dict(include_password=False)

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(_cache_key(user_id))
