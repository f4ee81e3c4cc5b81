# ABOUTME: API key issuance, validation and revocation
# ABOUTME: Stores only SHA-256 digests; plaintext keys are returned once at issuance

import hashlib
import logging
import secrets
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from cn_api.models.database import APIKey
from cn_api.models.schemas import APIKeyRecord
from cn_api.services.exceptions import StorageError, StorageUnavailable
from cn_api.utils.billing_period import as_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "cn_live_"


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Generate a new plaintext key: prefix plus 256 bits of randomness as hex."""
    return f"{prefix}{secrets.token_hex(32)}"


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest of a plaintext key. This is what gets stored."""
    return hashlib.sha256(api_key.encode()).hexdigest()


class KeyManager:
    """Key records backed by the api_keys table."""

    def __init__(self, session_factory, key_prefix: str = DEFAULT_KEY_PREFIX,
                 clock: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._key_prefix = key_prefix
        self._clock = clock

    def issue(self, client_name: str, tier: str = "basic", expires_at: datetime | None = None,
              is_admin: bool = False) -> tuple[str, APIKeyRecord]:
        """
        Create and persist a new API key.

        Returns the plaintext key and the stored record. The plaintext is not
        kept anywhere; if the insert fails StorageError is raised and no key
        is handed out.
        """
        plaintext_key = generate_api_key(self._key_prefix)
        api_key = APIKey(
            key_hash=hash_api_key(plaintext_key),
            client_name=client_name,
            tier=tier,
            is_active=True,
            is_admin=is_admin,
            created_at=self._clock(),
            expires_at=as_utc(expires_at) if expires_at else None,
        )
        try:
            with self._session_factory() as session:
                session.add(api_key)
                session.commit()
                session.refresh(api_key)
                record = APIKeyRecord.model_validate(api_key)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist API key for client %r", client_name)
            raise StorageError("Failed to persist API key") from exc

        logger.info("Issued API key %s (tier=%s) for client %r", record.id, tier, client_name)
        return plaintext_key, record

    def validate(self, api_key: str) -> APIKeyRecord | None:
        """
        Look up a presented plaintext key.

        Returns None for unknown, inactive and expired keys alike. Raises
        StorageUnavailable when the store cannot be read.
        """
        key_hash = hash_api_key(api_key)
        try:
            with self._session_factory() as session:
                api_key_row = session.query(APIKey).filter(APIKey.key_hash == key_hash).first()
                record = APIKeyRecord.model_validate(api_key_row) if api_key_row else None
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Failed to read API keys") from exc

        if record is None or not record.is_active:
            return None
        if record.expires_at is not None and as_utc(record.expires_at) < self._clock():
            return None
        return record

    def revoke(self, key_id: str) -> bool:
        """Deactivate a key. Returns False if no such key; revoking twice is fine."""
        try:
            with self._session_factory() as session:
                api_key = session.get(APIKey, key_id)
                if api_key is None:
                    return False
                if api_key.is_active:
                    api_key.is_active = False
                    session.commit()
                    logger.info("Revoked API key %s", key_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to revoke API key {key_id}") from exc
        return True

    def get_by_id(self, key_id: str) -> APIKeyRecord | None:
        """Fetch a key record regardless of its active or expiry state."""
        try:
            with self._session_factory() as session:
                api_key = session.get(APIKey, key_id)
                return APIKeyRecord.model_validate(api_key) if api_key else None
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to read API key {key_id}") from exc
