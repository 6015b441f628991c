"""
Provider API key storage.

Only a SHA-256 hash and a short prefix of each key are persisted. The
secret itself is resolved from the environment (``<PROVIDER>_API_KEY``)
once an active, unexpired stored key confirms the organization may use
the provider, or directly when no key is stored.
"""

import hashlib
import logging
import os
import uuid
from datetime import datetime
from typing import Callable, List, Mapping, Optional

from ai_infra_guard.storage.models import APIKeyRecord
from ai_infra_guard.storage.repository import APIKeyRepository

logger = logging.getLogger(__name__)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class APIKeyStore:
    """Credential store keyed by (organization, provider)."""

    def __init__(
        self,
        repository: APIKeyRepository,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self._environ = environ if environ is not None else os.environ
        self._clock = clock

    def store_api_key(
        self,
        organization_id: str,
        provider: str,
        api_key: str,
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> APIKeyRecord:
        """Store the hash of a provider key for an organization.

        Raises:
            ValueError: If the key is empty or already stored
        """
        if not api_key:
            raise ValueError("api_key is required and cannot be empty")

        key_hash = hash_api_key(api_key)
        if self.repository.find_by_hash(organization_id, provider, key_hash) is not None:
            raise ValueError(f"API key for {provider} already exists for this organization")

        record = APIKeyRecord(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            provider=provider,
            key_hash=key_hash,
            key_prefix=api_key[:8] + "...",
            name=name or f"{provider} API Key",
            expires_at=expires_at,
            created_at=self._clock()
        )
        self.repository.insert(record)

        logger.info(
            "API key stored for %s", provider,
            extra={"organization_id": organization_id, "key_id": record.id}
        )
        return record

    def _key_from_environment(self, provider: str) -> Optional[str]:
        return self._environ.get(f"{provider.upper()}_API_KEY") or None

    def get_api_key(self, organization_id: str, provider: str) -> Optional[str]:
        """Resolve the API key an organization should use for a provider.

        Returns:
            The key, or None if the stored key has expired or no key is
            configured in the environment
        """
        stored = self.repository.find_active(organization_id, provider)
        if stored is not None:
            now = self._clock()
            if stored.expires_at is not None and stored.expires_at < now:
                logger.warning(
                    "API key expired for %s", provider,
                    extra={"organization_id": organization_id, "key_id": stored.id}
                )
                return None
            self.repository.touch(stored.id, now)

        return self._key_from_environment(provider)

    def verify_api_key(self, organization_id: str, provider: str, api_key: str) -> bool:
        """Whether ``api_key`` matches an active stored key."""
        stored = self.repository.find_by_hash(
            organization_id, provider, hash_api_key(api_key), active_only=True
        )
        return stored is not None

    def list_api_keys(self, organization_id: str) -> List[APIKeyRecord]:
        return self.repository.list_for_organization(organization_id)

    def deactivate_api_key(self, key_id: str, organization_id: str) -> None:
        """Raises KeyError if the key does not exist."""
        if self.repository.deactivate(key_id, organization_id) == 0:
            raise KeyError("API key not found")
        logger.info("API key deactivated: %s", key_id)

    def delete_api_key(self, key_id: str, organization_id: str) -> None:
        """Raises KeyError if the key does not exist."""
        if self.repository.delete(key_id, organization_id) == 0:
            raise KeyError("API key not found")
        logger.info("API key deleted: %s", key_id)
