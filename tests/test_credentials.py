"""
Tests for provider API key storage.
"""

import hashlib
from datetime import datetime, timedelta

import pytest

from ai_infra_guard.core.credentials import APIKeyStore, hash_api_key
from ai_infra_guard.storage.repository import APIKeyRepository

NOW = datetime(2024, 6, 1, 12, 0)


@pytest.fixture
def repository(db_path):
    return APIKeyRepository(db_path)


@pytest.fixture
def store(repository):
    return APIKeyStore(
        repository,
        environ={"OPENAI_API_KEY": "sk-from-env"},
        clock=lambda: NOW
    )


class TestStoreApiKey:
    """Test storing keys."""

    def test_only_hash_and_prefix_are_kept(self, store, repository):
        record = store.store_api_key("org-1", "openai", "sk-secret-value")

        assert record.key_hash == hashlib.sha256(b"sk-secret-value").hexdigest()
        assert record.key_hash == hash_api_key("sk-secret-value")
        assert record.key_prefix == "sk-secre..."
        assert record.name == "openai API Key"
        assert record.is_active
        assert repository.list_for_organization("org-1") == [record]

    def test_empty_key_rejected(self, store):
        with pytest.raises(ValueError):
            store.store_api_key("org-1", "openai", "")

    def test_duplicate_rejected(self, store):
        store.store_api_key("org-1", "openai", "sk-secret-value")
        with pytest.raises(ValueError, match="already exists"):
            store.store_api_key("org-1", "openai", "sk-secret-value")

    def test_same_key_other_organization(self, store):
        store.store_api_key("org-1", "openai", "sk-secret-value")
        store.store_api_key("org-2", "openai", "sk-secret-value", name="Shared")
        assert store.list_api_keys("org-2")[0].name == "Shared"


class TestGetApiKey:
    """Test key resolution."""

    def test_environment_key_without_stored_key(self, store):
        assert store.get_api_key("org-1", "openai") == "sk-from-env"
        assert store.get_api_key("org-1", "anthropic") is None

    def test_stored_key_is_touched(self, store, repository):
        record = store.store_api_key("org-1", "openai", "sk-secret-value")
        assert store.get_api_key("org-1", "openai") == "sk-from-env"
        assert repository.list_for_organization("org-1")[0].last_used_at == NOW
        assert record.last_used_at is None

    def test_expired_key_returns_none(self, store):
        store.store_api_key(
            "org-1", "openai", "sk-secret-value", expires_at=NOW - timedelta(seconds=1)
        )
        assert store.get_api_key("org-1", "openai") is None

    def test_deactivated_key_falls_through_to_environment(self, store):
        record = store.store_api_key(
            "org-1", "openai", "sk-secret-value", expires_at=NOW - timedelta(days=1)
        )
        store.deactivate_api_key(record.id, "org-1")
        assert store.get_api_key("org-1", "openai") == "sk-from-env"


class TestKeyLifecycle:
    """Test verify, deactivate and delete."""

    def test_verify(self, store):
        record = store.store_api_key("org-1", "openai", "sk-secret-value")
        assert store.verify_api_key("org-1", "openai", "sk-secret-value")
        assert not store.verify_api_key("org-1", "openai", "sk-other")
        assert not store.verify_api_key("org-2", "openai", "sk-secret-value")

        store.deactivate_api_key(record.id, "org-1")
        assert not store.verify_api_key("org-1", "openai", "sk-secret-value")

    def test_deactivate_is_scoped_to_organization(self, store):
        record = store.store_api_key("org-1", "openai", "sk-secret-value")
        with pytest.raises(KeyError, match="API key not found"):
            store.deactivate_api_key(record.id, "org-2")

    def test_delete(self, store):
        record = store.store_api_key("org-1", "openai", "sk-secret-value")
        store.delete_api_key(record.id, "org-1")
        assert store.list_api_keys("org-1") == []
        with pytest.raises(KeyError):
            store.delete_api_key(record.id, "org-1")
