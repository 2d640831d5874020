"""Shared fixtures: one store with an owner, two customers, a stranger."""

import pytest

from store_messaging.config import Settings
from store_messaging.repositories.memory import InMemoryMessageRepository, InMemoryStoreDirectory
from store_messaging.services.messaging import MessagingService
from store_messaging.services.notifier import RealtimeNotifier


@pytest.fixture
def settings() -> Settings:
    return Settings(retry_attempts=3, retry_max_wait=0.01, send_rate_limit=1000)


@pytest.fixture
def notifier() -> RealtimeNotifier:
    return RealtimeNotifier(queue_size=8)


@pytest.fixture
def stores() -> InMemoryStoreDirectory:
    directory = InMemoryStoreDirectory()
    directory.add_store("store-1", "Corner Shop", "owner-1")
    directory.add_store("store-2", "Bakery", "owner-2")
    directory.set_display_name("customer-1", "Alice")
    return directory


@pytest.fixture
def repository(notifier, settings) -> InMemoryMessageRepository:
    return InMemoryMessageRepository(notifier, max_body_length=settings.max_body_length)


@pytest.fixture
def service(repository, stores, notifier, settings) -> MessagingService:
    return MessagingService(repository, stores, notifier, settings)
