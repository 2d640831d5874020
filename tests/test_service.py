"""Tests for the messaging service operations and live views."""

import asyncio

import pytest

from store_messaging.domain.errors import (
    ForbiddenError,
    MessageValidationError,
    NotFoundError,
    TransientError,
)
from store_messaging.domain.models import SenderRole
from store_messaging.repositories.memory import InMemoryMessageRepository
from store_messaging.services.messaging import MessagingService

STORE = "store-1"
OWNER = "owner-1"
C1 = "customer-1"
C2 = "customer-2"


async def unread_for(service: MessagingService, viewer_id: str, customer_id: str) -> int:
    for summary in await service.get_conversations(viewer_id):
        if summary.store_id == STORE and summary.customer_id == customer_id:
            return summary.unread_count
    return 0


@pytest.mark.asyncio
async def test_non_owner_cannot_reply_as_owner(service):
    await service.send(STORE, C1, SenderRole.CUSTOMER, "hello", C1)
    with pytest.raises(ForbiddenError):
        await service.send(STORE, C1, SenderRole.OWNER, "x", "stranger")
    with pytest.raises(ForbiddenError):
        await service.send(STORE, C1, "owner", "x", C2)


@pytest.mark.asyncio
async def test_send_validation(service, repository):
    with pytest.raises(MessageValidationError):
        await service.send(STORE, C1, SenderRole.CUSTOMER, "   ", C1)
    with pytest.raises(MessageValidationError):
        await service.send(STORE, None, SenderRole.OWNER, "reply", OWNER)
    with pytest.raises(MessageValidationError):
        await service.send(STORE, C1, "moderator", "hey", C1)
    with pytest.raises(NotFoundError):
        await service.send("nowhere", C1, SenderRole.CUSTOMER, "hey", C1)
    assert await repository.list_messages(STORE) == []


@pytest.mark.asyncio
async def test_send_accepts_role_names(service):
    message = await service.send(STORE, C1, "customer", "hello", C1)
    assert message.sender_role is SenderRole.CUSTOMER


@pytest.mark.asyncio
async def test_owner_cannot_open_a_thread(service):
    with pytest.raises(ForbiddenError):
        await service.send(STORE, C1, SenderRole.OWNER, "special offer!", OWNER)
    await service.send(STORE, C1, SenderRole.CUSTOMER, "question", C1)
    reply = await service.send(STORE, C1, SenderRole.OWNER, "answer", OWNER)
    assert reply.user_id == C1
    assert reply.sender_role is SenderRole.OWNER


@pytest.mark.asyncio
async def test_thread_isolation(service):
    await service.send(STORE, C1, SenderRole.CUSTOMER, "from A", C1)
    await service.send(STORE, C2, SenderRole.CUSTOMER, "from B", C2)
    await service.send(STORE, C1, SenderRole.OWNER, "to A", OWNER)

    thread = await service.get_thread(STORE, C2, C2)
    assert [m.body for m in thread] == ["from B"]
    assert await unread_for(service, C2, C2) == 0

    with pytest.raises(ForbiddenError):
        await service.get_thread(STORE, C1, C2)

    owner_view = await service.get_thread(STORE, C1, OWNER)
    assert [m.body for m in owner_view] == ["from A", "to A"]


@pytest.mark.asyncio
async def test_new_message_after_mark_read_stays_unread(service):
    first = await service.send(STORE, C1, SenderRole.CUSTOMER, "one", C1)
    await service.mark_read([first.id], OWNER)
    assert await unread_for(service, OWNER, C1) == 0

    second = await service.send(STORE, C1, SenderRole.CUSTOMER, "two", C1)

    assert not second.is_read
    assert await unread_for(service, OWNER, C1) == 1


class RacingRepository(InMemoryMessageRepository):
    """Appends a customer message right after a thread snapshot is taken."""

    raced = False

    async def list_messages(self, store_id, user_id=None):
        snapshot = await super().list_messages(store_id, user_id)
        if not self.raced:
            self.raced = True
            await self.insert_message(store_id, user_id, SenderRole.CUSTOMER, "late")
        return snapshot


@pytest.mark.asyncio
async def test_mark_thread_read_only_touches_the_snapshot(stores, notifier, settings):
    repository = RacingRepository(notifier)
    service = MessagingService(repository, stores, notifier, settings)
    await repository.insert_message(STORE, C1, SenderRole.CUSTOMER, "early")

    marked = await service.mark_thread_read(STORE, C1, OWNER)

    assert [m.body for m in marked] == ["early"]
    assert await unread_for(service, OWNER, C1) == 1


@pytest.mark.asyncio
async def test_mark_thread_read_skips_own_messages(service):
    await service.send(STORE, C1, SenderRole.CUSTOMER, "q", C1)
    await service.send(STORE, C1, SenderRole.OWNER, "a", OWNER)

    marked = await service.mark_thread_read(STORE, C1, C1)

    assert [m.body for m in marked] == ["a"]
    assert await unread_for(service, C1, C1) == 0
    assert await unread_for(service, OWNER, C1) == 1


@pytest.mark.asyncio
async def test_mark_read_is_all_or_nothing(service, repository):
    question = await service.send(STORE, C1, SenderRole.CUSTOMER, "q", C1)
    answer = await service.send(STORE, C1, SenderRole.OWNER, "a", OWNER)

    with pytest.raises(ForbiddenError):
        await service.mark_read([question.id, answer.id], OWNER)
    assert not (await repository.get_message(question.id)).is_read


@pytest.mark.asyncio
async def test_watch_thread_refetches_on_change(service, notifier):
    updates = service.watch_thread(STORE, C1, C1)

    assert await updates.__anext__() == []
    await service.send(STORE, C1, SenderRole.CUSTOMER, "hello", C1)
    snapshot = await asyncio.wait_for(updates.__anext__(), timeout=1)
    assert [m.body for m in snapshot] == ["hello"]

    await service.send(STORE, C1, SenderRole.OWNER, "hi", OWNER)
    snapshot = await asyncio.wait_for(updates.__anext__(), timeout=1)
    assert [m.sender_role for m in snapshot] == [SenderRole.CUSTOMER, SenderRole.OWNER]

    await updates.aclose()
    assert notifier.subscriber_count() == 0


@pytest.mark.asyncio
async def test_watch_thread_rejects_strangers(service, notifier):
    updates = service.watch_thread(STORE, C1, C2)
    with pytest.raises(ForbiddenError):
        await updates.__anext__()
    assert notifier.subscriber_count() == 0


@pytest.mark.asyncio
async def test_owner_inbox_follows_new_customers(service, notifier):
    inbox = service.watch_conversations(OWNER)
    assert await inbox.__anext__() == []

    await service.send(STORE, C1, SenderRole.CUSTOMER, "hello", C1)
    (summary,) = await asyncio.wait_for(inbox.__anext__(), timeout=1)
    assert summary.customer_id == C1
    assert summary.unread_count == 1

    await service.send(STORE, C2, SenderRole.CUSTOMER, "hey", C2)
    summaries = await asyncio.wait_for(inbox.__anext__(), timeout=1)
    assert [s.customer_id for s in summaries] == [C2, C1]

    await inbox.aclose()
    assert notifier.subscriber_count() == 0


@pytest.mark.asyncio
async def test_customer_inbox_sees_owner_reply(service, notifier):
    await service.send(STORE, C1, SenderRole.CUSTOMER, "hello", C1)
    inbox = service.watch_conversations(C1)
    (summary,) = await inbox.__anext__()
    assert summary.unread_count == 0
    assert notifier.subscriber_count() == 1

    await service.send(STORE, C1, SenderRole.OWNER, "welcome", OWNER)
    (summary,) = await asyncio.wait_for(inbox.__anext__(), timeout=1)
    assert summary.last_message == "welcome"
    assert summary.unread_count == 1
    await inbox.aclose()


@pytest.mark.asyncio
async def test_empty_customer_inbox_sees_first_thread(service, notifier):
    inbox = service.watch_conversations(C1)
    assert await inbox.__anext__() == []

    await service.send(STORE, C1, SenderRole.CUSTOMER, "hi", C1)
    (summary,) = await asyncio.wait_for(inbox.__anext__(), timeout=1)
    assert summary.store_id == STORE
    assert summary.last_sender_is_viewer

    await inbox.aclose()
    assert notifier.subscriber_count() == 0


@pytest.mark.asyncio
async def test_customer_inbox_sees_thread_with_another_store(service):
    await service.send(STORE, C1, SenderRole.CUSTOMER, "hello", C1)
    inbox = service.watch_conversations(C1)
    (summary,) = await inbox.__anext__()
    assert summary.store_id == STORE

    await service.send("store-2", C1, SenderRole.CUSTOMER, "fresh bread?", C1)
    summaries = await asyncio.wait_for(inbox.__anext__(), timeout=1)
    assert [s.store_id for s in summaries] == ["store-2", STORE]
    await inbox.aclose()


class FlakyRepository(InMemoryMessageRepository):
    def __init__(self, notifier, failures: int) -> None:
        super().__init__(notifier)
        self.failures = failures
        self.calls = 0

    async def list_messages_for_viewer(self, viewer_id, owned_store_ids):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientError("storage unavailable")
        return await super().list_messages_for_viewer(viewer_id, owned_store_ids)


@pytest.mark.asyncio
async def test_live_view_retries_transient_failures(stores, notifier, settings):
    repository = FlakyRepository(notifier, failures=2)
    service = MessagingService(repository, stores, notifier, settings)

    inbox = service.watch_conversations(OWNER)
    assert await inbox.__anext__() == []
    assert repository.calls == 3
    await inbox.aclose()


@pytest.mark.asyncio
async def test_live_view_gives_up_after_last_attempt(stores, notifier, settings):
    repository = FlakyRepository(notifier, failures=10)
    service = MessagingService(repository, stores, notifier, settings)

    inbox = service.watch_conversations(OWNER)
    with pytest.raises(TransientError):
        await inbox.__anext__()
    assert repository.calls == settings.retry_attempts
    assert notifier.subscriber_count() == 0
