"""Messaging service: the operations exposed to the view layer.

Every call takes the viewer explicitly. Live views follow the
push-then-refetch pattern: subscribe to the store, and on each
notification re-run the authoritative read instead of trusting the event.
"""

from typing import AsyncIterator, List, Optional, Sequence, Union
from uuid import UUID

import structlog

from ..config import Settings
from ..domain.errors import ForbiddenError, MessageValidationError
from ..domain.models import ConversationSummary, Message, SenderRole
from ..metrics import ACTIVE_VIEWS, MESSAGES_SENT
from ..repositories.base import MessageRepository, StoreDirectory
from .access import AccessPolicy
from .aggregator import ConversationAggregator
from .notifier import RealtimeNotifier
from .resolver import is_unread_for, resolve_thread
from .retry import call_with_retry

logger = structlog.get_logger()


class MessagingService:
    """Store-to-customer messaging."""

    def __init__(
        self,
        messages: MessageRepository,
        stores: StoreDirectory,
        notifier: RealtimeNotifier,
        settings: Optional[Settings] = None,
    ) -> None:
        self._messages = messages
        self._stores = stores
        self._notifier = notifier
        self._settings = settings or Settings()
        self.policy = AccessPolicy(stores)
        self.aggregator = ConversationAggregator(messages, stores)

    async def get_conversations(self, viewer_id: str) -> List[ConversationSummary]:
        return await self.aggregator.get_conversations(viewer_id)

    async def get_thread(self, store_id: str, user_id: str, viewer_id: str) -> List[Message]:
        """Messages of one thread in insertion order."""
        await self.policy.authorize_read(store_id, user_id, viewer_id)
        return await self._messages.list_messages(store_id, user_id)

    async def send(
        self,
        store_id: str,
        target_user_id: Optional[str],
        sender_role: Union[SenderRole, str],
        body: str,
        viewer_id: str,
    ) -> Message:
        if not body or not body.strip():
            raise MessageValidationError("Message body cannot be empty")
        try:
            role = SenderRole(sender_role)
        except ValueError:
            raise MessageValidationError(f"Unknown sender role: {sender_role!r}")

        await self.policy.authorize_send(store_id, target_user_id, role, viewer_id)
        # Owners answer customers; they never open a thread themselves.
        if role is SenderRole.OWNER and not await self._messages.thread_exists(
            store_id, target_user_id
        ):
            logger.warning(
                "owner_reply_without_thread", store_id=store_id, user_id=target_user_id
            )
            raise ForbiddenError("Store owners can only reply within an existing thread")

        message = await self._messages.insert_message(store_id, target_user_id, role, body)
        MESSAGES_SENT.labels(sender_role=role.value).inc()
        logger.info(
            "message_sent",
            store_id=store_id,
            user_id=target_user_id,
            sender_role=role.value,
            viewer_id=viewer_id,
        )
        return message

    async def mark_read(self, message_ids: Sequence[UUID], viewer_id: str) -> List[Message]:
        """Flip the read flag on exactly these messages.

        All ids are authorized before any flag changes.
        """
        targets = []
        for message_id in message_ids:
            message = await self._messages.get_message(message_id)
            await self.policy.authorize_mark_read(message, viewer_id)
            targets.append(message.id)
        return [await self._messages.mark_read(message_id) for message_id in targets]

    async def mark_thread_read(self, store_id: str, user_id: str, viewer_id: str) -> List[Message]:
        """Mark the viewer's unread messages of one thread snapshot as read.

        Messages arriving after the snapshot keep their unread flag.
        """
        thread = await self.get_thread(store_id, user_id, viewer_id)
        viewer = await self.aggregator.viewer(viewer_id)
        unread = [m.id for m in thread if is_unread_for(m, resolve_thread(m, viewer))]
        if not unread:
            return []
        return await self.mark_read(unread, viewer_id)

    async def watch_thread(
        self, store_id: str, user_id: str, viewer_id: str
    ) -> AsyncIterator[List[Message]]:
        """Yield the thread now and again after every change to its store."""
        await self.policy.authorize_read(store_id, user_id, viewer_id)
        with self._notifier.subscribe(store_id) as subscription:
            ACTIVE_VIEWS.inc()
            try:
                yield await self._read(self.get_thread, store_id, user_id, viewer_id)
                async for _ in subscription:
                    subscription.drain()
                    yield await self._read(self.get_thread, store_id, user_id, viewer_id)
            finally:
                ACTIVE_VIEWS.dec()

    async def watch_conversations(self, viewer_id: str) -> AsyncIterator[List[ConversationSummary]]:
        """Yield the viewer's inbox now and again after every relevant change.

        Follows the viewer's own stores and the viewer's threads as a customer,
        including threads started after the view opened.
        """
        viewer = await self._read(self.aggregator.viewer, viewer_id)
        subscription = self._notifier.subscribe(
            *viewer.owned_store_ids, customer_ids=[viewer_id]
        )
        with subscription:
            ACTIVE_VIEWS.inc()
            try:
                yield await self._read(self.get_conversations, viewer_id)
                async for _ in subscription:
                    subscription.drain()
                    yield await self._read(self.get_conversations, viewer_id)
            finally:
                ACTIVE_VIEWS.dec()

    async def _read(self, operation, *args):
        return await call_with_retry(
            operation,
            *args,
            attempts=self._settings.retry_attempts,
            max_wait=self._settings.retry_max_wait,
        )
