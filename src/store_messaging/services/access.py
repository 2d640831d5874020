"""Who may read, write and acknowledge which thread."""

from typing import Optional

import structlog

from ..domain.errors import ForbiddenError, MessageValidationError
from ..domain.models import Message, SenderRole, Store, Viewer
from ..repositories.base import StoreDirectory

logger = structlog.get_logger()


def can_view(message: Message, viewer: Viewer) -> bool:
    return message.user_id == viewer.viewer_id or viewer.owns(message.store_id)


class AccessPolicy:
    """Gate thread reads, sends and read-flag updates.

    A viewer may touch thread ``(store_id, user_id)`` only as that customer
    or as the store's owner. Violations raise ``ForbiddenError``; they are
    never turned into empty results.
    """

    def __init__(self, stores: StoreDirectory) -> None:
        self._stores = stores

    async def authorize_read(self, store_id: str, user_id: str, viewer_id: str) -> Store:
        store = await self._stores.get_store(store_id)
        if viewer_id != user_id and viewer_id != store.owner_id:
            self._deny("read", store_id, user_id, viewer_id)
        return store

    async def authorize_send(
        self,
        store_id: str,
        target_user_id: Optional[str],
        sender_role: SenderRole,
        viewer_id: str,
    ) -> Store:
        if not target_user_id:
            raise MessageValidationError("A target customer is required")
        store = await self._stores.get_store(store_id)
        if sender_role is SenderRole.OWNER:
            allowed = viewer_id == store.owner_id
        else:
            allowed = viewer_id == target_user_id
        if not allowed:
            self._deny("send", store_id, target_user_id, viewer_id, sender_role=sender_role.value)
        return store

    async def authorize_mark_read(self, message: Message, viewer_id: str) -> None:
        """Only the recipient side may flip a message's read flag."""
        if message.sender_role is SenderRole.CUSTOMER:
            allowed = viewer_id == await self._stores.get_owner(message.store_id)
        else:
            allowed = viewer_id == message.user_id
        if not allowed:
            self._deny("mark_read", message.store_id, message.user_id, viewer_id)

    @staticmethod
    def _deny(action: str, store_id: str, user_id: str, viewer_id: str, **extra) -> None:
        logger.warning(
            "access_denied",
            action=action,
            store_id=store_id,
            user_id=user_id,
            viewer_id=viewer_id,
            **extra,
        )
        raise ForbiddenError(f"Viewer {viewer_id} may not {action.replace('_', ' ')} this thread")
