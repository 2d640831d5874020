"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set
from uuid import UUID

from ..domain.models import Message, SenderRole, Store


class MessageRepository(ABC):
    """Append-only message log keyed by store and customer."""

    @abstractmethod
    async def insert_message(
        self, store_id: str, user_id: str, sender_role: SenderRole, body: str
    ) -> Message:
        """Append a message; assigns id and ``created_at``."""
        pass

    @abstractmethod
    async def list_messages(self, store_id: str, user_id: Optional[str] = None) -> List[Message]:
        """Messages of a store, or of one thread, ordered by ``(created_at, id)``."""
        pass

    @abstractmethod
    async def list_messages_for_viewer(
        self, viewer_id: str, owned_store_ids: Iterable[str]
    ) -> List[Message]:
        """Messages where the viewer is the customer or owns the store."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Message:
        """Retrieve a message by ID."""
        pass

    @abstractmethod
    async def mark_read(self, message_id: UUID) -> Message:
        """Flip ``is_read`` on exactly one message."""
        pass

    @abstractmethod
    async def thread_exists(self, store_id: str, user_id: str) -> bool:
        pass


class StoreDirectory(ABC):
    """Read-only view of store ownership."""

    @abstractmethod
    async def get_store(self, store_id: str) -> Store:
        pass

    async def get_owner(self, store_id: str) -> str:
        return (await self.get_store(store_id)).owner_id

    @abstractmethod
    async def owned_store_ids(self, user_id: str) -> Set[str]:
        pass

    @abstractmethod
    async def get_display_name(self, user_id: str) -> Optional[str]:
        pass
