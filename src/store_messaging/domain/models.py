"""Domain models for store messaging."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, NamedTuple, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SenderRole(str, Enum):
    """Which side of a thread authored a message."""

    CUSTOMER = "customer"
    OWNER = "owner"

    @property
    def other(self) -> "SenderRole":
        return SenderRole.OWNER if self is SenderRole.CUSTOMER else SenderRole.CUSTOMER


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class ThreadKey(NamedTuple):
    """A thread is one (store, customer) pair."""

    store_id: str
    user_id: str


class Message(BaseModel):
    """Message model.

    ``user_id`` always names the customer side of the thread, also for
    owner-authored replies.
    """

    id: UUID = Field(default_factory=uuid4)
    store_id: str
    user_id: str
    sender_role: SenderRole
    body: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    is_read: bool = False

    @property
    def thread_key(self) -> ThreadKey:
        return ThreadKey(self.store_id, self.user_id)


class Store(BaseModel):
    """Store ownership record, owned by the surrounding directory."""

    id: str
    name: str
    owner_id: str


@dataclass(frozen=True)
class Viewer:
    """Identity on whose behalf a read is performed."""

    viewer_id: str
    owned_store_ids: FrozenSet[str] = field(default_factory=frozenset)

    def owns(self, store_id: str) -> bool:
        return store_id in self.owned_store_ids


class ConversationSummary(BaseModel):
    """One row per thread visible to a viewer."""

    store_id: str
    store_name: str
    customer_id: str
    counterpart_id: str
    counterpart_name: str
    last_message_id: UUID
    last_message: str
    last_message_time: datetime
    unread_count: int = 0
    is_owner_view: bool
    last_sender_is_viewer: bool


class ChangeEvent(BaseModel):
    """Notification that a store's message log changed.

    Only a hint: subscribers re-read the log instead of trusting the fields.
    """

    store_id: str
    kind: ChangeKind
    message_id: Optional[UUID] = None
    user_id: Optional[str] = None
