"""In-memory repository implementations."""

import json
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID

import structlog

from ..domain.errors import MessageValidationError, NotFoundError
from ..domain.models import ChangeEvent, ChangeKind, Message, SenderRole, Store, utcnow
from ..services.notifier import RealtimeNotifier
from .base import MessageRepository, StoreDirectory

logger = structlog.get_logger()

_ONE_TICK = timedelta(microseconds=1)


def _log_order(message: Message):
    return (message.created_at, str(message.id))


class InMemoryMessageRepository(MessageRepository):
    """Thread-safe in-memory message log.

    Every committed insert and read-flag change is published to the notifier,
    after the lock is released.
    """

    def __init__(
        self, notifier: Optional[RealtimeNotifier] = None, max_body_length: int = 4000
    ) -> None:
        self._notifier = notifier
        self._max_body_length = max_body_length
        self._messages: Dict[UUID, Message] = {}
        self._threads: Dict[tuple, List[UUID]] = {}
        self._last_created_at: Optional[datetime] = None
        self._lock = Lock()
        logger.info("repository_initialized")

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + _ONE_TICK
        self._last_created_at = now
        return now

    async def insert_message(
        self, store_id: str, user_id: str, sender_role: SenderRole, body: str
    ) -> Message:
        text = (body or "").strip()
        if not text:
            raise MessageValidationError("Message body cannot be empty")
        if len(text) > self._max_body_length:
            raise MessageValidationError(
                f"Message body exceeds {self._max_body_length} characters"
            )
        if not store_id or not user_id:
            raise MessageValidationError("Message requires a store and a customer")
        try:
            role = SenderRole(sender_role)
        except ValueError:
            raise MessageValidationError(f"Unknown sender role: {sender_role!r}")

        with self._lock:
            created_at = self._next_timestamp()
            message = Message(
                store_id=store_id,
                user_id=user_id,
                sender_role=role,
                body=text,
                created_at=created_at,
                updated_at=created_at,
            )
            self._messages[message.id] = message
            self._threads.setdefault(message.thread_key, []).append(message.id)

        logger.info(
            "message_added",
            store_id=store_id,
            user_id=user_id,
            sender_role=message.sender_role.value,
            message_id=str(message.id),
        )
        self._publish(message, ChangeKind.INSERT)
        return message

    async def list_messages(self, store_id: str, user_id: Optional[str] = None) -> List[Message]:
        with self._lock:
            if user_id is not None:
                ids = self._threads.get((store_id, user_id), [])
                messages = [self._messages[i] for i in ids]
            else:
                messages = [m for m in self._messages.values() if m.store_id == store_id]
            return [m.model_copy() for m in sorted(messages, key=_log_order)]

    async def list_messages_for_viewer(
        self, viewer_id: str, owned_store_ids: Iterable[str]
    ) -> List[Message]:
        owned = set(owned_store_ids)
        with self._lock:
            messages = [
                m
                for m in self._messages.values()
                if m.user_id == viewer_id or m.store_id in owned
            ]
            return [m.model_copy() for m in sorted(messages, key=_log_order)]

    async def get_message(self, message_id: UUID) -> Message:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                logger.warning("message_not_found", message_id=str(message_id))
                raise NotFoundError(f"Message {message_id} not found")
            return message.model_copy()

    async def mark_read(self, message_id: UUID) -> Message:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                logger.warning("message_not_found", message_id=str(message_id))
                raise NotFoundError(f"Message {message_id} not found")
            changed = not message.is_read
            if changed:
                message = message.model_copy(update={"is_read": True, "updated_at": utcnow()})
                self._messages[message_id] = message
            result = message.model_copy()

        if changed:
            logger.info("message_marked_read", message_id=str(message_id))
            self._publish(result, ChangeKind.UPDATE)
        return result

    async def thread_exists(self, store_id: str, user_id: str) -> bool:
        with self._lock:
            return bool(self._threads.get((store_id, user_id)))

    def _publish(self, message: Message, kind: ChangeKind) -> None:
        if self._notifier is None:
            return
        self._notifier.publish(
            ChangeEvent(
                store_id=message.store_id,
                kind=kind,
                message_id=message.id,
                user_id=message.user_id,
            )
        )


class InMemoryStoreDirectory(StoreDirectory):
    """Store ownership and display names held in memory."""

    def __init__(self) -> None:
        self._stores: Dict[str, Store] = {}
        self._display_names: Dict[str, str] = {}
        self._lock = Lock()

    def add_store(self, store_id: str, name: str, owner_id: str) -> Store:
        store = Store(id=store_id, name=name, owner_id=owner_id)
        with self._lock:
            self._stores[store_id] = store
        logger.info("store_registered", store_id=store_id, owner_id=owner_id)
        return store

    def load_json(self, path: str) -> int:
        """Load ``{"stores": [...], "display_names": {...}}`` from a file."""
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        stores = data.get("stores", [])
        for entry in stores:
            self.add_store(entry["id"], entry["name"], entry["owner_id"])
        for user_id, name in data.get("display_names", {}).items():
            self.set_display_name(user_id, name)
        return len(stores)

    def set_display_name(self, user_id: str, name: str) -> None:
        with self._lock:
            self._display_names[user_id] = name

    async def get_store(self, store_id: str) -> Store:
        with self._lock:
            store = self._stores.get(store_id)
        if store is None:
            logger.warning("store_not_found", store_id=store_id)
            raise NotFoundError(f"Store {store_id} not found")
        return store

    async def owned_store_ids(self, user_id: str) -> Set[str]:
        with self._lock:
            return {s.id for s in self._stores.values() if s.owner_id == user_id}

    async def get_display_name(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._display_names.get(user_id)
