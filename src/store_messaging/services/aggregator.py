"""Fold the message log into one summary row per thread for a viewer."""

from contextlib import contextmanager
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from ..domain.errors import ForbiddenError, MessagingError, NotFoundError, TransientError
from ..domain.models import ConversationSummary, Message, ThreadKey, Viewer
from ..repositories.base import MessageRepository, StoreDirectory
from .access import can_view
from .resolver import ThreadResolution, is_unread_for, resolve_thread

logger = structlog.get_logger()

UNKNOWN_STORE = "Unknown Store"


def latest_first(messages: Iterable[Message]) -> List[Message]:
    """Sort by ``created_at`` descending, ties by id ascending."""
    by_id = sorted(messages, key=lambda m: str(m.id))
    return sorted(by_id, key=lambda m: m.created_at, reverse=True)


def aggregate(
    messages: Iterable[Message],
    viewer: Viewer,
    store_names: Optional[Mapping[str, str]] = None,
    display_names: Optional[Mapping[str, str]] = None,
) -> List[ConversationSummary]:
    """Reduce messages to conversation summaries, most recent thread first.

    The first message met for a thread (in latest-first order) seeds its
    summary. Unread counts only include messages from the other party.
    A message the viewer may not see is an upstream bug and raises
    ``ForbiddenError`` instead of being skipped.
    """
    store_names = store_names or {}
    display_names = display_names or {}
    seeds: Dict[ThreadKey, Tuple[Message, ThreadResolution]] = {}
    unread: Dict[ThreadKey, int] = {}

    for message in latest_first(messages):
        if not can_view(message, viewer):
            raise ForbiddenError(
                f"Message {message.id} is outside the threads of viewer {viewer.viewer_id}"
            )
        resolution = resolve_thread(message, viewer)
        key = resolution.thread_key
        if key not in seeds:
            seeds[key] = (message, resolution)
            unread[key] = 0
        if is_unread_for(message, resolution):
            unread[key] += 1

    summaries = []
    for key, (message, resolution) in seeds.items():
        store_name = store_names.get(key.store_id, UNKNOWN_STORE)
        if resolution.viewer_is_owner:
            counterpart_id = key.user_id
            counterpart_name = display_names.get(key.user_id) or key.user_id
        else:
            counterpart_id = key.store_id
            counterpart_name = store_name
        summaries.append(
            ConversationSummary(
                store_id=key.store_id,
                store_name=store_name,
                customer_id=key.user_id,
                counterpart_id=counterpart_id,
                counterpart_name=counterpart_name,
                last_message_id=message.id,
                last_message=message.body,
                last_message_time=message.created_at,
                unread_count=unread[key],
                is_owner_view=resolution.viewer_is_owner,
                last_sender_is_viewer=resolution.message_is_from_viewer,
            )
        )
    return summaries


@contextmanager
def _unavailable_as_transient(event: str, detail: str, **context):
    """Re-raise unexpected backend failures as ``TransientError``."""
    try:
        yield
    except MessagingError:
        logger.warning(event, **context)
        raise
    except Exception as e:
        logger.error(event, error=str(e), **context)
        raise TransientError(detail) from e


class ConversationAggregator:
    """Fetches a viewer's messages and aggregates them into summaries."""

    def __init__(self, messages: MessageRepository, stores: StoreDirectory) -> None:
        self._messages = messages
        self._stores = stores

    async def viewer(self, viewer_id: str) -> Viewer:
        with _unavailable_as_transient(
            "store_directory_failed", "Store directory unavailable", viewer_id=viewer_id
        ):
            owned = await self._stores.owned_store_ids(viewer_id)
        return Viewer(viewer_id=viewer_id, owned_store_ids=frozenset(owned))

    async def get_conversations(self, viewer_id: str) -> List[ConversationSummary]:
        viewer = await self.viewer(viewer_id)
        with _unavailable_as_transient(
            "conversation_fetch_failed", "Message store unavailable", viewer_id=viewer_id
        ):
            messages = await self._messages.list_messages_for_viewer(
                viewer_id, viewer.owned_store_ids
            )

        with _unavailable_as_transient(
            "store_directory_failed", "Store directory unavailable", viewer_id=viewer_id
        ):
            store_names = await self._store_names({m.store_id for m in messages})
            owner_side = {m.user_id for m in messages if viewer.owns(m.store_id)}
            display_names = await self._display_names(owner_side)

        summaries = aggregate(messages, viewer, store_names, display_names)
        logger.info(
            "conversations_aggregated",
            viewer_id=viewer_id,
            messages=len(messages),
            threads=len(summaries),
        )
        return summaries

    async def _store_names(self, store_ids: Iterable[str]) -> Dict[str, str]:
        names = {}
        for store_id in store_ids:
            try:
                names[store_id] = (await self._stores.get_store(store_id)).name
            except NotFoundError:
                names[store_id] = UNKNOWN_STORE
        return names

    async def _display_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        names = {}
        for user_id in user_ids:
            name = await self._stores.get_display_name(user_id)
            if name:
                names[user_id] = name
        return names
