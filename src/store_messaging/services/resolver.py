"""Thread identity and the viewer's relationship to a message."""

from dataclasses import dataclass

from ..domain.models import Message, SenderRole, ThreadKey, Viewer


@dataclass(frozen=True)
class ThreadResolution:
    thread_key: ThreadKey
    viewer_is_owner: bool
    message_is_from_viewer: bool

    @property
    def viewer_role(self) -> SenderRole:
        return SenderRole.OWNER if self.viewer_is_owner else SenderRole.CUSTOMER


def resolve_thread(message: Message, viewer: Viewer) -> ThreadResolution:
    """Compute the thread key and how the viewer relates to ``message``.

    Pure. Visibility is not checked here; callers filter through the access
    policy first.
    """
    viewer_is_owner = viewer.owns(message.store_id)
    if viewer_is_owner:
        from_viewer = message.sender_role is SenderRole.OWNER
    else:
        from_viewer = (
            message.sender_role is SenderRole.CUSTOMER
            and message.user_id == viewer.viewer_id
        )
    return ThreadResolution(
        thread_key=message.thread_key,
        viewer_is_owner=viewer_is_owner,
        message_is_from_viewer=from_viewer,
    )


def is_unread_for(message: Message, resolution: ThreadResolution) -> bool:
    """Unread and authored by the other party."""
    return not message.is_read and message.sender_role is resolution.viewer_role.other
