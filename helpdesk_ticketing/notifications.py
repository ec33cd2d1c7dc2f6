"""Notification dispatch for ticket domain events.

Events travel with each TicketMutation. After the mutation has been
persisted the host hands them to ``NotificationDispatcher.dispatch`` (the
REST router does this from a background task). Delivery is fire-and-forget:
a failing channel is logged and never reaches the caller.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from helpdesk_ticketing.models import Notification, TicketEvent, TicketEventType
from helpdesk_ticketing.ports import NotificationPort

logger = logging.getLogger(__name__)

PreferenceCheck = Callable[[str, TicketEventType, str], bool]

EVENT_TITLES: Dict[TicketEventType, str] = {
    TicketEventType.ticket_created: "Ticket created",
    TicketEventType.ticket_assigned: "Ticket assigned",
    TicketEventType.ticket_closed: "Ticket closed",
    TicketEventType.ticket_reopened: "Ticket reopened",
    TicketEventType.document_added: "Document added",
    TicketEventType.document_removed: "Document removed",
    TicketEventType.priority_changed: "Priority changed",
    TicketEventType.category_changed: "Category changed",
    TicketEventType.comment_added: "New comment",
    TicketEventType.ticket_deleted: "Ticket deleted",
}

SILENT_EVENTS = frozenset(
    {TicketEventType.document_added, TicketEventType.document_removed}
)


def recipients_for(event: TicketEvent) -> List[str]:
    """Users to notify for an event.

    - created: the creator
    - assigned: the new assignee
    - deleted: the assignee and the creator, unless they did it
    - document added or removed: nobody
    - everything else: the creator unless they acted, and the assignee
      unless they acted or are also the creator
    """
    creator = event.payload.get("created_by_id")
    assignee = event.payload.get("assigned_to_id")
    actor = event.actor_id

    if event.type == TicketEventType.ticket_created:
        candidates = [creator]
    elif event.type == TicketEventType.ticket_assigned:
        candidates = [assignee]
    elif event.type in SILENT_EVENTS:
        candidates = []
    elif event.type == TicketEventType.ticket_deleted:
        candidates = [
            assignee if assignee != actor else None,
            creator if creator != actor else None,
        ]
    else:
        candidates = [
            creator if creator != actor else None,
            assignee if assignee not in (actor, creator) else None,
        ]

    return list(dict.fromkeys(c for c in candidates if c))


def _message(event: TicketEvent) -> str:
    title = event.payload.get("title", event.ticket_id)
    if event.type == TicketEventType.ticket_created:
        return f'Your ticket "{title}" has been created'
    if event.type == TicketEventType.ticket_assigned:
        return f'Ticket "{title}" has been assigned to you'
    if event.type == TicketEventType.ticket_deleted:
        return f'Ticket "{title}" has been deleted'
    if event.type == TicketEventType.comment_added:
        return f'New comment on ticket "{title}"'
    if event.type == TicketEventType.priority_changed:
        return f'Priority of ticket "{title}" is now {event.payload.get("priority")}'
    return f'Ticket "{title}": {EVENT_TITLES[event.type].lower()}'


def build_notifications(event: TicketEvent) -> List[Notification]:
    link = None if event.type == TicketEventType.ticket_deleted else f"/tickets/{event.ticket_id}"
    return [
        Notification(
            user_id=user_id,
            title=EVENT_TITLES[event.type],
            message=_message(event),
            link=link,
        )
        for user_id in recipients_for(event)
    ]


class NotificationPreferences:
    """Per-user, per-event, per-channel switches. Everything defaults to on."""

    def __init__(self, overrides: Optional[Dict[Tuple[str, str, str], bool]] = None):
        self._overrides: Dict[Tuple[str, str, str], bool] = dict(overrides or {})

    def set(self, user_id: str, event_type: TicketEventType, channel: str, enabled: bool) -> None:
        self._overrides[(user_id, TicketEventType(event_type).value, channel)] = enabled

    def __call__(self, user_id: str, event_type: TicketEventType, channel: str) -> bool:
        return self._overrides.get((user_id, TicketEventType(event_type).value, channel), True)


class ChannelNotificationPort:
    """NotificationPort for one delivery channel ("email", "in_app", ...).

    Builds the notifications for an event, drops those the recipient has
    switched off, and hands the rest to ``deliver``.
    """

    def __init__(
        self,
        channel: str,
        deliver: Callable[[Notification], None],
        preferences: Optional[PreferenceCheck] = None,
    ):
        self.channel = channel
        self.deliver = deliver
        self.preferences = preferences

    def emit(self, event: TicketEvent) -> None:
        for notification in build_notifications(event):
            if self.preferences is not None and not self.preferences(
                notification.user_id, event.type, self.channel
            ):
                logger.debug(
                    "%s notification for %s suppressed by preferences",
                    self.channel,
                    notification.user_id,
                )
                continue
            self.deliver(notification)


class NotificationDispatcher:
    """Fan events out to every configured port. Never raises."""

    def __init__(self, ports: Sequence[NotificationPort] = (), enabled: bool = True):
        self.ports = list(ports)
        self.enabled = enabled

    def dispatch(self, events: Iterable[TicketEvent]) -> None:
        if not self.enabled:
            return
        for event in events:
            for port in self.ports:
                try:
                    port.emit(event)
                except Exception:
                    logger.exception(
                        "notification port %s failed for %s on ticket %s",
                        type(port).__name__,
                        event.type.value,
                        event.ticket_id,
                    )
