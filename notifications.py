"""Outbound patient notifications.

The queue never talks to Twilio directly.  After a mutation commits, the
service layer hands a :class:`TurnNotification` to a notifier; the Redis
notifier pushes it onto a list that ``notification_worker.py`` drains and
delivers over WhatsApp or SMS.  Dispatch is fire-and-forget: a failure is
logged and never reaches the caller that changed the queue.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import redis

from models import NotificationChannel, NotificationEventType, Patient, Turn, TurnStatus, utcnow

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
NOTIFICATION_LIST = os.getenv("NOTIFICATION_LIST", "clinic:notifications")

# Status entered -> event sent to the patient.
STATUS_EVENTS: Dict[TurnStatus, NotificationEventType] = {
    TurnStatus.WAITING: NotificationEventType.TURN_CHECKED_IN,
    TurnStatus.NEXT: NotificationEventType.TURN_NEXT,
    TurnStatus.IN_CONSULTATION: NotificationEventType.TURN_IN_CONSULTATION,
    TurnStatus.DONE: NotificationEventType.TURN_DONE,
    TurnStatus.CANCELLED: NotificationEventType.TURN_CANCELLED,
    TurnStatus.SKIPPED: NotificationEventType.TURN_SKIPPED,
}


@dataclass
class TurnNotification:
    event_type: NotificationEventType
    clinic_id: str
    turn_id: str
    patient_id: str
    recipient: str
    channel: NotificationChannel
    queue_position: Optional[int] = None
    message: str = ""
    created_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_json(self) -> str:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["channel"] = self.channel.value
        return json.dumps(data)


def build_message(event_type: NotificationEventType, position: Optional[int]) -> str:
    ticket = f"#{position}" if position is not None else "your turn"
    if event_type == NotificationEventType.TURN_REGISTERED:
        return f"You're registered in today's queue. Your number is {ticket}."
    if event_type == NotificationEventType.TURN_CHECKED_IN:
        return f"You're checked in. Your number is {ticket}; we'll message you when you're next."
    if event_type == NotificationEventType.TURN_NEXT:
        return f"*YOU'RE NEXT!* Number {ticket}, please head to the reception desk now."
    if event_type == NotificationEventType.TURN_IN_CONSULTATION:
        return f"Number {ticket}: your consultation has started."
    if event_type == NotificationEventType.TURN_DONE:
        return "Your visit is complete. Thank you for coming!"
    if event_type == NotificationEventType.TURN_CANCELLED:
        return f"Your turn {ticket} has been cancelled."
    return f"Your turn {ticket} was skipped. Please speak to reception to rejoin the queue."


def notification_for(
    turn: Turn, patient: Patient, event_type: NotificationEventType
) -> TurnNotification:
    return TurnNotification(
        event_type=event_type,
        clinic_id=turn.clinic_id,
        turn_id=turn.id,
        patient_id=patient.id,
        recipient=patient.phone_number,
        channel=NotificationChannel(patient.channel),
        queue_position=turn.queue_position,
        message=build_message(event_type, turn.queue_position),
    )


class Notifier:
    """Interface for notification dispatchers."""

    def notify(self, notification: TurnNotification) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def notify(self, notification: TurnNotification) -> None:
        logger.debug(
            "Notification %s for turn %s dropped (no dispatcher configured)",
            notification.event_type.value,
            notification.turn_id,
        )


class RedisNotifier(Notifier):
    """Queue notifications on a Redis list for the worker to send."""

    def __init__(self, client: "redis.Redis", list_key: str = NOTIFICATION_LIST) -> None:
        self.client = client
        self.list_key = list_key

    def notify(self, notification: TurnNotification) -> None:
        self.client.lpush(self.list_key, notification.to_json())
        logger.info(
            "Queued %s notification for turn %s",
            notification.event_type.value,
            notification.turn_id,
        )


def dispatch(notifier: Optional[Notifier], notification: TurnNotification) -> bool:
    """Send ``notification`` best-effort; returns whether it was accepted."""
    if notifier is None:
        return False
    try:
        notifier.notify(notification)
        return True
    except Exception:
        logger.warning(
            "Failed to dispatch %s notification for turn %s",
            notification.event_type.value,
            notification.turn_id,
            exc_info=True,
        )
        return False


_redis_client: Optional["redis.Redis"] = None


def get_redis() -> Optional["redis.Redis"]:
    """Get Redis client if configured."""
    global _redis_client
    if not REDIS_URL:
        return None
    if _redis_client is None:
        try:
            client = redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError:
            logger.warning("Redis connection failed; notifications disabled", exc_info=True)
            return None
        _redis_client = client
    return _redis_client


def get_notifier() -> Notifier:
    """FastAPI dependency returning the configured notifier."""
    client = get_redis()
    if client is None:
        return NullNotifier()
    return RedisNotifier(client)


def describe_backend() -> Dict[str, Any]:
    return {"redis": "connected" if get_redis() else "unavailable", "list": NOTIFICATION_LIST}
