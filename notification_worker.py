#!/usr/bin/env python3
"""
Patient Notification Worker

Drains the notification list filled by the queue service and delivers each
message over WhatsApp or SMS through Twilio.  Run it as a separate
background process next to the API.

Usage:
    python notification_worker.py

Environment Variables:
    REDIS_URL - Redis connection URL (required)
    NOTIFICATION_LIST - list key shared with the API (default clinic:notifications)
    TWILIO_ACCOUNT_SID - Your Twilio Account SID
    TWILIO_AUTH_TOKEN - Your Twilio Auth Token
    TWILIO_WHATSAPP_NUMBER - sender for WhatsApp (e.g., whatsapp:+14155238886)
    TWILIO_SMS_NUMBER - sender for SMS

Without Twilio credentials the worker runs in simulation mode and only logs
what it would have sent.
"""

import json
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, Optional

import redis
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from models import utcnow

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
NOTIFICATION_LIST = os.getenv("NOTIFICATION_LIST", "clinic:notifications")
LOG_LIST = os.getenv("NOTIFICATION_LOG_LIST", "clinic:notification_logs")
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")
TWILIO_SMS_NUMBER = os.getenv("TWILIO_SMS_NUMBER")


class NotificationWorker:
    def __init__(self, redis_client: Optional["redis.Redis"] = None, twilio_client: Optional[Client] = None):
        self.redis_client = redis_client
        self.twilio_client = twilio_client

    def setup_connections(self) -> bool:
        """Initialize Redis and Twilio connections."""
        if self.redis_client is None:
            try:
                self.redis_client = redis.from_url(REDIS_URL, decode_responses=True)
                self.redis_client.ping()
                logger.info("Connected to Redis: %s", REDIS_URL)
            except redis.RedisError as e:
                logger.error("Failed to connect to Redis: %s", e)
                self.redis_client = None
                return False

        if self.twilio_client is None and TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN:
            self.twilio_client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
            logger.info("Twilio client ready (WhatsApp sender %s)", TWILIO_WHATSAPP_NUMBER)
        elif self.twilio_client is None:
            logger.warning("Twilio not configured - running in simulation mode")
        return True

    def send_message(self, channel: str, to_number: str, message: str) -> bool:
        """Send one message; returns False when Twilio rejects it."""
        if not self.twilio_client:
            logger.info("[SIMULATION] %s to %s: %s", channel, to_number, message[:50])
            return True

        if channel == "WHATSAPP":
            sender = TWILIO_WHATSAPP_NUMBER
            if not to_number.startswith("whatsapp:"):
                to_number = f"whatsapp:{to_number}"
        else:
            sender = TWILIO_SMS_NUMBER

        try:
            message_obj = self.twilio_client.messages.create(from_=sender, body=message, to=to_number)
        except TwilioException as e:
            logger.warning("Failed to send %s to %s: %s", channel, to_number, e)
            return False
        logger.info("%s sent to %s: %s", channel, to_number, message_obj.sid)
        return True

    def process_one(self, raw: str) -> bool:
        """Deliver a single queued notification, re-queueing it once on failure."""
        notification: Dict[str, Any] = json.loads(raw)
        recipient = notification.get("recipient")
        message = notification.get("message")
        if not recipient or not message:
            logger.warning("Invalid notification: %s", notification)
            return False

        timestamp = datetime.now().strftime("%H:%M")
        success = self.send_message(
            notification.get("channel", "WHATSAPP"), recipient, f"{message}\n\n_Sent at {timestamp}_"
        )
        if success:
            self.redis_client.lpush(
                LOG_LIST,
                json.dumps(
                    {
                        "recipient": recipient[-4:],  # Last 4 digits for privacy
                        "event_type": notification.get("event_type"),
                        "turn_id": notification.get("turn_id"),
                        "sent_at": utcnow().isoformat(),
                        "status": "sent",
                    }
                ),
            )
        elif not notification.get("retry"):
            retry = dict(notification, retry=True)
            self.redis_client.lpush(NOTIFICATION_LIST, json.dumps(retry))
        return success

    def process_notifications(self) -> None:
        """Main worker loop."""
        logger.info("Notification worker started - waiting on %s", NOTIFICATION_LIST)
        while True:
            try:
                item = self.redis_client.brpop(NOTIFICATION_LIST, timeout=5)
                if not item:
                    continue
                self.process_one(item[1])
            except KeyboardInterrupt:
                logger.info("Worker stopped by user")
                break
            except (redis.RedisError, ValueError) as e:
                logger.error("Error processing notification: %s", e)
                time.sleep(1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.redis_client.llen(NOTIFICATION_LIST),
            "total_sent": self.redis_client.llen(LOG_LIST),
            "worker_status": "running",
            "last_check": utcnow().isoformat(),
        }


def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    worker = NotificationWorker()
    if not worker.setup_connections():
        logger.error("Cannot start without Redis connection")
        return 1
    worker.process_notifications()
    return 0


if __name__ == "__main__":
    sys.exit(main())
