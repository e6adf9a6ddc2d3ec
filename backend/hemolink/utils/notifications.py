from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from twilio.rest import Client

from ..database import db, settings
from ..schemas.donor import user_key
from .clock import utcnow

SYSTEM = "system"
REQUEST_CREATED = "request_created"
REQUEST_MATCHED = "request_matched"


@dataclass
class SmsNotification:
    to: str
    body: str


def normalize_phone_number(phone: str) -> str:
    """
    Normalize phone number to E.164 format for Twilio.

    Examples:
        "+880-1711-000000" -> "+8801711000000"
        "880 1711 000000" -> "+8801711000000"
    """
    if not phone:
        return phone
    return "+" + re.sub(r"\D", "", phone)


class NotificationService:
    """
    In-app notifications stored in ``notifications``; critical ones also go out by SMS.

    ``notify`` never raises: a failed delivery is logged and reported as ``False`` so the
    state change that triggered it stands.
    """

    def __init__(self, database: AsyncIOMotorDatabase | None = None, sms_client: Optional[Client] = None) -> None:
        database = database if database is not None else db
        self.collection: AsyncIOMotorCollection = database.get_collection("notifications")
        self.users: AsyncIOMotorCollection = database.get_collection("users")
        if sms_client is not None:
            self.client: Optional[Client] = sms_client
        elif not settings.twilio_sid or not settings.twilio_token:
            logger.warning("Twilio credentials missing; SMS notifications will be mocked.")
            self.client = None
        else:
            self.client = Client(settings.twilio_sid, settings.twilio_token)
        self.sender_phone = settings.twilio_phone or "+1234567890"

    async def notify(
        self, user_id: str, type: str, title: str, message: str, data: Optional[Dict[str, Any]] = None
    ) -> bool:
        data = data or {}
        try:
            await self.collection.insert_one(
                {
                    "user_id": str(user_id),
                    "type": type,
                    "title": title,
                    "message": message,
                    "data": data,
                    "priority": data.get("priority", "normal"),
                    "is_read": False,
                    "created_at": utcnow(),
                }
            )
        except Exception as exc:
            logger.warning("Notification to {} failed ({}): {}", user_id, title, exc)
            return False

        if data.get("priority") == "critical":
            await self._sms_user(str(user_id), f"{title}: {message}")
        return True

    async def _sms_user(self, user_id: str, body: str) -> None:
        try:
            user = await self.users.find_one({"_id": user_key(user_id)}, {"phone": 1}) or {}
        except Exception as exc:
            logger.warning("Phone lookup failed for {}: {}", user_id, exc)
            return
        if user.get("phone"):
            await self.send_sms(SmsNotification(to=user["phone"], body=body))

    async def send_sms(self, message: SmsNotification) -> None:
        normalized_phone = normalize_phone_number(message.to)

        if self.client is None:
            logger.info("Mock SMS: {} -> {}", normalized_phone, message.body)
            return
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self.client.messages.create(
                    to=normalized_phone,
                    from_=self.sender_phone,
                    body=message.body,
                ),
            )
            logger.info("SMS sent to {} (normalized from {})", normalized_phone, message.to)
        except Exception as exc:
            logger.warning("SMS delivery failed for {} (normalized: {}): {}", message.to, normalized_phone, exc)


async def deliver(
    notifier: Any, user_id: str, type: str, title: str, message: str, data: Optional[Dict[str, Any]] = None
) -> bool:
    """Send through any notifier without letting a delivery failure escape."""
    if notifier is None:
        return False
    try:
        return bool(await notifier.notify(user_id, type, title, message, data))
    except Exception as exc:
        logger.warning("Notification to {} failed ({}): {}", user_id, title, exc)
        return False
