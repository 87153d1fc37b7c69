"""Notification service client (email and SMS)."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from walletadapter.clients.base import ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class EmailUser:
    email: str
    name: str = ""


@dataclass
class EmailRequest:
    """Either a templated email (``template_id`` + ``params``) or a plain one (``content``)."""

    subject: str
    recipients: list[EmailUser]
    template_id: Optional[str] = None
    params: dict = field(default_factory=dict)
    content: str = ""

    def to_payload(self) -> dict:
        payload = {
            "subject": self.subject,
            "to": [{"email": r.email, "name": r.name} for r in self.recipients],
        }
        if self.template_id:
            payload["templateId"] = self.template_id
            payload["params"] = self.params
        else:
            payload["content"] = self.content
        return payload


@dataclass
class SmsRequest:
    message: str
    phone_number: str
    sms_type: str = "OTHERS"
    country: str = "NG"

    def to_payload(self) -> dict:
        return {
            "message": self.message,
            "phoneNumber": self.phone_number,
            "smsType": self.sms_type,
            "country": self.country,
        }


class NotifierClient(ServiceClient):
    """Client for the notification service."""

    service_name = "notifier"

    async def send_email(self, request: EmailRequest) -> None:
        await self._request("POST", "/email/send", json=request.to_payload())
        logger.info(f"Email '{request.subject}' sent to {len(request.recipients)} recipient(s)")

    async def send_sms(self, request: SmsRequest) -> None:
        await self._request("POST", "/sms/send", json=request.to_payload())
        logger.info(f"SMS sent to {request.phone_number}")
