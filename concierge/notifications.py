"""SMS notifications through Twilio."""

import asyncio
from typing import Optional

from twilio.rest import Client

from concierge.config import config
from concierge.errors import NotificationError
from concierge.logging_config import get_logger
from concierge.models import RecommendationResponse
from concierge.phone import normalize_phone_to_e164

logger = get_logger(__name__)

SMS_MAX_CHARS = 1500


def format_recommendations_sms(response: RecommendationResponse) -> str:
    if not response.recommendations:
        return response.overall_recommendation[:SMS_MAX_CHARS]

    lines = ["Your provider recommendations are ready:"]
    for rank, rec in enumerate(response.recommendations, start=1):
        line = f"{rank}. {rec.provider_name} ({round(rec.score)}/100)"
        if rec.earliest_availability:
            line += f" - {rec.earliest_availability}"
        if rec.phone:
            line += f" {rec.phone}"
        lines.append(line)
    return "\n".join(lines)[:SMS_MAX_CHARS]


class SmsNotifier:
    """Sends text messages. Without Twilio credentials every send is a logged no-op."""

    def __init__(self, client: Optional[Client] = None, from_number: Optional[str] = None):
        self.client = client
        self.from_number = from_number

    @classmethod
    def from_config(cls) -> "SmsNotifier":
        if not config.has_twilio_config():
            return cls()
        return cls(
            client=Client(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN),
            from_number=config.TWILIO_PHONE_NUMBER,
        )

    @property
    def enabled(self) -> bool:
        return self.client is not None and bool(self.from_number)

    async def send(self, to: str, body: str) -> Optional[str]:
        """
        Send one SMS. Returns the message SID, or None when sending is skipped.

        Raises:
            NotificationError: Twilio rejected the message or could not be reached
        """
        if not self.enabled:
            logger.info("sms_skipped", reason="twilio_not_configured")
            return None

        number = normalize_phone_to_e164(to)
        if not number:
            logger.warning("sms_skipped", reason="invalid_phone", to=to)
            return None

        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                to=number,
                from_=self.from_number,
                body=body,
            )
        except Exception as e:
            logger.error("sms_failed", to=number, error=str(e))
            raise NotificationError(f"SMS to {number} failed: {e}") from e

        logger.info("sms_sent", to=number, sid=message.sid)
        return message.sid

    async def notify_recommendations(self, to: str, response: RecommendationResponse) -> Optional[str]:
        return await self.send(to, format_recommendations_sms(response))
