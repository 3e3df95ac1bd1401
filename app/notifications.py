from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_EMAIL_FROM_ADDRESS = "Bank Security <security@example.com>"
DEFAULT_EMAIL_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    provider: str
    message_id: str | None = None
    error: str | None = None


class MessageSender(Protocol):
    def send(self, destination: str, subject: str, body: str) -> DeliveryResult: ...


@dataclass(frozen=True)
class EmailSettings:
    resend_api_key: str
    from_address: str = DEFAULT_EMAIL_FROM_ADDRESS
    timeout_seconds: float = DEFAULT_EMAIL_TIMEOUT_SECONDS

    @property
    def resend_enabled(self) -> bool:
        return self.resend_api_key.startswith("re_")

    @classmethod
    def from_env(cls) -> "EmailSettings":
        return cls(
            resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
            from_address=os.getenv("EMAIL_FROM_ADDRESS", DEFAULT_EMAIL_FROM_ADDRESS).strip()
            or DEFAULT_EMAIL_FROM_ADDRESS,
        )


class ResendEmailSender:
    def __init__(self, settings: EmailSettings, http_client: httpx.Client) -> None:
        self._settings = settings
        self._http_client = http_client

    def send(self, destination: str, subject: str, body: str) -> DeliveryResult:
        try:
            response = self._http_client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self._settings.resend_api_key}"},
                json={
                    "from": self._settings.from_address,
                    "to": [destination],
                    "subject": subject,
                    "html": body,
                },
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("email_delivery_failed provider=RESEND error=%s", str(exc))
            return DeliveryResult(success=False, provider="RESEND", error=str(exc))

        return DeliveryResult(success=True, provider="RESEND", message_id=payload.get("id"))


class SimulatedMessageSender:
    """Logs deliveries instead of sending them; used when no provider is configured."""

    def send(self, destination: str, subject: str, body: str) -> DeliveryResult:
        logger.warning("email_delivery_simulated destination=%s subject=%s", destination, subject)
        return DeliveryResult(success=True, provider="SIMULATION", message_id="simulated-id")


def build_message_sender(settings: EmailSettings, http_client: httpx.Client) -> MessageSender:
    if settings.resend_enabled:
        return ResendEmailSender(settings, http_client)
    logger.warning("email_provider_not_configured falling_back_to=SIMULATION")
    return SimulatedMessageSender()
