"""
Outbound messaging channel (WhatsApp-style HTTP API).
"""

import logging
from typing import Any, Dict, Optional

import httpx

from app.errors import ConfigurationError, TransientExternalError

logger = logging.getLogger(__name__)


class WhatsAppClient:
    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url)

    def send_text(self, to: str, body: str) -> None:
        if not self.configured:
            raise ConfigurationError("WHATSAPP_API_URL is not configured.")

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload: Dict[str, Any] = {
            "to": to,
            "type": "text",
            "text": {"body": body},
        }

        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(f"{self.api_url}/messages", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send message to {to}: {e}")
            raise TransientExternalError("Message delivery failed") from e

        logger.info(f"Message sent to {to}")
