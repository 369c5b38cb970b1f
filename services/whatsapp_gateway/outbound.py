from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from app.core.logging import logger
from app.errors import Unavailable


@dataclass
class DeliveryResult:
    mode: str
    message_id: Optional[str]
    payload: Dict[str, object]


class WhatsAppDispatcher:
    """Messaging dispatcher backed by the WhatsApp Cloud API.

    One-time codes go out as an authentication template and must reach the
    caller as a retryable failure when delivery breaks. Freeform text is
    best-effort.
    """

    def __init__(
        self,
        api_url: str,
        phone_id: str,
        api_key: str,
        otp_template: str = "otp_verification",
        language: str = "en",
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        self.endpoint = f"{api_url.rstrip('/')}/{phone_id}/messages"
        self.otp_template = otp_template
        self.language = language
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        self.deliveries: List[DeliveryResult] = []

    def send_challenge(self, phone: str, code: str) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "to": phone.lstrip("+"),
            "type": "template",
            "template": {
                "name": self.otp_template,
                "language": {"code": self.language},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": code}]},
                    {
                        "type": "button",
                        "sub_type": "url",
                        "index": "0",
                        "parameters": [{"type": "text", "text": code}],
                    },
                ],
            },
        }
        try:
            message_id = self._post(payload)
        except httpx.HTTPError as exc:
            logger.error("WhatsApp challenge delivery failed: %s", exc)
            raise Unavailable("Failed to send verification code") from exc
        self.deliveries.append(DeliveryResult(mode="TEMPLATE", message_id=message_id, payload={"to": payload["to"]}))
        return message_id

    def send_freeform(self, phone: str, text: str) -> None:
        payload = {
            "messaging_product": "whatsapp",
            "to": phone.lstrip("+"),
            "type": "text",
            "text": {"body": text},
        }
        try:
            message_id = self._post(payload)
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp freeform delivery failed: %s", exc)
            return
        self.deliveries.append(DeliveryResult(mode="FREEFORM", message_id=message_id, payload=payload))

    def close(self) -> None:
        self.client.close()

    def _post(self, payload: Dict[str, object]) -> str:
        response = self.client.post(self.endpoint, json=payload, headers=self.headers)
        response.raise_for_status()
        body = response.json()
        messages = body.get("messages") or [{}]
        return messages[0].get("id", "")
