"""
WhatsApp Service
WhatsApp Cloud API messaging and webhook parsing
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from recete.config import settings
from recete.models.conversation import InboundMessage

logger = logging.getLogger(__name__)


class WhatsAppService:
    """Service for WhatsApp Cloud API messaging"""

    def __init__(self, base_url: Optional[str] = None, access_token: Optional[str] = None):
        """
        Initialize WhatsApp Service

        Args:
            base_url: Graph API base URL (default: settings.WHATSAPP_API_URL)
            access_token: Default access token when an integration has none
        """
        self.base_url = (base_url or settings.WHATSAPP_API_URL).rstrip("/")
        self.access_token = access_token or settings.WHATSAPP_ACCESS_TOKEN
        self.timeout = 30.0  # 30 seconds timeout

        logger.info(f"WhatsApp Service initialized with base URL: {self.base_url}")

    def _get_headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        token = access_token or self.access_token
        if not token:
            raise RuntimeError("WhatsApp access token is not configured")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def verify_webhook(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Return the challenge when the subscription request carries our verify token."""
        if mode == "subscribe" and token and token == settings.WHATSAPP_VERIFY_TOKEN:
            return challenge
        return None

    @staticmethod
    def parse_webhook(payload: Dict[str, Any]) -> List[InboundMessage]:
        """
        Extract inbound text messages from a Cloud API webhook payload

        Status updates and non-text messages are ignored. Phones are
        returned with a leading "+".
        """
        messages: List[InboundMessage] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
                if not phone_number_id:
                    continue

                names = {
                    contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                    for contact in value.get("contacts") or []
                }

                for message in value.get("messages") or []:
                    if message.get("type") != "text":
                        continue
                    body = ((message.get("text") or {}).get("body") or "").strip()
                    sender = message.get("from")
                    if not body or not sender:
                        continue
                    messages.append(InboundMessage(
                        phone=sender if sender.startswith("+") else f"+{sender}",
                        text=body,
                        phone_number_id=phone_number_id,
                        message_id=message.get("id"),
                        sender_name=names.get(sender),
                        timestamp=message.get("timestamp")
                    ))
        return messages

    async def send_text(
        self,
        phone_number_id: str,
        to: str,
        text: str,
        access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a text message

        Args:
            phone_number_id: Sending business phone number id
            to: Recipient phone (E.164, "+" optional)
            text: Message body
            access_token: Integration token (falls back to the default token)

        Returns:
            Cloud API response JSON

        Raises:
            Exception: If the message could not be sent
        """
        url = f"{self.base_url}/{phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"body": text},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._get_headers(access_token))
                response.raise_for_status()
                logger.info(f"✅ WhatsApp message sent via {phone_number_id}")
                return response.json()

        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}: {e.response.text}"
            logger.error(f"Failed to send WhatsApp message via {phone_number_id}: {error_msg}")
            raise Exception(f"Send message failed: {error_msg}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send WhatsApp message via {phone_number_id}: {e}")
            raise Exception(f"Send message failed: {str(e)}")
