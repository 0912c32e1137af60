import json
import unittest
from unittest.mock import patch

import httpx

from recete.config import settings
from recete.services.whatsapp_service import WhatsAppService


def webhook_payload(*messages, phone_number_id="pn-1"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "908501112233", "phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": "905551112233", "profile": {"name": "Ayşe"}}],
                    "messages": list(messages),
                },
            }],
        }],
    }


def text_message(body, sender="905551112233", message_id="wamid.1"):
    return {"from": sender, "id": message_id, "timestamp": "1705309200", "type": "text", "text": {"body": body}}


class TestParseWebhook(unittest.TestCase):
    def test_text_message(self):
        messages = WhatsAppService.parse_webhook(webhook_payload(text_message("Merhaba")))
        self.assertEqual(len(messages), 1)
        message = messages[0]
        self.assertEqual(message.phone, "+905551112233")
        self.assertEqual(message.text, "Merhaba")
        self.assertEqual(message.phone_number_id, "pn-1")
        self.assertEqual(message.sender_name, "Ayşe")
        self.assertEqual(message.message_id, "wamid.1")

    def test_non_text_and_status_updates_are_ignored(self):
        image = {"from": "905551112233", "id": "wamid.2", "type": "image", "image": {"id": "media-1"}}
        payload = webhook_payload(image)
        payload["entry"][0]["changes"].append({"value": {"statuses": [{"status": "delivered"}]}})
        self.assertEqual(WhatsAppService.parse_webhook(payload), [])

    def test_blank_body_is_ignored(self):
        self.assertEqual(WhatsAppService.parse_webhook(webhook_payload(text_message("   "))), [])

    def test_empty_payload(self):
        self.assertEqual(WhatsAppService.parse_webhook({}), [])


class TestVerifyWebhook(unittest.TestCase):
    def test_challenge_is_echoed_for_matching_token(self):
        with patch.object(settings, "WHATSAPP_VERIFY_TOKEN", "verify-me"):
            self.assertEqual(WhatsAppService.verify_webhook("subscribe", "verify-me", "12345"), "12345")
            self.assertIsNone(WhatsAppService.verify_webhook("subscribe", "wrong", "12345"))
            self.assertIsNone(WhatsAppService.verify_webhook("unsubscribe", "verify-me", "12345"))

    def test_unconfigured_token_never_verifies(self):
        with patch.object(settings, "WHATSAPP_VERIFY_TOKEN", ""):
            self.assertIsNone(WhatsAppService.verify_webhook("subscribe", "", "12345"))


class TestSendText(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.requests = []
        self.service = WhatsAppService(base_url="https://graph.test/v18.0/", access_token="default-token")

    def patch_transport(self, status_code=200, body=None):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(status_code, json=body or {"messages": [{"id": "wamid.out"}]})

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient
        return patch(
            "recete.services.whatsapp_service.httpx.AsyncClient",
            lambda **kwargs: real_client(transport=transport, **kwargs)
        )

    async def test_sends_with_integration_token(self):
        with self.patch_transport():
            result = await self.service.send_text("pn-1", "+905551112233", "Merhaba", access_token="merchant-token")

        self.assertEqual(result["messages"][0]["id"], "wamid.out")
        request = self.requests[0]
        self.assertEqual(str(request.url), "https://graph.test/v18.0/pn-1/messages")
        self.assertEqual(request.headers["Authorization"], "Bearer merchant-token")
        body = json.loads(request.content)
        self.assertEqual(body["to"], "905551112233")
        self.assertEqual(body["text"], {"body": "Merhaba"})

    async def test_default_token_is_used(self):
        with self.patch_transport():
            await self.service.send_text("pn-1", "905551112233", "Merhaba")
        self.assertEqual(self.requests[0].headers["Authorization"], "Bearer default-token")

    async def test_http_error_raises(self):
        with self.patch_transport(status_code=400, body={"error": {"message": "bad"}}):
            with self.assertRaises(Exception) as ctx:
                await self.service.send_text("pn-1", "+905551112233", "Merhaba")
        self.assertIn("HTTP 400", str(ctx.exception))

    async def test_missing_token_raises(self):
        with patch.object(settings, "WHATSAPP_ACCESS_TOKEN", ""):
            service = WhatsAppService(base_url="https://graph.test/v18.0")
        with self.assertRaises(RuntimeError):
            await service.send_text("pn-1", "+905551112233", "Merhaba")


if __name__ == '__main__':
    unittest.main()
