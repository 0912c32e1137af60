import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from main import app
from recete.config import settings
from recete.models.events import BatchProcessResult, IngestResult, ProcessResult
from recete.models.knowledge import IndexResult, RAGQueryResponse
from recete.utils.exceptions import EmbeddingError, MissingPhoneError
from tests.test_event_normalizer import shopify_order

SECRET = "test-secret"
AUTH = {"X-API-Key": SECRET}


class APITestCase(unittest.TestCase):
    def setUp(self):
        secret_patch = patch.object(settings, "WEBHOOK_SECRET_KEY", SECRET)
        secret_patch.start()
        self.addCleanup(secret_patch.stop)

        self.services = MagicMock()
        self.services.messages.handle_inbound = AsyncMock(return_value=[])
        self.services.orders.ingest_and_process = AsyncMock(return_value=(
            IngestResult(idempotency_key="k", duplicate=False, event_row_id="ev-1"),
            ProcessResult(user_id="user-1", order_id="order-1", created=True),
        ))
        app.state.services = self.services
        self.addCleanup(setattr, app.state, "services", None)

        self.client = TestClient(app)


class TestHealth(APITestCase):
    def test_root(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_missing_services_is_unavailable(self):
        app.state.services = None
        response = self.client.post("/webhooks/whatsapp", json={})
        self.assertEqual(response.status_code, 503)


class TestWhatsAppWebhook(APITestCase):
    def test_verification_echoes_challenge(self):
        self.services.whatsapp.verify_webhook = MagicMock(return_value="1158201444")
        response = self.client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "tok", "hub.challenge": "1158201444"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "1158201444")
        self.services.whatsapp.verify_webhook.assert_called_once_with("subscribe", "tok", "1158201444")

    def test_failed_verification_is_forbidden(self):
        self.services.whatsapp.verify_webhook = MagicMock(return_value=None)
        response = self.client.get("/webhooks/whatsapp", params={"hub.mode": "subscribe"})
        self.assertEqual(response.status_code, 403)

    def test_messages_are_handled_in_background(self):
        payload = {"object": "whatsapp_business_account", "entry": []}
        response = self.client.post("/webhooks/whatsapp", json=payload)
        self.assertEqual(response.json(), {"success": True})
        self.services.messages.handle_inbound.assert_awaited_once_with(payload)

    def test_invalid_json_is_rejected(self):
        response = self.client.post(
            "/webhooks/whatsapp", content="not json", headers={"Content-Type": "application/json"}
        )
        self.assertEqual(response.status_code, 400)


class TestShopifyWebhook(APITestCase):
    def post_order(self):
        return self.client.post(
            "/webhooks/shopify/merchant-1",
            json=shopify_order(),
            headers={"X-Shopify-Topic": "orders/create", "X-Shopify-Webhook-Id": "wh-1"}
        )

    def test_order_is_ingested(self):
        self.services.normalizer.normalize = MagicMock(return_value=MagicMock(external_order_id="#1001"))

        response = self.post_order()

        self.assertEqual(response.json(), {"success": True, "duplicate": False, "order_id": "order-1"})
        args = self.services.normalizer.normalize.call_args.args
        self.assertEqual(args[0], "shopify")
        self.assertEqual(args[2:], ("orders/create", "merchant-1"))
        self.assertEqual(self.services.orders.ingest_and_process.await_args.args[1], "wh-1")

    def test_skipped_payload(self):
        self.services.normalizer.normalize = MagicMock(return_value=None)
        response = self.post_order()
        self.assertEqual(response.json(), {"success": True, "skipped": True})
        self.services.orders.ingest_and_process.assert_not_awaited()

    def test_missing_phone_is_acknowledged(self):
        self.services.normalizer.normalize = MagicMock(return_value=MagicMock(external_order_id="#1001"))
        self.services.orders.ingest_and_process = AsyncMock(side_effect=MissingPhoneError("no phone"))

        response = self.post_order()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": False, "reason": "missing_phone"})

    def test_processing_error_is_500(self):
        self.services.normalizer.normalize = MagicMock(return_value=MagicMock(external_order_id="#1001"))
        self.services.orders.ingest_and_process = AsyncMock(side_effect=RuntimeError("db down"))
        self.assertEqual(self.post_order().status_code, 500)


class TestEventEndpoints(APITestCase):
    CSV = (
        "external_order_id,customer_phone,customer_name,status,delivered_at\n"
        "ORD-123,5551112233,John Doe,delivered,2024-01-15\n"
    )

    def test_api_key_is_required(self):
        self.assertEqual(self.client.post("/events/csv/merchant-1", content=self.CSV).status_code, 401)
        response = self.client.post("/events/csv/merchant-1", content=self.CSV, headers={"X-API-Key": "wrong"})
        self.assertEqual(response.status_code, 401)

    def test_unconfigured_secret_is_server_error(self):
        with patch.object(settings, "WEBHOOK_SECRET_KEY", ""):
            response = self.client.post("/events/csv/merchant-1", content=self.CSV, headers=AUTH)
        self.assertEqual(response.status_code, 500)

    def test_csv_import(self):
        response = self.client.post("/events/csv/merchant-1", content=self.CSV, headers=AUTH)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["processed"], 1)
        self.assertEqual(body["summary"]["unique_orders"], 1)
        event = self.services.orders.ingest_and_process.await_args.args[0]
        self.assertEqual(event.customer.phone, "+905551112233")

    def test_empty_csv_is_bad_request(self):
        response = self.client.post("/events/csv/merchant-1", content="external_order_id\n", headers=AUTH)
        self.assertEqual(response.status_code, 400)

    def test_process_events(self):
        self.services.orders.process_external_events = AsyncMock(return_value=BatchProcessResult(processed=3, errors=1))
        response = self.client.post("/events/process?limit=50", headers=AUTH)
        self.assertEqual(response.json(), {"processed": 3, "errors": 1})
        self.services.orders.process_external_events.assert_awaited_once_with(50)

    def test_process_limit_is_bounded(self):
        self.assertEqual(self.client.post("/events/process?limit=0", headers=AUTH).status_code, 422)


class TestKnowledgeEndpoints(APITestCase):
    def test_index(self):
        self.services.indexer.index_products = AsyncMock(return_value=[
            IndexResult(product_id="p1", chunks_created=4, total_tokens=120, success=True)
        ])
        response = self.client.post("/knowledge/index", json={"product_ids": ["p1"]}, headers=AUTH)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]["chunks_created"], 4)

    def test_index_requires_products(self):
        response = self.client.post("/knowledge/index", json={"product_ids": []}, headers=AUTH)
        self.assertEqual(response.status_code, 422)

    def test_query(self):
        self.services.rag.query = AsyncMock(return_value=RAGQueryResponse(query="nasıl"))
        response = self.client.post(
            "/knowledge/query", json={"merchant_id": "merchant-1", "query": "nasıl"}, headers=AUTH
        )
        self.assertEqual(response.json()["total_results"], 0)

    def test_query_embedding_failure_is_bad_gateway(self):
        self.services.rag.query = AsyncMock(side_effect=EmbeddingError("provider down"))
        response = self.client.post(
            "/knowledge/query", json={"merchant_id": "merchant-1", "query": "nasıl"}, headers=AUTH
        )
        self.assertEqual(response.status_code, 502)


if __name__ == '__main__':
    unittest.main()
