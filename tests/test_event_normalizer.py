import unittest

from recete.models.events import ConsentStatus, EventSource, EventType, NormalizedEvent, OrderStatus
from recete.services.event_normalizer import (
    EventNormalizer,
    generate_idempotency_key,
    normalize_phone,
    order_status_for,
    safe_normalize_phone,
)
from recete.utils.exceptions import InvalidPhoneError

MERCHANT_ID = "merchant-1"


def shopify_order(**overrides):
    order = {
        "id": 820982911946154500,
        "name": "#1001",
        "created_at": "2024-01-10T10:00:00Z",
        "updated_at": "2024-01-12T10:00:00Z",
        "customer": {
            "first_name": "Ayşe",
            "last_name": "Yılmaz",
            "phone": "+905559998877",
            "sms_marketing_consent": {"state": "subscribed"},
        },
        "shipping_address": {"name": "Ayşe Yılmaz", "phone": "0555 111 22 33"},
        "line_items": [{"product_id": 632910392, "name": "Vitamin C Serum"}],
    }
    order.update(overrides)
    return order


class TestNormalizePhone(unittest.TestCase):
    def test_bare_number_gets_default_country_code(self):
        self.assertEqual(normalize_phone("5551112233"), "+905551112233")

    def test_national_zero_prefix_is_replaced(self):
        self.assertEqual(normalize_phone("05551112233"), "+905551112233")

    def test_formatting_is_stripped(self):
        self.assertEqual(normalize_phone("+90 555 111 22 33"), "+905551112233")
        self.assertEqual(normalize_phone("(555) 111-22-33"), "+905551112233")

    def test_invalid_numbers_raise(self):
        for raw in ("", "invalid", "12345", None):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidPhoneError):
                    normalize_phone(raw)

    def test_safe_variant_returns_none(self):
        self.assertIsNone(safe_normalize_phone("abc"))
        self.assertEqual(safe_normalize_phone("5551112233"), "+905551112233")


class TestIdempotencyKey(unittest.TestCase):
    def test_key_is_stable(self):
        a = generate_idempotency_key("shopify", "order_created", "#1001", "2024-01-10T10:00:00Z")
        b = generate_idempotency_key(EventSource.SHOPIFY, EventType.ORDER_CREATED, "#1001", "2024-01-10T10:00:00Z")
        self.assertEqual(a, b)
        self.assertEqual(len(a), 64)

    def test_event_id_changes_key(self):
        base = generate_idempotency_key("shopify", "order_created", "#1001", "2024-01-10T10:00:00Z")
        with_id = generate_idempotency_key("shopify", "order_created", "#1001", "2024-01-10T10:00:00Z", "evt-1")
        self.assertNotEqual(base, with_id)


class TestOrderStatus(unittest.TestCase):
    def _event(self, event_type, status="created"):
        return NormalizedEvent(
            merchant_id=MERCHANT_ID,
            source=EventSource.MANUAL,
            event_type=event_type,
            occurred_at="2024-01-10T10:00:00Z",
            external_order_id="ORD-1",
            order={"status": status},
        )

    def test_static_mapping(self):
        self.assertEqual(order_status_for(self._event(EventType.ORDER_RETURNED)), OrderStatus.RETURNED)
        self.assertEqual(order_status_for(self._event(EventType.ORDER_DELIVERED)), OrderStatus.DELIVERED)

    def test_updated_keeps_known_status(self):
        self.assertEqual(order_status_for(self._event(EventType.ORDER_UPDATED, "cancelled")), OrderStatus.CANCELLED)
        self.assertEqual(order_status_for(self._event(EventType.ORDER_UPDATED, "shipped")), OrderStatus.CREATED)


class TestShopifyNormalization(unittest.TestCase):
    def setUp(self):
        self.normalizer = EventNormalizer()

    def test_orders_create(self):
        event = self.normalizer.normalize("shopify", shopify_order(), "orders/create", MERCHANT_ID)
        self.assertEqual(event.event_type, EventType.ORDER_CREATED)
        self.assertEqual(event.external_order_id, "#1001")
        self.assertEqual(event.order.status, "created")
        self.assertEqual(event.consent_status, ConsentStatus.OPT_IN)
        self.assertEqual(event.customer.name, "Ayşe Yılmaz")
        self.assertEqual(event.items[0].external_product_id, "632910392")

    def test_shipping_phone_has_priority(self):
        event = self.normalizer.normalize("shopify", shopify_order(), "orders/create", MERCHANT_ID)
        self.assertEqual(event.customer.phone, "+905551112233")

    def test_invalid_phone_becomes_none(self):
        order = shopify_order(shipping_address={"phone": "n/a"})
        event = self.normalizer.normalize("shopify", order, "orders/create", MERCHANT_ID)
        self.assertIsNone(event.customer.phone)

    def test_fulfilled_update_is_promoted_to_delivered(self):
        order = shopify_order(
            fulfillment_status="fulfilled",
            fulfillments=[{"status": "success", "updated_at": "2024-01-15T09:00:00Z"}],
        )
        event = self.normalizer.normalize("shopify", order, "orders/updated", MERCHANT_ID)
        self.assertEqual(event.event_type, EventType.ORDER_DELIVERED)
        self.assertEqual(event.order.status, "delivered")
        self.assertEqual(event.order.delivered_at, "2024-01-15T09:00:00Z")

    def test_unsubscribed_consent_is_opt_out(self):
        customer = {"sms_marketing_consent": {"state": "unsubscribed"}}
        event = self.normalizer.normalize("shopify", shopify_order(customer=customer), "orders/create", MERCHANT_ID)
        self.assertEqual(event.consent_status, ConsentStatus.OPT_OUT)

    def test_missing_consent_is_pending(self):
        event = self.normalizer.normalize("shopify", shopify_order(customer={}), "orders/create", MERCHANT_ID)
        self.assertEqual(event.consent_status, ConsentStatus.PENDING)

    def test_unknown_topic_defaults_to_order_updated(self):
        order = shopify_order(fulfillment_status="fulfilled")
        event = self.normalizer.normalize("shopify", order, "orders/partially_fulfilled", MERCHANT_ID)
        self.assertEqual(event.event_type, EventType.ORDER_UPDATED)
        self.assertEqual(event.order.status, "created")

    def test_consent_state_is_case_insensitive(self):
        customer = {"email_marketing_consent": {"state": "SUBSCRIBED"}}
        event = self.normalizer.normalize("shopify", shopify_order(customer=customer), "orders/create", MERCHANT_ID)
        self.assertEqual(event.consent_status, ConsentStatus.OPT_IN)

    def test_payload_without_identity_is_skipped(self):
        order = shopify_order(name=None, id=None)
        self.assertIsNone(self.normalizer.normalize("shopify", order, "orders/create", MERCHANT_ID))


class TestGenericNormalization(unittest.TestCase):
    def setUp(self):
        self.normalizer = EventNormalizer()

    def test_manual_payload_is_validated(self):
        payload = {
            "event_type": "order_delivered",
            "occurred_at": "2024-01-15T09:00:00Z",
            "external_order_id": "M-1",
            "customer": {"phone": "+905551112233"},
            "order": {"status": "delivered", "delivered_at": "2024-01-15T09:00:00Z"},
        }
        event = self.normalizer.normalize("manual", payload, None, MERCHANT_ID)
        self.assertEqual(event.source, EventSource.MANUAL)
        self.assertEqual(event.merchant_id, MERCHANT_ID)
        self.assertEqual(event.event_type, EventType.ORDER_DELIVERED)

    def test_invalid_payload_is_skipped(self):
        self.assertIsNone(self.normalizer.normalize("manual", {"external_order_id": ""}, None, MERCHANT_ID))

    def test_unknown_source_is_skipped(self):
        self.assertIsNone(self.normalizer.normalize("amazon", {}, None, MERCHANT_ID))


if __name__ == '__main__':
    unittest.main()
