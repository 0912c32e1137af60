"""
Event Normalizer
Converts source-specific commerce events into NormalizedEvent
"""
import re
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from recete.config import settings
from recete.models.events import (
    ConsentStatus,
    EventCustomer,
    EventItem,
    EventOrder,
    EventSource,
    EventType,
    NormalizedEvent,
    OrderStatus,
)
from recete.utils.exceptions import InvalidPhoneError

logger = logging.getLogger(__name__)

SHOPIFY_TOPICS = {
    "orders/create": EventType.ORDER_CREATED,
    "orders/fulfilled": EventType.ORDER_DELIVERED,
    "orders/updated": EventType.ORDER_UPDATED,
    "orders/cancelled": EventType.ORDER_CANCELLED,
}

EVENT_ORDER_STATUS = {
    EventType.ORDER_CREATED: OrderStatus.CREATED,
    EventType.ORDER_DELIVERED: OrderStatus.DELIVERED,
    EventType.ORDER_CANCELLED: OrderStatus.CANCELLED,
    EventType.ORDER_RETURNED: OrderStatus.RETURNED,
}

MIN_PHONE_DIGITS = 10


def normalize_phone(raw: Optional[str]) -> str:
    """
    Normalize a phone number to +<country><number>

    A leading national "0" and bare numbers get the default country code (+90).

    Raises:
        InvalidPhoneError: If the result lacks a "+" or has fewer than 10 digits
    """
    phone = re.sub(r"[^\d+]", "", raw or "")
    country_code = settings.DEFAULT_COUNTRY_CODE

    if phone.startswith("0"):
        phone = country_code + phone[1:]
    elif phone and not phone.startswith("+"):
        phone = country_code + phone

    digits = re.sub(r"\D", "", phone)
    if not phone.startswith("+") or len(digits) < MIN_PHONE_DIGITS:
        raise InvalidPhoneError(f"Invalid phone number: {raw!r}")
    return phone


def safe_normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        return normalize_phone(raw)
    except InvalidPhoneError:
        return None


def generate_idempotency_key(
    source: str,
    event_type: str,
    external_order_id: str,
    occurred_at: str,
    event_id: Optional[str] = None
) -> str:
    """SHA-256 over source:event_type:external_order_id:occurred_at[:event_id]"""
    source = getattr(source, "value", source)
    event_type = getattr(event_type, "value", event_type)
    raw = f"{source}:{event_type}:{external_order_id}:{occurred_at}"
    if event_id:
        raw += f":{event_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def idempotency_key_for(event: NormalizedEvent, event_id: Optional[str] = None) -> str:
    return generate_idempotency_key(
        event.source, event.event_type, event.external_order_id, event.occurred_at, event_id
    )


def order_status_for(event: NormalizedEvent) -> OrderStatus:
    """Static event type -> order status map; order_updated keeps a known reported status."""
    if event.event_type == EventType.ORDER_UPDATED:
        reported = event.order.status if event.order else None
        try:
            return OrderStatus(reported)
        except ValueError:
            return OrderStatus.CREATED
    return EVENT_ORDER_STATUS[event.event_type]


def _shopify_consent(customer: Dict[str, Any]) -> ConsentStatus:
    states = [
        ((customer.get("email_marketing_consent") or {}).get("state") or "").lower(),
        ((customer.get("sms_marketing_consent") or {}).get("state") or "").lower(),
    ]
    if "subscribed" in states:
        return ConsentStatus.OPT_IN
    if "not_subscribed" in states or "unsubscribed" in states:
        return ConsentStatus.OPT_OUT
    return ConsentStatus.PENDING


def _shopify_is_delivered(order: Dict[str, Any]) -> bool:
    if (order.get("fulfillment_status") or "").lower() == "fulfilled":
        return True
    return any(f.get("status") == "success" for f in order.get("fulfillments") or [])


def _shopify_delivered_at(order: Dict[str, Any]) -> Optional[str]:
    for fulfillment in order.get("fulfillments") or []:
        if fulfillment.get("status") == "success" and fulfillment.get("updated_at"):
            return fulfillment["updated_at"]
    return order.get("updated_at")


def _shopify_phone(order: Dict[str, Any]) -> Optional[str]:
    customer = order.get("customer") or {}
    candidates = [
        (order.get("shipping_address") or {}).get("phone"),
        (order.get("billing_address") or {}).get("phone"),
        customer.get("phone"),
        order.get("phone"),
    ]
    for candidate in candidates:
        if candidate:
            return safe_normalize_phone(candidate)
    return None


def _shopify_name(order: Dict[str, Any]) -> Optional[str]:
    shipping = order.get("shipping_address") or {}
    if shipping.get("name"):
        return shipping["name"]
    customer = order.get("customer") or {}
    full_name = " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p)
    return full_name or None


def _shopify_items(order: Dict[str, Any]) -> List[EventItem]:
    items = []
    for line in order.get("line_items") or []:
        name = line.get("name") or line.get("title")
        if not name:
            continue
        product_id = line.get("product_id")
        items.append(EventItem(
            external_product_id=str(product_id) if product_id is not None else None,
            name=name
        ))
    return items


class EventNormalizer:
    """Maps Shopify webhooks and manual/CSV/test payloads to NormalizedEvent"""

    def normalize(
        self,
        source: str,
        raw_payload: Dict[str, Any],
        topic: Optional[str],
        merchant_id: str,
        integration_id: Optional[str] = None
    ) -> Optional[NormalizedEvent]:
        """
        Normalize one upstream event

        Returns:
            NormalizedEvent, or None when the payload should be skipped
            (invalid payload or no order identity)
        """
        try:
            event_source = EventSource(source)
        except ValueError:
            logger.warning(f"⚠️ Unknown event source: {source}")
            return None

        if event_source == EventSource.SHOPIFY:
            return self.normalize_shopify(raw_payload, topic, merchant_id, integration_id)

        payload = {**raw_payload, "merchant_id": merchant_id, "source": event_source.value}
        if integration_id:
            payload["integration_id"] = integration_id
        try:
            return NormalizedEvent(**payload)
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid {source} event payload: {e.error_count()} errors")
            return None

    def normalize_shopify(
        self,
        order: Dict[str, Any],
        topic: Optional[str],
        merchant_id: str,
        integration_id: Optional[str] = None
    ) -> Optional[NormalizedEvent]:
        event_type = SHOPIFY_TOPICS.get(topic or "", EventType.ORDER_UPDATED)

        order_name = order.get("name")
        external_order_id = order_name or (str(order["id"]) if order.get("id") is not None else None)
        if not external_order_id:
            logger.warning("⚠️ Shopify payload without order identity, skipping")
            return None

        delivered = _shopify_is_delivered(order)
        if topic == "orders/updated" and delivered:
            event_type = EventType.ORDER_DELIVERED

        if event_type == EventType.ORDER_DELIVERED:
            status = OrderStatus.DELIVERED
        elif event_type == EventType.ORDER_CANCELLED or order.get("cancelled_at"):
            status = OrderStatus.CANCELLED
        else:
            status = OrderStatus.CREATED

        occurred_at = (
            order.get("updated_at")
            or order.get("created_at")
            or datetime.now(timezone.utc).isoformat()
        )

        return NormalizedEvent(
            merchant_id=merchant_id,
            integration_id=integration_id,
            source=EventSource.SHOPIFY,
            event_type=event_type,
            occurred_at=occurred_at,
            external_order_id=external_order_id,
            customer=EventCustomer(phone=_shopify_phone(order), name=_shopify_name(order)),
            order=EventOrder(
                status=status.value,
                created_at=order.get("created_at"),
                delivered_at=_shopify_delivered_at(order) if status == OrderStatus.DELIVERED else None
            ),
            items=_shopify_items(order),
            consent_status=_shopify_consent(order.get("customer") or {})
        )
