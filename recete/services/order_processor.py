"""
Order Processor
Idempotent ingestion of normalized events and user/order upserts with consent-gated scheduling
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from supabase import Client

from recete.config import settings
from recete.models.events import (
    BatchProcessResult,
    ConsentStatus,
    IngestResult,
    NormalizedEvent,
    OrderStatus,
    ProcessResult,
)
from recete.services.event_normalizer import idempotency_key_for, normalize_phone, order_status_for
from recete.services.message_scheduler import MessageScheduler
from recete.utils.encryption import PhoneEncryptor
from recete.utils.exceptions import InvalidPhoneError, MissingPhoneError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# Only conclusive consent overwrites what is stored
CONCLUSIVE_CONSENT = (ConsentStatus.OPT_IN, ConsentStatus.OPT_OUT)


def is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    return code == UNIQUE_VIOLATION or UNIQUE_VIOLATION in str(error) or "duplicate key" in str(error)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderProcessor:
    """Turns normalized events into users, orders and scheduled messages"""

    def __init__(self, db: Client, encryptor: PhoneEncryptor, scheduler: MessageScheduler):
        self.db = db
        self.encryptor = encryptor
        self.scheduler = scheduler

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def find_user_by_phone(self, merchant_id: str, phone: str) -> Optional[Dict[str, Any]]:
        """
        Find a merchant's user by normalized phone

        Phones are encrypted with a random IV, so equality cannot be tested in the
        database: a bounded batch of users is decrypted and compared here. Scales
        with the merchant's user count.
        """
        response = await asyncio.to_thread(
            lambda: self.db.table("users")
            .select("id, merchant_id, phone, name, consent_status")
            .eq("merchant_id", merchant_id)
            .limit(settings.USER_SCAN_LIMIT)
            .execute()
        )
        for user in response.data or []:
            if self.encryptor.matches(user.get("phone"), phone):
                return user
        return None

    async def create_user(
        self,
        merchant_id: str,
        phone: str,
        name: Optional[str] = None,
        consent_status: Optional[ConsentStatus] = None
    ) -> Dict[str, Any]:
        row = {
            "merchant_id": merchant_id,
            "phone": self.encryptor.encrypt(phone),
            "name": name or None,
            "consent_status": (consent_status or ConsentStatus.PENDING).value,
        }
        response = await asyncio.to_thread(lambda: self.db.table("users").insert(row).execute())
        if not response.data:
            raise RuntimeError("User insert returned no data")
        logger.info(f"👤 Created user {response.data[0]['id']} for merchant {merchant_id}")
        return response.data[0]

    async def upsert_user(
        self,
        merchant_id: str,
        phone: str,
        name: Optional[str] = None,
        consent_status: Optional[ConsentStatus] = None
    ) -> Dict[str, Any]:
        """Find-or-create; merges a non-blank name and conclusive consent only."""
        user = await self.find_user_by_phone(merchant_id, phone)
        if user is None:
            return await self.create_user(merchant_id, phone, name, consent_status)

        updates = {}
        if name and name.strip() and name != user.get("name"):
            updates["name"] = name.strip()
        if consent_status in CONCLUSIVE_CONSENT and consent_status.value != user.get("consent_status"):
            updates["consent_status"] = consent_status.value

        if updates:
            await asyncio.to_thread(
                lambda: self.db.table("users").update(updates).eq("id", user["id"]).execute()
            )
            user = {**user, **updates}
        return user

    async def set_user_consent(self, user_id: str, consent_status: ConsentStatus) -> None:
        await asyncio.to_thread(
            lambda: self.db.table("users")
            .update({"consent_status": consent_status.value})
            .eq("id", user_id)
            .execute()
        )
        logger.info(f"👤 User {user_id} consent set to {consent_status.value}")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def _upsert_order(
        self,
        event: NormalizedEvent,
        user_id: str,
        status: OrderStatus,
        delivered_at: Optional[str]
    ) -> Tuple[str, bool]:
        """Upsert by (merchant_id, external_order_id); last write wins."""
        existing = await asyncio.to_thread(
            lambda: self.db.table("orders")
            .select("id")
            .eq("merchant_id", event.merchant_id)
            .eq("external_order_id", event.external_order_id)
            .limit(1)
            .execute()
        )

        fields = {"status": status.value, "user_id": user_id}
        if delivered_at:
            fields["delivery_date"] = delivered_at

        if existing.data:
            order_id = existing.data[0]["id"]
            await asyncio.to_thread(
                lambda: self.db.table("orders").update(fields).eq("id", order_id).execute()
            )
            return order_id, False

        row = {
            "merchant_id": event.merchant_id,
            "external_order_id": event.external_order_id,
            **fields,
        }
        response = await asyncio.to_thread(lambda: self.db.table("orders").insert(row).execute())
        if not response.data:
            raise RuntimeError("Order insert returned no data")
        return response.data[0]["id"], True

    async def _persist_normalized_event(self, event: NormalizedEvent, idempotency_key: str) -> None:
        """Shadow copy used for order-scope resolution; never aborts processing."""
        row = {
            "merchant_id": event.merchant_id,
            "external_order_id": event.external_order_id,
            "event_type": event.event_type.value,
            "idempotency_key": idempotency_key,
            "payload": event.model_dump(mode="json"),
        }
        try:
            await asyncio.to_thread(lambda: self.db.table("normalized_events").insert(row).execute())
        except Exception as e:
            if is_unique_violation(e):
                logger.debug(f"Normalized event already stored: {idempotency_key[:12]}")
            else:
                logger.error(f"❌ Failed to persist normalized event {idempotency_key[:12]}: {e}")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, event: NormalizedEvent) -> ProcessResult:
        """
        Upsert the user and order for one event and schedule messages

        Raises:
            MissingPhoneError: If the event has no usable phone
        """
        raw_phone = event.customer.phone if event.customer else None
        if not raw_phone:
            raise MissingPhoneError(f"Event for order {event.external_order_id} has no customer phone")
        try:
            phone = normalize_phone(raw_phone)
        except InvalidPhoneError as e:
            raise MissingPhoneError(f"Event for order {event.external_order_id} has no usable phone: {e}")

        await self._persist_normalized_event(event, idempotency_key_for(event))

        user = await self.upsert_user(
            event.merchant_id,
            phone,
            event.customer.name,
            event.consent_status
        )

        status = order_status_for(event)
        delivered_at = event.order.delivered_at if event.order else None
        order_id, created = await self._upsert_order(event, user["id"], status, delivered_at)

        if status == OrderStatus.DELIVERED and delivered_at:
            if user.get("consent_status") == ConsentStatus.OPT_IN.value:
                try:
                    await self.scheduler.schedule_order_messages(
                        order_id, event.merchant_id, user["id"], delivered_at
                    )
                except Exception as e:
                    logger.error(f"❌ Message scheduling failed for order {order_id}: {e}", exc_info=True)
            else:
                logger.info(
                    f"Consent is {user.get('consent_status')} for user {user['id']}, "
                    f"no messages scheduled for order {order_id}"
                )
        elif status in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
            try:
                await self.scheduler.cancel_order_messages(order_id)
            except Exception as e:
                logger.warning(f"⚠️ Could not cancel messages for order {order_id}: {e}")

        logger.info(
            f"✅ Processed {event.event_type.value} for order {event.external_order_id} "
            f"(order {'created' if created else 'updated'})"
        )
        return ProcessResult(user_id=user["id"], order_id=order_id, created=created)

    async def ingest_event(self, event: NormalizedEvent, event_id: Optional[str] = None) -> IngestResult:
        """Insert into external_events; a unique-key conflict marks a duplicate delivery."""
        key = idempotency_key_for(event, event_id)
        row = {
            "merchant_id": event.merchant_id,
            "integration_id": event.integration_id,
            "source": event.source.value,
            "event_type": event.event_type.value,
            "payload": event.model_dump(mode="json"),
            "idempotency_key": key,
            "received_at": _utcnow(),
        }
        try:
            response = await asyncio.to_thread(lambda: self.db.table("external_events").insert(row).execute())
        except Exception as e:
            if is_unique_violation(e):
                logger.info(f"Duplicate event ignored: {key[:12]}")
                return IngestResult(idempotency_key=key, duplicate=True)
            raise

        row_id = response.data[0].get("id") if response.data else None
        return IngestResult(idempotency_key=key, duplicate=False, event_row_id=row_id)

    async def _mark_processed(self, row_id: Optional[str], error: Optional[str] = None) -> None:
        if not row_id:
            return
        # Failed rows are terminal as well, with the reason in error
        fields = {"processed_at": _utcnow(), "error": error}
        try:
            await asyncio.to_thread(
                lambda: self.db.table("external_events").update(fields).eq("id", row_id).execute()
            )
        except Exception as e:
            logger.warning(f"⚠️ Could not update external event {row_id}: {e}")

    async def ingest_and_process(
        self,
        event: NormalizedEvent,
        event_id: Optional[str] = None
    ) -> Tuple[IngestResult, Optional[ProcessResult]]:
        """Ingest, then process unless the event is a duplicate."""
        ingest = await self.ingest_event(event, event_id)
        if ingest.duplicate:
            return ingest, None

        try:
            result = await self.process(event)
        except Exception as e:
            await self._mark_processed(ingest.event_row_id, error=str(e))
            raise

        await self._mark_processed(ingest.event_row_id)
        return ingest, result

    async def process_external_events(self, limit: int = 100) -> BatchProcessResult:
        """
        Drain unprocessed external events in receipt order

        One event's failure is counted and does not stop the batch.
        """
        response = await asyncio.to_thread(
            lambda: self.db.table("external_events")
            .select("id, payload")
            .is_("processed_at", "null")
            .order("received_at")
            .limit(limit)
            .execute()
        )

        result = BatchProcessResult()
        for row in response.data or []:
            try:
                event = NormalizedEvent(**(row.get("payload") or {}))
                await self.process(event)
                await self._mark_processed(row["id"])
                result.processed += 1
            except Exception as e:
                logger.error(f"❌ Failed to process external event {row.get('id')}: {e}")
                await self._mark_processed(row.get("id"), error=str(e))
                result.errors += 1

        logger.info(f"📦 External events drained: {result.processed} processed, {result.errors} errors")
        return result
