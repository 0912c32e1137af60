"""
Upsell Service
Satisfaction detection and time/consent-gated product recommendations
"""
import json
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from openai import AsyncOpenAI
from pydantic import ValidationError
from supabase import Client

from recete.config import settings
from recete.models.events import ConsentStatus, OrderStatus
from recete.models.merchant import MerchantSettings, ProductRecommendation
from recete.models.prevention import SatisfactionCheckResult, SatisfactionResult, TaskStatus, TaskType
from recete.services.message_scheduler import parse_timestamp

logger = logging.getLogger(__name__)

SATISFACTION_PROMPT = (
    "You are a sentiment analyzer. Analyze the user's message and determine if they are "
    "satisfied with the product.\n"
    'Respond with JSON: { "satisfied": true/false, "confidence": 0.0-1.0, '
    '"sentiment": "positive"/"neutral"/"negative" }'
)

RECOMMENDATION_REASONS = [
    "Size özel önerilen ürünümüz",
    "Bu ürünle birlikte kullanabileceğiniz tamamlayıcı ürün",
    "Sizin için seçtiğimiz özel ürün",
]


def fallback_upsell_message(recommendations: Sequence[ProductRecommendation]) -> str:
    product_list = "\n".join(f"{i}. {rec.product_name}" for i, rec in enumerate(recommendations, start=1))
    return f"Harika! Size özel önerilerimiz var:\n\n{product_list}\n\nDetaylar için linklere tıklayabilirsiniz."


class UpsellService:
    """Decides when a satisfied customer gets a product recommendation"""

    def __init__(self, db: Client, llm: AsyncOpenAI):
        self.db = db
        self.llm = llm

    async def is_upsell_eligible(self, user_id: str, order_id: str, now: Optional[datetime] = None) -> bool:
        """
        Policy/timing gate, independent of message content

        Requires a delivered order with a delivery date at least 14 days ago,
        consent other than opt_out, and no completed upsell task for the order.
        """
        now = now or datetime.now(timezone.utc)

        order = await asyncio.to_thread(
            lambda: self.db.table("orders").select("status, delivery_date").eq("id", order_id).limit(1).execute()
        )
        if not order.data:
            return False
        order_row = order.data[0]
        if order_row.get("status") != OrderStatus.DELIVERED.value or not order_row.get("delivery_date"):
            return False

        days_since_delivery = (now - parse_timestamp(order_row["delivery_date"])).total_seconds() / 86400
        if days_since_delivery < settings.UPSELL_MIN_DAYS_AFTER_DELIVERY:
            return False

        user = await asyncio.to_thread(
            lambda: self.db.table("users").select("consent_status").eq("id", user_id).limit(1).execute()
        )
        if user.data and user.data[0].get("consent_status") == ConsentStatus.OPT_OUT.value:
            return False

        existing = await asyncio.to_thread(
            lambda: self.db.table("scheduled_tasks")
            .select("id")
            .eq("user_id", user_id)
            .eq("order_id", order_id)
            .eq("task_type", TaskType.UPSELL.value)
            .eq("status", TaskStatus.COMPLETED.value)
            .limit(1)
            .execute()
        )
        return not existing.data

    async def detect_satisfaction(self, message: str) -> SatisfactionResult:
        """JSON-mode sentiment call; any failure degrades to not satisfied / 0.5 / neutral."""
        try:
            response = await self.llm.chat.completions.create(
                model=settings.CLASSIFIER_MODEL,
                messages=[
                    {"role": "system", "content": SATISFACTION_PROMPT},
                    {"role": "user", "content": message},
                ],
                temperature=0.1,
                response_format={"type": "json_object"}
            )
            payload = json.loads(response.choices[0].message.content or "{}")
            return SatisfactionResult(**payload)
        except (ValueError, ValidationError, TypeError) as e:
            logger.warning(f"⚠️ Unparseable satisfaction result: {e}")
        except Exception as e:
            logger.error(f"❌ Satisfaction detection failed: {e}")
        return SatisfactionResult()

    async def should_send_upsell(self, user_id: str, order_id: str, message: str) -> bool:
        satisfaction = await self.detect_satisfaction(message)
        if not satisfaction.satisfied or satisfaction.confidence < settings.UPSELL_MIN_CONFIDENCE:
            return False
        return await self.is_upsell_eligible(user_id, order_id)

    async def get_complementary_products(
        self,
        merchant_id: str,
        exclude_product_ids: Optional[Sequence[str]] = None,
        limit: int = 3
    ) -> List[ProductRecommendation]:
        """Newest merchant products not in the order."""
        excluded = set(exclude_product_ids or [])
        response = await asyncio.to_thread(
            lambda: self.db.table("products")
            .select("id, name, url")
            .eq("merchant_id", merchant_id)
            .order("created_at", desc=True)
            .limit(limit + len(excluded) + 5)
            .execute()
        )
        products = [p for p in response.data or [] if p["id"] not in excluded][:limit]
        return [
            ProductRecommendation(
                product_id=product["id"],
                product_name=product.get("name") or "",
                product_url=product.get("url"),
                reason=RECOMMENDATION_REASONS[min(i, len(RECOMMENDATION_REASONS) - 1)]
            )
            for i, product in enumerate(products)
        ]

    async def generate_upsell_message(
        self,
        recommendations: Sequence[ProductRecommendation],
        merchant: MerchantSettings
    ) -> str:
        if not recommendations:
            return ""

        product_list = "\n".join(f"{i}. {rec.product_name}" for i, rec in enumerate(recommendations, start=1))
        try:
            response = await self.llm.chat.completions.create(
                model=settings.CHAT_MODEL,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            f"You are a helpful sales assistant for {merchant.name}.\n"
                            "Generate a friendly, non-pushy upsell message recommending these products:\n"
                            f"{product_list}\n\n"
                            "Keep it short (2-3 sentences), friendly, and focus on value to the customer.\n"
                            "Respond in Turkish unless the user writes in another language."
                        ),
                    },
                    {"role": "user", "content": "Generate an upsell message"},
                ],
                temperature=merchant.persona.temperature if merchant.persona.temperature is not None else 0.7,
                max_tokens=150
            )
            message = (response.choices[0].message.content or "").strip()
            return message or fallback_upsell_message(recommendations)
        except Exception as e:
            logger.error(f"❌ Upsell message generation failed: {e}")
            return fallback_upsell_message(recommendations)

    async def process_satisfaction_check(
        self,
        user_id: str,
        order_id: str,
        merchant: MerchantSettings,
        message: str,
        exclude_product_ids: Optional[Sequence[str]] = None
    ) -> SatisfactionCheckResult:
        """Satisfaction, then eligibility, then a generated recommendation message."""
        satisfaction = await self.detect_satisfaction(message)
        if not satisfaction.satisfied or satisfaction.confidence < settings.UPSELL_MIN_CONFIDENCE:
            return SatisfactionCheckResult(satisfied=False)

        if not await self.is_upsell_eligible(user_id, order_id):
            return SatisfactionCheckResult(satisfied=True)

        recommendations = await self.get_complementary_products(merchant.merchant_id, exclude_product_ids, limit=2)
        if not recommendations:
            return SatisfactionCheckResult(satisfied=True)

        upsell_message = await self.generate_upsell_message(recommendations, merchant)
        logger.info(f"💡 Upsell triggered for order {order_id}")
        return SatisfactionCheckResult(satisfied=True, upsell_triggered=True, upsell_message=upsell_message)
