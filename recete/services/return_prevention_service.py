"""
Return Prevention Service
Tracks return-intent conversations: one pending attempt, then escalation
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from supabase import Client

from recete.models.prevention import PreventionOutcome, ReturnIntentDecision, ReturnPreventionAttempt
from recete.services.conversation_service import ConversationService
from recete.services.guardrail_service import contains_keyword
from recete.services.merchant_service import MerchantService

logger = logging.getLogger(__name__)

ADDON_KEY = "return_prevention"
ATTEMPTS_TABLE = "return_prevention_attempts"

# Heuristic, not a sentiment model
POSITIVE_SIGNALS = [
    "thank", "thanks", "ok", "okay", "teşekkür", "sağol", "anladım",
    "deneyeceğim", "tamam", "i'll try", "got it",
]


def is_positive_signal(text: str) -> bool:
    return contains_keyword(text or "", POSITIVE_SIGNALS)


class ReturnPreventionService:
    """Return-prevention add-on state per conversation"""

    def __init__(self, db: Client, merchants: MerchantService, conversations: ConversationService):
        self.db = db
        self.merchants = merchants
        self.conversations = conversations

    async def is_active(self, merchant_id: str) -> bool:
        try:
            return await self.merchants.is_addon_active(merchant_id, ADDON_KEY)
        except Exception as e:
            logger.warning(f"⚠️ Add-on check failed for merchant {merchant_id}: {e}")
            return False

    async def get_pending_attempt(self, conversation_id: str) -> Optional[ReturnPreventionAttempt]:
        response = await asyncio.to_thread(
            lambda: self.db.table(ATTEMPTS_TABLE)
            .select("*")
            .eq("conversation_id", conversation_id)
            .eq("outcome", PreventionOutcome.PENDING.value)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return ReturnPreventionAttempt(**response.data[0]) if response.data else None

    async def update_outcome(self, attempt_id: str, outcome: PreventionOutcome) -> None:
        await asyncio.to_thread(
            lambda: self.db.table(ATTEMPTS_TABLE).update({
                "outcome": outcome.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }).eq("id", attempt_id).execute()
        )
        logger.info(f"🔁 Return prevention attempt {attempt_id} -> {outcome.value}")

    async def evaluate_return_intent(self, merchant_id: str, conversation_id: str) -> ReturnIntentDecision:
        """
        Decide how to handle a return_intent message

        Returns:
            DOWNGRADE when the add-on is inactive, ESCALATE when an attempt is
            already pending (the customer insists), ATTEMPT otherwise
        """
        if not await self.is_active(merchant_id):
            return ReturnIntentDecision.DOWNGRADE

        pending = await self.get_pending_attempt(conversation_id)
        if pending is None:
            return ReturnIntentDecision.ATTEMPT

        await self.update_outcome(pending.id, PreventionOutcome.ESCALATED)
        try:
            await self.conversations.escalate(conversation_id, "return_intent_insistence")
        except Exception as e:
            logger.error(f"❌ Failed to escalate conversation {conversation_id}: {e}")
        return ReturnIntentDecision.ESCALATE

    async def log_attempt(
        self,
        merchant_id: str,
        conversation_id: str,
        user_id: str,
        trigger_message: str,
        prevention_response: str,
        order_id: Optional[str] = None,
        product_id: Optional[str] = None
    ) -> str:
        """Record a pending attempt; an existing pending attempt is reused."""
        pending = await self.get_pending_attempt(conversation_id)
        if pending:
            return pending.id

        response = await asyncio.to_thread(
            lambda: self.db.table(ATTEMPTS_TABLE).insert({
                "merchant_id": merchant_id,
                "conversation_id": conversation_id,
                "user_id": user_id,
                "order_id": order_id,
                "product_id": product_id,
                "trigger_message": trigger_message[:1000],
                "prevention_response": prevention_response[:2000],
                "outcome": PreventionOutcome.PENDING.value,
            }).execute()
        )
        if not response.data:
            raise RuntimeError("Return prevention attempt insert returned no data")
        logger.info(f"🔁 Logged return prevention attempt for conversation {conversation_id}")
        return response.data[0]["id"]
