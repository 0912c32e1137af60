"""
Message Handler Service
Routes inbound WhatsApp messages through the AI agent and sends replies
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from supabase import Client

from recete.models.conversation import ConversationStatus, InboundMessage, MessageRole
from recete.services.ai_agent_service import AIAgentService
from recete.services.cache_service import CacheService
from recete.services.conversation_service import ConversationService
from recete.services.event_normalizer import normalize_phone
from recete.services.merchant_service import MerchantService
from recete.services.message_scheduler import MessageScheduler
from recete.services.order_processor import OrderProcessor
from recete.services.whatsapp_service import WhatsAppService
from recete.utils.exceptions import GenerationError, InvalidPhoneError

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Şu anda size yardımcı olamıyorum, lütfen kısa süre sonra tekrar deneyin."


class MessageHandlerService:
    """Inbound message flow: identify, lock, generate, reply"""

    def __init__(
        self,
        db: Client,
        cache: CacheService,
        merchants: MerchantService,
        orders: OrderProcessor,
        conversations: ConversationService,
        agent: AIAgentService,
        whatsapp: WhatsAppService,
        scheduler: MessageScheduler
    ):
        self.db = db
        self.cache = cache
        self.merchants = merchants
        self.orders = orders
        self.conversations = conversations
        self.agent = agent
        self.whatsapp = whatsapp
        self.scheduler = scheduler

    async def handle_inbound(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Handle every text message in a Cloud API webhook payload."""
        results = []
        for message in self.whatsapp.parse_webhook(payload):
            try:
                results.append(await self.handle_message(message))
            except Exception as e:
                logger.error(f"❌ Failed to handle message {message.message_id}: {e}", exc_info=True)
                results.append({"success": False, "reason": "error", "error": str(e)})
        return results

    async def _latest_order_id(self, user_id: str) -> Optional[str]:
        response = await asyncio.to_thread(
            lambda: self.db.table("orders")
            .select("id")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return response.data[0]["id"] if response.data else None

    async def _send(self, integration: Dict[str, Any], to: str, text: str) -> bool:
        try:
            await self.whatsapp.send_text(
                integration["phone_number_id"], to, text, integration.get("access_token")
            )
            return True
        except Exception as e:
            logger.error(f"❌ Reply delivery failed: {e}")
            return False

    async def handle_message(self, message: InboundMessage) -> Dict[str, Any]:
        integration = await self.merchants.get_whatsapp_integration(message.phone_number_id)
        if not integration:
            logger.warning(f"⚠️ No WhatsApp integration for phone_number_id {message.phone_number_id}")
            return {"success": False, "reason": "unknown_phone_number_id"}

        merchant_id = integration["merchant_id"]
        try:
            phone = normalize_phone(message.phone)
        except InvalidPhoneError:
            return {"success": False, "reason": "invalid_phone"}

        user = await self.orders.find_user_by_phone(merchant_id, phone)
        if user is None:
            user = await self.orders.create_user(merchant_id, phone, message.sender_name)

        order_id = await self._latest_order_id(user["id"])
        conversation = await self.conversations.get_or_create(user["id"], order_id)

        async with self.cache.acquire_lock(f"conversation:{conversation.id}") as acquired:
            if not acquired:
                logger.warning(f"⚠️ Conversation {conversation.id} is locked, message not processed")
                return {"success": False, "reason": "conversation_locked"}

            conversation = await self.conversations.append_message(conversation.id, MessageRole.USER, message.text)
            if conversation.conversation_status != ConversationStatus.AI:
                logger.info(f"Conversation {conversation.id} is {conversation.conversation_status.value}, skipping AI")
                return {"success": True, "reason": "human_handled", "conversation_id": conversation.id}

            ai_response = None
            try:
                ai_response = await self.agent.generate_response(
                    message.text,
                    merchant_id,
                    user["id"],
                    conversation.id,
                    order_id=order_id,
                    history=conversation.history[:-1]
                )
                reply = ai_response.response
                state = ai_response.intent.value if ai_response.intent else "guardrail_blocked"
            except GenerationError as e:
                logger.error(f"❌ Generation failed for conversation {conversation.id}: {e}")
                reply, state = FALLBACK_MESSAGE, "generation_failed"
                try:
                    await self.conversations.escalate(conversation.id, "generation_failure")
                except Exception as escalation_error:
                    logger.error(f"❌ Escalation failed: {escalation_error}")

            await self.conversations.append_message(conversation.id, MessageRole.ASSISTANT, reply, current_state=state)
            sent = await self._send(integration, phone, reply)

            if sent and ai_response and ai_response.upsell_triggered and ai_response.upsell_message:
                if await self._send(integration, phone, ai_response.upsell_message):
                    await self.conversations.append_message(
                        conversation.id, MessageRole.ASSISTANT, ai_response.upsell_message
                    )
                    try:
                        await self.scheduler.record_upsell_sent(merchant_id, user["id"], order_id)
                    except Exception as e:
                        logger.error(f"❌ Failed to record upsell for order {order_id}: {e}")

        return {
            "success": sent,
            "conversation_id": conversation.id,
            "intent": state,
            "requires_human": bool(ai_response and ai_response.requires_human),
        }
