"""
Conversation Service
Conversation rows, message history and human escalation
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from supabase import Client

from recete.models.conversation import Conversation, ConversationMessage, ConversationStatus, MessageRole

logger = logging.getLogger(__name__)


class ConversationService:
    """
    Read-modify-write of conversation history.

    Callers serialize writes per conversation with CacheService.acquire_lock.
    """

    def __init__(self, db: Client):
        self.db = db

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        response = await asyncio.to_thread(
            lambda: self.db.table("conversations").select("*").eq("id", conversation_id).limit(1).execute()
        )
        return Conversation(**response.data[0]) if response.data else None

    async def get_or_create(self, user_id: str, order_id: Optional[str] = None) -> Conversation:
        """Latest conversation of the user, or a new AI-handled one."""
        response = await asyncio.to_thread(
            lambda: self.db.table("conversations")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if response.data:
            conversation = Conversation(**response.data[0])
            if order_id and conversation.order_id != order_id:
                await asyncio.to_thread(
                    lambda: self.db.table("conversations")
                    .update({"order_id": order_id})
                    .eq("id", conversation.id)
                    .execute()
                )
                conversation.order_id = order_id
            return conversation

        row = {
            "user_id": user_id,
            "order_id": order_id,
            "history": [],
            "conversation_status": ConversationStatus.AI.value,
        }
        created = await asyncio.to_thread(lambda: self.db.table("conversations").insert(row).execute())
        if not created.data:
            raise RuntimeError("Conversation insert returned no data")
        logger.info(f"💬 Created conversation {created.data[0]['id']} for user {user_id}")
        return Conversation(**created.data[0])

    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        current_state: Optional[str] = None
    ) -> Conversation:
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise RuntimeError(f"Conversation {conversation_id} not found")

        conversation.history.append(ConversationMessage(role=role, content=content))
        updates = {"history": [m.model_dump(mode="json") for m in conversation.history]}
        if current_state is not None:
            updates["current_state"] = current_state
            conversation.current_state = current_state

        await asyncio.to_thread(
            lambda: self.db.table("conversations").update(updates).eq("id", conversation_id).execute()
        )
        return conversation

    async def escalate(self, conversation_id: str, reason: str) -> None:
        """Hand the conversation over to a human."""
        await asyncio.to_thread(
            lambda: self.db.table("conversations").update({
                "conversation_status": ConversationStatus.HUMAN.value,
                "escalation_reason": reason,
                "escalated_at": datetime.now(timezone.utc).isoformat(),
            }).eq("id", conversation_id).execute()
        )
        logger.warning(f"🚨 Conversation {conversation_id} escalated to human: {reason}")
