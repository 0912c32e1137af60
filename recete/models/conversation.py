"""
Conversation Models
Message history, intents and the agent's response envelope
"""
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    MERCHANT = "merchant"


class ConversationStatus(str, Enum):
    AI = "ai"
    HUMAN = "human"
    RESOLVED = "resolved"


class Intent(str, Enum):
    QUESTION = "question"
    COMPLAINT = "complaint"
    CHAT = "chat"
    OPT_OUT = "opt_out"
    RETURN_INTENT = "return_intent"


class ConversationMessage(BaseModel):
    role: MessageRole
    content: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class Conversation(BaseModel):
    id: str
    user_id: str
    order_id: Optional[str] = None
    history: List[ConversationMessage] = Field(default_factory=list)
    current_state: Optional[str] = None
    conversation_status: ConversationStatus = ConversationStatus.AI
    escalation_reason: Optional[str] = None
    escalated_at: Optional[str] = None


class AIResponse(BaseModel):
    intent: Optional[Intent] = None  # None when a guardrail short-circuits before classification
    response: str
    rag_context: Optional[str] = None
    guardrail_blocked: bool = False
    guardrail_reason: Optional[str] = None
    requires_human: bool = False
    upsell_triggered: bool = False
    upsell_message: Optional[str] = None
    prevention_attempted: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InboundMessage(BaseModel):
    """Normalized inbound WhatsApp message"""
    phone: str
    text: str
    phone_number_id: str
    message_id: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[str] = None
