"""
Return Prevention, Upsell and Scheduling Models
"""
from typing import Optional
from enum import Enum
from pydantic import BaseModel


class PreventionOutcome(str, Enum):
    PENDING = "pending"
    PREVENTED = "prevented"
    RETURNED = "returned"
    ESCALATED = "escalated"


class ReturnIntentDecision(str, Enum):
    DOWNGRADE = "downgrade"   # add-on inactive: handle as a complaint
    ATTEMPT = "attempt"       # first return intent: try to prevent
    ESCALATE = "escalate"     # customer insists: hand over to a human


class ReturnPreventionAttempt(BaseModel):
    id: str
    conversation_id: str
    merchant_id: Optional[str] = None
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    product_id: Optional[str] = None
    trigger_message: str = ""
    prevention_response: str = ""
    outcome: PreventionOutcome = PreventionOutcome.PENDING


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class SatisfactionResult(BaseModel):
    satisfied: bool = False
    confidence: float = 0.5
    sentiment: Sentiment = Sentiment.NEUTRAL


class SatisfactionCheckResult(BaseModel):
    satisfied: bool
    upsell_triggered: bool = False
    upsell_message: Optional[str] = None


class TaskType(str, Enum):
    WELCOME = "welcome"
    CHECKIN_T3 = "checkin_t3"
    CHECKIN_T14 = "checkin_t14"
    UPSELL = "upsell"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
