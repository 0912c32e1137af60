"""
Guardrail Models
System and merchant-defined safety rules
"""
from typing import Optional, List, Union
from enum import Enum
from pydantic import BaseModel, Field


class GuardrailReason(str, Enum):
    CRISIS_KEYWORD = "crisis_keyword"
    MEDICAL_ADVICE = "medical_advice"
    UNSAFE_CONTENT = "unsafe_content"
    CUSTOM = "custom"


class GuardrailAction(str, Enum):
    BLOCK = "block"
    ESCALATE = "escalate"


class GuardrailScope(str, Enum):
    USER_MESSAGE = "user_message"
    AI_RESPONSE = "ai_response"
    BOTH = "both"


class GuardrailMatchType(str, Enum):
    KEYWORDS = "keywords"
    PHRASE = "phrase"


class CustomGuardrail(BaseModel):
    """Merchant-defined rule from merchants.guardrail_settings.custom_guardrails"""
    id: Optional[str] = None
    name: str = "custom"
    type: GuardrailMatchType = GuardrailMatchType.KEYWORDS
    value: Union[List[str], str] = Field(default_factory=list)
    apply_to: GuardrailScope = GuardrailScope.BOTH
    action: GuardrailAction = GuardrailAction.BLOCK
    suggested_response: Optional[str] = None
    enabled: bool = True


class GuardrailResult(BaseModel):
    safe: bool
    reason: Optional[GuardrailReason] = None
    custom_reason: Optional[str] = None
    suggested_response: Optional[str] = None
    requires_human: bool = False
    action: Optional[GuardrailAction] = None
