"""
Merchant Models
Persona, guardrail and add-on settings consumed by the AI agent
"""
from typing import Optional, List, Dict
from enum import Enum
from pydantic import BaseModel, Field

from .guardrails import CustomGuardrail


class InstructionScope(str, Enum):
    ORDER_ONLY = "order_only"
    RAG_PRODUCTS_TOO = "rag_products_too"


class PersonaSettings(BaseModel):
    bot_name: Optional[str] = None
    tone: Optional[str] = None
    style: Optional[str] = None
    emoji: bool = False
    response_length: str = "medium"  # short | medium | long
    temperature: float = 0.7

    class Config:
        extra = "allow"


class MerchantSettings(BaseModel):
    merchant_id: str
    name: str = "Biz"
    persona: PersonaSettings = Field(default_factory=PersonaSettings)
    custom_guardrails: List[CustomGuardrail] = Field(default_factory=list)
    bot_info: Dict[str, str] = Field(default_factory=dict)
    instruction_scope: InstructionScope = InstructionScope.ORDER_ONLY


class ProductRecommendation(BaseModel):
    product_id: str
    product_name: str
    product_url: Optional[str] = None
    reason: str
