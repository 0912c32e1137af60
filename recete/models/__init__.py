"""Pydantic models"""
from .events import (
    EventSource, EventType, OrderStatus, ConsentStatus,
    NormalizedEvent, EventCustomer, EventOrder, EventItem,
    IngestResult, ProcessResult, BatchProcessResult, CSVParseResult,
)
from .knowledge import (
    SectionType, SourceKind, TextChunk, EmbeddingResult, IndexResult,
    RAGResult, RAGQueryOptions, RAGQueryResponse, OrderProductScope, ProductInstruction,
)
from .conversation import (
    MessageRole, ConversationStatus, Intent, ConversationMessage,
    Conversation, AIResponse, InboundMessage,
)
from .guardrails import (
    GuardrailReason, GuardrailAction, GuardrailScope, GuardrailMatchType,
    CustomGuardrail, GuardrailResult,
)
from .merchant import InstructionScope, PersonaSettings, MerchantSettings, ProductRecommendation
from .prevention import (
    PreventionOutcome, ReturnIntentDecision, ReturnPreventionAttempt,
    Sentiment, SatisfactionResult, SatisfactionCheckResult, TaskType, TaskStatus,
)
