"""
AI Agent Service
Per-message decision pipeline: guardrails, intent, retrieval, prevention/upsell branching, generation
"""
import logging
from typing import List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from recete.config import settings
from recete.models.conversation import AIResponse, ConversationMessage, Intent, MessageRole
from recete.models.events import ConsentStatus
from recete.models.guardrails import GuardrailResult, GuardrailScope
from recete.models.knowledge import RAGQueryOptions, RAGResult, SectionType
from recete.models.merchant import InstructionScope, MerchantSettings
from recete.models.prevention import PreventionOutcome, ReturnIntentDecision
from recete.services.conversation_service import ConversationService
from recete.services.guardrail_service import GuardrailService, contains_keyword, get_safe_response
from recete.services.merchant_service import MerchantService
from recete.services.message_scheduler import MessageScheduler
from recete.services.order_processor import OrderProcessor
from recete.services.product_instruction_service import ProductInstructionService, format_instructions
from recete.services.rag_service import RAGService, build_query_cache_key, format_for_llm
from recete.services.return_prevention_service import ReturnPreventionService, is_positive_signal
from recete.services.upsell_service import UpsellService
from recete.utils.exceptions import GenerationError

logger = logging.getLogger(__name__)

INTENT_PROMPT = """You are an intent classifier for a customer service chatbot.
Classify the user's message into one of these categories:
- question: User is asking about product usage, features, or how to use something
- complaint: User is reporting a problem, issue, or dissatisfaction
- chat: General conversation, greetings, or casual messages
- opt_out: User wants to stop receiving messages or unsubscribe
- return_intent: User wants to return the product or get a refund

Respond with ONLY the category name (question, complaint, chat, opt_out, or return_intent)."""

INTENT_DIRECTIVES = {
    Intent.QUESTION: (
        "The user is asking a question. Provide helpful, accurate information based on the "
        "product context provided."
    ),
    Intent.COMPLAINT: (
        "The user has a complaint. Be empathetic, apologize if appropriate, and offer solutions."
    ),
    Intent.CHAT: "The user is having a casual conversation. Be friendly and engaging.",
    Intent.OPT_OUT: (
        "The user wants to opt out. Respect their choice and confirm that they will no longer "
        "receive messages."
    ),
    Intent.RETURN_INTENT: (
        "The user wants to return the product. Never accept or process the return yourself. "
        "Acknowledge their frustration, then help them get the expected result: explain the correct "
        "usage step by step using the product information and ask what went wrong."
    ),
}

BOT_INFO_LABELS = [
    ("brand_guidelines", "Brand guidelines"),
    ("bot_boundaries", "Boundaries"),
    ("recipe_overview", "Product usage overview"),
    ("custom_instructions", "Additional instructions"),
]

RESPONSE_LENGTHS = {
    "short": "Keep answers to 1-2 sentences.",
    "medium": "Keep answers to 2-4 sentences.",
    "long": "Give detailed answers when needed, but stay focused.",
}

NO_INFORMATION_BLOCK = (
    "No product information is available for this message. Do not invent product details, "
    "ingredients, or usage instructions; offer to connect the user with the store instead."
)

ESCALATION_MESSAGE = (
    "Talebinizi müşteri temsilcimize iletiyorum. En kısa sürede sizinle iletişime geçecekler."
)

TURKISH_CHARACTERS = set("çğıöşüÇĞİÖŞÜ")

QUESTION_SECTION_HINTS = [
    (SectionType.USAGE, ("nasıl", "kullan", "uygula", "how", "use", "apply")),
    (SectionType.INGREDIENTS, ("içerik", "içinde", "ingredient", "contain")),
    (SectionType.WARNINGS, ("yan etki", "güvenli", "hamile", "side effect", "safe", "pregnan")),
]


def preferred_sections_for(intent: Intent, message: str) -> Optional[List[SectionType]]:
    if intent == Intent.RETURN_INTENT:
        return [SectionType.USAGE, SectionType.WARNINGS]
    sections = [section for section, hints in QUESTION_SECTION_HINTS if contains_keyword(message, hints)]
    return sections or None


def preferred_language_for(message: str) -> Optional[str]:
    return "tr" if TURKISH_CHARACTERS.intersection(message) else None


def build_system_prompt(merchant: MerchantSettings, intent: Intent, context: str) -> str:
    """
    Compose persona, bot info, intent directive, context and response format

    Blank bot-info values are omitted. An empty context yields an explicit
    no-information block so the model never answers without framing.
    """
    persona = merchant.persona
    name = persona.bot_name or f"{merchant.name} assistant"
    sections = [f"You are {name}, a helpful customer service assistant for {merchant.name}."]

    persona_lines = []
    if persona.tone:
        persona_lines.append(f"Tone: {persona.tone}")
    if persona.style:
        persona_lines.append(f"Style: {persona.style}")
    persona_lines.append("Use emojis sparingly." if persona.emoji else "Do not use emojis.")
    persona_lines.append(RESPONSE_LENGTHS.get(persona.response_length, RESPONSE_LENGTHS["medium"]))
    sections.append("\n".join(persona_lines))

    for key, label in BOT_INFO_LABELS:
        value = (merchant.bot_info.get(key) or "").strip()
        if value:
            sections.append(f"{label}:\n{value}")

    sections.append(INTENT_DIRECTIVES[intent])

    if context.strip():
        sections.append(
            f"Product Information:\n{context}\n\n"
            "Use this information to answer accurately. If the answer is not in it, say you don't have that information."
        )
    else:
        sections.append(NO_INFORMATION_BLOCK)

    sections.append(
        "Keep responses concise, friendly, and helpful. "
        "Respond in Turkish unless the user writes in another language."
    )
    return "\n\n".join(sections)


def _unique(ids: Sequence[str]) -> List[str]:
    seen, ordered = set(), []
    for value in ids:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class AIAgentService:
    """Top-level conversational decision function"""

    def __init__(
        self,
        llm: AsyncOpenAI,
        merchants: MerchantService,
        guardrails: GuardrailService,
        rag: RAGService,
        instructions: ProductInstructionService,
        return_prevention: ReturnPreventionService,
        upsell: UpsellService,
        orders: OrderProcessor,
        scheduler: MessageScheduler,
        conversations: ConversationService
    ):
        self.llm = llm
        self.merchants = merchants
        self.guardrails = guardrails
        self.rag = rag
        self.instructions = instructions
        self.return_prevention = return_prevention
        self.upsell = upsell
        self.orders = orders
        self.scheduler = scheduler
        self.conversations = conversations

    async def classify_intent(self, message: str) -> Intent:
        """Closed-set classification; unparseable output and provider errors fall back to chat."""
        try:
            response = await self.llm.chat.completions.create(
                model=settings.CLASSIFIER_MODEL,
                messages=[
                    {"role": "system", "content": INTENT_PROMPT},
                    {"role": "user", "content": message},
                ],
                temperature=0.1,
                max_tokens=settings.CLASSIFIER_MAX_TOKENS
            )
            raw = (response.choices[0].message.content or "").strip().lower().strip(".\"' ")
            return Intent(raw)
        except ValueError:
            logger.warning("⚠️ Unrecognized intent label, defaulting to chat")
        except Exception as e:
            logger.error(f"❌ Intent classification failed: {e}")
        return Intent.CHAT

    async def _retrieve_context(
        self,
        message: str,
        merchant: MerchantSettings,
        intent: Intent,
        order_id: Optional[str]
    ) -> Tuple[str, List[RAGResult], List[str]]:
        """
        RAG plus usage instructions; every failure degrades to an empty context.

        Returns:
            (context text, RAG results, order-scoped product ids)
        """
        scoped_ids: List[str] = []
        if order_id:
            try:
                scope = await self.rag.resolve_order_product_scope(order_id, merchant.merchant_id)
                scoped_ids = scope.product_ids
            except Exception as e:
                logger.warning(f"⚠️ Order scope resolution failed for {order_id}: {e}")

        results: List[RAGResult] = []
        if order_id and not scoped_ids:
            # Unresolved order: no product scope, so no retrieval
            logger.info(f"ℹ️ No products resolved for order {order_id}, skipping RAG")
        else:
            try:
                rag_response = await self.rag.query(RAGQueryOptions(
                    merchant_id=merchant.merchant_id,
                    query=message,
                    product_ids=scoped_ids or None,
                    top_k=settings.RAG_TOP_K,
                    similarity_threshold=settings.RAG_SIMILARITY_THRESHOLD,
                    preferred_section_types=preferred_sections_for(intent, message),
                    preferred_language=preferred_language_for(message),
                    cache_key=build_query_cache_key(merchant.merchant_id, message, scoped_ids)
                ))
                results = rag_response.results
            except Exception as e:
                logger.error(f"❌ RAG retrieval failed: {e}")

        instruction_ids = list(scoped_ids)
        if merchant.instruction_scope == InstructionScope.RAG_PRODUCTS_TOO:
            instruction_ids += [r.product_id for r in results]
        instructions = await self.instructions.get_instructions(_unique(instruction_ids))

        parts = []
        if results:
            parts.append(format_for_llm(results))
        if instructions:
            parts.append("Usage Instructions:\n" + format_instructions(instructions))
        return "\n\n".join(parts), results, scoped_ids

    async def _escalate(self, conversation_id: str, reason: str) -> None:
        try:
            await self.conversations.escalate(conversation_id, reason)
        except Exception as e:
            logger.error(f"❌ Escalation failed for conversation {conversation_id}: {e}")

    def _blocked(self, intent: Optional[Intent], result: GuardrailResult, direction: GuardrailScope, context: Optional[str] = None) -> AIResponse:
        return AIResponse(
            intent=intent,
            response=result.suggested_response or get_safe_response(result.reason, direction),
            rag_context=context or None,
            guardrail_blocked=True,
            guardrail_reason=result.custom_reason or (result.reason.value if result.reason else None),
            requires_human=result.requires_human
        )

    async def generate_response(
        self,
        message: str,
        merchant_id: str,
        user_id: str,
        conversation_id: str,
        order_id: Optional[str] = None,
        history: Sequence[ConversationMessage] = ()
    ) -> AIResponse:
        """
        Produce the assistant reply for one inbound message

        Args:
            message: User message text
            merchant_id: Merchant UUID
            user_id: User UUID
            conversation_id: Conversation UUID
            order_id: Order the conversation is about, if known
            history: Prior conversation messages (last 10 are sent to the model)

        Returns:
            AIResponse

        Raises:
            GenerationError: If the final LLM call fails
        """
        merchant = await self.merchants.get_settings(merchant_id)

        user_check = self.guardrails.check_message(message, merchant.custom_guardrails, GuardrailScope.USER_MESSAGE)
        if not user_check.safe:
            if user_check.requires_human:
                await self._escalate(conversation_id, f"guardrail:{user_check.custom_reason or user_check.reason.value}")
            return self._blocked(None, user_check, GuardrailScope.USER_MESSAGE)

        intent = await self.classify_intent(message)

        decision = None
        if intent == Intent.RETURN_INTENT:
            try:
                decision = await self.return_prevention.evaluate_return_intent(merchant_id, conversation_id)
            except Exception as e:
                logger.error(f"❌ Return intent evaluation failed: {e}")
                decision = ReturnIntentDecision.DOWNGRADE

            if decision == ReturnIntentDecision.DOWNGRADE:
                intent = Intent.COMPLAINT
            elif decision == ReturnIntentDecision.ESCALATE:
                logger.info(f"🚨 Return insistence in conversation {conversation_id}, handing over")
                return AIResponse(
                    intent=intent,
                    response=ESCALATION_MESSAGE,
                    requires_human=True,
                    metadata={"return_prevention": PreventionOutcome.ESCALATED.value}
                )

        if intent in (Intent.CHAT, Intent.QUESTION) and is_positive_signal(message):
            try:
                pending = await self.return_prevention.get_pending_attempt(conversation_id)
                if pending:
                    await self.return_prevention.update_outcome(pending.id, PreventionOutcome.PREVENTED)
            except Exception as e:
                logger.warning(f"⚠️ Could not update prevention outcome: {e}")

        context, results, scoped_ids = "", [], []
        if intent == Intent.QUESTION or decision == ReturnIntentDecision.ATTEMPT:
            context, results, scoped_ids = await self._retrieve_context(message, merchant, intent, order_id)

        messages = [{"role": "system", "content": build_system_prompt(merchant, intent, context)}]
        for item in list(history)[-settings.HISTORY_LIMIT:]:
            messages.append({
                "role": "user" if item.role == MessageRole.USER else "assistant",
                "content": item.content,
            })
        messages.append({"role": "user", "content": message})

        try:
            completion = await self.llm.chat.completions.create(
                model=settings.CHAT_MODEL,
                messages=messages,
                temperature=merchant.persona.temperature if merchant.persona.temperature is not None else 0.7,
                max_tokens=settings.RESPONSE_MAX_TOKENS
            )
            reply = (completion.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error(f"❌ LLM generation failed: {e}")
            raise GenerationError(f"Failed to generate response: {e}")
        if not reply:
            raise GenerationError("LLM returned an empty response")

        response_check = self.guardrails.check_message(reply, merchant.custom_guardrails, GuardrailScope.AI_RESPONSE)
        if not response_check.safe:
            if response_check.requires_human:
                await self._escalate(conversation_id, f"response_guardrail:{response_check.custom_reason or response_check.reason.value}")
            return self._blocked(intent, response_check, GuardrailScope.AI_RESPONSE, context)

        ai_response = AIResponse(intent=intent, response=reply, rag_context=context or None)

        if decision == ReturnIntentDecision.ATTEMPT:
            try:
                await self.return_prevention.log_attempt(
                    merchant_id,
                    conversation_id,
                    user_id,
                    trigger_message=message,
                    prevention_response=reply,
                    order_id=order_id,
                    product_id=(scoped_ids or [r.product_id for r in results] or [None])[0]
                )
                ai_response.prevention_attempted = True
            except Exception as e:
                logger.error(f"❌ Failed to log prevention attempt: {e}")

        if intent == Intent.CHAT and order_id:
            try:
                check = await self.upsell.process_satisfaction_check(
                    user_id, order_id, merchant, message, exclude_product_ids=scoped_ids
                )
                ai_response.upsell_triggered = check.upsell_triggered
                ai_response.upsell_message = check.upsell_message
            except Exception as e:
                logger.error(f"❌ Upsell check failed: {e}")

        if intent == Intent.OPT_OUT:
            try:
                await self.orders.set_user_consent(user_id, ConsentStatus.OPT_OUT)
                await self.scheduler.cancel_user_messages(user_id)
            except Exception as e:
                logger.error(f"❌ Opt-out handling failed for user {user_id}: {e}")

        return ai_response
