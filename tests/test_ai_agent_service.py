import unittest
from unittest.mock import AsyncMock, MagicMock

from recete.models.conversation import ConversationMessage, Intent, MessageRole
from recete.models.events import ConsentStatus
from recete.models.guardrails import GuardrailReason, GuardrailScope
from recete.models.knowledge import OrderProductScope, RAGQueryResponse, RAGResult, SectionType
from recete.models.merchant import MerchantSettings, PersonaSettings
from recete.models.prevention import (
    PreventionOutcome,
    ReturnIntentDecision,
    ReturnPreventionAttempt,
    SatisfactionCheckResult,
)
from recete.services.ai_agent_service import (
    ESCALATION_MESSAGE,
    NO_INFORMATION_BLOCK,
    AIAgentService,
    build_system_prompt,
    preferred_language_for,
    preferred_sections_for,
)
from recete.services.guardrail_service import GuardrailService, get_safe_response
from recete.utils.exceptions import GenerationError
from tests.fakes import fake_llm

MERCHANT_ID = "merchant-1"
PRODUCT_ID = "3f2b8c1e-9d4a-4c6b-8e2f-1a2b3c4d5e6f"


def rag_result():
    return RAGResult(
        chunk_id="c1",
        product_id=PRODUCT_ID,
        product_name="Vitamin C Serum",
        chunk_text="Apply two drops every morning.",
        section_type=SectionType.USAGE,
        similarity=0.82,
    )


class AgentTestCase(unittest.IsolatedAsyncioTestCase):
    def build_agent(self, *llm_outputs, merchant=None):
        self.llm = fake_llm(*llm_outputs)

        self.merchants = MagicMock()
        self.merchants.get_settings = AsyncMock(return_value=merchant or MerchantSettings(merchant_id=MERCHANT_ID, name="Glow"))

        self.rag = MagicMock()
        self.rag.resolve_order_product_scope = AsyncMock(return_value=OrderProductScope(
            product_ids=[PRODUCT_ID], source="external_id"
        ))
        self.rag.query = AsyncMock(return_value=RAGQueryResponse(query="q", results=[rag_result()], total_results=1))

        self.instructions = MagicMock()
        self.instructions.get_instructions = AsyncMock(return_value=[])

        self.return_prevention = MagicMock()
        self.return_prevention.evaluate_return_intent = AsyncMock(return_value=ReturnIntentDecision.ATTEMPT)
        self.return_prevention.get_pending_attempt = AsyncMock(return_value=None)
        self.return_prevention.update_outcome = AsyncMock()
        self.return_prevention.log_attempt = AsyncMock(return_value="att-1")

        self.upsell = MagicMock()
        self.upsell.process_satisfaction_check = AsyncMock(return_value=SatisfactionCheckResult(satisfied=False))

        self.orders = MagicMock()
        self.orders.set_user_consent = AsyncMock()
        self.scheduler = MagicMock()
        self.scheduler.cancel_user_messages = AsyncMock(return_value=2)
        self.conversations = MagicMock()
        self.conversations.escalate = AsyncMock()

        return AIAgentService(
            self.llm, self.merchants, GuardrailService(), self.rag, self.instructions,
            self.return_prevention, self.upsell, self.orders, self.scheduler, self.conversations
        )

    def system_prompt(self, call_index=-1):
        return self.llm.chat.completions.create.await_args_list[call_index].kwargs["messages"][0]["content"]


class TestClassifyIntent(AgentTestCase):
    async def test_known_label(self):
        agent = self.build_agent("complaint")
        self.assertEqual(await agent.classify_intent("Ürün kırık geldi"), Intent.COMPLAINT)

    async def test_label_is_cleaned(self):
        agent = self.build_agent(" Return_Intent.")
        self.assertEqual(await agent.classify_intent("iade"), Intent.RETURN_INTENT)

    async def test_unknown_label_falls_back_to_chat(self):
        agent = self.build_agent("banana")
        self.assertEqual(await agent.classify_intent("hmm"), Intent.CHAT)

    async def test_provider_error_falls_back_to_chat(self):
        agent = self.build_agent(RuntimeError("timeout"))
        self.assertEqual(await agent.classify_intent("hmm"), Intent.CHAT)


class TestGenerateResponse(AgentTestCase):
    async def test_user_guardrail_short_circuits(self):
        agent = self.build_agent()

        response = await agent.generate_response("Yüzümde yanık oluştu", MERCHANT_ID, "user-1", "conv-1")

        self.assertTrue(response.guardrail_blocked)
        self.assertIsNone(response.intent)
        self.assertEqual(response.guardrail_reason, GuardrailReason.CRISIS_KEYWORD.value)
        self.assertTrue(response.requires_human)
        self.llm.chat.completions.create.assert_not_awaited()
        self.conversations.escalate.assert_awaited_once_with("conv-1", "guardrail:crisis_keyword")

    async def test_question_uses_order_scoped_context(self):
        agent = self.build_agent("question", "Her sabah iki damla uygulayın.")

        response = await agent.generate_response(
            "Bu serum nasıl kullanılır?", MERCHANT_ID, "user-1", "conv-1", order_id="order-1"
        )

        self.assertEqual(response.intent, Intent.QUESTION)
        self.assertEqual(response.response, "Her sabah iki damla uygulayın.")
        options = self.rag.query.await_args.args[0]
        self.assertEqual(options.product_ids, [PRODUCT_ID])
        self.assertIn(SectionType.USAGE, options.preferred_section_types)
        self.assertEqual(options.preferred_language, "tr")
        self.assertIn("Apply two drops every morning.", self.system_prompt())
        self.assertIn("Apply two drops", response.rag_context)

    async def test_question_without_order_searches_merchant_wide(self):
        agent = self.build_agent("question", "Yanıt")
        await agent.generate_response("What does the serum contain?", MERCHANT_ID, "user-1", "conv-1")
        self.rag.resolve_order_product_scope.assert_not_awaited()
        self.assertIsNone(self.rag.query.await_args.args[0].product_ids)

    async def test_unresolved_order_skips_retrieval(self):
        agent = self.build_agent("question", "Bu konuda bilgim yok.")
        self.rag.resolve_order_product_scope = AsyncMock(return_value=OrderProductScope())

        response = await agent.generate_response(
            "Bu serum nasıl kullanılır?", MERCHANT_ID, "user-1", "conv-1", order_id="order-1"
        )

        self.assertEqual(response.intent, Intent.QUESTION)
        self.rag.query.assert_not_awaited()
        self.assertIn(NO_INFORMATION_BLOCK, self.system_prompt())
        self.assertIsNone(response.rag_context)

    async def test_scope_failure_skips_retrieval(self):
        agent = self.build_agent("question", "Yanıt")
        self.rag.resolve_order_product_scope = AsyncMock(side_effect=RuntimeError("db down"))

        await agent.generate_response("Bu serum nasıl kullanılır?", MERCHANT_ID, "user-1", "conv-1", order_id="order-1")

        self.rag.query.assert_not_awaited()

    async def test_chat_skips_retrieval(self):
        agent = self.build_agent("chat", "Merhaba!")
        response = await agent.generate_response("Merhaba", MERCHANT_ID, "user-1", "conv-1")
        self.assertEqual(response.response, "Merhaba!")
        self.rag.query.assert_not_awaited()
        self.assertIn(NO_INFORMATION_BLOCK, self.system_prompt())

    async def test_history_is_passed_to_model(self):
        agent = self.build_agent("chat", "Rica ederim")
        history = [
            ConversationMessage(role=MessageRole.USER, content="Selam", timestamp="2024-01-15T09:00:00Z"),
            ConversationMessage(role=MessageRole.ASSISTANT, content="Merhaba", timestamp="2024-01-15T09:00:01Z"),
        ]
        await agent.generate_response("Sağ ol", MERCHANT_ID, "user-1", "conv-1", history=history)
        messages = self.llm.chat.completions.create.await_args.kwargs["messages"]
        self.assertEqual([m["role"] for m in messages], ["system", "user", "assistant", "user"])
        self.assertEqual(messages[-1]["content"], "Sağ ol")

    async def test_unsafe_reply_is_replaced(self):
        agent = self.build_agent("question", "You should take some medication for that.")

        response = await agent.generate_response("Bu krem ne işe yarar?", MERCHANT_ID, "user-1", "conv-1")

        self.assertTrue(response.guardrail_blocked)
        self.assertEqual(response.intent, Intent.QUESTION)
        self.assertEqual(
            response.response,
            get_safe_response(GuardrailReason.MEDICAL_ADVICE, GuardrailScope.AI_RESPONSE)
        )

    async def test_generation_failure_raises(self):
        agent = self.build_agent("chat", RuntimeError("provider down"))
        with self.assertRaises(GenerationError):
            await agent.generate_response("Merhaba", MERCHANT_ID, "user-1", "conv-1")

    async def test_empty_reply_raises(self):
        agent = self.build_agent("chat", "   ")
        with self.assertRaises(GenerationError):
            await agent.generate_response("Merhaba", MERCHANT_ID, "user-1", "conv-1")

    async def test_persona_temperature_is_used(self):
        merchant = MerchantSettings(merchant_id=MERCHANT_ID, persona=PersonaSettings(temperature=0.3))
        agent = self.build_agent("chat", "Merhaba!", merchant=merchant)
        await agent.generate_response("Merhaba", MERCHANT_ID, "user-1", "conv-1")
        self.assertEqual(self.llm.chat.completions.create.await_args.kwargs["temperature"], 0.3)

    async def test_zero_temperature_is_kept(self):
        merchant = MerchantSettings(merchant_id=MERCHANT_ID, persona=PersonaSettings(temperature=0.0))
        agent = self.build_agent("chat", "Merhaba!", merchant=merchant)
        await agent.generate_response("Merhaba", MERCHANT_ID, "user-1", "conv-1")
        self.assertEqual(self.llm.chat.completions.create.await_args.kwargs["temperature"], 0.0)


class TestReturnIntent(AgentTestCase):
    async def test_first_return_intent_attempts_prevention(self):
        agent = self.build_agent("return_intent", "Üzgünüm, doğru kullanım şöyle...")

        response = await agent.generate_response(
            "Ürünü iade etmek istiyorum", MERCHANT_ID, "user-1", "conv-1", order_id="order-1"
        )

        self.assertEqual(response.intent, Intent.RETURN_INTENT)
        self.assertTrue(response.prevention_attempted)
        options = self.rag.query.await_args.args[0]
        self.assertEqual(options.preferred_section_types, [SectionType.USAGE, SectionType.WARNINGS])
        kwargs = self.return_prevention.log_attempt.await_args.kwargs
        self.assertEqual(kwargs["product_id"], PRODUCT_ID)
        self.assertEqual(kwargs["order_id"], "order-1")

    async def test_insistence_hands_over_without_generation(self):
        agent = self.build_agent("return_intent")
        self.return_prevention.evaluate_return_intent = AsyncMock(return_value=ReturnIntentDecision.ESCALATE)

        response = await agent.generate_response("Yine de iade istiyorum", MERCHANT_ID, "user-1", "conv-1")

        self.assertEqual(response.response, ESCALATION_MESSAGE)
        self.assertTrue(response.requires_human)
        self.assertEqual(self.llm.chat.completions.create.await_count, 1)
        self.return_prevention.log_attempt.assert_not_awaited()

    async def test_inactive_addon_handles_as_complaint(self):
        agent = self.build_agent("return_intent", "Yaşadığınız sorun için üzgünüm.")
        self.return_prevention.evaluate_return_intent = AsyncMock(return_value=ReturnIntentDecision.DOWNGRADE)

        response = await agent.generate_response("İade etmek istiyorum", MERCHANT_ID, "user-1", "conv-1")

        self.assertEqual(response.intent, Intent.COMPLAINT)
        self.rag.query.assert_not_awaited()
        self.return_prevention.log_attempt.assert_not_awaited()

    async def test_positive_follow_up_marks_attempt_prevented(self):
        agent = self.build_agent("chat", "Rica ederim!")
        self.return_prevention.get_pending_attempt = AsyncMock(return_value=ReturnPreventionAttempt(
            id="att-1", conversation_id="conv-1"
        ))

        await agent.generate_response("Tamam, deneyeceğim", MERCHANT_ID, "user-1", "conv-1")

        self.return_prevention.update_outcome.assert_awaited_once_with("att-1", PreventionOutcome.PREVENTED)


class TestSideEffects(AgentTestCase):
    async def test_opt_out_updates_consent_and_cancels_messages(self):
        agent = self.build_agent("opt_out", "Artık mesaj almayacaksınız.")

        await agent.generate_response("Bana mesaj göndermeyin", MERCHANT_ID, "user-1", "conv-1")

        self.orders.set_user_consent.assert_awaited_once_with("user-1", ConsentStatus.OPT_OUT)
        self.scheduler.cancel_user_messages.assert_awaited_once_with("user-1")

    async def test_chat_about_an_order_runs_upsell_check(self):
        agent = self.build_agent("chat", "Çok sevindim!")
        self.upsell.process_satisfaction_check = AsyncMock(return_value=SatisfactionCheckResult(
            satisfied=True, upsell_triggered=True, upsell_message="Tonik de deneyin."
        ))

        response = await agent.generate_response("Ürünü çok beğendim", MERCHANT_ID, "user-1", "conv-1", order_id="order-1")

        self.assertTrue(response.upsell_triggered)
        self.assertEqual(response.upsell_message, "Tonik de deneyin.")

    async def test_upsell_failure_does_not_break_reply(self):
        agent = self.build_agent("chat", "Çok sevindim!")
        self.upsell.process_satisfaction_check = AsyncMock(side_effect=RuntimeError("db down"))

        response = await agent.generate_response("Ürünü çok beğendim", MERCHANT_ID, "user-1", "conv-1", order_id="order-1")

        self.assertEqual(response.response, "Çok sevindim!")
        self.assertFalse(response.upsell_triggered)


class TestPromptHelpers(unittest.TestCase):
    def test_blank_bot_info_is_omitted(self):
        merchant = MerchantSettings(
            merchant_id=MERCHANT_ID,
            name="Glow",
            bot_info={"brand_guidelines": "Always warm.", "bot_boundaries": "   "},
        )
        prompt = build_system_prompt(merchant, Intent.CHAT, "")
        self.assertIn("Brand guidelines:\nAlways warm.", prompt)
        self.assertNotIn("Boundaries", prompt)
        self.assertIn(NO_INFORMATION_BLOCK, prompt)

    def test_context_is_included(self):
        merchant = MerchantSettings(merchant_id=MERCHANT_ID)
        prompt = build_system_prompt(merchant, Intent.QUESTION, "Relevant Product Information: ...")
        self.assertIn("Product Information:\nRelevant Product Information", prompt)
        self.assertNotIn(NO_INFORMATION_BLOCK, prompt)

    def test_preferences(self):
        self.assertEqual(preferred_language_for("Nasıl kullanılır?"), "tr")
        self.assertIsNone(preferred_language_for("How to use?"))
        self.assertEqual(preferred_sections_for(Intent.QUESTION, "What ingredients?"), [SectionType.INGREDIENTS])
        self.assertIsNone(preferred_sections_for(Intent.QUESTION, "Merhaba"))


if __name__ == '__main__':
    unittest.main()
