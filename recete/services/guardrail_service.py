"""
Guardrail Service
System and merchant-defined safety checks for user messages and AI responses
"""
import re
import logging
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence

from recete.models.guardrails import (
    CustomGuardrail,
    GuardrailAction,
    GuardrailMatchType,
    GuardrailReason,
    GuardrailResult,
    GuardrailScope,
)

logger = logging.getLogger(__name__)

# Crisis keywords (Turkish and English); these escalate to a human
CRISIS_KEYWORDS = [
    "yanık", "yanıklar", "acı", "ağrı", "ağrıyor", "acıyor",
    "dava", "dava açacağım", "avukat", "hukuki", "tazminat", "zarar",
    "hastane", "acil", "acil servis", "ambulans",
    "ölüm", "ölüyorum", "intihar", "kendimi öldüreceğim",
    "zehir", "zehirlendim", "alerji", "alerjik reaksiyon", "şok", "bayılma", "bayıldım",
    "burn", "burns", "pain", "hurts", "lawsuit", "sue", "lawyer", "legal", "compensation", "damage",
    "hospital", "emergency", "ambulance", "death", "dying", "suicide", "kill myself",
    "poison", "poisoned", "allergy", "allergic reaction", "shock", "fainting", "fainted",
]

MEDICAL_ADVICE_KEYWORDS = [
    "tedavi", "ilaç", "doktor", "doktora git", "tedavi et", "nasıl iyileşir", "iyileştir",
    "tıbbi", "tıbbi tavsiye", "teşhis", "hastalık", "hasta", "semptom", "belirti",
    "treatment", "medicine", "medication", "doctor", "see a doctor", "cure", "heal",
    "medical", "medical advice", "diagnosis", "diagnose", "disease", "sick", "symptom",
]

UNSAFE_CONTENT_KEYWORDS = [
    "bomba", "silah", "uyuşturucu", "patlayıcı",
    "bomb", "weapon", "explosive", "illegal drugs", "hack into",
]

SAFE_RESPONSES = {
    GuardrailScope.USER_MESSAGE: {
        GuardrailReason.CRISIS_KEYWORD: (
            "Anladım, bu ciddi bir durum gibi görünüyor. Lütfen acil durumlar için 112'yi arayın "
            "veya en yakın acil servise başvurun. Size daha iyi yardımcı olabilmemiz için lütfen "
            "müşteri hizmetlerimizle iletişime geçin."
        ),
        GuardrailReason.MEDICAL_ADVICE: (
            "Üzgünüm, tıbbi tavsiye veremem. Sağlık sorunlarınız için lütfen bir sağlık uzmanına "
            "danışın. Ürün kullanımı hakkında sorularınız varsa, size yardımcı olabilirim."
        ),
        GuardrailReason.UNSAFE_CONTENT: "Üzgünüm, bu konuda yardımcı olamıyorum.",
        GuardrailReason.CUSTOM: "Üzgünüm, bu konuda yardımcı olamıyorum. Ürünlerimizle ilgili sorularınızı yanıtlayabilirim.",
    },
    GuardrailScope.AI_RESPONSE: {
        GuardrailReason.CRISIS_KEYWORD: (
            "Size nasıl yardımcı olabilirim? Sorunuzu daha iyi anlayabilmem için lütfen detay verin."
        ),
        GuardrailReason.MEDICAL_ADVICE: (
            "Ürün kullanımı hakkında sorularınız varsa size yardımcı olabilirim. Sağlık sorunları "
            "için lütfen bir sağlık uzmanına danışın."
        ),
        GuardrailReason.UNSAFE_CONTENT: "Üzgünüm, bu konuda yardımcı olamıyorum.",
        GuardrailReason.CUSTOM: "Size başka bir konuda nasıl yardımcı olabilirim?",
    },
}

SYSTEM_RULES = [
    (GuardrailReason.CRISIS_KEYWORD, CRISIS_KEYWORDS, GuardrailAction.ESCALATE),
    (GuardrailReason.MEDICAL_ADVICE, MEDICAL_ADVICE_KEYWORDS, GuardrailAction.BLOCK),
    (GuardrailReason.UNSAFE_CONTENT, UNSAFE_CONTENT_KEYWORDS, GuardrailAction.BLOCK),
]


@lru_cache(maxsize=None)
def _keyword_pattern(keywords: tuple, whole_word: bool) -> re.Pattern:
    # Leading boundary only: Turkish suffixes ("ağrıyor") must still match
    tail = r"(?!\w)" if whole_word else ""
    alternatives = "|".join(re.escape(k.casefold()) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternatives}){tail}")


def contains_keyword(text: str, keywords: Iterable[str], whole_word: bool = False) -> bool:
    keywords = tuple(k for k in keywords if k and k.strip())
    if not keywords:
        return False
    return bool(_keyword_pattern(keywords, whole_word).search(text.casefold()))


def _rule_values(rule: CustomGuardrail) -> List[str]:
    if isinstance(rule.value, str):
        if rule.type == GuardrailMatchType.KEYWORDS:
            return [v.strip() for v in rule.value.split(",") if v.strip()]
        return [rule.value.strip()] if rule.value.strip() else []
    return [v.strip() for v in rule.value if v and v.strip()]


def _rule_applies(rule: CustomGuardrail, direction: GuardrailScope) -> bool:
    return rule.apply_to == GuardrailScope.BOTH or rule.apply_to == direction


def _rule_matches(rule: CustomGuardrail, text: str) -> bool:
    values = _rule_values(rule)
    if rule.type == GuardrailMatchType.PHRASE:
        lowered = text.casefold()
        return any(value.casefold() in lowered for value in values)
    return contains_keyword(text, values, whole_word=True)


def get_safe_response(reason: GuardrailReason, direction: GuardrailScope = GuardrailScope.USER_MESSAGE) -> str:
    return SAFE_RESPONSES[direction][reason]


class GuardrailService:
    """Evaluates text against system rules first, then merchant rules; first match wins."""

    def check_message(
        self,
        text: str,
        custom_guardrails: Optional[Sequence[CustomGuardrail]] = None,
        direction: GuardrailScope = GuardrailScope.USER_MESSAGE
    ) -> GuardrailResult:
        """
        Check a user message or AI response

        Args:
            text: Text to check
            custom_guardrails: Merchant-defined rules
            direction: user_message or ai_response

        Returns:
            GuardrailResult; escalate actions set requires_human
        """
        direction = GuardrailScope(direction)

        for reason, keywords, action in SYSTEM_RULES:
            if contains_keyword(text, keywords):
                logger.warning(f"🛡️ System guardrail triggered ({direction.value}): {reason.value}")
                return GuardrailResult(
                    safe=False,
                    reason=reason,
                    suggested_response=get_safe_response(reason, direction),
                    requires_human=action == GuardrailAction.ESCALATE,
                    action=action
                )

        for rule in custom_guardrails or []:
            if not rule.enabled or not _rule_applies(rule, direction):
                continue
            if _rule_matches(rule, text):
                logger.warning(f"🛡️ Custom guardrail '{rule.name}' triggered ({direction.value})")
                return GuardrailResult(
                    safe=False,
                    reason=GuardrailReason.CUSTOM,
                    custom_reason=rule.name,
                    suggested_response=rule.suggested_response or get_safe_response(GuardrailReason.CUSTOM, direction),
                    requires_human=rule.action == GuardrailAction.ESCALATE,
                    action=rule.action
                )

        return GuardrailResult(safe=True)
