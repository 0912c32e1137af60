"""
Merchant Service
Persona, guardrail, bot-info and add-on settings with read-through caching
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from supabase import Client

from recete.config import settings
from recete.models.guardrails import CustomGuardrail
from recete.models.merchant import InstructionScope, MerchantSettings, PersonaSettings
from recete.services.cache_service import CacheService

logger = logging.getLogger(__name__)

BOT_INFO_KEYS = ("brand_guidelines", "bot_boundaries", "recipe_overview", "custom_instructions")


def _parse_guardrails(raw: Any) -> List[CustomGuardrail]:
    rules = []
    for item in raw or []:
        try:
            rules.append(CustomGuardrail(**item))
        except (ValidationError, TypeError) as e:
            logger.warning(f"⚠️ Skipping invalid custom guardrail: {e}")
    return rules


class MerchantService:
    """Read access to merchant configuration used by the agent"""

    def __init__(self, db: Client, cache: CacheService):
        self.db = db
        self.cache = cache

    async def get_settings(self, merchant_id: str) -> MerchantSettings:
        """
        Merchant persona, custom guardrails, bot info and instruction scope

        Missing or unreadable rows degrade to defaults.
        """
        cached = await self.cache.get("merchant_settings", merchant_id)
        if cached:
            return MerchantSettings(**cached)

        try:
            response = await asyncio.to_thread(
                lambda: self.db.table("merchants")
                .select("id, name, persona_settings, guardrail_settings, instruction_scope")
                .eq("id", merchant_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"❌ Failed to load merchant {merchant_id}: {e}")
            return MerchantSettings(merchant_id=merchant_id)

        if not response.data:
            logger.warning(f"⚠️ Merchant {merchant_id} not found, using defaults")
            return MerchantSettings(merchant_id=merchant_id)

        row = response.data[0]
        try:
            persona = PersonaSettings(**(row.get("persona_settings") or {}))
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid persona settings for merchant {merchant_id}: {e.error_count()} errors")
            persona = PersonaSettings()

        try:
            scope = InstructionScope(row.get("instruction_scope") or InstructionScope.ORDER_ONLY.value)
        except ValueError:
            scope = InstructionScope.ORDER_ONLY

        merchant_settings = MerchantSettings(
            merchant_id=merchant_id,
            name=row.get("name") or "Biz",
            persona=persona,
            custom_guardrails=_parse_guardrails((row.get("guardrail_settings") or {}).get("custom_guardrails")),
            bot_info=await self.get_bot_info(merchant_id),
            instruction_scope=scope
        )

        await self.cache.set(
            "merchant_settings",
            merchant_id,
            merchant_settings.model_dump(mode="json"),
            settings.MERCHANT_CACHE_TTL
        )
        return merchant_settings

    async def get_bot_info(self, merchant_id: str) -> Dict[str, str]:
        """Non-blank merchant_bot_info values for the known keys."""
        try:
            response = await asyncio.to_thread(
                lambda: self.db.table("merchant_bot_info")
                .select("key, value")
                .eq("merchant_id", merchant_id)
                .execute()
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to load bot info for merchant {merchant_id}: {e}")
            return {}

        return {
            row["key"]: row["value"].strip()
            for row in response.data or []
            if row.get("key") in BOT_INFO_KEYS and (row.get("value") or "").strip()
        }

    async def is_addon_active(self, merchant_id: str, addon_key: str) -> bool:
        cache_key = f"{merchant_id}:{addon_key}"
        cached = await self.cache.get("merchant_addon", cache_key)
        if cached is not None:
            return bool(cached)

        response = await asyncio.to_thread(
            lambda: self.db.table("merchant_addons")
            .select("status")
            .eq("merchant_id", merchant_id)
            .eq("addon_key", addon_key)
            .limit(1)
            .execute()
        )
        active = bool(response.data) and response.data[0].get("status") == "active"
        await self.cache.set("merchant_addon", cache_key, active, settings.ADDON_CACHE_TTL)
        return active

    async def get_whatsapp_integration(self, phone_number_id: str) -> Optional[Dict[str, Any]]:
        """Active WhatsApp integration (merchant_id, access_token) for a Cloud API phone number id."""
        response = await asyncio.to_thread(
            lambda: self.db.table("merchant_integrations")
            .select("id, merchant_id, phone_number_id, access_token")
            .eq("channel", "whatsapp")
            .eq("phone_number_id", phone_number_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None
