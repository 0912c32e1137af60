"""
Product Instruction Service
Structured usage instructions per product
"""
import asyncio
import logging
from typing import List

from supabase import Client

from recete.models.knowledge import ProductInstruction

logger = logging.getLogger(__name__)


def format_instructions(instructions: List[ProductInstruction]) -> str:
    """Render instructions for the system prompt; empty input gives an empty string."""
    blocks = []
    for instruction in instructions:
        lines = [f"Ürün: {instruction.product_name or instruction.product_id}"]
        if instruction.usage_instructions:
            lines.append(f"Kullanım: {instruction.usage_instructions}")
        if instruction.recipe_summary:
            lines.append(f"Özet: {instruction.recipe_summary}")
        if instruction.prevention_tips:
            lines.append(f"İpuçları: {instruction.prevention_tips}")
        if instruction.video_url:
            lines.append(f"Video: {instruction.video_url}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class ProductInstructionService:
    def __init__(self, db: Client):
        self.db = db

    async def get_instructions(self, product_ids: List[str]) -> List[ProductInstruction]:
        if not product_ids:
            return []
        try:
            response = await asyncio.to_thread(
                lambda: self.db.table("product_instructions")
                .select("product_id, usage_instructions, recipe_summary, video_url, prevention_tips, products(name)")
                .in_("product_id", product_ids)
                .execute()
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to load product instructions: {e}")
            return []

        return [
            ProductInstruction(
                product_id=row["product_id"],
                product_name=(row.get("products") or {}).get("name"),
                usage_instructions=row.get("usage_instructions") or "",
                recipe_summary=row.get("recipe_summary"),
                video_url=row.get("video_url"),
                prevention_tips=row.get("prevention_tips")
            )
            for row in response.data or []
        ]
