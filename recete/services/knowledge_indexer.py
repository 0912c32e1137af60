"""
Knowledge Indexer
Chunks, embeds and persists a product's searchable knowledge
"""
import asyncio
import hashlib
import logging
from typing import List, Optional

from supabase import Client

from recete.models.knowledge import IndexResult, SourceKind
from recete.services.embedding_service import EmbeddingService, is_valid_chunk_size
from recete.utils.chunking import chunk_text

logger = logging.getLogger(__name__)

CHUNKS_TABLE = "knowledge_chunks"


class KnowledgeIndexer:
    """Builds the knowledge_chunks rows for products"""

    def __init__(self, db: Client, embedding_service: EmbeddingService):
        self.db = db
        self.embeddings = embedding_service

    async def _get_product_name(self, product_id: str) -> str:
        response = await asyncio.to_thread(
            lambda: self.db.table("products").select("name").eq("id", product_id).limit(1).execute()
        )
        if response.data and response.data[0].get("name"):
            return response.data[0]["name"]
        return "Product"

    async def index_product(
        self,
        product_id: str,
        raw_text: Optional[str],
        enriched_text: Optional[str] = None,
        product_name: Optional[str] = None
    ) -> IndexResult:
        """
        Re-index one product

        Prior chunks are deleted and fully replaced. Deletion happens only after
        embedding succeeded; a failed insert can leave the product with zero chunks.

        Args:
            product_id: Product UUID
            raw_text: Scraped/raw product text
            enriched_text: LLM-enriched text with section markers (preferred)
            product_name: Used for the chunk prefix (looked up if omitted)

        Returns:
            IndexResult; failures are reported with success=False, never raised
        """
        if enriched_text and enriched_text.strip():
            content, source_kind = enriched_text, SourceKind.ENRICHED
        else:
            content, source_kind = raw_text or "", SourceKind.RAW

        if not content.strip():
            logger.warning(f"⚠️ No content to index for product {product_id}")
            return IndexResult(product_id=product_id, success=False, error="No content to index")

        try:
            name = product_name or await self._get_product_name(product_id)

            chunks = chunk_text(content)
            if not chunks:
                return IndexResult(product_id=product_id, success=False, error="Chunking produced no chunks")

            texts = [f"[{name}] {chunk.text}" for chunk in chunks]
            oversized = [i for i, text in enumerate(texts) if not is_valid_chunk_size(text)]
            if oversized:
                return IndexResult(
                    product_id=product_id,
                    success=False,
                    error=f"Chunks exceed token limit: {oversized}"
                )

            embeddings = await self.embeddings.embed_batch(texts)

            await self.delete_product_chunks(product_id)

            rows = [
                {
                    "product_id": product_id,
                    "chunk_text": text,
                    "embedding": result.vector,
                    "chunk_index": chunk.index,
                    "section_type": chunk.section_type.value,
                    "language_code": chunk.language_code,
                    "content_hash": hashlib.sha256(text.encode("utf-8")).hexdigest(),
                    "source_kind": source_kind.value,
                }
                for chunk, text, result in zip(chunks, texts, embeddings)
            ]
            await asyncio.to_thread(lambda: self.db.table(CHUNKS_TABLE).insert(rows).execute())

            total_tokens = sum(result.token_count for result in embeddings)
            logger.info(f"✅ Indexed product {product_id}: {len(rows)} chunks ({source_kind.value})")

            return IndexResult(
                product_id=product_id,
                chunks_created=len(rows),
                total_tokens=total_tokens,
                success=True
            )

        except Exception as e:
            logger.error(f"❌ Indexing failed for product {product_id}: {e}", exc_info=True)
            return IndexResult(product_id=product_id, success=False, error=str(e))

    async def index_products(self, product_ids: List[str]) -> List[IndexResult]:
        """Index several products from their stored content, one at a time."""
        if not product_ids:
            return []

        response = await asyncio.to_thread(
            lambda: self.db.table("products")
            .select("id, name, raw_content, enriched_content")
            .in_("id", product_ids)
            .execute()
        )
        products = {row["id"]: row for row in (response.data or [])}

        results = []
        for product_id in product_ids:
            product = products.get(product_id)
            if not product:
                results.append(IndexResult(product_id=product_id, success=False, error="Product not found"))
                continue
            results.append(await self.index_product(
                product_id,
                product.get("raw_content"),
                product.get("enriched_content"),
                product.get("name")
            ))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"📚 Batch indexing finished: {succeeded}/{len(results)} products")
        return results

    async def get_product_chunk_count(self, product_id: str) -> int:
        response = await asyncio.to_thread(
            lambda: self.db.table(CHUNKS_TABLE)
            .select("id", count="exact")
            .eq("product_id", product_id)
            .execute()
        )
        return response.count or 0

    async def delete_product_chunks(self, product_id: str) -> None:
        await asyncio.to_thread(
            lambda: self.db.table(CHUNKS_TABLE).delete().eq("product_id", product_id).execute()
        )
