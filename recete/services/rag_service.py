"""
RAG Service
Semantic search over product knowledge chunks with preference boosting and diversity re-ranking
"""
import re
import time
import asyncio
import hashlib
import logging
import unicodedata
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from recete.config import settings
from recete.models.knowledge import (
    OrderProductScope,
    RAGQueryOptions,
    RAGQueryResponse,
    RAGResult,
    SectionType,
)
from recete.services.cache_service import CacheService
from recete.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

QUERY_CACHE_NAMESPACE = "rag_query"
EMBEDDING_CACHE_NAMESPACE = "rag_embedding"

SECTION_BOOST = 0.08
LANGUAGE_BOOST = 0.03
MAX_BOOSTED_SIMILARITY = 0.999
PRODUCT_PENALTY_STEP = 0.06
PRODUCT_PENALTY_CAP = 0.12
SECTION_PENALTY = 0.04
PREFERENCE_FETCH_MULTIPLIER = 3

NO_RESULTS_TEXT = "No relevant product information found."

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE
)


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value.strip()))


def normalize_name(name: Optional[str]) -> str:
    """Locale-insensitive key for exact product-name matching"""
    return unicodedata.normalize("NFKC", name or "").casefold().strip()


def build_query_cache_key(merchant_id: str, query: str, product_ids: Optional[Sequence[str]] = None) -> str:
    scope = ",".join(sorted(product_ids)) if product_ids else "*"
    raw = f"{merchant_id}:{query.strip().casefold()}:{scope}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def apply_preference_boost(
    results: List[RAGResult],
    preferred_section_types: Optional[Sequence[SectionType]] = None,
    preferred_language: Optional[str] = None
) -> List[RAGResult]:
    """Additively boost matching section/language, capped, then re-sort descending."""
    sections = set(preferred_section_types or [])
    language = preferred_language.lower() if preferred_language else None

    boosted = []
    for result in results:
        score = result.similarity
        if sections and result.section_type in sections:
            score += SECTION_BOOST
        if language and result.language_code and result.language_code.lower() == language:
            score += LANGUAGE_BOOST
        boosted.append(result.model_copy(update={"similarity": min(score, MAX_BOOSTED_SIMILARITY)}))

    boosted.sort(key=lambda r: r.similarity, reverse=True)
    return boosted


def diversity_rerank(candidates: List[RAGResult], top_k: int) -> List[RAGResult]:
    """
    Greedy selection that keeps one product or section from monopolizing the context.

    Each step picks the candidate maximizing
    similarity - min(0.12, 0.06 * already selected from its product) - 0.04 if its
    section type is already selected.
    """
    remaining = list(candidates)
    selected: List[RAGResult] = []
    product_counts: Dict[str, int] = {}
    selected_sections = set()

    def adjusted(result: RAGResult) -> float:
        product_penalty = min(PRODUCT_PENALTY_CAP, PRODUCT_PENALTY_STEP * product_counts.get(result.product_id, 0))
        section_penalty = SECTION_PENALTY if result.section_type is not None and result.section_type in selected_sections else 0.0
        return result.similarity - product_penalty - section_penalty

    while remaining and len(selected) < top_k:
        best = max(remaining, key=adjusted)
        remaining.remove(best)
        selected.append(best)
        product_counts[best.product_id] = product_counts.get(best.product_id, 0) + 1
        if best.section_type is not None:
            selected_sections.add(best.section_type)

    return selected


def format_for_llm(results: List[RAGResult]) -> str:
    """Render results as a numbered context block; empty input yields a sentinel."""
    if not results:
        return NO_RESULTS_TEXT

    blocks = []
    for i, result in enumerate(results, start=1):
        lines = [f"[{i}] {result.product_name or 'Product'}"]
        meta = []
        if result.section_type:
            meta.append(f"Section: {result.section_type.value}")
        if result.source_kind:
            meta.append(f"Source: {result.source_kind.value}")
        if meta:
            lines.append(" | ".join(meta))
        lines.append(result.chunk_text)
        lines.append(f"(Relevance: {result.similarity * 100:.1f}%)")
        blocks.append("\n".join(lines))

    return "Relevant Product Information:\n\n" + "\n\n---\n\n".join(blocks)


def _row_to_result(row: Dict[str, Any], similarity: Optional[float] = None) -> RAGResult:
    product = row.get("products") or {}
    return RAGResult(
        chunk_id=str(row.get("id")),
        product_id=str(row.get("product_id")),
        product_name=row.get("product_name") or product.get("name") or "",
        product_url=row.get("product_url") or product.get("url"),
        chunk_text=row.get("chunk_text") or "",
        chunk_index=row.get("chunk_index") or 0,
        section_type=row.get("section_type") or None,
        language_code=row.get("language_code"),
        source_kind=row.get("source_kind") or None,
        similarity=float(row.get("similarity", 0.0) if similarity is None else similarity)
    )


class RAGService:
    """Knowledge-base retrieval for the AI agent"""

    def __init__(self, db: Client, embedding_service: EmbeddingService, cache: CacheService):
        self.db = db
        self.embeddings = embedding_service
        self.cache = cache

    async def _get_query_embedding(self, query: str) -> List[float]:
        # Keyed by query text only: the embedding does not depend on merchant or filters
        embedding_key = hashlib.sha256(query.encode("utf-8")).hexdigest()
        cached = await self.cache.get(EMBEDDING_CACHE_NAMESPACE, embedding_key)
        if cached:
            return cached

        result = await self.embeddings.embed(query)
        await self.cache.set(EMBEDDING_CACHE_NAMESPACE, embedding_key, result.vector, settings.RAG_EMBEDDING_CACHE_TTL)
        return result.vector

    async def query(self, options: RAGQueryOptions) -> RAGQueryResponse:
        """
        Semantic search over a merchant's knowledge chunks

        The similarity threshold is a hard floor applied by the vector search;
        boosting and re-ranking only reorder what passed it.

        Args:
            options: Query options

        Returns:
            RAGQueryResponse (zero matches is an empty response, not an error)

        Raises:
            EmbeddingError: If the query embedding cannot be generated
        """
        start = time.monotonic()

        if options.cache_key:
            cached = await self.cache.get(QUERY_CACHE_NAMESPACE, options.cache_key)
            if cached:
                logger.info(f"🔎 RAG cache hit for key {options.cache_key[:12]}")
                return RAGQueryResponse(**cached)

        vector = await self._get_query_embedding(options.query)

        product_ids = None
        if options.product_ids:
            product_ids = [pid.strip() for pid in options.product_ids if is_valid_uuid(pid)] or None

        has_preferences = bool(options.preferred_section_types or options.preferred_language)
        multiplier = PREFERENCE_FETCH_MULTIPLIER if has_preferences else 1
        match_count = min(settings.RAG_MAX_MATCH_COUNT, max(options.top_k, options.top_k * multiplier))

        params = {
            "p_merchant_id": options.merchant_id,
            "p_query_embedding": vector,
            "p_product_ids": product_ids,
            "p_match_threshold": options.similarity_threshold,
            "p_match_count": match_count,
        }
        response = await asyncio.to_thread(lambda: self.db.rpc("match_knowledge_chunks", params).execute())
        candidates = [_row_to_result(row) for row in (response.data or [])]
        candidates.sort(key=lambda r: r.similarity, reverse=True)

        if has_preferences:
            candidates = apply_preference_boost(
                candidates, options.preferred_section_types, options.preferred_language
            )

        if options.diversity_rerank and len(candidates) > 1:
            results = diversity_rerank(candidates, options.top_k)
        else:
            results = candidates[:options.top_k]

        rag_response = RAGQueryResponse(
            query=options.query,
            results=results,
            total_results=len(results),
            execution_time=int((time.monotonic() - start) * 1000)
        )

        if options.cache_key:
            await self.cache.set(
                QUERY_CACHE_NAMESPACE,
                options.cache_key,
                rag_response.model_dump(mode="json"),
                settings.RAG_QUERY_CACHE_TTL
            )

        logger.info(
            f"🔎 RAG query for merchant {options.merchant_id}: "
            f"{len(results)}/{len(candidates)} results in {rag_response.execution_time}ms"
        )
        return rag_response

    async def get_product_chunks(self, product_ids: List[str]) -> List[RAGResult]:
        """All chunks of the given products in index order (similarity 1.0)."""
        if not product_ids:
            return []
        response = await asyncio.to_thread(
            lambda: self.db.table("knowledge_chunks")
            .select("id, product_id, chunk_text, chunk_index, section_type, language_code, source_kind, products!inner(id, name, url)")
            .in_("product_id", product_ids)
            .order("chunk_index")
            .execute()
        )
        return [_row_to_result(row, similarity=1.0) for row in (response.data or [])]

    async def resolve_order_product_scope(self, order_id: str, merchant_id: str) -> OrderProductScope:
        """
        Resolve which products belong to an order

        Strategy: line-item external product ids from the order's normalized events,
        then exact (NFKC, casefolded) name match. Never widens to all merchant
        products; an unresolved order yields an empty scope.
        """
        order_response = await asyncio.to_thread(
            lambda: self.db.table("orders")
            .select("id, external_order_id")
            .eq("id", order_id)
            .eq("merchant_id", merchant_id)
            .limit(1)
            .execute()
        )
        if not order_response.data:
            logger.warning(f"⚠️ Order {order_id} not found for merchant {merchant_id}")
            return OrderProductScope()

        external_order_id = order_response.data[0].get("external_order_id")
        events_response = await asyncio.to_thread(
            lambda: self.db.table("normalized_events")
            .select("payload")
            .eq("merchant_id", merchant_id)
            .eq("external_order_id", external_order_id)
            .order("created_at", desc=True)
            .limit(10)
            .execute()
        )

        external_ids, item_names = set(), set()
        for row in events_response.data or []:
            for item in (row.get("payload") or {}).get("items") or []:
                if item.get("external_product_id"):
                    external_ids.add(str(item["external_product_id"]))
                if item.get("name"):
                    item_names.add(normalize_name(item["name"]))

        product_ids: List[str] = []
        source = "none"

        if external_ids:
            products_response = await asyncio.to_thread(
                lambda: self.db.table("products")
                .select("id")
                .eq("merchant_id", merchant_id)
                .in_("external_id", list(external_ids))
                .execute()
            )
            product_ids = [row["id"] for row in (products_response.data or [])]
            if product_ids:
                source = "external_id"

        if not product_ids and item_names:
            catalog_response = await asyncio.to_thread(
                lambda: self.db.table("products").select("id, name").eq("merchant_id", merchant_id).execute()
            )
            product_ids = [
                row["id"] for row in (catalog_response.data or [])
                if normalize_name(row.get("name")) in item_names
            ]
            if product_ids:
                source = "name_match"

        if not product_ids:
            logger.info(f"🔎 No products resolved for order {order_id}")
            return OrderProductScope()

        chunks = await self.get_product_chunks(product_ids)
        return OrderProductScope(product_ids=product_ids, chunks=chunks, source=source)
