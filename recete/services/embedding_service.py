"""
Embedding Service
Converts text to fixed-length vectors with the OpenAI embeddings API
"""
import math
import logging
from typing import List, Optional

from openai import AsyncOpenAI, OpenAIError

from recete.config import settings
from recete.models.knowledge import EmbeddingResult
from recete.utils.exceptions import EmbeddingError

logger = logging.getLogger(__name__)


def estimate_token_count(text: str) -> int:
    """
    Conservative token estimate for pre-validation.

    Uses characters/3 rather than characters/4 so non-Latin-heavy text
    (Turkish, etc.) is not underestimated.
    """
    return math.ceil(len(text) / 3)


def is_valid_chunk_size(text: str) -> bool:
    return estimate_token_count(text) <= settings.MAX_TOKENS_PER_CHUNK


class EmbeddingService:
    """Service for text embeddings"""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        """
        Initialize Embedding Service

        Args:
            client: Shared AsyncOpenAI client (created from settings if omitted)
            model: Embedding model (default: settings.EMBEDDING_MODEL)
        """
        self.client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL
        )
        self.model = model or settings.EMBEDDING_MODEL

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed a single text

        Raises:
            EmbeddingError: If the provider call fails (caller owns retry policy)
        """
        try:
            response = await self.client.embeddings.create(model=self.model, input=text)
        except OpenAIError as e:
            logger.error(f"❌ Embedding request failed: {e}")
            raise EmbeddingError(f"Failed to generate embedding: {e}")

        if not response.data:
            raise EmbeddingError("Embedding response contained no data")

        return EmbeddingResult(
            vector=response.data[0].embedding,
            token_count=response.usage.total_tokens if response.usage else estimate_token_count(text)
        )

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        """
        Embed several texts in one provider call

        Token usage is reported for the whole batch, so it is apportioned
        evenly across items.

        Raises:
            EmbeddingError: If the provider call fails
        """
        if not texts:
            return []

        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except OpenAIError as e:
            logger.error(f"❌ Batch embedding request failed ({len(texts)} texts): {e}")
            raise EmbeddingError(f"Failed to generate batch embeddings: {e}")

        if len(response.data) != len(texts):
            raise EmbeddingError(
                f"Embedding count mismatch: expected {len(texts)}, got {len(response.data)}"
            )

        total_tokens = response.usage.total_tokens if response.usage else sum(
            estimate_token_count(t) for t in texts
        )
        per_item = total_tokens / len(texts)

        ordered = sorted(response.data, key=lambda item: item.index)
        return [EmbeddingResult(vector=item.embedding, token_count=per_item) for item in ordered]
