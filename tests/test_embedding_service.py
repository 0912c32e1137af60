import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from openai import OpenAIError

from recete.services.embedding_service import EmbeddingService, estimate_token_count, is_valid_chunk_size
from recete.utils.exceptions import EmbeddingError


def embeddings_response(*items, total_tokens=12):
    return SimpleNamespace(
        data=[SimpleNamespace(index=index, embedding=vector) for index, vector in items],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class TestEmbeddingService(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.service = EmbeddingService(client=self.client, model="text-embedding-3-small")

    async def test_embed(self):
        self.client.embeddings.create = AsyncMock(return_value=embeddings_response((0, [0.1, 0.2]), total_tokens=5))
        result = await self.service.embed("Nasıl kullanılır?")
        self.assertEqual(result.vector, [0.1, 0.2])
        self.assertEqual(result.token_count, 5)
        self.client.embeddings.create.assert_awaited_once_with(model="text-embedding-3-small", input="Nasıl kullanılır?")

    async def test_batch_is_ordered_by_index_and_tokens_split(self):
        self.client.embeddings.create = AsyncMock(return_value=embeddings_response(
            (1, [2.0]), (0, [1.0]), (2, [3.0]), total_tokens=12
        ))
        results = await self.service.embed_batch(["a", "b", "c"])
        self.assertEqual([r.vector for r in results], [[1.0], [2.0], [3.0]])
        self.assertEqual([r.token_count for r in results], [4, 4, 4])

    async def test_batch_count_mismatch(self):
        self.client.embeddings.create = AsyncMock(return_value=embeddings_response((0, [1.0])))
        with self.assertRaises(EmbeddingError):
            await self.service.embed_batch(["a", "b"])

    async def test_empty_batch_makes_no_call(self):
        self.client.embeddings.create = AsyncMock()
        self.assertEqual(await self.service.embed_batch([]), [])
        self.client.embeddings.create.assert_not_awaited()

    async def test_provider_errors_are_wrapped(self):
        self.client.embeddings.create = AsyncMock(side_effect=OpenAIError("rate limited"))
        with self.assertRaises(EmbeddingError):
            await self.service.embed("hello")


class TestTokenEstimate(unittest.TestCase):
    def test_estimate_is_conservative(self):
        self.assertEqual(estimate_token_count("abcdefg"), 3)
        self.assertTrue(is_valid_chunk_size("x" * 24000))
        self.assertFalse(is_valid_chunk_size("x" * 24001))


if __name__ == '__main__':
    unittest.main()
