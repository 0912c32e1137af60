"""
Service container
Builds every service once at startup and wires their dependencies
"""
import logging
from dataclasses import dataclass

from openai import AsyncOpenAI
from supabase import Client, create_client

from recete.config import settings
from recete.services.ai_agent_service import AIAgentService
from recete.services.cache_service import CacheService, create_redis_client
from recete.services.conversation_service import ConversationService
from recete.services.embedding_service import EmbeddingService
from recete.services.event_normalizer import EventNormalizer
from recete.services.guardrail_service import GuardrailService
from recete.services.knowledge_indexer import KnowledgeIndexer
from recete.services.merchant_service import MerchantService
from recete.services.message_handler_service import MessageHandlerService
from recete.services.message_scheduler import MessageScheduler
from recete.services.order_processor import OrderProcessor
from recete.services.product_instruction_service import ProductInstructionService
from recete.services.rag_service import RAGService
from recete.services.return_prevention_service import ReturnPreventionService
from recete.services.upsell_service import UpsellService
from recete.services.whatsapp_service import WhatsAppService
from recete.utils.encryption import PhoneEncryptor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    cache: CacheService
    normalizer: EventNormalizer
    orders: OrderProcessor
    indexer: KnowledgeIndexer
    rag: RAGService
    agent: AIAgentService
    messages: MessageHandlerService
    whatsapp: WhatsAppService

    async def close(self) -> None:
        await self.cache.close()


def build_services(
    db: Client,
    cache: CacheService,
    llm: AsyncOpenAI,
    encryptor: PhoneEncryptor,
    whatsapp: WhatsAppService
) -> Services:
    """Wire services from already-constructed clients (tests pass fakes here)."""
    embeddings = EmbeddingService(client=llm)
    merchants = MerchantService(db, cache)
    conversations = ConversationService(db)
    scheduler = MessageScheduler(db, cache)
    orders = OrderProcessor(db, encryptor, scheduler)
    rag = RAGService(db, embeddings, cache)
    return_prevention = ReturnPreventionService(db, merchants, conversations)

    agent = AIAgentService(
        llm=llm,
        merchants=merchants,
        guardrails=GuardrailService(),
        rag=rag,
        instructions=ProductInstructionService(db),
        return_prevention=return_prevention,
        upsell=UpsellService(db, llm),
        orders=orders,
        scheduler=scheduler,
        conversations=conversations
    )

    return Services(
        cache=cache,
        normalizer=EventNormalizer(),
        orders=orders,
        indexer=KnowledgeIndexer(db, embeddings),
        rag=rag,
        agent=agent,
        messages=MessageHandlerService(
            db, cache, merchants, orders, conversations, agent, whatsapp, scheduler
        ),
        whatsapp=whatsapp
    )


def create_services() -> Services:
    """
    Build the production container from settings

    Raises:
        RuntimeError: If Supabase, OpenAI or the encryption key is not configured
    """
    if not settings.is_supabase_configured:
        raise RuntimeError("Supabase not configured")
    if not settings.is_configured:
        raise RuntimeError("OPENAI_API_KEY not configured")
    if not settings.is_encryption_configured:
        raise RuntimeError("ENCRYPTION_KEY must be 64 hex characters")

    key = settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_KEY
    db = create_client(settings.SUPABASE_URL, key)
    llm = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL)

    services = build_services(
        db=db,
        cache=CacheService(create_redis_client()),
        llm=llm,
        encryptor=PhoneEncryptor(settings.ENCRYPTION_KEY),
        whatsapp=WhatsAppService()
    )
    logger.info("✅ Services initialized")
    return services
