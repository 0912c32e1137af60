"""Business logic services"""
from .container import Services, build_services, create_services
from .ai_agent_service import AIAgentService
from .rag_service import RAGService
from .order_processor import OrderProcessor
from .event_normalizer import EventNormalizer

__all__ = [
    "Services",
    "build_services",
    "create_services",
    "AIAgentService",
    "RAGService",
    "OrderProcessor",
    "EventNormalizer",
]
