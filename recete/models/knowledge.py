"""
Knowledge Base Models
Chunks, embeddings and RAG query/response shapes
"""
from typing import Optional, List
from enum import Enum
from pydantic import BaseModel, Field


class SectionType(str, Enum):
    INGREDIENTS = "ingredients"
    USAGE = "usage"
    WARNINGS = "warnings"
    SPECS = "specs"
    GENERAL = "general"


class SourceKind(str, Enum):
    RAW = "raw"
    ENRICHED = "enriched"


class TextChunk(BaseModel):
    text: str
    index: int
    section_type: SectionType = SectionType.GENERAL
    language_code: Optional[str] = None


class EmbeddingResult(BaseModel):
    vector: List[float]
    token_count: float


class IndexResult(BaseModel):
    product_id: str
    chunks_created: int = 0
    total_tokens: float = 0
    success: bool
    error: Optional[str] = None


class RAGResult(BaseModel):
    chunk_id: str
    product_id: str
    product_name: str = ""
    product_url: Optional[str] = None
    chunk_text: str
    chunk_index: int = 0
    section_type: Optional[SectionType] = None
    language_code: Optional[str] = None
    source_kind: Optional[SourceKind] = None
    similarity: float


class RAGQueryOptions(BaseModel):
    merchant_id: str
    query: str
    product_ids: Optional[List[str]] = None
    top_k: int = Field(default=5, ge=1)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    preferred_section_types: Optional[List[SectionType]] = None
    preferred_language: Optional[str] = None
    diversity_rerank: bool = True
    cache_key: Optional[str] = None


class RAGQueryResponse(BaseModel):
    query: str
    results: List[RAGResult] = Field(default_factory=list)
    total_results: int = 0
    execution_time: int = 0  # milliseconds


class OrderProductScope(BaseModel):
    """Products resolved for an order; source is external_id, name_match or none"""
    product_ids: List[str] = Field(default_factory=list)
    chunks: List[RAGResult] = Field(default_factory=list)
    source: str = "none"


class ProductInstruction(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    usage_instructions: str = ""
    recipe_summary: Optional[str] = None
    video_url: Optional[str] = None
    prevention_tips: Optional[str] = None
