"""
Application Configuration
Centralized configuration management using environment variables
"""
import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings loaded from environment variables"""

    # OpenAI Configuration
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL: Optional[str] = os.getenv("OPENAI_BASE_URL") or None
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")  # 1536 dimensions
    EMBEDDING_DIMENSIONS: int = 1536
    CHAT_MODEL: str = os.getenv("CHAT_MODEL", "gpt-4o")
    CLASSIFIER_MODEL: str = os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini")

    # Supabase Configuration
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_KEY: str = os.getenv("SUPABASE_KEY", "")  # Anon key for client
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # Redis Configuration (cache, locks, scheduled message queue)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None

    # PII encryption (64 hex chars = 32 bytes, AES-256-GCM)
    ENCRYPTION_KEY: str = os.getenv("ENCRYPTION_KEY", "")

    # Phone normalization (national "0" prefix and bare numbers)
    DEFAULT_COUNTRY_CODE: str = os.getenv("DEFAULT_COUNTRY_CODE", "+90")

    # Chunking Configuration (characters)
    DEFAULT_CHUNK_SIZE: int = 1000
    DEFAULT_CHUNK_OVERLAP: int = 150
    MAX_TOKENS_PER_CHUNK: int = 8000  # OpenAI limit is 8191 tokens

    # RAG Configuration
    RAG_TOP_K: int = int(os.getenv("RAG_TOP_K", "5"))
    RAG_SIMILARITY_THRESHOLD: float = float(os.getenv("RAG_SIMILARITY_THRESHOLD", "0.5"))
    RAG_QUERY_CACHE_TTL: int = 900
    RAG_EMBEDDING_CACHE_TTL: int = 3600
    RAG_MAX_MATCH_COUNT: int = 50

    # Merchant settings / add-on caching
    MERCHANT_CACHE_TTL: int = 300
    ADDON_CACHE_TTL: int = 300

    # Decrypt-and-compare scan bound for phone lookups
    USER_SCAN_LIMIT: int = int(os.getenv("USER_SCAN_LIMIT", "1000"))

    # Agent Configuration
    HISTORY_LIMIT: int = 10
    CLASSIFIER_MAX_TOKENS: int = 10
    RESPONSE_MAX_TOKENS: int = 500
    UPSELL_MIN_DAYS_AFTER_DELIVERY: int = 14
    UPSELL_MIN_CONFIDENCE: float = 0.7

    # WhatsApp Cloud API Configuration
    WHATSAPP_API_URL: str = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0")
    WHATSAPP_ACCESS_TOKEN: Optional[str] = os.getenv("WHATSAPP_ACCESS_TOKEN")
    WHATSAPP_VERIFY_TOKEN: str = os.getenv("WHATSAPP_VERIFY_TOKEN", "")

    # Webhook Configuration
    WEBHOOK_SECRET_KEY: str = os.getenv("WEBHOOK_SECRET_KEY", "")

    # CORS Configuration
    CORS_ORIGINS = [
        "http://localhost:3000",  # Dashboard (development)
        "*"
    ]

    @property
    def is_configured(self) -> bool:
        """Check if required configuration is present"""
        return bool(self.OPENAI_API_KEY)

    @property
    def is_supabase_configured(self) -> bool:
        """Check if Supabase configuration is present"""
        return bool(self.SUPABASE_URL and (self.SUPABASE_SERVICE_KEY or self.SUPABASE_KEY))

    @property
    def is_encryption_configured(self) -> bool:
        """Check if a valid 32-byte hex encryption key is present"""
        key = self.ENCRYPTION_KEY
        return len(key) == 64 and all(c in "0123456789abcdefABCDEF" for c in key)


# Global settings instance
settings = Settings()
