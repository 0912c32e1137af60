"""Utility functions"""
from .chunking import chunk_text, detect_language, strip_markers, infer_section_type
from .encryption import PhoneEncryptor
from .exceptions import InvalidPhoneError, MissingPhoneError, EmbeddingError, GenerationError

__all__ = [
    "chunk_text",
    "detect_language",
    "strip_markers",
    "infer_section_type",
    "PhoneEncryptor",
    "InvalidPhoneError",
    "MissingPhoneError",
    "EmbeddingError",
    "GenerationError",
]
