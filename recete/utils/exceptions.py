"""
Domain exceptions
"""


class InvalidPhoneError(ValueError):
    """Phone number cannot be normalized"""


class MissingPhoneError(ValueError):
    """Event carries no usable phone, so no user identity can be established"""


class EmbeddingError(RuntimeError):
    """Embedding provider call failed (retryable by the caller)"""


class GenerationError(RuntimeError):
    """Final LLM response generation failed"""
