"""Middleware and request dependencies"""
from .webhook_auth import get_webhook_secret

__all__ = ["get_webhook_secret"]
