"""
Recete - AI-assisted WhatsApp support agent for e-commerce merchants.
"""
__version__ = "1.0.0"
