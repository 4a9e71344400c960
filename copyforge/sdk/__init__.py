"""
SDK for copyforge.

Provides the OpenAI client used to generate block content.
"""

from .openai_client import GenerationClient, GenerationReply

__all__ = ["GenerationClient", "GenerationReply"]
