"""
SDK for RLM Lite.

Provides the OpenAI-backed reasoning collaborator.
"""

from .openai_client import OpenAIInvoker

__all__ = ["OpenAIInvoker"]
