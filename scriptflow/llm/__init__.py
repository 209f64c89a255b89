"""
Scriptflow LLM

Text Completion capability, an OpenAI-compatible client and prompt templates.
"""

from .text_completion import CompletionResult, TextCompletion, TokenUsage
from .api_clients import OpenAICompatibleClient

__all__ = [
    'CompletionResult',
    'TextCompletion',
    'TokenUsage',
    'OpenAICompatibleClient',
]
