"""LLM provider modules for llm_toolloop."""
from .base import LLMProvider, StreamDelta
from .local_ollama import OllamaProvider

__all__ = ['LLMProvider', 'StreamDelta', 'OllamaProvider']
