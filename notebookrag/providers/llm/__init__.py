"""LLM provider adapters.

Three concrete implementations of ILLMProvider (notebookrag/interfaces/llm_provider.py):
    - OpenAILLMProvider    - gpt-4o-mini (also any OpenAI-compatible API)
    - AnthropicLLMProvider - Claude Sonnet
    - OllamaLLMProvider    - local models via an Ollama server (llama3.1)

main.py picks one at startup (LLM_PROVIDER, else the first configured in
priority order Anthropic → OpenAI → Ollama) and injects it into the services.
"""

from notebookrag.providers.llm.anthropic_provider import AnthropicLLMProvider
from notebookrag.providers.llm.ollama_provider import OllamaLLMProvider
from notebookrag.providers.llm.openai_provider import OpenAILLMProvider

__all__ = ["OpenAILLMProvider", "AnthropicLLMProvider", "OllamaLLMProvider"]
