"""LLM client factory for OpenAI-compatible backends.

Every agent gets a ``ChatOpenAI`` client configured from its definition
(model, temperature, reasoning effort, capabilities) on top of the global
LLM settings.
"""

from typing import Any, Callable, Dict, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from ...core.config import get_settings
from .state import WEB_SEARCH, AgentSpec

LLMFactory = Callable[..., BaseChatModel]


def _resolve_api_key(base_url: str, api_key: str) -> str:
    """Provide a safe API key value for local OpenAI-compatible servers."""
    if api_key:
        return api_key
    base = (base_url or "").lower()
    if "127.0.0.1" in base or "localhost" in base:
        return "lm-studio"
    return ""


def get_llm(
    temperature: Optional[float] = None,
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
    streaming: bool = False,
    model_kwargs: Optional[Dict[str, Any]] = None,
    reasoning_effort: Optional[str] = None,
) -> ChatOpenAI:
    """
    Get a configured LLM client.

    Args:
        temperature: Override default temperature (0.0-1.0)
        model: Override default model name
        max_tokens: Override default max tokens
        streaming: Enable streaming responses
        model_kwargs: Extra request parameters (e.g. response_format)
        reasoning_effort: "low" | "medium" | "high" for reasoning models

    Returns:
        Configured ChatOpenAI instance
    """
    settings = get_settings()

    kwargs: Dict[str, Any] = {}
    if reasoning_effort:
        kwargs["reasoning_effort"] = reasoning_effort

    return ChatOpenAI(
        base_url=settings.LLM_BASE_URL,
        api_key=_resolve_api_key(settings.LLM_BASE_URL, settings.LLM_API_KEY),
        model=model or settings.LLM_MODEL,
        temperature=temperature if temperature is not None else settings.LLM_TEMPERATURE,
        max_tokens=max_tokens or settings.LLM_MAX_TOKENS,
        streaming=streaming,
        max_retries=0,  # retries are handled by core.retry
        model_kwargs=model_kwargs or {},
        **kwargs,
    )


def get_llm_for_agent(
    spec: AgentSpec,
    streaming: bool = False,
    prompt_cache_key: Optional[str] = None,
) -> BaseChatModel:
    """
    Build the chat model for one agent.

    Args:
        spec: Loaded agent definition
        streaming: Enable streaming responses
        prompt_cache_key: Remote prompt-cache handle from the context cache

    Returns:
        Chat model (bound to the web-search tool when the agent has it)
    """
    settings = get_settings()

    model_kwargs: Dict[str, Any] = {}
    if settings.LLM_JSON_MODE:
        model_kwargs["response_format"] = {"type": "json_object"}
    if prompt_cache_key and settings.LLM_PROMPT_CACHE_KEYS:
        model_kwargs["prompt_cache_key"] = prompt_cache_key

    llm = get_llm(
        temperature=spec.temperature,
        model=spec.model,
        streaming=streaming,
        model_kwargs=model_kwargs,
        reasoning_effort=spec.reasoning_effort if settings.LLM_SEND_REASONING_EFFORT else None,
    )

    if spec.has_capability(WEB_SEARCH) and settings.LLM_WEB_SEARCH_ENABLED:
        return llm.bind_tools([{"type": "web_search_preview"}])
    return llm
