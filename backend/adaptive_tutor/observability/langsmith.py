"""LangSmith tracing for tutoring turns."""

import logging
import os
from typing import Any, Dict, Iterable, Optional

from ..core.config import Settings

logger = logging.getLogger(__name__)

# Settings field -> environment variables read by langsmith / langchain
_ENV_ALIASES = {
    "LANGSMITH_API_KEY": ("LANGSMITH_API_KEY", "LANGCHAIN_API_KEY"),
    "LANGSMITH_ENDPOINT": ("LANGSMITH_ENDPOINT", "LANGCHAIN_ENDPOINT"),
    "LANGSMITH_PROJECT": ("LANGSMITH_PROJECT", "LANGCHAIN_PROJECT"),
    "LANGSMITH_WORKSPACE_ID": ("LANGSMITH_WORKSPACE_ID",),
}


def initialize_langsmith(settings: Settings) -> bool:
    """
    Export tracing settings to the environment.

    Returns:
        True when tracing was requested and an API key is configured
    """
    enabled = bool(settings.LANGSMITH_TRACING) and bool(settings.LANGSMITH_API_KEY.strip())
    os.environ["LANGSMITH_TRACING"] = "true" if enabled else "false"
    os.environ["LANGCHAIN_TRACING_V2"] = os.environ["LANGSMITH_TRACING"]

    for field_name, env_names in _ENV_ALIASES.items():
        value = getattr(settings, field_name)
        if value:
            for env_name in env_names:
                os.environ[env_name] = value

    if enabled:
        logger.info(f"LangSmith tracing enabled for project {settings.LANGSMITH_PROJECT}")
    elif settings.LANGSMITH_TRACING:
        logger.warning("LANGSMITH_TRACING is set but LANGSMITH_API_KEY is empty; tracing disabled")
    return enabled


def build_trace_config(
    thread_id: str,
    tags: Optional[Iterable[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Runnable config for one graph run, merging tags and metadata into ``config``."""
    merged = dict(config or {})
    merged["configurable"] = {**merged.get("configurable", {}), "thread_id": thread_id}

    all_tags = [*merged.get("tags", []), *(tags or [])]
    if all_tags:
        merged["tags"] = all_tags
    all_metadata = {**merged.get("metadata", {}), **(metadata or {})}
    if all_metadata:
        merged["metadata"] = all_metadata
    return merged
