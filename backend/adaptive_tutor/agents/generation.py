"""Generation client: schema-constrained teaching replies per agent.

Plain mode awaits the full reply. Streaming mode watches the partial JSON
buffer and hands the first complete sentence of ``audioText`` to a
callback as soon as it exists, so speech can start before the rest of
the reply arrives.

The model's ``lessonComplete`` claim is never passed through: it is moved
to ``model_claimed_complete`` and the response flag is cleared, leaving
the orchestrator to fill it from the mastery engine.
"""

import inspect
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from langchain_core.messages import BaseMessage
from pydantic import BaseModel

from ..core.errors import SchemaViolation
from ..core.retry import call_with_retry
from .base.llm import LLMFactory, get_llm_for_agent
from .base.state import WEB_SEARCH, AgentName, AgentSpec, TeachingResponse
from .base.utils import build_messages, content_to_text, parse_model_reply
from .context_cache import ContextCacheManager
from .prompts import SAFE_FALLBACK_TEXT
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

FirstSentenceCallback = Callable[[str], Union[Awaitable[None], None]]


class GenerationResult(BaseModel):
    agent: AgentName
    response: TeachingResponse
    model_claimed_complete: bool = False
    raw_text: str = ""
    schema_fallback: bool = False
    first_sentence: Optional[str] = None
    grounding: Optional[Dict[str, Any]] = None


# =============================================================================
# Post-processing
# =============================================================================

# LaTeX commands that start with "\n" must keep their backslash
_LATEX_N_COMMANDS = (
    "abla", "eq", "u", "ot", "otin", "i", "ewline", "eg", "leq", "geq",
    "exists", "parallel", "mid", "subseteq", "supseteq", "cong", "sim",
)
_LITERAL_NEWLINE = re.compile(r"\\n(?!(?:" + "|".join(_LATEX_N_COMMANDS) + r")(?![a-zA-Z]))")
_SVG_BLOCK = re.compile(r"\[SVG\](.*?)\[/SVG\]", re.DOTALL | re.IGNORECASE)

_AUDIO_TEXT_PARTIAL = re.compile(r'"audioText"\s*:\s*"((?:[^"\\]|\\.)*)(")?', re.DOTALL)
_SENTENCE_END = re.compile(r"[.!?]+(?=\s)")


def unescape_newlines(text: str) -> str:
    """Turn literal ``\\n`` sequences into newlines, leaving LaTeX commands intact."""
    return _LITERAL_NEWLINE.sub("\n", text) if text else text


def extract_svg_blocks(text: str) -> Tuple[str, Optional[str]]:
    """Remove ``[SVG]...[/SVG]`` blocks from text; return (clean text, first svg)."""
    if not text:
        return text, None
    blocks = _SVG_BLOCK.findall(text)
    if not blocks:
        return text, None
    cleaned = _SVG_BLOCK.sub("", text).strip()
    return cleaned, blocks[0].strip()


def post_process(response: TeachingResponse) -> TeachingResponse:
    display_text, display_svg = extract_svg_blocks(unescape_newlines(response.display_text))
    audio_text, audio_svg = extract_svg_blocks(unescape_newlines(response.audio_text))
    return response.model_copy(
        update={
            "display_text": display_text or audio_text,
            "audio_text": audio_text,
            "svg": response.svg or display_svg or audio_svg,
        }
    )


def _json_unescape(fragment: str) -> str:
    try:
        return json.loads(f'"{fragment}"')
    except json.JSONDecodeError:
        # Partial escape at the end of the buffer
        return fragment.replace('\\"', '"').replace("\\n", " ").rstrip("\\")


def first_sentence_from_buffer(buffer: str) -> Optional[str]:
    """
    First complete sentence of ``audioText`` in a partial JSON buffer.

    A sentence counts as complete when its terminal punctuation is followed
    by whitespace or the string has closed, so "3.5" is not split.
    """
    match = _AUDIO_TEXT_PARTIAL.search(buffer)
    if not match:
        return None
    audio_text = _json_unescape(match.group(1))
    closed = match.group(2) is not None

    end = _SENTENCE_END.search(audio_text)
    if end:
        return audio_text[: end.end()].strip() or None
    return (audio_text.strip() or None) if closed else None


def fallback_response(raw_text: str) -> TeachingResponse:
    """Minimal safe response when the model's reply cannot be parsed."""
    match = _AUDIO_TEXT_PARTIAL.search(raw_text or "")
    if match:
        text = _json_unescape(match.group(1)).strip()
    else:
        text = (raw_text or "").strip()
        if text.startswith("{") or text.startswith("```"):
            text = ""
    text = text or SAFE_FALLBACK_TEXT
    return TeachingResponse(audio_text=text, display_text=text)


def _grounding_from(message: Any) -> Optional[Dict[str, Any]]:
    metadata = getattr(message, "response_metadata", None) or {}
    citations = metadata.get("citations") or metadata.get("grounding_metadata")
    annotations = []
    content = getattr(message, "content", None)
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("annotations"):
                annotations.extend(part["annotations"])
    if not citations and not annotations:
        return None
    return {"citations": citations or [], "annotations": annotations}


# =============================================================================
# Client
# =============================================================================

class GenerationClient:
    """Invokes a named agent and returns a validated ``TeachingResponse``."""

    def __init__(
        self,
        registry: AgentRegistry,
        context_cache: ContextCacheManager,
        llm_factory: LLMFactory = get_llm_for_agent,
    ):
        self.registry = registry
        self.context_cache = context_cache
        self.llm_factory = llm_factory

    async def _prepare(
        self,
        agent: AgentName,
        lesson_id: str,
        prompt: str,
        dynamic_context: str,
        media: Optional[Dict[str, Any]],
        lesson: Optional[Dict[str, Any]],
    ) -> Tuple[AgentSpec, str, List[BaseMessage]]:
        spec = await self.registry.get(agent)
        cached = await self.context_cache.get_context(agent, lesson_id, lesson)
        user_text = f"{dynamic_context}\n\nSTUDENT: {prompt}" if dynamic_context else f"STUDENT: {prompt}"
        return spec, cached.handle, build_messages(cached.system_instruction, user_text, media)

    def _finish(
        self,
        agent: AgentName,
        raw_text: str,
        message: Any,
        spec: AgentSpec,
        first_sentence: Optional[str] = None,
    ) -> GenerationResult:
        try:
            response = parse_model_reply(raw_text, TeachingResponse)
            schema_fallback = False
        except SchemaViolation as e:
            logger.warning(f"[{agent.value}] schema violation, using fallback response: {e}")
            response = fallback_response(raw_text)
            schema_fallback = True

        claimed = response.lesson_complete
        response = post_process(response).model_copy(update={"lesson_complete": False})

        return GenerationResult(
            agent=agent,
            response=response,
            model_claimed_complete=claimed,
            raw_text=raw_text,
            schema_fallback=schema_fallback,
            first_sentence=first_sentence,
            grounding=_grounding_from(message) if spec.has_capability(WEB_SEARCH) else None,
        )

    async def generate(
        self,
        agent: AgentName,
        prompt: str,
        lesson_id: str,
        dynamic_context: str = "",
        media: Optional[Dict[str, Any]] = None,
        lesson: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """
        Run one agent to completion.

        Args:
            agent: Agent to invoke
            prompt: Learner's message (plus any regeneration feedback)
            lesson_id: Lesson whose cached context to use
            dynamic_context: Per-turn context block (profile, directives, ...)
            media: Optional opaque audio/image payload
            lesson: Lesson row if the caller already has it

        Returns:
            GenerationResult with the parsed, post-processed response
        """
        spec, handle, messages = await self._prepare(agent, lesson_id, prompt, dynamic_context, media, lesson)
        llm = self.llm_factory(spec, streaming=False, prompt_cache_key=handle)

        message = await call_with_retry(lambda: llm.ainvoke(messages), label=f"generate:{agent.value}")
        return self._finish(agent, content_to_text(message.content), message, spec)

    async def stream(
        self,
        agent: AgentName,
        prompt: str,
        lesson_id: str,
        dynamic_context: str = "",
        on_first_sentence: Optional[FirstSentenceCallback] = None,
        media: Optional[Dict[str, Any]] = None,
        lesson: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """Like ``generate`` but streams, firing ``on_first_sentence`` at most once."""
        spec, handle, messages = await self._prepare(agent, lesson_id, prompt, dynamic_context, media, lesson)
        llm = self.llm_factory(spec, streaming=True, prompt_cache_key=handle)
        state: Dict[str, Any] = {"first_sentence": None}

        async def _run() -> Tuple[str, Any]:
            buffer = ""
            aggregate = None
            async for chunk in llm.astream(messages):
                aggregate = chunk if aggregate is None else aggregate + chunk
                buffer += content_to_text(chunk.content)
                if state["first_sentence"] is None:
                    sentence = first_sentence_from_buffer(buffer)
                    if sentence:
                        state["first_sentence"] = sentence
                        if on_first_sentence is not None:
                            result = on_first_sentence(sentence)
                            if inspect.isawaitable(result):
                                await result
            return buffer, aggregate

        raw_text, message = await call_with_retry(_run, label=f"stream:{agent.value}")
        return self._finish(agent, raw_text, message, spec, first_sentence=state["first_sentence"])
