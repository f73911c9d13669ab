"""Shared utilities for agent implementations."""

import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional, Type, TypeVar

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from ...core.errors import SchemaViolation

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_INVALID_ESCAPE = re.compile(r'\\(?!["\\/bfnrtu])')


def content_to_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


def strip_code_fences(content: str) -> str:
    """Remove Markdown ```json fences around a model reply."""
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]
    return content.strip()


def parse_json_reply(content: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of a model reply.

    Tries the fence-stripped text first, then the outermost ``{...}`` span.

    Raises:
        SchemaViolation: when no JSON object can be parsed
    """
    text = strip_code_fences(content or "")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise SchemaViolation("Reply contains no JSON object", raw=content)
        candidate = match.group(0)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            # Unescaped LaTeX backslashes (e.g. "\times") are the usual culprit
            try:
                data = json.loads(_INVALID_ESCAPE.sub(r"\\\\", candidate))
            except json.JSONDecodeError as e:
                raise SchemaViolation(f"Reply JSON is malformed: {e}", raw=content) from e

    if not isinstance(data, dict):
        raise SchemaViolation("Reply JSON is not an object", raw=content)
    return data


def parse_model_reply(content: str, schema: Type[M]) -> M:
    """Parse and validate a model reply against a pydantic schema."""
    data = parse_json_reply(content)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise SchemaViolation(f"Reply does not match {schema.__name__}: {e}", raw=content) from e


def build_messages(
    system_prompt: str,
    user_text: str,
    media: Optional[Dict[str, Any]] = None,
) -> List[BaseMessage]:
    """
    Build the [system, human] message pair for a model call.

    ``media`` is an opaque payload ({"data": base64 or bytes, "mime_type": ...})
    attached as an image or audio content part.
    """
    if not media:
        return [SystemMessage(content=system_prompt), HumanMessage(content=user_text)]

    data = media.get("data", "")
    if isinstance(data, (bytes, bytearray)):
        data = base64.b64encode(data).decode("ascii")
    mime_type = media.get("mime_type", "application/octet-stream")

    if mime_type.startswith("audio/"):
        media_part = {
            "type": "input_audio",
            "input_audio": {"data": data, "format": mime_type.split("/", 1)[1]},
        }
    else:
        media_part = {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}}

    return [
        SystemMessage(content=system_prompt),
        HumanMessage(content=[{"type": "text", "text": user_text}, media_part]),
    ]


def truncate_text(text: str, max_length: int = 200, suffix: str = "...") -> str:
    """Truncate text to ``max_length`` characters, adding ``suffix`` when cut."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
