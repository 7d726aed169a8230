"""
Response extraction across provider envelopes.

Each transport hands back a different shape: google-genai SDK objects,
Gemini REST JSON from proxies, OpenAI chat completions, DALL-E style
``data`` arrays, or Anthropic messages. ``ResponseExtractor`` runs an ordered
list of strategies over the raw response; each strategy returns a value or
None, and the first hit wins. Absence is a normal outcome, never an error.
"""

import base64
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .providers.base import ensure_data_uri

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"data:image/[^;\s]+;base64,[A-Za-z0-9+/=]+")
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\((https?://[^)\s]+)\)")


@dataclass
class Extraction:
    """Best-effort text and image pulled from a response."""

    text: str = ""
    inline_image: str | None = None  # data URI or http(s) URL


# ============ Field Access ============


def get_field(obj: Any, *names: str) -> Any:
    """Read the first present attribute or key among ``names``."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            if obj.get(name) is not None:
                return obj[name]
        else:
            value = getattr(obj, name, None)
            if value is not None:
                return value
    return None


def first_item(seq: Any) -> Any:
    if isinstance(seq, (list, tuple)) and seq:
        return seq[0]
    return None


def _candidate_parts(raw: Any) -> list:
    candidate = first_item(get_field(raw, "candidates"))
    parts = get_field(get_field(candidate, "content"), "parts")
    return list(parts) if isinstance(parts, (list, tuple)) else []


def _chat_message(raw: Any) -> Any:
    return get_field(first_item(get_field(raw, "choices")), "message")


# ============ Image Strategies ============


def _from_inline_parts(raw: Any) -> str | None:
    for part in _candidate_parts(raw):
        inline = get_field(part, "inline_data", "inlineData")
        data = get_field(inline, "data")
        if not data or not isinstance(data, (bytes, str)):
            continue
        mime_type = get_field(inline, "mime_type", "mimeType")
        if not isinstance(mime_type, str):
            mime_type = "image/png"
        if isinstance(data, bytes):
            data = base64.b64encode(data).decode("ascii")
        return f"data:{mime_type};base64,{data}"
    return None


def _from_content_data_uri(raw: Any) -> str | None:
    content = get_field(_chat_message(raw), "content")
    if not isinstance(content, str):
        return None
    match = DATA_URI_PATTERN.search(content)
    if match:
        return match.group(0)
    match = MARKDOWN_IMAGE_PATTERN.search(content)
    if match:
        return match.group(1)
    return None


def _from_content_items(raw: Any) -> str | None:
    content = get_field(_chat_message(raw), "content")
    if not isinstance(content, list):
        return None
    for item in content:
        item_type = get_field(item, "type")
        if item_type == "image_url":
            url = get_field(get_field(item, "image_url"), "url")
            if url:
                return url
        if item_type == "image" and get_field(item, "url"):
            return get_field(item, "url")
    return None


def _from_tool_call_arguments(raw: Any) -> str | None:
    tool_call = first_item(get_field(_chat_message(raw), "tool_calls"))
    arguments = get_field(get_field(tool_call, "function"), "arguments")
    if not arguments:
        return None
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except (json.JSONDecodeError, ValueError):
            return None
    if not isinstance(arguments, dict):
        return None
    return get_field(arguments, "image", "url", "b64_json")


def _from_data_array(raw: Any) -> str | None:
    item = first_item(get_field(raw, "data"))
    return get_field(item, "url", "b64_json", "base64")


IMAGE_STRATEGIES: list[Callable[[Any], str | None]] = [
    _from_inline_parts,
    _from_content_data_uri,
    _from_content_items,
    _from_tool_call_arguments,
    _from_data_array,
]


# ============ Text Strategies ============


def _text_from_sdk(raw: Any) -> str | None:
    # google-genai exposes .text, which raises on some blocked responses
    if isinstance(raw, dict):
        return None
    try:
        text = getattr(raw, "text", None)
    except (ValueError, AttributeError):
        return None
    return text if isinstance(text, str) and text else None


def _text_from_parts(raw: Any) -> str | None:
    # Thinking models return reasoning as parts flagged thought=True
    texts = [
        get_field(p, "text") for p in _candidate_parts(raw) if get_field(p, "thought") is not True
    ]
    return "".join(t for t in texts if isinstance(t, str)) or None


def _text_from_chat(raw: Any) -> str | None:
    content = get_field(_chat_message(raw), "content")
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        texts = [get_field(item, "text") for item in content if get_field(item, "type") == "text"]
        return "".join(t for t in texts if t) or None
    return None


def _text_from_anthropic(raw: Any) -> str | None:
    block = first_item(get_field(raw, "content"))
    text = get_field(block, "text")
    return text if isinstance(text, str) else None


TEXT_STRATEGIES: list[Callable[[Any], str | None]] = [
    _text_from_sdk,
    _text_from_parts,
    _text_from_chat,
    _text_from_anthropic,
]


class ResponseExtractor:
    """Runs the ordered text and image strategies over a raw response."""

    def __init__(
        self,
        image_strategies: list[Callable[[Any], str | None]] | None = None,
        text_strategies: list[Callable[[Any], str | None]] | None = None,
    ):
        self.image_strategies = image_strategies or IMAGE_STRATEGIES
        self.text_strategies = text_strategies or TEXT_STRATEGIES

    @staticmethod
    def _run(strategies: list[Callable[[Any], str | None]], raw: Any) -> str | None:
        for strategy in strategies:
            try:
                value = strategy(raw)
            except (TypeError, AttributeError, KeyError, IndexError) as e:
                logger.debug(f"[Extractor] {strategy.__name__} skipped: {e}")
                continue
            if value:
                return value
        return None

    def extract_text(self, raw: Any) -> str:
        return self._run(self.text_strategies, raw) or ""

    def extract_image(self, raw: Any) -> str | None:
        """Return a data URI or http(s) URL, or None."""
        image = self._run(self.image_strategies, raw)
        if image is None or not isinstance(image, str):
            return None
        return ensure_data_uri(image)

    def extract(self, raw: Any) -> Extraction:
        return Extraction(text=self.extract_text(raw), inline_image=self.extract_image(raw))


_extractor = ResponseExtractor()


def extract_response(raw: Any) -> Extraction:
    """Module-level shortcut using the default strategy order."""
    return _extractor.extract(raw)
