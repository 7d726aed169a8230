"""
Tolerant JSON parsing for model output.

Models wrap JSON in markdown fences, prepend chatter, leave trailing commas
and get truncated mid-structure. ``JSONRepairParser.parse`` recovers a value
through a fixed sequence of cheap repairs before giving up with a
ParseFailureError.
"""

import json
import logging
import re
from typing import Any

from core.exceptions import ParseFailureError

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
TRAILING_COMMA_PATTERN = re.compile(r",\s*([\]}])")

CLOSERS = {"[": "]", "{": "}"}

_FAILED = object()


def strip_fences(text: str) -> str:
    """Remove ```json / ``` markers."""
    return FENCE_PATTERN.sub("", text).strip()


def locate_json_span(text: str) -> str:
    """
    Cut the outermost JSON array or object out of surrounding prose.

    The array wins when its ``[`` comes before the first ``{``. When the
    matching closer is missing the span runs to the end of the text, so a
    truncated structure survives for balancing.
    """
    first_obj = text.find("{")
    first_arr = text.find("[")

    if first_arr != -1 and (first_obj == -1 or first_arr < first_obj):
        start, closer = first_arr, "]"
    elif first_obj != -1:
        start, closer = first_obj, "}"
    else:
        return text

    end = text.rfind(closer)
    if end > start:
        return text[start : end + 1]
    return text[start:]


def strip_trailing_commas(text: str) -> str:
    return TRAILING_COMMA_PATTERN.sub(r"\1", text)


def balance_brackets(text: str) -> str:
    """
    Append the closers a truncated document is missing.

    Brackets inside string literals are ignored; an unterminated string is
    closed first.
    """
    stack: list[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in CLOSERS:
            stack.append(CLOSERS[ch])
        elif ch in ("]", "}") and stack and stack[-1] == ch:
            stack.pop()

    result = text
    if in_string:
        if escaped:
            result = result[:-1]
        result += '"'
    result = result.rstrip() + "".join(reversed(stack))
    return strip_trailing_commas(result)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return _FAILED


class JSONRepairParser:
    """Layered parser: direct, trailing commas, then bracket balancing."""

    def _try_parse(self, text: str) -> Any:
        for stage, repaired in (
            ("direct", lambda t: t),
            ("trailing_commas", strip_trailing_commas),
            ("balanced", balance_brackets),
        ):
            value = _loads(repaired(text))
            if value is not _FAILED:
                if stage != "direct":
                    logger.debug(f"[JSONRepair] Recovered via {stage}")
                return value
        return _FAILED

    def parse(self, raw_text: str | None) -> Any:
        """
        Parse model output into a JSON value.

        Returns None for blank input.

        Raises:
            ParseFailureError: every repair stage failed; the message carries
                the first 100 characters of the input.
        """
        if raw_text is None or not raw_text.strip():
            return None

        cleaned = strip_fences(raw_text)
        candidates = [locate_json_span(cleaned)]
        if cleaned != candidates[0]:
            candidates.append(cleaned)

        for candidate in candidates:
            value = self._try_parse(candidate)
            if value is not _FAILED:
                return value

        logger.warning(f"[JSONRepair] All repair stages failed for: {raw_text[:100]!r}")
        raise ParseFailureError(f"JSON_PARSE_FAILURE: {raw_text[:100]}...")


_parser = JSONRepairParser()


def safe_json_parse(raw_text: str | None) -> Any:
    """Module-level shortcut for ``JSONRepairParser().parse``."""
    return _parser.parse(raw_text)
