"""Response Normalizer — pulls structured JSON out of narrative model output.

Models often wrap a machine-readable payload in prose or a fenced code
block. Extraction is best-effort and never raises:
  - fenced block first (```json ... ```)
  - then every brace-balanced candidate, longest first
  - then the span between the first "{" and the last "}"
  - otherwise the text comes back flagged as raw
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)

# Shorter balanced fragments are almost always inline braces, not payloads
_MIN_CANDIDATE_LENGTH = 10


@dataclass
class JsonExtraction:
    """Result of ``extract_json``: the object found, or the raw text."""

    data: dict[str, Any] | None
    raw_text: str
    source: str = "raw"  # fence | balanced | span | raw
    candidates_tried: int = 0
    notes: list[str] = field(default_factory=list)

    @property
    def is_structured(self) -> bool:
        return self.data is not None

    def as_dict(self) -> dict[str, Any]:
        """The object, or ``{"raw": text}`` when nothing parsed."""
        return self.data if self.data is not None else {"raw": self.raw_text}


def _decode_object(candidate: str) -> dict[str, Any] | None:
    """Decode a candidate; unwrap one level of double encoding.

    Only JSON objects count. A decoded list or scalar is rejected so the
    caller moves on to the next candidate.
    """
    try:
        decoded = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None

    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except (json.JSONDecodeError, ValueError):
            return None

    return decoded if isinstance(decoded, dict) else None


def extract_balanced(text: str, start: int) -> str | None:
    """Brace-balanced substring beginning at ``text[start] == "{"``.

    Single forward pass. Braces inside string literals do not count and
    backslash escapes inside strings are honored.
    """
    if start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


def _balanced_candidates(text: str) -> list[str]:
    candidates: list[str] = []
    seen: set[str] = set()
    for match in re.finditer(r"\{", text):
        block = extract_balanced(text, match.start())
        if block and len(block) > _MIN_CANDIDATE_LENGTH and block not in seen:
            seen.add(block)
            candidates.append(block)
    # longest first; sort is stable so equal lengths keep text order
    candidates.sort(key=len, reverse=True)
    return candidates


def _fenced_interior(text: str) -> str | None:
    """Interior of the first ``` fence that holds an object."""
    fence_at = text.find("```")
    if fence_at == -1:
        return None

    brace_at = text.find("{", fence_at)
    close_at = text.find("```", fence_at + 3)
    if brace_at != -1 and (close_at == -1 or brace_at < close_at):
        block = extract_balanced(text, brace_at)
        if block:
            return block

    match = _FENCE_PATTERN.search(text)
    return match.group(1) if match else None


def extract_json(text: str | None) -> JsonExtraction:
    """Best-effort extraction of the intended JSON object from ``text``."""
    cleaned = (text or "").strip()
    result = JsonExtraction(data=None, raw_text=cleaned)
    if not cleaned:
        return result

    interior = _fenced_interior(cleaned)
    if interior is not None:
        result.candidates_tried += 1
        data = _decode_object(interior)
        if data is not None:
            result.data, result.source = data, "fence"
            return result
        result.notes.append("fenced block did not parse")

    # A whole-text double-encoded payload ("{\"a\": 1}") has no bare braces to balance
    if cleaned.startswith('"'):
        result.candidates_tried += 1
        data = _decode_object(cleaned)
        if data is not None:
            result.data, result.source = data, "balanced"
            return result

    for candidate in _balanced_candidates(cleaned):
        result.candidates_tried += 1
        data = _decode_object(candidate)
        if data is not None:
            result.data, result.source = data, "balanced"
            return result

    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        result.candidates_tried += 1
        data = _decode_object(cleaned[first : last + 1])
        if data is not None:
            result.data, result.source = data, "span"
            return result

    logger.debug("No JSON object found in %d chars of model output", len(cleaned))
    return result


def extract_json_block(text: str | None) -> dict[str, Any]:
    """Extracted object, or ``{"raw": text}`` when the text holds none."""
    return extract_json(text).as_dict()
