"""Recover structured results from raw model text.

Models are asked for a single JSON object but routinely wrap it in fences,
add comments, leave trailing commas, get truncated mid-object or give up on
JSON entirely. ``parse_response`` walks an ordered cascade of increasingly
lenient stages and returns the first usable result. Each stage is a pure
function ``(text, previous_status) -> ParsedResult | None``; ``cascade()`` is
the only place their order is defined.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from functools import partial
from typing import Any

from companion_tavern.errors import MalformedResponse
from companion_tavern.models import CompanionState, ParsedResult
from companion_tavern.pipeline.reply import clean_reply

logger = logging.getLogger(__name__)

Stage = Callable[[str, dict], "ParsedResult | None"]

DEFAULT_REPAIR_LIMIT = 8

REPLY_KEYS = ("reply", "response", "content", "text", "message")
SIDE_EFFECT_KEYS = ("post", "side_effect", "sideEffect")
ACTION_KEYS = ("suggested_actions", "suggestedActions")
JSON_LABELS = ("json", "json5", "jsonc")

_FENCE = re.compile(r"```([A-Za-z0-9_+-]*)")
_TRAILING_FENCE = re.compile(r"\s*```\s*$")
_PAIRS = {"{": "}", "[": "]"}

_DANGLING_VALUE = re.compile(
    r'(?P<keep>[{,])\s*"(?:[^"\\]|\\.)*"\s*:\s*(?:t|tr|tru|f|fa|fal|fals|n|nu|nul|-)?$'
)
_DANGLING_KEY = re.compile(r'(?P<keep>[{,])\s*"(?:[^"\\]|\\.)*"$')

_STATUS_FIELD = re.compile(r'(?<![\w])["\']?status["\']?\s*:\s*\{')
_NARRATIVE = re.compile(
    r"<(reply|game|narrative|content)\b[^>]*>(.*?)</\1\s*>", re.DOTALL | re.IGNORECASE
)


def _reply_field(key: str) -> re.Pattern:
    return re.compile(
        r'(?<![\w])["\']?%s["\']?\s*:\s*"((?:[^"\\]|\\.)*)' % key, re.DOTALL
    )


_REPLY_FIELDS = [_reply_field(k) for k in REPLY_KEYS]


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def _try_loads(text: str) -> Any | None:
    try:
        return json.loads(text, strict=False)
    except ValueError:
        return None


def _decode_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"', strict=False)
    except ValueError:
        return (
            raw.rstrip("\\")
            .replace('\\"', '"')
            .replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace("\\\\", "\\")
        )


def _result_from_object(obj: Any) -> ParsedResult | None:
    """A decoded value is usable when it is an object carrying a reply."""
    if not isinstance(obj, dict):
        return None
    reply = next((obj[k] for k in REPLY_KEYS if isinstance(obj.get(k), str)), None)
    if reply is None:
        return None
    status = obj.get("status")
    side_effect = next((obj[k] for k in SIDE_EFFECT_KEYS if isinstance(obj.get(k), dict)), None)
    actions = next((obj[k] for k in ACTION_KEYS if isinstance(obj.get(k), list)), [])
    return ParsedResult(
        reply=reply,
        status=status if isinstance(status, dict) else {},
        side_effect=side_effect,
        suggested_actions=[str(a) for a in actions if a],
    )


def strip_comments(text: str) -> str:
    """Remove // and /* */ comments that sit outside string literals."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def strip_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing brace or bracket."""
    out: list[str] = []
    n = len(text)
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def sanitize(text: str) -> str:
    """Strip comments and trailing commas from the first ``{`` on.

    Prose before the object is left alone; its quotes would otherwise
    desynchronize the string tracking.
    """
    start = text.find("{")
    if start == -1:
        return text
    return text[:start] + strip_trailing_commas(strip_comments(text[start:]))


def balanced_end(text: str, start: int) -> int | None:
    """Index just past the bracket that closes ``text[start]``, or None."""
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
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def close_truncated(text: str, limit: int) -> str | None:
    """Append the closers a truncated JSON text is missing.

    Also terminates an unterminated string and drops a dangling key, colon or
    comma. Returns None when nothing is missing, the nesting is inconsistent,
    or more than ``limit`` closers would be needed.
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
        elif ch in _PAIRS:
            stack.append(ch)
        elif ch in "}]":
            if not stack or _PAIRS[stack[-1]] != ch:
                return None
            stack.pop()

    if not stack or len(stack) > limit:
        return None

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    match = _DANGLING_VALUE.search(repaired)
    if match is None and stack[-1] == "{":
        match = _DANGLING_KEY.search(repaired)
    if match is not None:
        repaired = repaired[:match.start("keep") + 1]
    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    return repaired + "".join(_PAIRS[c] for c in reversed(stack))


def _closing_fences(markers: list[re.Match], opening: int):
    """Yield candidate closing fences for ``markers[opening]``.

    Labeled markers open a nested fence, bare markers close one; the marker
    that brings the depth back to zero comes first, later bare markers follow
    as fallbacks in case a bare fence-like token sat inside a string.
    """
    depth = 1
    found = False
    for marker in markers[opening + 1:]:
        if found:
            if not marker.group(1):
                yield marker
            continue
        if marker.group(1):
            depth += 1
            continue
        depth -= 1
        if depth == 0:
            found = True
            yield marker


def _decode_fenced(text: str, markers: list[re.Match], opening: int) -> ParsedResult | None:
    body_start = markers[opening].end()
    for close in _closing_fences(markers, opening):
        result = _result_from_object(_try_loads(text[body_start:close.start()]))
        if result is not None:
            return result
    # The closing fence may have been cut off.
    return _result_from_object(_try_loads(text[body_start:]))


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def strict(text: str, previous: dict) -> ParsedResult | None:
    return _result_from_object(_try_loads(text.strip()))


def labeled_fence(text: str, previous: dict) -> ParsedResult | None:
    markers = list(_FENCE.finditer(text))
    for i, marker in enumerate(markers):
        if marker.group(1).lower() in JSON_LABELS:
            return _decode_fenced(text, markers, i)
    return None


def unlabeled_fence(text: str, previous: dict) -> ParsedResult | None:
    markers = list(_FENCE.finditer(text))
    for i, marker in enumerate(markers):
        if marker.group(1):
            continue
        if text[marker.end():].lstrip().startswith("{"):
            return _decode_fenced(text, markers, i)
    return None


def outer_span(text: str, previous: dict) -> ParsedResult | None:
    cleaned = sanitize(text)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    return _result_from_object(_try_loads(cleaned[start:end + 1]))


def bracket_repair(text: str, previous: dict, limit: int = DEFAULT_REPAIR_LIMIT) -> ParsedResult | None:
    cleaned = sanitize(text)
    start = cleaned.find("{")
    if start == -1:
        return None
    tail = _TRAILING_FENCE.sub("", cleaned[start:])
    candidates = [tail]
    end = cleaned.rfind("}")
    if end > start:
        candidates.append(cleaned[start:end + 1])
    for candidate in candidates:
        repaired = close_truncated(candidate, limit)
        if repaired is None:
            continue
        result = _result_from_object(_try_loads(repaired))
        if result is not None:
            return result
    return None


def field_salvage(text: str, previous: dict) -> ParsedResult | None:
    reply = None
    for pattern in _REPLY_FIELDS:
        match = pattern.search(text)
        if match:
            reply = _decode_string(match.group(1))
            break
    if reply is None or not reply.strip():
        return None

    status = previous
    match = _STATUS_FIELD.search(text)
    if match:
        brace = match.end() - 1
        end = balanced_end(text, brace)
        if end is not None:
            decoded = _try_loads(sanitize(text[brace:end]))
            if isinstance(decoded, dict):
                status = decoded
    return ParsedResult(reply=reply, status=status)


def narrative_tags(text: str, previous: dict) -> ParsedResult | None:
    match = _NARRATIVE.search(text)
    if match is None or not match.group(2).strip():
        return None
    return ParsedResult(reply=match.group(2).strip(), status=previous)


def raw_text(text: str, previous: dict) -> ParsedResult | None:
    if not clean_reply(text):
        return None
    return ParsedResult(reply=text, status=previous)


def cascade(repair_limit: int = DEFAULT_REPAIR_LIMIT) -> list[tuple[str, Stage]]:
    return [
        ("strict", strict),
        ("labeled_fence", labeled_fence),
        ("unlabeled_fence", unlabeled_fence),
        ("outer_span", outer_span),
        ("bracket_repair", partial(bracket_repair, limit=repair_limit)),
        ("field_salvage", field_salvage),
        ("narrative_tags", narrative_tags),
        ("raw_text", raw_text),
    ]


def parse_response(
    raw: str,
    previous: CompanionState | None = None,
    *,
    repair_limit: int = DEFAULT_REPAIR_LIMIT,
    max_blank_lines: int = 2,
) -> ParsedResult:
    """Run the cascade and post-process the winning reply.

    Raises MalformedResponse only when no stage recovers anything.
    """
    previous_status = previous.model_dump() if previous is not None else {}
    for name, stage in cascade(repair_limit):
        result = stage(raw, previous_status)
        if result is None:
            continue
        if name in ("field_salvage", "narrative_tags", "raw_text"):
            logger.warning("response recovered by %s stage (len=%d)", name, len(raw))
        else:
            logger.debug("response parsed by %s stage", name)
        return result.model_copy(
            update={"reply": clean_reply(result.reply, max_blank_lines), "stage": name}
        )
    raise MalformedResponse(
        f"Could not recover a reply from the model output: {raw[:200]!r}"
    )
