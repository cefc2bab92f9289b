"""Reply text post-processing.

Whatever stage of the parse cascade produced the reply, the player should
only ever see narrative prose: no code fences, no reasoning tags, no literal
``\\n`` sequences and no walls of blank lines.
"""

import re

# Fenced JSON blocks are payload, not prose.
_JSON_FENCE = re.compile(r"```\s*json[^\n]*\n.*?(?:```|$)", re.DOTALL | re.IGNORECASE)
_FENCE_MARKER = re.compile(r"```[A-Za-z0-9_+-]*")
_META_BLOCK = re.compile(
    r"<(think|thinking|consider|summary|details)\b[^>]*>.*?</\1\s*>",
    re.DOTALL | re.IGNORECASE,
)
_KNOWN_TAG = re.compile(
    r"</?(?:think|thinking|consider|summary|details|game|simulator)\b[^>]*>",
    re.IGNORECASE,
)
_TRAILING_SPACE = re.compile(r"[ \t]+\n")

_ESCAPES = (
    ("\\r\\n", "\n"),
    ("\\n", "\n"),
    ("\\r", "\n"),
    ("\\t", "\t"),
    ('\\"', '"'),
)


def decode_escapes(text: str) -> str:
    """Turn literal escape sequences the model double-escaped into real characters."""
    for escaped, literal in _ESCAPES:
        text = text.replace(escaped, literal)
    return text


def collapse_blank_lines(text: str, max_blank_lines: int = 2) -> str:
    text = _TRAILING_SPACE.sub("\n", text)
    limit = max(max_blank_lines, 0) + 1
    return re.sub(r"\n{%d,}" % (limit + 1), "\n" * limit, text)


def clean_reply(text: str, max_blank_lines: int = 2) -> str:
    text = _META_BLOCK.sub("", text)
    text = _JSON_FENCE.sub("", text)
    text = _FENCE_MARKER.sub("", text)
    text = _KNOWN_TAG.sub("", text)
    text = decode_escapes(text)
    text = text.replace("\r\n", "\n")
    return collapse_blank_lines(text, max_blank_lines).strip()
