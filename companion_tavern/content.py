"""Static rule and world content.

The assembler only needs ``get(section) -> text``. Sections used:

    base             core behaviour of the companion
    response_format  the JSON contract the model must answer with
    phases           entry conditions and rules per story phase
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_RULES_DIR = Path(__file__).parent / "presets" / "rules"


class RuleProvider(Protocol):
    def get(self, section: str) -> str: ...


class StaticRuleProvider:
    """Sections held in memory; unknown sections are empty."""

    def __init__(self, sections: Mapping[str, str]) -> None:
        self._sections = dict(sections)

    def get(self, section: str) -> str:
        return self._sections.get(section, "")


class FileRuleProvider:
    """Reads ``{section}.md`` from a directory, falling back to the bundled rules."""

    def __init__(self, directory: Path | None = None, fallback: Path = DEFAULT_RULES_DIR) -> None:
        self._directories = [d for d in (directory, fallback) if d is not None]

    def get(self, section: str) -> str:
        for directory in self._directories:
            path = directory / f"{section}.md"
            if path.is_file():
                return path.read_text(encoding="utf-8")
        logger.warning("rule section %r not found", section)
        return ""
