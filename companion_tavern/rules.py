"""Phase-aware filtering of the auxiliary ruleset.

The ruleset is Markdown split into ``## `` sections. Headings of the form
``## Phase B entry ...`` describe how a phase is reached; headings of the form
``## Phase B ...`` carry the rules that apply while in it. Anything else is
untagged and always kept.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

_HEADING = re.compile(r"^##(?!#)\s*(.*)$")
_PHASE_HEADING = re.compile(r"^phase\s+([A-Za-z])\b(.*)$", re.IGNORECASE)
_ENTRY = re.compile(r"\bentry\b", re.IGNORECASE)


@dataclass(frozen=True)
class RuleSection:
    heading: str  # empty for the preamble before the first heading
    body: str
    phase: str | None = None
    entry: bool = False

    def render(self) -> str:
        if not self.heading:
            return self.body
        return f"## {self.heading}\n{self.body}" if self.body else f"## {self.heading}"


def split_sections(text: str) -> list[RuleSection]:
    sections: list[RuleSection] = []
    heading = ""
    lines: list[str] = []

    def flush() -> None:
        body = "\n".join(lines).strip("\n")
        if heading or body.strip():
            sections.append(_classify(heading, body))

    for line in text.splitlines():
        match = _HEADING.match(line)
        if match:
            flush()
            heading = match.group(1).strip()
            lines = []
        else:
            lines.append(line)
    flush()
    return sections


def _classify(heading: str, body: str) -> RuleSection:
    match = _PHASE_HEADING.match(heading)
    if not match:
        return RuleSection(heading, body)
    return RuleSection(
        heading,
        body,
        phase=match.group(1).upper(),
        entry=bool(_ENTRY.search(match.group(2))),
    )


def initial_phase(transitions: Mapping[str, str]) -> str | None:
    """The phase nothing transitions into, i.e. where an arc starts."""
    targets = set(transitions.values())
    for phase in transitions:
        if phase not in targets:
            return phase
    return None


def reachable_phases(phase: str | None, transitions: Mapping[str, str]) -> set[str]:
    """The current phase plus the single phase reachable from it."""
    if phase is None:
        start = initial_phase(transitions)
        return {start} if start else set()
    keep = {phase}
    following = transitions.get(phase)
    if following:
        keep.add(following)
    return keep


def filter_phase_rules(text: str, phase: str | None, transitions: Mapping[str, str]) -> str:
    """Drop phase rule sections that cannot matter this turn.

    Entry-condition sections survive for every phase so transitions can still
    be detected.
    """
    keep = reachable_phases(phase, transitions)
    kept = [
        s.render()
        for s in split_sections(text)
        if s.phase is None or s.entry or s.phase in keep
    ]
    return "\n\n".join(kept)
