"""Prompt assembly.

Builds the GenerationRequest for a turn from four layers, always in this
order:

    1. base ruleset + response format      ┐
    2. phase-filtered auxiliary ruleset    ├ system_text (cached)
    3. player customization                ┘
    4. turn context block                  → user_turn (rebuilt every turn)

Layers 1-3 are cached on the assembler instance. The cache moves through
three states:

    UNINITIALIZED ──first assembly──▶ STATIC_CACHED
    any state ──invalidate() / phase change / new customization / ttl──▶ DIRTY
    DIRTY ──next assembly──▶ STATIC_CACHED

One assembler belongs to one session; nothing here is module-global.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from companion_tavern.config import AppConfig, PayloadLimits
from companion_tavern.content import RuleProvider
from companion_tavern.models import (
    ChatTurn,
    CompanionState,
    Customization,
    GenerationRequest,
    TurnInput,
)
from companion_tavern.prompts import load_template, render_prompt
from companion_tavern.rules import filter_phase_rules

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[... truncated to fit the payload limit ...]"

# State fields that decide whether the turn context meaningfully changed.
TURN_RELEVANT_FIELDS = ("location", "mood", "outfit", "favor", "energy", "stress")

# Caller bookkeeping the model never needs to see.
_HIDDEN_FIELDS = {"today_favor_gain", "last_reset_date"}

_EVENT_CHARS = 200


class Freshness(enum.Enum):
    UNINITIALIZED = "uninitialized"
    STATIC_CACHED = "static_cached"
    DIRTY = "dirty"


# ---------------------------------------------------------------------------
# Size governance
# ---------------------------------------------------------------------------

def cap_text(text: str, limit: int) -> str:
    """Cut text to ``limit`` chars at a line boundary and mark the cut."""
    if limit <= 0 or len(text) <= limit:
        return text
    cut = text[:limit]
    boundary = cut.rfind("\n")
    if boundary > limit // 2:
        cut = cut[:boundary]
    return f"{cut.rstrip()}\n{TRUNCATION_MARKER}"


def render_snapshot(data: dict[str, Any], limit: int) -> str:
    """JSON for the state snapshot; compact form first, a marked cut last."""
    text = json.dumps(data, ensure_ascii=False, indent=2)
    if len(text) <= limit:
        return text
    compact = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    if len(compact) <= limit:
        return compact
    return cap_text(text, limit)


# ---------------------------------------------------------------------------
# Incremental updates
# ---------------------------------------------------------------------------

def turn_hash(state: CompanionState, turn: TurnInput) -> str:
    subset: dict[str, Any] = {f: getattr(state, f) for f in TURN_RELEVANT_FIELDS}
    subset["user_location"] = turn.user_location
    if turn.memory is not None:
        subset["summary"] = turn.memory.today_summary
        subset["events"] = turn.memory.events[:3]
    raw = json.dumps(subset, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def state_delta(previous: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Fields of ``current`` that differ from ``previous``; nested records per field."""
    delta: dict[str, Any] = {}
    for key, value in current.items():
        before = previous.get(key)
        if isinstance(value, dict) and isinstance(before, dict):
            changed = {k: v for k, v in value.items() if before.get(k) != v}
            if changed:
                delta[key] = changed
        elif before != value:
            delta[key] = value
    return delta


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class PromptAssembler:
    def __init__(
        self,
        rules: RuleProvider,
        config: AppConfig,
        *,
        template: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules = rules
        self._config = config
        self._template = template if template is not None else load_template("turn_context")
        self._clock = clock

        self.freshness = Freshness.UNINITIALIZED
        self._static_text = ""
        self._static_key: tuple[str | None, bool, Customization | None] | None = None
        self._built_at = 0.0
        self._phase: str | None = None
        self._turns = 0
        self._last_snapshot: dict[str, Any] | None = None
        self._last_hash: str | None = None
        self._pending: tuple[str | None, dict[str, Any], str] | None = None

    @property
    def static_text(self) -> str:
        return self._static_text

    def invalidate(self) -> None:
        """Upstream rule or world content changed; rebuild on the next turn."""
        if self.freshness is not Freshness.UNINITIALIZED:
            self.freshness = Freshness.DIRTY

    def assemble(
        self,
        state: CompanionState,
        turn: TurnInput,
        history: Sequence[ChatTurn] = (),
        *,
        customization: Customization | None = None,
        constrained: bool = False,
        channel_restricted: bool = False,
    ) -> GenerationRequest:
        limits = self._config.limits.pick(constrained)
        first_turn = self._turns == 0
        phase_changed = not first_turn and state.arc != self._phase

        static_key = (state.arc, constrained, customization)
        self._refresh_freshness(static_key)
        if self.freshness is not Freshness.STATIC_CACHED:
            self._static_text = self._build_static(state.arc, customization, limits)
            self._static_key = static_key
            self._built_at = self._clock()

        snapshot = state.model_dump(exclude=_HIDDEN_FIELDS)
        current_hash = turn_hash(state, turn)
        incremental = (
            self._config.incremental_updates
            and not first_turn
            and not phase_changed
            and self._last_snapshot is not None
            and current_hash == self._last_hash
        )
        user_turn = self._build_turn_block(
            state, turn, snapshot, limits, incremental, channel_restricted
        )
        request = GenerationRequest(
            system_text=self._static_text,
            history=self._shape_history(history, turn, constrained),
            user_turn=user_turn,
        )

        self.freshness = Freshness.STATIC_CACHED
        self._pending = (state.arc, snapshot, current_hash)
        return request

    def commit(self) -> None:
        """Record the last assembled turn as sent and answered.

        Only committed turns count for the incremental delta, so a failed
        turn that is replayed gets the same payload as the first attempt.
        """
        if self._pending is None:
            return
        self._phase, self._last_snapshot, self._last_hash = self._pending
        self._turns += 1
        self._pending = None

    def _refresh_freshness(self, key: tuple[str | None, bool, Customization | None]) -> None:
        if self.freshness is not Freshness.STATIC_CACHED or self._static_key is None:
            return
        if key[0] != self._static_key[0]:
            logger.debug("phase changed from %s; static prompt is dirty", self._static_key[0])
            self.freshness = Freshness.DIRTY
        elif key != self._static_key:
            logger.debug("customization changed; static prompt is dirty")
            self.freshness = Freshness.DIRTY
        elif self._clock() - self._built_at > self._config.cache_ttl:
            logger.debug("static prompt older than %.0fs; rebuilding", self._config.cache_ttl)
            self.freshness = Freshness.DIRTY

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def _build_static(
        self,
        phase: str | None,
        customization: Customization | None,
        limits: PayloadLimits,
    ) -> str:
        phases = filter_phase_rules(
            self._rules.get("phases"), phase, self._config.phase_transitions
        )
        blocks = [
            cap_text(self._rules.get("base").strip(), limits.rules),
            cap_text(self._rules.get("response_format").strip(), limits.rules),
            cap_text(phases.strip(), limits.rules),
            self._customization_block(customization, limits),
        ]
        text = "\n\n".join(b for b in blocks if b)
        logger.debug("static prompt built phase=%s len=%d", phase, len(text))
        return text

    def _customization_block(self, customization: Customization | None, limits: PayloadLimits) -> str:
        if customization is None:
            return ""
        lines: list[str] = []
        if customization.preset.strip():
            lines.append(cap_text(customization.preset.strip(), limits.preset))
        if customization.writing_style.strip():
            lines.append(f"Writing style: {customization.writing_style.strip()}")
        if customization.perspective.strip():
            lines.append(f"Narrative perspective: {customization.perspective.strip()}")
        if customization.extra.strip():
            lines.append(customization.extra.strip())
        if not lines:
            return ""
        return cap_text("# Player customization\n\n" + "\n\n".join(lines), limits.preset + limits.customization)

    def _build_turn_block(
        self,
        state: CompanionState,
        turn: TurnInput,
        snapshot: dict[str, Any],
        limits: PayloadLimits,
        incremental: bool,
        channel_restricted: bool,
    ) -> str:
        if incremental:
            delta = state_delta(self._last_snapshot or {}, snapshot)
            snapshot_text = render_snapshot(delta, limits.snapshot) if delta else "No status changes."
        else:
            snapshot_text = render_snapshot(snapshot, limits.snapshot)

        memory = turn.memory
        context = {
            "restricted": channel_restricted,
            "user_location": turn.user_location or state.location,
            "companion_location": state.location,
            "snapshot_is_delta": incremental,
            "snapshot": snapshot_text,
            "has_memory": bool(memory and (memory.today_summary or memory.events)),
            "today_summary": cap_text(memory.today_summary, limits.memory) if memory else "",
            "events": [cap_text(e, _EVENT_CHARS) for e in memory.events] if memory else [],
            "is_system_action": turn.is_system_action,
            "via_phone": turn.via_phone,
            "text": cap_text(turn.text, limits.customization),
        }
        return render_prompt(self._template, context).strip()

    def _shape_history(
        self,
        history: Sequence[ChatTurn],
        turn: TurnInput,
        constrained: bool,
    ) -> tuple[ChatTurn, ...]:
        window = (
            self._config.history_window_constrained if constrained else self._config.history_window
        )
        recent = list(history[-window:]) if window > 0 else []
        summary = turn.memory.today_summary.strip() if turn.memory else ""
        if summary and len(history) > window + 3:
            recent.insert(0, ChatTurn(role="system", content=f"Earlier today: {summary}"))
        return tuple(recent)
