"""Core domain models.

Every stage of a turn works on these types. Pydantic validates and serialises
them at each data boundary: the HTTP surface, the JSON store and the merge
result.
"""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]

LocationId = Literal[
    "bedroom",
    "guest_room",
    "living_room",
    "dining_room",
    "kitchen",
    "bathroom",
    "hallway",
    "cinema",
    "mall",
    "clothing_store",
    "amusement_park",
    "office",
    "food_court",
    "cake_shop",
    "school",
    "forest",
    "square",
    "port",
    "exhibition_center",
]

Mood = Literal[
    "neutral",
    "happy",
    "shy",
    "excited",
    "angry",
    "sad",
    "surprised",
    "tired",
]

# Coarse story phase; None while the relationship has not entered an arc yet.
PhaseValue = Literal["A", "B", "C", "D", "E"]

TRACK_NAMES = ("study", "cooking", "music", "sports", "art", "social")

_ROLE_ALIASES: dict[str, Role] = {
    "system": "system",
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "model": "assistant",
    "char": "assistant",
    "character": "assistant",
    "bot": "assistant",
}


def normalize_role(role: str | None) -> Role:
    """Map host-specific role spellings onto the closed role set."""
    return _ROLE_ALIASES.get((role or "").strip().lower(), "user")


# ---------------------------------------------------------------------------
# Generation payload
# ---------------------------------------------------------------------------

class ChatTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class GenerationRequest(BaseModel):
    """The exact payload handed to a channel. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    system_text: str
    history: tuple[ChatTurn, ...] = ()
    user_turn: str

    def to_messages(self) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.system_text}]
        messages.extend({"role": t.role, "content": t.content} for t in self.history)
        messages.append({"role": "user", "content": self.user_turn})
        return messages


# ---------------------------------------------------------------------------
# Canonical simulation state
# ---------------------------------------------------------------------------

class TrackState(BaseModel):
    """Progress in one activity the companion practises."""

    level: int = 0  # 0-100
    practice_count: int = 0
    status: str = "untouched"
    gear: str = ""
    last_partner: str = ""
    notes: str = ""


class CompanionState(BaseModel):
    """The single authoritative status record of a session.

    Every field has a default so a state is never partially populated.
    """

    location: LocationId = "bedroom"
    exact_location: str = ""
    is_accessible: bool = True
    mood: Mood = "neutral"
    favor: int = 10  # 0-100
    energy: int = 80  # 0-100
    stress: int = 10  # 0-100
    heart_rate: int = 70  # 40-200
    outfit: str = "casual clothes"
    current_action: str = ""
    inner_thought: str = ""
    arc: PhaseValue | None = None

    study: TrackState = Field(default_factory=TrackState)
    cooking: TrackState = Field(default_factory=TrackState)
    music: TrackState = Field(default_factory=TrackState)
    sports: TrackState = Field(default_factory=TrackState)
    art: TrackState = Field(default_factory=TrackState)
    social: TrackState = Field(default_factory=TrackState)

    # Caller-owned accumulation; the reconciler never touches these.
    today_favor_gain: int = 0
    last_reset_date: str = ""


class SocialPost(BaseModel):
    """Optional side effect: a post the companion publishes this turn."""

    content: str
    image_description: str = ""


class ParsedResult(BaseModel):
    """Best-effort structure recovered from raw model text.

    `status` is deliberately an untyped partial record; the reconciler is the
    only place it gets validated.
    """

    reply: str
    status: dict = Field(default_factory=dict)
    side_effect: dict | None = None
    suggested_actions: list[str] = Field(default_factory=list)
    stage: str = ""


# ---------------------------------------------------------------------------
# Turn input and history
# ---------------------------------------------------------------------------

class MemoryDigest(BaseModel):
    today_summary: str = ""
    events: list[str] = Field(default_factory=list)  # most recent first


class Customization(BaseModel):
    """Player-supplied text layered on top of the rules."""

    model_config = ConfigDict(frozen=True)

    preset: str = ""
    writing_style: str = ""
    perspective: str = ""  # e.g. "third person", "first person"
    extra: str = ""


class TurnInput(BaseModel):
    """Everything the player supplied for one turn. Replayed verbatim on retry."""

    text: str
    user_location: LocationId | None = None
    via_phone: bool = False  # true when talking through the messaging app
    is_system_action: bool = False  # e.g. "time passes"; not shown as a user bubble
    memory: MemoryDigest | None = None
    date: str | None = None


class Message(BaseModel):
    """One entry in a session's conversation history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender: Literal["user", "character", "system"]
    text: str
    failed: bool = False
    retry_input: TurnInput | None = None  # present on failure markers only
