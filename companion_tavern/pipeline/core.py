"""Turn orchestration.

A TurnSession owns everything that must survive between turns of one
session: the canonical state, the conversation history, the prompt cache
(inside its assembler) and the busy flag. One turn is:

    assemble → resolve channel → invoke → parse → merge → commit

Turns never overlap: a second ``run_turn`` while one is pending raises
TurnInProgress. A failed turn changes nothing except appending one failure
marker whose ``retry_input`` replays the identical input via ``retry()``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from typing import Protocol

from pydantic import ValidationError

from companion_tavern.assembler import PromptAssembler
from companion_tavern.config import AppConfig
from companion_tavern.errors import (
    ConfigurationError,
    EmptyGeneration,
    MalformedResponse,
    TransportUnavailable,
    TurnError,
    TurnInProgress,
)
from companion_tavern.models import (
    ChatTurn,
    CompanionState,
    Customization,
    GenerationRequest,
    Message,
    SocialPost,
    TurnInput,
    normalize_role,
)
from companion_tavern.pipeline.extractors import parse_response
from companion_tavern.pipeline.reconcile import DEFAULT_TABLES, ReconcileTables, merge
from companion_tavern.resolver import TransportResolver

logger = logging.getLogger(__name__)

REMEDIATION = (
    "No generation channel is available. Open the game inside a host that "
    "exposes ST_API or TavernHelper, connect the host bridge, or configure an "
    "API base URL and key (AI_API_BASE / AI_API_KEY)."
)


class SessionStore(Protocol):
    def load(self) -> CompanionState | None: ...

    def save(self, state: CompanionState) -> None: ...

    def load_messages(self) -> list[Message]: ...

    def save_messages(self, messages: list[Message]) -> None: ...


@dataclass
class TurnOutcome:
    """What the presentation layer receives for one turn."""

    reply_text: str
    state: CompanionState
    post: SocialPost | None = None
    suggested_actions: list[str] = field(default_factory=list)
    channel: str = ""
    error: TurnError | None = None
    marker: Message | None = None
    retry: Callable[[], Awaitable[TurnOutcome]] | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def apply_daily_cap(
    previous: CompanionState,
    merged: CompanionState,
    date: str | None,
    cap: int,
) -> CompanionState:
    """Limit how much favor can be gained per day. ``cap <= 0`` disables it."""
    gained = previous.today_favor_gain
    reset_date = previous.last_reset_date
    if date and date != reset_date:
        gained = 0
        reset_date = date

    favor = merged.favor
    increase = merged.favor - previous.favor
    if cap > 0 and increase > 0:
        applied = min(increase, max(0, cap - gained))
        favor = previous.favor + applied
        gained += applied
    elif increase > 0:
        gained += increase

    return merged.model_copy(
        update={"favor": favor, "today_favor_gain": gained, "last_reset_date": reset_date}
    )


def _side_effect_post(side_effect: dict | None) -> SocialPost | None:
    if not side_effect or not side_effect.get("content"):
        return None
    try:
        return SocialPost(
            content=side_effect["content"],
            image_description=side_effect.get("image_description")
            or side_effect.get("imageDescription")
            or "",
        )
    except ValidationError as e:
        logger.debug("dropping malformed post side effect: %s", e)
        return None


def _failure_text(error: TurnError) -> str:
    if isinstance(error, ConfigurationError):
        return f"Configuration problem: {error}"
    if isinstance(error, MalformedResponse):
        return "The model's answer could not be read. Retry to generate it again."
    return f"The model returned nothing usable ({error}). Retry to generate it again."


class TurnSession:
    def __init__(
        self,
        resolver: TransportResolver,
        assembler: PromptAssembler,
        config: AppConfig,
        *,
        state: CompanionState | None = None,
        history: list[Message] | None = None,
        store: SessionStore | None = None,
        customization: Customization | None = None,
        constrained: bool = False,
        tables: ReconcileTables = DEFAULT_TABLES,
    ) -> None:
        self.resolver = resolver
        self.assembler = assembler
        self.config = config
        self.state = state or CompanionState()
        self.history: list[Message] = list(history or [])
        self.customization = customization
        self.constrained = constrained
        self._store = store
        self._tables = tables
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def run_turn(self, turn: TurnInput) -> TurnOutcome:
        if self._busy:
            raise TurnInProgress("A turn is already running for this session")
        self._busy = True
        try:
            return await self._run(turn)
        finally:
            self._busy = False

    async def retry(self, marker_id: str) -> TurnOutcome:
        """Drop a failure marker and replay the input that produced it."""
        if self._busy:
            raise TurnInProgress("A turn is already running for this session")
        for i, message in enumerate(self.history):
            if message.id == marker_id and message.failed and message.retry_input is not None:
                del self.history[i]
                return await self.run_turn(message.retry_input)
        raise LookupError(f"No failure marker with id {marker_id!r}")

    # ------------------------------------------------------------------
    # One turn
    # ------------------------------------------------------------------

    async def _run(self, turn: TurnInput) -> TurnOutcome:
        previous = self.state
        restricted = (
            turn.via_phone
            and turn.user_location is not None
            and turn.user_location != previous.location
        )
        request = self.assembler.assemble(
            previous,
            turn,
            self._chat_history(),
            customization=self.customization,
            constrained=self.constrained,
            channel_restricted=restricted,
        )
        try:
            raw, channel = await self._generate(request)
            if not raw.strip():
                raise EmptyGeneration(f"{channel} returned an empty generation")
            parsed = parse_response(
                raw,
                previous,
                repair_limit=self.config.repair_limit,
                max_blank_lines=self.config.max_blank_lines,
            )
            if not parsed.reply:
                raise EmptyGeneration("the answer contained no reply text")
        except (ConfigurationError, EmptyGeneration, MalformedResponse) as e:
            logger.warning("turn failed: %s: %s", type(e).__name__, e)
            return self._fail(turn, e)

        merged = merge(previous, parsed, channel_restricted=restricted, tables=self._tables)
        new_state = apply_daily_cap(previous, merged, turn.date, self.config.daily_favor_cap)
        self.assembler.commit()
        self._commit(turn, parsed.reply, new_state)
        logger.debug("turn done channel=%s stage=%s", channel, parsed.stage)
        return TurnOutcome(
            reply_text=parsed.reply,
            state=new_state,
            post=_side_effect_post(parsed.side_effect),
            suggested_actions=parsed.suggested_actions,
            channel=channel,
        )

    async def _generate(self, request: GenerationRequest) -> tuple[str, str]:
        """Invoke channels in preference order until one answers."""
        last_error: TransportUnavailable | None = None
        async with aclosing(self.resolver.candidates()) as channels:
            async for channel in channels:
                try:
                    text = await channel.invoke(request, self.config.timeouts.generation)
                except TransportUnavailable as e:
                    logger.warning("channel %s unavailable: %s", e.channel, e.reason)
                    last_error = e
                    continue
                return text, channel.name
        if last_error is not None:
            raise ConfigurationError(f"{REMEDIATION} Last failure: {last_error}") from last_error
        raise ConfigurationError(REMEDIATION)

    def _chat_history(self) -> list[ChatTurn]:
        return [
            ChatTurn(role=normalize_role(m.sender), content=m.text)
            for m in self.history
            if not m.failed and m.sender != "system"
        ]

    def _commit(self, turn: TurnInput, reply: str, new_state: CompanionState) -> None:
        if not turn.is_system_action:
            self.history.append(Message(sender="user", text=turn.text))
        self.history.append(Message(sender="character", text=reply))
        self.state = new_state
        if self._store is None:
            return
        try:
            self._store.save(new_state)
            self._store.save_messages(self.history)
        except OSError as e:
            logger.warning("auto-save failed: %s", e)

    def _fail(self, turn: TurnInput, error: TurnError) -> TurnOutcome:
        marker = Message(sender="system", text=_failure_text(error), failed=True, retry_input=turn)
        self.history.append(marker)
        return TurnOutcome(
            reply_text="",
            state=self.state,
            error=error,
            marker=marker,
            retry=partial(self.retry, marker.id),
        )
