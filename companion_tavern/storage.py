"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper methods
that load and dump JSON.

Directory layout:

    {base}/
      config.json                 ← global config (see config.py)
      sessions/
        {slug}/
          state.json              ← CompanionState
          messages.json           ← conversation history (successful turns)
          customization.json      ← Customization
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from companion_tavern.models import CompanionState, Customization, Message

_SLUG = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions_root = base_path / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    @property
    def config_path(self) -> Path:
        return self._base / "config.json"

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_dir(self, slug: str) -> Path:
        if not _SLUG.match(slug):
            raise ValueError(f"Invalid session slug: {slug!r}")
        path = self._sessions_root / slug
        path.mkdir(exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[str]:
        return sorted(p.name for p in self._sessions_root.iterdir() if p.is_dir())

    def slot(self, slug: str) -> SessionSlot:
        self._session_dir(slug)
        return SessionSlot(self, slug)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self, slug: str) -> CompanionState | None:
        path = self._session_dir(slug) / "state.json"
        if not path.exists():
            return None
        return CompanionState.model_validate_json(path.read_text())

    def save_state(self, slug: str, state: CompanionState) -> None:
        path = self._session_dir(slug) / "state.json"
        path.write_text(state.model_dump_json(indent=2))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_messages(self, slug: str) -> list[Message]:
        path = self._session_dir(slug) / "messages.json"
        if not path.exists():
            return []
        return [Message.model_validate(m) for m in self._read_json(path)]

    def save_messages(self, slug: str, messages: list[Message]) -> None:
        """Replace the stored history; failure markers are never written."""
        self._write_json(
            self._session_dir(slug) / "messages.json",
            [m.model_dump() for m in messages if not m.failed],
        )

    # ------------------------------------------------------------------
    # Customization
    # ------------------------------------------------------------------

    def get_customization(self, slug: str) -> Customization:
        path = self._session_dir(slug) / "customization.json"
        if not path.exists():
            return Customization()
        return Customization.model_validate_json(path.read_text())

    def save_customization(self, slug: str, customization: Customization) -> None:
        path = self._session_dir(slug) / "customization.json"
        path.write_text(customization.model_dump_json(indent=2))


class SessionSlot:
    """One session's persistence, as seen by the orchestrator."""

    def __init__(self, storage: Storage, slug: str) -> None:
        self._storage = storage
        self.slug = slug

    def load(self) -> CompanionState | None:
        return self._storage.get_state(self.slug)

    def save(self, state: CompanionState) -> None:
        self._storage.save_state(self.slug, state)

    def load_messages(self) -> list[Message]:
        return self._storage.get_messages(self.slug)

    def save_messages(self, messages: list[Message]) -> None:
        self._storage.save_messages(self.slug, messages)
