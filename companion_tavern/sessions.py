"""Live TurnSessions for the web surface, one per session slug.

The registry also tracks the host bridge: while a host page is connected over
the WebSocket bridge, its RemoteCallClient is the remote proxy offered to every
session's resolver.
"""

from __future__ import annotations

import logging

from companion_tavern.assembler import PromptAssembler
from companion_tavern.channels import HttpEndpoint
from companion_tavern.config import AppConfig, get_config
from companion_tavern.content import RuleProvider
from companion_tavern.models import CompanionState
from companion_tavern.pipeline.core import TurnSession
from companion_tavern.resolver import ContextFrame, TransportResolver
from companion_tavern.rpc import RemoteCallClient
from companion_tavern.storage import Storage

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, storage: Storage, rules: RuleProvider, context: ContextFrame | None = None) -> None:
        self.storage = storage
        self.rules = rules
        self.context = context
        self.remote: RemoteCallClient | None = None
        self.config: AppConfig = get_config(storage.config_path)
        self._sessions: dict[str, TurnSession] = {}

    def _resolver(self) -> TransportResolver:
        return TransportResolver(
            self.context,
            self.remote,
            HttpEndpoint(self.config.endpoint, self.config.timeouts.generation),
            max_depth=self.config.context_depth,
            probe_timeout=self.config.timeouts.probe,
        )

    def get(self, slug: str) -> TurnSession:
        session = self._sessions.get(slug)
        if session is None:
            slot = self.storage.slot(slug)
            session = TurnSession(
                self._resolver(),
                PromptAssembler(self.rules, self.config),
                self.config,
                state=slot.load() or CompanionState(),
                history=slot.load_messages(),
                store=slot,
                customization=self.storage.get_customization(slug),
            )
            self._sessions[slug] = session
            logger.debug("session %s loaded", slug)
        return session

    def reload_config(self) -> AppConfig:
        """Re-read config.json and hand new endpoints/tuning to every session."""
        self.config = get_config(self.storage.config_path)
        for slug, session in self._sessions.items():
            session.config = self.config
            session.resolver = self._resolver()
            session.assembler = PromptAssembler(self.rules, self.config)
            logger.debug("session %s picked up new config", slug)
        return self.config

    def attach_remote(self, client: RemoteCallClient) -> None:
        self.remote = client
        for session in self._sessions.values():
            session.resolver.remote = client
        logger.info("host bridge connected")

    def detach_remote(self, client: RemoteCallClient) -> None:
        if self.remote is not client:
            return
        self.remote = None
        for session in self._sessions.values():
            session.resolver.remote = None
        logger.info("host bridge disconnected")
