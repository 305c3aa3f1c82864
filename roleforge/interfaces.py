"""Collaborator interfaces the round orchestrator depends on.

Everything here is injected. Nothing in the package reaches for a global
service locator.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from roleforge.models import CharacterProfile, Identity, Memory

if TYPE_CHECKING:
    from roleforge.pipeline.context import RoleContext

logger = logging.getLogger(__name__)


class RoleRunner(Protocol):
    """Invoke one role (director, world, character, summarizer) and return its raw text."""

    async def __call__(self, role: str, context: RoleContext) -> str: ...


class IdentityResolver(Protocol):
    """Map a loose character reference (name, nickname, id) to an identity."""

    def __call__(self, reference: str) -> Identity | None: ...


class CharacterLookup(Protocol):
    """Merged character catalog (base profile plus world/campaign overrides)."""

    def find_character(self, reference: str) -> CharacterProfile | None: ...


class MemoryRetriever(Protocol):
    async def retrieve(
        self,
        query: str,
        scope: str,
        top_k: int,
        min_similarity: float,
    ) -> Sequence[Memory]: ...


class MemoryWriter(Protocol):
    async def store(self, scope: str, text: str, metadata: dict[str, Any]) -> None: ...


class MessageCountProvider(Protocol):
    """Count scene messages newer than a round number or timestamp marker."""

    def get_message_count_since(self, scene_id: str, marker: Any) -> int: ...


class TurnEventSink(Protocol):
    """Fire-and-forget progress notifications for connected clients."""

    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class NullEventSink:
    def emit(self, event: str, payload: dict[str, Any]) -> None:
        pass


class LoggingEventSink:
    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.log(self.level, "event %s: %s", event, payload)
