"""Context assembly for role calls.

Each round builds one :class:`ContextEnvelope` snapshot (history, summary,
lore, memories, world and character state as they were when the round
started). Every role call receives a :class:`RoleContext` wrapping that
envelope plus the role-specific, current-state pieces it needs.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field

from roleforge.config import Settings
from roleforge.interfaces import MemoryRetriever, MessageCountProvider
from roleforge.lorebook import format_lore, match_lore_entries, scan_text
from roleforge.memory import format_memories_for_prompt, rerank_memories
from roleforge.models import (
    CharacterProfile,
    CharacterState,
    LoreEntry,
    RoundState,
    SceneMessage,
    ScoredMemory,
    SessionContext,
    Trackers,
    TurnResult,
)

logger = logging.getLogger(__name__)

Role = Literal["director", "world", "character", "summarizer"]


class ContextEnvelope(BaseModel):
    """Read-only snapshot shared by every role call of one round."""

    model_config = ConfigDict(frozen=True)

    request_type: Literal["user", "continue"] = "user"
    scene_id: str
    round_number: int
    user_input: str
    persona_name: str
    scene_title: str = ""
    location: str = ""
    summary: str = ""
    history: tuple[str, ...] = ()
    lore: tuple[LoreEntry, ...] = ()
    formatted_lore: str = ""
    memories: tuple[ScoredMemory, ...] = ()
    formatted_memories: str = ""
    active_characters: tuple[CharacterProfile, ...] = ()
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    character_states: dict[str, CharacterState] = Field(default_factory=dict)


class RoleContext(BaseModel):
    """Everything one role invocation is given."""

    model_config = ConfigDict(frozen=True)

    role: Role
    envelope: ContextEnvelope
    director_pass: int = 1
    directive: str = ""
    character: CharacterProfile | None = None
    character_state: CharacterState | None = None
    character_memories: str = ""
    entered: bool = False
    exiting: bool = False
    turn_responses: tuple[TurnResult, ...] = ()
    recent_events: tuple[str, ...] = ()
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    character_states: dict[str, CharacterState] = Field(default_factory=dict)
    active_names: tuple[str, ...] = ()
    attempt: int = 1
    last_error: str | None = None

    def retry(self, attempt: int, last_error: str | None) -> RoleContext:
        return self.model_copy(update={"attempt": attempt, "last_error": last_error})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def history_lines(messages: Sequence[SceneMessage]) -> list[str]:
    return [f"{m.sender}: {m.content}" for m in messages]


def memory_scope(session: SessionContext, character_key: str | None = None) -> str:
    base = f"world_{session.world_id}" if session.world_id else f"scene_{session.scene_id}"
    return f"{base}_char_{character_key}" if character_key else base


async def retrieve_memories(
    retriever: MemoryRetriever | None,
    query: str,
    scope: str,
    settings: Settings,
    message_counts: MessageCountProvider | None = None,
) -> list[ScoredMemory]:
    """Retrieve, decay, boost and cap memories. Failures yield no memories."""
    if retriever is None or not query.strip():
        return []
    top_k = settings.effective_top_k
    if top_k <= 0:
        return []
    try:
        found = await retriever.retrieve(
            query[:settings.memory_max_query_chars],
            scope,
            top_k,
            settings.memory_min_similarity,
        )
    except Exception as e:
        logger.warning("Memory retrieval failed for %s: %s", scope, e)
        return []
    return rerank_memories(
        found,
        decay=settings.temporal_decay,
        rules=settings.conditional_rules,
        message_counts=message_counts,
        top_k=top_k,
    )


def _deep_states(states: dict[str, CharacterState]) -> dict[str, CharacterState]:
    return {k: v.model_copy(deep=True) for k, v in states.items()}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

async def build_envelope(
    session: SessionContext,
    state: RoundState,
    user_input: str,
    persona_name: str,
    settings: Settings,
    messages: Sequence[SceneMessage] = (),
    request_type: Literal["user", "continue"] = "user",
    retriever: MemoryRetriever | None = None,
    message_counts: MessageCountProvider | None = None,
) -> ContextEnvelope:
    history = history_lines(messages)
    lore = match_lore_entries(
        session.lorebook,
        scan_text(user_input, history, settings.lore_scan_depth),
        settings.lore_token_budget,
    )
    memories = await retrieve_memories(
        retriever, user_input, memory_scope(session), settings, message_counts,
    )
    return ContextEnvelope(
        request_type=request_type,
        scene_id=state.scene_id,
        round_number=state.round_number,
        user_input=user_input,
        persona_name=persona_name,
        scene_title=session.title,
        location=session.location,
        summary=session.summary,
        history=tuple(history),
        lore=tuple(lore),
        formatted_lore=format_lore(lore),
        memories=tuple(memories),
        formatted_memories=format_memories_for_prompt(memories),
        active_characters=tuple(session.active_characters),
        world_state=dict(state.world_state),
        trackers=state.trackers.model_copy(deep=True),
        character_states=_deep_states(state.character_states),
    )


def _current(state: RoundState) -> dict[str, Any]:
    return {
        "world_state": dict(state.world_state),
        "trackers": state.trackers.model_copy(deep=True),
        "character_states": _deep_states(state.character_states),
    }


def director_context(
    envelope: ContextEnvelope,
    state: RoundState,
    active_names: Sequence[str],
) -> RoleContext:
    return RoleContext(
        role="director",
        envelope=envelope,
        director_pass=1,
        active_names=tuple(active_names),
        **_current(state),
    )


def world_context(
    envelope: ContextEnvelope,
    state: RoundState,
    recent_events: Sequence[str],
    active_names: Sequence[str],
) -> RoleContext:
    return RoleContext(
        role="world",
        envelope=envelope,
        recent_events=tuple(recent_events),
        active_names=tuple(active_names),
        **_current(state),
    )


def character_context(
    envelope: ContextEnvelope,
    state: RoundState,
    character: CharacterProfile,
    state_key: str,
    directive: str,
    responses: Sequence[TurnResult],
    memories: Sequence[ScoredMemory] = (),
    director_pass: int = 1,
) -> RoleContext:
    """Context for one character turn, including earlier responses of this round."""
    char_state = state.character_states.get(state_key, CharacterState())
    return RoleContext(
        role="character",
        envelope=envelope,
        director_pass=director_pass,
        directive=directive,
        character=character,
        character_state=char_state.model_copy(deep=True),
        character_memories=format_memories_for_prompt(memories),
        entered=char_state.entered_this_round,
        exiting=char_state.exited_this_round,
        turn_responses=tuple(responses),
        **_current(state),
    )


def reconciliation_context(
    envelope: ContextEnvelope,
    state: RoundState,
    responses: Sequence[TurnResult],
    active_names: Sequence[str],
    director_pass: int = 2,
) -> RoleContext:
    """Director context for a reconciliation pass.

    The first pass's guidance is not carried over; the director sees what
    the characters actually did instead.
    """
    return RoleContext(
        role="director",
        envelope=envelope,
        director_pass=director_pass,
        directive="",
        turn_responses=tuple(responses),
        active_names=tuple(active_names),
        **_current(state),
    )


def summarizer_context(envelope: ContextEnvelope, state: RoundState, events: Sequence[str]) -> RoleContext:
    return RoleContext(
        role="summarizer",
        envelope=envelope,
        recent_events=tuple(events),
        **_current(state),
    )
