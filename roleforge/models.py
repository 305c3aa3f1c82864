"""Core domain models.

Every stage of a round (parser, scorer, plan engine, orchestrator) and every
storage function operates on these types. Pydantic is used for validation and
serialisation at every data boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Fields a role may change on a character. Order matters for audit deltas.
STATE_FIELDS: tuple[str, ...] = (
    "location",
    "mood",
    "clothing",
    "activity",
    "intentions",
    "position",
)


class CharacterState(BaseModel):
    """Per-character, per-round state record.

    The three ``*_this_round`` flags are reset at the start of every round and
    set at most once per round.
    """

    model_config = ConfigDict(extra="allow")

    mood: str | None = None
    activity: str | None = None
    location: str | None = None
    position: str | None = None
    clothing: str | None = None
    intentions: str | None = None
    entered_this_round: bool = False
    exited_this_round: bool = False
    has_acted_this_round: bool = False

    def reset_round_flags(self) -> CharacterState:
        return self.model_copy(update={
            "entered_this_round": False,
            "exited_this_round": False,
            "has_acted_this_round": False,
        })


class Trackers(BaseModel):
    stats: dict[str, Any] = Field(default_factory=dict)
    objectives: list[str] = Field(default_factory=list)
    relationships: dict[str, str] = Field(default_factory=dict)


TimelineEventType = Literal[
    "roundStarted",
    "directorPassStarted",
    "directorPassCompleted",
    "directorPassSkipped",
    "followUpQueued",
    "followUpGuardrail",
    "worldUpdateStarted",
    "worldUpdateCompleted",
    "worldUpdateSkipped",
    "characterRunStarted",
    "characterRunCompleted",
    "roundMetadataRecorded",
]


class TimelineEntry(BaseModel):
    """One append-only audit record in a round's timeline."""

    model_config = ConfigDict(frozen=True)

    type: TimelineEventType
    round_number: int
    timestamp: datetime
    detail: dict[str, Any] = Field(default_factory=dict)


class SceneMessage(BaseModel):
    """A single entry in a scene's append-only message log."""

    message_number: int = 0
    round_number: int
    sender: str
    content: str
    source: Literal["user", "system", "character"] = "character"
    timestamp: datetime


class RoundState(BaseModel):
    """Mutable state of the round in flight for one scene."""

    scene_id: str
    round_number: int = Field(ge=1)
    active_character_ids: list[str] = Field(default_factory=list)
    character_states: dict[str, CharacterState] = Field(default_factory=dict)
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    pending_world_update: bool = False
    pending_tracker_update: bool = False
    timeline: list[TimelineEntry] = Field(default_factory=list)
    deferred_actors: list[str] = Field(default_factory=list)
    responders: list[str] = Field(default_factory=list)
    messages: list[SceneMessage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Director plan
# ---------------------------------------------------------------------------

class ActingCharacter(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str | None = None
    guidance: str | None = None
    priority: float | None = None
    order: float | None = None


class StateUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str | None = None
    location: str | None = None
    mood: str | None = None
    clothing: str | None = None
    activity: str | None = None
    intentions: str | None = None
    position: str | None = None


class DirectorPlan(BaseModel):
    """Normalized director decision. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    open_guidance: str = ""
    acting_characters: tuple[ActingCharacter, ...] = ()
    activations: tuple[str, ...] = ()
    deactivations: tuple[str, ...] = ()
    state_updates: tuple[StateUpdate, ...] = ()
    remaining_actors: tuple[str, ...] = ()
    new_activations: tuple[str, ...] = ()


class Identity(BaseModel):
    """Canonical identity a loose character reference resolves to."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str

    @property
    def key(self) -> str:
        return self.id or self.name


class AppliedStateUpdate(BaseModel):
    name: str
    changes: dict[str, str]


class DirectorApplicationResult(BaseModel):
    characters_to_respond: list[str] = Field(default_factory=list)
    ordered_actors: list[ActingCharacter] = Field(default_factory=list)
    active_character_ids: list[str] = Field(default_factory=list)
    updated_states: dict[str, CharacterState] = Field(default_factory=dict)
    applied_state_updates: list[AppliedStateUpdate] = Field(default_factory=list)
    activations: list[Identity] = Field(default_factory=list)
    deactivations: list[Identity] = Field(default_factory=list)
    remaining_actors: list[str] = Field(default_factory=list)
    new_activations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

class Memory(BaseModel):
    """Read-only record returned by the retrieval subsystem."""

    model_config = ConfigDict(frozen=True)

    text: str
    similarity: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScoredMemory(BaseModel):
    """A memory paired with its decay/boost-adjusted sort key."""

    model_config = ConfigDict(frozen=True)

    memory: Memory
    score: float


class DecayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = False
    mode: Literal["time", "messageCount"] = "time"
    half_life: float | None = Field(default=None, alias="halfLife")
    floor: float = Field(default=0.3, ge=0.0, le=1.0)


class ConditionalRule(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    field: str
    match: str
    boost: float = 1.0
    match_type: Literal["exact", "substring"] = Field(default="substring", alias="matchType")


class Sampler(BaseModel):
    """Generation parameters sent with every completion request of a role."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_tokens: int = Field(default=512, ge=1, alias="maxTokens")
    temperature: float = Field(default=0.7, ge=0.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0, alias="topP")
    stop: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Scene / session
# ---------------------------------------------------------------------------

class CharacterProfile(BaseModel):
    """A character as seen by the round: catalog data merged with overrides."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str
    description: str = ""
    personality: str = ""


class LoreEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    keys: list[str] = Field(default_factory=list, alias="key")
    content: str
    enabled: bool = True
    constant: bool = False
    group: str | None = None
    insertion_order: int = 100
    insertion_position: str = "Before Char Defs"
    case_sensitive: bool = False
    match_whole_words: bool = False
    selective: bool = False
    optional_filter: list[str] = Field(default_factory=list)
    selective_logic: int = 0


class SessionContext(BaseModel):
    """Everything a round needs to know about its scene, loaded once per round."""

    scene_id: str
    world_id: str | None = None
    title: str = ""
    location: str = ""
    summary: str = ""
    active_character_ids: list[str] = Field(default_factory=list)
    active_characters: list[CharacterProfile] = Field(default_factory=list)
    character_states: dict[str, CharacterState] = Field(default_factory=dict)
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    lorebook: list[LoreEntry] = Field(default_factory=list)
    last_world_update_message: int = 0


# ---------------------------------------------------------------------------
# Round output
# ---------------------------------------------------------------------------

class TurnResult(BaseModel):
    """One character's response, delivered as soon as the turn completes."""

    model_config = ConfigDict(frozen=True)

    scene_id: str
    round_number: int
    director_pass: int
    position: int
    character: str
    character_id: str | None = None
    content: str


class RoundResult(BaseModel):
    scene_id: str
    round_number: int
    request_type: Literal["user", "continue"] = "user"
    director_guidance: str = ""
    responses: list[TurnResult] = Field(default_factory=list)
    active_character_ids: list[str] = Field(default_factory=list)
    deferred_actors: list[str] = Field(default_factory=list)
    lore: list[str] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    next_round_number: int | None = None


# ---------------------------------------------------------------------------
# Persistence records
# ---------------------------------------------------------------------------

class SceneRecord(BaseModel):
    id: str
    title: str = ""
    location: str = ""
    world_id: str | None = None
    round_number: int = Field(default=1, ge=1)
    active_characters: list[str] = Field(default_factory=list)
    character_states: dict[str, CharacterState] = Field(default_factory=dict)
    world_state: dict[str, Any] = Field(default_factory=dict)
    trackers: Trackers = Field(default_factory=Trackers)
    summary: str = ""
    lorebook: list[LoreEntry] = Field(default_factory=list)
    last_world_update_message: int = 0


class RoundRecord(BaseModel):
    round_number: int
    status: Literal["completed"] = "completed"
    active_characters: list[str] = Field(default_factory=list)
    completed_at: datetime | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)
