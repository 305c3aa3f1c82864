"""Round orchestrator: runs one scene round end-to-end.

Round flow:
  1. Load the scene (fatal if missing) and reset per-round character flags.
  2. Build the context envelope: history window, summary, lore, memories.
  3. Director pass 1 → ordered actors, activations, exits, state updates.
     Unparseable output falls back to "Guidance:/Characters:" lines, then to
     mention order (user input) or round-robin rotation (continue requests).
  4. World update (if enabled) from events since the last update.
  5. Character turns, strictly one after another; each response is handed
     to the turn listener as soon as it exists.
  6. Director reconciliation pass. Remaining actors run as follow-up turns
     while director passes remain; past the limit they are only recorded
     on the round as deferred actors.
  7. Finalize: persist state, start vectorization in the background, maybe
     summarize, advance the round number, store the round timeline.

A RoundOrchestrator owns exactly one scene; its lock guarantees a single
round in flight. SceneRegistry hands out one orchestrator per scene.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Sequence

from roleforge.config import Settings, default_settings
from roleforge.director import (
    apply_director_plan,
    continue_rotation,
    is_persona_reference,
    make_resolver,
    merge_state_fields,
    mention_order,
    normalize_director_plan,
    normalize_reference,
    parse_legacy_director_text,
)
from roleforge.interfaces import (
    CharacterLookup,
    IdentityResolver,
    MemoryRetriever,
    MemoryWriter,
    NullEventSink,
    RoleRunner,
    TurnEventSink,
)
from roleforge.models import (
    CharacterProfile,
    CharacterState,
    DirectorApplicationResult,
    DirectorPlan,
    RoundResult,
    RoundState,
    SceneMessage,
    SessionContext,
    Trackers,
    TurnResult,
)
from roleforge.parsing import ParseOutcome, Parsed, first_object, parse_with_retries
from roleforge.pipeline.context import (
    ContextEnvelope,
    RoleContext,
    build_envelope,
    character_context,
    director_context,
    history_lines,
    memory_scope,
    reconciliation_context,
    retrieve_memories,
    summarizer_context,
    world_context,
)
from roleforge.pipeline.timeline import Clock, RoundTimeline, utc_now
from roleforge.storage import SceneStore

logger = logging.getLogger(__name__)

CONTENT_KEYS = ("response", "content")
# Character state belongs to the director and character roles, not the world role.
WORLD_FORBIDDEN_KEYS = ("characterStates", "character_states", "characters")
# Each message is clipped to this many characters in the round memory.
ROUND_MEMORY_MESSAGE_CHARS = 150

TurnListener = Callable[[TurnResult], "Awaitable[None] | None"]


class SceneContextError(LookupError):
    """The scene could not be loaded. The round is not attempted or advanced."""


class RoundPhase(str, Enum):
    IDLE = "Idle"
    ROUND_INITIALIZING = "RoundInitializing"
    CONTEXT_BUILDING = "ContextBuilding"
    DIRECTOR_PASS_1 = "DirectorPass1"
    WORLD_UPDATE = "WorldUpdate"
    CHARACTER_TURNS = "CharacterTurns"
    DIRECTOR_PASS_2 = "DirectorPass2"
    ROUND_FINALIZING = "RoundFinalizing"


@dataclass
class _RoundWork:
    """Working data of the round in flight."""

    session: SessionContext
    state: RoundState
    timeline: RoundTimeline
    user_input: str
    persona: str
    persona_refs: tuple[str, ...]
    request_type: Literal["user", "continue"]
    on_turn: TurnListener | None
    envelope: ContextEnvelope | None = None
    guidance: str = ""
    responses: list[TurnResult] = field(default_factory=list)
    world_marker: int | None = None
    profiles: dict[str, CharacterProfile | None] = field(default_factory=dict)


def _content(payload: dict[str, Any]) -> str | None:
    for key in CONTENT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _require_response(payload: Any) -> str | None:
    obj = first_object(payload)
    if obj is None:
        return "expected a JSON object"
    if _content(obj) is None:
        return "missing non-empty 'response'"
    return None


def merge_trackers(current: Trackers, update: dict[str, Any]) -> Trackers:
    """Shallow-merge a tracker update. Objectives may arrive as a list or a mapping."""
    stats = dict(current.stats)
    objectives = list(current.objectives)
    relationships = dict(current.relationships)

    if isinstance(update.get("stats"), dict):
        stats.update(update["stats"])
    raw_objectives = update.get("objectives")
    if isinstance(raw_objectives, dict):
        objectives = [str(v) for v in raw_objectives.values() if v not in (None, "")]
    elif isinstance(raw_objectives, list):
        objectives = [str(v) for v in raw_objectives if v not in (None, "")]
    if isinstance(update.get("relationships"), dict):
        relationships.update({str(k): str(v) for k, v in update["relationships"].items()})

    return Trackers(stats=stats, objectives=objectives, relationships=relationships)


def continue_prompt(previous_lines: Sequence[str]) -> str:
    if not previous_lines:
        return "[System: Continue scene]"
    joined = "\n".join(previous_lines)
    return (
        "[System: Continue scene. Previous character messages:\n"
        f"{joined}\n\n"
        "Decide which characters should continue the scene.]"
    )


class RoundOrchestrator:
    def __init__(
        self,
        scene_id: str,
        runner: RoleRunner,
        store: SceneStore,
        settings: Settings | None = None,
        *,
        retriever: MemoryRetriever | None = None,
        memory_writer: MemoryWriter | None = None,
        lookup: CharacterLookup | None = None,
        sink: TurnEventSink | None = None,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.scene_id = str(scene_id)
        self._runner = runner
        self._store = store
        self._settings = settings or default_settings()
        self._retriever = retriever
        self._memory_writer = memory_writer
        self._lookup = lookup if lookup is not None else store
        self._sink = sink or NullEventSink()
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._phase = RoundPhase.IDLE
        self._work: _RoundWork | None = None
        self._background: set[asyncio.Task] = set()
        self.last_result: RoundResult | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RoundPhase:
        return self._phase

    @property
    def round_state(self) -> RoundState | None:
        return self._work.state if self._work else None

    async def run_round(
        self,
        user_input: str,
        persona_name: str | None = None,
        on_turn: TurnListener | None = None,
    ) -> RoundResult:
        """Process a user message and finalize the round."""
        async with self._lock:
            work = await self._process(user_input, persona_name, "user", on_turn)
            return await self._complete(work)

    async def continue_round(self, on_turn: TurnListener | None = None) -> RoundResult:
        """Run a round without user input, seeded by the previous round's responses."""
        async with self._lock:
            round_number = self._load_round_number()
            previous = [
                f"{m.sender}: {m.content}"
                for m in self._store.get_messages(self.scene_id)
                if m.round_number == round_number - 1 and m.source == "character"
            ]
            work = await self._process(continue_prompt(previous), "system", "continue", on_turn)
            return await self._complete(work)

    async def process_input(
        self,
        user_input: str,
        persona_name: str | None = None,
        on_turn: TurnListener | None = None,
    ) -> RoundResult:
        """Run phases up to reconciliation; call :meth:`complete_round` to finalize."""
        async with self._lock:
            work = await self._process(user_input, persona_name, "user", on_turn)
            return self._result(work)

    async def complete_round(self) -> int:
        """Finalize the round in flight (or an empty one) and return the next round number."""
        async with self._lock:
            work = self._work or self._empty_work()
            result = await self._complete(work)
            return result.next_round_number or 0

    async def stream_round(
        self,
        user_input: str,
        persona_name: str | None = None,
    ) -> AsyncIterator[TurnResult]:
        """Yield each character turn as it completes; the final result lands in ``last_result``."""
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        task = asyncio.create_task(self.run_round(user_input, persona_name, on_turn=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(done))
        while True:
            item = await queue.get()
            if item is done:
                break
            yield item
        task.result()

    async def drain(self) -> None:
        """Wait for background vectorization tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Round processing
    # ------------------------------------------------------------------

    def _enter(self, phase: RoundPhase) -> None:
        logger.debug("scene %s: %s → %s", self.scene_id, self._phase.value, phase.value)
        self._phase = phase

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        try:
            self._sink.emit(event, {"sceneId": self.scene_id, **payload})
        except Exception as e:
            logger.warning("Event sink failed for %s: %s", event, e)

    def _load_round_number(self) -> int:
        try:
            return self._store.get_round_number(self.scene_id)
        except Exception as e:
            raise SceneContextError(f"Cannot load round number for scene {self.scene_id}: {e}") from e

    def _load_session(self) -> SessionContext:
        try:
            session = self._store.get_session(self.scene_id)
        except Exception as e:
            raise SceneContextError(f"Cannot load scene {self.scene_id}: {e}") from e
        if session is None:
            raise SceneContextError(f"Scene {self.scene_id} not found")
        return session

    def _persona_refs(self, persona: str) -> tuple[str, ...]:
        refs = [persona, self._settings.persona_name, "user"]
        return tuple(dict.fromkeys(r for r in refs if r))

    def _empty_work(self) -> _RoundWork:
        session = self._load_session()
        state = RoundState(
            scene_id=self.scene_id,
            round_number=self._load_round_number(),
            active_character_ids=list(session.active_character_ids),
            character_states=dict(session.character_states),
            world_state=dict(session.world_state),
            trackers=session.trackers,
        )
        persona = self._settings.persona_name
        return _RoundWork(
            session=session,
            state=state,
            timeline=RoundTimeline(state.round_number, self._clock, state.timeline),
            user_input="",
            persona=persona,
            persona_refs=self._persona_refs(persona),
            request_type="user",
            on_turn=None,
        )

    async def _process(
        self,
        user_input: str,
        persona_name: str | None,
        request_type: Literal["user", "continue"],
        on_turn: TurnListener | None,
    ) -> _RoundWork:
        self._enter(RoundPhase.ROUND_INITIALIZING)
        try:
            session = self._load_session()
            round_number = self._load_round_number()
        except SceneContextError:
            self._enter(RoundPhase.IDLE)
            raise

        persona = persona_name or self._settings.persona_name
        state = RoundState(
            scene_id=self.scene_id,
            round_number=round_number,
            active_character_ids=[
                key for key in session.active_character_ids
                if not is_persona_reference(key, self._persona_refs(persona))
            ],
            character_states={k: v.reset_round_flags() for k, v in session.character_states.items()},
            world_state=dict(session.world_state),
            trackers=session.trackers.model_copy(deep=True),
        )
        work = _RoundWork(
            session=session,
            state=state,
            timeline=RoundTimeline(round_number, self._clock, state.timeline),
            user_input=user_input,
            persona=persona,
            persona_refs=self._persona_refs(persona),
            request_type=request_type,
            on_turn=on_turn,
        )
        self._work = work
        work.timeline.record("roundStarted", requestType=request_type, persona=persona, input=user_input[:200])
        self._emit("roundStarted", {"roundNumber": round_number, "requestType": request_type})
        logger.info("scene %s: round %d started (%s)", self.scene_id, round_number, request_type)

        try:
            self._enter(RoundPhase.CONTEXT_BUILDING)
            history = self._store.get_messages(self.scene_id, limit=self._settings.history_window_messages)
            if request_type == "user":
                self._append_message(work, persona, user_input, "user")
            work.envelope = await build_envelope(
                session,
                state,
                user_input,
                persona,
                self._settings,
                messages=history,
                request_type=request_type,
                retriever=self._retriever,
                message_counts=self._store,
            )

            self._enter(RoundPhase.DIRECTOR_PASS_1)
            actors = await self._director_pass(work)

            self._enter(RoundPhase.WORLD_UPDATE)
            await self._world_update(work)

            self._enter(RoundPhase.CHARACTER_TURNS)
            await self._character_turns(work, actors, director_pass=1)

            self._enter(RoundPhase.DIRECTOR_PASS_2)
            await self._reconcile(work)

            self._flush(work)
        except Exception:
            self._work = None
            self._enter(RoundPhase.IDLE)
            raise
        self._enter(RoundPhase.IDLE)
        return work

    # ── Role invocation ─────────────────────────────────────

    async def _invoke(
        self,
        role: str,
        context: RoleContext,
        require: Callable[[Any], str | None] | None = None,
        label: str | None = None,
    ) -> ParseOutcome:
        async def fetch(attempt: int, last_error: str | None) -> str:
            ctx = context if attempt == 1 else context.retry(attempt, last_error)
            return await self._runner(role, ctx)

        return await parse_with_retries(
            fetch,
            self._settings.role_max_attempts,
            require=require,
            label=label or role,
        )

    # ── Characters ──────────────────────────────────────────

    def _profile(self, work: _RoundWork, reference: str) -> CharacterProfile | None:
        needle = normalize_reference(reference)
        if needle in work.profiles:
            return work.profiles[needle]
        found = next(
            (p for p in work.session.active_characters
             if needle in (normalize_reference(p.name), normalize_reference(p.id or ""))),
            None,
        )
        if found is None and self._lookup is not None:
            found = self._lookup.find_character(reference)
        work.profiles[needle] = found
        return found

    def _references(self, work: _RoundWork, key: str) -> set[str]:
        """Normalized key, name and id of the character an active-set key denotes."""
        profile = self._profile(work, key)
        refs = [key] + ([profile.name, profile.id or ""] if profile else [])
        return {normalize_reference(r) for r in refs if r}

    def _active_profiles(self, work: _RoundWork) -> list[CharacterProfile]:
        profiles: list[CharacterProfile] = []
        for key in work.state.active_character_ids:
            profile = self._profile(work, key)
            if profile is None or is_persona_reference(profile.name, work.persona_refs):
                continue
            if all(p.name != profile.name for p in profiles):
                profiles.append(profile)
        return profiles

    def _active_names(self, work: _RoundWork) -> list[str]:
        return [p.name for p in self._active_profiles(work)]

    def _resolver(self, work: _RoundWork) -> IdentityResolver:
        view = work.session.model_copy(update={
            "active_character_ids": list(work.state.active_character_ids),
            "active_characters": self._active_profiles(work),
        })
        return make_resolver(view, self._lookup)

    def _find_active(self, work: _RoundWork, reference: str) -> CharacterProfile | None:
        profile = self._profile(work, reference)
        if profile is None:
            return None
        active = {normalize_reference(k) for k in work.state.active_character_ids}
        if normalize_reference(profile.name) in active or normalize_reference(profile.id or "") in active:
            return profile
        return None

    # ── Director ────────────────────────────────────────────

    def _apply_plan(self, work: _RoundWork, plan: DirectorPlan) -> DirectorApplicationResult:
        state = work.state
        view = work.session.model_copy(update={
            "active_character_ids": list(state.active_character_ids),
            "active_characters": self._active_profiles(work),
        })
        before: set[str] = set()
        for key in state.active_character_ids:
            before |= self._references(work, key)
        application = apply_director_plan(
            plan,
            view,
            state.character_states,
            self._resolver(work),
            work.persona_refs,
        )
        states = dict(application.updated_states)
        for key in application.active_character_ids:
            if self._references(work, key) & before:
                continue
            profile = self._profile(work, key)
            name = profile.name if profile else key
            current = states.get(name, CharacterState())
            if not current.entered_this_round:
                states[name] = current.model_copy(update={"entered_this_round": True})
        for identity in application.deactivations:
            current = states.get(identity.name, CharacterState())
            if not current.exited_this_round:
                states[identity.name] = current.model_copy(update={"exited_this_round": True})

        state.character_states = states
        state.active_character_ids = list(application.active_character_ids)
        if application.applied_state_updates:
            self._emit("stateUpdated", {
                "characters": {u.name: u.changes for u in application.applied_state_updates},
            })
        return application

    def _heuristic_order(self, work: _RoundWork) -> list[str]:
        names = self._active_names(work)
        if work.request_type == "continue":
            return continue_rotation(names, self._last_responders(work))
        return mention_order(work.user_input, names, self._rng)

    def _last_responders(self, work: _RoundWork) -> list[str]:
        previous = work.state.round_number - 1
        return [
            m.sender
            for m in self._store.get_messages(self.scene_id, limit=self._settings.history_window_messages)
            if m.round_number == previous and m.source == "character"
        ]

    async def _director_pass(self, work: _RoundWork) -> list[tuple[str, str]]:
        """First director pass. Returns (character name, directive) in acting order."""
        assert work.envelope is not None
        work.timeline.record("directorPassStarted", directorPass=1)
        self._emit("agentStatus", {"agent": "director", "status": "thinking"})

        context = director_context(work.envelope, work.state, self._active_names(work))
        outcome = await self._invoke("director", context, label="director:1")

        if outcome.parsed:
            plan = normalize_director_plan(first_object(outcome.payload) or {}, work.persona_refs)
            application = self._apply_plan(work, plan)
            work.guidance = plan.open_guidance
            actors = [
                (actor.name, actor.guidance or plan.open_guidance)
                for actor in application.ordered_actors if actor.name
            ]
            if not actors:
                actors = [(name, plan.open_guidance) for name in application.characters_to_respond]
            work.timeline.record(
                "directorPassCompleted",
                directorPass=1,
                parsed=True,
                attempts=outcome.attempts,
                guidance=plan.open_guidance,
                actors=[name for name, _ in actors],
                activations=[i.name for i in application.activations],
                deactivations=[i.name for i in application.deactivations],
                stateUpdates=[u.model_dump() for u in application.applied_state_updates],
            )
            return actors

        fallback = "heuristic"
        names: list[str] = []
        if not outcome.role_failed:
            raw = outcome.result.raw
            guidance, legacy_names = parse_legacy_director_text(raw)
            work.guidance = guidance or raw.strip()
            resolver = self._resolver(work)
            for name in legacy_names:
                if is_persona_reference(name, work.persona_refs):
                    continue
                resolved = resolver(name)
                names.append(resolved.name if resolved else name)
            if names:
                fallback = "legacy"
        if not names:
            names = self._heuristic_order(work)
        logger.warning(
            "scene %s: director output unusable after %d attempts (%s); using %s order",
            self.scene_id, outcome.attempts, outcome.last_error, fallback,
        )
        work.timeline.record(
            "directorPassCompleted",
            directorPass=1,
            parsed=False,
            attempts=outcome.attempts,
            error=outcome.last_error,
            fallback=fallback,
            guidance=work.guidance,
            actors=names,
        )
        return [(name, work.guidance) for name in names]

    async def _reconcile(self, work: _RoundWork) -> None:
        assert work.envelope is not None
        director_pass = 2
        while True:
            if not work.responses:
                work.timeline.record("directorPassSkipped", directorPass=director_pass, reason="noResponses")
                return

            work.timeline.record("directorPassStarted", directorPass=director_pass)
            context = reconciliation_context(
                work.envelope, work.state, work.responses, self._active_names(work), director_pass,
            )
            outcome = await self._invoke("director", context, label=f"director:{director_pass}")
            if not outcome.parsed:
                logger.warning(
                    "scene %s: reconciliation pass %d unusable: %s",
                    self.scene_id, director_pass, outcome.last_error,
                )
                work.timeline.record(
                    "directorPassCompleted",
                    directorPass=director_pass,
                    parsed=False,
                    attempts=outcome.attempts,
                    error=outcome.last_error,
                )
                return

            plan = normalize_director_plan(first_object(outcome.payload) or {}, work.persona_refs)
            plan = plan.model_copy(update={
                "activations": tuple(dict.fromkeys(plan.activations + plan.new_activations)),
            })
            application = self._apply_plan(work, plan)

            resolver = self._resolver(work)
            candidates = list(application.remaining_actors) or list(application.characters_to_respond)
            candidates += [i.name for i in application.activations]
            queue: list[str] = []
            for ref in candidates:
                resolved = resolver(ref)
                name = resolved.name if resolved else ref
                if is_persona_reference(name, work.persona_refs) or name in queue:
                    continue
                if work.state.character_states.get(name, CharacterState()).has_acted_this_round:
                    continue
                queue.append(name)

            work.timeline.record(
                "directorPassCompleted",
                directorPass=director_pass,
                parsed=True,
                attempts=outcome.attempts,
                remainingActors=queue,
                activations=[i.name for i in application.activations],
                deactivations=[i.name for i in application.deactivations],
                stateUpdates=[u.model_dump() for u in application.applied_state_updates],
            )
            if not queue:
                return

            if director_pass >= self._settings.max_director_passes:
                work.state.deferred_actors = queue
                work.timeline.record(
                    "followUpGuardrail",
                    deferred=queue,
                    maxDirectorPasses=self._settings.max_director_passes,
                )
                logger.info(
                    "scene %s: director pass limit %d reached; not running %s",
                    self.scene_id, self._settings.max_director_passes, queue,
                )
                return

            work.timeline.record("followUpQueued", directorPass=director_pass, actors=queue)
            await self._character_turns(work, [(name, "") for name in queue], director_pass=director_pass)
            director_pass += 1

    # ── World ───────────────────────────────────────────────

    async def _world_update(self, work: _RoundWork) -> None:
        assert work.envelope is not None
        if not self._settings.world_agent_enabled:
            work.timeline.record("worldUpdateSkipped", reason="disabled")
            return

        since = work.session.last_world_update_message
        recent = [m for m in self._store.get_messages(self.scene_id) if m.message_number > since]
        work.timeline.record("worldUpdateStarted", events=len(recent))
        self._emit("agentStatus", {"agent": "world", "status": "thinking"})

        context = world_context(work.envelope, work.state, history_lines(recent), self._active_names(work))
        outcome = await self._invoke("world", context)
        changed = False
        if outcome.parsed:
            payload = first_object(outcome.payload) or {}
            changed = self._merge_world(work, payload)
            if recent:
                work.world_marker = recent[-1].message_number
        else:
            logger.warning("scene %s: world update unusable, world unchanged: %s", self.scene_id, outcome.last_error)
        work.timeline.record(
            "worldUpdateCompleted",
            parsed=outcome.parsed,
            changed=changed,
            attempts=outcome.attempts,
            error=outcome.last_error,
        )

    def _merge_world(self, work: _RoundWork, payload: dict[str, Any]) -> bool:
        if payload.get("unchanged") is True:
            return False
        state = work.state
        changed = False

        world = payload.get("worldState", payload.get("world_state"))
        if isinstance(world, dict):
            world = dict(world)
            persona_state = world.pop("userPersonaState", None)
            if isinstance(persona_state, dict):
                current = state.character_states.get(work.persona, CharacterState())
                merged, changes = merge_state_fields(current, persona_state)
                if changes:
                    state.character_states[work.persona] = merged
                    changed = True
            for key in WORLD_FORBIDDEN_KEYS:
                if world.pop(key, None) is not None:
                    logger.warning("scene %s: world update tried to set %s; ignored", self.scene_id, key)
            if world:
                state.world_state.update(world)
                state.pending_world_update = True
                changed = True

        trackers = payload.get("trackers")
        if isinstance(trackers, dict):
            merged_trackers = merge_trackers(state.trackers, trackers)
            if merged_trackers != state.trackers:
                state.trackers = merged_trackers
                state.pending_tracker_update = True
                changed = True

        if changed:
            self._emit("stateUpdated", {
                "worldState": state.world_state,
                "trackers": state.trackers.model_dump(),
            })
        return changed

    # ── Character turns ─────────────────────────────────────

    async def _character_turns(
        self,
        work: _RoundWork,
        actors: Sequence[tuple[str, str]],
        director_pass: int,
    ) -> None:
        assert work.envelope is not None
        for name, directive in actors:
            profile = self._find_active(work, name)
            if profile is None:
                logger.warning("scene %s: %r is not an active character; skipping", self.scene_id, name)
                work.timeline.record("characterRunCompleted", character=name, status="skipped", reason="inactive")
                continue
            key = profile.name
            if work.state.character_states.get(key, CharacterState()).has_acted_this_round:
                work.timeline.record("characterRunCompleted", character=key, status="skipped", reason="alreadyActed")
                continue

            memories = await retrieve_memories(
                self._retriever,
                work.user_input,
                memory_scope(work.session, profile.id or profile.name),
                self._settings,
                self._store,
            )
            context = character_context(
                work.envelope,
                work.state,
                profile,
                key,
                directive or work.guidance,
                work.responses,
                memories,
                director_pass,
            )
            work.timeline.record("characterRunStarted", character=key, directorPass=director_pass)
            self._emit("agentStatus", {"agent": key, "status": "thinking"})

            outcome = await self._invoke("character", context, require=_require_response, label=f"character:{key}")
            content, state_update, status = self._character_output(outcome)
            if content is None:
                logger.warning(
                    "scene %s: %s produced no usable response (%s); turn skipped",
                    self.scene_id, key, outcome.last_error,
                )
                work.timeline.record(
                    "characterRunCompleted",
                    character=key,
                    status=status,
                    attempts=outcome.attempts,
                    error=outcome.last_error,
                )
                continue

            current = work.state.character_states.get(key, CharacterState())
            if isinstance(state_update, dict):
                current, changes = merge_state_fields(current, state_update)
                if changes:
                    self._emit("stateUpdated", {"characters": {key: changes}})
            work.state.character_states[key] = current.model_copy(update={"has_acted_this_round": True})
            work.state.responders.append(key)

            self._append_message(work, key, content, "character")
            turn = TurnResult(
                scene_id=self.scene_id,
                round_number=work.state.round_number,
                director_pass=director_pass,
                position=len(work.responses),
                character=key,
                character_id=profile.id,
                content=content,
            )
            work.responses.append(turn)
            work.timeline.record(
                "characterRunCompleted",
                character=key,
                status=status,
                attempts=outcome.attempts,
                directorPass=director_pass,
            )
            await self._deliver(work, turn)

    def _character_output(self, outcome: ParseOutcome) -> tuple[str | None, Any, str]:
        """(content, characterState update, status) for a character outcome."""
        if outcome.parsed:
            payload = first_object(outcome.payload) or {}
            return _content(payload), payload.get("characterState"), "ok"
        if outcome.role_failed:
            return None, None, "failed"
        if isinstance(outcome.last_parse, Parsed):
            return None, None, "empty"
        raw = outcome.result.raw.strip()
        return (raw or None), None, "raw"

    async def _deliver(self, work: _RoundWork, turn: TurnResult) -> None:
        self._emit("characterResponse", turn.model_dump(mode="json"))
        if work.on_turn is None:
            return
        try:
            result = work.on_turn(turn)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("scene %s: turn listener failed", self.scene_id)

    def _append_message(self, work: _RoundWork, sender: str, content: str, source: str) -> None:
        message = SceneMessage(
            round_number=work.state.round_number,
            sender=sender,
            content=content,
            source=source,
            timestamp=self._clock(),
        )
        work.state.messages.extend(self._store.append_messages(self.scene_id, [message]))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _flush(self, work: _RoundWork) -> None:
        state = work.state
        self._store.set_active_characters(self.scene_id, state.active_character_ids)
        self._store.set_character_states(self.scene_id, state.character_states)
        if state.pending_world_update or work.world_marker is not None:
            self._store.set_world_state(self.scene_id, state.world_state, last_message=work.world_marker)
            state.pending_world_update = False
        if state.pending_tracker_update:
            self._store.set_trackers(self.scene_id, state.trackers)
            state.pending_tracker_update = False

    async def _complete(self, work: _RoundWork) -> RoundResult:
        self._enter(RoundPhase.ROUND_FINALIZING)
        try:
            self._flush(work)
            self._start_vectorization(work)
            if self._should_summarize(work.state.round_number):
                await self._summarize(work)
            work.timeline.record(
                "roundMetadataRecorded",
                responders=list(work.state.responders),
                activeCharacterIds=list(work.state.active_character_ids),
                deferredActors=list(work.state.deferred_actors),
                guidance=work.guidance,
            )
            next_round = self._store.complete_round(self.scene_id, work.state.active_character_ids)
            self._store.record_round_timeline(self.scene_id, work.state.round_number, work.timeline.entries)
        finally:
            self._work = None
            self._enter(RoundPhase.IDLE)

        logger.info("scene %s: round %d completed, next %d", self.scene_id, work.state.round_number, next_round)
        self._emit("roundCompleted", {"roundNumber": work.state.round_number, "nextRoundNumber": next_round})
        result = self._result(work).model_copy(update={"next_round_number": next_round})
        self.last_result = result
        return result

    def _result(self, work: _RoundWork) -> RoundResult:
        return RoundResult(
            scene_id=self.scene_id,
            round_number=work.state.round_number,
            request_type=work.request_type,
            director_guidance=work.guidance,
            responses=list(work.responses),
            active_character_ids=list(work.state.active_character_ids),
            deferred_actors=list(work.state.deferred_actors),
            lore=[e.content for e in work.envelope.lore] if work.envelope else [],
            timeline=list(work.timeline.entries),
        )

    def _should_summarize(self, round_number: int) -> bool:
        interval = self._settings.summarization_round_interval
        return self._settings.summarization_enabled and interval > 0 and round_number % interval == 0

    async def _summarize(self, work: _RoundWork) -> None:
        if work.envelope is None:
            return
        messages = self._store.get_messages(self.scene_id, limit=self._settings.history_window_messages)
        context = summarizer_context(work.envelope, work.state, history_lines(messages))
        try:
            outcome = await self._invoke("summarizer", context)
            payload = first_object(outcome.payload) if outcome.parsed else None
            summary = payload.get("summary") if payload else None
            if isinstance(summary, str) and summary.strip():
                self._store.set_summary(self.scene_id, summary.strip())
                logger.info("scene %s: summary updated at round %d", self.scene_id, work.state.round_number)
            else:
                logger.warning("scene %s: summarizer returned no summary", self.scene_id)
        except Exception as e:
            logger.warning("scene %s: summarization failed: %s", self.scene_id, e)

    def _start_vectorization(self, work: _RoundWork) -> None:
        if self._memory_writer is None:
            return
        messages = [m for m in work.state.messages if m.source != "system" and m.content.strip()]
        profiles = self._active_profiles(work)
        if not messages or not profiles:
            return
        text = round_memory_text(work.state.round_number, messages, [p.name for p in profiles])
        metadata = {
            "sceneId": self.scene_id,
            "roundNumber": work.state.round_number,
            "timestamp": messages[-1].timestamp.isoformat(),
            "actors": sorted({m.sender for m in messages if m.source == "character"}),
            "type": "round_memory",
        }
        targets: list[tuple[str, str | None]] = [(memory_scope(work.session), None)]
        targets += [(memory_scope(work.session, p.id or p.name), p.name) for p in profiles]
        task = asyncio.create_task(self._vectorize(targets, text, metadata))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _vectorize(
        self, targets: Sequence[tuple[str, str | None]], text: str, metadata: dict[str, Any],
    ) -> None:
        """Store the round memory in every target scope.

        A failed write is logged and the remaining scopes are still written.
        """
        assert self._memory_writer is not None
        stored = 0
        for scope, character_name in targets:
            entry = dict(metadata, characterName=character_name) if character_name else dict(metadata)
            try:
                await self._memory_writer.store(scope, text, entry)
                stored += 1
            except Exception:
                logger.exception(
                    "scene %s: storing round %d memory in %s failed",
                    self.scene_id, metadata["roundNumber"], scope,
                )
        logger.debug(
            "scene %s: round %d memory stored in %d/%d scopes",
            self.scene_id, metadata["roundNumber"], stored, len(targets),
        )


def round_memory_text(round_number: int, messages: Sequence[SceneMessage], names: Sequence[str]) -> str:
    """One line summarizing a round: who was present and what each speaker said."""
    parts = []
    for m in messages:
        content = m.content.strip()
        if len(content) > ROUND_MEMORY_MESSAGE_CHARS:
            content = content[:ROUND_MEMORY_MESSAGE_CHARS] + "..."
        parts.append(f"{m.sender}: {content}")
    return f"Round {round_number} ({', '.join(names)}): " + " | ".join(parts)


class SceneRegistry:
    """One orchestrator per scene, created on first use and reused afterwards."""

    def __init__(
        self,
        runner: RoleRunner,
        store: SceneStore,
        settings: Settings | None = None,
        **options: Any,
    ) -> None:
        self._runner = runner
        self._store = store
        self._settings = settings
        self._options = options
        self._orchestrators: dict[str, RoundOrchestrator] = {}

    def get(self, scene_id: str) -> RoundOrchestrator:
        key = str(scene_id)
        orchestrator = self._orchestrators.get(key)
        if orchestrator is None:
            orchestrator = RoundOrchestrator(key, self._runner, self._store, self._settings, **self._options)
            self._orchestrators[key] = orchestrator
        return orchestrator

    def __contains__(self, scene_id: object) -> bool:
        return str(scene_id) in self._orchestrators

    def __len__(self) -> int:
        return len(self._orchestrators)

    async def drain(self) -> None:
        for orchestrator in list(self._orchestrators.values()):
            await orchestrator.drain()
