"""Director plan normalization and application.

The director role answers with a loosely shaped object. This module turns
that into a :class:`DirectorPlan`, decides the acting order and applies
the plan to the scene: who is active, who acts and what changed about
them. Everything here is a pure function of its inputs apart from logging.
"""

from __future__ import annotations

import logging
import math
import random
import re
from typing import Any, Iterable, Sequence

from roleforge.interfaces import CharacterLookup, IdentityResolver
from roleforge.models import (
    STATE_FIELDS,
    ActingCharacter,
    AppliedStateUpdate,
    CharacterProfile,
    CharacterState,
    DirectorApplicationResult,
    DirectorPlan,
    Identity,
    SessionContext,
    StateUpdate,
)

logger = logging.getLogger(__name__)

_PARENTHETICAL_RE = re.compile(r"\s*\([^)]*\)\s*$")
_POSSESSIVE_RE = re.compile(r"['’]s$")
_TRAILING_PUNCT_RE = re.compile(r"[\s.,;:!?\"'’]+$")


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

def normalize_reference(reference: str) -> str:
    """Canonical comparison form of a character reference."""
    text = " ".join(str(reference).split()).lower()
    text = _PARENTHETICAL_RE.sub("", text)
    text = _TRAILING_PUNCT_RE.sub("", text)
    text = _POSSESSIVE_RE.sub("", text)
    return text.strip()


def is_persona_reference(reference: str | None, persona_refs: Iterable[str]) -> bool:
    if not reference:
        return False
    needle = normalize_reference(reference)
    return any(needle == normalize_reference(p) for p in persona_refs if p)


def is_default_value(value: Any) -> bool:
    """True for values a role uses to mean "leave this unchanged"."""
    if value is None:
        return True
    text = str(value).strip()
    return not text or text.lower() == "default"


def merge_state_fields(state: CharacterState, update: dict[str, Any]) -> tuple[CharacterState, dict[str, str]]:
    """Apply non-default values from *update*; return the new state and the changes."""
    changes: dict[str, str] = {}
    for field, value in update.items():
        if field.endswith("_this_round") or is_default_value(value) or isinstance(value, (dict, list)):
            continue
        changes[field] = str(value).strip()
    if not changes:
        return state, changes
    data = state.model_dump()
    data.update(changes)
    return CharacterState.model_validate(data), changes


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _reference(item: Any) -> str | None:
    if isinstance(item, dict):
        return _text(_pick(item, "name", "id", "character"))
    if isinstance(item, (str, int)):
        return _text(item)
    return None


def _references(value: Any, persona_refs: Sequence[str]) -> tuple[str, ...]:
    refs: list[str] = []
    for item in _as_list(value):
        ref = _reference(item)
        if ref and not is_persona_reference(ref, persona_refs) and ref not in refs:
            refs.append(ref)
    return tuple(refs)


def _acting(item: Any) -> ActingCharacter | None:
    if isinstance(item, str):
        name = _text(item)
        return ActingCharacter(name=name) if name else None
    if not isinstance(item, dict):
        return None
    actor = ActingCharacter(
        id=_text(item.get("id")),
        name=_text(_pick(item, "name", "character")),
        guidance=_text(_pick(item, "guidance", "directive", "direction")),
        priority=_as_number(item.get("priority")),
        order=_as_number(item.get("order")),
    )
    if actor.id is None and actor.name is None:
        return None
    return actor


def _state_updates(value: Any, persona_refs: Sequence[str]) -> tuple[StateUpdate, ...]:
    items: list[dict[str, Any]] = []
    if isinstance(value, dict):
        # {"Alice": {"mood": "tense"}} shorthand
        for name, fields in value.items():
            if isinstance(fields, dict):
                items.append({"name": name, **fields})
    else:
        items = [item for item in _as_list(value) if isinstance(item, dict)]

    updates: list[StateUpdate] = []
    for item in items:
        ref = _text(_pick(item, "name", "character")) or _text(item.get("id"))
        if not ref or is_persona_reference(ref, persona_refs):
            continue
        fields = {f: _text(item.get(f)) for f in STATE_FIELDS}
        updates.append(StateUpdate(
            id=_text(item.get("id")),
            name=_text(_pick(item, "name", "character")),
            **fields,
        ))
    return tuple(updates)


def normalize_director_plan(raw: Any, persona_refs: Sequence[str] = ()) -> DirectorPlan:
    """Coerce loose director output into a :class:`DirectorPlan`.

    Accepts the camelCase field names plus the aliases older prompts produce
    (``guidance``, ``characters``, ``remaining``, ``nextActivations``).
    References to the user persona are dropped from every list.
    """
    if isinstance(raw, list):
        raw = next((item for item in raw if isinstance(item, dict)), {})
    if not isinstance(raw, dict):
        return DirectorPlan()

    guidance = _pick(raw, "openGuidance", "guidance", "open_guidance")

    acting: list[ActingCharacter] = []
    for item in _as_list(_pick(raw, "actingCharacters", "characters", "acting_characters")):
        actor = _acting(item)
        if actor is None:
            continue
        if is_persona_reference(actor.name, persona_refs) or is_persona_reference(actor.id, persona_refs):
            continue
        acting.append(actor)

    return DirectorPlan(
        open_guidance=str(guidance).strip() if guidance is not None else "",
        acting_characters=tuple(acting),
        activations=_references(_pick(raw, "activations", "activate"), persona_refs),
        deactivations=_references(_pick(raw, "deactivations", "deactivate"), persona_refs),
        state_updates=_state_updates(_pick(raw, "stateUpdates", "state_updates"), persona_refs),
        remaining_actors=_references(_pick(raw, "remainingActors", "remaining", "remaining_actors"), persona_refs),
        new_activations=_references(_pick(raw, "newActivations", "nextActivations", "new_activations"), persona_refs),
    )


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def order_acting_characters(
    plan: DirectorPlan,
    resolver: IdentityResolver | None = None,
) -> list[ActingCharacter]:
    """Stable acting order.

    Explicit ``order`` ascending (ordered entries first), then ``priority``
    descending (missing counts as 0), then name case-insensitively, then
    input position.
    """
    actors: list[ActingCharacter] = []
    for actor in plan.acting_characters:
        if not actor.name and actor.id and resolver is not None:
            resolved = resolver(actor.id)
            if resolved is not None:
                actor = actor.model_copy(update={"name": resolved.name})
        actors.append(actor)

    def sort_key(indexed: tuple[int, ActingCharacter]) -> tuple:
        index, actor = indexed
        has_order = actor.order is not None
        return (
            0 if has_order else 1,
            actor.order if has_order else 0.0,
            -(actor.priority or 0.0),
            (actor.name or "").casefold(),
            index,
        )

    return [actor for _, actor in sorted(enumerate(actors), key=sort_key)]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _active_profile(session: SessionContext, reference: str) -> CharacterProfile | None:
    ref = normalize_reference(reference)
    if not ref:
        return None
    return next(
        (p for p in session.active_characters
         if ref in (normalize_reference(p.name), normalize_reference(p.id or ""))),
        None,
    )


def make_resolver(session: SessionContext, lookup: CharacterLookup | None = None) -> IdentityResolver:
    """Resolve against active characters, then the catalog, then literal active ids."""

    def resolve(reference: str) -> Identity | None:
        ref = normalize_reference(reference)
        if not ref:
            return None
        for profile in session.active_characters:
            if ref in (normalize_reference(profile.name), normalize_reference(profile.id or "")):
                return Identity(id=profile.id, name=profile.name)
        if lookup is not None:
            profile = lookup.find_character(reference)
            if profile is not None:
                return Identity(id=profile.id, name=profile.name)
        for key in session.active_character_ids:
            if key.strip().lower() == ref:
                return Identity(id=key, name=key)
        return None

    return resolve


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def apply_director_plan(
    plan: DirectorPlan,
    session: SessionContext,
    existing_states: dict[str, CharacterState] | None = None,
    resolver: IdentityResolver | None = None,
    persona_refs: Sequence[str] = (),
) -> DirectorApplicationResult:
    """Apply a plan to the scene's active set and character states.

    The active set holds one key per character. A stored key keeps its
    spelling (id or name); any other reference to the same character
    (its id, its name) is recognised as already present.
    """
    # key -> every normalized reference that denotes the same character
    active: dict[str, set[str]] = {}

    def marks(key: str, identity: Identity | None = None) -> set[str]:
        refs: list[str | None] = [key]
        if identity is not None:
            refs += [identity.id, identity.name]
        profile = _active_profile(session, key)
        if profile is not None:
            refs += [profile.id, profile.name]
        return {normalize_reference(r) for r in refs if r}

    def claim(key: str, identity: Identity | None = None) -> None:
        wanted = marks(key, identity)
        if any(wanted & held for held in active.values()):
            return
        active[key] = wanted

    def release(identity: Identity) -> None:
        wanted = marks(identity.key, identity)
        gone = [k for k, held in active.items() if wanted & held]
        for k in gone:
            del active[k]

    for key in session.active_character_ids:
        if not is_persona_reference(key, persona_refs):
            claim(key)
    for profile in session.active_characters:
        key = profile.id or profile.name
        if key and not is_persona_reference(profile.name, persona_refs):
            claim(key, Identity(id=profile.id, name=profile.name))

    def persona(identity: Identity | None, *refs: str | None) -> bool:
        names = [r for r in refs if r]
        if identity is not None:
            names += [identity.name, identity.id or ""]
        return any(is_persona_reference(n, persona_refs) for n in names)

    ordered: list[ActingCharacter] = []
    for actor in order_acting_characters(plan, resolver):
        resolved = resolver(actor.name or actor.id or "") if resolver else None
        if persona(resolved, actor.name, actor.id):
            continue
        if resolver is not None and resolved is None:
            logger.warning("Acting character %r did not resolve to a character", actor.name or actor.id)
        else:
            key = (resolved.id if resolved else None) or actor.id or (resolved.name if resolved else None) or actor.name
            if key:
                claim(key, resolved)
        if resolved is not None and not actor.name:
            actor = actor.model_copy(update={"name": resolved.name})
        ordered.append(actor)

    activations: list[Identity] = []
    for ref in plan.activations:
        resolved = resolver(ref) if resolver else None
        if resolved is None:
            logger.warning("Activation %r did not resolve to a character", ref)
            continue
        if persona(resolved, ref):
            continue
        claim(resolved.key, resolved)
        activations.append(resolved)
        logger.info("Activated %s", resolved.name)

    deactivations: list[Identity] = []
    for ref in plan.deactivations:
        resolved = resolver(ref) if resolver else None
        if resolved is not None:
            release(resolved)
            deactivations.append(resolved)
            logger.info("Deactivated %s (resolved)", resolved.name)
            continue

        needle = ref.strip().lower()
        match = next(
            (p for p in session.active_characters
             if needle in (p.name.lower(), (p.id or "").lower())),
            None,
        )
        if match is not None:
            identity = Identity(id=match.id, name=match.name)
            release(identity)
            deactivations.append(identity)
            logger.info("Deactivated %s (active-list match)", match.name)
            continue

        raw_key = next((k for k in active if k.lower() == needle), None)
        if raw_key is not None:
            active.pop(raw_key)
            deactivations.append(Identity(id=raw_key, name=raw_key))
            logger.warning("Deactivated unresolved reference %r by literal match", ref)
        else:
            logger.warning("Deactivation %r matched nothing", ref)

    states = dict(existing_states or {})
    applied: list[AppliedStateUpdate] = []
    for update in plan.state_updates:
        ref = update.name or update.id or ""
        resolved = resolver(ref) if resolver else None
        if persona(resolved, update.name, update.id):
            continue
        key = (resolved.name if resolved else None) or update.name or update.id
        if not key:
            continue
        fields = update.model_dump(include=set(STATE_FIELDS))
        new_state, changes = merge_state_fields(states.get(key, CharacterState()), fields)
        if changes:
            states[key] = new_state
            applied.append(AppliedStateUpdate(name=key, changes=changes))

    to_respond = [a.name for a in ordered if a.name]
    if not to_respond and activations:
        to_respond = [identity.name for identity in activations]

    return DirectorApplicationResult(
        characters_to_respond=to_respond,
        ordered_actors=ordered,
        active_character_ids=list(active),
        updated_states=states,
        applied_state_updates=applied,
        activations=activations,
        deactivations=deactivations,
        remaining_actors=list(plan.remaining_actors),
        new_activations=list(plan.new_activations),
    )


# ---------------------------------------------------------------------------
# Heuristic fallbacks
# ---------------------------------------------------------------------------

_GUIDANCE_LINE_RE = re.compile(r"Guidance:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_CHARACTERS_LINE_RE = re.compile(r"Characters:\s*(.+?)(?:\n|$)", re.IGNORECASE)


def parse_legacy_director_text(text: str) -> tuple[str, list[str]]:
    """Read ``Guidance: ...`` / ``Characters: a, b`` lines from plain director output."""
    guidance_match = _GUIDANCE_LINE_RE.search(text or "")
    characters_match = _CHARACTERS_LINE_RE.search(text or "")
    guidance = guidance_match.group(1).strip() if guidance_match else ""
    names = []
    if characters_match:
        names = [n.strip() for n in characters_match.group(1).split(",") if n.strip()]
    return guidance, names


def mention_order(text: str, names: Sequence[str], rng: random.Random | None = None) -> list[str]:
    """Names mentioned in *text* first (by first appearance), the rest shuffled."""
    lowered = (text or "").lower()
    positions: list[tuple[int, int, str]] = []
    rest: list[str] = []
    for index, name in enumerate(names):
        match = re.search(r"\b" + re.escape(name.lower()) + r"\b", lowered)
        if match:
            positions.append((match.start(), index, name))
        else:
            rest.append(name)
    (rng or random).shuffle(rest)
    return [name for _, _, name in sorted(positions)] + rest


def continue_rotation(names: Sequence[str], last_responders: Sequence[str]) -> list[str]:
    """Round-robin order starting after the most recent responder."""
    names = list(names)
    if not names or not last_responders:
        return names
    last = last_responders[-1].lower()
    for index, name in enumerate(names):
        if name.lower() == last:
            return names[index + 1:] + names[:index + 1]
    return names

