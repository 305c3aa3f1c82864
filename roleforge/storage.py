"""JSON file storage for scenes.

All state is stored in flat JSON files under a configurable base directory.
Reads and writes go through plain helper methods that load and dump JSON.

Directory layout:

    {base}/
      characters.json         ← character catalog (list of CharacterProfile)
      scenes/
        {id}.json             ← SceneRecord (round number, active set, states, world, trackers)
        {id}/
          messages.json       ← append-only SceneMessage log
          rounds.json         ← one RoundRecord per completed round, with its timeline
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from roleforge.memory import parse_timestamp
from roleforge.models import (
    CharacterProfile,
    CharacterState,
    LoreEntry,
    RoundRecord,
    SceneMessage,
    SceneRecord,
    SessionContext,
    TimelineEntry,
    Trackers,
)

logger = logging.getLogger(__name__)


class SceneNotFoundError(LookupError):
    pass


class SceneStore(Protocol):
    """Persistence the round orchestrator needs. :class:`JsonSceneStore` implements it."""

    def get_session(self, scene_id: str) -> SessionContext | None: ...
    def get_round_number(self, scene_id: str) -> int: ...
    def get_messages(self, scene_id: str, limit: int | None = None) -> list[SceneMessage]: ...
    def append_messages(self, scene_id: str, messages: Sequence[SceneMessage]) -> list[SceneMessage]: ...
    def get_message_count_since(self, scene_id: str, marker: Any) -> int: ...
    def set_active_characters(self, scene_id: str, character_ids: Sequence[str]) -> None: ...
    def set_character_states(self, scene_id: str, states: dict[str, CharacterState]) -> None: ...
    def set_world_state(self, scene_id: str, world_state: dict[str, Any], last_message: int | None = None) -> None: ...
    def set_trackers(self, scene_id: str, trackers: Trackers) -> None: ...
    def set_summary(self, scene_id: str, summary: str) -> None: ...
    def complete_round(self, scene_id: str, active_characters: Sequence[str]) -> int: ...
    def record_round_timeline(self, scene_id: str, round_number: int, entries: Sequence[TimelineEntry]) -> None: ...
    def find_character(self, reference: str) -> CharacterProfile | None: ...


class JsonSceneStore:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._scene_root = self._base / "scenes"
        self._scene_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _scene_file(self, scene_id: str) -> Path:
        return self._scene_root / f"{scene_id}.json"

    def _scene_dir(self, scene_id: str) -> Path:
        return self._scene_root / str(scene_id)

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _load_scene(self, scene_id: str) -> SceneRecord:
        path = self._scene_file(scene_id)
        if not path.exists():
            raise SceneNotFoundError(f"Scene {scene_id!r} not found")
        return SceneRecord.model_validate_json(path.read_text())

    def _save_scene(self, scene: SceneRecord) -> None:
        self._scene_file(scene.id).write_text(scene.model_dump_json(indent=2))

    def _update_scene(self, scene_id: str, **changes: Any) -> SceneRecord:
        scene = self._load_scene(scene_id)
        scene = scene.model_copy(update=changes)
        self._save_scene(scene)
        return scene

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    def save_character(self, character: CharacterProfile) -> None:
        """Upsert a character by id (or by name when it has no id)."""
        chars = self.get_characters()
        for i, c in enumerate(chars):
            if (character.id and c.id == character.id) or (not character.id and c.name == character.name):
                chars[i] = character
                break
        else:
            chars.append(character)
        self._write_json(self._base / "characters.json", [c.model_dump() for c in chars])

    def get_characters(self) -> list[CharacterProfile]:
        path = self._base / "characters.json"
        if not path.exists():
            return []
        return [CharacterProfile.model_validate(c) for c in self._read_json(path)]

    def find_character(self, reference: str) -> CharacterProfile | None:
        """Case-insensitive lookup by id or name."""
        needle = str(reference).strip().lower()
        if not needle:
            return None
        for c in self.get_characters():
            if needle == (c.id or "").lower() or needle == c.name.lower():
                return c
        return None

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    def create_scene(
        self,
        scene_id: str,
        title: str = "",
        location: str = "",
        active_characters: Iterable[str] = (),
        world_id: str | None = None,
        lorebook: Iterable[LoreEntry] = (),
        world_state: dict[str, Any] | None = None,
    ) -> SceneRecord:
        scene = SceneRecord(
            id=str(scene_id),
            title=title,
            location=location,
            world_id=world_id,
            active_characters=list(active_characters),
            lorebook=list(lorebook),
            world_state=dict(world_state or {}),
        )
        self._save_scene(scene)
        self._scene_dir(scene.id).mkdir(exist_ok=True)
        return scene

    def get_scene(self, scene_id: str) -> SceneRecord | None:
        try:
            return self._load_scene(scene_id)
        except SceneNotFoundError:
            return None

    def get_session(self, scene_id: str) -> SessionContext | None:
        """Load a scene with its active characters resolved against the catalog."""
        scene = self.get_scene(scene_id)
        if scene is None:
            return None
        profiles: list[CharacterProfile] = []
        for ref in scene.active_characters:
            profile = self.find_character(ref)
            if profile is None:
                logger.warning("Scene %s: active character %r not in catalog", scene_id, ref)
                continue
            profiles.append(profile)
        return SessionContext(
            scene_id=scene.id,
            world_id=scene.world_id,
            title=scene.title,
            location=scene.location,
            summary=scene.summary,
            active_character_ids=list(scene.active_characters),
            active_characters=profiles,
            character_states=dict(scene.character_states),
            world_state=dict(scene.world_state),
            trackers=scene.trackers,
            lorebook=list(scene.lorebook),
            last_world_update_message=scene.last_world_update_message,
        )

    def get_round_number(self, scene_id: str) -> int:
        return self._load_scene(scene_id).round_number

    def set_active_characters(self, scene_id: str, character_ids: Sequence[str]) -> None:
        self._update_scene(scene_id, active_characters=list(dict.fromkeys(character_ids)))

    def set_character_states(self, scene_id: str, states: dict[str, CharacterState]) -> None:
        self._update_scene(scene_id, character_states=dict(states))

    def set_world_state(self, scene_id: str, world_state: dict[str, Any], last_message: int | None = None) -> None:
        changes: dict[str, Any] = {"world_state": dict(world_state)}
        if last_message is not None:
            changes["last_world_update_message"] = last_message
        self._update_scene(scene_id, **changes)

    def set_trackers(self, scene_id: str, trackers: Trackers) -> None:
        self._update_scene(scene_id, trackers=trackers)

    def set_summary(self, scene_id: str, summary: str) -> None:
        self._update_scene(scene_id, summary=summary)

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def get_messages(self, scene_id: str, limit: int | None = None) -> list[SceneMessage]:
        path = self._scene_dir(scene_id) / "messages.json"
        if not path.exists():
            return []
        messages = [SceneMessage.model_validate(m) for m in self._read_json(path)]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def append_messages(self, scene_id: str, messages: Sequence[SceneMessage]) -> list[SceneMessage]:
        """Append messages, assigning consecutive message numbers."""
        existing = self.get_messages(scene_id)
        next_number = existing[-1].message_number + 1 if existing else 1
        numbered = []
        for offset, m in enumerate(messages):
            numbered.append(m.model_copy(update={"message_number": next_number + offset}))
        existing.extend(numbered)
        directory = self._scene_dir(scene_id)
        directory.mkdir(parents=True, exist_ok=True)
        self._write_json(directory / "messages.json", [m.model_dump(mode="json") for m in existing])
        return numbered

    def get_round_messages(self, scene_id: str, round_number: int) -> list[SceneMessage]:
        return [m for m in self.get_messages(scene_id) if m.round_number == round_number]

    def get_message_count_since(self, scene_id: str, marker: Any) -> int:
        """Messages after *marker*: a round number (int) or a timestamp."""
        messages = self.get_messages(scene_id)
        if isinstance(marker, int) and not isinstance(marker, bool):
            return sum(1 for m in messages if m.round_number > marker)
        since = parse_timestamp(marker)
        if since is None:
            raise ValueError(f"Unusable message-count marker: {marker!r}")
        return sum(1 for m in messages if m.timestamp.timestamp() * 1000 > since)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def get_rounds(self, scene_id: str) -> list[RoundRecord]:
        path = self._scene_dir(scene_id) / "rounds.json"
        if not path.exists():
            return []
        return [RoundRecord.model_validate(r) for r in self._read_json(path)]

    def _save_rounds(self, scene_id: str, rounds: list[RoundRecord]) -> None:
        directory = self._scene_dir(scene_id)
        directory.mkdir(parents=True, exist_ok=True)
        self._write_json(directory / "rounds.json", [r.model_dump(mode="json") for r in rounds])

    def complete_round(self, scene_id: str, active_characters: Sequence[str]) -> int:
        """Record the current round as completed and return the next round number."""
        scene = self._load_scene(scene_id)
        rounds = self.get_rounds(scene_id)
        rounds.append(RoundRecord(
            round_number=scene.round_number,
            active_characters=list(active_characters),
            completed_at=datetime.now(timezone.utc),
        ))
        self._save_rounds(scene_id, rounds)
        next_round = scene.round_number + 1
        self._save_scene(scene.model_copy(update={"round_number": next_round}))
        return next_round

    def record_round_timeline(self, scene_id: str, round_number: int, entries: Sequence[TimelineEntry]) -> None:
        rounds = self.get_rounds(scene_id)
        for i in range(len(rounds) - 1, -1, -1):
            if rounds[i].round_number == round_number:
                rounds[i] = rounds[i].model_copy(update={"timeline": list(entries)})
                break
        else:
            rounds.append(RoundRecord(round_number=round_number, timeline=list(entries)))
        self._save_rounds(scene_id, rounds)
