import json
from pathlib import Path
from typing import Any, Callable, Iterable, Union

import pytest

from roleforge.config import Settings, default_settings
from roleforge.models import CharacterProfile
from roleforge.pipeline.context import RoleContext
from roleforge.storage import JsonSceneStore

SCENE_ID = "tavern"

DEFAULT_OUTPUT = {
    "director": "{}",
    "world": json.dumps({"unchanged": True}),
    "summarizer": json.dumps({"summary": "Nothing much happened."}),
}

Script = Union[str, Exception, Callable[[RoleContext], str]]


class ScriptedRunner:
    """Role runner that replays canned output per role and records every call.

    Each role gets a queue of items: a string is returned, an exception is
    raised, a callable is called with the RoleContext. When a role's queue is
    empty, a neutral default is returned (characters answer with a nod).
    """

    def __init__(self, **scripts: Iterable[Script]) -> None:
        self.scripts: dict[str, list[Script]] = {role: list(items) for role, items in scripts.items()}
        self.calls: list[tuple[str, RoleContext]] = []

    async def __call__(self, role: str, context: RoleContext) -> str:
        self.calls.append((role, context))
        queue = self.scripts.get(role)
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(context)
            return item
        if role == "character":
            name = context.character.name if context.character else "Someone"
            return json.dumps({"response": f"{name} nods."})
        return DEFAULT_OUTPUT.get(role, "{}")

    def calls_for(self, role: str) -> list[RoleContext]:
        return [ctx for r, ctx in self.calls if r == role]

    @property
    def roles(self) -> list[str]:
        return [r for r, _ in self.calls]


def character_reply(response: str, **state: Any) -> str:
    payload: dict[str, Any] = {"response": response}
    if state:
        payload["characterState"] = state
    return json.dumps(payload)


@pytest.fixture
def store(tmp_path: Path) -> JsonSceneStore:
    """A scene store with three catalog characters; Alice and Bob are active in the tavern."""
    s = JsonSceneStore(tmp_path / "data")
    s.save_character(CharacterProfile(id="alice", name="Alice", description="A bard."))
    s.save_character(CharacterProfile(id="bob", name="Bob", description="A blacksmith."))
    s.save_character(CharacterProfile(id="carol", name="Carol", description="A guard."))
    s.create_scene(SCENE_ID, title="The Prancing Pony", location="Common room", active_characters=["alice", "bob"])
    return s


@pytest.fixture
def settings() -> Settings:
    return default_settings(summarization_enabled=False)
