"""End-to-end round flow over HTTP with mocked LLM responses.

The demo scene is loaded from disk, every role goes through HttpRoleRunner
and the default Handlebars prompts, and httpx is patched to answer each
prompt by role. This checks that prompts, parsing, the orchestrator and
storage fit together.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from roleforge.config import default_settings
from roleforge.demo import DEMO_SCENE_ID, create_demo_data
from roleforge.llm import HttpRoleRunner
from roleforge.pipeline import SceneRegistry


# ── Helpers ──────────────────────────────────────────────


def _mock_response(text: str) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {"results": [{"text": text}]}
    resp.raise_for_status = MagicMock()
    return resp


DIRECTOR_PLAN = json.dumps({
    "openGuidance": "The stranger asks about the dragon",
    "actingCharacters": [{"name": "Gareth", "order": 2}, {"name": "Elena", "order": 1}],
    "stateUpdates": [{"name": "Gareth", "mood": "suspicious"}],
})

WORLD_UPDATE = json.dumps({
    "worldState": {"time": "night"},
    "trackers": {"objectives": ["Find the Dragonbane Amulet"]},
})


class Backend:
    """Answer each posted prompt according to the role it was rendered for."""

    def __init__(self) -> None:
        self.prompts: list[str] = []

    def __call__(self, url, json=None, headers=None):
        prompt = json["prompt"]
        self.prompts.append(prompt)
        if "## Responses This Round" in prompt:
            return _mock_response("{}")
        if "You are the Director" in prompt:
            return _mock_response(DIRECTOR_PLAN)
        if "You track the world state" in prompt:
            return _mock_response(WORLD_UPDATE)
        if "You are Elena" in prompt:
            return _mock_response('{"response": "The dragon is only frightened.", "characterState": {"mood": "hopeful"}}')
        if "You are Gareth" in prompt:
            return _mock_response('```json\n{"response": "Hmph.", "characterState": {"mood": "grumpy"},}\n```')
        if "Summarize the roleplay" in prompt:
            return _mock_response('{"summary": "A stranger arrived asking about Fafnir."}')
        raise AssertionError(f"unexpected prompt: {prompt[:80]}")

    def for_role(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]


@pytest.fixture
def store(tmp_path):
    return create_demo_data(tmp_path / "data")


@pytest.fixture
def backend() -> Backend:
    return Backend()


@pytest.fixture
def registry(store):
    settings = default_settings(summarization_round_interval=2)
    return SceneRegistry(HttpRoleRunner.from_settings(settings), store, settings)


# ── Flow ─────────────────────────────────────────────────


class TestDemoSceneFlow:
    async def test_user_round(self, registry, store, backend) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=backend)):
            result = await registry.get(DEMO_SCENE_ID).run_round(
                "I ask about the dragon that burned the village", persona_name="Aldric",
            )

        assert [r.character for r in result.responses] == ["Elena", "Gareth"]
        assert [r.content for r in result.responses] == ["The dragon is only frightened.", "Hmph."]
        assert result.lore[0].startswith("Fafnir is a young mountain dragon")
        assert len(backend.prompts) == 5

        director = backend.prompts[0]
        assert "never choose Aldric to act" in director
        assert "Fafnir is a young mountain dragon" in director
        assert "Gareth: Another adventurer?" in director

        gareth = backend.for_role("You are Gareth")[0]
        assert "- mood: suspicious" in gareth
        assert "Elena: The dragon is only frightened." in gareth
        assert "The stranger asks about the dragon" in gareth

        session = store.get_session(DEMO_SCENE_ID)
        assert session.world_state == {"time": "night", "weather": "smoke on the wind"}
        assert session.trackers.objectives == ["Find the Dragonbane Amulet"]
        assert session.character_states["Gareth"].mood == "grumpy"
        assert session.character_states["Elena"].mood == "hopeful"
        assert store.get_round_number(DEMO_SCENE_ID) == 2

    async def test_continue_round_and_summary(self, registry, store, backend) -> None:
        orchestrator = registry.get(DEMO_SCENE_ID)
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=backend)):
            await orchestrator.run_round("Hello", persona_name="Aldric")
            result = await orchestrator.continue_round()

        assert result.round_number == 2
        assert result.request_type == "continue"
        continue_director = backend.for_role("You are the Director")[2]
        assert "The user asked the scene to continue" in continue_director
        assert "Elena: The dragon is only frightened." in continue_director

        assert len(backend.for_role("Summarize the roleplay")) == 1
        assert store.get_session(DEMO_SCENE_ID).summary == "A stranger arrived asking about Fafnir."
        senders = [m.sender for m in store.get_round_messages(DEMO_SCENE_ID, 2)]
        assert senders == ["Elena", "Gareth"]

    async def test_backend_down_skips_turns_but_completes(self, registry, store) -> None:
        import httpx

        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            result = await registry.get(DEMO_SCENE_ID).run_round("Anyone here?")

        assert result.responses == []
        assert result.next_round_number == 2
        assert store.get_round_number(DEMO_SCENE_ID) == 2
        statuses = {e.detail.get("status") for e in result.timeline if e.type == "characterRunCompleted"}
        assert statuses == {"failed"}
