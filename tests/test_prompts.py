"""Tests for Handlebars prompt rendering: template compilation, context building,
custom helpers (take, last), role templates and error handling."""

import pytest

from roleforge.models import CharacterProfile, CharacterState, Trackers, TurnResult
from roleforge.pipeline.context import ContextEnvelope, RoleContext
from roleforge.prompts import PromptError, build_context, render_prompt, render_role_prompt


def envelope(**kwargs) -> ContextEnvelope:
    base = dict(
        scene_id="tavern",
        round_number=3,
        user_input="I order an ale",
        persona_name="Frodo",
        scene_title="The Prancing Pony",
        location="Common room",
        history=("Alice: Welcome!", "Frodo: Hello"),
    )
    base.update(kwargs)
    return ContextEnvelope(**base)


def turn(character: str, content: str) -> TurnResult:
    return TurnResult(
        scene_id="tavern", round_number=3, director_pass=1,
        position=1, character=character, content=content,
    )


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "World"}) == "Hello World!"


def test_render_each_loop():
    assert render_prompt("{{#each items}}{{this}} {{/each}}", {"items": ["a", "b", "c"]}) == "a b c "


def test_render_if_conditional():
    tpl = "{{#if show}}yes{{else}}no{{/if}}"
    assert render_prompt(tpl, {"show": True}) == "yes"
    assert render_prompt(tpl, {"show": False}) == "no"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


# ── helpers: take & last ────────────────────────────────────


def test_take_first_n():
    assert render_prompt("{{#take items 2}}{{this}} {{/take}}", {"items": ["a", "b", "c", "d"]}) == "a b "


def test_last_n():
    assert render_prompt("{{#last items 2}}{{this}} {{/last}}", {"items": ["a", "b", "c", "d"]}) == "c d "


def test_last_more_than_length():
    assert render_prompt("{{#last items 10}}{{this}} {{/last}}", {"items": ["a", "b"]}) == "a b "


# ── build_context ────────────────────────────────────────────


def test_build_context_director():
    ctx = build_context(RoleContext(role="director", envelope=envelope(), active_names=("Alice", "Bob")))
    assert ctx["persona"] == "Frodo"
    assert ctx["message"] == "I order an ale"
    assert ctx["continue"] is False
    assert ctx["history"] == ["Alice: Welcome!", "Frodo: Hello"]
    assert ctx["scene"]["title"] == "The Prancing Pony"
    assert ctx["scene"]["round"] == 3
    assert ctx["active"] == [{"name": "Alice"}, {"name": "Bob"}]
    assert ctx["reconciliation"] is False
    assert "char" not in ctx


def test_build_context_reconciliation():
    ctx = build_context(RoleContext(
        role="director", envelope=envelope(), director_pass=2,
        turn_responses=(turn("Alice", "Coming right up."),),
    ))
    assert ctx["reconciliation"] is True
    assert ctx["turn"]["responses"] == [{"character": "Alice", "content": "Coming right up."}]


def test_build_context_character_state_hides_flags_and_blanks():
    ctx = build_context(RoleContext(
        role="character",
        envelope=envelope(),
        character=CharacterProfile(name="Alice", description="A bard."),
        character_state=CharacterState(mood="merry", location="", has_acted_this_round=True),
        entered=True,
        character_memories="## Relevant Memories\n- [90%] sang",
    ))
    assert ctx["char"]["name"] == "Alice"
    assert ctx["char"]["state"] == {"mood": "merry"}
    assert ctx["char"]["entered"] is True
    assert ctx["char"]["memories"].startswith("## Relevant Memories")


def test_build_context_world_is_json_text():
    ctx = build_context(RoleContext(
        role="world", envelope=envelope(),
        world_state={"weather": "rain"},
        trackers=Trackers(objectives=["Find the map"]),
    ))
    assert '"weather": "rain"' in ctx["world"]["state"]
    assert "Find the map" in ctx["world"]["trackers"]


def test_build_context_repair():
    ctx = build_context(RoleContext(role="world", envelope=envelope()).retry(2, "not JSON"))
    assert ctx["repair"] == {"attempt": 2, "error": "not JSON"}


# ── Role templates ───────────────────────────────────────────


class TestRoleTemplates:
    def test_director_prompt(self) -> None:
        prompt = render_role_prompt(RoleContext(
            role="director", envelope=envelope(formatted_lore="[LORE - Before Char Defs]\nAles are cheap."),
            active_names=("Alice", "Bob"),
        ))
        assert "never choose Frodo to act" in prompt
        assert "- Alice" in prompt
        assert "Ales are cheap." in prompt
        assert "I order an ale" in prompt
        assert '"actingCharacters"' in prompt
        assert "could not be used" not in prompt

    def test_director_reconciliation_prompt(self) -> None:
        prompt = render_role_prompt(RoleContext(
            role="director", envelope=envelope(), director_pass=2,
            turn_responses=(turn("Alice", "Coming right up."),),
        ))
        assert "Alice: Coming right up." in prompt
        assert '"remainingActors"' in prompt

    def test_character_prompt(self) -> None:
        prompt = render_role_prompt(RoleContext(
            role="character",
            envelope=envelope(),
            character=CharacterProfile(name="Bob", description="A blacksmith."),
            character_state=CharacterState(mood="gruff"),
            directive="Grumble about the noise",
            turn_responses=(turn("Alice", "Coming right up."),),
        ))
        assert "You are Bob" in prompt
        assert "A blacksmith." in prompt
        assert "- mood: gruff" in prompt
        assert "Grumble about the noise" in prompt
        assert "[Other Characters in this turn:]" in prompt
        assert "Alice: Coming right up." in prompt

    def test_html_is_not_escaped_in_text_blocks(self) -> None:
        prompt = render_role_prompt(RoleContext(
            role="director", envelope=envelope(user_input='I say "<hi>" & wave'),
        ))
        assert 'I say "<hi>" & wave' in prompt

    def test_repair_note(self) -> None:
        ctx = RoleContext(role="summarizer", envelope=envelope(), recent_events=("Alice: hi",))
        prompt = render_role_prompt(ctx.retry(2, "no JSON object found"))
        assert "no JSON object found" in prompt
        assert "Output ONLY valid JSON" in prompt

    def test_world_prompt(self) -> None:
        prompt = render_role_prompt(RoleContext(
            role="world", envelope=envelope(), recent_events=("Alice: The storm is coming.",),
        ))
        assert "Alice: The storm is coming." in prompt
        assert '{"unchanged": true}' in prompt

    def test_override_template(self) -> None:
        ctx = RoleContext(role="world", envelope=envelope())
        assert render_role_prompt(ctx, {"world": "Round {{scene.round}}"}) == "Round 3"
