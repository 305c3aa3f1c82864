"""Handlebars prompt rendering for round roles."""

import json
from collections.abc import Callable
from typing import Any

import pybars

from roleforge.pipeline.context import RoleContext

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────

_SCENE_BLOCK = """\
## Scene
{{scene.title}}{{#if scene.location}} ({{scene.location}}){{/if}}

{{#if scene.summary}}
## Story So Far
{{{scene.summary}}}

{{/if}}
{{#if lore}}
{{{lore}}}

{{/if}}
{{#if memories}}
{{{memories}}}

{{/if}}
## Recent History
{{#last history 20}}
{{{this}}}
{{/last}}
"""

_REPAIR_BLOCK = """\
{{#if repair.error}}

Your previous response could not be used ({{repair.error}}). \
Output ONLY valid JSON. No extra text, no markdown, no explanations.
{{/if}}"""

DEFAULT_DIRECTOR_PROMPT = """\
You are the Director of an interactive roleplay scene. The user plays \
{{persona}}; never choose {{persona}} to act.

""" + _SCENE_BLOCK + """
## Active Characters
{{#each active}}
- {{name}}
{{/each}}

{{#if reconciliation}}
## Responses This Round
{{#each turn.responses}}
{{character}}: {{{content}}}
{{/each}}

Decide whether anyone else should still act this round. Output JSON:
{"remainingActors": ["Name"], "newActivations": [], "deactivations": [], "stateUpdates": []}
{{else}}
{{#if continue}}
The user asked the scene to continue without new input.
{{/if}}
## User Input
{{{message}}}

Decide which characters act now and in what order. Output JSON:
{"openGuidance": "...", "actingCharacters": [{"name": "Name", "guidance": "...", "priority": 1, "order": 1}], \
"activations": [], "deactivations": [], "stateUpdates": [{"name": "Name", "mood": "..."}]}
{{/if}}
""" + _REPAIR_BLOCK

DEFAULT_WORLD_PROMPT = """\
You track the world state of an interactive roleplay scene.

## Current World State
{{{world.state}}}

## Trackers
{{{world.trackers}}}

## Events Since Last Update
{{#each events}}
{{{this}}}
{{/each}}

Output JSON with only what changed:
{"worldState": {"weather": "rain"}, "trackers": {"objectives": ["Find the map"]}, "unchanged": false}
"trackers" may hold "stats", "objectives" and "relationships".
If nothing changed output {"unchanged": true}.
""" + _REPAIR_BLOCK

DEFAULT_CHARACTER_PROMPT = """\
You are {{char.name}} in an interactive roleplay scene. The user plays \
{{persona}}. Never speak or act for {{persona}} or other characters.

## Your Personality
{{char.description}}
{{char.personality}}

## Your Current State
{{#each char.state}}
- {{@key}}: {{this}}
{{/each}}
{{#if char.entered}}
You have just entered the scene.
{{/if}}
{{#if char.exiting}}
You are leaving the scene.
{{/if}}

""" + _SCENE_BLOCK + """
{{#if char.memories}}
{{{char.memories}}}

{{/if}}
{{#if turn.responses}}
[Other Characters in this turn:]
{{#each turn.responses}}
{{character}}: {{{content}}}
{{/each}}

{{/if}}
{{#if directive}}
## Director's Note
{{{directive}}}

{{/if}}
## User Input
{{{message}}}

Respond in character. Output JSON:
{"characterState": {"mood": "...", "activity": "..."}, "response": "what you say and do"}
""" + _REPAIR_BLOCK

DEFAULT_SUMMARIZER_PROMPT = """\
Summarize the roleplay scene so far in a few sentences.

{{#if scene.summary}}
## Previous Summary
{{{scene.summary}}}

{{/if}}
## Recent Events
{{#each events}}
{{{this}}}
{{/each}}

Output JSON: {"summary": "..."}
""" + _REPAIR_BLOCK

DEFAULT_TEMPLATES: dict[str, str] = {
    "director": DEFAULT_DIRECTOR_PROMPT,
    "world": DEFAULT_WORLD_PROMPT,
    "character": DEFAULT_CHARACTER_PROMPT,
    "summarizer": DEFAULT_SUMMARIZER_PROMPT,
}


# ── Context ──────────────────────────────────────────────


def build_context(context: RoleContext) -> dict[str, Any]:
    """Flatten a RoleContext into template variables.

    Builds nested objects (scene, char, turn, world, repair) for short
    Handlebars paths.
    """
    env = context.envelope
    ctx: dict[str, Any] = {
        "persona": env.persona_name,
        "message": env.user_input,
        "continue": env.request_type == "continue",
        "history": list(env.history),
        "lore": env.formatted_lore,
        "memories": env.formatted_memories,
        "scene": {
            "title": env.scene_title,
            "location": env.location,
            "summary": env.summary,
            "round": env.round_number,
        },
        "active": [{"name": name} for name in context.active_names],
        "events": list(context.recent_events),
        "directive": context.directive,
        "reconciliation": context.role == "director" and context.director_pass > 1,
        "turn": {
            "responses": [
                {"character": r.character, "content": r.content}
                for r in context.turn_responses
            ],
        },
        "world": {
            "state": json.dumps(context.world_state, indent=2),
            "trackers": context.trackers.model_dump_json(indent=2),
        },
        "repair": {"attempt": context.attempt, "error": context.last_error or ""},
    }

    if context.character is not None:
        state = context.character_state
        visible = {}
        if state is not None:
            visible = {
                k: v for k, v in state.model_dump().items()
                if v not in (None, "") and not k.endswith("_this_round")
            }
        ctx["char"] = {
            "name": context.character.name,
            "description": context.character.description,
            "personality": context.character.personality,
            "state": visible,
            "entered": context.entered,
            "exiting": context.exiting,
            "memories": context.character_memories,
        }
    return ctx


def render_role_prompt(context: RoleContext, templates: dict[str, str] | None = None) -> str:
    """Render the prompt for ``context.role``, preferring an override template."""
    template = (templates or {}).get(context.role) or DEFAULT_TEMPLATES.get(context.role)
    if template is None:
        raise PromptError(f"No template for role {context.role!r}")
    return render_prompt(template, build_context(context))
