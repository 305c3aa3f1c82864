"""Create a demo scene for development/testing."""

import shutil
from datetime import datetime, timezone
from pathlib import Path

from roleforge.models import CharacterProfile, CharacterState, LoreEntry, SceneMessage
from roleforge.storage import JsonSceneStore

DEMO_SCENE_ID = "dragons-hollow"

DEMO_CHARACTERS = [
    CharacterProfile(
        id="gareth",
        name="Gareth",
        description="Captain of the village watch. Loyal to the King, grumpy, secretly fond of Elena.",
        personality="stern, protective, blunt",
    ),
    CharacterProfile(
        id="elena",
        name="Elena",
        description="The village healer, bound by her oath and curious about the dragon.",
        personality="warm, hopeful, inquisitive",
    ),
    CharacterProfile(
        id="thrak",
        name="Thrak",
        description="A half-orc mercenary with a strong survival instinct.",
        personality="suspicious, hungry, terse",
    ),
]

DEMO_LORE = [
    LoreEntry(
        keys=["fafnir", "dragon"],
        content="Fafnir is a young mountain dragon, barely a century old. He is more "
        "frightened than fearsome, but his fire breath has already destroyed half the village.",
        insertion_order=10,
    ),
    LoreEntry(
        keys=["village", "hollow", "mining"],
        content="Dragon's Hollow is a small mining village in a mountain pass, half-ruined "
        "by dragon attacks.",
        insertion_order=20,
    ),
    LoreEntry(
        keys=["amulet", "dragonbane"],
        content="The Dragonbane Amulet is rumored to be hidden in the old mine shafts. "
        "Said to grant protection against dragonfire.",
        insertion_order=30,
        match_whole_words=True,
    ),
]


def create_demo_data(data_dir: Path) -> JsonSceneStore:
    """Wipe existing scenes and create a fresh demo scene."""
    if data_dir.exists():
        shutil.rmtree(data_dir)
    store = JsonSceneStore(data_dir)

    for character in DEMO_CHARACTERS:
        store.save_character(character)

    store.create_scene(
        DEMO_SCENE_ID,
        title="Dragon's Hollow",
        location="The village square at dusk",
        active_characters=["gareth", "elena"],
        lorebook=DEMO_LORE,
        world_state={"time": "dusk", "weather": "smoke on the wind"},
    )
    store.set_character_states(DEMO_SCENE_ID, {
        "Gareth": CharacterState(mood="angry", activity="guarding the square"),
        "Elena": CharacterState(mood="worried", activity="tending the wounded"),
    })

    now = datetime.now(timezone.utc)
    store.append_messages(DEMO_SCENE_ID, [
        SceneMessage(round_number=0, sender="Gareth", content="Another adventurer? We've had enough of those.",
                     source="character", timestamp=now),
        SceneMessage(round_number=0, sender="Elena", content="Wait, Gareth. Maybe this one can help.",
                     source="character", timestamp=now),
    ])

    print(f"Created demo scene '{DEMO_SCENE_ID}' with {len(DEMO_CHARACTERS)} characters "
          f"and {len(DEMO_LORE)} lorebook entries in {data_dir}.")
    return store
