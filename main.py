"""RoleForge: dev launcher. Runs one scene round against a configured LLM backend."""

import argparse
import asyncio
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

DATA_DIR = os.getenv("DATA_DIR", "data")


async def run(args: argparse.Namespace) -> None:
    from roleforge.config import load_settings
    from roleforge.interfaces import LoggingEventSink
    from roleforge.llm import HttpRoleRunner
    from roleforge.pipeline import SceneRegistry
    from roleforge.storage import JsonSceneStore

    settings = load_settings(args.data_dir)
    store = JsonSceneStore(args.data_dir)
    registry = SceneRegistry(HttpRoleRunner.from_settings(settings), store, settings, sink=LoggingEventSink())
    orchestrator = registry.get(args.scene)

    def show(turn):
        print(f"{turn.character}: {turn.content}\n")

    if args.continue_scene:
        result = await orchestrator.continue_round(on_turn=show)
    else:
        result = await orchestrator.run_round(" ".join(args.message), persona_name=args.persona, on_turn=show)
    await registry.drain()

    print(f"Round {result.round_number} complete, next round {result.next_round_number}.")
    if result.deferred_actors:
        print(f"Not run (director pass limit): {', '.join(result.deferred_actors)}")


def main():
    parser = argparse.ArgumentParser(description="RoleForge dev launcher")
    parser.add_argument("message", nargs="*", help="User message for this round")
    parser.add_argument("--data-dir", type=Path, default=Path(DATA_DIR),
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--scene", default="dragons-hollow", help="Scene id")
    parser.add_argument("--persona", default=None, help="User persona name")
    parser.add_argument("--continue", dest="continue_scene", action="store_true",
                        help="Continue the scene without user input")
    parser.add_argument("--demo", action="store_true",
                        help="Clean and create demo scene data")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"),
                        help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.demo:
        from roleforge.demo import create_demo_data
        create_demo_data(args.data_dir)
        if not args.message and not args.continue_scene:
            return

    if not args.message and not args.continue_scene:
        parser.error("a message or --continue is required")

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
