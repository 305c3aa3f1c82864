"""Round pipeline.

Executes one scene round for a user message (or a continue request):
  1. RoundInitializing: load the scene, reset per-round flags.
  2. ContextBuilding: history window, summary, lore, memories.
  3. DirectorPass1: plan who acts, activations, exits, state updates.
  4. WorldUpdate: optional world/tracker update from recent events.
  5. CharacterTurns: each planned actor speaks, in order, one at a time.
  6. DirectorPass2: reconcile; queue or run follow-up actors.
  7. RoundFinalizing: persist, vectorize, summarize, advance the round.

Roles (each a call to the injected RoleRunner):
  director  : plan and reconciliation passes
  world     : world state and trackers
  character : one call per acting character
  summarizer: rolling scene summary every N rounds
"""

from roleforge.pipeline.orchestrator import RoundOrchestrator, RoundPhase, SceneRegistry
from roleforge.pipeline.timeline import RoundTimeline

__all__ = ["RoundOrchestrator", "RoundPhase", "SceneRegistry", "RoundTimeline"]
