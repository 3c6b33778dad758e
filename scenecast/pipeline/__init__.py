"""Turn pipeline: stage sequencing and streaming output extraction.

A player action runs two dependent generations:
  1. summarize_turn: condenses the previous scene + action into one
     ACTION_SUMMARY line, appended to the synopsis log.
  2. generate_scene: writes the next scene's HTML from the synopsis,
     the previous scene and the action.

initial_scene and diagnosis are single-stage. See orchestrator.TurnPipeline.
"""

from .extractors import (  # noqa: F401
    EmptyGeneration,
    ExtractionError,
    MissingSummaryMarker,
    extract_markup,
    feed,
    validate,
)
from .orchestrator import (  # noqa: F401
    AlreadyBusy,
    EngineNotReady,
    NoDiagnosisData,
    TurnPipeline,
    TurnRejected,
)
