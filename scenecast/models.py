"""Core domain models.

The pipeline, the image cache and storage all operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Stage = Literal[
    "initial_scene",
    "summarize_turn",
    "generate_scene",
    "diagnosis",
]

# Whether a stage's output may start with the ACTION_SUMMARY marker line.
STAGE_USES_MARKER: dict[str, bool] = {
    "initial_scene": True,
    "summarize_turn": True,
    "generate_scene": False,
    "diagnosis": False,
}

# Stages whose output is rejected when the marker line is missing.
STAGE_REQUIRES_MARKER: dict[str, bool] = {
    "initial_scene": False,
    "summarize_turn": True,
    "generate_scene": False,
    "diagnosis": False,
}

WELCOME_MARKUP = "<html><body><h1>Welcome!</h1><p>Loading game...</p></body></html>"


class Session(BaseModel):
    """Mutable aggregate of the current scene, history and synopsis log.

    ``processing_stage`` is not None exactly while one turn is in flight.
    """

    current_markup: str = WELCOME_MARKUP
    processing_stage: Stage | None = None
    last_action: str | None = None
    last_turn_markup: str | None = None
    scene_history: list[str] = Field(default_factory=list)
    action_summaries: list[str] = Field(default_factory=list)
    diagnosis_markup: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.processing_stage is not None


class StreamingResult(BaseModel):
    """What the extractor could make of the buffer at one point in the stream."""

    summary: str | None = None
    markup: str = ""
    is_final: bool = False
    marker_seen: bool = False
    displayable: bool = False


class TurnOutcome(BaseModel):
    """Result of one pipeline entry point, returned once the turn has ended."""

    ok: bool
    stage: Stage
    markup: str | None = None
    summary: str | None = None
    notice: str | None = None
