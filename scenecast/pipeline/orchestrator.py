"""Pipeline orchestrator: runs one player turn end-to-end.

Turn flow for a player action:
  1. Snapshot the scene the action was taken in; record the action.
  2. summarize_turn  → stream a synopsis line (ACTION_SUMMARY: ...).
  3. Validate it, append it to the synopsis log, persist.
  4. generate_scene  → stream the next scene's HTML, showing it as it arrives.
  5. Validate it, make it the current scene, append to history, persist,
     and hand its images to the cache in the background.

Single-stage entry points: initial_scene (may carry its own synopsis line)
and diagnosis (reads the synopsis log, writes only diagnosis_markup).

The pipeline is single-flight: `session.processing_stage` is set for the
whole turn, across both stages of a player action. A request made while a
turn is in flight is rejected with AlreadyBusy, never queued.

Validation and engine failures end the turn: the stage goes back to None
and a plain system notice is rendered. Whatever was already appended (a
synopsis recorded before the scene stage failed) stays.

Each stage captures the epoch when it starts. reset() bumps the epoch, so a
completion arriving for an older epoch is dropped without touching state.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any

from scenecast.display import Display
from scenecast.images import ImageCache
from scenecast.llm import LLM, LLMError
from scenecast.models import (
    STAGE_REQUIRES_MARKER,
    STAGE_USES_MARKER,
    WELCOME_MARKUP,
    Session,
    Stage,
    StreamingResult,
    TurnOutcome,
)
from scenecast.pipeline import extractors
from scenecast.pipeline.extractors import ExtractionError
from scenecast.presentation import notice, placeholder
from scenecast.prompts import PromptError, build_context, render_prompt, template_for
from scenecast.storage import Storage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Precondition errors: raised before any state changes
# ---------------------------------------------------------------------------

class TurnRejected(Exception):
    """A pipeline entry point refused to start."""


class AlreadyBusy(TurnRejected):
    """Another turn is still in flight."""


class EngineNotReady(TurnRejected):
    """The generation engine is not loaded or not answering."""


class NoDiagnosisData(TurnRejected):
    """There are no synopses to diagnose yet."""


class _StaleTurn(Exception):
    """The session was reset while this stage was running."""


_PLACEHOLDERS: dict[str, str] = {
    "initial_scene": "Generating Initial Scene...",
    "summarize_turn": "Processing your action...",
    "generate_scene": "Generating next scene...",
    "diagnosis": "Generating Diagnosis...",
}


class TurnPipeline:
    """Sequences the generation stages of a turn against one Session."""

    def __init__(
        self,
        *,
        storage: Storage,
        llm: LLM,
        images: ImageCache,
        display: Display,
        session: Session | None = None,
        prompt_templates: dict[str, str] | None = None,
    ) -> None:
        self._storage = storage
        self._llm = llm
        self._images = images
        self._display = display
        self._templates = prompt_templates or {}
        self.session = session if session is not None else storage.load_session()
        self._epoch = 0

    @property
    def epoch(self) -> int:
        return self._epoch

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_initial_scene(self) -> TurnOutcome:
        """Generate the first scene of a new game."""
        epoch = await self._begin("initial_scene")
        self._display.render(placeholder(_PLACEHOLDERS["initial_scene"]))
        try:
            prompt = self._prompt("initial_scene")
            result = await self._run_stage("initial_scene", prompt)
            # The synopsis line is optional here; keep it if there is one.
            if result.summary:
                self._record_summary(result.summary)
            extractors.validate(result)
            return self._finish_scene("initial_scene", result.markup, result.summary)
        except _StaleTurn:
            return self._discarded("initial_scene")
        except (ExtractionError, LLMError, PromptError) as e:
            return self._abort("initial_scene", e, epoch)

    async def submit_player_action(self, action: str) -> TurnOutcome:
        """Run summarize_turn then generate_scene for one player action."""
        action = action.strip()
        if not action:
            raise ValueError("Action must not be blank")
        epoch = await self._begin("summarize_turn")

        session = self.session
        session.last_turn_markup = (
            session.scene_history[-1] if session.scene_history else session.current_markup
        )
        session.last_action = action
        self._display.render(placeholder(_PLACEHOLDERS["summarize_turn"]))
        stage: Stage = "summarize_turn"
        try:
            prompt = self._prompt(
                stage, action=action, previous_html=session.last_turn_markup,
            )
            result = await self._run_stage(stage, prompt)
            extractors.validate(
                result, marker_required=STAGE_REQUIRES_MARKER[stage], markup_required=False,
            )
            summary = result.summary or ""
            self._record_summary(summary)

            stage = "generate_scene"
            session.processing_stage = stage
            self._display.render(placeholder(_PLACEHOLDERS[stage]))
            prompt = self._prompt(
                stage,
                action=action,
                previous_html=session.last_turn_markup,
                summary=summary,
                summaries=session.action_summaries[:-1],
            )
            result = await self._run_stage(stage, prompt)
            extractors.validate(result)
            return self._finish_scene(stage, result.markup, summary)
        except _StaleTurn:
            return self._discarded(stage)
        except (ExtractionError, LLMError, PromptError) as e:
            return self._abort(stage, e, epoch)

    async def request_diagnosis(self) -> TurnOutcome:
        """Analyse the synopsis log; the result goes to the diagnosis channel."""
        epoch = await self._begin("diagnosis")
        self._display.render_diagnosis(placeholder(_PLACEHOLDERS["diagnosis"]))
        try:
            prompt = self._prompt("diagnosis", summaries=self.session.action_summaries)
            result = await self._run_stage("diagnosis", prompt)
            extractors.validate(result)
        except _StaleTurn:
            return self._discarded("diagnosis")
        except (ExtractionError, LLMError, PromptError) as e:
            return self._abort("diagnosis", e, epoch)

        self.session.diagnosis_markup = result.markup
        self._display.render_diagnosis(result.markup)
        self.session.processing_stage = None
        logger.info("Diagnosis complete (%d chars)", len(result.markup))
        return TurnOutcome(ok=True, stage="diagnosis", markup=result.markup)

    def reset(self, *, force: bool = False) -> None:
        """Clear the session, the saved game and the image cache.

        Only legal while idle unless `force` is set; a forced reset drops
        whatever the in-flight turn produces afterwards.
        """
        if self.session.is_busy and not force:
            raise AlreadyBusy("Cannot reset while a turn is in flight")
        self._epoch += 1
        session = self.session
        session.current_markup = WELCOME_MARKUP
        session.processing_stage = None
        session.last_action = None
        session.last_turn_markup = None
        session.scene_history.clear()
        session.action_summaries.clear()
        session.diagnosis_markup = None
        self._storage.clear()
        self._images.reset()
        self._display.render(placeholder("Game Reset"))
        logger.info("Session reset (epoch=%d)", self._epoch)

    def resume(self) -> bool:
        """Show the restored scene and re-check its images.

        Returns False when there is no saved scene to resume.
        """
        session = self.session
        if not session.scene_history:
            return False
        session.current_markup = session.scene_history[-1]
        self._display.render(session.current_markup)
        self._images.scan_and_ensure(session.current_markup)
        logger.info("Game resumed (%d scenes)", len(session.scene_history))
        return True

    # ------------------------------------------------------------------
    # Stage machinery
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self.session.is_busy:
            raise AlreadyBusy(f"Busy with {self.session.processing_stage}")

    async def preflight(self, stage: Stage) -> None:
        """Raise the TurnRejected error `stage` would fail with right now, if any."""
        self._ensure_idle()
        if stage == "diagnosis" and not self.session.action_summaries:
            raise NoDiagnosisData("No action summaries recorded to diagnose")
        if not await self._llm.is_ready():
            raise EngineNotReady("LLM not ready")

    async def _begin(self, stage: Stage) -> int:
        await self.preflight(stage)
        # Re-check: another request may have claimed the session during the probe.
        self._ensure_idle()
        self.session.processing_stage = stage
        logger.info("Stage %s started", stage)
        return self._epoch

    def _prompt(self, stage: Stage, **values: Any) -> str:
        ctx = build_context(
            image_endpoint=self._images.endpoint,
            image_width=self._images.width,
            image_height=self._images.height,
            **values,
        )
        return render_prompt(template_for(stage, self._templates), ctx)

    async def _run_stage(self, stage: Stage, prompt: str) -> StreamingResult:
        """Stream one generation and return the final extractor result.

        Provisional markup is rendered as it arrives when the extractor says
        it is displayable. The summary stage is never shown.
        """
        epoch = self._epoch
        uses_marker = STAGE_USES_MARKER[stage]
        text = ""
        try:
            async with aclosing(self._llm.stream(stage, prompt)) as chunks:
                async for chunk in chunks:
                    if epoch != self._epoch:
                        break
                    text += chunk
                    if stage == "summarize_turn":
                        continue
                    partial = extractors.feed(text, False, uses_marker)
                    if partial.displayable:
                        self._show_partial(stage, partial.markup)
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Engine failure during {stage}: {e}") from e

        if epoch != self._epoch:
            raise _StaleTurn(stage)
        logger.debug("Stage %s final response len=%d", stage, len(text))
        return extractors.feed(text, True, uses_marker)

    def _show_partial(self, stage: Stage, markup: str) -> None:
        if stage == "diagnosis":
            self._display.render_diagnosis(markup)
        else:
            self._display.render(markup, provisional=True)

    def _record_summary(self, summary: str) -> None:
        self.session.action_summaries.append(summary)
        self._storage.set_action_summaries(self.session.action_summaries)
        logger.debug("Extracted summary: %s", summary)

    def _finish_scene(self, stage: Stage, markup: str, summary: str | None) -> TurnOutcome:
        session = self.session
        session.current_markup = markup
        session.scene_history.append(markup)
        self._storage.set_scene_history(session.scene_history)
        self._storage.set_last_markup(markup)
        self._display.render(markup)
        self._images.scan_and_ensure(markup)
        session.processing_stage = None
        logger.info("Stage %s finished, history=%d", stage, len(session.scene_history))
        return TurnOutcome(ok=True, stage=stage, markup=markup, summary=summary)

    def _abort(self, stage: Stage, error: Exception, epoch: int) -> TurnOutcome:
        if epoch != self._epoch:
            return self._discarded(stage)
        if isinstance(error, LLMError):
            logger.exception("Inference error (stage=%s)", stage)
            message = f"Inference error: {error}"
        else:
            logger.warning("Stage %s failed validation: %s", stage, error)
            message = f"Turn aborted: {error}"
        self.session.processing_stage = None
        if stage == "diagnosis":
            self._display.render_diagnosis(notice(message))
        else:
            self._display.render(notice(message))
        return TurnOutcome(ok=False, stage=stage, notice=message)

    def _discarded(self, stage: Stage) -> TurnOutcome:
        logger.info("Discarding stale %s result after reset", stage)
        return TurnOutcome(ok=False, stage=stage)
