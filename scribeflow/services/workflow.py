"""
Post-recording workflow.

Runs the generation steps strictly in order once a recording has stopped.
Note generation is mandatory and aborts the run when it fails; task
extraction and code suggestion may fail on their own while the run continues.
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from scribeflow.core.logging import get_logger, audit_logger
from scribeflow.models.workflow import (
    ClinicalNote,
    StepName,
    StepResult,
    StepStatus,
    WorkflowResult,
    WorkflowState,
    WorkflowStep,
)
from scribeflow.services.metrics import PipelineMetrics

logger = get_logger(__name__)

STEP_LABELS = {
    StepName.TRANSCRIPTION: "Transcription",
    StepName.NOTE_GENERATION: "Note Generation",
    StepName.TASK_EXTRACTION: "Task Extraction",
    StepName.CODE_SUGGESTION: "Code Suggestion",
}
MANDATORY_STEP = StepName.NOTE_GENERATION

PROGRESS_STARTED = 20
PROGRESS_REQUESTED = 40
PROGRESS_RECEIVED = 80
PROGRESS_DONE = 100


class WorkflowOrchestrator:
    """
    Drives one session's workflow.

    ``generator`` provides ``generate_note(transcript)``,
    ``extract_tasks(note)`` and ``suggest_codes(note)``. Every state change
    is handed to ``publish`` as a full ``WorkflowState`` snapshot.
    """

    def __init__(
        self,
        generator,
        session_id: Optional[str] = None,
        publish: Optional[Callable[[WorkflowState], None]] = None,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.generator = generator
        self._publish = publish
        self._metrics = metrics
        self.last_note: Optional[ClinicalNote] = None
        self._state = WorkflowState(session_id=session_id, steps=self._initial_steps())

    @staticmethod
    def _initial_steps() -> List[WorkflowStep]:
        return [
            WorkflowStep(name=name, label=label, mandatory=name == MANDATORY_STEP)
            for name, label in STEP_LABELS.items()
        ]

    def get_state(self) -> WorkflowState:
        return self._state.model_copy(deep=True)

    def reset(self) -> None:
        self._state = WorkflowState(session_id=self._state.session_id, steps=self._initial_steps())
        self._notify()

    def step(self, name: StepName) -> WorkflowStep:
        for step in self._state.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def _notify(self) -> None:
        if self._publish is not None:
            self._publish(self.get_state())

    def _update(self, name: StepName, **fields) -> None:
        step = self.step(name)
        for key, value in fields.items():
            setattr(step, key, value)
        self._state.current_step = self._state.steps.index(step)
        self._notify()

    async def _run(self, name: StepName, action: Callable[[], Awaitable[Any]]) -> Any:
        """Runs one step with progress reporting. Failures are recorded on the step and re-raised."""
        label = STEP_LABELS[name]
        started = time.monotonic()
        self._update(name, status=StepStatus.IN_PROGRESS, progress=PROGRESS_STARTED, message=f"Starting {label.lower()}...", error=None)
        self._update(name, progress=PROGRESS_REQUESTED, message=f"Running {label.lower()}...")

        try:
            result = await action()
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._update(name, status=StepStatus.FAILED, message=f"{label} failed", error=str(e))
            logger.error(f"Workflow step {name.value} failed for session {self._state.session_id}: {e}")
            audit_logger.log_workflow_step(
                session_id=self._state.session_id,
                step=name.value,
                status=StepStatus.FAILED.value,
                duration_ms=duration_ms,
                error=str(e),
            )
            if self._metrics:
                self._metrics.workflow_steps.labels(step=name.value, status=StepStatus.FAILED.value).inc()
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        self._update(name, progress=PROGRESS_RECEIVED, message="Processing results...")
        self._update(name, status=StepStatus.COMPLETED, progress=PROGRESS_DONE, message=f"{label} complete")
        audit_logger.log_workflow_step(
            session_id=self._state.session_id,
            step=name.value,
            status=StepStatus.COMPLETED.value,
            duration_ms=duration_ms,
        )
        if self._metrics:
            self._metrics.workflow_steps.labels(step=name.value, status=StepStatus.COMPLETED.value).inc()
        return result

    def _complete_transcription(self) -> None:
        self._update(
            StepName.TRANSCRIPTION,
            status=StepStatus.COMPLETED,
            progress=PROGRESS_DONE,
            message="Transcript ready",
            error=None,
        )

    async def run_complete_pipeline(self, session_id: str, transcript: str) -> WorkflowResult:
        """
        Runs transcription → note generation → task extraction → code suggestion.
        Callers must check ``errors`` on a successful result for optional step failures.
        """
        self._state = WorkflowState(session_id=session_id, is_running=True, steps=self._initial_steps())
        errors: List[str] = []
        logger.info(f"Starting workflow for session {session_id}")

        try:
            self._complete_transcription()

            try:
                note = await self._run(
                    StepName.NOTE_GENERATION,
                    lambda: self.generator.generate_note(transcript),
                )
            except Exception as e:
                errors.append(f"Note generation failed: {e}")
                return WorkflowResult(success=False, errors=errors)
            self.last_note = note

            tasks = []
            try:
                task_list = await self._run(StepName.TASK_EXTRACTION, lambda: self.generator.extract_tasks(note))
                tasks = task_list.tasks
            except Exception as e:
                errors.append(f"Task extraction failed: {e}")

            codes = []
            try:
                code_list = await self._run(StepName.CODE_SUGGESTION, lambda: self.generator.suggest_codes(note))
                codes = code_list.codes
            except Exception as e:
                errors.append(f"Code suggestion failed: {e}")

            logger.info(f"Workflow finished for session {session_id} with {len(errors)} step errors")
            return WorkflowResult(success=True, note=note, tasks=tasks, codes=codes, errors=errors)
        finally:
            self._state.is_running = False
            self._notify()

    async def run_step(
        self,
        name: Union[StepName, str],
        session_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """Re-runs a single step, e.g. task extraction after it failed."""
        step_name = StepName(name)
        data = data or {}
        self._state.session_id = session_id

        if step_name == StepName.TRANSCRIPTION:
            self._complete_transcription()
            return StepResult(success=True, step=step_name)

        if step_name == StepName.NOTE_GENERATION:
            transcript = data.get("transcript")
            if not transcript:
                return StepResult(success=False, step=step_name, error="A transcript is required for note generation")
            try:
                note = await self._run(step_name, lambda: self.generator.generate_note(transcript))
            except Exception as e:
                return StepResult(success=False, step=step_name, error=str(e))
            self.last_note = note
            return StepResult(success=True, step=step_name, note=note)

        note = self._coerce_note(data.get("note")) or self.last_note
        if note is None:
            return StepResult(success=False, step=step_name, error="No clinical note available, run note generation first")

        try:
            if step_name == StepName.TASK_EXTRACTION:
                task_list = await self._run(step_name, lambda: self.generator.extract_tasks(note))
                return StepResult(success=True, step=step_name, tasks=task_list.tasks)
            code_list = await self._run(step_name, lambda: self.generator.suggest_codes(note))
            return StepResult(success=True, step=step_name, codes=code_list.codes)
        except Exception as e:
            return StepResult(success=False, step=step_name, error=str(e))

    @staticmethod
    def _coerce_note(value) -> Optional[ClinicalNote]:
        if value is None or isinstance(value, ClinicalNote):
            return value
        if isinstance(value, str):
            return ClinicalNote(content=value)
        return ClinicalNote.model_validate(value)
