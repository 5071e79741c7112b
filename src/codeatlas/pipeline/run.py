"""
Pipeline run orchestration.

A PipelineInstance executes the five stages strictly in order, fails fast
on the first failed step and rolls back its accumulated results when it
fails or is cancelled. It reports everything it does through a publish
callback supplied by its owner; it never talks to subscribers directly.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..data.schemas import (
    PIPELINE_STEPS,
    STEP_BY_ID,
    EventType,
    PipelineEvent,
    PipelineRunConfig,
    RunStatus,
    StepState,
    utc_now,
)
from ..util.errors import (
    CodeAtlasError,
    PipelineError,
    StageExecutionError,
    StepNotFoundError,
    create_error_context,
)
from ..util.logging_config import (
    clear_request_context,
    get_logger,
    log_pipeline_complete,
    log_pipeline_error,
    log_pipeline_start,
    set_request_context,
)
from .index_builder import IndexBuilder
from .stage import PipelineStageInterface, StageContext
from .stages import StageServices, create_default_stages

Publisher = Callable[[PipelineEvent], None]

TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class PipelineInstance:
    """
    One run of the pipeline.

    States move ``idle -> running -> completed | failed | cancelled``.
    Cancellation is cooperative: it is checked before each step starts,
    so an in-flight step always finishes.
    """

    def __init__(
        self,
        pipeline_id: str,
        config: PipelineRunConfig,
        services: StageServices,
        stages: Optional[Dict[str, PipelineStageInterface]] = None,
        publish: Optional[Publisher] = None,
    ):
        self.id = pipeline_id
        self.config = config
        self.services = services
        self.stages = stages if stages is not None else create_default_stages()
        self._publish = publish

        self.status = RunStatus.IDLE
        self.steps: Dict[int, StepState] = {
            definition.id: StepState.from_definition(definition) for definition in PIPELINE_STEPS
        }
        self.current_step = 0
        self.created_at: datetime = utc_now()
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.error: Optional[str] = None
        self.results: Dict[str, Any] = {}
        # Step reports survive rollback so failed runs stay inspectable
        self.reports: Dict[str, Dict[str, Any]] = {}
        self.cancel_requested = False
        self._start_time: Optional[float] = None

        self.logger = get_logger("pipeline.run")

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self) -> None:
        """Enter the running state; called synchronously before the run is scheduled."""
        if self.status != RunStatus.IDLE:
            raise PipelineError(f"Pipeline {self.id} cannot start from status '{self.status.value}'")
        self.status = RunStatus.RUNNING
        self.started_at = utc_now()
        self._start_time = time.perf_counter()

    async def start(self) -> None:
        """Run all steps in order. Failures are recorded on the instance, not raised."""
        if self.status == RunStatus.IDLE:
            self.mark_running()
        elif self.cancel_requested:
            # Cancelled before the scheduled task got to run
            await self._finish_cancelled()
            return
        elif self.status != RunStatus.RUNNING:
            raise PipelineError(f"Pipeline {self.id} already finished with status '{self.status.value}'")

        set_request_context(pipeline_id=self.id)
        log_pipeline_start(self.id, self.config.model_dump(mode="json"))

        try:
            for definition in PIPELINE_STEPS:
                if self.cancel_requested:
                    await self._finish_cancelled()
                    return
                await self.execute_step(definition.id)

            if self.cancel_requested:
                await self._finish_cancelled()
                return

            self.status = RunStatus.COMPLETED
            self.completed_at = utc_now()
            duration_ms = self.duration_ms
            log_pipeline_complete(self.id, duration_ms, {name: report for name, report in self.reports.items()})
            self._emit(EventType.RUN_COMPLETED, message="Pipeline completed successfully",
                       result_summary={"duration_ms": duration_ms, "steps": list(self.reports)})

        except CodeAtlasError as e:
            if self.cancel_requested:
                await self._finish_cancelled()
                return

            self.status = RunStatus.FAILED
            self.completed_at = utc_now()
            self.error = e.message
            log_pipeline_error(self.id, e, stage=STEP_BY_ID[self.current_step].name if self.current_step else None)
            self._emit(EventType.RUN_FAILED, error=self.error)
            await self.rollback()
        finally:
            clear_request_context()

    async def execute_step(self, step_id: int) -> Dict[str, Any]:
        """
        Execute one step against the accumulated results.

        Returns:
            The stage result, also stored under the step name

        Raises:
            StepNotFoundError: If ``step_id`` is not 1..5
            CodeAtlasError: If the stage fails; the step is marked failed first
        """
        definition = STEP_BY_ID.get(step_id)
        if definition is None:
            raise StepNotFoundError(step_id)

        state = self.steps[step_id]
        stage = self.stages[definition.name]
        self.current_step = step_id

        state.mark_running()
        state.items_processed = 0
        state.total_items = 0
        set_request_context(pipeline_id=self.id, step_name=definition.name)
        self._emit(EventType.STEP_STARTED, step_id=step_id, step_name=definition.name,
                   progress=0, message=f"Starting step: {definition.label}")

        def on_progress(
            percentage: float,
            message: str = "",
            items_processed: Optional[int] = None,
            total_items: Optional[int] = None,
        ) -> None:
            state.update_progress(percentage, items_processed, total_items)
            self._emit(
                EventType.PROGRESS,
                step_id=step_id,
                step_name=definition.name,
                progress=state.progress,
                items_processed=state.items_processed,
                total_items=state.total_items,
                message=message,
            )

        context = StageContext(
            pipeline_id=self.id, config=self.config, results=self.results, services=self.services
        )
        try:
            async with self.logger.performance_track(f"step_{definition.name}"):
                result = await stage.execute(context, on_progress)
        except Exception as e:
            error = e if isinstance(e, CodeAtlasError) else StageExecutionError(
                definition.name,
                f"Unexpected error in {definition.name} stage: {e}",
                cause=e,
                context=create_error_context(
                    "pipeline.run", "execute_step", pipeline_id=self.id, step_name=definition.name
                ),
            )
            state.mark_failed(error.message)
            self.logger.operation_error(f"step_{definition.name}", error, pipeline_id=self.id)
            self._emit(EventType.STEP_FAILED, step_id=step_id, step_name=definition.name,
                       progress=state.progress, items_processed=state.items_processed,
                       total_items=state.total_items, error=error.message)
            if error is e:
                raise
            raise error from e

        self.results[definition.name] = result
        report = result.get("report") or {}
        self.reports[definition.name] = report
        state.mark_completed()

        self._emit(EventType.STEP_COMPLETED, step_id=step_id, step_name=definition.name,
                   progress=100, items_processed=state.items_processed, total_items=state.total_items,
                   message=f"Completed step: {definition.label}", result_summary=report)
        return result

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns False when the run already finished; nothing changes then.
        """
        if self.is_finished:
            return False
        self.cancel_requested = True
        self.status = RunStatus.CANCELLED
        self.completed_at = utc_now()
        self.logger.info(f"Pipeline {self.id} cancelled by user")
        return True

    async def _finish_cancelled(self) -> None:
        self.status = RunStatus.CANCELLED
        if self.completed_at is None:
            self.completed_at = utc_now()
        self._emit(EventType.RUN_CANCELLED, message="Pipeline cancelled")
        await self.rollback()

    async def rollback(self) -> None:
        """
        Discard accumulated results and any index files this run wrote.

        Idempotent; failures are logged and never raised.
        """
        indexing = self.results.get("indexing") or {}
        index_base = indexing.get("index_base_path")
        self.results.clear()

        if not index_base:
            return
        try:
            removed = await asyncio.to_thread(IndexBuilder.remove_artifacts, index_base)
            if removed:
                self.logger.info(f"Rollback removed {len(removed)} index artifacts for {self.id}")
        except Exception as e:
            self.logger.operation_error("rollback", e, pipeline_id=self.id)

    @property
    def duration_ms(self) -> float:
        if self._start_time is None:
            return 0.0
        return round((time.perf_counter() - self._start_time) * 1000, 2)

    def get_steps_status(self) -> List[Dict[str, Any]]:
        return [state.model_dump(mode="json") for state in self.steps.values()]

    def get_status(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.id,
            "status": self.status.value,
            "current_step": self.current_step,
            "steps": self.get_steps_status(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "reports": dict(self.reports),
            "config": self.config.model_dump(mode="json"),
        }

    def _emit(self, event_type: EventType, **fields: Any) -> None:
        if self._publish is None:
            return
        self._publish(PipelineEvent(type=event_type, pipeline_id=self.id, **fields))
