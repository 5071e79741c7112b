"""
Pipeline management for concurrent runs and independent step execution.

The PipelineManager owns every long-lived collaborator (ErrorHandler,
ProgressTracker, MetricsCollector and the shared stage caches) and hands
them to the runs it creates. Runs publish PipelineEvents to the manager,
which updates its own bookkeeping and fans each event out to subscriber
queues.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..config import CodeAtlasSettings, get_settings
from ..data.schemas import (
    PIPELINE_STEPS,
    STEP_BY_ID,
    ErrorEntry,
    EventType,
    PipelineEvent,
    PipelineRunConfig,
    RunStatus,
    StepHistoryEntry,
    StepState,
    StepStatus,
    utc_now,
)
from ..monitoring.metrics import MetricsCollector
from ..util.errors import (
    CodeAtlasError,
    PipelineCapacityError,
    PipelineError,
    PipelineNotFoundError,
    StepConflictError,
    StepNotFoundError,
    ValidationError,
)
from ..util.logging_config import configure_from_settings, get_logger
from .error_handler import ErrorHandler
from .progress import ProgressTracker
from .run import PipelineInstance
from .stage import PipelineStageInterface
from .stages import StageServices, create_default_stages

__all__ = [
    "GLOBAL_STEPS_PIPELINE_ID",
    "PipelineCapacityError",
    "PipelineError",
    "PipelineManager",
    "PipelineNotFoundError",
    "StepConflictError",
    "StepNotFoundError",
]

GLOBAL_STEPS_PIPELINE_ID = "global-steps-pipeline"
MAX_HISTORY_LIMIT = 1000
HISTORY_PROGRESS_INTERVAL = 10

ConfigInput = Union[PipelineRunConfig, Dict[str, Any], None]
StageFactory = Callable[[], Dict[str, PipelineStageInterface]]
SleepFunc = Callable[[float], Awaitable[Any]]

RUN_EVENT_STATUSES = {
    EventType.RUN_COMPLETED: RunStatus.COMPLETED,
    EventType.RUN_FAILED: RunStatus.FAILED,
    EventType.RUN_CANCELLED: RunStatus.CANCELLED,
}


def coerce_config(config: ConfigInput) -> PipelineRunConfig:
    """Validate a caller-supplied run configuration."""
    if config is None:
        return PipelineRunConfig()
    if isinstance(config, PipelineRunConfig):
        return config
    try:
        return PipelineRunConfig.model_validate(config)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid pipeline configuration: {e}", field="config") from e


class PipelineManager:
    """
    Runs pipelines concurrently under a cap and executes single steps on
    demand against one shared, long-lived instance.

    ``start_pipeline`` and ``run_step`` return as soon as the work is
    scheduled; use ``subscribe``, ``wait_for_pipeline`` or
    ``wait_for_step`` to observe completion. With ``configure_logging``
    the root logger is set up from the settings' logging section.
    """

    def __init__(
        self,
        settings: Optional[CodeAtlasSettings] = None,
        services: Optional[StageServices] = None,
        metrics: Optional[MetricsCollector] = None,
        stage_factory: Optional[StageFactory] = None,
        sleep: SleepFunc = asyncio.sleep,
        max_concurrent_pipelines: Optional[int] = None,
        configure_logging: bool = False,
    ):
        self.settings = settings or get_settings()
        if configure_logging:
            configure_from_settings(self.settings.logging)
        pipeline_settings = self.settings.pipeline

        self.max_concurrent_pipelines = max_concurrent_pipelines or pipeline_settings.max_concurrent_pipelines
        self.retention = timedelta(seconds=pipeline_settings.completed_retention_seconds)
        self.housekeeping_interval = pipeline_settings.housekeeping_interval_seconds
        self.step_history_limit = pipeline_settings.step_history_limit

        self.metrics = metrics or MetricsCollector()
        if services is None:
            error_handler = ErrorHandler(
                max_history=pipeline_settings.error_history_limit, sleep=sleep, metrics=self.metrics
            )
            services = StageServices(error_handler=error_handler, settings=self.settings, sleep=sleep, metrics=self.metrics)
        self.services = services
        self.error_handler = services.error_handler
        self.progress_tracker = ProgressTracker(
            history_limit=pipeline_settings.progress_history_limit,
            history_trim_to=pipeline_settings.progress_history_trim_to,
        )
        self._stage_factory = stage_factory or create_default_stages
        self._sleep = sleep

        self.pipelines: Dict[str, PipelineInstance] = {}
        self.global_instance: Optional[PipelineInstance] = None
        self.step_history: Dict[int, Deque[StepHistoryEntry]] = {
            step.id: deque(maxlen=self.step_history_limit) for step in PIPELINE_STEPS
        }

        self._run_tasks: Dict[str, asyncio.Task] = {}
        self._step_tasks: Dict[int, asyncio.Task] = {}
        self._housekeeping_task: Optional[asyncio.Task] = None
        self._subscribers: List[asyncio.Queue] = []

        self.logger = get_logger("pipeline.manager")

    # Full runs

    async def start_pipeline(self, config: ConfigInput = None) -> Dict[str, Any]:
        """
        Create a run and schedule it.

        Raises:
            PipelineCapacityError: If the running-instance limit is reached
            ValidationError: If ``config`` is invalid
        """
        running = self.count_running()
        if running >= self.max_concurrent_pipelines:
            raise PipelineCapacityError(self.max_concurrent_pipelines)

        run_config = coerce_config(config)
        pipeline_id = str(uuid.uuid4())
        instance = PipelineInstance(
            pipeline_id,
            run_config,
            self.services,
            stages=self._stage_factory(),
            publish=self._handle_event,
        )
        self.pipelines[pipeline_id] = instance
        self.progress_tracker.start_tracking(pipeline_id, run_config.model_dump(mode="json"))

        instance.mark_running()
        self._run_tasks[pipeline_id] = asyncio.create_task(self._run_pipeline(instance))

        self.metrics.record_run_started()
        self.metrics.set_active_runs(running + 1)
        self.logger.info(
            f"Pipeline {pipeline_id} started",
            extra={"extra_fields": {"pipeline_id": pipeline_id, "project_path": run_config.project_path}},
        )

        return {
            "pipeline_id": pipeline_id,
            "status": instance.status.value,
            "created_at": instance.created_at.isoformat(),
        }

    async def _run_pipeline(self, instance: PipelineInstance) -> None:
        try:
            await instance.start()
        except Exception as e:
            # start() records stage failures itself; anything reaching here is a bug in orchestration
            self.logger.operation_error("pipeline_execution", e, pipeline_id=instance.id)
            instance.status = RunStatus.FAILED
            instance.error = str(e)
            instance.completed_at = utc_now()
        finally:
            self._run_tasks.pop(instance.id, None)
            self.metrics.set_active_runs(self.count_running())

    def count_running(self) -> int:
        return sum(1 for instance in self.pipelines.values() if instance.status == RunStatus.RUNNING)

    def get_pipeline(self, pipeline_id: str) -> PipelineInstance:
        instance = self.pipelines.get(pipeline_id)
        if instance is None:
            raise PipelineNotFoundError(pipeline_id)
        return instance

    def get_pipeline_status(self, pipeline_id: str) -> Dict[str, Any]:
        """
        Raises:
            PipelineNotFoundError: If the id is unknown
        """
        instance = self.get_pipeline(pipeline_id)
        status = instance.get_status()
        session = self.progress_tracker.get_session(pipeline_id)
        if session is not None:
            status["progress"] = session.get_summary()
        return status

    async def cancel_pipeline(self, pipeline_id: str) -> Dict[str, Any]:
        """
        Cancel a run and roll it back; the in-flight step is allowed to finish.

        Raises:
            PipelineNotFoundError: If the id is unknown
        """
        instance = self.get_pipeline(pipeline_id)
        if instance.cancel():
            await instance.rollback()
            self.metrics.set_active_runs(self.count_running())
        return {"pipeline_id": pipeline_id, "status": instance.status.value}

    def list_pipelines(self) -> List[Dict[str, Any]]:
        return [
            {
                "pipeline_id": instance.id,
                "status": instance.status.value,
                "current_step": instance.current_step,
                "started_at": instance.started_at.isoformat() if instance.started_at else None,
                "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
                "project_path": instance.config.project_path,
                "file_patterns": instance.config.file_patterns,
            }
            for instance in self.pipelines.values()
        ]

    async def wait_for_pipeline(self, pipeline_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait until a run's task finishes and return its status."""
        self.get_pipeline(pipeline_id)
        task = self._run_tasks.get(pipeline_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.get_pipeline_status(pipeline_id)

    # Independent-step mode

    def _get_global_instance(self) -> PipelineInstance:
        if self.global_instance is None:
            self.global_instance = PipelineInstance(
                GLOBAL_STEPS_PIPELINE_ID,
                PipelineRunConfig(),
                self.services,
                stages=self._stage_factory(),
                publish=self._handle_event,
            )
            self.progress_tracker.start_tracking(GLOBAL_STEPS_PIPELINE_ID)
        return self.global_instance

    async def run_step(self, step_id: int, config: ConfigInput = None) -> Dict[str, Any]:
        """
        Run one step against the shared instance.

        A finished step is reset to pending (and the reset recorded in its
        history) before it restarts. Config fields supplied by the caller
        are merged into the shared config.

        Raises:
            StepNotFoundError: If ``step_id`` is not 1..5
            StepConflictError: If the step is already running
        """
        definition = STEP_BY_ID.get(step_id)
        if definition is None:
            raise StepNotFoundError(step_id)

        instance = self._get_global_instance()
        state = instance.steps[step_id]
        if state.status == StepStatus.RUNNING:
            raise StepConflictError(step_id)

        update = coerce_config(config)
        instance.config = instance.config.merged_with(update)

        if state.is_finished:
            state.reset()
            self._add_history_entry(step_id, StepHistoryEntry(status=StepStatus.PENDING))

        state.mark_running()
        self._add_history_entry(step_id, StepHistoryEntry(status=StepStatus.RUNNING))
        self._step_tasks[step_id] = asyncio.create_task(self._run_independent_step(instance, step_id))

        self.logger.info(f"Independent step {definition.name} scheduled")
        return {
            "step_id": step_id,
            "step_name": definition.name,
            "label": definition.label,
            "status": state.status.value,
            "pipeline_id": instance.id,
        }

    async def _run_independent_step(self, instance: PipelineInstance, step_id: int) -> None:
        try:
            await instance.execute_step(step_id)
        except CodeAtlasError as e:
            # Already recorded on the step state and in its history
            self.logger.warning(f"Independent step {step_id} failed: {e.message}")
        except Exception as e:
            definition = STEP_BY_ID[step_id]
            state = instance.steps[step_id]
            if state.status == StepStatus.RUNNING:
                state.mark_failed(str(e))
                self._handle_event(PipelineEvent(
                    type=EventType.STEP_FAILED,
                    pipeline_id=instance.id,
                    step_id=step_id,
                    step_name=definition.name,
                    progress=state.progress,
                    error=state.error,
                ))
            self.logger.operation_error(f"step_{definition.name}", e, pipeline_id=instance.id)
        finally:
            self._step_tasks.pop(step_id, None)

    async def wait_for_step(self, step_id: int, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait until an independently started step finishes and return its state."""
        if step_id not in STEP_BY_ID:
            raise StepNotFoundError(step_id)
        task = self._step_tasks.get(step_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self._step_states()[step_id - 1]

    def _step_states(self) -> List[Dict[str, Any]]:
        if self.global_instance is not None:
            return self.global_instance.get_steps_status()
        return [StepState.from_definition(step).model_dump(mode="json") for step in PIPELINE_STEPS]

    def get_global_steps_status(self) -> List[Dict[str, Any]]:
        return self._step_states()

    def get_global_steps_history(self, step_id: Optional[int] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Most recent history entries per step, oldest first.

        ``limit`` applies per step and is clamped to 1000.

        Raises:
            StepNotFoundError: If ``step_id`` is given and not 1..5
        """
        limit = max(0, min(limit, MAX_HISTORY_LIMIT))
        if step_id is not None:
            if step_id not in STEP_BY_ID:
                raise StepNotFoundError(step_id)
            steps = [STEP_BY_ID[step_id]]
        else:
            steps = list(PIPELINE_STEPS)

        result = []
        for step in steps:
            history = list(self.step_history[step.id])
            result.append({
                "step_id": step.id,
                "step_name": step.name,
                "history": history[-limit:] if limit else [],
            })
        return result

    def _add_history_entry(self, step_id: int, entry: StepHistoryEntry) -> None:
        self.step_history[step_id].append(entry)

    # Events

    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[PipelineEvent]":
        """Queue receiving every event published from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _handle_event(self, event: PipelineEvent) -> None:
        self._track_progress(event)
        if event.pipeline_id == GLOBAL_STEPS_PIPELINE_ID:
            self._record_step_history(event)
        self._record_metrics(event)

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning(f"Subscriber queue full, dropping {event.type.value} event")

    def _track_progress(self, event: PipelineEvent) -> None:
        session = self.progress_tracker.get_session(event.pipeline_id)
        if session is None:
            return

        if event.type == EventType.STEP_STARTED:
            session.start_step(event.step_name)
        elif event.type == EventType.PROGRESS:
            session.update_progress(
                event.step_name, event.progress or 0, event.message or "",
                event.items_processed or 0, event.total_items or 0,
            )
        elif event.type == EventType.STEP_COMPLETED:
            session.update_progress(
                event.step_name, 100, event.message or "",
                event.items_processed or 0, event.total_items or 0,
            )
        elif event.type in RUN_EVENT_STATUSES:
            self.progress_tracker.stop_tracking(
                event.pipeline_id, mark_steps=event.type == EventType.RUN_COMPLETED
            )

    def _record_step_history(self, event: PipelineEvent) -> None:
        if event.step_id is None:
            return
        history = self.step_history[event.step_id]

        if event.type == EventType.PROGRESS:
            last_progress = history[-1].progress if history else 0
            if abs((event.progress or 0) - last_progress) >= HISTORY_PROGRESS_INTERVAL:
                history.append(StepHistoryEntry(
                    status=StepStatus.RUNNING,
                    progress=event.progress or 0,
                    items_processed=event.items_processed or 0,
                    total_items=event.total_items or 0,
                ))
        elif event.type == EventType.STEP_COMPLETED:
            history.append(StepHistoryEntry(
                status=StepStatus.COMPLETED,
                progress=100,
                items_processed=event.items_processed or 0,
                total_items=event.total_items or 0,
                report=event.result_summary,
            ))
        elif event.type == EventType.STEP_FAILED:
            history.append(StepHistoryEntry(
                status=StepStatus.FAILED,
                progress=event.progress or 0,
                items_processed=event.items_processed or 0,
                total_items=event.total_items or 0,
                error=event.error,
            ))

    def _record_metrics(self, event: PipelineEvent) -> None:
        instance = self.pipelines.get(event.pipeline_id)
        if instance is None and event.pipeline_id == GLOBAL_STEPS_PIPELINE_ID:
            instance = self.global_instance

        if event.type in (EventType.STEP_COMPLETED, EventType.STEP_FAILED) and instance is not None:
            state = instance.steps[event.step_id]
            duration = None
            if state.started_at and state.completed_at:
                duration = (state.completed_at - state.started_at).total_seconds()
            status = "completed" if event.type == EventType.STEP_COMPLETED else "failed"
            self.metrics.record_step(event.step_name, status, duration)

        elif event.type in RUN_EVENT_STATUSES and instance is not None:
            self.metrics.record_run_finished(RUN_EVENT_STATUSES[event.type].value, instance.duration_ms / 1000)
            self.metrics.set_active_runs(self.count_running())

    # Housekeeping

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict finished runs older than the retention period. Returns the number evicted."""
        cutoff = (now or utc_now()) - self.retention
        expired = [
            pipeline_id
            for pipeline_id, instance in self.pipelines.items()
            if instance.completed_at is not None
            and instance.completed_at < cutoff
            and pipeline_id not in self._run_tasks
        ]
        for pipeline_id in expired:
            del self.pipelines[pipeline_id]
            self.progress_tracker.sessions.pop(pipeline_id, None)

        if expired:
            self.logger.info(f"Evicted {len(expired)} finished pipelines")
        return len(expired)

    def start_housekeeping(self) -> None:
        if self._housekeeping_task is None or self._housekeeping_task.done():
            self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())

    async def _housekeeping_loop(self) -> None:
        while True:
            await self._sleep(self.housekeeping_interval)
            self.cleanup()

    async def shutdown(self) -> None:
        """Stop housekeeping and wait for scheduled runs and steps to finish."""
        if self._housekeeping_task is not None:
            self._housekeeping_task.cancel()
            try:
                await self._housekeeping_task
            except asyncio.CancelledError:
                pass
            self._housekeeping_task = None

        pending = list(self._run_tasks.values()) + list(self._step_tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.services.close()

    # Delegated statistics

    def get_error_statistics(self, time_window: float = 3600.0) -> Dict[str, Any]:
        return self.error_handler.get_error_statistics(time_window)

    def get_recent_errors(self, limit: int = 10) -> List[ErrorEntry]:
        return self.error_handler.get_recent_errors(limit)

    def get_progress_stats(self) -> Dict[str, Any]:
        return self.progress_tracker.get_global_stats()
