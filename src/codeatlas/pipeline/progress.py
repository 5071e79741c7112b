"""
Progress tracking for pipeline runs.

A ProgressSession keeps per-step progress snapshots, a bounded history of
progress deltas and derived throughput metrics for one run. The
ProgressTracker owns the sessions of all runs and aggregates them.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..data.schemas import PIPELINE_STEPS

Clock = Callable[[], float]


@dataclass
class StepProgress:
    """Progress snapshot of one step, timestamps in epoch seconds."""
    id: int
    name: str
    label: str
    progress: float = 0
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    items_processed: int = 0
    total_items: int = 0

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is not None and self.ended_at is not None:
            return self.ended_at - self.started_at
        return None


@dataclass
class ProgressHistoryEntry:
    timestamp: float
    step: str
    progress: float
    message: str
    items_processed: int
    total_items: int
    progress_delta: float


@dataclass
class PerformanceMetrics:
    items_per_second: float = 0.0
    estimated_total_time: float = 0.0
    average_step_time: float = 0.0


class ProgressSession:
    """Progress, history and throughput of a single run."""

    def __init__(
        self,
        pipeline_id: str,
        config: Optional[Dict[str, Any]] = None,
        history_limit: int = 1000,
        history_trim_to: int = 500,
        clock: Clock = time.time,
    ):
        self.pipeline_id = pipeline_id
        self.config = config or {}
        self.history_limit = history_limit
        self.history_trim_to = history_trim_to
        self._clock = clock
        self.start_time = clock()
        self.end_time: Optional[float] = None
        self.steps = [StepProgress(step.id, step.name, step.label) for step in PIPELINE_STEPS]
        self.progress_history: List[ProgressHistoryEntry] = []
        self.performance_metrics = PerformanceMetrics()

    def _find_step(self, step_name: str) -> StepProgress:
        for step in self.steps:
            if step.name == step_name:
                return step
        raise KeyError(f"Unknown step: {step_name}")

    def start_step(self, step_name: str) -> None:
        """Clear a step's progress and timestamps before it (re)runs."""
        step = self._find_step(step_name)
        step.progress = 0
        step.items_processed = 0
        step.total_items = 0
        step.started_at = self._clock()
        step.ended_at = None

    def update_progress(
        self,
        step_name: str,
        progress: float,
        message: str = "",
        items_processed: int = 0,
        total_items: int = 0,
    ) -> Dict[str, Any]:
        """
        Record a progress report for one step.

        Returns:
            Snapshot with the step's progress, overall progress, estimated
            time remaining and current performance metrics
        """
        step = self._find_step(step_name)
        now = self._clock()

        old_progress = step.progress
        step.progress = max(0, min(100, progress))
        step.items_processed = items_processed
        step.total_items = total_items

        if step.started_at is None and progress > 0:
            step.started_at = now

        if progress >= 100 and step.ended_at is None:
            step.ended_at = now
            if step.started_at is None:
                step.started_at = now

        self.progress_history.append(
            ProgressHistoryEntry(
                timestamp=now,
                step=step_name,
                progress=step.progress,
                message=message,
                items_processed=items_processed,
                total_items=total_items,
                progress_delta=step.progress - old_progress,
            )
        )
        if len(self.progress_history) > self.history_limit:
            self.progress_history = self.progress_history[-self.history_trim_to:]

        self._update_performance_metrics()

        return {
            "step": step_name,
            "step_id": step.id,
            "step_label": step.label,
            "progress": step.progress,
            "message": message,
            "items_processed": items_processed,
            "total_items": total_items,
            "overall_progress": self.get_overall_progress(),
            "estimated_time_remaining": self.get_estimated_time_remaining(),
            "performance": asdict(self.performance_metrics),
        }

    def get_overall_progress(self) -> int:
        """Completed steps count 100 each; the current step adds its own progress."""
        completed = sum(1 for step in self.steps if step.progress >= 100)
        current = self.get_current_step()
        current_progress = current.progress if current.progress < 100 else 0
        return min(100, round((completed * 100 + current_progress) / len(self.steps)))

    def get_current_step(self) -> StepProgress:
        for step in self.steps:
            if 0 < step.progress < 100:
                return step
        for step in self.steps:
            if step.progress < 100:
                return step
        return self.steps[-1]

    def get_total_items_processed(self) -> int:
        return sum(step.items_processed for step in self.steps)

    def get_estimated_time_remaining(self) -> float:
        """Seconds left, extrapolated linearly from overall progress."""
        overall = self.get_overall_progress()
        if overall <= 0:
            return 0.0
        elapsed = self._clock() - self.start_time
        estimated_total = elapsed / overall * 100
        return max(0.0, estimated_total - elapsed)

    def _update_performance_metrics(self) -> None:
        now = self._clock()
        elapsed = now - self.start_time

        if elapsed > 0:
            self.performance_metrics.items_per_second = self.get_total_items_processed() / elapsed

        durations = [step.duration for step in self.steps if step.duration is not None]
        if durations:
            self.performance_metrics.average_step_time = sum(durations) / len(durations)

        overall = self.get_overall_progress()
        # Too little signal below 5%
        if overall > 5:
            self.performance_metrics.estimated_total_time = elapsed / overall * 100

    def get_detailed_stats(self) -> Dict[str, Any]:
        end = self.end_time if self.end_time is not None else self._clock()
        steps = []
        for step in self.steps:
            duration = step.duration
            steps.append({
                **asdict(step),
                "duration": duration,
                "items_per_second": (
                    step.items_processed / duration
                    if duration and step.items_processed > 0
                    else 0
                ),
            })
        return {
            "pipeline_id": self.pipeline_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": end - self.start_time,
            "overall_progress": self.get_overall_progress(),
            "current_step": asdict(self.get_current_step()),
            "steps": steps,
            "performance_metrics": asdict(self.performance_metrics),
            "recent_history": [asdict(entry) for entry in self.progress_history[-10:]],
        }

    def get_progress_history(self, time_window: float = 300.0) -> List[ProgressHistoryEntry]:
        """History entries newer than ``time_window`` seconds."""
        cutoff = self._clock() - time_window
        return [entry for entry in self.progress_history if entry.timestamp > cutoff]

    def complete(self, mark_steps: bool = True) -> None:
        """Close the session; optionally treat unfinished steps as done."""
        self.end_time = self._clock()
        if mark_steps:
            for step in self.steps:
                if step.progress < 100:
                    step.progress = 100
                    if step.ended_at is None:
                        step.ended_at = self.end_time
        self._update_performance_metrics()

    def is_active(self) -> bool:
        return self.end_time is None and self.get_overall_progress() < 100

    def get_summary(self) -> Dict[str, Any]:
        current = self.get_current_step()
        return {
            "pipeline_id": self.pipeline_id,
            "overall_progress": self.get_overall_progress(),
            "current_step": current.name,
            "current_step_progress": current.progress,
            "estimated_time_remaining": self.get_estimated_time_remaining(),
            "items_processed": self.get_total_items_processed(),
            "is_active": self.is_active(),
        }


class ProgressTracker:
    """Owns one ProgressSession per tracked run."""

    def __init__(self, history_limit: int = 1000, history_trim_to: int = 500, clock: Clock = time.time):
        self.history_limit = history_limit
        self.history_trim_to = history_trim_to
        self._clock = clock
        self.sessions: Dict[str, ProgressSession] = {}

    def start_tracking(self, pipeline_id: str, config: Optional[Dict[str, Any]] = None) -> ProgressSession:
        session = ProgressSession(
            pipeline_id,
            config,
            history_limit=self.history_limit,
            history_trim_to=self.history_trim_to,
            clock=self._clock,
        )
        self.sessions[pipeline_id] = session
        return session

    def get_session(self, pipeline_id: str) -> Optional[ProgressSession]:
        return self.sessions.get(pipeline_id)

    def stop_tracking(self, pipeline_id: str, mark_steps: bool = True) -> Optional[ProgressSession]:
        session = self.sessions.pop(pipeline_id, None)
        if session is not None:
            session.complete(mark_steps=mark_steps)
        return session

    def get_global_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over all active sessions."""
        active = [session for session in self.sessions.values() if session.is_active()]
        return {
            "active_pipelines": len(active),
            "total_items_processed": sum(s.get_total_items_processed() for s in active),
            "average_progress": (
                sum(s.get_overall_progress() for s in active) / len(active) if active else 0
            ),
            "estimated_time_remaining": max(
                (s.get_estimated_time_remaining() for s in active), default=0
            ),
            "current_steps": [
                {
                    "pipeline_id": s.pipeline_id,
                    "current_step": s.get_current_step().name,
                    "progress": s.get_overall_progress(),
                }
                for s in active
            ],
        }
