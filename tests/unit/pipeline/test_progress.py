"""
Unit tests for progress sessions and the progress tracker.
"""

import pytest

from codeatlas.pipeline.progress import ProgressSession, ProgressTracker


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestProgressSession:
    """Test single-run progress accounting."""

    def setup_method(self):
        self.clock = FakeClock()
        self.session = ProgressSession("p-1", {"project_path": "/repo"}, clock=self.clock)

    def test_initial_state(self):
        assert self.session.get_overall_progress() == 0
        assert self.session.get_current_step().name == "parsing"
        assert self.session.get_estimated_time_remaining() == 0.0
        assert self.session.is_active()

    def test_update_progress_snapshot(self):
        self.clock.advance(10)

        snapshot = self.session.update_progress("parsing", 50, "Halfway", 5, 10)

        assert snapshot["step"] == "parsing"
        assert snapshot["step_id"] == 1
        assert snapshot["progress"] == 50
        assert snapshot["overall_progress"] == 10
        assert snapshot["items_processed"] == 5

    def test_overall_progress_counts_completed_steps(self):
        self.session.update_progress("parsing", 100)
        self.session.update_progress("dependencies", 100)
        self.session.update_progress("enrichment", 50)

        assert self.session.get_overall_progress() == 50
        assert self.session.get_current_step().name == "enrichment"

    def test_progress_clamped(self):
        self.session.update_progress("parsing", 140)
        assert self.session.steps[0].progress == 100

        self.session.update_progress("dependencies", -3)
        assert self.session.steps[1].progress == 0

    def test_unknown_step_rejected(self):
        with pytest.raises(KeyError):
            self.session.update_progress("compiling", 10)

    def test_step_timing(self):
        self.session.update_progress("parsing", 10)
        self.clock.advance(4)
        self.session.update_progress("parsing", 100)

        step = self.session.steps[0]
        assert step.duration == 4
        assert self.session.performance_metrics.average_step_time == 4

    def test_start_step_clears_previous_run(self):
        self.session.update_progress("parsing", 100, items_processed=5, total_items=5)
        self.clock.advance(30)

        self.session.start_step("parsing")

        step = self.session.steps[0]
        assert (step.progress, step.items_processed, step.total_items) == (0, 0, 0)
        assert step.started_at == 1030.0
        assert step.ended_at is None

        self.clock.advance(2)
        self.session.update_progress("parsing", 100)
        assert step.duration == 2

    def test_history_delta_and_trim(self):
        session = ProgressSession("p-2", history_limit=10, history_trim_to=5, clock=self.clock)

        session.update_progress("parsing", 20)
        session.update_progress("parsing", 35)
        assert session.progress_history[-1].progress_delta == 15

        for i in range(20):
            session.update_progress("parsing", i)
        assert len(session.progress_history) <= 10

    def test_estimated_time_remaining(self):
        self.session.update_progress("parsing", 100)
        self.clock.advance(20)
        self.session.update_progress("dependencies", 100)

        # 40% done after 20 seconds
        assert self.session.get_estimated_time_remaining() == pytest.approx(30.0)

    def test_history_window(self):
        self.session.update_progress("parsing", 10)
        self.clock.advance(600)
        self.session.update_progress("parsing", 20)

        recent = self.session.get_progress_history(time_window=300)
        assert [entry.progress for entry in recent] == [20]

    def test_complete_marks_steps(self):
        self.session.update_progress("parsing", 40)

        self.session.complete()

        assert all(step.progress == 100 for step in self.session.steps)
        assert self.session.end_time is not None
        assert not self.session.is_active()

    def test_complete_without_marking(self):
        self.session.update_progress("parsing", 40)

        self.session.complete(mark_steps=False)

        assert self.session.steps[0].progress == 40
        assert not self.session.is_active()

    def test_detailed_stats(self):
        self.session.update_progress("parsing", 100, items_processed=8, total_items=8)

        stats = self.session.get_detailed_stats()

        assert stats["pipeline_id"] == "p-1"
        assert len(stats["steps"]) == 5
        assert stats["steps"][0]["items_processed"] == 8
        assert len(stats["recent_history"]) == 1


class TestProgressTracker:
    """Test session ownership and aggregation."""

    def setup_method(self):
        self.clock = FakeClock()
        self.tracker = ProgressTracker(clock=self.clock)

    def test_start_and_stop(self):
        session = self.tracker.start_tracking("p-1")

        assert self.tracker.get_session("p-1") is session

        stopped = self.tracker.stop_tracking("p-1")
        assert stopped is session
        assert self.tracker.get_session("p-1") is None
        assert self.tracker.stop_tracking("p-1") is None

    def test_global_stats(self):
        first = self.tracker.start_tracking("p-1")
        second = self.tracker.start_tracking("p-2")
        first.update_progress("parsing", 100, items_processed=4)
        second.update_progress("parsing", 50, items_processed=2)

        stats = self.tracker.get_global_stats()

        assert stats["active_pipelines"] == 2
        assert stats["total_items_processed"] == 6
        assert stats["average_progress"] == pytest.approx((20 + 10) / 2)
        assert {entry["pipeline_id"] for entry in stats["current_steps"]} == {"p-1", "p-2"}

    def test_global_stats_empty(self):
        stats = self.tracker.get_global_stats()

        assert stats["active_pipelines"] == 0
        assert stats["average_progress"] == 0
        assert stats["estimated_time_remaining"] == 0
