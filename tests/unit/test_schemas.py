"""
Unit tests for data schemas and validation.

Tests Pydantic models, step state transitions and run configuration
parsing for the core pipeline data structures.
"""

import pytest
from pydantic import ValidationError

from codeatlas.data.schemas import (
    PIPELINE_STEPS,
    STEP_BY_ID,
    CodeUnit,
    DependencyEdge,
    DependencyKind,
    Enrichment,
    PipelineRunConfig,
    StepState,
    StepStatus,
    UnitKind,
)


class TestCodeUnit:
    """Test code unit model."""

    def test_name_is_trailing_segment(self):
        """Test the short name of a dotted identifier."""
        unit = CodeUnit(
            id="models.Repository.save",
            kind=UnitKind.METHOD,
            language="python",
            file_path="app/models.py",
            source="def save(self): ...",
        )

        assert unit.name == "save"
        assert unit.dependencies == []
        assert unit.description is None

    def test_kind_is_validated(self):
        """Test unknown unit kinds are rejected."""
        with pytest.raises(ValidationError):
            CodeUnit(id="x", kind="macro", language="c", file_path="x.c", source="")


class TestDependencyEdge:
    """Test dependency edge model."""

    def test_confidence_bounds(self):
        """Test confidence must lie in [0, 1]."""
        DependencyEdge(kind=DependencyKind.CALL, from_id="a", to_id="b", confidence=0.0)
        DependencyEdge(kind=DependencyKind.CALL, from_id="a", to_id="b", confidence=1.0)

        with pytest.raises(ValidationError):
            DependencyEdge(kind=DependencyKind.CALL, from_id="a", to_id="b", confidence=1.2)

        with pytest.raises(ValidationError):
            DependencyEdge(kind=DependencyKind.CALL, from_id="a", to_id="b", confidence=-0.1)

    def test_key_ignores_confidence(self):
        """Test edges with the same identity share a key."""
        first = DependencyEdge(kind=DependencyKind.IMPORT, from_id="a", to_id="b", symbol="B", confidence=0.5)
        second = DependencyEdge(kind=DependencyKind.IMPORT, from_id="a", to_id="b", symbol="B", confidence=0.9)

        assert first.key == second.key


class TestEnrichment:
    """Test enrichment model."""

    def test_defaults(self):
        """Test optional fields default sensibly."""
        enrichment = Enrichment(description="Loads data", summary="Loader")

        assert enrichment.tags == []
        assert enrichment.complexity == "unknown"
        assert enrichment.confidence == 0.0
        assert enrichment.fallback is False
        assert enrichment.error is None


class TestPipelineSteps:
    """Test the fixed step table."""

    def test_step_order(self):
        """Test steps are numbered 1..5 in execution order."""
        assert [step.id for step in PIPELINE_STEPS] == [1, 2, 3, 4, 5]
        assert [step.name for step in PIPELINE_STEPS] == [
            "parsing", "dependencies", "enrichment", "vectorization", "indexing",
        ]
        assert STEP_BY_ID[3].label == "Semantic Enrichment (L2)"


class TestStepState:
    """Test step state transitions."""

    def setup_method(self):
        """Set up a fresh step state."""
        self.state = StepState.from_definition(STEP_BY_ID[1])

    def test_initial_state(self):
        """Test a new step is pending with no progress."""
        assert self.state.status == StepStatus.PENDING
        assert self.state.progress == 0
        assert not self.state.is_finished

    def test_progress_capped_below_completion(self):
        """Test only completion reports 100."""
        self.state.mark_running()
        self.state.update_progress(150, items_processed=3, total_items=4)

        assert self.state.progress == 99
        assert self.state.items_processed == 3
        assert self.state.total_items == 4

        self.state.update_progress(-5)
        assert self.state.progress == 0

    def test_mark_completed(self):
        """Test completion sets progress to 100 and timestamps."""
        self.state.mark_running()
        self.state.mark_completed()

        assert self.state.status == StepStatus.COMPLETED
        assert self.state.progress == 100
        assert self.state.started_at is not None
        assert self.state.completed_at >= self.state.started_at
        assert self.state.is_finished

    def test_mark_failed_keeps_progress_below_100(self):
        """Test a failed step records its error and partial progress."""
        self.state.mark_running()
        self.state.update_progress(40)
        self.state.mark_failed("boom")

        assert self.state.status == StepStatus.FAILED
        assert self.state.progress == 40
        assert self.state.error == "boom"
        assert self.state.is_finished

    def test_reset(self):
        """Test reset returns a finished step to pending."""
        self.state.mark_running()
        self.state.update_progress(50, 5, 10)
        self.state.mark_completed()
        self.state.reset()

        assert self.state.status == StepStatus.PENDING
        assert self.state.progress == 0
        assert self.state.started_at is None
        assert self.state.items_processed == 0


class TestPipelineRunConfig:
    """Test run configuration parsing."""

    def test_defaults(self):
        """Test default run options."""
        config = PipelineRunConfig(project_path="/repo")

        assert config.file_patterns == ["**/*.py", "**/*.ts", "**/*.js", "**/*.go", "**/*.java"]
        assert config.llm_model == "gemini-2.5-flash"
        assert config.max_retries == 3
        assert config.enrichment_batch_size == 5
        assert config.index_type == "faiss"
        assert config.force_reparse is False

    def test_camel_case_keys(self):
        """Test camelCase keys are accepted."""
        config = PipelineRunConfig.model_validate({
            "projectPath": "/repo",
            "filePatterns": ["**/*.go"],
            "selectedFiles": ["main.go"],
            "forceReparse": True,
        })

        assert config.project_path == "/repo"
        assert config.file_patterns == ["**/*.go"]
        assert config.selected_files == ["main.go"]
        assert config.force_reparse is True

    def test_empty_patterns_rejected(self):
        """Test at least one glob pattern is required."""
        with pytest.raises(ValidationError):
            PipelineRunConfig(project_path="/repo", file_patterns=[])

    def test_invalid_values_rejected(self):
        """Test numeric and enum validation."""
        with pytest.raises(ValidationError):
            PipelineRunConfig(max_retries=0)

        with pytest.raises(ValidationError):
            PipelineRunConfig(index_type="annoy")

    def test_merged_with_only_supplied_fields(self):
        """Test merging keeps fields the update did not set."""
        base = PipelineRunConfig(project_path="/repo", llm_model="mock-model", max_retries=5)

        merged = base.merged_with({"filePatterns": ["**/*.ts"]})

        assert merged.project_path == "/repo"
        assert merged.llm_model == "mock-model"
        assert merged.max_retries == 5
        assert merged.file_patterns == ["**/*.ts"]
        assert base.file_patterns != merged.file_patterns

    def test_merged_with_none(self):
        """Test merging nothing yields an equal copy."""
        base = PipelineRunConfig(project_path="/repo")
        merged = base.merged_with(None)

        assert merged == base
        assert merged is not base
