"""
Core data schemas for the codeatlas pipeline.

Defines the Pydantic models shared by the stages and the orchestrator:
code units and their dependency edges, enrichment annotations, error
entries and recovery plans, step state and history, run configuration and
the events published while a run executes.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..util.errors import ErrorSeverity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Code units and dependency edges

class UnitKind(str, Enum):
    """Kinds of addressable code units."""
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    MODULE = "module"
    INTERFACE = "interface"
    STRUCT = "struct"
    TYPE = "type"


class CodeUnit(BaseModel):
    """One parsed, addressable piece of source."""
    id: str
    kind: UnitKind
    language: str
    file_path: str
    source: str
    description: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        """Trailing segment of the identifier."""
        return self.id.rsplit(".", 1)[-1]


class DependencyKind(str, Enum):
    """Dependency edge kinds."""
    IMPORT = "import"
    CALL = "call"
    INHERITANCE = "inheritance"
    IMPLEMENTATION = "implementation"
    TYPE_REFERENCE = "type_reference"


class DependencyEdge(BaseModel):
    """Typed, confidence-scored relation between two code units."""
    kind: DependencyKind
    from_id: str
    to_id: str
    symbol: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    module: Optional[str] = None
    context: Optional[str] = None
    relationship: Optional[str] = None

    @property
    def key(self) -> tuple:
        """Identity used for deduplication."""
        return (self.kind, self.from_id, self.to_id, self.symbol)


# Enrichment

class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class Enrichment(BaseModel):
    """Structured natural-language annotation of a code unit."""
    description: str
    summary: str
    tags: List[str] = Field(default_factory=list)
    complexity: Complexity = Complexity.UNKNOWN
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=utc_now)
    fallback: bool = False
    error: Optional[str] = None


# Errors and recovery

class ErrorKind(str, Enum):
    """Error classification used for recovery decisions."""
    PARSING = "parsing"
    API = "api"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    VALIDATION = "validation"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


class ErrorEntry(BaseModel):
    """One handled error as recorded in the error history."""
    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    message: str
    kind: ErrorKind
    severity: ErrorSeverity
    context: Dict[str, Any] = Field(default_factory=dict)
    error_type: Optional[str] = None


class RecoveryAction(str, Enum):
    """Actions a caller may take after an error."""
    RETRY_WITH_DELAY = "retry_with_delay"
    PAUSE_AND_RETRY = "pause_and_retry"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    SKIP_FILE = "skip_file"
    ABORT_PIPELINE = "abort_pipeline"
    RETRY = "retry"


class RecoveryPlan(BaseModel):
    """Recovery strategy chosen for an error entry."""
    action: RecoveryAction
    delay_ms: Optional[int] = None
    base_delay_ms: Optional[int] = None
    max_delay_ms: Optional[int] = None
    max_retries: int = 0
    continue_pipeline: bool = False
    log_warning: bool = False


class RecoveryOutcome(BaseModel):
    """What the caller should do next."""
    should_retry: bool = False
    should_continue: bool = False
    abort: bool = False
    delay_ms: int = 0


# Runs and steps

class RunStatus(str, Enum):
    """Pipeline run states."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Individual step states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepDefinition(NamedTuple):
    id: int
    name: str
    label: str


PIPELINE_STEPS = (
    StepDefinition(1, "parsing", "Polyglot Parsing (L0)"),
    StepDefinition(2, "dependencies", "Dependency Analysis (L1)"),
    StepDefinition(3, "enrichment", "Semantic Enrichment (L2)"),
    StepDefinition(4, "vectorization", "Vectorization"),
    StepDefinition(5, "indexing", "Index Construction"),
)

STEP_BY_ID = {step.id: step for step in PIPELINE_STEPS}


class StepState(BaseModel):
    """
    Mutable state of one pipeline step.

    Transitions go through the mark_* helpers so that progress is 100
    exactly when the step is completed.
    """
    id: int
    name: str
    label: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    items_processed: int = 0
    total_items: int = 0

    @classmethod
    def from_definition(cls, definition: StepDefinition) -> "StepState":
        return cls(id=definition.id, name=definition.name, label=definition.label)

    def mark_running(self) -> None:
        self.status = StepStatus.RUNNING
        self.progress = 0
        self.started_at = utc_now()
        self.completed_at = None
        self.error = None

    def update_progress(self, progress: float, items_processed: int = None, total_items: int = None) -> None:
        # Only completion may report 100
        self.progress = max(0, min(99, int(progress)))
        if items_processed is not None:
            self.items_processed = items_processed
        if total_items is not None:
            self.total_items = total_items

    def mark_completed(self) -> None:
        self.status = StepStatus.COMPLETED
        self.progress = 100
        self.completed_at = utc_now()
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.status = StepStatus.FAILED
        self.progress = min(self.progress, 99)
        self.completed_at = utc_now()
        self.error = error

    def reset(self) -> None:
        self.status = StepStatus.PENDING
        self.progress = 0
        self.started_at = None
        self.completed_at = None
        self.error = None
        self.items_processed = 0
        self.total_items = 0

    @property
    def is_finished(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)


class StepHistoryEntry(BaseModel):
    """Audit record of a step state change in independent-step mode."""
    timestamp: datetime = Field(default_factory=utc_now)
    status: StepStatus
    progress: int = 0
    items_processed: int = 0
    total_items: int = 0
    error: Optional[str] = None
    report: Optional[Dict[str, Any]] = None


DEFAULT_FILE_PATTERNS = ["**/*.py", "**/*.ts", "**/*.js", "**/*.go", "**/*.java"]


class PipelineRunConfig(BaseModel):
    """
    Options for one run.

    Accepts both snake_case and camelCase keys (``projectPath``,
    ``filePatterns``, ``selectedFiles``, ...).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    project_path: str = Field(default_factory=os.getcwd)
    file_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    selected_files: List[str] = Field(default_factory=list)
    excluded_files: List[str] = Field(default_factory=list)
    force_reparse: bool = False
    llm_model: str = "gemini-2.5-flash"
    embedding_model: str = "text-embedding-ada-002"

    max_retries: int = Field(default=3, ge=1)
    rate_limit_delay: float = Field(default=1.0, ge=0.0)
    enrichment_batch_size: int = Field(default=5, ge=1)
    embedding_batch_size: int = Field(default=100, ge=1)
    index_type: Literal["faiss", "qdrant", "simple"] = "faiss"
    index_path: Optional[str] = None
    qdrant_url: Optional[str] = None
    collection_name: str = "codeatlas"

    @field_validator("file_patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        """At least one glob pattern is required."""
        if not v:
            raise ValueError("file_patterns must not be empty")
        return v

    def merged_with(self, update: "PipelineRunConfig | Dict[str, Any] | None") -> "PipelineRunConfig":
        """Shallow merge: fields explicitly supplied in ``update`` win."""
        if update is None:
            return self.model_copy()
        if not isinstance(update, PipelineRunConfig):
            update = PipelineRunConfig.model_validate(update)
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        return self.model_copy(update=changes)


# Events

class EventType(str, Enum):
    PROGRESS = "progress"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


class PipelineEvent(BaseModel):
    """Progress or completion notification published by a run."""
    type: EventType
    pipeline_id: str
    step_id: Optional[int] = None
    step_name: Optional[str] = None
    progress: Optional[int] = None
    items_processed: Optional[int] = None
    total_items: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    result_summary: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)
