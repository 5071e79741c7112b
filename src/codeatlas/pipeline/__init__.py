"""Pipeline orchestration and stage implementations."""

from .stage import PipelineStageInterface, ProgressCallback, StageContext
from .stages import (
    DependencyStage,
    EnrichmentStage,
    IndexingStage,
    ParsingStage,
    StageServices,
    VectorizationStage,
)

# Stage collaborators
from .dependencies import DependencyAnalyzer
from .enricher import SemanticEnricher, SlidingWindowRateLimiter
from .error_handler import ErrorHandler
from .index_builder import IndexBuilder, SearchResult
from .llm_adapter import LLMAdapter, LLMError, LLMRequest, LLMResponse, MockLLMAdapter, create_llm_adapter
from .progress import ProgressSession, ProgressTracker
from .vectorizer import Vectorizer

# Orchestration
from .run import PipelineInstance
from .manager import PipelineManager

__all__ = [
    # Stage interface
    "PipelineStageInterface",
    "ProgressCallback",
    "StageContext",
    # Stages
    "ParsingStage",
    "DependencyStage",
    "EnrichmentStage",
    "VectorizationStage",
    "IndexingStage",
    "StageServices",
    # Collaborators
    "DependencyAnalyzer",
    "SemanticEnricher",
    "SlidingWindowRateLimiter",
    "ErrorHandler",
    "IndexBuilder",
    "SearchResult",
    "LLMAdapter",
    "LLMError",
    "LLMRequest",
    "LLMResponse",
    "MockLLMAdapter",
    "create_llm_adapter",
    "ProgressSession",
    "ProgressTracker",
    "Vectorizer",
    # Orchestration
    "PipelineInstance",
    "PipelineManager",
]
