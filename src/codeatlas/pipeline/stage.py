"""
Abstract pipeline stage interface.

Every step of a run is executed by a stage object with the same contract:
it reads the accumulated results of earlier steps from a StageContext,
reports progress through a ProgressCallback and returns its own result
mapping, which the run stores under the step's name.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol

from ..data.schemas import CodeUnit, PipelineRunConfig, StepDefinition
from ..util.errors import StageExecutionError

if TYPE_CHECKING:
    from .stages import StageServices


class ProgressCallback(Protocol):
    """Receives stage progress reports; omitted counts keep their last value."""

    def __call__(
        self,
        percentage: float,
        message: str = "",
        items_processed: Optional[int] = None,
        total_items: Optional[int] = None,
    ) -> None:
        ...


@dataclass
class StageContext:
    """What a stage sees of its run."""
    pipeline_id: str
    config: PipelineRunConfig
    results: Dict[str, Any] = field(default_factory=dict)
    services: Optional["StageServices"] = None


class PipelineStageInterface(ABC):
    """
    Abstract base class for all pipeline stages.

    Concrete stages implement ``execute``; the helpers here keep progress
    reporting and result reports consistent across stages.
    """

    def __init__(self, step: StepDefinition):
        self.step = step
        self._execution_count = 0

    @property
    def name(self) -> str:
        return self.step.name

    @abstractmethod
    async def execute(
        self,
        context: StageContext,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Execute the stage.

        Returns:
            Result mapping stored under the step name; always carries a
            ``report`` entry

        Raises:
            CodeAtlasError: If the stage cannot produce a result
        """

    def get_stage_info(self) -> Dict[str, Any]:
        return {
            "step_id": self.step.id,
            "step": self.name,
            "label": self.step.label,
            "class_name": self.__class__.__name__,
            "capabilities": self._get_capabilities(),
            "execution_count": self._execution_count,
        }

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution"]

    def _update_progress(
        self,
        callback: Optional[ProgressCallback],
        progress: float,
        message: str = "",
        items_processed: Optional[int] = None,
        total_items: Optional[int] = None,
    ) -> None:
        if callback is not None:
            callback(max(0, min(100, int(progress))), message, items_processed, total_items)

    def _upstream_units(self, context: StageContext, sources: Iterable[str]) -> Optional[List[CodeUnit]]:
        """Deep copies of the units from the first available upstream result."""
        for source in sources:
            result = context.results.get(source)
            if result and result.get("units") is not None:
                return [unit.model_copy(deep=True) for unit in result["units"]]
        return None

    def _require_units(self, context: StageContext, sources: Iterable[str], message: str) -> List[CodeUnit]:
        units = self._upstream_units(context, sources)
        if units is None:
            raise StageExecutionError(self.name, message)
        return units

    def _report(self, started: float, items_processed: int, total_items: int, **extra: Any) -> Dict[str, Any]:
        self._execution_count += 1
        return {
            "step": self.name,
            "items_processed": items_processed,
            "total_items": total_items,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            **extra,
        }
