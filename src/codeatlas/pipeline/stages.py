"""
Concrete implementations of the five pipeline stages.

Stages share process-level collaborators through StageServices: the
ErrorHandler, the enrichment and embedding caches (one SemanticEnricher per
LLM model, one Vectorizer per embedding model) and the parse cache. Steps
re-run in independent-step mode may find upstream results missing or stale;
each stage uses the nearest available upstream output and fails cleanly
when there is none.
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import CodeAtlasSettings, get_settings
from ..data.schemas import STEP_BY_ID, CodeUnit, Enrichment, PipelineRunConfig
from ..util.errors import ConfigurationError, StageExecutionError
from ..util.logging_config import get_logger
from .dependencies import DependencyAnalyzer, UnitIndex
from .discover import SourceDiscovery
from .enricher import SemanticEnricher
from .error_handler import ErrorHandler
from .index_builder import IndexBuilder
from .llm_adapter import LLMAdapter, create_llm_adapter
from .parsers import SourceParser, assign_unique_ids
from .stage import PipelineStageInterface, ProgressCallback, StageContext
from .vectorizer import Vectorizer

SleepFunc = Callable[[float], Awaitable[Any]]

ENRICHMENT_BATCH_PAUSE = 0.1
INDEX_BATCH_SIZE = 100


@dataclass
class StageServices:
    """Long-lived collaborators shared by every run of a manager."""
    error_handler: ErrorHandler
    settings: CodeAtlasSettings = field(default_factory=get_settings)
    sleep: SleepFunc = asyncio.sleep
    metrics: Any = None
    llm_factory: Callable[..., LLMAdapter] = create_llm_adapter
    vectorizer_factory: Optional[Callable[[PipelineRunConfig], Vectorizer]] = None
    index_factory: Optional[Callable[[PipelineRunConfig, str], IndexBuilder]] = None
    enrichers: Dict[str, SemanticEnricher] = field(default_factory=dict)
    vectorizers: Dict[str, Vectorizer] = field(default_factory=dict)
    parse_cache: Dict[str, Tuple[int, int, List[CodeUnit]]] = field(default_factory=dict)

    def get_enricher(self, config: PipelineRunConfig) -> SemanticEnricher:
        """Enricher for the run's LLM model; created on first use."""
        enricher = self.enrichers.get(config.llm_model)
        if enricher is None:
            llm: Optional[LLMAdapter] = None
            reason = None
            try:
                llm = self.llm_factory(config.llm_model)
            except ConfigurationError as e:
                reason = e.message
                get_logger("pipeline.enrichment").warning(f"LLM unavailable, enrichment will degrade: {reason}")

            enricher = SemanticEnricher(
                llm,
                self.error_handler,
                llm_model=config.llm_model,
                max_retries=config.max_retries,
                rate_limit_delay=config.rate_limit_delay,
                temperature=self.settings.ai.enrichment_temperature,
                max_output_tokens=self.settings.ai.enrichment_max_output_tokens,
                unavailable_reason=reason,
                sleep=self.sleep,
                metrics=self.metrics,
            )
            self.enrichers[config.llm_model] = enricher

        enricher.max_retries = config.max_retries
        enricher.rate_limiter.min_interval = config.rate_limit_delay
        return enricher

    async def get_vectorizer(self, config: PipelineRunConfig) -> Vectorizer:
        """Initialized vectorizer for the run's embedding model."""
        vectorizer = self.vectorizers.get(config.embedding_model)
        if vectorizer is None:
            if self.vectorizer_factory is not None:
                vectorizer = self.vectorizer_factory(config)
            else:
                vectorizer = Vectorizer(
                    config.embedding_model,
                    batch_size=config.embedding_batch_size,
                    settings=self.settings.ai,
                    sleep=self.sleep,
                    metrics=self.metrics,
                )
            self.vectorizers[config.embedding_model] = vectorizer

        vectorizer.batch_size = config.embedding_batch_size
        await vectorizer.initialize()
        return vectorizer

    def index_path_for(self, config: PipelineRunConfig) -> str:
        if config.index_path:
            return config.index_path
        return str(Path(self.settings.pipeline.index_dir) / config.collection_name)

    def create_index_builder(self, config: PipelineRunConfig) -> IndexBuilder:
        index_path = self.index_path_for(config)
        if self.index_factory is not None:
            return self.index_factory(config, index_path)
        return IndexBuilder(
            index_type=config.index_type,
            index_path=index_path,
            qdrant_url=config.qdrant_url,
            collection_name=config.collection_name,
        )

    async def close(self) -> None:
        for vectorizer in self.vectorizers.values():
            await vectorizer.close()


class ParsingStage(PipelineStageInterface):
    """
    Step 1: discover source files and parse them into CodeUnits.

    A file that fails to parse is classified by the ErrorHandler and skipped
    unless its recovery plan aborts the run.
    """

    def __init__(self):
        super().__init__(STEP_BY_ID[1])
        self.logger = get_logger("pipeline.parsing")

    async def execute(self, context: StageContext, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        config, services = context.config, context.services
        self._update_progress(progress_callback, 0, "Starting polyglot parsing...")

        discovery = SourceDiscovery(config.project_path)
        files = await discovery.discover_files(config.file_patterns, config.selected_files, config.excluded_files)
        self._update_progress(progress_callback, 10, f"Found {len(files)} source files", 0, len(files))

        parser = SourceParser(config.project_path)
        units: List[CodeUnit] = []
        failed_files: List[Dict[str, str]] = []
        cached_files = 0

        for processed, path in enumerate(files, start=1):
            try:
                file_units, from_cache = await self._parse(parser, path, services, config.force_reparse)
                cached_files += from_cache
                units.extend(file_units)
            except Exception as e:
                entry = services.error_handler.handle_error(e, {
                    "pipeline_id": context.pipeline_id,
                    "step": self.name,
                    "file_path": str(path),
                })
                plan = services.error_handler.get_recovery_strategy(entry)
                outcome = await services.error_handler.execute_recovery_strategy(plan, entry.context)
                if outcome.abort:
                    raise StageExecutionError(self.name, f"Parsing failed: {entry.message}", cause=e) from e
                failed_files.append({"file_path": str(path), "error": entry.message})
                file_units = []

            self._update_progress(
                progress_callback,
                10 + processed / len(files) * 80,
                f"Parsed {path.name} ({len(file_units)} items)",
                processed,
                len(files),
            )

        units = assign_unique_ids(units)
        self._update_progress(
            progress_callback, 100, f"Parsing completed: {len(units)} items extracted", len(files), len(files)
        )
        files_processed = len(files) - len(failed_files)
        return {
            "units": units,
            "total_items": len(units),
            "files_processed": files_processed,
            "total_files": len(files),
            "failed_files": failed_files,
            "report": self._report(
                started, files_processed, len(files),
                units=len(units), failed_files=len(failed_files), cached_files=cached_files,
            ),
        }

    async def _parse(
        self, parser: SourceParser, path: Path, services: "StageServices", force: bool
    ) -> Tuple[List[CodeUnit], bool]:
        key = str(path)
        stat = path.stat()
        cached = services.parse_cache.get(key)
        if not force and cached is not None and cached[:2] == (stat.st_mtime_ns, stat.st_size):
            return [unit.model_copy(deep=True) for unit in cached[2]], True

        units = await parser.parse_file(path)
        services.parse_cache[key] = (stat.st_mtime_ns, stat.st_size, units)
        return [unit.model_copy(deep=True) for unit in units], False

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution", "file_discovery", "polyglot_parsing"]


class DependencyStage(PipelineStageInterface):
    """Step 2: derive dependency edges and the dependency graph."""

    def __init__(self):
        super().__init__(STEP_BY_ID[2])

    async def execute(self, context: StageContext, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        self._update_progress(progress_callback, 0, "Starting dependency analysis...")
        units = self._require_units(context, ("parsing",), "No parsed items found from previous step")

        analyzer = DependencyAnalyzer(context.config.project_path)
        index = UnitIndex(units)
        all_edges = []
        self._update_progress(progress_callback, 10, "Analyzing imports and references...", 0, len(units))

        for processed, unit in enumerate(units, start=1):
            edges = analyzer.analyze_dependencies(unit, units, index)
            unit.dependencies = list(dict.fromkeys(edge.to_id for edge in edges))
            all_edges.extend(edges)
            self._update_progress(
                progress_callback,
                10 + processed / len(units) * 80,
                f"Analyzed dependencies for {unit.id}",
                processed,
                len(units),
            )
            # Yield between units so concurrent runs interleave
            await asyncio.sleep(0)

        self._update_progress(progress_callback, 90, "Building dependency graph...", len(units), len(units))
        graph = analyzer.build_dependency_graph(units, all_edges)

        statistics = {
            "total_items": len(units),
            "items_with_dependencies": sum(1 for unit in units if unit.dependencies),
            "total_dependencies": sum(len(unit.dependencies) for unit in units),
        }
        self._update_progress(
            progress_callback, 100,
            f"Dependency analysis completed: {len(units)} items processed", len(units), len(units),
        )
        return {
            "units": units,
            "edges": all_edges,
            "dependency_graph": graph,
            "statistics": statistics,
            "report": self._report(started, len(units), len(units), edges=len(all_edges)),
        }

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution", "dependency_analysis", "graph_building"]


class EnrichmentStage(PipelineStageInterface):
    """Step 3: annotate units with LLM-generated descriptions."""

    def __init__(self):
        super().__init__(STEP_BY_ID[3])

    async def execute(self, context: StageContext, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        config, services = context.config, context.services
        self._update_progress(progress_callback, 0, "Starting semantic enrichment...")
        units = self._require_units(
            context, ("dependencies", "parsing"), "No items with dependencies found from previous step"
        )

        enricher = services.get_enricher(config)
        batch_size = config.enrichment_batch_size
        batches = [units[i:i + batch_size] for i in range(0, len(units), batch_size)]
        enrichments: Dict[str, Enrichment] = {}
        self._update_progress(
            progress_callback, 10, f"Processing {len(batches)} batches for semantic enrichment...", 0, len(units)
        )

        processed = 0
        for number, batch in enumerate(batches, start=1):
            results = await enricher.enrich_batch(batch, {"pipeline_id": context.pipeline_id})
            for unit, enrichment in zip(batch, results):
                unit.description = enrichment.description
                enrichments[unit.id] = enrichment

            processed += len(batch)
            self._update_progress(
                progress_callback,
                10 + processed / len(units) * 80,
                f"Enriched batch {number}/{len(batches)}",
                processed,
                len(units),
            )
            if number < len(batches):
                await services.sleep(ENRICHMENT_BATCH_PAUSE)

        descriptions = [unit.description for unit in units if unit.description]
        failed = sum(1 for enrichment in enrichments.values() if enrichment.error)
        statistics = {
            "total_items": len(units),
            "enriched_items": len(enrichments) - failed,
            "fallback_items": sum(1 for enrichment in enrichments.values() if enrichment.fallback),
            "failed_items": failed,
            "average_description_length": (
                round(sum(len(d) for d in descriptions) / len(descriptions)) if descriptions else 0
            ),
        }
        self._update_progress(
            progress_callback, 100,
            f"Semantic enrichment completed: {len(units)} items processed", len(units), len(units),
        )
        return {
            "units": units,
            "enrichments": enrichments,
            "statistics": statistics,
            "report": self._report(
                started, len(units), len(units),
                enriched_items=statistics["enriched_items"], failed_items=failed,
            ),
        }

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution", "llm_enrichment", "response_caching"]


class VectorizationStage(PipelineStageInterface):
    """Step 4: embed each unit's id, description and source."""

    def __init__(self):
        super().__init__(STEP_BY_ID[4])

    async def execute(self, context: StageContext, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        config = context.config
        self._update_progress(progress_callback, 0, "Starting vectorization...")
        units = self._require_units(
            context, ("enrichment", "dependencies", "parsing"), "No enriched items found from previous step"
        )

        self._update_progress(progress_callback, 10, "Initializing embedding model...")
        vectorizer = await context.services.get_vectorizer(config)

        texts = [f"{unit.id}\n{unit.description or ''}\n{unit.source}".strip() for unit in units]
        self._update_progress(progress_callback, 20, f"Vectorizing {len(texts)} text chunks...", 0, len(texts))

        def on_batch(done: int, total: int) -> None:
            self._update_progress(
                progress_callback, 20 + done / total * 70, f"Vectorized {done}/{total} texts", done, total
            )

        vectors = await vectorizer.create_embeddings(texts, on_batch) if texts else []
        statistics = {
            "total_items": len(units),
            "vectorized_items": sum(1 for vector in vectors if vector.any()),
            "embedding_model": config.embedding_model,
            "provider": vectorizer.provider_name,
        }
        self._update_progress(
            progress_callback, 100,
            f"Vectorization completed: {len(vectors)} vectors created", len(units), len(units),
        )
        return {
            "units": units,
            "vectors": vectors,
            "vector_dimension": vectorizer.vector_dimension,
            "statistics": statistics,
            "report": self._report(
                started, len(units), len(units),
                vector_dimension=vectorizer.vector_dimension, provider=vectorizer.provider_name,
            ),
        }

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution", "embedding_generation", "provider_fallback"]


class IndexingStage(PipelineStageInterface):
    """Step 5: build, optimize and persist the vector index."""

    def __init__(self):
        super().__init__(STEP_BY_ID[5])

    async def execute(self, context: StageContext, progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        self._update_progress(progress_callback, 0, "Starting index construction...")

        vectorization = context.results.get("vectorization") or {}
        vectors = vectorization.get("vectors")
        if not vectors:
            raise StageExecutionError(self.name, "No vectors found from previous step")
        units: List[CodeUnit] = vectorization.get("units") or []
        dimension = vectorization.get("vector_dimension") or len(vectors[0])

        builder = context.services.create_index_builder(context.config)
        self._update_progress(progress_callback, 10, f"Initializing {builder.requested_type} index...")
        await builder.initialize(dimension)

        self._update_progress(progress_callback, 30, "Adding vectors to index...", 0, len(vectors))
        batches = [vectors[i:i + INDEX_BATCH_SIZE] for i in range(0, len(vectors), INDEX_BATCH_SIZE)]
        processed = 0
        for number, batch in enumerate(batches, start=1):
            await builder.add_vectors(batch, start_index=processed)
            processed += len(batch)
            self._update_progress(
                progress_callback,
                30 + processed / len(vectors) * 50,
                f"Added batch {number}/{len(batches)} to index",
                processed,
                len(vectors),
            )

        self._update_progress(progress_callback, 80, "Optimizing index...", processed, len(vectors))
        await builder.optimize()

        self._update_progress(progress_callback, 90, "Saving index to disk...", processed, len(vectors))
        index_file = await builder.save()

        metadata = [
            {
                "id": unit.id,
                "kind": unit.kind.value,
                "language": unit.language,
                "file_path": unit.file_path,
                "vector_index": position,
            }
            for position, unit in enumerate(units)
        ]
        statistics = {
            "total_vectors": len(vectors),
            "vector_dimension": dimension,
            "index_size": self._file_size(index_file),
            "search_ready": True,
        }
        self._update_progress(
            progress_callback, 100,
            f"Index construction completed: {len(vectors)} vectors indexed", len(vectors), len(vectors),
        )
        return {
            "index_path": index_file,
            "index_base_path": builder.index_path,
            "index_type": builder.index_type,
            "metadata": metadata,
            "statistics": statistics,
            "report": self._report(
                started, len(vectors), len(vectors), index_type=builder.index_type, index_path=index_file,
            ),
        }

    @staticmethod
    def _file_size(path: str) -> int:
        try:
            return Path(path).stat().st_size
        except OSError:
            return 0

    def _get_capabilities(self) -> List[str]:
        return ["basic_execution", "vector_indexing", "persistence"]


def create_default_stages() -> Dict[str, PipelineStageInterface]:
    """One stage object per step name, in step order."""
    stages = (ParsingStage(), DependencyStage(), EnrichmentStage(), VectorizationStage(), IndexingStage())
    return {stage.name: stage for stage in stages}
