"""
Vector index construction with pluggable backends.

Backends form tiers, tried in order from the configured one: a FAISS flat
L2 index, a Qdrant collection and a local brute-force cosine index. A tier
that fails to initialize falls through to the next; the brute-force index
always succeeds.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from ..util.errors import ConfigurationError, IndexBackendError
from ..util.fs import atomic_write_json, ensure_directory, read_json, remove_path
from ..util.logging_config import get_logger

logger = get_logger("pipeline.index")

BACKEND_TIERS = ("faiss", "qdrant", "simple")
ARTIFACT_SUFFIXES = (".faiss", ".metadata.json", ".qdrant.json", ".simple.json")

VectorLike = Union[np.ndarray, Sequence[float]]


@dataclass
class SearchResult:
    """k-nearest-neighbour hits, closest first."""
    distances: List[float] = field(default_factory=list)
    indices: List[int] = field(default_factory=list)
    count: int = 0
    metadatas: Optional[List[Dict[str, Any]]] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class VectorIndexBackend(ABC):
    """Storage and search for one index tier."""

    type_name = "base"

    def __init__(self):
        self.dimension: Optional[int] = None

    @abstractmethod
    async def initialize(self, dimension: int) -> None:
        """Create an empty index. Raises if the backend is unusable."""

    @abstractmethod
    async def add(self, vectors: np.ndarray, start_index: int) -> None:
        """Append a (n, dimension) float32 matrix."""

    @abstractmethod
    async def search(self, query: np.ndarray, k: int) -> SearchResult:
        ...

    async def optimize(self) -> None:
        pass

    @abstractmethod
    async def save(self, index_path: str) -> str:
        """Persist the index; returns the file ``load`` accepts."""

    @property
    @abstractmethod
    def size(self) -> int:
        ...

    def info(self) -> Dict[str, Any]:
        return {"total_vectors": self.size}


class FaissIndexBackend(VectorIndexBackend):
    """
    Exact L2 search with faiss ``IndexFlatL2``.

    faiss calls release the GIL and run in worker threads.
    """

    type_name = "faiss"

    def __init__(self):
        super().__init__()
        self.index = None

    async def initialize(self, dimension: int) -> None:
        import faiss

        self.index = faiss.IndexFlatL2(dimension)
        self.dimension = dimension

    async def add(self, vectors: np.ndarray, start_index: int) -> None:
        # IndexFlatL2 ids are positional
        await asyncio.to_thread(self.index.add, np.ascontiguousarray(vectors, dtype=np.float32))

    async def search(self, query: np.ndarray, k: int) -> SearchResult:
        k = min(k, self.size)
        if k <= 0:
            return SearchResult()
        distances, labels = await asyncio.to_thread(self.index.search, query.reshape(1, -1).astype(np.float32), k)
        hits = [(float(d), int(i)) for d, i in zip(distances[0], labels[0]) if i >= 0]
        return SearchResult(
            distances=[d for d, _ in hits],
            indices=[i for _, i in hits],
            count=len(hits),
        )

    async def save(self, index_path: str) -> str:
        import faiss

        index_file = f"{index_path}.faiss"
        await asyncio.to_thread(faiss.write_index, self.index, index_file)
        atomic_write_json(f"{index_path}.metadata.json", {
            "index_type": self.type_name,
            "vector_dimension": self.dimension,
            "total_vectors": self.size,
            "created_at": _now_iso(),
        })
        return index_file

    @classmethod
    async def load(cls, index_file: str) -> "FaissIndexBackend":
        import faiss

        backend = cls()
        backend.index = await asyncio.to_thread(faiss.read_index, index_file)
        backend.dimension = backend.index.d

        metadata_file = index_file[: -len(".faiss")] + ".metadata.json"
        try:
            backend.dimension = read_json(metadata_file)["vector_dimension"]
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Could not load FAISS metadata, using index dimension: {e}")
        return backend

    @property
    def size(self) -> int:
        return int(self.index.ntotal) if self.index is not None else 0

    def info(self) -> Dict[str, Any]:
        return {
            "total_vectors": self.size,
            "is_trained": bool(self.index.is_trained) if self.index is not None else False,
        }


class QdrantIndexBackend(VectorIndexBackend):
    """Qdrant collection with cosine distance; distance reported as ``1 - score``."""

    type_name = "qdrant"

    def __init__(self, url: Optional[str], collection_name: str = "codeatlas"):
        super().__init__()
        self.url = url
        self.collection_name = collection_name
        self.client = None
        self._count = 0

    async def initialize(self, dimension: int) -> None:
        if not self.url:
            raise ConfigurationError("qdrant_url", "Qdrant URL is not configured")

        from qdrant_client import QdrantClient
        from qdrant_client import models as qm

        self.client = QdrantClient(url=self.url)
        exists = await asyncio.to_thread(self.client.collection_exists, self.collection_name)
        if not exists:
            await asyncio.to_thread(
                self.client.create_collection,
                collection_name=self.collection_name,
                vectors_config=qm.VectorParams(size=dimension, distance=qm.Distance.COSINE),
            )
        else:
            self._count = await self._remote_count()
        self.dimension = dimension

    async def _remote_count(self) -> int:
        result = await asyncio.to_thread(self.client.count, collection_name=self.collection_name, exact=True)
        return int(result.count)

    async def add(self, vectors: np.ndarray, start_index: int) -> None:
        from qdrant_client import models as qm

        added_at = _now_iso()
        points = [
            qm.PointStruct(
                id=start_index + i,
                vector=vector.tolist(),
                payload={"index": start_index + i, "added_at": added_at},
            )
            for i, vector in enumerate(vectors)
        ]
        await asyncio.to_thread(self.client.upsert, collection_name=self.collection_name, points=points)
        self._count = max(self._count, start_index + len(points))

    async def search(self, query: np.ndarray, k: int) -> SearchResult:
        response = await asyncio.to_thread(
            self.client.query_points,
            collection_name=self.collection_name,
            query=query.tolist(),
            limit=k,
        )
        points = response.points
        return SearchResult(
            distances=[1.0 - float(point.score) for point in points],
            indices=[int(point.id) for point in points],
            count=len(points),
            metadatas=[dict(point.payload or {}) for point in points],
        )

    async def save(self, index_path: str) -> str:
        # Collection contents persist server-side
        metadata_file = f"{index_path}.qdrant.json"
        atomic_write_json(metadata_file, {
            "index_type": self.type_name,
            "vector_dimension": self.dimension,
            "total_vectors": await self._remote_count(),
            "collection_name": self.collection_name,
            "url": self.url,
            "created_at": _now_iso(),
        })
        return metadata_file

    @classmethod
    async def load(cls, metadata_file: str) -> "QdrantIndexBackend":
        metadata = read_json(metadata_file)
        backend = cls(metadata.get("url"), metadata.get("collection_name", "codeatlas"))
        await backend.initialize(metadata["vector_dimension"])
        return backend

    @property
    def size(self) -> int:
        return self._count

    def info(self) -> Dict[str, Any]:
        return {"total_vectors": self.size, "collection_name": self.collection_name}


class BruteForceIndexBackend(VectorIndexBackend):
    """
    In-memory cosine-similarity index.

    Ranks by descending similarity with ties in insertion order; a zero
    vector has similarity 0 to everything.
    """

    type_name = "simple"

    def __init__(self):
        super().__init__()
        self.vectors = np.zeros((0, 0), dtype=np.float32)
        self.indices: List[int] = []

    async def initialize(self, dimension: int) -> None:
        self.dimension = dimension
        self.vectors = np.zeros((0, dimension), dtype=np.float32)
        self.indices = []

    async def add(self, vectors: np.ndarray, start_index: int) -> None:
        self.vectors = np.vstack([self.vectors, vectors.astype(np.float32)])
        self.indices.extend(range(start_index, start_index + len(vectors)))

    async def search(self, query: np.ndarray, k: int) -> SearchResult:
        if not self.indices or k <= 0:
            return SearchResult()

        similarities = self.cosine_similarities(query)
        order = np.argsort(-similarities, kind="stable")[:k]
        return SearchResult(
            distances=[float(1.0 - similarities[i]) for i in order],
            indices=[self.indices[i] for i in order],
            count=len(order),
        )

    def cosine_similarities(self, query: np.ndarray) -> np.ndarray:
        query = query.astype(np.float64)
        matrix = self.vectors.astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    async def save(self, index_path: str) -> str:
        index_file = f"{index_path}.simple.json"
        await asyncio.to_thread(self._write, index_file)
        return index_file

    def _write(self, index_file: str) -> None:
        atomic_write_json(index_file, {
            "index_type": self.type_name,
            "vector_dimension": self.dimension,
            "total_vectors": self.size,
            "created_at": _now_iso(),
            "vectors": {
                "dimension": self.dimension,
                "vectors": self.vectors.tolist(),
                "indices": self.indices,
            },
        })

    @classmethod
    async def load(cls, index_file: str) -> "BruteForceIndexBackend":
        return await asyncio.to_thread(cls._read, index_file)

    @classmethod
    def _read(cls, index_file: str) -> "BruteForceIndexBackend":
        data = read_json(index_file)
        payload = data.get("vectors") or {}
        backend = cls()
        backend.dimension = data["vector_dimension"]
        rows = payload.get("vectors") or []
        backend.vectors = (
            np.asarray(rows, dtype=np.float32)
            if rows
            else np.zeros((0, backend.dimension), dtype=np.float32)
        )
        backend.indices = list(payload.get("indices") or range(len(rows)))
        return backend

    @property
    def size(self) -> int:
        return len(self.indices)


class IndexBuilder:
    """
    Accumulates vectors into a searchable index.

    Args:
        index_type: First tier to try (``faiss``, ``qdrant`` or ``simple``)
        index_path: Base path for persisted artifacts; suffixes are appended
        qdrant_url: Qdrant server URL; the Qdrant tier is skipped without it
        collection_name: Qdrant collection name
        backend_factories: Override tier constructors
    """

    def __init__(
        self,
        index_type: str = "faiss",
        index_path: Optional[Union[str, Path]] = None,
        qdrant_url: Optional[str] = None,
        collection_name: str = "codeatlas",
        backend_factories: Optional[Dict[str, Callable[[], VectorIndexBackend]]] = None,
    ):
        if index_type not in BACKEND_TIERS:
            raise ConfigurationError("index_type", f"Unknown index type: {index_type}")

        self.requested_type = index_type
        self.index_path = str(index_path) if index_path else str(Path.cwd() / ".codeatlas" / "index")
        self.qdrant_url = qdrant_url
        self.collection_name = collection_name
        self.backend_factories = {
            "faiss": FaissIndexBackend,
            "qdrant": lambda: QdrantIndexBackend(self.qdrant_url, self.collection_name),
            "simple": BruteForceIndexBackend,
            **(backend_factories or {}),
        }
        self.backend: Optional[VectorIndexBackend] = None
        self.vector_dimension: Optional[int] = None

    @property
    def is_initialized(self) -> bool:
        return self.backend is not None

    @property
    def index_type(self) -> str:
        return self.backend.type_name if self.backend else self.requested_type

    async def initialize(self, vector_dimension: int) -> None:
        """Create an empty index, falling through tiers on failure."""
        if vector_dimension <= 0:
            raise ValueError(f"Vector dimension must be positive, got {vector_dimension}")

        tiers = BACKEND_TIERS[BACKEND_TIERS.index(self.requested_type):]
        for tier in tiers:
            backend = self.backend_factories[tier]()
            try:
                await backend.initialize(vector_dimension)
            except Exception as e:
                if tier == "simple":
                    raise IndexBackendError(tier, f"initialization failed: {e}", cause=e) from e
                logger.warning(f"{tier} index not available, falling back to next tier: {e}")
                continue

            self.backend = backend
            self.vector_dimension = vector_dimension
            logger.info(f"Index builder initialized: {tier} ({vector_dimension}D)")
            return

    def _as_matrix(self, vectors: Sequence[VectorLike]) -> np.ndarray:
        rows = []
        for i, vector in enumerate(vectors):
            row = np.asarray(vector, dtype=np.float32).reshape(-1)
            if row.shape[0] != self.vector_dimension:
                raise ValueError(
                    f"Vector {i} has incorrect dimension: {row.shape[0]} (expected {self.vector_dimension})"
                )
            rows.append(row)
        return np.vstack(rows)

    async def add_vectors(self, vectors: Sequence[VectorLike], start_index: Optional[int] = None) -> int:
        """
        Append vectors; returns the new total.

        Raises:
            RuntimeError: If the index is not initialized
            ValueError: If ``vectors`` is empty or a vector has the wrong dimension
        """
        if self.backend is None:
            raise RuntimeError("Index not initialized. Call initialize() first.")
        if vectors is None or len(vectors) == 0:
            raise ValueError("Vectors must be a non-empty sequence")

        matrix = self._as_matrix(vectors)
        start = self.backend.size if start_index is None else start_index
        await self.backend.add(matrix, start)
        logger.debug(f"Added {len(matrix)} vectors to {self.index_type} index (total: {self.backend.size})")
        return self.backend.size

    async def search(self, query_vector: VectorLike, k: int = 10) -> SearchResult:
        if self.backend is None:
            raise RuntimeError("Index not initialized")

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.vector_dimension:
            raise ValueError(
                f"Query has incorrect dimension: {query.shape[0]} (expected {self.vector_dimension})"
            )
        return await self.backend.search(query, k)

    async def optimize(self) -> None:
        if self.backend is not None:
            await self.backend.optimize()
            logger.debug(f"{self.index_type} index optimization completed")

    async def save(self) -> str:
        """Persist the index under ``index_path``; returns the loadable file."""
        if self.backend is None:
            raise RuntimeError("Index not initialized")

        ensure_directory(Path(self.index_path).parent)
        index_file = await self.backend.save(self.index_path)
        logger.info(f"{self.index_type} index saved to {index_file}")
        return index_file

    async def load(self, index_file: Union[str, Path]) -> None:
        """
        Restore an index written by ``save``; the format follows the file suffix.

        Raises:
            ValueError: If the suffix is not a known index format
        """
        index_file = str(index_file)
        if index_file.endswith(".faiss"):
            backend = await FaissIndexBackend.load(index_file)
        elif index_file.endswith(".qdrant.json"):
            backend = await QdrantIndexBackend.load(index_file)
        elif index_file.endswith(".simple.json"):
            backend = await BruteForceIndexBackend.load(index_file)
        else:
            raise ValueError(f"Unknown index file format: {index_file}")

        self.backend = backend
        self.vector_dimension = backend.dimension
        logger.info(f"{backend.type_name} index loaded from {index_file}")

    def get_index_info(self) -> Dict[str, Any]:
        if self.backend is None:
            return {"initialized": False}
        return {
            "initialized": True,
            "type": self.index_type,
            "vector_dimension": self.vector_dimension,
            "index_path": self.index_path,
            **self.backend.info(),
        }

    @staticmethod
    def remove_artifacts(index_path: Union[str, Path]) -> List[str]:
        """Delete every file ``save`` may have written for ``index_path``."""
        removed = []
        for suffix in ARTIFACT_SUFFIXES:
            candidate = f"{index_path}{suffix}"
            if remove_path(candidate):
                removed.append(candidate)
        return removed
