"""
Source file discovery for the parsing step.

An explicit file selection wins over glob patterns; exclusions apply to
both. Results are deduplicated, kept in discovery order and filtered to
files that exist.
"""

import asyncio
from pathlib import Path
from typing import Iterable, List, Optional

from ..util.logging_config import get_logger

logger = get_logger("pipeline.discover")

IGNORED_DIRECTORIES = frozenset({"node_modules", "dist", "build", ".git"})


class SourceDiscovery:
    """Resolves which files a run processes."""

    def __init__(self, project_path: str | Path):
        self.project_path = Path(project_path)

    async def discover_files(
        self,
        file_patterns: Iterable[str],
        selected_files: Optional[Iterable[str]] = None,
        excluded_files: Optional[Iterable[str]] = None,
    ) -> List[Path]:
        """
        Discover source files for a run.

        Returns absolute paths of existing files.
        """
        return await asyncio.to_thread(
            self._discover, list(file_patterns), list(selected_files or []), list(excluded_files or [])
        )

    def _discover(self, patterns: List[str], selected: List[str], excluded: List[str]) -> List[Path]:
        if selected:
            logger.info(f"Using {len(selected)} specifically selected files")
            candidates = [self.resolve(path) for path in selected]
        else:
            logger.info(f"Using glob patterns: {', '.join(patterns)}")
            candidates = []
            for pattern in patterns:
                candidates.extend(
                    path.resolve()
                    for path in sorted(self.project_path.glob(pattern))
                    if not self.is_ignored(path)
                )

        if excluded:
            excluded_set = {self.resolve(path) for path in excluded}
            logger.info(f"Excluding {len(excluded_set)} files")
            candidates = [path for path in candidates if path not in excluded_set]

        existing = []
        seen = set()
        for path in candidates:
            if path in seen:
                continue
            seen.add(path)
            if path.is_file():
                existing.append(path)
            else:
                logger.warning(f"File not accessible: {path}")

        logger.info(f"Found {len(existing)} accessible files for processing")
        return existing

    def resolve(self, path: str | Path) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.project_path / path
        return path.resolve()

    def is_ignored(self, path: Path) -> bool:
        try:
            parts = path.relative_to(self.project_path).parts
        except ValueError:
            parts = path.parts
        return any(part in IGNORED_DIRECTORIES for part in parts)
