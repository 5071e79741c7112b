"""
Heuristic cross-language dependency extraction.

For one code unit against the full unit set, derives import, call,
inheritance/implementation and type-reference edges from lightweight
pattern matching, then deduplicates them by (kind, from, to, symbol).
This is not a semantic resolver: every edge carries a confidence score
that consumers may threshold.
"""

import posixpath
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..data.schemas import CodeUnit, DependencyEdge, DependencyKind, UnitKind
from ..util.logging_config import get_logger

logger = get_logger("pipeline.dependencies")

IMPORT_CONFIDENCE = 0.9
INHERITANCE_CONFIDENCE = 0.95
TYPE_REFERENCE_CONFIDENCE = 0.7
CALL_BASE_CONFIDENCE = 0.5
CALL_CONTEXT_BOOST = 0.3
CALL_NAME_BOOST = 0.2

_IDENT = r"[A-Za-z_$][\w$]*"

PY_IMPORT = re.compile(r"^import\s+([A-Za-z_][\w.]*)")
PY_FROM_IMPORT = re.compile(r"^from\s+(\.*[A-Za-z_][\w.]*|\.+)\s+import\s+\(?\s*([\w.,\s*]+)")
TS_DEFAULT_IMPORT = re.compile(rf"^import\s+({_IDENT})\s+from\s+['\"]([^'\"]+)['\"]")
TS_NAMED_IMPORT = re.compile(r"^import\s*(?:type\s*)?\{\s*([^}]+)\s*\}\s+from\s+['\"]([^'\"]+)['\"]")
TS_NAMESPACE_IMPORT = re.compile(rf"^import\s*\*\s+as\s+({_IDENT})\s+from\s+['\"]([^'\"]+)['\"]")
JAVA_IMPORT = re.compile(r"^import\s+(?:static\s+)?([A-Za-z_$][\w$.]*\.)([A-Za-z_$][\w$]*|\*);")
GO_SINGLE_IMPORT = re.compile(r'^import\s+(?:[\w.]+\s+)?"([^"]+)"')
GO_BLOCK_IMPORT = re.compile(r'^(?:[\w.]+\s+)?"([^"]+)"')

CALL_PATTERNS = (
    re.compile(rf"({_IDENT})\s*\("),
    re.compile(rf"({_IDENT}\.{_IDENT})\s*\("),
    re.compile(rf"({_IDENT}\.{_IDENT}\.{_IDENT})\s*\("),
)

TYPE_PATTERNS = (
    re.compile(r":\s*([A-Z][\w$]*)"),
    re.compile(r"<([A-Z][\w$]*)>"),
    re.compile(r"extends\s+([A-Z][\w$]*)"),
    re.compile(r"implements\s+([A-Z][\w$]*)"),
)

TYPED_LANGUAGES = ("typescript", "java")
SELF_CONTEXTS = ("self", "this", "cls")
CALLABLE_KINDS = (UnitKind.FUNCTION, UnitKind.METHOD)
TYPE_KINDS = (UnitKind.CLASS, UnitKind.INTERFACE, UnitKind.TYPE)

_EXTENSION = re.compile(r"\.(js|jsx|ts|tsx|py|java|go)$")
# Appended by the parser to ids that would otherwise collide
_UNIQUE_SUFFIX = re.compile(r"_L\d+(?:_\d+)?$")


@dataclass(frozen=True)
class ImportRef:
    module: str
    symbol: Optional[str]
    kind: str
    is_static: bool = False


@dataclass(frozen=True)
class CallSite:
    name: str
    full_name: str
    context: Optional[str]
    line: int


@dataclass(frozen=True)
class TypeRef:
    name: str
    context: str
    line: int


def trailing_name(identifier: str) -> str:
    """Last dotted segment of a unit identifier or qualified name."""
    return identifier.rsplit(".", 1)[-1]


def unit_name(unit_id: str) -> str:
    """Declared name of a unit, without any disambiguation suffix."""
    return _UNIQUE_SUFFIX.sub("", trailing_name(unit_id))


def normalize_module_path(module_path: str, dotted: bool = False) -> str:
    """Strip quotes, unify slashes, drop relative prefixes and extension, lowercase."""
    normalized = module_path.replace('"', "").replace("'", "").replace("\\", "/")
    normalized = _EXTENSION.sub("", normalized)
    if dotted:
        normalized = normalized.lstrip(".").replace(".", "/")
    while normalized.startswith("./") or normalized.startswith("../"):
        normalized = normalized.split("/", 1)[1]
    return normalized.strip("/").lower()


def _line_number(text: str, position: int) -> int:
    return text.count("\n", 0, position) + 1


class UnitIndex:
    """Lookup tables over the full unit set, built once per analysis pass."""

    def __init__(self, units: Sequence[CodeUnit]):
        self.units = list(units)
        self.by_name: Dict[str, List[CodeUnit]] = defaultdict(list)
        self.callables: List[CodeUnit] = []
        self.types_by_name: Dict[str, List[CodeUnit]] = defaultdict(list)
        self.normalized_paths: Dict[str, str] = {}

        for unit in self.units:
            name = unit_name(unit.id)
            self.by_name[name].append(unit)
            if unit.kind in CALLABLE_KINDS:
                self.callables.append(unit)
            if unit.kind in TYPE_KINDS:
                self.types_by_name[name].append(unit)
            if unit.file_path not in self.normalized_paths:
                self.normalized_paths[unit.file_path] = normalize_module_path(unit.file_path)

    def find_by_name(self, name: str, kind: UnitKind) -> Optional[CodeUnit]:
        for unit in self.by_name.get(trailing_name(name), ()):
            if unit.kind == kind:
                return unit
        return None


class DependencyAnalyzer:
    """
    Derives dependency edges for code units.

    ``analyze_dependencies`` never raises: a failure while analyzing one
    unit is logged and yields an empty edge list.
    """

    def __init__(self, project_path: Optional[str] = None):
        self.project_path = project_path

    def analyze_dependencies(
        self,
        unit: CodeUnit,
        all_units: Sequence[CodeUnit],
        index: Optional[UnitIndex] = None,
    ) -> List[DependencyEdge]:
        """Union of the four edge sets for ``unit``, deduplicated."""
        try:
            index = index or UnitIndex(all_units)
            edges: List[DependencyEdge] = []
            edges.extend(self.analyze_import_dependencies(unit, index))
            edges.extend(self.analyze_call_dependencies(unit, index))
            edges.extend(self.analyze_inheritance_dependencies(unit, index))
            edges.extend(self.analyze_type_dependencies(unit, index))
            return self.deduplicate(edges)
        except Exception as e:
            logger.warning(f"Failed to analyze dependencies for {unit.id}: {e}")
            return []

    def analyze_all(self, units: Sequence[CodeUnit]) -> Dict[str, List[DependencyEdge]]:
        """Analyze every unit against the same index."""
        index = UnitIndex(units)
        return {unit.id: self.analyze_dependencies(unit, units, index) for unit in units}

    # Edge sets

    def analyze_import_dependencies(self, unit: CodeUnit, index: UnitIndex) -> List[DependencyEdge]:
        edges = []
        for ref in self.extract_imports(self._import_text(unit), unit.language):
            for target in self.find_units_by_import(ref, index, unit.language):
                if target.id == unit.id:
                    continue
                edges.append(DependencyEdge(
                    kind=DependencyKind.IMPORT,
                    from_id=unit.id,
                    to_id=target.id,
                    symbol=ref.symbol,
                    module=ref.module,
                    confidence=IMPORT_CONFIDENCE,
                ))
        return edges

    def analyze_call_dependencies(self, unit: CodeUnit, index: UnitIndex) -> List[DependencyEdge]:
        edges = []
        own_class = unit.metadata.get("class_name")
        for call in self.extract_function_calls(unit.source):
            context = call.context
            if context in SELF_CONTEXTS and own_class:
                context = own_class
            for target in self.find_units_by_call(call, index):
                if target.id == unit.id:
                    continue
                edges.append(DependencyEdge(
                    kind=DependencyKind.CALL,
                    from_id=unit.id,
                    to_id=target.id,
                    symbol=call.name,
                    context=call.context,
                    confidence=self.calculate_call_confidence(call.name, context, target),
                ))
        return edges

    def analyze_inheritance_dependencies(self, unit: CodeUnit, index: UnitIndex) -> List[DependencyEdge]:
        if unit.kind != UnitKind.CLASS:
            return []

        edges = []
        metadata = unit.metadata
        parent_names = []
        if metadata.get("superclass"):
            parent_names.append(metadata["superclass"])
        parent_names.extend(metadata.get("base_classes") or [])

        for name in parent_names:
            parent = index.find_by_name(name, UnitKind.CLASS)
            if parent is not None and parent.id != unit.id:
                edges.append(DependencyEdge(
                    kind=DependencyKind.INHERITANCE,
                    from_id=unit.id,
                    to_id=parent.id,
                    symbol=trailing_name(name),
                    relationship="extends",
                    confidence=INHERITANCE_CONFIDENCE,
                ))

        for name in metadata.get("interfaces") or []:
            interface = index.find_by_name(name, UnitKind.INTERFACE)
            if interface is not None:
                edges.append(DependencyEdge(
                    kind=DependencyKind.IMPLEMENTATION,
                    from_id=unit.id,
                    to_id=interface.id,
                    symbol=trailing_name(name),
                    relationship="implements",
                    confidence=INHERITANCE_CONFIDENCE,
                ))
        return edges

    def analyze_type_dependencies(self, unit: CodeUnit, index: UnitIndex) -> List[DependencyEdge]:
        if unit.language not in TYPED_LANGUAGES:
            return []

        edges = []
        for ref in self.extract_type_references(unit.source):
            for target in index.types_by_name.get(ref.name, ()):
                if target.id == unit.id:
                    continue
                edges.append(DependencyEdge(
                    kind=DependencyKind.TYPE_REFERENCE,
                    from_id=unit.id,
                    to_id=target.id,
                    symbol=ref.name,
                    context=ref.context,
                    confidence=TYPE_REFERENCE_CONFIDENCE,
                ))
        return edges

    # Extraction

    def _import_text(self, unit: CodeUnit) -> str:
        header = unit.metadata.get("imports") or []
        if not header:
            return unit.source
        return "\n".join(list(header) + [unit.source])

    def extract_imports(self, code: str, language: str) -> List[ImportRef]:
        if language == "python":
            return self._extract_python_imports(code)
        if language in ("typescript", "javascript"):
            return self._extract_ts_imports(code)
        if language == "java":
            return self._extract_java_imports(code)
        if language == "go":
            return self._extract_go_imports(code)
        return []

    def _extract_python_imports(self, code: str) -> List[ImportRef]:
        imports = []
        for line in code.splitlines():
            trimmed = line.strip()

            match = PY_IMPORT.match(trimmed)
            if match:
                for module in re.split(r"\s*,\s*", trimmed[len("import"):].strip()):
                    module = re.sub(r"\s+as\s+.*", "", module).strip()
                    if module:
                        imports.append(ImportRef(module=module, symbol=trailing_name(module), kind="module"))
                continue

            match = PY_FROM_IMPORT.match(trimmed)
            if match:
                module = match.group(1)
                for symbol in match.group(2).split(","):
                    symbol = re.sub(r"\s+as\s+.*", "", symbol.strip()).strip(" ()")
                    if symbol and symbol != "*":
                        imports.append(ImportRef(module=module, symbol=symbol, kind="symbol"))
        return imports

    def _extract_ts_imports(self, code: str) -> List[ImportRef]:
        imports = []
        for line in code.splitlines():
            trimmed = line.strip()

            match = TS_DEFAULT_IMPORT.match(trimmed)
            if match:
                imports.append(ImportRef(module=match.group(2), symbol=match.group(1), kind="default"))
                continue

            match = TS_NAMED_IMPORT.match(trimmed)
            if match:
                for symbol in match.group(1).split(","):
                    symbol = re.sub(r"\s+as\s+.*", "", symbol.strip())
                    if symbol:
                        imports.append(ImportRef(module=match.group(2), symbol=symbol, kind="named"))
                continue

            match = TS_NAMESPACE_IMPORT.match(trimmed)
            if match:
                imports.append(ImportRef(module=match.group(2), symbol=match.group(1), kind="namespace"))
        return imports

    def _extract_java_imports(self, code: str) -> List[ImportRef]:
        imports = []
        for line in code.splitlines():
            trimmed = line.strip()
            match = JAVA_IMPORT.match(trimmed)
            if match:
                symbol = None if match.group(2) == "*" else match.group(2)
                imports.append(ImportRef(
                    module=match.group(1) + match.group(2),
                    symbol=symbol,
                    kind="class" if symbol else "package",
                    is_static=trimmed.startswith("import static"),
                ))
        return imports

    def _extract_go_imports(self, code: str) -> List[ImportRef]:
        imports = []
        in_block = False
        for line in code.splitlines():
            trimmed = line.strip()

            if trimmed == "import (":
                in_block = True
                continue
            if in_block and trimmed == ")":
                in_block = False
                continue

            match = GO_SINGLE_IMPORT.match(trimmed)
            if not match and in_block:
                match = GO_BLOCK_IMPORT.match(trimmed)
            if match:
                module = match.group(1)
                imports.append(ImportRef(module=module, symbol=posixpath.basename(module), kind="package"))
        return imports

    def extract_function_calls(self, code: str) -> List[CallSite]:
        """Bare calls plus one- and two-level qualified calls."""
        calls = []
        for pattern in CALL_PATTERNS:
            for match in pattern.finditer(code):
                full_name = match.group(1)
                parts = full_name.split(".")
                calls.append(CallSite(
                    name=parts[-1],
                    full_name=full_name,
                    context=".".join(parts[:-1]) if len(parts) > 1 else None,
                    line=_line_number(code, match.start()),
                ))
        return calls

    def extract_type_references(self, code: str) -> List[TypeRef]:
        refs = []
        for pattern in TYPE_PATTERNS:
            for match in pattern.finditer(code):
                refs.append(TypeRef(
                    name=match.group(1),
                    context="type_annotation",
                    line=_line_number(code, match.start()),
                ))
        return refs

    # Matching

    def find_units_by_import(self, ref: ImportRef, index: UnitIndex, language: str = "") -> List[CodeUnit]:
        dotted = language in ("python", "java")
        normalized_module = normalize_module_path(ref.module, dotted=dotted) if ref.module else ""
        matches = []
        for unit in index.units:
            if ref.symbol and unit_name(unit.id) == ref.symbol:
                matches.append(unit)
                continue
            normalized_path = index.normalized_paths.get(unit.file_path, "")
            if normalized_module and normalized_path and (
                normalized_module in normalized_path or normalized_path in normalized_module
            ):
                matches.append(unit)
        return matches

    def find_units_by_call(self, call: CallSite, index: UnitIndex) -> List[CodeUnit]:
        matches = []
        for unit in index.callables:
            if unit_name(unit.id) == call.name or (
                call.context is not None and call.full_name in unit.id
            ):
                matches.append(unit)
        return matches

    def calculate_call_confidence(self, name: str, context: Optional[str], target: CodeUnit) -> float:
        confidence = CALL_BASE_CONFIDENCE
        class_name = target.metadata.get("class_name")
        if context and class_name and context == class_name:
            confidence += CALL_CONTEXT_BOOST
        if name == unit_name(target.id):
            confidence += CALL_NAME_BOOST
        return min(1.0, confidence)

    def deduplicate(self, edges: Iterable[DependencyEdge]) -> List[DependencyEdge]:
        """Keep one edge per (kind, from, to, symbol): the most confident, first seen on ties."""
        best: Dict[tuple, DependencyEdge] = {}
        for edge in edges:
            current = best.get(edge.key)
            if current is None or edge.confidence > current.confidence:
                best[edge.key] = edge
        return list(best.values())

    def build_dependency_graph(
        self, units: Sequence[CodeUnit], edges: Iterable[DependencyEdge]
    ) -> Dict[str, Any]:
        """Node/link view for graph consumers."""
        nodes = [
            {"id": unit.id, "kind": unit.kind.value, "language": unit.language, "file_path": unit.file_path}
            for unit in units
        ]
        links = [
            {
                "source": edge.from_id,
                "target": edge.to_id,
                "kind": edge.kind.value,
                "confidence": edge.confidence,
                "symbol": edge.symbol,
            }
            for edge in edges
        ]
        return {"nodes": nodes, "links": links}
