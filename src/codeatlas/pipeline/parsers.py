"""
Polyglot source parsing into CodeUnits.

Python is parsed with the standard ``ast`` module; TypeScript/JavaScript,
Go and Java use lightweight line-anchored patterns with brace matching to
find each declaration's extent. Unit ids are ``<file-stem>.<Name>`` and
``<file-stem>.<Owner>.<method>`` for members. Ids that would collide
(overloads, same-named files in different directories) get a ``_L<line>``
suffix.
"""

import ast
import asyncio
import re
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..data.schemas import CodeUnit, UnitKind
from ..util.errors import FileSystemError, ParsingError
from ..util.logging_config import get_logger

logger = get_logger("pipeline.parsers")

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".go": "go",
    ".java": "java",
}

CONTROL_KEYWORDS = frozenset({"if", "for", "while", "switch", "catch", "return", "function", "else", "new", "synchronized"})

TS_FUNCTION = re.compile(
    r"^(export\s+)?(?:default\s+)?(async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*\(([^)]*)\)"
    r"(?:\s*:\s*([^{]+?))?\s*\{",
    re.M,
)
TS_ARROW = re.compile(
    r"^(export\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*(async\s+)?"
    r"(?:\(([^)]*)\)|([A-Za-z_$][\w$]*))\s*(?::\s*([^=]+?))?\s*=>",
    re.M,
)
TS_CLASS = re.compile(
    r"^(export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)(?:\s*<[^>{]*>)?"
    r"(?:\s+extends\s+([\w$.]+)(?:<[^>{]*>)?)?(?:\s+implements\s+([\w$.,\s<>]+?))?\s*\{",
    re.M,
)
TS_INTERFACE = re.compile(r"^(export\s+)?interface\s+([A-Za-z_$][\w$]*)[^{]*\{", re.M)
TS_TYPE_ALIAS = re.compile(r"^(export\s+)?type\s+([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*=", re.M)
TS_METHOD = re.compile(
    r"^[ \t]+((?:(?:public|private|protected|static|async|readonly|abstract|override)\s+)*)"
    r"([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*\(([^)]*)\)(?:\s*:\s*([^{;]+?))?\s*\{",
    re.M,
)

GO_FUNC = re.compile(
    r"^func\s+(?:\(\s*(\w+)?\s*\*?\s*([\w.]+)(?:\[[^\]]*\])?\s*\)\s*)?([A-Za-z_]\w*)\s*(?:\[[^\]]*\])?\(([^)]*)\)([^{]*)\{",
    re.M,
)
GO_TYPE = re.compile(r"^type\s+([A-Za-z_]\w*)(?:\[[^\]]*\])?\s+(struct|interface)\s*\{", re.M)
GO_IMPORT_BLOCK = re.compile(r"^import\s*\(([^)]*)\)", re.M)
GO_IMPORT_LINE = re.compile(r'^import\s+(?:[\w.]+\s+)?"[^"]+"', re.M)

JAVA_MODIFIERS = r"(?:public|private|protected|static|final|abstract|synchronized|native|default|sealed|strictfp)"
JAVA_CLASS = re.compile(
    rf"^[ \t]*((?:{JAVA_MODIFIERS}\s+)*)class\s+([A-Za-z_$][\w$]*)(?:\s*<[^>{{]*>)?"
    r"(?:\s+extends\s+([\w$.]+)(?:<[^>{]*>)?)?(?:\s+implements\s+([\w$.,\s<>]+?))?\s*\{",
    re.M,
)
JAVA_INTERFACE = re.compile(
    rf"^[ \t]*((?:{JAVA_MODIFIERS}\s+)*)interface\s+([A-Za-z_$][\w$]*)(?:\s*<[^>{{]*>)?"
    r"(?:\s+extends\s+([\w$.,\s<>]+?))?\s*\{",
    re.M,
)
JAVA_METHOD = re.compile(
    rf"^[ \t]+((?:{JAVA_MODIFIERS}\s+)*)(?:<[^>]+>\s+)?([\w$.<>\[\],\s]+?)\s+([A-Za-z_$][\w$]*)\s*\(([^)]*)\)"
    r"(?:\s*throws\s+[\w$.,\s]+)?\s*\{",
    re.M,
)
JAVA_IMPORT = re.compile(r"^import\s+[^;]+;", re.M)
TS_IMPORT = re.compile(r"^import\s[^;\n]*(?:from\s+)?['\"][^'\"]+['\"];?", re.M)


def find_block_end(text: str, open_brace: int) -> int:
    """Index just past the brace that closes the one at ``open_brace``."""
    depth = 0
    quote: Optional[str] = None
    i = open_brace
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return len(text)


def line_of(text: str, position: int) -> int:
    return text.count("\n", 0, position) + 1


def split_params(params: str) -> List[str]:
    """Split a parameter list on top-level commas."""
    parts, depth, current = [], 0, []
    for char in params:
        if char in "<([{":
            depth += 1
        elif char in ">)]}":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [part for part in parts if part]


def split_names(names: Optional[str]) -> List[str]:
    if not names:
        return []
    return [re.sub(r"<.*", "", name).strip() for name in split_params(names) if name.strip()]


def assign_unique_ids(units: List[CodeUnit]) -> List[CodeUnit]:
    """
    Make unit ids unique, keeping order.

    Every member of a colliding group is suffixed with ``_L<start_line>``;
    groups that still collide (same line in same-named files) additionally
    get an ordinal from the second member on.
    """
    counts = Counter(unit.id for unit in units)
    if all(count == 1 for count in counts.values()):
        return units

    renamed = [
        unit.model_copy(update={"id": f"{unit.id}_L{unit.metadata.get('start_line', 0)}"})
        if counts[unit.id] > 1
        else unit
        for unit in units
    ]

    taken = Counter(unit.id for unit in renamed)
    seen: Counter = Counter()
    result = []
    for unit in renamed:
        seen[unit.id] += 1
        if taken[unit.id] > 1 and seen[unit.id] > 1:
            unit = unit.model_copy(update={"id": f"{unit.id}_{seen[unit.id]}"})
        result.append(unit)
    return result


class SourceParser:
    """Extension-dispatched parser producing CodeUnits."""

    def __init__(self, project_path: Optional[str | Path] = None):
        self.project_path = Path(project_path) if project_path else None

    @staticmethod
    def language_for(path: str | Path) -> Optional[str]:
        return LANGUAGE_BY_EXTENSION.get(Path(path).suffix.lower())

    def is_supported(self, path: str | Path) -> bool:
        return self.language_for(path) is not None

    def relative_path(self, path: str | Path) -> str:
        path = Path(path)
        if self.project_path is not None:
            try:
                return path.resolve().relative_to(self.project_path.resolve()).as_posix()
            except ValueError:
                pass
        return path.as_posix()

    async def parse_file(self, path: str | Path) -> List[CodeUnit]:
        """
        Read and parse one source file.

        Raises:
            ParsingError: Unsupported extension or unparseable source
            FileSystemError: The file cannot be read
        """
        language = self.language_for(path)
        if language is None:
            raise ParsingError(path, f"No parser available for file extension: {Path(path).suffix}")
        try:
            source = await asyncio.to_thread(Path(path).read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            raise FileSystemError(path, "read", str(e), cause=e) from e
        return self.parse_source(source, path, language)

    def parse_source(self, source: str, path: str | Path, language: Optional[str] = None) -> List[CodeUnit]:
        language = language or self.language_for(path)
        if language is None:
            raise ParsingError(path, f"No parser available for file extension: {Path(path).suffix}")

        file_path = self.relative_path(path)
        stem = Path(path).stem
        if language == "python":
            units = self._parse_python(source, file_path, stem)
        elif language in ("typescript", "javascript"):
            units = self._parse_typescript(source, file_path, stem, language)
        elif language == "go":
            units = self._parse_go(source, file_path, stem)
        else:
            units = self._parse_java(source, file_path, stem)

        logger.debug(f"Parsed {file_path}: {len(units)} units")
        return assign_unique_ids(units)

    def _unit(
        self,
        unit_id: str,
        kind: UnitKind,
        language: str,
        file_path: str,
        code: str,
        start_line: int,
        end_line: int,
        imports: List[str],
        **metadata: Any,
    ) -> CodeUnit:
        return CodeUnit(
            id=unit_id,
            kind=kind,
            language=language,
            file_path=file_path,
            source=code.strip(),
            metadata={
                "start_line": start_line,
                "end_line": end_line,
                "imports": imports,
                **{key: value for key, value in metadata.items() if value is not None},
            },
        )

    # Python

    def _parse_python(self, source: str, file_path: str, stem: str) -> List[CodeUnit]:
        try:
            tree = ast.parse(source, filename=file_path)
        except SyntaxError as e:
            raise ParsingError(file_path, f"syntax error at line {e.lineno}: {e.msg}", cause=e) from e

        imports = [
            ast.get_source_segment(source, node) or ""
            for node in tree.body
            if isinstance(node, (ast.Import, ast.ImportFrom))
        ]
        units = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                units.append(self._python_function(node, source, file_path, f"{stem}.{node.name}", imports))
            elif isinstance(node, ast.ClassDef):
                units.extend(self._python_class(node, source, file_path, stem, imports))
        return units

    def _python_span(self, node: ast.AST, source: str) -> Tuple[str, int, int]:
        start = min([node.lineno] + [d.lineno for d in getattr(node, "decorator_list", [])])
        end = node.end_lineno or node.lineno
        lines = source.splitlines()
        return "\n".join(lines[start - 1:end]), start, end

    def _python_function(
        self,
        node: ast.FunctionDef | ast.AsyncFunctionDef,
        source: str,
        file_path: str,
        unit_id: str,
        imports: List[str],
        class_name: Optional[str] = None,
    ) -> CodeUnit:
        code, start, end = self._python_span(node, source)
        args = node.args.posonlyargs + node.args.args + node.args.kwonlyargs
        parameters = [
            {"name": arg.arg, "type": ast.unparse(arg.annotation) if arg.annotation else None}
            for arg in args
        ]
        return self._unit(
            unit_id,
            UnitKind.METHOD if class_name else UnitKind.FUNCTION,
            "python",
            file_path,
            code,
            start,
            end,
            imports,
            class_name=class_name,
            is_async=isinstance(node, ast.AsyncFunctionDef),
            decorators=[ast.unparse(d) for d in node.decorator_list],
            parameters=parameters,
            return_type=ast.unparse(node.returns) if node.returns else None,
            docstring=ast.get_docstring(node),
        )

    def _python_class(self, node: ast.ClassDef, source: str, file_path: str, stem: str, imports: List[str]) -> List[CodeUnit]:
        code, start, end = self._python_span(node, source)
        bases = [ast.unparse(base) for base in node.bases]
        class_id = f"{stem}.{node.name}"
        units = [
            self._unit(
                class_id,
                UnitKind.CLASS,
                "python",
                file_path,
                code,
                start,
                end,
                imports,
                class_name=node.name,
                superclass=bases[0] if bases else None,
                base_classes=bases[1:],
                decorators=[ast.unparse(d) for d in node.decorator_list],
                docstring=ast.get_docstring(node),
            )
        ]
        for child in node.body:
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                units.append(
                    self._python_function(
                        child, source, file_path, f"{class_id}.{child.name}", imports, class_name=node.name
                    )
                )
        return units

    # TypeScript / JavaScript

    def _parse_typescript(self, source: str, file_path: str, stem: str, language: str) -> List[CodeUnit]:
        imports = [match.group(0) for match in TS_IMPORT.finditer(source)]
        units = []

        for match in TS_FUNCTION.finditer(source):
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{match.group(3)}", UnitKind.FUNCTION, language, file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                is_exported=bool(match.group(1)),
                is_async=bool(match.group(2)),
                parameters=split_params(match.group(4)),
                return_type=(match.group(5) or "").strip() or None,
            ))

        for match in TS_ARROW.finditer(source):
            line_end = source.find("\n", match.end())
            brace = source.find("{", match.end(), line_end if line_end != -1 else len(source))
            end = find_block_end(source, brace) if brace != -1 else (line_end if line_end != -1 else len(source))
            units.append(self._unit(
                f"{stem}.{match.group(2)}", UnitKind.FUNCTION, language, file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                is_exported=bool(match.group(1)),
                is_async=bool(match.group(3)),
                parameters=split_params(match.group(4) or match.group(5) or ""),
                return_type=(match.group(6) or "").strip() or None,
            ))

        for match in TS_CLASS.finditer(source):
            name = match.group(2)
            end = find_block_end(source, match.end() - 1)
            body_start = match.end()
            units.append(self._unit(
                f"{stem}.{name}", UnitKind.CLASS, language, file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                class_name=name,
                is_exported=bool(match.group(1)),
                superclass=match.group(3),
                interfaces=split_names(match.group(4)),
            ))
            units.extend(self._ts_methods(source, body_start, end - 1, name, stem, file_path, language, imports))

        for match in TS_INTERFACE.finditer(source):
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{match.group(2)}", UnitKind.INTERFACE, language, file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                is_exported=bool(match.group(1)),
            ))

        for match in TS_TYPE_ALIAS.finditer(source):
            semicolon = source.find(";", match.end())
            end = semicolon + 1 if semicolon != -1 else len(source)
            units.append(self._unit(
                f"{stem}.{match.group(2)}", UnitKind.TYPE, language, file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                is_exported=bool(match.group(1)),
            ))

        return sorted(units, key=lambda unit: unit.metadata["start_line"])

    def _ts_methods(
        self, source: str, body_start: int, body_end: int, class_name: str,
        stem: str, file_path: str, language: str, imports: List[str],
    ) -> List[CodeUnit]:
        units = []
        position = body_start
        while True:
            match = TS_METHOD.search(source, position, body_end)
            if match is None:
                break
            name = match.group(2)
            end = find_block_end(source, match.end() - 1)
            if name not in CONTROL_KEYWORDS:
                modifiers = match.group(1).split()
                units.append(self._unit(
                    f"{stem}.{class_name}.{name}", UnitKind.METHOD, language, file_path,
                    source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                    class_name=class_name,
                    is_async="async" in modifiers,
                    modifiers=modifiers,
                    parameters=split_params(match.group(3)),
                    return_type=(match.group(4) or "").strip() or None,
                ))
            position = end
        return units

    # Go

    def _parse_go(self, source: str, file_path: str, stem: str) -> List[CodeUnit]:
        imports = [match.group(0) for match in GO_IMPORT_LINE.finditer(source)]
        imports.extend(match.group(0) for match in GO_IMPORT_BLOCK.finditer(source))
        units = []

        for match in GO_FUNC.finditer(source):
            receiver, name = match.group(2), match.group(3)
            end = find_block_end(source, match.end() - 1)
            receiver_type = receiver.split(".")[-1] if receiver else None
            units.append(self._unit(
                f"{stem}.{receiver_type}.{name}" if receiver_type else f"{stem}.{name}",
                UnitKind.METHOD if receiver_type else UnitKind.FUNCTION,
                "go",
                file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                class_name=receiver_type,
                receiver_type=receiver_type,
                is_exported=name[0].isupper(),
                parameters=split_params(match.group(4)),
                return_type=match.group(5).strip() or None,
            ))

        for match in GO_TYPE.finditer(source):
            name = match.group(1)
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{name}",
                UnitKind.STRUCT if match.group(2) == "struct" else UnitKind.INTERFACE,
                "go",
                file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                is_exported=name[0].isupper(),
            ))

        return sorted(units, key=lambda unit: unit.metadata["start_line"])

    # Java

    def _parse_java(self, source: str, file_path: str, stem: str) -> List[CodeUnit]:
        imports = [match.group(0) for match in JAVA_IMPORT.finditer(source)]
        units = []

        for match in JAVA_CLASS.finditer(source):
            name = match.group(2)
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{name}", UnitKind.CLASS, "java", file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                class_name=name,
                modifiers=match.group(1).split(),
                superclass=match.group(3),
                interfaces=split_names(match.group(4)),
            ))
            units.extend(self._java_methods(source, match.end(), end - 1, name, stem, file_path, imports))

        for match in JAVA_INTERFACE.finditer(source):
            name = match.group(2)
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{name}", UnitKind.INTERFACE, "java", file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                modifiers=match.group(1).split(),
                interfaces=split_names(match.group(3)),
            ))

        return sorted(units, key=lambda unit: unit.metadata["start_line"])

    def _java_methods(
        self, source: str, body_start: int, body_end: int, class_name: str,
        stem: str, file_path: str, imports: List[str],
    ) -> List[CodeUnit]:
        constructor = re.compile(
            rf"^[ \t]+((?:{JAVA_MODIFIERS}\s+)*){re.escape(class_name)}\s*\(([^)]*)\)(?:\s*throws\s+[\w$.,\s]+)?\s*\{{",
            re.M,
        )
        found: Dict[int, Tuple[re.Match, Optional[str], str, str]] = {}
        position = body_start
        while True:
            match = JAVA_METHOD.search(source, position, body_end)
            if match is None:
                break
            return_type, name = match.group(2).strip(), match.group(3)
            if name not in CONTROL_KEYWORDS and return_type not in CONTROL_KEYWORDS:
                found[match.start()] = (match, return_type, name, match.group(4))
            position = find_block_end(source, match.end() - 1)

        position = body_start
        while True:
            match = constructor.search(source, position, body_end)
            if match is None:
                break
            found.setdefault(match.start(), (match, None, class_name, match.group(2)))
            position = find_block_end(source, match.end() - 1)

        units = []
        for start in sorted(found):
            match, return_type, name, params = found[start]
            end = find_block_end(source, match.end() - 1)
            units.append(self._unit(
                f"{stem}.{class_name}.{name}", UnitKind.METHOD, "java", file_path,
                source[match.start():end], line_of(source, match.start()), line_of(source, end), imports,
                class_name=class_name,
                modifiers=match.group(1).split(),
                return_type=return_type,
                parameters=split_params(params),
            ))
        return units
