"""Static scan of a source tree for the database identifiers the application expects.

Python files are parsed with `ast`; JavaScript/TypeScript files are scanned as text. Nothing
is ever imported or executed. A file that cannot be decoded or parsed contributes no
references and does not fail the scan.
"""

import ast
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from schemaguard.core.config import DEFAULT_EXCLUDE_DIRS
from schemaguard.core.errors import ParseError
from schemaguard.schemas.metadata import CodeScanResult

logger = logging.getLogger(__name__)

PYTHON_EXTENSIONS = frozenset({".py"})
SCRIPT_EXTENSIONS = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})

# Skip generated bundles and other oversized files.
MAX_FILE_BYTES = 2 * 1024 * 1024

# Python: client.table("t"), client.from_("t"); .rpc("fn", {...}); cursor.callproc("fn", [...]).
_PY_TABLE_METHODS = frozenset({"table", "from_"})
_PY_RPC_METHODS = frozenset({"rpc"})
_PY_POSITIONAL_METHODS = frozenset({"callproc"})

# JS/TS: supabase.from('t') / .rpc('fn', { a, b: 1 }).
_JS_FROM_PATTERN = re.compile(
    r"(?:(\w+)\s*)?\.from\(\s*(['\"`])([A-Za-z_]\w*)\2\s*[,)]"
)
_JS_RPC_PATTERN = re.compile(r"\.rpc\(\s*(['\"`])([A-Za-z_]\w*)\1")
# `.from(` receivers that are not database tables.
_JS_NON_TABLE_RECEIVERS = frozenset({"Array", "Buffer", "storage", "Uint8Array", "Object"})
_JS_IDENTIFIER = re.compile(r"^[A-Za-z_$][\w$]*$")

_OPENERS = {"{": "}", "(": ")", "[": "]"}
_CLOSERS = frozenset(_OPENERS.values())
_QUOTES = frozenset({"'", '"', "`"})


def positional_names(count: int) -> list[str]:
    """Synthesized argument names for positional call styles: $1, $2, ..."""
    return [f"${i + 1}" for i in range(count)]


@dataclass
class FileReferences:
    """References found in one file. rpc_arguments only holds calls whose arguments are statically known."""

    tables: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    rpc_arguments: dict[str, list[str]] = field(default_factory=dict)

    def add_rpc(self, name: str, arguments: list[str] | None) -> None:
        self.functions.append(name)
        if arguments is None:
            return
        merged = self.rpc_arguments.setdefault(name, [])
        for arg in arguments:
            if arg not in merged:
                merged.append(arg)


# --- Python -------------------------------------------------------------------------------


def _const_str(node: ast.AST | None) -> str | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, str) and node.value.strip():
        return node.value.strip()
    return None


def _python_call_arguments(node: ast.AST | None) -> list[str] | None:
    """Argument names passed to an RPC call, or None when they are not statically knowable."""
    if node is None:
        return []
    if isinstance(node, ast.Dict):
        names: list[str] = []
        for key in node.keys:
            name = _const_str(key)
            if name is None:
                # **spread or computed key
                return None
            names.append(name)
        return names
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "dict":
        if node.args or any(kw.arg is None for kw in node.keywords):
            return None
        return [kw.arg for kw in node.keywords]
    if isinstance(node, (ast.List, ast.Tuple)):
        if any(isinstance(elt, ast.Starred) for elt in node.elts):
            return None
        return positional_names(len(node.elts))
    return None


class _PythonReferenceVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.refs = FileReferences()

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        first = node.args[0] if node.args else None
        if isinstance(func, ast.Attribute):
            if func.attr in _PY_TABLE_METHODS:
                name = _const_str(first)
                if name:
                    self.refs.tables.append(name)
            elif func.attr in _PY_RPC_METHODS or func.attr in _PY_POSITIONAL_METHODS:
                name = _const_str(first)
                if name:
                    params = node.args[1] if len(node.args) > 1 else None
                    for kw in node.keywords:
                        if kw.arg in ("params", "parameters"):
                            params = kw.value
                    self.refs.add_rpc(name, _python_call_arguments(params))
        elif isinstance(func, ast.Name) and func.id == "Table":
            name = _const_str(first)
            if name:
                self.refs.tables.append(name)
        self.generic_visit(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for stmt in node.body:
            if not isinstance(stmt, ast.Assign):
                continue
            if any(isinstance(t, ast.Name) and t.id == "__tablename__" for t in stmt.targets):
                name = _const_str(stmt.value)
                if name:
                    self.refs.tables.append(name)
        self.generic_visit(node)


def scan_python_source(source: str, path: str = "<string>") -> FileReferences:
    """Extract references from Python source. Raises ParseError if the source does not parse."""
    try:
        tree = ast.parse(source, filename=path)
    except (SyntaxError, ValueError) as e:
        raise ParseError(f"cannot parse {path}: {e}", path=path) from e
    visitor = _PythonReferenceVisitor()
    visitor.visit(tree)
    return visitor.refs


# --- JavaScript / TypeScript ----------------------------------------------------------------


def _skip_string(text: str, start: int) -> int:
    """Given text[start] is a quote, return the index just past the closing quote (or len(text))."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return len(text)


def _balanced_block(text: str, start: int) -> str | None:
    """Return the contents between text[start] (an opener) and its matching closer, or None if unbalanced."""
    stack = [_OPENERS[text[start]]]
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = _skip_string(text, i)
            continue
        if ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in _CLOSERS:
            if not stack or ch != stack.pop():
                return None
            if not stack:
                return text[start + 1 : i]
        i += 1
    return None


def _split_top_level(text: str, sep: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current_start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = _skip_string(text, i)
            continue
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[current_start:i])
            current_start = i + 1
        i += 1
    parts.append(text[current_start:])
    return parts


def _object_literal_keys(body: str) -> list[str] | None:
    """Top-level keys of a JS object literal body; None for spreads or computed keys."""
    keys: list[str] = []
    for part in _split_top_level(body, ","):
        entry = part.strip()
        if not entry:
            continue
        if entry.startswith("...") or entry.startswith("["):
            return None
        key_part = _split_top_level(entry, ":")[0].strip()
        if key_part[:1] in _QUOTES and key_part[-1:] == key_part[:1] and len(key_part) >= 2:
            key = key_part[1:-1]
        else:
            key = key_part
        if not key or not _JS_IDENTIFIER.match(key):
            return None
        keys.append(key)
    return keys


def _script_call_arguments(text: str, pos: int) -> list[str] | None:
    """Arguments following an RPC name literal at text[pos:]; None when not a literal object."""
    i = pos
    while i < len(text) and text[i].isspace():
        i += 1
    if i >= len(text):
        return None
    if text[i] == ")":
        return []
    if text[i] != ",":
        return None
    i += 1
    while i < len(text) and text[i].isspace():
        i += 1
    if i < len(text) and text[i] == ")":
        return []
    if i >= len(text) or text[i] != "{":
        return None
    body = _balanced_block(text, i)
    if body is None:
        return None
    return _object_literal_keys(body)


def scan_script_source(source: str) -> FileReferences:
    """Extract references from JavaScript/TypeScript source text."""
    refs = FileReferences()
    for match in _JS_FROM_PATTERN.finditer(source):
        receiver = match.group(1)
        if receiver in _JS_NON_TABLE_RECEIVERS:
            continue
        refs.tables.append(match.group(3))
    for match in _JS_RPC_PATTERN.finditer(source):
        refs.add_rpc(match.group(2), _script_call_arguments(source, match.end()))
    return refs


# --- Tree scan ------------------------------------------------------------------------------


def table_references(per_file: list[FileReferences]) -> list[str]:
    """Distinct table names across files, sorted."""
    return sorted({table for refs in per_file for table in refs.tables})


def rpc_calls(per_file: list[FileReferences]) -> list[str]:
    """Distinct RPC names across files, sorted."""
    return sorted({name for refs in per_file for name in refs.functions})


def rpc_call_arguments(per_file: list[FileReferences]) -> dict[str, list[str]]:
    """Argument names per RPC, unioned across call sites in first-seen order."""
    merged: dict[str, list[str]] = {}
    for refs in per_file:
        for name, args in refs.rpc_arguments.items():
            names = merged.setdefault(name, [])
            names.extend(arg for arg in args if arg not in names)
    return {name: merged[name] for name in sorted(merged)}


class CodeScanner:
    """Walks a source tree and collects referenced tables, RPC names and call-site arguments."""

    def __init__(
        self,
        exclude_dirs: frozenset[str] | set[str] | None = None,
        max_workers: int = 8,
    ) -> None:
        self.exclude_dirs = frozenset(exclude_dirs if exclude_dirs is not None else DEFAULT_EXCLUDE_DIRS)
        self.max_workers = max(1, max_workers)

    def iter_source_files(self, source_root: str | Path) -> list[Path]:
        root = Path(source_root)
        if not root.is_dir():
            raise FileNotFoundError(f"source root is not a directory: {root}")
        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            # Pruned in place so excluded trees are never descended into.
            dirnames[:] = [d for d in dirnames if d not in self.exclude_dirs]
            for name in filenames:
                suffix = os.path.splitext(name)[1].lower()
                if suffix in PYTHON_EXTENSIONS or suffix in SCRIPT_EXTENSIONS:
                    files.append(Path(dirpath, name))
        return sorted(files)

    def scan_file(self, path: Path) -> FileReferences:
        """Scan one file. Raises ParseError when it cannot be read, decoded or parsed."""
        try:
            if path.stat().st_size > MAX_FILE_BYTES:
                raise ParseError(f"{path} exceeds {MAX_FILE_BYTES} bytes", path=str(path))
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"cannot read {path}: {e}", path=str(path)) from e
        if path.suffix.lower() in PYTHON_EXTENSIONS:
            return scan_python_source(source, str(path))
        return scan_script_source(source)

    def _scan_file_tolerant(self, path: Path) -> FileReferences | None:
        try:
            return self.scan_file(path)
        except ParseError as e:
            logger.warning(
                "Skipping unparseable source file",
                extra={"path": str(path), "error": e.message},
            )
            return None

    def _collect(self, source_root: str | Path) -> tuple[list[FileReferences], int, int]:
        files = self.iter_source_files(source_root)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(self._scan_file_tolerant, files))
        parsed = [refs for refs in results if refs is not None]
        return parsed, len(files), len(files) - len(parsed)

    def find_table_references(self, source_root: str | Path) -> list[str]:
        per_file, _, _ = self._collect(source_root)
        return table_references(per_file)

    def find_rpc_calls(self, source_root: str | Path) -> list[str]:
        per_file, _, _ = self._collect(source_root)
        return rpc_calls(per_file)

    def extract_rpc_arguments(self, source_root: str | Path) -> dict[str, list[str]]:
        per_file, _, _ = self._collect(source_root)
        return rpc_call_arguments(per_file)

    def scan(self, source_root: str | Path) -> CodeScanResult:
        """Walk the tree once and compose tables, RPC calls and RPC arguments from the same pass."""
        per_file, scanned, skipped = self._collect(source_root)
        result = CodeScanResult(
            tables=tuple(table_references(per_file)),
            functions=tuple(rpc_calls(per_file)),
            rpc_arguments={name: tuple(args) for name, args in rpc_call_arguments(per_file).items()},
            files_scanned=scanned,
            files_skipped=skipped,
        )
        logger.info(
            "Code scan completed",
            extra={
                "source_root": str(source_root),
                "files_scanned": scanned,
                "files_skipped": skipped,
                "table_count": len(result.tables),
                "function_count": len(result.functions),
            },
        )
        return result
