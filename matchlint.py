#!/usr/bin/env python3
"""
matchlint - AST matcher driver for C/C++

High-level goals:
- Parse each input file (via Clang) using the project's build flags
- Let independent checks register interest in node shapes
- Walk every AST exactly once, firing each matching check with its context
- Keep parser diagnostics out of the output; only check findings are shown

Checks are either Python objects registered on a PatternRegistry or
declarative YAML entries loaded with --checks.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Literal, Optional, Sequence, Set, Tuple, Union
import argparse
import heapq
import json
import os
import re
import shlex
import sys

from clang import cindex as clang_cindex
import yaml


TOOL_NAME = "matchlint"
__version__ = "0.1.0"

SEVERITIES = ("note", "warning", "error")

Severity = Literal["note", "warning", "error"]
FileState = Literal["Pending", "Parsing", "ParsedOK", "Analyzing", "Completed", "ParseFailed"]
FailureReason = Literal["NoBuildConfig", "FatalParseError"]


# ============================================================
# ===================== ERROR TAXONOMY =======================
# ============================================================

class ConfigError(Exception):
    """Fatal configuration problem; nothing is analyzed."""


class InaccessibleFile(ConfigError):
    """An input path could not be opened for reading."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Unable to access file '{path}'")
        self.path = path


class ParseError(Exception):
    """Raised by a parser collaborator when no AST can be produced."""


class CheckError(Exception):
    """A check callback raised while handling a node."""


# ============================================================
# ================= SOURCE LOCATION & RESULTS ================
# ============================================================

@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class InputFile:
    path: str
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Finding:
    location: SourceLocation
    message: str
    severity: Severity = "warning"
    check_id: str = ""


@dataclass(frozen=True)
class ParseFailure:
    path: str
    reason: FailureReason
    detail: str = ""


@dataclass
class FileResult:
    path: str
    state: FileState = "Pending"
    findings: List[Finding] = field(default_factory=list)
    failure: Optional[ParseFailure] = None
    flags: Tuple[str, ...] = ()
    suppressed_diagnostics: int = 0


@dataclass
class BatchReport:
    results: List[FileResult] = field(default_factory=list)

    @property
    def findings(self) -> List[Finding]:
        return [finding for result in self.results for finding in result.findings]

    @property
    def failures(self) -> List[ParseFailure]:
        return [result.failure for result in self.results if result.failure is not None]


# ============================================================
# ====================== CONFIGURATION =======================
# ============================================================

@dataclass
class ToolOptions:
    """
    Process-wide options, built once from the command line and handed to the
    runner and pipeline.
    """
    files: List[str] = field(default_factory=list)
    verbose: bool = False

    build_path: Optional[str] = None
    fixed_flags: Optional[List[str]] = None  # flags given after "--"
    extra_args: List[str] = field(default_factory=list)
    extra_args_before: List[str] = field(default_factory=list)
    env_args: List[str] = field(default_factory=list)

    check_files: List[str] = field(default_factory=list)
    output_format: Literal["text", "json"] = "text"
    out: Optional[str] = None
    include_headers: bool = False


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="matchlint: run AST matcher checks over C/C++ sources",
        epilog=(
            "Compiler flags come from compile_commands.json (see -p) or from "
            "everything after a literal '--'."
        ),
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Source files to analyze.",
    )
    parser.add_argument(
        "-p", "--build-path",
        metavar="DIR",
        help="Directory containing compile_commands.json.",
    )
    parser.add_argument(
        "--extra-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Additional argument to append to the compiler command line.",
    )
    parser.add_argument(
        "--extra-arg-before",
        action="append",
        default=[],
        metavar="ARG",
        help="Additional argument to prepend to the compiler command line.",
    )
    parser.add_argument(
        "--checks",
        action="append",
        default=[],
        metavar="CHECK_FILE",
        help="YAML check file (can be given multiple times).",
    )
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format for findings.",
    )
    parser.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write findings to this file instead of stdout.",
    )
    parser.add_argument(
        "--include-headers",
        action="store_true",
        help="Also match nodes located outside the main source file.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Generate verbose output.",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None, environ: Optional[Dict[str, str]] = None) -> ToolOptions:
    """
    Build ToolOptions. Everything after a literal "--" is a fixed set of
    compiler flags used for every file, as with clang tools.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    environ = os.environ if environ is None else environ

    fixed_flags: Optional[List[str]] = None
    if "--" in args:
        split_at = args.index("--")
        fixed_flags = args[split_at + 1:]
        args = args[:split_at]

    ns = _build_arg_parser().parse_intermixed_args(args)

    env_args: List[str] = []
    extra = environ.get("MATCHLINT_CLANG_ARGS")
    if extra:
        env_args = shlex.split(extra)

    return ToolOptions(
        files=list(ns.files),
        verbose=ns.verbose,
        build_path=ns.build_path,
        fixed_flags=fixed_flags,
        extra_args=list(ns.extra_arg),
        extra_args_before=list(ns.extra_arg_before),
        env_args=env_args,
        check_files=list(ns.checks),
        output_format=ns.format,
        out=ns.out,
        include_headers=ns.include_headers,
    )


def _log(message: str) -> None:
    sys.stderr.write(f"[{TOOL_NAME}] {message}\n")


# ============================================================
# ========================== NODES ===========================
# ============================================================

# Nodes that open a semantic scope for everything below them.
FUNCTION_KINDS: FrozenSet[str] = frozenset({
    "FUNCTION_DECL",
    "CXX_METHOD",
    "CONSTRUCTOR",
    "DESTRUCTOR",
    "CONVERSION_FUNCTION",
    "FUNCTION_TEMPLATE",
    "LAMBDA_EXPR",
    "OBJC_INSTANCE_METHOD_DECL",
    "OBJC_CLASS_METHOD_DECL",
})
RECORD_KINDS: FrozenSet[str] = frozenset({
    "STRUCT_DECL",
    "UNION_DECL",
    "CLASS_DECL",
    "CLASS_TEMPLATE",
    "CLASS_TEMPLATE_PARTIAL_SPECIALIZATION",
    "ENUM_DECL",
})
SCOPE_KINDS: FrozenSet[str] = FUNCTION_KINDS | RECORD_KINDS | frozenset({
    "TRANSLATION_UNIT",
    "NAMESPACE",
    "LINKAGE_SPEC",
})


class ClangNode:
    """
    Read-only view of a libclang cursor.

    The dispatcher only relies on `kind`, `location` and `children()`;
    checks additionally get `spelling`, `type_spelling`, `referenced`,
    `semantic_parent` and `is_definition()`. A node keeps its translation
    unit alive, so checks must not hold on to nodes after their callback.
    """

    __slots__ = ("_cursor", "kind")

    def __init__(self, cursor: "clang_cindex.Cursor") -> None:
        self._cursor = cursor
        self.kind = _cursor_kind_name(cursor)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ClangNode) and self._cursor == other._cursor

    def __hash__(self) -> int:
        return self._cursor.hash

    def __repr__(self) -> str:
        return f"ClangNode({self.kind}, {self.spelling!r}, {self.location})"

    @property
    def spelling(self) -> str:
        return self._cursor.spelling or ""

    @property
    def displayname(self) -> str:
        return self._cursor.displayname or ""

    @property
    def type_spelling(self) -> str:
        ctype = self._cursor.type
        return ctype.spelling if ctype is not None else ""

    @property
    def location(self) -> SourceLocation:
        return _make_source_location(self._cursor.location)

    @property
    def referenced(self) -> Optional["ClangNode"]:
        target = self._cursor.referenced
        return ClangNode(target) if target is not None else None

    @property
    def semantic_parent(self) -> Optional["ClangNode"]:
        parent = self._cursor.semantic_parent
        return ClangNode(parent) if parent is not None else None

    def is_definition(self) -> bool:
        return bool(self._cursor.is_definition())

    def children(self) -> List["ClangNode"]:
        return [ClangNode(child) for child in self._cursor.get_children()]


def _cursor_kind_name(cursor: "clang_cindex.Cursor") -> str:
    try:
        return cursor.kind.name
    except ValueError:
        # cursor kind newer than these bindings
        return "UNKNOWN"


def _make_source_location(location: "clang_cindex.SourceLocation") -> SourceLocation:
    file_name = location.file.name if location.file is not None else ""
    return SourceLocation(file=file_name, line=location.line, column=location.column)


# ============================================================
# ==================== DIAGNOSTIC FILTER =====================
# ============================================================

class DiagnosticFilter:
    """
    Swallows every diagnostic the front end produces for one file.

    Inputs are assumed to already compile with their own build, so warnings
    and errors from the parser are noise here. Only the count and whether a
    fatal diagnostic occurred are kept; the text is dropped.
    """

    def __init__(self) -> None:
        self.discarded = 0
        self.fatal_seen = False

    def handle(self, diagnostic: Any) -> None:
        self.discarded += 1
        if getattr(diagnostic, "severity", 0) >= clang_cindex.Diagnostic.Fatal:
            self.fatal_seen = True


# ============================================================
# ==================== PATTERN REGISTRY ======================
# ============================================================

MatchCallback = Callable[[Any, "MatchContext"], None]


def _kind_set(kind: Union[None, str, Iterable[str]]) -> FrozenSet[str]:
    if kind is None:
        return frozenset()
    if isinstance(kind, str):
        return frozenset({kind})
    return frozenset(kind)


@dataclass(frozen=True)
class Pattern:
    """
    Predicate over a node's shape.

    kinds: node kinds accepted (empty means any kind)
    name: regex searched in the node spelling
    type: regex searched in the node's type spelling
    parent: kind of the immediate parent
    inside / not_inside: kind of some / no ancestor
    where: extra predicate on the node itself
    """
    kinds: FrozenSet[str] = frozenset()
    name: Optional["re.Pattern[str]"] = None
    type: Optional["re.Pattern[str]"] = None
    parent: Optional[str] = None
    inside: Optional[str] = None
    not_inside: Optional[str] = None
    where: Optional[Callable[[Any], bool]] = field(default=None, compare=False)

    @classmethod
    def build(
        cls,
        kind: Union[None, str, Iterable[str]] = None,
        *,
        name: Optional[str] = None,
        type: Optional[str] = None,
        parent: Optional[str] = None,
        inside: Optional[str] = None,
        not_inside: Optional[str] = None,
        where: Optional[Callable[[Any], bool]] = None,
    ) -> "Pattern":
        return cls(
            kinds=_kind_set(kind),
            name=re.compile(name) if name is not None else None,
            type=re.compile(type) if type is not None else None,
            parent=parent,
            inside=inside,
            not_inside=not_inside,
            where=where,
        )

    def matches(self, node: Any, ancestors: Sequence[Any] = ()) -> bool:
        if self.kinds and node.kind not in self.kinds:
            return False
        if self.parent is not None:
            if not ancestors or ancestors[-1].kind != self.parent:
                return False
        if self.inside is not None:
            if not any(a.kind == self.inside for a in ancestors):
                return False
        if self.not_inside is not None:
            if any(a.kind == self.not_inside for a in ancestors):
                return False
        if self.name is not None and not self.name.search(node.spelling or ""):
            return False
        if self.type is not None and not self.type.search(node.type_spelling or ""):
            return False
        if self.where is not None and not self.where(node):
            return False
        return True


@dataclass(frozen=True)
class Registration:
    order: int
    pattern: Pattern
    callback: MatchCallback
    check_id: str


class Check:
    """
    Interface for programmatic checks: declare patterns, handle matches.
    Anything with `id`, `patterns()` and `on_match()` works with
    PatternRegistry.add_check; subclassing is optional.
    """

    id: str = ""

    def patterns(self) -> Sequence[Pattern]:
        raise NotImplementedError

    def on_match(self, node: Any, context: "MatchContext") -> None:
        raise NotImplementedError


class PatternRegistry:
    """
    Ordered (pattern, callback) pairs. Lookups are bucketed by node kind;
    patterns without a kind constraint are merged back in registration order.
    """

    def __init__(self) -> None:
        self._registrations: List[Registration] = []
        self._by_kind: Dict[str, List[Registration]] = {}
        self._wildcards: List[Registration] = []
        self._frozen = False

    def __len__(self) -> int:
        return len(self._registrations)

    def __iter__(self):
        return iter(self._registrations)

    def register(self, pattern: Pattern, callback: MatchCallback, *, check_id: str = "") -> Registration:
        if self._frozen:
            raise RuntimeError("pattern registry is frozen; register checks before running")
        if not check_id:
            check_id = getattr(callback, "__name__", "") or f"pattern-{len(self._registrations)}"
        registration = Registration(
            order=len(self._registrations),
            pattern=pattern,
            callback=callback,
            check_id=check_id,
        )
        self._registrations.append(registration)
        if pattern.kinds:
            for kind in pattern.kinds:
                self._by_kind.setdefault(kind, []).append(registration)
        else:
            self._wildcards.append(registration)
        return registration

    def add_check(self, check: Any) -> List[Registration]:
        check_id = getattr(check, "id", "") or type(check).__name__
        return [
            self.register(pattern, check.on_match, check_id=check_id)
            for pattern in check.patterns()
        ]

    def freeze(self) -> None:
        self._frozen = True

    def match(self, node: Any, ancestors: Sequence[Any] = ()) -> List[Registration]:
        keyed = self._by_kind.get(node.kind, [])
        if keyed and self._wildcards:
            candidates: Iterable[Registration] = heapq.merge(keyed, self._wildcards, key=lambda r: r.order)
        else:
            candidates = keyed or self._wildcards
        return [r for r in candidates if r.pattern.matches(node, ancestors)]


# ============================================================
# ====================== AST DISPATCHER ======================
# ============================================================

class MatchContext:
    """
    What a callback sees besides the node: the scopes and ancestors that
    enclose it, and a way to report findings. Only valid during the call.
    """

    def __init__(
        self,
        *,
        path: str,
        root: Any,
        scopes: Tuple[Any, ...],
        ancestors: Tuple[Any, ...],
        check_id: str,
        node: Any,
        sink: List[Finding],
    ) -> None:
        self.path = path
        self.translation_unit = root
        self.scopes = scopes
        self.ancestors = ancestors
        self.check_id = check_id
        self._node = node
        self._sink = sink

    @property
    def parent(self) -> Optional[Any]:
        return self.ancestors[-1] if self.ancestors else None

    @property
    def scope(self) -> Optional[Any]:
        return self.scopes[-1] if self.scopes else None

    @property
    def enclosing_function(self) -> Optional[Any]:
        for scope in reversed(self.scopes):
            if scope.kind in FUNCTION_KINDS:
                return scope
        return None

    @property
    def enclosing_record(self) -> Optional[Any]:
        for scope in reversed(self.scopes):
            if scope.kind in RECORD_KINDS:
                return scope
        return None

    def report(self, message: str, severity: Severity = "warning", node: Any = None) -> Finding:
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity '{severity}'")
        target = node if node is not None else self._node
        finding = Finding(
            location=target.location,
            message=message,
            severity=severity,
            check_id=self.check_id,
        )
        self._sink.append(finding)
        return finding


_EXIT = object()


class Dispatcher:
    """
    Walks one AST in pre-order and fires every matching registration.

    Scopes are pushed after a scope node's own callbacks run and popped once
    its subtree is done, so the context always describes the enclosing
    scopes. When `main_file` is set, nodes spelled in other files (headers)
    are skipped together with their subtrees; the root is always entered.
    """

    def __init__(self, registry: PatternRegistry, *, main_file: Optional[str] = None) -> None:
        self.registry = registry
        self._main_file = os.path.abspath(main_file) if main_file else None

    def run(self, root: Any, path: str = "") -> List[Finding]:
        findings: List[Finding] = []
        scopes: List[Any] = []
        ancestors: List[Any] = []

        stack: List[Any] = [root]
        while stack:
            node = stack.pop()
            if node is _EXIT:
                ancestors.pop()
                if stack.pop():
                    scopes.pop()
                continue
            if node is not root and not self._wanted(node):
                continue

            self._dispatch(node, root, path, scopes, ancestors, findings)

            opens_scope = node.kind in SCOPE_KINDS
            if opens_scope:
                scopes.append(node)
            ancestors.append(node)
            stack.append(opens_scope)
            stack.append(_EXIT)
            stack.extend(reversed(node.children()))
        return findings

    def _wanted(self, node: Any) -> bool:
        if self._main_file is None:
            return True
        file_name = node.location.file
        return bool(file_name) and os.path.abspath(file_name) == self._main_file

    def _dispatch(
        self,
        node: Any,
        root: Any,
        path: str,
        scopes: List[Any],
        ancestors: List[Any],
        findings: List[Finding],
    ) -> None:
        matched = self.registry.match(node, ancestors)
        if not matched:
            return
        scope_view = tuple(scopes)
        ancestor_view = tuple(ancestors)
        for registration in matched:
            context = MatchContext(
                path=path,
                root=root,
                scopes=scope_view,
                ancestors=ancestor_view,
                check_id=registration.check_id,
                node=node,
                sink=findings,
            )
            try:
                registration.callback(node, context)
            except Exception as exc:
                raise CheckError(
                    f"check '{registration.check_id}' failed on {node.kind} at {node.location}: {exc}"
                ) from exc


# ============================================================
# ================ BUILD CONFIGURATION LOOKUP ================
# ============================================================

COMPILE_DB_NAME = "compile_commands.json"

_PATH_FLAGS_WITH_VALUE = ("-I", "-isystem", "-iquote", "-idirafter", "-include")


def _absolutize(value: str, directory: str) -> str:
    if os.path.isabs(value):
        return value
    return os.path.normpath(os.path.join(directory, value))


def normalize_compile_command(arguments: Sequence[str], directory: str, filename: str) -> List[str]:
    """
    Turn a compile_commands.json entry into parser flags: drop the compiler,
    the source operand, -c, "--" and -o <out>; anchor include paths at `directory`.
    """
    source = _absolutize(filename, directory)
    flags: List[str] = []
    it = iter(list(arguments)[1:])
    for arg in it:
        if arg in ("-c", "--"):
            continue
        if arg == "-o":
            next(it, None)
            continue
        if arg.startswith("-o") and len(arg) > 2:
            continue
        if not arg.startswith("-") and _absolutize(arg, directory) == source:
            continue
        if arg in _PATH_FLAGS_WITH_VALUE:
            value = next(it, None)
            flags.append(arg)
            if value is not None:
                flags.append(_absolutize(value, directory))
            continue
        if arg.startswith("-I") and len(arg) > 2:
            flags.append("-I" + _absolutize(arg[2:], directory))
            continue
        flags.append(arg)
    return flags


class BuildConfigLookup:
    """
    Resolve compiler flags per file, the way clang tools do: fixed flags
    from "--" win; otherwise compile_commands.json from -p, or the first one
    found walking up from the source file's directory.
    """

    def __init__(self, options: ToolOptions) -> None:
        self.options = options
        self._databases: Dict[str, Optional["clang_cindex.CompilationDatabase"]] = {}

    def flags_for(self, path: str) -> Optional[List[str]]:
        base = self._base_flags(path)
        if base is None:
            return None
        return (
            list(self.options.extra_args_before)
            + base
            + list(self.options.extra_args)
            + list(self.options.env_args)
        )

    def _base_flags(self, path: str) -> Optional[List[str]]:
        if self.options.fixed_flags is not None:
            return list(self.options.fixed_flags)

        db_dir = self._database_dir(path)
        if db_dir is None:
            return None
        database = self._load_database(db_dir)
        if database is None:
            return None

        commands = database.getCompileCommands(os.path.abspath(path))
        if commands is None:
            return None
        for command in commands:
            return normalize_compile_command(list(command.arguments), command.directory, command.filename)
        return None

    def _database_dir(self, path: str) -> Optional[str]:
        if self.options.build_path:
            return self.options.build_path
        current = os.path.dirname(os.path.abspath(path))
        while True:
            if os.path.isfile(os.path.join(current, COMPILE_DB_NAME)):
                return current
            parent = os.path.dirname(current)
            if parent == current:
                return None
            current = parent

    def _load_database(self, db_dir: str) -> Optional["clang_cindex.CompilationDatabase"]:
        if db_dir in self._databases:
            return self._databases[db_dir]
        try:
            database = clang_cindex.CompilationDatabase.fromDirectory(db_dir)
        except clang_cindex.CompilationDatabaseError:
            if self.options.verbose:
                _log(f"No compilation database could be loaded from '{db_dir}'")
            database = None
        self._databases[db_dir] = database
        return database


# ============================================================
# ========================== PARSER ==========================
# ============================================================

ParserFn = Callable[[str, List[str], DiagnosticFilter], Any]


def parse_with_libclang(path: str, flags: List[str], diagnostic_filter: DiagnosticFilter) -> ClangNode:
    """
    Parse one file with libclang and return its translation-unit node.

    Diagnostics are routed into `diagnostic_filter`; libclang itself is told
    not to print them (Index.create does not enable display).
    """
    index = clang_cindex.Index.create()
    try:
        clang_tu = index.parse(path, args=flags, options=0)
    except clang_cindex.TranslationUnitLoadError as exc:
        raise ParseError(f"libclang could not parse '{path}'") from exc

    for diagnostic in clang_tu.diagnostics:
        diagnostic_filter.handle(diagnostic)

    return ClangNode(clang_tu.cursor)


# ============================================================
# ==================== PER-FILE PIPELINE =====================
# ============================================================

class FilePipeline:
    """
    Pending -> Parsing -> ParsedOK -> Analyzing -> Completed, or ParseFailed.
    """

    def __init__(
        self,
        options: ToolOptions,
        registry: PatternRegistry,
        *,
        flags_lookup: Optional[BuildConfigLookup] = None,
        parser: Optional[ParserFn] = None,
    ) -> None:
        self.options = options
        self.registry = registry
        self.flags_lookup = flags_lookup or BuildConfigLookup(options)
        self.parser = parser or parse_with_libclang

    def run(self, path: str) -> FileResult:
        result = FileResult(path=path)

        flags = self.flags_lookup.flags_for(path)
        if flags is None:
            return self._fail(result, "NoBuildConfig", "no compilation database entry or fixed flags")

        input_file = InputFile(path=path, flags=tuple(flags))
        result.flags = input_file.flags
        result.state = "Parsing"
        if self.options.verbose:
            _log(f"Analyzing '{path}' ({len(input_file.flags)} flags)")

        diagnostic_filter = DiagnosticFilter()
        try:
            root = self.parser(input_file.path, list(input_file.flags), diagnostic_filter)
        except ParseError as exc:
            result.suppressed_diagnostics = diagnostic_filter.discarded
            return self._fail(result, "FatalParseError", str(exc))

        result.suppressed_diagnostics = diagnostic_filter.discarded
        if self.options.verbose and diagnostic_filter.discarded:
            _log(f"Suppressed {diagnostic_filter.discarded} parser diagnostic(s) for '{path}'")
        if diagnostic_filter.fatal_seen:
            return self._fail(result, "FatalParseError", "front end stopped after a fatal diagnostic")

        result.state = "ParsedOK"
        dispatcher = Dispatcher(
            self.registry,
            main_file=None if self.options.include_headers else input_file.path,
        )
        result.state = "Analyzing"
        result.findings = dispatcher.run(root, path)
        # drop the AST before the next file is parsed
        del root

        result.state = "Completed"
        if self.options.verbose:
            _log(f"Completed '{path}': {len(result.findings)} finding(s)")
        return result

    def _fail(self, result: FileResult, reason: FailureReason, detail: str) -> FileResult:
        result.state = "ParseFailed"
        result.failure = ParseFailure(path=result.path, reason=reason, detail=detail)
        if self.options.verbose:
            _log(f"Parse failed for '{result.path}' ({reason})")
        return result


# ============================================================
# ====================== BATCH RUNNER ========================
# ============================================================

def filepath_accessible(path: str) -> bool:
    """True if `path` can be opened for reading."""
    try:
        with open(path, "rb"):
            return True
    except OSError:
        return False


class BatchRunner:
    """
    Validates the whole file list up front, then runs the pipeline over each
    file in order. The first inaccessible path aborts the batch.
    """

    def __init__(self, options: ToolOptions, pipeline: FilePipeline) -> None:
        self.options = options
        self.pipeline = pipeline

    def run(self, files: Optional[Sequence[str]] = None) -> BatchReport:
        paths = list(self.options.files if files is None else files)
        if not paths:
            raise ConfigError("No input files specified")
        for path in paths:
            if not filepath_accessible(path):
                raise InaccessibleFile(path)

        report = BatchReport()
        for path in paths:
            report.results.append(self.pipeline.run(path))
        return report


# ============================================================
# ==================== DECLARATIVE CHECKS ====================
# ============================================================

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class DeclarativeCheck(Check):
    """
    A check declared in YAML: one pattern, one message template.

    The message may reference `node`, `function`, `record`, `parent` and
    `file` with dotted attribute paths, e.g. "{{ function.spelling }}".
    """

    def __init__(
        self,
        id: str,
        pattern: Pattern,
        message: str,
        severity: Severity = "warning",
        description: str = "",
    ) -> None:
        self.id = id
        self.pattern = pattern
        self.message = message
        self.severity = severity
        self.description = description
        self._template_errors_reported: Set[str] = set()

    def patterns(self) -> Sequence[Pattern]:
        return [self.pattern]

    def on_match(self, node: Any, context: MatchContext) -> None:
        env = {
            "node": node,
            "function": context.enclosing_function,
            "record": context.enclosing_record,
            "parent": context.parent,
            "file": context.path,
        }
        context.report(self.render_message(env), self.severity)

    def render_message(self, env: Dict[str, Any]) -> str:
        def replace(match: "re.Match[str]") -> str:
            expr = match.group(1)
            value = self._resolve(expr, env)
            return "" if value is None else str(value)

        return TEMPLATE_PATTERN.sub(replace, self.message)

    def _resolve(self, expr: str, env: Dict[str, Any]) -> Any:
        head, *rest = expr.split(".")
        if head not in env:
            self._report_template_error(expr, f"unknown name '{head}'")
            return None
        value = env[head]
        for attr in rest:
            if value is None:
                return None
            if attr.startswith("_") or not hasattr(value, attr):
                self._report_template_error(expr, f"no attribute '{attr}'")
                return None
            value = getattr(value, attr)
            if callable(value):
                self._report_template_error(expr, f"'{attr}' is a method")
                return None
        return value

    def _report_template_error(self, expr: str, reason: str) -> None:
        if expr in self._template_errors_reported:
            return
        _log(f"Failed to render '{{{{ {expr} }}}}' for check '{self.id}': {reason}.")
        self._template_errors_reported.add(expr)


def _known_cursor_kinds() -> Set[str]:
    return {kind.name for kind in clang_cindex.CursorKind.get_all_kinds()}


def load_checks_from_yaml(yaml_paths: Sequence[str]) -> List[DeclarativeCheck]:
    """
    Load DeclarativeCheck objects from YAML check files.

    A document may be a list of checks, a mapping with a `checks:` list, or a
    single check. Malformed entries are skipped with a warning; a file that
    cannot be read or parsed is a ConfigError.
    """
    if not yaml_paths:
        return []

    known_kinds = _known_cursor_kinds()

    def _to_str_list(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v) for v in value if v is not None]
        return [str(value)]

    def _normalize_check_docs(doc: Any) -> List[Dict[str, Any]]:
        if doc is None:
            return []
        if isinstance(doc, list):
            return [item for item in doc if isinstance(item, dict)]
        if isinstance(doc, dict):
            if isinstance(doc.get("checks"), list):
                return [item for item in doc["checks"] if isinstance(item, dict)]
            return [doc]
        return []

    def _skip(origin: str, reason: str) -> None:
        _log(f"Skipping check from {origin}: {reason}.")

    def _build_check(raw: Dict[str, Any], origin: str) -> Optional[DeclarativeCheck]:
        required_fields = {
            "id": raw.get("id"),
            "match": raw.get("match"),
            "message": raw.get("message"),
        }
        missing = [name for name, value in required_fields.items() if value in (None, "")]
        if missing:
            _skip(origin, f"missing required field(s) {missing}")
            return None

        match = raw["match"]
        if not isinstance(match, dict):
            _skip(origin, "'match' must be a mapping")
            return None

        severity = str(raw.get("severity", "warning"))
        if severity not in SEVERITIES:
            _skip(origin, f"unknown severity '{severity}'")
            return None

        kinds = _to_str_list(match.get("kind"))
        referenced_kinds = kinds + [
            str(match[key]) for key in ("parent", "inside", "not_inside") if match.get(key)
        ]
        unknown = sorted(k for k in referenced_kinds if k not in known_kinds)
        if unknown:
            _skip(origin, f"unknown node kind(s) {unknown}")
            return None

        try:
            pattern = Pattern.build(
                kinds or None,
                name=str(match["name"]) if match.get("name") is not None else None,
                type=str(match["type"]) if match.get("type") is not None else None,
                parent=str(match["parent"]) if match.get("parent") else None,
                inside=str(match["inside"]) if match.get("inside") else None,
                not_inside=str(match["not_inside"]) if match.get("not_inside") else None,
            )
        except re.error as exc:
            _skip(origin, f"invalid regex ({exc})")
            return None

        return DeclarativeCheck(
            id=str(required_fields["id"]),
            pattern=pattern,
            message=str(required_fields["message"]),
            severity=severity,  # type: ignore[arg-type]
            description=str(raw.get("description", "")),
        )

    checks: List[DeclarativeCheck] = []
    for path in yaml_paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except FileNotFoundError as exc:
            raise ConfigError(f"Check file not found: {path}") from exc
        except OSError as exc:
            raise ConfigError(f"Could not read check file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in check file {path}: {exc}") from exc

        for doc_index, doc in enumerate(documents):
            for raw in _normalize_check_docs(doc):
                origin = f"{path}#doc{doc_index + 1}"
                check = _build_check(raw, origin)
                if check:
                    checks.append(check)

    return checks


# ============================================================
# ========================= OUTPUT ===========================
# ============================================================

def format_finding(finding: Finding) -> str:
    suffix = f" [{finding.check_id}]" if finding.check_id else ""
    return f"{finding.location}: {finding.severity}: {finding.message}{suffix}"


def finding_to_json_obj(finding: Finding) -> Dict[str, Any]:
    """
    Explicit field order so the JSON output stays stable.
    """
    return {
        "check_id": finding.check_id,
        "severity": finding.severity,
        "message": finding.message,
        "location": {
            "file": finding.location.file,
            "line": finding.location.line,
            "column": finding.location.column,
        },
    }


def failure_to_json_obj(failure: ParseFailure) -> Dict[str, Any]:
    return {
        "file": failure.path,
        "reason": failure.reason,
        "detail": failure.detail,
    }


def report_to_json_obj(report: BatchReport) -> Dict[str, Any]:
    return {
        "tool": TOOL_NAME,
        "version": __version__,
        "findings": [finding_to_json_obj(f) for f in report.findings],
        "failures": [failure_to_json_obj(f) for f in report.failures],
    }


def emit_report_text(report: BatchReport, out: Any, err: Any, *, verbose: bool = False) -> None:
    for finding in report.findings:
        out.write(format_finding(finding) + "\n")
    for failure in report.failures:
        detail = f": {failure.detail}" if failure.detail else ""
        err.write(f"{failure.path}: parse failed ({failure.reason}){detail}\n")
    if verbose:
        err.write(
            f"[{TOOL_NAME}] {len(report.results)} file(s), "
            f"{len(report.findings)} finding(s), {len(report.failures)} failure(s)\n"
        )


def emit_report_json(report: BatchReport, out: Any) -> None:
    text = json.dumps(report_to_json_obj(report), indent=2, sort_keys=False)
    out.write(text + "\n")


def emit_report(report: BatchReport, options: ToolOptions) -> None:
    if options.out:
        with open(options.out, "w", encoding="utf-8") as handle:
            _emit(report, options, handle)
    else:
        _emit(report, options, sys.stdout)


def _emit(report: BatchReport, options: ToolOptions, out: Any) -> None:
    if options.output_format == "json":
        emit_report_json(report, out)
    else:
        emit_report_text(report, out, sys.stderr, verbose=options.verbose)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def build_registry(options: ToolOptions, checks: Iterable[Any] = ()) -> PatternRegistry:
    """
    Register programmatic checks first, then YAML checks, and freeze.
    """
    registry = PatternRegistry()
    for check in checks:
        registry.add_check(check)
    for check in load_checks_from_yaml(options.check_files):
        registry.add_check(check)
    registry.freeze()
    if options.verbose:
        _log(f"Registered {len(registry)} pattern(s)")
    return registry


def main(argv: Optional[List[str]] = None, checks: Iterable[Any] = ()) -> int:
    """
    CLI entry point.
    Intended usage:
      matchlint --checks checks.yaml src/a.c src/b.c -- -Iinclude -DDEBUG

    Exit status is 0 unless the file list is empty, a file cannot be read,
    or the configuration is unusable. Findings do not affect it.
    """
    options = parse_args(argv)

    try:
        if not options.files:
            raise ConfigError("No input files specified")
        registry = build_registry(options, checks)
        runner = BatchRunner(options, FilePipeline(options, registry))
        report = runner.run()
    except InaccessibleFile as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except ConfigError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    except (CheckError, clang_cindex.LibclangError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1

    emit_report(report, options)
    return 0


if __name__ == "__main__":
    sys.exit(main())
