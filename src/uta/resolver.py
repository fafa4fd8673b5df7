"""Resolve scope specifications into generation targets using libcst."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import libcst as cst
from libcst import metadata

from .config import AppConfig
from .schema import GenerationTarget, MethodInfo, TargetKind
from .utils.slug import identifier_slug

LOGGER = logging.getLogger(__name__)

_ACCESSOR_PREFIXES = ("get_", "set_", "is_")
_SKIP_DIRS = frozenset(
    {".git", ".hg", ".tox", ".nox", ".venv", "venv", "env", "__pycache__", "build", "dist", "node_modules"}
)
_SKIP_FILES = frozenset({"setup.py", "conftest.py", "noxfile.py"})


class ResolutionError(ValueError):
    """Raised when a scope cannot be turned into generation targets."""


@dataclass(frozen=True, slots=True)
class MethodScope:
    """A single function or method, addressed as ``Class.method`` or ``function``."""

    path: str
    qualname: str


@dataclass(frozen=True, slots=True)
class ClassScope:
    """All testable methods of a class, or the module-level functions when ``class_name`` is None."""

    path: str
    class_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProjectScope:
    root: Optional[str] = None


Scope = Union[MethodScope, ClassScope, ProjectScope]


def describe_scope(scope: Scope) -> str:
    if isinstance(scope, MethodScope):
        return f"{scope.path}::{scope.qualname}"
    if isinstance(scope, ClassScope):
        return f"{scope.path}::{scope.class_name}" if scope.class_name else scope.path
    return f"project:{scope.root or '.'}"


@dataclass(slots=True)
class _Function:
    node: cst.FunctionDef
    info: MethodInfo
    code: str


@dataclass(slots=True)
class _Class:
    name: str
    signature: str
    first_line: int
    last_line: int
    code: str
    methods: List[_Function] = field(default_factory=list)

    def outline(self) -> str:
        lines = [f"{self.signature}:"]
        for function in self.methods:
            lines.append(f"    {function.info.signature}: ...")
        if not self.methods:
            lines.append("    ...")
        return "\n".join(lines)


@dataclass(slots=True)
class _ModuleFacts:
    imports: List[str] = field(default_factory=list)
    classes: Dict[str, _Class] = field(default_factory=dict)
    functions: Dict[str, _Function] = field(default_factory=dict)


class _BodyFacts(cst.CSTVisitor):
    """Collect raised exception names and branching constructs in a function body."""

    def __init__(self) -> None:
        self.raises: List[str] = []
        self.branches = False

    def visit_Raise(self, node: cst.Raise) -> None:
        exc = node.exc
        if isinstance(exc, cst.Call):
            exc = exc.func
        name = _dotted_name(exc) if exc is not None else None
        if name and name not in self.raises:
            self.raises.append(name)

    def _mark(self, node: cst.CSTNode) -> None:
        self.branches = True

    visit_If = _mark
    visit_IfExp = _mark
    visit_For = _mark
    visit_While = _mark
    visit_Try = _mark
    visit_BooleanOperation = _mark
    visit_CompIf = _mark
    visit_Match = _mark


def _dotted_name(node: Optional[cst.CSTNode]) -> Optional[str]:
    if isinstance(node, cst.Name):
        return node.value
    if isinstance(node, cst.Attribute):
        prefix = _dotted_name(node.value)
        return f"{prefix}.{node.attr.value}" if prefix else node.attr.value
    return None


def _statement_count(body: cst.BaseSuite) -> int:
    if isinstance(body, cst.SimpleStatementSuite):
        return len(body.body)
    statements = list(body.body)
    if statements and _is_docstring(statements[0]):
        statements = statements[1:]
    return len(statements)


def _is_docstring(statement: cst.BaseStatement) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine) or len(statement.body) != 1:
        return False
    expr = statement.body[0]
    return isinstance(expr, cst.Expr) and isinstance(expr.value, (cst.SimpleString, cst.ConcatenatedString))


def _is_accessor(node: cst.FunctionDef) -> bool:
    for decorator in node.decorators:
        name = _dotted_name(decorator.decorator) or ""
        if name in {"property", "functools.cached_property", "cached_property"}:
            return True
        if name.endswith((".setter", ".getter", ".deleter")):
            return True
    return node.name.value.startswith(_ACCESSOR_PREFIXES) and _statement_count(node.body) <= 1


class _ModuleCollector(cst.CSTVisitor):
    """Collect top-level imports, classes and functions with their line spans."""

    METADATA_DEPENDENCIES = (metadata.PositionProvider,)

    def __init__(self, module: cst.Module) -> None:
        self._module = module
        self._depth = 0
        self._class_stack: List[_Class] = []
        self._class_nodes: List[cst.ClassDef] = []
        self.facts = _ModuleFacts()

    def visit_Import(self, node: cst.Import) -> None:
        if self._depth == 0 and not self._class_stack:
            self.facts.imports.append(self._module.code_for_node(node))

    def visit_ImportFrom(self, node: cst.ImportFrom) -> None:
        if self._depth == 0 and not self._class_stack:
            self.facts.imports.append(self._module.code_for_node(node))

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        if self._depth or self._class_stack:
            return False
        start, end = self._lines(node)
        bases = [self._module.code_for_node(base.value) for base in node.bases]
        signature = f"class {node.name.value}"
        if bases:
            signature = f"{signature}({', '.join(bases)})"
        record = _Class(
            name=node.name.value,
            signature=signature,
            first_line=start,
            last_line=end,
            code=self._module.code_for_node(node),
        )
        self.facts.classes[record.name] = record
        self._class_stack.append(record)
        self._class_nodes.append(node)
        return True

    def leave_ClassDef(self, original_node: cst.ClassDef) -> None:
        if self._class_nodes and self._class_nodes[-1] is original_node:
            self._class_nodes.pop()
            self._class_stack.pop()

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        if self._depth == 0:
            owner = self._class_stack[-1] if self._class_stack else None
            function = self._function(node, owner)
            if owner is not None:
                owner.methods.append(function)
            else:
                self.facts.functions[function.info.name] = function
        self._depth += 1
        return True

    def leave_FunctionDef(self, original_node: cst.FunctionDef) -> None:
        self._depth -= 1

    def _function(self, node: cst.FunctionDef, owner: Optional[_Class]) -> _Function:
        start, end = self._lines(node)
        params = self._module.code_for_node(node.params)
        prefix = "async def" if node.asynchronous is not None else "def"
        signature = f"{prefix} {node.name.value}({params})"
        if node.returns is not None:
            signature = f"{signature} -> {self._module.code_for_node(node.returns.annotation)}"
        facts = _BodyFacts()
        node.body.visit(facts)
        docstring = node.get_docstring() or ""
        name = node.name.value
        info = MethodInfo(
            name=name,
            qualname=f"{owner.name}.{name}" if owner else name,
            signature=signature,
            first_line=start,
            last_line=end,
            raises=tuple(facts.raises),
            is_async=node.asynchronous is not None,
            is_accessor=_is_accessor(node),
            branches=facts.branches,
            docstring=docstring.strip().splitlines()[0] if docstring.strip() else "",
        )
        return _Function(node=node, info=info, code=self._module.code_for_node(node))

    def _lines(self, node: cst.CSTNode) -> Tuple[int, int]:
        code_range = self.get_metadata(metadata.PositionProvider, node)
        return code_range.start.line, code_range.end.line


class TargetResolver:
    """Turn scope specifications into ordered :class:`GenerationTarget` lists.

    Results depend only on the files under ``repo_root``; resolving the same
    scope against an unchanged tree yields identical targets.
    """

    def __init__(
        self,
        repo_root: Path | str,
        *,
        source_roots: Sequence[str] = ("src", "."),
        tests_dir: str = "tests",
        include_accessors: bool = False,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.source_roots = tuple(source_roots) or (".",)
        self.tests_dir = tests_dir.strip("/") or "tests"
        self.include_accessors = include_accessors

    @classmethod
    def from_config(cls, config: AppConfig, repo_root: Path) -> "TargetResolver":
        return cls(
            repo_root,
            source_roots=config.project.source_roots,
            tests_dir=config.project.tests_dir,
            include_accessors=config.engine.include_accessors,
        )

    def resolve(self, scope: Scope) -> List[GenerationTarget]:
        if isinstance(scope, MethodScope):
            return [self._resolve_method(scope)]
        if isinstance(scope, ClassScope):
            return self._resolve_class(scope)
        if isinstance(scope, ProjectScope):
            return self._resolve_project(scope)
        raise ResolutionError(f"Unsupported scope: {scope!r}")

    # -- scopes ---------------------------------------------------------

    def _resolve_method(self, scope: MethodScope) -> GenerationTarget:
        path, module_name, facts = self._load(scope.path)
        class_name, _, method_name = scope.qualname.rpartition(".")
        if class_name:
            owner = facts.classes.get(class_name)
            if owner is None:
                raise ResolutionError(f"Class '{class_name}' not found in {path}")
            function = next((item for item in owner.methods if item.info.name == method_name), None)
            if function is None:
                raise ResolutionError(f"Method '{scope.qualname}' not found in {path}")
        else:
            function = facts.functions.get(method_name)
            if function is None:
                raise ResolutionError(f"Function '{method_name}' not found in {path}")
        return self._target(
            kind=TargetKind.METHOD,
            path=path,
            module_name=module_name,
            class_name=class_name or None,
            functions=[function],
            facts=facts,
            label=scope.qualname,
        )

    def _resolve_class(self, scope: ClassScope) -> List[GenerationTarget]:
        path, module_name, facts = self._load(scope.path)
        if scope.class_name is None:
            functions = self._testable(facts.functions.values())
            if not functions:
                raise ResolutionError(f"No testable module-level functions in {path}")
        else:
            owner = facts.classes.get(scope.class_name)
            if owner is None:
                raise ResolutionError(f"Class '{scope.class_name}' not found in {path}")
            functions = self._testable(owner.methods)
            if not functions:
                raise ResolutionError(f"Class '{scope.class_name}' in {path} has no testable methods")
        return [
            self._target(
                kind=TargetKind.METHOD,
                path=path,
                module_name=module_name,
                class_name=scope.class_name,
                functions=[function],
                facts=facts,
                label=function.info.qualname,
            )
            for function in functions
        ]

    def _resolve_project(self, scope: ProjectScope) -> List[GenerationTarget]:
        base = self.repo_root
        if scope.root:
            base = (self.repo_root / scope.root).resolve()
            if not base.is_dir():
                raise ResolutionError(f"Project root not found: {base}")
        targets: Dict[str, GenerationTarget] = {}
        for file_path in self._source_files(base):
            relative = file_path.relative_to(self.repo_root).as_posix()
            try:
                path, module_name, facts = self._load(relative)
            except ResolutionError as error:
                LOGGER.warning("Skipping %s: %s", relative, error)
                continue
            for owner in facts.classes.values():
                functions = self._testable(owner.methods)
                if functions:
                    target = self._target(
                        kind=TargetKind.CLASS,
                        path=path,
                        module_name=module_name,
                        class_name=owner.name,
                        functions=functions,
                        facts=facts,
                        label=owner.name,
                    )
                    targets.setdefault(target.target_id, target)
            functions = self._testable(facts.functions.values())
            if functions:
                target = self._target(
                    kind=TargetKind.MODULE,
                    path=path,
                    module_name=module_name,
                    class_name=None,
                    functions=functions,
                    facts=facts,
                    label=None,
                )
                targets.setdefault(target.target_id, target)
        return [targets[key] for key in sorted(targets)]

    # -- helpers --------------------------------------------------------

    def _testable(self, functions: Iterable[_Function]) -> List[_Function]:
        selected: List[_Function] = []
        for function in functions:
            info = function.info
            if info.name.startswith("_"):
                continue
            if info.is_accessor and not info.branches and not self.include_accessors:
                continue
            selected.append(function)
        return selected

    def _load(self, raw_path: str) -> Tuple[str, str, _ModuleFacts]:
        candidate = Path(raw_path)
        absolute = candidate if candidate.is_absolute() else self.repo_root / candidate
        absolute = absolute.resolve()
        if not absolute.is_file():
            raise ResolutionError(f"Source file not found: {raw_path}")
        if absolute.suffix != ".py":
            raise ResolutionError(f"Not a Python source file: {raw_path}")
        try:
            relative = absolute.relative_to(self.repo_root).as_posix()
        except ValueError as error:
            raise ResolutionError(f"{raw_path} is outside the project root {self.repo_root}") from error
        try:
            module = cst.parse_module(absolute.read_bytes())
        except OSError as error:
            raise ResolutionError(f"Cannot read {relative}: {error}") from error
        except cst.ParserSyntaxError as error:
            raise ResolutionError(f"Syntax error in {relative}: {error.message} (line {error.raw_line})") from error
        except (UnicodeDecodeError, LookupError, SyntaxError) as error:
            raise ResolutionError(f"Cannot decode {relative}: {error}") from error
        wrapper = metadata.MetadataWrapper(module)
        collector = _ModuleCollector(wrapper.module)
        wrapper.visit(collector)
        return relative, self._module_name(absolute), collector.facts

    def _module_name(self, absolute: Path) -> str:
        for root in self.source_roots:
            base = (self.repo_root / root).resolve()
            try:
                relative = absolute.relative_to(base)
            except ValueError:
                continue
            parts = list(relative.with_suffix("").parts)
            if parts and parts[-1] == "__init__":
                parts = parts[:-1]
            if parts:
                return ".".join(parts)
        return absolute.stem

    def _source_files(self, base: Path) -> Iterator[Path]:
        tests_root = (self.repo_root / self.tests_dir).resolve()
        seen: set[Path] = set()
        for root in self.source_roots:
            root_path = (self.repo_root / root).resolve()
            if not root_path.is_dir():
                continue
            for file_path in sorted(root_path.rglob("*.py")):
                if file_path in seen:
                    continue
                seen.add(file_path)
                if not _within(file_path, base) or _within(file_path, tests_root):
                    continue
                relative_parts = file_path.relative_to(self.repo_root).parts
                if any(part in _SKIP_DIRS or part.startswith(".") for part in relative_parts[:-1]):
                    continue
                name = file_path.name
                if name in _SKIP_FILES or name.startswith("test_") or name.endswith("_test.py"):
                    continue
                yield file_path

    def _target(
        self,
        *,
        kind: TargetKind,
        path: str,
        module_name: str,
        class_name: Optional[str],
        functions: List[_Function],
        facts: _ModuleFacts,
        label: Optional[str],
    ) -> GenerationTarget:
        target_id = f"{module_name}::{label}" if label else module_name
        if kind is TargetKind.CLASS and class_name:
            source = facts.classes[class_name].code.strip("\n")
        else:
            source = "\n\n".join(function.code.strip("\n") for function in functions)
        referenced = tuple(
            owner.outline()
            for name, owner in sorted(facts.classes.items())
            if (kind is TargetKind.METHOD and name == class_name)
            or (name != class_name and re.search(rf"\b{re.escape(name)}\b", source))
        )
        test_path, existing = self._test_paths(module_name, label)
        return GenerationTarget(
            target_id=target_id,
            kind=kind,
            path=path,
            module=module_name,
            class_name=class_name,
            methods=tuple(function.info for function in functions),
            test_path=test_path,
            dependencies=tuple(facts.imports),
            referenced_types=referenced,
            source=source,
            existing_test=existing,
        )

    def _test_paths(self, module_name: str, label: Optional[str]) -> Tuple[str, Optional[str]]:
        stem = identifier_slug(f"{module_name}.{label}" if label else module_name)
        preferred = f"{self.tests_dir}/test_{stem}.py"
        short = f"{self.tests_dir}/test_{identifier_slug(module_name.rsplit('.', 1)[-1])}.py"
        existing = next(
            (candidate for candidate in (preferred, short) if (self.repo_root / candidate).is_file()),
            None,
        )
        if (self.repo_root / preferred).exists():
            return f"{self.tests_dir}/test_{stem}_generated.py", existing
        return preferred, existing


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


__all__ = [
    "ClassScope",
    "MethodScope",
    "ProjectScope",
    "ResolutionError",
    "Scope",
    "TargetResolver",
    "describe_scope",
]
