from __future__ import annotations

from pathlib import Path

import pytest

from uta.resolver import (
    ClassScope,
    MethodScope,
    ProjectScope,
    ResolutionError,
    TargetResolver,
    describe_scope,
)
from uta.schema import TargetKind

CALCULATOR = "src/tiny_app/calculator.py"


def _resolver(root: Path, **kwargs) -> TargetResolver:
    return TargetResolver(root, source_roots=["src"], tests_dir="tests", **kwargs)


def test_method_scope_resolves_single_target(tiny_repo) -> None:
    targets = _resolver(tiny_repo.root).resolve(MethodScope(CALCULATOR, "Calculator.divide"))

    assert len(targets) == 1
    target = targets[0]
    assert target.target_id == "tiny_app.calculator::Calculator.divide"
    assert target.kind is TargetKind.METHOD
    assert target.module == "tiny_app.calculator"
    assert target.class_name == "Calculator"
    assert target.test_path == "tests/test_tiny_app_calculator_calculator_divide.py"
    method = target.methods[0]
    assert method.raises == ("ZeroDivisionError",)
    assert method.branches
    assert method.signature == "def divide(self, divisor: int) -> float"
    assert target.source.startswith("def divide")
    assert any(outline.startswith("class Calculator:") for outline in target.referenced_types)
    assert "import math" in target.dependencies


def test_class_scope_yields_one_target_per_testable_method(tiny_repo) -> None:
    targets = _resolver(tiny_repo.root).resolve(ClassScope(CALCULATOR, "Calculator"))

    assert [target.target_id for target in targets] == [
        "tiny_app.calculator::Calculator.add",
        "tiny_app.calculator::Calculator.divide",
    ]
    assert all(target.kind is TargetKind.METHOD for target in targets)


def test_accessors_are_included_when_requested(tiny_repo) -> None:
    targets = _resolver(tiny_repo.root, include_accessors=True).resolve(
        ClassScope(CALCULATOR, "Calculator")
    )
    names = [target.methods[0].name for target in targets]
    assert names == ["value", "get_total", "add", "divide"]


def test_module_functions_scope(tiny_repo) -> None:
    targets = _resolver(tiny_repo.root).resolve(ClassScope(CALCULATOR))

    assert [target.target_id for target in targets] == [
        "tiny_app.calculator::add",
        "tiny_app.calculator::hypot",
    ]
    assert all(target.existing_test == "tests/test_calculator.py" for target in targets)


def test_project_scope_is_sorted_and_skips_broken_files(tiny_repo) -> None:
    (tiny_repo.root / "src" / "tiny_app" / "broken.py").write_text("def oops(:\n", encoding="utf-8")

    targets = _resolver(tiny_repo.root).resolve(ProjectScope())

    assert [(target.target_id, target.kind) for target in targets] == [
        ("tiny_app.calculator", TargetKind.MODULE),
        ("tiny_app.calculator::Calculator", TargetKind.CLASS),
        ("tiny_app.shapes::Square", TargetKind.CLASS),
    ]
    calculator = targets[1]
    assert [method.name for method in calculator.methods] == ["add", "divide"]
    assert calculator.source.startswith("class Calculator")


def test_resolution_is_deterministic(tiny_repo) -> None:
    resolver = _resolver(tiny_repo.root)
    assert resolver.resolve(ProjectScope()) == resolver.resolve(ProjectScope())


def test_existing_preferred_test_path_gets_generated_suffix(tiny_repo) -> None:
    existing = tiny_repo.root / "tests" / "test_tiny_app_calculator_add.py"
    existing.write_text("def test_placeholder():\n    pass\n", encoding="utf-8")

    target = _resolver(tiny_repo.root).resolve(MethodScope(CALCULATOR, "add"))[0]

    assert target.test_path == "tests/test_tiny_app_calculator_add_generated.py"
    assert target.existing_test == "tests/test_tiny_app_calculator_add.py"


@pytest.mark.parametrize(
    "scope, message",
    [
        (MethodScope("src/tiny_app/missing.py", "run"), "not found"),
        (MethodScope(CALCULATOR, "Missing.run"), "Class 'Missing'"),
        (MethodScope(CALCULATOR, "Calculator.nope"), "Calculator.nope"),
        (MethodScope(CALCULATOR, "nope"), "Function 'nope'"),
        (ClassScope(CALCULATOR, "Missing"), "Class 'Missing'"),
        (ProjectScope("does/not/exist"), "Project root not found"),
    ],
)
def test_unresolvable_scopes_raise(tiny_repo, scope, message: str) -> None:
    with pytest.raises(ResolutionError, match=message):
        _resolver(tiny_repo.root).resolve(scope)


def test_syntax_error_is_reported_for_explicit_scope(tiny_repo) -> None:
    (tiny_repo.root / "src" / "tiny_app" / "broken.py").write_text("def oops(:\n", encoding="utf-8")
    with pytest.raises(ResolutionError, match="Syntax error"):
        _resolver(tiny_repo.root).resolve(ClassScope("src/tiny_app/broken.py"))


def test_describe_scope() -> None:
    assert describe_scope(MethodScope("a.py", "A.run")) == "a.py::A.run"
    assert describe_scope(ClassScope("a.py")) == "a.py"
    assert describe_scope(ProjectScope()) == "project:."


def test_project_scope_honours_encoding_cookies(tiny_repo) -> None:
    legacy = tiny_repo.root / "src" / "tiny_app" / "legacy.py"
    legacy.write_bytes(
        "# -*- coding: latin-1 -*-\n\n\ndef greet(name):\n    return 'café ' + name\n".encode("latin-1")
    )

    targets = _resolver(tiny_repo.root).resolve(ProjectScope())

    assert [target.target_id for target in targets] == [
        "tiny_app.calculator",
        "tiny_app.calculator::Calculator",
        "tiny_app.legacy",
        "tiny_app.shapes::Square",
    ]
    assert "café" in targets[2].source


def test_undecodable_file_is_skipped_or_reported(tiny_repo) -> None:
    garbled = b"import os\n\n\ndef run():\n    return '\xe9\xff'\n"
    (tiny_repo.root / "src" / "tiny_app" / "garbled.py").write_bytes(garbled)

    targets = _resolver(tiny_repo.root).resolve(ProjectScope())
    assert "tiny_app.garbled" not in [target.target_id for target in targets]

    with pytest.raises(ResolutionError, match="Cannot decode"):
        _resolver(tiny_repo.root).resolve(ClassScope("src/tiny_app/garbled.py"))


def test_nested_class_with_outer_name_keeps_outer_methods(tiny_repo) -> None:
    (tiny_repo.root / "src" / "tiny_app" / "nested.py").write_text(
        "class Outer:\n"
        "    class Outer:\n"
        "        pass\n"
        "\n"
        "    def run(self, flag):\n"
        "        if flag:\n"
        "            return 1\n"
        "        return 0\n",
        encoding="utf-8",
    )

    targets = _resolver(tiny_repo.root).resolve(ClassScope("src/tiny_app/nested.py", "Outer"))

    assert [target.target_id for target in targets] == ["tiny_app.nested::Outer.run"]
    assert targets[0].class_name == "Outer"
