"""Prompt templates and helpers shared by the test generator."""

from __future__ import annotations

from typing import Sequence

from .schema import DiagnosticKind, GenerationTarget, TargetKind

SYSTEM_PREAMBLE = (
    "You are a senior Python engineer who writes focused, deterministic pytest unit tests. "
    "Tests must import the code under test by its module path, avoid network and filesystem "
    "side effects outside tmp_path, and finish quickly."
)

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object with the keys `test_source` (the complete "
    "pytest module as a string) and `rationale` (one or two sentences). "
    "Do not include markdown fences, explanations, or trailing text."
)

_REPAIR_GUIDANCE = {
    DiagnosticKind.COMPILE_ERROR: (
        "The previous test module did not import or collect. Fix syntax errors, import the "
        "code under test by its exact module path, and only use names that exist."
    ),
    DiagnosticKind.ASSERTION_FAILURE: (
        "Assertions failed. Re-derive every expected value from the source code rather than "
        "guessing, and drop assertions about behaviour the code does not implement."
    ),
    DiagnosticKind.RUNTIME_EXCEPTION: (
        "Tests raised unexpected exceptions. Fix fixture setup and constructor arguments, and "
        "use pytest.raises only for exceptions the code is documented to raise."
    ),
    DiagnosticKind.TIMEOUT: (
        "The tests timed out. Simplify them, avoid unbounded loops, sleeps, and blocking I/O, "
        "and keep inputs small."
    ),
}


def repair_guidance(kind: DiagnosticKind) -> str:
    """Return the repair instruction that matches the last diagnostic kind."""
    return _REPAIR_GUIDANCE.get(kind, "")


def render_target_brief(target: GenerationTarget) -> str:
    """Describe what to test and where the resulting file will live."""
    if target.kind is TargetKind.METHOD:
        subject = f"the callable `{target.methods[0].qualname}`"
    elif target.kind is TargetKind.CLASS:
        subject = f"the public methods of class `{target.class_name}`"
    else:
        subject = "the public module-level functions"
    lines = [
        "## Task",
        f"Write pytest tests for {subject} in module `{target.module}` (file `{target.path}`).",
        f"The tests will be saved as `{target.test_path}` and run from the project root.",
        "",
        "## Members under test",
    ]
    for method in target.methods:
        line = f"- `{method.signature}` (lines {method.first_line}-{method.last_line})"
        if method.raises:
            line += f"; raises {', '.join(method.raises)}"
        if method.docstring:
            line += f" :: {method.docstring}"
        lines.append(line)
    return "\n".join(lines)


def render_project_guidance(guidance: Sequence[str]) -> str:
    """Format project guidance strings as a single bullet list block."""
    body = "\n".join(f"- {line.strip()}" for line in guidance if line.strip())
    if not body:
        return ""
    return f"## Project Guidance\n{body}"


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "SYSTEM_PREAMBLE",
    "render_project_guidance",
    "render_target_brief",
    "repair_guidance",
]
