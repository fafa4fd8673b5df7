from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List

import pytest

from uta.context import ContextBuilder, GenerationContext, fold_history
from uta.generator import CandidateGenerator, GenerationError, GenerationTimeout
from uta.models.llm_client import LLMClient, LLMTransportError
from uta.schema import (
    Attempt,
    Diagnostic,
    DiagnosticKind,
    GenerationTarget,
    MethodInfo,
    TargetKind,
    TestCandidate,
)


def _target() -> GenerationTarget:
    method = MethodInfo(
        name="divide",
        qualname="Calculator.divide",
        signature="def divide(self, divisor: int) -> float",
        first_line=10,
        last_line=13,
        raises=("ZeroDivisionError",),
        branches=True,
    )
    return GenerationTarget(
        target_id="tiny_app.calculator::Calculator.divide",
        kind=TargetKind.METHOD,
        path="src/tiny_app/calculator.py",
        module="tiny_app.calculator",
        class_name="Calculator",
        methods=(method,),
        test_path="tests/test_tiny_app_calculator_calculator_divide.py",
        dependencies=("import math",),
        source="def divide(self, divisor: int) -> float:\n    return self.total / divisor\n",
    )


def _attempt(number: int, kind: DiagnosticKind, message: str = "boom", source: str = "def test_a():\n    pass\n") -> Attempt:
    candidate = TestCandidate(
        target_id=_target().target_id,
        attempt=number,
        source=source,
        test_path=_target().test_path,
    )
    return Attempt(candidate=candidate, diagnostic=Diagnostic(kind=kind, message=message))


class ScriptedClient(LLMClient):
    """Client that replays canned raw responses and records payloads."""

    def __init__(self, responses: List[Any]) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0.0)
        self.responses = list(responses)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class SlowClient(LLMClient):
    def __init__(self) -> None:
        super().__init__("slow", max_attempts=1, retry_delay=0.0)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        time.sleep(0.5)
        return json.dumps({"test_source": "x = 1", "rationale": ""})


def _answer(source: str, rationale: str = "") -> str:
    return json.dumps({"test_source": source, "rationale": rationale})


def test_generate_wraps_response_as_candidate() -> None:
    client = ScriptedClient([_answer("```python\ndef test_divide():\n    assert True\n```", " checks ")])
    generator = CandidateGenerator(client)

    candidate = asyncio.run(generator.generate(_target(), GenerationContext(project_name="tiny")))

    assert candidate.attempt == 1
    assert candidate.source == "def test_divide():\n    assert True\n"
    assert candidate.rationale == "checks"
    assert candidate.test_path == _target().test_path
    assert len(candidate.prompt_digest) == 64
    metadata = client.payloads[0]["metadata"]
    assert metadata["module"] == "tiny_app.calculator"
    assert metadata["methods"] == "divide"
    assert metadata["attempt"] == "1"


def test_generate_numbers_attempt_from_history() -> None:
    client = ScriptedClient([_answer("def test_x():\n    pass\n")])
    prior = (_attempt(1, DiagnosticKind.COMPILE_ERROR), _attempt(2, DiagnosticKind.ASSERTION_FAILURE))

    candidate = asyncio.run(CandidateGenerator(client).generate(_target(), GenerationContext(), prior))

    assert candidate.attempt == 3
    assert candidate.lineage == (1, 2)
    user_prompt = client.payloads[0]["input"][-1]["content"][0]["text"]
    assert "## Previous attempts" in user_prompt
    assert "Re-derive every expected value" in user_prompt


def test_empty_source_is_retryable() -> None:
    client = ScriptedClient([_answer("   ")])
    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(CandidateGenerator(client).generate(_target(), GenerationContext()))
    assert excinfo.value.retryable


def test_malformed_response_is_retryable() -> None:
    client = ScriptedClient(["definitely not json"])
    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(CandidateGenerator(client).generate(_target(), GenerationContext()))
    assert excinfo.value.retryable


def test_auth_failure_is_not_retryable() -> None:
    client = ScriptedClient([LLMTransportError("HTTP 401", status=401)])
    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(CandidateGenerator(client).generate(_target(), GenerationContext()))
    assert not excinfo.value.retryable


def test_base_client_cannot_generate() -> None:
    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(CandidateGenerator(LLMClient("none")).generate(_target(), GenerationContext()))
    assert not excinfo.value.retryable


def test_generation_timeout() -> None:
    generator = CandidateGenerator(SlowClient(), timeout=0.05)
    with pytest.raises(GenerationTimeout) as excinfo:
        asyncio.run(generator.generate(_target(), GenerationContext()))
    assert excinfo.value.retryable


def test_context_includes_target_sections() -> None:
    package = ContextBuilder().build(
        _target(),
        GenerationContext(
            project_name="tiny",
            guidance=("Prefer parametrize",),
            existing_test_source="def test_old():\n    pass\n",
        ),
    )
    assert package.system_prompt.startswith("Project: tiny")
    assert "Return only JSON" in package.system_prompt
    prompt = package.user_prompt
    assert "the callable `Calculator.divide`" in prompt
    assert "raises ZeroDivisionError" in prompt
    assert "## Module imports\nimport math" in prompt
    assert "def test_old" in prompt
    assert "- Prefer parametrize" in prompt
    assert "## Previous attempts" not in prompt
    assert package.lineage == ()


def test_fold_history_respects_window() -> None:
    prior = [_attempt(number, DiagnosticKind.RUNTIME_EXCEPTION) for number in range(1, 6)]
    entries = fold_history(prior, window=2, budget=10_000)
    assert [entry.attempt for entry in entries] == [4, 5]


def test_fold_history_drops_oldest_first_under_budget() -> None:
    prior = [
        _attempt(1, DiagnosticKind.COMPILE_ERROR, source="a" * 300),
        _attempt(2, DiagnosticKind.ASSERTION_FAILURE, source="b" * 300),
    ]
    entries = fold_history(prior, window=3, budget=400)
    assert [entry.attempt for entry in entries] == [2]
    assert entries[0].source == "b" * 300


def test_fold_history_always_keeps_latest_diagnostic() -> None:
    prior = [_attempt(1, DiagnosticKind.ASSERTION_FAILURE, message="x" * 5_000)]
    entries = fold_history(prior, window=3, budget=300)
    assert len(entries) == 1
    assert entries[0].diagnostic.startswith("Outcome: AssertionFailure")
    assert len(entries[0].diagnostic) <= 300
    assert entries[0].source == ""
    assert entries[0].truncated
