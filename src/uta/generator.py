"""Candidate generation: prompt the model and wrap its answer as a test candidate."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from .context import ContextBuilder, ContextPackage, GenerationContext
from .models.llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .schema import Attempt, GenerationTarget, TestCandidate

LOGGER = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:python|py)?\s*\n(?P<body>.*?)\n```\s*$", re.DOTALL | re.IGNORECASE)


class GenerationError(RuntimeError):
    """Raised when the model could not produce a candidate."""

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


class GenerationTimeout(GenerationError):
    """Raised when generation exceeded its time limit."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


@dataclass(slots=True)
class GeneratedTest:
    """Structured response expected from the model."""

    test_source: str
    rationale: str = ""


def _strip_fence(source: str) -> str:
    match = _FENCE_RE.match(source.strip())
    if match:
        return match.group("body")
    return source


def _classify(error: LLMClientError) -> GenerationError:
    if isinstance(error, LLMTransportError):
        return GenerationError(str(error), retryable=error.retryable)
    if isinstance(error, (LLMResponseFormatError, LLMRetryError)):
        return GenerationError(f"Malformed model response: {error}", retryable=True)
    return GenerationError(str(error), retryable=False)


class CandidateGenerator:
    """Produce :class:`TestCandidate` objects from a model client."""

    def __init__(
        self,
        client: LLMClient,
        *,
        builder: Optional[ContextBuilder] = None,
        timeout: float = 120.0,
        max_output_tokens: int = 4000,
    ) -> None:
        self._client = client
        self._builder = builder or ContextBuilder()
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens

    @property
    def client(self) -> LLMClient:
        return self._client

    def build_context(
        self,
        target: GenerationTarget,
        context: GenerationContext,
        prior: Sequence[Attempt] = (),
    ) -> ContextPackage:
        return self._builder.build(target, context, prior)

    async def generate(
        self,
        target: GenerationTarget,
        context: GenerationContext,
        prior: Sequence[Attempt] = (),
        *,
        attempt: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> TestCandidate:
        """Generate one candidate for ``target`` given the attempt history ``prior``."""
        number = attempt if attempt is not None else len(prior) + 1
        package = self.build_context(target, context, prior)
        request: LLMRequest[GeneratedTest] = LLMRequest(
            prompt=package.user_prompt,
            response_model=GeneratedTest,
            system_prompt=package.system_prompt,
            metadata={
                "target_id": target.target_id,
                "module": target.module,
                "class_name": target.class_name or "",
                "methods": ",".join(method.name for method in target.methods),
                "attempt": number,
            },
            max_attempts=1,
            max_output_tokens=self._max_output_tokens,
        )
        limit = timeout if timeout is not None else self._timeout
        LOGGER.debug("Generating attempt %s for %s", number, target.target_id)
        try:
            response = await asyncio.wait_for(asyncio.to_thread(self._client.invoke, request), limit)
        except asyncio.TimeoutError as error:
            raise GenerationTimeout(
                f"Generation for {target.target_id} exceeded {limit:g}s"
            ) from error
        except LLMClientError as error:
            raise _classify(error) from error
        except NotImplementedError as error:
            raise GenerationError(f"Client cannot generate: {error}", retryable=False) from error

        source = _strip_fence(response.test_source or "")
        if not source.strip():
            raise GenerationError("Model returned an empty test module", retryable=True)
        if not source.endswith("\n"):
            source += "\n"
        digest = hashlib.sha256(
            f"{package.system_prompt}\n\n{package.user_prompt}".encode("utf-8")
        ).hexdigest()
        return TestCandidate(
            target_id=target.target_id,
            attempt=number,
            source=source,
            test_path=target.test_path,
            lineage=package.lineage,
            prompt_digest=digest,
            rationale=(response.rationale or "").strip(),
        )


__all__ = [
    "CandidateGenerator",
    "GeneratedTest",
    "GenerationError",
    "GenerationTimeout",
]
