"""Repair loop driving generate -> verify -> regenerate cycles for one target."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .context import GenerationContext
from .coverage.model import CoverageReport
from .generator import CandidateGenerator, GenerationError
from .schema import Attempt, GenerationTarget, SessionSummary, TerminalStatus, TestCandidate
from .tools.session_logs import write_session_log
from .verification import VerificationPipeline

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RepairState(str, Enum):
    """States a repair session moves through."""

    GENERATING = "Generating"
    VERIFYING = "Verifying"
    REGENERATING = "Regenerating"
    ACCEPTED = "Accepted"
    EXHAUSTED_RETRIES = "ExhaustedRetries"
    ABANDONED = "Abandoned"


_TERMINAL_STATES = {
    TerminalStatus.ACCEPTED: RepairState.ACCEPTED,
    TerminalStatus.EXHAUSTED_RETRIES: RepairState.EXHAUSTED_RETRIES,
    TerminalStatus.ABANDONED: RepairState.ABANDONED,
}


@dataclass(slots=True)
class RepairSession:
    """Mutable record of one target's repair loop; full history is kept."""

    target: GenerationTarget
    attempt: int = 1
    history: List[Attempt] = field(default_factory=list)
    state: RepairState = RepairState.GENERATING
    status: Optional[TerminalStatus] = None
    reason: str = ""
    accepted: Optional[TestCandidate] = None
    coverage: Optional[CoverageReport] = None
    coverage_error: str = ""
    cancel_reason: str = ""
    transitions: List[RepairState] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status is not None

    def transition(self, state: RepairState) -> None:
        if self.terminal:
            raise RuntimeError(f"Session for {self.target.target_id} already finished as {self.status}")
        self.state = state
        self.transitions.append(state)

    def record(self, attempt: Attempt) -> None:
        """Append ``attempt``; attempt numbers must be strictly increasing."""
        if attempt.candidate.target_id != self.target.target_id:
            raise ValueError(
                f"Attempt for {attempt.candidate.target_id} recorded on session for {self.target.target_id}"
            )
        if self.history and attempt.number <= self.history[-1].number:
            raise ValueError(
                f"Attempt {attempt.number} does not follow attempt {self.history[-1].number}"
            )
        self.history.append(attempt)

    def finish(self, status: TerminalStatus, reason: str) -> None:
        if self.terminal:
            return
        self.status = status
        self.reason = reason
        self.state = _TERMINAL_STATES[status]
        self.transitions.append(self.state)

    def summary(self) -> SessionSummary:
        return SessionSummary(
            target_id=self.target.target_id,
            status=self.status or TerminalStatus.ABANDONED,
            attempts=len(self.history),
            reason=self.reason,
            test_path=self.target.test_path,
            test_source=self.accepted.source if self.accepted else None,
            coverage=self.coverage,
            history=tuple(self.history),
        )


class RepairLoop:
    """Runs the generate/verify/repair state machine for single targets."""

    def __init__(
        self,
        generator: CandidateGenerator,
        verifier: VerificationPipeline,
        *,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
        max_generation_retries: int = 3,
        generation_timeout: Optional[float] = None,
        context: Optional[GenerationContext] = None,
        project_root: Optional[Path] = None,
        logs_root: Optional[Path] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._generator = generator
        self._verifier = verifier
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._max_generation_retries = max_generation_retries
        self._generation_timeout = generation_timeout
        self._context = context or GenerationContext()
        self._project_root = project_root
        self._logs_root = logs_root
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, failed_attempt: int) -> float:
        """Delay before retrying after ``failed_attempt`` (1-based) failed."""
        exponent = max(failed_attempt - 1, 0)
        return min(self._backoff_base * (2 ** exponent), self._backoff_cap)

    def context_for(self, target: GenerationTarget) -> GenerationContext:
        if not target.existing_test or self._project_root is None:
            return self._context
        path = self._project_root / target.existing_test
        try:
            existing = path.read_text(encoding="utf-8")
        except OSError:
            return self._context
        return dataclasses.replace(self._context, existing_test_source=existing)

    async def run(self, target: GenerationTarget, session: Optional[RepairSession] = None) -> RepairSession:
        """Drive ``target`` to a terminal status and return its session.

        Cancellation abandons the session and propagates after the
        in-flight generation or verification has been torn down.
        """
        session = session or RepairSession(target=target)
        context = self.context_for(target)
        generation_failures = 0
        try:
            while not session.terminal:
                session.transition(RepairState.GENERATING)
                try:
                    candidate = await self._generator.generate(
                        target,
                        context,
                        tuple(session.history),
                        attempt=session.attempt,
                        timeout=self._generation_timeout,
                    )
                except GenerationError as error:
                    if not error.retryable:
                        session.finish(TerminalStatus.ABANDONED, f"Generation failed: {error}")
                        break
                    generation_failures += 1
                    if generation_failures > self._max_generation_retries:
                        session.finish(
                            TerminalStatus.ABANDONED,
                            f"Generation failed {generation_failures} time(s): {error}",
                        )
                        break
                    LOGGER.info(
                        "Retrying generation for %s attempt %s: %s",
                        target.target_id,
                        session.attempt,
                        error,
                    )
                    await self._sleep(self.backoff_delay(generation_failures))
                    continue
                generation_failures = 0

                session.transition(RepairState.VERIFYING)
                result = await self._verifier.verify(candidate)
                session.record(Attempt(candidate=candidate, diagnostic=result.diagnostic))
                LOGGER.info(
                    "%s attempt %s: %s",
                    target.target_id,
                    candidate.attempt,
                    result.diagnostic.kind.value,
                )

                if result.ok:
                    session.accepted = candidate
                    session.coverage = result.coverage
                    if result.coverage_error is not None:
                        session.coverage_error = str(result.coverage_error)
                    session.finish(TerminalStatus.ACCEPTED, f"Accepted at attempt {candidate.attempt}")
                    break
                if session.attempt >= self._max_attempts:
                    session.finish(
                        TerminalStatus.EXHAUSTED_RETRIES,
                        f"No passing candidate after {session.attempt} attempt(s); "
                        f"last outcome {result.diagnostic.kind.value}",
                    )
                    break
                session.transition(RepairState.REGENERATING)
                await self._sleep(self.backoff_delay(session.attempt))
                session.attempt += 1
        except asyncio.CancelledError:
            session.finish(TerminalStatus.ABANDONED, session.cancel_reason or "cancelled")
            self._persist(session)
            raise
        self._persist(session)
        return session

    def _persist(self, session: RepairSession) -> None:
        if self._logs_root is None:
            return
        try:
            path = write_session_log(self._logs_root, session.summary())
        except OSError as error:
            LOGGER.warning("Could not write session log for %s: %s", session.target.target_id, error)
            return
        LOGGER.debug("Session log written to %s", path)


__all__ = ["RepairLoop", "RepairSession", "RepairState"]
