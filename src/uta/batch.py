"""Batch coordinator running many repair loops under a concurrency limit."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .config import AppConfig, ConfigurationError
from .context import GenerationContext
from .coverage.model import merge_reports
from .generator import CandidateGenerator
from .models.llm_client import LLMClient
from .orchestrator import RepairLoop, RepairSession
from .resolver import ResolutionError, Scope, TargetResolver, describe_scope
from .schema import BatchReport, GenerationTarget, SessionSummary, TerminalStatus, utc_now
from .toolchain import ExecutionTimeouts, Toolchain
from .verification import VerificationPipeline

LOGGER = logging.getLogger(__name__)

DEADLINE_REASON = "deadline exceeded"
CANCEL_REASON = "cancelled"


class BatchCoordinator:
    """Fan targets out to repair loops, then merge accepted coverage once."""

    def __init__(
        self,
        loop: RepairLoop,
        *,
        project_root: Optional[Path] = None,
        concurrency_limit: int = 2,
    ) -> None:
        self._loop = loop
        self._project_root = project_root
        self._concurrency_limit = concurrency_limit
        self._tasks: List[asyncio.Task] = []
        self._sessions: List[RepairSession] = []

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        repo_root: Path,
        client: LLMClient,
        *,
        toolchain: Optional[Toolchain] = None,
    ) -> "BatchCoordinator":
        """Wire generator, verifier and repair loop from configuration."""
        engine = config.engine
        generator = CandidateGenerator(
            client,
            timeout=engine.generation_timeout,
            max_output_tokens=config.models.max_output_tokens,
        )
        verifier = VerificationPipeline(
            repo_root,
            toolchain=toolchain,
            timeouts=ExecutionTimeouts(per_test=engine.per_test_timeout, per_suite=engine.per_suite_timeout),
            source_roots=config.project.source_roots,
            scratch_parent=config.scratch_root(repo_root),
            collect_coverage=engine.collect_coverage,
        )
        loop = RepairLoop(
            generator,
            verifier,
            max_attempts=engine.max_attempts,
            backoff_base=engine.backoff_base,
            backoff_cap=engine.backoff_cap,
            max_generation_retries=engine.max_generation_retries,
            generation_timeout=engine.generation_timeout,
            context=GenerationContext(
                project_name=config.project.name,
                history_window=engine.history_window,
                history_budget_chars=engine.history_budget_chars,
            ),
            project_root=repo_root,
            logs_root=config.logs_root(repo_root),
        )
        return cls(loop, project_root=repo_root, concurrency_limit=engine.concurrency_limit)

    def _validate(self, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ConfigurationError(f"concurrency_limit must be an integer >= 1, got {limit!r}")
        if self._project_root is not None and not Path(self._project_root).is_dir():
            raise ConfigurationError(f"Project root not found: {self._project_root}")

    def cancel(self, reason: str = CANCEL_REASON) -> None:
        """Cancel every active loop and queued target of the current run."""
        for session in self._sessions:
            if not session.terminal and not session.cancel_reason:
                session.cancel_reason = reason
        for task in self._tasks:
            task.cancel()

    async def run(
        self,
        targets: Sequence[GenerationTarget],
        concurrency_limit: Optional[int] = None,
        *,
        deadline: Optional[float] = None,
    ) -> BatchReport:
        """Run one repair loop per target and return the aggregated report.

        ``deadline`` is a budget in seconds; loops still running when it
        expires are cancelled and reported as abandoned.
        """
        limit = self._concurrency_limit if concurrency_limit is None else concurrency_limit
        self._validate(limit)
        if deadline is not None and deadline <= 0:
            raise ConfigurationError(f"deadline must be positive, got {deadline!r}")

        started_at = utc_now()
        sessions = [RepairSession(target=target) for target in targets]
        semaphore = asyncio.Semaphore(limit)

        async def _drive(session: RepairSession) -> None:
            async with semaphore:
                try:
                    await self._loop.run(session.target, session)
                except asyncio.CancelledError:
                    raise
                except Exception as error:  # noqa: BLE001
                    LOGGER.exception("Repair loop for %s crashed", session.target.target_id)
                    session.finish(TerminalStatus.ABANDONED, f"Unexpected error: {error}")

        tasks = [
            asyncio.create_task(_drive(session), name=f"repair:{session.target.target_id}")
            for session in sessions
        ]
        self._sessions = sessions
        self._tasks = tasks
        try:
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=deadline)
                if pending:
                    LOGGER.warning("Deadline reached with %d target(s) unfinished", len(pending))
                    self.cancel(DEADLINE_REASON)
                    await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            self.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._tasks = []
            self._sessions = []

        for session in sessions:
            if not session.terminal:
                session.finish(TerminalStatus.ABANDONED, session.cancel_reason or CANCEL_REASON)

        accepted = [
            session.coverage
            for session in sessions
            if session.status is TerminalStatus.ACCEPTED and session.coverage is not None
        ]
        return BatchReport(
            sessions=tuple(session.summary() for session in sessions),
            coverage=merge_reports(*accepted),
            started_at=started_at,
            finished_at=utc_now(),
        )

    async def run_scopes(
        self,
        scopes: Iterable[Scope],
        resolver: TargetResolver,
        concurrency_limit: Optional[int] = None,
        *,
        deadline: Optional[float] = None,
    ) -> BatchReport:
        """Resolve ``scopes`` and run the resulting targets.

        A scope that fails to resolve is reported as an abandoned entry
        instead of failing the batch.
        """
        limit = self._concurrency_limit if concurrency_limit is None else concurrency_limit
        self._validate(limit)
        targets: Dict[str, GenerationTarget] = {}
        failures: List[SessionSummary] = []
        for scope in scopes:
            try:
                resolved = resolver.resolve(scope)
            except ResolutionError as error:
                LOGGER.warning("Could not resolve %s: %s", describe_scope(scope), error)
                failures.append(
                    SessionSummary(
                        target_id=describe_scope(scope),
                        status=TerminalStatus.ABANDONED,
                        attempts=0,
                        reason=f"Resolution failed: {error}",
                    )
                )
                continue
            for target in resolved:
                targets.setdefault(target.target_id, target)

        report = await self.run(list(targets.values()), limit, deadline=deadline)
        return dataclasses.replace(report, sessions=(*failures, *report.sessions))


__all__ = ["BatchCoordinator", "CANCEL_REASON", "DEADLINE_REASON"]
