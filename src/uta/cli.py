"""CLI commands for generating and measuring unit tests."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from .batch import BatchCoordinator
from .config import (
    DEFAULT_CONFIG_NAME,
    AppConfig,
    ConfigurationError,
    default_config_document,
    load_config,
    write_config,
)
from .coverage.collector import CoverageCollector, find_record_file
from .coverage.errors import CollectionError
from .coverage.model import CoverageReport, check_thresholds, format_report
from .models import LLMClient, LLMClientError, OfflineClient, ResponsesClient
from .resolver import ClassScope, MethodScope, ProjectScope, ResolutionError, Scope, TargetResolver
from .schema import BatchReport, TerminalStatus, utc_now
from .toolchain import ExecutionTimeouts

APP_HELP = "Generate, verify and repair pytest unit tests for a Python project."

app = typer.Typer(help=APP_HELP)

LOGGER = logging.getLogger(__name__)

_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the uta configuration file.",
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: str) -> Tuple[AppConfig, Path]:
    config_path = Path(config)
    try:
        app_config = load_config(config_path)
    except ConfigurationError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    repo_root = app_config.repo_root(config_path.resolve().parent)
    if not repo_root.is_dir():
        typer.echo(f"Project root not found: {repo_root}")
        raise typer.Exit(code=1)
    return app_config, repo_root


def _build_client(config: AppConfig, *, offline: bool) -> LLMClient:
    """Select either the remote Responses client or the offline skeleton client."""
    models_cfg = config.models
    if offline or models_cfg.default.lower().endswith("offline"):
        typer.echo("Using offline skeleton client.")
        return OfflineClient()
    typer.echo(f"Using model {models_cfg.default}.")
    try:
        return ResponsesClient(
            model=models_cfg.default,
            api_key=models_cfg.api_key,
            base_url=models_cfg.base_url,
            timeout=models_cfg.timeout,
            max_attempts=models_cfg.max_attempts,
            retry_delay=models_cfg.retry_delay,
        )
    except ValueError as error:
        if "api key" in str(error).lower():
            typer.echo(
                "No API key given. Set OPENAI_API_KEY or UTA_API_KEY, or re-run with --offline."
            )
        else:
            typer.echo(f"Failed to initialise model client: {error}")
        raise typer.Exit(code=1)
    except LLMClientError as error:
        typer.echo(f"Failed to initialise model client: {error}")
        raise typer.Exit(code=1)


def _parse_scopes(
    methods: Optional[List[str]],
    classes: Optional[List[str]],
    project: bool,
    root: Optional[str],
) -> List[Scope]:
    scopes: List[Scope] = []
    for value in methods or []:
        path, sep, qualname = value.partition("::")
        if not sep or not path or not qualname:
            raise typer.BadParameter(f"Expected PATH::Qual.name, got {value!r}", param_hint="--method")
        scopes.append(MethodScope(path=path, qualname=qualname))
    for value in classes or []:
        path, _, class_name = value.partition("::")
        if not path:
            raise typer.BadParameter(f"Expected PATH[::Class], got {value!r}", param_hint="--class")
        scopes.append(ClassScope(path=path, class_name=class_name or None))
    if project or root:
        scopes.append(ProjectScope(root=root))
    if not scopes:
        raise typer.BadParameter("Choose at least one of --method, --class or --project.")
    return scopes


def _render_batch(report: BatchReport) -> None:
    counts = {status: len(report.by_status(status)) for status in TerminalStatus}
    typer.echo(
        f"Batch finished: {len(report.sessions)} target(s), "
        f"{counts[TerminalStatus.ACCEPTED]} accepted, "
        f"{counts[TerminalStatus.EXHAUSTED_RETRIES]} exhausted, "
        f"{counts[TerminalStatus.ABANDONED]} abandoned."
    )
    for session in report.sessions:
        typer.echo(f"- {session.target_id} -> {session.status.value} (attempts: {session.attempts})")
        if session.reason:
            typer.echo(f"    {session.reason}")
        if session.history and not session.accepted:
            last = session.history[-1].diagnostic
            typer.echo(f"    last diagnostic: {last.kind.value}")


def _render_coverage(report: CoverageReport, config: AppConfig) -> List[str]:
    typer.echo(format_report(report).rstrip())
    violations = check_thresholds(
        report.summary(),
        min_line=config.engine.min_line_coverage,
        min_branch=config.engine.min_branch_coverage,
    )
    for violation in violations:
        typer.echo(f"! {violation}")
    return violations


@app.command()
def init(
    config: str = _CONFIG_OPTION,
    name: str = typer.Option("", "--name", help="Project name recorded in the configuration."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    project_name = name or config_path.resolve().parent.name
    write_config(config_path, default_config_document(project_name))
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def targets(
    config: str = _CONFIG_OPTION,
    method: Optional[List[str]] = typer.Option(None, "--method", help="PATH::Qual.name"),
    class_: Optional[List[str]] = typer.Option(None, "--class", help="PATH[::Class]"),
    project: bool = typer.Option(False, "--project", help="Resolve every module in the project."),
    root: Optional[str] = typer.Option(None, "--root", help="Restrict --project to a subdirectory."),
) -> None:
    """List the generation targets a scope resolves to."""
    app_config, repo_root = _load(config)
    resolver = TargetResolver.from_config(app_config, repo_root)
    for scope in _parse_scopes(method, class_, project, root):
        try:
            resolved = resolver.resolve(scope)
        except ResolutionError as error:
            typer.echo(f"! {error}")
            continue
        for target in resolved:
            names = ", ".join(item.name for item in target.methods)
            typer.echo(f"{target.target_id} [{target.kind.value}] -> {target.test_path} ({names})")


@app.command()
def generate(
    config: str = _CONFIG_OPTION,
    method: Optional[List[str]] = typer.Option(None, "--method", help="PATH::Qual.name"),
    class_: Optional[List[str]] = typer.Option(None, "--class", help="PATH[::Class]"),
    project: bool = typer.Option(False, "--project", help="Generate for every module in the project."),
    root: Optional[str] = typer.Option(None, "--root", help="Restrict --project to a subdirectory."),
    offline: bool = typer.Option(False, "--offline", help="Use the offline skeleton client."),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Overall time budget in seconds."),
    write: bool = typer.Option(True, "--write/--no-write", help="Write accepted tests into the project."),
) -> None:
    """Generate tests for the chosen scope and report coverage."""
    app_config, repo_root = _load(config)
    scopes = _parse_scopes(method, class_, project, root)
    client = _build_client(app_config, offline=offline)
    coordinator = BatchCoordinator.from_config(app_config, repo_root, client)
    resolver = TargetResolver.from_config(app_config, repo_root)
    try:
        report = asyncio.run(coordinator.run_scopes(scopes, resolver, deadline=deadline))
    except ConfigurationError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    _render_batch(report)
    if write:
        for session in report.accepted:
            if session.test_path and session.test_source:
                destination = repo_root / session.test_path
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_text(session.test_source, encoding="utf-8")
                typer.echo(f"Wrote {session.test_path}")

    if not report.coverage.is_empty:
        _render_coverage(report.coverage, app_config)

    reports_dir = app_config.data_root(repo_root) / "reports"
    reports_dir.mkdir(parents=True, exist_ok=True)
    report_path = reports_dir / f"batch-{utc_now().strftime('%Y%m%dT%H%M%SZ')}.json"
    report_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    typer.echo(f"Report saved to {report_path}")

    if report.sessions and not report.accepted:
        raise typer.Exit(code=1)


@app.command()
def coverage(
    tests: Optional[List[str]] = typer.Argument(None, help="Test files or directories to run."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Run the existing test suite under the coverage agent and print the report."""
    app_config, repo_root = _load(config)
    engine = app_config.engine
    collector = CoverageCollector(
        timeouts=ExecutionTimeouts(per_test=engine.per_test_timeout, per_suite=engine.per_suite_timeout),
        source_roots=app_config.project.source_roots,
    )
    record_path = app_config.data_root(repo_root) / "coverage.rec"
    suite = tests or [app_config.project.tests_dir]
    try:
        report = asyncio.run(collector.collect(repo_root, suite, record_path=record_path))
    except CollectionError as error:
        typer.echo(f"Coverage collection failed: {error}")
        raise typer.Exit(code=1) from error
    _render_coverage(report, app_config)
    typer.echo(f"Record saved to {record_path}")


@app.command()
def report(
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Coverage record to decode."),
    config: str = _CONFIG_OPTION,
    strict: bool = typer.Option(False, "--strict", help="Exit non-zero on threshold violations."),
) -> None:
    """Print the report stored in a coverage record."""
    app_config, repo_root = _load(config)
    record_path = Path(record) if record else find_record_file(repo_root)
    if record_path is None:
        typer.echo("No coverage record found. Run `uta coverage` first or pass --record.")
        raise typer.Exit(code=1)
    try:
        decoded = CoverageCollector().read(record_path)
    except CollectionError as error:
        typer.echo(f"Could not read {record_path}: {error}")
        raise typer.Exit(code=1) from error
    violations = _render_coverage(decoded, app_config)
    if strict and violations:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
