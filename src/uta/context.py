"""Assemble bounded prompt packages from a target and its attempt history."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple

from . import prompts
from .schema import Attempt, GenerationTarget

_MIN_SOURCE_EXCERPT = 200


@dataclass(slots=True)
class GenerationContext:
    """Caller-supplied context that does not change between attempts."""

    project_name: str = ""
    guidance: Tuple[str, ...] = ()
    existing_test_source: str | None = None
    history_window: int = 3
    history_budget_chars: int = 12_000


@dataclass(slots=True)
class HistoryEntry:
    """One prior attempt as it will appear in the prompt."""

    attempt: int
    diagnostic: str
    source: str = ""
    truncated: bool = False

    def render(self) -> str:
        parts = [f"### Attempt {self.attempt}"]
        if self.source:
            parts.append("```python\n" + self.source.rstrip() + "\n```")
        parts.append(self.diagnostic)
        return "\n".join(parts)

    @property
    def size(self) -> int:
        return len(self.diagnostic) + len(self.source)


@dataclass(slots=True)
class ContextPackage:
    """Container for the system and user prompts supplied to the model."""

    system_prompt: str
    user_prompt: str
    lineage: Tuple[int, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def fold_history(prior: Sequence[Attempt], *, window: int, budget: int) -> List[HistoryEntry]:
    """Select the attempts that fit into the prompt, oldest dropped first.

    At most ``window`` attempts and ``budget`` characters are kept. The most
    recent diagnostic is always present, truncated to the budget if it is too
    long on its own.
    """
    if not prior or window <= 0:
        return []
    recent = list(prior)[-window:]
    newest = recent[-1]
    diagnostic = newest.diagnostic.render(max_chars=budget)
    remaining = max(budget - len(diagnostic), 0)
    source = newest.candidate.source
    truncated = len(diagnostic) < len(newest.diagnostic.render())
    if len(source) > remaining:
        source = source[:remaining] if remaining >= _MIN_SOURCE_EXCERPT else ""
        truncated = True
    selected = [HistoryEntry(newest.number, diagnostic, source, truncated)]
    remaining -= len(source)

    for attempt in reversed(recent[:-1]):
        entry = HistoryEntry(attempt.number, attempt.diagnostic.render(), attempt.candidate.source)
        if entry.size > remaining:
            break
        selected.append(entry)
        remaining -= entry.size
    selected.reverse()
    return selected


class ContextBuilder:
    """Context assembly helper that builds sectioned prompt packages."""

    def __init__(self, *, max_source_chars: int = 20_000) -> None:
        self._max_source_chars = max_source_chars

    def build(
        self,
        target: GenerationTarget,
        context: GenerationContext,
        prior: Sequence[Attempt] = (),
    ) -> ContextPackage:
        history = fold_history(
            prior,
            window=context.history_window,
            budget=context.history_budget_chars,
        )
        sections = [prompts.render_target_brief(target)]
        sections.append(self._code_section("Source under test", target.source))
        if target.dependencies:
            sections.append("## Module imports\n" + "\n".join(target.dependencies))
        if target.referenced_types:
            sections.append("## Referenced types\n" + "\n\n".join(target.referenced_types))
        if context.existing_test_source:
            sections.append(
                self._code_section(
                    f"Existing tests ({target.existing_test})", context.existing_test_source
                )
                + "\nDo not duplicate these; cover what they miss."
            )
        guidance = prompts.render_project_guidance(context.guidance)
        if guidance:
            sections.append(guidance)
        if history:
            sections.append(
                "## Previous attempts\n" + "\n\n".join(entry.render() for entry in history)
            )
            advice = prompts.repair_guidance(prior[-1].diagnostic.kind)
            if advice:
                sections.append(f"## Repair guidance\n{advice}")

        system_prompt = f"{prompts.SYSTEM_PREAMBLE}\n\n## Response Instructions\n{prompts.JSON_RESPONSE_INSTRUCTION}"
        if context.project_name:
            system_prompt = f"Project: {context.project_name}\n\n{system_prompt}"
        lineage = tuple(entry.attempt for entry in history)
        return ContextPackage(
            system_prompt=system_prompt,
            user_prompt="\n\n".join(section for section in sections if section).strip(),
            lineage=lineage,
            metadata={
                "target_id": target.target_id,
                "lineage": list(lineage),
                "history_truncated": any(entry.truncated for entry in history),
            },
        )

    def _code_section(self, title: str, source: str) -> str:
        text = source
        if len(text) > self._max_source_chars:
            text = text[: self._max_source_chars] + "\n# ... truncated ..."
        return f"## {title}\n```python\n{text.rstrip()}\n```"


__all__ = [
    "ContextBuilder",
    "ContextPackage",
    "GenerationContext",
    "HistoryEntry",
    "fold_history",
]
