"""Utilities for writing and inspecting structured repair-session logs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping

from ..schema import SessionSummary, utc_now
from ..utils.slug import slugify

__all__ = ["SessionLogEntry", "load_session_log", "write_session_log"]


@dataclass(slots=True)
class SessionLogEntry:
    """In-memory representation of a stored session log."""

    path: Path
    payload: Mapping[str, Any]

    @property
    def target_id(self) -> str:
        return str(self.payload.get("target_id") or "")

    @property
    def status(self) -> str:
        return str(self.payload.get("status") or "")

    @property
    def attempts(self) -> List[Mapping[str, Any]]:
        history = self.payload.get("history")
        if isinstance(history, list):
            return [entry for entry in history if isinstance(entry, Mapping)]
        return []

    @property
    def diagnostic_kinds(self) -> List[str]:
        kinds: List[str] = []
        for entry in self.attempts:
            diagnostic = entry.get("diagnostic")
            if isinstance(diagnostic, Mapping):
                kinds.append(str(diagnostic.get("kind") or ""))
        return kinds


def write_session_log(logs_root: Path | str, summary: SessionSummary) -> Path:
    """Persist ``summary`` as JSON under ``logs_root`` and return the file path."""
    directory = Path(logs_root) / "sessions"
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
    path = directory / f"{timestamp}-{slugify(summary.target_id, fallback='session')}.json"
    payload = {"logged_at": utc_now().isoformat(), **summary.to_dict()}
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path


def load_session_log(path: Path | str) -> SessionLogEntry:
    """Load a structured session log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return SessionLogEntry(path=log_path, payload=payload)
