"""Process, scratch-directory and log helpers."""

from .pytest_runner import CommandResult, PytestResult, run_command, run_pytest
from .scratch import SCRATCH_PREFIX, ScratchArea
from .session_logs import SessionLogEntry, load_session_log, write_session_log

__all__ = [
    "CommandResult",
    "PytestResult",
    "SCRATCH_PREFIX",
    "ScratchArea",
    "SessionLogEntry",
    "load_session_log",
    "run_command",
    "run_pytest",
    "write_session_log",
]
