"""Container runtime and process collaborators."""

from deploykit.runtime.compose import ComposeRuntime, ExecResult, run_command
from deploykit.runtime.process import is_process_alive

__all__ = [
    "ComposeRuntime",
    "ExecResult",
    "is_process_alive",
    "run_command",
]
