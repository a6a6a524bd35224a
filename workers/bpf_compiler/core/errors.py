"""
Errors — the three ways a compile can end badly.

  CompileIOError    destination not creatable, or the version query failed
  ToolchainError    clang exited non-zero, could not be executed, or timed out
  CompileCancelled  the caller's cancel token fired before or during the run

All derive from CompileError so callers can catch the family, and dispatch
on the concrete class to avoid logging a cancellation as a failure.
"""
from __future__ import annotations

from typing import List


class CompileError(RuntimeError):
    """Base class for compile failures."""

    def __init__(self, message: str, artifact: str | None = None):
        super().__init__(message)
        self.message = message
        self.artifact = artifact

    def __str__(self) -> str:
        return self.message

    def with_context(self, context: str) -> "CompileError":
        """Prefix the message with *context*, keeping class and attributes."""
        self.message = f"{context}: {self.message}"
        self.args = (self.message,)
        return self


class CompileIOError(CompileError):
    """The destination file or the toolchain version could not be obtained."""


class ToolchainError(CompileError):
    """The compiler ran (or tried to) and did not produce the artifact."""

    def __init__(
        self,
        message: str,
        artifact: str | None = None,
        *,
        pid: str = "not-started",
        exit_code: int | None = None,
        peak_rss_bytes: int = 0,
        diagnostics: List[str] | None = None,
    ):
        super().__init__(message, artifact)
        self.pid = pid
        self.exit_code = exit_code
        self.peak_rss_bytes = peak_rss_bytes
        self.diagnostics = diagnostics or []


class CompileCancelled(CompileError):
    """The caller aborted the compile; never a toolchain defect."""
