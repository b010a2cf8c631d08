from __future__ import annotations


class ExecutionServiceError(Exception):
    """Base class for errors raised inside the execution service."""


class ToolchainNotFoundError(ExecutionServiceError):
    """The compiler or interpreter binary could not be spawned."""

    def __init__(self, binary: str) -> None:
        super().__init__(f"Toolchain binary not found: {binary}")
        self.binary = binary


class AdmissionRejectedError(ExecutionServiceError):
    """No execution slot became free within the admission timeout."""
