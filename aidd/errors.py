"""
Exit codes and the error taxonomy.

The exit codes are a stable contract consumed by callers and CI. Only the CLI
entry point turns an AiddError into a process exit status.
"""

from __future__ import annotations

from typing import Optional

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_INVALID_ARGS = 2
EXIT_NOT_FOUND = 3
EXIT_PERMISSION_DENIED = 4
EXIT_TIMEOUT = 5  # reserved; an overall iteration timeout exits 124
EXIT_ABORTED = 6
EXIT_VALIDATION_ERROR = 7
EXIT_CLI_ERROR = 8

# Agent-specific outcomes
EXIT_NO_ASSISTANT = 70
EXIT_IDLE_TIMEOUT = 71
EXIT_PROVIDER_ERROR = 72
EXIT_PROJECT_COMPLETE = 73
EXIT_RATE_LIMITED = 74
EXIT_SIGNAL_TERMINATED = 124


class AiddError(RuntimeError):
    """Base error; carries the exit code the CLI should return."""

    exit_code = EXIT_GENERAL_ERROR

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(AiddError):
    """Invalid arguments or settings."""

    exit_code = EXIT_INVALID_ARGS


class NotFoundError(AiddError):
    exit_code = EXIT_NOT_FOUND


class PermissionDeniedError(AiddError):
    exit_code = EXIT_PERMISSION_DENIED


class ValidationError(AiddError):
    exit_code = EXIT_VALIDATION_ERROR


class AdapterError(AiddError):
    """The agent CLI is missing or could not be launched."""

    exit_code = EXIT_CLI_ERROR
