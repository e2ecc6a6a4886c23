"""aidd: supervised, iterative driver for coding-agent CLIs."""

from .completion import CompletionDetector, CompletionState
from .config import AIDD_VERSION, Settings, resolve_settings
from .errors import AdapterError, AiddError, ConfigError, NotFoundError, PermissionDeniedError, ValidationError
from .loop import Driver, RunOptions
from .retry import RetryPolicy
from .supervisor import IterationOutcome, OutcomeStatus, ProcessSupervisor

__version__ = AIDD_VERSION

__all__ = [
    "AdapterError",
    "AiddError",
    "CompletionDetector",
    "CompletionState",
    "ConfigError",
    "Driver",
    "IterationOutcome",
    "NotFoundError",
    "OutcomeStatus",
    "PermissionDeniedError",
    "ProcessSupervisor",
    "RetryPolicy",
    "RunOptions",
    "Settings",
    "ValidationError",
    "resolve_settings",
]
