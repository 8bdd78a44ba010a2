"""
Error Handling - Centralized error policies and custom exceptions.

Every failure is handled inside the component that owns the resource.
Nothing here is meant to reach the presentation layer: the worst visible
outcome is a persistent "indexing"/"waiting" state or slightly stale results.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()       # Log, keep the previous state, carry on
    RESTART = auto()    # Restart the matcher subprocess
    WAIT = auto()       # Enter the blocking "waiting" state and poll
    ABORT = auto()      # Abort the current operation, keep on-disk state


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{subject}: {error}"


class EngineError(Exception):
    """Base exception for search engine errors."""
    pass


class PermissionDenied(EngineError):
    """Required filesystem access has not been granted."""
    pass


class SubprocessSpawnFailure(EngineError):
    """An enumeration or matcher process failed to start."""

    def __init__(self, binary: str, reason: str = ""):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to start {binary}" + (f": {reason}" if reason else ""))


class SubprocessCrash(EngineError):
    """The matcher exited without being asked to."""

    def __init__(self, exit_code: Optional[int]):
        self.exit_code = exit_code
        super().__init__(f"Matcher exited with code {exit_code}")


class StaleIndexError(EngineError):
    """A corpus is older than its freshness window (policy trigger)."""
    pass


class IOFailure(EngineError):
    """Reading or writing a corpus or the live index failed."""
    pass


class NetworkChannelFailure(EngineError):
    """The control or notification channel is unreachable."""
    pass


# Error type to policy mapping. Order matters: first isinstance match wins.
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    PermissionDenied: ErrorPolicy(
        action=ErrorAction.WAIT,
        log_level=logging.WARNING,
        message_template="Waiting for filesystem access: {subject}",
    ),
    SubprocessSpawnFailure: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.ERROR,
        message_template="Could not spawn process for {subject}: {error}",
    ),
    SubprocessCrash: ErrorPolicy(
        action=ErrorAction.RESTART,
        log_level=logging.WARNING,
        message_template="{subject} crashed: {error}",
    ),
    StaleIndexError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Stale corpus: {subject}",
    ),
    IOFailure: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="I/O failure on {subject}: {error}",
    ),
    NetworkChannelFailure: ErrorPolicy(
        action=ErrorAction.RESTART,
        log_level=logging.ERROR,
        message_template="Channel failure ({subject}): {error}",
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {subject}",
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {subject}",
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="OS error on {subject}: {error}",
    ),
}


def handle_error(
    error: Exception,
    subject: object = None,
    context: str = "",
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        subject: What was being worked on (a path, a scope, a process)
        context: Additional context for logging

    Returns:
        The action the caller should take
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.ABORT,
            log_level=logging.ERROR,
            message_template="Unexpected error: {subject} - {error}",
        )

    subject_str = str(subject) if subject is not None else "<unknown>"
    message = policy.message_template.format(subject=subject_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
