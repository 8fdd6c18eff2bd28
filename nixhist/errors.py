"""
Error types for nixhist.

Registry, package and planner operations raise these to their caller. The
mutation workflow never lets executor problems escape; it reports them as an
``ExecutionFailed`` carried on the returned outcome instead.
"""

from datetime import datetime
from typing import Any, List, Optional


class NixhistError(Exception):
    """Base class for all nixhist errors."""


class SourceUnavailable(NixhistError):
    """The generation source could not enumerate a profile."""


class MalformedRecord(NixhistError):
    """A single raw generation record could not be parsed."""

    def __init__(self, record: Any, reason: str):
        super().__init__(f"Malformed generation record {record!r}: {reason}")
        self.record = record
        self.reason = reason


class NoCurrentGeneration(NixhistError):
    """Zero or more than one generation of a profile is marked current."""

    def __init__(self, profile_kind: Any, candidates: List[int]):
        if candidates:
            detail = "several generations are marked current: " + ", ".join(
                f"#{c}" for c in candidates
            )
        else:
            detail = "no generation is marked current"
        super().__init__(f"{profile_kind}: {detail}")
        self.profile_kind = profile_kind
        self.candidates = candidates


class ManifestUnreadable(NixhistError):
    """The package manifest of a generation could not be read or parsed."""


class UnknownGeneration(NixhistError):
    def __init__(self, profile_kind: Any, generation_id: int):
        super().__init__(f"{profile_kind}: generation #{generation_id} not found")
        self.profile_kind = profile_kind
        self.generation_id = generation_id


class AlreadyCurrent(NixhistError):
    def __init__(self, profile_kind: Any, generation_id: int):
        super().__init__(
            f"{profile_kind}: generation #{generation_id} is already current"
        )
        self.profile_kind = profile_kind
        self.generation_id = generation_id


class ProtectedGeneration(NixhistError):
    """A delete target is pinned or current."""

    def __init__(self, profile_kind: Any, generation_id: int, reason: str):
        super().__init__(
            f"{profile_kind}: generation #{generation_id} is {reason} "
            "and cannot be deleted"
        )
        self.profile_kind = profile_kind
        self.generation_id = generation_id
        self.reason = reason


class OperationInProgress(NixhistError):
    """Another mutation plan is awaiting confirmation or executing."""


class UndoPending(NixhistError):
    """A delete was requested while a previous delete can still be undone."""

    def __init__(self, profile_kind: Any, deadline: datetime):
        super().__init__(
            f"{profile_kind}: a previous deletion can still be undone until "
            f"{deadline:%H:%M:%S}"
        )
        self.profile_kind = profile_kind
        self.deadline = deadline


class InvalidTransition(NixhistError):
    def __init__(self, state: Any, operation: str):
        super().__init__(f"Cannot {operation} while {state}")
        self.state = state
        self.operation = operation


class ExecutionFailed(NixhistError):
    """A plan stopped at a failing command.

    ``partial_results`` holds the results of every command that ran,
    the failing one last.
    """

    def __init__(
        self,
        failed_command: Optional[str],
        message: str,
        partial_results: Optional[List[Any]] = None,
    ):
        super().__init__(f"Command failed: {failed_command}: {message}")
        self.failed_command = failed_command
        self.message = message
        self.partial_results = list(partial_results or [])


class ConfigUnreadable(NixhistError):
    """The configuration file exists but could not be read, so it is never overwritten."""

    def __init__(self, path: Any, reason: str):
        super().__init__(f"Refusing to overwrite unreadable config {path}: {reason}")
        self.path = path
        self.reason = reason
