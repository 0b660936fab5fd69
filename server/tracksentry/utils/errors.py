"""
Error types and helpers for consistent error reporting.

Nothing raised here is meant to escape the pipeline: the
orchestrator and control surface catch these, log them and
turn them into result flags.
"""

from __future__ import annotations


class TracksentryError(Exception):
    """Base class for all engine errors."""


class CapabilityError(TracksentryError):
    """An external capability (filter or persistence) failed."""


class RuleNotFoundError(CapabilityError):
    """The filter capability has no rule with the requested id."""

    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Rule {rule_id} is not installed")
        self.rule_id = rule_id


class DuplicateRuleError(CapabilityError):
    """The filter capability already holds a rule with the requested id."""

    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Rule {rule_id} is already installed")
        self.rule_id = rule_id


class MalformedRequestError(TracksentryError):
    """An intercepted request cannot be scored (bad URL, no identity)."""


class EngineNotReadyError(TracksentryError):
    """A request was submitted before startup reconciliation finished."""


def get_error_message(error: BaseException | object) -> str:
    """
    Safely extract an error message from an unknown error type.
    """
    if isinstance(error, Exception):
        return str(error) or type(error).__name__
    return "Unknown error"
