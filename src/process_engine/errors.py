# process_engine/errors.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from process_engine.contracts import AvailableTransition
    from process_engine.invariants import InvariantOutcome


class ProcessEngineError(Exception):
    """Base class for every error the engine raises on purpose."""


# ------------------------------------------------------------------------------
# Configuration errors: the document itself is invalid
# ------------------------------------------------------------------------------


class ConfigurationError(ProcessEngineError, ValueError):
    pass


class SchemaValidationError(ConfigurationError):
    """Raised when a raw JSON document cannot be parsed into a contract model."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class UnresolvedVariableError(ConfigurationError):
    def __init__(self, variable: str, available: list[str] | None = None) -> None:
        names = ", ".join(sorted(available or [])) or "none"
        super().__init__(f"Pipeline variable '{variable}' is not defined (available: {names})")
        self.variable = variable
        self.available = sorted(available or [])


class UnknownBlockTypeError(ConfigurationError):
    def __init__(self, block_type: str) -> None:
        super().__init__(f"Unknown selection pipeline block type: {block_type!r}")
        self.block_type = block_type


# ------------------------------------------------------------------------------
# Invariant violations: request must change before retrying
# ------------------------------------------------------------------------------


class InvariantViolationError(ProcessEngineError, ValueError):
    def __init__(self, message: str, outcome: InvariantOutcome | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class TerminalInstanceError(InvariantViolationError):
    pass


class UnknownPhaseError(InvariantViolationError):
    pass


class InvalidStatusTransitionError(InvariantViolationError):
    pass


class DuplicateCriterionError(InvariantViolationError):
    pass


# ------------------------------------------------------------------------------
# Execution
# ------------------------------------------------------------------------------


class TransitionRejectedError(ProcessEngineError):
    """The requested transition is not executable against the current snapshot."""

    def __init__(self, to_state_id: str, transition: AvailableTransition | None) -> None:
        self.to_state_id = to_state_id
        self.transition = transition
        messages = [rule.error_message for rule in (transition.failed_rules if transition else [])]
        detail = ", ".join(messages) if messages else "no matching transition"
        super().__init__(f"Cannot execute transition to '{to_state_id}': {detail}")

    @property
    def failed_rules(self) -> list[Any]:
        return list(self.transition.failed_rules) if self.transition else []


class ConcurrentModificationError(ProcessEngineError):
    def __init__(self, instance_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Instance {instance_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version
