r"""backend\app\core\errors.py

Exception taxonomy shared by the services and the API layer.

Only :class:`InvalidTransitionError`, :class:`PlanNotFoundError` and
:class:`ValidationError` are meant to reach API callers.  The remaining
errors are recovered inside the services and converted into explanatory
notes.
"""

from __future__ import annotations


class InventoryError(Exception):
    """Base class for all service level errors."""


class EmptyInputError(InventoryError, ValueError):
    """Raised by statistics helpers when given an empty sequence."""


class InsufficientDataError(InventoryError):
    """The baseline cascade found no usable demand data."""


class AdvisoryUnavailableError(InventoryError):
    """The external advisory service could not produce a usable answer."""

    def __init__(self, message: str, *, status: int | None = None, reason: str = "error") -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class InvalidTransitionError(InventoryError):
    """An action plan was asked to move through an illegal status change."""

    def __init__(self, plan_id: str, current: str, event: str) -> None:
        super().__init__(f"Cannot {event} action plan {plan_id} while it is {current}")
        self.plan_id = plan_id
        self.current = current
        self.event = event


class PlanNotFoundError(InventoryError, KeyError):
    """No action plan exists for the requested id."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(plan_id)
        self.plan_id = plan_id

    def __str__(self) -> str:
        return f"Action plan {self.plan_id} not found"


class ValidationError(InventoryError, ValueError):
    """Malformed numeric input rejected at the service boundary."""
