"""Error taxonomy shared by the checkout, state machine and HTTP layers.

Every error carries the HTTP status it maps to and a single human-readable
``message``; the FastAPI handlers in ``main.py`` render them as
``{"message": ...}``.
"""
from typing import Iterable, Optional


class FulfillmentError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(FulfillmentError):
    """Malformed or missing input."""
    status_code = 400


class AuthError(FulfillmentError):
    """No session (401) or wrong role / not party to the order (403)."""
    status_code = 403

    @classmethod
    def unauthenticated(cls, message: str = "Authentication required") -> "AuthError":
        return cls(message, status_code=401)


class NotFoundError(FulfillmentError):
    status_code = 404


class StateTransitionError(FulfillmentError):
    status_code = 400

    def __init__(self, current: str, target: str, allowed: Iterable[str]):
        self.current = current
        self.target = target
        self.allowed = sorted(allowed)
        if self.allowed:
            message = (
                f"Cannot change order status from {current} to {target}. "
                f"Allowed next states: {', '.join(self.allowed)}"
            )
        else:
            message = f"Cannot change order status from {current} to {target}: order is closed"
        super().__init__(message)


class AvailabilityError(FulfillmentError):
    """Product inactive, area not served, stock short or driver busy."""
    status_code = 400


class ConflictError(FulfillmentError):
    """Optimistic version check lost against a concurrent update."""
    status_code = 409


class InternalError(FulfillmentError):
    status_code = 500
