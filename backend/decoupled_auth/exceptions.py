"""
Decoupled Auth - Exceptions

Only StoreError is meant to reach callers of the acquisition engine as a
hard failure. Ambiguous matches, missing profile owners and schema drift
are soft conditions and are logged instead of raised.
"""

from typing import Optional, Dict, Any, List


class DecoupledAuthError(Exception):
    """Base exception for the decoupled auth core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class StoreError(DecoupledAuthError):
    """Raised when the identity store fails to query, create or save."""
    pass


class RecordNotFoundError(StoreError):
    """Raised when an update targets a record key that does not exist."""
    pass


class ConstraintViolationError(DecoupledAuthError):
    """Raised when a record fails field constraint validation."""

    def __init__(self, violations: List[Any]):
        self.violations = violations
        summary = "; ".join(str(v) for v in violations)
        super().__init__(
            f"Record failed validation: {summary}",
            details={"violations": [v.to_dict() for v in violations]}
        )
