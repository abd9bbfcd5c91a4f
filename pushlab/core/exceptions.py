"""
Error taxonomy for segmentation and experiments.

Services raise these; the API layer turns them into HTTP responses in a
single exception handler (see ``pushlab.main``).
"""

from typing import Any, Dict, Optional


class PushlabError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message, **self.context}


class ValidationError(PushlabError):
    """Malformed rule, variant or weight data."""

    kind = "validation_error"
    status_code = 422

    def __init__(
        self, message: str, rule_index: Optional[int] = None, field: Optional[str] = None
    ):
        super().__init__(message, rule_index=rule_index, field=field)
        self.rule_index = rule_index
        self.field = field


class NotFoundError(PushlabError):
    kind = "not_found"
    status_code = 404


class StateError(PushlabError):
    """Illegal lifecycle transition or mutation of a restricted field."""

    kind = "state_error"
    status_code = 409

    def __init__(self, message: str, field: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message, field=field, status=status)
        self.field = field
        self.status = status


class DependencyError(PushlabError):
    """User directory or push sender failure."""

    kind = "dependency_error"
    status_code = 502
