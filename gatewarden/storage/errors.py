from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store invariant was broken: a duplicate email, token or key hash, or a dangling account id.

    ``field`` names the offending attribute when there is one; it is also
    copied into ``detail`` so the API error envelope carries it.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if field is not None:
            self.detail.setdefault("field", field)
        self.field = self.detail.get("field")


__all__ = ["ConstraintViolation"]
