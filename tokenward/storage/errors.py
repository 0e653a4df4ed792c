from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when a credential store command fails for any reason."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """The credential store could not be reached or timed out."""


__all__ = ["StoreError", "StoreUnavailable"]
