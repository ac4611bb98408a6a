from __future__ import annotations

from typing import Any, Dict, Optional


class AtomicityUnavailableError(RuntimeError):
    """Raised at startup when strict atomicity is required but the store lacks it."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["AtomicityUnavailableError"]
