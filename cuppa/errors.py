# =============================================
# File: cuppa/errors.py
# Purpose: Error taxonomy shared by services and routers
# =============================================
from __future__ import annotations

from typing import List, Optional


class PipelineError(Exception):
    """Base class for errors raised by the personalization pipeline."""


class EventValidationError(PipelineError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}")


class NotFoundError(PipelineError):
    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InsufficientDataError(PipelineError):
    """Too few samples for a statistical operation. Services report it as a result."""


class DependencyFailure(PipelineError):
    def __init__(self, dependency: str, detail: Optional[str] = None) -> None:
        self.dependency = dependency
        msg = f"{dependency} unavailable"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class StoreUnavailableError(DependencyFailure):
    """The storage layer is down as a whole (e.g. connectivity loss)."""

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__("event store", detail)


class ConfigurationError(PipelineError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))
