"""
Error taxonomy for TradeTrace.

Network calls never raise for expected conditions; they return one of the
FetchResult variants below. Exceptions are reserved for conditions that abort
a run (bad window) or a single identifier (transport failure).
"""
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from pydantic import BaseModel

T = TypeVar("T")


# --- Fetch result variants ---

class Ok(BaseModel, Generic[T]):
    value: T


class Retryable(BaseModel):
    reason: str = "rate limited"


class NotFound(BaseModel):
    reason: str = "not found"


class Fatal(BaseModel):
    reason: str


FetchResult = Union[Ok[Any], Retryable, NotFound, Fatal]


def is_retryable(result: Any) -> bool:
    return isinstance(result, Retryable)


# --- Exceptions ---

class TradeTraceError(Exception):
    """Base exception for all TradeTrace errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class WindowValidationError(TradeTraceError):
    """The older window bound is not strictly older than the newer one."""


class UnrecoverableIOError(TradeTraceError):
    """Non rate-limit transport failure while fetching one identifier."""

    def __init__(self, message: str, identifier: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.identifier = identifier


class PayloadDecodeError(TradeTraceError):
    """A sub-event body does not match its declared layout."""


class AccountDecodeError(TradeTraceError):
    """An account's state bytes could not be decoded."""
