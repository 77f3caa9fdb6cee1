"""Result types for expected outcomes of the core services.

Register, login, password change and the OAuth callback return a ``Result``
instead of raising, so callers handle "wrong password" and "locked out" as
ordinary values. Exceptions are left for programming errors and for the
startup configuration check.

Usage:
    result = await credentials.login("scout", "password123", ip="10.0.0.1")
    match result:
        case Success(value=login):
            set_cookie(login.token)
        case Failure(error=error):
            raise error
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type


@dataclass(frozen=True, slots=True, kw_only=True)
class Success(Generic[T]):
    """Represents a successful operation result.

    Attributes:
        value: The successful result value.
    """

    value: T


@dataclass(frozen=True, slots=True, kw_only=True)
class Failure(Generic[E]):
    """Represents a failed operation result.

    Attributes:
        error: The error that occurred.
    """

    error: E


Result = Union[Success[T], Failure[E]]


def unwrap(result: "Result[T, E]") -> T:
    """Return the success value or raise the carried error."""
    if isinstance(result, Failure):
        error = result.error
        if isinstance(error, BaseException):
            raise error
        raise RuntimeError(str(error))
    return result.value
