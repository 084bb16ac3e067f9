"""
auth/result.py -- Tagged success/failure values for the SessionService boundary.

SessionService never lets an exception escape its public methods. It returns
Ok(value) or Err(error) instead, and route handlers branch on is_ok.
Internals (store, codec, renewal manager) raise AuthError subclasses; the
service converts them at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from auth.errors import AuthError

T = TypeVar("T")
E = TypeVar("E", bound=AuthError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def is_err(self) -> bool:
        return False


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_err(self) -> bool:
        return True


Result = Union[Ok[T], Err[E]]
