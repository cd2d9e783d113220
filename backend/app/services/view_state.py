"""Explicit state values emitted by the controller for rendering."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T


@dataclass(frozen=True)
class Error:
    message: str
    error: Optional[BaseException] = None
    retryable: bool = False


ViewState = Union[Loading, Success[Any], Error]

LOADING = Loading()
