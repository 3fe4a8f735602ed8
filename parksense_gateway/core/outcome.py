# parksense_gateway/core/outcome.py
"""Typed success/failure results for operations that must not raise into the pipeline."""
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(Enum):
    DUPLICATE = "duplicate"
    PERSISTENCE = "persistence"
    UNKNOWN_SLOT = "unknown_slot"
    NOT_CONNECTED = "not_connected"
    INVALID = "invalid"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Ok[T], Err]
