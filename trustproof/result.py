"""Typed outcomes for network-backed stages.

Every remote call resolves to one of three shapes so callers can tell a full
success apart from a success obtained through the local fallback:

- ``Ok(value)``: the collaborator answered.
- ``Degraded(value, reason)``: the collaborator failed, ``value`` was produced locally.
- ``Err(reason)``: nothing usable was produced.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    reason: str

    @property
    def degraded(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    reason: str

    @property
    def degraded(self) -> bool:
        return True


StageResult = Union[Ok[T], Degraded[T], Err]
