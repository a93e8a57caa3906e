"""
Outcome of one unit of engine work.

  Ok(value)                 the collaborator produced the value
  Fallback(value, reason)   the collaborator failed; value is the static stand-in
  Skip(reason)              nothing was produced and nothing should follow

Generation paths return Ok or Fallback, never raise; per-farmer paths may
return Skip. Callers branch on the type instead of catching exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback(Generic[T]):
    value: T
    reason: str


@dataclass(frozen=True)
class Skip:
    reason: str


Outcome = Union[Ok[T], Fallback[T], Skip]


def value_or_none(outcome: "Outcome[T]") -> T | None:
    if isinstance(outcome, (Ok, Fallback)):
        return outcome.value
    return None
