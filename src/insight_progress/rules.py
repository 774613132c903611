"""
Ordered categorical derivation.

A derivation is a list of (predicate, state) pairs; the first predicate that
holds decides the state. If none holds, the result is the ``UNMAPPED``
sentinel so that data-entry drift shows up in the dashboard instead of being
folded into a default bucket.
"""

import typing

from dataclasses import dataclass

T = typing.TypeVar("T")
S = typing.TypeVar("S")


class _Unmapped:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNMAPPED"

    def __str__(self) -> str:
        return "Unmapped"

    def __bool__(self) -> bool:
        return False


UNMAPPED = _Unmapped()


@dataclass(frozen=True)
class Rule(typing.Generic[T, S]):
    """
    One step of an ordered derivation.

    Attributes:
        predicate: callable evaluated against the subject.
        state: value returned when the predicate holds. `None` is allowed and
            means "not classifiable" (distinct from `UNMAPPED`).
    """

    predicate: typing.Callable[[T], bool]
    state: typing.Optional[S]


def first_match(rules: typing.Sequence[Rule[T, S]], subject: T) -> typing.Union[S, None, _Unmapped]:
    for rule in rules:
        if rule.predicate(subject):
            return rule.state
    return UNMAPPED


def is_unmapped(value: typing.Any) -> bool:
    return value is UNMAPPED
