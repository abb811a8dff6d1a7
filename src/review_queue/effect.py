"""Effect expressions: the ``+N`` / ``xN`` / ``+N per 1h`` scoring mini-language."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum

_PER_SEPARATOR = " per "

_DURATION_PART_RE = re.compile(r"(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[a-z]+)")

_DURATION_UNITS: dict[str, timedelta] = {
    "s": timedelta(seconds=1),
    "sec": timedelta(seconds=1),
    "secs": timedelta(seconds=1),
    "second": timedelta(seconds=1),
    "seconds": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "mins": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "hr": timedelta(hours=1),
    "hrs": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "d": timedelta(days=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
    "w": timedelta(weeks=1),
    "week": timedelta(weeks=1),
    "weeks": timedelta(weeks=1),
}


class EffectSyntaxError(ValueError):
    """Raised when an effect string cannot be parsed."""


class Operation(StrEnum):
    ADD = "add"
    MULTIPLY = "multiply"


class Unit(StrEnum):
    """What a per-unit divisor counts: elapsed time, or a plain count."""

    DURATION = "duration"
    COUNT = "count"


@dataclass(frozen=True)
class Effect:
    """A parsed effect expression.

    ``per`` is the divisor of a per-unit effect: a ``timedelta`` for
    ``Unit.DURATION`` and a plain number for ``Unit.COUNT``.
    """

    operation: Operation
    magnitude: float
    per: timedelta | float | None = None
    unit: Unit | None = None
    text: str = field(default="", compare=False)

    @property
    def is_per_unit(self) -> bool:
        return self.per is not None


def parse_duration(text: str) -> timedelta:
    """Parse a duration literal such as ``1h``, ``30m``, ``1h30m`` or ``1d 12h``."""
    s = text.strip().lower()
    if not s:
        msg = "empty duration"
        raise EffectSyntaxError(msg)

    total = timedelta()
    pos = 0
    for m in _DURATION_PART_RE.finditer(s):
        if s[pos : m.start()].strip():
            msg = f"invalid duration {text!r}"
            raise EffectSyntaxError(msg)
        unit = _DURATION_UNITS.get(m.group("unit"))
        if unit is None:
            msg = f"unknown duration unit {m.group('unit')!r} in {text!r}"
            raise EffectSyntaxError(msg)
        total += unit * float(m.group("value"))
        pos = m.end()
    if pos == 0 or s[pos:].strip():
        msg = f"invalid duration {text!r}"
        raise EffectSyntaxError(msg)
    return total


def _parse_magnitude(text: str, original: str) -> float:
    try:
        value = float(text.strip())
    except ValueError:
        msg = f"magnitude must be a number in {original!r}"
        raise EffectSyntaxError(msg) from None
    if not math.isfinite(value):
        msg = f"magnitude must be finite in {original!r}"
        raise EffectSyntaxError(msg)
    return value


def _parse_divisor(text: str, original: str) -> tuple[timedelta | float, Unit]:
    """Parse the part after ``per``: a bare number is a count, anything else a duration."""
    s = text.strip()
    try:
        value = float(s)
    except ValueError:
        duration = parse_duration(s)
        if duration <= timedelta():
            msg = f"per-unit duration must be positive in {original!r}"
            raise EffectSyntaxError(msg) from None
        return duration, Unit.DURATION
    if not math.isfinite(value) or value <= 0:
        msg = f"per-unit count must be positive in {original!r}"
        raise EffectSyntaxError(msg)
    return value, Unit.COUNT


def parse_effect(text: str) -> Effect:
    """Parse an effect string into an :class:`Effect`.

    Accepted forms are ``+N``, ``xN``, ``+N per <unit>`` and ``xN per <unit>``
    where ``<unit>`` is a duration literal or a positive count.
    """
    if not isinstance(text, str):
        msg = f"effect must be a string, got {type(text).__name__}"
        raise EffectSyntaxError(msg)
    s = text.strip()
    head, sep, tail = s.partition(_PER_SEPARATOR)

    if head.startswith("+"):
        operation = Operation.ADD
    elif head.startswith("x"):
        operation = Operation.MULTIPLY
    else:
        msg = f"effect must start with '+' or 'x': {text!r}"
        raise EffectSyntaxError(msg)
    magnitude = _parse_magnitude(head[1:], text)

    if not sep:
        return Effect(operation=operation, magnitude=magnitude, text=s)

    per, unit = _parse_divisor(tail, text)
    if operation is Operation.MULTIPLY and magnitude < 0:
        msg = f"per-unit factor must not be negative in {text!r}"
        raise EffectSyntaxError(msg)
    return Effect(operation=operation, magnitude=magnitude, per=per, unit=unit, text=s)


def evaluate(effect: Effect, units: timedelta | float | None = None) -> float:
    """Return the delta (add) or multiplier (multiply) an effect contributes.

    ``units`` drives per-unit effects (PR age, approval count) and is ignored
    for unit-less effects, which apply exactly once. A duration effect takes
    the age as a ``timedelta``; a bare number is read as hours.
    """
    if effect.per is None:
        return effect.magnitude

    if isinstance(effect.per, timedelta):
        if not isinstance(units, timedelta):
            units = timedelta(hours=units or 0.0)
        elapsed = max(units, timedelta())
        if effect.operation is Operation.ADD:
            return effect.magnitude * (elapsed // effect.per)
        return effect.magnitude ** (elapsed / effect.per)

    count = max(float(units or 0.0), 0.0)
    if effect.operation is Operation.ADD:
        return effect.magnitude * math.floor(count / effect.per)
    return effect.magnitude ** (count / effect.per)


def apply(effect: Effect, score: float, units: timedelta | float | None = None) -> float:
    """Apply an effect to a score."""
    value = evaluate(effect, units)
    if effect.operation is Operation.ADD:
        return score + value
    return score * value


def _format_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _format_duration(duration: timedelta) -> str:
    seconds = round(duration.total_seconds())
    for suffix, size in (("w", 604800), ("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"{seconds // size}{suffix}"
    return f"{seconds}s"


def format_effect(effect: Effect) -> str:
    """Render an effect back to its canonical text form."""
    sign = "+" if effect.operation is Operation.ADD else "x"
    out = f"{sign}{_format_number(effect.magnitude)}"
    if effect.per is None:
        return out
    if isinstance(effect.per, timedelta):
        return f"{out} per {_format_duration(effect.per)}"
    return f"{out} per {_format_number(effect.per)}"
