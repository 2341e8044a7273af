"""Tagged cell values used by sheets and formulas.

A cell holds exactly one of :class:`Text`, :class:`Number` or the
:data:`EMPTY` singleton.  Plain Python values coming from a row matrix, an
HTTP payload or a persisted snapshot are converted with :func:`from_plain`
and turned back with :func:`to_plain`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Union


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Number:
    value: float


class Empty:
    """The empty cell.  Use the module-level :data:`EMPTY` instance."""

    _instance: Empty | None = None

    def __new__(cls) -> Empty:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "EMPTY"

    def __bool__(self) -> bool:
        return False


EMPTY = Empty()

CellValue = Union[Text, Number, Empty]


def is_empty(value: CellValue) -> bool:
    return value is EMPTY


def from_plain(raw: Any) -> CellValue:
    """Convert a plain value into a tagged cell value.

    - ``None`` and blank strings become :data:`EMPTY`.
    - ``int``/``float`` (not ``bool``) become :class:`Number`.  NaN and
      infinities are treated as empty.
    - ``date``/``datetime`` become ISO date text (``YYYY-MM-DD``).
    - ``bool`` becomes ``TRUE``/``FALSE`` text.
    - Anything else is stringified and trimmed.
    """
    if raw is None or raw is EMPTY:
        return EMPTY
    if isinstance(raw, (Text, Number)):
        return raw
    if isinstance(raw, bool):
        return Text("TRUE" if raw else "FALSE")
    if isinstance(raw, (int, float)):
        f = float(raw)
        if math.isnan(f) or math.isinf(f):
            return EMPTY
        return Number(f)
    if isinstance(raw, datetime):
        return Text(raw.date().isoformat())
    if isinstance(raw, date):
        return Text(raw.isoformat())
    text = str(raw).strip()
    if text == "":
        return EMPTY
    return Text(text)


def to_plain(value: CellValue) -> Any:
    """Convert a tagged value back to a JSON-friendly plain value.

    Whole numbers come back as ``int`` so that snapshots and exports read
    ``3`` rather than ``3.0``.
    """
    if isinstance(value, Number):
        v = value.value
        if v == int(v) and abs(v) < 2**53:
            return int(v)
        return v
    if isinstance(value, Text):
        return value.value
    return ""


def as_number(value: CellValue) -> float:
    """Parse a cell value as a float; empty or non-numeric text yields ``0``."""
    if isinstance(value, Number):
        return value.value
    if isinstance(value, Text):
        try:
            f = float(value.value.replace(",", ""))
        except ValueError:
            return 0.0
        if math.isnan(f) or math.isinf(f):
            return 0.0
        return f
    return 0.0


def looks_numeric(value: CellValue) -> bool:
    """True for numbers and for text that parses as a finite float."""
    if isinstance(value, Number):
        return True
    if isinstance(value, Text):
        try:
            f = float(value.value.replace(",", ""))
        except ValueError:
            return False
        return math.isfinite(f)
    return False


def display(value: CellValue) -> str:
    """Render a value as display text (whole floats without ``.0``)."""
    if isinstance(value, Number):
        v = value.value
        if v == int(v):
            return str(int(v))
        return f"{v:.10g}"
    if isinstance(value, Text):
        return value.value
    return ""
