"""Two-operand calculated-column formulas and their dependency graph.

A formula derives one column from two others with a single arithmetic
operator.  Evaluation is total: operands that are empty or non-numeric count
as ``0``, division by zero yields ``0`` and every result is rounded to two
decimals (half away from zero).

Formulas on one sheet form a graph over column titles.  :class:`FormulaGraph`
applies them in topological order, keeping registration order among
formulas that do not depend on each other, and refuses any registration that
would close a cycle.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from enum import Enum
from typing import Iterable, MutableMapping

from sheetbook.formulas.errors import CyclicFormulaError, FormulaOperandError
from sheetbook.values import CellValue, Number, as_number


class Operator(str, Enum):
    add = "add"
    subtract = "subtract"
    multiply = "multiply"
    divide = "divide"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]

    @classmethod
    def parse(cls, raw: str | Operator) -> Operator:
        """Accept an operator name (``multiply``) or symbol (``*``, ``×``)."""
        if isinstance(raw, Operator):
            return raw
        key = str(raw).strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            raise ValueError(
                f"Unsupported operator: {raw!r}. "
                f"Use one of {[op.value for op in cls]}"
            ) from None


_SYMBOLS = {
    Operator.add: "+",
    Operator.subtract: "-",
    Operator.multiply: "*",
    Operator.divide: "/",
}

_ALIASES = {
    "+": Operator.add,
    "-": Operator.subtract,
    "*": Operator.multiply,
    "x": Operator.multiply,
    "×": Operator.multiply,
    "/": Operator.divide,
    "÷": Operator.divide,
}

_CENT = Decimal("0.01")

# Enough digits to quantize any finite float (up to ~1.8e308) to cents
_DECIMAL_PREC = 400


@dataclass(frozen=True)
class Formula:
    """``result_column = operand_a <operator> operand_b``."""

    result_column: str
    operand_a: str
    operand_b: str
    operator: Operator

    @classmethod
    def build(
        cls,
        result_column: str,
        operand_a: str,
        operand_b: str,
        operator: str | Operator,
    ) -> Formula:
        """Trim titles and resolve *operator* from a name or symbol."""
        return cls(
            result_column=str(result_column).strip(),
            operand_a=str(operand_a).strip(),
            operand_b=str(operand_b).strip(),
            operator=Operator.parse(operator),
        )

    @property
    def operands(self) -> tuple[str, str]:
        return (self.operand_a, self.operand_b)

    def describe(self) -> str:
        return f"{self.result_column} = {self.operand_a} {self.operator.symbol} {self.operand_b}"

    def to_dict(self) -> dict[str, str]:
        return {
            "result_column": self.result_column,
            "operand_a": self.operand_a,
            "operand_b": self.operand_b,
            "operator": self.operator.value,
        }


def round_half_away(value: float, places: int = 2) -> float:
    """Round *value* to *places* decimals, ties away from zero.

    Non-finite input (NaN, or infinity from float overflow) yields ``0``.
    """
    if not math.isfinite(value):
        return 0.0
    quantum = _CENT if places == 2 else Decimal(1).scaleb(-places)
    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PREC
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def compute(operator: Operator, a: float, b: float) -> float:
    """Apply *operator* to two floats; a zero denominator yields ``0``."""
    if operator is Operator.add:
        result = a + b
    elif operator is Operator.subtract:
        result = a - b
    elif operator is Operator.multiply:
        result = a * b
    elif operator is Operator.divide:
        result = a / b if b != 0 else 0.0
    else:
        result = 0.0
    return round_half_away(result)


def evaluate_formula(formula: Formula, values: MutableMapping[str, CellValue]) -> Number:
    """Evaluate *formula* against one row's values."""
    a = as_number(values.get(formula.operand_a, Number(0.0)))
    b = as_number(values.get(formula.operand_b, Number(0.0)))
    return Number(compute(formula.operator, a, b))


class FormulaGraph:
    """Registered formulas of one sheet, applied in dependency order."""

    def __init__(self, formulas: Iterable[Formula] = ()) -> None:
        self._formulas: dict[str, Formula] = {}
        self._order: list[Formula] | None = None
        for f in formulas:
            self._formulas[f.result_column] = f

    def __contains__(self, title: object) -> bool:
        return title in self._formulas

    def __len__(self) -> int:
        return len(self._formulas)

    def get(self, title: str) -> Formula | None:
        return self._formulas.get(title)

    def formulas(self) -> list[Formula]:
        """Formulas in registration order."""
        return list(self._formulas.values())

    def copy(self) -> FormulaGraph:
        return FormulaGraph(self._formulas.values())

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, formula: Formula, known_columns: Iterable[str]) -> None:
        """Add a formula for a new result column.

        Raises:
            CyclicFormulaError: If an operand is the result column itself.
            FormulaOperandError: If an operand names no existing column.
        """
        self._validate(formula, set(known_columns))
        self._formulas[formula.result_column] = formula
        self._order = None

    def redefine(self, formula: Formula, known_columns: Iterable[str]) -> None:
        """Replace the formula of an existing calculated column in place.

        The column keeps its registration position.

        Raises:
            CyclicFormulaError: If the new bindings close a cycle.
            FormulaOperandError: If an operand names no existing column.
        """
        if formula.result_column not in self._formulas:
            raise FormulaOperandError(
                formula.result_column,
                message=f"Column {formula.result_column!r} is not a calculated column",
            )
        self._validate(formula, set(known_columns))
        self._formulas[formula.result_column] = formula
        self._order = None

    def remove(self, title: str) -> None:
        self._formulas.pop(title, None)
        self._order = None

    def dependents(self, title: str) -> list[str]:
        """Result columns whose formula uses *title* as an operand."""
        return [f.result_column for f in self._formulas.values() if title in f.operands]

    def _validate(self, formula: Formula, known: set[str]) -> None:
        title = formula.result_column
        for operand in formula.operands:
            if operand == title:
                raise CyclicFormulaError([title, title])
        for operand in formula.operands:
            if operand not in known:
                raise FormulaOperandError(operand, available=sorted(known - {title}))
        for operand in formula.operands:
            path = self._path_to(operand, title, [title])
            if path is not None:
                raise CyclicFormulaError(path)

    def _path_to(self, node: str, target: str, trail: list[str]) -> list[str] | None:
        """Depth-first search from *node* along operand edges to *target*."""
        trail = trail + [node]
        if node == target:
            return trail
        formula = self._formulas.get(node)
        if formula is None or node in trail[:-1]:
            return None
        for operand in formula.operands:
            found = self._path_to(operand, target, trail)
            if found is not None:
                return found
        return None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def order(self) -> list[Formula]:
        """Formulas in topological order, registration order among peers."""
        if self._order is not None:
            return list(self._order)

        pending = list(self._formulas.values())
        placed: set[str] = set()
        ordered: list[Formula] = []
        while pending:
            for i, f in enumerate(pending):
                waits_on = [op for op in f.operands if op in self._formulas and op not in placed]
                if not waits_on:
                    ordered.append(f)
                    placed.add(f.result_column)
                    pending.pop(i)
                    break
            else:
                # Registration rejects cycles, so this only trips on a
                # graph built directly from inconsistent formulas.
                names = [f.result_column for f in pending]
                raise CyclicFormulaError(names + names[:1])

        self._order = ordered
        return list(ordered)

    def apply(self, values: MutableMapping[str, CellValue]) -> None:
        """Recompute every calculated value of one row in place."""
        for formula in self.order():
            values[formula.result_column] = evaluate_formula(formula, values)
