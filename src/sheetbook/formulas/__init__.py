"""Two-operand calculated-column formulas.

Public API::

    from sheetbook.formulas import Formula, FormulaGraph, Operator, parse_formula_text
"""

from sheetbook.formulas.engine import (
    Formula,
    FormulaGraph,
    Operator,
    compute,
    evaluate_formula,
    round_half_away,
)
from sheetbook.formulas.errors import (
    CyclicFormulaError,
    FormulaError,
    FormulaOperandError,
    FormulaParseError,
)
from sheetbook.formulas.parser import parse_formula_text

__all__ = [
    "CyclicFormulaError",
    "Formula",
    "FormulaError",
    "FormulaGraph",
    "FormulaOperandError",
    "FormulaParseError",
    "Operator",
    "compute",
    "evaluate_formula",
    "parse_formula_text",
    "round_half_away",
]
