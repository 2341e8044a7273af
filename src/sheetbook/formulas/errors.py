"""Error types for calculated-column formulas."""

from __future__ import annotations

from sheetbook.errors import SheetbookError


class FormulaError(SheetbookError):
    """Base class for all formula-related errors."""


class FormulaParseError(FormulaError):
    """Syntax error in a formula definition.

    Attributes:
        position: Character position where the error was detected.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class FormulaOperandError(FormulaError):
    """An operand does not name an existing column, or a column is still in use.

    Attributes:
        operand: The offending column title.
        available: Titles currently available as operands.
    """

    def __init__(
        self,
        operand: str,
        available: list[str] | None = None,
        message: str | None = None,
    ) -> None:
        self.operand = operand
        self.available = available or []
        msg = message or f"Unknown operand column: {operand!r}"
        if self.available and message is None:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class CyclicFormulaError(FormulaError):
    """Raised when a formula would make calculated columns depend on themselves.

    Attributes:
        cycle_path: Column titles along the cycle, first title repeated last.
    """

    def __init__(self, cycle_path: list[str]) -> None:
        self.cycle_path = cycle_path
        super().__init__(f"Circular formula dependency: {' -> '.join(cycle_path)}")
