"""Error types for sheet parsing, workspace mutation and persistence."""

from __future__ import annotations


class SheetbookError(Exception):
    """Base class for all sheetbook errors."""


class ParseError(SheetbookError):
    """No usable header row could be found in a row matrix.

    Attributes:
        sheet_name: Name of the sheet that failed to parse.
    """

    def __init__(self, sheet_name: str, message: str) -> None:
        self.sheet_name = sheet_name
        super().__init__(f"Sheet {sheet_name!r}: {message}")


class DuplicateColumnError(SheetbookError):
    """A column with the requested title already exists."""

    def __init__(self, title: str) -> None:
        self.title = title
        super().__init__(f"Column {title!r} already exists")


class UnknownColumnError(SheetbookError):
    """Reference to a column that is not part of the sheet.

    Attributes:
        title: The unresolved column title.
        available: Titles currently defined on the sheet.
    """

    def __init__(self, title: str, available: list[str] | None = None) -> None:
        self.title = title
        self.available = available or []
        msg = f"Unknown column: {title!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class CalculatedColumnError(SheetbookError):
    """Attempt to write a value into a calculated column."""

    def __init__(self, titles: list[str]) -> None:
        self.titles = titles
        super().__init__(
            f"Calculated columns are read-only: {', '.join(repr(t) for t in titles)}"
        )


class RowNotFoundError(SheetbookError):
    """No row with the given key exists in the editing buffer."""

    def __init__(self, key: int) -> None:
        self.key = key
        super().__init__(f"Row {key!r} not found")


class ReorderError(SheetbookError):
    """A reorder move references a position outside the current range."""


class EditSessionError(SheetbookError):
    """Edit session misuse (second open session, stale or foreign session)."""


class WorkbookNotFoundError(SheetbookError):
    """No open workbook matches the requested id."""

    def __init__(self, workbook_id: str) -> None:
        self.workbook_id = workbook_id
        super().__init__(f"Workbook {workbook_id!r} not found")


class ColumnTitleError(SheetbookError):
    """A column title is blank."""


class SheetNotFoundError(SheetbookError):
    """An open workbook has no sheet with the requested name."""

    def __init__(self, sheet_name: str, available: list[str] | None = None) -> None:
        self.sheet_name = sheet_name
        self.available = available or []
        msg = f"Sheet {sheet_name!r} not found"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)
