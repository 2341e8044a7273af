"""Lark-based parser for calculated-column definitions.

Accepted forms::

    总价 = 单价 * 数量          full definition
    [Unit Price] × [Qty]        expression only, result named separately
    = 收入 - 支出               leading ``=`` is optional

Column names are either bare words (no whitespace or operator characters)
or wrapped in square brackets.  Operators: ``+ - * / × ÷``.  Exactly one
operator and two operands -- this is not a general expression language.
"""

from __future__ import annotations

from lark import Lark, Token, Tree
from lark.exceptions import LarkError

from sheetbook.formulas.engine import Formula, Operator
from sheetbook.formulas.errors import FormulaParseError

GRAMMAR = r"""
start: definition
    | expression

definition: name "=" expression
expression: "="? name OP name

name: BRACKETED
    | WORD

OP: "+" | "-" | "*" | "/" | "×" | "÷"

BRACKETED: /\[[^\]]+\]/
WORD: /[^\s\[\]=+\-*\/×÷()]+/

%import common.WS
%ignore WS
"""

_parser = Lark(GRAMMAR, parser="lalr", start="start")


def _name(tree: Tree) -> str:
    token = tree.children[0]
    text = str(token)
    if isinstance(token, Token) and token.type == "BRACKETED":
        text = text[1:-1]
    text = text.strip()
    if not text:
        raise FormulaParseError("Empty column name")
    return text


def _expression(tree: Tree) -> tuple[str, Operator, str]:
    left, op, right = tree.children
    return _name(left), Operator.parse(str(op)), _name(right)


def parse_formula_text(text: str, result_column: str | None = None) -> Formula:
    """Parse a formula definition into a :class:`Formula`.

    Args:
        text: Definition text, e.g. ``"总价 = 单价 * 数量"``.
        result_column: Result title for expression-only text.  Ignored
            (and must agree, if given) when *text* names its own result.

    Raises:
        FormulaParseError: On invalid syntax or a missing result column.
    """
    text = text.strip()
    if not text:
        raise FormulaParseError("Formula is empty", position=0)
    try:
        tree = _parser.parse(text)
    except LarkError as exc:
        pos = getattr(exc, "column", None)
        raise FormulaParseError(str(exc).splitlines()[0], position=pos) from exc

    node = tree.children[0]
    if node.data == "definition":
        name_tree, expr_tree = node.children
        result = _name(name_tree)
        if result_column is not None and result_column.strip() != result:
            raise FormulaParseError(
                f"Result column {result!r} does not match {result_column!r}"
            )
    else:
        expr_tree = node
        if result_column is None or not result_column.strip():
            raise FormulaParseError("Formula has no result column")
        result = result_column.strip()

    operand_a, operator, operand_b = _expression(expr_tree)
    return Formula(
        result_column=result,
        operand_a=operand_a,
        operand_b=operand_b,
        operator=operator,
    )
