"""
Comparison operators shared by alert definitions and breach rules.
"""

import operator
from enum import Enum

from .errors import ValidationError


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NEQ = "!="


_FUNCTIONS = {
    Operator.GT: operator.gt,
    Operator.LT: operator.lt,
    Operator.GTE: operator.ge,
    Operator.LTE: operator.le,
    Operator.EQ: operator.eq,
    Operator.NEQ: operator.ne,
}


def parse_operator(value: "Operator | str") -> Operator:
    try:
        return Operator(value)
    except ValueError:
        available = ", ".join(op.value for op in Operator)
        raise ValidationError(f"Unknown operator '{value}'. Available operators: {available}") from None


def compare(value: float, op: Operator | str, threshold: float) -> bool:
    return _FUNCTIONS[Operator(op)](value, threshold)
