"""
Restricted arithmetic and boolean expressions over named metrics.

Expressions reference metrics as ``{metric_name}`` placeholders and are
parsed with ``ast`` into a whitelisted tree; nothing is ever passed to
``eval``. Supported: numbers, ``+ - * / %``, unary ``-``/``+``, parentheses,
comparisons, and boolean ``&&``/``||``/``!`` (or ``and``/``or``/``not``).
"""

import ast
import operator
import re
from collections.abc import Iterable, Mapping

from src.core.errors import ConfigurationReferenceError

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.:-]*)\}")

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_COMPARE = {
    ast.Gt: operator.gt,
    ast.Lt: operator.lt,
    ast.GtE: operator.ge,
    ast.LtE: operator.le,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}


def placeholders(expression: str) -> list[str]:
    """Metric names referenced by an expression, in order of first use"""
    return list(dict.fromkeys(_PLACEHOLDER.findall(expression)))


def _translate(expression: str) -> tuple[str, dict[str, str]]:
    names: dict[str, str] = {}

    def substitute(match: re.Match) -> str:
        metric = match.group(1)
        return names.setdefault(metric, f"__m{len(names)}")

    text = _PLACEHOLDER.sub(substitute, expression)
    if "{" in text or "}" in text:
        raise ConfigurationReferenceError(f"Malformed placeholder in expression: {expression}")
    text = text.replace("&&", " and ").replace("||", " or ")
    # "!" is negation unless it starts "!="
    text = re.sub(r"!(?!=)", " not ", text)
    return text, {alias: metric for metric, alias in names.items()}


def _parse(expression: str) -> tuple[ast.Expression, dict[str, str]]:
    text, aliases = _translate(expression)
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ConfigurationReferenceError(f"Invalid expression '{expression}': {e.msg}") from None
    for node in ast.walk(tree):
        if not isinstance(
            node,
            ast.Expression | ast.BinOp | ast.UnaryOp | ast.BoolOp | ast.Compare | ast.Constant
            | ast.Name | ast.Load | ast.And | ast.Or | ast.Not | ast.USub | ast.UAdd,
        ) and type(node) not in _BINARY and type(node) not in _COMPARE:
            raise ConfigurationReferenceError(
                f"Unsupported syntax '{type(node).__name__}' in expression '{expression}'"
            )
        if isinstance(node, ast.Constant) and (
            isinstance(node.value, bool) or not isinstance(node.value, int | float)
        ):
            raise ConfigurationReferenceError(f"Only numeric literals are allowed: '{expression}'")
        if isinstance(node, ast.Name) and node.id not in aliases:
            raise ConfigurationReferenceError(
                f"Bare name '{node.id}' in expression '{expression}'; wrap metrics in braces"
            )
    return tree, aliases


def validate_expression(expression: str, known_metrics: Iterable[str] | None = None) -> None:
    """Check syntax and, when given, that every placeholder is a known metric"""
    _, aliases = _parse(expression)
    if known_metrics is not None:
        known = set(known_metrics)
        missing = [metric for metric in aliases.values() if metric not in known]
        if missing:
            raise ConfigurationReferenceError(
                f"Expression references metrics not in the rule: {', '.join(missing)}"
            )


def _evaluate(node: ast.AST, values: Mapping[str, float]) -> float | bool:
    match node:
        case ast.Expression(body=body):
            return _evaluate(body, values)
        case ast.Constant(value=value):
            return value
        case ast.Name(id=name):
            return values[name]
        case ast.UnaryOp(op=ast.Not(), operand=operand):
            return not _evaluate(operand, values)
        case ast.UnaryOp(op=ast.USub(), operand=operand):
            return -_evaluate(operand, values)
        case ast.UnaryOp(op=ast.UAdd(), operand=operand):
            return +_evaluate(operand, values)
        case ast.BinOp(left=left, op=op, right=right):
            try:
                return _BINARY[type(op)](_evaluate(left, values), _evaluate(right, values))
            except ZeroDivisionError:
                raise ConfigurationReferenceError("Division by zero in expression") from None
        case ast.BoolOp(op=ast.And(), values=operands):
            return all(_evaluate(item, values) for item in operands)
        case ast.BoolOp(op=ast.Or(), values=operands):
            return any(_evaluate(item, values) for item in operands)
        case ast.Compare(left=left, ops=ops, comparators=comparators):
            current = _evaluate(left, values)
            for op, comparator in zip(ops, comparators):
                right = _evaluate(comparator, values)
                if not _COMPARE[type(op)](current, right):
                    return False
                current = right
            return True
    raise ConfigurationReferenceError(f"Unsupported expression node {type(node).__name__}")


def evaluate_expression(expression: str, metrics: Mapping[str, float]) -> float | bool:
    """Evaluate an expression against resolved metric values.

    Returns a bool for comparison or boolean expressions and a number for
    arithmetic ones.
    """
    tree, aliases = _parse(expression)
    values = {}
    for alias, metric in aliases.items():
        if metric not in metrics:
            raise ConfigurationReferenceError(f"Unknown metric '{metric}' in expression")
        values[alias] = float(metrics[metric])
    return _evaluate(tree, values)
