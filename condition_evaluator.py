# condition_evaluator.py

import logging
from typing import Any, List, NamedTuple, Optional, Tuple

from template_renderer import Lookup, find_unresolved, render

logger = logging.getLogger("FlowRunner.conditions")

__all__ = ["ConditionOutcome", "ConditionSyntaxError", "evaluate_condition", "to_number", "is_truthy"]

# Longest operators first so '>=' is not read as '>'
_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")
_FALSY = ("", "0", "false", "null")


class ConditionSyntaxError(ValueError):
    pass


class ConditionOutcome(NamedTuple):
    result: bool
    error: Optional[str] = None


def to_number(value: Any) -> Optional[float]:
    """Float value of numbers and numeric strings, else None (booleans are not numbers)."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSY


def _split_top_level(expr: str, separator: str) -> List[str]:
    """Split on separator outside quotes and {{...}} placeholders."""
    parts = []
    buf = []
    quote = None
    depth = 0
    i = 0
    while i < len(expr):
        ch = expr[i]
        if quote:
            buf.append(ch)
            if ch == "\\" and i + 1 < len(expr):
                buf.append(expr[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            buf.append(ch)
        elif expr.startswith("{{", i):
            depth += 1
            buf.append("{{")
            i += 2
            continue
        elif expr.startswith("}}", i) and depth:
            depth -= 1
            buf.append("}}")
            i += 2
            continue
        elif depth == 0 and expr.startswith(separator, i):
            parts.append("".join(buf))
            buf = []
            i += len(separator)
            continue
        else:
            buf.append(ch)
        i += 1
    if quote:
        raise ConditionSyntaxError(f"unterminated string literal in '{expr}'")
    if depth:
        raise ConditionSyntaxError(f"unterminated placeholder in '{expr}'")
    parts.append("".join(buf))
    return parts


def _find_operator(term: str) -> Optional[Tuple[int, str]]:
    """Position and text of the first comparison operator outside quotes/placeholders."""
    quote = None
    depth = 0
    i = 0
    lowered = term.lower()
    while i < len(term):
        ch = term[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif term.startswith("{{", i):
            depth += 1
            i += 2
            continue
        elif term.startswith("}}", i) and depth:
            depth -= 1
            i += 2
            continue
        elif depth == 0:
            for op in _OPERATORS:
                if term.startswith(op, i):
                    return i, op
            if lowered.startswith(" contains ", i):
                return i, "contains"
        i += 1
    return None


def _resolve_atom(text: str, lookup: Lookup) -> Any:
    """Rendered atom value; None stands for null or an unresolved placeholder."""
    atom = text.strip()
    if not atom:
        raise ConditionSyntaxError("missing operand")
    if len(atom) >= 2 and atom[0] == atom[-1] and atom[0] in ("'", '"'):
        return render(atom[1:-1], lookup)
    if atom[0] in ("'", '"') or atom[-1] in ("'", '"'):
        raise ConditionSyntaxError(f"malformed string literal {atom}")
    if atom.lower() == "null":
        return None
    rendered = render(atom, lookup)
    if find_unresolved(rendered):
        return None
    return rendered


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "contains":
        if left is None or right is None:
            return False
        return str(right) in str(left)

    left_num, right_num = to_number(left), to_number(right)
    if op in ("==", "!="):
        if left is None or right is None:
            equal = left is None and right is None
        elif left_num is not None and right_num is not None:
            equal = left_num == right_num
        else:
            equal = str(left) == str(right)
        return equal if op == "==" else not equal

    if left is None or right is None:
        return False
    if left_num is not None and right_num is not None:
        a, b = left_num, right_num
    else:
        a, b = str(left), str(right)
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "<":
        return a < b
    return a <= b


def _evaluate_term(term: str, lookup: Lookup) -> bool:
    text = term.strip()
    if not text:
        raise ConditionSyntaxError("empty comparison term")
    negate = False
    if text.startswith("!") and not text.startswith("!="):
        negate = True
        text = text[1:].strip()
        if not text:
            raise ConditionSyntaxError("'!' without operand")

    found = _find_operator(text)
    if found is None:
        result = is_truthy(_resolve_atom(text, lookup))
    else:
        pos, op = found
        width = len(" contains ") if op == "contains" else len(op)
        left = _resolve_atom(text[:pos], lookup)
        right = _resolve_atom(text[pos + width:], lookup)
        result = _compare(left, op, right)
    return not result if negate else result


def evaluate_condition(expression: Optional[str], lookup: Lookup) -> ConditionOutcome:
    """
    Evaluate a skip/branch condition such as "{{count}} < 3 && {{status}} == 'ok'".
    '&&' binds tighter than '||'; operands are rendered before comparison and
    compared numerically when both parse as numbers. An empty expression is
    true. Malformed expressions yield ConditionOutcome(False, error) instead
    of raising.
    """
    if expression is None or not expression.strip():
        return ConditionOutcome(True)
    try:
        # Every term is evaluated so syntax errors surface regardless of short-circuiting
        alternatives = [
            [_evaluate_term(term, lookup) for term in _split_top_level(alternative, "&&")]
            for alternative in _split_top_level(expression, "||")
        ]
        return ConditionOutcome(any(all(terms) for terms in alternatives))
    except ConditionSyntaxError as e:
        message = f"Malformed condition '{expression}': {e}"
        logger.warning(message)
        return ConditionOutcome(False, message)
