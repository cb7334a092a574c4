"""Value comparison for IF and SWITCH nodes.

Supported operators:
- equals: loose equality (``"5" == 5``)
- notEquals: negation of equals
- contains: substring / list membership / dict key
- gt, lt, gte, lte: numeric comparison with string coercion
- isEmpty: None, "", [], {}
- regex: regular expression search (SWITCH only)
"""

import math
import re
from typing import Any, Dict, Optional, Tuple

from flowrunner.core.logging import get_logger

logger = get_logger(__name__)

IF_OPERATORS = ("equals", "notEquals", "contains", "gt", "lt", "gte", "lte", "isEmpty")
SWITCH_OPERATORS = IF_OPERATORS + ("regex",)

# Symbolic operators accepted in condition strings such as "price < 5"
SYMBOL_OPERATORS: Dict[str, str] = {
    "<=": "lte",
    ">=": "gte",
    "!=": "notEquals",
    "==": "equals",
    "<": "lt",
    ">": "gt",
    "=": "equals",
}

_CONDITION_PATTERN = re.compile(r"^\s*(.+?)\s*(<=|>=|!=|==|<|>|=)\s*(.+?)\s*$")

_MISSING = object()


def get_nested_value(data: Dict[str, Any], field_path: str, default: Any = None) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "result.status", "items.0.name")
        default: Returned when any segment is missing

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if data is None or not field_path:
        return default

    current: Any = data
    for part in field_path.split('.'):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default

    return current


def has_nested_value(data: Dict[str, Any], field_path: str) -> bool:
    return get_nested_value(data, field_path, _MISSING) is not _MISSING


def coerce_number(value: Any) -> Any:
    """Turn numeric strings into int/float; return anything else unchanged."""
    if isinstance(value, bool) or not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return value
    try:
        number = float(text)
    except ValueError:
        return value
    if not math.isfinite(number):
        return value
    if number.is_integer() and re.fullmatch(r"[+-]?\d+", text):
        return int(text)
    return number


def parse_condition_string(condition: str) -> Optional[Tuple[str, str, Any]]:
    """Split ``"left op right"`` into ``(left, operator, right)``."""
    match = _CONDITION_PATTERN.match(condition or "")
    if not match:
        return None
    left, symbol, right = match.groups()
    return left, SYMBOL_OPERATORS[symbol], right.strip("'\"")


def evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator. Unknown operators evaluate to False."""
    if operator == "equals":
        return _loose_equals(actual, target)

    elif operator == "notEquals":
        return not _loose_equals(actual, target)

    elif operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, str):
            return str(target) in actual
        if isinstance(actual, (list, tuple, dict)):
            return target in actual
        return False

    elif operator == "gt":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "lt":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "gte":
        return _safe_compare(actual, target, lambda a, b: a >= b)

    elif operator == "lte":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    elif operator == "isEmpty":
        if actual is None:
            return True
        if isinstance(actual, (str, list, dict, tuple)):
            return len(actual) == 0
        return False

    elif operator == "regex":
        if actual is None or target is None:
            return False
        try:
            return bool(re.search(str(target), str(actual)))
        except re.error:
            logger.warning("Invalid regex pattern", pattern=target)
            return False

    logger.warning("Unknown operator", operator=operator)
    return False


def _loose_equals(actual: Any, target: Any) -> bool:
    if actual == target:
        return True
    if actual is None or target is None:
        return False
    left, right = coerce_number(actual), coerce_number(target)
    if _is_number(left) and _is_number(right):
        return left == right
    return str(actual) == str(target)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Compare numerically when both sides coerce to numbers, else as strings."""
    if actual is None or target is None:
        return False

    left, right = coerce_number(actual), coerce_number(target)
    if _is_number(left) and _is_number(right):
        return comparator(left, right)

    try:
        return comparator(str(actual), str(target))
    except TypeError:
        return False
