"""Conditional nodes. Both return ``branchToFollow`` for the orchestrator.

IF config (structured form):
    {"leftPath": "price", "operator": "lt", "rightValue": "5"}

IF config (condition string form):
    {"condition": "price < 5"}

SWITCH config:
    {"valuePath": "status", "cases": [
        {"id": "case_1", "label": "Ok", "operator": "equals", "compareValue": "ok"},
        {"id": "default", "label": "Default", "isDefault": true},
    ]}
"""

import re
from typing import Any, Dict, List

from flowrunner.constants import MAX_SWITCH_CASES
from flowrunner.core.logging import get_logger
from flowrunner.services.execution.conditions import (
    IF_OPERATORS,
    SWITCH_OPERATORS,
    coerce_number,
    evaluate_operator,
    get_nested_value,
    has_nested_value,
    parse_condition_string,
)
from flowrunner.services.execution.models import (
    NodeExecutionInput,
    NodeExecutionOutput,
    NodeType,
    ValidationResult,
    utcnow,
)
from .base import NodeProcessor

logger = get_logger(__name__)

# Paths that name a price feed rather than a key ("ETH/USD", "BTCUSD", "price")
_PRICE_FEED_PATTERNS = (
    re.compile(r"^[A-Z0-9]+/[A-Z0-9]+$", re.IGNORECASE),
    re.compile(r"^[A-Z0-9]+/[A-Z0-9]+\s+price$", re.IGNORECASE),
    re.compile(r"^[A-Z0-9]+USD$", re.IGNORECASE),
)


def _looks_like_price_feed(path: str) -> bool:
    text = path.strip()
    return text.lower() in ("price", "formattedanswer") or any(p.match(text) for p in _PRICE_FEED_PATTERNS)


def resolve_operand(input_data: Dict[str, Any], value_or_path: Any) -> Any:
    """Resolve a path against the input, else treat it as a literal.

    Price-feed style paths fall back to the ``formattedAnswer`` or ``price``
    of the input or of any upstream block.
    """
    if not isinstance(value_or_path, str) or not value_or_path:
        return value_or_path

    if has_nested_value(input_data, value_or_path):
        return get_nested_value(input_data, value_or_path)

    if _looks_like_price_feed(value_or_path):
        for key in ("formattedAnswer", "price"):
            if input_data.get(key) is not None:
                return input_data[key]
        for block in (input_data.get("blocks") or {}).values():
            if isinstance(block, dict):
                value = block.get("formattedAnswer", block.get("price"))
                if value is not None:
                    return value

    return coerce_number(value_or_path)


class IfNodeProcessor(NodeProcessor):
    def get_node_type(self) -> str:
        return NodeType.IF.value

    @staticmethod
    def normalize_config(raw: Dict[str, Any]) -> Dict[str, Any]:
        """Accept either the structured form or a ``condition`` string."""
        raw = raw or {}
        structured = (
            isinstance(raw.get("leftPath"), str)
            and raw.get("operator")
            and (raw.get("operator") == "isEmpty" or raw.get("rightValue") is not None)
        )
        if structured:
            return raw

        condition = raw.get("condition")
        if isinstance(condition, str) and condition.strip():
            parsed = parse_condition_string(condition)
            if parsed:
                left, operator, right = parsed
                return {"leftPath": left, "operator": operator, "rightValue": right}
        return raw

    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        started_at = utcnow()
        config = self.normalize_config(input.node_config)

        validation = await self.validate(config)
        if not validation.valid:
            return self.fail(input, f"Invalid IF configuration: {', '.join(validation.errors)}",
                             started_at, conditionResult=False)

        operator = config["operator"]
        left = resolve_operand(input.input_data, config["leftPath"])
        right = config.get("rightValue")
        result = evaluate_operator(operator, left, coerce_number(right))

        logger.info("IF condition evaluated", node_id=input.node_id, left_path=config["leftPath"],
                    left=left, operator=operator, right=right, result=result)

        return self.succeed(input, {
            "conditionResult": result,
            "branchToFollow": "true" if result else "false",
            "evaluatedLeft": left,
            "operator": operator,
            "evaluatedRight": right,
        }, started_at)

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        config = self.normalize_config(config)
        errors: List[str] = []

        if not isinstance(config.get("leftPath"), str) or not config.get("leftPath"):
            errors.append("Left path is required and must be a string")

        operator = config.get("operator")
        if operator not in IF_OPERATORS:
            errors.append(f"Operator must be one of: {', '.join(IF_OPERATORS)}")

        if operator != "isEmpty" and config.get("rightValue") is None:
            errors.append("Right value is required for this operator")

        return ValidationResult(valid=not errors, errors=errors)


class SwitchNodeProcessor(NodeProcessor):
    def get_node_type(self) -> str:
        return NodeType.SWITCH.value

    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        started_at = utcnow()
        config = input.node_config or {}

        validation = await self.validate(config)
        if not validation.valid:
            return self.fail(input, f"Invalid SWITCH configuration: {', '.join(validation.errors)}",
                             started_at)

        value = get_nested_value(input.input_data, config["valuePath"])
        cases = config["cases"]
        candidates = [c for c in cases if not c.get("isDefault")]
        default_case = next((c for c in cases if c.get("isDefault")), None)

        matched = None
        for case in candidates:
            operator = case.get("operator")
            # regex patterns are used verbatim, everything else coerces numbers
            target = case.get("compareValue")
            if operator != "regex":
                target = coerce_number(target)
            if evaluate_operator(operator, value, target):
                matched = case
                break

        if matched is None:
            matched = default_case

        branch = (matched or {}).get("id") or "default"
        label = (matched or {}).get("label") or "Default"

        logger.info("SWITCH evaluated", node_id=input.node_id, value_path=config["valuePath"],
                    value=value, matched_case_id=branch)

        return self.succeed(input, {
            "matchedCaseId": branch,
            "matchedCaseLabel": label,
            "branchToFollow": branch,
            "evaluatedValue": value,
            "casesEvaluated": len(candidates),
        }, started_at)

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        errors: List[str] = []
        config = config or {}

        if not isinstance(config.get("valuePath"), str) or not config.get("valuePath"):
            errors.append("Value path is required and must be a string")

        cases = config.get("cases")
        if not isinstance(cases, list):
            errors.append("Cases array is required")
            return ValidationResult(valid=False, errors=errors)

        if len(cases) > MAX_SWITCH_CASES:
            errors.append(f"Maximum {MAX_SWITCH_CASES} cases allowed")

        defaults = [c for c in cases if c.get("isDefault")]
        if not defaults:
            errors.append("A default case is required")
        elif len(defaults) > 1:
            errors.append("Only one default case is allowed")

        for index, case in enumerate(cases, start=1):
            if not case.get("id"):
                errors.append(f"Case {index}: ID is required")
            if not case.get("label"):
                errors.append(f"Case {index}: Label is required")
            if case.get("isDefault"):
                continue
            operator = case.get("operator")
            if operator not in SWITCH_OPERATORS:
                errors.append(f"Case {index}: Operator must be one of: {', '.join(SWITCH_OPERATORS)}")
            if operator != "isEmpty" and case.get("compareValue") is None:
                errors.append(f"Case {index}: Compare value is required for this operator")

        return ValidationResult(valid=not errors, errors=errors)
