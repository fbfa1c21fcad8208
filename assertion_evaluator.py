# assertion_evaluator.py

import json
import logging
import re
from typing import Any, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from condition_evaluator import to_number
from engine_config import MAX_ASSERTIONS
from flow_models import AssertionResult, ExecuteResult
from jsonpath_extractor import MISSING, extract, parse_body
from template_renderer import stringify_value

logger = logging.getLogger("FlowRunner.assertions")

__all__ = ["AssertionSpec", "AssertionReport", "evaluate_assertions", "values_equal"]

ASSERTION_TYPES = ("status", "jsonpath", "header", "responseTime", "bodyContains")
OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "contains", "in", "exists", "regex")


class AssertionSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., description="status | jsonpath | header | responseTime | bodyContains")
    operator: str = Field("", description="eq | ne | gt | gte | lt | lte | contains | in | exists | regex")
    value: Any = Field(None, description="Expected value")
    path: Optional[str] = Field(None, description="JSONPath for jsonpath assertions")
    name: Optional[str] = Field(None, description="Header name for header assertions")

    def describe(self) -> str:
        target = self.path or self.name or ""
        parts = [self.type, target, self.operator or "contains", "" if self.value is None else stringify_value(self.value)]
        return " ".join(p for p in parts if p)


class AssertionReport(BaseModel):
    passed: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    results: List[AssertionResult] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    overflow: bool = False


def values_equal(actual: Any, expected: Any) -> bool:
    """Numeric equality when both sides are numbers, else equality of the string forms."""
    a_num, e_num = to_number(actual), to_number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    return stringify_value(actual) == stringify_value(expected)


def _expected_list(expected: Any) -> Optional[list]:
    if isinstance(expected, list):
        return expected
    if isinstance(expected, str):
        try:
            decoded = json.loads(expected)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, list) else None
    return None


def _actual_value(spec: AssertionSpec, response: ExecuteResult) -> Any:
    if spec.type == "status":
        return response.status_code
    if spec.type == "responseTime":
        return response.duration_ms
    if spec.type == "bodyContains":
        return response.body
    if spec.type == "header":
        value = response.header(spec.name or "")
        return MISSING if value is None else value
    if spec.type == "jsonpath":
        parsed = parse_body(response.body)
        if parsed is MISSING:
            return MISSING
        return extract(parsed, spec.path or "$")
    raise ValueError(f"unknown assertion type '{spec.type}'")


def _apply_operator(operator: str, actual: Any, expected: Any) -> Union[bool, str]:
    """True/False, or a failure message when the operands cannot be compared."""
    if operator == "exists":
        want = True if expected is None else str(expected).strip().lower() not in ("false", "0")
        return (actual is not MISSING) == want
    if actual is MISSING:
        return "value not found"

    if operator == "eq":
        return values_equal(actual, expected)
    if operator == "ne":
        return not values_equal(actual, expected)
    if operator in ("gt", "gte", "lt", "lte"):
        a_num, e_num = to_number(actual), to_number(expected)
        if a_num is None or e_num is None:
            return f"non-numeric operands ({stringify_value(actual)!r}, {stringify_value(expected)!r})"
        if operator == "gt":
            return a_num > e_num
        if operator == "gte":
            return a_num >= e_num
        if operator == "lt":
            return a_num < e_num
        return a_num <= e_num
    if operator == "contains":
        if isinstance(actual, list):
            return any(values_equal(item, expected) for item in actual)
        return stringify_value(expected) in stringify_value(actual)
    if operator == "in":
        options = _expected_list(expected)
        if options is None:
            return "'in' expects an array value"
        return any(values_equal(actual, item) for item in options)
    if operator == "regex":
        try:
            pattern = re.compile(stringify_value(expected))
        except re.error as e:
            return f"invalid regex: {e}"
        return pattern.search(stringify_value(actual)) is not None
    return f"unknown operator '{operator}'"


def evaluate_assertions(
    assertions: Sequence[Union[AssertionSpec, dict]],
    response: ExecuteResult,
    *,
    max_assertions: int = MAX_ASSERTIONS,
) -> AssertionReport:
    """
    Run declarative checks against a response, in order. At most
    max_assertions are evaluated; the remainder is reported as not evaluated
    through a warning and the overflow flag. Failures never raise.
    """
    report = AssertionReport()
    items = list(assertions)
    if len(items) > max_assertions:
        skipped = len(items) - max_assertions
        report.overflow = True
        report.warnings.append(
            f"Maximum assertion limit ({max_assertions}) exceeded: {skipped} assertion(s) not evaluated"
        )
        items = items[:max_assertions]

    for raw in items:
        spec = raw if isinstance(raw, AssertionSpec) else AssertionSpec.model_validate(raw)
        operator = spec.operator or ("contains" if spec.type == "bodyContains" else "eq")
        label = spec.describe()
        try:
            actual = _actual_value(spec, response)
            outcome = _apply_operator(operator, actual, spec.value)
        except ValueError as e:
            outcome = str(e)
            actual = MISSING

        if outcome is True:
            report.passed += 1
            report.results.append(AssertionResult(name=label, passed=True))
            continue

        if outcome is False:
            shown = "<missing>" if actual is MISSING else stringify_value(actual)
            message = f"Assertion failed: {label} (actual: {shown})"
        else:
            message = f"Assertion failed: {label} ({outcome})"
        report.failed += 1
        report.errors.append(message)
        report.results.append(AssertionResult(name=label, passed=False, message=message))
        logger.debug(message)
    return report
