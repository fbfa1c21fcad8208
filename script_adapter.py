# script_adapter.py

import abc
import ast
import asyncio
import json
import logging
import operator
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from assertion_evaluator import AssertionSpec, evaluate_assertions
from cancellation import FlowCancelledError, run_cancellable
from condition_evaluator import evaluate_condition, to_number
from engine_config import EngineConfig
from flow_models import (
    AssertionResult,
    ExecuteResult,
    ExpectationError,
    FlowAction,
    FlowStep,
    ScriptError,
    ScriptQuotaError,
    ScriptResult,
    ScriptTimeoutError,
    VariableScope,
)
from jsonpath_extractor import MISSING, extract, parse_body
from template_renderer import render, render_data, stringify_value
from transport import DispatchRequest, Transport
from variable_store import ScopedOverlay, VariableStore

logger = logging.getLogger("FlowRunner.scripts")

__all__ = [
    "ScriptPhase", "ScriptContext", "ScriptAdapter", "ScriptEngine", "ScriptCapabilities",
    "DslScript", "DslScriptExecutor", "Expectation", "evaluate_math", "is_dsl_script",
]


class ScriptPhase(str, Enum):
    PRE = "pre"
    POST = "post"


def is_dsl_script(source: str) -> bool:
    return source.strip().startswith("{")


# ---------------------------
# DSL schema
# ---------------------------

class DslModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SetVariableOp(DslModel):
    name: str = Field(..., min_length=1, description="Variable to write")
    operation: Literal['set', 'increment', 'decrement', 'math', 'concat', 'conditional'] = Field('set')
    scope: VariableScope = Field(VariableScope.RUNTIME, description="Scope the write lands in")
    value: Any = Field(None, description="Literal for 'set'; rendered when a string")
    from_: Optional[str] = Field(None, alias="from", description="JSONPath into the response body for 'set'")
    by: Any = Field(1, description="Step for increment/decrement")
    expression: Optional[str] = Field(None, description="Arithmetic expression for 'math'")
    values: List[Any] = Field(default_factory=list, description="Parts joined by 'concat'")
    condition: Optional[str] = Field(None, description="Condition for 'conditional'")
    if_true: Any = Field(None, alias="ifTrue")
    if_false: Any = Field(None, alias="ifFalse")

    @field_validator('operation', mode='before')
    def default_operation(cls, v):
        # An empty operation means a plain set
        if v is None or v == "":
            return 'set'
        return v


class FlowBranch(DslModel):
    action: Literal['next', 'stop', 'repeat', 'goto'] = Field('next')
    step: Optional[str] = Field(None, description="Goto target by step name")
    step_order: Optional[int] = Field(None, alias="stepOrder", description="Goto target by 1-based stepOrder")

    @field_validator('action', mode='before')
    def default_action(cls, v):
        if v is None or v == "":
            return 'next'
        return v


class SwitchCase(FlowBranch):
    condition: str = Field("", description="Case matches when this condition is true")


class FlowControl(FlowBranch):
    type: Literal['', 'always', 'conditional', 'switch'] = Field('')
    condition: str = Field("")
    on_true: Optional[FlowBranch] = Field(None, alias="onTrue")
    on_false: Optional[FlowBranch] = Field(None, alias="onFalse")
    cases: List[SwitchCase] = Field(default_factory=list)
    default: Optional[FlowBranch] = None


class DslScript(DslModel):
    assertions: List[AssertionSpec] = Field(default_factory=list)
    set_variables: List[SetVariableOp] = Field(default_factory=list, alias="setVariables")
    flow: Optional[FlowControl] = None


# ---------------------------
# Execution context
# ---------------------------

class ScriptContext:
    """Everything a script invocation may observe for one step iteration."""

    def __init__(
        self,
        store: VariableStore,
        phase: ScriptPhase,
        step: FlowStep,
        *,
        flow_name: str = "",
        iteration: int = 1,
        loop_count: int = 1,
        request: Optional[DispatchRequest] = None,
        response: Optional[ExecuteResult] = None,
        cancel_event: Optional[asyncio.Event] = None,
        proxy_url: Optional[str] = None,
    ):
        self.store = store
        self.phase = phase
        self.step = step
        self.flow_name = flow_name
        self.iteration = iteration
        self.loop_count = loop_count
        self.request = request
        self.response = response
        self.cancel_event = cancel_event
        self.proxy_url = proxy_url

    def parsed_body(self) -> Any:
        if self.response is None:
            return MISSING
        return parse_body(self.response.body)


# ---------------------------
# Arithmetic for 'math' operations
# ---------------------------

_MATH_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}


def evaluate_math(expression: str) -> Union[int, float]:
    """Evaluate + - * / // % ** and parentheses over numeric literals. Raises ValueError otherwise."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"invalid math expression '{expression}'") from e

    def _eval(node):
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return node.value
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
            value = _eval(node.operand)
            return -value if isinstance(node.op, ast.USub) else value
        if isinstance(node, ast.BinOp) and type(node.op) in _MATH_OPS:
            left, right = _eval(node.left), _eval(node.right)
            if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
                raise ValueError("division by zero")
            if isinstance(node.op, ast.Pow) and abs(right) > 64:
                raise ValueError("exponent too large")
            return _MATH_OPS[type(node.op)](left, right)
        raise ValueError(f"unsupported element '{type(node).__name__}' in math expression '{expression}'")

    return _eval(tree)


# ---------------------------
# Declarative DSL executor
# ---------------------------

class DslScriptExecutor:
    """Runs JSON scripts: assertions, then setVariables, then the flow section."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def execute(self, source: str, ctx: ScriptContext) -> ScriptResult:
        result = ScriptResult()
        try:
            script = DslScript.model_validate(json.loads(source))
        except json.JSONDecodeError as e:
            result.add_error(f"Invalid script JSON: {e.msg}", e.lineno, e.colno)
            return result
        except ValidationError as e:
            for err in e.errors():
                location = ".".join(str(part) for part in err["loc"])
                result.add_error(f"Invalid script: {location}: {err['msg']}")
            return result

        overlay = ctx.store.overlay()

        if script.assertions:
            if ctx.phase == ScriptPhase.PRE or ctx.response is None:
                result.warnings.append("Assertions are ignored in pre-request scripts")
            else:
                self._run_assertions(script.assertions, ctx.response, result)

        ops = script.set_variables
        if len(ops) > self.config.max_variable_ops:
            result.warnings.append(
                f"Maximum variable operations ({self.config.max_variable_ops}) exceeded: "
                f"{len(ops) - self.config.max_variable_ops} operation(s) not applied"
            )
            ops = ops[:self.config.max_variable_ops]
        for op in ops:
            try:
                self._apply_operation(op, overlay, ctx)
            except ValueError as e:
                logger.warning(f"setVariables '{op.name}' not applied: {e}")
                result.record_error(f"setVariables '{op.name}': {e}")

        result.variable_writes = list(overlay.writes)
        result.updated_vars = overlay.updated_vars()

        if script.flow is not None:
            if ctx.phase == ScriptPhase.PRE:
                result.warnings.append("Flow control is ignored in pre-request scripts")
            else:
                self._resolve_flow(script.flow, overlay, result)
        return result

    def _run_assertions(self, assertions: List[AssertionSpec], response: ExecuteResult, result: ScriptResult):
        report = evaluate_assertions(assertions, response, max_assertions=self.config.max_assertions)
        result.assertions_passed += report.passed
        result.assertions_failed += report.failed
        result.assertion_results.extend(report.results)
        result.warnings.extend(report.warnings)
        for message in report.errors:
            result.add_error(message)
        if report.overflow:
            result.fatal_error = f"Maximum assertion limit ({self.config.max_assertions}) exceeded"

    def _apply_operation(self, op: SetVariableOp, overlay: ScopedOverlay, ctx: ScriptContext):
        lookup = overlay.get
        if op.operation == 'set':
            if op.from_:
                body = ctx.parsed_body()
                if body is MISSING:
                    raise ValueError("response body is not available as JSON")
                value = extract(body, render(op.from_, lookup))
                if value is MISSING:
                    raise ValueError(f"path '{op.from_}' not found in response")
            else:
                value = render_data(op.value, lookup)
            overlay.set(op.scope, op.name, value)

        elif op.operation in ('increment', 'decrement'):
            current = overlay.get_scoped(op.scope, op.name)
            if current is MISSING and op.scope == VariableScope.RUNTIME:
                current = overlay.get(op.name)
            base = 0.0 if current is MISSING else to_number(current)
            if base is None:
                raise ValueError(f"cannot {op.operation} non-numeric value '{current}'")
            by = to_number(render_data(op.by, lookup))
            if by is None:
                raise ValueError(f"'by' must be numeric, got '{op.by}'")
            overlay.set(op.scope, op.name, base + by if op.operation == 'increment' else base - by)

        elif op.operation == 'math':
            if not op.expression:
                raise ValueError("math operation requires 'expression'")
            overlay.set(op.scope, op.name, evaluate_math(render(op.expression, lookup)))

        elif op.operation == 'concat':
            overlay.set(op.scope, op.name, "".join(stringify_value(render_data(v, lookup)) for v in op.values))

        elif op.operation == 'conditional':
            outcome = evaluate_condition(op.condition or "", lookup)
            if outcome.error:
                raise ValueError(outcome.error)
            chosen = op.if_true if outcome.result else op.if_false
            overlay.set(op.scope, op.name, render_data(chosen, lookup))

    def _resolve_flow(self, flow: FlowControl, overlay: ScopedOverlay, result: ScriptResult):
        lookup = overlay.get
        kind = flow.type or 'always'
        branch: Optional[FlowBranch] = None
        if kind == 'always':
            branch = flow
        elif kind == 'conditional':
            outcome = evaluate_condition(flow.condition, lookup)
            if outcome.error:
                result.add_error(outcome.error)
                result.fatal_error = outcome.error
                return
            branch = flow.on_true if outcome.result else flow.on_false
        elif kind == 'switch':
            for case in flow.cases:
                outcome = evaluate_condition(case.condition, lookup)
                if outcome.error:
                    result.add_error(outcome.error)
                    result.fatal_error = outcome.error
                    return
                if outcome.result:
                    branch = case
                    break
            else:
                branch = flow.default

        if branch is None:
            result.flow_action = FlowAction.NEXT
            return
        result.flow_action = FlowAction(branch.action)
        if result.flow_action == FlowAction.GOTO:
            target_name = render(branch.step, lookup) if branch.step else None
            if not target_name and branch.step_order is None:
                message = "goto action requires 'step' or 'stepOrder'"
                result.add_error(message)
                result.fatal_error = message
                return
            result.goto_step_name = target_name
            result.goto_step_order = branch.step_order


# ---------------------------
# Embedded script engine capability surface
# ---------------------------

class ScriptEngine(abc.ABC):
    """
    An external sandboxed interpreter. It receives rendered source, the
    capability object and the timeout, and raises ScriptError (with
    line/column when known) for parse or runtime failures.
    """

    @abc.abstractmethod
    async def execute(self, source: str, pm: "ScriptCapabilities", timeout_ms: int) -> None:
        ...


class Expectation:
    """Chai-style assertion chain: pm.expect(x).to.be.above(1), pm.expect(x).not_.to.equal(2)."""

    _TYPE_NAMES = {
        "string": (str,), "number": (int, float), "boolean": (bool,),
        "object": (dict,), "array": (list,), "null": (type(None),),
    }

    def __init__(self, actual: Any, negate: bool = False):
        self.actual = actual
        self.negate = negate

    # Chain words
    @property
    def to(self) -> "Expectation":
        return self

    be = been = have = that = which = is_ = and_ = to

    @property
    def not_(self) -> "Expectation":
        return Expectation(self.actual, not self.negate)

    def _check(self, ok: bool, description: str) -> "Expectation":
        if ok == self.negate:
            prefix = "not " if self.negate else ""
            raise ExpectationError(f"expected {stringify_value(self.actual)} {prefix}{description}")
        return self

    def equal(self, expected: Any) -> "Expectation":
        return self._check(self.actual == expected, f"to equal {stringify_value(expected)}")

    eql = equal

    def above(self, value: Any) -> "Expectation":
        a, b = to_number(self.actual), to_number(value)
        return self._check(a is not None and b is not None and a > b, f"to be above {value}")

    def below(self, value: Any) -> "Expectation":
        a, b = to_number(self.actual), to_number(value)
        return self._check(a is not None and b is not None and a < b, f"to be below {value}")

    def include(self, item: Any) -> "Expectation":
        if isinstance(self.actual, (list, dict)):
            ok = item in self.actual
        else:
            ok = stringify_value(item) in stringify_value(self.actual)
        return self._check(ok, f"to include {stringify_value(item)}")

    contain = include

    def property(self, name: str, value: Any = MISSING) -> "Expectation":
        has = isinstance(self.actual, dict) and name in self.actual
        if value is MISSING or not has:
            return self._check(has, f"to have property '{name}'")
        return self._check(self.actual[name] == value, f"to have property '{name}' of {stringify_value(value)}")

    def length(self, size: int) -> "Expectation":
        try:
            ok = len(self.actual) == size
        except TypeError:
            ok = False
        return self._check(ok, f"to have length {size}")

    def a(self, type_name: str) -> "Expectation":
        types = self._TYPE_NAMES.get(type_name.lower(), ())
        ok = isinstance(self.actual, types)
        if type_name.lower() == "number" and isinstance(self.actual, bool):
            ok = False
        return self._check(ok, f"to be a {type_name}")

    an = a

    def true(self) -> "Expectation":
        return self._check(self.actual is True, "to be true")

    def false(self) -> "Expectation":
        return self._check(self.actual is False, "to be false")

    def null(self) -> "Expectation":
        return self._check(self.actual is None, "to be null")

    def undefined(self) -> "Expectation":
        return self._check(self.actual is MISSING, "to be undefined")


class HeaderAccessor:
    def __init__(self, headers: Dict[str, str]):
        self._headers = dict(headers)

    def get(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self._headers.items():
            if key.lower() == lowered:
                return value
        return None

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def to_dict(self) -> Dict[str, str]:
        return dict(self._headers)


class ResponseAccessor:
    def __init__(self, result: ExecuteResult):
        self._result = result
        self.code = result.status_code
        self.status = result.status_text
        self.response_time = result.duration_ms
        self.size = result.body_size
        self.headers = HeaderAccessor(result.headers)

    def text(self) -> str:
        return self._result.body

    def json(self) -> Any:
        parsed = parse_body(self._result.body)
        if parsed is MISSING:
            raise ScriptError("response body is not valid JSON")
        return parsed


class RequestAccessor:
    def __init__(self, request: Optional[DispatchRequest], step: FlowStep):
        self.url = request.url if request else step.url
        self.method = request.method if request else step.method
        self.headers = HeaderAccessor(request.headers if request else step.enabled_headers())
        self.body = (request.body if request else step.body) or ""


class ScopedVariables:
    def __init__(self, pm: "ScriptCapabilities", scope: VariableScope):
        self._pm = pm
        self._scope = scope

    def get(self, name: str) -> Optional[str]:
        self._pm._check_deadline()
        value = self._pm._overlay.get_scoped(self._scope, name)
        return None if value is MISSING else value

    def set(self, name: str, value: Any):
        self._pm._check_deadline()
        self._pm._overlay.set(self._scope, name, value)

    def has(self, name: str) -> bool:
        self._pm._check_deadline()
        return self._pm._overlay.has_scoped(self._scope, name)

    def unset(self, name: str):
        self._pm._check_deadline()
        self._pm._overlay.unset(self._scope, name)

    def clear(self):
        self._pm._check_deadline()
        self._pm._overlay.clear(self._scope)


class RuntimeVariables(ScopedVariables):
    """pm.variables: reads resolve across every scope, writes land in the runtime scope."""

    def get(self, name: str) -> Optional[str]:
        self._pm._check_deadline()
        value = self._pm._overlay.get(name)
        return None if value is MISSING else value

    def has(self, name: str) -> bool:
        return self.get(name) is not None


class ExecutionControl:
    _UNSET = object()

    def __init__(self):
        self.skipped = False
        self.next_request: Any = self._UNSET

    def skip_request(self):
        self.skipped = True

    def set_next_request(self, name: Optional[str]):
        self.next_request = name

    @property
    def next_request_set(self) -> bool:
        return self.next_request is not self._UNSET


class ScriptInfo:
    def __init__(self, ctx: ScriptContext):
        self.iteration = ctx.iteration
        self.loop_count = ctx.loop_count
        self.request_name = ctx.step.display_name
        self.step_order = ctx.step.step_order
        self.flow_name = ctx.flow_name


class ScriptCapabilities:
    """
    The only object an embedded script engine is handed. Every call checks
    the invocation deadline; outbound requests and assertions are counted
    against the configured ceilings regardless of what the engine enforces.
    """

    def __init__(
        self,
        ctx: ScriptContext,
        overlay: ScopedOverlay,
        config: EngineConfig,
        transport: Optional[Transport],
        deadline: float,
    ):
        self._ctx = ctx
        self._overlay = overlay
        self._config = config
        self._transport = transport
        self._deadline = deadline
        self.requests_sent = 0
        self.assertion_overflow = 0
        self.tests: List[AssertionResult] = []

        self.environment = ScopedVariables(self, VariableScope.ENVIRONMENT)
        self.collection_variables = ScopedVariables(self, VariableScope.COLLECTION)
        self.globals = ScopedVariables(self, VariableScope.GLOBAL)
        self.variables = RuntimeVariables(self, VariableScope.RUNTIME)
        self.request = RequestAccessor(ctx.request, ctx.step)
        self.info = ScriptInfo(ctx)
        self.execution = ExecutionControl()
        self._response = ResponseAccessor(ctx.response) if ctx.response is not None else None

    def _check_deadline(self):
        if asyncio.get_running_loop().time() > self._deadline:
            raise ScriptTimeoutError(f"Script timeout: execution exceeded {self._config.script_timeout_ms} ms")

    @property
    def response(self) -> ResponseAccessor:
        if self._response is None:
            raise ScriptError("pm.response is not available in pre-request scripts")
        return self._response

    def expect(self, value: Any) -> Expectation:
        self._check_deadline()
        return Expectation(value)

    def test(self, name: str, fn: Callable[[], Any]) -> bool:
        self._check_deadline()
        if len(self.tests) >= self._config.max_assertions:
            self.assertion_overflow += 1
            return False
        try:
            fn()
        except ScriptTimeoutError:
            raise
        except Exception as e:
            # A throwing test body is a failed test, same as a failed expectation
            message = f"{name}: {e}"
            self.tests.append(AssertionResult(name=name, passed=False, message=message))
            return False
        self.tests.append(AssertionResult(name=name, passed=True))
        return True

    async def send_request(self, request: Union[str, Dict[str, Any]], callback: Optional[Callable[[Optional[str], Optional[ResponseAccessor]], Any]] = None) -> ResponseAccessor:
        self._check_deadline()
        if self._transport is None:
            raise ScriptError("send_request is not available: no transport configured")
        if self.requests_sent >= self._config.max_script_requests:
            raise ScriptQuotaError(f"send_request limit ({self._config.max_script_requests}) exceeded")
        self.requests_sent += 1

        if isinstance(request, str):
            dispatch = DispatchRequest(url=request)
        else:
            body = request.get("body")
            if isinstance(body, dict) and "raw" in body:
                body = body["raw"]
            elif isinstance(body, (dict, list)):
                body = json.dumps(body)
            dispatch = DispatchRequest(
                method=str(request.get("method", "GET")).upper(),
                url=request.get("url", ""),
                headers={k: stringify_value(v) for k, v in (request.get("header") or request.get("headers") or {}).items()},
                body=body,
            )
        logger.debug(f"Script send_request #{self.requests_sent}: {dispatch.method} {dispatch.url}")
        result = await self._transport.dispatch(dispatch, self._ctx.proxy_url)
        response = ResponseAccessor(result)
        if callback is not None:
            callback(result.error, None if result.error else response)
        return response


# ---------------------------
# Adapter
# ---------------------------

class ScriptAdapter:
    """Entry point for pre/post scripts: DSL JSON is run in-process, anything else goes to the ScriptEngine."""

    def __init__(self, config: Optional[EngineConfig] = None, engine: Optional[ScriptEngine] = None, transport: Optional[Transport] = None):
        self.config = config or EngineConfig()
        self.engine = engine
        self.transport = transport
        self.dsl = DslScriptExecutor(self.config)

    async def run(self, source: Optional[str], ctx: ScriptContext) -> ScriptResult:
        if not source or not source.strip():
            return ScriptResult()
        if is_dsl_script(source):
            result = self.dsl.execute(source, ctx)
        else:
            result = await self._run_engine(source, ctx)
        if ctx.phase == ScriptPhase.PRE:
            result.flow_action = FlowAction.NEXT
            result.goto_step_name = None
            result.goto_step_order = None
        return result

    async def _run_engine(self, source: str, ctx: ScriptContext) -> ScriptResult:
        result = ScriptResult()
        if self.engine is None:
            result.add_error("No script engine configured for embedded script source")
            return result

        overlay = ctx.store.overlay()
        rendered = render(source, overlay.get)
        timeout_ms = self.config.script_timeout_ms
        loop = asyncio.get_running_loop()
        pm = ScriptCapabilities(ctx, overlay, self.config, self.transport, loop.time() + timeout_ms / 1000)
        step_identifier = ctx.step.identifier

        try:
            await run_cancellable(self.engine.execute(rendered, pm, timeout_ms), ctx.cancel_event, timeout=timeout_ms / 1000)
        except (asyncio.TimeoutError, ScriptTimeoutError):
            result.timed_out = True
            result.add_error(f"Script timeout: execution exceeded {timeout_ms} ms")
            logger.warning(f"Step {step_identifier}: {ctx.phase.value}-script timed out after {timeout_ms} ms")
            return result
        except FlowCancelledError:
            raise
        except ScriptError as e:
            result.add_error(e.message, e.line, e.column)
            logger.warning(f"Step {step_identifier}: {ctx.phase.value}-script error: {e.message}")
            return result
        except Exception as e:
            # Anything else escaping the engine is recorded as a script failure
            result.add_error(f"Script error: {e}")
            logger.error(f"Step {step_identifier}: unexpected {ctx.phase.value}-script failure: {e}", exc_info=self.config.debug)
            return result

        result.variable_writes = list(overlay.writes)
        result.updated_vars = overlay.updated_vars()
        result.assertion_results = list(pm.tests)
        for test in pm.tests:
            if test.passed:
                result.assertions_passed += 1
            else:
                result.assertions_failed += 1
                result.add_error(test.message)
        if pm.assertion_overflow:
            result.warnings.append(
                f"Maximum assertion limit ({self.config.max_assertions}) exceeded: {pm.assertion_overflow} test(s) not evaluated"
            )
            result.fatal_error = f"Maximum assertion limit ({self.config.max_assertions}) exceeded"

        result.skip_request = pm.execution.skipped
        if pm.execution.next_request_set:
            if ctx.phase == ScriptPhase.PRE:
                result.warnings.append("set_next_request is ignored in pre-request scripts")
            elif not pm.execution.next_request:
                result.flow_action = FlowAction.STOP
            else:
                result.flow_action = FlowAction.GOTO
                result.goto_step_name = str(pm.execution.next_request)
        return result
