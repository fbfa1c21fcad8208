# flow_models.py

import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

__all__ = [
    "Flow", "FlowStep", "HeaderValue", "ExecuteResult", "ErrorDetail", "AssertionResult",
    "VariableWrite", "ScriptResult", "StepResult", "FlowResult", "FlowAction", "Directive",
    "VariableScope", "FlowEngineError", "FlowNotFoundError", "ScriptError",
    "ScriptTimeoutError", "ScriptQuotaError", "ExpectationError",
]

# ---------------------------
# Errors
# ---------------------------

class FlowEngineError(Exception):
    """Base class for errors raised by the flow engine."""


class FlowNotFoundError(FlowEngineError):
    def __init__(self, flow_id: Any):
        super().__init__(f"Flow {flow_id} not found")
        self.flow_id = flow_id


class ScriptError(FlowEngineError):
    """Raised by script engines (and the capability object) for parse or runtime errors."""
    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


class ScriptTimeoutError(ScriptError):
    pass


class ScriptQuotaError(ScriptError):
    pass


class ExpectationError(FlowEngineError):
    pass


# ---------------------------
# Shared enums
# ---------------------------

class VariableScope(str, Enum):
    RUNTIME = "runtime"
    ENVIRONMENT = "environment"
    COLLECTION = "collection"
    GLOBAL = "global"


class FlowAction(str, Enum):
    NEXT = "next"
    STOP = "stop"
    REPEAT = "repeat"
    GOTO = "goto"
    FATAL = "fatal"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------
# Flow definition models
# ---------------------------

class HeaderValue(CamelModel):
    value: str = Field("", description="Header value. Can contain {{variables}}.")
    enabled: bool = Field(True, description="Disabled headers are not sent")


class FlowStep(CamelModel):
    id: Union[int, str] = Field(..., description="Unique identifier for the step")
    flow_id: Optional[Union[int, str]] = Field(None, description="Owning flow")
    step_order: int = Field(..., ge=1, description="1-based position in the default traversal order")
    name: str = Field("", description="Human-readable name, also a goto target")
    request_id: Optional[int] = Field(None, description="Saved request this step was created from (informational)")
    method: str = Field("GET", description="HTTP method (GET, POST, PUT, etc.)")
    url: str = Field("", description="Full URL. Can contain {{variables}}.")
    headers: Dict[str, Union[str, HeaderValue]] = Field(default_factory=dict, description="Headers as {name: value} or {name: {value, enabled}}")
    body: Optional[str] = Field(None, description="Raw request body. Can contain {{variables}}.")
    body_type: Literal['none', 'json', 'xml', 'text', 'form-urlencoded', 'graphql', 'formdata'] = Field('none', description="Controls the default Content-Type")
    cookies: Dict[str, str] = Field(default_factory=dict, description="Cookies sent with the request. Can contain {{variables}}.")
    delay_ms: int = Field(0, ge=0, description="Pause before dispatch, in milliseconds")
    loop_count: int = Field(1, description="Times the step body and scripts run per visit")
    extract_vars: Dict[str, str] = Field(default_factory=dict, description="Runtime variable name -> JSONPath into the response body")
    condition: str = Field("", description="Skip condition; empty means always run")
    pre_script: str = Field("", description="DSL JSON or embedded script source run before dispatch")
    post_script: str = Field("", description="DSL JSON or embedded script source run after dispatch")
    continue_on_error: bool = Field(False, description="Keep running the flow when this step fails")
    proxy_id: Optional[int] = Field(None, description="null = active global proxy, 0 = no proxy, >0 = specific proxy")

    @field_validator('method')
    def validate_method(cls, v):
        allowed_methods = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'PATCH', 'OPTIONS']
        method_upper = v.upper()
        if method_upper not in allowed_methods:
            raise ValueError(f"method must be one of {allowed_methods}, got '{v}'")
        return method_upper

    @field_validator('loop_count')
    def clamp_loop_count(cls, v):
        return max(1, v)

    @field_validator('headers', 'extract_vars', 'cookies', mode='before')
    def decode_json_mapping(cls, v):
        # Stored definitions keep these maps as JSON text
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            decoded = json.loads(v)
            if not isinstance(decoded, dict):
                raise ValueError("expected a JSON object")
            return decoded
        return v

    @field_validator('body', mode='before')
    def encode_structured_body(cls, v):
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v

    @field_validator('condition', 'pre_script', 'post_script', mode='before')
    def none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator('body_type', mode='before')
    def default_body_type(cls, v):
        return v.lower() if v else 'none'

    @property
    def display_name(self) -> str:
        return self.name or f"Step {self.step_order}"

    @property
    def identifier(self) -> str:
        return f"'{self.name}' ({self.id})" if self.name else f"({self.id})"

    def enabled_headers(self) -> Dict[str, str]:
        """Headers with disabled entries removed, flattened to {name: value}."""
        flat = {}
        for key, val in self.headers.items():
            if isinstance(val, HeaderValue):
                if val.enabled:
                    flat[key] = val.value
            else:
                flat[key] = val
        return flat


class Flow(CamelModel):
    id: Union[int, str] = Field(..., description="Flow identity")
    name: str = Field("", description="Flow name")
    description: str = Field("", description="Free-form description")
    steps: List[FlowStep] = Field(default_factory=list, description="Steps owned by this flow")

    @model_validator(mode='after')
    def check_unique_step_orders(self) -> 'Flow':
        seen = set()
        for step in self.steps:
            if step.step_order in seen:
                raise ValueError(f"Flow {self.id}: duplicate stepOrder {step.step_order}")
            seen.add(step.step_order)
        return self

    def ordered_steps(self) -> List[FlowStep]:
        return sorted(self.steps, key=lambda s: s.step_order)


# ---------------------------
# Execution result models
# ---------------------------

class ExecuteResult(CamelModel):
    status_code: int = Field(0, description="HTTP status, 0 when no response was received")
    status_text: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    multi_value_headers: Dict[str, List[str]] = Field(default_factory=dict)
    body: str = ""
    body_base64: Optional[str] = None
    body_size: int = 0
    is_binary: bool = False
    duration_ms: int = 0
    error: Optional[str] = None
    resolved_url: str = ""
    resolved_headers: Dict[str, str] = Field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, val in self.headers.items():
            if key.lower() == lowered:
                return val
        return None


class ErrorDetail(CamelModel):
    message: str
    line: Optional[int] = None
    column: Optional[int] = None


class AssertionResult(CamelModel):
    name: str
    passed: bool
    message: str = ""


class VariableWrite(CamelModel):
    scope: VariableScope = VariableScope.RUNTIME
    name: str = ""
    value: Optional[str] = None
    op: Literal['set', 'unset', 'clear'] = 'set'


class ScriptResult(CamelModel):
    success: bool = True
    errors: List[str] = Field(default_factory=list)
    error_details: List[ErrorDetail] = Field(default_factory=list)
    assertions_passed: int = 0
    assertions_failed: int = 0
    assertion_results: List[AssertionResult] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    updated_vars: Dict[str, str] = Field(default_factory=dict, description="Report of variables written by the script")
    variable_writes: List[VariableWrite] = Field(default_factory=list, description="Scoped writes to merge into the variable store")
    flow_action: FlowAction = FlowAction.NEXT
    goto_step_name: Optional[str] = None
    goto_step_order: Optional[int] = None
    skip_request: bool = False
    timed_out: bool = False
    fatal_error: Optional[str] = None

    def add_error(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        self.success = False
        self.record_error(message, line, column)

    def record_error(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        """Records an error without failing the script."""
        self.errors.append(message)
        self.error_details.append(ErrorDetail(message=message, line=line, column=column))


class StepResult(CamelModel):
    step_id: Union[int, str]
    step_name: str = ""
    request_name: str = ""
    step_order: int = 0
    iteration: int = 1
    loop_count: int = 1
    execute_result: Optional[ExecuteResult] = None
    skipped: bool = False
    skip_reason: Optional[Literal['condition', 'skipRequest']] = None
    failed: bool = False
    error: Optional[str] = None
    pre_script_result: Optional[ScriptResult] = None
    post_script_result: Optional[ScriptResult] = None
    extracted_vars: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


class FlowResult(CamelModel):
    flow_id: Union[int, str]
    flow_name: str = ""
    status: Literal['running', 'completed', 'stopped', 'failed', 'cancelled'] = 'running'
    success: bool = False
    error: Optional[str] = None
    step_results: List[StepResult] = Field(default_factory=list)
    not_executed_step_ids: List[Union[int, str]] = Field(default_factory=list)
    repeat_count: int = 0
    goto_count: int = 0
    total_time_ms: int = 0


# ---------------------------
# Flow-control directive
# ---------------------------

class Directive(BaseModel):
    """Tagged decision returned by every step iteration: Next | Stop | Repeat | Goto(target) | Fatal(reason)."""
    action: FlowAction = FlowAction.NEXT
    target_name: Optional[str] = None
    target_order: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def next_step(cls) -> 'Directive':
        return cls(action=FlowAction.NEXT)

    @classmethod
    def stop(cls) -> 'Directive':
        return cls(action=FlowAction.STOP)

    @classmethod
    def repeat(cls) -> 'Directive':
        return cls(action=FlowAction.REPEAT)

    @classmethod
    def goto(cls, name: Optional[str] = None, order: Optional[int] = None) -> 'Directive':
        return cls(action=FlowAction.GOTO, target_name=name, target_order=order)

    @classmethod
    def fatal(cls, reason: str) -> 'Directive':
        return cls(action=FlowAction.FATAL, reason=reason)

    @property
    def target_label(self) -> str:
        if self.target_name:
            return self.target_name
        return str(self.target_order) if self.target_order is not None else "<none>"
