# step_executor.py

import asyncio
import logging
from typing import Callable, Dict, List, NamedTuple, Optional

from cancellation import FlowCancelledError, cancellable_sleep, run_cancellable
from condition_evaluator import evaluate_condition
from engine_config import EngineConfig
from flow_models import (
    Directive,
    ExecuteResult,
    FlowAction,
    FlowStep,
    ScriptResult,
    StepResult,
    VariableScope,
)
from jsonpath_extractor import MISSING, extract, parse_body
from persistence import FlowRepository
from script_adapter import ScriptAdapter, ScriptContext, ScriptPhase
from template_renderer import find_unresolved, render, render_headers, stringify_value
from transport import DispatchRequest, Transport, mask_headers
from variable_store import VariableStore

logger = logging.getLogger("FlowRunner.steps")

__all__ = ["StepExecutor", "IterationOutcome", "build_request"]


class IterationOutcome(NamedTuple):
    result: StepResult
    directive: Directive
    # Condition skips move straight to the next step instead of the next iteration
    advance_step: bool = False


def build_request(step: FlowStep, lookup: Callable[[str], object]) -> DispatchRequest:
    """Render URL, enabled headers, cookies and body of a step against the current variables."""
    headers = render_headers(step.enabled_headers(), lookup)
    if step.cookies:
        cookie_pairs = [f"{render(k, lookup)}={render(v, lookup)}" for k, v in step.cookies.items()]
        existing_key = next((k for k in headers if k.lower() == "cookie"), None)
        if existing_key:
            headers[existing_key] = "; ".join([headers[existing_key]] + cookie_pairs)
        else:
            headers["Cookie"] = "; ".join(cookie_pairs)
    body = render(step.body, lookup) if step.body else None
    return DispatchRequest(
        method=step.method,
        url=render(step.url, lookup).strip(),
        headers=headers,
        body=body,
        body_type=step.body_type,
    )


def _script_failure(label: str, script: ScriptResult) -> str:
    detail = "; ".join(script.errors) if script.errors else "unknown error"
    return f"{label} failed: {detail}"


def directive_from_script(script: Optional[ScriptResult]) -> Directive:
    if script is None:
        return Directive.next_step()
    if script.flow_action == FlowAction.STOP:
        return Directive.stop()
    if script.flow_action == FlowAction.REPEAT:
        return Directive.repeat()
    if script.flow_action == FlowAction.GOTO:
        return Directive.goto(name=script.goto_step_name, order=script.goto_step_order)
    return Directive.next_step()


class StepExecutor:
    """
    Runs one iteration of a step: condition, pre-script, delay, render,
    dispatch, extraction, post-script. The outcome carries the StepResult
    and the directive for the flow controller; step failures are recorded,
    never raised. Only cancellation escapes as FlowCancelledError.
    """

    def __init__(
        self,
        transport: Transport,
        scripts: ScriptAdapter,
        config: Optional[EngineConfig] = None,
        repository: Optional[FlowRepository] = None,
    ):
        self.transport = transport
        self.scripts = scripts
        self.config = config or EngineConfig()
        self.repository = repository

    def resolve_proxy(self, step: FlowStep, global_proxy_url: Optional[str]) -> Optional[str]:
        if step.proxy_id is None:
            return global_proxy_url
        if step.proxy_id == 0:
            return None
        if self.repository is None:
            logger.warning(f"Step {step.identifier}: proxy {step.proxy_id} requested but no repository configured; sending without proxy.")
            return None
        return self.repository.get_proxy_url(step.proxy_id)

    async def _dispatch(self, step: FlowStep, request: DispatchRequest, proxy_url: Optional[str], cancel_event: Optional[asyncio.Event]) -> ExecuteResult:
        if not request.url:
            return ExecuteResult(error="Step has no URL configured", resolved_headers=request.headers)
        unresolved = find_unresolved(request.url)
        if unresolved:
            logger.warning(f"Step {step.identifier}: unresolved variables in URL: {', '.join(unresolved)}")
        try:
            return await run_cancellable(self.transport.dispatch(request, proxy_url), cancel_event)
        except FlowCancelledError:
            raise
        except Exception as e:
            # Transports report failures in the result; anything else is recorded the same way
            logger.error(f"Step {step.identifier}: transport raised unexpectedly: {e}", exc_info=self.config.debug)
            return ExecuteResult(error=f"Transport error: {e}", resolved_url=request.url, resolved_headers=request.headers)

    async def execute(
        self,
        step: FlowStep,
        store: VariableStore,
        *,
        flow_name: str = "",
        iteration: int = 1,
        loop_count: int = 1,
        global_proxy_url: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IterationOutcome:
        step_identifier = step.identifier
        base = dict(
            step_id=step.id,
            step_name=step.display_name,
            request_name=step.display_name,
            step_order=step.step_order,
            iteration=iteration,
            loop_count=loop_count,
        )
        store.set_step_context(
            iteration=iteration,
            loop_count=loop_count,
            step_name=step.display_name,
            step_order=step.step_order,
            flow_name=flow_name,
        )

        # --- Condition ---
        if step.condition.strip():
            outcome = evaluate_condition(step.condition, store.get)
            if outcome.error:
                logger.error(f"Step {step_identifier}: {outcome.error}")
                return IterationOutcome(
                    StepResult(**base, skipped=True, skip_reason="condition", failed=True, error=outcome.error),
                    Directive.fatal(outcome.error),
                )
            if not outcome.result:
                logger.info(f"Step {step_identifier}: condition '{step.condition}' not met, skipping.")
                return IterationOutcome(
                    StepResult(**base, skipped=True, skip_reason="condition"),
                    Directive.next_step(),
                    advance_step=True,
                )

        proxy_url = self.resolve_proxy(step, global_proxy_url)

        # --- Pre-script ---
        pre_result: Optional[ScriptResult] = None
        if step.pre_script.strip():
            ctx = ScriptContext(
                store, ScriptPhase.PRE, step,
                flow_name=flow_name, iteration=iteration, loop_count=loop_count,
                request=build_request(step, store.get), cancel_event=cancel_event, proxy_url=proxy_url,
            )
            pre_result = await self.scripts.run(step.pre_script, ctx)
            store.apply_writes(pre_result.variable_writes)
            if pre_result.fatal_error:
                return IterationOutcome(
                    StepResult(**base, failed=True, error=pre_result.fatal_error, pre_script_result=pre_result),
                    Directive.fatal(pre_result.fatal_error),
                )
            if not pre_result.success:
                error = _script_failure("Pre-script", pre_result)
                logger.warning(f"Step {step_identifier}: {error}")
                return IterationOutcome(
                    StepResult(**base, failed=True, error=error, pre_script_result=pre_result),
                    Directive.next_step(),
                )
            if pre_result.skip_request:
                logger.info(f"Step {step_identifier}: request skipped by pre-script.")
                return IterationOutcome(
                    StepResult(**base, skipped=True, skip_reason="skipRequest", pre_script_result=pre_result),
                    Directive.next_step(),
                )

        # --- Delay ---
        if step.delay_ms > 0:
            logger.debug(f"Step {step_identifier}: waiting {step.delay_ms} ms before dispatch.")
            await cancellable_sleep(step.delay_ms / 1000.0, cancel_event)

        # --- Render & dispatch ---
        request = build_request(step, store.get)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Step {step_identifier}: {request.method} {request.url} headers={mask_headers(request.headers)}")
        execute_result = await self._dispatch(step, request, proxy_url, cancel_event)

        if execute_result.error:
            error = f"Request failed: {execute_result.error}"
            logger.warning(f"Step {step_identifier} (iteration {iteration}/{loop_count}): {error}")
            return IterationOutcome(
                StepResult(**base, execute_result=execute_result, failed=True, error=error, pre_script_result=pre_result),
                Directive.next_step(),
            )
        logger.info(f"Step {step_identifier} (iteration {iteration}/{loop_count}): {execute_result.status_code} {request.method} {request.url} ({execute_result.duration_ms} ms)")

        store.set_response_context(
            status_code=execute_result.status_code,
            response_time_ms=execute_result.duration_ms,
            body=execute_result.body,
        )

        # --- Extraction ---
        extracted = self._extract_vars(step, execute_result, store)

        # --- Post-script ---
        post_result: Optional[ScriptResult] = None
        if step.post_script.strip():
            ctx = ScriptContext(
                store, ScriptPhase.POST, step,
                flow_name=flow_name, iteration=iteration, loop_count=loop_count,
                request=request, response=execute_result, cancel_event=cancel_event, proxy_url=proxy_url,
            )
            post_result = await self.scripts.run(step.post_script, ctx)
            store.apply_writes(post_result.variable_writes)
            if post_result.fatal_error:
                return IterationOutcome(
                    StepResult(
                        **base, execute_result=execute_result, failed=True, error=post_result.fatal_error,
                        pre_script_result=pre_result, post_script_result=post_result, extracted_vars=extracted,
                    ),
                    Directive.fatal(post_result.fatal_error),
                )

        errors: List[str] = []
        if post_result is not None and not post_result.success:
            errors.append(_script_failure("Post-script", post_result))
        if self.config.fail_on_http_error_status and not 200 <= execute_result.status_code < 300:
            errors.append(f"Unexpected HTTP status {execute_result.status_code}")
        error = "; ".join(errors) if errors else None
        if error:
            logger.warning(f"Step {step_identifier}: {error}")

        return IterationOutcome(
            StepResult(
                **base,
                execute_result=execute_result,
                failed=bool(errors),
                error=error,
                pre_script_result=pre_result,
                post_script_result=post_result,
                extracted_vars=extracted,
            ),
            directive_from_script(post_result),
        )

    def _extract_vars(self, step: FlowStep, execute_result: ExecuteResult, store: VariableStore) -> Dict[str, str]:
        extracted: Dict[str, str] = {}
        if not step.extract_vars:
            return extracted
        parsed = parse_body(execute_result.body)
        if parsed is MISSING:
            logger.warning(f"Step {step.identifier}: response body is not JSON; skipping extractVars.")
            return extracted
        for name, path in step.extract_vars.items():
            value = extract(parsed, render(path, store.get))
            if value is MISSING:
                logger.warning(f"Step {step.identifier}: extract path '{path}' for '{name}' not found.")
                continue
            store.set(VariableScope.RUNTIME, name, value)
            extracted[name] = stringify_value(value)
        logger.debug(f"Step {step.identifier}: extracted {list(extracted)}")
        return extracted
