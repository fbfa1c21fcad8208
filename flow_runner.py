# flow_runner.py

import asyncio
import time
from typing import Any, Dict, Iterable, Optional, Union

from cancellation import FlowCancelledError
from engine_config import EngineConfig, configure_logging, logger
from flow_models import (
    Directive,
    Flow,
    FlowAction,
    FlowResult,
    FlowStep,
)
from persistence import FlowRepository, HistoryEntry
from script_adapter import ScriptAdapter, ScriptEngine
from step_executor import StepExecutor
from transport import AiohttpTransport, Transport
from variable_store import DURABLE_SCOPES, VariableStore

# --- Exports for flow_api / the direct invoker ---
__all__ = [
    "logger", "FlowRunner", "EngineConfig",
]

_UNSET = object()


class FlowRunner:
    """
    Executes flows one step at a time.

    The runner is a small state machine over the flow's steps, snapshotted
    and sorted by stepOrder at run start: Running(index) until a step's
    directive stops the run, a failure or ceiling violation fails it, or the
    last step completes. Every step iteration, skipped or not, is recorded
    in the returned FlowResult; fatal errors still return the partial result.
    """

    def __init__(
        self,
        repository: FlowRepository,
        transport: Optional[Transport] = None,
        *,
        config: Optional[EngineConfig] = None,
        script_engine: Optional[ScriptEngine] = None,
    ):
        self.config = config or EngineConfig()
        self.repository = repository
        self.transport = transport or AiohttpTransport(self.config)
        self.scripts = ScriptAdapter(self.config, engine=script_engine, transport=self.transport)
        self.executor = StepExecutor(self.transport, self.scripts, self.config, repository)
        self.configure_logging(self.config.debug)

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        configure_logging(debug)

    async def close(self):
        await self.transport.close()

    async def run_flow(
        self,
        flow_id: Union[int, str],
        step_ids: Optional[Iterable[Union[int, str]]] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        initial_vars: Optional[Dict[str, Any]] = None,
        global_proxy_url: Any = _UNSET,
    ) -> FlowResult:
        """Run a stored flow. Raises FlowNotFoundError for an unknown id; everything else lands in the result."""
        flow = self.repository.get_flow(flow_id)
        return await self.run_flow_definition(
            flow, step_ids, cancel_event=cancel_event, initial_vars=initial_vars, global_proxy_url=global_proxy_url,
        )

    async def run_flow_definition(
        self,
        flow: Flow,
        step_ids: Optional[Iterable[Union[int, str]]] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        initial_vars: Optional[Dict[str, Any]] = None,
        global_proxy_url: Any = _UNSET,
    ) -> FlowResult:
        started = time.monotonic()
        steps = flow.ordered_steps()
        result = FlowResult(flow_id=flow.id, flow_name=flow.name)

        durable = {scope: self.repository.load_variables(scope) for scope in DURABLE_SCOPES}
        store = VariableStore(durable, initial_vars, persist=self.repository.save_variables)
        if global_proxy_url is _UNSET:
            global_proxy_url = self.repository.get_active_proxy_url()

        selected = None if step_ids is None else {str(s) for s in step_ids}

        def is_selected(step: FlowStep) -> bool:
            return selected is None or str(step.id) in selected

        name_index: Dict[str, int] = {}
        order_index: Dict[int, int] = {}
        for idx, step in enumerate(steps):
            if step.name:
                name_index.setdefault(step.name, idx)
            order_index[step.step_order] = idx

        selection_note = f" (selected: {sorted(selected)})" if selected is not None else ""
        logger.info(f"Flow '{flow.name}' ({flow.id}): starting run over {len(steps)} step(s){selection_note}")

        def finish(status: str, *, error: Optional[str] = None, last_index: Optional[int] = None, include_current: bool = False) -> FlowResult:
            if self.config.flush_policy == 'run' and status in ('completed', 'stopped'):
                store.flush()
            else:
                store.discard_pending()
            if last_index is not None:
                first_pending = last_index if include_current else last_index + 1
                result.not_executed_step_ids = [s.id for s in steps[first_pending:] if is_selected(s)]
            result.status = status
            result.success = status in ('completed', 'stopped')
            result.error = error
            result.total_time_ms = int((time.monotonic() - started) * 1000)
            log = logger.info if result.success else logger.error
            log(
                f"Flow '{flow.name}' ({flow.id}) {status} after {len(result.step_results)} step result(s) "
                f"in {result.total_time_ms} ms" + (f": {error}" if error else "")
            )
            return result

        index = 0
        iteration = 1
        try:
            while index < len(steps):
                step = steps[index]
                if not is_selected(step):
                    index += 1
                    iteration = 1
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    raise FlowCancelledError()

                outcome = await self.executor.execute(
                    step,
                    store,
                    flow_name=flow.name,
                    iteration=iteration,
                    loop_count=step.loop_count,
                    global_proxy_url=global_proxy_url,
                    cancel_event=cancel_event,
                )
                result.step_results.append(outcome.result)
                directive = outcome.directive

                # --- Failure handling ---
                if directive.action == FlowAction.FATAL:
                    return finish('failed', error=directive.reason, last_index=index)
                if outcome.result.failed:
                    if not step.continue_on_error:
                        return finish('failed', error=f"Step {step.identifier} failed: {outcome.result.error}", last_index=index)
                    logger.info(f"Step {step.identifier}: failure tolerated (continueOnError), proceeding.")
                    directive = Directive.next_step()
                if self.config.flush_policy == 'step':
                    store.flush()

                if outcome.advance_step:
                    index += 1
                    iteration = 1
                    continue

                # --- Directive ---
                if directive.action == FlowAction.NEXT:
                    if iteration < step.loop_count:
                        iteration += 1
                    else:
                        index += 1
                        iteration = 1
                elif directive.action == FlowAction.STOP:
                    logger.info(f"Step {step.identifier}: stop requested.")
                    return finish('stopped', last_index=index)
                elif directive.action == FlowAction.REPEAT:
                    result.repeat_count += 1
                    if result.repeat_count > self.config.max_repeats:
                        return finish('failed', error=f"Maximum repeat limit ({self.config.max_repeats}) exceeded at step {step.identifier}", last_index=index)
                    logger.debug(f"Step {step.identifier}: repeat #{result.repeat_count}")
                    iteration = 1
                elif directive.action == FlowAction.GOTO:
                    result.goto_count += 1
                    if result.goto_count > self.config.max_gotos:
                        return finish('failed', error=f"Maximum goto limit ({self.config.max_gotos}) exceeded at step {step.identifier}", last_index=index)
                    target = self._resolve_target(directive, name_index, order_index)
                    if target is None:
                        return finish('failed', error=f"Goto target not found: {directive.target_label}", last_index=index)
                    logger.info(f"Step {step.identifier}: goto '{directive.target_label}' -> {steps[target].identifier}")
                    index = target
                    iteration = 1

            return finish('completed')

        except FlowCancelledError:
            logger.warning(f"Flow '{flow.name}' ({flow.id}): cancelled during step index {index}.")
            return finish('cancelled', error="Flow run cancelled", last_index=index, include_current=True)
        except asyncio.CancelledError:
            logger.info(f"Flow '{flow.name}' ({flow.id}): run task cancelled.")
            store.discard_pending()
            raise

    @staticmethod
    def _resolve_target(directive: Directive, name_index: Dict[str, int], order_index: Dict[int, int]) -> Optional[int]:
        if directive.target_name:
            if directive.target_name in name_index:
                return name_index[directive.target_name]
            # A numeric name doubles as a stepOrder reference
            if directive.target_name.strip().isdigit():
                return order_index.get(int(directive.target_name.strip()))
            return None
        if directive.target_order is not None:
            return order_index.get(directive.target_order)
        return None

    async def run_single_step(
        self,
        step: FlowStep,
        *,
        initial_vars: Optional[Dict[str, Any]] = None,
        global_proxy_url: Any = _UNSET,
    ) -> FlowResult:
        """Execute one step as a one-element flow and record it in the request history."""
        flow = Flow(id=f"single-{step.id}", name=step.display_name, steps=[step])
        result = await self.run_flow_definition(flow, initial_vars=initial_vars, global_proxy_url=global_proxy_url)
        executed = next(
            (r.execute_result for r in reversed(result.step_results) if r.execute_result is not None), None
        )
        if executed is not None:
            self.repository.append_history(HistoryEntry(
                method=step.method,
                url=executed.resolved_url or step.url,
                status_code=executed.status_code,
                duration_ms=executed.duration_ms,
                body_size=executed.body_size,
                error=executed.error,
                step_name=step.display_name,
            ))
        return result
