import asyncio
import json

import pytest

from cancellation import FlowCancelledError
from engine_config import EngineConfig
from flow_models import ExpectationError, FlowAction, FlowStep, ScriptError, VariableScope
from jsonpath_extractor import MISSING
from script_adapter import Expectation, ScriptAdapter, ScriptContext, ScriptPhase, evaluate_math, is_dsl_script
from tests.unit.fakes import CallableEngine, FakeTransport, json_result
from variable_store import VariableStore


def make_ctx(phase=ScriptPhase.POST, response=None, store=None, **kwargs):
    step = FlowStep(id=1, stepOrder=1, name="login", url="https://api.test/login")
    if response is None and phase == ScriptPhase.POST:
        response = json_result({"ok": True})
    return ScriptContext(store or VariableStore(), phase, step, response=response, **kwargs)


async def run_dsl(script, ctx=None, config=None):
    adapter = ScriptAdapter(config or EngineConfig())
    return await adapter.run(json.dumps(script), ctx or make_ctx())


def test_is_dsl_script():
    assert is_dsl_script('  {"setVariables": []}')
    assert not is_dsl_script("pm.environment.set('a', 1)")


def test_evaluate_math():
    assert evaluate_math("2 ** 3 + 7 // 2") == 11
    assert evaluate_math("(1 + 2) * -3") == -9
    assert evaluate_math("10 / 4") == 2.5
    with pytest.raises(ValueError):
        evaluate_math("1 / 0")
    with pytest.raises(ValueError):
        evaluate_math("__import__('os')")
    with pytest.raises(ValueError):
        evaluate_math("2 ** 100")


@pytest.mark.asyncio
async def test_empty_script_is_a_noop():
    result = await ScriptAdapter().run("   ", make_ctx())
    assert result.success is True
    assert result.flow_action == FlowAction.NEXT


# --- DSL ---

@pytest.mark.asyncio
async def test_dsl_set_from_response_path():
    ctx = make_ctx(response=json_result({"data": {"token": "abc"}}))
    result = await run_dsl({"setVariables": [{"name": "token", "from": "$.data.token"}]}, ctx)
    assert result.success is True
    assert result.updated_vars == {"token": "abc"}
    assert result.variable_writes[0].scope == VariableScope.RUNTIME
    # Writes are only recorded; the caller merges them
    assert ctx.store.get("token") is MISSING


@pytest.mark.asyncio
async def test_dsl_operations_see_earlier_writes():
    script = {"setVariables": [
        {"name": "count", "operation": "increment"},
        {"name": "count", "operation": "increment", "by": 4},
        {"name": "left", "operation": "decrement", "by": "2"},
        {"name": "total", "operation": "math", "expression": "{{count}} * 2 + 1"},
        {"name": "label", "operation": "concat", "values": ["user-", "{{count}}"]},
        {"name": "size", "operation": "conditional", "condition": "{{total}} > 10", "ifTrue": "big", "ifFalse": "small"},
    ]}
    result = await run_dsl(script)
    assert result.success is True
    assert result.updated_vars == {"count": "5", "left": "-2", "total": "11", "label": "user-5", "size": "big"}


@pytest.mark.asyncio
async def test_dsl_increment_reads_durable_scope():
    store = VariableStore({VariableScope.ENVIRONMENT: {"page": "2"}})
    script = {"setVariables": [{"name": "page", "operation": "increment", "scope": "environment"}]}
    result = await run_dsl(script, make_ctx(store=store))
    assert result.updated_vars == {"page": "3"}
    assert result.variable_writes[0].scope == VariableScope.ENVIRONMENT


@pytest.mark.asyncio
async def test_dsl_failed_operation_does_not_stop_the_rest():
    script = {"setVariables": [
        {"name": "bad", "operation": "math", "expression": "1 / 0"},
        {"name": "ok", "value": "yes"},
    ]}
    result = await run_dsl(script)
    assert result.success is True
    assert "division by zero" in result.errors[0]
    assert result.updated_vars == {"ok": "yes"}


@pytest.mark.asyncio
async def test_dsl_missing_response_path_is_recorded_not_fatal():
    ctx = make_ctx(response=json_result({"ok": True}))
    result = await run_dsl({"setVariables": [{"name": "tok", "from": "$.token"}]}, ctx)
    assert result.success is True
    assert "$.token" in result.errors[0]
    assert result.error_details[0].message == result.errors[0]
    assert result.updated_vars == {}


@pytest.mark.asyncio
async def test_dsl_empty_operation_and_action_use_defaults():
    script = {
        "setVariables": [{"name": "v", "operation": "", "value": "hello"}],
        "flow": {"action": ""},
    }
    result = await run_dsl(script)
    assert result.success is True
    assert result.updated_vars == {"v": "hello"}
    assert result.flow_action == FlowAction.NEXT


@pytest.mark.asyncio
async def test_dsl_empty_branch_action_means_next():
    script = {"flow": {"type": "conditional", "condition": "1 == 1", "onTrue": {"action": ""}}}
    result = await run_dsl(script)
    assert result.success is True
    assert result.flow_action == FlowAction.NEXT


@pytest.mark.asyncio
async def test_dsl_variable_ops_are_capped():
    script = {"setVariables": [{"name": f"v{i}", "value": i} for i in range(3)]}
    result = await run_dsl(script, config=EngineConfig(max_variable_ops=2))
    assert result.updated_vars == {"v0": "0", "v1": "1"}
    assert any("Maximum variable operations (2)" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_dsl_invalid_json_reports_position():
    result = await ScriptAdapter().run('{"setVariables": [', make_ctx())
    assert result.success is False
    assert result.errors[0].startswith("Invalid script JSON")
    assert result.error_details[0].line == 1
    assert result.error_details[0].column is not None


@pytest.mark.asyncio
async def test_dsl_schema_errors_are_reported():
    result = await run_dsl({"setVariables": [{"operation": "set"}]})
    assert result.success is False
    assert result.errors[0].startswith("Invalid script:")


@pytest.mark.asyncio
async def test_dsl_assertions_count_passes_and_failures():
    script = {"assertions": [
        {"type": "status", "operator": "eq", "value": 200},
        {"type": "jsonpath", "path": "$.ok", "operator": "eq", "value": False},
    ]}
    result = await run_dsl(script)
    assert result.assertions_passed == 1
    assert result.assertions_failed == 1
    assert result.success is False


@pytest.mark.asyncio
async def test_dsl_assertions_ignored_in_pre_script():
    script = {"assertions": [{"type": "status", "operator": "eq", "value": 500}]}
    result = await run_dsl(script, make_ctx(phase=ScriptPhase.PRE))
    assert result.success is True
    assert result.assertions_failed == 0
    assert result.warnings


@pytest.mark.asyncio
async def test_dsl_assertion_overflow_sets_fatal_error():
    script = {"assertions": [{"type": "status", "value": 200}] * 51}
    result = await run_dsl(script)
    assert result.fatal_error == "Maximum assertion limit (50) exceeded"
    assert result.assertions_passed == 50


@pytest.mark.asyncio
@pytest.mark.parametrize("role, action, target", [
    ("admin", FlowAction.GOTO, "admin-home"),
    ("user", FlowAction.STOP, None),
    ("guest", FlowAction.NEXT, None),
])
async def test_dsl_switch_flow(role, action, target):
    script = {"flow": {
        "type": "switch",
        "cases": [
            {"condition": "{{role}} == 'admin'", "action": "goto", "step": "admin-home"},
            {"condition": "{{role}} == 'user'", "action": "stop"},
        ],
        "default": {"action": "next"},
    }}
    result = await run_dsl(script, make_ctx(store=VariableStore(runtime={"role": role})))
    assert result.flow_action == action
    assert result.goto_step_name == target


@pytest.mark.asyncio
async def test_dsl_conditional_flow_uses_script_writes():
    script = {
        "setVariables": [{"name": "done", "value": "yes"}],
        "flow": {"type": "conditional", "condition": "{{done}} == 'yes'", "onTrue": {"action": "stop"}},
    }
    result = await run_dsl(script)
    assert result.flow_action == FlowAction.STOP


@pytest.mark.asyncio
async def test_dsl_goto_without_target_is_fatal():
    result = await run_dsl({"flow": {"action": "goto"}})
    assert result.fatal_error == "goto action requires 'step' or 'stepOrder'"


@pytest.mark.asyncio
async def test_dsl_malformed_flow_condition_is_fatal():
    result = await run_dsl({"flow": {"type": "conditional", "condition": "'open", "onTrue": {"action": "stop"}}})
    assert result.fatal_error is not None
    assert "Malformed condition" in result.fatal_error


@pytest.mark.asyncio
async def test_flow_control_ignored_in_pre_script():
    result = await run_dsl({"flow": {"action": "stop"}}, make_ctx(phase=ScriptPhase.PRE))
    assert result.flow_action == FlowAction.NEXT
    assert result.warnings


# --- Embedded engine ---

@pytest.mark.asyncio
async def test_engine_missing():
    result = await ScriptAdapter().run("pm.test('x', () => {})", make_ctx())
    assert result.success is False
    assert "No script engine configured" in result.errors[0]


@pytest.mark.asyncio
async def test_engine_source_is_rendered():
    engine = CallableEngine(lambda pm: None)
    store = VariableStore(runtime={"user": "abc"})
    await ScriptAdapter(engine=engine).run("console.log('{{user}}')", make_ctx(store=store))
    assert engine.sources == ["console.log('abc')"]


@pytest.mark.asyncio
async def test_engine_variables_resolve_across_scopes():
    captured = {}

    def script(pm):
        captured["base"] = pm.variables.get("base")
        captured["missing"] = pm.variables.get("nope")
        pm.variables.set("local", 1)
        pm.globals.unset("stale")

    store = VariableStore({VariableScope.ENVIRONMENT: {"base": "http://e"}, VariableScope.GLOBAL: {"stale": "x"}})
    result = await ScriptAdapter(engine=CallableEngine(script)).run("script", make_ctx(store=store))
    assert captured == {"base": "http://e", "missing": None}
    assert [(w.scope, w.name, w.op) for w in result.variable_writes] == [
        (VariableScope.RUNTIME, "local", "set"),
        (VariableScope.GLOBAL, "stale", "unset"),
    ]


@pytest.mark.asyncio
async def test_engine_failed_test_is_recorded():
    def script(pm):
        pm.test("status", lambda: pm.expect(pm.response.code).to.equal(200))

    ctx = make_ctx(response=json_result({}, status=404))
    result = await ScriptAdapter(engine=CallableEngine(script)).run("script", ctx)
    assert result.assertions_failed == 1
    assert result.success is False
    assert result.errors == ["status: expected 404 to equal 200"]


@pytest.mark.asyncio
async def test_engine_test_overflow_is_fatal():
    def script(pm):
        for i in range(51):
            pm.test(f"t{i}", lambda: None)

    result = await ScriptAdapter(engine=CallableEngine(script)).run("script", make_ctx())
    assert result.assertions_passed == 50
    assert result.fatal_error == "Maximum assertion limit (50) exceeded"


@pytest.mark.asyncio
async def test_engine_response_unavailable_in_pre_script():
    result = await ScriptAdapter(engine=CallableEngine(lambda pm: pm.response.code)).run("script", make_ctx(phase=ScriptPhase.PRE))
    assert result.success is False
    assert result.errors == ["pm.response is not available in pre-request scripts"]


@pytest.mark.asyncio
async def test_engine_script_error_keeps_position():
    def script(pm):
        raise ScriptError("Unexpected token", line=3, column=7)

    result = await ScriptAdapter(engine=CallableEngine(script)).run("script", make_ctx())
    assert result.errors == ["Unexpected token"]
    assert (result.error_details[0].line, result.error_details[0].column) == (3, 7)


@pytest.mark.asyncio
async def test_engine_unexpected_exception_is_a_script_failure():
    def script(pm):
        raise RuntimeError("boom")

    result = await ScriptAdapter(engine=CallableEngine(script)).run("script", make_ctx())
    assert result.errors == ["Script error: boom"]


@pytest.mark.asyncio
async def test_engine_timeout():
    async def script(pm):
        await asyncio.sleep(10)

    adapter = ScriptAdapter(EngineConfig(script_timeout_ms=20), engine=CallableEngine(script))
    result = await adapter.run("script", make_ctx())
    assert result.timed_out is True
    assert result.errors == ["Script timeout: execution exceeded 20 ms"]


@pytest.mark.asyncio
async def test_engine_send_request_quota():
    transport = FakeTransport()

    async def script(pm):
        for _ in range(3):
            await pm.send_request("https://api.test/side")

    adapter = ScriptAdapter(EngineConfig(max_script_requests=2), engine=CallableEngine(script), transport=transport)
    result = await adapter.run("script", make_ctx())
    assert len(transport.requests) == 2
    assert result.errors == ["send_request limit (2) exceeded"]


@pytest.mark.asyncio
async def test_engine_send_request_with_callback():
    transport = FakeTransport()
    seen = []

    async def script(pm):
        await pm.send_request(
            {"url": "https://api.test/items", "method": "post", "header": {"X-Id": 5}, "body": {"name": "a"}},
            lambda err, res: seen.append((err, res.json())),
        )

    ctx = make_ctx(proxy_url="http://proxy:3128")
    await ScriptAdapter(engine=CallableEngine(script), transport=transport).run("script", ctx)
    sent = transport.requests[0]
    assert (sent.method, sent.url, sent.headers, sent.body) == ("POST", "https://api.test/items", {"X-Id": "5"}, '{"name": "a"}')
    assert transport.proxies == ["http://proxy:3128"]
    assert seen == [(None, {"ok": True})]


@pytest.mark.asyncio
async def test_engine_cancellation_propagates():
    cancel_event = asyncio.Event()
    cancel_event.set()
    adapter = ScriptAdapter(engine=CallableEngine(lambda pm: None))
    with pytest.raises(FlowCancelledError):
        await adapter.run("script", make_ctx(cancel_event=cancel_event))


def test_expectation_chain():
    Expectation(5).to.be.above(3).and_.below(10)
    Expectation([1, 2]).to.have.length(2)
    Expectation({"a": 1}).to.have.property("a", 1)
    Expectation("abc").not_.to.include("z")
    Expectation(3).to.be.a("number")
    with pytest.raises(ExpectationError):
        Expectation(True).to.be.a("number")
    with pytest.raises(ExpectationError, match="expected 1 to equal 2"):
        Expectation(1).to.equal(2)
    with pytest.raises(ExpectationError, match="not to include"):
        Expectation("abc").not_.to.include("b")
