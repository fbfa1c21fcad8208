import json

import pytest

from flow_runner_direct_invoker import main, parse_args, parse_variables


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FLOW_ENGINE_CONFIG", raising=False)
    return tmp_path


def write_flow(path, steps, variables=None):
    data = {"id": 1, "name": "cli flow", "steps": steps}
    if variables is not None:
        data["variables"] = variables
    path.write_text(json.dumps(data))
    return str(path)


def test_parse_variables():
    assert parse_variables(["a=1", "b=x=y", "c="]) == {"a": "1", "b": "x=y", "c": ""}
    with pytest.raises(ValueError):
        parse_variables(["novalue"])


def test_parse_args():
    args = parse_args(["flow.json", "DEBUG", "--step-id", "2", "--step-id", "3", "--var", "a=1", "--proxy", "http://p:1"])
    assert args.flow_file == "flow.json"
    assert args.debug_level == "DEBUG"
    assert args.step_ids == ["2", "3"]
    assert args.variables == ["a=1"]
    assert args.proxy_url == "http://p:1"


def test_main_prints_result_and_succeeds(workdir, capsys):
    flow_file = write_flow(
        workdir / "flow.json",
        [{"id": 1, "stepOrder": 1, "name": "gated", "url": "http://127.0.0.1:1/", "condition": "{{mode}} == '{{expected}}'"}],
        variables={"environment": {"expected": "live"}},
    )
    code = main([flow_file, "--var", "mode=dry"])
    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out["status"] == "completed"
    assert out["stepResults"][0]["skipReason"] == "condition"


def test_main_returns_nonzero_on_failure(workdir, capsys):
    flow_file = write_flow(workdir / "flow.json", [{"id": 1, "stepOrder": 1, "url": "http://127.0.0.1:1/"}])
    code = main([flow_file, "WARNING"])
    out = json.loads(capsys.readouterr().out)
    assert code == 1
    assert out["status"] == "failed"
    assert out["notExecutedStepIds"] == []
