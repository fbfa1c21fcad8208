import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from engine_config import configure_logging, load_engine_config, logger
from flow_models import Flow, VariableScope
from flow_runner import FlowRunner
from persistence import InMemoryFlowRepository


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a flow definition file once and print the FlowResult")
    parser.add_argument("flow_file", help="Path to flow definition JSON file")
    parser.add_argument("debug_level", nargs="?", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level (DEBUG, INFO, WARNING); defaults to LOG_LEVEL")
    parser.add_argument(
        "--step-id",
        dest="step_ids",
        action="append",
        default=None,
        help="Run only this step id (repeatable)",
    )
    parser.add_argument(
        "--var",
        dest="variables",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Initial runtime variable (repeatable)",
    )
    parser.add_argument(
        "--config",
        dest="config_file",
        default=None,
        help="Engine YAML config file",
    )
    parser.add_argument(
        "--proxy",
        dest="proxy_url",
        default=None,
        help="Active global proxy URL for steps that inherit it",
    )
    return parser.parse_args(argv)


def parse_variables(pairs: List[str]) -> Dict[str, str]:
    variables = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"--var expects NAME=VALUE, got '{pair}'")
        variables[name.strip()] = value
    return variables


def load_flow_file(path: Path) -> Dict[str, Any]:
    """
    Flow file layout: the Flow itself (id, name, steps) plus an optional
    "variables" object keyed by environment / collection / global.
    """
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


async def run_flow(runner: FlowRunner, flow: Flow, step_ids: Optional[List[str]], variables: Dict[str, str], proxy_url: Optional[str], cancel_event: asyncio.Event):
    try:
        return await runner.run_flow_definition(
            flow, step_ids, cancel_event=cancel_event, initial_vars=variables, global_proxy_url=proxy_url,
        )
    finally:
        await runner.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.debug_level.upper() == "DEBUG", args.debug_level)

    flow_data = load_flow_file(Path(args.flow_file))
    durable = {VariableScope(scope): values for scope, values in (flow_data.pop("variables", None) or {}).items()}
    flow = Flow.model_validate(flow_data)
    cfg = load_engine_config(args.config_file, {"debug": args.debug_level.upper() == "DEBUG" or None})

    runner = FlowRunner(InMemoryFlowRepository([flow], durable), config=cfg)
    cancel_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(run_flow(runner, flow, args.step_ids, parse_variables(args.variables), args.proxy_url, cancel_event))
    try:
        result = loop.run_until_complete(main_task)
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling flow run...")
        cancel_event.set()
        result = loop.run_until_complete(main_task)
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    print(json.dumps(result.model_dump(by_alias=True, mode="json"), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
