from typing import Optional

import pytest

from engine_config import EngineConfig
from flow_models import Flow, FlowStep
from flow_runner import FlowRunner
from persistence import InMemoryFlowRepository
from tests.unit.fakes import FakeTransport


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_runner(transport):
    def _make(steps, *, variables=None, config: Optional[EngineConfig] = None, engine=None,
              proxies=None, active_proxy_id=None, flow_id=1, name="test flow"):
        flow = Flow(
            id=flow_id,
            name=name,
            steps=[s if isinstance(s, FlowStep) else FlowStep.model_validate(s) for s in steps],
        )
        repository = InMemoryFlowRepository([flow], variables, proxies, active_proxy_id)
        return FlowRunner(repository, transport, config=config, script_engine=engine)
    return _make
