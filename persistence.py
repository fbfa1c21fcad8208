"""
Persistence collaborator for the flow engine.

The engine never owns durable state. At run start it reads a Flow snapshot
and the environment / collection / global variable scopes through a
`FlowRepository`; staged variable writes are handed back through
`save_variables`, which must apply each key atomically. Concurrent runs may
race on the same keys: the last write wins.

`InMemoryFlowRepository` is the reference implementation used by the CLI,
the HTTP surface and the tests.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from flow_models import Flow, FlowNotFoundError, VariableScope
from variable_store import DURABLE_SCOPES

logger = logging.getLogger("FlowRunner.persistence")

FlowId = Union[int, str]


class HistoryEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    method: str
    url: str
    status_code: int = 0
    duration_ms: int = 0
    body_size: int = 0
    error: Optional[str] = None
    step_name: str = ""


class FlowRepository(ABC):
    """
    Read side: `get_flow`, `load_variables`, proxy lookups.
    Write side: `save_variables` (None deletes a key), `append_history`.
    """

    # ---------- flows ------------------------------------------------------ #
    @abstractmethod
    def get_flow(self, flow_id: FlowId) -> Flow: ...

    # ---------- variables -------------------------------------------------- #
    @abstractmethod
    def load_variables(self, scope: VariableScope) -> Dict[str, str]: ...

    @abstractmethod
    def save_variables(self, scope: VariableScope, updates: Dict[str, Optional[str]]) -> None: ...

    # ---------- proxies ---------------------------------------------------- #
    def get_proxy_url(self, proxy_id: int) -> Optional[str]:
        return None

    def get_active_proxy_url(self) -> Optional[str]:
        return None

    # ---------- history ---------------------------------------------------- #
    def append_history(self, entry: HistoryEntry) -> None:
        pass


class InMemoryFlowRepository(FlowRepository):
    def __init__(
        self,
        flows: Optional[List[Flow]] = None,
        variables: Optional[Dict[VariableScope, Dict[str, str]]] = None,
        proxies: Optional[Dict[int, str]] = None,
        active_proxy_id: Optional[int] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._flows: Dict[str, Flow] = {}
        self._variables: Dict[VariableScope, Dict[str, str]] = {scope: {} for scope in DURABLE_SCOPES}
        for scope, values in (variables or {}).items():
            self._variables[VariableScope(scope)].update(values)
        self.proxies: Dict[int, str] = dict(proxies or {})
        self.active_proxy_id = active_proxy_id
        self.history: List[HistoryEntry] = []
        for flow in flows or []:
            self.save_flow(flow)

    def save_flow(self, flow: Flow) -> None:
        with self._lock:
            self._flows[str(flow.id)] = flow.model_copy(deep=True)

    def get_flow(self, flow_id: FlowId) -> Flow:
        with self._lock:
            flow = self._flows.get(str(flow_id))
            if flow is None:
                raise FlowNotFoundError(flow_id)
            # Callers get a snapshot; later edits do not leak into a running flow
            return flow.model_copy(deep=True)

    def load_variables(self, scope: VariableScope) -> Dict[str, str]:
        with self._lock:
            return copy.deepcopy(self._variables[VariableScope(scope)])

    def save_variables(self, scope: VariableScope, updates: Dict[str, Optional[str]]) -> None:
        with self._lock:
            target = self._variables[VariableScope(scope)]
            for name, value in updates.items():
                if value is None:
                    target.pop(name, None)
                else:
                    target[name] = value
        logger.debug(f"Persisted {len(updates)} {VariableScope(scope).value} variable update(s)")

    def get_proxy_url(self, proxy_id: int) -> Optional[str]:
        url = self.proxies.get(proxy_id)
        if url is None:
            logger.warning(f"Proxy {proxy_id} not found; sending without proxy.")
        return url

    def get_active_proxy_url(self) -> Optional[str]:
        if self.active_proxy_id is None:
            return None
        return self.proxies.get(self.active_proxy_id)

    def append_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            self.history.append(entry)
