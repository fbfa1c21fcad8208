# variable_store.py

import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flow_models import VariableScope, VariableWrite
from jsonpath_extractor import MISSING
from template_renderer import stringify_value

logger = logging.getLogger("FlowRunner.variables")

__all__ = ["VariableStore", "ScopedOverlay", "BUILTIN_NAMES", "DURABLE_SCOPES", "READ_ORDER"]

DURABLE_SCOPES = (VariableScope.ENVIRONMENT, VariableScope.COLLECTION, VariableScope.GLOBAL)
# Durable tiers in read order; each tier is consulted pending-first
READ_ORDER = DURABLE_SCOPES

BUILTIN_NAMES = (
    "__statusCode__", "__responseTime__", "__responseBody__", "__iteration__",
    "__loopCount__", "__stepName__", "__stepOrder__", "__flowName__",
    "__timestamp__", "__uuid__",
)
RESPONSE_BUILTINS = ("__statusCode__", "__responseTime__", "__responseBody__")

_DELETED = object()


class VariableStore:
    """
    Layered variable resolver for one flow run.

    Read precedence, highest first: built-ins, runtime, then for each of
    environment, collection and global the pending (staged) write followed by
    the durable value loaded at run start. A staged unset hides only its own
    tier. Writes to durable scopes stay staged until flush() hands them to
    the persistence collaborator; runtime writes are never persisted.
    """

    def __init__(
        self,
        durable: Optional[Dict[VariableScope, Dict[str, str]]] = None,
        runtime: Optional[Dict[str, Any]] = None,
        *,
        persist: Optional[Callable[[VariableScope, Dict[str, Optional[str]]], None]] = None,
    ):
        self._durable: Dict[VariableScope, Dict[str, str]] = {
            scope: dict((durable or {}).get(scope, {})) for scope in DURABLE_SCOPES
        }
        self._pending: Dict[VariableScope, Dict[str, Any]] = {scope: {} for scope in DURABLE_SCOPES}
        self._runtime: Dict[str, str] = {k: stringify_value(v) for k, v in (runtime or {}).items()}
        self._builtins: Dict[str, Any] = {
            "__timestamp__": lambda: str(int(time.time() * 1000)),
            "__uuid__": lambda: str(uuid.uuid4()),
        }
        self._persist = persist

    # --- Reads ---

    def _builtin(self, name: str) -> Any:
        value = self._builtins.get(name, MISSING)
        if callable(value):
            return value()
        return value

    def _read_tier(self, scope: VariableScope, name: str) -> Any:
        pending = self._pending[scope]
        if name in pending:
            value = pending[name]
            return MISSING if value is _DELETED else value
        return self._durable[scope].get(name, MISSING)

    def get(self, name: str) -> Any:
        """Resolve name across all tiers; returns MISSING when no tier defines it."""
        value = self._builtin(name)
        if value is not MISSING:
            return value
        if name in self._runtime:
            return self._runtime[name]
        for scope in READ_ORDER:
            value = self._read_tier(scope, name)
            if value is not MISSING:
                return value
        return MISSING

    def get_scoped(self, scope: VariableScope, name: str) -> Any:
        scope = VariableScope(scope)
        if scope == VariableScope.RUNTIME:
            value = self._builtin(name)
            return value if value is not MISSING else self._runtime.get(name, MISSING)
        return self._read_tier(scope, name)

    def has(self, name: str) -> bool:
        return self.get(name) is not MISSING

    def has_scoped(self, scope: VariableScope, name: str) -> bool:
        return self.get_scoped(scope, name) is not MISSING

    # --- Writes ---

    def set(self, scope: VariableScope, name: str, value: Any):
        scope = VariableScope(scope)
        if name in BUILTIN_NAMES:
            logger.warning(f"Ignoring write to read-only built-in variable '{name}'.")
            return
        text = stringify_value(value)
        if scope == VariableScope.RUNTIME:
            self._runtime[name] = text
        else:
            self._pending[scope][name] = text
        logger.debug(f"Variable set [{scope.value}] {name}")

    def unset(self, scope: VariableScope, name: str):
        scope = VariableScope(scope)
        if scope == VariableScope.RUNTIME:
            self._runtime.pop(name, None)
        else:
            self._pending[scope][name] = _DELETED

    def clear(self, scope: VariableScope):
        scope = VariableScope(scope)
        if scope == VariableScope.RUNTIME:
            self._runtime.clear()
            return
        names = set(self._durable[scope]) | set(self._pending[scope])
        for name in names:
            self._pending[scope][name] = _DELETED

    def apply_writes(self, writes: Iterable[VariableWrite]):
        """Merge scoped writes recorded by a script invocation, in order."""
        for write in writes:
            if write.op == 'clear':
                self.clear(write.scope)
            elif write.op == 'unset':
                self.unset(write.scope, write.name)
            else:
                self.set(write.scope, write.name, write.value)

    # --- Built-ins ---

    def set_step_context(self, *, iteration: int, loop_count: int, step_name: str, step_order: int, flow_name: str):
        """Synthesize per-iteration built-ins; response built-ins are cleared for the pre-script phase."""
        self._builtins.update({
            "__iteration__": str(iteration),
            "__loopCount__": str(loop_count),
            "__stepName__": step_name,
            "__stepOrder__": str(step_order),
            "__flowName__": flow_name,
        })
        for name in RESPONSE_BUILTINS:
            self._builtins.pop(name, None)

    def set_response_context(self, *, status_code: int, response_time_ms: int, body: str):
        self._builtins.update({
            "__statusCode__": str(status_code),
            "__responseTime__": str(response_time_ms),
            "__responseBody__": body,
        })

    # --- Pending writes / persistence ---

    def pending_writes(self, scope: VariableScope) -> Dict[str, Optional[str]]:
        """Staged writes for a durable scope; None marks a deletion."""
        scope = VariableScope(scope)
        if scope == VariableScope.RUNTIME:
            return {}
        return {k: (None if v is _DELETED else v) for k, v in self._pending[scope].items()}

    def has_pending(self) -> bool:
        return any(self._pending[scope] for scope in DURABLE_SCOPES)

    def flush(self) -> int:
        """Hand staged writes to persistence and fold them into the durable snapshot. Returns the write count."""
        count = 0
        for scope in DURABLE_SCOPES:
            updates = self.pending_writes(scope)
            if not updates:
                continue
            if self._persist is not None:
                self._persist(scope, updates)
            durable = self._durable[scope]
            for name, value in updates.items():
                if value is None:
                    durable.pop(name, None)
                else:
                    durable[name] = value
            self._pending[scope].clear()
            count += len(updates)
        if count:
            logger.debug(f"Flushed {count} staged variable write(s).")
        return count

    def discard_pending(self) -> int:
        count = sum(len(self._pending[scope]) for scope in DURABLE_SCOPES)
        for scope in DURABLE_SCOPES:
            self._pending[scope].clear()
        if count:
            logger.debug(f"Discarded {count} staged variable write(s).")
        return count

    def runtime_vars(self) -> Dict[str, str]:
        return dict(self._runtime)

    def snapshot(self) -> Dict[str, str]:
        """Flattened, precedence-resolved view of every visible variable (built-ins excluded)."""
        names: List[str] = list(self._runtime)
        for scope in DURABLE_SCOPES:
            names.extend(self._pending[scope])
            names.extend(self._durable[scope])
        resolved = {}
        for name in names:
            if name in resolved:
                continue
            value = self.get(name)
            if value is not MISSING:
                resolved[name] = value
        return resolved

    def overlay(self) -> "ScopedOverlay":
        return ScopedOverlay(self)


class ScopedOverlay:
    """
    Write-recording view over a VariableStore used during one script
    invocation. Reads see the script's own writes first; the writes are only
    applied to the store when the caller merges them.
    """

    def __init__(self, store: VariableStore):
        self._store = store
        self.writes: List[VariableWrite] = []
        # (scope, name) -> value or _DELETED; cleared scopes hide the store
        self._local: Dict[Tuple[VariableScope, str], Any] = {}
        self._cleared: set = set()

    def get_scoped(self, scope: VariableScope, name: str) -> Any:
        scope = VariableScope(scope)
        key = (scope, name)
        if key in self._local:
            value = self._local[key]
            return MISSING if value is _DELETED else value
        if scope in self._cleared:
            return MISSING if name not in BUILTIN_NAMES else self._store.get_scoped(scope, name)
        return self._store.get_scoped(scope, name)

    def get(self, name: str) -> Any:
        builtin = self._store._builtin(name)
        if builtin is not MISSING:
            return builtin
        for scope in (VariableScope.RUNTIME,) + READ_ORDER:
            value = self.get_scoped(scope, name)
            if value is not MISSING:
                return value
        return MISSING

    def has_scoped(self, scope: VariableScope, name: str) -> bool:
        return self.get_scoped(scope, name) is not MISSING

    def set(self, scope: VariableScope, name: str, value: Any):
        scope = VariableScope(scope)
        if name in BUILTIN_NAMES:
            logger.warning(f"Ignoring write to read-only built-in variable '{name}'.")
            return
        text = stringify_value(value)
        self._local[(scope, name)] = text
        self.writes.append(VariableWrite(scope=scope, name=name, value=text, op='set'))

    def unset(self, scope: VariableScope, name: str):
        scope = VariableScope(scope)
        self._local[(scope, name)] = _DELETED
        self.writes.append(VariableWrite(scope=scope, name=name, op='unset'))

    def clear(self, scope: VariableScope):
        scope = VariableScope(scope)
        for key in [k for k in self._local if k[0] == scope]:
            del self._local[key]
        self._cleared.add(scope)
        self.writes.append(VariableWrite(scope=scope, op='clear'))

    def updated_vars(self) -> Dict[str, str]:
        """name -> value for every variable still set by this invocation."""
        return {name: value for (scope, name), value in self._local.items() if value is not _DELETED}
