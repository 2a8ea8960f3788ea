"""
InMemoryProvider: a simulated cloud.

Resources live in a dict inside the provider. Ids are deterministic
("network-1", "instance-2", ...), calls are recorded, and failures, latency
and drift can be injected. Used by the test suite and for local dry runs of
stack files (`memory.*` kinds).
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import copy
import logging
import threading
import time
from ..errors import NotFoundError, ProviderError
from .base import Diff

logger = logging.getLogger(__name__)


@dataclass
class _FailureRule:
    operation: str
    kind: Optional[str]
    match: Optional[Callable[[Dict[str, Any]], bool]]
    remaining: Optional[int]
    message: str


@dataclass
class ProviderCall:
    """One recorded provider call."""
    operation: str
    target: str
    started: float
    finished: Optional[float] = None
    inputs: Dict[str, Any] = field(default_factory=dict)


class InMemoryProvider:
    def __init__(
        self,
        latency: float = 0.0,
        outputs_for: Optional[Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]]] = None,
    ):
        """
        Parameters:
        -----------
        latency : float
            Seconds every call sleeps, to make concurrency observable
        outputs_for : dict, optional
            kind -> fn(provider_id, inputs) returning extra outputs
        """
        self.latency = latency
        self.outputs_for = dict(outputs_for or {})
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[ProviderCall] = []
        self.active = 0
        self.max_active = 0
        self._counter = 0
        self._rules: List[_FailureRule] = []
        self._lock = threading.Lock()

    # ---- failure / drift injection -------------------------------------------
    def inject_failure(
        self,
        operation: str = "create",
        kind: Optional[str] = None,
        match: Optional[Callable[[Dict[str, Any]], bool]] = None,
        times: Optional[int] = None,
        message: str = "injected failure",
    ) -> None:
        """
        Make matching calls raise ProviderError.

        `match` receives the inputs (create) or the stored resource (other calls).
        `times=None` fails forever.
        """
        with self._lock:
            self._rules.append(_FailureRule(operation, kind, match, times, message))

    def drift(self, provider_id: str, **outputs: Any) -> None:
        """Change outputs behind the engine's back."""
        with self._lock:
            self.resources[provider_id]["outputs"].update(outputs)

    def forget(self, provider_id: str) -> None:
        """Delete a resource behind the engine's back."""
        with self._lock:
            self.resources.pop(provider_id, None)

    def calls_for(self, operation: str) -> List[ProviderCall]:
        return [c for c in self.calls if c.operation == operation]

    # ---- provider contract ---------------------------------------------------
    def create(self, kind: str, inputs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        call = self._begin("create", kind, inputs)
        try:
            self._check_failure("create", kind, inputs)
            with self._lock:
                self._counter += 1
                provider_id = f"{kind.rsplit('.', 1)[-1].lower()}-{self._counter}"
                outputs = self._outputs(kind, provider_id, inputs)
                self.resources[provider_id] = {
                    "kind": kind,
                    "inputs": copy.deepcopy(inputs),
                    "outputs": outputs,
                }
            logger.debug(f"[memory] created {provider_id}")
            return provider_id, dict(outputs)
        finally:
            self._end(call)

    def update(self, provider_id: str, diff: Diff) -> Dict[str, Any]:
        call = self._begin("update", provider_id, {k: new for k, (_, new) in diff.items()})
        try:
            resource = self._get(provider_id)
            self._check_failure("update", resource["kind"], resource)
            with self._lock:
                for name, (_, new) in diff.items():
                    resource["inputs"][name] = copy.deepcopy(new)
                resource["outputs"] = self._outputs(resource["kind"], provider_id, resource["inputs"])
                return dict(resource["outputs"])
        finally:
            self._end(call)

    def delete(self, provider_id: str) -> None:
        call = self._begin("delete", provider_id)
        try:
            resource = self._get(provider_id)
            self._check_failure("delete", resource["kind"], resource)
            with self._lock:
                self.resources.pop(provider_id, None)
            logger.debug(f"[memory] deleted {provider_id}")
        finally:
            self._end(call)

    def read(self, provider_id: str) -> Dict[str, Any]:
        call = self._begin("read", provider_id)
        try:
            resource = self._get(provider_id)
            self._check_failure("read", resource["kind"], resource)
            return dict(resource["outputs"])
        finally:
            self._end(call)

    # ---- internals -----------------------------------------------------------
    def _outputs(self, kind: str, provider_id: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        outputs = copy.deepcopy(inputs)
        outputs["id"] = provider_id
        outputs.setdefault("name", provider_id)
        outputs["self_link"] = f"memory://{kind}/{provider_id}"
        extra = self.outputs_for.get(kind)
        if extra:
            outputs.update(extra(provider_id, inputs))
        return outputs

    def _get(self, provider_id: str) -> Dict[str, Any]:
        with self._lock:
            resource = self.resources.get(provider_id)
        if resource is None:
            raise NotFoundError(f"resource {provider_id!r} not found")
        return resource

    def _check_failure(self, operation: str, kind: str, subject: Dict[str, Any]) -> None:
        with self._lock:
            for rule in self._rules:
                if rule.operation != operation:
                    continue
                if rule.kind is not None and rule.kind != kind:
                    continue
                if rule.match is not None and not rule.match(subject):
                    continue
                if rule.remaining is not None:
                    if rule.remaining <= 0:
                        continue
                    rule.remaining -= 1
                raise ProviderError(rule.message, operation=operation)

    def _begin(self, operation: str, target: str, inputs: Optional[Dict[str, Any]] = None) -> ProviderCall:
        call = ProviderCall(operation=operation, target=target, started=time.monotonic(), inputs=dict(inputs or {}))
        with self._lock:
            self.calls.append(call)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.latency:
            time.sleep(self.latency)
        return call

    def _end(self, call: ProviderCall) -> None:
        with self._lock:
            self.active -= 1
            call.finished = time.monotonic()
