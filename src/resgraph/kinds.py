"""
KindSpec: declarative per-kind field metadata.

Which input changes can be applied in place and which force a replacement is
expressed as a small table per resource kind, so the Planner itself stays
provider-agnostic.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional
import logging

logger = logging.getLogger(__name__)


class FieldPolicy(Enum):
    """What a change to an input field requires."""
    UPDATE = "update"      # provider can update in place
    REPLACE = "replace"    # delete then create


@dataclass
class KindSpec:
    """
    Specification for one resource kind.

    Attributes:
        kind: Kind name (e.g. "memory.Network")
        provider: Provider adapter that creates/reads/updates/deletes this kind
        updatable: Input fields that can be changed in place
        replace_on: Input fields whose change forces a replacement
        default_policy: Policy for fields listed in neither set
        retryable: Whether failed provider calls may be retried
        timeout: Maximum seconds for one provider call (None = no timeout)
        concurrency_cap: Maximum concurrent provider calls of this kind
        description: Human-readable description
    """
    kind: str
    provider: Any
    updatable: FrozenSet[str] = field(default_factory=frozenset)
    replace_on: FrozenSet[str] = field(default_factory=frozenset)
    default_policy: FieldPolicy = FieldPolicy.REPLACE
    retryable: bool = False
    timeout: Optional[float] = None
    concurrency_cap: Optional[int] = None
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.updatable, frozenset):
            object.__setattr__(self, 'updatable', frozenset(self.updatable))
        if not isinstance(self.replace_on, frozenset):
            object.__setattr__(self, 'replace_on', frozenset(self.replace_on))
        if isinstance(self.default_policy, str):
            self.default_policy = FieldPolicy(self.default_policy)

        overlap = self.updatable & self.replace_on
        if overlap:
            raise ValueError(
                f"Fields {sorted(overlap)} of kind {self.kind!r} are both updatable and replace_on"
            )
        if self.concurrency_cap is not None and self.concurrency_cap < 1:
            raise ValueError(f"concurrency_cap must be >= 1, got {self.concurrency_cap}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")

    def policy_for(self, field_name: str) -> FieldPolicy:
        if field_name in self.replace_on:
            return FieldPolicy.REPLACE
        if field_name in self.updatable:
            return FieldPolicy.UPDATE
        return self.default_policy

    def __repr__(self) -> str:
        return (
            f"KindSpec(kind={self.kind!r}, "
            f"updatable={sorted(self.updatable)}, "
            f"replace_on={sorted(self.replace_on)}, "
            f"default={self.default_policy.value}, "
            f"retryable={self.retryable})"
        )


class KindRegistry:
    """
    Maps kinds to KindSpecs.

    Exact registrations win; otherwise a family registered for the kind's
    prefix ("memory" for "memory.Network") supplies a spec built from the
    family defaults.
    """

    def __init__(self):
        self._kinds: Dict[str, KindSpec] = {}
        self._families: Dict[str, Dict[str, Any]] = {}

    def register(self, spec: KindSpec) -> KindSpec:
        if spec.kind in self._kinds:
            logger.warning(f"Re-registering kind {spec.kind!r}")
        self._kinds[spec.kind] = spec
        logger.debug(f"Registered {spec!r}")
        return spec

    def register_kind(
        self,
        kind: str,
        provider: Any,
        *,
        updatable: Iterable[str] = (),
        replace_on: Iterable[str] = (),
        **options: Any,
    ) -> KindSpec:
        return self.register(KindSpec(
            kind=kind,
            provider=provider,
            updatable=frozenset(updatable),
            replace_on=frozenset(replace_on),
            **options,
        ))

    def register_family(self, prefix: str, provider: Any, **defaults: Any) -> None:
        """Serve every "<prefix>.<Name>" kind with `provider` unless registered exactly."""
        self._families[prefix] = {"provider": provider, **defaults}
        logger.debug(f"Registered kind family {prefix!r}.*")

    def get(self, kind: str) -> KindSpec:
        spec = self._kinds.get(kind)
        if spec is not None:
            return spec
        prefix = kind.split(".", 1)[0]
        defaults = self._families.get(prefix)
        if defaults is None:
            raise KeyError(kind)
        spec = KindSpec(kind=kind, **defaults)
        self._kinds[kind] = spec
        return spec

    def __contains__(self, kind: str) -> bool:
        try:
            self.get(kind)
        except KeyError:
            return False
        return True

    def kinds(self) -> Dict[str, KindSpec]:
        return dict(self._kinds)
