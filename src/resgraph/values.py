"""
Input values: literals, cross-resource references and deferred computations.

A resource input is either a plain Python value (treated as a literal), or
one of the tagged variants below. References are never substituted at plan
time; they are resolved through a lookup function immediately before the
provider call that needs them.

Example:
    >>> from resgraph.values import Reference, Interpolate, resolve_value
    >>> member = Interpolate("serviceAccount:{email}", email=Reference("sa", "email"))
    >>> resolve_value(member, lambda ref: "sa@example.iam")
    'serviceAccount:sa@example.iam'
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping
import hashlib
import json
import string


@dataclass(frozen=True)
class Literal:
    """An explicit literal; equivalent to passing the bare value."""
    value: Any


@dataclass(frozen=True)
class Reference:
    """
    Reference to a named output of another resource.

    Attributes:
        node_id: Id of the resource producing the output
        output: Name of the output (defaults to the provider-assigned "id")
    """
    node_id: str
    output: str = "id"

    def __str__(self) -> str:
        return f"{self.node_id}.{self.output}"


@dataclass(frozen=True)
class Computed:
    """
    A value derived from the other inputs of the same resource.

    `fn` receives the resolved non-computed inputs of the resource as a dict
    and returns the value. It runs once all of those inputs are known.
    """
    fn: Callable[[Dict[str, Any]], Any]
    description: str = ""


@dataclass(frozen=True)
class Interpolate:
    """
    A string template whose named fields may be references.

    Uses str.format syntax: Interpolate("projects/{p}/images/{img}", p=..., img=...)
    """
    template: str
    parts: Mapping[str, Any] = field(default_factory=dict)

    def __init__(self, template: str, **parts: Any):
        object.__setattr__(self, "template", template)
        object.__setattr__(self, "parts", dict(parts))

    def __hash__(self) -> int:
        return hash((self.template, tuple(sorted(self.parts))))

    def field_names(self) -> set:
        return {
            name for _, name, _, _ in string.Formatter().parse(self.template)
            if name
        }


@dataclass(frozen=True)
class Unknown:
    """Placeholder for a value that only becomes known during execution."""
    source: str = ""

    def __repr__(self) -> str:
        return f"<unknown {self.source}>" if self.source else "<unknown>"


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested anywhere inside `value`."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Literal):
        yield from iter_references(value.value)
    elif isinstance(value, Interpolate):
        for part in value.parts.values():
            yield from iter_references(part)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def contains_unknown(value: Any) -> bool:
    if isinstance(value, Unknown):
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Resolve references inside `value` using `lookup`.

    `lookup` may return an Unknown placeholder (plan time); an Interpolate
    with any unknown part resolves to Unknown as a whole.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Literal):
        return resolve_value(value.value, lookup)
    if isinstance(value, Interpolate):
        parts = {k: resolve_value(v, lookup) for k, v in value.parts.items()}
        unknown = [k for k, v in parts.items() if contains_unknown(v)]
        if unknown:
            return Unknown(f"interpolation of {', '.join(sorted(unknown))}")
        return value.template.format(**parts)
    if isinstance(value, Computed):
        raise TypeError("Computed values are resolved by resolve_inputs()")
    if isinstance(value, Mapping):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


def resolve_inputs(
    inputs: Mapping[str, Any],
    lookup: Callable[[Reference], Any],
) -> Dict[str, Any]:
    """
    Resolve a resource's full input mapping.

    Non-computed inputs are resolved first; Computed inputs then receive a
    copy of those resolved values. A Computed input whose inputs are not all
    known yet resolves to Unknown.
    """
    resolved: Dict[str, Any] = {}
    computed: Dict[str, Computed] = {}
    for name, value in inputs.items():
        if isinstance(value, Computed):
            computed[name] = value
        else:
            resolved[name] = resolve_value(value, lookup)

    if computed:
        base = dict(resolved)
        known = not contains_unknown(base)
        for name, value in computed.items():
            if known:
                resolved[name] = value.fn(dict(base))
            else:
                resolved[name] = Unknown(f"computed {name}")

    # keep declaration order
    return {name: resolved[name] for name in inputs}


def normalize(value: Any) -> Any:
    """Return a JSON-compatible canonical form of a resolved value."""
    if isinstance(value, Unknown):
        return repr(value)
    if isinstance(value, Mapping):
        return {str(k): normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(normalize(v) for v in value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def inputs_hash(inputs: Mapping[str, Any]) -> str:
    """Stable sha256 over the normalized inputs."""
    payload = json.dumps(normalize(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
