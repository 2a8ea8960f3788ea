"""
YAML stack declarations.

    stack: analytics
    config:
      project: demo-project
    resources:
      - name: net
        kind: memory.Network
      - name: fw
        kind: memory.Firewall
        inputs:
          network: ref:net.id
          source: "projects/${config.project}/networks/${net.name}"
    exports:
      network_id: ref:net.id

String conventions inside inputs and exports:
- "ref:<node>.<output>" is a Reference ("ref:<node>" means output "id")
- "${config.<key>}" is replaced by the stack config value at load time
- any other "${<node>.<output>}" turns the string into an Interpolate
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Union
import logging
import re
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from .errors import ConfigError
from .resource import ResourceNode, Stack
from .values import Interpolate, Reference

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


class ResourceDeclaration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    kind: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    protect: bool = False

    # accept "type"/"args" as used by other infrastructure YAML formats
    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "kind" not in data and "type" in data:
            data["kind"] = data.pop("type")
        if "inputs" not in data and "args" in data:
            data["inputs"] = data.pop("args")
        if data.get("inputs") is None:
            data["inputs"] = {}
        return data

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid resource name {v!r}")
        return v

    @field_validator("kind")
    @classmethod
    def _valid_kind(cls, v: str) -> str:
        if "." not in v:
            raise ValueError(f"kind must look like '<provider>.<Type>', got {v!r}")
        return v


class StackDeclaration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stack: str = "default"
    config: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceDeclaration] = Field(default_factory=list)
    exports: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_names(self):
        seen = set()
        for res in self.resources:
            if res.name in seen:
                raise ValueError(f"duplicate resource name {res.name!r}")
            seen.add(res.name)
        return self


def parse_stack(data: Dict[str, Any]) -> Stack:
    """Validate a decoded YAML document and convert it to a Stack."""
    try:
        decl = StackDeclaration.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid stack declaration: {e}") from e

    nodes = [
        ResourceNode(
            id=res.name,
            kind=res.kind,
            inputs={k: convert_value(v, decl.config) for k, v in res.inputs.items()},
            depends_on=frozenset(res.depends_on),
            protect=res.protect,
        )
        for res in decl.resources
    ]
    exports = {k: convert_value(v, decl.config) for k, v in decl.exports.items()}
    stack = Stack(name=decl.stack, nodes=nodes, exports=exports)
    logger.info(f"Loaded stack {stack.name!r} with {len(nodes)} resources")
    return stack


def load_stack(path: Union[str, Path]) -> Stack:
    """Load and validate a YAML stack file."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read stack file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"Stack file {path} must contain a mapping")
    return parse_stack(data or {})


def convert_value(value: Any, config: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: convert_value(v, config) for k, v in value.items()}
    if isinstance(value, list):
        return [convert_value(item, config) for item in value]
    if isinstance(value, str):
        if value.startswith("ref:"):
            return _parse_reference(value[4:])
        if "${" in value:
            return _convert_template(value, config)
    return value


def _parse_reference(text: str) -> Reference:
    text = text.strip()
    if not text:
        raise ConfigError("Empty reference")
    if "." in text:
        node_id, output = text.split(".", 1)
    else:
        node_id, output = text, "id"
    return Reference(node_id, output)


def _convert_template(value: str, config: Dict[str, Any]) -> Any:
    def _config_sub(match: "re.Match[str]") -> str:
        expr = match.group(1).strip()
        if not expr.startswith("config."):
            return match.group(0)
        key = expr[len("config."):]
        if key not in config:
            raise ConfigError(f"Unknown config key {key!r} in {value!r}")
        return str(config[key])

    text = _PLACEHOLDER_RE.sub(_config_sub, value)
    refs = _PLACEHOLDER_RE.findall(text)
    if not refs:
        return text

    whole = _PLACEHOLDER_RE.fullmatch(text)
    if whole:
        return _parse_reference(whole.group(1))

    parts: Dict[str, Reference] = {}
    template: List[str] = []
    pos = 0
    for match in _PLACEHOLDER_RE.finditer(text):
        template.append(_escape(text[pos:match.start()]))
        name = f"p{len(parts)}"
        parts[name] = _parse_reference(match.group(1))
        template.append("{" + name + "}")
        pos = match.end()
    template.append(_escape(text[pos:]))
    return Interpolate("".join(template), **parts)


def _escape(text: str) -> str:
    return text.replace("{", "{{").replace("}", "}}")
