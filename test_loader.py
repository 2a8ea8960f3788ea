"""Tests for YAML stack loading."""
import textwrap

import pytest

from resgraph import ConfigError, Interpolate, Reference, load_stack, parse_stack
from resgraph.loader import convert_value


STACK_YAML = """
stack: analytics
config:
  project: demo-project
  region: europe-west1
resources:
  - name: net
    kind: memory.Network
    inputs:
      cidr: 10.0.0.0/16
      region: ${config.region}
  - name: fw
    type: memory.Firewall
    args:
      network: ref:net.id
      source: projects/${config.project}/networks/${net.name}
      allowed:
        - ports: [22]
          from: ${net.self_link}
  - name: vm
    kind: memory.Instance
    depends_on: [fw]
    protect: true
    inputs:
      network: ref:net
exports:
  network_id: ref:net.id
  project: ${config.project}
"""


def _write(tmp_path, text):
    path = tmp_path / "stack.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_load_stack(tmp_path):
    stack = load_stack(_write(tmp_path, STACK_YAML))

    assert stack.name == "analytics"
    assert [n.id for n in stack.nodes] == ["net", "fw", "vm"]

    net, fw, vm = stack.nodes
    assert net.inputs == {"cidr": "10.0.0.0/16", "region": "europe-west1"}
    assert fw.kind == "memory.Firewall"
    assert fw.inputs["network"] == Reference("net", "id")
    source = fw.inputs["source"]
    assert isinstance(source, Interpolate)
    assert source.template == "projects/demo-project/networks/{p0}"
    assert source.parts == {"p0": Reference("net", "name")}
    assert fw.inputs["allowed"] == [{"ports": [22], "from": Reference("net", "self_link")}]
    assert vm.depends_on == {"fw"}
    assert vm.protect
    assert vm.inputs["network"] == Reference("net", "id")
    assert vm.dependency_ids() == {"net", "fw"}
    assert stack.exports == {"network_id": Reference("net", "id"), "project": "demo-project"}


def test_braces_in_templates_are_escaped():
    value = convert_value("{\"net\": \"${net.id}\"}", {})
    assert isinstance(value, Interpolate)
    assert value.template.format(p0="network-1") == "{\"net\": \"network-1\"}"


def test_unknown_config_key(tmp_path):
    text = """
    resources:
      - name: net
        kind: memory.Network
        inputs:
          region: ${config.missing}
    """
    with pytest.raises(ConfigError, match="missing"):
        load_stack(_write(tmp_path, text))


@pytest.mark.parametrize("document, fragment", [
    ({"resources": [{"name": "a", "kind": "memory.A"}, {"name": "a", "kind": "memory.B"}]}, "duplicate"),
    ({"resources": [{"name": "a"}]}, "kind"),
    ({"resources": [{"name": "a", "kind": "NoProvider"}]}, "provider"),
    ({"resources": [{"name": "bad name", "kind": "memory.A"}]}, "invalid resource name"),
    ({"resources": [{"name": "a", "kind": "memory.A", "colour": "red"}]}, "colour"),
])
def test_invalid_declarations(document, fragment):
    with pytest.raises(ConfigError, match=fragment):
        parse_stack(document)


def test_empty_file_is_an_empty_stack(tmp_path):
    stack = load_stack(_write(tmp_path, ""))
    assert stack.name == "default"
    assert len(stack) == 0


def test_unreadable_files(tmp_path):
    with pytest.raises(ConfigError):
        load_stack(tmp_path / "missing.yaml")
    with pytest.raises(ConfigError):
        load_stack(_write(tmp_path, "resources: [unclosed"))
    with pytest.raises(ConfigError, match="mapping"):
        load_stack(_write(tmp_path, "- just\n- a list\n"))
