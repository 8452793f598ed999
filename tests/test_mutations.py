"""Tests for component schemas, mutation decoding and stream envelopes."""

import json

import pytest

from glitch.core.components import (
    COMPONENT_TYPES,
    Link,
    LinkState,
    Node,
    NodeState,
    Port,
    PortDirection,
    Position,
    Properties,
    State,
)
from glitch.core.errors import ProtocolViolation, ViolationKind
from glitch.core.mutations import (
    Batch,
    CreateEntity,
    DestroyEntity,
    MutationEnvelope,
    Ping,
    SetComponent,
    SyncBegin,
    UnsetComponent,
    batch_envelope,
    decode_envelope,
    decode_mutation,
    encode_envelope,
    encode_mutation,
)


class TestComponents:
    """Tests for component value schemas."""

    def test_registry_contains_all_tags(self):
        assert set(COMPONENT_TYPES) == {
            "node",
            "bin",
            "port",
            "link",
            "parent",
            "state",
            "properties",
            "position",
            "size",
        }

    def test_port_accepts_short_direction_aliases(self):
        port = Port.model_validate({"dir": "out", "owner": 1})
        assert port.direction is PortDirection.OUTPUT
        assert Port.model_validate({"direction": "in", "owner": 1}).direction is PortDirection.INPUT

    def test_state_accepts_bare_string(self):
        assert State.model_validate("playing").state is NodeState.PLAYING
        assert State.model_validate({"state": "paused"}).state is NodeState.PAUSED

    def test_properties_accepts_bare_mapping(self):
        assert Properties.model_validate({"location": "/tmp/a"}).values == {"location": "/tmp/a"}
        assert Properties.model_validate({"values": {"a": "b"}}).values == {"a": "b"}

    def test_link_state_defaults_to_done(self):
        assert Link(peer=4).state is LinkState.DONE

    def test_topology_keys(self):
        assert Node(name="a").topology_key() == Node(name="b").topology_key()
        assert Link(peer=1).topology_key() != Link(peer=2).topology_key()
        assert (
            Link(peer=1, state=LinkState.PENDING).topology_key()
            == Link(peer=1).topology_key()
        )
        assert State(state=NodeState.NULL).topology_key() is None

    def test_components_are_immutable(self):
        node = Node(name="src")
        with pytest.raises(Exception):
            node.name = "other"


class TestDecodeMutation:
    """Tests for decode_mutation."""

    def test_decodes_create(self):
        mutation = decode_mutation({"op": "create", "entity": 7})
        assert isinstance(mutation, CreateEntity)
        assert mutation.entity == 7
        assert mutation.seq is None

    def test_decodes_set_from_json_text(self):
        text = json.dumps(
            {"op": "set", "entity": 1, "component": "node", "value": {"name": "src"}}
        )
        mutation = decode_mutation(text)
        assert isinstance(mutation, SetComponent)
        assert mutation.parsed == Node(name="src")

    def test_decodes_bytes(self):
        mutation = decode_mutation(b'{"op": "destroy", "entity": 3, "seq": 9}')
        assert isinstance(mutation, DestroyEntity)
        assert mutation.seq == 9

    def test_decodes_unset(self):
        mutation = decode_mutation({"op": "unset", "entity": 2, "component": "link"})
        assert isinstance(mutation, UnsetComponent)
        assert mutation.component == "link"

    def test_largest_entity_id_is_accepted(self):
        assert decode_mutation({"op": "create", "entity": 2**64 - 1}).entity == 2**64 - 1

    @pytest.mark.parametrize("entity", [-1, 2**64, "1", 1.5, True, None])
    def test_rejects_bad_entity_ids(self, entity):
        with pytest.raises(ProtocolViolation) as exc_info:
            decode_mutation({"op": "create", "entity": entity})
        assert exc_info.value.kind is ViolationKind.BAD_ENTITY_ID

    def test_rejects_unknown_component(self):
        with pytest.raises(ProtocolViolation) as exc_info:
            decode_mutation({"op": "set", "entity": 1, "component": "colour", "value": {}})
        assert exc_info.value.kind is ViolationKind.UNKNOWN_COMPONENT
        assert exc_info.value.entity == 1

    @pytest.mark.parametrize("component", ["position", "size"])
    def test_rejects_derived_components(self, component):
        with pytest.raises(ProtocolViolation) as exc_info:
            decode_mutation(
                {"op": "set", "entity": 1, "component": component, "value": {"x": 1}}
            )
        assert exc_info.value.kind is ViolationKind.DERIVED_COMPONENT

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            b"\xff\xfe",
            [],
            {"op": "explode", "entity": 1},
            {"entity": 1},
            {"op": "set", "entity": 1, "component": "port", "value": {"owner": 1}},
            {"op": "set", "entity": 1, "component": "link", "value": {"peer": "x"}},
            {"op": "create", "entity": 1, "extra": True},
        ],
    )
    def test_rejects_malformed_payloads(self, payload):
        with pytest.raises(ProtocolViolation) as exc_info:
            decode_mutation(payload)
        assert exc_info.value.kind is ViolationKind.MALFORMED

    def test_passes_decoded_mutations_through(self):
        mutation = CreateEntity(entity=1)
        assert decode_mutation(mutation) is mutation


class TestEncoding:
    """Tests for producer-side encoding helpers."""

    def test_set_component_of_instance(self):
        mutation = SetComponent.of(2, Port(direction=PortDirection.OUTPUT, owner=1), seq=3)
        assert encode_mutation(mutation) == {
            "op": "set",
            "entity": 2,
            "component": "port",
            "value": {"direction": "output", "owner": 1, "name": ""},
            "seq": 3,
        }

    def test_encoded_mutation_decodes_to_equal_value(self):
        mutation = SetComponent.of(5, Properties(values={"a": "b"}))
        decoded = decode_mutation(encode_mutation(mutation))
        assert decoded.parsed == Properties(values={"a": "b"})

    def test_set_component_validates_value_on_construction(self):
        with pytest.raises(ValueError):
            SetComponent(entity=1, component="link", value={})

    def test_unvalidated_set_component_parses_on_use(self):
        mutation = SetComponent.model_construct(entity=1, component="node", value={"name": "a"})
        assert mutation.parsed == Node(name="a")

    def test_derived_component_can_be_built_but_not_decoded(self):
        mutation = SetComponent.of(1, Position(x=1, y=2))
        with pytest.raises(ProtocolViolation):
            decode_mutation(encode_mutation(mutation))


class TestEnvelopes:
    """Tests for transport envelopes."""

    def test_decodes_control_envelopes(self):
        assert isinstance(decode_envelope('{"type": "sync_begin"}'), SyncBegin)
        assert isinstance(decode_envelope({"type": "ping"}), Ping)

    def test_mutation_payload_is_left_raw(self):
        envelope = decode_envelope(
            {"type": "mutation", "mutation": {"op": "set", "entity": 1, "component": "bogus"}}
        )
        assert isinstance(envelope, MutationEnvelope)
        assert envelope.mutation["component"] == "bogus"

    def test_batch_envelope_encodes_all_mutations(self):
        envelope = batch_envelope([CreateEntity(entity=1), DestroyEntity(entity=2, seq=4)])
        decoded = decode_envelope(encode_envelope(envelope))
        assert isinstance(decoded, Batch)
        assert decoded.mutations == [
            {"op": "create", "entity": 1},
            {"op": "destroy", "entity": 2, "seq": 4},
        ]

    @pytest.mark.parametrize("payload", ['{"type": "nope"}', "{", '{"type": "mutation"}'])
    def test_rejects_invalid_envelopes(self, payload):
        with pytest.raises(ProtocolViolation) as exc_info:
            decode_envelope(payload)
        assert exc_info.value.kind is ViolationKind.MALFORMED
