"""Mutation protocol messages and stream envelopes.

A mutation is the atomic unit of change sent from producer to consumer.
Envelopes frame mutations on the transport and bracket full-state syncs:

    {"type": "sync_begin"}
    {"type": "batch", "mutations": [{"op": "create", "entity": 1}, ...]}
    {"type": "sync_end"}
    {"type": "mutation", "mutation": {"op": "set", "entity": 1,
                                      "component": "node",
                                      "value": {"name": "src"}}}
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from .components import COMPONENT_TYPES, Component, EntityId
from .errors import ProtocolViolation, ViolationKind

PROTOCOL_VERSION = 1

_entity_id_adapter = TypeAdapter(EntityId)


class _Mutation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity: EntityId
    seq: int | None = Field(default=None, ge=0)


class CreateEntity(_Mutation):
    op: Literal["create"] = "create"


class DestroyEntity(_Mutation):
    op: Literal["destroy"] = "destroy"


class SetComponent(_Mutation):
    """Attach or replace a component on an entity (implicitly creating it)."""

    op: Literal["set"] = "set"
    component: str
    value: Any = None

    _parsed: Component | None = PrivateAttr(default=None)

    @model_validator(mode="before")
    @classmethod
    def _accept_component_instance(cls, data: Any) -> Any:
        if isinstance(data, dict):
            value = data.get("value")
            if isinstance(value, Component):
                data = {**data, "value": value.to_wire()}
                data.setdefault("component", value.tag)
        return data

    @model_validator(mode="after")
    def _validate_value(self) -> SetComponent:
        if self.component not in COMPONENT_TYPES:
            raise ValueError(f"unknown component tag {self.component!r}")
        self._parsed = self._parse()
        return self

    def _parse(self) -> Component:
        cls = COMPONENT_TYPES[self.component]
        return cls.model_validate({} if self.value is None else self.value)

    @classmethod
    def of(
        cls, entity: int, component: Component, seq: int | None = None
    ) -> SetComponent:
        return cls(entity=entity, component=component.tag, value=component, seq=seq)

    @property
    def parsed(self) -> Component:
        """The typed component value, parsed on first use if validation was skipped."""
        if self._parsed is None:
            self._parsed = self._parse()
        return self._parsed


class UnsetComponent(_Mutation):
    op: Literal["unset"] = "unset"
    component: str


Mutation = Annotated[
    CreateEntity | DestroyEntity | SetComponent | UnsetComponent,
    Field(discriminator="op"),
]
MUTATION_TYPES = (CreateEntity, DestroyEntity, SetComponent, UnsetComponent)

_OPS: dict[str, type[_Mutation]] = {
    "create": CreateEntity,
    "destroy": DestroyEntity,
    "set": SetComponent,
    "unset": UnsetComponent,
}


def _load(payload: Any) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolViolation(
                ViolationKind.MALFORMED, f"payload is not UTF-8: {e}"
            ) from e
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ProtocolViolation(
                ViolationKind.MALFORMED, f"payload is not valid JSON: {e}"
            ) from e
    return payload


def decode_mutation(payload: Any) -> CreateEntity | DestroyEntity | SetComponent | UnsetComponent:
    """Decode one mutation from a dict, JSON text or JSON bytes.

    Raises:
        ProtocolViolation: if the payload cannot be applied. The ``kind``
            distinguishes unknown component tags, bad entity ids, derived
            components and plain malformed messages.
    """
    if isinstance(payload, MUTATION_TYPES):
        return payload
    payload = _load(payload)
    if not isinstance(payload, dict):
        raise ProtocolViolation(
            ViolationKind.MALFORMED,
            f"mutation must be an object, got {type(payload).__name__}",
            payload=payload,
        )

    op = payload.get("op")
    cls = _OPS.get(op) if isinstance(op, str) else None
    if cls is None:
        raise ProtocolViolation(
            ViolationKind.MALFORMED, f"unknown mutation op {op!r}", payload=payload
        )

    try:
        entity = _entity_id_adapter.validate_python(payload.get("entity"))
    except ValidationError as e:
        raise ProtocolViolation(
            ViolationKind.BAD_ENTITY_ID,
            f"invalid entity id {payload.get('entity')!r}",
            payload=payload,
        ) from e

    if cls in (SetComponent, UnsetComponent):
        tag = payload.get("component")
        component_cls = COMPONENT_TYPES.get(tag) if isinstance(tag, str) else None
        if component_cls is None:
            raise ProtocolViolation(
                ViolationKind.UNKNOWN_COMPONENT,
                f"unknown component tag {tag!r}",
                entity=entity,
                payload=payload,
            )
        if component_cls.derived:
            raise ProtocolViolation(
                ViolationKind.DERIVED_COMPONENT,
                f"component {tag!r} is derived and cannot be written by a producer",
                entity=entity,
                payload=payload,
            )

    try:
        return cls.model_validate(payload)
    except ValidationError as e:
        raise ProtocolViolation(
            ViolationKind.MALFORMED,
            f"invalid {op} mutation: {e.errors(include_url=False)}",
            entity=entity,
            payload=payload,
        ) from e


def encode_mutation(mutation: _Mutation) -> dict[str, Any]:
    return mutation.model_dump(mode="json", exclude_none=True)


class Hello(BaseModel):
    type: Literal["hello"] = "hello"
    producer: str = ""
    protocol: int = PROTOCOL_VERSION


class SyncBegin(BaseModel):
    type: Literal["sync_begin"] = "sync_begin"


class SyncEnd(BaseModel):
    type: Literal["sync_end"] = "sync_end"


class MutationEnvelope(BaseModel):
    """A single mutation. The payload is decoded later by the store."""

    type: Literal["mutation"] = "mutation"
    mutation: dict[str, Any]


class Batch(BaseModel):
    type: Literal["batch"] = "batch"
    mutations: list[dict[str, Any]] = Field(default_factory=list)


class Ping(BaseModel):
    type: Literal["ping"] = "ping"


Envelope = Annotated[
    Hello | SyncBegin | SyncEnd | MutationEnvelope | Batch | Ping,
    Field(discriminator="type"),
]

_envelope_adapter: TypeAdapter[Any] = TypeAdapter(Envelope)


def decode_envelope(payload: Any) -> Hello | SyncBegin | SyncEnd | MutationEnvelope | Batch | Ping:
    """Decode a transport frame.

    Raises:
        ProtocolViolation: with kind ``malformed`` for anything that is not a
            known envelope.
    """
    payload = _load(payload)
    try:
        return _envelope_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolViolation(
            ViolationKind.MALFORMED,
            f"invalid envelope: {e.errors(include_url=False)}",
            payload=payload,
        ) from e


def encode_envelope(envelope: BaseModel) -> str:
    return envelope.model_dump_json(exclude_none=True)


def mutation_envelope(mutation: _Mutation) -> MutationEnvelope:
    return MutationEnvelope(mutation=encode_mutation(mutation))


def batch_envelope(mutations: list[_Mutation]) -> Batch:
    return Batch(mutations=[encode_mutation(m) for m in mutations])
