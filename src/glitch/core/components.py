"""Component types that can be attached to entities.

Every component type has a wire tag (``Node.tag == "node"``) used by the
mutation protocol. Components are immutable pydantic models; replacing a
component means setting a new value.

Topology-affecting components expose a *topology key*. A mutation changes
topology when the key before and after differs, so renaming a node or
flipping a link's state never triggers a relayout while re-pointing a link
does.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, model_validator

ENTITY_ID_MAX = 2**64 - 1

EntityId = Annotated[StrictInt, Field(ge=0, le=ENTITY_ID_MAX)]


class NodeState(str, Enum):
    NULL = "null"
    READY = "ready"
    PAUSED = "paused"
    PLAYING = "playing"


class LinkState(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class PortDirection(str, Enum):
    INPUT = "input"
    OUTPUT = "output"

    @property
    def opposite(self) -> PortDirection:
        return PortDirection.OUTPUT if self is PortDirection.INPUT else PortDirection.INPUT


_DIRECTION_ALIASES = {"in": "input", "sink": "input", "out": "output", "src": "output"}


class Component(BaseModel):
    """Base class for all components."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: ClassVar[str]
    topology: ClassVar[bool] = False
    derived: ClassVar[bool] = False

    def topology_key(self) -> Any:
        """Return the part of this value that affects graph topology.

        ``None`` means the component never affects topology.
        """
        return True if self.topology else None

    def to_wire(self) -> Any:
        return self.model_dump(mode="json")


COMPONENT_TYPES: dict[str, type[Component]] = {}


def register_component(cls: type[Component]) -> type[Component]:
    if cls.tag in COMPONENT_TYPES:
        raise ValueError(f"Component tag already registered: {cls.tag}")
    COMPONENT_TYPES[cls.tag] = cls
    return cls


def component_type(tag: str) -> type[Component]:
    """Look up a component type by wire tag, raising KeyError if unknown."""
    return COMPONENT_TYPES[tag]


def topology_key(component: Component | None) -> Any:
    if component is None:
        return None
    return component.topology_key()


@register_component
class Node(Component):
    """Marks an entity as a node of the pipeline graph."""

    tag: ClassVar[str] = "node"
    topology: ClassVar[bool] = True

    name: str = ""
    kind: str = Field(default="", description="Factory or type name of the element")


@register_component
class Bin(Component):
    """Marks a node as a container of other nodes."""

    tag: ClassVar[str] = "bin"
    topology: ClassVar[bool] = True


@register_component
class Port(Component):
    tag: ClassVar[str] = "port"
    topology: ClassVar[bool] = True

    direction: PortDirection = Field(
        ..., validation_alias=AliasChoices("direction", "dir")
    )
    owner: EntityId
    name: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalise_direction(cls, data: Any) -> Any:
        if isinstance(data, dict):
            key = "direction" if "direction" in data else "dir"
            value = data.get(key)
            if isinstance(value, str) and value in _DIRECTION_ALIASES:
                data = {**data, key: _DIRECTION_ALIASES[value]}
        return data

    def topology_key(self) -> Any:
        return (self.direction, self.owner)


@register_component
class Link(Component):
    """Declares a connection from the carrying port to ``peer``."""

    tag: ClassVar[str] = "link"
    topology: ClassVar[bool] = True

    peer: EntityId
    state: LinkState = LinkState.DONE

    def topology_key(self) -> Any:
        return self.peer


@register_component
class Parent(Component):
    tag: ClassVar[str] = "parent"
    topology: ClassVar[bool] = True

    parent: EntityId

    def topology_key(self) -> Any:
        return self.parent


@register_component
class State(Component):
    """Runtime state of a node. Accepts a bare string on the wire."""

    tag: ClassVar[str] = "state"

    state: NodeState

    @model_validator(mode="before")
    @classmethod
    def _from_bare_value(cls, data: Any) -> Any:
        if isinstance(data, (str, NodeState)):
            return {"state": data}
        return data


@register_component
class Properties(Component):
    """Free-form string properties. Accepts a bare mapping on the wire."""

    tag: ClassVar[str] = "properties"

    values: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_bare_mapping(cls, data: Any) -> Any:
        if isinstance(data, dict) and not (
            set(data) == {"values"} and isinstance(data["values"], dict)
        ):
            return {"values": data}
        return data


@register_component
class Position(Component):
    """Top-left corner of a laid out node. Written by the layout engine only."""

    tag: ClassVar[str] = "position"
    derived: ClassVar[bool] = True

    x: float = 0.0
    y: float = 0.0


@register_component
class Size(Component):
    tag: ClassVar[str] = "size"
    derived: ClassVar[bool] = True

    width: float = 0.0
    height: float = 0.0
