"""Error types raised across the store, protocol, transport and layout layers."""

from enum import Enum
from typing import Any


class GlitchError(Exception):
    """Base class for all Glitch errors."""


class ViolationKind(str, Enum):
    MALFORMED = "malformed"
    UNKNOWN_COMPONENT = "unknown_component"
    BAD_ENTITY_ID = "bad_entity_id"
    DERIVED_COMPONENT = "derived_component"
    PARENT_CYCLE = "parent_cycle"


class ProtocolViolation(GlitchError):
    """A message from the producer that cannot be applied.

    Violations are reported through the store's error channel and never
    stop ingestion.
    """

    def __init__(
        self,
        kind: ViolationKind,
        message: str,
        entity: int | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.entity = entity
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": str(self)}
        if self.entity is not None:
            data["entity"] = self.entity
        return data


class TransportError(GlitchError):
    """Connection level failure between producer and consumer."""


class LayoutAnomaly(GlitchError):
    """A layout invariant did not hold for a computed component."""

    def __init__(self, message: str, nodes: list[Any] | None = None):
        super().__init__(message)
        self.nodes = list(nodes or [])
