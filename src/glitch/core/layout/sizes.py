"""Node size hints.

The rendering boundary knows how large a node will be drawn and can push
exact sizes; until it does, sizes are estimated from the label length and
the number of ports on each side.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable

from ..components import PortDirection
from ..graph_model import GraphSnapshot
from .geometry import Vec2

DEFAULT_CHAR_WIDTH = 7.0
DEFAULT_PORT_PITCH = 18.0
DEFAULT_MIN_SIZE = Vec2(80.0, 40.0)
DEFAULT_PADDING = Vec2(24.0, 24.0)


class SizeHints:
    def __init__(
        self,
        char_width: float = DEFAULT_CHAR_WIDTH,
        port_pitch: float = DEFAULT_PORT_PITCH,
        min_size: Vec2 = DEFAULT_MIN_SIZE,
        padding: Vec2 = DEFAULT_PADDING,
    ):
        self.char_width = char_width
        self.port_pitch = port_pitch
        self.min_size = min_size
        self.padding = padding
        self._explicit: dict[int, Vec2] = {}
        self._lock = threading.Lock()
        self.version = 0

    def set(self, entity: int, size: Vec2) -> None:
        self.update({entity: size})

    def update(self, sizes: dict[int, Vec2]) -> None:
        with self._lock:
            self._explicit.update(sizes)
            self.version += 1

    def clear(self, entity: int | None = None) -> None:
        with self._lock:
            if entity is None:
                self._explicit.clear()
            else:
                self._explicit.pop(entity, None)
            self.version += 1

    def explicit(self, entity: int) -> Vec2 | None:
        with self._lock:
            return self._explicit.get(entity)

    def estimate(self, name: str, inputs: int = 0, outputs: int = 0) -> Vec2:
        width = len(name) * self.char_width + self.padding.x
        height = max(inputs, outputs) * self.port_pitch + self.padding.y
        return Vec2(width, height).max(self.min_size)

    def resolver(self, snapshot: GraphSnapshot) -> Callable[[int], Vec2]:
        """Return a size lookup for the nodes of ``snapshot``."""
        counts: Counter[tuple[int, PortDirection]] = Counter(
            (port.owner, port.direction) for port in snapshot.ports if not port.orphaned
        )
        names = {node.id: node.name or node.kind for node in snapshot.nodes}
        with self._lock:
            explicit = dict(self._explicit)

        def size_of(entity: int) -> Vec2:
            size = explicit.get(entity)
            if size is not None:
                return size
            return self.estimate(
                names.get(entity, ""),
                counts[(entity, PortDirection.INPUT)],
                counts[(entity, PortDirection.OUTPUT)],
            )

        return size_of
