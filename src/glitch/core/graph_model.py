"""Graph model: interprets store contents as a pipeline graph.

Adds the policies that plain component writes cannot express on their
own (parentage cycle rejection, bin destruction re-parenting, resync
reconciliation) and derives an immutable ``GraphSnapshot`` for layout and
rendering.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .components import (
    Bin,
    Link,
    LinkState,
    Node,
    NodeState,
    Parent,
    Port,
    PortDirection,
    Properties,
    State,
)
from .errors import ProtocolViolation, ViolationKind
from .mutations import DestroyEntity, SetComponent, UnsetComponent
from .store import ApplyResult, EntityStore

logger = logging.getLogger(__name__)

PendingReason = Literal["missing_port", "orphan_port", "direction_mismatch"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class NodeInfo(_Frozen):
    id: int
    name: str = ""
    kind: str = ""
    order: int = Field(..., description="Creation order of the entity")
    parent: int | None = Field(
        default=None, description="Effective parent bin, None for top-level nodes"
    )
    is_bin: bool = False
    state: NodeState | None = None
    properties: dict[str, str] = Field(default_factory=dict)


class PortInfo(_Frozen):
    id: int
    owner: int
    direction: PortDirection
    name: str = ""
    orphaned: bool = False


class EdgeInfo(_Frozen):
    output_port: int
    input_port: int
    source: int = Field(..., description="Node owning the output port")
    target: int = Field(..., description="Node owning the input port")
    state: LinkState = LinkState.DONE


class PendingEdgeInfo(_Frozen):
    port: int
    peer: int
    reason: PendingReason


class BinInfo(_Frozen):
    id: int
    parent: int | None = None
    children: tuple[int, ...] = ()


class GraphSnapshot(_Frozen):
    """Immutable view of the graph at one store revision."""

    revision: int = 0
    topology_version: int = 0
    nodes: tuple[NodeInfo, ...] = ()
    ports: tuple[PortInfo, ...] = ()
    edges: tuple[EdgeInfo, ...] = ()
    pending_edges: tuple[PendingEdgeInfo, ...] = ()
    bins: tuple[BinInfo, ...] = ()
    roots: tuple[int, ...] = ()

    def node(self, entity: int) -> NodeInfo | None:
        for node in self.nodes:
            if node.id == entity:
                return node
        return None

    def node_ids(self) -> list[int]:
        return [node.id for node in self.nodes]

    def edge_pairs(self) -> list[tuple[int, int]]:
        return [(edge.source, edge.target) for edge in self.edges]


class GraphModel:
    """Routes mutations into the store and derives graph snapshots."""

    def __init__(self, store: EntityStore | None = None):
        self.store = store if store is not None else EntityStore()
        self.topology_version = 0
        self._snapshot: GraphSnapshot | None = None
        self._deferred_parents: dict[int, SetComponent] = {}

    def apply(self, message: Any) -> ApplyResult:
        mutation = self.store.decode(message)
        if mutation is None:
            return ApplyResult(False, reason="violation")

        if mutation.entity in self._deferred_parents and (
            isinstance(mutation, DestroyEntity)
            or getattr(mutation, "component", None) == Parent.tag
        ):
            self._deferred_parents.pop(mutation.entity)

        if isinstance(mutation, SetComponent) and isinstance(mutation.parsed, Parent):
            if self._creates_cycle(mutation.entity, mutation.parsed.parent):
                if self.store.syncing and not self._creates_cycle(
                    mutation.entity, mutation.parsed.parent, announced_only=True
                ):
                    # Only parentage the producer has not re-announced closes
                    # the loop; re-check once the sync has dropped it.
                    self._deferred_parents[mutation.entity] = mutation
                    self.store.touch(mutation.entity, Parent.tag)
                    logger.debug(
                        f"Deferring parent {mutation.parsed.parent} of entity "
                        f"{mutation.entity} until the sync ends"
                    )
                    return ApplyResult(False, reason="deferred")
                self.store.report_violation(
                    ProtocolViolation(
                        ViolationKind.PARENT_CYCLE,
                        f"setting parent {mutation.parsed.parent} on entity "
                        f"{mutation.entity} would create a parentage cycle",
                        entity=mutation.entity,
                    )
                )
                return ApplyResult(False, reason="violation")

        children: list[int] = []
        grandparent: int | None = None
        if isinstance(mutation, DestroyEntity) and self.store.contains(mutation.entity):
            children = self.children_of(mutation.entity)
            parent = self.store.get(mutation.entity, Parent)
            grandparent = parent.parent if parent is not None else None

        result = self.store.apply(mutation)

        if result.applied and children:
            for child in children:
                if grandparent is not None:
                    self.store.apply(SetComponent.of(child, Parent(parent=grandparent)))
                else:
                    self.store.apply(UnsetComponent(entity=child, component=Parent.tag))
            logger.debug(
                f"Re-parented {len(children)} children of destroyed entity "
                f"{mutation.entity} to {grandparent}"
            )
            result = ApplyResult(True, topology_changed=True, reason=result.reason)

        if result.topology_changed:
            self.topology_version += 1
        return result

    def _creates_cycle(self, child: int, proposed: int, announced_only: bool = False) -> bool:
        seen: set[int] = set()
        current: int | None = proposed
        while current is not None and current not in seen:
            if current == child:
                return True
            seen.add(current)
            if announced_only and not self.store.announced(current, Parent.tag):
                break
            parent = self.store.get(current, Parent)
            current = parent.parent if parent is not None else None
        return False

    def children_of(self, entity: int) -> list[int]:
        """Entities whose raw ``parent`` reference points at ``entity``."""
        return [
            child for child, (parent,) in self.store.query(Parent) if parent.parent == entity
        ]

    def reset(self) -> ApplyResult:
        self._deferred_parents.clear()
        result = self.store.reset()
        if result.topology_changed:
            self.topology_version += 1
        return result

    # Reconnect reconciliation

    def begin_resync(self) -> None:
        logger.info("Producer resync started")
        self._deferred_parents.clear()
        self.store.begin_sync()

    def end_resync(self) -> bool:
        """Remove whatever the producer did not re-announce.

        Stale entities are destroyed and stale components on re-announced
        entities are unset, through ``apply`` so bins re-parent and topology
        is tracked. Parent writes deferred during the sync are applied last.
        Returns True if topology changed.
        """
        diff = self.store.end_sync()
        deferred = list(self._deferred_parents.values())
        self._deferred_parents.clear()

        changed = False
        for entity in sorted(diff.entities, key=self.store.creation_order):
            if self.store.contains(entity):
                changed = self.apply(DestroyEntity(entity=entity)).topology_changed or changed
        for entity, tag in diff.components:
            if self.store.contains(entity):
                result = self.apply(UnsetComponent(entity=entity, component=tag))
                changed = result.topology_changed or changed
        for mutation in deferred:
            changed = self.apply(mutation).topology_changed or changed

        logger.info(
            f"Producer resync finished, removed {len(diff.entities)} stale entities "
            f"and {len(diff.components)} stale components"
        )
        return changed

    def abort_resync(self) -> None:
        if self._deferred_parents:
            logger.warning(
                f"Dropping {len(self._deferred_parents)} deferred parent updates "
                "from an aborted resync"
            )
        self._deferred_parents.clear()
        self.store.abort_sync()

    # Snapshots

    def snapshot(self) -> GraphSnapshot:
        cached = self._snapshot
        if (
            cached is not None
            and cached.revision == self.store.revision
            and cached.topology_version == self.topology_version
        ):
            return cached
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def _build_snapshot(self) -> GraphSnapshot:
        store = self.store
        node_ids = {entity for entity, _ in store.query(Node)}
        bins = {entity for entity, _ in store.query(Bin) if entity in node_ids}

        def effective_parent(entity: int) -> int | None:
            parent = store.get(entity, Parent)
            if parent is None or parent.parent == entity:
                return None
            return parent.parent if parent.parent in bins else None

        nodes = []
        for entity, (node,) in store.query(Node):
            state = store.get(entity, State)
            properties = store.get(entity, Properties)
            nodes.append(
                NodeInfo(
                    id=entity,
                    name=node.name,
                    kind=node.kind,
                    order=store.creation_order(entity),
                    parent=effective_parent(entity),
                    is_bin=entity in bins,
                    state=state.state if state is not None else None,
                    properties=properties.values if properties is not None else {},
                )
            )

        ports: dict[int, PortInfo] = {}
        for entity, (port,) in store.query(Port):
            ports[entity] = PortInfo(
                id=entity,
                owner=port.owner,
                direction=port.direction,
                name=port.name,
                orphaned=port.owner not in node_ids,
            )

        edges: dict[tuple[int, int], EdgeInfo] = {}
        pending: dict[tuple[int, int], PendingEdgeInfo] = {}
        for entity, (link,) in store.query(Link):
            near = ports.get(entity)
            far = ports.get(link.peer)
            reason: PendingReason | None = None
            if near is None or far is None:
                reason = "missing_port"
            elif near.orphaned or far.orphaned:
                reason = "orphan_port"
            elif near.direction == far.direction:
                reason = "direction_mismatch"
            if reason is not None:
                pending[(entity, link.peer)] = PendingEdgeInfo(
                    port=entity, peer=link.peer, reason=reason
                )
                continue
            out, inp = (near, far) if near.direction is PortDirection.OUTPUT else (far, near)
            if (out.id, inp.id) in edges:
                continue
            edges[(out.id, inp.id)] = EdgeInfo(
                output_port=out.id,
                input_port=inp.id,
                source=out.owner,
                target=inp.owner,
                state=link.state,
            )

        bin_infos = [
            BinInfo(
                id=node.id,
                parent=node.parent,
                children=tuple(n.id for n in nodes if n.parent == node.id),
            )
            for node in nodes
            if node.is_bin
        ]

        return GraphSnapshot(
            revision=store.revision,
            topology_version=self.topology_version,
            nodes=tuple(nodes),
            ports=tuple(ports.values()),
            edges=tuple(edges.values()),
            pending_edges=tuple(pending.values()),
            bins=tuple(bin_infos),
            roots=tuple(n.id for n in nodes if n.parent is None),
        )
