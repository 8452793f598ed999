"""Entity-component store.

The store is the authoritative replica of the producer's state. It only
ever changes through ``apply`` (protocol mutations), ``write_derived``
(layout output) and ``reset``. Protocol problems never raise out of
``apply``: they are logged, counted and handed to ``on_violation``.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .components import Component, topology_key
from .errors import ProtocolViolation, ViolationKind
from .mutations import (
    MUTATION_TYPES,
    CreateEntity,
    DestroyEntity,
    SetComponent,
    UnsetComponent,
    decode_mutation,
)

logger = logging.getLogger(__name__)

MAX_RECENT_VIOLATIONS = 100


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    topology_changed: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class SyncDiff:
    """What a finished sync epoch did not re-announce."""

    entities: frozenset[int] = frozenset()
    components: tuple[tuple[int, str], ...] = ()


class Query:
    """Restartable iteration over entities holding all requested components.

    Yields ``(entity, (component, ...))`` in entity creation order. Every
    iteration starts from the live store contents.
    """

    def __init__(self, store: EntityStore, types: tuple[type[Component], ...]):
        self._store = store
        self._types = types

    def __iter__(self) -> Iterator[tuple[int, tuple[Component, ...]]]:
        entities = self._store._entities
        for entity in list(entities):
            components = entities.get(entity)
            if components is None:
                continue
            try:
                values = tuple(components[t] for t in self._types)
            except KeyError:
                continue
            yield entity, values

    def entities(self) -> list[int]:
        return [entity for entity, _ in self]


class EntityStore:
    def __init__(
        self, on_violation: Callable[[ProtocolViolation], None] | None = None
    ):
        self._entities: dict[int, dict[type[Component], Component]] = {}
        self._created: dict[int, int] = {}
        self._counter = itertools.count()
        self.revision = 0

        self._watermarks: dict[tuple[int, str], int] = {}
        self._entity_seq: dict[int, int] = {}
        self._tombstones: dict[int, int] = {}
        self._sync_touched: set[int] | None = None
        self._sync_components: set[tuple[int, str]] = set()

        self.on_violation = on_violation
        self.violation_count = 0
        self.stale_count = 0
        self.recent_violations: deque[dict[str, Any]] = deque(
            maxlen=MAX_RECENT_VIOLATIONS
        )

    # Reads

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity: object) -> bool:
        return entity in self._entities

    def contains(self, entity: int) -> bool:
        return entity in self._entities

    def entities(self) -> list[int]:
        """Live entities in creation order."""
        return list(self._entities)

    def creation_order(self, entity: int) -> int:
        return self._created[entity]

    def get(self, entity: int, component_type: type[Component]) -> Component | None:
        components = self._entities.get(entity)
        if components is None:
            return None
        return components.get(component_type)

    def has(self, entity: int, component_type: type[Component]) -> bool:
        components = self._entities.get(entity)
        return components is not None and component_type in components

    def components(self, entity: int) -> dict[type[Component], Component]:
        return dict(self._entities.get(entity, {}))

    def query(self, *component_types: type[Component]) -> Query:
        if not component_types:
            raise ValueError("query() needs at least one component type")
        return Query(self, component_types)

    @property
    def syncing(self) -> bool:
        return self._sync_touched is not None

    # Protocol writes

    def decode(self, message: Any):
        """Decode a raw message, reporting violations. Returns None on failure."""
        if isinstance(message, MUTATION_TYPES):
            return message
        try:
            return decode_mutation(message)
        except ProtocolViolation as e:
            self.report_violation(e)
            return None

    def apply(self, message: Any) -> ApplyResult:
        """Apply one mutation.

        Accepts a decoded mutation or a raw dict, JSON string or JSON bytes.
        Never raises for protocol problems.
        """
        mutation = self.decode(message)
        if mutation is None:
            return ApplyResult(False, reason="violation")

        if isinstance(mutation, SetComponent) and mutation.parsed.derived:
            self.report_violation(
                ProtocolViolation(
                    ViolationKind.DERIVED_COMPONENT,
                    f"component {mutation.component!r} is derived and cannot be "
                    "written by a producer",
                    entity=mutation.entity,
                )
            )
            return ApplyResult(False, reason="violation")

        if self._is_stale(mutation):
            self.stale_count += 1
            logger.debug(
                f"Dropping stale {mutation.op} for entity {mutation.entity} "
                f"(seq {mutation.seq})"
            )
            return ApplyResult(False, reason="stale")

        if self._sync_touched is not None:
            self._sync_touched.add(mutation.entity)
            if isinstance(mutation, (SetComponent, UnsetComponent)):
                self._sync_components.add((mutation.entity, mutation.component))

        if isinstance(mutation, CreateEntity):
            result = self._create(mutation.entity)
        elif isinstance(mutation, DestroyEntity):
            result = self._destroy(mutation.entity)
        elif isinstance(mutation, SetComponent):
            result = self._set(mutation.entity, mutation.parsed)
        else:
            result = self._unset(mutation.entity, mutation.component)

        self._record_seq(mutation)
        return result

    def _is_stale(self, mutation) -> bool:
        seq = mutation.seq
        if seq is None:
            return False
        entity = mutation.entity
        tombstone = self._tombstones.get(entity)
        if tombstone is not None and seq <= tombstone:
            return True
        if isinstance(mutation, DestroyEntity):
            latest = self._entity_seq.get(entity)
            return latest is not None and seq <= latest
        if isinstance(mutation, (SetComponent, UnsetComponent)):
            mark = self._watermarks.get((entity, mutation.component))
            return mark is not None and seq <= mark
        return False

    def _record_seq(self, mutation) -> None:
        seq = mutation.seq
        if seq is None:
            return
        entity = mutation.entity
        if isinstance(mutation, DestroyEntity):
            self._tombstones[entity] = seq
            self._entity_seq.pop(entity, None)
            for key in [k for k in self._watermarks if k[0] == entity]:
                del self._watermarks[key]
            return
        if isinstance(mutation, (SetComponent, UnsetComponent)):
            self._watermarks[(entity, mutation.component)] = seq
        self._entity_seq[entity] = max(seq, self._entity_seq.get(entity, seq))

    def _ensure(self, entity: int) -> dict[type[Component], Component]:
        components = self._entities.get(entity)
        if components is None:
            components = self._entities[entity] = {}
            self._created[entity] = next(self._counter)
            self.revision += 1
        return components

    def _create(self, entity: int) -> ApplyResult:
        if entity in self._entities:
            return ApplyResult(True, reason="exists")
        self._ensure(entity)
        return ApplyResult(True)

    def _destroy(self, entity: int) -> ApplyResult:
        components = self._entities.pop(entity, None)
        if components is None:
            return ApplyResult(False, reason="unknown_entity")
        del self._created[entity]
        self.revision += 1
        topology = any(topology_key(c) is not None for c in components.values())
        return ApplyResult(True, topology_changed=topology)

    def _set(self, entity: int, component: Component) -> ApplyResult:
        components = self._ensure(entity)
        old = components.get(type(component))
        if old == component:
            return ApplyResult(True, reason="unchanged")
        components[type(component)] = component
        self.revision += 1
        return ApplyResult(
            True, topology_changed=topology_key(old) != topology_key(component)
        )

    def _unset(self, entity: int, tag: str) -> ApplyResult:
        components = self._entities.get(entity)
        if components is None:
            return ApplyResult(False, reason="unknown_entity")
        for component_type in components:
            if component_type.tag == tag:
                old = components.pop(component_type)
                self.revision += 1
                return ApplyResult(True, topology_changed=topology_key(old) is not None)
        return ApplyResult(False, reason="absent")

    def report_violation(self, violation: ProtocolViolation) -> None:
        self.violation_count += 1
        self.recent_violations.append(violation.to_dict())
        logger.warning(f"Protocol violation ({violation.kind.value}): {violation}")
        if self.on_violation is not None:
            try:
                self.on_violation(violation)
            except Exception as e:
                logger.error(f"Error in protocol violation callback: {e}")

    # Derived writes (layout engine only)

    def write_derived(self, entity: int, component: Component) -> bool:
        if not component.derived:
            raise TypeError(f"{type(component).__name__} is not a derived component")
        components = self._entities.get(entity)
        if components is None:
            return False
        components[type(component)] = component
        return True

    def clear_derived(self, entity: int) -> None:
        components = self._entities.get(entity)
        if components is None:
            return
        for component_type in [t for t in components if t.derived]:
            del components[component_type]

    # Sync epochs

    def begin_sync(self) -> None:
        """Start tracking which entities the producer re-announces.

        Sequence watermarks are dropped since a reconnected producer
        restarts its counters.
        """
        self._sync_touched = set()
        self._sync_components = set()
        self._watermarks.clear()
        self._entity_seq.clear()
        self._tombstones.clear()

    def touch(self, entity: int, tag: str) -> None:
        """Count ``(entity, tag)`` as re-announced without writing it."""
        if self._sync_touched is not None:
            self._sync_touched.add(entity)
            self._sync_components.add((entity, tag))

    def announced(self, entity: int, tag: str) -> bool:
        """False for a component still waiting to be re-announced in a sync."""
        return self._sync_touched is None or (entity, tag) in self._sync_components

    def end_sync(self) -> SyncDiff:
        """Finish a sync epoch and return what the producer did not touch.

        Untouched entities are reported whole. For touched entities, every
        producer component that was neither set nor unset is reported.
        """
        touched, components = self._sync_touched, self._sync_components
        self._sync_touched = None
        self._sync_components = set()
        if touched is None:
            return SyncDiff()
        stale_components = [
            (entity, component_type.tag)
            for entity in self._entities
            if entity in touched
            for component_type in self._entities[entity]
            if not component_type.derived
            and (entity, component_type.tag) not in components
        ]
        return SyncDiff(
            entities=frozenset(set(self._entities) - touched),
            components=tuple(stale_components),
        )

    def abort_sync(self) -> None:
        self._sync_touched = None
        self._sync_components = set()

    def reset(self) -> ApplyResult:
        """Tear down every entity, watermark and tombstone."""
        topology = any(
            topology_key(c) is not None
            for components in self._entities.values()
            for c in components.values()
        )
        had_entities = bool(self._entities)
        self._entities.clear()
        self._created.clear()
        self._watermarks.clear()
        self._entity_seq.clear()
        self._tombstones.clear()
        self._sync_touched = None
        self._sync_components = set()
        self.revision += 1
        return ApplyResult(had_entities, topology_changed=topology)
