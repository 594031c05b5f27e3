"""Dependency resolution between declared resources.

The ordering relations between kinds are a static, process-wide table built
at import time and never mutated afterwards, so workers read it without any
synchronization. The resolver itself is a pure read over the store: it never
writes status and never contacts the platform API.

Edges come in two scopes:

* ``kind`` edges gate a dependent on every upstream instance of a kind
  (optionally filtered by a spec attribute), e.g. hosts wait for the
  management network.
* ``instance`` edges gate a dependent on the upstream instances its spec
  names, e.g. an interface waits for the host it belongs to.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from platform_operator.errors import ConfigurationError
from platform_operator.schemas import DesiredResource, ResourceKey
from platform_operator.state import DeploymentState, EdgeScope, Kind, Relation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """``to_kind`` depends on ``from_kind``."""

    from_kind: Kind
    to_kind: Kind
    relation: Relation
    scope: EdgeScope = EdgeScope.KIND
    # Spec field of the dependent naming upstream instances (str or list of str)
    ref_field: str | None = None
    # Kind-scoped edges: only upstream instances whose spec matches these pairs
    selector: tuple[tuple[str, Any], ...] = ()
    # Instance-scoped edges within one kind: referenced instance must share this spec field
    same_parent: str | None = None
    # Soft edges order on a best-effort basis and never block
    soft: bool = False

    def describe(self) -> str:
        label = f"{self.to_kind.value} {self.relation.value} {self.from_kind.value}"
        if self.ref_field:
            label += f" via spec.{self.ref_field}"
        if self.selector:
            label += " where " + ", ".join(f"{k}={v}" for k, v in self.selector)
        return label + (" (soft)" if self.soft else "")


DEPENDENCY_TABLE: tuple[DependencyEdge, ...] = (
    DependencyEdge(Kind.SYSTEM, Kind.ADDRESS_POOL, Relation.REQUIRES),
    DependencyEdge(
        Kind.ADDRESS_POOL, Kind.PLATFORM_NETWORK, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="pool",
    ),
    DependencyEdge(
        Kind.PLATFORM_NETWORK, Kind.PLATFORM_NETWORK, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="vlan_parent",
    ),
    DependencyEdge(Kind.SYSTEM, Kind.DATA_NETWORK, Relation.REQUIRES),
    DependencyEdge(Kind.SYSTEM, Kind.HOST, Relation.REQUIRES),
    DependencyEdge(
        Kind.PLATFORM_NETWORK, Kind.HOST, Relation.REQUIRES,
        selector=(("type", "mgmt"),),
    ),
    DependencyEdge(
        Kind.HOST, Kind.HOST_INTERFACE, Relation.ATTACHED_TO,
        scope=EdgeScope.INSTANCE, ref_field="host",
    ),
    DependencyEdge(
        Kind.PLATFORM_NETWORK, Kind.HOST_INTERFACE, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="platform_networks",
    ),
    DependencyEdge(
        Kind.DATA_NETWORK, Kind.HOST_INTERFACE, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="data_networks",
    ),
    DependencyEdge(
        Kind.HOST_INTERFACE, Kind.HOST_INTERFACE, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="uses", same_parent="host",
    ),
    DependencyEdge(
        Kind.HOST, Kind.STORAGE_BACKEND, Relation.REQUIRES,
        selector=(("personality", "controller"),),
    ),
    DependencyEdge(Kind.SYSTEM, Kind.CERTIFICATE, Relation.REQUIRES, soft=True),
    DependencyEdge(Kind.SYSTEM, Kind.PTP_INSTANCE, Relation.REQUIRES),
    DependencyEdge(
        Kind.PTP_INSTANCE, Kind.PTP_INTERFACE, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="instance",
    ),
    DependencyEdge(
        Kind.HOST_INTERFACE, Kind.PTP_INTERFACE, Relation.REFERENCES,
        scope=EdgeScope.INSTANCE, ref_field="interfaces", soft=True,
    ),
)


def kind_order(table: Iterable[DependencyEdge] = DEPENDENCY_TABLE) -> tuple[Kind, ...]:
    """Topological order of kinds, upstream first.

    Self-referencing edges (instances of one kind referencing each other) are
    ignored here; they are checked per instance by the resolver.

    Raises:
        ConfigurationError: if the kind-level table itself has a cycle
    """
    upstream: dict[Kind, set[Kind]] = {kind: set() for kind in Kind}
    for edge in table:
        if edge.from_kind != edge.to_kind:
            upstream[edge.to_kind].add(edge.from_kind)

    order: list[Kind] = []
    remaining = dict(upstream)
    while remaining:
        ready = sorted(
            (k for k, deps in remaining.items() if deps.issubset(order)),
            key=lambda k: list(Kind).index(k),
        )
        if not ready:
            raise ConfigurationError(
                f"Dependency table has a cycle among {sorted(k.value for k in remaining)}",
                reason="DependencyCycle",
            )
        for kind in ready:
            order.append(kind)
            del remaining[kind]
    return tuple(order)


# Validated once at import; a broken table must stop the process
KIND_ORDER: tuple[Kind, ...] = kind_order()

_EDGES_BY_KIND: dict[Kind, tuple[DependencyEdge, ...]] = {
    kind: tuple(e for e in DEPENDENCY_TABLE if e.to_kind == kind) for kind in Kind
}


def _ref_names(spec: dict, field: str) -> list[str]:
    value = spec.get(field)
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise ConfigurationError(
        f"spec.{field} must be a name or a list of names, got {type(value).__name__}",
        reason="InvalidReference",
    )


class DependencyResolver:
    """Answers "may this resource reconcile now?" and "what blocks it?"."""

    def __init__(self, store, table: tuple[DependencyEdge, ...] | None = None):
        self.store = store
        if table is None:
            self._edges = _EDGES_BY_KIND
        else:
            kind_order(table)
            self._edges = {k: tuple(e for e in table if e.to_kind == k) for k in Kind}

    def edges_for(self, kind: Kind) -> tuple[DependencyEdge, ...]:
        return self._edges.get(kind, ())

    def resolve(
        self, resource: DesiredResource, edge: DependencyEdge
    ) -> list[tuple[ResourceKey, DesiredResource | None]]:
        """Concrete upstream instances of ``resource`` along ``edge``."""
        if edge.scope == EdgeScope.KIND:
            upstreams = [
                r for r in self.store.list(edge.from_kind, namespace=resource.namespace)
                if all(r.spec.get(k) == v for k, v in edge.selector)
            ]
            return [(r.key, r) for r in upstreams]

        resolved = []
        for name in _ref_names(resource.spec, edge.ref_field):
            key = ResourceKey(edge.from_kind, resource.namespace, name)
            upstream = self.store.get(key)
            if (
                upstream is not None
                and edge.same_parent
                and upstream.spec.get(edge.same_parent) != resource.spec.get(edge.same_parent)
            ):
                raise ConfigurationError(
                    f"{resource.key} references {key} which belongs to "
                    f"{edge.same_parent} {upstream.spec.get(edge.same_parent)!r}, not "
                    f"{resource.spec.get(edge.same_parent)!r}",
                    reason="InvalidReference",
                )
            resolved.append((key, upstream))
        return resolved

    def check_cycles(self, resource: DesiredResource) -> None:
        """Fail fast if ``resource`` takes part in an instance reference cycle.

        Walks hard instance-scoped edges depth first. Every key is expanded at
        most once, so the walk terminates even when the cycle does not pass
        through ``resource``.

        Raises:
            ConfigurationError: naming the keys on the cycle
        """
        start = resource.key
        expanded: set[ResourceKey] = set()
        stack: list[tuple[DesiredResource, list[ResourceKey]]] = [(resource, [start])]

        while stack:
            current, path = stack.pop()
            if current.key in expanded:
                continue
            expanded.add(current.key)
            for edge in self.edges_for(current.kind):
                if edge.soft or edge.scope != EdgeScope.INSTANCE:
                    continue
                for name in _ref_names(current.spec, edge.ref_field):
                    key = ResourceKey(edge.from_kind, current.namespace, name)
                    if key == start:
                        cycle = " -> ".join(str(k) for k in path + [start])
                        raise ConfigurationError(
                            f"Dependency cycle: {cycle}", reason="DependencyCycle"
                        )
                    if key in expanded:
                        continue
                    upstream = self.store.get(key)
                    if upstream is not None:
                        stack.append((upstream, path + [key]))

    def eligible(self, kind: Kind, identity: ResourceKey | tuple[str, str]) -> tuple[bool, list[str]]:
        """Return (eligible, blocking) for a resource key.

        Eligible iff every hard upstream instance is Ready. Missing upstream
        instances and kind-wide edges with no matching instance both block.

        Raises:
            ConfigurationError: on a reference cycle or malformed reference
        """
        key = identity if isinstance(identity, ResourceKey) else ResourceKey(kind, *identity)
        resource = self.store.get(key)
        if resource is None:
            return False, [f"{key} (not declared)"]
        return self.eligible_resource(resource)

    def eligible_resource(self, resource: DesiredResource) -> tuple[bool, list[str]]:
        self.check_cycles(resource)

        blocking: list[str] = []
        for edge in self.edges_for(resource.kind):
            if edge.soft:
                continue
            upstreams = self.resolve(resource, edge)
            if edge.scope == EdgeScope.KIND and not upstreams:
                blocking.append(f"{edge.from_kind.value} (none declared)")
                continue
            for key, upstream in upstreams:
                if upstream is None:
                    blocking.append(f"{key} (not declared)")
                elif upstream.deletion_requested:
                    blocking.append(f"{key} (deleting)")
                elif upstream.status.deployment_state != DeploymentState.READY:
                    blocking.append(str(key))

        if blocking:
            logger.debug(f"{resource.key} blocked by {blocking}")
        return not blocking, blocking

    def ready_upstreams(self, resource: DesiredResource) -> list[str]:
        """Identities of Ready upstream instances, soft edges included."""
        ready = set()
        for edge in self.edges_for(resource.kind):
            for key, upstream in self.resolve(resource, edge):
                if upstream is not None and upstream.status.deployment_state == DeploymentState.READY:
                    ready.add(str(key))
        return sorted(ready)

    def dependents_of(self, key: ResourceKey, *, include_soft: bool = True) -> list[ResourceKey]:
        """Declared resources that have ``key`` as an upstream.

        Used to fan out requeues when ``key`` becomes Ready and to hold back
        teardown while hard dependents are still declared.
        """
        upstream = self.store.get(key)
        dependents = []
        for kind, edges in self._edges.items():
            relevant = [
                e for e in edges if e.from_kind == key.kind and (include_soft or not e.soft)
            ]
            if not relevant:
                continue
            for candidate in self.store.list(kind, namespace=key.namespace):
                if candidate.key == key:
                    continue
                for edge in relevant:
                    if edge.scope == EdgeScope.KIND:
                        hit = upstream is None or all(
                            upstream.spec.get(k) == v for k, v in edge.selector
                        )
                    else:
                        try:
                            hit = key.name in _ref_names(candidate.spec, edge.ref_field)
                        except ConfigurationError:
                            hit = False
                    if hit:
                        dependents.append(candidate.key)
                        break
        return dependents
