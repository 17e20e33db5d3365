"""
Architecture Graph

Read-only view of a SystemArchitecture for the kernel. Validates the input,
materializes implicit edges for declared dependencies and builds every
lookup index once, up front. The graph may contain cycles.
"""

from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import networkx as nx

from archsim.core.exceptions import ConfigurationError
from archsim.core.models import ComponentDefinition, EdgeDefinition, SystemArchitecture
from archsim.core.taxonomy import ComponentFamily, family_for
from .distributions import DISTRIBUTION_TYPES, validate_distribution

_ENTRY_PREFERENCE = {
    ComponentFamily.SOURCE: 0,
    ComponentFamily.GATEWAY: 1,
    ComponentFamily.LOAD_BALANCER: 2,
}


def _validate_nested_distributions(value: Any, owner: str) -> None:
    if isinstance(value, dict):
        if value.get("type") in DISTRIBUTION_TYPES:
            try:
                validate_distribution(value)
            except ConfigurationError as exc:
                raise ConfigurationError(f"{owner}: {exc}") from exc
            return
        for child in value.values():
            _validate_nested_distributions(child, owner)
    elif isinstance(value, list):
        for child in value:
            _validate_nested_distributions(child, owner)


class ArchitectureGraph:
    """
    Graph of components (nodes) and edges (caller -> callee arcs).

    Example:
        >>> graph = ArchitectureGraph(architecture)
        >>> graph.dependencies_of("api")
        ['cache', 'db']
        >>> graph.dependents_of("db")
        ['api', 'worker']
    """

    def __init__(self, architecture: SystemArchitecture):
        self.logger = logging.getLogger(__name__)
        self.architecture = architecture

        # NetworkX graph for structural queries
        self.graph = nx.DiGraph()

        # Registries
        self.components: Dict[str, ComponentDefinition] = {}
        self.edges: Dict[str, EdgeDefinition] = {}
        self.families: Dict[str, ComponentFamily] = {}

        # Indices, built eagerly
        self._outbound: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        self._inbound: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        self._between: Dict[Tuple[str, str], List[EdgeDefinition]] = defaultdict(list)
        self._dependencies: Dict[str, List[str]] = {}
        self._dependents: Dict[str, List[str]] = {}
        self._by_region: Dict[str, List[str]] = defaultdict(list)

        self._load()

    # =========================================================================
    # Loading & validation
    # =========================================================================

    def _load(self) -> None:
        self.logger.info(f"Loading architecture '{self.architecture.id}' "
                         f"({len(self.architecture.components)} components)")

        for comp in self.architecture.components:
            if comp.id in self.components:
                raise ConfigurationError(f"Duplicate component id '{comp.id}'")
            if comp.replicas < 1:
                raise ConfigurationError(f"Component '{comp.id}' must have at least one replica")
            self.families[comp.id] = family_for(comp.type)
            _validate_nested_distributions(comp.config, f"Component '{comp.id}' config")
            _validate_nested_distributions(comp.fault_hooks, f"Component '{comp.id}' fault hooks")
            self.components[comp.id] = comp
            self.graph.add_node(comp.id, type=comp.type, family=self.families[comp.id].value)
            self._by_region[comp.region].append(comp.id)

        for edge in self.architecture.edges:
            self._add_edge(edge)

        # Declared dependencies without an explicit edge become zero-latency sync edges
        for comp in self.architecture.components:
            for dep in comp.dependencies:
                if dep not in self.components:
                    raise ConfigurationError(
                        f"Component '{comp.id}' depends on unknown component '{dep}'"
                    )
                if not self._between.get((comp.id, dep)):
                    self._add_edge(EdgeDefinition(id=f"{comp.id}->{dep}", source=comp.id, target=dep))

        for comp_id in self.components:
            deps: List[str] = []
            for edge in self._outbound.get(comp_id, []):
                if edge.target not in deps:
                    deps.append(edge.target)
            self._dependencies[comp_id] = deps
            self._dependents[comp_id] = []
        for comp_id, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].append(comp_id)

    def _add_edge(self, edge: EdgeDefinition) -> None:
        if edge.id in self.edges:
            raise ConfigurationError(f"Duplicate edge id '{edge.id}'")
        for endpoint in (edge.source, edge.target):
            if endpoint not in self.components:
                raise ConfigurationError(f"Edge '{edge.id}' references unknown component '{endpoint}'")
        if not 0.0 <= edge.packet_loss <= 1.0:
            raise ConfigurationError(f"Edge '{edge.id}' packet_loss must be within [0, 1]")
        if edge.connection_type not in ("sync", "async", "streaming"):
            raise ConfigurationError(f"Edge '{edge.id}' has unknown connection type '{edge.connection_type}'")
        try:
            validate_distribution(edge.latency)
        except ConfigurationError as exc:
            raise ConfigurationError(f"Edge '{edge.id}' latency: {exc}") from exc

        self.edges[edge.id] = edge
        self._outbound[edge.source].append(edge)
        self._inbound[edge.target].append(edge)
        self._between[(edge.source, edge.target)].append(edge)
        self.graph.add_edge(edge.source, edge.target, id=edge.id, weight=edge.weight,
                            connection_type=edge.connection_type)

    # =========================================================================
    # Queries
    # =========================================================================

    def component(self, component_id: str) -> ComponentDefinition:
        return self.components[component_id]

    def edge(self, edge_id: str) -> EdgeDefinition:
        return self.edges[edge_id]

    def family_of(self, component_id: str) -> ComponentFamily:
        return self.families[component_id]

    def dependencies_of(self, component_id: str) -> List[str]:
        """Direct callees, in declaration order."""
        return self._dependencies.get(component_id, [])

    def dependents_of(self, component_id: str) -> List[str]:
        """Direct callers (reverse dependency index)."""
        return self._dependents.get(component_id, [])

    def edges_between(self, source: str, target: str) -> List[EdgeDefinition]:
        return self._between.get((source, target), [])

    def outbound_edges(self, component_id: str) -> List[EdgeDefinition]:
        return self._outbound.get(component_id, [])

    def inbound_edges(self, component_id: str) -> List[EdgeDefinition]:
        return self._inbound.get(component_id, [])

    def components_in_region(self, region_id: str) -> List[str]:
        return self._by_region.get(region_id, [])

    def region_of(self, component_id: str) -> str:
        return self.components[component_id].region

    def entry_components(self) -> List[str]:
        """Components nothing calls, traffic sources and gateways first."""
        roots = [cid for cid in self.components if not self._inbound.get(cid)]
        if not roots:
            roots = list(self.components)
        order = {cid: i for i, cid in enumerate(self.components)}
        return sorted(roots, key=lambda cid: (_ENTRY_PREFERENCE.get(self.families[cid], 9), order[cid]))

    def has_cycle(self) -> bool:
        return not nx.is_directed_acyclic_graph(self.graph)

    def reachable_from(self, component_id: str) -> List[str]:
        return sorted(nx.descendants(self.graph, component_id))

    def get_summary(self) -> Dict[str, Any]:
        family_counts: Dict[str, int] = defaultdict(int)
        for family in self.families.values():
            family_counts[family.value] += 1
        return {
            "components": len(self.components),
            "edges": len(self.edges),
            "families": dict(family_counts),
            "regions": sorted(self._by_region),
            "has_cycle": self.has_cycle(),
            "entry_components": self.entry_components(),
        }

    def resolve_scope(self, scope_id: Optional[str]) -> List[str]:
        """Component ids named by a component id, a region id or nothing (all)."""
        if scope_id is None or scope_id == "*":
            return list(self.components)
        if scope_id in self.components:
            return [scope_id]
        if scope_id in self._by_region:
            return list(self._by_region[scope_id])
        return list(self.components)
