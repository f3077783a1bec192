"""
Dependency resolver: turns a request into a layered, cycle-free execution plan.
"""

import logging
from typing import Dict, List, Iterable, Set

from ..models.installation import InstallationOptions
from ..models.plan import ExecutionPlan, PlanNode
from .catalog import ToolCatalog, find_cycle
from .errors import CatalogError
from .manifest import ManifestStore


class DependencyResolver:
    """Resolves requested tools and bundles against the catalog and manifest."""

    def __init__(self, catalog: ToolCatalog, manifest: ManifestStore):
        self.logger = logging.getLogger(__name__)
        self.catalog = catalog
        self.manifest = manifest

    def resolve(self, requested: Iterable[str], options: InstallationOptions) -> ExecutionPlan:
        """
        Build the execution plan for a request.

        Args:
            requested: Tool ids and bundle names
            options: Run options (``skip_deps`` and ``force`` affect the plan)

        Returns:
            Plan whose layers form a topological order with declaration-order ties
        """
        requested_ids = self.catalog.expand(requested)
        if options.skip_deps:
            closure = self._ordered(requested_ids)
        else:
            closure = self._closure(requested_ids)
        members = set(closure)

        edges = {
            tool_id: [d for d in self.catalog.get(tool_id).dependencies if d in members]
            for tool_id in closure
        }
        cycle = find_cycle(closure, edges)
        if cycle:
            raise CatalogError.cycle_detected(cycle)

        satisfied: List[str] = []
        if not options.force:
            records = self.manifest.get_all()
            satisfied = [t for t in closure if t in records and records[t].is_installed]
        to_install = [t for t in closure if t not in satisfied]

        layers = self._layer(to_install, edges)
        requested_set = set(requested_ids)
        nodes: Dict[str, PlanNode] = {}
        for depth, layer in enumerate(layers):
            for tool_id in layer:
                nodes[tool_id] = PlanNode(
                    tool=self.catalog.get(tool_id),
                    dependencies=[d for d in edges[tool_id] if d not in satisfied],
                    layer=depth,
                    order=self.catalog.declaration_index(tool_id),
                    user_requested=tool_id in requested_set
                )

        plan = ExecutionPlan(
            requested=requested_ids,
            layers=layers,
            nodes=nodes,
            satisfied=satisfied
        )
        self.logger.info(
            f"Resolved {len(requested_ids)} requested tool(s) into {len(plan)} to install "
            f"across {len(layers)} layer(s); {len(satisfied)} already installed"
        )
        return plan

    def _ordered(self, tool_ids: Iterable[str]) -> List[str]:
        return sorted(set(tool_ids), key=self.catalog.declaration_index)

    def _closure(self, roots: List[str]) -> List[str]:
        """All tools reachable from roots through dependencies."""
        seen: Set[str] = set()
        stack = list(reversed(roots))
        while stack:
            tool_id = stack.pop()
            if tool_id in seen:
                continue
            seen.add(tool_id)
            for dep in self.catalog.get(tool_id).dependencies:
                if dep not in seen:
                    stack.append(dep)
        return self._ordered(seen)

    def _layer(self, tool_ids: List[str], edges: Dict[str, List[str]]) -> List[List[str]]:
        """Kahn's algorithm; each layer holds tools whose dependencies are all in earlier layers."""
        pending = set(tool_ids)
        remaining = {t: {d for d in edges[t] if d in pending} for t in tool_ids}
        layers: List[List[str]] = []
        while pending:
            layer = self._ordered(t for t in pending if not remaining[t])
            if not layer:
                # Unreachable once the closure passed find_cycle
                raise CatalogError.cycle_detected(find_cycle(self._ordered(pending), edges) or sorted(pending))
            layers.append(layer)
            pending.difference_update(layer)
            for t in pending:
                remaining[t].difference_update(layer)
        return layers
