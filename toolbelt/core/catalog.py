"""
Tool catalog: registry of tool and bundle definitions loaded from JSON.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Iterable, Any

from pydantic import ValidationError

from ..models.tool import ToolConfig, BundleConfig
from .errors import CatalogError, CatalogErrorKind


def find_cycle(nodes: Iterable[str], edges: Dict[str, List[str]]) -> Optional[List[str]]:
    """
    Find a dependency cycle among nodes.

    Edges pointing outside of ``nodes`` are ignored. Nodes are visited in the
    given order so the reported cycle is deterministic.

    Args:
        nodes: Node ids in declaration order
        edges: Node id to the ids it depends on

    Returns:
        The cycle path with its first node repeated at the end, or None
    """
    white, grey, black = 0, 1, 2
    order = list(nodes)
    color = {node: white for node in order}

    for root in order:
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        stack = [iter(edges.get(root, ()))]
        while stack:
            for dep in stack[-1]:
                if dep not in color:
                    continue
                if color[dep] == grey:
                    return path[path.index(dep):] + [dep]
                if color[dep] == white:
                    color[dep] = grey
                    path.append(dep)
                    stack.append(iter(edges.get(dep, ())))
                    break
            else:
                color[path.pop()] = black
                stack.pop()
    return None


class ToolCatalog:
    """Read-only registry of tools and bundles."""

    def __init__(self,
                 tools: List[ToolConfig],
                 bundles: Optional[List[BundleConfig]] = None,
                 categories: Optional[Dict[str, str]] = None,
                 default_build_type: str = "standard"):
        """
        Initialize the catalog.

        The catalog is not validated here; use ``load``/``from_dict`` or call
        ``validate`` before handing it to a resolver.

        Args:
            tools: Tool definitions in declaration order
            bundles: Bundle definitions
            categories: Category name to description
            default_build_type: Build type used when a run does not choose one
        """
        self.logger = logging.getLogger(__name__)
        self._declared = list(tools)
        self._tools: Dict[str, ToolConfig] = {}
        self._index: Dict[str, int] = {}
        for position, tool in enumerate(self._declared):
            if tool.id not in self._tools:
                self._tools[tool.id] = tool
                self._index[tool.id] = position
        self._bundles: Dict[str, BundleConfig] = {b.name: b for b in (bundles or [])}
        self.categories = dict(categories or {})
        self.default_build_type = default_build_type

    @classmethod
    def load(cls, tools_path: Path, bundles_path: Optional[Path] = None) -> "ToolCatalog":
        """
        Load and validate a catalog from tools.json and an optional bundles.json.

        Args:
            tools_path: Path to the tool definitions
            bundles_path: Path to the bundle definitions; a missing file means no bundles

        Returns:
            Validated catalog
        """
        tools_data = cls._read_json(Path(tools_path))
        bundles_data: Dict[str, Any] = {}
        if bundles_path and Path(bundles_path).exists():
            bundles_data = cls._read_json(Path(bundles_path))
        return cls.from_dict(tools_data, bundles_data)

    @classmethod
    def from_dict(cls, tools_data: Dict[str, Any],
                  bundles_data: Optional[Dict[str, Any]] = None) -> "ToolCatalog":
        """Build and validate a catalog from parsed JSON documents."""
        tools = [cls._parse_tool(entry) for entry in tools_data.get("tools", [])]
        try:
            bundles = [BundleConfig(**entry) for entry in (bundles_data or {}).get("bundles", [])]
        except ValidationError as e:
            raise CatalogError(CatalogErrorKind.INVALID, f"Invalid bundle definition: {e}")

        catalog = cls(
            tools=tools,
            bundles=bundles,
            categories=tools_data.get("categories", {}),
            default_build_type=tools_data.get("default_build_type", "standard")
        )
        catalog.validate()
        return catalog

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        try:
            return json.loads(path.read_text())
        except OSError as e:
            raise CatalogError(CatalogErrorKind.INVALID, f"Cannot read catalog file {path}: {e}")
        except json.JSONDecodeError as e:
            raise CatalogError(CatalogErrorKind.INVALID, f"Malformed catalog file {path}: {e}")

    @staticmethod
    def _parse_tool(entry: Dict[str, Any]) -> ToolConfig:
        tool_id = entry.get("id") or entry.get("name")
        if tool_id and tool_id in (entry.get("dependencies") or []):
            raise CatalogError.cycle_detected([tool_id, tool_id])
        try:
            return ToolConfig(**entry)
        except ValidationError as e:
            raise CatalogError(
                CatalogErrorKind.INVALID,
                f"Invalid tool definition {tool_id or '<unnamed>'}: {e}",
                tools=[tool_id] if tool_id else []
            )

    # Lookup

    def lookup(self, tool_id: str) -> Tuple[Optional[ToolConfig], bool]:
        tool = self._tools.get(tool_id)
        return tool, tool is not None

    def get(self, tool_id: str) -> ToolConfig:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise CatalogError.unknown_tool(tool_id)
        return tool

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def tools(self) -> List[ToolConfig]:
        """Tools in declaration order."""
        return [self._tools[tool_id] for tool_id in self._index]

    @property
    def bundles(self) -> List[BundleConfig]:
        return list(self._bundles.values())

    def declaration_index(self, tool_id: str) -> int:
        return self._index.get(tool_id, len(self._index))

    def list_tools(self, category: Optional[str] = None) -> List[ToolConfig]:
        if category is None:
            return self.tools
        return [t for t in self.tools if t.category == category]

    def is_bundle(self, name: str) -> bool:
        return name in self._bundles

    def get_bundle(self, name: str) -> BundleConfig:
        bundle = self._bundles.get(name)
        if bundle is None:
            raise CatalogError.unknown_tool(name)
        return bundle

    def expand_bundle(self, bundle_name: str) -> List[str]:
        """
        Expand a bundle into its tool ids.

        Included bundles are expanded first, then the bundle's own tools;
        duplicates keep their first position.

        Args:
            bundle_name: Bundle to expand

        Returns:
            Ordered, de-duplicated tool ids
        """
        return list(dict.fromkeys(self._expand_bundle(bundle_name, [])))

    def _expand_bundle(self, bundle_name: str, path: List[str]) -> List[str]:
        if bundle_name in path:
            cycle = path[path.index(bundle_name):] + [bundle_name]
            raise CatalogError.cycle_detected(cycle)
        bundle = self.get_bundle(bundle_name)

        tools: List[str] = []
        for included in bundle.includes_bundles:
            tools.extend(self._expand_bundle(included, path + [bundle_name]))
        tools.extend(bundle.tools)
        return tools

    def expand(self, names: Iterable[str]) -> List[str]:
        """Expand a mixed list of tool and bundle names into unique tool ids."""
        expanded: List[str] = []
        for name in names:
            if self.is_bundle(name):
                expanded.extend(self.expand_bundle(name))
            elif name in self._tools:
                expanded.append(name)
            else:
                raise CatalogError.unknown_tool(name)
        return list(dict.fromkeys(expanded))

    # Validation

    def validate(self) -> None:
        """
        Check the catalog for duplicate ids, unknown references and cycles.

        Raises:
            CatalogError: naming the offending tools, with the full path for cycles
        """
        seen = set()
        duplicates = []
        for tool in self._declared:
            if tool.id in seen:
                duplicates.append(tool.id)
            seen.add(tool.id)
        if duplicates:
            raise CatalogError(
                CatalogErrorKind.DUPLICATE_TOOL,
                f"Duplicate tool ids in catalog: {', '.join(duplicates)}",
                tools=duplicates
            )

        for tool in self.tools:
            missing = [dep for dep in tool.dependencies if dep not in self._tools]
            if missing:
                raise CatalogError(
                    CatalogErrorKind.UNKNOWN_DEPENDENCY,
                    f"Tool {tool.id} depends on unknown tool(s): {', '.join(missing)}",
                    tools=[tool.id] + missing
                )

        for bundle in self._bundles.values():
            unknown = [t for t in bundle.tools if t not in self._tools]
            unknown += [b for b in bundle.includes_bundles if b not in self._bundles]
            if unknown:
                raise CatalogError(
                    CatalogErrorKind.UNKNOWN_TOOL,
                    f"Bundle {bundle.name} references unknown entries: {', '.join(unknown)}",
                    tools=unknown
                )
            self.expand_bundle(bundle.name)

        cycle = find_cycle(self._index, {t.id: t.dependencies for t in self.tools})
        if cycle:
            raise CatalogError.cycle_detected(cycle)

        self.logger.debug(f"Catalog valid: {len(self._tools)} tools, {len(self._bundles)} bundles")
