"""Dependency graph analysis for step templates.

The analyzer works purely over step names and dependency name lists. The
result is computed once and cached; call :meth:`TemplateGraphAnalyzer.clear_cache`
after mutating the template list.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from pydantic import BaseModel, Field

from .errors import GraphValidationError


class GraphNode(Protocol):
    name: str

    @property
    def all_dependencies(self) -> List[str]: ...


class _NamedNode:
    def __init__(self, name: str, dependencies: Iterable[str]) -> None:
        self.name = name
        self.description = None
        self.handler = None
        self._dependencies = list(dict.fromkeys(dependencies))

    @property
    def all_dependencies(self) -> List[str]:
        return self._dependencies


class GraphEdge(BaseModel):
    from_step: str
    to_step: str
    type: str


class NodeInfo(BaseModel):
    name: str
    description: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    dependency_count: int = 0
    transitive_dependencies: List[str] = Field(default_factory=list)


class GraphSummary(BaseModel):
    total_steps: int
    total_dependencies: int
    has_cycles: bool
    max_depth: int
    parallel_branches: int


class GraphAnalysis(BaseModel):
    nodes: List[NodeInfo]
    edges: List[GraphEdge]
    topology: List[str]
    cycles: List[List[str]]
    levels: Dict[str, int]
    roots: List[str]
    leaves: List[str]
    missing: Dict[str, List[str]] = Field(default_factory=dict)
    duplicates: List[str] = Field(default_factory=list)
    summary: GraphSummary

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    @property
    def is_valid(self) -> bool:
        return not (self.cycles or self.missing or self.duplicates)


_WHITE, _GRAY, _BLACK = 0, 1, 2


class TemplateGraphAnalyzer:
    """Build and inspect the DAG declared by a list of step templates."""

    def __init__(self, templates: Sequence[GraphNode]) -> None:
        self.templates = list(templates)
        self._analysis: Optional[GraphAnalysis] = None

    @classmethod
    def from_mapping(cls, dependency_map: Mapping[str, Iterable[str]]) -> "TemplateGraphAnalyzer":
        """Build an analyzer from ``{step_name: [dependency names]}``."""
        return cls([_NamedNode(name, deps) for name, deps in dependency_map.items()])

    # ------------------------------------------------------------------
    def analyze(self) -> GraphAnalysis:
        if self._analysis is not None:
            return self._analysis

        names = [t.name for t in self.templates]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        order: Dict[str, int] = {}
        for idx, name in enumerate(names):
            order.setdefault(name, idx)
        dependency_map: Dict[str, List[str]] = {}
        missing: Dict[str, List[str]] = {}
        for template in self.templates:
            deps = template.all_dependencies
            unknown = [d for d in deps if d not in order]
            if unknown:
                missing[template.name] = unknown
            dependency_map.setdefault(template.name, [])
            dependency_map[template.name].extend(d for d in deps if d in order)

        cycles = self._detect_cycles(dependency_map, order)
        if cycles:
            topology: List[str] = []
            levels: Dict[str, int] = {}
            transitive: Dict[str, List[str]] = {}
        else:
            topology = self._topological_sort(dependency_map, order)
            levels = self._levels(dependency_map, topology)
            transitive = self._transitive(dependency_map, topology, order)

        edges = [
            GraphEdge(
                from_step=dep,
                to_step=template.name,
                type="single" if len(template.all_dependencies) == 1 else "multiple",
            )
            for template in self.templates
            for dep in template.all_dependencies
        ]
        has_dependents = {edge.from_step for edge in edges}
        roots = [name for name in order if not dependency_map[name]]
        leaves = [name for name in order if name not in has_dependents]
        nodes = [
            NodeInfo(
                name=t.name,
                description=getattr(t, "description", None),
                dependencies=list(t.all_dependencies),
                dependency_count=len(t.all_dependencies),
                transitive_dependencies=transitive.get(t.name, []),
            )
            for t in self.templates
        ]
        self._analysis = GraphAnalysis(
            nodes=nodes,
            edges=edges,
            topology=topology,
            cycles=cycles,
            levels=levels,
            roots=roots,
            leaves=leaves,
            missing=missing,
            duplicates=duplicates,
            summary=GraphSummary(
                total_steps=len(self.templates),
                total_dependencies=len(edges),
                has_cycles=bool(cycles),
                max_depth=max(levels.values(), default=0),
                parallel_branches=self._parallel_branches(levels),
            ),
        )
        return self._analysis

    def clear_cache(self) -> None:
        self._analysis = None

    def has_cycles(self) -> bool:
        return self.analyze().has_cycles

    @property
    def topology(self) -> List[str]:
        return self.analyze().topology

    @property
    def levels(self) -> Dict[str, int]:
        return self.analyze().levels

    @property
    def roots(self) -> List[str]:
        return self.analyze().roots

    @property
    def leaves(self) -> List[str]:
        return self.analyze().leaves

    @property
    def cycles(self) -> List[List[str]]:
        return self.analyze().cycles

    def validate(self) -> GraphAnalysis:
        """Return the analysis or raise :class:`GraphValidationError`."""
        analysis = self.analyze()
        if analysis.duplicates:
            raise GraphValidationError(
                f"duplicate step names: {', '.join(analysis.duplicates)}"
            )
        if analysis.missing:
            details = "; ".join(
                f"{step} -> {', '.join(deps)}" for step, deps in analysis.missing.items()
            )
            raise GraphValidationError(
                f"unknown dependencies: {details}",
                missing=[d for deps in analysis.missing.values() for d in deps],
            )
        if analysis.cycles:
            rendered = "; ".join(" -> ".join(cycle) for cycle in analysis.cycles)
            raise GraphValidationError(f"dependency cycle detected: {rendered}", cycles=analysis.cycles)
        return analysis

    # ------------------------------------------------------------------
    @staticmethod
    def _detect_cycles(
        dependency_map: Dict[str, List[str]], order: Dict[str, int]
    ) -> List[List[str]]:
        color = {name: _WHITE for name in dependency_map}
        cycles: List[List[str]] = []

        for root in sorted(dependency_map, key=order.__getitem__):
            if color[root] != _WHITE:
                continue
            # path mirrors the stack of nodes currently being explored
            color[root] = _GRAY
            path = [root]
            stack = [iter(dependency_map[root])]
            found: Optional[List[str]] = None
            while stack and found is None:
                for dep in stack[-1]:
                    if color[dep] == _GRAY:
                        found = path[path.index(dep):] + [dep]
                        break
                    if color[dep] == _WHITE:
                        color[dep] = _GRAY
                        path.append(dep)
                        stack.append(iter(dependency_map[dep]))
                        break
                else:
                    stack.pop()
                    color[path.pop()] = _BLACK
            if found:
                cycles.append(found)
                for name in path:
                    color[name] = _BLACK
        return cycles

    @staticmethod
    def _topological_sort(
        dependency_map: Dict[str, List[str]], order: Dict[str, int]
    ) -> List[str]:
        in_degree = {name: len(deps) for name, deps in dependency_map.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in dependency_map}
        for name, deps in dependency_map.items():
            for dep in deps:
                dependents[dep].append(name)

        heap = [(order[name], name) for name, count in in_degree.items() if count == 0]
        heapq.heapify(heap)
        result: List[str] = []
        while heap:
            _, current = heapq.heappop(heap)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (order[dependent], dependent))
        return result

    @staticmethod
    def _levels(dependency_map: Dict[str, List[str]], topology: List[str]) -> Dict[str, int]:
        levels: Dict[str, int] = {}
        for name in topology:
            deps = dependency_map[name]
            levels[name] = 1 + max(levels[d] for d in deps) if deps else 0
        return levels

    @staticmethod
    def _transitive(
        dependency_map: Dict[str, List[str]], topology: List[str], order: Dict[str, int]
    ) -> Dict[str, List[str]]:
        closure: Dict[str, Set[str]] = {}
        for name in topology:
            acc: Set[str] = set()
            for dep in dependency_map[name]:
                acc.add(dep)
                acc |= closure[dep]
            closure[name] = acc
        return {name: sorted(deps, key=order.__getitem__) for name, deps in closure.items()}

    @staticmethod
    def _parallel_branches(levels: Dict[str, int]) -> int:
        counts: Dict[int, int] = {}
        for level in levels.values():
            counts[level] = counts.get(level, 0) + 1
        return max(counts.values(), default=1)


def analyze_dependencies(dependency_map: Mapping[str, Iterable[str]]) -> GraphAnalysis:
    """Convenience wrapper for ad-hoc graphs."""
    return TemplateGraphAnalyzer.from_mapping(dependency_map).analyze()


__all__ = [
    "GraphAnalysis",
    "GraphEdge",
    "GraphSummary",
    "NodeInfo",
    "TemplateGraphAnalyzer",
    "analyze_dependencies",
]
