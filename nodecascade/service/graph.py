"""Logical dependency graph derived from node configuration.

Visual edges stored alongside a workflow are never consulted here. Ordering
comes from prompt-part dependencies, agent sources and schema mappings.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from nodecascade.service.nodes import (
    AgentConfig,
    Node,
    NodeKind,
    VariableConfig,
    WorkflowGraph,
)


@dataclass(frozen=True)
class DependencyRef:
    node_id: str
    workflow_id: Optional[str] = None

    @property
    def key(self) -> str:
        return dependency_key(self.node_id, self.workflow_id)

    @property
    def is_cross_graph(self) -> bool:
        return bool(self.workflow_id)


def dependency_key(node_id: str, workflow_id: Optional[str] = None) -> str:
    return f"{workflow_id}:{node_id}" if workflow_id else node_id


def ordering_dependencies(node: Node) -> List[str]:
    """Same-graph node ids that must run before ``node``."""
    deps: List[str] = []
    for part in node.dependency_parts:
        if part.value and part.triggers and not part.workflow_id:
            deps.append(part.value)
    config = node.config
    if node.kind is NodeKind.AGENT and isinstance(config, AgentConfig) and config.source_node_id:
        deps.append(config.source_node_id)
    if isinstance(config, VariableConfig):
        for mapping in config.mappings:
            if mapping.node_id and not mapping.workflow_id:
                deps.append(mapping.node_id)
    return deps


def topological_order(graph: WorkflowGraph) -> List[str]:
    """Kahn's algorithm over logical edges.

    Nodes stuck in a cycle are appended afterwards in declaration order so
    the result always covers every node exactly once.
    """
    node_ids = [node.id for node in graph.nodes]
    known = set(node_ids)
    dependents: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}

    for node in graph.nodes:
        seen: Set[str] = set()
        for dep in ordering_dependencies(node):
            if dep == node.id or dep not in known or dep in seen:
                continue
            seen.add(dep)
            dependents[dep].append(node.id)
            in_degree[node.id] += 1

    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for child in dependents[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    if len(order) < len(node_ids):
        placed = set(order)
        order.extend(node_id for node_id in node_ids if node_id not in placed)
    return order


def all_dependencies(node: Node) -> List[DependencyRef]:
    """Every dependency a node reads, cross-graph ones included, deduplicated."""
    refs: List[DependencyRef] = []
    seen: Set[DependencyRef] = set()

    def _add(node_id: Optional[str], workflow_id: Optional[str]) -> None:
        if not node_id:
            return
        ref = DependencyRef(node_id, workflow_id or None)
        if ref not in seen:
            seen.add(ref)
            refs.append(ref)

    for part in node.dependency_parts:
        _add(part.value, part.workflow_id)
    if node.kind is NodeKind.AGENT and isinstance(node.config, AgentConfig):
        _add(node.config.source_node_id, None)
    if isinstance(node.config, VariableConfig):
        for mapping in node.config.mappings:
            _add(mapping.node_id, mapping.workflow_id)
    return refs


def _direct_dependents(graph: WorkflowGraph, node_id: str) -> Iterable[str]:
    for node in graph.nodes:
        if node.id == node_id:
            continue
        config = node.config
        if isinstance(config, AgentConfig) and config.source_node_id == node_id:
            yield node.id
            continue
        if any(
            part.value == node_id and not part.workflow_id for part in node.dependency_parts
        ):
            yield node.id
            continue
        if isinstance(config, VariableConfig) and any(
            mapping.node_id == node_id and not mapping.workflow_id for mapping in config.mappings
        ):
            yield node.id


def downstream_closure(graph: WorkflowGraph, roots: Iterable[str]) -> Set[str]:
    """``roots`` plus every node transitively depending on them."""
    closure: Set[str] = set()
    pending = deque(roots)
    while pending:
        current = pending.popleft()
        if current in closure:
            continue
        closure.add(current)
        pending.extend(dep for dep in _direct_dependents(graph, current) if dep not in closure)
    return closure
