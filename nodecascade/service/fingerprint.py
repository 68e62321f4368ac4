"""Content hashing and the per-node dirty decision."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, Dict, Optional

from nodecascade.service.graph import DependencyRef, all_dependencies
from nodecascade.service.nodes import Node, WorkflowGraph
from nodecascade.storage.models import NodeOutputRecord

HashLookup = Callable[[DependencyRef], Optional[str]]


def serialize_output(value: Any) -> str:
    """Strings hash as-is; anything else as compact JSON in insertion order."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def content_hash(value: Any) -> str:
    return hashlib.sha256(serialize_output(value).encode("utf-8")).hexdigest()


def _is_live(graph: WorkflowGraph, ref: DependencyRef) -> bool:
    if ref.workflow_id and ref.workflow_id != graph.id:
        return False
    dep = graph.get(ref.node_id)
    return bool(dep and dep.config.fetch_live)


def _triggers(node: Node, ref: DependencyRef) -> bool:
    for part in node.dependency_parts:
        if part.value != ref.node_id:
            continue
        if part.workflow_id and part.workflow_id != ref.workflow_id:
            continue
        return part.triggers
    return True


def needs_execution(
    node: Node,
    graph: WorkflowGraph,
    record: Optional[NodeOutputRecord],
    hash_of: HashLookup,
    *,
    force: bool = False,
) -> bool:
    """Decide whether ``node`` must run or can be served from ``record``.

    ``hash_of`` returns the current persisted hash of a dependency.
    """
    if force or record is None or not record.content_hash:
        return True
    stored = record.dependency_hashes or {}
    for ref in all_dependencies(node):
        if _is_live(graph, ref) or not _triggers(node, ref):
            continue
        if hash_of(ref) != stored.get(ref.key):
            return True
    return False


def dependency_hashes(node: Node, graph: WorkflowGraph, hash_of: HashLookup) -> Dict[str, str]:
    """Hashes to record alongside a fresh output; live and unhashed deps are left out."""
    hashes: Dict[str, str] = {}
    for ref in all_dependencies(node):
        if _is_live(graph, ref):
            continue
        current = hash_of(ref)
        if current:
            hashes[ref.key] = current
    return hashes
