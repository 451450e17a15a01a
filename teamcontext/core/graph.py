"""
Knowledge graph — Edge identity and traversal over the edge set

Edges are stored in knowledge/graph.json (see KnowledgeStore). This module
holds the pure algorithms so they can be reused on any edge list:

- Identity: an edge IS its 5-tuple (from_type, from_id, to_type, to_id, relation)
- Traversal: breadth-first, edges treated as undirected for reachability,
  visited-set guarantees termination on cyclic edge sets
"""

from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import Edge, EdgeKey


DEFAULT_TRAVERSE_DEPTH = 2
MAX_TRAVERSE_DEPTH = 5

NodeRef = Tuple[str, str]  # (node_type, node_id)


def clamp_depth(max_depth: Optional[int], default: int = DEFAULT_TRAVERSE_DEPTH) -> int:
    """None -> default; anything else clamped into [1, MAX_TRAVERSE_DEPTH]."""
    if max_depth is None:
        return default
    return max(1, min(int(max_depth), MAX_TRAVERSE_DEPTH))


def contains_edge(edges: Iterable[Edge], edge: Edge) -> bool:
    key = edge.key
    return any(e.key == key for e in edges)


def dedupe_edges(edges: Iterable[Edge]) -> List[Edge]:
    """Drop repeated edges, keeping first occurrence order."""
    seen: Set[EdgeKey] = set()
    unique = []
    for edge in edges:
        if edge.key not in seen:
            seen.add(edge.key)
            unique.append(edge)
    return unique


def edges_from(edges: Iterable[Edge], node_type: str, node_id: str) -> List[Edge]:
    return [e for e in edges if e.from_type == node_type and e.from_id == node_id]


def edges_to(edges: Iterable[Edge], node_type: str, node_id: str) -> List[Edge]:
    return [e for e in edges if e.to_type == node_type and e.to_id == node_id]


def _incidence(edges: List[Edge]) -> Dict[NodeRef, List[Edge]]:
    """Node -> incident edges (either end), in edge-list order."""
    incident: Dict[NodeRef, List[Edge]] = {}
    for edge in edges:
        src = (edge.from_type, edge.from_id)
        dst = (edge.to_type, edge.to_id)
        incident.setdefault(src, []).append(edge)
        if dst != src:
            incident.setdefault(dst, []).append(edge)
    return incident


def traverse(
    edges: List[Edge],
    start_type: str,
    start_id: str,
    max_depth: Optional[int] = None,
) -> List[Edge]:
    """
    Collect every edge reachable from a node within `max_depth` hops.

    An edge is incident to a node if the node is on either end. Edges are
    returned in discovery order, each identity at most once.

    Args:
        edges: Full edge set
        start_type, start_id: Starting node
        max_depth: Hop bound, default 2, clamped into [1, 5]

    Returns:
        Distinct edges touched during the walk
    """
    depth_limit = clamp_depth(max_depth)
    incident = _incidence(edges)

    start: NodeRef = (start_type, start_id)
    visited: Set[NodeRef] = {start}
    seen_edges: Set[EdgeKey] = set()
    result: List[Edge] = []

    queue = deque([(start, 0)])
    while queue:
        node, depth = queue.popleft()
        if depth >= depth_limit:
            continue

        for edge in incident.get(node, []):
            if edge.key not in seen_edges:
                seen_edges.add(edge.key)
                result.append(edge)

            if (edge.from_type, edge.from_id) == node:
                neighbor = (edge.to_type, edge.to_id)
            else:
                neighbor = (edge.from_type, edge.from_id)

            if neighbor not in visited:
                visited.add(neighbor)
                queue.append((neighbor, depth + 1))

    return result


def connected_nodes(edges: List[Edge], start_type: str, start_id: str) -> Dict[str, List[str]]:
    """
    Group the nodes mentioned by `edges` by type, excluding the start node.

    Shapes traversal output for callers that want "what is connected"
    rather than the raw edge list.
    """
    grouped: Dict[str, List[str]] = {}
    for edge in edges:
        for node_type, node_id in ((edge.from_type, edge.from_id), (edge.to_type, edge.to_id)):
            if node_type == start_type and node_id == start_id:
                continue
            bucket = grouped.setdefault(node_type, [])
            if node_id not in bucket:
                bucket.append(node_id)
    return grouped
