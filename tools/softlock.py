"""Soft-lock analysis helpers for case manifest validation."""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple

from casebook.case_schema import is_list_like, normalize_nodes, path


def iter_edges(nodes: Mapping[str, Any]) -> Iterable[Tuple[str, str]]:
    """Yield ``(origin, target)`` for every choice and auto-advance edge."""
    for node_id, node in nodes.items():
        choices = node.get("choices")
        if is_list_like(choices):
            for choice in choices:
                if isinstance(choice, Mapping) and isinstance(choice.get("next"), str):
                    yield node_id, choice["next"]
        auto_advance = node.get("autoAdvance")
        if isinstance(auto_advance, Mapping) and isinstance(auto_advance.get("next"), str):
            yield node_id, auto_advance["next"]


def build_graph(nodes: Mapping[str, Any]) -> Dict[str, List[str]]:
    graph: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
    for origin, target in iter_edges(nodes):
        if target in nodes:
            graph[origin].append(target)
    return graph


def reachable_from(start: str, graph: Mapping[str, List[str]]) -> Set[str]:
    if start not in graph:
        return set()
    visited: Set[str] = set()
    queue: deque[str] = deque([start])
    while queue:
        node_id = queue.popleft()
        if node_id in visited:
            continue
        visited.add(node_id)
        queue.extend(graph.get(node_id, []))
    return visited


def analyze_dead_ends(data: Mapping[str, Any]) -> List[str]:
    """Warn about reachable nodes from which no terminal node can be reached."""
    nodes, _ = normalize_nodes(data.get("nodes"))
    graph = build_graph(nodes)
    terminals = {node_id for node_id, targets in graph.items() if not targets}

    warnings: List[str] = []
    if nodes and not terminals:
        warnings.append(f"{path('nodes')}: no terminal node; the case can never finish.")

    reverse: Dict[str, List[str]] = defaultdict(list)
    for origin, targets in graph.items():
        for target in targets:
            reverse[target].append(origin)

    can_finish: Set[str] = set()
    queue: deque[str] = deque(terminals)
    while queue:
        node_id = queue.popleft()
        if node_id in can_finish:
            continue
        can_finish.add(node_id)
        queue.extend(reverse.get(node_id, []))

    start = data.get("startNodeId")
    if not isinstance(start, str):
        return warnings
    for node_id in sorted(reachable_from(start, graph) - can_finish):
        warnings.append(
            f"{path('nodes', node_id)}: reachable from start '{start}' but no terminal node is reachable from it."
        )
    return warnings
