"""Inter-channel dependency graph.

A channel depends on another when one of its connectors writes to it, which
shows up as a ``channelId`` property (the channel-writer connector). The graph
drives impact analysis and the order in which a batch of channels is applied.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from chartifact.artifact.models import DecomposedArtifact

REFERENCE_KEY = "channelId"
_NO_TARGET = {"", "none"}


@dataclass
class SortResult:
    order: list[str] = field(default_factory=list)
    cycles: list[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)


@dataclass
class DependencyGraph:
    """``edges[a]`` lists the channels that ``a`` depends on."""

    nodes: list[str] = field(default_factory=list)
    edges: dict[str, list[str]] = field(default_factory=dict)
    names: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_artifacts(cls, artifacts: Iterable[DecomposedArtifact]) -> "DependencyGraph":
        graph = cls()
        for artifact in artifacts:
            channel_id = artifact.metadata.id
            graph.nodes.append(channel_id)
            graph.names[channel_id] = artifact.metadata.name
            targets = []
            for _, connector in artifact.connectors():
                targets.extend(find_channel_references(connector.properties))
            targets = [t for t in dict.fromkeys(targets) if t != channel_id]
            if targets:
                graph.edges[channel_id] = targets
        return graph

    def dependencies_of(self, channel_id: str) -> list[str]:
        return list(self.edges.get(channel_id, []))

    def dependents_of(self, channel_id: str) -> list[str]:
        return [n for n in self.nodes if channel_id in self.edges.get(n, [])]

    def impacted_by(self, channel_id: str) -> list[str]:
        """Channels that transitively depend on ``channel_id``."""
        seen: list[str] = []
        queue = deque(self.dependents_of(channel_id))
        while queue:
            current = queue.popleft()
            if current in seen or current == channel_id:
                continue
            seen.append(current)
            queue.extend(self.dependents_of(current))
        return seen

    def sort(self, subset: Iterable[str] | None = None) -> SortResult:
        """Dependencies-first order (Kahn's algorithm).

        Only edges between nodes in ``subset`` constrain the order. Nodes
        caught in a cycle are appended in their original order and reported.
        """
        selected = list(dict.fromkeys(subset)) if subset is not None else list(self.nodes)
        members = set(selected)
        deps = {n: [d for d in self.edges.get(n, []) if d in members] for n in selected}
        remaining = {n: len(deps[n]) for n in selected}

        order: list[str] = []
        ready = deque(n for n in selected if remaining[n] == 0)
        while ready:
            current = ready.popleft()
            order.append(current)
            for n in selected:
                if current in deps[n]:
                    remaining[n] -= 1
                    if remaining[n] == 0:
                        ready.append(n)

        cycles = [n for n in selected if n not in order]
        return SortResult(order=order + cycles, cycles=cycles)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [{"id": n, "name": self.names.get(n, "")} for n in self.nodes],
            "edges": [{"from": a, "to": b} for a, targets in self.edges.items() for b in targets],
        }


def find_channel_references(value: Any, key: str = "") -> list[str]:
    """Every ``channelId`` value nested anywhere in a property bag."""
    if isinstance(value, dict):
        found = []
        for k, v in value.items():
            found.extend(find_channel_references(v, k))
        return found
    if isinstance(value, list):
        found = []
        for v in value:
            found.extend(find_channel_references(v, key))
        return found
    if key == REFERENCE_KEY and isinstance(value, str) and value.strip().lower() not in _NO_TARGET:
        return [value.strip()]
    return []
