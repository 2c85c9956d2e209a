from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Protocol, Sequence, Set, Tuple


class TopologyListener(Protocol):
    """
    Receives the drained events of each step. A listener may also define
    `on_reset()`, called before the world rebuilds its population.
    """

    def on_agent_created(self, agent_id: int, species: str) -> None: ...

    def on_agent_removed(self, agent_id: int) -> None: ...

    def on_agent_moved(self, agent_id: int, x: float, y: float, z: float) -> None: ...

    def on_neighbor_set_changed(self, agent_id: int, neighbor_ids: Tuple[int, ...]) -> None: ...


@dataclass
class TopologyEvents:
    """
    Events recorded while a step runs, delivered once when it ends.

    Delivery order is fixed: creations, then per-agent moves and neighbor
    sets in ascending id, then removals.
    """

    created: List[Tuple[int, str]] = field(default_factory=list)
    moved: Dict[int, Tuple[float, float, float]] = field(default_factory=dict)
    neighbors: Dict[int, Tuple[int, ...]] = field(default_factory=dict)
    removed: List[int] = field(default_factory=list)

    def agent_created(self, agent_id: int, species: str) -> None:
        self.created.append((agent_id, species))

    def agent_removed(self, agent_id: int) -> None:
        self.removed.append(agent_id)
        self.moved.pop(agent_id, None)
        self.neighbors.pop(agent_id, None)

    def agent_moved(self, agent_id: int, x: float, y: float, z: float, neighbor_ids: Sequence[int]) -> None:
        self.moved[agent_id] = (x, y, z)
        self.neighbors[agent_id] = tuple(neighbor_ids)

    def __len__(self) -> int:
        return len(self.created) + len(self.moved) + len(self.removed)

    def drain(self, listeners: Iterable[TopologyListener]) -> None:
        listeners = list(listeners)
        try:
            if not listeners:
                return
            for agent_id, species in self.created:
                for listener in listeners:
                    listener.on_agent_created(agent_id, species)
            for agent_id in sorted(self.moved):
                x, y, z = self.moved[agent_id]
                neighbor_ids = self.neighbors.get(agent_id, ())
                for listener in listeners:
                    listener.on_agent_moved(agent_id, x, y, z)
                    listener.on_neighbor_set_changed(agent_id, neighbor_ids)
            for agent_id in self.removed:
                for listener in listeners:
                    listener.on_agent_removed(agent_id)
        finally:
            self.created.clear()
            self.moved.clear()
            self.neighbors.clear()
            self.removed.clear()


class NeighborGraph:
    """Undirected visibility graph: one node per agent, one edge per pair that saw each other."""

    def __init__(self) -> None:
        self.nodes: Dict[int, str] = {}
        self.positions: Dict[int, Tuple[float, float, float]] = {}
        self._seen: Dict[int, Set[int]] = {}

    @staticmethod
    def edge_key(a: int, b: int) -> Tuple[int, int]:
        return (a, b) if a < b else (b, a)

    @property
    def edges(self) -> Set[Tuple[int, int]]:
        edges: Set[Tuple[int, int]] = set()
        for source, targets in self._seen.items():
            for target in targets:
                if target in self.nodes:
                    edges.add(self.edge_key(source, target))
        return edges

    def neighbors(self, agent_id: int) -> Set[int]:
        return {a if b == agent_id else b for a, b in self.edges if agent_id in (a, b)}

    def on_agent_created(self, agent_id: int, species: str) -> None:
        self.nodes[agent_id] = species
        self._seen[agent_id] = set()

    def on_agent_removed(self, agent_id: int) -> None:
        self.nodes.pop(agent_id, None)
        self.positions.pop(agent_id, None)
        self._seen.pop(agent_id, None)

    def on_agent_moved(self, agent_id: int, x: float, y: float, z: float) -> None:
        self.positions[agent_id] = (x, y, z)

    def on_neighbor_set_changed(self, agent_id: int, neighbor_ids: Tuple[int, ...]) -> None:
        self._seen[agent_id] = set(neighbor_ids)

    def on_reset(self) -> None:
        self.nodes.clear()
        self.positions.clear()
        self._seen.clear()
