from __future__ import annotations

import logging
import math
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from pygame.math import Vector3

from .errors import IndexCorruptionError

logger = logging.getLogger(__name__)

_MAX_DEPTH = 20
_AGGREGATE_TOLERANCE = 1e-9


def _as_vector(value: Sequence[float] | Vector3) -> Vector3:
    return Vector3(value[0], value[1], value[2])


class OctreeCell:
    __slots__ = (
        "low",
        "high",
        "mid",
        "depth",
        "parent",
        "children",
        "members",
        "population",
        "barycenter",
        "heading",
    )

    def __init__(self, low: Vector3, high: Vector3, depth: int, parent: Optional["OctreeCell"]) -> None:
        self.low = low
        self.high = high
        self.mid = (low + high) * 0.5
        self.depth = depth
        self.parent = parent
        self.children: Optional[List[OctreeCell]] = None
        self.members: List[int] = []
        self.population = 0
        self.barycenter = Vector3()
        self.heading = Vector3()

    @property
    def is_leaf(self) -> bool:
        return self.children is None

    def child_index(self, point: Vector3) -> int:
        # Half-open split: [low, mid) goes to the lower child, [mid, high] to the upper one.
        index = 0
        if point.x >= self.mid.x:
            index |= 1
        if point.y >= self.mid.y:
            index |= 2
        if point.z >= self.mid.z:
            index |= 4
        return index

    def make_children(self) -> List["OctreeCell"]:
        children = []
        for index in range(8):
            low = Vector3(
                self.mid.x if index & 1 else self.low.x,
                self.mid.y if index & 2 else self.low.y,
                self.mid.z if index & 4 else self.low.z,
            )
            high = Vector3(
                self.high.x if index & 1 else self.mid.x,
                self.high.y if index & 2 else self.mid.y,
                self.high.z if index & 4 else self.mid.z,
            )
            children.append(OctreeCell(low, high, self.depth + 1, self))
        return children

    def intersects(self, low: Vector3, high: Vector3) -> bool:
        if high.x < self.low.x or low.x > self.high.x:
            return False
        if high.y < self.low.y or low.y > self.high.y:
            return False
        if high.z < self.low.z or low.z > self.high.z:
            return False
        return True


class Octree:
    """
    Octree over agent ids.

    The tree only stores ids plus the position/heading each id was last
    inserted or relocated with; agents themselves live in the world arena.
    Leaves hold up to `capacity` ids and split into eight children when an
    insertion would exceed it. Every cell keeps its population, barycenter
    and mean heading up to date after each structural change.
    """

    def __init__(self, low: Sequence[float] | Vector3, high: Sequence[float] | Vector3, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError(f"Octree capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._positions: Dict[int, Vector3] = {}
        self._headings: Dict[int, Vector3] = {}
        self._leaf_of: Dict[int, OctreeCell] = {}
        self._root = OctreeCell(_as_vector(low), _as_vector(high), 0, None)

    @property
    def root(self) -> OctreeCell:
        return self._root

    @property
    def low(self) -> Vector3:
        return Vector3(self._root.low)

    @property
    def high(self) -> Vector3:
        return Vector3(self._root.high)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, agent_id: int) -> bool:
        return agent_id in self._positions

    def leaf_of(self, agent_id: int) -> OctreeCell:
        return self._leaf_of[agent_id]

    def position_of(self, agent_id: int) -> Vector3:
        return self._positions[agent_id]

    def insert(self, agent_id: int, position: Vector3, heading: Vector3 | None = None) -> None:
        if agent_id in self._positions:
            raise KeyError(f"agent {agent_id} is already indexed")
        self._positions[agent_id] = Vector3(position)
        self._headings[agent_id] = Vector3(heading) if heading is not None else Vector3()
        leaf = self._place(agent_id)
        self._refresh_path(leaf)

    def remove(self, agent_id: int) -> None:
        leaf = self._leaf_of.pop(agent_id)
        leaf.members.remove(agent_id)
        del self._positions[agent_id]
        del self._headings[agent_id]
        self._refresh_path(leaf)
        self._merge_upwards(leaf.parent)

    def relocate(self, agent_id: int, position: Vector3, heading: Vector3 | None = None) -> None:
        leaf = self._leaf_of[agent_id]
        if self._descend(position) is leaf:
            self._positions[agent_id].update(position)
            if heading is not None:
                self._headings[agent_id].update(heading)
            self._refresh_path(leaf)
            return
        if heading is None:
            heading = self._headings[agent_id]
        heading = Vector3(heading)
        self.remove(agent_id)
        self.insert(agent_id, position, heading)

    def query(self, low: Vector3, high: Vector3) -> List[int]:
        # Members outside the bound live in boundary leaves, so the box is clamped the same way.
        low = self._clamped(low)
        high = self._clamped(high)
        found: List[int] = []
        stack = [self._root]
        while stack:
            cell = stack.pop()
            if not cell.intersects(low, high):
                continue
            if cell.children is None:
                found.extend(cell.members)
            else:
                stack.extend(cell.children)
        return found

    def query_around(self, center: Vector3, half_width: float) -> List[int]:
        return self.query(
            Vector3(center.x - half_width, center.y - half_width, center.z - half_width),
            Vector3(center.x + half_width, center.y + half_width, center.z + half_width),
        )

    def resize(self, low: Sequence[float] | Vector3, high: Sequence[float] | Vector3) -> None:
        ids = sorted(self._positions)
        self._root = OctreeCell(_as_vector(low), _as_vector(high), 0, None)
        self._leaf_of.clear()
        for agent_id in ids:
            leaf = self._place(agent_id)
            self._refresh_path(leaf)
        logger.info(
            "Octree resized to [%s, %s] with %d members",
            tuple(self._root.low),
            tuple(self._root.high),
            len(ids),
        )

    def clear(self) -> None:
        self._positions.clear()
        self._headings.clear()
        self._leaf_of.clear()
        self._root = OctreeCell(self._root.low, self._root.high, 0, None)

    def cells(self) -> Iterator[OctreeCell]:
        stack = [self._root]
        while stack:
            cell = stack.pop()
            yield cell
            if cell.children is not None:
                stack.extend(cell.children)

    def leaves(self) -> Iterator[OctreeCell]:
        return (cell for cell in self.cells() if cell.children is None)

    def leaf_count(self) -> int:
        return sum(1 for _ in self.leaves())

    def depth(self) -> int:
        return max(cell.depth for cell in self.cells())

    def check_integrity(self) -> None:
        seen = 0
        for cell in self.cells():
            if cell.children is None:
                for agent_id in cell.members:
                    if self._leaf_of.get(agent_id) is not cell:
                        raise IndexCorruptionError(f"agent {agent_id} is registered in the wrong leaf")
                    if self._descend(self._positions[agent_id]) is not cell:
                        raise IndexCorruptionError(f"agent {agent_id} lies outside its leaf region")
                seen += len(cell.members)
            else:
                if len(cell.children) != 8:
                    raise IndexCorruptionError(f"internal cell at depth {cell.depth} has {len(cell.children)} children")
                if cell.members:
                    raise IndexCorruptionError(f"internal cell at depth {cell.depth} holds members")
            population, barycenter, heading = self._aggregate(cell)
            if cell.population != population:
                raise IndexCorruptionError(
                    f"cell at depth {cell.depth} reports population {cell.population}, expected {population}"
                )
            for name, stored, expected in (("barycenter", cell.barycenter, barycenter), ("heading", cell.heading, heading)):
                if not all(
                    math.isclose(stored[axis], expected[axis], rel_tol=_AGGREGATE_TOLERANCE, abs_tol=_AGGREGATE_TOLERANCE)
                    for axis in range(3)
                ):
                    raise IndexCorruptionError(
                        f"cell at depth {cell.depth} reports {name} {tuple(stored)}, expected {tuple(expected)}"
                    )
        if seen != len(self._positions):
            raise IndexCorruptionError(f"{len(self._positions) - seen} indexed agents are in no leaf")

    def _clamped(self, point: Vector3) -> Vector3:
        # Members left outside the bound after a resize are filed in the nearest boundary leaf.
        root = self._root
        return Vector3(
            min(max(point.x, root.low.x), root.high.x),
            min(max(point.y, root.low.y), root.high.y),
            min(max(point.z, root.low.z), root.high.z),
        )

    def _descend(self, position: Vector3) -> OctreeCell:
        point = self._clamped(position)
        cell = self._root
        while cell.children is not None:
            cell = cell.children[cell.child_index(point)]
        return cell

    def _place(self, agent_id: int) -> OctreeCell:
        leaf = self._descend(self._positions[agent_id])
        leaf.members.append(agent_id)
        self._leaf_of[agent_id] = leaf
        if len(leaf.members) > self._capacity and leaf.depth < _MAX_DEPTH:
            return self._split(leaf, agent_id)
        return leaf

    def _split(self, leaf: OctreeCell, agent_id: int) -> OctreeCell:
        members = leaf.members
        leaf.members = []
        leaf.children = leaf.make_children()
        for member in members:
            child = leaf.children[leaf.child_index(self._clamped(self._positions[member]))]
            child.members.append(member)
            self._leaf_of[member] = child
        for child in leaf.children:
            if len(child.members) > self._capacity and child.depth < _MAX_DEPTH:
                moved = child.members
                child.members = []
                for member in moved:
                    self._place(member)
        self._recompute_subtree(leaf)
        return self._leaf_of[agent_id]

    def _recompute_subtree(self, cell: OctreeCell) -> None:
        if cell.children is not None:
            for child in cell.children:
                self._recompute_subtree(child)
        self._recompute(cell)

    def _merge_upwards(self, cell: Optional[OctreeCell]) -> None:
        while cell is not None and cell.children is not None:
            if cell.population > self._capacity:
                return
            if any(child.children is not None for child in cell.children):
                return
            members: List[int] = []
            for child in cell.children:
                members.extend(child.members)
            cell.children = None
            cell.members = members
            for member in members:
                self._leaf_of[member] = cell
            self._recompute(cell)
            cell = cell.parent

    def _refresh_path(self, cell: Optional[OctreeCell]) -> None:
        while cell is not None:
            self._recompute(cell)
            cell = cell.parent

    def _recompute(self, cell: OctreeCell) -> None:
        cell.population, cell.barycenter, cell.heading = self._aggregate(cell)

    def _aggregate(self, cell: OctreeCell) -> Tuple[int, Vector3, Vector3]:
        barycenter = Vector3()
        heading = Vector3()
        if cell.children is None:
            population = len(cell.members)
            for member in cell.members:
                barycenter += self._positions[member]
                heading += self._headings[member]
        else:
            population = 0
            for child in cell.children:
                if child.population == 0:
                    continue
                population += child.population
                barycenter += child.barycenter * child.population
                heading += child.heading * child.population
        if population > 0:
            barycenter /= population
            heading /= population
        return population, barycenter, heading
