from __future__ import annotations

import heapq
import itertools
import logging
from typing import Dict, Iterator, Sequence

from rally.config import MIN_PATH_POINT_DISTANCE
from rally.nav.cost_map import IMPASSABLE, Cell, CostMap
from rally.util.math import dist2

log = logging.getLogger(__name__)

Point = tuple[float, float, float]

_NEIGHBOURS = ((1, 0), (-1, 0), (0, 1), (0, -1))


def manhattan(a: Cell, b: Cell) -> float:
    return float(abs(a[0] - b[0]) + abs(a[1] - b[1]))


def simplify_path(path: Sequence[Point], min_distance: float) -> list[Point]:
    """Drop points closer than `min_distance` to the last kept one.

    The first and last points are always kept, so the final pair may be
    closer than `min_distance`.
    """
    if len(path) <= 2:
        return list(path)
    min_d2 = float(min_distance) ** 2
    out = [path[0]]
    last = path[0]
    for p in path[1:-1]:
        if dist2(p, last) >= min_d2:
            out.append(p)
            last = p
    out.append(path[-1])
    return out


class Pathfinder:
    """A* over a `CostMap` with 4-connected cells.

    Entering a cell costs that cell's value, so the start cell is never
    charged. Equal-priority nodes come off the heap in insertion order.
    """

    def __init__(self, cost_map: CostMap | None = None, min_point_distance: float = MIN_PATH_POINT_DISTANCE) -> None:
        self.cost_map = cost_map
        self.min_point_distance = float(min_point_distance)

    def set_cost_map(self, cost_map: CostMap) -> None:
        # Single reference swap; a search in progress keeps the map it started with.
        self.cost_map = cost_map

    def neighbours(self, cost_map: CostMap, cell: Cell) -> Iterator[Cell]:
        for dx, dz in _NEIGHBOURS:
            nxt = (cell[0] + dx, cell[1] + dz)
            if cost_map.in_bounds(nxt):
                yield nxt

    def search(self, cost_map: CostMap, start: Cell, goal: Cell) -> tuple[Dict[Cell, Cell], Dict[Cell, float]]:
        """Run A* and return the predecessor map (start maps to itself) and the cost so far per cell."""
        counter = itertools.count()
        open_set: list[tuple[float, int, Cell]] = [(0.0, next(counter), start)]
        came_from: Dict[Cell, Cell] = {start: start}
        cost_so_far: Dict[Cell, float] = {start: 0.0}
        costs = cost_map.costs

        while open_set:
            _, _, current = heapq.heappop(open_set)
            if current == goal:
                break
            base = cost_so_far[current]
            for nxt in self.neighbours(cost_map, current):
                step = float(costs[nxt[0], nxt[1]])
                if step == IMPASSABLE:
                    continue
                new_cost = base + step
                if nxt not in cost_so_far or new_cost < cost_so_far[nxt]:
                    cost_so_far[nxt] = new_cost
                    came_from[nxt] = current
                    heapq.heappush(open_set, (new_cost + manhattan(nxt, goal), next(counter), nxt))
        return came_from, cost_so_far

    def reconstruct(
        self,
        cost_map: CostMap,
        came_from: Dict[Cell, Cell],
        start_pos: Sequence[float],
        start: Cell,
        goal: Cell,
    ) -> list[Point]:
        """Cell centres from start to goal, beginning with the exact start position.

        Returns [] when the goal was never reached. A broken predecessor chain
        is logged and the part collected so far is returned.
        """
        if goal not in came_from:
            return []
        path: list[Point] = []
        cell = goal
        while cell != start:
            path.append(cost_map.cell_to_world(cell))
            prev = came_from.get(cell)
            if prev is None:
                log.error("path reconstruction broke at cell %s, returning partial path", cell)
                path.reverse()
                return path
            cell = prev
        path.append((float(start_pos[0]), float(start_pos[1]), float(start_pos[2])))
        path.reverse()
        return path

    def find_path(self, start: Sequence[float], end: Sequence[float]) -> list[Point]:
        """Simplified waypoint list from `start` to `end`; [] when there is no path."""
        cost_map = self.cost_map
        if cost_map is None:
            log.error("no cost map set, cannot search for a path")
            return []

        start_cell = cost_map.world_to_cell(start[0], start[2])
        end_cell = cost_map.world_to_cell(end[0], end[2])
        if not (cost_map.passable(start_cell) and cost_map.passable(end_cell)):
            log.warning(
                "start %s (cost %s) or end %s (cost %s) is impassable",
                start_cell, cost_map.cost(start_cell), end_cell, cost_map.cost(end_cell),
            )
            return []

        came_from, _ = self.search(cost_map, start_cell, end_cell)
        path = self.reconstruct(cost_map, came_from, start, start_cell, end_cell)
        if not path and start_cell != end_cell:
            log.warning("no path from %s to %s", start_cell, end_cell)
            return []
        return simplify_path(path, self.min_point_distance)
