"""
Force-directed layout simulation.

Each tick takes one Fruchterman-Reingold step from networkx's spring
layout, scaled by the cooling alpha, then resolves collisions and pulls
free nodes towards the centre. A simulation owns its node positions
exclusively and has an explicit create/destroy lifecycle; once destroyed
it cannot be ticked, dragged or restarted.
"""

import asyncio
import logging
import math
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import networkx as nx

from .models import LayoutPosition, TopologyGraph

logger = logging.getLogger(__name__)

_GOLDEN_ANGLE = math.pi * (3 - math.sqrt(5))
_INITIAL_RADIUS = 10.0


class SimulationDestroyed(RuntimeError):
    """Raised when a destroyed simulation is used"""


class _SimNode:
    __slots__ = ('id', 'index', 'x', 'y', 'vx', 'vy', 'fx', 'fy', 'radius')

    def __init__(self, node_id: str, index: int, x: float, y: float, radius: float):
        self.id = node_id
        self.index = index
        self.x = x
        self.y = y
        self.vx = 0.0
        self.vy = 0.0
        self.fx: Optional[float] = None
        self.fy: Optional[float] = None
        self.radius = radius

    @property
    def pinned(self) -> bool:
        return self.fx is not None


class ForceSimulation:
    """One live force layout over a fixed node set"""

    def __init__(self, graph: TopologyGraph,
                 positions: Optional[Dict[str, LayoutPosition]] = None,
                 pinned: Iterable[str] = (),
                 link_distance: float = 60.0,
                 collide_radius: float = 18.0,
                 center: Tuple[float, float] = (0.0, 0.0),
                 center_strength: float = 0.05,
                 alpha_min: float = 0.001,
                 velocity_decay: float = 0.4):
        positions = positions or {}
        pinned = set(pinned)

        self.nodes: List[_SimNode] = []
        self._by_id: Dict[str, _SimNode] = {}
        for i, node in enumerate(graph.nodes):
            start = positions.get(node.id)
            if start is not None:
                x, y = start.x, start.y
            else:
                # Phyllotaxis spiral for a deterministic starting point
                r = _INITIAL_RADIUS * math.sqrt(0.5 + i)
                x, y = r * math.cos(i * _GOLDEN_ANGLE), r * math.sin(i * _GOLDEN_ANGLE)
            sim_node = _SimNode(node.id, i, x, y, collide_radius)
            if node.id in pinned or (start is not None and start.pinned):
                sim_node.fx, sim_node.fy = x, y
            self.nodes.append(sim_node)
            self._by_id[node.id] = sim_node

        self._nx = graph.to_networkx(directed=False)
        self._nx.remove_edges_from(list(nx.selfloop_edges(self._nx)))

        self.link_distance = link_distance
        self.center = center
        self.center_strength = center_strength
        self.alpha = 1.0
        self.alpha_min = alpha_min
        self.alpha_decay = 1 - alpha_min ** (1 / 300)
        self.alpha_target = 0.0
        self.velocity_decay = velocity_decay

        self.tick_count = 0
        self.destroyed = False
        self._listeners: Dict[str, List[Callable]] = {'tick': [], 'end': []}
        self._task: Optional[asyncio.Task] = None
        self._interval: Optional[float] = None

    @classmethod
    def create(cls, graph: TopologyGraph, **kwargs) -> 'ForceSimulation':
        simulation = cls(graph, **kwargs)
        logger.debug(f"Created force simulation over {len(simulation.nodes)} nodes, "
                     f"{simulation._nx.number_of_edges()} links")
        return simulation

    def _check_alive(self):
        if self.destroyed:
            raise SimulationDestroyed("Simulation has been destroyed")

    @property
    def settled(self) -> bool:
        return self.alpha < self.alpha_min

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def on(self, event: str, callback: Callable):
        """Register a 'tick' or 'end' listener; callbacks receive the simulation"""
        self._check_alive()
        if event not in self._listeners:
            raise ValueError(f"Unknown simulation event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str):
        for callback in list(self._listeners[event]):
            callback(self)

    def _apply_spring(self, alpha: float):
        """One spring layout step; pinned nodes are passed as fixed"""
        if len(self.nodes) < 2:
            return
        current = {node.id: (node.x, node.y) for node in self.nodes}
        fixed = [node.id for node in self.nodes if node.pinned]
        if len(fixed) == len(self.nodes):
            return

        # Linked pairs rest at k, so link_distance doubles as the spring length
        stepped = nx.spring_layout(self._nx, k=self.link_distance, pos=current,
                                   fixed=fixed or None, iterations=1, scale=None)

        for node in self.nodes:
            if node.pinned:
                continue
            sx, sy = stepped[node.id]
            dx, dy = float(sx) - node.x, float(sy) - node.y
            # networkx sizes a step by the layout extent; cap it so detached parts cannot fly off
            length = math.hypot(dx, dy)
            if length > self.link_distance:
                dx *= self.link_distance / length
                dy *= self.link_distance / length
            node.vx += dx * alpha
            node.vy += dy * alpha

    def _apply_collide(self):
        nodes = self.nodes
        for i in range(len(nodes)):
            a = nodes[i]
            for j in range(i + 1, len(nodes)):
                b = nodes[j]
                min_dist = a.radius + b.radius
                dx = (b.x + b.vx) - (a.x + a.vx)
                dy = (b.y + b.vy) - (a.y + a.vy)
                dist = math.hypot(dx, dy)
                if dist >= min_dist:
                    continue
                if dist == 0:
                    dx, dy, dist = 1e-6, 0.0, 1e-6
                push = (min_dist - dist) / dist * 0.5
                a.vx -= dx * push
                a.vy -= dy * push
                b.vx += dx * push
                b.vy += dy * push

    def _apply_center(self, alpha: float):
        cx, cy = self.center
        for node in self.nodes:
            node.vx += (cx - node.x) * self.center_strength * alpha
            node.vy += (cy - node.y) * self.center_strength * alpha

    def tick(self) -> bool:
        """Advance one step; returns True while the simulation is still moving"""
        self._check_alive()

        self.alpha += (self.alpha_target - self.alpha) * self.alpha_decay
        alpha = self.alpha

        self._apply_spring(alpha)
        self._apply_collide()
        self._apply_center(alpha)

        for node in self.nodes:
            if node.pinned:
                node.x, node.y = node.fx, node.fy
                node.vx = node.vy = 0.0
            else:
                node.vx *= 1 - self.velocity_decay
                node.vy *= 1 - self.velocity_decay
                node.x += node.vx
                node.y += node.vy

        self.tick_count += 1
        self._emit('tick')

        if self.settled:
            self._emit('end')
            return False
        return True

    def run(self, iterations: Optional[int] = None) -> Dict[str, LayoutPosition]:
        """Tick synchronously until settled, or at most ``iterations`` times"""
        self._check_alive()
        steps = 0
        while iterations is None or steps < iterations:
            steps += 1
            if not self.tick():
                break
        return self.positions()

    def start(self, interval: float = 0.0) -> asyncio.Task:
        """Tick on the running event loop until settled or destroyed"""
        self._check_alive()
        self._interval = interval
        if not self.running:
            self._task = asyncio.create_task(self._run_loop(interval))
        return self._task

    async def _run_loop(self, interval: float):
        try:
            while not self.destroyed:
                if not self.tick():
                    break
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.debug("Force simulation loop cancelled")
            raise

    def restart(self, alpha_target: float = 0.3):
        """Reheat after an interaction; resumes the async loop when one was started"""
        self._check_alive()
        self.alpha_target = alpha_target
        if self.alpha < alpha_target:
            self.alpha = alpha_target
        if self._interval is not None and not self.running:
            self._task = asyncio.create_task(self._run_loop(self._interval))

    def destroy(self):
        """Stop ticking and release listeners; safe to call twice"""
        if self.destroyed:
            return
        self.destroyed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        for listeners in self._listeners.values():
            listeners.clear()
        logger.debug("Force simulation destroyed")

    def _node(self, node_id: str) -> _SimNode:
        self._check_alive()
        node = self._by_id.get(node_id)
        if node is None:
            raise KeyError(node_id)
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self._by_id

    def drag_start(self, node_id: str):
        node = self._node(node_id)
        node.fx, node.fy = node.x, node.y
        self.restart()

    def drag_to(self, node_id: str, x: float, y: float):
        node = self._node(node_id)
        node.fx, node.fy = x, y
        node.x, node.y = x, y

    def drag_end(self, node_id: str, keep_pinned: bool = False):
        """Release a dragged node; it stays fixed at its last spot when ``keep_pinned``"""
        node = self._node(node_id)
        if not keep_pinned:
            node.fx = node.fy = None
        self.alpha_target = 0.0

    def positions(self) -> Dict[str, LayoutPosition]:
        return {
            node.id: LayoutPosition(node_id=node.id, x=node.x, y=node.y, pinned=node.pinned)
            for node in self.nodes
        }
