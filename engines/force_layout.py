"""Incremental force-directed layout for live concept maps."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from concept_graph import ConceptGraph, ConceptLink, ConceptNode, Viewport

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
Dimensions = Callable[[str], Tuple[float, float]]

NODE_MIN_WIDTH = 120.0
NODE_CHAR_WIDTH = 9.0
NODE_LABEL_PADDING = 30.0
NODE_HEIGHT = 44.0
EDGE_BORDER_ALLOWANCE = 4.0


def node_dimensions(label: str) -> Tuple[float, float]:
    """Width/height of the rectangle a node with ``label`` occupies."""

    width = max(NODE_MIN_WIDTH, len(label) * NODE_CHAR_WIDTH + NODE_LABEL_PADDING)
    return width, NODE_HEIGHT


def edge_anchor(origin: Point, target: Point, width: float, height: float) -> Point:
    """Point where the segment ``origin -> target`` enters the target's rectangle.

    The rectangle is grown by a small border allowance so arrowheads land on
    the drawn outline. Centres closer than one unit on both axes return the
    target centre unchanged.
    """

    dx = target[0] - origin[0]
    dy = target[1] - origin[1]
    w = width + EDGE_BORDER_ALLOWANCE
    h = height + EDGE_BORDER_ALLOWANCE

    if abs(dx) < 1 and abs(dy) < 1:
        return target

    if abs(dx) * h > abs(dy) * w:
        # vertical side
        ix = -w / 2 if dx > 0 else w / 2
        iy = ix * dy / dx
    else:
        iy = -h / 2 if dy > 0 else h / 2
        ix = iy * dx / dy if dy != 0 else 0.0

    return target[0] + ix, target[1] + iy


def edge_endpoints(
    source: ConceptNode,
    target: ConceptNode,
    dimensions: Dimensions = node_dimensions,
) -> Tuple[Point, Point]:
    """Start/end of a drawn edge, clipped to both node borders."""

    source_w, source_h = dimensions(source.label)
    target_w, target_h = dimensions(target.label)
    start = edge_anchor((target.x, target.y), (source.x, source.y), source_w, source_h)
    end = edge_anchor((source.x, source.y), (target.x, target.y), target_w, target_h)
    return start, end


@dataclass
class LayoutParams:
    """Tuning constants of the simulation."""

    k: float = 250.0
    repulsion_factor: float = 8.0
    repulsion_scale: float = 0.05
    centering: float = 0.005
    spring: float = 0.03
    collision_padding: float = 30.0
    collision_passes: int = 3
    collision_damping: float = 0.1
    damping: float = 0.65
    max_velocity: float = 8.0
    velocity_epsilon: float = 0.05
    boundary_margin: float = 60.0
    alpha_decay: float = 0.98
    alpha_min: float = 0.01


@dataclass
class DragState:
    """Pointer interaction state, written only by drag events."""

    dragged_node_id: Optional[str] = None
    pointer: Optional[Point] = None

    @property
    def active(self) -> bool:
        return self.dragged_node_id is not None

    def start(self, node_id: str, pointer: Point) -> None:
        self.dragged_node_id = node_id
        self.pointer = pointer

    def move(self, pointer: Point) -> None:
        if self.dragged_node_id is not None:
            self.pointer = pointer

    def end(self) -> Optional[str]:
        released = self.dragged_node_id
        self.dragged_node_id = None
        self.pointer = None
        return released


@dataclass
class SimulationClock:
    """Decaying "settling" signal; reheated whenever new nodes appear.

    It never stops the simulation, ticking continues while the view lives.
    """

    alpha: float = 1.0

    def reheat(self) -> None:
        self.alpha = 1.0

    def decay(self, factor: float, floor: float) -> None:
        if self.alpha > floor:
            self.alpha *= factor


@dataclass
class LayoutFrame:
    """Read-only sample of the layout for one rendered frame."""

    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)
    alpha: float = 1.0
    tick: int = 0
    dragged_node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": self.nodes,
            "edges": self.edges,
            "alpha": self.alpha,
            "tick": self.tick,
            "dragged_node_id": self.dragged_node_id,
        }


def resolve_collisions(
    nodes: Sequence[ConceptNode],
    params: LayoutParams,
    dragged_id: Optional[str] = None,
    dimensions: Dimensions = node_dimensions,
) -> None:
    """Push overlapping footprints apart along their axis of least overlap.

    Several passes run because separating one pair can push a node into a
    third one. A dragged node is never moved but still has its velocity damped.
    """

    sizes = [dimensions(node.label) for node in nodes]
    padding = params.collision_padding
    for _ in range(max(1, params.collision_passes)):
        for i, u in enumerate(nodes):
            u_w, u_h = sizes[i]
            for j in range(i + 1, len(nodes)):
                v = nodes[j]
                v_w, v_h = sizes[j]
                dx = u.x - v.x
                dy = u.y - v.y
                min_w = (u_w + v_w) / 2 + padding
                min_h = (u_h + v_h) / 2 + padding
                if abs(dx) >= min_w or abs(dy) >= min_h:
                    continue

                overlap_x = min_w - abs(dx)
                overlap_y = min_h - abs(dy)
                if overlap_x < overlap_y:
                    sign = 1.0 if dx > 0 else -1.0
                    push = overlap_x / 2
                    if u.id != dragged_id:
                        u.x += sign * push
                    if v.id != dragged_id:
                        v.x -= sign * push
                    u.vx *= params.collision_damping
                    v.vx *= params.collision_damping
                else:
                    sign = 1.0 if dy > 0 else -1.0
                    push = overlap_y / 2
                    if u.id != dragged_id:
                        u.y += sign * push
                    if v.id != dragged_id:
                        v.y -= sign * push
                    u.vy *= params.collision_damping
                    v.vy *= params.collision_damping


class ForceLayoutEngine:
    """Per-frame physics over the nodes and links of a :class:`ConceptGraph`.

    Each :meth:`tick` accumulates repulsion, centering and spring forces into
    node velocities, resolves footprint overlaps, then damps, clamps and
    integrates velocities into positions (semi-implicit Euler) and keeps every
    node inside the viewport margin. A dragged node is pinned to the pointer.
    """

    def __init__(
        self,
        graph: ConceptGraph,
        viewport: Optional[Viewport] = None,
        params: Optional[LayoutParams] = None,
        dimensions: Dimensions = node_dimensions,
    ) -> None:
        self.graph = graph
        self.viewport = viewport or graph.viewport
        self.params = params or LayoutParams()
        self.dimensions = dimensions
        self.drag = DragState()
        self.clock = SimulationClock()
        self.ticks = 0
        self._known_ids: set[str] = set()
        self._seen_revision = -1

    # ------------------------------------------------------------------
    def sync(self) -> List[str]:
        """Pick up nodes the graph gained since the last look."""

        if self.graph.revision == self._seen_revision:
            return []
        self._seen_revision = self.graph.revision
        current = {node.id for node in self.graph.nodes}
        appeared = [node_id for node_id in current if node_id not in self._known_ids]
        self._known_ids = current
        if appeared:
            self.clock.reheat()
            logger.debug("Layout picked up %d new node(s)", len(appeared))
        if self.drag.dragged_node_id is not None and self.drag.dragged_node_id not in current:
            self.drag.end()
        return appeared

    # ------------------------------------------------------------------
    def drag_start(self, node_id: str, pointer: Optional[Point] = None) -> bool:
        node = self.graph.get(node_id)
        if node is None:
            return False
        self.drag.start(node_id, pointer if pointer is not None else (node.x, node.y))
        return True

    def drag_move(self, x: float, y: float) -> None:
        self.drag.move((float(x), float(y)))

    def drag_end(self) -> Optional[str]:
        released = self.drag.end()
        if released is not None:
            node = self.graph.get(released)
            if node is not None:
                node.vx = 0.0
                node.vy = 0.0
        return released

    # ------------------------------------------------------------------
    def tick(self, viewport: Optional[Viewport] = None) -> None:
        if viewport is not None:
            self.viewport = viewport
        self.sync()

        nodes = self.graph.nodes
        params = self.params
        width, height = self.viewport.width, self.viewport.height
        dragged_id = self.drag.dragged_node_id
        pinned = self.graph.get(dragged_id) if dragged_id is not None else None
        if pinned is not None and self.drag.pointer is not None:
            pinned.x, pinned.y = self.drag.pointer
            pinned.vx = pinned.vy = 0.0

        self._apply_repulsion(nodes, dragged_id)
        self._apply_centering(nodes, dragged_id, width / 2, height / 2)
        self._apply_springs(self.graph.links, dragged_id)
        resolve_collisions(nodes, params, dragged_id, self.dimensions)
        self._integrate(nodes, dragged_id)
        self._clamp(nodes, width, height)

        self.clock.decay(params.alpha_decay, params.alpha_min)
        self.ticks += 1

    def _apply_repulsion(self, nodes: Sequence[ConceptNode], dragged_id: Optional[str]) -> None:
        params = self.params
        strength = params.k * params.k * params.repulsion_factor
        scale = params.repulsion_scale
        for i, u in enumerate(nodes):
            for j in range(i + 1, len(nodes)):
                v = nodes[j]
                dx = u.x - v.x
                dy = u.y - v.y
                dist_sq = max(dx * dx + dy * dy, 1.0)
                dist = math.sqrt(dist_sq)
                force = strength / dist_sq
                fx = dx / dist * force * scale
                fy = dy / dist * force * scale
                if u.id != dragged_id:
                    u.vx += fx
                    u.vy += fy
                if v.id != dragged_id:
                    v.vx -= fx
                    v.vy -= fy

    def _apply_centering(
        self,
        nodes: Sequence[ConceptNode],
        dragged_id: Optional[str],
        cx: float,
        cy: float,
    ) -> None:
        pull = self.params.centering
        for node in nodes:
            if node.id == dragged_id:
                continue
            node.vx += (cx - node.x) * pull
            node.vy += (cy - node.y) * pull

    def _apply_springs(self, links: Sequence[ConceptLink], dragged_id: Optional[str]) -> None:
        params = self.params
        for link in links:
            source = self.graph.resolve_label(link.source)
            target = self.graph.resolve_label(link.target)
            if source is None or target is None or source is target:
                continue
            dx = target.x - source.x
            dy = target.y - source.y
            dist = math.sqrt(dx * dx + dy * dy) or 1.0
            force = (dist - params.k) * params.spring
            fx = dx / dist * force
            fy = dy / dist * force
            if source.id != dragged_id:
                source.vx += fx
                source.vy += fy
            if target.id != dragged_id:
                target.vx -= fx
                target.vy -= fy

    def _integrate(self, nodes: Sequence[ConceptNode], dragged_id: Optional[str]) -> None:
        params = self.params
        limit = params.max_velocity
        for node in nodes:
            if node.id == dragged_id:
                if self.drag.pointer is not None:
                    node.x, node.y = self.drag.pointer
                node.vx = node.vy = 0.0
                continue
            vx = max(-limit, min(limit, node.vx * params.damping))
            vy = max(-limit, min(limit, node.vy * params.damping))
            if abs(vx) < params.velocity_epsilon:
                vx = 0.0
            if abs(vy) < params.velocity_epsilon:
                vy = 0.0
            node.vx, node.vy = vx, vy
            node.x += vx
            node.y += vy

    def _clamp(self, nodes: Sequence[ConceptNode], width: float, height: float) -> None:
        margin = self.params.boundary_margin
        for node in nodes:
            node.x = max(margin, min(width - margin, node.x))
            node.y = max(margin, min(height - margin, node.y))

    # ------------------------------------------------------------------
    def snapshot(self) -> LayoutFrame:
        """Current positions and clipped edge geometry; does not mutate state."""

        nodes = []
        for node in self.graph.nodes:
            width, height = self.dimensions(node.label)
            nodes.append(
                {
                    "id": node.id,
                    "label": node.label,
                    "x": node.x,
                    "y": node.y,
                    "width": width,
                    "height": height,
                }
            )

        edges = []
        for link in self.graph.links:
            source = self.graph.resolve_label(link.source)
            target = self.graph.resolve_label(link.target)
            if source is None or target is None:
                continue
            start, end = edge_endpoints(source, target, self.dimensions)
            edges.append(
                {
                    "source": source.label,
                    "target": target.label,
                    "label": link.label,
                    "start": {"x": start[0], "y": start[1]},
                    "end": {"x": end[0], "y": end[1]},
                }
            )

        return LayoutFrame(
            nodes=nodes,
            edges=edges,
            alpha=self.clock.alpha,
            tick=self.ticks,
            dragged_node_id=self.drag.dragged_node_id,
        )
