"""Canonical concept graph built up turn by turn from tutoring conversations."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

SPAWN_RING_RADIUS = 80.0
SPAWN_JITTER = 50.0

DEFAULT_VIEWPORT_WIDTH = 800.0
DEFAULT_VIEWPORT_HEIGHT = 600.0


def node_id_for(label: str) -> str:
    """Stable identifier for ``label``; labels differing only in case share it."""

    return label.lower()


@dataclass(frozen=True)
class Viewport:
    """Drawable area the concept map is laid out on."""

    width: float = DEFAULT_VIEWPORT_WIDTH
    height: float = DEFAULT_VIEWPORT_HEIGHT

    @property
    def center(self) -> Tuple[float, float]:
        return self.width / 2.0, self.height / 2.0


@dataclass
class ConceptNode:
    """A labelled point on the canvas, mutated every simulation tick."""

    id: str
    label: str
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "x": self.x,
            "y": self.y,
            "vx": self.vx,
            "vy": self.vy,
        }


@dataclass
class ConceptLink:
    """Directed relationship between two nodes, referenced by label."""

    source: str
    target: str
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "target": self.target, "label": self.label}


@dataclass
class MergeResult:
    added_nodes: List[ConceptNode] = field(default_factory=list)
    added_links: List[ConceptLink] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added_nodes or self.added_links)


def _candidate_label(raw: Any) -> Optional[str]:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, Mapping):
        value = raw.get("label")
        return value if isinstance(value, str) else None
    value = getattr(raw, "label", None)
    return value if isinstance(value, str) else None


def _candidate_link(raw: Any) -> Optional[ConceptLink]:
    if isinstance(raw, ConceptLink):
        return raw
    if isinstance(raw, Mapping):
        source, target, label = raw.get("source"), raw.get("target"), raw.get("label")
    else:
        source = getattr(raw, "source", None)
        target = getattr(raw, "target", None)
        label = getattr(raw, "label", None)
    if not isinstance(source, str) or not isinstance(target, str):
        return None
    return ConceptLink(source=source, target=target, label=label if isinstance(label, str) else None)


class ConceptGraph:
    """Owns the concept nodes and labelled links of one concept-map session.

    Links reference their endpoints by label. Every lookup from a label to a
    node goes through :meth:`resolve_label`, which matches case-insensitively.
    The graph knows nothing about the layout engine; observers compare
    :attr:`revision` to notice changes.
    """

    def __init__(self, viewport: Optional[Viewport] = None, rng: Optional[random.Random] = None) -> None:
        self.viewport = viewport or Viewport()
        self.rng = rng or random.Random()
        self._nodes: Dict[str, ConceptNode] = {}
        self._label_index: Dict[str, str] = {}
        self._links: List[ConceptLink] = []
        self._link_pairs: Set[Tuple[str, str]] = set()
        self.revision = 0

    # ------------------------------------------------------------------
    @property
    def nodes(self) -> List[ConceptNode]:
        return list(self._nodes.values())

    @property
    def links(self) -> List[ConceptLink]:
        return list(self._links)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ConceptNode]:
        return iter(list(self._nodes.values()))

    def labels(self) -> List[str]:
        return [node.label for node in self._nodes.values()]

    def get(self, node_id: str) -> Optional[ConceptNode]:
        return self._nodes.get(node_id)

    def resolve_label(self, label: str) -> Optional[ConceptNode]:
        node_id = self._label_index.get(label.lower())
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def has_link(self, source: str, target: str) -> bool:
        return (source, target) in self._link_pairs

    # ------------------------------------------------------------------
    def merge(
        self,
        candidate_nodes: Iterable[Any],
        candidate_links: Iterable[Any] = (),
    ) -> MergeResult:
        """Fold proposed nodes and links into the graph.

        Nodes whose label already exists (ignoring case) are absorbed. A new
        node spawns on a ring around the first already-placed neighbour that
        one of ``candidate_links`` connects it to, otherwise near the viewport
        centre. Links are kept only when both endpoints resolve after the
        nodes are merged and the ordered pair is not already present; stored
        endpoints use the canonical label casing.
        """

        links = [link for link in (_candidate_link(raw) for raw in candidate_links) if link is not None]
        result = MergeResult()

        for raw in candidate_nodes:
            label = _candidate_label(raw)
            if label is None or self.resolve_label(label) is not None:
                continue
            x, y = self._spawn_position(label, links)
            node = ConceptNode(id=node_id_for(label), label=label, x=x, y=y)
            self._insert_node(node)
            result.added_nodes.append(node)

        for link in links:
            source = self.resolve_label(link.source)
            target = self.resolve_label(link.target)
            if source is None or target is None:
                continue
            pair = (source.label, target.label)
            if pair in self._link_pairs:
                continue
            stored = ConceptLink(source=source.label, target=target.label, label=link.label)
            self._links.append(stored)
            self._link_pairs.add(pair)
            result.added_links.append(stored)

        if result.changed:
            self.revision += 1
        return result

    def _spawn_position(self, label: str, links: Sequence[ConceptLink]) -> Tuple[float, float]:
        key = label.lower()
        for link in links:
            if link.source.lower() == key:
                peer_label = link.target
            elif link.target.lower() == key:
                peer_label = link.source
            else:
                continue
            peer = self.resolve_label(peer_label)
            if peer is None:
                continue
            angle = self.rng.uniform(0.0, 2.0 * math.pi)
            return (
                peer.x + math.cos(angle) * SPAWN_RING_RADIUS,
                peer.y + math.sin(angle) * SPAWN_RING_RADIUS,
            )

        cx, cy = self.viewport.center
        return (
            cx + self.rng.uniform(-SPAWN_JITTER, SPAWN_JITTER),
            cy + self.rng.uniform(-SPAWN_JITTER, SPAWN_JITTER),
        )

    def _insert_node(self, node: ConceptNode) -> None:
        self._nodes[node.id] = node
        self._label_index[node.label.lower()] = node.id

    # ------------------------------------------------------------------
    def relabel(self, node_id: str, new_label: str) -> bool:
        """Change a node's label in place, keeping its id and its links."""

        node = self._nodes.get(node_id)
        if node is None:
            return False
        clash = self.resolve_label(new_label)
        if clash is not None and clash.id != node_id:
            return False
        old_label = node.label
        if old_label == new_label:
            return False

        del self._label_index[old_label.lower()]
        node.label = new_label
        self._label_index[new_label.lower()] = node_id

        for link in self._links:
            if link.source == old_label:
                link.source = new_label
            if link.target == old_label:
                link.target = new_label
        self._link_pairs = {(link.source, link.target) for link in self._links}
        self.revision += 1
        return True

    def remove(self, label: str) -> Optional[ConceptNode]:
        """Drop a node and every link touching it."""

        node = self.resolve_label(label)
        if node is None:
            return None
        del self._nodes[node.id]
        del self._label_index[node.label.lower()]
        self._links = [
            link for link in self._links if link.source != node.label and link.target != node.label
        ]
        self._link_pairs = {(link.source, link.target) for link in self._links}
        self.revision += 1
        return node

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "links": [link.to_dict() for link in self._links],
        }

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        *,
        viewport: Optional[Viewport] = None,
        rng: Optional[random.Random] = None,
    ) -> "ConceptGraph":
        """Rebuild a stored graph, keeping saved positions."""

        graph = cls(viewport=viewport, rng=rng)
        for raw in payload.get("nodes") or []:
            if not isinstance(raw, Mapping):
                continue
            label = _candidate_label(raw)
            if label is None or graph.resolve_label(label) is not None:
                continue
            node = ConceptNode(
                id=str(raw.get("id") or node_id_for(label)),
                label=label,
                x=float(raw.get("x") or 0.0),
                y=float(raw.get("y") or 0.0),
                vx=float(raw.get("vx") or 0.0),
                vy=float(raw.get("vy") or 0.0),
            )
            graph._insert_node(node)
        graph.merge((), payload.get("links") or [])
        graph.revision = 1 if graph._nodes else 0
        return graph
