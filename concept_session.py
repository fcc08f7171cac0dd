"""Concept-map sessions: one graph, layout engine and tick loop per view."""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Iterable, List, Mapping, Optional

from concept_graph import (
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_VIEWPORT_WIDTH,
    ConceptGraph,
    MergeResult,
    Viewport,
)
from engines.force_layout import ForceLayoutEngine, LayoutFrame, LayoutParams
from engines.layout_loop import LayoutLoop
from schemas import ChatMessage, ConceptMapProposal, new_id

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Welcome to the Concept Lab! Let's build a map together. Pick a topic "
    '(e.g., "Photosynthesis" or "Democracy") and I\'ll help you connect the dots.'
)


class ConceptMapSession:
    """Owns the mutable state of one concept-map view.

    Renderers only ever receive :class:`LayoutFrame` snapshots; the graph and
    engine stay private to the session.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        *,
        viewport: Optional[Viewport] = None,
        graph: Optional[ConceptGraph] = None,
        params: Optional[LayoutParams] = None,
        rng: Optional[random.Random] = None,
        interval: Optional[float] = None,
    ) -> None:
        self.session_id = session_id or new_id()
        viewport = viewport or (graph.viewport if graph is not None else Viewport())
        self.graph = graph or ConceptGraph(viewport=viewport, rng=rng)
        self.graph.viewport = viewport
        self.engine = ForceLayoutEngine(self.graph, viewport=viewport, params=params)
        self.loop = LayoutLoop(self.engine.tick, interval=interval, name=f"layout:{self.session_id}")
        self.messages: List[ChatMessage] = [ChatMessage(id="init", role="model", text=WELCOME_MESSAGE)]

    # ------------------------------------------------------------------
    def apply_proposal(self, proposal: ConceptMapProposal | Mapping[str, Any] | None) -> MergeResult:
        if proposal is None:
            return MergeResult()
        if not isinstance(proposal, ConceptMapProposal):
            proposal = ConceptMapProposal.from_payload(proposal)
        if proposal.is_empty:
            return MergeResult()
        result = self.graph.merge(proposal.node_labels(), proposal.link_dicts())
        if result.changed:
            logger.info(
                "Concept map %s grew by %d node(s) and %d link(s)",
                self.session_id,
                len(result.added_nodes),
                len(result.added_links),
            )
        return result

    def merge(self, labels: Iterable[Any], links: Iterable[Any] = ()) -> MergeResult:
        return self.graph.merge(labels, links)

    def resize(self, width: float, height: float) -> Viewport:
        viewport = Viewport(width=float(width), height=float(height))
        self.graph.viewport = viewport
        self.engine.viewport = viewport
        return viewport

    @property
    def viewport(self) -> Viewport:
        return self.engine.viewport

    # ------------------------------------------------------------------
    def drag_start(self, node_id: str, x: Optional[float] = None, y: Optional[float] = None) -> bool:
        pointer = (float(x), float(y)) if x is not None and y is not None else None
        return self.engine.drag_start(node_id, pointer)

    def drag_move(self, x: float, y: float) -> None:
        self.engine.drag_move(x, y)

    def drag_end(self) -> Optional[str]:
        return self.engine.drag_end()

    def frame(self) -> LayoutFrame:
        return self.engine.snapshot()

    # ------------------------------------------------------------------
    def add_message(self, message: ChatMessage) -> None:
        self.messages.append(message)

    def start(self) -> None:
        self.loop.start()

    async def close(self) -> None:
        await self.loop.stop()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "viewport": {"width": self.viewport.width, "height": self.viewport.height},
            "graph": self.graph.to_dict(),
            "messages": [m.model_dump(mode="json") for m in self.messages],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], **kwargs: Any) -> "ConceptMapSession":
        raw_viewport = payload.get("viewport") or {}
        viewport = kwargs.pop("viewport", None) or Viewport(
            width=float(raw_viewport.get("width") or DEFAULT_VIEWPORT_WIDTH),
            height=float(raw_viewport.get("height") or DEFAULT_VIEWPORT_HEIGHT),
        )
        graph = ConceptGraph.from_dict(payload.get("graph") or {}, viewport=viewport, rng=kwargs.pop("rng", None))
        session = cls(payload.get("session_id"), viewport=viewport, graph=graph, **kwargs)
        messages = []
        for raw in payload.get("messages") or []:
            try:
                messages.append(ChatMessage.model_validate(raw))
            except ValueError:
                logger.debug("Skipping malformed stored chat message: %r", raw)
        if messages:
            session.messages = messages
        return session


class SessionRegistry:
    """Live concept-map sessions keyed by id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ConceptMapSession] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: ConceptMapSession) -> ConceptMapSession:
        self._sessions[session.session_id] = session
        return session

    def create(self, session_id: Optional[str] = None, **kwargs: Any) -> ConceptMapSession:
        return self.add(ConceptMapSession(session_id, **kwargs))

    def get(self, session_id: str) -> Optional[ConceptMapSession]:
        return self._sessions.get(session_id)

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
