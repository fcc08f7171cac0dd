"""Pydantic schemas for model outputs, stored records and JSON helpers."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Dict, Literal, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "ProposedNode",
    "ProposedLink",
    "ConceptMapProposal",
    "StudentProfile",
    "StudentMemory",
    "RoadmapNode",
    "Roadmap",
    "Note",
    "ChatMessage",
    "ChatSession",
    "ExamQuestion",
    "Exam",
    "ExamCorrection",
    "ExamResult",
    "UserStats",
    "now_ms",
    "new_id",
    "parse_json_safe",
    "parse_json_lenient",
]

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Concept-map proposals
# ---------------------------------------------------------------------------


class ProposedNode(BaseModel):
    label: str


class ProposedLink(BaseModel):
    source: str
    target: str
    label: str | None = None


def _list_field(payload: Dict[str, Any], *names: str) -> list[Any]:
    """First of ``names`` holding a list; anything else counts as empty."""

    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, list):
            return value
        logger.debug("Ignoring non-list %s in concept map proposal: %r", name, value)
        return []
    return []


class ConceptMapProposal(BaseModel):
    """New nodes/links suggested by the model for one conversation turn."""

    new_nodes: list[ProposedNode] = Field(default_factory=list, alias="newNodes")
    new_links: list[ProposedLink] = Field(default_factory=list, alias="newLinks")

    model_config = {
        "populate_by_name": True,
    }

    @property
    def is_empty(self) -> bool:
        return not self.new_nodes and not self.new_links

    def node_labels(self) -> list[str]:
        return [node.label for node in self.new_nodes]

    def link_dicts(self) -> list[Dict[str, Any]]:
        return [link.model_dump() for link in self.new_links]

    @classmethod
    def from_payload(cls, payload: Any) -> "ConceptMapProposal":
        """Build a proposal from loosely shaped JSON, dropping malformed entries."""

        if not isinstance(payload, dict):
            return cls()

        nodes: list[ProposedNode] = []
        for raw in _list_field(payload, "newNodes", "new_nodes"):
            if isinstance(raw, str):
                raw = {"label": raw}
            try:
                nodes.append(ProposedNode.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed proposed node: %r", raw)

        links: list[ProposedLink] = []
        for raw in _list_field(payload, "newLinks", "new_links"):
            try:
                links.append(ProposedLink.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed proposed link: %r", raw)

        return cls(new_nodes=nodes, new_links=links)


# ---------------------------------------------------------------------------
# Learner records
# ---------------------------------------------------------------------------


class StudentProfile(BaseModel):
    name: str
    education_level: str = Field(default="", alias="educationLevel")
    subjects: list[str] = Field(default_factory=list)

    model_config = {
        "populate_by_name": True,
    }

    def describe(self) -> str:
        subjects = ", ".join(self.subjects) if self.subjects else "various subjects"
        return f"The student is {self.name}, in {self.education_level or 'an unspecified level'}, studying {subjects}."


class StudentMemory(BaseModel):
    misconceptions: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    last_topic: str | None = None


class RoadmapNode(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    completed: bool = False


class Roadmap(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    nodes: list[RoadmapNode] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    completed: bool = False


class Note(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "Untitled"
    content: str = Field(default="", description="Rich-text body stored as HTML.")
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    tags: list[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Literal["user", "model"]
    text: str
    timestamp: int = Field(default_factory=now_ms)


class ChatSession(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "New Chat"
    messages: list[ChatMessage] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms)


class ExamQuestion(BaseModel):
    id: str = Field(default_factory=new_id)
    question: str
    type: Literal["multiple_choice", "short_answer", "fill_in_blank", "ordering"] = "short_answer"
    options: list[str] | None = Field(
        default=None,
        description="Choices for multiple choice, or items in random order for ordering questions.",
    )


class Exam(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str = "Exam"
    questions: list[ExamQuestion] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)


class ExamCorrection(BaseModel):
    question_id: str = Field(alias="questionId")
    is_correct: bool = Field(alias="isCorrect")
    explanation: str = ""

    model_config = {
        "populate_by_name": True,
    }


class ExamResult(BaseModel):
    score: float = Field(default=0.0, ge=0.0, le=100.0)
    feedback: str = ""
    areas_for_improvement: list[str] = Field(default_factory=list, alias="areasForImprovement")
    corrections: list[ExamCorrection] = Field(default_factory=list)

    model_config = {
        "populate_by_name": True,
    }


class UserStats(BaseModel):
    xp: int = 0
    streak: int = 1
    last_login_date: str = Field(description="ISO date (YYYY-MM-DD) of the last visit.")
    completed_nodes: int = 0
    study_time_seconds: int = 0
    daily_study_time: Dict[str, int] = Field(default_factory=dict)
    badges: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

_T = TypeVar("_T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise


def parse_json_lenient(text: str | None, fallback: Any) -> Any:
    """Best-effort JSON decoding of model output.

    Tries the raw text, then strips Markdown code fences and cuts out the
    outermost object or array. Returns ``fallback`` when nothing parses.
    """

    if not text:
        return fallback
    try:
        return json.loads(text)
    except ValueError:
        pass

    clean = _FENCE_RE.sub("", text).replace("```", "")
    first_brace = clean.find("{")
    first_bracket = clean.find("[")
    if first_brace != -1 and (first_bracket == -1 or first_brace < first_bracket):
        start, end = first_brace, clean.rfind("}") + 1
    elif first_bracket != -1:
        start, end = first_bracket, clean.rfind("]") + 1
    else:
        start, end = 0, len(clean)
    if end > start:
        clean = clean[start:end]

    try:
        return json.loads(clean)
    except ValueError as exc:
        logger.warning("Failed to parse JSON response: %s", exc)
        return fallback
