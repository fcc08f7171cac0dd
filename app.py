# app.py — Concept Lab tutoring backend
# - Socratic chat, roadmaps, exams and notes over a local key/value store
# - Live concept maps: merged turn by turn, laid out by a per-session tick loop

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db, tutor
from concept_graph import Viewport
from concept_session import ConceptMapSession, SessionRegistry
from schemas import (
    ChatMessage,
    ChatSession,
    ConceptMapProposal,
    Exam,
    ExamResult,
    Note,
    Roadmap,
    StudentProfile,
    UserStats,
)
from tutor import LLMError, SocraticLevel

logger = logging.getLogger(__name__)

CONCEPT_SESSIONS = SessionRegistry()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("LLM endpoint: %s | model: %s | concept model: %s",
                    tutor.LLM_URL, tutor.MODEL_ID, tutor.FAST_MODEL_ID)
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        await CONCEPT_SESSIONS.close_all()
        db._pool.close_all()


app = FastAPI(title="Concept Lab", version="1.0.0", lifespan=_lifespan)


def _llm_failure(exc: LLMError) -> HTTPException:
    logger.error("LLM request failed: %s", exc)
    return HTTPException(status_code=502, detail=str(exc))


def _require_session(session_id: str) -> ConceptMapSession:
    session = CONCEPT_SESSIONS.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown concept map: {session_id}")
    return session


# ---------- Request bodies ----------
class ThemeBody(BaseModel):
    theme: str


class RoadmapBody(BaseModel):
    topic: str = Field(min_length=1)


class ChatTurnBody(BaseModel):
    text: str = Field(min_length=1)
    level: SocraticLevel = SocraticLevel.MEDIUM


class ExamBody(BaseModel):
    content: str = Field(min_length=1)


class ExamEvaluationBody(BaseModel):
    exam: Exam
    answers: Dict[str, str] = Field(default_factory=dict)


class ConceptMapCreateBody(BaseModel):
    session_id: Optional[str] = None
    width: float = Field(default=800.0, gt=0)
    height: float = Field(default=600.0, gt=0)


class ViewportBody(BaseModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class DragStartBody(BaseModel):
    node_id: str
    x: Optional[float] = None
    y: Optional[float] = None


class DragMoveBody(BaseModel):
    x: float
    y: float


# ---------- Profile, stats, theme ----------
@app.get("/")
def root():
    return {"status": "ok", "concept_maps": len(CONCEPT_SESSIONS)}


@app.get("/profile")
def profile_get():
    return {"profile": db.get_profile(), "memory": db.get_memory()}


@app.post("/profile", response_model=StudentProfile)
def profile_save(profile: StudentProfile):
    db.save_profile(profile)
    return profile


@app.get("/stats", response_model=UserStats)
def stats_get():
    return db.get_stats()


@app.get("/theme")
def theme_get():
    return {"theme": db.get_theme()}


@app.post("/theme")
def theme_save(body: ThemeBody):
    try:
        db.save_theme(body.theme)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"theme": body.theme}


# ---------- Roadmaps ----------
@app.get("/roadmaps", response_model=List[Roadmap])
def roadmaps_list():
    return db.list_roadmaps()


@app.post("/roadmaps", response_model=Roadmap)
def roadmaps_create(body: RoadmapBody):
    try:
        roadmap = tutor.generate_roadmap(body.topic, db.get_profile())
    except LLMError as exc:
        raise _llm_failure(exc)
    db.add_roadmap(roadmap)
    return roadmap


@app.post("/roadmaps/{roadmap_id}/nodes/{node_id}/complete", response_model=Roadmap)
def roadmaps_complete_node(roadmap_id: str, node_id: str):
    roadmap = db.complete_roadmap_node(roadmap_id, node_id)
    if roadmap is None:
        raise HTTPException(status_code=404, detail="Unknown roadmap or milestone")
    return roadmap


# ---------- Notes ----------
@app.get("/notes", response_model=List[Note])
def notes_list():
    return db.list_notes()


@app.post("/notes", response_model=Note)
def notes_save(note: Note):
    return db.upsert_note(note)


@app.delete("/notes/{note_id}")
def notes_delete(note_id: str):
    if not db.delete_note(note_id):
        raise HTTPException(status_code=404, detail="Unknown note")
    return {"deleted": note_id}


# ---------- Text tutor ----------
@app.get("/chats", response_model=List[ChatSession])
def chats_list():
    return db.list_chat_sessions()


@app.post("/chats")
def chats_create():
    return {"id": db.create_chat_session()}


@app.delete("/chats/{session_id}")
def chats_delete(session_id: str):
    db.delete_chat_session(session_id)
    return {"deleted": session_id}


@app.post("/chats/{session_id}/messages", response_model=ChatSession)
async def chats_send(session_id: str, body: ChatTurnBody):
    session = await asyncio.to_thread(db.get_chat_session, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown chat session")

    profile = await asyncio.to_thread(db.get_profile)
    user_msg = ChatMessage(role="user", text=body.text)
    try:
        reply = await asyncio.to_thread(
            tutor.send_text_message,
            session.messages,
            body.text,
            body.level,
            profile,
        )
    except LLMError as exc:
        raise _llm_failure(exc)

    messages = [*session.messages, user_msg, ChatMessage(role="model", text=reply or "Thinking...")]
    return await asyncio.to_thread(db.save_chat_messages, session_id, messages)


# ---------- Exams ----------
@app.post("/exams", response_model=Exam)
def exams_create(body: ExamBody):
    try:
        return tutor.generate_exam(body.content, db.get_profile())
    except LLMError as exc:
        raise _llm_failure(exc)


@app.post("/exams/evaluate", response_model=ExamResult)
def exams_evaluate(body: ExamEvaluationBody):
    try:
        return tutor.evaluate_exam(body.exam, body.answers)
    except LLMError as exc:
        raise _llm_failure(exc)


# ---------- Concept lab ----------
def _frame_payload(session: ConceptMapSession) -> Dict[str, Any]:
    payload = session.frame().to_dict()
    payload["session_id"] = session.session_id
    return payload


@app.post("/concept-maps")
async def concept_maps_create(body: ConceptMapCreateBody):
    viewport = Viewport(width=body.width, height=body.height)
    if body.session_id and body.session_id in CONCEPT_SESSIONS:
        session = _require_session(body.session_id)
        session.resize(body.width, body.height)
    else:
        stored = await asyncio.to_thread(db.load_concept_map, body.session_id) if body.session_id else None
        if stored:
            session = CONCEPT_SESSIONS.add(ConceptMapSession.from_dict(stored, viewport=viewport))
        else:
            session = CONCEPT_SESSIONS.create(body.session_id, viewport=viewport)
    session.start()
    return {
        **_frame_payload(session),
        "messages": [m.model_dump(mode="json") for m in session.messages],
    }


@app.post("/concept-maps/{session_id}/turns")
async def concept_maps_turn(session_id: str, body: ChatTurnBody):
    session = _require_session(session_id)
    history = list(session.messages)
    profile = await asyncio.to_thread(db.get_profile)
    user_msg = ChatMessage(role="user", text=body.text)

    try:
        reply = await asyncio.to_thread(
            tutor.send_text_message,
            history,
            body.text,
            body.level,
            profile,
        )
    except LLMError as exc:
        raise _llm_failure(exc)
    bot_msg = ChatMessage(role="model", text=reply or "Thinking...")
    session.add_message(user_msg)
    session.add_message(bot_msg)

    conversation = tutor.recent_conversation(history) + "\n" + tutor.recent_conversation([user_msg, bot_msg])
    proposal = await asyncio.to_thread(
        tutor.generate_concept_map_update,
        conversation,
        session.graph.labels(),
    )
    # merged on the event loop, so it lands between two layout ticks
    result = session.apply_proposal(proposal)
    await asyncio.to_thread(db.save_concept_map, session_id, session.to_dict())

    return {
        "reply": bot_msg.model_dump(mode="json"),
        "added_nodes": [node.label for node in result.added_nodes],
        "added_links": [link.to_dict() for link in result.added_links],
        "frame": _frame_payload(session),
    }


@app.post("/concept-maps/{session_id}/proposals")
async def concept_maps_merge(session_id: str, proposal: ConceptMapProposal):
    session = _require_session(session_id)
    result = session.apply_proposal(proposal)
    await asyncio.to_thread(db.save_concept_map, session_id, session.to_dict())
    return {
        "added_nodes": [node.label for node in result.added_nodes],
        "added_links": [link.to_dict() for link in result.added_links],
    }


@app.get("/concept-maps/{session_id}/frame")
async def concept_maps_frame(session_id: str):
    return _frame_payload(_require_session(session_id))


@app.post("/concept-maps/{session_id}/viewport")
async def concept_maps_viewport(session_id: str, body: ViewportBody):
    viewport = _require_session(session_id).resize(body.width, body.height)
    return {"width": viewport.width, "height": viewport.height}


@app.post("/concept-maps/{session_id}/drag/start")
async def concept_maps_drag_start(session_id: str, body: DragStartBody):
    session = _require_session(session_id)
    if not session.drag_start(body.node_id, body.x, body.y):
        raise HTTPException(status_code=404, detail=f"Unknown node: {body.node_id}")
    return {"dragging": body.node_id}


@app.post("/concept-maps/{session_id}/drag/move")
async def concept_maps_drag_move(session_id: str, body: DragMoveBody):
    _require_session(session_id).drag_move(body.x, body.y)
    return {"x": body.x, "y": body.y}


@app.post("/concept-maps/{session_id}/drag/end")
async def concept_maps_drag_end(session_id: str):
    released = _require_session(session_id).drag_end()
    return {"released": released}


@app.delete("/concept-maps/{session_id}")
async def concept_maps_close(session_id: str):
    session = _require_session(session_id)
    await asyncio.to_thread(db.save_concept_map, session_id, session.to_dict())
    await CONCEPT_SESSIONS.close(session_id)
    return {"closed": session_id}
