import asyncio

import pytest
from fastapi import HTTPException

import app
import db
import tutor
from schemas import ConceptMapProposal, Exam, ExamResult, Note, Roadmap, RoadmapNode


@pytest.fixture
def registry(monkeypatch):
    fresh = app.SessionRegistry()
    monkeypatch.setattr(app, "CONCEPT_SESSIONS", fresh)
    return fresh


def run(coro):
    return asyncio.run(coro)


def test_root_reports_status(registry):
    assert app.root() == {"status": "ok", "concept_maps": 0}


def test_theme_endpoint_rejects_unknown_theme(temp_db):
    assert app.theme_save(app.ThemeBody(theme="dark")) == {"theme": "dark"}
    assert app.theme_get() == {"theme": "dark"}

    with pytest.raises(HTTPException) as exc:
        app.theme_save(app.ThemeBody(theme="sepia"))
    assert exc.value.status_code == 400


def test_roadmap_creation_and_completion(temp_db, monkeypatch):
    generated = Roadmap(topic="Optics", nodes=[RoadmapNode(title="Reflection")])
    monkeypatch.setattr(tutor, "generate_roadmap", lambda topic, profile=None: generated)

    created = app.roadmaps_create(app.RoadmapBody(topic="optics"))
    assert app.roadmaps_list()[0].id == created.id

    done = app.roadmaps_complete_node(created.id, created.nodes[0].id)
    assert done.completed

    with pytest.raises(HTTPException) as exc:
        app.roadmaps_complete_node(created.id, "missing")
    assert exc.value.status_code == 404


def test_llm_failures_become_bad_gateway(temp_db, monkeypatch):
    def boom(*args, **kwargs):
        raise tutor.LLMError("LLM-HTTP 500: down")

    monkeypatch.setattr(tutor, "generate_exam", boom)

    with pytest.raises(HTTPException) as exc:
        app.exams_create(app.ExamBody(content="Notes about cells"))
    assert exc.value.status_code == 502


def test_exam_evaluation_passes_answers(temp_db, monkeypatch):
    seen = {}

    def fake_evaluate(exam, answers):
        seen["answers"] = answers
        return ExamResult(score=90, feedback="Great")

    monkeypatch.setattr(tutor, "evaluate_exam", fake_evaluate)

    result = app.exams_evaluate(app.ExamEvaluationBody(exam=Exam(), answers={"q1": "A"}))

    assert result.score == 90
    assert seen["answers"] == {"q1": "A"}


def test_notes_delete_unknown_returns_404(temp_db):
    note = app.notes_save(Note(title="Waves"))
    assert app.notes_delete(note.id) == {"deleted": note.id}

    with pytest.raises(HTTPException) as exc:
        app.notes_delete(note.id)
    assert exc.value.status_code == 404


def test_chat_turn_appends_both_messages(temp_db, monkeypatch):
    monkeypatch.setattr(tutor, "send_text_message", lambda history, text, level, profile: "What is a force?")
    session_id = app.chats_create()["id"]

    session = run(app.chats_send(session_id, app.ChatTurnBody(text="Explain Newton's laws")))

    assert [m.role for m in session.messages] == ["user", "model"]
    assert session.messages[1].text == "What is a force?"
    assert session.title == "Explain Newton's laws"


def test_chat_turn_on_unknown_session_is_404(temp_db):
    with pytest.raises(HTTPException) as exc:
        run(app.chats_send("missing", app.ChatTurnBody(text="hello")))
    assert exc.value.status_code == 404


def test_concept_map_turn_grows_graph(temp_db, registry, monkeypatch):
    monkeypatch.setattr(
        tutor, "send_text_message", lambda history, text, level, profile: "What does a plant need from sunlight?"
    )
    monkeypatch.setattr(
        tutor,
        "generate_concept_map_update",
        lambda conversation, labels: ConceptMapProposal.from_payload(
            {
                "newNodes": [{"label": "Photosynthesis"}, {"label": "Sunlight"}],
                "newLinks": [{"source": "Sunlight", "target": "Photosynthesis", "label": "powers"}],
            }
        ),
    )

    async def scenario():
        created = await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab"))
        turn = await app.concept_maps_turn("lab", app.ChatTurnBody(text="How do plants make food?"))
        await registry.close_all()
        return created, turn

    created, turn = run(scenario())

    assert created["session_id"] == "lab"
    assert created["messages"][0]["id"] == "init"
    assert turn["added_nodes"] == ["Photosynthesis", "Sunlight"]
    assert turn["added_links"] == [{"source": "Sunlight", "target": "Photosynthesis", "label": "powers"}]
    assert len(turn["frame"]["nodes"]) == 2
    stored = db.load_concept_map("lab")
    assert len(stored["graph"]["nodes"]) == 2
    assert [m["role"] for m in stored["messages"]] == ["model", "user", "model"]


def test_concept_map_turn_failure_leaves_transcript_untouched(temp_db, registry, monkeypatch):
    def boom(*args, **kwargs):
        raise tutor.LLMError("LLM error: timeout")

    monkeypatch.setattr(tutor, "send_text_message", boom)

    async def scenario():
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab"))
        session = registry.get("lab")
        try:
            with pytest.raises(HTTPException) as exc:
                await app.concept_maps_turn("lab", app.ChatTurnBody(text="Hello?"))
        finally:
            await registry.close_all()
        return exc.value, session

    error, session = run(scenario())

    assert error.status_code == 502
    assert [m.id for m in session.messages] == ["init"]


def test_concept_map_turn_survives_malformed_proposal(temp_db, registry, monkeypatch):
    monkeypatch.setattr(tutor, "send_text_message", lambda history, text, level, profile: "Which part do you mean?")
    monkeypatch.setattr(tutor, "llm_call", lambda messages, **kwargs: '{"newNodes": 3, "newLinks": {"a": 1}}')

    async def scenario():
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab"))
        turn = await app.concept_maps_turn("lab", app.ChatTurnBody(text="Tell me about cells"))
        await registry.close_all()
        return turn

    turn = run(scenario())

    assert turn["added_nodes"] == []
    assert turn["reply"]["text"] == "Which part do you mean?"
    stored = db.load_concept_map("lab")
    assert stored["graph"]["nodes"] == []
    assert [m["role"] for m in stored["messages"]] == ["model", "user", "model"]


def test_recreating_live_concept_map_resizes_viewport(temp_db, registry):
    async def scenario():
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab", width=800, height=600))
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab", width=1280, height=720))
        viewport = registry.get("lab").viewport
        await registry.close_all()
        return viewport

    viewport = run(scenario())

    assert (viewport.width, viewport.height) == (1280.0, 720.0)


def test_concept_map_drag_and_frame(temp_db, registry):
    async def scenario():
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab", width=1000, height=700))
        await app.concept_maps_merge("lab", ConceptMapProposal.from_payload({"newNodes": ["Atom"]}))
        started = await app.concept_maps_drag_start("lab", app.DragStartBody(node_id="atom", x=300, y=200))
        await app.concept_maps_drag_move("lab", app.DragMoveBody(x=320, y=240))
        registry.get("lab").loop.run_ticks(1)
        frame = await app.concept_maps_frame("lab")
        released = await app.concept_maps_drag_end("lab")
        await registry.close_all()
        return started, frame, released

    started, frame, released = run(scenario())

    assert started == {"dragging": "atom"}
    assert frame["dragged_node_id"] == "atom"
    assert (frame["nodes"][0]["x"], frame["nodes"][0]["y"]) == (320.0, 240.0)
    assert released == {"released": "atom"}


def test_concept_map_close_persists_and_restores(temp_db, registry):
    async def scenario():
        await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab"))
        await app.concept_maps_merge("lab", ConceptMapProposal.from_payload({"newNodes": ["Cell", "Nucleus"]}))
        await app.concept_maps_close("lab")
        assert "lab" not in registry
        restored = await app.concept_maps_create(app.ConceptMapCreateBody(session_id="lab"))
        await registry.close_all()
        return restored

    restored = run(scenario())

    assert sorted(n["label"] for n in restored["nodes"]) == ["Cell", "Nucleus"]


def test_unknown_concept_map_is_404(registry):
    with pytest.raises(HTTPException) as exc:
        run(app.concept_maps_frame("nope"))
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        run(app.concept_maps_viewport("nope", app.ViewportBody(width=10, height=10)))
    assert exc.value.status_code == 404
