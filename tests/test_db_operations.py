"""Test cases for db operations."""

from datetime import date

import db
from schemas import ChatMessage, Note, Roadmap, RoadmapNode, StudentProfile, UserStats


def test_kv_round_trip(temp_db):
    db.kv_set("answer", {"value": 42, "tags": ["a", "b"]})

    assert db.kv_get("answer") == {"value": 42, "tags": ["a", "b"]}
    assert db.kv_get("missing", "fallback") == "fallback"

    db.kv_delete("answer")
    assert db.kv_get("answer") is None


def test_corrupt_kv_value_falls_back_to_default(temp_db):
    db._exec("INSERT INTO kv_store (key, value) VALUES (?, ?)", ["broken", "{not json"])

    assert db.kv_get("broken", []) == []


def test_profile_round_trip(temp_db):
    assert db.get_profile() is None

    db.save_profile(StudentProfile(name="Ada", education_level="University", subjects=["Math"]))

    profile = db.get_profile()
    assert profile.name == "Ada"
    assert profile.education_level == "University"


def test_misconceptions_are_deduplicated(temp_db):
    assert db.add_misconception("Photosynthesis")
    assert not db.add_misconception("Photosynthesis")
    assert db.add_misconception("Osmosis")

    assert db.get_memory().misconceptions == ["Photosynthesis", "Osmosis"]


def test_streak_extends_on_consecutive_day(temp_db):
    db.save_stats(UserStats(streak=3, last_login_date="2026-03-09"))

    stats = db.get_stats(today=date(2026, 3, 10))

    assert stats.streak == 4
    assert stats.last_login_date == "2026-03-10"
    assert db.get_stats(today=date(2026, 3, 10)).streak == 4


def test_streak_resets_after_gap(temp_db):
    db.save_stats(UserStats(streak=5, last_login_date="2026-03-01"))

    assert db.get_stats(today=date(2026, 3, 10)).streak == 1


def test_fresh_stats_start_today(temp_db):
    stats = db.get_stats(today=date(2026, 5, 4))

    assert stats.streak == 1
    assert stats.last_login_date == "2026-05-04"


def test_roadmap_node_completion(temp_db):
    roadmap = Roadmap(topic="Algebra", nodes=[RoadmapNode(title="Variables"), RoadmapNode(title="Equations")])
    db.add_roadmap(roadmap)

    updated = db.complete_roadmap_node(roadmap.id, roadmap.nodes[0].id)
    assert updated.nodes[0].completed
    assert not updated.completed

    updated = db.complete_roadmap_node(roadmap.id, roadmap.nodes[1].id)
    assert updated.completed
    assert db.list_roadmaps()[0].completed
    assert db.complete_roadmap_node(roadmap.id, "nope") is None
    assert db.complete_roadmap_node("nope", roadmap.nodes[0].id) is None


def test_notes_upsert_and_delete(temp_db):
    note = db.upsert_note(Note(title="Cells", content="<p>Mitochondria</p>"))
    created_at = note.created_at

    db.upsert_note(Note(id=note.id, title="Cells v2", content="<p>Ribosomes</p>", created_at=0))

    notes = db.list_notes()
    assert len(notes) == 1
    assert notes[0].title == "Cells v2"
    assert notes[0].created_at == created_at

    assert db.delete_note(note.id)
    assert not db.delete_note(note.id)
    assert db.list_notes() == []


def test_chat_title_uses_first_user_message(temp_db):
    session_id = db.create_chat_session()
    long_text = "Why does the moon have phases and not just one face?"

    session = db.save_chat_messages(
        session_id,
        [ChatMessage(role="model", text="Hi!"), ChatMessage(role="user", text=long_text)],
    )

    assert session.title == long_text[:30] + "..."
    assert db.get_chat_session(session_id).messages[1].text == long_text
    assert db.chat_title([]) == "New Chat"

    db.delete_chat_session(session_id)
    assert db.get_chat_session(session_id) is None


def test_theme_validation(temp_db):
    assert db.get_theme() == "light"
    db.save_theme("dark")
    assert db.get_theme() == "dark"

    try:
        db.save_theme("neon")
    except ValueError:
        pass
    else:
        raise AssertionError("unsupported theme accepted")


def test_concept_map_persistence(temp_db):
    payload = {"session_id": "lab", "graph": {"nodes": [], "links": []}}

    db.save_concept_map("lab", payload)
    assert db.load_concept_map("lab") == payload

    db.delete_concept_map("lab")
    assert db.load_concept_map("lab") is None
