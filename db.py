import json
import logging
import os
import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from db_pool import SQLiteConnectionPool
from schemas import (
    ChatMessage,
    ChatSession,
    Note,
    Roadmap,
    StudentMemory,
    StudentProfile,
    UserStats,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

KEYS = {
    "stats": "socratic_stats",
    "roadmaps": "socratic_roadmaps",
    "notes": "socratic_notes",
    "profile": "socratic_profile",
    "chats": "socratic_chats",
    "theme": "socratic_theme",
    "memory": "socratic_memory",
}

CONCEPT_MAP_PREFIX = "socratic_concept_map:"
THEMES = ("light", "dark")
CHAT_TITLE_LENGTH = 30


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()

def _init_tables() -> None:
    """Initialize required tables if they don't exist."""
    _exec(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    _exec(
        """
        CREATE TABLE IF NOT EXISTS llm_metrics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            purpose TEXT NOT NULL,
            model_id TEXT NOT NULL,
            latency_ms INTEGER NOT NULL,
            tokens_in INTEGER,
            tokens_out INTEGER,
            ok INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )


def init():
    _init_tables()


# -------------- key/value primitives --------------
def kv_get(key: str, default: Any = None) -> Any:
    """Return the decoded JSON value stored under ``key``."""
    _init_tables()
    rows = _query("SELECT value FROM kv_store WHERE key = ?", [key])
    if not rows:
        return default
    try:
        return json.loads(rows[0]["value"])
    except json.JSONDecodeError:
        logger.warning("Stored value for %s is not valid JSON; ignoring it", key)
        return default


def kv_set(key: str, value: Any) -> None:
    _init_tables()
    _exec(
        """
        INSERT INTO kv_store (key, value, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(key) DO UPDATE SET
            value = excluded.value,
            updated_at = CURRENT_TIMESTAMP
        """,
        [key, json.dumps(value, ensure_ascii=False)],
    )


def kv_delete(key: str) -> None:
    _init_tables()
    _exec("DELETE FROM kv_store WHERE key = ?", [key])


def _load_list(key: str, model) -> list:
    items = []
    for raw in kv_get(key, []) or []:
        try:
            items.append(model.model_validate(raw))
        except ValueError as exc:
            logger.warning("Skipping malformed %s record under %s: %s", model.__name__, key, exc)
    return items


def _save_list(key: str, items: Sequence[Any]) -> None:
    kv_set(key, [item.model_dump(mode="json") for item in items])


# -------------- profile & memory --------------
def save_profile(profile: StudentProfile) -> None:
    kv_set(KEYS["profile"], profile.model_dump(mode="json"))


def get_profile() -> Optional[StudentProfile]:
    data = kv_get(KEYS["profile"])
    if not data:
        return None
    try:
        return StudentProfile.model_validate(data)
    except ValueError as exc:
        logger.warning("Stored profile is malformed: %s", exc)
        return None


def save_memory(memory: StudentMemory) -> None:
    kv_set(KEYS["memory"], memory.model_dump(mode="json"))


def get_memory() -> StudentMemory:
    data = kv_get(KEYS["memory"])
    if not data:
        return StudentMemory()
    try:
        return StudentMemory.model_validate(data)
    except ValueError:
        return StudentMemory()


def add_misconception(concept: str) -> bool:
    """Remember a concept the student struggled with; returns False if known."""
    memory = get_memory()
    if concept in memory.misconceptions:
        return False
    memory.misconceptions.append(concept)
    save_memory(memory)
    return True


# -------------- stats & streak --------------
def save_stats(stats: UserStats) -> None:
    kv_set(KEYS["stats"], stats.model_dump(mode="json"))


def _today() -> date:
    return datetime.now(timezone.utc).date()


def get_stats(today: Optional[date] = None) -> UserStats:
    """Load stats and roll the daily streak forward.

    Visiting on the day after the last login extends the streak; skipping a
    day resets it to one.
    """
    today = today or _today()
    data = kv_get(KEYS["stats"])
    stats: Optional[UserStats] = None
    if data:
        try:
            stats = UserStats.model_validate(data)
        except ValueError as exc:
            logger.warning("Stored stats are malformed, starting fresh: %s", exc)
    if stats is None:
        stats = UserStats(last_login_date=today.isoformat())

    if stats.last_login_date != today.isoformat():
        try:
            last = date.fromisoformat(stats.last_login_date)
        except ValueError:
            last = today
        gap = abs((today - last).days)
        if gap == 1:
            stats.streak += 1
        elif gap > 1:
            stats.streak = 1
        stats.last_login_date = today.isoformat()
        save_stats(stats)

    return stats


# -------------- roadmaps --------------
def save_roadmaps(roadmaps: Sequence[Roadmap]) -> None:
    _save_list(KEYS["roadmaps"], roadmaps)


def list_roadmaps() -> List[Roadmap]:
    return _load_list(KEYS["roadmaps"], Roadmap)


def add_roadmap(roadmap: Roadmap) -> None:
    roadmaps = list_roadmaps()
    roadmaps.insert(0, roadmap)
    save_roadmaps(roadmaps)


def complete_roadmap_node(roadmap_id: str, node_id: str) -> Optional[Roadmap]:
    roadmaps = list_roadmaps()
    for roadmap in roadmaps:
        if roadmap.id != roadmap_id:
            continue
        for node in roadmap.nodes:
            if node.id == node_id:
                node.completed = True
                roadmap.completed = all(n.completed for n in roadmap.nodes)
                save_roadmaps(roadmaps)
                return roadmap
        return None
    return None


# -------------- notes --------------
def save_notes(notes: Sequence[Note]) -> None:
    _save_list(KEYS["notes"], notes)


def list_notes() -> List[Note]:
    return _load_list(KEYS["notes"], Note)


def upsert_note(note: Note) -> Note:
    notes = list_notes()
    note.updated_at = now_ms()
    for idx, existing in enumerate(notes):
        if existing.id == note.id:
            note.created_at = existing.created_at
            notes[idx] = note
            break
    else:
        notes.insert(0, note)
    save_notes(notes)
    return note


def delete_note(note_id: str) -> bool:
    notes = list_notes()
    remaining = [note for note in notes if note.id != note_id]
    if len(remaining) == len(notes):
        return False
    save_notes(remaining)
    return True


# -------------- chat history --------------
def save_chat_sessions(sessions: Sequence[ChatSession]) -> None:
    _save_list(KEYS["chats"], sessions)


def list_chat_sessions() -> List[ChatSession]:
    return _load_list(KEYS["chats"], ChatSession)


def get_chat_session(session_id: str) -> Optional[ChatSession]:
    for session in list_chat_sessions():
        if session.id == session_id:
            return session
    return None


def create_chat_session() -> str:
    sessions = list_chat_sessions()
    session = ChatSession(id=new_id())
    sessions.insert(0, session)
    save_chat_sessions(sessions)
    return session.id


def delete_chat_session(session_id: str) -> None:
    sessions = [s for s in list_chat_sessions() if s.id != session_id]
    save_chat_sessions(sessions)


def chat_title(messages: Sequence[ChatMessage]) -> str:
    for message in messages:
        if message.role == "user":
            text = message.text
            if len(text) > CHAT_TITLE_LENGTH:
                return text[:CHAT_TITLE_LENGTH] + "..."
            return text
    return "New Chat"


def save_chat_messages(session_id: str, messages: Sequence[ChatMessage]) -> ChatSession:
    """Replace the transcript of ``session_id``, creating the session if needed."""
    sessions = list_chat_sessions()
    session = ChatSession(
        id=session_id,
        title=chat_title(messages),
        messages=list(messages),
        last_updated=now_ms(),
    )
    for idx, existing in enumerate(sessions):
        if existing.id == session_id:
            sessions[idx] = session
            break
    else:
        sessions.append(session)
    save_chat_sessions(sessions)
    return session


# -------------- theme --------------
def get_theme() -> str:
    theme = kv_get(KEYS["theme"])
    return theme if theme in THEMES else "light"


def save_theme(theme: str) -> None:
    if theme not in THEMES:
        raise ValueError(f"Unsupported theme: {theme}")
    kv_set(KEYS["theme"], theme)


# -------------- concept maps --------------
def save_concept_map(session_id: str, payload: Dict[str, Any]) -> None:
    kv_set(CONCEPT_MAP_PREFIX + session_id, payload)


def load_concept_map(session_id: str) -> Optional[Dict[str, Any]]:
    data = kv_get(CONCEPT_MAP_PREFIX + session_id)
    return data if isinstance(data, dict) else None


def delete_concept_map(session_id: str) -> None:
    kv_delete(CONCEPT_MAP_PREFIX + session_id)


# -------------- telemetry --------------
def record_llm_metric(
    *,
    purpose: str,
    model_id: str,
    latency_ms: int,
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    ok: bool = True,
) -> None:
    _init_tables()
    _exec(
        """
        INSERT INTO llm_metrics (purpose, model_id, latency_ms, tokens_in, tokens_out, ok)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [purpose, model_id, int(latency_ms), tokens_in, tokens_out, 1 if ok else 0],
    )


def list_llm_metrics(purpose: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    _init_tables()
    if purpose:
        rows = _query(
            "SELECT * FROM llm_metrics WHERE purpose = ? ORDER BY id DESC LIMIT ?",
            [purpose, limit],
        )
    else:
        rows = _query("SELECT * FROM llm_metrics ORDER BY id DESC LIMIT ?", [limit])
    return [dict(row) for row in rows]
