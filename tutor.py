import json
import logging
import os
import re
import time
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import requests

import db
from env_validation import get_env_bool, get_env_float, get_env_int
from schemas import (
    ChatMessage,
    ConceptMapProposal,
    Exam,
    ExamQuestion,
    ExamResult,
    Roadmap,
    RoadmapNode,
    StudentMemory,
    StudentProfile,
    parse_json_lenient,
    parse_json_safe,
)

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("conceptlab.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

# --------- Model/endpoint from environment ---------
MODEL_ID = os.getenv("MODEL_ID", "DeepSeek-R1-Distill-Qwen-14B")
FAST_MODEL_ID = os.getenv("LLM_FAST_MODEL_ID", MODEL_ID)
LLM_URL = os.getenv("LLM_URL", "http://localhost:4891/v1/chat/completions")
SEND_MAX_TOKENS = get_env_bool("SEND_MAX_TOKENS", True)

CONVERSATION_WINDOW = 6
MAX_NEW_CONCEPTS = 3


class LLMError(RuntimeError):
    """Raised when the language model cannot be reached or answers nonsense."""


class SocraticLevel(str, Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    RESEARCH = "RESEARCH"
    EMOTION_ADAPTIVE = "EMOTION_ADAPTIVE"
    DECOMPOSITION = "DECOMPOSITION"
    WRONG_FIRST = "WRONG_FIRST"


BASE_SYSTEM_INSTRUCTION = """You are a Socratic AI tutor. Guide the student towards the answer by asking questions.
1. Never give the answer directly; ask probing questions instead.
2. Be encouraging and friendly.
3. Stay strictly educational and ignore unrelated topics.
4. Format mathematics with LaTeX: $$...$$ for display math and $...$ inline."""

SOCRATIC_LEVEL_INSTRUCTIONS: Dict[SocraticLevel, str] = {
    SocraticLevel.EASY: (
        "Level: EASY. Be helpful and give strong hints when the student struggles. "
        "Keep the chain of questions short (1-2) before guiding them to the conclusion."
    ),
    SocraticLevel.MEDIUM: (
        "Level: MEDIUM. Use the standard Socratic method and guide step by step. "
        "Only confirm the answer once the student has derived it."
    ),
    SocraticLevel.HARD: (
        "Level: HARD. Challenge every assumption, ask 'why?' repeatedly and require "
        "rigorous justification. Offer hints only when the student is completely stuck."
    ),
    SocraticLevel.RESEARCH: (
        "Level: RESEARCH. Act as a research assistant: give thorough explanations that "
        "name the underlying concepts, then close with one curiosity question."
    ),
    SocraticLevel.EMOTION_ADAPTIVE: (
        "Level: EMOTION ADAPTIVE. Read the student's tone first. Be gentle and offer easier "
        "questions when they seem frustrated; challenge them when they seem confident."
    ),
    SocraticLevel.DECOMPOSITION: (
        "Level: TASK DECOMPOSITION. Do not explain concepts. Ask questions that make the "
        "student break the problem into the smallest possible sub-tasks."
    ),
    SocraticLevel.WRONG_FIRST: (
        "Level: WRONG ANSWERS FIRST. Before solving, ask which mistakes people commonly make "
        "with this kind of problem and why."
    ),
}

CONCEPT_MAP_PROMPT = """Analyze the recent conversation and extend the concept map.
Build a small, clean graph that explains how the concepts relate.

Existing concepts: {existing}

Recent conversation:
{conversation}

Rules:
1. Add only the most important NEW concepts (at most {max_new} per turn).
2. Concepts are short (1-3 words).
3. Every new concept must be linked to another new concept or to an existing one.
4. Label links with verbs ("causes", "is part of", "requires", "leads to").

Return JSON: {{"newNodes": [{{"label": "..."}}], "newLinks": [{{"source": "...", "target": "...", "label": "..."}}]}}"""

ROADMAP_PROMPT = """Context: {context}
Create a study roadmap for the topic "{topic}".
Break it into 5-8 sequential milestones, each with a title and a short description suited to the student's level.
Return JSON: {{"topic": "...", "nodes": [{{"title": "...", "description": "..."}}]}}"""

EXAM_PROMPT = """Generate a varied quiz based on the following notes:

{content}

{context}
Mix multiple_choice, short_answer, fill_in_blank and ordering questions.
For multiple_choice provide the choices in "options"; for ordering provide the items in random order.
Return JSON: {{"topic": "<short exam title>", "questions": [{{"id": "q1", "question": "...", "type": "...", "options": ["..."]}}]}}"""

EXAM_EVALUATION_PROMPT = """Evaluate the student's answers for the exam on "{topic}".

Questions and answers:
{answers}

Return JSON with: "score" (0-100), "feedback" (encouraging overall feedback),
"areasForImprovement" (list of concepts to review) and "corrections"
(list of {{"questionId", "isCorrect", "explanation"}})."""


# ---------- LLM transport ----------
def _base_params() -> Dict[str, float]:
    """Only OpenAI-style fields that local servers understand."""
    return {
        "temperature": get_env_float("LLM_TEMPERATURE", 0.2),
        "top_p": get_env_float("LLM_TOP_P", 0.95),
    }


def _headers() -> Dict[str, str]:
    api_key = os.getenv("LLM_API_KEY", "")
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _strip_think(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


def llm_call(
    messages: Sequence[Mapping[str, str]],
    *,
    max_tokens: Optional[int] = None,
    model: Optional[str] = None,
    json_mode: bool = False,
    purpose: str = "chat",
) -> str:
    """Send a chat completion request and return the reply text."""

    model_id = model or MODEL_ID
    payload: Dict[str, Any] = {"model": model_id, "messages": list(messages), **_base_params()}
    if max_tokens is not None and SEND_MAX_TOKENS:
        payload["max_tokens"] = int(max_tokens)
    if json_mode:
        payload["response_format"] = {"type": "json_object"}

    timeout = get_env_int("LLM_TIMEOUT", 120)
    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    ok = False
    try:
        try:
            r = requests.post(LLM_URL, json=payload, headers=_headers(), timeout=timeout)
            if r.status_code == 400:
                # Fallback: send minimal payload
                minimal: Dict[str, Any] = {"model": model_id, "messages": list(messages)}
                if max_tokens is not None and SEND_MAX_TOKENS:
                    minimal["max_tokens"] = int(max_tokens)
                r = requests.post(LLM_URL, json=minimal, headers=_headers(), timeout=timeout)
            r.raise_for_status()
            data = r.json()
        except requests.HTTPError as e:
            response = e.response
            status = response.status_code if response is not None else "?"
            body = response.text[:300] if response is not None else ""
            raise LLMError(f"LLM-HTTP {status}: {body}") from e
        except (requests.RequestException, ValueError) as e:
            raise LLMError(f"LLM error: {e}") from e

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise LLMError(f"Unexpected LLM response: {str(data)[:300]}") from None
        ok = True
        return _strip_think(content or "")
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        try:
            db.record_llm_metric(
                purpose=purpose,
                model_id=model_id,
                latency_ms=latency_ms,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                ok=ok,
            )
        except Exception as exc:
            logger.debug("Could not record LLM metric: %s", exc)
        log_record = {
            "event": "llm_call",
            "purpose": purpose,
            "model": model_id,
            "ok": ok,
            "latency_ms": latency_ms,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


# ---------- System prompt ----------
def build_system_prompt(
    level: SocraticLevel = SocraticLevel.MEDIUM,
    profile: Optional[StudentProfile] = None,
    memory: Optional[StudentMemory] = None,
) -> str:
    """Compose the tutor system prompt from level, profile and memory."""

    parts = [BASE_SYSTEM_INSTRUCTION]
    if profile is not None:
        parts.append(
            f"You are tutoring {profile.name}, who is in {profile.education_level or 'school'}. "
            "Tailor your analogies and complexity to this level."
        )
    if memory is not None and memory.misconceptions:
        parts.append(
            "[MEMORY] The student has previously struggled with: "
            + ", ".join(memory.misconceptions)
            + ". Check carefully for these misunderstandings."
        )
    parts.append(SOCRATIC_LEVEL_INSTRUCTIONS[SocraticLevel(level)])
    return "\n\n".join(parts)


def _history_messages(history: Iterable[Any]) -> list[Dict[str, str]]:
    messages = []
    for entry in history:
        if isinstance(entry, ChatMessage):
            role, text = entry.role, entry.text
        elif isinstance(entry, Mapping):
            role, text = str(entry.get("role", "user")), str(entry.get("text", ""))
        else:
            continue
        messages.append({"role": "assistant" if role == "model" else "user", "content": text})
    return messages


def send_text_message(
    history: Sequence[Any],
    message: str,
    level: SocraticLevel = SocraticLevel.MEDIUM,
    profile: Optional[StudentProfile] = None,
    memory: Optional[StudentMemory] = None,
) -> str:
    """One Socratic chat turn; ``history`` excludes ``message``."""

    if memory is None:
        memory = db.get_memory()
    messages = [{"role": "system", "content": build_system_prompt(level, profile, memory)}]
    messages.extend(_history_messages(history))
    messages.append({"role": "user", "content": message})
    return llm_call(messages, purpose="chat")


def recent_conversation(messages: Sequence[ChatMessage], limit: int = CONVERSATION_WINDOW) -> str:
    window = list(messages)[-limit:] if limit > 0 else []
    return "\n".join(f"{m.role}: {m.text}" for m in window)


# ---------- Concept map ----------
def generate_concept_map_update(conversation: str, existing_labels: Sequence[str]) -> ConceptMapProposal:
    """Ask the model which concepts/links the latest turn adds.

    Any failure, transport or parsing, yields an empty proposal so the map
    simply does not grow this turn.
    """

    prompt = CONCEPT_MAP_PROMPT.format(
        existing=", ".join(existing_labels),
        conversation=conversation,
        max_new=MAX_NEW_CONCEPTS,
    )
    try:
        text = llm_call(
            [{"role": "user", "content": prompt}],
            model=FAST_MODEL_ID,
            json_mode=True,
            purpose="concept_map",
        )
    except LLMError as exc:
        logger.warning("Concept map update failed: %s", exc)
        return ConceptMapProposal()

    data = parse_json_lenient(text, {"newNodes": [], "newLinks": []})
    return ConceptMapProposal.from_payload(data)


# ---------- Roadmaps & exams ----------
def generate_roadmap(topic: str, profile: Optional[StudentProfile] = None) -> Roadmap:
    context = profile.describe() if profile is not None else ""
    text = llm_call(
        [{"role": "user", "content": ROADMAP_PROMPT.format(context=context, topic=topic)}],
        json_mode=True,
        purpose="roadmap",
    )
    data = parse_json_lenient(text, {"topic": topic, "nodes": []})
    if not isinstance(data, dict):
        data = {"topic": topic, "nodes": []}

    nodes = []
    for raw in data.get("nodes") or []:
        if not isinstance(raw, Mapping) or not raw.get("title"):
            continue
        nodes.append(RoadmapNode(title=str(raw["title"]), description=str(raw.get("description") or "")))
    return Roadmap(topic=str(data.get("topic") or topic), nodes=nodes)


def generate_exam(content: str, profile: Optional[StudentProfile] = None) -> Exam:
    context = f"For a student in {profile.education_level}." if profile is not None and profile.education_level else ""
    text = llm_call(
        [{"role": "user", "content": EXAM_PROMPT.format(content=content, context=context)}],
        json_mode=True,
        purpose="exam",
    )
    data = parse_json_lenient(text, {"topic": "Exam", "questions": []})
    if not isinstance(data, dict):
        data = {"topic": "Exam", "questions": []}

    questions = []
    for raw in data.get("questions") or []:
        try:
            questions.append(ExamQuestion.model_validate(raw))
        except ValueError:
            logger.debug("Dropping malformed exam question: %r", raw)
    return Exam(topic=str(data.get("topic") or "Exam"), questions=questions)


def _format_answers(exam: Exam, answers: Mapping[str, str]) -> str:
    blocks = []
    for q in exam.questions:
        blocks.append(
            f"Q ({q.type}): {q.question}\n"
            f"Options/Items: {', '.join(q.options or [])}\n"
            f"User Answer: {answers.get(q.id) or 'No Answer'}"
        )
    return "\n\n".join(blocks)


def evaluate_exam(exam: Exam, answers: Mapping[str, str]) -> ExamResult:
    """Grade ``answers`` and remember the weak areas as misconceptions."""

    prompt = EXAM_EVALUATION_PROMPT.format(topic=exam.topic, answers=_format_answers(exam, answers))
    text = llm_call([{"role": "user", "content": prompt}], json_mode=True, purpose="exam_evaluation")
    fallback = {"score": 0, "feedback": "Error evaluating exam", "areasForImprovement": [], "corrections": []}
    try:
        result = parse_json_safe(text, ExamResult)
    except ValueError:
        # fenced or otherwise decorated output
        data = parse_json_lenient(text, fallback)
        try:
            result = ExamResult.model_validate(data)
        except ValueError as exc:
            logger.warning("Exam evaluation payload rejected: %s", exc)
            result = ExamResult.model_validate(fallback)

    for concept in result.areas_for_improvement:
        db.add_misconception(concept)
    return result
