import json

import db
import tutor


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise tutor.requests.HTTPError(response=self)


def test_successful_call_records_usage(temp_db, monkeypatch):
    def fake_post(url, json=None, headers=None, timeout=None):
        return _FakeResponse(
            200,
            {
                "choices": [{"message": {"content": "ok"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    monkeypatch.setattr(tutor.requests, "post", fake_post)

    tutor.llm_call([{"role": "user", "content": "hi"}], purpose="chat")

    rows = db.list_llm_metrics()
    assert len(rows) == 1
    row = rows[0]
    assert row["purpose"] == "chat"
    assert row["model_id"] == tutor.MODEL_ID
    assert row["tokens_in"] == 12
    assert row["tokens_out"] == 3
    assert row["ok"] == 1
    assert row["latency_ms"] >= 0


def test_failed_call_is_recorded_as_not_ok(temp_db, monkeypatch):
    def fake_post(url, json=None, headers=None, timeout=None):
        return _FakeResponse(500, {"error": "down"})

    monkeypatch.setattr(tutor.requests, "post", fake_post)

    try:
        tutor.llm_call([{"role": "user", "content": "hi"}], purpose="roadmap")
    except tutor.LLMError:
        pass

    rows = db.list_llm_metrics(purpose="roadmap")
    assert len(rows) == 1
    assert rows[0]["ok"] == 0
    assert db.list_llm_metrics(purpose="chat") == []
