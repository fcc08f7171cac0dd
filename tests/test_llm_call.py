import json
import unittest
from unittest.mock import patch

import requests

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
            raise requests.HTTPError(response=self)


class LlmFallbackUnitTests(unittest.TestCase):
    def setUp(self):
        self._prev_send_flag = tutor.SEND_MAX_TOKENS
        tutor.SEND_MAX_TOKENS = True
        metric_patch = patch("tutor.db.record_llm_metric")
        self.record_metric = metric_patch.start()
        self.addCleanup(metric_patch.stop)

    def tearDown(self):
        tutor.SEND_MAX_TOKENS = self._prev_send_flag

    def test_fallback_retries_with_expected_payloads(self):
        messages = [{"role": "user", "content": "Hello"}]

        expected_timeout = tutor.get_env_int("LLM_TIMEOUT", 120)
        expected_base_payload = {
            "model": tutor.MODEL_ID,
            "messages": messages,
            **tutor._base_params(),
            "max_tokens": 99,
        }
        minimal_payload = {
            "model": tutor.MODEL_ID,
            "messages": messages,
            "max_tokens": 99,
        }

        calls = []

        def _fake_post(url, json=None, headers=None, timeout=None):
            calls.append({"url": url, "json": json, "timeout": timeout})
            if len(calls) == 1:
                return _FakeResponse(400, {"error": "invalid"})
            return _FakeResponse(200, {"choices": [{"message": {"content": "Answer"}}]})

        with patch("tutor.requests.post", side_effect=_fake_post):
            result = tutor.llm_call(messages, max_tokens=99)

        self.assertEqual(result, "Answer")
        self.assertEqual(len(calls), 2)

        first_call, second_call = calls
        self.assertEqual(first_call["url"], tutor.LLM_URL)
        self.assertEqual(first_call["json"], expected_base_payload)
        self.assertEqual(first_call["timeout"], expected_timeout)

        self.assertEqual(second_call["url"], tutor.LLM_URL)
        self.assertEqual(second_call["json"], minimal_payload)
        self.assertEqual(second_call["timeout"], expected_timeout)

    def test_json_mode_requests_json_object(self):
        captured = {}

        def _fake_post(url, json=None, headers=None, timeout=None):
            captured.update(json)
            return _FakeResponse(200, {"choices": [{"message": {"content": "{}"}}]})

        with patch("tutor.requests.post", side_effect=_fake_post):
            tutor.llm_call([{"role": "user", "content": "map"}], json_mode=True, model="small-model")

        self.assertEqual(captured["response_format"], {"type": "json_object"})
        self.assertEqual(captured["model"], "small-model")

    def test_think_blocks_are_stripped(self):
        content = "<think>internal reasoning</think>\nWhat do plants need to grow?"
        response = _FakeResponse(200, {"choices": [{"message": {"content": content}}]})

        with patch("tutor.requests.post", return_value=response):
            result = tutor.llm_call([{"role": "user", "content": "Plants?"}])

        self.assertEqual(result, "What do plants need to grow?")

    def test_completion_style_payload_is_accepted(self):
        response = _FakeResponse(200, {"choices": [{"text": "legacy"}]})

        with patch("tutor.requests.post", return_value=response):
            self.assertEqual(tutor.llm_call([{"role": "user", "content": "x"}]), "legacy")

    def test_http_error_raises_llm_error(self):
        response = _FakeResponse(503, {"error": "overloaded"})

        with patch("tutor.requests.post", return_value=response):
            with self.assertRaises(tutor.LLMError) as ctx:
                tutor.llm_call([{"role": "user", "content": "x"}])

        self.assertIn("LLM-HTTP 503", str(ctx.exception))
        self.assertFalse(self.record_metric.call_args.kwargs["ok"])

    def test_connection_error_raises_llm_error(self):
        with patch("tutor.requests.post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(tutor.LLMError):
                tutor.llm_call([{"role": "user", "content": "x"}])

    def test_unexpected_payload_raises_llm_error(self):
        response = _FakeResponse(200, {"nothing": "here"})

        with patch("tutor.requests.post", return_value=response):
            with self.assertRaises(tutor.LLMError):
                tutor.llm_call([{"role": "user", "content": "x"}])

    def test_api_key_is_sent_as_bearer_token(self):
        captured = {}

        def _fake_post(url, json=None, headers=None, timeout=None):
            captured["headers"] = headers
            return _FakeResponse(200, {"choices": [{"message": {"content": "ok"}}]})

        with patch.dict("os.environ", {"LLM_API_KEY": "secret"}):
            with patch("tutor.requests.post", side_effect=_fake_post):
                tutor.llm_call([{"role": "user", "content": "x"}])

        self.assertEqual(captured["headers"], {"Authorization": "Bearer secret"})


if __name__ == "__main__":
    unittest.main()
