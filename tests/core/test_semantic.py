#!/usr/bin/env python3
"""Tests for the semantic relevance check (Ollama adapter).

The oracle is replaced with httpx.MockTransport; no server is needed.

Run:
    python -m pytest tests/core/test_semantic.py -v
"""

import json
import sys
import time
import unittest
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _guard_semantic import (
    MAX_PROMPT_CONTENT_CHARS,
    build_prompt,
    check_semantic_relevance,
    parse_relevance_response,
    query_ollama,
)
from _guard_types import EditView, Rule, SemanticSettings, TextEdit, Tier

SETTINGS = SemanticSettings(ollama_url="http://ollama.test", model="m", timeout_ms=2000, min_content_length=10)
CONTENT = "This paragraph describes the quarterly marketing budget in detail."


def _rule(purpose="Deployment runbook for the API service"):
    return Rule.from_config(
        {"name": "runbook", "pattern": "docs/runbook.md", "tier": "critical",
         "checks": ["semantic_relevance"], "purpose": purpose}
    )


class _Oracle:
    """Mock Ollama server recording requests."""

    def __init__(self, reply=None, health_status=200, generate_status=200, raise_on=None):
        self.reply = reply
        self.health_status = health_status
        self.generate_status = generate_status
        self.raise_on = raise_on
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if self.raise_on == path:
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/api/tags":
            return httpx.Response(self.health_status, json={"models": []})
        if path == "/api/generate":
            return httpx.Response(self.generate_status, json={"response": self.reply})
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


class TestParseRelevanceResponse(unittest.TestCase):

    def test_plain_verdict(self):
        result = parse_relevance_response('{"relevant": false, "reason": "off topic"}')
        self.assertFalse(result.relevant)
        self.assertEqual(result.reason, "off topic")

    def test_anchored_object_preferred_over_echoed_json(self):
        text = 'The file has {"config": 1}. Answer: {"relevant": true}'
        self.assertTrue(parse_relevance_response(text).relevant)

    def test_whitespace_tolerated(self):
        self.assertTrue(parse_relevance_response('answer:\n{ "relevant" :true }').relevant)

    def test_generic_fallback(self):
        result = parse_relevance_response('{"reason": "fits", "relevant": true}')
        self.assertTrue(result.relevant)
        self.assertEqual(result.reason, "fits")

    def test_unparseable(self):
        self.assertIsNone(parse_relevance_response("I think it is relevant"))
        self.assertIsNone(parse_relevance_response("{broken"))
        self.assertIsNone(parse_relevance_response('{"other": 1}'))


class TestPrompt(unittest.TestCase):

    def test_prompt_embeds_purpose_and_truncates(self):
        prompt = build_prompt("x" * (MAX_PROMPT_CONTENT_CHARS + 500), "Runbook")
        self.assertIn('purpose: "Runbook"', prompt)
        self.assertIn("x" * MAX_PROMPT_CONTENT_CHARS, prompt)
        self.assertNotIn("x" * (MAX_PROMPT_CONTENT_CHARS + 1), prompt)


class TestQueryOllama(unittest.TestCase):

    def test_generate_payload(self):
        oracle = _Oracle(reply='{"relevant": true}')
        with oracle.client() as client:
            result = query_ollama(CONTENT, "Runbook", SETTINGS, client=client)
        self.assertTrue(result.relevant)
        self.assertEqual([r.url.path for r in oracle.requests], ["/api/tags", "/api/generate"])
        body = json.loads(oracle.requests[1].content)
        self.assertEqual(body["model"], "m")
        self.assertFalse(body["stream"])
        self.assertEqual(body["options"], {"temperature": 0.1, "num_predict": 100})

    def test_health_failure_skips_generation(self):
        oracle = _Oracle(reply='{"relevant": false}', raise_on="/api/tags")
        with oracle.client() as client:
            self.assertIsNone(query_ollama(CONTENT, "Runbook", SETTINGS, client=client))
        self.assertEqual([r.url.path for r in oracle.requests], ["/api/tags"])

    def test_health_non_success(self):
        oracle = _Oracle(reply='{"relevant": false}', health_status=503)
        with oracle.client() as client:
            self.assertIsNone(query_ollama(CONTENT, "Runbook", SETTINGS, client=client))

    def test_generate_timeout(self):
        def handler(request):
            if request.url.path == "/api/generate":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={})

        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            self.assertIsNone(query_ollama(CONTENT, "Runbook", SETTINGS, client=client))

    def test_slow_trickle_hits_overall_deadline(self):
        def trickle():
            yield b'{"response": "'
            for _ in range(5):
                time.sleep(0.1)
                yield b" "
            yield b'{\\"relevant\\": false}"}'

        def handler(request):
            if request.url.path == "/api/generate":
                return httpx.Response(200, content=trickle())
            return httpx.Response(200, json={})

        settings = SemanticSettings(ollama_url="http://ollama.test", model="m", timeout_ms=150, min_content_length=10)
        start = time.monotonic()
        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            self.assertIsNone(query_ollama(CONTENT, "Runbook", settings, client=client))
        self.assertLess(time.monotonic() - start, 2.0)

    def test_chunked_reply_within_deadline(self):
        def chunks():
            yield b'{"response": "'
            yield b'{\\"relevant\\": false, \\"reason\\": \\"off\\"}"}'

        def handler(request):
            if request.url.path == "/api/generate":
                return httpx.Response(200, content=chunks())
            return httpx.Response(200, json={})

        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            result = query_ollama(CONTENT, "Runbook", SETTINGS, client=client)
        self.assertFalse(result.relevant)
        self.assertEqual(result.reason, "off")

    def test_generate_error_status(self):
        oracle = _Oracle(reply='{"relevant": false}', generate_status=500)
        with oracle.client() as client:
            self.assertIsNone(query_ollama(CONTENT, "Runbook", SETTINGS, client=client))


class TestCheckSemanticRelevance(unittest.TestCase):

    def test_irrelevant_content_warns_at_medium(self):
        oracle = _Oracle(reply='{"relevant": false, "reason": "budget talk"}')
        with oracle.client() as client:
            violations = check_semantic_relevance(_rule(), EditView.full(CONTENT), SETTINGS, client=client)
        self.assertEqual(len(violations), 1)
        self.assertEqual(violations[0].check, "semantic_relevance")
        self.assertEqual(violations[0].tier, Tier.MEDIUM)
        self.assertEqual(
            violations[0].message,
            "Content may not match file purpose (Deployment runbook for the API service): budget talk",
        )

    def test_relevant_content(self):
        oracle = _Oracle(reply='{"relevant": true}')
        with oracle.client() as client:
            self.assertEqual(check_semantic_relevance(_rule(), EditView.full(CONTENT), SETTINGS, client=client), [])

    def test_connection_refused_fails_open(self):
        oracle = _Oracle(reply='{"relevant": false}', raise_on="/api/tags")
        with oracle.client() as client:
            self.assertEqual(check_semantic_relevance(_rule(), EditView.full(CONTENT), SETTINGS, client=client), [])

    def test_short_content_skips_oracle(self):
        oracle = _Oracle(reply='{"relevant": false}')
        with oracle.client() as client:
            self.assertEqual(check_semantic_relevance(_rule(), EditView.full("tiny"), SETTINGS, client=client), [])
        self.assertEqual(oracle.requests, [])

    def test_rule_without_purpose_skips_oracle(self):
        oracle = _Oracle(reply='{"relevant": false}')
        with oracle.client() as client:
            self.assertEqual(check_semantic_relevance(_rule(purpose=None), EditView.full(CONTENT), SETTINGS, client=client), [])
        self.assertEqual(oracle.requests, [])

    def test_partial_edits_joined(self):
        oracle = _Oracle(reply='{"relevant": false}')
        view = EditView.partial([TextEdit("a", "first part of text"), TextEdit("b", "second part")])
        with oracle.client() as client:
            violations = check_semantic_relevance(_rule(), view, SETTINGS, client=client)
        self.assertEqual(violations[0].message, "Content may not match file purpose (Deployment runbook for the API service)")
        body = json.loads(oracle.requests[1].content)
        self.assertIn("first part of text\nsecond part", body["prompt"])


if __name__ == "__main__":
    unittest.main()
