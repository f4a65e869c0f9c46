#!/usr/bin/env python3
"""Semantic relevance check (V2) backed by a local Ollama server.

A rule with a ``purpose`` and the ``semantic_relevance`` check asks the
model whether the proposed content fits that purpose.

Fail-open everywhere: an unreachable server, a slow reply, a non-2xx
status or an unparseable answer all produce no violation. A transient
model outage must never turn into a blocked edit. An irrelevant verdict
is reported at medium tier (warn, never block).

Two bounded calls:
1. GET  {ollamaUrl}/api/tags      health probe, HEALTH_TIMEOUT_SECONDS
2. POST {ollamaUrl}/api/generate  generation, settings.timeout_ms overall
"""

import json
import re
import time
from dataclasses import dataclass

import httpx

from _guard_types import CheckKind, EditView, Rule, SemanticSettings, Tier, Violation
from _guard_utils import log_guard

HEALTH_TIMEOUT_SECONDS = 1.0
MAX_PROMPT_CONTENT_CHARS = 2000

_RELEVANT_JSON_RE = re.compile(r'\{\s*"relevant"\s*:\s*(?:true|false).*?\}', re.DOTALL)
_ANY_JSON_RE = re.compile(r"\{.*?\}", re.DOTALL)


@dataclass(frozen=True)
class SemanticResult:
    relevant: bool
    reason: str | None = None


def build_prompt(content: str, purpose: str) -> str:
    truncated = content[:MAX_PROMPT_CONTENT_CHARS]
    return (
        f'You are a file content validator. A file has this purpose: "{purpose}"\n\n'
        f"The following content is being written to this file:\n```\n{truncated}\n```\n\n"
        "Is this content relevant to the file's purpose? Respond with ONLY valid JSON:\n"
        '{"relevant": true} or {"relevant": false, "reason": "brief explanation"}\n'
        "JSON response:"
    )


def parse_relevance_response(text: str) -> SemanticResult | None:
    """Extract the verdict from model output.

    The object anchored on the ``relevant`` key is preferred so JSON-like
    text echoed back from the file content is not mistaken for the answer.
    """
    match = _RELEVANT_JSON_RE.search(text) or _ANY_JSON_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("relevant"), bool):
        return None
    reason = data.get("reason")
    return SemanticResult(relevant=data["relevant"], reason=str(reason) if reason else None)


def _generate_within_deadline(client: httpx.Client, url: str, payload: dict, timeout: float) -> bytes | None:
    """POST and read the whole body, or give up once ``timeout`` seconds pass.

    httpx timeouts apply per connect/read operation, so a server that keeps
    trickling bytes would never trip them. The body is streamed and the
    elapsed time checked after every chunk.
    """
    deadline = time.monotonic() + timeout
    try:
        with client.stream("POST", url, json=payload, timeout=timeout) as response:
            if not response.is_success:
                log_guard("WARN", f"Ollama generate returned HTTP {response.status_code}")
                return None
            chunks = []
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    log_guard("WARN", f"Ollama generate exceeded {timeout}s - skipping semantic check")
                    return None
    except httpx.HTTPError as e:
        log_guard("WARN", f"Ollama generate failed ({type(e).__name__}): {e}")
        return None
    if time.monotonic() > deadline:
        log_guard("WARN", f"Ollama generate exceeded {timeout}s - skipping semantic check")
        return None
    return b"".join(chunks)


def query_ollama(
    content: str,
    purpose: str,
    settings: SemanticSettings,
    client: httpx.Client | None = None,
) -> SemanticResult | None:
    """Ask the model for a relevance verdict.

    Returns:
        SemanticResult, or None on any failure (fail-open).
    """
    base_url = settings.ollama_url.rstrip("/")
    owns_client = client is None
    if owns_client:
        client = httpx.Client()

    try:
        try:
            health = client.get(f"{base_url}/api/tags", timeout=HEALTH_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            log_guard("INFO", f"Ollama health check failed ({type(e).__name__}) - skipping semantic check")
            return None
        if not health.is_success:
            log_guard("INFO", f"Ollama health check returned HTTP {health.status_code} - skipping semantic check")
            return None

        payload = {
            "model": settings.model,
            "prompt": build_prompt(content, purpose),
            "stream": False,
            "options": {"temperature": 0.1, "num_predict": 100},
        }
        raw = _generate_within_deadline(client, f"{base_url}/api/generate", payload, settings.timeout_ms / 1000)
        if raw is None:
            return None

        try:
            body = json.loads(raw)
        except ValueError as e:
            log_guard("WARN", f"Ollama generate returned invalid JSON: {e}")
            return None
        text = str(body.get("response") or "").strip() if isinstance(body, dict) else ""
        result = parse_relevance_response(text)
        if result is None:
            log_guard("WARN", f"Could not parse relevance verdict: {text[:80]!r}")
        return result
    finally:
        if owns_client:
            client.close()


def semantic_content(view: EditView) -> str:
    if view.is_full_write:
        return view.full_content or ""
    return "\n".join(view.new_texts())


def check_semantic_relevance(
    rule: Rule,
    view: EditView,
    settings: SemanticSettings,
    client: httpx.Client | None = None,
) -> list[Violation]:
    if not rule.purpose:
        return []

    content = semantic_content(view)
    if len(content) < settings.min_content_length:
        return []

    result = query_ollama(content, rule.purpose, settings, client=client)
    if result is None or result.relevant:
        return []

    message = f"Content may not match file purpose ({rule.purpose})"
    if result.reason:
        message += f": {result.reason}"
    return [
        Violation(
            check=CheckKind.SEMANTIC_RELEVANCE.value,
            tier=Tier.MEDIUM,
            message=message,
        )
    ]
