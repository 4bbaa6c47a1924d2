"""Request canonicalization and result normalization.

Fingerprints are deterministic for semantically identical requests: message
text is whitespace-collapsed and lower-cased, then hashed together with the
request's scope (model hint, provider override, temperature, max_tokens).
The provider that eventually serves the request is not part of the key.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Iterable

from provider_gateway.gateway.types import ChatMessage, CompletionRequest, CompletionResult

_WHITESPACE = re.compile(r"\s+")

_VALID_ROLES = {"system", "user", "assistant"}

# Provider-specific finish reasons -> canonical
_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "STOP": "stop",
    "length": "length",
    "max_tokens": "length",
    "MAX_TOKENS": "length",
    "content_filter": "SAFETY",
    "SAFETY": "SAFETY",
}


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


def coerce_messages(messages: Iterable[ChatMessage | dict[str, Any]]) -> list[ChatMessage]:
    """Accept ChatMessage objects or ``{"role", "content"}`` dicts."""
    result: list[ChatMessage] = []
    for m in messages:
        if isinstance(m, ChatMessage):
            msg = m
        elif isinstance(m, dict) and "role" in m and "content" in m:
            msg = ChatMessage(role=str(m["role"]), content=str(m["content"]))
        else:
            raise ValueError(f"Invalid message: {m!r}")
        if msg.role not in _VALID_ROLES:
            raise ValueError(f"Invalid message role: {msg.role!r}")
        result.append(msg)
    if not result:
        raise ValueError("At least one message is required")
    return result


def prompt_messages(prompt: str) -> list[ChatMessage]:
    if not prompt or not prompt.strip():
        raise ValueError("Prompt must not be empty")
    return [ChatMessage(role="user", content=prompt)]


def normalized_messages(request: CompletionRequest) -> list[dict[str, str]]:
    return [{"role": m.role, "content": normalize_text(m.content)} for m in request.messages]


def normalized_prompt(request: CompletionRequest) -> str:
    """Human-readable normalized form, also fed to the embedder."""
    return "\n".join(f"{m['role']}: {m['content']}" for m in normalized_messages(request))


def request_scope(request: CompletionRequest) -> dict[str, Any]:
    return {
        "model": request.model or None,
        "provider": request.provider or None,
        "temperature": round(float(request.temperature), 4),
        "max_tokens": int(request.max_tokens),
    }


def _digest(obj: Any) -> str:
    canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint(request: CompletionRequest) -> str:
    """Exact-match cache key."""
    return _digest({"messages": normalized_messages(request), **request_scope(request)})


def scope_key(request: CompletionRequest) -> str:
    """Similarity lookups only compare entries with the same scope key."""
    return _digest(request_scope(request))


def normalize_result(result: CompletionResult) -> CompletionResult:
    """Apply final normalization to a provider result.

    This is idempotent: can be called multiple times safely.
    """
    usage = result.usage
    if usage.total_tokens != usage.input_tokens + usage.output_tokens:
        usage.total_tokens = usage.input_tokens + usage.output_tokens

    result.finish_reason = _FINISH_REASONS.get(result.finish_reason, result.finish_reason.lower())
    if result.finish_reason == "safety":
        result.finish_reason = "SAFETY"

    result.cost = round(result.cost, 8)
    return result
