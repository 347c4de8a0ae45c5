from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import parse_qsl

from entitlement_sync.domain.errors import MalformedPayloadError


_BRACKET_PART = re.compile(r"\[([^\]]*)\]")


def _split_form_key(key: str) -> list[str]:
    head, bracket, rest = key.partition("[")
    if not bracket or not head:
        return [key]
    parts = _BRACKET_PART.findall(f"[{rest}")
    return [head, *parts] if parts else [key]


def _assign(target: dict[str, Any], parts: list[str], value: str) -> None:
    append = len(parts) > 1 and parts[-1] == ""
    if append:
        parts = parts[:-1]
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    key = parts[-1]
    if append:
        existing = node.get(key)
        if not isinstance(existing, list):
            existing = []
            node[key] = existing
        existing.append(value)
        return
    node[key] = value


def unflatten_form(pairs: list[tuple[str, str]]) -> dict[str, Any]:
    """Turn PHP-style form keys (`user[email]`, `tags[]`) into nested dicts and lists."""
    result: dict[str, Any] = {}
    for key, value in pairs:
        _assign(result, _split_form_key(key), value)
    return result


def parse_webhook_body(raw_body: bytes, content_type: str | None) -> dict[str, Any]:
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError("Webhook body is not valid UTF-8", reason="invalid_encoding") from exc
    if not text.strip():
        raise MalformedPayloadError("Webhook body is empty", reason="empty_body")

    media_type = (content_type or "").split(";")[0].strip().lower()
    looks_like_json = text.lstrip().startswith("{")
    if media_type == "application/json" or media_type.endswith("+json") or (not media_type and looks_like_json):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedPayloadError("Invalid JSON payload", reason="invalid_json") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError("JSON payload must be an object", reason="invalid_json")
        return payload

    pairs = parse_qsl(text, keep_blank_values=True)
    if not pairs:
        raise MalformedPayloadError("Form payload has no fields", reason="invalid_form")
    return unflatten_form(pairs)
