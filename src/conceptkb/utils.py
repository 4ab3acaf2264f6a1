"""Shared utilities."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any

import orjson

from conceptkb.exceptions import StructuredOutputError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def iso_str(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def parse_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def escape_template_content(content: str | None) -> str:
    """Neutralise ``{{``/``}}`` markers in user text before prompt interpolation."""
    if not content:
        return ""
    return content.replace("{{", "&#123;&#123;").replace("}}", "&#125;&#125;")


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a model response into a JSON object.

    Accepts fenced ```json blocks. Raises StructuredOutputError when the text
    is not JSON or decodes to something other than an object.
    """
    text = (raw or "").strip()
    if not text:
        raise StructuredOutputError("empty structured response", raw=raw or "")
    if "```" in text:
        m = re.search(r"```(?:json)?\s*(.*?)\s*```", text, flags=re.DOTALL | re.IGNORECASE)
        if m:
            text = m.group(1).strip()
    try:
        data = json_loads(text)
    except orjson.JSONDecodeError as exc:
        raise StructuredOutputError(f"invalid JSON: {exc}", raw=raw) from exc
    if not isinstance(data, dict):
        raise StructuredOutputError(
            f"response is not a JSON object: {type(data).__name__}", raw=raw
        )
    return data
