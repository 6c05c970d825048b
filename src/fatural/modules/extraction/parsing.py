from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

from fatural.modules.extraction.errors import MalformedResponse

PayloadKind = Literal["array", "object", "single", "recovered"]

_ITEM_LIST_KEYS = ("expenses", "items", "line_items", "lineItems")
_ITEM_HINT_KEYS = {"name", "amount", "category"}

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_ARRAY_RE = re.compile(r"\[\s*\{.*?\}\s*(?:,\s*\{.*?\}\s*)*\]", re.S)
_OBJECT_RE = re.compile(r"\{.*\}", re.S)


@dataclass(frozen=True)
class ParsedPayload:
    kind: PayloadKind
    items: list[Any]


def _strip_fences(content: str) -> str:
    return _FENCE_RE.sub("", content.strip()).strip()


def _classify(obj: Any) -> ParsedPayload | None:
    if isinstance(obj, list):
        return ParsedPayload(kind="array", items=obj)
    if isinstance(obj, dict):
        for key in _ITEM_LIST_KEYS:
            value = obj.get(key)
            if isinstance(value, list):
                return ParsedPayload(kind="object", items=value)
        if _ITEM_HINT_KEYS & obj.keys():
            return ParsedPayload(kind="single", items=[obj])
    return None


def _recover(content: str) -> ParsedPayload | None:
    for pattern in (_ARRAY_RE, _OBJECT_RE):
        m = pattern.search(content)
        if not m:
            continue
        try:
            obj = json.loads(m.group(0))
        except ValueError:
            continue
        parsed = _classify(obj)
        if parsed is not None:
            return ParsedPayload(kind="recovered", items=parsed.items)
    return None


def parse_items_payload(content: str | None) -> ParsedPayload:
    """Turn the model's message content into a list of raw item dicts.

    The content is tried as JSON first (a bare array, an object holding the
    item list, or a single item object). If that fails, the first embedded
    array of objects, then the first embedded object, is recovered from the
    surrounding prose. Anything else raises MalformedResponse.
    """
    if content is None or not content.strip():
        raise MalformedResponse("Upstream returned no content")

    cleaned = _strip_fences(content)
    try:
        obj = json.loads(cleaned)
    except ValueError:
        pass
    else:
        parsed = _classify(obj)
        if parsed is not None:
            return parsed
        raise MalformedResponse("Upstream JSON has no line item list")

    recovered = _recover(cleaned)
    if recovered is None:
        raise MalformedResponse("Upstream response is not valid JSON")
    return recovered
