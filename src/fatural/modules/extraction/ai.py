from __future__ import annotations

import base64
import time
from collections.abc import Sequence
from datetime import date
from typing import Any, Protocol

import httpx

from fatural.core.config import settings
from fatural.core.logging import get_logger, log_event, monotonic_ms
from fatural.modules.extraction.documents import PageImage
from fatural.modules.extraction.errors import (
    EmptyDocument,
    MalformedResponse,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from fatural.modules.extraction.normalize import (
    CATEGORIES,
    DEFAULT_UNIT,
    TAX_CODES,
    LineItem,
    normalize_line_items,
)
from fatural.modules.extraction.parsing import parse_items_payload

logger = get_logger(__name__)

PROMPT_VERSION = "line-items-v2"

PROMPT_TEMPLATE = (
    "Extract every expense line item from the receipt/invoice pages that follow. "
    "Pages are labelled 'Page N' in order.\n"
    'Return a JSON object of the form {"expenses": [...]}. Each expense has:\n'
    "- name (string)\n"
    "- category (string, MUST be one of: " + ", ".join(CATEGORIES) + ")\n"
    "- amount (number, the line total)\n"
    "- date (YYYY-MM-DD)\n"
    "- merchant (string or null)\n"
    "- vat_code (string, MUST be one of: " + ", ".join(TAX_CODES) + ")\n"
    "- pageNumber (integer, the page the item appears on)\n"
    "- quantity (number, default 1)\n"
    f"- unit (string, default '{DEFAULT_UNIT}')\n"
    "- nui, nr_fiskal, numri_i_tvsh_se, description (string or null)\n"
    "Use null when information is missing. Never invent items. "
    'If no expenses are legible, return {"expenses": []}. Return JSON only.'
)


class ReceiptExtractor(Protocol):
    model: str

    def extract(self, pages: Sequence[PageImage], *, default_date: date) -> list[LineItem]: ...


def receipt_ai_available() -> bool:
    return bool(settings.receipt_ai_enabled and settings.openai_api_key)


def build_messages(pages: Sequence[PageImage]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = [{"type": "text", "text": PROMPT_TEMPLATE}]
    for idx, page in enumerate(pages, start=1):
        encoded = base64.b64encode(page.data).decode("ascii")
        content.append({"type": "text", "text": f"Page {idx}"})
        content.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{page.media_type};base64,{encoded}", "detail": "high"},
            }
        )
    return [{"role": "user", "content": content}]


class OpenAIReceiptExtractor:
    """Vision-model line item extraction over an OpenAI-compatible chat API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        model: str,
        timeout_seconds: float,
        max_tokens: int,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/chat/completions"
        self.model = model
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._transport = transport

    @classmethod
    def from_settings(cls) -> OpenAIReceiptExtractor:
        return cls(
            api_key=settings.openai_api_key if receipt_ai_available() else None,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout_seconds=float(settings.receipt_ai_timeout_seconds or 90.0),
            max_tokens=int(settings.receipt_ai_max_tokens or 4000),
        )

    def extract(self, pages: Sequence[PageImage], *, default_date: date) -> list[LineItem]:
        if not pages:
            raise EmptyDocument("No page images to extract from")
        if not self._api_key:
            raise UpstreamUnavailable("Receipt AI is not configured")

        content = self._complete(build_messages(pages), page_count=len(pages))
        parsed = parse_items_payload(content)
        items = normalize_line_items(parsed.items, default_date=default_date)
        log_event(
            logger,
            "extraction.ai.parsed",
            payload_kind=parsed.kind,
            raw_item_count=len(parsed.items),
            item_count=len(items),
        )
        return items

    def _complete(self, messages: list[dict[str, Any]], *, page_count: int) -> str | None:
        payload = {
            "model": self.model,
            "temperature": 0,
            "max_tokens": self._max_tokens,
            "response_format": {"type": "json_object"},
            "messages": messages,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        start = time.monotonic()
        try:
            with httpx.Client(transport=self._transport, timeout=self._timeout) as client:
                resp = client.post(self._url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable("Receipt AI timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Receipt AI unreachable ({type(e).__name__})") from e

        log_event(
            logger,
            "extraction.ai.response",
            model=self.model,
            page_count=page_count,
            status_code=resp.status_code,
            duration_ms=monotonic_ms(start),
        )
        if resp.status_code == 429:
            raise UpstreamRateLimited("Receipt AI rate limit reached")
        if resp.status_code >= 500:
            raise UpstreamUnavailable(f"Receipt AI returned HTTP {resp.status_code}")
        if resp.status_code in {401, 403}:
            raise UpstreamUnavailable("Receipt AI rejected the credentials")
        if resp.status_code >= 400:
            raise MalformedResponse(f"Receipt AI rejected the request (HTTP {resp.status_code})")

        try:
            msg = resp.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse("Receipt AI response has no message") from e
        if not isinstance(msg, dict):
            raise MalformedResponse("Receipt AI response has no message")
        if msg.get("refusal"):
            raise MalformedResponse("Receipt AI refused the request")
        content = msg.get("content")
        return content if isinstance(content, str) else None
