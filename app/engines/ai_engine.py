"""
AI-assisted field extractor.
Sends the document text to an OpenAI-compatible chat completions endpoint
and expects back a JSON array of {key, value} facts in 万元.
"""

import json
import math
import re
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import structlog

from app.config import settings
from app.engines.base import EngineError, FieldExtractor, merge_items
from app.models.enums import Confidence
from app.observability.metrics import (
    external_api_latency_seconds,
    extraction_failures_total,
    fields_extracted_total,
)
from app.pipeline.alias_resolver import AliasResolver
from app.pipeline.amount_parser import parse_amount_cn, round_amount
from app.schemas.contracts import (
    BudgetTableCandidate,
    ExtractedItem,
    ExtractionOutcome,
    ParsedDocument,
)

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You extract figures from Chinese government department budget documents. "
    "Reply with a JSON array only, each element {\"key\": <field key or Chinese label>, "
    "\"value\": <number in 万元>}. Use keys such as budget_revenue_total, "
    "budget_expenditure_total, fiscal_grant_revenue_total, three_public_total, operation_fund."
)

_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$', re.MULTILINE)


class AiAssistedExtractor(FieldExtractor):
    """
    Extraction has no side effects, so a caller can fall back to the rule
    strategy when this raises EngineError.
    """

    engine_name = "ai"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        resolver: Optional[AliasResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: OpenAI-compatible API root, e.g. https://api.example.com/v1
            api_key: Bearer token
            transport: Injected httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.AI_BASE_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.model = model or settings.AI_MODEL
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS
        self.resolver = resolver or AliasResolver()
        self._transport = transport

    @property
    def engine_version(self) -> str:
        return self.model

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _fail(self, error_code: str, message: str, **context) -> EngineError:
        extraction_failures_total.labels(engine_name=self.engine_name, error_code=error_code).inc()
        logger.warning("ai_extraction_failed", error_code=error_code, error=message, **context)
        return EngineError(self.engine_name, error_code, message)

    async def extract(
        self,
        document: ParsedDocument,
        tables: list[BudgetTableCandidate],
    ) -> ExtractionOutcome:
        if not self.base_url:
            raise self._fail("TRANSPORT", "AI_BASE_URL is not configured")

        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": document.raw_text[: settings.AI_MAX_DOCUMENT_CHARS]},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise self._fail("TIMEOUT", f"no response within {self.timeout}s: {e}") from e
        except httpx.HTTPStatusError as e:
            raise self._fail("HTTP_STATUS", f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise self._fail("TRANSPORT", str(e)) from e
        finally:
            external_api_latency_seconds.labels(engine_name=self.engine_name).observe(time.monotonic() - start)

        try:
            raw_items = parse_completion(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise self._fail("PARSE", f"unparseable model output: {e}", response_text=response.text) from e

        items, unmatched = self._resolve(raw_items)
        for item in items:
            fields_extracted_total.labels(engine_name=self.engine_name, confidence=item.confidence.value).inc()

        logger.info(
            "ai_extraction_complete",
            path=document.path,
            model=self.model,
            item_count=len(items),
            unmatched=len(unmatched),
        )
        return ExtractionOutcome(engine_name=self.engine_name, items=items, unmatched=unmatched)

    def _resolve(self, raw_items: list[dict]) -> tuple[list[ExtractedItem], list[ExtractedItem]]:
        items, unmatched = [], []
        for raw in raw_items:
            label = str(raw.get("key") or raw.get("label") or "")
            value = _to_decimal(raw.get("value"))
            resolution = self.resolver.resolve(label)

            if resolution.confidence == Confidence.HIGH:
                confidence = Confidence.MEDIUM
            elif resolution.confidence == Confidence.LOW:
                confidence = Confidence.LOW
            else:
                confidence = Confidence.UNRECOGNIZED
            if value is None:
                confidence = Confidence.UNRECOGNIZED

            item = ExtractedItem(
                key=resolution.key,
                label=label,
                value=value,
                raw_value=None if raw.get("value") is None else str(raw.get("value")),
                confidence=confidence,
                snippet=raw.get("snippet"),
                source="AI",
            )
            (items if resolution.matched else unmatched).append(item)
        return merge_items(items), unmatched


def parse_completion(body) -> list[dict]:
    """
    Accepts either a bare JSON array or an OpenAI-style completion whose first
    choice's message content holds the array (optionally fenced).
    """
    if isinstance(body, list):
        data = body
    else:
        content = body["choices"][0]["message"]["content"]
        data = json.loads(_CODE_FENCE.sub("", content.strip()))
        if isinstance(data, dict) and "items" in data:
            data = data["items"]

    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    for entry in data:
        if not isinstance(entry, dict):
            raise ValueError(f"expected objects in array, got {type(entry).__name__}")
    return data


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        try:
            return round_amount(Decimal(str(value)))
        except InvalidOperation:
            return None
    parsed = parse_amount_cn(str(value))
    return None if parsed.amount is None else round_amount(parsed.amount)
