"""
Tests for the AI-assisted extractor, against a mocked HTTP transport.
"""

import json
from decimal import Decimal

import httpx
import pytest

from app.config import settings
from app.engines.ai_engine import AiAssistedExtractor, parse_completion
from app.engines.base import EngineError
from app.models.enums import Confidence


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def extractor_for(handler, **kwargs) -> AiAssistedExtractor:
    return AiAssistedExtractor(
        base_url="https://llm.test/v1",
        api_key="secret",
        model="test-model",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestParseCompletion:
    def test_bare_array(self):
        assert parse_completion([{"key": "a", "value": 1}]) == [{"key": "a", "value": 1}]

    def test_code_fence(self):
        body = completion('```json\n[{"key": "收入总计", "value": 100}]\n```')
        assert parse_completion(body) == [{"key": "收入总计", "value": 100}]

    def test_items_wrapper(self):
        body = completion('{"items": [{"key": "a", "value": 1}]}')
        assert parse_completion(body) == [{"key": "a", "value": 1}]

    def test_not_an_array(self):
        with pytest.raises(ValueError):
            parse_completion(completion('{"key": "a"}'))


class TestAiAssistedExtractor:
    """Test request shape, confidence mapping and failure codes."""

    async def test_success(self, make_doc):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(json.dumps([
                {"key": "budget_revenue_total", "value": 100},
                {"key": "公务用车购置及运行经费", "value": "15.5"},
                {"key": "单位负责人", "value": 1},
            ], ensure_ascii=False)))

        doc = make_doc(raw_text="收入总计 100")
        result = await extractor_for(handler).extract(doc, [])

        assert seen["url"] == "https://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["messages"][1] == {"role": "user", "content": "收入总计 100"}

        by_key = result.by_key()
        assert result.engine_name == "ai"
        assert by_key["budget_revenue_total"].value == Decimal("100")
        assert by_key["budget_revenue_total"].confidence == Confidence.MEDIUM
        assert by_key["three_public_vehicle_total"].confidence == Confidence.LOW
        assert by_key["three_public_vehicle_total"].value == Decimal("15.5")
        assert [u.label for u in result.unmatched] == ["单位负责人"]

    async def test_missing_value_unrecognized(self, make_doc):
        def handler(request):
            return httpx.Response(200, json=completion('[{"key": "operation_fund", "value": null}]'))

        result = await extractor_for(handler).extract(make_doc(), [])
        assert result.items[0].confidence == Confidence.UNRECOGNIZED
        assert result.items[0].value is None

    async def test_empty_list(self, make_doc):
        def handler(request):
            return httpx.Response(200, json=completion("[]"))

        result = await extractor_for(handler).extract(make_doc(), [])
        assert result.items == []

    async def test_timeout(self, make_doc):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(EngineError) as exc:
            await extractor_for(handler).extract(make_doc(), [])
        assert exc.value.error_code == "TIMEOUT"

    async def test_http_status(self, make_doc):
        def handler(request):
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(EngineError) as exc:
            await extractor_for(handler).extract(make_doc(), [])
        assert exc.value.error_code == "HTTP_STATUS"
        assert "500" in exc.value.message

    async def test_transport_error(self, make_doc):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EngineError) as exc:
            await extractor_for(handler).extract(make_doc(), [])
        assert exc.value.error_code == "TRANSPORT"

    async def test_unparseable_output(self, make_doc):
        def handler(request):
            return httpx.Response(200, json=completion("the totals are 100 and 100"))

        with pytest.raises(EngineError) as exc:
            await extractor_for(handler).extract(make_doc(), [])
        assert exc.value.error_code == "PARSE"

    async def test_not_configured(self, make_doc, monkeypatch):
        monkeypatch.setattr(settings, "AI_BASE_URL", None)
        with pytest.raises(EngineError) as exc:
            await AiAssistedExtractor().extract(make_doc(), [])
        assert exc.value.error_code == "TRANSPORT"
