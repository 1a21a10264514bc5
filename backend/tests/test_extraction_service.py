"""
Tests for the extraction strategies and the fallback coordinator.

Covers:
- parse_vision_response: fences, filtering, defaults, partial timeout payloads, bad JSON
- VisionStrategy: missing key, success, API error, deadline + late result reuse
- LocalOcrStrategy: Tesseract text, reuse of earlier text, placeholder item, OCR unavailable
- run_with_deadline / run_strategies ordering and exception conversion
"""
import asyncio
import io
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from PIL import Image

from conftest import StubStrategy
from services.extraction_service import (
    ExtractionResult,
    LocalOcrStrategy,
    VisionStrategy,
    parse_vision_response,
    run_strategies,
    run_with_deadline,
)
from services.intake_service import ScanFile, ScanRequest
from services.ocr_service import OcrUnavailableError


def make_request(name="receipt.jpg"):
    buf = io.BytesIO()
    Image.new("RGB", (200, 300), "white").save(buf, format="JPEG")
    return ScanRequest(ScanFile(buf.getvalue(), name, last_modified=1700000000000))


def vision_reply(payload):
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(content=[SimpleNamespace(text=text)])


def mock_client(reply=None, side_effect=None):
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=reply, side_effect=side_effect)
    return client


MILK_REPLY = {
    "merchant": "Corner Mart",
    "date": "2024-03-01",
    "total": 3.49,
    "items": [{"description": "Milk", "amount": "3.49", "date": "2024-03-01",
               "category": "Groceries", "paymentMethod": "Card"}],
}


# ── parse_vision_response ────────────────────────────────────────────────────

class TestParseVisionResponse:

    def test_fenced_json(self):
        raw = "```json\n" + json.dumps(MILK_REPLY) + "\n```"
        result = parse_vision_response(raw)
        assert result.success
        assert result.merchant == "Corner Mart"
        assert result.items[0]["description"] == "Milk"
        assert result.items[0]["payment_method"] == "Card"

    def test_prose_around_json(self):
        result = parse_vision_response("Here you go:\n" + json.dumps(MILK_REPLY) + "\nDone.")
        assert result.success

    def test_drops_non_positive_amounts_and_defaults(self):
        result = parse_vision_response(json.dumps({
            "date": "2024-05-05",
            "items": [
                {"description": "Refund", "amount": -2},
                {"description": "Free bag", "amount": 0},
                {"amount": 4.5},
            ],
        }))
        assert len(result.items) == 1
        assert result.items[0]["description"] == "Receipt Item"
        assert result.items[0]["date"] == "2024-05-05"

    def test_partial_timeout_payload(self):
        payload = dict(MILK_REPLY, isTimeout=True)
        result = parse_vision_response(json.dumps(payload))
        assert result.is_timeout
        assert result.usable

    def test_raw_text_without_items_is_empty(self):
        result = parse_vision_response(json.dumps({"items": [], "raw_text": "MILK 3.49"}))
        assert result.status == "empty"
        assert result.raw_text == "MILK 3.49"

    def test_invalid_json_is_failure(self):
        assert parse_vision_response("{not json}").status == "failed"
        assert parse_vision_response("no braces at all").status == "failed"
        assert parse_vision_response("").status == "failed"


# ── VisionStrategy ───────────────────────────────────────────────────────────

class TestVisionStrategy:

    @pytest.mark.asyncio
    async def test_missing_key_fails_immediately(self):
        result = await VisionStrategy(api_key="").run(make_request())
        assert result.status == "failed"
        assert "ANTHROPIC_API_KEY" in result.error

    @pytest.mark.asyncio
    async def test_success(self):
        client = mock_client(vision_reply(MILK_REPLY))
        result = await VisionStrategy(client=client, timeout=5).run(make_request())
        assert result.success
        assert result.source == "vision"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["messages"][0]["content"][0]["source"]["media_type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_api_error_is_failure(self):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com"))
        client = mock_client(side_effect=error)
        result = await VisionStrategy(client=client, timeout=5).run(make_request())
        assert result.status == "failed"

    @pytest.mark.asyncio
    async def test_deadline_then_late_result_reused(self):
        async def slow_create(**kwargs):
            await asyncio.sleep(0.2)
            return vision_reply(MILK_REPLY)

        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=slow_create)
        strategy = VisionStrategy(client=client, timeout=0.01)
        request = make_request()

        first = await strategy.run(request)
        assert first.is_timeout
        assert not first.usable

        await asyncio.sleep(0.4)
        assert request.scan_id in strategy.late_results

        second = await strategy.run(request)
        assert second.is_timeout
        assert second.usable
        assert second.items[0]["description"] == "Milk"
        assert client.messages.create.await_count == 1
        assert request.scan_id not in strategy.late_results

    @pytest.mark.asyncio
    async def test_late_result_not_shared_across_uploads(self):
        async def slow_create(**kwargs):
            await asyncio.sleep(0.1)
            return vision_reply(MILK_REPLY)

        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=slow_create)
        strategy = VisionStrategy(client=client, timeout=0.01)
        first_upload = make_request()
        second_upload = make_request()
        assert first_upload.fingerprint == second_upload.fingerprint

        assert (await strategy.run(first_upload)).is_timeout
        await asyncio.sleep(0.2)

        second = await strategy.run(second_upload)
        assert second.is_timeout
        assert not second.usable
        assert client.messages.create.await_count == 2

    @pytest.mark.asyncio
    async def test_late_result_after_forget_discarded(self):
        async def slow_create(**kwargs):
            await asyncio.sleep(0.1)
            return vision_reply(MILK_REPLY)

        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=slow_create)
        strategy = VisionStrategy(client=client, timeout=0.01)
        request = make_request()

        assert (await strategy.run(request)).is_timeout
        strategy.forget(request)
        await asyncio.sleep(0.2)

        assert strategy.late_results == {}


# ── LocalOcrStrategy ─────────────────────────────────────────────────────────

class TestLocalOcrStrategy:

    @pytest.mark.asyncio
    async def test_parses_tesseract_text(self):
        strategy = LocalOcrStrategy(ocr=lambda content: "CORNER MART\nMILK  3.49\nBREAD  2.00")
        result = await strategy.run(make_request())
        assert result.success
        assert [i["description"] for i in result.items] == ["Milk", "Bread"]
        assert result.merchant == "Corner Mart"

    @pytest.mark.asyncio
    async def test_reuses_text_from_earlier_strategy(self):
        ocr = MagicMock(return_value="SHOULD NOT BE USED 9.99")
        request = make_request()
        request.raw_text = "COFFEE  4.50"
        result = await LocalOcrStrategy(ocr=ocr).run(request)
        assert result.items[0]["description"] == "Coffee"
        ocr.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_items_gives_placeholder_with_total(self):
        strategy = LocalOcrStrategy(ocr=lambda content: "THANK YOU\nTOTAL 18.20")
        result = await strategy.run(make_request())
        assert result.success
        assert len(result.items) == 1
        placeholder = result.items[0]
        assert placeholder["description"] == "Store Purchase"
        assert placeholder["category"] == "Other"
        assert str(placeholder["amount"]) == "18.20"

    @pytest.mark.asyncio
    async def test_unreadable_text_still_succeeds(self):
        result = await LocalOcrStrategy(ocr=lambda content: "").run(make_request())
        assert result.success
        assert str(result.items[0]["amount"]) == "0.00"

    @pytest.mark.asyncio
    async def test_ocr_unavailable_fails(self):
        def broken(content):
            raise OcrUnavailableError("tesseract binary not found in PATH")

        result = await LocalOcrStrategy(ocr=broken).run(make_request())
        assert result.status == "failed"
        assert "tesseract" in result.error


# ── Deadline + coordinator ───────────────────────────────────────────────────

class TestRunWithDeadline:

    @pytest.mark.asyncio
    async def test_fast_result_returned(self):
        async def fast():
            return ExtractionResult.ok([{"description": "Tea", "amount": "2.00"}])

        result = await run_with_deadline(fast(), 1.0)
        assert result.success

    @pytest.mark.asyncio
    async def test_slow_result_delivered_late(self):
        late = []

        async def slow():
            await asyncio.sleep(0.1)
            return ExtractionResult.ok([{"description": "Tea", "amount": "2.00"}])

        result = await run_with_deadline(slow(), 0.01, on_late=late.append)
        assert result.is_timeout
        await asyncio.sleep(0.3)
        assert len(late) == 1
        assert late[0].success


class TestRunStrategies:

    @pytest.mark.asyncio
    async def test_first_usable_result_wins(self, milk_result):
        first = StubStrategy("vision", milk_result)
        second = StubStrategy("local_ocr", ExtractionResult.ok([{"description": "X", "amount": "1"}]))
        result = await run_strategies([first, second], make_request())
        assert result is milk_result
        assert second.calls == 0

    @pytest.mark.asyncio
    async def test_exception_becomes_failure_and_falls_through(self, milk_result):
        crashing = StubStrategy("vision", RuntimeError("boom"))
        fallback = StubStrategy("local_ocr", milk_result)
        result = await run_strategies([crashing, fallback], make_request())
        assert result is milk_result
        assert crashing.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_falls_through(self, milk_result):
        timed_out = StubStrategy("vision", ExtractionResult.timeout())
        fallback = StubStrategy("local_ocr", milk_result)
        assert await run_strategies([timed_out, fallback], make_request()) is milk_result

    @pytest.mark.asyncio
    async def test_timeout_reported_even_when_fallback_recovers(self, milk_result):
        timed_out = StubStrategy("vision", ExtractionResult.timeout())
        fallback = StubStrategy("local_ocr", milk_result)
        missed = []

        result = await run_strategies([timed_out, fallback], make_request(), on_timeout=missed.append)

        assert result is milk_result
        assert missed == ["vision"]

    @pytest.mark.asyncio
    async def test_all_failed_returns_last(self):
        a = StubStrategy("vision", ExtractionResult.failure("no key"))
        b = StubStrategy("local_ocr", RuntimeError("tesseract gone"))
        result = await run_strategies([a, b], make_request())
        assert result.status == "failed"
        assert "local_ocr crashed" in result.error
        assert result.source == "local_ocr"

    @pytest.mark.asyncio
    async def test_raw_text_handed_to_next_strategy(self):
        vision = StubStrategy("vision", ExtractionResult.nothing_found(raw_text="BANANAS  1.20"))
        local = LocalOcrStrategy(ocr=MagicMock(side_effect=AssertionError("OCR should not run")))
        request = make_request()
        result = await run_strategies([vision, local], request)
        assert result.success
        assert result.items[0]["description"] == "Bananas"

    @pytest.mark.asyncio
    async def test_no_strategies(self):
        result = await run_strategies([], make_request())
        assert result.status == "failed"
