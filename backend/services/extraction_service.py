"""
Extraction Service

Turns a receipt image into raw line items by trying strategies in order:

  1. VisionStrategy:   Claude Vision reads the image and returns JSON
  2. LocalOcrStrategy: Tesseract + heuristic line parser (always answers)

Each strategy returns an ExtractionResult rather than raising.  A strategy
that misses its deadline yields a timed_out result; its work keeps running in
the background and, if it later succeeds, the result is kept so the next
attempt of the same scan can use it without calling the model again.
"""
import asyncio
import base64
import json
import logging
import os
import re
from typing import Awaitable, Callable, Optional

import anthropic

from services.categories import CANONICAL_CATEGORIES
from services.intake_service import ScanRequest, ScanSession
from services.normalize_service import normalize_amount, synthetic_default_item
from services.ocr_service import (
    OcrUnavailableError,
    extract_text_from_image,
    parse_receipt_text,
    prepare_image_for_vision,
)

logger = logging.getLogger("pocketbook.extraction")

VISION_MODEL = os.environ.get("VISION_MODEL", "claude-sonnet-4-5")
VISION_TIMEOUT_SECONDS = float(os.environ.get("VISION_TIMEOUT_SECONDS", "25"))
LOCAL_OCR_TIMEOUT_SECONDS = float(os.environ.get("LOCAL_OCR_TIMEOUT_SECONDS", "20"))

SUCCESS = "success"
EMPTY = "empty"
FAILED = "failed"
TIMED_OUT = "timed_out"

# Tasks abandoned at their deadline.  asyncio only keeps weak references to
# running tasks, so hold them here until they finish.
_LATE_TASKS: set = set()


class ExtractionResult:
    """Outcome of one strategy run: success, empty, failed or timed_out."""

    def __init__(self, status: str, items: Optional[list[dict]] = None,
                 error: Optional[str] = None, source: Optional[str] = None,
                 merchant: Optional[str] = None, receipt_date: Optional[str] = None,
                 total: Optional[str] = None, raw_text: Optional[str] = None):
        self.status = status
        self.items = items or []
        self.error = error
        self.source = source
        self.merchant = merchant
        self.receipt_date = receipt_date
        self.total = total
        self.raw_text = raw_text

    @classmethod
    def ok(cls, items: list[dict], **kwargs) -> "ExtractionResult":
        return cls(SUCCESS, items=items, **kwargs)

    @classmethod
    def nothing_found(cls, **kwargs) -> "ExtractionResult":
        return cls(EMPTY, **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs) -> "ExtractionResult":
        return cls(FAILED, error=error, **kwargs)

    @classmethod
    def timeout(cls, items: Optional[list[dict]] = None, **kwargs) -> "ExtractionResult":
        kwargs.setdefault("error", "Timed out")
        return cls(TIMED_OUT, items=items, **kwargs)

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    @property
    def is_timeout(self) -> bool:
        return self.status == TIMED_OUT

    @property
    def usable(self) -> bool:
        """Items we can hand to normalization (partial timeout payloads count)."""
        return bool(self.items) and self.status in (SUCCESS, TIMED_OUT)

    def __repr__(self) -> str:
        return f"<ExtractionResult {self.status} items={len(self.items)} source={self.source}>"


async def run_with_deadline(
    coro: Awaitable[ExtractionResult],
    deadline: float,
    on_late: Optional[Callable[[ExtractionResult], None]] = None,
) -> ExtractionResult:
    """
    Await ``coro`` for at most ``deadline`` seconds.

    On expiry a timed_out result is returned immediately and the underlying
    task is left running; when it finishes, ``on_late`` receives its result.
    A result that lands exactly at the deadline is taken as on time.
    """
    task = asyncio.ensure_future(coro)
    await asyncio.wait({task}, timeout=deadline)
    if task.done():
        return task.result()

    def _deliver(t: asyncio.Task) -> None:
        _LATE_TASKS.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("Late extraction failed: %s", exc)
            return
        if on_late is not None:
            on_late(t.result())

    _LATE_TASKS.add(task)
    task.add_done_callback(_deliver)
    return ExtractionResult.timeout(error=f"No answer within {deadline:g}s")


# ── Vision strategy ───────────────────────────────────────────────────────────

VISION_PROMPT = f"""You are a receipt data extractor. Read this receipt image and output ONLY this JSON (no prose, no markdown):

{{
  "merchant": "string or null",
  "date": "YYYY-MM-DD or null",
  "total": number or null,
  "items": [
    {{
      "description": "item name as a person would write it",
      "amount": number,
      "date": "YYYY-MM-DD or null",
      "category": "one of: {', '.join(CANONICAL_CATEGORIES)}",
      "paymentMethod": "Cash, Card or null"
    }}
  ],
  "raw_text": "the full receipt text, line by line"
}}

Only include items actually purchased. No totals, tax, change or payment lines."""


def parse_vision_response(raw: str) -> ExtractionResult:
    """Parse the model's reply into raw items.  Bad JSON is a failed result."""
    text = (raw or "").strip()
    text = re.sub(r'^```[a-z]*\n?', '', text)
    text = re.sub(r'\n?```$', '', text)
    m = re.search(r'\{.*\}', text, re.DOTALL)
    if not m:
        return ExtractionResult.failure("Vision reply contained no JSON object")
    try:
        data = json.loads(m.group(0))
    except ValueError as e:
        return ExtractionResult.failure(f"Vision reply was not valid JSON: {e}")
    if not isinstance(data, dict):
        return ExtractionResult.failure("Vision reply was not a JSON object")

    receipt_date = data.get("date") or data.get("receipt_date")
    meta = {
        "merchant": data.get("merchant") or data.get("store_name"),
        "receipt_date": receipt_date,
        "total": str(data["total"]) if data.get("total") is not None else None,
        "raw_text": data.get("raw_text") or None,
    }

    items = []
    for item in data.get("items") or []:
        if not isinstance(item, dict):
            continue
        amount = item.get("amount")
        if normalize_amount(amount) <= 0:
            continue
        items.append({
            "description": str(item.get("description") or "").strip() or "Receipt Item",
            "amount": amount,
            "date": item.get("date") or receipt_date,
            "category": item.get("category"),
            "payment_method": item.get("paymentMethod") or item.get("payment_method") or "Card",
        })

    if data.get("isTimeout"):
        return ExtractionResult.timeout(items, **meta)
    if items:
        return ExtractionResult.ok(items, **meta)
    return ExtractionResult.nothing_found(**meta)


class VisionStrategy:
    """Primary strategy: Claude Vision over the uploaded image."""

    name = "vision"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None, client=None):
        self.api_key = api_key if api_key is not None else os.environ.get("ANTHROPIC_API_KEY", "")
        self.model = model or VISION_MODEL
        self.timeout = VISION_TIMEOUT_SECONDS if timeout is None else timeout
        self._client = client
        # scan_id → result that arrived after its deadline, for that scan's retry
        self.late_results: dict[str, ExtractionResult] = {}
        # scans that may still receive a late result
        self._open_scans: set[str] = set()

    async def run(self, request: ScanRequest) -> ExtractionResult:
        late = self.late_results.pop(request.scan_id, None)
        if late is not None:
            logger.info("Using late vision result for %s", request.fingerprint)
            late.status = TIMED_OUT
            return late

        if self._client is None and not self.api_key:
            return ExtractionResult.failure("ANTHROPIC_API_KEY not set", source=self.name)

        self._open_scans.add(request.scan_id)

        def _keep_late(result: ExtractionResult) -> None:
            if request.scan_id not in self._open_scans:
                logger.info("Vision answered after scan %s ended, discarded", request.fingerprint)
                return
            if result.usable:
                logger.info("Vision answered late for %s (%d items), kept for retry",
                            request.fingerprint, len(result.items))
                self.late_results[request.scan_id] = result

        return await run_with_deadline(self._extract(request), self.timeout, on_late=_keep_late)

    def forget(self, request: ScanRequest) -> None:
        """Drop late-result state for a finished scan."""
        self._open_scans.discard(request.scan_id)
        self.late_results.pop(request.scan_id, None)

    async def _extract(self, request: ScanRequest) -> ExtractionResult:
        vision_bytes, media_type = prepare_image_for_vision(request.file.content)
        if media_type == "application/pdf":
            return ExtractionResult.failure("PDF receipts are not sent to vision", source=self.name)

        b64 = base64.standard_b64encode(vision_bytes).decode()
        logger.info("Sending %d KB b64 (%s) to Claude Vision", len(b64) // 1024, media_type)

        try:
            client = self._client or anthropic.AsyncAnthropic(api_key=self.api_key)
            message = await client.messages.create(
                model=self.model,
                max_tokens=4096,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": VISION_PROMPT},
                    ],
                }],
            )
            raw = message.content[0].text
        except anthropic.APIError as e:
            logger.warning("Claude Vision request failed: %s", e)
            return ExtractionResult.failure(f"Vision request failed: {e}", source=self.name)

        result = parse_vision_response(raw)
        result.source = self.name
        return result


# ── Local OCR strategy ────────────────────────────────────────────────────────

class LocalOcrStrategy:
    """
    Fallback strategy: Tesseract text (or text another strategy already
    recovered) parsed line by line.  When no line items are recognised a
    single placeholder item is returned, so this only fails when OCR itself
    cannot run.
    """

    name = "local_ocr"

    def __init__(self, timeout: Optional[float] = None,
                 ocr: Callable[[bytes], str] = extract_text_from_image):
        self.timeout = LOCAL_OCR_TIMEOUT_SECONDS if timeout is None else timeout
        self._ocr = ocr

    async def run(self, request: ScanRequest) -> ExtractionResult:
        return await run_with_deadline(self._extract(request), self.timeout)

    async def _extract(self, request: ScanRequest) -> ExtractionResult:
        text = request.raw_text
        if not text:
            try:
                text = await asyncio.to_thread(self._ocr, request.file.content)
            except OcrUnavailableError as e:
                logger.warning("Local OCR unavailable: %s", e)
                return ExtractionResult.failure(str(e), source=self.name)

        parsed = parse_receipt_text(text)
        items = parsed.raw_items
        if not items:
            logger.info("No line items recognised, returning placeholder item")
            items = [synthetic_default_item(amount=parsed.total).model_dump()]

        return ExtractionResult.ok(
            items,
            source=self.name,
            merchant=parsed.merchant,
            receipt_date=parsed.receipt_date,
            total=parsed.total,
            raw_text=text,
        )


# ── Coordinator ───────────────────────────────────────────────────────────────

async def run_strategies(strategies: list, request: ScanRequest,
                         session: Optional[ScanSession] = None,
                         on_timeout: Optional[Callable[[str], None]] = None) -> ExtractionResult:
    """
    Try strategies in order and return the first usable result, else the
    last result seen.  A strategy that raises is treated as failed.  Stops
    early once ``session`` has been cancelled.

    ``on_timeout`` gets the name of every strategy that misses its deadline
    with nothing to show, including ones a later strategy recovers from.
    """
    result = ExtractionResult.failure("No extraction strategy configured")
    total = len(strategies)
    for index, strategy in enumerate(strategies):
        if session is not None and not session.is_active:
            break
        if session is not None:
            session.update_progress(10 + (60 * index) // max(total, 1),
                                    "Analyzing receipt..." if index == 0 else "Reading receipt text...")
        try:
            result = await strategy.run(request)
        except Exception as e:
            logger.exception("Strategy %s raised", strategy.name)
            result = ExtractionResult.failure(f"{strategy.name} crashed: {e}")
        result.source = result.source or strategy.name
        if result.is_timeout and not result.usable and on_timeout is not None:
            on_timeout(strategy.name)

        if result.raw_text and not request.raw_text:
            request.raw_text = result.raw_text
        if result.usable:
            logger.info("Strategy %s produced %d item(s)", strategy.name, len(result.items))
            return result
        logger.warning("Strategy %s gave no usable items (%s: %s)",
                       strategy.name, result.status, result.error or "no items")
    return result
