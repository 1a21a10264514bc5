"""
Commit Service

Persists normalized line items as expenses and runs the full scan pipeline:

  extract (strategies in order) → retry with backoff → normalize →
  pick main item → commit (or hand items back in manual mode)

When every attempt fails the pipeline still commits a single placeholder
"Store Purchase" expense and reports basic_info_only, so a scan never ends
with nothing recorded.  Storage failures are the one error that reaches the
caller.
"""
import asyncio
import logging
import os
from datetime import date
from typing import Awaitable, Callable, Optional

import aiosqlite

from models.schemas import (
    CommittedExpense,
    Expense,
    ExtractedLineItem,
    ImageQuality,
    ReceiptExtraction,
    ScanResponse,
    ScanStatus,
)
from services.extraction_service import (
    ExtractionResult,
    LocalOcrStrategy,
    VisionStrategy,
    run_strategies,
)
from services.intake_service import (
    InFlightRegistry,
    PreviewStore,
    ScanRequest,
    ScanSession,
)
from services.normalize_service import (
    normalize_amount,
    normalize_items,
    select_main_item,
    synthetic_default_item,
)
from services.ocr_service import analyze_image_quality

logger = logging.getLogger("pocketbook.commit")

SCAN_MAX_ATTEMPTS = int(os.environ.get("SCAN_MAX_ATTEMPTS", "2"))
SCAN_RETRY_BACKOFF_SECONDS = float(os.environ.get("SCAN_RETRY_BACKOFF_SECONDS", "3"))

BASIC_INFO_NOTICE = (
    "We couldn't read the details of this receipt, so only basic information "
    "was recorded. You can edit the expense to fill in the rest."
)


class StorageError(Exception):
    """The expense store could not complete a write."""
    pass


class CommitError(Exception):
    """Committing expenses failed.  ``unauthenticated`` means no owner was given."""

    def __init__(self, message: str, unauthenticated: bool = False):
        super().__init__(message)
        self.unauthenticated = unauthenticated


# ── Expense store ─────────────────────────────────────────────────────────────

class ExpenseStore:
    """Expense persistence over an open aiosqlite connection."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert_expenses(self, rows: list[CommittedExpense]) -> list[int]:
        """Insert all rows in one transaction: every row lands or none do."""
        ids = []
        try:
            for row in rows:
                cur = await self.db.execute(
                    """INSERT INTO expenses
                       (owner_id, description, amount, date, category, payment_method, receipt_url)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (row.owner_id, row.description, float(row.amount), row.date,
                     row.category, row.payment_method, row.receipt_url),
                )
                ids.append(cur.lastrowid)
            await self.db.commit()
        except aiosqlite.Error as e:
            await self.db.rollback()
            raise StorageError(f"expense insert failed: {e}") from e
        return ids

    async def save_extraction(self, owner_id: str, items: list[ExtractedLineItem],
                              main_item: ExtractedLineItem,
                              merchant: Optional[str] = None,
                              receipt_url: Optional[str] = None,
                              receipt_text: Optional[str] = None) -> int:
        """Record the scanned receipt and its items alongside the expenses."""
        total = sum((i.amount for i in items), normalize_amount(0))
        try:
            cur = await self.db.execute(
                """INSERT INTO receipt_extractions
                   (owner_id, merchant, date, total, receipt_url, receipt_text, payment_method)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (owner_id, merchant or "Unknown Merchant", main_item.date, float(total),
                 receipt_url, receipt_text, main_item.payment_method),
            )
            receipt_id = cur.lastrowid
            await self.db.executemany(
                "INSERT INTO receipt_items (receipt_id, name, amount, category) VALUES (?, ?, ?, ?)",
                [(receipt_id, i.description, float(i.amount), i.category) for i in items],
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            await self.db.rollback()
            raise StorageError(f"extraction insert failed: {e}") from e
        return receipt_id

    async def list_expenses(self, owner_id: str, limit: int = 50, offset: int = 0) -> list[Expense]:
        async with self.db.execute(
            """SELECT id, owner_id, description, amount, date, category, payment_method,
                      is_recurring, receipt_url, created_at
               FROM expenses
               WHERE owner_id = ?
               ORDER BY date DESC, id DESC
               LIMIT ? OFFSET ?""",
            (owner_id, limit, offset),
        ) as cur:
            rows = await cur.fetchall()
        return [
            Expense(
                id=row["id"],
                owner_id=row["owner_id"],
                description=row["description"],
                amount=normalize_amount(row["amount"]),
                date=row["date"],
                category=row["category"],
                payment_method=row["payment_method"],
                is_recurring=bool(row["is_recurring"]),
                receipt_url=row["receipt_url"],
                created_at=row["created_at"] or "",
            )
            for row in rows
        ]

    async def list_extractions(self, owner_id: str, limit: int = 50,
                               offset: int = 0) -> list[ReceiptExtraction]:
        async with self.db.execute(
            """SELECT r.id, r.merchant, r.date, r.total, r.receipt_url,
                      r.payment_method, r.created_at, COUNT(ri.id) AS item_count
               FROM receipt_extractions r
               LEFT JOIN receipt_items ri ON ri.receipt_id = r.id
               WHERE r.owner_id = ?
               GROUP BY r.id
               ORDER BY r.date DESC, r.id DESC
               LIMIT ? OFFSET ?""",
            (owner_id, limit, offset),
        ) as cur:
            rows = await cur.fetchall()
        return [
            ReceiptExtraction(
                id=row["id"],
                merchant=row["merchant"],
                date=row["date"],
                total=normalize_amount(row["total"]),
                receipt_url=row["receipt_url"],
                payment_method=row["payment_method"],
                item_count=row["item_count"],
                created_at=row["created_at"] or "",
            )
            for row in rows
        ]


async def commit_items(store: ExpenseStore, owner_id: Optional[str],
                       items: list[ExtractedLineItem],
                       receipt_url: Optional[str] = None) -> list[CommittedExpense]:
    """
    Write every item as an expense owned by ``owner_id``.

    Raises CommitError before touching storage when there is no owner, and
    when the batch insert fails (nothing is written in that case).
    """
    if not owner_id:
        raise CommitError("You must be signed in to save expenses", unauthenticated=True)
    rows = [
        CommittedExpense(
            description=item.description,
            amount=item.amount,
            date=item.date,
            category=item.category,
            payment_method=item.payment_method,
            owner_id=owner_id,
            receipt_url=receipt_url,
        )
        for item in items
    ]
    try:
        await store.insert_expenses(rows)
    except StorageError as e:
        logger.error("Commit of %d expense(s) for %s failed: %s", len(rows), owner_id, e)
        raise CommitError("Failed to save expenses. Please try again.") from e
    logger.info("Committed %d expense(s) for %s", len(rows), owner_id)
    return rows


# ── Pipeline ──────────────────────────────────────────────────────────────────

class ScanCallbacks:
    """Optional listeners for one scan.  Any of them may be left as None."""

    def __init__(self,
                 on_progress: Optional[Callable[[int, str], None]] = None,
                 on_complete: Optional[Callable[[ScanResponse], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 on_timeout: Optional[Callable[[], None]] = None):
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_timeout = on_timeout


class ScanPipeline:
    """
    Process-wide scan coordinator.  Owns the in-flight registry and the live
    sessions so that status and cancel requests can find a running scan.
    """

    def __init__(self, strategies: Optional[list] = None,
                 registry: Optional[InFlightRegistry] = None,
                 previews: Optional[PreviewStore] = None,
                 max_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.strategies = strategies if strategies is not None else [VisionStrategy(), LocalOcrStrategy()]
        self.registry = registry if registry is not None else InFlightRegistry()
        self.previews = previews
        self.max_attempts = max(1, SCAN_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.backoff_seconds = SCAN_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._sleep = sleep
        self.sessions: dict[str, ScanSession] = {}

    def status(self, fingerprint: str) -> Optional[ScanStatus]:
        session = self.sessions.get(fingerprint)
        if session is None:
            return None
        return ScanStatus(
            fingerprint=fingerprint,
            state=session.state,
            progress=session.request.progress,
            status_message=session.request.status_message,
        )

    def cancel(self, fingerprint: str) -> bool:
        """Stop waiting on a scan.  Work already in flight finishes but is discarded."""
        session = self.sessions.pop(fingerprint, None)
        if session is None:
            return False
        session.cancel()
        logger.info("Scan %s cancelled", fingerprint)
        return True

    async def process(self, request: ScanRequest, store: ExpenseStore,
                      owner_id: Optional[str] = None, auto_process: bool = True,
                      receipt_url: Optional[str] = None,
                      callbacks: Optional[ScanCallbacks] = None,
                      today: Optional[date] = None) -> ScanResponse:
        callbacks = callbacks or ScanCallbacks()
        session = ScanSession(request, self.registry, self.previews,
                              on_progress=callbacks.on_progress)
        if not session.start():
            return ScanResponse(
                fingerprint=request.fingerprint,
                state=request.state,
                progress=request.progress,
                status_message="This receipt is already being processed",
                duplicate=True,
            )

        self.sessions[request.fingerprint] = session
        try:
            return await self._run(session, store, owner_id, auto_process,
                                   receipt_url, callbacks, today)
        finally:
            session.release()
            if self.sessions.get(request.fingerprint) is session:
                del self.sessions[request.fingerprint]
            for strategy in self.strategies:
                forget = getattr(strategy, "forget", None)
                if forget is not None:
                    forget(request)

    async def _extract_with_retry(self, session: ScanSession,
                                  callbacks: ScanCallbacks) -> tuple[Optional[ExtractionResult], int]:
        request = session.request

        def _timed_out(strategy_name: str) -> None:
            logger.warning("Scan %s: %s missed its deadline", request.fingerprint, strategy_name)
            if callbacks.on_timeout:
                callbacks.on_timeout()

        result = None
        for attempt in range(1, self.max_attempts + 1):
            result = await run_strategies(self.strategies, request, session, on_timeout=_timed_out)
            if not session.is_active or result.usable:
                return result, attempt

            if result.is_timeout:
                session.timeout()
            else:
                session.fail_attempt(result.error or "No items found on receipt")

            if attempt < self.max_attempts:
                logger.warning("Scan %s attempt %d/%d failed (%s), retrying in %.1fs",
                               request.fingerprint, attempt, self.max_attempts,
                               result.error or result.status, self.backoff_seconds)
                await self._sleep(self.backoff_seconds)
                if not session.retry():
                    return result, attempt
        return result, self.max_attempts

    def _cancelled_response(self, session: ScanSession, attempts: int,
                            quality: Optional[ImageQuality],
                            committed: Optional[list[CommittedExpense]] = None,
                            receipt_url: Optional[str] = None) -> ScanResponse:
        request = session.request
        return ScanResponse(
            fingerprint=request.fingerprint,
            state=request.state,
            progress=request.progress,
            status_message="Scan cancelled",
            committed=committed or [],
            attempts=attempts,
            cancelled=True,
            quality=quality,
            receipt_url=receipt_url,
        )

    async def _run(self, session: ScanSession, store: ExpenseStore,
                   owner_id: Optional[str], auto_process: bool,
                   receipt_url: Optional[str], callbacks: ScanCallbacks,
                   today: Optional[date]) -> ScanResponse:
        request = session.request
        quality = await asyncio.to_thread(analyze_image_quality, request.file.content)
        if not quality.acceptable:
            logger.warning("Scan %s: image quality %d/100 (%s)", request.fingerprint, quality.score,
                           "; ".join(i.message for i in quality.issues) or "low score")

        result, attempts = await self._extract_with_retry(session, callbacks)

        if not session.is_active:
            logger.info("Scan %s finished after cancellation, result discarded", request.fingerprint)
            return self._cancelled_response(session, attempts, quality)

        if result is not None and result.usable:
            items = normalize_items(result.items, today, default_date=result.receipt_date)
            basic_info_only = False
            source = result.source
            notice = None
        else:
            logger.warning("Scan %s: all %d attempt(s) failed, recording basic information only",
                           request.fingerprint, attempts)
            items = [synthetic_default_item(today, amount=result.total if result else None)]
            basic_info_only = True
            source = None
            notice = BASIC_INFO_NOTICE
            # the last failed attempt left the session errored/timed out
            session.retry()

        session.update_progress(80, "Extracting expense information...")
        main_item = select_main_item(items, today)

        committed: list[CommittedExpense] = []
        if auto_process:
            if not session.is_active:
                logger.info("Scan %s cancelled before saving, nothing committed", request.fingerprint)
                return self._cancelled_response(session, attempts, quality)
            session.update_progress(90, "Saving expenses...")
            try:
                committed = await commit_items(store, owner_id, items, receipt_url)
            except CommitError as e:
                session.error(str(e))
                if callbacks.on_error:
                    callbacks.on_error(str(e))
                raise
            if session.cancelled:
                logger.warning("Scan %s was cancelled while saving; %d expense(s) were already written",
                               request.fingerprint, len(committed))
                return self._cancelled_response(session, attempts, quality, committed, receipt_url)
            try:
                await store.save_extraction(
                    owner_id, items, main_item,
                    merchant=result.merchant if result else None,
                    receipt_url=receipt_url,
                    receipt_text=result.raw_text if result else None,
                )
            except StorageError as e:
                logger.warning("Could not record receipt extraction for %s: %s",
                               request.fingerprint, e)
            if session.cancelled:
                logger.warning("Scan %s was cancelled while saving; %d expense(s) were already written",
                               request.fingerprint, len(committed))
                return self._cancelled_response(session, attempts, quality, committed, receipt_url)

        session.update_progress(100, "Receipt processed!")
        session.complete()

        response = ScanResponse(
            fingerprint=request.fingerprint,
            state=request.state,
            progress=request.progress,
            status_message=notice or request.status_message,
            items=items,
            main_item=main_item,
            committed=committed,
            basic_info_only=basic_info_only,
            notice=notice,
            attempts=attempts,
            source=source,
            receipt_url=receipt_url,
            quality=quality,
        )
        if callbacks.on_complete:
            callbacks.on_complete(response)
        return response
