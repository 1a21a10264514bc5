"""
Receipts Router

POST   /api/receipts/scan                upload an image, extract, normalize, commit
GET    /api/receipts/scan/{fingerprint}  progress of an in-flight scan
DELETE /api/receipts/scan/{fingerprint}  cancel an in-flight scan
GET    /api/receipts                     the caller's scanned receipts
GET    /api/receipts/images/{filename}   stored receipt image
"""
import logging
import os
import uuid
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from db.database import get_db
from models.schemas import ReceiptExtraction, ScanResponse, ScanStatus
from services.commit_service import CommitError, ExpenseStore, ScanPipeline
from services.intake_service import PreviewStore, ScanFile, ScanRequest

logger = logging.getLogger("pocketbook.receipts")
router = APIRouter()

IMAGE_DIR = os.environ.get("IMAGE_DIR", "/data/images")


# ── Dependencies ──────────────────────────────────────────────────────────────

async def get_owner_id(x_owner_id: Optional[str] = Header(None)) -> Optional[str]:
    """Authenticated caller, as forwarded by the auth proxy."""
    return (x_owner_id or "").strip() or None


def get_pipeline(request: Request) -> ScanPipeline:
    """The app-wide scan pipeline (created on first use)."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = ScanPipeline(previews=PreviewStore(os.path.join(IMAGE_DIR, "previews")))
        request.app.state.pipeline = pipeline
    return pipeline


def _remove_image(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove receipt image %s: %s", path, e)


# ── Scan ──────────────────────────────────────────────────────────────────────

@router.post("/scan", response_model=ScanResponse)
async def scan_receipt(
    file: UploadFile = File(...),
    last_modified: int = Form(0),         # client-side mtime, ms since epoch
    auto_process: bool = Form(True),      # False → return items for the form, commit nothing
    owner_id: Optional[str] = Depends(get_owner_id),
    pipeline: ScanPipeline = Depends(get_pipeline),
    db: aiosqlite.Connection = Depends(get_db),
):
    """
    Run one receipt through the scan pipeline.

    With auto_process the extracted items are saved as expenses; otherwise
    they are returned (with the suggested main item) for manual entry.
    """
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=422, detail="Uploaded file is empty")

    scan_request = ScanRequest(ScanFile(
        contents,
        file.filename,
        media_type=file.content_type or "image/jpeg",
        last_modified=last_modified,
    ))
    if scan_request.fingerprint in pipeline.registry:
        raise HTTPException(status_code=409, detail="This receipt is already being processed")

    ext = os.path.splitext(file.filename or "")[1].lower() or ".jpg"
    image_filename = f"{uuid.uuid4()}{ext}"
    image_path = os.path.join(IMAGE_DIR, image_filename)
    os.makedirs(IMAGE_DIR, exist_ok=True)
    with open(image_path, "wb") as f:
        f.write(contents)

    try:
        response = await pipeline.process(
            scan_request,
            ExpenseStore(db),
            owner_id=owner_id,
            auto_process=auto_process,
            receipt_url=f"/api/receipts/images/{image_filename}",
        )
    except CommitError as e:
        _remove_image(image_path)
        if e.unauthenticated:
            raise HTTPException(status_code=401, detail=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    if response.duplicate:
        _remove_image(image_path)
        raise HTTPException(status_code=409, detail=response.status_message)
    if response.cancelled and not response.committed:
        _remove_image(image_path)
        response.receipt_url = None

    logger.info("Scan %s → %s (%d item(s), attempts=%d, source=%s)",
                response.fingerprint, response.state, len(response.items),
                response.attempts, response.source)
    return response


@router.get("/scan/{fingerprint}", response_model=ScanStatus)
async def scan_status(fingerprint: str, pipeline: ScanPipeline = Depends(get_pipeline)):
    status = pipeline.status(fingerprint)
    if status is None:
        raise HTTPException(status_code=404, detail="No scan in progress for this file")
    return status


@router.delete("/scan/{fingerprint}")
async def cancel_scan(fingerprint: str, pipeline: ScanPipeline = Depends(get_pipeline)):
    if not pipeline.cancel(fingerprint):
        raise HTTPException(status_code=404, detail="No scan in progress for this file")
    return {"status": "cancelled", "fingerprint": fingerprint}


# ── List Receipts ─────────────────────────────────────────────────────────────

@router.get("", response_model=list[ReceiptExtraction])
async def list_receipts(
    limit: int = 50,
    offset: int = 0,
    owner_id: Optional[str] = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    if not owner_id:
        raise HTTPException(status_code=401, detail="You must be signed in to view receipts")
    try:
        return await ExpenseStore(db).list_extractions(owner_id, limit, offset)
    except aiosqlite.Error:
        logger.exception("DB query failed in list_receipts")
        raise


@router.get("/images/{filename}")
async def get_receipt_image(filename: str):
    if os.path.basename(filename) != filename:
        raise HTTPException(status_code=404, detail="Image file not found")
    path = os.path.join(IMAGE_DIR, filename)
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Image file not found")
    return FileResponse(path)
