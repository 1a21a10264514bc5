from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import os
import time

from db.database import init_db
from routers import receipts, expenses
from services.categories import CANONICAL_CATEGORIES
from services.commit_service import ScanPipeline
from services.intake_service import PreviewStore

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("pocketbook")

VERSION = "0.1.0"
PREVIEW_SWEEP_INTERVAL_SECONDS = 600

app = FastAPI(
    title="Pocketbook: Receipt Expense Capture",
    description="Scan receipts into categorized expenses",
    version=VERSION,
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(receipts.router, prefix="/api/receipts", tags=["receipts"])
app.include_router(expenses.router, prefix="/api/expenses", tags=["expenses"])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response


async def _sweep_previews(previews: PreviewStore):
    while True:
        await asyncio.sleep(PREVIEW_SWEEP_INTERVAL_SECONDS)
        previews.sweep()


@app.on_event("startup")
async def on_startup():
    logger.info("Starting Pocketbook v%s  LOG_LEVEL=%s  DB=%s",
                VERSION, LOG_LEVEL, os.environ.get("DB_PATH", "(default)"))
    await init_db()
    previews = PreviewStore(os.path.join(receipts.IMAGE_DIR, "previews"))
    app.state.pipeline = ScanPipeline(previews=previews)
    app.state.sweeper = asyncio.create_task(_sweep_previews(previews))


@app.on_event("shutdown")
async def on_shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/categories")
async def list_categories():
    return CANONICAL_CATEGORIES
