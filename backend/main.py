from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from db.database import init_db
from routers import drafts, receipts

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

logger = logging.getLogger("tally")

VERSION = "0.1.0"

app = FastAPI(
    title="Tally — Grocery Receipt Review",
    description="Receipt reconciliation and UK VAT apportionment for household budgeting",
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

app.include_router(drafts.router,   prefix="/api/drafts",   tags=["drafts"])
app.include_router(receipts.router, prefix="/api/receipts", tags=["receipts"])


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

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Tally v%s  LOG_LEVEL=%s  DB=%s",
                VERSION, LOG_LEVEL, os.environ.get("DB_PATH", "(default)"))
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/diagnose")
async def diagnose():
    """Check that runtime dependencies are usable (never exposes key material)."""
    results = {}

    try:
        from PIL import Image  # noqa: F401
        results["pillow"] = {"ok": True}
    except ImportError as e:
        results["pillow"] = {"ok": False, "error": str(e)}

    try:
        from pillow_heif import register_heif_opener  # noqa: F401
        results["pillow_heif"] = {"ok": True}
    except ImportError as e:
        results["pillow_heif"] = {"ok": False, "error": str(e)}

    db_dir = os.path.dirname(os.environ.get("DB_PATH", "/data/tally.db"))
    results["data_dir"] = {
        "ok": os.path.isdir(db_dir),
        "writable": os.access(db_dir, os.W_OK),
    }

    key = os.environ.get("ANTHROPIC_API_KEY", "")
    results["anthropic_key"] = {
        "ok": bool(key and key.startswith("sk-")),
        "set": bool(key),
    }

    return {"all_ok": all(v.get("ok") for v in results.values()), "checks": results}
