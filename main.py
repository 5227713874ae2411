"""
Card Lock Scanner API
POST /scan: Upload photo → detect, flatten & identify one Pokemon card → return JSON
GET /lookup: Manual card search by text
"""

from fastapi import FastAPI, UploadFile, File, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import imageio.v3 as iio
import io
import os
import time
import asyncio
import logging

from scanner import (
    OCREngines,
    ScannerConfig,
    BoundaryDetector,
    Rectifier,
    RegionTextExtractor,
    CloudServiceError,
    QuotaExceededError,
    DEFAULT_CATALOG_PATH,
    load_catalog,
)
from cloud import CloudDispatcher, GeminiCardIdentifier, DEFAULT_MODEL
from pipeline import identify_still, lookup_text

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

# ── Global state ──
config = ScannerConfig()
engines = None
catalog = ()
identifier = None
dispatcher = None
models_ready = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engines, catalog, identifier, dispatcher, models_ready

    engines = OCREngines()
    if os.environ.get("PRELOAD_OCR", "1") == "1":
        logger.info("Preloading OCR engine...")
        _ = engines.easyocr  # Force eager load (~5-10s)
        logger.info("EasyOCR loaded.")

    catalog = load_catalog(DEFAULT_CATALOG_PATH)
    logger.info(f"Catalog: {len(catalog)} entries")

    api_key = os.environ.get("GEMINI_API_KEY", "")
    if api_key:
        identifier = GeminiCardIdentifier(api_key, model=os.environ.get("GEMINI_MODEL", DEFAULT_MODEL))
        if identifier.initialize():
            dispatcher = CloudDispatcher(identifier, cooldown=config.cloud_cooldown)
        else:
            logger.warning(f"Cloud fallback disabled: {identifier.last_error}")
            identifier = None
    else:
        logger.info("GEMINI_API_KEY not set, cloud fallback disabled.")

    models_ready = True
    logger.info("Ready.")
    yield
    logger.info("Shutting down.")
    if dispatcher is not None:
        dispatcher.shutdown()
    models_ready = False


app = FastAPI(title="Card Lock Scanner API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)


# ── Endpoints ──

@app.get("/health")
async def health():
    return {
        "status": "ok" if models_ready else "loading",
        "models_ready": models_ready,
        "catalog_size": len(catalog),
        "cloud_enabled": dispatcher is not None,
    }


@app.post("/scan")
async def scan_card(image: UploadFile = File(...)):
    if not models_ready:
        raise HTTPException(503, "Models still loading, try again in ~30s")

    contents = await image.read()
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(413, "Image too large (max 10MB)")

    try:
        color_img = iio.imread(io.BytesIO(contents), index=0)
    except Exception as e:
        raise HTTPException(400, f"Invalid image: {e}")

    start = time.time()
    loop = asyncio.get_running_loop()
    scan = await loop.run_in_executor(None, _run_pipeline, color_img)
    elapsed_ms = int((time.time() - start) * 1000)

    result = scan.result
    return {
        "success": result is not None,
        "card": result.to_dict() if result else None,
        "source": result.source.value if result else None,
        "quad": _quad_to_dict(scan.quad),
        "ocr_name": scan.extracted.name if scan.extracted else None,
        "ocr_number": scan.extracted.number if scan.extracted else None,
        "processing_time_ms": elapsed_ms,
    }


@app.get("/lookup")
async def lookup(q: str):
    if not models_ready:
        raise HTTPException(503, "Models still loading, try again in ~30s")
    query = q.strip()
    if not query:
        raise HTTPException(400, "Empty query")

    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(None, lookup_text, query, catalog, identifier)
    except QuotaExceededError:
        raise HTTPException(429, "Cloud quota exhausted, retry shortly")
    except CloudServiceError as e:
        raise HTTPException(502, f"Cloud lookup failed: {e}")

    if result is None:
        raise HTTPException(404, f"No card found for '{query}'")
    return {"success": True, "card": result.to_dict()}


def _quad_to_dict(quad):
    """Corner coordinates as plain lists for JSON."""
    if quad is None:
        return None
    return {
        "tl": list(quad.tl),
        "tr": list(quad.tr),
        "bl": list(quad.bl),
        "br": list(quad.br),
    }


def _run_pipeline(color_img):
    """One-shot scan of a still image (runs in thread pool)."""
    return identify_still(
        color_img,
        BoundaryDetector(config),
        Rectifier(config),
        RegionTextExtractor(engines, config),
        catalog,
        dispatcher=dispatcher,
        config=config,
    )
