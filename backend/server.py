from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import access, profile, scans

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if os.environ.get("PYTEST_RUNNING"):
        logger.info("PYTEST_RUNNING set, skipping database startup")
        yield
        return

    logger.info("Starting Glow-Up Scan API")
    await database.connect()

    if not os.environ.get("ANALYSIS_SERVICE_URL"):
        logger.error("ANALYSIS_SERVICE_URL is not set. Every scan will fail at the analysis step.")
    if os.environ.get("ENTITLEMENT_SOURCE", "mongo").strip().lower() == "stripe":
        stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
        if not stripe_key:
            logger.error("ENTITLEMENT_SOURCE=stripe but STRIPE_SECRET_KEY is not set. Every entitlement check will deny.")
        else:
            logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not os.environ.get("LLM_API_KEY"):
        logger.info("LLM_API_KEY is not set. Glow-up plans will use the standard plan.")

    yield
    # Shutdown
    logger.info("Shutting down Glow-Up Scan API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Glow-Up Scan API",
    description="Guest capture staging, entitlement-gated scan ingestion and scoring",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(access.router)
app.include_router(profile.router)
app.include_router(scans.router)

@app.get("/api/health")
async def health():
    return {"status": "ok"}

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    path = getattr(request, "url", None) and getattr(request.url, "path", "") or ""
    logger.warning(
        "Request validation failed request_id=%s path=%s error_count=%s",
        request_id, path, len(exc.errors()),
    )
    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "error_code": "VALIDATION_ERROR",
                "message": "Request body is invalid",
                "request_id": request_id,
                "errors": [
                    {"loc": list(e.get("loc", [])), "msg": e.get("msg", "")}
                    for e in exc.errors()
                ],
            }
        },
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
