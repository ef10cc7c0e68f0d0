"""
Main FastAPI application for the concept insight engine.
Handles CORS, request logging middleware, lifespan events, and router registration.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.dependencies.services import InsightEngine, build_engine
from app.routers import health, insights, ontology

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------

async def _check_ontologies(engine: InsightEngine) -> dict:
    """
    Ping every ontology provider.  Never raises — an unreachable provider
    only means its results are missing until it comes back.
    """
    status_by_source = await engine.ontology_client.health_check()
    for source, ok in status_by_source.items():
        if ok:
            logger.info("✓ Ontology provider '%s' reachable", source)
        else:
            logger.warning(
                "⚠ Ontology provider '%s' unreachable — its results will be missing", source
            )
    return status_by_source


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting concept insight engine …")
    logger.info("=" * 60)

    # 1. Service graph (required; a bad CONTEXT_STORE_FILE raises here)
    engine = build_engine(settings)
    app.state.engine = engine
    logger.info("✓ Services wired (similarity backend: %s)", settings.SIMILARITY_BACKEND)

    # 2. External ontologies (optional; logs warnings but continues)
    reachable = await _check_ontologies(engine)
    if reachable and not any(reachable.values()):
        logger.warning(
            "No ontology provider is reachable.  Hidden links fall back to direct "
            "pairs and no knowledge gaps will be found until one is up."
        )

    logger.info("=" * 60)
    logger.info("  Insight engine ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down insight engine …")
    engine.ontology_client.clear_cache()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Concept Insight API",
    description=(
        "Knowledge-graph reasoning over a learner's concepts.\n\n"
        "Enriches concepts from Wikidata and DBpedia, detects knowledge gaps, "
        "discovers hidden multi-hop links and ranks both for a learner profile.\n\n"
        "Key endpoints:\n"
        "- `GET  /api/ontology/search` — external ontology lookup\n"
        "- `POST /api/insights/gaps` — knowledge gaps\n"
        "- `POST /api/insights/links` — hidden links\n"
        "- `POST /api/insights/ranking` — unified ranking\n"
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy health-check polling
    if not request.url.path.startswith("/api/health") and request.url.path != "/":
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Global exception handler
# ---------------------------------------------------------------------------

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a structured JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "path": str(request.url.path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,   prefix="/api/health",   tags=["Health"])
app.include_router(ontology.router, prefix="/api/ontology", tags=["Ontology"])
app.include_router(insights.router, prefix="/api/insights", tags=["Insights"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root — returns basic service info."""
    return {
        "name": "Concept Insight API",
        "version": "0.1.0",
        "description": "Knowledge gap, hidden link and ranking engine",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "ontology": "/api/ontology",
            "gaps": "/api/insights/gaps",
            "links": "/api/insights/links",
            "ranking": "/api/insights/ranking",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level=settings.LOG_LEVEL.lower(),
    )
