"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from datetime import datetime, timezone
import logging

from app.dependencies.services import InsightEngine, get_engine
from app.models.schemas import HealthCheckResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(engine: InsightEngine = Depends(get_engine)):
    """
    Health check endpoint to verify dependency status.

    Returns:
        HealthCheckResponse with status of each ontology provider and the context store
    """
    # Ontology providers, pinged in parallel
    reachability = await engine.ontology_client.health_check()
    ontology = {source: "ok" if ok else "error" for source, ok in reachability.items()}

    # Context store
    context_status = "ok"
    ping = getattr(engine.context_retriever, "ping", None)
    if ping is not None and not await ping():
        context_status = "error"

    # Ollama, only when the embedding similarity backend is active
    embedding_status = None
    embedder = getattr(engine.similarity, "embedder", None)
    if embedder is not None:
        embedding_status = "ok" if await embedder.check_ollama_health() else "error"

    # Overall status
    all_ok = (
        context_status == "ok"
        and embedding_status in (None, "ok")
        and all(s == "ok" for s in ontology.values())
    )
    if not all_ok:
        logger.warning(
            "Health check degraded: ontology=%s context_store=%s embedding=%s",
            ontology, context_status, embedding_status,
        )

    return HealthCheckResponse(
        status="healthy" if all_ok else "degraded",
        ontology=ontology,
        context_store=context_status,
        embedding=embedding_status,
        timestamp=datetime.now(timezone.utc),
    )
