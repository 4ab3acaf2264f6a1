"""FastAPI HTTP API for conceptkb."""

from __future__ import annotations

from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from conceptkb.capabilities import Capabilities, build_capabilities, get_default, set_default
from conceptkb.config import Config
from conceptkb.exceptions import (
    ConceptKBError,
    ConfigurationError,
    ModelFallbackExhaustedError,
    NotFoundError,
    ProviderError,
)
from conceptkb.types import LinkProposal, SearchHit


# --- Request/Response Models ---

class SearchRequest(BaseModel):
    query: str
    limit: int = 10
    min_similarity: float = 0.0
    exclude_ids: list[str] = []


class SearchResponse(BaseModel):
    results: list[SearchHit]
    count: int


class ReconcileRequest(BaseModel):
    batch_size: int | None = None


class ReconcileResponse(BaseModel):
    processed: int
    successful_batches: int
    failed_batches: int
    remaining: int
    iterations: int


class EmbedResponse(BaseModel):
    concept_id: str
    model: str
    dims: int
    updated_at: datetime


class ProposeLinksRequest(BaseModel):
    max_proposals: int = 5


class ProposeLinksResponse(BaseModel):
    proposals: list[LinkProposal]
    count: int


class StatusResponse(BaseModel):
    total: int
    with_embedding: int
    without_embedding: int
    is_indexing: bool
    last_indexed_at: datetime | None
    index_size: int
    provider: str
    model: str


# --- App factory ---

def get_caps() -> Capabilities:
    return get_default()


def create_app(config: Config | None = None, provider: str | None = None,
               caps: Capabilities | None = None) -> FastAPI:
    if caps is None:
        caps = build_capabilities(config, provider=provider)
    set_default(caps)
    config = caps.config

    app = FastAPI(
        title="conceptkb API",
        version="0.1.0",
        default_response_class=ORJSONResponse,
    )

    # Bearer token auth middleware
    token = config.api.bearer_token

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in ("/api/v1/health", "/docs", "/openapi.json"):
            return await call_next(request)
        if token:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return ORJSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)

    @app.exception_handler(ConceptKBError)
    async def conceptkb_error(request: Request, exc: ConceptKBError):
        if isinstance(exc, NotFoundError):
            status = 404
        elif isinstance(exc, (ModelFallbackExhaustedError, ProviderError)):
            status = 502
        elif isinstance(exc, ConfigurationError):
            status = 503
        else:
            status = 500
        return ORJSONResponse({"detail": str(exc), "error": type(exc).__name__}, status_code=status)

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "conceptkb"}

    @app.get("/api/v1/status", response_model=StatusResponse)
    async def get_status(caps: Capabilities = Depends(get_caps)):
        st = caps.orchestrator.get_status()
        return StatusResponse(**st.model_dump(), provider=caps.client.provider, model=caps.client.model)

    @app.post("/api/v1/embeddings/reconcile", response_model=ReconcileResponse)
    async def reconcile(req: ReconcileRequest, caps: Capabilities = Depends(get_caps)):
        progress = await caps.orchestrator.reconcile_missing(req.batch_size)
        return ReconcileResponse(**progress.model_dump())

    @app.post("/api/v1/embeddings/{concept_id}", response_model=EmbedResponse)
    async def embed_concept(concept_id: str, caps: Capabilities = Depends(get_caps)):
        record = await caps.orchestrator.embed_for_entity(concept_id)
        return EmbedResponse(
            concept_id=record.entity_id, model=record.model,
            dims=record.dims, updated_at=record.updated_at,
        )

    @app.delete("/api/v1/embeddings/{concept_id}")
    async def forget_concept(concept_id: str, caps: Capabilities = Depends(get_caps)):
        await caps.orchestrator.forget_entity(concept_id)
        return {"concept_id": concept_id, "deleted": True}

    @app.post("/api/v1/concepts/search", response_model=SearchResponse)
    async def concept_search(req: SearchRequest, caps: Capabilities = Depends(get_caps)):
        if not req.query.strip():
            raise HTTPException(status_code=422, detail="query must not be empty")
        hits = await caps.search.find_similar(
            req.query, limit=req.limit,
            min_similarity=req.min_similarity, exclude_ids=req.exclude_ids,
        )
        return SearchResponse(results=hits, count=len(hits))

    @app.post("/api/v1/concepts/{concept_id}/propose-links", response_model=ProposeLinksResponse)
    async def propose_links(concept_id: str, req: ProposeLinksRequest,
                            caps: Capabilities = Depends(get_caps)):
        if caps.store.get_concept(concept_id) is None:
            raise HTTPException(status_code=404, detail=f"Concept not found: {concept_id}")
        proposals = await caps.links.propose_links(concept_id, req.max_proposals)
        return ProposeLinksResponse(proposals=proposals, count=len(proposals))

    return app
