"""
SEO Pipeline API Server
=======================

FastAPI server exposing the content pipeline: article CRUD, sites, personas,
nuggets and silos, the seven pipeline steps, write-all with Server-Sent
Events progress, single-block streaming, title and authority link selection,
cost analytics and refresh candidates.

Run directly:
    python -m seo_pipeline.api
    uvicorn seo_pipeline.api:app --host 0.0.0.0 --port 8780

Host and port configurable via SEO_PIPELINE_API_HOST / SEO_PIPELINE_API_PORT.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from seo_pipeline.ai_router import AVAILABLE_MODELS
from seo_pipeline.content_model import (
    ArticleStatus,
    Nugget,
    Persona,
    PipelineRunResult,
    PipelineStep,
    SearchIntent,
    Silo,
    SiloLink,
    Site,
)
from seo_pipeline.content_store import ContentStore, StoreError
from seo_pipeline.cost_tracker import CostTracker
from seo_pipeline.refresh_detector import get_refresh_candidates, mark_for_refresh
from seo_pipeline.state_machine import (
    get_available_steps,
    get_pipeline_progress,
    get_status_label,
    get_step_label,
)
from seo_pipeline.step_executor import (
    ArticleNotFoundError,
    BlockNotFoundError,
    NothingToWriteError,
    PipelineExecutor,
    PipelineServices,
    build_services,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("seo_pipeline.api")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_HOST = os.getenv("SEO_PIPELINE_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("SEO_PIPELINE_API_PORT", "8780"))

ALLOWED_ORIGINS = os.getenv(
    "SEO_PIPELINE_ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:8780",
).split(",")

ARTICLE_LIST_LIMIT = 50

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class CreateArticleRequest(BaseModel):
    site_id: str
    keyword: str = Field(..., min_length=1)
    search_intent: SearchIntent = SearchIntent.TRAFFIC
    persona_id: Optional[str] = None
    silo_id: Optional[str] = None
    link_to_money_page: bool = False


class StepRequest(BaseModel):
    model: Optional[str] = Field(None, description="Model ID from GET /models")
    blockIndex: Optional[int] = Field(None, description="Block to write (write-block only)")


class WriteAllRequest(BaseModel):
    model: Optional[str] = None


class StreamBlockRequest(BaseModel):
    blockIndex: int = Field(0, ge=0)
    model: Optional[str] = None


class UpdateArticleRequest(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    seo_title: Optional[str] = None
    meta_description: Optional[str] = None
    content_blocks: Optional[List[Dict[str, Any]]] = None
    content_html: Optional[str] = None
    status: Optional[ArticleStatus] = None
    persona_id: Optional[str] = None
    silo_id: Optional[str] = None
    search_intent: Optional[SearchIntent] = None
    word_count: Optional[int] = Field(None, ge=0)
    json_ld: Optional[Dict[str, Any]] = None
    serp_data: Optional[Dict[str, Any]] = None
    nugget_density_score: Optional[float] = None
    link_to_money_page: Optional[bool] = None


class CreateSiteRequest(BaseModel):
    name: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    wp_url: str = ""
    wp_user: str = ""
    wp_app_password: str = ""
    niche: Optional[str] = None
    default_persona_id: Optional[str] = None
    money_page_url: Optional[str] = None
    money_page_description: Optional[str] = None
    theme_color: Optional[str] = None


class UpdateSiteRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    domain: Optional[str] = Field(None, min_length=1)
    wp_url: Optional[str] = None
    wp_user: Optional[str] = None
    wp_app_password: Optional[str] = None
    niche: Optional[str] = None
    default_persona_id: Optional[str] = None
    money_page_url: Optional[str] = None
    money_page_description: Optional[str] = None
    theme_color: Optional[str] = None


class CreatePersonaRequest(BaseModel):
    site_id: str
    name: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    tone_description: Optional[str] = None
    bio: Optional[str] = None
    writing_style_examples: List[Dict[str, Any]] = Field(default_factory=list)


class UpdatePersonaRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    role: Optional[str] = Field(None, min_length=1)
    tone_description: Optional[str] = None
    bio: Optional[str] = None
    writing_style_examples: Optional[List[Dict[str, Any]]] = None


class CreateNuggetRequest(BaseModel):
    content: str = Field(..., min_length=1)
    source_type: str = "manual"
    tags: List[str] = Field(default_factory=list)
    site_id: Optional[str] = None
    persona_id: Optional[str] = None


class UpdateNuggetRequest(BaseModel):
    content: Optional[str] = Field(None, min_length=1)
    source_type: Optional[str] = None
    tags: Optional[List[str]] = None
    site_id: Optional[str] = None
    persona_id: Optional[str] = None


class CreateSiloRequest(BaseModel):
    site_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class UpdateSiloRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class CreateSiloLinkRequest(BaseModel):
    source_article_id: str
    target_article_id: str
    anchor_text: str = Field(..., min_length=1)
    is_bidirectional: bool = False


class SelectTitleRequest(BaseModel):
    title_index: int = Field(..., ge=0, le=2)


class SelectAuthorityLinkRequest(BaseModel):
    link_index: Optional[int] = Field(None, ge=0)
    custom_url: Optional[str] = None
    custom_title: Optional[str] = None
    anchor_context: Optional[str] = None


class RefreshScanRequest(BaseModel):
    site_id: Optional[str] = None
    auto_mark: bool = False


# ---------------------------------------------------------------------------
# Pydantic Models -- Responses
# ---------------------------------------------------------------------------


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    subsystems: Dict[str, str] = Field(default_factory=dict)
    version: str = "1.0.0"


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the service graph and the executor built on it."""

    def __init__(self) -> None:
        self.services: Optional[PipelineServices] = None
        self.executor: Optional[PipelineExecutor] = None
        self.start_time: float = 0.0

    @property
    def store(self) -> ContentStore:
        return self.services.store


state = AppState()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline services on startup, close their sessions on shutdown."""
    logger.info("Starting SEO Pipeline API on port %d", API_PORT)
    state.start_time = time.monotonic()

    services = build_services()
    state.services = services
    state.executor = PipelineExecutor(services)
    logger.info("Pipeline services initialized (store=%s)", services.store.path)
    yield

    logger.info("Shutting down SEO Pipeline API")
    await services.close()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SEO Pipeline API",
    description="Step-by-step orchestration of long-form SEO articles.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _changes(req: BaseModel) -> Dict[str, Any]:
    """Fields the client actually sent, with enums as their values."""
    return req.model_dump(exclude_unset=True, mode="json")


def _apply(entity: Any, changes: Dict[str, Any]) -> Any:
    for key, value in changes.items():
        setattr(entity, key, value)
    return entity


# ===================================================================
# Health & configuration
# ===================================================================


@app.get("/health", response_model=StatusResponse, tags=["Health"])
async def health():
    """Server health check."""
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    subs = {
        "executor": "ready" if state.executor else "unavailable",
        "uptime_seconds": f"{uptime:.0f}",
    }
    return StatusResponse(status="ok", timestamp=_now_iso(), subsystems=subs)


@app.get("/models", tags=["Configuration"])
async def list_models():
    """Models an operator may pick for plan and write steps."""
    return [model.to_dict() for model in AVAILABLE_MODELS]


@app.get("/routing", tags=["Configuration"])
async def routing():
    """Task routing table (provider, model, max_tokens, temperature)."""
    return state.services.router.get_all_routing_configs()


# ===================================================================
# Articles
# ===================================================================


@app.post("/articles", status_code=201, tags=["Articles"])
async def create_article(req: CreateArticleRequest):
    """Create a draft article for a keyword."""
    if state.store.get_site(req.site_id) is None:
        return _error(404, "Site non trouve")
    article = state.store.create_article(
        req.site_id,
        req.keyword.strip(),
        search_intent=req.search_intent.value,
        persona_id=req.persona_id,
        silo_id=req.silo_id,
        link_to_money_page=req.link_to_money_page,
    )
    return article.to_dict()


@app.get("/articles", tags=["Articles"])
async def list_articles(
    site_id: Optional[str] = None,
    status: Optional[ArticleStatus] = None,
    search: Optional[str] = None,
):
    """Articles, newest first, optionally filtered."""
    articles = state.store.list_articles(
        site_id=site_id, status=status.value if status else None
    )
    if search:
        needle = search.lower()
        articles = [
            a for a in articles
            if needle in a.keyword.lower() or needle in (a.title or "").lower()
        ]
    articles.reverse()
    return [a.to_dict() for a in articles[:ARTICLE_LIST_LIMIT]]


@app.get("/articles/{article_id}", tags=["Articles"])
async def get_article(article_id: str):
    article = state.store.get_article(article_id)
    if article is None:
        return _error(404, "Article non trouve")
    return article.to_dict()


@app.patch("/articles/{article_id}", tags=["Articles"])
async def update_article(article_id: str, req: UpdateArticleRequest):
    """Edit article fields directly (persona, silo, blocks, metadata...)."""
    changes = _changes(req)
    if changes.get("persona_id") and state.store.get_persona(changes["persona_id"]) is None:
        return _error(404, "Persona non trouve")
    if changes.get("silo_id") and state.store.get_silo(changes["silo_id"]) is None:
        return _error(404, "Silo non trouve")
    try:
        article = state.store.update_article(article_id, **changes)
    except StoreError:
        return _error(404, "Article non trouve")
    except (TypeError, ValueError) as exc:
        return _error(422, f"Blocs invalides: {exc}")
    return article.to_dict()


@app.delete("/articles/{article_id}", status_code=204, tags=["Articles"])
async def delete_article(article_id: str):
    """Delete an article with its runs and silo links."""
    if not state.store.delete_article(article_id):
        return _error(404, "Article non trouve")
    return Response(status_code=204)


@app.get("/articles/{article_id}/steps", tags=["Articles"])
async def article_steps(article_id: str):
    """Steps available from the article's current status."""
    article = state.store.get_article(article_id)
    if article is None:
        return _error(404, "Article non trouve")
    return {
        "status": article.status,
        "statusLabel": get_status_label(article.status),
        "progress": get_pipeline_progress(article.status),
        "availableSteps": [
            {"step": step, "label": get_step_label(step)}
            for step in get_available_steps(article.status)
        ],
    }


@app.get("/articles/{article_id}/runs", tags=["Articles"])
async def article_runs(article_id: str, step: Optional[PipelineStep] = None):
    """Pipeline runs of the article, newest first."""
    if state.store.get_article(article_id) is None:
        return _error(404, "Article non trouve")
    runs = state.store.list_runs(article_id=article_id, step=step.value if step else None)
    return [run.to_dict() for run in runs]


@app.get("/runs/stale", tags=["Articles"])
async def stale_runs(minutes: int = Query(30, ge=1)):
    """Runs still ``running`` after ``minutes`` (left behind by a crash)."""
    return [run.to_dict() for run in state.store.list_stale_runs(older_than_minutes=minutes)]


# ===================================================================
# Pipeline steps
# ===================================================================


def _step_response(article_id: str, result: PipelineRunResult) -> Any:
    if result.success:
        return result.to_dict()
    if result.run_id:
        return _error(422, result.error or "Echec de l'etape", runId=result.run_id)
    if state.store.get_article(article_id) is None:
        return _error(404, result.error or "Article non trouve")
    return _error(422, result.error or "Transition refusee")


async def _run_step(
    article_id: str, step: PipelineStep, req: Optional[StepRequest]
) -> Any:
    run_input: Dict[str, Any] = {}
    if req is not None:
        if req.model:
            run_input["model"] = req.model
        if req.blockIndex is not None:
            run_input["blockIndex"] = req.blockIndex
    try:
        result = await state.executor.execute_step(article_id, step, run_input)
    except Exception as exc:
        logger.error("Step %s for article %s crashed: %s", step.value, article_id, exc)
        return _error(500, str(exc) or type(exc).__name__)
    return _step_response(article_id, result)


@app.post("/articles/{article_id}/analyze", tags=["Pipeline"])
async def step_analyze(article_id: str, req: Optional[StepRequest] = None):
    """SERP analysis, competitor content and cannibalization check."""
    return await _run_step(article_id, PipelineStep.ANALYZE, req)


@app.post("/articles/{article_id}/plan", tags=["Pipeline"])
async def step_plan(article_id: str, req: Optional[StepRequest] = None):
    """Generate the article plan and title suggestions."""
    return await _run_step(article_id, PipelineStep.PLAN, req)


@app.post("/articles/{article_id}/write-block", tags=["Pipeline"])
async def step_write_block(article_id: str, req: Optional[StepRequest] = None):
    """Write one block (``blockIndex``, default 0)."""
    return await _run_step(article_id, PipelineStep.WRITE_BLOCK, req)


@app.post("/articles/{article_id}/media", tags=["Pipeline"])
async def step_media(article_id: str, req: Optional[StepRequest] = None):
    return await _run_step(article_id, PipelineStep.MEDIA, req)


@app.post("/articles/{article_id}/seo", tags=["Pipeline"])
async def step_seo(article_id: str, req: Optional[StepRequest] = None):
    return await _run_step(article_id, PipelineStep.SEO, req)


@app.post("/articles/{article_id}/publish", tags=["Pipeline"])
async def step_publish(article_id: str, req: Optional[StepRequest] = None):
    """Push the article to WordPress as a draft."""
    return await _run_step(article_id, PipelineStep.PUBLISH, req)


@app.post("/articles/{article_id}/refresh", tags=["Pipeline"])
async def step_refresh(article_id: str, req: Optional[StepRequest] = None):
    return await _run_step(article_id, PipelineStep.REFRESH, req)


@app.post("/articles/{article_id}/write-all", tags=["Pipeline"])
async def write_all(article_id: str, req: Optional[WriteAllRequest] = None):
    """Write every pending block; progress is streamed as Server-Sent Events."""
    executor = state.executor
    try:
        indexes = executor.prepare_write_all(article_id)
    except ArticleNotFoundError:
        return _error(404, "Article non trouve")
    except NothingToWriteError as exc:
        return _error(422, str(exc))

    total_blocks = len(state.store.get_article(article_id).content_blocks)
    model = req.model if req is not None else None

    async def events() -> AsyncIterator[str]:
        written = errors = 0
        async for progress in executor.write_all(article_id, indexes, model=model):
            if progress["success"]:
                written += 1
            else:
                errors += 1
            yield _sse("progress", {
                "current": progress["current"],
                "total": progress["total"],
                "blockIndex": progress["blockIndex"],
                "success": progress["success"],
            })
        yield _sse("done", {"written": written, "errors": errors, "totalBlocks": total_blocks})

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/articles/{article_id}/stream", tags=["Pipeline"])
async def stream_block(article_id: str, req: Optional[StreamBlockRequest] = None):
    """Stream the text of one block as it is written (preview, nothing is saved).

    Events: ``text`` deltas, ``reset`` when a failed stream is replaced by a
    single call, then ``done`` with token counts, or ``error``.
    """
    req = req or StreamBlockRequest()
    try:
        system, user = state.executor.prepare_stream_block(article_id, req.blockIndex)
    except ArticleNotFoundError:
        return _error(404, "Article non trouve")
    except BlockNotFoundError as exc:
        return _error(404, str(exc))

    async def events() -> AsyncIterator[str]:
        try:
            async for event in state.executor.stream_block(system, user, model=req.model):
                payload = dict(event)
                yield _sse(payload.pop("type"), payload)
        except Exception as exc:
            logger.error("Stream of article %s block %d failed: %s", article_id, req.blockIndex, exc)
            yield _sse("error", {"error": str(exc) or type(exc).__name__})

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ===================================================================
# Editorial selections
# ===================================================================


@app.post("/articles/{article_id}/select-title", tags=["Selections"])
async def select_title(article_id: str, req: SelectTitleRequest):
    """Adopt one of the plan's title suggestions."""
    article = state.store.get_article(article_id)
    if article is None:
        return _error(404, "Article non trouve")
    suggestions = article.title_suggestions or []
    if req.title_index >= len(suggestions):
        return _error(400, "Suggestion de titre introuvable")

    chosen = suggestions[req.title_index]
    for idx, suggestion in enumerate(suggestions):
        suggestion.selected = idx == req.title_index
    article.title = chosen.title
    article.slug = chosen.slug or None
    article.seo_title = chosen.seo_title or chosen.title
    state.store.save_article(article)
    return article.to_dict()


@app.post("/articles/{article_id}/select-authority-link", tags=["Selections"])
async def select_authority_link(article_id: str, req: SelectAuthorityLinkRequest):
    """Pick a suggested authority link, or a custom URL that answers a HEAD check."""
    if req.link_index is None and not req.custom_url:
        return _error(422, "link_index ou custom_url requis")
    article = state.store.get_article(article_id)
    if article is None:
        return _error(404, "Article non trouve")

    suggestions: List[Dict[str, Any]] = list(article.authority_link_suggestions or [])
    if req.link_index is not None:
        if req.link_index >= len(suggestions):
            return _error(400, "Suggestion de lien introuvable")
        chosen = suggestions[req.link_index]
        selected = {
            "url": chosen["url"],
            "title": chosen.get("title") or chosen["url"],
            "anchor_context": req.anchor_context or chosen.get("rationale") or "",
        }
        suggestions = [
            {**s, "selected": idx == req.link_index} for idx, s in enumerate(suggestions)
        ]
    else:
        if not await state.services.authority.check_url(req.custom_url):
            return _error(422, "Le lien personnalise ne repond pas (HTTP error ou timeout)")
        selected = {
            "url": req.custom_url,
            "title": req.custom_title or req.custom_url,
            "anchor_context": req.anchor_context or "",
        }
        suggestions = [{**s, "selected": False} for s in suggestions]

    article.selected_authority_link = selected
    article.authority_link_suggestions = suggestions or None
    state.store.save_article(article)
    return article.to_dict()


# ===================================================================
# Sites & personas
# ===================================================================


@app.get("/sites", tags=["Sites"])
async def list_sites():
    return [site.to_dict() for site in state.store.list_sites()]


@app.post("/sites", status_code=201, tags=["Sites"])
async def create_site(req: CreateSiteRequest):
    site = state.store.save_site(Site(**req.model_dump()))
    logger.info("Site %s created (%s)", site.id[:8], site.domain)
    return site.to_dict()


@app.get("/sites/{site_id}", tags=["Sites"])
async def get_site(site_id: str):
    site = state.store.get_site(site_id)
    if site is None:
        return _error(404, "Site non trouve")
    return site.to_dict()


@app.patch("/sites/{site_id}", tags=["Sites"])
async def update_site(site_id: str, req: UpdateSiteRequest):
    site = state.store.get_site(site_id)
    if site is None:
        return _error(404, "Site non trouve")
    return state.store.save_site(_apply(site, _changes(req))).to_dict()


@app.delete("/sites/{site_id}", status_code=204, tags=["Sites"])
async def delete_site(site_id: str):
    """Delete a site with its articles, personas and silos."""
    if not state.store.delete_site(site_id):
        return _error(404, "Site non trouve")
    return Response(status_code=204)


@app.get("/personas", tags=["Sites"])
async def list_personas(site_id: Optional[str] = None):
    return [persona.to_dict() for persona in state.store.list_personas(site_id)]


@app.post("/personas", status_code=201, tags=["Sites"])
async def create_persona(req: CreatePersonaRequest):
    if state.store.get_site(req.site_id) is None:
        return _error(404, "Site non trouve")
    return state.store.save_persona(Persona(**req.model_dump())).to_dict()


@app.get("/personas/{persona_id}", tags=["Sites"])
async def get_persona(persona_id: str):
    persona = state.store.get_persona(persona_id)
    if persona is None:
        return _error(404, "Persona non trouve")
    return persona.to_dict()


@app.patch("/personas/{persona_id}", tags=["Sites"])
async def update_persona(persona_id: str, req: UpdatePersonaRequest):
    persona = state.store.get_persona(persona_id)
    if persona is None:
        return _error(404, "Persona non trouve")
    return state.store.save_persona(_apply(persona, _changes(req))).to_dict()


@app.delete("/personas/{persona_id}", status_code=204, tags=["Sites"])
async def delete_persona(persona_id: str):
    """Delete a persona; articles using it are left without one."""
    if not state.store.delete_persona(persona_id):
        return _error(404, "Persona non trouve")
    return Response(status_code=204)


# ===================================================================
# Nuggets
# ===================================================================


@app.get("/nuggets", tags=["Nuggets"])
async def list_nuggets(site_id: Optional[str] = None, limit: int = Query(20, ge=1, le=200)):
    """Nuggets of a site plus global ones, newest first."""
    return [nugget.to_dict() for nugget in state.store.list_nuggets(site_id, limit=limit)]


@app.post("/nuggets", status_code=201, tags=["Nuggets"])
async def create_nugget(req: CreateNuggetRequest):
    return state.store.save_nugget(Nugget(**req.model_dump())).to_dict()


@app.patch("/nuggets/{nugget_id}", tags=["Nuggets"])
async def update_nugget(nugget_id: str, req: UpdateNuggetRequest):
    nugget = state.store.get_nugget(nugget_id)
    if nugget is None:
        return _error(404, "Nugget non trouve")
    return state.store.save_nugget(_apply(nugget, _changes(req))).to_dict()


@app.delete("/nuggets/{nugget_id}", status_code=204, tags=["Nuggets"])
async def delete_nugget(nugget_id: str):
    if not state.store.delete_nugget(nugget_id):
        return _error(404, "Nugget non trouve")
    return Response(status_code=204)


# ===================================================================
# Silos
# ===================================================================


@app.get("/silos", tags=["Silos"])
async def list_silos(site_id: Optional[str] = None):
    return [silo.to_dict() for silo in state.store.list_silos(site_id)]


@app.post("/silos", status_code=201, tags=["Silos"])
async def create_silo(req: CreateSiloRequest):
    if state.store.get_site(req.site_id) is None:
        return _error(404, "Site non trouve")
    return state.store.save_silo(Silo(**req.model_dump())).to_dict()


@app.get("/silos/{silo_id}", tags=["Silos"])
async def get_silo(silo_id: str):
    """A silo with its articles."""
    silo = state.store.get_silo(silo_id)
    if silo is None:
        return _error(404, "Silo non trouve")
    articles = state.store.list_articles(silo_id=silo_id)
    return {
        **silo.to_dict(),
        "articles": [
            {"id": a.id, "keyword": a.keyword, "title": a.title, "status": a.status}
            for a in articles
        ],
    }


@app.patch("/silos/{silo_id}", tags=["Silos"])
async def update_silo(silo_id: str, req: UpdateSiloRequest):
    silo = state.store.get_silo(silo_id)
    if silo is None:
        return _error(404, "Silo non trouve")
    return state.store.save_silo(_apply(silo, _changes(req))).to_dict()


@app.delete("/silos/{silo_id}", status_code=204, tags=["Silos"])
async def delete_silo(silo_id: str):
    """Delete a silo and its links; its articles leave the silo."""
    if not state.store.delete_silo(silo_id):
        return _error(404, "Silo non trouve")
    return Response(status_code=204)


@app.get("/silos/{silo_id}/links", tags=["Silos"])
async def list_silo_links(silo_id: str):
    if state.store.get_silo(silo_id) is None:
        return _error(404, "Silo non trouve")
    return [link.to_dict() for link in state.store.list_silo_links(silo_id)]


@app.post("/silos/{silo_id}/links", status_code=201, tags=["Silos"])
async def create_silo_link(silo_id: str, req: CreateSiloLinkRequest):
    """Link two articles of the silo; the anchor is injected at the SEO step."""
    if state.store.get_silo(silo_id) is None:
        return _error(404, "Silo non trouve")
    for article_id in (req.source_article_id, req.target_article_id):
        if state.store.get_article(article_id) is None:
            return _error(404, f"Article non trouve: {article_id}")
    link = state.store.save_silo_link(SiloLink(silo_id=silo_id, **req.model_dump()))
    return link.to_dict()


@app.delete("/silos/{silo_id}/links/{link_id}", status_code=204, tags=["Silos"])
async def delete_silo_link(silo_id: str, link_id: str):
    if not state.store.delete_silo_link(silo_id, link_id):
        return _error(404, "Lien non trouve")
    return Response(status_code=204)


# ===================================================================
# Analytics & refresh
# ===================================================================


@app.get("/analytics/costs", tags=["Analytics"])
async def analytics_costs(
    site_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
):
    """Spend totals with per-model and per-step breakdowns."""
    return CostTracker(state.store).get_cost_summary(site_id, date_from, date_to)


@app.get("/analytics/costs/daily", tags=["Analytics"])
async def analytics_daily_costs(days: int = Query(30, ge=1, le=365)):
    return CostTracker(state.store).get_daily_costs(days)


@app.get("/analytics/costs/articles", tags=["Analytics"])
async def analytics_expensive_articles(limit: int = Query(10, ge=1, le=100)):
    return CostTracker(state.store).get_most_expensive_articles(limit)


@app.get("/analytics/budget", tags=["Analytics"])
async def analytics_budget(monthly_budget_usd: float = Query(..., gt=0)):
    """Current month spend against a budget; alert from 80%."""
    return CostTracker(state.store).check_budget_alert(monthly_budget_usd)


@app.get("/refresh/candidates", tags=["Refresh"])
async def refresh_candidates(site_id: Optional[str] = None):
    """Published articles due for a refresh, short ones first."""
    return get_refresh_candidates(state.store, site_id)


@app.post("/refresh/scan", tags=["Refresh"])
async def refresh_scan(req: RefreshScanRequest):
    """List candidates and, with ``auto_mark``, run the refresh step on them."""
    candidates = get_refresh_candidates(state.store, req.site_id)
    marked = 0
    if req.auto_mark and candidates:
        marked = await mark_for_refresh(state.executor, [c["id"] for c in candidates])
    return {"candidates": candidates, "marked": marked}


# ===================================================================
# Entry Point
# ===================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(
        "seo_pipeline.api:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level="info",
    )
