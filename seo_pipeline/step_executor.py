"""
Step Executor
=============

Runs one pipeline step against one article: validates the status transition,
records a PipelineRun, dispatches to the step implementation and closes the
run while advancing the article status in the same store write.

Steps:
    analyze      SERP analysis, competitor scraping + TF-IDF, semantic
                 analysis, cannibalization check
    plan         AI article plan, title suggestions, authority links
    write_block  AI writing of one content block
    media        hero and section images uploaded to WordPress
    seo          JSON-LD, internal links, meta description, nugget density
    publish      assembled HTML pushed to WordPress as a draft
    refresh      SERP refresh of a published article

Usage:
    from seo_pipeline.step_executor import get_executor

    executor = get_executor()
    result = await executor.execute_step(article_id, "analyze")
    async for progress in executor.write_all(article_id):
        print(progress)

CLI:
    python -m seo_pipeline.step_executor run ARTICLE_ID analyze
    python -m seo_pipeline.step_executor run ARTICLE_ID write_block --block-index 2
    python -m seo_pipeline.step_executor write-all ARTICLE_ID
    python -m seo_pipeline.step_executor status ARTICLE_ID
    python -m seo_pipeline.step_executor runs ARTICLE_ID --step plan
    python -m seo_pipeline.step_executor stale-runs --minutes 30
    python -m seo_pipeline.step_executor routing
    python -m seo_pipeline.step_executor costs --site SITE_ID
"""

from __future__ import annotations

import argparse
import asyncio
import html as html_lib
import json
import logging
import re
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from seo_pipeline.ai_providers import AIResponse, build_default_providers
from seo_pipeline.ai_router import AIRouter, model_id_to_override
from seo_pipeline.authority_links import AuthorityLinkFinder
from seo_pipeline.cannibalization import check_cannibalization
from seo_pipeline.competitor_scraper import CompetitorScraper
from seo_pipeline.content_model import (
    Article,
    BlockStatus,
    BlockType,
    ContentBlock,
    FormatHint,
    ParagraphBlock,
    PipelineContext,
    PipelineRunResult,
    PipelineStep,
    RunStatus,
    Site,
    TitleSuggestion,
    block_from_dict,
)
from seo_pipeline.content_store import ContentStore
from seo_pipeline.cost_tracker import CostTracker
from seo_pipeline.image_client import ImageClient, ImageGenerationError, build_image_prompt, build_hero_prompt
from seo_pipeline.internal_links import generate_internal_links, inject_links_into_html
from seo_pipeline.json_ld import (
    article_schema,
    assemble_json_ld,
    breadcrumb_schema,
    extract_faq_items,
    faq_schema,
)
from seo_pipeline.prompts import (
    build_block_writer_prompt,
    build_competitor_analysis_prompt,
    build_plan_prompt,
    extract_json_from_response,
)
from seo_pipeline.seo_rename import generate_alt_text, generate_seo_filename
from seo_pipeline.serp_client import SerpClient, SerpError, extract_competitor_insights
from seo_pipeline.state_machine import (
    get_available_steps,
    get_next_status,
    get_pipeline_progress,
    get_status_label,
    validate_transition,
)
from seo_pipeline.wordpress_client import (
    SiteConfig,
    SiteNotConfiguredError,
    WordPressClient,
    WordPressError,
    build_seo_meta,
)

logger = logging.getLogger("seo_pipeline.step_executor")

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
# Constants
# ---------------------------------------------------------------------------

PLAN_PARSE_ERROR = "Impossible de parser le plan genere par l'IA"
NO_BLOCKS_ERROR = "Aucun bloc de contenu. Generez d'abord un plan."
NO_PENDING_BLOCKS_ERROR = "Aucun bloc en attente de redaction."
REFRESH_MESSAGE = (
    "Article marque pour mise a jour. Utilisez write_block pour actualiser le contenu."
)

PLAN_NUGGET_LIMIT = 20
WRITE_NUGGET_LIMIT = 5
SITE_ARTICLE_LIMIT = 100
RAW_ERROR_EXCERPT = 500
META_DESCRIPTION_MIN = 120
META_DESCRIPTION_MAX = 160

# Messages of collaborator failures treated as "feature not configured".
_OPTIONAL_MARKERS = ("non configur", "not configured")

_DEFAULT_MODEL_CONFIG_KEYS = {
    PipelineStep.PLAN.value: "default_model_plan",
    PipelineStep.WRITE_BLOCK.value: "default_model_write",
}

_STALE_YEAR = re.compile(r"\b(202[0-9])\b")


class ParseError(Exception):
    """Raised when a structured AI completion cannot be parsed."""

    def __init__(self, message: str, raw: str = "", response: Optional[AIResponse] = None):
        self.raw = raw
        self.response = response
        excerpt = raw[:RAW_ERROR_EXCERPT]
        super().__init__(f"{message}: {excerpt}" if excerpt else message)


class ArticleNotFoundError(LookupError):
    """Raised by write-all when the article does not exist."""


class NothingToWriteError(ValueError):
    """Raised by write-all when the article has no pending block."""


class BlockNotFoundError(IndexError):
    """Raised by block streaming when the block index is out of range."""


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_sync(coro: Coroutine) -> Any:
    """Run an async coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)


def _truncate(text: str, max_len: int = 200) -> str:
    if not text or len(text) <= max_len:
        return text or ""
    return text[: max_len - 3] + "..."


def _is_optional_failure(exc: BaseException, extra: Sequence[str] = ()) -> bool:
    message = str(exc)
    return any(marker in message for marker in (*_OPTIONAL_MARKERS, *extra))


def _fix_year(text: str, year: int) -> str:
    return _STALE_YEAR.sub(str(year), text)


def _strip_year_from_slug(slug: str) -> str:
    slug = re.sub(r"-?(202[0-9])-?", "-", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def _clean_html(content: str) -> str:
    """Drop a markdown code fence wrapped around generated HTML."""
    text = content.strip()
    fenced = re.match(r"^```(?:html)?\s*\n?([\s\S]*?)\n?```$", text)
    return fenced.group(1).strip() if fenced else text


def _parse_block_index(value: Any) -> Optional[int]:
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _intro_block(keyword: str) -> ParagraphBlock:
    return ParagraphBlock(
        word_count=120,
        format_hint=FormatHint.PROSE.value,
        writing_directive=(
            f"Intro courte (100-140 mots). Contient le mot-cle \"{keyword}\". "
            "Valide que le lecteur est au bon endroit (identifie la cible). "
            "Inclus une phrase explicite sur ce que le lecteur va apprendre. "
            "Phrases courtes, percutantes, zero fluff. 1-2 <p> uniquement."
        ),
    )


def build_plan_blocks(raw_blocks: Sequence[Any], keyword: str, year: int) -> List[ContentBlock]:
    """
    Turn the planner's ``content_blocks`` into pending blocks.

    Every block starts empty and pending, stale years in headings become
    ``year`` and a headingless intro paragraph is guaranteed first.

    Raises
    ------
    ValueError
        If an entry is not an object or carries an unknown ``type``.
    """
    blocks: List[ContentBlock] = []
    for raw in raw_blocks:
        if not isinstance(raw, dict):
            raise ValueError(f"Bloc de plan invalide: {raw!r}")
        data = {**raw, "content_html": "", "status": BlockStatus.PENDING.value}
        data.pop("id", None)
        if data.get("heading") in ("", "null"):
            data["heading"] = None
        block = block_from_dict(data)
        if block.heading:
            block.heading = _fix_year(block.heading, year)
        blocks.append(block)

    first = blocks[0] if blocks else None
    if first is None or first.type != BlockType.PARAGRAPH.value or first.heading:
        blocks.insert(0, _intro_block(keyword))
    return blocks


def assemble_article_html(
    blocks: Sequence[ContentBlock], json_ld: Optional[Dict[str, Any]] = None
) -> str:
    """Document-order HTML with ``<h2>``/``<h3>`` headings and the JSON-LD script."""
    parts: List[str] = []
    for block in blocks:
        if not block.content_html:
            continue
        if block.heading and block.type in (BlockType.H2.value, BlockType.H3.value):
            parts.append(f"<{block.type}>{block.heading}</{block.type}>")
        parts.append(block.content_html)
    if json_ld:
        parts.append(
            f'<script type="application/ld+json">{json.dumps(json_ld, ensure_ascii=False)}</script>'
        )
    return "\n\n".join(parts)


def extract_excerpt(blocks: Sequence[ContentBlock], fallback: str = "") -> str:
    for block in blocks:
        if block.type == BlockType.PARAGRAPH.value and not block.heading and block.content_html:
            return re.sub(r"<[^>]*>", "", block.content_html).strip()
    return fallback


def _figure_html(
    url: str, alt: str, width: int, height: int, caption: Optional[str] = None, css_class: str = ""
) -> str:
    class_attr = f' class="{css_class}"' if css_class else ""
    caption_html = f"<figcaption>{caption}</figcaption>" if caption else ""
    return (
        f'<figure{class_attr}><img src="{url}" alt="{html_lib.escape(alt, quote=True)}" '
        f'width="{width}" height="{height}" loading="lazy" />{caption_html}</figure>'
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def _default_wordpress_factory(site: Site) -> WordPressClient:
    return WordPressClient(SiteConfig.from_site(site))


@dataclass
class PipelineServices:
    """Collaborators the executor talks to; built once per process."""

    store: ContentStore
    router: AIRouter
    serp: SerpClient
    scraper: CompetitorScraper
    images: ImageClient
    authority: AuthorityLinkFinder
    wordpress_factory: Callable[[Site], WordPressClient] = _default_wordpress_factory

    async def close(self) -> None:
        for client in (self.serp, self.scraper, self.images, self.authority):
            await client.close()


def build_services(store: Optional[ContentStore] = None) -> PipelineServices:
    """Default wiring: real providers, credentials from env then the config table."""
    store = store or ContentStore()
    router = AIRouter(
        build_default_providers(
            openai_api_key=store.resolve_api_key("OPENAI_API_KEY", "openai_api_key")
        )
    )
    serp = SerpClient(lambda: store.resolve_api_key("SERPER_API_KEY", "serper_api_key"))
    return PipelineServices(
        store=store,
        router=router,
        serp=serp,
        scraper=CompetitorScraper(),
        images=ImageClient(lambda: store.resolve_api_key("FAL_KEY", "fal_api_key")),
        authority=AuthorityLinkFinder(serp, router),
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


StepHandler = Callable[
    [Article, Dict[str, Any], Optional[Dict[str, str]]], Coroutine[Any, Any, PipelineRunResult]
]


class PipelineExecutor:
    """
    Orchestrates pipeline steps for articles held in the content store.

    Usage::

        executor = PipelineExecutor(build_services())
        result = await executor.execute_step(article_id, "plan", {"model": "gpt-4o"})
    """

    def __init__(self, services: PipelineServices) -> None:
        self.services = services
        self._store = services.store
        self._router = services.router
        self._step_map: Dict[str, StepHandler] = {
            PipelineStep.ANALYZE.value: self._step_analyze,
            PipelineStep.PLAN.value: self._step_plan,
            PipelineStep.WRITE_BLOCK.value: self._step_write_block,
            PipelineStep.MEDIA.value: self._step_media,
            PipelineStep.SEO.value: self._step_seo,
            PipelineStep.PUBLISH.value: self._step_publish,
            PipelineStep.REFRESH.value: self._step_refresh,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_step(
        self,
        article_id: str,
        step: Any,
        run_input: Optional[Dict[str, Any]] = None,
    ) -> PipelineRunResult:
        """
        Execute ``step`` for ``article_id``.

        Parameters
        ----------
        article_id : str
            Article to work on.
        step : PipelineStep or str
            Step name.
        run_input : dict, optional
            ``model`` (an AVAILABLE_MODELS id) and, for write_block,
            ``blockIndex``.  Stored verbatim on the run.

        Returns
        -------
        PipelineRunResult
            ``run_id`` is empty when the request was rejected before a run
            was created (missing article, illegal transition, bad block index).
        """
        step = step.value if isinstance(step, PipelineStep) else str(step)
        run_input = dict(run_input or {})

        article = self._store.get_article(article_id)
        if article is None:
            return PipelineRunResult(success=False, error=f"Article non trouve: {article_id}")

        context = PipelineContext.from_article(article)
        reason = validate_transition(article.status, step, context)
        if reason is not None:
            logger.warning("Article %s | Step %s | Rejected: %s", article_id[:8], step, reason)
            return PipelineRunResult(success=False, error=reason)

        if step == PipelineStep.WRITE_BLOCK.value:
            raw_index = run_input.get("blockIndex")
            index = _parse_block_index(raw_index)
            if index is None or not 0 <= index < len(article.content_blocks):
                shown = raw_index if index is None else index
                return PipelineRunResult(success=False, error=f"Bloc #{shown} introuvable")

        handler = self._step_map[step]
        status_before = article.status
        run = self._store.create_run(article.id, step, run_input)
        overrides = self._resolve_model_override(step, run_input)
        logger.info(
            "Article %s | Step %s | Run %s started (status=%s)",
            article_id[:8], step, run.id[:8], status_before,
        )

        start = time.monotonic()
        try:
            result = await handler(article, run_input, overrides)
        except ParseError as exc:
            response = exc.response
            result = PipelineRunResult(
                success=False,
                error=str(exc),
                tokens_in=response.tokens_in if response else None,
                tokens_out=response.tokens_out if response else None,
                cost_usd=self._router.cost_of(response) if response else None,
                model_used=response.model if response else None,
            )
        except Exception as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            message = str(exc) or type(exc).__name__
            logger.error(
                "Article %s | Step %s | Run %s failed: %s",
                article_id[:8], step, run.id[:8], message,
            )
            self._store.close_run(
                run.id, RunStatus.ERROR.value, error=message, duration_ms=duration_ms
            )
            return PipelineRunResult(
                success=False, run_id=run.id, error=message, duration_ms=duration_ms
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        next_status = get_next_status(status_before, step) if result.success else None
        if next_status == status_before:
            next_status = None

        self._store.close_run(
            run.id,
            RunStatus.SUCCESS.value if result.success else RunStatus.ERROR.value,
            output=result.output or {},
            error=result.error,
            model_used=result.model_used,
            tokens_in=result.tokens_in or 0,
            tokens_out=result.tokens_out or 0,
            cost_usd=result.cost_usd or 0.0,
            duration_ms=duration_ms,
            advance_article_to=next_status,
        )
        result.run_id = run.id
        result.duration_ms = duration_ms

        if result.success:
            logger.info(
                "Article %s | Step %s | Run %s succeeded in %dms (status %s -> %s)",
                article_id[:8], step, run.id[:8], duration_ms,
                status_before, next_status or status_before,
            )
        else:
            logger.error(
                "Article %s | Step %s | Run %s failed: %s",
                article_id[:8], step, run.id[:8], result.error,
            )
        return result

    def prepare_write_all(self, article_id: str) -> List[int]:
        """
        Indexes of the pending blocks, ascending.

        Raises
        ------
        ArticleNotFoundError
            If the article does not exist.
        NothingToWriteError
            If the article has no block or no pending block.
        """
        article = self._store.get_article(article_id)
        if article is None:
            raise ArticleNotFoundError(f"Article non trouve: {article_id}")
        if not article.content_blocks:
            raise NothingToWriteError(NO_BLOCKS_ERROR)
        pending = [i for i, b in enumerate(article.content_blocks) if b.is_pending]
        if not pending:
            raise NothingToWriteError(NO_PENDING_BLOCKS_ERROR)
        return pending

    async def write_all(
        self,
        article_id: str,
        indexes: Optional[List[int]] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Write every pending block, one at a time, in document order.

        Yields ``{current, total, blockIndex, success}`` (plus ``error`` on
        failure) after each block.  A failed block does not stop the queue.
        """
        if indexes is None:
            indexes = self.prepare_write_all(article_id)
        total = len(indexes)
        for position, index in enumerate(indexes, start=1):
            run_input: Dict[str, Any] = {"blockIndex": index}
            if model:
                run_input["model"] = model
            try:
                result = await self.execute_step(article_id, PipelineStep.WRITE_BLOCK, run_input)
            except Exception as exc:
                logger.error(
                    "Article %s | Step write_block | Block %d crashed: %s",
                    article_id[:8], index, exc,
                )
                result = PipelineRunResult(success=False, error=str(exc) or type(exc).__name__)
            progress: Dict[str, Any] = {
                "current": position,
                "total": total,
                "blockIndex": index,
                "success": result.success,
            }
            if not result.success:
                progress["error"] = result.error
            yield progress

    def prepare_stream_block(self, article_id: str, block_index: Any = 0) -> Tuple[str, str]:
        """
        Prompts for streaming one block, validated before any output is sent.

        Raises
        ------
        ArticleNotFoundError
            If the article does not exist.
        BlockNotFoundError
            If ``block_index`` does not name a block of the article.
        """
        article = self._store.get_article(article_id)
        if article is None:
            raise ArticleNotFoundError(f"Article non trouve: {article_id}")
        index = _parse_block_index(block_index)
        if index is None or not 0 <= index < len(article.content_blocks):
            shown = block_index if index is None else index
            raise BlockNotFoundError(f"Bloc #{shown} introuvable")
        return self._block_prompts(article, index)

    async def stream_block(
        self, system: str, user: str, model: Optional[str] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream the writing of one block from :meth:`prepare_stream_block` prompts.

        Yields ``{"type": "text", "text"}`` deltas then one ``done`` event with
        ``model``, ``tokens_in``, ``tokens_out``, ``cost_usd`` and ``fallback``.
        A failed stream is not retried: the block is written with one
        non-streaming routed call instead, preceded by a ``reset`` event when
        deltas were already sent.  Nothing is saved and no run is recorded.
        """
        run_input = {"model": model} if model else {}
        overrides = self._resolve_model_override(PipelineStep.WRITE_BLOCK.value, run_input)
        messages = [{"role": "user", "content": user}]

        sent_text = False
        try:
            async for event in self._router.stream(
                "write_block", messages, system=system, overrides=overrides
            ):
                if event.get("type") == "done":
                    response = AIResponse(
                        content="", model=event.get("model", ""), provider="",
                        tokens_in=event.get("tokens_in", 0), tokens_out=event.get("tokens_out", 0),
                    )
                    yield {**event, "cost_usd": self._router.cost_of(response), "fallback": False}
                else:
                    sent_text = True
                    yield event
            return
        except Exception as exc:
            logger.warning("Step write_block | Streaming failed (%s), using a single call", exc)

        response = await self._router.route("write_block", messages, system=system, overrides=overrides)
        if sent_text:
            yield {"type": "reset"}
        yield {"type": "text", "text": _clean_html(response.content)}
        yield {
            "type": "done",
            "model": response.model,
            "tokens_in": response.tokens_in,
            "tokens_out": response.tokens_out,
            "cost_usd": self._router.cost_of(response),
            "fallback": True,
        }

    def get_article_status(self, article_id: str) -> Optional[Dict[str, Any]]:
        article = self._store.get_article(article_id)
        if article is None:
            return None
        return {
            "articleId": article.id,
            "keyword": article.keyword,
            "status": article.status,
            "statusLabel": get_status_label(article.status),
            "progress": get_pipeline_progress(article.status),
            "availableSteps": get_available_steps(article.status),
            "blocks": len(article.content_blocks),
            "writtenBlocks": article.written_blocks_count,
            "wordCount": article.word_count,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_model_override(
        self, step: str, run_input: Dict[str, Any]
    ) -> Optional[Dict[str, str]]:
        model_id = run_input.get("model")
        if not model_id:
            config_key = _DEFAULT_MODEL_CONFIG_KEYS.get(step)
            configured = self._store.get_config(config_key) if config_key else None
            model_id = configured if isinstance(configured, str) else None
        return model_id_to_override(model_id)

    def _result_from(self, response: AIResponse, output: Dict[str, Any]) -> PipelineRunResult:
        return PipelineRunResult(
            success=True,
            output=output,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            cost_usd=self._router.cost_of(response),
            model_used=response.model,
        )

    def _block_prompts(self, article: Article, index: int) -> Tuple[str, str]:
        """(system, user) prompts for writing block ``index``.

        The selected authority link goes to the first H2 that does not follow
        a block already carrying it.
        """
        blocks = article.content_blocks
        block = blocks[index]
        previous_headings = [b.heading for b in blocks[:index] if b.has_heading]
        authority = article.selected_authority_link
        already_placed = bool(authority) and any(
            authority["url"] in (b.content_html or "") for b in blocks[:index]
        )
        inject_authority = bool(authority) and block.type == BlockType.H2.value and not already_placed

        site = self._store.get_site(article.site_id)
        return build_block_writer_prompt(
            keyword=article.keyword,
            search_intent=article.search_intent,
            persona=self._store.get_persona(article.persona_id),
            block=block,
            nuggets=self._store.list_nuggets(article.site_id, limit=WRITE_NUGGET_LIMIT),
            previous_headings=previous_headings,
            article_title=article.title or article.keyword,
            site_domain=site.domain if site else None,
            authority_link=authority if inject_authority else None,
        )

    def _wordpress_for(self, article: Article) -> WordPressClient:
        site = self._store.get_site(article.site_id)
        if site is None:
            raise SiteNotConfiguredError(
                f"WordPress non configure: site {article.site_id!r} introuvable"
            )
        return self.services.wordpress_factory(site)

    # ------------------------------------------------------------------
    # Step: analyze
    # ------------------------------------------------------------------

    async def _step_analyze(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """SERP, competitor content, semantic analysis and cannibalization."""
        serp = None
        insights = None
        try:
            serp = await self.services.serp.search(article.keyword)
            insights = extract_competitor_insights(serp)
        except SerpError as exc:
            if not _is_optional_failure(exc, ("not found",)):
                raise
            logger.warning("Article %s | Step analyze | SERP skipped: %s", article.id[:8], exc)

        competitor = None
        semantic = None
        response: Optional[AIResponse] = None
        if serp and serp.get("organic"):
            site = self._store.get_site(article.site_id)
            try:
                competitor = await self.services.scraper.analyze(
                    serp["organic"], site.domain if site else None
                )
            except Exception as exc:
                logger.warning(
                    "Article %s | Step analyze | Competitor scraping failed: %s",
                    article.id[:8], exc,
                )
            if competitor is not None and competitor.scraped_count > 0:
                try:
                    response = await self._router.route(
                        "analyze_competitor_content",
                        [{
                            "role": "user",
                            "content": build_competitor_analysis_prompt(article.keyword, competitor),
                        }],
                    )
                    parsed = extract_json_from_response(response.content)
                    semantic = parsed if isinstance(parsed, dict) else None
                except Exception as exc:
                    logger.warning(
                        "Article %s | Step analyze | Semantic analysis failed: %s",
                        article.id[:8], exc,
                    )

        cannibalization = check_cannibalization(
            article.keyword,
            self._store.list_articles(site_id=article.site_id),
            exclude_article_id=article.id,
        )

        payload: Dict[str, Any] = {}
        if serp:
            payload["serp"] = serp
            payload["insights"] = insights
        if competitor is not None:
            payload["competitorContent"] = competitor.summary()
        if semantic:
            payload["semanticAnalysis"] = semantic
        article.serp_data = payload or None
        self._store.save_article(article)

        output = {
            "serpData": {
                "organic": len(serp.get("organic") or []),
                "paa": len(serp.get("peopleAlsoAsk") or []),
            } if serp else None,
            "cannibalization": {
                "hasConflict": cannibalization["hasConflict"],
                "conflictCount": len(cannibalization["conflicts"]),
                "recommendation": cannibalization["recommendation"],
            },
            "competitorInsights": insights,
            "competitorContent": {
                "scrapedCount": competitor.scraped_count,
                "totalCount": competitor.total_count,
                "avgWordCount": competitor.avg_word_count,
                "tfidfKeywordsCount": len(competitor.tfidf_keywords),
            } if competitor is not None else None,
            "semanticAnalysis": "generated" if semantic else None,
        }
        if response is not None:
            return self._result_from(response, output)
        return PipelineRunResult(success=True, output=output)

    # ------------------------------------------------------------------
    # Step: plan
    # ------------------------------------------------------------------

    async def _step_plan(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """Generate the block plan, title suggestions and authority links."""
        site = self._store.get_site(article.site_id)
        existing = [
            {"keyword": a.keyword, "title": a.title, "slug": a.slug}
            for a in self._store.list_articles(site_id=article.site_id)
            if a.id != article.id and a.slug and a.title
        ][:SITE_ARTICLE_LIMIT]
        money_page = None
        if article.link_to_money_page and site and site.money_page_url:
            money_page = {
                "url": site.money_page_url,
                "description": site.money_page_description or "",
            }

        system, user = build_plan_prompt(
            keyword=article.keyword,
            search_intent=article.search_intent,
            persona=self._store.get_persona(article.persona_id),
            serp_data=article.serp_data,
            nuggets=self._store.list_nuggets(article.site_id, limit=PLAN_NUGGET_LIMIT),
            existing_articles=existing,
            money_page=money_page,
        )
        response = await self._router.route(
            "plan_article", [{"role": "user", "content": user}], system=system, overrides=overrides
        )

        plan = extract_json_from_response(response.content)
        if not isinstance(plan, dict):
            raise ParseError(PLAN_PARSE_ERROR, raw=response.content, response=response)
        year = datetime.now(timezone.utc).year
        try:
            blocks = build_plan_blocks(plan.get("content_blocks") or [], article.keyword, year)
        except ValueError as exc:
            raise ParseError(
                f"{PLAN_PARSE_ERROR} ({exc})", raw=response.content, response=response
            ) from exc

        suggestions = [
            TitleSuggestion(
                title=_fix_year(s.get("title", ""), year),
                seo_title=_fix_year(s.get("seo_title") or s.get("title", ""), year),
                slug=_strip_year_from_slug(s.get("slug", "")),
                seo_rationale=s.get("seo_rationale", ""),
            )
            for s in plan.get("title_suggestions") or []
            if isinstance(s, dict) and s.get("title")
        ]

        authority: Dict[str, Any] = {"suggestions": [], "cost_usd": 0.0}
        organic = ((article.serp_data or {}).get("serp") or {}).get("organic") or []
        try:
            authority = await self.services.authority.suggest(article.keyword, organic)
        except Exception as exc:
            logger.warning(
                "Article %s | Step plan | Authority links skipped: %s", article.id[:8], exc
            )

        article.title = None
        article.slug = None
        article.seo_title = None
        article.meta_description = _fix_year(plan.get("meta_description") or "", year)
        article.content_blocks = blocks
        article.title_suggestions = suggestions
        article.authority_link_suggestions = authority["suggestions"] or None
        article.selected_authority_link = None
        article.year_tag = year
        self._store.save_article(article)

        result = self._result_from(response, {
            "titleSuggestions": [s.to_dict() for s in suggestions],
            "blocksCount": len(blocks),
            "estimatedWordCount": sum(b.word_count or 0 for b in blocks),
            "authorityLinks": len(authority["suggestions"]),
        })
        result.cost_usd = round((result.cost_usd or 0.0) + authority.get("cost_usd", 0.0), 6)
        return result

    # ------------------------------------------------------------------
    # Step: write_block
    # ------------------------------------------------------------------

    async def _step_write_block(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """Write the content of one block."""
        index = _parse_block_index(run_input.get("blockIndex"))
        blocks = article.content_blocks
        block = blocks[index]

        system, user = self._block_prompts(article, index)
        response = await self._router.route(
            "write_block", [{"role": "user", "content": user}], system=system, overrides=overrides
        )

        block.mark_written(_clean_html(response.content), response.model)
        article.recompute_word_count()
        self._store.save_article(article)

        return self._result_from(response, {
            "blockIndex": index,
            "blockType": block.type,
            "wordCount": block.word_count,
            "writtenBlocks": article.written_blocks_count,
            "totalBlocks": len(blocks),
        })

    # ------------------------------------------------------------------
    # Step: media
    # ------------------------------------------------------------------

    async def _step_media(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """Hero image plus section images, optimised and uploaded to WordPress."""
        images = self.services.images
        title = article.title or article.keyword
        hero_media_id = None
        uploaded: List[Dict[str, Any]] = []

        try:
            wordpress = self._wordpress_for(article)
        except SiteNotConfiguredError as exc:
            logger.warning("Article %s | Step media | Images skipped: %s", article.id[:8], exc)
            return PipelineRunResult(success=True, output={
                "heroMediaId": None,
                "imagesGenerated": 0,
                "uploadedImages": [],
                "skipped": str(exc),
            })

        try:
            try:
                hero = await images.generate_optimized(build_hero_prompt(article.keyword, title))
                media = await wordpress.upload_media(
                    hero.content,
                    generate_seo_filename(article.keyword, None, "hero"),
                    alt_text=generate_alt_text(article.keyword, None, "hero"),
                )
                hero_media_id = media.get("id")
            except (ImageGenerationError, WordPressError) as exc:
                if not _is_optional_failure(exc, ("FAL_KEY",)):
                    raise
                logger.warning("Article %s | Step media | Hero skipped: %s", article.id[:8], exc)

            for index, block in enumerate(article.content_blocks):
                has_image = "<img" in (block.content_html or "")
                is_image_block = block.type == BlockType.IMAGE.value and not has_image
                is_h2_with_image = (
                    block.type == BlockType.H2.value
                    and getattr(block, "generate_image", False)
                    and not has_image
                )
                if not is_image_block and not is_h2_with_image:
                    continue

                hint = getattr(block, "image_prompt_hint", None)
                try:
                    prompt = build_image_prompt(
                        article.keyword,
                        block.heading,
                        content_html=block.content_html,
                        image_hint=hint,
                        article_title=title,
                    )
                    image = await images.generate_optimized(prompt)
                    alt = generate_alt_text(article.keyword, block.heading, "section", hint)
                    media = await wordpress.upload_media(
                        image.content,
                        generate_seo_filename(article.keyword, block.heading, "section"),
                        alt_text=alt,
                    )
                except (ImageGenerationError, WordPressError) as exc:
                    if not _is_optional_failure(exc, ("FAL_KEY",)):
                        raise
                    logger.warning(
                        "Article %s | Step media | Block %d skipped: %s",
                        article.id[:8], index, exc,
                    )
                    continue

                url = media.get("source_url", "")
                if is_image_block:
                    block.mark_written(
                        _figure_html(url, alt, image.width, image.height, caption=block.heading)
                    )
                else:
                    block.content_html = (
                        _figure_html(url, alt, image.width, image.height, css_class="section-image")
                        + (block.content_html or "")
                    )
                uploaded.append({"blockIndex": index, "url": url, "mediaId": media.get("id")})
        finally:
            await wordpress.close()

        self._store.save_article(article)
        return PipelineRunResult(success=True, output={
            "heroMediaId": hero_media_id,
            "imagesGenerated": len(uploaded),
            "uploadedImages": uploaded,
        })

    # ------------------------------------------------------------------
    # Step: seo
    # ------------------------------------------------------------------

    async def _step_seo(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """JSON-LD graph, silo internal links, meta check and nugget density."""
        site = self._store.get_site(article.site_id)
        persona = self._store.get_persona(article.persona_id)
        domain = site.domain if site else ""
        title = article.title or article.keyword
        blocks = article.content_blocks

        schemas = [article_schema(
            title=title,
            description=article.meta_description or "",
            slug=article.slug or "",
            site_domain=domain,
            persona_name=persona.name if persona else "Expert",
            persona_role=persona.role if persona else "Redacteur",
            published_at=article.published_at,
            updated_at=article.updated_at,
            word_count=article.word_count,
        )]
        faq_items = []
        for block in blocks:
            if block.type == BlockType.FAQ.value and block.content_html:
                faq_items.extend(extract_faq_items(block.content_html))
        faq = faq_schema(faq_items)
        if faq:
            schemas.append(faq)
        schemas.append(breadcrumb_schema(domain, site.name if site else "", title, article.slug or ""))

        links_injected = 0
        if article.silo_id:
            suggestions = generate_internal_links(
                article,
                "\n".join(b.content_html for b in blocks if b.content_html),
                self._store.list_articles(silo_id=article.silo_id),
                self._store.list_silo_links(article.silo_id),
            )
            links = [
                {"anchorText": s["anchorText"], "url": f"https://{domain}/{s['targetSlug']}"}
                for s in suggestions
                if s.get("targetSlug")
            ]
            if links:
                for block in blocks:
                    if not block.content_html or block.type == BlockType.IMAGE.value:
                        continue
                    updated = inject_links_into_html(block.content_html, links)
                    if updated != block.content_html:
                        block.content_html = updated
                        links_injected += 1

        meta_length = len(article.meta_description or "")
        with_nuggets = sum(1 for b in blocks if b.nugget_ids)
        density = with_nuggets / len(blocks) if blocks else 0.0

        article.json_ld = assemble_json_ld(schemas)
        article.nugget_density_score = density
        self._store.save_article(article)

        return PipelineRunResult(success=True, output={
            "schemasGenerated": len(schemas),
            "linksInjected": links_injected,
            "metaDescription": {
                "length": meta_length,
                "ok": META_DESCRIPTION_MIN <= meta_length <= META_DESCRIPTION_MAX,
            },
            "nuggetDensity": round(density * 100),
        })

    # ------------------------------------------------------------------
    # Step: publish
    # ------------------------------------------------------------------

    async def _step_publish(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """Push the assembled article to WordPress as a draft."""
        site = self._store.get_site(article.site_id)
        full_html = assemble_article_html(article.content_blocks, article.json_ld)
        excerpt = extract_excerpt(article.content_blocks, article.meta_description or "")

        media_run = self._store.latest_run(
            article.id, PipelineStep.MEDIA.value, status=RunStatus.SUCCESS.value
        )
        hero_media_id = (media_run.output or {}).get("heroMediaId") if media_run else None

        seo_meta = {
            key: value
            for key, value in build_seo_meta(
                article.seo_title or "", article.meta_description or "", article.keyword
            ).items()
            if value
        }

        wordpress = self._wordpress_for(article)
        try:
            categories = None
            if site and site.niche:
                try:
                    category = await wordpress.ensure_category(site.niche)
                    categories = [category["id"]]
                except WordPressError as exc:
                    logger.warning(
                        "Article %s | Step publish | Category skipped: %s", article.id[:8], exc
                    )

            fields = {
                "title": article.title or article.keyword,
                "content": full_html,
                "status": "draft",
                "excerpt": excerpt,
                "featured_media": hero_media_id,
                "categories": categories,
                "meta": seo_meta or None,
            }
            if article.wp_post_id:
                post = await wordpress.update_post(
                    article.wp_post_id, slug=article.slug, **fields
                )
            else:
                slug = article.slug or re.sub(r"\s+", "-", article.keyword.lower())
                post = await wordpress.create_post(slug=slug, **fields)
        finally:
            await wordpress.close()

        article.wp_post_id = post.get("id")
        article.wp_url = post.get("link")
        article.content_html = full_html
        article.published_at = article.published_at or _now_iso()
        self._store.save_article(article)

        return PipelineRunResult(success=True, output={
            "wpPostId": article.wp_post_id,
            "wpUrl": article.wp_url,
            "htmlLength": len(full_html),
            "status": "draft",
            "excerpt": excerpt[:100] + "...",
            "category": site.niche if site else None,
            "seoMeta": list(seo_meta),
        })

    # ------------------------------------------------------------------
    # Step: refresh
    # ------------------------------------------------------------------

    async def _step_refresh(
        self, article: Article, run_input: Dict[str, Any], overrides: Optional[Dict[str, str]]
    ) -> PipelineRunResult:
        """Refresh the SERP snapshot; written content is left untouched."""
        update = None
        try:
            serp = await self.services.serp.search(article.keyword)
            update = {"serp": serp, "insights": extract_competitor_insights(serp)}
        except SerpError as exc:
            if not _is_optional_failure(exc):
                raise
            logger.warning("Article %s | Step refresh | SERP skipped: %s", article.id[:8], exc)

        if update is not None:
            article.serp_data = update
            self._store.save_article(article)

        return PipelineRunResult(success=True, output={
            "serpUpdated": update is not None,
            "message": REFRESH_MESSAGE,
        })


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_instance: Optional[PipelineExecutor] = None


def get_executor() -> PipelineExecutor:
    """Get or create the default executor wired with :func:`build_services`."""
    global _instance
    if _instance is None:
        _instance = PipelineExecutor(build_services())
    return _instance


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _format_result(result: PipelineRunResult) -> str:
    icon = "[OK]" if result.success else "[FAIL]"
    lines = [f"{icon} run={result.run_id[:8] or '-'}"]
    if result.error:
        lines.append(f"Error:    {_truncate(result.error, 160)}")
    if result.model_used:
        lines.append(f"Model:    {result.model_used}")
    if result.tokens_in or result.tokens_out:
        lines.append(f"Tokens:   {result.tokens_in or 0} in / {result.tokens_out or 0} out")
    if result.cost_usd:
        lines.append(f"Cost:     ${result.cost_usd:.4f}")
    if result.duration_ms is not None:
        lines.append(f"Duration: {result.duration_ms}ms")
    if result.output:
        lines.append("Output:")
        lines.append(json.dumps(result.output, indent=2, ensure_ascii=False, default=str))
    return "\n".join(lines)


def _format_status(status: Dict[str, Any]) -> str:
    return "\n".join([
        f"Article:   {status['articleId']}",
        f"Keyword:   {status['keyword']}",
        f"Status:    {status['status']} ({status['statusLabel']}, {status['progress']}%)",
        f"Blocks:    {status['writtenBlocks']}/{status['blocks']} written",
        f"Words:     {status['wordCount']}",
        f"Next:      {', '.join(status['availableSteps']) or '-'}",
    ])


def _format_runs(runs: Sequence[Any]) -> str:
    if not runs:
        return "No pipeline runs found."
    lines = [f"{'RUN':<10}{'STEP':<13}{'STATUS':<9}{'MODEL':<28}{'COST':>10}  CREATED"]
    for run in runs:
        lines.append(
            f"{run.id[:8]:<10}{run.step:<13}{run.status:<9}"
            f"{_truncate(run.model_used or '-', 26):<28}{run.cost_usd:>10.4f}  {run.created_at[:19]}"
        )
        if run.error:
            lines.append(f"{'':<10}-- {_truncate(run.error, 100)}")
    return "\n".join(lines)


def _format_costs(summary: Dict[str, Any]) -> str:
    lines = [
        "Pipeline costs",
        "=" * 50,
        f"Total cost:       ${summary['total_cost_usd']:.4f}",
        f"Runs:             {summary['total_runs']} ({summary['successful_runs']} ok)",
        f"Tokens:           {summary['total_tokens_in']} in / {summary['total_tokens_out']} out",
        f"Avg per article:  ${summary['avg_cost_per_article']:.4f}",
    ]
    if summary["by_model"]:
        lines.append("")
        lines.append("By model:")
        for entry in summary["by_model"]:
            lines.append(f"  {entry['model']:<30s} ${entry['cost']:.4f}  runs={entry['runs']}")
    if summary["by_step"]:
        lines.append("")
        lines.append("By step:")
        for entry in summary["by_step"]:
            lines.append(
                f"  {entry['step']:<13s} ${entry['cost']:.4f}  runs={entry['runs']} "
                f"avg={entry['avg_duration_ms']}ms"
            )
    return "\n".join(lines)


async def _write_all_cli(executor: PipelineExecutor, article_id: str) -> Tuple[int, int]:
    written = errors = 0
    try:
        async for progress in executor.write_all(article_id):
            if progress["success"]:
                written += 1
                print(f"  [OK]   {progress['current']}/{progress['total']} block #{progress['blockIndex']}")
            else:
                errors += 1
                print(
                    f"  [FAIL] {progress['current']}/{progress['total']} block "
                    f"#{progress['blockIndex']} -- {_truncate(progress.get('error') or '', 80)}"
                )
    finally:
        await executor.services.close()
    return written, errors


async def _execute_cli(
    executor: PipelineExecutor, article_id: str, step: str, run_input: Dict[str, Any]
) -> PipelineRunResult:
    try:
        return await executor.execute_step(article_id, step, run_input)
    finally:
        await executor.services.close()


def main() -> None:
    """CLI entry point for the step executor."""
    parser = argparse.ArgumentParser(
        prog="step_executor",
        description="SEO content pipeline step executor",
    )
    subparsers = parser.add_subparsers(dest="command", help="Executor commands")

    p_run = subparsers.add_parser("run", help="Execute one step for an article")
    p_run.add_argument("article_id", help="Article ID")
    p_run.add_argument("step", choices=[s.value for s in PipelineStep], help="Step to run")
    p_run.add_argument("--block-index", type=int, default=None, help="Block to write (write_block)")
    p_run.add_argument("--model", default=None, help="Model ID override")
    p_run.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    p_all = subparsers.add_parser("write-all", help="Write every pending block")
    p_all.add_argument("article_id", help="Article ID")

    p_status = subparsers.add_parser("status", help="Show article pipeline status")
    p_status.add_argument("article_id", help="Article ID")

    p_runs = subparsers.add_parser("runs", help="List pipeline runs of an article")
    p_runs.add_argument("article_id", help="Article ID")
    p_runs.add_argument("--step", default=None, help="Filter by step")
    p_runs.add_argument("--limit", type=int, default=20, help="Max results")

    p_stale = subparsers.add_parser("stale-runs", help="List runs left running")
    p_stale.add_argument("--minutes", type=int, default=30, help="Minimum age in minutes")

    subparsers.add_parser("routing", help="Show the AI task routing table")

    p_costs = subparsers.add_parser("costs", help="Show cost summary")
    p_costs.add_argument("--site", default=None, help="Filter by site ID")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if getattr(args, "verbose", False):
        logger.setLevel(logging.DEBUG)

    executor = get_executor()
    store = executor.services.store

    if args.command == "run":
        run_input: Dict[str, Any] = {}
        if args.block_index is not None:
            run_input["blockIndex"] = args.block_index
        if args.model:
            run_input["model"] = args.model
        result = _run_sync(_execute_cli(executor, args.article_id, args.step, run_input))
        print(_format_result(result))
        if not result.success:
            sys.exit(1)

    elif args.command == "write-all":
        try:
            executor.prepare_write_all(args.article_id)
        except (ArticleNotFoundError, NothingToWriteError) as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        written, errors = _run_sync(_write_all_cli(executor, args.article_id))
        print(f"\nWrite-all complete: {written} written, {errors} errors")

    elif args.command == "status":
        status = executor.get_article_status(args.article_id)
        if status is None:
            print(f"Article '{args.article_id}' not found.")
            sys.exit(1)
        print(_format_status(status))

    elif args.command == "runs":
        print(_format_runs(
            store.list_runs(article_id=args.article_id, step=args.step, limit=args.limit)
        ))

    elif args.command == "stale-runs":
        stale = store.list_stale_runs(older_than_minutes=args.minutes)
        print(_format_runs(stale) if stale else "No stale runs.")

    elif args.command == "routing":
        for task, config in executor.services.router.get_all_routing_configs().items():
            print(
                f"  {task:<28s} {config['provider']:<10s} {config['model']:<28s} "
                f"max={config['max_tokens']:<5d} t={config['temperature']}"
            )

    elif args.command == "costs":
        print(_format_costs(CostTracker(store).get_cost_summary(site_id=args.site)))


if __name__ == "__main__":
    main()
