"""
Shared fixtures for the SEO pipeline test suite.

Provides temp stores, sample entities and fake collaborators (AI providers,
SERP, scraper, images, WordPress) so that all tests run WITHOUT any external
services.
"""

import copy
import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from seo_pipeline.ai_providers import AIResponse
from seo_pipeline.ai_router import AIRouter
from seo_pipeline.authority_links import AuthorityLinkFinder
from seo_pipeline.competitor_scraper import CompetitorContentAnalysis
from seo_pipeline.content_model import Persona, Site
from seo_pipeline.content_store import ContentStore
from seo_pipeline.image_client import ImageGenerationError, OptimizedImage
from seo_pipeline.step_executor import PipelineExecutor, PipelineServices


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeProvider:
    """AI provider returning queued replies; an Exception in the queue is raised."""

    def __init__(self, name: str, replies: Optional[List[Any]] = None, default: str = "<p>ok</p>"):
        self.name = name
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, config, messages, system=None) -> AIResponse:
        self.calls.append({"config": config, "messages": messages, "system": system})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return AIResponse(
            content=reply, model=config.model, provider=self.name,
            tokens_in=1000, tokens_out=500,
        )


class FakeStreamingProvider(FakeProvider):
    """FakeProvider that also streams ``chunks``; ``stream_error`` is raised after them."""

    supports_streaming = True

    def __init__(self, name: str, chunks: Optional[List[str]] = None,
                 stream_error: Optional[Exception] = None, **kwargs):
        super().__init__(name, **kwargs)
        self.chunks = list(chunks if chunks is not None else ["<p>Le robot ", "aspire.</p>"])
        self.stream_error = stream_error
        self.stream_calls: List[Dict[str, Any]] = []

    async def stream(self, config, messages, system=None):
        self.stream_calls.append({"config": config, "messages": messages, "system": system})
        for chunk in self.chunks:
            yield {"type": "text", "text": chunk}
        if self.stream_error is not None:
            raise self.stream_error
        yield {"type": "done", "model": config.model, "tokens_in": 800, "tokens_out": 200}


class FakeSerp:
    def __init__(self, result: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.queries: List[str] = []

    async def search(self, keyword, gl="fr", hl="fr", num=10):
        self.queries.append(keyword)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self):
        pass


class FakeScraper:
    def __init__(self, analysis: Optional[CompetitorContentAnalysis] = None):
        self.analysis = analysis or CompetitorContentAnalysis(pages=[], total_count=0)

    async def analyze(self, organic, own_domain=None):
        return self.analysis

    async def close(self):
        pass


class FakeImages:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.prompts: List[str] = []

    async def generate_optimized(self, prompt, aspect_ratio="16:9"):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return OptimizedImage(content=b"webp-bytes", width=1200, height=675)

    async def close(self):
        pass


class FakeWordPress:
    """Records calls; media ids count up from 100, posts get id 42."""

    def __init__(self):
        self.uploads: List[Dict[str, Any]] = []
        self.created: List[Dict[str, Any]] = []
        self.updated: List[Dict[str, Any]] = []
        self.closed = False

    async def upload_media(self, content, filename, mime_type="image/webp", alt_text=None, caption=None):
        media_id = 100 + len(self.uploads)
        self.uploads.append({"filename": filename, "alt_text": alt_text})
        return {"id": media_id, "source_url": f"https://cdn.test/{filename}"}

    async def ensure_category(self, name):
        return {"id": 7, "name": name}

    async def create_post(self, **kwargs):
        self.created.append(kwargs)
        return {"id": 42, "link": "https://blog.test/robot-aspirateur"}

    async def update_post(self, post_id, **kwargs):
        self.updated.append({"post_id": post_id, **kwargs})
        return {"id": post_id, "link": "https://blog.test/robot-aspirateur"}

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


SAMPLE_SERP = {
    "organic": [
        {"position": 1, "title": "Meilleur robot aspirateur 2024", "link": "https://www.lesnumeriques.com/robot",
         "snippet": "Notre comparatif des robots.", "domain": "www.lesnumeriques.com"},
        {"position": 2, "title": "Robot aspirateur - Wikipedia", "link": "https://fr.wikipedia.org/wiki/Robot_aspirateur",
         "snippet": "Un robot aspirateur est un appareil.", "domain": "fr.wikipedia.org"},
        {"position": 3, "title": "Top 10 des robots aspirateurs", "link": "https://www.quechoisir.org/robots",
         "snippet": "Le classement.", "domain": "www.quechoisir.org"},
    ],
    "peopleAlsoAsk": [
        {"question": "Quel robot aspirateur choisir ?", "snippet": "", "link": ""},
    ],
    "relatedSearches": [],
    "searchParameters": {"q": "robot aspirateur", "gl": "fr", "hl": "fr"},
}


SAMPLE_PLAN = {
    "title_suggestions": [
        {"title": "Robot aspirateur : le guide 2023", "seo_title": "Robot aspirateur 2023",
         "slug": "robot-aspirateur-2023", "seo_rationale": "Intention informationnelle"},
        {"title": "Choisir son robot aspirateur", "seo_title": "Choisir un robot aspirateur",
         "slug": "choisir-robot-aspirateur", "seo_rationale": "Angle pratique"},
    ],
    "meta_description": "Tout savoir sur le robot aspirateur en 2022 : criteres, prix et modeles.",
    "content_blocks": [
        {"type": "h2", "heading": "Pourquoi un robot aspirateur en 2021 ?", "word_count": 300,
         "writing_directive": "Expliquer", "generate_image": True},
        {"type": "h2", "heading": "Les criteres de choix", "word_count": 400},
        {"type": "faq", "heading": "Questions frequentes", "word_count": 200},
    ],
}


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "store.json")


@pytest.fixture
def site(store):
    return store.save_site(Site(
        name="Blog Maison",
        domain="blog.test",
        wp_url="https://blog.test",
        wp_user="editor",
        wp_app_password="abcd efgh",
        niche="Maison",
        money_page_url="https://blog.test/boutique",
        money_page_description="Notre boutique",
    ))


@pytest.fixture
def persona(store, site):
    return store.save_persona(Persona(
        name="Julie", role="Experte maison", site_id=site.id,
        tone_description="Chaleureux et precis",
    ))


@pytest.fixture
def plan_json():
    return json.dumps(SAMPLE_PLAN)


@pytest.fixture
def fakes():
    """Fake collaborators keyed by role; tests tweak them before building services."""
    return {
        "anthropic": FakeStreamingProvider("anthropic"),
        "google": FakeProvider("google", default='{"selections": []}'),
        "openai": FakeProvider("openai"),
        "serp": FakeSerp(result=SAMPLE_SERP),
        "scraper": FakeScraper(),
        "images": FakeImages(),
        "wordpress": FakeWordPress(),
    }


@pytest.fixture
def services(store, fakes):
    router = AIRouter(
        {"anthropic": fakes["anthropic"], "google": fakes["google"], "openai": fakes["openai"]},
        retry_delays=(0, 0),
        sleep=AsyncMock(),
    )
    authority = AuthorityLinkFinder(fakes["serp"], router)
    authority.check_url = AsyncMock(return_value=True)
    return PipelineServices(
        store=store,
        router=router,
        serp=fakes["serp"],
        scraper=fakes["scraper"],
        images=fakes["images"],
        authority=authority,
        wordpress_factory=lambda site: fakes["wordpress"],
    )


@pytest.fixture
def executor(services):
    return PipelineExecutor(services)


@pytest.fixture
def missing_fal_key():
    return ImageGenerationError("FAL_KEY non configure: generation d'images indisponible.")


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data or {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.get = MagicMock(return_value=default_resp)
    session.post = MagicMock(return_value=default_resp)
    session.head = MagicMock(return_value=default_resp)
    session.request = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.closed = False
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


@pytest.fixture
def make_provider():
    """Factory for :class:`FakeProvider` instances."""
    return FakeProvider


@pytest.fixture
def sample_serp():
    return copy.deepcopy(SAMPLE_SERP)


@pytest.fixture
def make_serp():
    """Factory for :class:`FakeSerp` instances."""
    return FakeSerp


@pytest.fixture
def make_streaming_provider():
    """Factory for :class:`FakeStreamingProvider` instances."""
    return FakeStreamingProvider
