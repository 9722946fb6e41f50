"""
Content Model
=============

Entities that flow through every pipeline step: Article, the tagged union of
ContentBlock variants, PipelineRun audit records, the read-only
PipelineContext handed to state-machine guards, and ModelConfig values used by
the AI router.

Blocks are persisted as an embedded JSON array on the Article.  Each entry
carries a ``type`` tag; :func:`block_from_dict` dispatches the tag to the
matching dataclass so that a heading block, an image block and a paragraph
never share one loosely-typed record.

Usage:
    from seo_pipeline.content_model import Article, block_from_dict

    article = Article.from_dict(raw)
    first = article.content_blocks[0]
"""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def count_words(html: str) -> int:
    """Count words in HTML/text content, stripping tags."""
    if not html:
        return 0
    clean = re.sub(r"<[^>]+>", " ", html)
    return len(clean.split())


def _filter_known(cls: Type[Any], data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in known}


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ArticleStatus(str, Enum):
    """Lifecycle status of an article."""
    DRAFT = "draft"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    WRITING = "writing"
    MEDIA = "media"
    SEO_CHECK = "seo_check"
    REVIEWING = "reviewing"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    REFRESH_NEEDED = "refresh_needed"


class PipelineStep(str, Enum):
    """Steps an operator can trigger on an article."""
    ANALYZE = "analyze"
    PLAN = "plan"
    WRITE_BLOCK = "write_block"
    MEDIA = "media"
    SEO = "seo"
    PUBLISH = "publish"
    REFRESH = "refresh"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class BlockStatus(str, Enum):
    PENDING = "pending"
    WRITTEN = "written"
    APPROVED = "approved"


class BlockType(str, Enum):
    H2 = "h2"
    H3 = "h3"
    PARAGRAPH = "paragraph"
    LIST = "list"
    FAQ = "faq"
    CALLOUT = "callout"
    IMAGE = "image"


class FormatHint(str, Enum):
    PROSE = "prose"
    BULLETS = "bullets"
    TABLE = "table"
    MIXED = "mixed"


class SearchIntent(str, Enum):
    TRAFFIC = "traffic"
    REVIEW = "review"
    COMPARISON = "comparison"
    DISCOVER = "discover"
    LEAD_GEN = "lead_gen"
    INFORMATIONAL = "informational"


# ---------------------------------------------------------------------------
# Content blocks (tagged union on ``type``)
# ---------------------------------------------------------------------------


@dataclass
class InternalLinkTarget:
    """A sibling article the planner wants a block to link to."""
    target_slug: str
    target_title: str
    suggested_anchor_context: str = ""
    is_money_page: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InternalLinkTarget:
        return cls(**_filter_known(cls, data))


@dataclass
class ContentBlock:
    """Fields shared by every block variant.

    ``content_html`` is empty exactly while ``status`` is pending: use
    :meth:`mark_written` rather than assigning the two fields separately.
    """
    id: str = field(default_factory=_new_id)
    heading: Optional[str] = None
    content_html: str = ""
    nugget_ids: List[str] = field(default_factory=list)
    word_count: int = 0
    model_used: Optional[str] = None
    status: str = BlockStatus.PENDING.value
    writing_directive: Optional[str] = None
    format_hint: Optional[str] = None
    internal_link_targets: List[InternalLinkTarget] = field(default_factory=list)

    block_type = ""

    @property
    def type(self) -> str:
        return self.block_type

    @property
    def is_pending(self) -> bool:
        return self.status == BlockStatus.PENDING.value

    @property
    def has_heading(self) -> bool:
        return bool(self.heading)

    def mark_written(self, html: str, model_used: Optional[str] = None) -> None:
        if not html.strip():
            raise ValueError("Le contenu d'un bloc ecrit ne peut pas etre vide")
        self.content_html = html
        self.status = BlockStatus.WRITTEN.value
        self.word_count = count_words(html)
        if model_used:
            self.model_used = model_used

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.block_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ContentBlock:
        filtered = _filter_known(cls, data)
        filtered["internal_link_targets"] = [
            t if isinstance(t, InternalLinkTarget) else InternalLinkTarget.from_dict(t)
            for t in filtered.get("internal_link_targets") or []
        ]
        filtered["nugget_ids"] = list(filtered.get("nugget_ids") or [])
        return cls(**filtered)


@dataclass
class HeadingBlock(ContentBlock):
    """Section introduced by an ``<h2>`` or ``<h3>`` heading."""
    level: int = 2
    generate_image: bool = False
    image_prompt_hint: Optional[str] = None

    @property
    def type(self) -> str:
        return f"h{self.level}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("level", None)
        data["type"] = self.type
        return data


@dataclass
class ParagraphBlock(ContentBlock):
    block_type = BlockType.PARAGRAPH.value


@dataclass
class ListBlock(ContentBlock):
    block_type = BlockType.LIST.value


@dataclass
class FaqBlock(ContentBlock):
    block_type = BlockType.FAQ.value


@dataclass
class CalloutBlock(ContentBlock):
    block_type = BlockType.CALLOUT.value


@dataclass
class ImageBlock(ContentBlock):
    block_type = BlockType.IMAGE.value
    image_prompt_hint: Optional[str] = None


_BLOCK_CLASSES: Dict[str, Type[ContentBlock]] = {
    BlockType.PARAGRAPH.value: ParagraphBlock,
    BlockType.LIST.value: ListBlock,
    BlockType.FAQ.value: FaqBlock,
    BlockType.CALLOUT.value: CalloutBlock,
    BlockType.IMAGE.value: ImageBlock,
}


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    """Build the block variant matching ``data["type"]``.

    Raises
    ------
    ValueError
        If the type tag is missing or unknown.
    """
    block_type = data.get("type")
    if block_type in (BlockType.H2.value, BlockType.H3.value):
        return HeadingBlock.from_dict({**data, "level": int(block_type[1])})
    cls = _BLOCK_CLASSES.get(block_type or "")
    if cls is None:
        raise ValueError(f"Type de bloc inconnu: {block_type!r}")
    return cls.from_dict(data)


def new_block(block_type: str, **fields: Any) -> ContentBlock:
    """Create a fresh pending block of the given type."""
    return block_from_dict({"type": block_type, **fields})


# ---------------------------------------------------------------------------
# Article and related entities
# ---------------------------------------------------------------------------


@dataclass
class TitleSuggestion:
    title: str
    seo_title: str = ""
    slug: str = ""
    seo_rationale: str = ""
    selected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TitleSuggestion:
        return cls(**_filter_known(cls, data))


@dataclass
class Article:
    """The unit of work moved through the pipeline."""
    site_id: str
    keyword: str
    id: str = field(default_factory=_new_id)
    silo_id: Optional[str] = None
    persona_id: Optional[str] = None
    search_intent: str = SearchIntent.TRAFFIC.value
    status: str = "draft"
    title: Optional[str] = None
    slug: Optional[str] = None
    seo_title: Optional[str] = None
    meta_description: Optional[str] = None
    content_blocks: List[ContentBlock] = field(default_factory=list)
    content_html: Optional[str] = None
    word_count: int = 0
    wp_post_id: Optional[int] = None
    wp_url: Optional[str] = None
    json_ld: Optional[Dict[str, Any]] = None
    serp_data: Optional[Dict[str, Any]] = None
    nugget_density_score: float = 0.0
    link_to_money_page: bool = False
    title_suggestions: Optional[List[TitleSuggestion]] = None
    authority_link_suggestions: Optional[List[Dict[str, Any]]] = None
    selected_authority_link: Optional[Dict[str, Any]] = None
    year_tag: Optional[int] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    published_at: Optional[str] = None

    @property
    def written_blocks_count(self) -> int:
        return sum(1 for b in self.content_blocks if not b.is_pending)

    def recompute_word_count(self) -> int:
        self.word_count = sum(b.word_count for b in self.content_blocks if not b.is_pending)
        return self.word_count

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["content_blocks"] = [b.to_dict() for b in self.content_blocks]
        if self.title_suggestions is not None:
            data["title_suggestions"] = [t.to_dict() for t in self.title_suggestions]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Article:
        filtered = _filter_known(cls, data)
        filtered["content_blocks"] = [
            b if isinstance(b, ContentBlock) else block_from_dict(b)
            for b in filtered.get("content_blocks") or []
        ]
        suggestions = filtered.get("title_suggestions")
        if suggestions is not None:
            filtered["title_suggestions"] = [
                s if isinstance(s, TitleSuggestion) else TitleSuggestion.from_dict(s)
                for s in suggestions
            ]
        return cls(**filtered)


@dataclass
class Site:
    name: str
    domain: str
    id: str = field(default_factory=_new_id)
    wp_url: str = ""
    wp_user: str = ""
    wp_app_password: str = ""
    niche: Optional[str] = None
    default_persona_id: Optional[str] = None
    money_page_url: Optional[str] = None
    money_page_description: Optional[str] = None
    theme_color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Site:
        return cls(**_filter_known(cls, data))


@dataclass
class Persona:
    name: str
    role: str
    id: str = field(default_factory=_new_id)
    site_id: Optional[str] = None
    tone_description: Optional[str] = None
    bio: Optional[str] = None
    writing_style_examples: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Persona:
        return cls(**_filter_known(cls, data))


@dataclass
class Nugget:
    content: str
    id: str = field(default_factory=_new_id)
    source_type: str = "manual"
    tags: List[str] = field(default_factory=list)
    site_id: Optional[str] = None
    persona_id: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Nugget:
        return cls(**_filter_known(cls, data))


@dataclass
class Silo:
    site_id: str
    name: str
    id: str = field(default_factory=_new_id)
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Silo:
        return cls(**_filter_known(cls, data))


@dataclass
class SiloLink:
    silo_id: str
    source_article_id: str
    target_article_id: str
    anchor_text: str
    id: str = field(default_factory=_new_id)
    is_bidirectional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SiloLink:
        return cls(**_filter_known(cls, data))


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------


@dataclass
class PipelineRun:
    """Audit record of one step execution.

    Created ``running``; closed exactly once by the content store.
    """
    article_id: str
    step: str
    id: str = field(default_factory=_new_id)
    status: str = RunStatus.RUNNING.value
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    model_used: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    error: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    @property
    def is_closed(self) -> bool:
        return self.status != RunStatus.RUNNING.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PipelineRun:
        return cls(**_filter_known(cls, data))


@dataclass(frozen=True)
class PipelineContext:
    """Read-only projection of an article handed to transition guards."""
    article_id: str
    keyword: str
    persona_id: Optional[str] = None
    silo_id: Optional[str] = None
    nugget_density_score: float = 0.0
    content_blocks_count: int = 0
    written_blocks_count: int = 0
    title_selected: bool = False

    @classmethod
    def from_article(cls, article: Article) -> PipelineContext:
        return cls(
            article_id=article.id,
            keyword=article.keyword,
            persona_id=article.persona_id,
            silo_id=article.silo_id,
            nugget_density_score=article.nugget_density_score or 0.0,
            content_blocks_count=len(article.content_blocks),
            written_blocks_count=article.written_blocks_count,
            title_selected=bool(article.title),
        )


@dataclass(frozen=True)
class ModelConfig:
    """Provider, model and generation parameters for one logical task."""
    provider: str
    model: str
    max_tokens: int
    temperature: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineRunResult:
    """Outcome returned by the executor for one step."""
    success: bool
    run_id: str = ""
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    model_used: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (camelCase keys, unset metrics omitted)."""
        data: Dict[str, Any] = {"success": self.success, "runId": self.run_id}
        optional = {
            "output": self.output,
            "error": self.error,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "costUsd": self.cost_usd,
            "durationMs": self.duration_ms,
            "modelUsed": self.model_used,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data
