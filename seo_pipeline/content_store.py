"""
Content Store
=============

JSON-file persistence for articles, pipeline runs, sites, personas, nuggets,
silos and the configuration table.  Everything lives in one document so a
run closure and the article status advance that follows it land in a single
atomic write (temp file + ``os.replace``).

Data storage: data/seo_pipeline/store.json (override with
``SEO_PIPELINE_DATA_DIR``).

Usage:
    from seo_pipeline.content_store import ContentStore

    store = ContentStore()
    article = store.create_article(site_id, "robot aspirateur")
    run = store.create_run(article.id, "analyze", {})
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from seo_pipeline.content_model import (
    Article,
    ContentBlock,
    Nugget,
    Persona,
    PipelineRun,
    RunStatus,
    Silo,
    SiloLink,
    Site,
    block_from_dict,
)

logger = logging.getLogger("seo_pipeline.content_store")

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
# Paths & Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("SEO_PIPELINE_DATA_DIR", str(BASE_DIR / "data" / "seo_pipeline")))
STORE_FILE = DATA_DIR / "store.json"

_COLLECTIONS = ("articles", "runs", "sites", "personas", "nuggets", "silos", "silo_links")


class StoreError(Exception):
    """Raised when a stored record is missing or cannot be updated."""


class RunAlreadyClosedError(StoreError):
    """Raised when closing a run that is no longer ``running``."""


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError):
        return default


def _save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to .tmp then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
    os.replace(tmp_path, path)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ContentStore:
    """Lazy-loaded JSON document holding every pipeline entity."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else STORE_FILE
        self._data: Dict[str, Any] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = _load_json(self._path, default={})
        if not isinstance(raw, dict):
            raw = {}
        for name in _COLLECTIONS:
            if not isinstance(raw.get(name), dict):
                raw[name] = {}
        if not isinstance(raw.get("config"), dict):
            raw["config"] = {}
        self._data = raw
        self._loaded = True

    def _flush(self) -> None:
        _save_json(self._path, self._data)

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        self._ensure_loaded()
        return self._data[name]

    def _put(self, name: str, record_id: str, payload: Dict[str, Any]) -> None:
        self._collection(name)[record_id] = payload
        self._flush()

    def _drop_where(self, name: str, predicate: Callable[[Dict[str, Any]], bool]) -> List[str]:
        """Remove matching records from a collection without flushing."""
        collection = self._collection(name)
        dropped = [rid for rid, data in collection.items() if predicate(data)]
        for rid in dropped:
            del collection[rid]
        return dropped

    def _clear_field(self, name: str, key: str, value: str) -> None:
        for data in self._collection(name).values():
            if data.get(key) == value:
                data[key] = None

    def _drop_article_dependents(self, article_ids: Set[str]) -> None:
        self._drop_where("runs", lambda d: d.get("article_id") in article_ids)
        self._drop_where("silo_links", lambda d: (
            d.get("source_article_id") in article_ids
            or d.get("target_article_id") in article_ids
        ))

    def _delete(self, name: str, record_id: str) -> bool:
        if self._collection(name).pop(record_id, None) is None:
            return False
        self._flush()
        return True

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    def create_article(self, site_id: str, keyword: str, **fields: Any) -> Article:
        article = Article(site_id=site_id, keyword=keyword, **fields)
        self._put("articles", article.id, article.to_dict())
        logger.info("Article %s created for keyword=%s", article.id[:8], keyword)
        return article

    def get_article(self, article_id: str) -> Optional[Article]:
        data = self._collection("articles").get(article_id)
        return Article.from_dict(data) if data else None

    def save_article(self, article: Article) -> Article:
        article.updated_at = _now_iso()
        self._put("articles", article.id, article.to_dict())
        return article

    def update_article(self, article_id: str, **fields: Any) -> Article:
        """Set article fields by name.

        ``content_blocks`` may be given as dicts; the word count then follows
        the blocks unless ``word_count`` is set explicitly.
        """
        article = self.get_article(article_id)
        if article is None:
            raise StoreError(f"Article non trouve: {article_id}")
        for key, value in fields.items():
            if not hasattr(article, key):
                raise StoreError(f"Champ d'article inconnu: {key}")
            if key == "content_blocks":
                value = [b if isinstance(b, ContentBlock) else block_from_dict(b) for b in value]
            setattr(article, key, value)
        if "content_blocks" in fields and "word_count" not in fields:
            article.recompute_word_count()
        return self.save_article(article)

    def delete_article(self, article_id: str) -> bool:
        """Remove an article with its runs and the silo links touching it."""
        if self._collection("articles").pop(article_id, None) is None:
            return False
        self._drop_article_dependents({article_id})
        self._flush()
        logger.info("Article %s deleted", article_id[:8])
        return True

    def list_articles(
        self,
        site_id: Optional[str] = None,
        status: Optional[str] = None,
        silo_id: Optional[str] = None,
    ) -> List[Article]:
        results: List[Article] = []
        for data in self._collection("articles").values():
            if site_id and data.get("site_id") != site_id:
                continue
            if status and data.get("status") != status:
                continue
            if silo_id and data.get("silo_id") != silo_id:
                continue
            results.append(Article.from_dict(data))
        results.sort(key=lambda a: a.created_at)
        return results

    # ------------------------------------------------------------------
    # Sites, personas, nuggets, silos
    # ------------------------------------------------------------------

    def save_site(self, site: Site) -> Site:
        self._put("sites", site.id, site.to_dict())
        return site

    def get_site(self, site_id: Optional[str]) -> Optional[Site]:
        data = self._collection("sites").get(site_id or "")
        return Site.from_dict(data) if data else None

    def list_sites(self) -> List[Site]:
        return [Site.from_dict(d) for d in self._collection("sites").values()]

    def delete_site(self, site_id: str) -> bool:
        """Remove a site with its articles, personas and silos.

        The site's nuggets are kept and become global.
        """
        if self._collection("sites").pop(site_id, None) is None:
            return False

        def owned(data: Dict[str, Any]) -> bool:
            return data.get("site_id") == site_id

        article_ids = set(self._drop_where("articles", owned))
        self._drop_article_dependents(article_ids)
        for persona_id in self._drop_where("personas", owned):
            self._clear_field("nuggets", "persona_id", persona_id)
        silo_ids = set(self._drop_where("silos", owned))
        self._drop_where("silo_links", lambda d: d.get("silo_id") in silo_ids)
        self._clear_field("nuggets", "site_id", site_id)
        self._flush()
        logger.info("Site %s deleted with %d article(s)", site_id[:8], len(article_ids))
        return True

    def save_persona(self, persona: Persona) -> Persona:
        self._put("personas", persona.id, persona.to_dict())
        return persona

    def get_persona(self, persona_id: Optional[str]) -> Optional[Persona]:
        data = self._collection("personas").get(persona_id or "")
        return Persona.from_dict(data) if data else None

    def list_personas(self, site_id: Optional[str] = None) -> List[Persona]:
        return [
            Persona.from_dict(d)
            for d in self._collection("personas").values()
            if not site_id or d.get("site_id") == site_id
        ]

    def delete_persona(self, persona_id: str) -> bool:
        """Remove a persona; articles, sites and nuggets using it lose the reference."""
        if self._collection("personas").pop(persona_id, None) is None:
            return False
        self._clear_field("articles", "persona_id", persona_id)
        self._clear_field("sites", "default_persona_id", persona_id)
        self._clear_field("nuggets", "persona_id", persona_id)
        self._flush()
        return True

    def save_nugget(self, nugget: Nugget) -> Nugget:
        self._put("nuggets", nugget.id, nugget.to_dict())
        return nugget

    def get_nugget(self, nugget_id: str) -> Optional[Nugget]:
        data = self._collection("nuggets").get(nugget_id)
        return Nugget.from_dict(data) if data else None

    def list_nuggets(self, site_id: Optional[str] = None, limit: int = 20) -> List[Nugget]:
        """Nuggets of ``site_id`` plus global (site-less) ones, newest first."""
        nuggets = [
            Nugget.from_dict(d)
            for d in self._collection("nuggets").values()
            if d.get("site_id") in (None, site_id)
        ]
        nuggets.sort(key=lambda n: n.created_at, reverse=True)
        return nuggets[:limit]

    def delete_nugget(self, nugget_id: str) -> bool:
        return self._delete("nuggets", nugget_id)

    def save_silo(self, silo: Silo) -> Silo:
        self._put("silos", silo.id, silo.to_dict())
        return silo

    def get_silo(self, silo_id: Optional[str]) -> Optional[Silo]:
        data = self._collection("silos").get(silo_id or "")
        return Silo.from_dict(data) if data else None

    def list_silos(self, site_id: Optional[str] = None) -> List[Silo]:
        return [
            Silo.from_dict(d)
            for d in self._collection("silos").values()
            if not site_id or d.get("site_id") == site_id
        ]

    def delete_silo(self, silo_id: str) -> bool:
        """Remove a silo and its links; its articles leave the silo."""
        if self._collection("silos").pop(silo_id, None) is None:
            return False
        self._drop_where("silo_links", lambda d: d.get("silo_id") == silo_id)
        self._clear_field("articles", "silo_id", silo_id)
        self._flush()
        return True

    def save_silo_link(self, link: SiloLink) -> SiloLink:
        self._put("silo_links", link.id, link.to_dict())
        return link

    def list_silo_links(
        self, silo_id: str, source_article_id: Optional[str] = None
    ) -> List[SiloLink]:
        links: List[SiloLink] = []
        for data in self._collection("silo_links").values():
            if data.get("silo_id") != silo_id:
                continue
            if source_article_id and data.get("source_article_id") != source_article_id:
                continue
            links.append(SiloLink.from_dict(data))
        return links

    def delete_silo_link(self, silo_id: str, link_id: str) -> bool:
        data = self._collection("silo_links").get(link_id)
        if data is None or data.get("silo_id") != silo_id:
            return False
        return self._delete("silo_links", link_id)

    # ------------------------------------------------------------------
    # Configuration table
    # ------------------------------------------------------------------

    def get_config(self, key: str, default: Any = None) -> Any:
        self._ensure_loaded()
        return self._data["config"].get(key, default)

    def set_config(self, key: str, value: Any) -> None:
        self._ensure_loaded()
        self._data["config"][key] = value
        self._flush()

    def resolve_api_key(self, env_var: str, config_key: str) -> Optional[str]:
        """Credential from the environment, else the configuration table.

        Table values may be a plain string or ``{"api_key": "..."}``.
        """
        from_env = os.environ.get(env_var, "")
        if from_env:
            return from_env
        value = self.get_config(config_key)
        if isinstance(value, dict):
            value = value.get("api_key")
        return value or None

    # ------------------------------------------------------------------
    # Pipeline runs
    # ------------------------------------------------------------------

    def create_run(
        self, article_id: str, step: str, run_input: Optional[Dict[str, Any]] = None
    ) -> PipelineRun:
        run = PipelineRun(article_id=article_id, step=step, input=dict(run_input or {}))
        self._put("runs", run.id, run.to_dict())
        return run

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        data = self._collection("runs").get(run_id)
        return PipelineRun.from_dict(data) if data else None

    def close_run(
        self,
        run_id: str,
        status: str,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        model_used: Optional[str] = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost_usd: float = 0.0,
        duration_ms: int = 0,
        advance_article_to: Optional[str] = None,
    ) -> PipelineRun:
        """Close a running run and, optionally, advance its article's status.

        Both changes are written in one atomic save, so an article never
        advances without its successful run being recorded.

        Raises
        ------
        StoreError
            If the run does not exist.
        RunAlreadyClosedError
            If the run was already closed.
        """
        runs = self._collection("runs")
        data = runs.get(run_id)
        if data is None:
            raise StoreError(f"Run introuvable: {run_id}")
        run = PipelineRun.from_dict(data)
        if run.is_closed:
            raise RunAlreadyClosedError(f"Run {run_id} deja cloture ({run.status})")

        run.status = status
        run.output = output
        run.error = error
        run.model_used = model_used
        run.tokens_in = tokens_in
        run.tokens_out = tokens_out
        run.cost_usd = cost_usd
        run.duration_ms = duration_ms
        runs[run_id] = run.to_dict()

        if advance_article_to and status == RunStatus.SUCCESS.value:
            article = self._collection("articles").get(run.article_id)
            if article is not None:
                article["status"] = advance_article_to
                article["updated_at"] = _now_iso()

        self._flush()
        return run

    def list_runs(
        self,
        article_id: Optional[str] = None,
        step: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PipelineRun]:
        """Runs matching the filters, newest first."""
        results: List[PipelineRun] = []
        for data in self._collection("runs").values():
            if article_id and data.get("article_id") != article_id:
                continue
            if step and data.get("step") != step:
                continue
            if status and data.get("status") != status:
                continue
            results.append(PipelineRun.from_dict(data))
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results[:limit] if limit else results

    def latest_run(
        self, article_id: str, step: str, status: Optional[str] = None
    ) -> Optional[PipelineRun]:
        runs = self.list_runs(article_id=article_id, step=step, status=status, limit=1)
        return runs[0] if runs else None

    def list_stale_runs(self, older_than_minutes: int = 30) -> List[PipelineRun]:
        """Runs still ``running`` after ``older_than_minutes``."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        stale: List[PipelineRun] = []
        for run in self.list_runs(status=RunStatus.RUNNING.value):
            created = _parse_iso(run.created_at)
            if created is not None and created < cutoff:
                stale.append(run)
        return stale

    def iter_runs(self) -> Iterable[PipelineRun]:
        for data in self._collection("runs").values():
            yield PipelineRun.from_dict(data)
