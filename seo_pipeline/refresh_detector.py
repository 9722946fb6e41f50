"""
Refresh detection for published articles.

An article published more than 120 days ago is a refresh candidate.  Short
articles (under 1000 words) come first, then the oldest.  Marking runs the
``refresh`` step through the executor so the transition is validated and
recorded like any other step.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from seo_pipeline.content_model import ArticleStatus, PipelineStep
from seo_pipeline.content_store import ContentStore, _parse_iso

logger = logging.getLogger("seo_pipeline.refresh_detector")

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

STALE_AFTER_DAYS = 120
SHORT_ARTICLE_WORDS = 1000


def detect_stale_articles(
    store: ContentStore, site_id: Optional[str] = None, now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """Published articles older than :data:`STALE_AFTER_DAYS`, oldest first."""
    now = now or datetime.now(timezone.utc)
    stale: List[Dict[str, Any]] = []
    for article in store.list_articles(site_id=site_id, status=ArticleStatus.PUBLISHED.value):
        published = _parse_iso(article.published_at)
        if published is None:
            continue
        days = (now - published).days
        if days <= STALE_AFTER_DAYS:
            continue
        stale.append({
            "id": article.id,
            "keyword": article.keyword,
            "title": article.title,
            "published_at": article.published_at,
            "word_count": article.word_count,
            "daysSincePublish": days,
        })
    stale.sort(key=lambda a: a["daysSincePublish"], reverse=True)
    return stale


def get_refresh_candidates(
    store: ContentStore, site_id: Optional[str] = None, now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """Stale articles, short ones (< 1000 words) first, then by age descending."""
    return sorted(
        detect_stale_articles(store, site_id, now),
        key=lambda a: (a["word_count"] >= SHORT_ARTICLE_WORDS, -a["daysSincePublish"]),
    )


async def mark_for_refresh(executor: Any, article_ids: Sequence[str]) -> int:
    """Run the ``refresh`` step on each article; returns how many succeeded."""
    marked = 0
    for article_id in article_ids:
        result = await executor.execute_step(article_id, PipelineStep.REFRESH)
        if result.success:
            marked += 1
        else:
            logger.warning("Refresh of article %s skipped: %s", article_id[:8], result.error)
    logger.info("Marked %d/%d articles for refresh", marked, len(article_ids))
    return marked
