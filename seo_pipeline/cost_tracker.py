"""
Cost Tracker
============

Spend analytics over recorded pipeline runs: totals with per-model and
per-step breakdowns, daily series, the most expensive articles and a monthly
budget alert (raised at 80% of the budget).

Usage:
    from seo_pipeline.cost_tracker import CostTracker

    tracker = CostTracker(store)
    summary = tracker.get_cost_summary(site_id="...")
    alert = tracker.check_budget_alert(50.0)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from seo_pipeline.content_model import PipelineRun, RunStatus
from seo_pipeline.content_store import ContentStore

logger = logging.getLogger("seo_pipeline.cost_tracker")

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

BUDGET_ALERT_PERCENT = 80.0
UNKNOWN_MODEL = "inconnu"


class CostTracker:
    """Aggregations over the runs held by a :class:`ContentStore`."""

    def __init__(self, store: ContentStore) -> None:
        self._store = store

    def _runs(
        self,
        site_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> List[PipelineRun]:
        article_ids = None
        if site_id:
            article_ids = {a.id for a in self._store.list_articles(site_id=site_id)}
        runs = []
        for run in self._store.iter_runs():
            if article_ids is not None and run.article_id not in article_ids:
                continue
            if date_from and run.created_at < date_from:
                continue
            if date_to and run.created_at > date_to:
                continue
            runs.append(run)
        return runs

    def get_cost_summary(
        self,
        site_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Totals over the matching runs.

        Parameters
        ----------
        site_id : str, optional
            Restrict to runs of this site's articles.
        date_from, date_to : str, optional
            ISO 8601 bounds on the run creation time (inclusive).

        Returns
        -------
        dict
            ``total_cost_usd``, ``total_tokens_in``, ``total_tokens_out``,
            ``total_runs``, ``successful_runs``, ``avg_cost_per_article``,
            ``by_model`` and ``by_step``.
        """
        runs = self._runs(site_id, date_from, date_to)
        by_model: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"cost": 0.0, "runs": 0, "tokens_in": 0, "tokens_out": 0}
        )
        by_step: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"cost": 0.0, "runs": 0, "total_duration_ms": 0}
        )
        articles = set()

        for run in runs:
            articles.add(run.article_id)
            model = by_model[run.model_used or UNKNOWN_MODEL]
            model["cost"] += run.cost_usd
            model["runs"] += 1
            model["tokens_in"] += run.tokens_in
            model["tokens_out"] += run.tokens_out

            step = by_step[run.step]
            step["cost"] += run.cost_usd
            step["runs"] += 1
            step["total_duration_ms"] += run.duration_ms

        total_cost = sum(r.cost_usd for r in runs)
        return {
            "total_cost_usd": round(total_cost, 6),
            "total_tokens_in": sum(r.tokens_in for r in runs),
            "total_tokens_out": sum(r.tokens_out for r in runs),
            "total_runs": len(runs),
            "successful_runs": sum(1 for r in runs if r.status == RunStatus.SUCCESS.value),
            "avg_cost_per_article": round(total_cost / len(articles), 6) if articles else 0.0,
            "by_model": [
                {"model": name, **{**data, "cost": round(data["cost"], 6)}}
                for name, data in sorted(by_model.items(), key=lambda kv: -kv[1]["cost"])
            ],
            "by_step": [
                {
                    "step": name,
                    "cost": round(data["cost"], 6),
                    "runs": data["runs"],
                    "avg_duration_ms": round(data["total_duration_ms"] / data["runs"]),
                }
                for name, data in sorted(by_step.items())
            ],
        }

    def get_daily_costs(
        self, days: int = 30, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Per-day totals (``YYYY-MM-DD``) over the last ``days`` days, oldest first."""
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=days)).isoformat()
        per_day: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"cost": 0.0, "runs": 0, "tokens_in": 0, "tokens_out": 0}
        )
        for run in self._runs(date_from=since):
            entry = per_day[run.created_at[:10]]
            entry["cost"] += run.cost_usd
            entry["runs"] += 1
            entry["tokens_in"] += run.tokens_in
            entry["tokens_out"] += run.tokens_out
        return [
            {"date": day, **{**data, "cost": round(data["cost"], 6)}}
            for day, data in sorted(per_day.items())
        ]

    def get_most_expensive_articles(self, limit: int = 10) -> List[Dict[str, Any]]:
        per_article: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"total_cost": 0.0, "total_tokens_in": 0, "total_tokens_out": 0, "run_count": 0}
        )
        for run in self._store.iter_runs():
            entry = per_article[run.article_id]
            entry["total_cost"] += run.cost_usd
            entry["total_tokens_in"] += run.tokens_in
            entry["total_tokens_out"] += run.tokens_out
            entry["run_count"] += 1

        ranked = sorted(per_article.items(), key=lambda kv: kv[1]["total_cost"], reverse=True)
        results = []
        for article_id, data in ranked[:limit]:
            article = self._store.get_article(article_id)
            results.append({
                "article_id": article_id,
                "keyword": article.keyword if article else "Inconnu",
                "title": article.title if article else None,
                **{**data, "total_cost": round(data["total_cost"], 6)},
            })
        return results

    def check_budget_alert(
        self, monthly_budget_usd: float, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Spend since the first of the current month against ``monthly_budget_usd``."""
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        spend = sum(r.cost_usd for r in self._runs(date_from=month_start.isoformat()))
        percent = spend / monthly_budget_usd * 100 if monthly_budget_usd > 0 else 0.0
        if percent >= BUDGET_ALERT_PERCENT:
            logger.warning(
                "Budget alert: %.2f USD spent, %.0f%% of %.2f USD",
                spend, percent, monthly_budget_usd,
            )
        return {
            "current_spend": round(spend, 6),
            "budget": monthly_budget_usd,
            "percent_used": round(percent, 2),
            "is_alert": percent >= BUDGET_ALERT_PERCENT,
        }
