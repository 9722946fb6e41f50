"""Tests for spend analytics over pipeline runs."""

from datetime import datetime, timezone

import pytest

from seo_pipeline.content_model import PipelineRun
from seo_pipeline.cost_tracker import CostTracker

NOW = datetime(2025, 6, 20, 12, 0, tzinfo=timezone.utc)


def _seed_run(store, article_id, step="write_block", cost=0.01, model="claude-sonnet-4-20250514",
              status="success", created_at="2025-06-10T10:00:00+00:00", duration_ms=1000,
              tokens_in=1000, tokens_out=500):
    run = PipelineRun(
        article_id=article_id, step=step, status=status, model_used=model,
        cost_usd=cost, tokens_in=tokens_in, tokens_out=tokens_out,
        duration_ms=duration_ms, created_at=created_at,
    )
    store._put("runs", run.id, run.to_dict())
    return run


@pytest.fixture
def tracker(store):
    return CostTracker(store)


@pytest.fixture
def seeded(store, site):
    first = store.create_article(site.id, "robot aspirateur", title="Le guide")
    second = store.create_article(site.id, "aspirateur balai")
    other = store.create_article("other-site", "cafetiere")
    _seed_run(store, first.id, step="plan", cost=0.02, duration_ms=3000)
    _seed_run(store, first.id, cost=0.01, duration_ms=1000)
    _seed_run(store, second.id, cost=0.004, model="gpt-4o-mini", status="error",
              created_at="2025-06-11T08:00:00+00:00")
    _seed_run(store, other.id, cost=0.5, model=None, created_at="2025-05-01T08:00:00+00:00")
    return {"first": first, "second": second, "other": other}


@pytest.mark.unit
class TestCostSummary:

    def test_empty_store(self, tracker):
        summary = tracker.get_cost_summary()
        assert summary["total_cost_usd"] == 0
        assert summary["total_runs"] == 0
        assert summary["avg_cost_per_article"] == 0.0
        assert summary["by_model"] == []

    def test_totals(self, tracker, seeded):
        summary = tracker.get_cost_summary()
        assert summary["total_cost_usd"] == pytest.approx(0.534)
        assert summary["total_runs"] == 4
        assert summary["successful_runs"] == 3
        assert summary["total_tokens_in"] == 4000
        assert summary["avg_cost_per_article"] == pytest.approx(0.178)

    def test_by_model_sorted_by_cost(self, tracker, seeded):
        by_model = tracker.get_cost_summary()["by_model"]
        assert [m["model"] for m in by_model] == [
            "inconnu", "claude-sonnet-4-20250514", "gpt-4o-mini",
        ]
        assert by_model[1]["runs"] == 2
        assert by_model[1]["cost"] == pytest.approx(0.03)

    def test_by_step(self, tracker, seeded, site):
        by_step = tracker.get_cost_summary(site_id=site.id)["by_step"]
        assert [s["step"] for s in by_step] == ["plan", "write_block"]
        assert by_step[0]["avg_duration_ms"] == 3000
        assert by_step[1]["runs"] == 2

    def test_site_filter(self, tracker, seeded, site):
        summary = tracker.get_cost_summary(site_id=site.id)
        assert summary["total_runs"] == 3
        assert summary["total_cost_usd"] == pytest.approx(0.034)

    def test_date_bounds(self, tracker, seeded):
        summary = tracker.get_cost_summary(
            date_from="2025-06-11T00:00:00+00:00", date_to="2025-06-30T00:00:00+00:00"
        )
        assert summary["total_runs"] == 1


@pytest.mark.unit
class TestDailyAndArticles:

    def test_daily_costs_oldest_first(self, tracker, seeded):
        daily = tracker.get_daily_costs(days=30, now=NOW)
        assert [d["date"] for d in daily] == ["2025-06-10", "2025-06-11"]
        assert daily[0]["runs"] == 2
        assert daily[0]["cost"] == pytest.approx(0.03)

    def test_most_expensive_articles(self, tracker, seeded):
        ranked = tracker.get_most_expensive_articles(limit=2)
        assert [r["keyword"] for r in ranked] == ["cafetiere", "robot aspirateur"]
        assert ranked[1]["title"] == "Le guide"
        assert ranked[1]["run_count"] == 2

    def test_unknown_article(self, tracker, store):
        _seed_run(store, "gone", cost=0.1)
        assert tracker.get_most_expensive_articles()[0]["keyword"] == "Inconnu"


@pytest.mark.unit
class TestBudgetAlert:

    def test_below_threshold(self, tracker, seeded):
        alert = tracker.check_budget_alert(1.0, now=NOW)
        assert alert["current_spend"] == pytest.approx(0.034)
        assert alert["is_alert"] is False

    def test_alert_at_eighty_percent(self, tracker, seeded):
        alert = tracker.check_budget_alert(0.04, now=NOW)
        assert alert["percent_used"] == pytest.approx(85.0)
        assert alert["is_alert"] is True

    def test_zero_budget(self, tracker, seeded):
        alert = tracker.check_budget_alert(0, now=NOW)
        assert alert["percent_used"] == 0.0
        assert alert["is_alert"] is False
