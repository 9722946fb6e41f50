"""
Tests for the FastAPI API endpoints.

The app lifespan runs inside the TestClient with ``build_services`` patched
to return the fake service graph from conftest, so every route exercises the
real executor and store without network access.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from seo_pipeline.api import app, state


# ===================================================================
# Fixtures
# ===================================================================


@pytest.fixture
def client(services):
    with patch("seo_pipeline.api.build_services", return_value=services):
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c


@pytest.fixture
def article(store, site, persona):
    return store.create_article(site.id, "robot aspirateur", persona_id=persona.id)


@pytest.fixture
def planned(client, fakes, plan_json, article):
    fakes["anthropic"].replies = [plan_json]
    assert client.post(f"/articles/{article.id}/analyze").status_code == 200
    assert client.post(f"/articles/{article.id}/plan").status_code == 200
    return article


def _sse_events(body: str):
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


# ===================================================================
# Health & configuration
# ===================================================================


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["subsystems"]["executor"] == "ready"

    def test_models(self, client):
        models = client.get("/models").json()
        assert len(models) == 7
        assert models[0]["id"] == "claude-sonnet-4-20250514"

    def test_routing(self, client):
        routing = client.get("/routing").json()
        assert routing["plan_article"]["provider"] == "anthropic"
        assert routing["evaluate_authority_links"]["model"] == "gemini-2.0-flash"


# ===================================================================
# Articles
# ===================================================================


class TestArticles:

    def test_create_article(self, client, site, persona):
        resp = client.post("/articles", json={
            "site_id": site.id, "keyword": "  robot aspirateur ", "persona_id": persona.id,
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "draft"
        assert data["keyword"] == "robot aspirateur"
        assert data["search_intent"] == "traffic"

    def test_create_article_unknown_site(self, client):
        resp = client.post("/articles", json={"site_id": "nope", "keyword": "x"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Site non trouve"

    def test_create_article_validation(self, client, site):
        assert client.post("/articles", json={"site_id": site.id, "keyword": ""}).status_code == 422
        resp = client.post("/articles", json={
            "site_id": site.id, "keyword": "x", "search_intent": "unknown",
        })
        assert resp.status_code == 422

    def test_list_newest_first_with_filters(self, client, store, site):
        first = store.create_article(site.id, "robot aspirateur")
        second = store.create_article(site.id, "aspirateur balai", status="planning")
        store.create_article("other", "cafetiere")

        ids = [a["id"] for a in client.get("/articles", params={"site_id": site.id}).json()]
        assert ids == [second.id, first.id]

        planning = client.get("/articles", params={"status": "planning"}).json()
        assert [a["id"] for a in planning] == [second.id]

        found = client.get("/articles", params={"search": "BALAI"}).json()
        assert [a["id"] for a in found] == [second.id]

    def test_get_article(self, client, article):
        assert client.get(f"/articles/{article.id}").json()["id"] == article.id
        assert client.get("/articles/missing").status_code == 404

    def test_steps(self, client, article):
        data = client.get(f"/articles/{article.id}/steps").json()
        assert data == {
            "status": "draft",
            "statusLabel": "Brouillon",
            "progress": 0,
            "availableSteps": [{"step": "analyze", "label": "Analyser la SERP"}],
        }

    def test_runs_filtered_by_step(self, client, planned):
        runs = client.get(f"/articles/{planned.id}/runs").json()
        assert sorted(r["step"] for r in runs) == ["analyze", "plan"]
        plan_runs = client.get(f"/articles/{planned.id}/runs", params={"step": "plan"}).json()
        assert len(plan_runs) == 1
        assert plan_runs[0]["status"] == "success"

    def test_stale_runs(self, client):
        assert client.get("/runs/stale", params={"minutes": 5}).json() == []
        assert client.get("/runs/stale", params={"minutes": 0}).status_code == 422


# ===================================================================
# Pipeline steps
# ===================================================================


class TestSteps:

    def test_analyze_success(self, client, store, article):
        resp = client.post(f"/articles/{article.id}/analyze")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["runId"]
        assert data["output"]["serpData"] == {"organic": 3, "paa": 1}
        assert store.get_article(article.id).status == "analyzing"

    def test_missing_article_is_404(self, client):
        resp = client.post("/articles/missing/analyze")
        assert resp.status_code == 404

    def test_invalid_transition_is_422_without_run(self, client, article):
        resp = client.post(f"/articles/{article.id}/publish")
        assert resp.status_code == 422
        assert "Transition invalide" in resp.json()["error"]
        assert "runId" not in resp.json()

    def test_failed_run_reports_run_id(self, client, fakes, article):
        fakes["anthropic"].replies = ["pas de json"]
        client.post(f"/articles/{article.id}/analyze")
        resp = client.post(f"/articles/{article.id}/plan")
        assert resp.status_code == 422
        assert resp.json()["runId"]
        assert resp.json()["error"].startswith("Impossible de parser le plan")

    def test_write_block_with_model(self, client, fakes, planned):
        resp = client.post(
            f"/articles/{planned.id}/write-block", json={"blockIndex": 1, "model": "gpt-4o"}
        )
        assert resp.status_code == 200
        assert resp.json()["modelUsed"] == "gpt-4o"
        assert resp.json()["output"]["blockIndex"] == 1

    def test_write_block_defaults_to_first_block(self, client, planned):
        resp = client.post(f"/articles/{planned.id}/write-block")
        assert resp.json()["output"]["blockIndex"] == 0

    def test_write_block_out_of_range(self, client, planned):
        resp = client.post(f"/articles/{planned.id}/write-block", json={"blockIndex": 99})
        assert resp.status_code == 422
        assert resp.json()["error"] == "Bloc #99 introuvable"

    def test_executor_crash_is_500(self, client, article):
        with patch.object(state.executor, "execute_step", AsyncMock(side_effect=RuntimeError("boom"))):
            resp = client.post(f"/articles/{article.id}/analyze")
        assert resp.status_code == 500
        assert resp.json()["error"] == "boom"


# ===================================================================
# Write-all (SSE)
# ===================================================================


class TestWriteAll:

    def test_streams_progress_then_done(self, client, store, planned):
        resp = client.post(f"/articles/{planned.id}/write-all")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(resp.text)
        assert [name for name, _ in events] == ["progress"] * 4 + ["done"]
        assert events[0][1] == {"current": 1, "total": 4, "blockIndex": 0, "success": True}
        assert events[-1][1] == {"written": 4, "errors": 0, "totalBlocks": 4}
        assert store.get_article(planned.id).written_blocks_count == 4

    def test_counts_failures(self, client, fakes, planned):
        from seo_pipeline.ai_providers import ProviderError

        fakes["anthropic"].replies = ["<p>a</p>", ProviderError("refus", status_code=400)]
        events = _sse_events(client.post(f"/articles/{planned.id}/write-all").text)
        assert events[1][1]["success"] is False
        assert events[-1][1] == {"written": 3, "errors": 1, "totalBlocks": 4}

    def test_missing_article(self, client):
        assert client.post("/articles/missing/write-all").status_code == 404

    def test_nothing_to_write(self, client, article):
        resp = client.post(f"/articles/{article.id}/write-all")
        assert resp.status_code == 422
        assert resp.json()["error"] == "Aucun bloc de contenu. Generez d'abord un plan."


# ===================================================================
# Single-block streaming (SSE)
# ===================================================================


class TestStreamBlock:

    def test_streams_text_then_done(self, client, store, planned):
        resp = client.post(f"/articles/{planned.id}/stream", json={"blockIndex": 1})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(resp.text)
        assert [name for name, _ in events] == ["text", "text", "done"]
        assert "".join(data["text"] for name, data in events if name == "text") == "<p>Le robot aspire.</p>"
        done = events[-1][1]
        assert (done["tokens_in"], done["tokens_out"], done["fallback"]) == (800, 200, False)
        assert store.get_article(planned.id).content_blocks[1].is_pending

    def test_failed_stream_resets_and_falls_back(self, client, fakes, planned):
        from seo_pipeline.ai_providers import ProviderError

        fakes["anthropic"].stream_error = ProviderError("coupure", status_code=529, provider="anthropic")
        events = _sse_events(client.post(f"/articles/{planned.id}/stream").text)
        assert [name for name, _ in events] == ["text", "text", "reset", "text", "done"]
        assert events[3][1] == {"text": "<p>ok</p>"}
        assert events[-1][1]["fallback"] is True

    def test_error_event_when_fallback_fails(self, client, fakes, planned):
        from seo_pipeline.ai_providers import ProviderError

        fakes["anthropic"].stream_error = ProviderError("coupure", status_code=529, provider="anthropic")
        fakes["anthropic"].replies = [ProviderError("cle invalide", status_code=401, provider="anthropic")]
        events = _sse_events(client.post(f"/articles/{planned.id}/stream").text)
        assert events[-1] == ("error", {"error": "cle invalide"})

    def test_missing_article(self, client):
        resp = client.post("/articles/missing/stream", json={"blockIndex": 0})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Article non trouve"

    def test_block_out_of_range(self, client, planned):
        resp = client.post(f"/articles/{planned.id}/stream", json={"blockIndex": 12})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Bloc #12 introuvable"

    def test_negative_index_rejected(self, client, planned):
        assert client.post(f"/articles/{planned.id}/stream", json={"blockIndex": -1}).status_code == 422


# ===================================================================
# Selections
# ===================================================================


class TestSelections:

    def test_select_title(self, client, planned):
        resp = client.post(f"/articles/{planned.id}/select-title", json={"title_index": 1})
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "Choisir son robot aspirateur"
        assert data["slug"] == "choisir-robot-aspirateur"
        assert data["seo_title"] == "Choisir un robot aspirateur"
        assert [s["selected"] for s in data["title_suggestions"]] == [False, True]

    def test_select_title_out_of_range(self, client, planned):
        resp = client.post(f"/articles/{planned.id}/select-title", json={"title_index": 2})
        assert resp.status_code == 400
        assert client.post(
            f"/articles/{planned.id}/select-title", json={"title_index": 3}
        ).status_code == 422

    def test_select_suggested_link(self, client, store, article):
        store.update_article(article.id, authority_link_suggestions=[
            {"url": "https://fr.wikipedia.org/wiki/Robot", "title": "Wikipedia",
             "rationale": "Reference", "selected": False},
        ])
        resp = client.post(f"/articles/{article.id}/select-authority-link", json={"link_index": 0})
        assert resp.status_code == 200
        data = resp.json()
        assert data["selected_authority_link"] == {
            "url": "https://fr.wikipedia.org/wiki/Robot",
            "title": "Wikipedia",
            "anchor_context": "Reference",
        }
        assert data["authority_link_suggestions"][0]["selected"] is True

    def test_select_link_requires_index_or_url(self, client, article):
        resp = client.post(f"/articles/{article.id}/select-authority-link", json={})
        assert resp.status_code == 422
        assert resp.json()["error"] == "link_index ou custom_url requis"

    def test_select_link_bad_index(self, client, article):
        resp = client.post(f"/articles/{article.id}/select-authority-link", json={"link_index": 0})
        assert resp.status_code == 400

    def test_custom_link_checked(self, client, services, article):
        resp = client.post(f"/articles/{article.id}/select-authority-link", json={
            "custom_url": "https://www.insee.fr/fr/statistiques", "anchor_context": "Selon l'INSEE",
        })
        assert resp.status_code == 200
        assert resp.json()["selected_authority_link"]["title"] == "https://www.insee.fr/fr/statistiques"
        services.authority.check_url.assert_awaited_with("https://www.insee.fr/fr/statistiques")

    def test_unreachable_custom_link(self, client, services, article):
        services.authority.check_url = AsyncMock(return_value=False)
        resp = client.post(
            f"/articles/{article.id}/select-authority-link", json={"custom_url": "https://mort.test"}
        )
        assert resp.status_code == 422
        assert "ne repond pas" in resp.json()["error"]


# ===================================================================
# Article editing
# ===================================================================


class TestArticleEditing:

    def test_patch_assigns_persona_then_writing_works(self, client, store, site, persona, fakes, plan_json):
        article = store.create_article(site.id, "robot aspirateur")
        fakes["anthropic"].replies = [plan_json]
        client.post(f"/articles/{article.id}/analyze")
        client.post(f"/articles/{article.id}/plan")
        refused = client.post(f"/articles/{article.id}/write-block")
        assert refused.json()["error"] == "Un persona doit etre assigne avant la redaction"

        resp = client.patch(f"/articles/{article.id}", json={"persona_id": persona.id, "title": "Mon titre"})

        assert resp.status_code == 200
        assert resp.json()["persona_id"] == persona.id
        assert resp.json()["title"] == "Mon titre"
        assert client.post(f"/articles/{article.id}/write-block").status_code == 200

    def test_patch_only_sent_fields(self, client, store, article):
        store.update_article(article.id, title="Garde")
        resp = client.patch(f"/articles/{article.id}", json={"status": "reviewing", "search_intent": "review"})
        data = resp.json()
        assert (data["status"], data["search_intent"], data["title"]) == ("reviewing", "review", "Garde")
        assert data["persona_id"] == article.persona_id

    def test_patch_blocks(self, client, article):
        resp = client.patch(f"/articles/{article.id}", json={"content_blocks": [
            {"type": "h2", "heading": "Intro", "content_html": "<p>un deux</p>", "status": "written", "word_count": 2},
        ]})
        assert resp.status_code == 200
        assert resp.json()["content_blocks"][0]["type"] == "h2"
        assert resp.json()["word_count"] == 2

    def test_patch_rejects_unknown_block_type(self, client, article):
        resp = client.patch(f"/articles/{article.id}", json={"content_blocks": [{"type": "video"}]})
        assert resp.status_code == 422
        assert "Type de bloc inconnu" in resp.json()["error"]

    def test_patch_unknown_references(self, client, article):
        assert client.patch(f"/articles/{article.id}", json={"persona_id": "nope"}).json()["error"] == "Persona non trouve"
        assert client.patch(f"/articles/{article.id}", json={"silo_id": "nope"}).json()["error"] == "Silo non trouve"

    def test_patch_missing_article(self, client):
        assert client.patch("/articles/missing", json={"title": "x"}).status_code == 404

    def test_patch_invalid_status(self, client, article):
        assert client.patch(f"/articles/{article.id}", json={"status": "archived"}).status_code == 422

    def test_delete_article(self, client, store, planned):
        assert client.delete(f"/articles/{planned.id}").status_code == 204
        assert client.get(f"/articles/{planned.id}").status_code == 404
        assert store.list_runs(article_id=planned.id) == []
        assert client.delete(f"/articles/{planned.id}").status_code == 404


# ===================================================================
# Sites, personas, nuggets & silos
# ===================================================================


class TestSites:

    def test_create_list_get(self, client):
        resp = client.post("/sites", json={"name": "Jardin", "domain": "jardin.test", "niche": "Jardin"})
        assert resp.status_code == 201
        site_id = resp.json()["id"]
        assert [s["id"] for s in client.get("/sites").json()] == [site_id]
        assert client.get(f"/sites/{site_id}").json()["domain"] == "jardin.test"

    def test_create_requires_name(self, client):
        assert client.post("/sites", json={"name": "", "domain": "x.test"}).status_code == 422

    def test_patch(self, client, site):
        resp = client.patch(f"/sites/{site.id}", json={"theme_color": "#336699"})
        assert resp.json()["theme_color"] == "#336699"
        assert resp.json()["wp_user"] == "editor"

    def test_delete_cascades_to_articles(self, client, article, site):
        assert client.delete(f"/sites/{site.id}").status_code == 204
        assert client.get(f"/sites/{site.id}").status_code == 404
        assert client.get(f"/articles/{article.id}").status_code == 404

    def test_missing_site(self, client):
        assert client.get("/sites/nope").json() == {"error": "Site non trouve"}
        assert client.patch("/sites/nope", json={"name": "x"}).status_code == 404
        assert client.delete("/sites/nope").status_code == 404


class TestPersonas:

    def test_create_and_filter_by_site(self, client, site, store):
        resp = client.post("/personas", json={
            "site_id": site.id, "name": "Marc", "role": "Jardinier",
            "writing_style_examples": [{"text": "On y va !"}],
        })
        assert resp.status_code == 201
        assert resp.json()["writing_style_examples"] == [{"text": "On y va !"}]
        assert len(client.get("/personas", params={"site_id": site.id}).json()) == 1
        assert client.get("/personas", params={"site_id": "other"}).json() == []

    def test_create_for_unknown_site(self, client):
        resp = client.post("/personas", json={"site_id": "nope", "name": "Marc", "role": "Jardinier"})
        assert resp.status_code == 404

    def test_get_patch_delete(self, client, store, persona, article):
        assert client.get(f"/personas/{persona.id}").json()["name"] == "Julie"
        assert client.patch(f"/personas/{persona.id}", json={"bio": "Vingt ans de metier"}).json()["bio"] == (
            "Vingt ans de metier"
        )
        assert client.delete(f"/personas/{persona.id}").status_code == 204
        assert client.get(f"/personas/{persona.id}").status_code == 404
        assert store.get_article(article.id).persona_id is None


class TestNuggets:

    def test_crud(self, client, site):
        resp = client.post("/nuggets", json={"content": "Vider le bac chaque semaine", "site_id": site.id,
                                              "tags": ["entretien"]})
        assert resp.status_code == 201
        nugget_id = resp.json()["id"]
        assert [n["id"] for n in client.get("/nuggets", params={"site_id": site.id}).json()] == [nugget_id]

        patched = client.patch(f"/nuggets/{nugget_id}", json={"tags": ["entretien", "batterie"]})
        assert patched.json()["tags"] == ["entretien", "batterie"]
        assert patched.json()["content"] == "Vider le bac chaque semaine"

        assert client.delete(f"/nuggets/{nugget_id}").status_code == 204
        assert client.get("/nuggets", params={"site_id": site.id}).json() == []
        assert client.patch(f"/nuggets/{nugget_id}", json={"tags": []}).status_code == 404

    def test_content_required(self, client):
        assert client.post("/nuggets", json={"content": ""}).status_code == 422


class TestSilos:

    def test_create_get_patch(self, client, store, site):
        resp = client.post("/silos", json={"site_id": site.id, "name": "Robots"})
        assert resp.status_code == 201
        silo_id = resp.json()["id"]
        article = store.create_article(site.id, "robot laveur", silo_id=silo_id)

        silo = client.get(f"/silos/{silo_id}").json()
        assert silo["name"] == "Robots"
        assert silo["articles"] == [
            {"id": article.id, "keyword": "robot laveur", "title": None, "status": "draft"},
        ]
        assert client.patch(f"/silos/{silo_id}", json={"description": "Pilier"}).json()["description"] == "Pilier"
        assert [s["id"] for s in client.get("/silos", params={"site_id": site.id}).json()] == [silo_id]

    def test_create_for_unknown_site(self, client):
        assert client.post("/silos", json={"site_id": "nope", "name": "Robots"}).status_code == 404

    def test_links(self, client, store, site):
        silo_id = client.post("/silos", json={"site_id": site.id, "name": "Robots"}).json()["id"]
        pillar = store.create_article(site.id, "robot aspirateur", silo_id=silo_id)
        child = store.create_article(site.id, "robot laveur", silo_id=silo_id)

        resp = client.post(f"/silos/{silo_id}/links", json={
            "source_article_id": child.id, "target_article_id": pillar.id, "anchor_text": "robot aspirateur",
        })
        assert resp.status_code == 201
        link = resp.json()
        assert link["silo_id"] == silo_id
        assert link["is_bidirectional"] is False
        assert [x["id"] for x in client.get(f"/silos/{silo_id}/links").json()] == [link["id"]]

        assert client.delete(f"/silos/{silo_id}/links/{link['id']}").status_code == 204
        assert client.get(f"/silos/{silo_id}/links").json() == []
        assert client.delete(f"/silos/{silo_id}/links/{link['id']}").status_code == 404

    def test_link_requires_existing_articles(self, client, site):
        silo_id = client.post("/silos", json={"site_id": site.id, "name": "Robots"}).json()["id"]
        resp = client.post(f"/silos/{silo_id}/links", json={
            "source_article_id": "a", "target_article_id": "b", "anchor_text": "x",
        })
        assert resp.status_code == 404
        assert resp.json()["error"] == "Article non trouve: a"

    def test_delete_detaches_articles(self, client, store, site):
        silo_id = client.post("/silos", json={"site_id": site.id, "name": "Robots"}).json()["id"]
        article = store.create_article(site.id, "robot laveur", silo_id=silo_id)
        assert client.delete(f"/silos/{silo_id}").status_code == 204
        assert client.get(f"/silos/{silo_id}").status_code == 404
        assert client.get(f"/silos/{silo_id}/links").status_code == 404
        assert store.get_article(article.id).silo_id is None


# ===================================================================
# Analytics & refresh
# ===================================================================


class TestAnalytics:

    def test_costs_after_steps(self, client, planned):
        summary = client.get("/analytics/costs").json()
        assert summary["total_runs"] == 2
        assert summary["total_cost_usd"] == pytest.approx(0.0108)

    def test_daily_and_articles(self, client, planned):
        assert len(client.get("/analytics/costs/daily").json()) == 1
        ranked = client.get("/analytics/costs/articles").json()
        assert ranked[0]["article_id"] == planned.id

    def test_budget(self, client, planned):
        alert = client.get("/analytics/budget", params={"monthly_budget_usd": 0.01}).json()
        assert alert["is_alert"] is True
        assert client.get("/analytics/budget").status_code == 422


class TestRefresh:

    def test_scan_and_mark(self, client, store, site):
        article = store.create_article(
            site.id, "robot aspirateur", status="published",
            published_at="2020-01-01T00:00:00+00:00", word_count=500,
        )

        listed = client.get("/refresh/candidates").json()
        assert [c["id"] for c in listed] == [article.id]

        resp = client.post("/refresh/scan", json={"auto_mark": True})
        assert resp.json()["marked"] == 1
        assert store.get_article(article.id).status == "refresh_needed"

    def test_scan_without_mark(self, client, store, site):
        store.create_article(
            site.id, "robot aspirateur", status="published",
            published_at="2020-01-01T00:00:00+00:00",
        )
        resp = client.post("/refresh/scan", json={})
        assert resp.json()["marked"] == 0
        assert len(resp.json()["candidates"]) == 1
