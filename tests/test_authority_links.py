"""Tests for authority link collection, HEAD checks and AI selection."""

import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from seo_pipeline.ai_router import MODEL_GEMINI_2_FLASH, AIRouter, estimate_cost
from seo_pipeline.authority_links import (
    MAX_CHECKED,
    AuthorityLinkFinder,
    collect_candidates,
    is_authority_url,
    parse_selections,
)

SUPPLEMENTARY = {
    "organic": [
        {"title": "Etude ADEME", "link": "https://www.ademe.fr/etude-robots", "snippet": "Chiffres."},
        {"title": "Blog", "link": "https://blog.test/robots", "snippet": "Avis."},
        {"title": "Doublon", "link": "https://fr.wikipedia.org/wiki/Robot_aspirateur"},
    ],
}


def _finder(make_provider, serp, replies):
    provider = make_provider("google", replies=replies)
    router = AIRouter({"google": provider}, retry_delays=(0, 0), sleep=AsyncMock())
    finder = AuthorityLinkFinder(serp, router)
    finder.check_url = AsyncMock(return_value=True)
    return finder, provider


# ===================================================================
# Candidates
# ===================================================================


@pytest.mark.unit
class TestCandidates:

    def test_authority_patterns(self):
        assert is_authority_url("https://www.service-public.fr/particuliers")
        assert is_authority_url("https://cs.stanford.edu/paper")
        assert not is_authority_url("https://www.lesnumeriques.com/robot")

    def test_collect_from_sample_serp(self, sample_serp):
        candidates = collect_candidates(sample_serp["organic"])
        assert candidates == [{
            "url": "https://fr.wikipedia.org/wiki/Robot_aspirateur",
            "title": "Robot aspirateur - Wikipedia",
            "domain": "fr.wikipedia.org",
            "snippet": "Un robot aspirateur est un appareil.",
        }]

    def test_collect_excludes_and_derives_domain(self):
        candidates = collect_candidates(
            SUPPLEMENTARY["organic"],
            exclude_urls=["https://fr.wikipedia.org/wiki/Robot_aspirateur"],
        )
        assert [c["domain"] for c in candidates] == ["www.ademe.fr"]


@pytest.mark.unit
class TestParseSelections:

    CANDIDATES = [
        {"url": "https://a.gouv.fr", "title": "A", "domain": "a.gouv.fr", "snippet": "", "is_valid": True},
        {"url": "https://b.insee.fr", "title": "B", "domain": "b.insee.fr", "snippet": ""},
    ]

    def test_bad_indexes_ignored(self):
        payload = {"selections": [
            {"index": 1, "rationale": "Chiffres officiels", "anchor_context": "Selon l'INSEE"},
            {"index": 5},
            {"index": "0"},
            "pas un objet",
        ]}
        suggestions = parse_selections(payload, self.CANDIDATES)
        assert len(suggestions) == 1
        assert suggestions[0]["url"] == "https://b.insee.fr"
        assert suggestions[0]["rationale"] == "Chiffres officiels"
        assert suggestions[0]["is_valid"] is False
        assert suggestions[0]["selected"] is False

    def test_not_a_dict(self):
        assert parse_selections(None, self.CANDIDATES) == []
        assert parse_selections([{"index": 0}], self.CANDIDATES) == []


# ===================================================================
# Finder
# ===================================================================


class TestAuthorityLinkFinder:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_supplementary_search_when_few_candidates(self, make_provider, make_serp, sample_serp):
        serp = make_serp(result=SUPPLEMENTARY)
        reply = json.dumps({"selections": [{"index": 1, "rationale": "r", "anchor_context": "c"}]})
        finder, provider = _finder(make_provider, serp, [reply])

        result = await finder.suggest("robot aspirateur", sample_serp["organic"])

        assert serp.queries == ['"robot aspirateur" etude OR statistiques OR officiel']
        assert finder.check_url.await_count == 2
        assert [s["url"] for s in result["suggestions"]] == ["https://www.ademe.fr/etude-robots"]
        assert result["suggestions"][0]["is_valid"] is True
        assert provider.calls[0]["config"].model == MODEL_GEMINI_2_FLASH
        assert (result["tokens_in"], result["tokens_out"]) == (1000, 500)
        assert result["cost_usd"] == pytest.approx(estimate_cost(1000, 500, MODEL_GEMINI_2_FLASH))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_candidates_skips_ai(self, make_provider, make_serp):
        serp = make_serp(result={"organic": []})
        finder, provider = _finder(make_provider, serp, [])

        result = await finder.suggest("robot aspirateur", [])

        assert result == {"suggestions": [], "tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0}
        assert provider.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_supplementary_search_failure_is_tolerated(self, make_provider, make_serp, sample_serp):
        serp = make_serp(error=RuntimeError("quota"))
        finder, provider = _finder(make_provider, serp, ['{"selections": [{"index": 0}]}'])

        result = await finder.suggest("robot aspirateur", sample_serp["organic"])

        assert [s["domain"] for s in result["suggestions"]] == ["fr.wikipedia.org"]
        assert len(provider.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checks_are_capped(self, make_provider, make_serp):
        organic = [{"title": f"T{i}", "link": f"https://site{i}.gouv.fr"} for i in range(8)]
        finder, _ = _finder(make_provider, make_serp(result={}), ['{"selections": []}'])

        await finder.suggest("robot", organic)

        assert finder.check_url.await_count == MAX_CHECKED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_url_status(self, make_serp, mock_aiohttp_session, mock_aiohttp_response):
        finder = AuthorityLinkFinder(make_serp(), router=None)
        mock_aiohttp_session.head.return_value = mock_aiohttp_response(301)

        with patch.object(finder, "_get_session", return_value=mock_aiohttp_session):
            assert await finder.check_url("https://insee.fr") is True
            mock_aiohttp_session.head.return_value = mock_aiohttp_response(404)
            assert await finder.check_url("https://insee.fr") is False

        mock_aiohttp_session.head.assert_called_with("https://insee.fr", allow_redirects=True)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_url_network_error(self, make_serp, mock_aiohttp_session):
        finder = AuthorityLinkFinder(make_serp(), router=None)
        mock_aiohttp_session.head.side_effect = aiohttp.ClientConnectionError("down")

        with patch.object(finder, "_get_session", return_value=mock_aiohttp_session):
            assert await finder.check_url("https://insee.fr") is False
