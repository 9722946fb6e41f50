"""Tests for silo internal link suggestions and HTML injection."""

import pytest

from seo_pipeline.content_model import Article, SiloLink
from seo_pipeline.internal_links import (
    MAX_LINK_SUGGESTIONS,
    MIN_LINK_SUGGESTIONS,
    generate_internal_links,
    inject_links_into_html,
)


def _article(keyword, slug=None, title=None, **fields):
    return Article(site_id="site-1", keyword=keyword, slug=slug, title=title, silo_id="silo-1", **fields)


@pytest.fixture
def current():
    return _article("robot aspirateur", slug="robot-aspirateur", title="Le guide")


@pytest.mark.unit
class TestGenerateInternalLinks:

    def test_recorded_links_first(self, current):
        target = _article("aspirateur balai", "aspirateur-balai", "Balai")
        link = SiloLink(
            silo_id="silo-1", source_article_id=current.id,
            target_article_id=target.id, anchor_text="un balai sans fil",
        )
        suggestions = generate_internal_links(current, "", [current, target], [link])
        assert suggestions == [{
            "targetArticleId": target.id,
            "targetKeyword": "aspirateur balai",
            "targetSlug": "aspirateur-balai",
            "anchorText": "un balai sans fil",
            "suggested": False,
        }]

    def test_mentioned_keyword_is_suggested(self, current):
        target = _article("aspirateur balai", "aspirateur-balai", "Balai")
        suggestions = generate_internal_links(
            current, "<p>Un Aspirateur Balai complete le robot.</p>", [current, target], []
        )
        assert suggestions[0]["anchorText"] == "aspirateur balai"
        assert suggestions[0]["suggested"] is True

    def test_padding_uses_titles(self, current):
        siblings = [_article(f"sujet {i}", f"sujet-{i}", f"Titre {i}") for i in range(7)]
        suggestions = generate_internal_links(current, "", [current, *siblings], [])
        assert len(suggestions) == MIN_LINK_SUGGESTIONS
        assert suggestions[0]["anchorText"] == "Titre 0"

    def test_capped(self, current):
        siblings = [_article(f"sujet {i}", f"sujet-{i}", f"Titre {i}") for i in range(10)]
        content = " ".join(f"sujet {i}" for i in range(10))
        suggestions = generate_internal_links(current, content, [current, *siblings], [])
        assert len(suggestions) == MAX_LINK_SUGGESTIONS

    def test_unpublishable_siblings_skipped(self, current):
        draft = _article("aspirateur balai")
        assert generate_internal_links(current, "aspirateur balai", [current, draft], []) == []


@pytest.mark.unit
class TestInjectLinks:

    def test_first_occurrence_only(self):
        html = "<p>Le robot aspirateur. Un autre robot aspirateur.</p>"
        result = inject_links_into_html(html, [{"anchorText": "robot aspirateur", "url": "https://b.test/r"}])
        assert result.count("<a ") == 1
        assert result.startswith('<p>Le <a href="https://b.test/r" title="robot aspirateur">robot aspirateur</a>.')

    def test_keeps_original_case(self):
        result = inject_links_into_html("<p>Robot Aspirateur</p>", [{"anchorText": "robot aspirateur", "url": "/r"}])
        assert '>Robot Aspirateur</a>' in result

    def test_skips_links_headings_and_images(self):
        html = (
            '<h2>Robot aspirateur</h2><p><a href="/x">robot aspirateur</a></p>'
            '<img alt="robot aspirateur" /><p>Choisir un robot aspirateur</p>'
        )
        result = inject_links_into_html(html, [{"anchorText": "robot aspirateur", "url": "/r"}])
        assert result.startswith('<h2>Robot aspirateur</h2><p><a href="/x">robot aspirateur</a></p><img')
        assert result.endswith('<p>Choisir un <a href="/r" title="robot aspirateur">robot aspirateur</a></p>')

    def test_no_match_unchanged(self):
        html = "<p>Rien a voir</p>"
        assert inject_links_into_html(html, [{"anchorText": "robot", "url": "/r"}, {"anchorText": "", "url": "/x"}]) == html

    def test_backslashes_in_anchor_and_url_are_literal(self):
        html = "<p>Le guide C:\\dossier explique tout.</p>"
        result = inject_links_into_html(html, [{"anchorText": "C:\\dossier", "url": "https://x.fr/a\\1"}])
        assert result == (
            '<p>Le guide <a href="https://x.fr/a\\1" title="C:\\dossier">C:\\dossier</a> explique tout.</p>'
        )
