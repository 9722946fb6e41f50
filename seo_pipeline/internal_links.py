"""
Internal links within a silo.

Suggestions come from the silo links already recorded for the article, then
from sibling articles whose keyword the text mentions, padded with untouched
siblings (anchored on their title) up to five and capped at eight.
Injection wraps the first case-insensitive occurrence of each anchor that is
not inside a link, a heading or an image tag.
"""

from __future__ import annotations

import html as html_lib
import re
from typing import Any, Dict, List

from seo_pipeline.content_model import Article, SiloLink

MIN_LINK_SUGGESTIONS = 5
MAX_LINK_SUGGESTIONS = 8

_PROTECTED_TAGS = re.compile(
    r"(<(?:a\b[^>]*>[\s\S]*?</a>|h[1-6]\b[^>]*>[\s\S]*?</h[1-6]>|img\b[^>]*/?>))",
    re.IGNORECASE,
)
_PROTECTED_START = re.compile(r"^<(?:a\b|h[1-6]\b|img\b)", re.IGNORECASE)


def generate_internal_links(
    article: Article,
    content_html: str,
    silo_articles: List[Article],
    silo_links: List[SiloLink],
) -> List[Dict[str, Any]]:
    """
    Link suggestions for ``article`` inside its silo.

    Parameters
    ----------
    article : Article
        The article being optimised.
    content_html : str
        Its current HTML, used for keyword mention matching.
    silo_articles : list of Article
        Every article of the silo (the article itself is skipped).
    silo_links : list of SiloLink
        Recorded links of the silo.

    Returns
    -------
    list of dict
        ``targetArticleId``, ``targetKeyword``, ``targetSlug``, ``anchorText``
        and ``suggested`` (False for recorded links).
    """
    siblings = {a.id: a for a in silo_articles if a.id != article.id}
    content = content_html.lower()
    outgoing = [link for link in silo_links if link.source_article_id == article.id]
    linked_targets = {link.target_article_id for link in outgoing}

    existing: List[Dict[str, Any]] = []
    for link in outgoing:
        target = siblings.get(link.target_article_id)
        if target is None or not target.slug:
            continue
        existing.append(_suggestion(target, link.anchor_text, suggested=False))

    mentioned: List[Dict[str, Any]] = []
    for sibling in siblings.values():
        if not sibling.title or not sibling.slug or sibling.id in linked_targets:
            continue
        if sibling.keyword.lower() in content:
            mentioned.append(_suggestion(sibling, sibling.keyword, suggested=True))

    suggestions = existing + mentioned
    if len(suggestions) > MAX_LINK_SUGGESTIONS:
        remaining = max(0, MAX_LINK_SUGGESTIONS - len(existing))
        return (existing + mentioned[:remaining])[:MAX_LINK_SUGGESTIONS]

    if len(suggestions) < MIN_LINK_SUGGESTIONS:
        taken = {s["targetArticleId"] for s in suggestions}
        for sibling in siblings.values():
            if len(suggestions) >= MIN_LINK_SUGGESTIONS:
                break
            if not sibling.title or not sibling.slug or sibling.id in taken:
                continue
            suggestions.append(_suggestion(sibling, sibling.title, suggested=True))

    return suggestions[:MAX_LINK_SUGGESTIONS]


def _suggestion(target: Article, anchor: str, suggested: bool) -> Dict[str, Any]:
    return {
        "targetArticleId": target.id,
        "targetKeyword": target.keyword,
        "targetSlug": target.slug,
        "anchorText": anchor,
        "suggested": suggested,
    }


def inject_links_into_html(html: str, links: List[Dict[str, str]]) -> str:
    """Link the first unprotected occurrence of each ``anchorText`` to its ``url``."""
    result = html
    for link in links:
        anchor = link.get("anchorText") or ""
        if not anchor:
            continue
        anchor_re = re.compile(f"({re.escape(anchor)})", re.IGNORECASE)
        title = html_lib.escape(anchor, quote=True)
        url = link["url"]

        def replacement(match: re.Match) -> str:
            return f'<a href="{url}" title="{title}">{match.group(1)}</a>'

        segments = _PROTECTED_TAGS.split(result)
        for idx, segment in enumerate(segments):
            if _PROTECTED_START.match(segment) or not anchor_re.search(segment):
                continue
            segments[idx] = anchor_re.sub(replacement, segment, count=1)
            result = "".join(segments)
            break
    return result
