"""
Schema.org JSON-LD builders: Article, FAQPage, BreadcrumbList and the
``@graph`` wrapper embedded in published posts.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

SCHEMA_CONTEXT = "https://schema.org"

_DETAILS_RE = re.compile(r"<details[^>]*>([\s\S]*?)</details>", re.IGNORECASE)
_SUMMARY_RE = re.compile(r"<summary[^>]*>([\s\S]*?)</summary>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")


def article_schema(
    title: str,
    description: str,
    slug: str,
    site_domain: str,
    persona_name: str,
    persona_role: str,
    published_at: Optional[str],
    updated_at: str,
    word_count: int,
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    article_url = f"https://{site_domain}/{slug}"
    schema: Dict[str, Any] = {
        "@type": "Article",
        "headline": title,
        "description": description,
        "author": {"@type": "Person", "name": persona_name, "jobTitle": persona_role},
        "datePublished": published_at or updated_at,
        "dateModified": updated_at,
        "wordCount": word_count,
        "mainEntityOfPage": {"@type": "WebPage", "@id": article_url},
        "publisher": {
            "@type": "Organization",
            "name": site_domain,
            "url": f"https://{site_domain}",
        },
    }
    if image_url:
        schema["image"] = {"@type": "ImageObject", "url": image_url}
    return schema


def extract_faq_items(html: str) -> List[Tuple[str, str]]:
    """(question, answer) pairs from ``<details><summary>`` markup."""
    items: List[Tuple[str, str]] = []
    for details in _DETAILS_RE.finditer(html):
        inner = details.group(1)
        summary = _SUMMARY_RE.search(inner)
        if not summary:
            continue
        question = _TAG_RE.sub("", summary.group(1)).strip()
        answer = _TAG_RE.sub("", _SUMMARY_RE.sub("", inner, count=1)).strip()
        if question and answer:
            items.append((question, answer))
    return items


def faq_schema(items: List[Tuple[str, str]]) -> Optional[Dict[str, Any]]:
    if not items:
        return None
    return {
        "@type": "FAQPage",
        "mainEntity": [
            {
                "@type": "Question",
                "name": question,
                "acceptedAnswer": {"@type": "Answer", "text": answer},
            }
            for question, answer in items
        ],
    }


def breadcrumb_schema(
    site_domain: str, site_name: str, article_title: str, article_slug: str
) -> Dict[str, Any]:
    """Home > Blog > article."""
    base_url = f"https://{site_domain}"
    trail = [
        (site_name, base_url),
        ("Blog", f"{base_url}/blog"),
        (article_title, f"{base_url}/{article_slug}"),
    ]
    return {
        "@type": "BreadcrumbList",
        "itemListElement": [
            {
                "@type": "ListItem",
                "position": position,
                "name": name,
                "item": {"@type": "WebPage", "@id": url},
            }
            for position, (name, url) in enumerate(trail, start=1)
        ],
    }


def assemble_json_ld(schemas: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"@context": SCHEMA_CONTEXT, "@graph": schemas}
