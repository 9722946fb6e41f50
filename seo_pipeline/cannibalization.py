"""
Keyword cannibalization check.

Compares a keyword with the keywords of the other articles on the same site
using trigram similarity (shared trigrams over the union of trigrams, words
padded with two leading blanks and one trailing blank).
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Set

from seo_pipeline.content_model import Article

THRESHOLD_BLOCKING = 0.7
THRESHOLD_WARNING = 0.5
THRESHOLD_NOTICE = 0.3


def trigrams(text: str) -> Set[str]:
    grams: Set[str] = set()
    for word in re.findall(r"[^\W_]+", text.lower()):
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams


def similarity(a: str, b: str) -> float:
    ta, tb = trigrams(a), trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def recommendation_for(max_similarity: float) -> str:
    if max_similarity > THRESHOLD_BLOCKING:
        return (
            "BLOQUANT - Un article tres similaire existe deja. Envisagez de fusionner "
            "les contenus ou de differencier radicalement l'angle."
        )
    if max_similarity > THRESHOLD_WARNING:
        return (
            "ATTENTION - Sujet proche detecte. Assurez-vous de differencier clairement "
            "l'angle editorial et l'intention de recherche."
        )
    if max_similarity > THRESHOLD_NOTICE:
        return (
            "OK - Similitude legere detectee. Veillez a creer des liens internes entre "
            "les articles proches."
        )
    return "OK - Aucun conflit de cannibalisation detecte."


def severity_label(value: float) -> str:
    if value > THRESHOLD_BLOCKING:
        return "high"
    if value > THRESHOLD_WARNING:
        return "medium"
    if value > THRESHOLD_NOTICE:
        return "low"
    return "none"


def check_cannibalization(
    keyword: str,
    site_articles: Iterable[Article],
    exclude_article_id: Optional[str] = None,
    min_similarity: float = THRESHOLD_NOTICE,
) -> Dict[str, Any]:
    """
    Detect articles of the same site targeting a similar keyword.

    Returns
    -------
    dict
        ``hasConflict`` (max similarity above 0.5), ``conflicts`` sorted by
        similarity, ``recommendation`` and ``maxSimilarity``.
    """
    conflicts: List[Dict[str, Any]] = []
    for other in site_articles:
        if other.id == exclude_article_id:
            continue
        score = similarity(keyword, other.keyword)
        if score >= min_similarity:
            conflicts.append({
                "articleId": other.id,
                "keyword": other.keyword,
                "title": other.title,
                "status": other.status,
                "similarity": round(score, 4),
            })
    conflicts.sort(key=lambda c: c["similarity"], reverse=True)
    max_similarity = conflicts[0]["similarity"] if conflicts else 0.0
    return {
        "hasConflict": max_similarity > THRESHOLD_WARNING,
        "conflicts": conflicts,
        "recommendation": recommendation_for(max_similarity),
        "maxSimilarity": max_similarity,
    }
