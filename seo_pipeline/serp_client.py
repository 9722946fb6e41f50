"""
Serper.dev SERP client and competitor insight extraction.

``SerpClient.search`` posts the keyword to https://google.serper.dev/search and
normalises the organic results, "People Also Ask" questions, related searches
and knowledge graph.  ``extract_competitor_insights`` derives title/snippet
statistics and recurring title patterns from the organic results.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp

logger = logging.getLogger("seo_pipeline.serp_client")

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

SERPER_URL = "https://google.serper.dev/search"
DEFAULT_COUNTRY = "fr"
DEFAULT_LANGUAGE = "fr"
DEFAULT_NUM_RESULTS = 10


class SerpError(Exception):
    """Raised when the SERP API call fails."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class SerpNotConfiguredError(SerpError):
    """Raised when no Serper API key is available."""


def extract_domain(url: str) -> str:
    """Hostname of ``url``, or ``url`` itself when it does not parse."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return url
    return host or url


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


class SerpClient:
    """
    Async Serper.dev client.

    Parameters
    ----------
    api_key_resolver : callable
        Returns the API key (environment first, then the configuration
        table) or ``None``; called on every search so a key saved in
        settings is picked up without a restart.
    timeout : int
        Request timeout in seconds.
    """

    def __init__(
        self,
        api_key_resolver: Callable[[], Optional[str]],
        timeout: int = 30,
    ) -> None:
        self._resolve_key = api_key_resolver
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def search(
        self,
        keyword: str,
        gl: str = DEFAULT_COUNTRY,
        hl: str = DEFAULT_LANGUAGE,
        num: int = DEFAULT_NUM_RESULTS,
    ) -> Dict[str, Any]:
        """
        Analyze the SERP for ``keyword``.

        Returns
        -------
        dict
            ``organic``, ``peopleAlsoAsk``, ``relatedSearches``,
            ``searchParameters`` and, when present, ``knowledgeGraph``.

        Raises
        ------
        SerpNotConfiguredError
            If no API key is configured.
        SerpError
            On a non-2xx response or a network failure.
        """
        api_key = self._resolve_key()
        if not api_key:
            raise SerpNotConfiguredError(
                "Cle API Serper non configuree. Configurez-la dans Settings ou "
                "via la variable SERPER_API_KEY."
            )

        session = await self._get_session()
        headers = {"X-API-KEY": api_key, "Content-Type": "application/json"}
        payload = {"q": keyword, "gl": gl, "hl": hl, "num": num}
        try:
            async with session.post(SERPER_URL, json=payload, headers=headers) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise SerpError(
                        f"Serper API returned {resp.status}: {body}. "
                        "Check your API key and quota at https://serper.dev/dashboard.",
                        status_code=resp.status,
                    )
                raw = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise SerpError(f"Serper API unreachable: {exc}") from exc

        logger.info(
            "SERP for %r: %d organic results", keyword, len(raw.get("organic") or [])
        )
        return normalize_serp(raw, keyword, gl, hl)


def normalize_serp(raw: Dict[str, Any], keyword: str, gl: str, hl: str) -> Dict[str, Any]:
    organic = [
        {
            "position": item.get("position") or idx + 1,
            "title": item.get("title") or "",
            "link": item.get("link") or "",
            "snippet": item.get("snippet") or "",
            "domain": extract_domain(item.get("link") or ""),
        }
        for idx, item in enumerate(raw.get("organic") or [])
    ]
    result: Dict[str, Any] = {
        "organic": organic,
        "peopleAlsoAsk": [
            {
                "question": item.get("question") or "",
                "snippet": item.get("snippet") or "",
                "link": item.get("link") or "",
            }
            for item in raw.get("peopleAlsoAsk") or []
        ],
        "relatedSearches": [
            {"query": item.get("query") or ""} for item in raw.get("relatedSearches") or []
        ],
        "searchParameters": {"q": keyword, "gl": gl, "hl": hl},
    }
    graph = raw.get("knowledgeGraph")
    if graph:
        result["knowledgeGraph"] = {
            "title": graph.get("title") or "",
            "type": graph.get("type") or "",
            "description": graph.get("description") or "",
        }
    return result


# ---------------------------------------------------------------------------
# Competitor insights
# ---------------------------------------------------------------------------


def extract_competitor_insights(serp: Dict[str, Any]) -> Dict[str, Any]:
    """Title/snippet statistics, title patterns, top domains and PAA questions."""
    organic: List[Dict[str, Any]] = serp.get("organic") or []

    if organic:
        avg_title = _round_half_up(sum(len(r["title"]) for r in organic) / len(organic))
        avg_snippet = _round_half_up(sum(len(r["snippet"]) for r in organic) / len(organic))
    else:
        avg_title = avg_snippet = 0

    titles = [r["title"].lower() for r in organic]

    def _count(predicate: Callable[[str], bool]) -> int:
        return sum(1 for t in titles if predicate(t))

    patterns: List[str] = []
    if _count(lambda t: re.match(r"^\d+\s", t) is not None) >= 2:
        patterns.append("Listicle (chiffre en debut de titre)")
    if _count(lambda t: "comment" in t or "how to" in t or "guide" in t) >= 2:
        patterns.append("Guide / How-to")
    if _count(lambda t: re.search(r"20\d{2}", t) is not None) >= 2:
        patterns.append("Annee dans le titre (fraicheur)")
    if _count(lambda t: " vs " in t or "comparatif" in t or "comparison" in t) >= 2:
        patterns.append("Comparaison / Versus")
    if _count(
        lambda t: "?" in t or t.startswith(("pourquoi", "qu'est", "what", "why"))
    ) >= 2:
        patterns.append("Question dans le titre")
    if _count(lambda t: "meilleur" in t or "best" in t or "top" in t) >= 2:
        patterns.append("Superlatif (meilleur, top, best)")
    if not patterns:
        patterns.append("Pas de pattern dominant identifie")

    top_domains: List[str] = []
    for r in organic:
        domain = re.sub(r"^www\.", "", r["domain"])
        if domain not in top_domains:
            top_domains.append(domain)
        if len(top_domains) >= 10:
            break

    return {
        "avgTitleLength": avg_title,
        "avgSnippetLength": avg_snippet,
        "commonTitlePatterns": patterns,
        "topDomains": top_domains,
        "paaQuestions": [p["question"] for p in serp.get("peopleAlsoAsk") or []],
    }
