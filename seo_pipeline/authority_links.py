"""
Authority link suggestions for the plan step.

Authoritative pages (encyclopedias, public institutions, research
publishers, national press) are picked from the article's SERP, topped up by a
targeted search when fewer than two turn up, HEAD-checked, then ranked by the
``evaluate_authority_links`` AI task.  The editor selects one afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from seo_pipeline.prompts import build_authority_evaluation_prompt, extract_json_from_response
from seo_pipeline.serp_client import SerpClient, extract_domain

logger = logging.getLogger("seo_pipeline.authority_links")

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

AUTHORITY_PATTERNS = (
    "wikipedia.org", "gouv.fr", "service-public.fr",
    ".edu", "who.int", "europa.eu", "legifrance.gouv.fr",
    "insee.fr", "has-sante.fr", "ademe.fr",
    "nature.com", "sciencedirect.com", "springer.com",
    "lemonde.fr", "lefigaro.fr",
)
MIN_CANDIDATES = 2
MAX_CHECKED = 5
HEAD_TIMEOUT = 5  # seconds


def is_authority_url(url: str) -> bool:
    return any(pattern in url for pattern in AUTHORITY_PATTERNS)


def collect_candidates(
    organic: Sequence[Dict[str, Any]], exclude_urls: Sequence[str] = ()
) -> List[Dict[str, Any]]:
    """Authoritative organic results as ``{url, title, domain, snippet}``."""
    seen = set(exclude_urls)
    candidates: List[Dict[str, Any]] = []
    for result in organic:
        url = result.get("link") or ""
        if not url or url in seen or not is_authority_url(url):
            continue
        seen.add(url)
        candidates.append({
            "url": url,
            "title": result.get("title") or "",
            "domain": result.get("domain") or extract_domain(url),
            "snippet": result.get("snippet") or "",
        })
    return candidates


def parse_selections(
    payload: Any, candidates: Sequence[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Map the model's ``selections`` onto checked candidates, ignoring bad indexes."""
    if not isinstance(payload, dict):
        return []
    suggestions: List[Dict[str, Any]] = []
    for selection in payload.get("selections") or []:
        index = selection.get("index") if isinstance(selection, dict) else None
        if not isinstance(index, int) or not 0 <= index < len(candidates):
            continue
        chosen = candidates[index]
        suggestions.append({
            "url": chosen["url"],
            "title": chosen["title"],
            "domain": chosen["domain"],
            "snippet": chosen["snippet"],
            "rationale": selection.get("rationale") or "",
            "anchor_context": selection.get("anchor_context") or "",
            "is_valid": chosen.get("is_valid", False),
            "selected": False,
        })
    return suggestions


class AuthorityLinkFinder:
    """
    Suggest two or three external sources for an article.

    Parameters
    ----------
    serp : SerpClient
        Used for the supplementary query.
    router : AIRouter
        Runs ``evaluate_authority_links``.
    """

    def __init__(self, serp: SerpClient, router: Any, timeout: int = HEAD_TIMEOUT) -> None:
        self._serp = serp
        self._router = router
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

    async def check_url(self, url: str) -> bool:
        """HEAD request, following redirects; 2xx/3xx counts as valid."""
        session = await self._get_session()
        try:
            async with session.head(url, allow_redirects=True) as resp:
                return 200 <= resp.status < 400
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def suggest(
        self, keyword: str, organic: Sequence[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Returns
        -------
        dict
            ``suggestions`` plus the token usage of the evaluation call
            (``tokens_in``, ``tokens_out``, ``cost_usd``).
        """
        result: Dict[str, Any] = {
            "suggestions": [], "tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0,
        }
        candidates = collect_candidates(organic)

        if len(candidates) < MIN_CANDIDATES:
            query = f'"{keyword}" etude OR statistiques OR officiel'
            try:
                supplementary = await self._serp.search(query, num=10)
                candidates += collect_candidates(
                    supplementary.get("organic") or [],
                    exclude_urls=[c["url"] for c in candidates],
                )
            except Exception as exc:
                logger.warning("Supplementary authority search failed: %s", exc)

        if not candidates:
            return result

        checked = candidates[:MAX_CHECKED]
        validity = await asyncio.gather(*(self.check_url(c["url"]) for c in checked))
        for candidate, is_valid in zip(checked, validity):
            candidate["is_valid"] = is_valid

        prompt = build_authority_evaluation_prompt(keyword, checked)
        response = await self._router.route(
            "evaluate_authority_links", [{"role": "user", "content": prompt}]
        )
        result["tokens_in"] = response.tokens_in
        result["tokens_out"] = response.tokens_out
        result["cost_usd"] = self._router.cost_of(response)
        result["suggestions"] = parse_selections(
            extract_json_from_response(response.content), checked
        )
        logger.info(
            "Authority links for '%s': %d candidates, %d selected",
            keyword, len(checked), len(result["suggestions"]),
        )
        return result
