"""
Competitor content scraper.

Fetches the top organic results through the Jina Reader proxy
(``https://r.jina.ai/<url>``, markdown output, no key required), then derives
heading trees, word counts, TF-IDF keywords across pages and the H2 headings
competitors share.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger("seo_pipeline.competitor_scraper")

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

JINA_READER_URL = "https://r.jina.ai/"
SCRAPE_TIMEOUT = 15  # seconds
MAX_COMPETITORS = 5
DELAY_BETWEEN_SCRAPES = 1.0  # seconds
TOP_TERMS = 50

STOP_WORDS_FR = frozenset("""
le la les un une des de du au aux ce ces cette et ou en dans pour par sur avec
sans est sont a ont etre avoir faire dire plus pas ne se que qui quoi dont il
elle ils elles nous vous je tu on son sa ses leur leurs mon ma mes ton ta tes
notre votre tout tous toute toutes autre autres meme aussi bien tres peut fait
comme mais donc car si ni entre ici encore ainsi alors depuis avant apres peu
sous chez vers lors chaque quelque plusieurs
""".split())

STOP_WORDS_EN = frozenset("""
the a an and or but in on at to for of with by from is are was were be been
being have has had do does did will would could should may might must shall
can not no it its this that these those he she they we you i me him her us
them my your his our their what which who whom where when how why all each
every both few more most other some such than too very just about above after
again also any because before between down during here into only out over same
so then there through under up while get got one two
""".split())

STOP_WORDS = STOP_WORDS_FR | STOP_WORDS_EN


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class HeadingNode:
    level: int
    text: str
    children: List[HeadingNode] = field(default_factory=list)


@dataclass
class CompetitorPage:
    url: str
    domain: str
    title: str
    scrape_success: bool
    markdown: Optional[str] = None
    word_count: int = 0
    headings: List[HeadingNode] = field(default_factory=list)


@dataclass
class CompetitorContentAnalysis:
    pages: List[CompetitorPage]
    avg_word_count: int = 0
    common_headings: List[str] = field(default_factory=list)
    tfidf_keywords: List[Dict[str, Any]] = field(default_factory=list)
    scraped_count: int = 0
    total_count: int = 0

    def summary(self) -> Dict[str, Any]:
        """Compact form stored on the article (no page markdown)."""
        return {
            "avgWordCount": self.avg_word_count,
            "commonHeadings": self.common_headings,
            "tfidfKeywords": self.tfidf_keywords,
            "scrapedCount": self.scraped_count,
            "totalCount": self.total_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Markdown analysis
# ---------------------------------------------------------------------------


def extract_heading_structure(markdown: str) -> List[HeadingNode]:
    """Parse markdown ``#`` headings into a tree."""
    root: List[HeadingNode] = []
    stack: List[HeadingNode] = []
    for line in markdown.split("\n"):
        match = re.match(r"^(#{1,6})\s+(.+)$", line)
        if not match:
            continue
        node = HeadingNode(
            level=len(match.group(1)),
            text=re.sub(r"[#*_`\[\]]", "", match.group(2)).strip(),
        )
        while stack and stack[-1].level >= node.level:
            stack.pop()
        if stack:
            stack[-1].children.append(node)
        else:
            root.append(node)
        stack.append(node)
    return root


def flatten_headings(nodes: List[HeadingNode], level: int) -> List[str]:
    """Every heading text at ``level`` in document order."""
    result: List[str] = []
    for node in nodes:
        if node.level == level:
            result.append(node.text)
        result.extend(flatten_headings(node.children, level))
    return result


def count_words_from_markdown(markdown: str) -> int:
    text = re.sub(r"```[\s\S]*?```", "", markdown)
    text = re.sub(r"`[^`]*`", "", text)
    text = re.sub(r"!\[.*?\]\(.*?\)", "", text)
    text = re.sub(r"\[([^\]]*)\]\(.*?\)", r"\1", text)
    text = re.sub(r"#{1,6}\s+", "", text)
    text = re.sub(r"[*_~`>|]", "", text)
    text = re.sub(r"[-=]{3,}", "", text)
    return len(text.split())


def tokenize(text: str) -> List[str]:
    """Lowercase words of 3+ characters, accents kept, stop words removed."""
    cleaned = re.sub(r"[^a-zA-Z0-9À-ɏ\s-]", " ", text.lower())
    return [w for w in cleaned.split() if len(w) >= 3 and w not in STOP_WORDS]


def compute_tfidf(documents: List[str], top_n: int = TOP_TERMS) -> List[Dict[str, Any]]:
    """Average TF-IDF per term across ``documents``, best ``top_n`` first.

    ``idf = log(1 + N / df)``; each document contributes ``tf * idf / N``.
    """
    if not documents:
        return []
    n_docs = len(documents)
    doc_tokens = [tokenize(doc) for doc in documents]

    df: Counter = Counter()
    for tokens in doc_tokens:
        df.update(set(tokens))

    scores: Dict[str, float] = {}
    for tokens in doc_tokens:
        if not tokens:
            continue
        total = len(tokens)
        for term, count in Counter(tokens).items():
            idf = math.log(1 + n_docs / df[term])
            scores[term] = scores.get(term, 0.0) + (count / total) * idf / n_docs

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:top_n]
    return [{"term": term, "tfidf": score, "df": df[term]} for term, score in ranked]


def summarize_pages(pages: List[CompetitorPage]) -> CompetitorContentAnalysis:
    """Aggregate scraped pages into TF-IDF keywords, common H2s and averages."""
    ok = [p for p in pages if p.scrape_success and p.markdown]
    analysis = CompetitorContentAnalysis(
        pages=pages, scraped_count=len(ok), total_count=len(pages)
    )
    if not ok:
        return analysis

    analysis.tfidf_keywords = compute_tfidf([p.markdown for p in ok])

    h2_counts: Counter = Counter()
    for page in ok:
        h2_counts.update({h.lower().strip() for h in flatten_headings(page.headings, 2)})
    analysis.common_headings = [
        heading
        for heading, count in h2_counts.most_common()
        if count >= 2 or len(ok) <= 2
    ]
    analysis.avg_word_count = int(sum(p.word_count for p in ok) / len(ok) + 0.5)
    return analysis


# ---------------------------------------------------------------------------
# Scraper
# ---------------------------------------------------------------------------


class CompetitorScraper:
    """Sequential, rate-limited scraping of competitor pages."""

    def __init__(
        self,
        timeout: int = SCRAPE_TIMEOUT,
        delay: float = DELAY_BETWEEN_SCRAPES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.delay = delay
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "text/markdown"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def scrape(self, url: str) -> str:
        session = await self._get_session()
        async with session.get(f"{JINA_READER_URL}{url}") as resp:
            if resp.status >= 400:
                raise RuntimeError(f"Jina scrape failed: {resp.status} {resp.reason}")
            return await resp.text()

    async def analyze(
        self, organic: List[Dict[str, Any]], own_domain: Optional[str] = None
    ) -> CompetitorContentAnalysis:
        """Scrape the top organic results (own domain excluded) and summarise."""
        targets = [
            r for r in organic if not own_domain or own_domain not in r.get("domain", "")
        ][:MAX_COMPETITORS]

        pages: List[CompetitorPage] = []
        for idx, target in enumerate(targets):
            page = CompetitorPage(
                url=target["link"],
                domain=target.get("domain", ""),
                title=target.get("title", ""),
                scrape_success=False,
            )
            try:
                markdown = await self.scrape(target["link"])
                page.scrape_success = True
                page.markdown = markdown
                page.word_count = count_words_from_markdown(markdown)
                page.headings = extract_heading_structure(markdown)
            except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as exc:
                logger.warning("Scrape failed for %s: %s", target["link"], exc)
            pages.append(page)

            if idx < len(targets) - 1:
                await self._sleep(self.delay)

        analysis = summarize_pages(pages)
        logger.info(
            "Competitor analysis: %d/%d pages scraped, avg %d words",
            analysis.scraped_count, analysis.total_count, analysis.avg_word_count,
        )
        return analysis
