"""
WordPress REST API client used by the media and publish steps.

Publishes article drafts, uploads generated images to the media library and
maintains categories on one site through the WP REST API v2, authenticating
with an application password (Basic auth).

Usage:
    from seo_pipeline.wordpress_client import SiteConfig, WordPressClient

    async with WordPressClient(SiteConfig.from_site(site)) as wp:
        post = await wp.create_post("Titre", "<p>...</p>", status="draft")
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from seo_pipeline.content_model import Site

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("seo_pipeline.wordpress_client")

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

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
WP_MAX_PER_PAGE = 100

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WordPressError(Exception):
    """Base exception for WordPress API errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(WordPressError):
    """Raised on 401/403 responses."""


class NotFoundError(WordPressError):
    """Raised on 404 responses."""


class RateLimitError(WordPressError):
    """Raised on 429 responses after all retries exhausted."""


class SiteNotConfiguredError(WordPressError):
    """Raised when a site lacks credentials."""


# ---------------------------------------------------------------------------
# SiteConfig
# ---------------------------------------------------------------------------


@dataclass
class SiteConfig:
    """Connection settings for a single WordPress site."""

    wp_url: str
    site_name: str = ""
    wp_user: str = ""
    app_password: str = ""

    @classmethod
    def from_site(cls, site: Site) -> SiteConfig:
        return cls(
            wp_url=site.wp_url or f"https://{site.domain}",
            site_name=site.name,
            wp_user=site.wp_user,
            app_password=site.wp_app_password,
        )

    @property
    def api_url(self) -> str:
        """WP REST API v2 base URL."""
        return f"{self.wp_url.rstrip('/')}/wp-json/wp/v2"

    @property
    def auth_header(self) -> str:
        """Base64-encoded Basic auth header value."""
        if not self.wp_user or not self.app_password:
            return ""
        credentials = f"{self.wp_user}:{self.app_password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        return bool(self.wp_url and self.wp_user and self.app_password)

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"SiteConfig({self.site_name!r}, {self.wp_url!r}, {configured})"


def build_seo_meta(title: str, description: str, focus_keyword: str) -> Dict[str, str]:
    """Post meta understood by both Yoast SEO and RankMath."""
    return {
        "_yoast_wpseo_title": title,
        "rank_math_title": title,
        "_yoast_wpseo_metadesc": description,
        "rank_math_description": description,
        "_yoast_wpseo_focuskw": focus_keyword,
        "rank_math_focus_keyword": focus_keyword,
    }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class WordPressClient:
    """
    Async WordPress REST API client for a single site.

    Parameters
    ----------
    config : SiteConfig
        Site URL and credentials.
    timeout : int
        Request timeout in seconds. Default 30.
    """

    def __init__(self, config: SiteConfig, timeout: int = 30):
        self.config = config
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._categories_cache: Optional[List[Dict[str, Any]]] = None

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": "SEO-Pipeline/1.0",
                "Accept": "application/json",
            }
            if self.config.auth_header:
                headers["Authorization"] = self.config.auth_header

            connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
            timeout_config = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                headers=headers,
                connector=connector,
                timeout=timeout_config,
            )
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Core HTTP methods with retry ---------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any, Dict[str, str]]:
        """
        Make an HTTP request with exponential backoff retry on transient errors.

        Returns
        -------
        tuple of (status_code, response_json_or_text, response_headers)

        Raises
        ------
        SiteNotConfiguredError
            When the site has no URL or application password.
        AuthenticationError
            On 401 or 403 responses.
        NotFoundError
            On 404 responses.
        RateLimitError
            On 429 after all retries exhausted.
        WordPressError
            On other non-2xx responses after retries.
        """
        if not self.config.is_configured:
            raise SiteNotConfiguredError(
                f"WordPress non configure pour le site {self.config.site_name!r}: "
                f"URL, utilisateur ou mot de passe d'application manquant."
            )

        session = await self._get_session()
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES + 1):
            try:
                logger.debug(
                    "API %s %s (attempt %d/%d)",
                    method.upper(), url, attempt + 1, MAX_RETRIES + 1,
                )

                kwargs: Dict[str, Any] = {}
                if json_data is not None:
                    kwargs["json"] = json_data
                if data is not None:
                    kwargs["data"] = data
                if headers is not None:
                    kwargs["headers"] = headers
                if params is not None:
                    kwargs["params"] = {k: v for k, v in params.items() if v is not None}

                async with session.request(method, url, **kwargs) as resp:
                    status = resp.status
                    resp_headers = dict(resp.headers)

                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError):
                        body = await resp.text()

                    if status == 401 or status == 403:
                        raise AuthenticationError(
                            f"Authentification WordPress refusee ({self.config.wp_url}): "
                            f"HTTP {status}",
                            status_code=status,
                            response_body=str(body),
                        )

                    if status == 404:
                        raise NotFoundError(
                            f"Ressource WordPress introuvable: {url}",
                            status_code=404,
                            response_body=str(body),
                        )

                    if status in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        delay = RETRY_BASE_DELAY * (2 ** attempt)
                        retry_after = resp_headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                        logger.warning(
                            "Retryable error %d from %s, retrying in %.1fs",
                            status, url, delay,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if status == 429:
                        raise RateLimitError(
                            f"Limite de requetes atteinte sur {self.config.wp_url} "
                            f"apres {MAX_RETRIES} tentatives",
                            status_code=429,
                            response_body=str(body),
                        )

                    if status >= 400:
                        error_msg = body
                        if isinstance(body, dict):
                            error_msg = body.get("message", str(body))
                        raise WordPressError(
                            f"WordPress API error: {status} {error_msg}",
                            status_code=status,
                            response_body=str(body),
                        )

                    return status, body, resp_headers

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                if attempt < MAX_RETRIES:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Network error on %s (%s), retrying in %.1fs: %s",
                        url, type(exc).__name__, delay, str(exc),
                    )
                    await asyncio.sleep(delay)
                else:
                    raise WordPressError(
                        f"Erreur reseau apres {MAX_RETRIES} tentatives "
                        f"({self.config.wp_url}): {exc}"
                    ) from exc

        raise WordPressError(f"Request failed after {MAX_RETRIES} retries: {last_error}")

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.config.api_url}/{endpoint}"
        _, body, _ = await self._request("GET", url, params=params)
        return body

    async def _post(
        self,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.config.api_url}/{endpoint}"
        _, body, _ = await self._request(
            "POST", url, json_data=json_data, data=data, headers=headers
        )
        return body

    # -----------------------------------------------------------------------
    # Posts
    # -----------------------------------------------------------------------

    async def create_post(
        self,
        title: str,
        content: str,
        status: str = "draft",
        categories: Optional[List[int]] = None,
        meta: Optional[Dict[str, Any]] = None,
        slug: Optional[str] = None,
        excerpt: Optional[str] = None,
        featured_media: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create a new WordPress post.

        Parameters
        ----------
        title : str
            Post title.
        content : str
            Post content (HTML).
        status : str
            One of: draft, publish, future, pending, private.
        categories : list of int, optional
            Category IDs to assign.
        meta : dict, optional
            Post meta fields (SEO plugin keys).
        slug : str, optional
            URL slug.
        excerpt : str, optional
            Post excerpt.
        featured_media : int, optional
            Media ID for the featured image.

        Returns
        -------
        dict
            Full post object from the API including id, link, status, etc.
        """
        payload: Dict[str, Any] = {"title": title, "content": content, "status": status}
        if categories:
            payload["categories"] = categories
        if meta:
            payload["meta"] = meta
        if slug:
            payload["slug"] = slug
        if excerpt:
            payload["excerpt"] = excerpt
        if featured_media is not None:
            payload["featured_media"] = featured_media

        result = await self._post("posts", json_data=payload)
        logger.info(
            "Created post %s on %s: %s (status=%s)",
            result.get("id"), self.config.site_name, title[:60], status,
        )
        return result

    async def update_post(self, post_id: int, **kwargs) -> Dict[str, Any]:
        """Update an existing post with any valid post fields."""
        payload = {k: v for k, v in kwargs.items() if v is not None}
        result = await self._post(f"posts/{post_id}", json_data=payload)
        logger.info(
            "Updated post %d on %s: fields=%s",
            post_id, self.config.site_name, list(payload.keys()),
        )
        return result

    # -----------------------------------------------------------------------
    # Media
    # -----------------------------------------------------------------------

    async def upload_media(
        self,
        content: bytes,
        filename: str,
        mime_type: str = "image/webp",
        alt_text: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload raw bytes to the media library.

        Parameters
        ----------
        content : bytes
            File content.
        filename : str
            Name given to the attachment.
        mime_type : str
            Content type of ``content``.
        alt_text, caption : str, optional
            Written to the attachment in a follow-up update.

        Returns
        -------
        dict
            Media object with keys: id, source_url, alt_text, etc.
        """
        url = f"{self.config.api_url}/media"
        upload_headers = {
            "Content-Type": mime_type,
            "Content-Disposition": f'attachment; filename="{filename}"',
        }
        _, result, _ = await self._request("POST", url, data=content, headers=upload_headers)

        media_id = result.get("id")
        logger.info(
            "Uploaded media %s to %s: id=%s, url=%s",
            filename, self.config.site_name, media_id, result.get("source_url", ""),
        )

        update_fields: Dict[str, Any] = {}
        if alt_text is not None:
            update_fields["alt_text"] = alt_text
        if caption is not None:
            update_fields["caption"] = caption
        if update_fields and media_id:
            await self._post(f"media/{media_id}", json_data=update_fields)
        return result

    # -----------------------------------------------------------------------
    # Categories
    # -----------------------------------------------------------------------

    async def get_categories(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        """All categories of the site, cached for the client's lifetime."""
        if self._categories_cache is not None and not force_refresh:
            return self._categories_cache

        all_categories: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._get(
                "categories", params={"per_page": WP_MAX_PER_PAGE, "page": page}
            )
            if not isinstance(batch, list) or len(batch) == 0:
                break
            all_categories.extend(batch)
            if len(batch) < WP_MAX_PER_PAGE:
                break
            page += 1

        self._categories_cache = all_categories
        return all_categories

    async def create_category(self, name: str) -> Dict[str, Any]:
        result = await self._post("categories", json_data={"name": name})
        self._categories_cache = None
        logger.info("Created category '%s' (id=%s)", name, result.get("id"))
        return result

    async def ensure_category(self, name: str) -> Dict[str, Any]:
        """Get a category by name (case-insensitive), creating it if missing."""
        categories = await self.get_categories()
        name_lower = name.lower().strip()
        for cat in categories:
            cat_name = cat.get("name", "")
            if isinstance(cat_name, dict):
                cat_name = cat_name.get("rendered", "")
            if cat_name.lower().strip() == name_lower:
                return cat
        return await self.create_category(name)

    def __repr__(self) -> str:
        return f"WordPressClient({self.config!r})"
