"""
Image generation (fal.ai Flux 2 Pro) and web optimisation.

Images are requested from ``https://fal.run/fal-ai/flux-2-pro`` with a
realism suffix that forbids any text in the picture, downloaded, then resized
to at most 1200 px wide and re-encoded as WebP (quality 80) with Pillow before
upload to WordPress.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp
from PIL import Image

logger = logging.getLogger("seo_pipeline.image_client")

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

FAL_MODEL_URL = "https://fal.run/fal-ai/flux-2-pro"
MAX_WEB_WIDTH = 1200
WEBP_QUALITY = 80

REALISM_SUFFIX = " ".join([
    "Ultra realistic photograph taken with a Canon EOS R5, 35mm lens, f/2.8 aperture.",
    "Natural ambient lighting, shallow depth of field, authentic colors.",
    "ABSOLUTELY NO TEXT, NO LETTERS, NO WORDS, NO NUMBERS, NO CAPTIONS, NO WATERMARKS, "
    "NO LOGOS anywhere in the image.",
    "No overlaid graphics, no UI elements, no infographics, no diagrams.",
    "Real-world scene, candid feel, editorial photography for a premium magazine.",
])

ASPECT_RATIO_SIZES = {
    "1:1": "square",
    "4:3": "landscape_4_3",
    "16:9": "landscape_16_9",
    "3:4": "portrait_4_3",
    "9:16": "portrait_16_9",
}


class ImageGenerationError(Exception):
    """Raised when the image service fails or returns no image."""


@dataclass
class GeneratedImage:
    url: str
    width: int
    height: int


@dataclass
class OptimizedImage:
    content: bytes
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.content)


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def _plain_text(html: str, max_len: int = 300) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]*>", "", html)).strip()[:max_len]


def build_image_prompt(
    keyword: str,
    heading: Optional[str],
    content_html: Optional[str] = None,
    image_hint: Optional[str] = None,
    article_title: Optional[str] = None,
) -> str:
    """Scene description for a section image, grounded in the section text."""
    parts = [f'Editorial photograph for a section about "{heading or keyword}".']
    if content_html:
        text = _plain_text(content_html, 400)
        if len(text) > 30:
            parts.append(f"The section discusses: {text}")
            parts.append(
                "Illustrate the main idea of this text with a concrete, real-world visual scene."
            )
    if image_hint:
        parts.append(f"Visual direction: {image_hint}.")
    if article_title:
        parts.append(f'This is part of an article titled "{article_title}".')
    parts.extend([
        "Create a visually compelling scene that a reader would immediately associate "
        "with this topic.",
        "Focus on ONE clear subject or situation, avoid abstract or generic compositions.",
        "Use real people, objects, or environments relevant to the subject matter.",
        "Photojournalistic style, natural and authentic, not staged or stock-photo looking.",
        "No text, no overlay, no graphic elements, no watermarks.",
    ])
    return " ".join(parts)


def build_hero_prompt(keyword: str, article_title: str) -> str:
    return " ".join([
        f'Wide-angle editorial cover photograph for a premium article about "{keyword}".',
        f'Article title: "{article_title}".',
        f'Cinematic composition with a clear focal point that captures the essence of "{keyword}".',
        "Real environment, authentic atmosphere, golden hour or dramatic natural lighting.",
        "Hero banner format, the image should feel like the opening shot of a documentary.",
        "No text, no overlay, no graphic elements, no watermarks.",
    ])


# ---------------------------------------------------------------------------
# Optimisation
# ---------------------------------------------------------------------------


def optimize_for_web(content: bytes) -> OptimizedImage:
    """Resize to at most 1200 px wide (never enlarge) and encode as WebP."""
    with Image.open(io.BytesIO(content)) as img:
        img = img.convert("RGB")
        if img.width > MAX_WEB_WIDTH:
            height = round(img.height * MAX_WEB_WIDTH / img.width)
            img = img.resize((MAX_WEB_WIDTH, height), Image.LANCZOS)
        buffer = io.BytesIO()
        img.save(buffer, format="WEBP", quality=WEBP_QUALITY)
        return OptimizedImage(content=buffer.getvalue(), width=img.width, height=img.height)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ImageClient:
    """
    fal.ai client.

    Parameters
    ----------
    api_key_resolver : callable
        Returns ``FAL_KEY`` (environment, then configuration table) or None.
    timeout : int
        Generation timeout in seconds; Flux renders take tens of seconds.
    """

    def __init__(self, api_key_resolver: Callable[[], Optional[str]], timeout: int = 120):
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

    async def generate(self, prompt: str, aspect_ratio: str = "16:9") -> GeneratedImage:
        """
        Render ``prompt`` with Flux 2 Pro.

        Raises
        ------
        ImageGenerationError
            When FAL_KEY is missing, the call fails or no image comes back.
        """
        api_key = self._resolve_key()
        if not api_key:
            raise ImageGenerationError(
                "FAL_KEY non configure: generation d'images indisponible."
            )
        payload: Dict[str, Any] = {
            "prompt": f"{prompt}. {REALISM_SUFFIX}",
            "image_size": ASPECT_RATIO_SIZES.get(aspect_ratio, "landscape_16_9"),
            "output_format": "jpeg",
            "safety_tolerance": "5",
        }
        session = await self._get_session()
        try:
            async with session.post(
                FAL_MODEL_URL,
                json=payload,
                headers={"Authorization": f"Key {api_key}"},
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise ImageGenerationError(
                        f"Erreur lors de la generation d'image : HTTP {resp.status} {body[:200]}"
                    )
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise ImageGenerationError(
                f"Erreur lors de la generation d'image : {exc}"
            ) from exc

        images = data.get("images") or []
        if not images or not images[0].get("url"):
            raise ImageGenerationError("Aucune image retournee par le modele")
        image = images[0]
        return GeneratedImage(
            url=image["url"],
            width=image.get("width") or 1200,
            height=image.get("height") or 675,
        )

    async def download(self, url: str) -> bytes:
        session = await self._get_session()
        try:
            async with session.get(url) as resp:
                if resp.status >= 400:
                    raise ImageGenerationError(
                        f"Telechargement de l'image impossible: HTTP {resp.status}"
                    )
                return await resp.read()
        except aiohttp.ClientError as exc:
            raise ImageGenerationError(f"Telechargement de l'image impossible: {exc}") from exc

    async def generate_optimized(
        self, prompt: str, aspect_ratio: str = "16:9"
    ) -> OptimizedImage:
        """Generate, download and optimise in one call."""
        image = await self.generate(prompt, aspect_ratio)
        raw = await self.download(image.url)
        optimized = optimize_for_web(raw)
        logger.info(
            "Image ready: %dx%d, %d bytes", optimized.width, optimized.height, optimized.size
        )
        return optimized
