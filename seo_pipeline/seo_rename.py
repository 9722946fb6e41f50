"""
SEO file names and alt texts for generated images.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

MAX_FILENAME_LENGTH = 50
MAX_ALT_LENGTH = 125

_KEY_TERM_STOP_WORDS = frozenset("""
le la les un une des de du au aux et ou en pour par sur avec sans dans ce ces
cette son sa ses mon ma mes qui que quoi dont comment pourquoi quel quelle est
sont a the and or for how what your notre votre nos vos leur leurs tout tous
plus pas ne se il elle ils elles on bien tres aussi meme entre avant apres
""".split())


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def sanitize_filename(text: str) -> str:
    """Lowercase, accent-free, hyphen-separated slug of at most 50 chars."""
    slug = _strip_accents(text.lower())
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug[:MAX_FILENAME_LENGTH].rstrip("-")


def _key_terms(text: str, max_words: int = 3) -> str:
    words = re.sub(r"[^a-z0-9\s]", " ", _strip_accents(text.lower())).split()
    kept = [w for w in words if len(w) >= 3 and w not in _KEY_TERM_STOP_WORDS]
    return "-".join(kept[:max_words])


def generate_seo_filename(keyword: str, heading: Optional[str], image_type: str) -> str:
    """``{keyword}.webp`` for heroes, ``{keyword}-{heading terms}.webp`` for sections."""
    keyword_slug = sanitize_filename(keyword)[:30].rstrip("-")
    if image_type == "hero":
        return f"{keyword_slug}.webp"

    terms = _key_terms(heading) if heading else ""
    if not terms:
        return f"{keyword_slug}.webp"
    base = f"{keyword_slug}-{terms}"[:MAX_FILENAME_LENGTH].rstrip("-")
    return f"{base}.webp"


def generate_alt_text(
    keyword: str,
    heading: Optional[str],
    image_type: str,
    image_prompt_hint: Optional[str] = None,
) -> str:
    """Descriptive alt text that mentions the keyword, at most 125 chars."""
    if image_prompt_hint:
        hint = re.sub(
            r"^editorial photo(graph)?\s*(showing|of|illustrating)?\s*",
            "",
            image_prompt_hint,
            flags=re.IGNORECASE,
        )
        hint = re.sub(r"\.$", "", hint)
        keyword_lower = keyword.lower()
        hint_lower = hint.lower()
        first_word = keyword_lower.split(" ")[0]
        capitalized = hint[:1].upper() + hint[1:]
        if keyword_lower in hint_lower or first_word in hint_lower:
            alt = capitalized
        else:
            alt = f"{capitalized} - {keyword}"
    elif heading and image_type == "section":
        alt = f"{heading} : photo illustrant {keyword.lower()}"
    else:
        alt = f"Photo illustrant {keyword.lower()}"

    if len(alt) <= MAX_ALT_LENGTH:
        return alt
    truncated = alt[:MAX_ALT_LENGTH]
    last_space = truncated.rfind(" ")
    if last_space > MAX_ALT_LENGTH * 0.5:
        return truncated[:last_space]
    return truncated
