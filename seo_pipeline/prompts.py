"""
Prompt builders for the AI-backed pipeline steps, plus the JSON extractor
shared by every step that expects a structured completion.

Prompts are French: the pipeline produces French articles and the models
follow the language of their instructions.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from seo_pipeline.competitor_scraper import CompetitorContentAnalysis, flatten_headings
from seo_pipeline.content_model import ContentBlock, Nugget, Persona

logger = logging.getLogger("seo_pipeline.prompts")

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

DEFAULT_PERSONA = Persona(name="Expert", role="Redacteur")

BLOCK_TYPES_FOR_PLAN = "h2 | h3 | paragraph | list | faq | callout | image"


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def extract_json_from_response(text: str) -> Any:
    """
    Extract a JSON object or array from a model response.

    Handles responses wrapped in markdown code fences or surrounded by
    preamble text. Returns None when nothing parses.
    """
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fenced = re.search(r"```(?:json)?\s*\n?(.*?)```", text, re.DOTALL)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            pass

    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass

    logger.warning("Failed to extract JSON from response (%d chars)", len(text))
    return None


# ---------------------------------------------------------------------------
# Shared fragments
# ---------------------------------------------------------------------------


def _persona_block(persona: Persona) -> str:
    lines = [f'Tu ecris en tant que "{persona.name}", {persona.role}.']
    if persona.tone_description:
        lines.append(f"Ton editorial : {persona.tone_description}")
    if persona.bio:
        lines.append(f"Bio : {persona.bio}")
    return "\n".join(lines)


def _style_examples(persona: Persona, limit: int = 3) -> str:
    parts = []
    for example in persona.writing_style_examples[:limit]:
        text = example.get("text") or example.get("content") or json.dumps(example)
        parts.append(f"---\n{str(text)[:600]}\n---")
    return "\n\n".join(parts)


def _nugget_lines(nuggets: Sequence[Nugget]) -> str:
    return "\n".join(
        f"- [{n.id}] {n.content}" + (f" (tags: {', '.join(n.tags)})" if n.tags else "")
        for n in nuggets
    )


# ---------------------------------------------------------------------------
# plan_article
# ---------------------------------------------------------------------------


def _build_plan_system_prompt() -> str:
    year = datetime.now(timezone.utc).year
    return (
        "Tu es un architecte de contenu SEO expert. Tu produis des plans d'articles "
        "qui rankent sur Google ET qui sont utiles a lire.\n\n"
        "REGLES DU PLAN :\n"
        "- Le premier bloc est une introduction : type \"paragraph\", heading null\n"
        "- Vise entre 1500 et 3000 mots au total (somme des word_count)\n"
        "- Chaque bloc a une \"writing_directive\" precise et un \"format_hint\" "
        "parmi prose, bullets, table, mixed\n"
        "- Pour chaque H2, decide si une image est utile (\"generate_image\") et, si oui, "
        "fournis \"image_prompt_hint\" (scene en anglais, style photo editoriale)\n"
        "- Pour chaque H2, fournis \"internal_link_targets\" (tableau vide si aucun lien)\n"
        "- Termine par un bloc \"faq\" qui repond aux questions des internautes\n"
        f"- Si une annee apparait, utilise {year}\n\n"
        "Retourne UNIQUEMENT un objet JSON valide avec cette structure :\n"
        "{\n"
        '  "title_suggestions": [\n'
        '    {"title": "...", "seo_title": "...", "slug": "...", "seo_rationale": "..."}\n'
        "  ],\n"
        '  "meta_description": "140-160 caracteres, contient le mot-cle",\n'
        '  "content_blocks": [\n'
        "    {\n"
        f'      "type": "{BLOCK_TYPES_FOR_PLAN}",\n'
        '      "heading": "Titre de la section ou null",\n'
        '      "content_html": "",\n'
        '      "nugget_ids": [],\n'
        '      "word_count": 300,\n'
        '      "status": "pending",\n'
        '      "writing_directive": "...",\n'
        '      "format_hint": "prose | bullets | table | mixed",\n'
        '      "generate_image": false,\n'
        '      "image_prompt_hint": null,\n'
        '      "internal_link_targets": [\n'
        '        {"target_slug": "...", "target_title": "...", '
        '"suggested_anchor_context": "...", "is_money_page": false}\n'
        "      ]\n"
        "    }\n"
        "  ]\n"
        "}\n\n"
        "IMPORTANT :\n"
        "- \"title_suggestions\" contient EXACTEMENT 3 suggestions "
        "(question, promesse, specifique)\n"
        "- \"content_html\" est TOUJOURS \"\" et \"status\" TOUJOURS \"pending\"\n"
        "- Les slugs sont en minuscules, sans accents, avec des tirets\n"
        "Pas de texte avant ou apres le JSON."
    )


def build_plan_prompt(
    keyword: str,
    search_intent: str,
    persona: Optional[Persona],
    serp_data: Optional[Dict[str, Any]],
    nuggets: Sequence[Nugget],
    existing_articles: Sequence[Dict[str, Any]],
    money_page: Optional[Dict[str, str]] = None,
) -> Tuple[str, str]:
    """
    Build the (system, user) prompts for the ``plan_article`` task.

    Parameters
    ----------
    serp_data : dict, optional
        The article's stored ``serp_data`` (``serp``, ``competitorContent``,
        ``semanticAnalysis``, ``selectedContentGaps``).
    existing_articles : sequence of dict
        ``keyword``/``title``/``slug`` of the site's other articles, offered
        as internal link targets.
    money_page : dict, optional
        ``url`` and ``description`` of the page to push.
    """
    persona = persona or DEFAULT_PERSONA
    serp_data = serp_data or {}
    sections: List[str] = [
        "## MISSION",
        "Cree un plan d'article complet et optimise SEO.",
        f"Mot-cle principal : \"{keyword}\"",
        f"Intention de recherche : {search_intent}",
        "",
        "## AUTEUR",
        _persona_block(persona),
    ]

    serp = serp_data.get("serp") or {}
    organic = serp.get("organic") or []
    if organic:
        sections += ["", "## TOP RESULTATS GOOGLE"]
        sections += [
            f"{r.get('position', i + 1)}. {r.get('title', '')} : {r.get('snippet', '')}"
            for i, r in enumerate(organic[:10])
        ]
    paa = serp.get("peopleAlsoAsk") or []
    if paa:
        sections += ["", "## QUESTIONS FREQUENTES (People Also Ask)"]
        sections += [f"- {q.get('question', '')}" for q in paa]

    competitor = serp_data.get("competitorContent") or {}
    if competitor:
        sections += [
            "",
            "## CONTENU CONCURRENT",
            f"Nombre de mots moyen : {competitor.get('avgWordCount', 0)}",
        ]
        headings = competitor.get("commonHeadings") or []
        if headings:
            sections.append("H2 frequents : " + ", ".join(headings[:15]))
        terms = competitor.get("tfidfKeywords") or []
        if terms:
            sections.append("Termes cles : " + ", ".join(t["term"] for t in terms[:25]))

    semantic = serp_data.get("semanticAnalysis") or {}
    if semantic:
        sections += ["", "## ANALYSE SEMANTIQUE"]
        if semantic.get("semanticField"):
            sections.append("Champ semantique : " + ", ".join(semantic["semanticField"]))
        if semantic.get("recommendedWordCount"):
            sections.append(f"Nombre de mots recommande : {semantic['recommendedWordCount']}")
        if semantic.get("mustAnswerQuestions"):
            sections.append("Questions incontournables :")
            sections += [f"- {q}" for q in semantic["mustAnswerQuestions"]]

    gaps = serp_data.get("selectedContentGaps") or []
    if gaps:
        sections += ["", "## LACUNES A COUVRIR (choisies par l'editeur)"]
        sections += [f"- {g}" for g in gaps]

    if nuggets:
        sections += [
            "",
            "## NUGGETS DISPONIBLES",
            "Assigne les nuggets pertinents aux blocs via \"nugget_ids\".",
            _nugget_lines(nuggets),
        ]

    if existing_articles:
        sections += ["", "## ARTICLES DU SITE (cibles de liens internes)"]
        sections += [
            f"- \"{a.get('title')}\" (slug: {a.get('slug')}, mot-cle: {a.get('keyword')})"
            for a in existing_articles
        ]

    if money_page:
        sections += [
            "",
            "## PAGE PRIORITAIRE",
            f"URL : {money_page['url']}",
            f"Description : {money_page.get('description', '')}",
            "Ajoute-la dans internal_link_targets d'un H2 pertinent avec "
            "\"is_money_page\": true.",
        ]

    return _build_plan_system_prompt(), "\n".join(sections)


# ---------------------------------------------------------------------------
# write_block
# ---------------------------------------------------------------------------


def _build_block_writer_system_prompt(persona: Persona) -> str:
    return (
        "Tu es un redacteur web expert en SEO. Tu produis du contenu HTML pret a "
        "publier sur WordPress.\n\n"
        "## TON IDENTITE\n"
        f"{_persona_block(persona)}\n"
        "Ecris EXACTEMENT comme cette personne parlerait : sa voix, son expertise, "
        "ses expressions. Jamais de formules generiques de chatbot.\n\n"
        "## REGLES DE REDACTION\n"
        "1. HTML propre uniquement : <p>, <strong>, <em>, <ul>, <ol>, <li>, "
        "<blockquote>, <table>. Pas de markdown, pas de bloc de code.\n"
        "2. N'inclus PAS le tag de titre (h2/h3) : il est ajoute automatiquement.\n"
        "3. Paragraphes courts (2-4 phrases), une idee par phrase.\n"
        "4. Demontre l'E-E-A-T : exemples concrets, chiffres, experience vecue.\n"
        "5. Integre les nuggets naturellement, reformules, entre guillemets si citation.\n"
        "6. Pour une FAQ, chaque question est un <details><summary>Question</summary>"
        "<p>Reponse</p></details>.\n"
        "7. Ne mentionne jamais que le texte est genere par une IA."
    )


def build_block_writer_prompt(
    keyword: str,
    search_intent: str,
    persona: Optional[Persona],
    block: ContentBlock,
    nuggets: Sequence[Nugget],
    previous_headings: Sequence[str],
    article_title: str,
    site_domain: Optional[str] = None,
    authority_link: Optional[Dict[str, Any]] = None,
) -> Tuple[str, str]:
    """Build the (system, user) prompts for the ``write_block`` task."""
    persona = persona or DEFAULT_PERSONA
    lines: List[str] = [
        f"## ARTICLE : {article_title}",
        f"Mot-cle principal : \"{keyword}\" (intention : {search_intent})",
    ]
    if previous_headings:
        lines += ["", "## SECTIONS DEJA ECRITES"]
        lines += [f"- {h}" for h in previous_headings]

    lines += ["", "## BLOC A ECRIRE", f"Type : {block.type}"]
    if block.heading:
        lines.append(f"Titre : {block.heading}")
    if block.writing_directive:
        lines.append(f"Directive : {block.writing_directive}")
    if block.format_hint:
        lines.append(f"Format recommande : {block.format_hint}")

    if nuggets:
        lines += ["", "## NUGGETS", _nugget_lines(nuggets)]

    examples = _style_examples(persona)
    if examples:
        lines += [
            "",
            "## REFERENCE STYLISTIQUE",
            "Imite ce style, ce vocabulaire, cette structure de phrase :",
            examples,
        ]

    if block.internal_link_targets:
        lines += ["", "## LIENS INTERNES A INTEGRER"]
        for target in block.internal_link_targets:
            slug = target.target_slug.lstrip("/")
            url = f"https://{site_domain}/{slug}" if site_domain else f"/{slug}"
            lines.append(f"- Cible : \"{target.target_title}\" -> {url}")
            lines.append(f"  Contexte : {target.suggested_anchor_context}")
            if target.is_money_page:
                lines.append("  (Page prioritaire)")
        lines.append("L'ancre doit etre UNIQUE et NATURELLE, pas le titre exact.")

    if authority_link:
        lines += [
            "",
            "## LIEN D'AUTORITE EXTERNE",
            f"- Source : \"{authority_link.get('title', '')}\" -> {authority_link['url']}",
            f"- Contexte : {authority_link.get('anchor_context', '')}",
            "Integre ce lien EXTERNE une seule fois, avec une ancre descriptive.",
        ]

    if not previous_headings and block.type == "paragraph":
        keyword_rule = (
            f"- OBLIGATOIRE : le mot-cle \"{keyword}\" dans les 2-3 premieres phrases\n"
            "- BLOC INTRO : 140 mots maximum, 1-2 <p>, pas de liste ni de titre"
        )
    elif not previous_headings:
        keyword_rule = f"- OBLIGATOIRE : le mot-cle \"{keyword}\" dans les 2-3 premieres phrases"
    elif block.type == "faq":
        keyword_rule = f"- Le mot-cle \"{keyword}\" au moins 1 fois dans une reponse"
    else:
        keyword_rule = f"- Utilise des variantes et synonymes de \"{keyword}\""

    lines += [
        "",
        "## RAPPEL",
        f"- Ecris environ {block.word_count} mots",
        "- Retourne UNIQUEMENT du HTML propre",
        keyword_rule,
    ]
    return _build_block_writer_system_prompt(persona), "\n".join(lines)


# ---------------------------------------------------------------------------
# analyze_competitor_content / evaluate_authority_links
# ---------------------------------------------------------------------------


def build_competitor_analysis_prompt(
    keyword: str, analysis: CompetitorContentAnalysis
) -> str:
    pages = "\n".join(
        f"- {p.domain}: {p.word_count} mots | H2: "
        f"{', '.join(flatten_headings(p.headings, 2)) or 'aucun'}"
        for p in analysis.pages
        if p.scrape_success
    )
    headings = "\n- ".join(analysis.common_headings[:20]) or "Aucun titre commun identifie"
    terms = "\n- ".join(
        f"{t['term']} (score: {t['tfidf']:.4f}, present dans {t['df']}/{analysis.scraped_count} pages)"
        for t in analysis.tfidf_keywords[:30]
    ) or "Aucun terme extrait"

    return (
        f"Tu es un expert SEO. Analyse le contenu des concurrents pour le mot-cle \"{keyword}\".\n\n"
        f"## PAGES CONCURRENTES ({analysis.scraped_count}/{analysis.total_count})\n{pages}\n\n"
        f"## NOMBRE DE MOTS MOYEN : {analysis.avg_word_count}\n\n"
        f"## TITRES H2 LES PLUS COURANTS\n- {headings}\n\n"
        f"## TERMES TF-IDF\n- {terms}\n\n"
        "Retourne un JSON valide (sans bloc markdown) :\n"
        "{\n"
        '  "contentGaps": [{"label": "...", "type": "calculator|comparison|checklist|'
        'specific_question|interactive|data|text", "description": "..."}],\n'
        '  "semanticField": ["..."],\n'
        '  "recommendedWordCount": 0,\n'
        '  "recommendedH2Structure": ["..."],\n'
        '  "keyDifferentiators": ["..."],\n'
        '  "mustAnswerQuestions": ["..."]\n'
        "}\n\n"
        "Regles : 5-8 contentGaps dont au moins 3 non-text, 15-25 termes de champ "
        "semantique, recommendedWordCount = moyenne + 20%, 4-8 H2 recommandes."
    )


def build_authority_evaluation_prompt(
    keyword: str, candidates: Sequence[Dict[str, Any]]
) -> str:
    listing = "\n".join(
        f"{i}. {c['title']} ({c['domain']}) : {c.get('snippet', '')[:150]}"
        for i, c in enumerate(candidates)
    )
    return (
        "Tu es un expert SEO. Voici des sources potentielles d'autorite pour un article "
        f"sur \"{keyword}\".\n\n"
        f"Candidats (index a partir de 0) :\n{listing}\n\n"
        "Selectionne les 2-3 meilleures sources pour renforcer l'E-E-A-T de l'article.\n"
        "Pour chacune, fournis :\n"
        "- rationale : pourquoi cette source renforce la credibilite (1 phrase)\n"
        "- anchor_context : phrase dans laquelle integrer le lien (1 phrase)\n\n"
        "Retourne UNIQUEMENT un JSON valide :\n"
        '{"selections": [{"index": 0, "rationale": "...", "anchor_context": "..."}]}\n'
        "Pas de texte avant ou apres le JSON."
    )
