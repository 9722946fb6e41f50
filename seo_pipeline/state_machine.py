"""
Pipeline state machine.

Legal ``(from_status, step) -> to_status`` transitions are data, not an
if/else ladder: the executor only asks this table whether a step may run and
which status it leads to.  Guards are pure functions of a
:class:`PipelineContext`; they never touch the store or the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from seo_pipeline.content_model import ArticleStatus, PipelineContext, PipelineStep

Guard = Callable[[PipelineContext], Optional[str]]


class TransitionError(Exception):
    """Raised when a step is not allowed from the article's current status."""

    def __init__(self, status: str, step: str, reason: str) -> None:
        self.status = status
        self.step = step
        self.reason = reason
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def _require_persona(ctx: PipelineContext) -> Optional[str]:
    if not ctx.persona_id:
        return "Un persona doit etre assigne avant la redaction"
    return None


def _require_all_blocks_written(ctx: PipelineContext) -> Optional[str]:
    if ctx.written_blocks_count < ctx.content_blocks_count:
        return (
            f"Tous les blocs doivent etre ecrits "
            f"({ctx.written_blocks_count}/{ctx.content_blocks_count})"
        )
    return None


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transition:
    from_status: ArticleStatus
    step: PipelineStep
    to_status: ArticleStatus
    guard: Optional[Guard] = None


S = ArticleStatus
P = PipelineStep

TRANSITIONS: Tuple[Transition, ...] = (
    Transition(S.DRAFT, P.ANALYZE, S.ANALYZING),
    Transition(S.ANALYZING, P.PLAN, S.PLANNING),
    Transition(S.ANALYZING, P.ANALYZE, S.DRAFT),
    Transition(S.PLANNING, P.WRITE_BLOCK, S.WRITING, _require_persona),
    Transition(S.PLANNING, P.PLAN, S.DRAFT),
    Transition(S.WRITING, P.WRITE_BLOCK, S.WRITING),
    Transition(S.WRITING, P.MEDIA, S.MEDIA, _require_all_blocks_written),
    Transition(S.MEDIA, P.SEO, S.SEO_CHECK),
    Transition(S.SEO_CHECK, P.SEO, S.REVIEWING),
    Transition(S.REVIEWING, P.PUBLISH, S.PUBLISHING),
    Transition(S.PUBLISHING, P.PUBLISH, S.PUBLISHED),
    Transition(S.PUBLISHED, P.REFRESH, S.REFRESH_NEEDED),
    Transition(S.REFRESH_NEEDED, P.WRITE_BLOCK, S.WRITING),
)

PIPELINE_PROGRESS: Dict[str, int] = {
    "draft": 0,
    "analyzing": 10,
    "planning": 20,
    "writing": 40,
    "media": 60,
    "seo_check": 70,
    "reviewing": 80,
    "publishing": 90,
    "published": 100,
    "refresh_needed": 95,
}

STATUS_LABELS: Dict[str, str] = {
    "draft": "Brouillon",
    "analyzing": "Analyse",
    "planning": "Planification",
    "writing": "Redaction",
    "media": "Medias",
    "seo_check": "Verification SEO",
    "reviewing": "Relecture",
    "publishing": "Publication",
    "published": "Publie",
    "refresh_needed": "Mise a jour requise",
}

STEP_LABELS: Dict[str, str] = {
    "analyze": "Analyser la SERP",
    "plan": "Generer le plan",
    "write_block": "Ecrire un bloc",
    "media": "Generer les medias",
    "seo": "Optimiser le SEO",
    "publish": "Publier",
    "refresh": "Rafraichir",
}


def _value(item) -> str:
    return item.value if hasattr(item, "value") else str(item)


def _find(status: str, step: str) -> Optional[Transition]:
    for transition in TRANSITIONS:
        if transition.from_status.value == status and transition.step.value == step:
            return transition
    return None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_next_status(status, step) -> Optional[str]:
    """Target status of the first transition that actually changes status.

    Self-loops are skipped so callers can detect status-unchanged steps:
    ``get_next_status("writing", "write_block")`` is ``None``.
    """
    status, step = _value(status), _value(step)
    for transition in TRANSITIONS:
        if (
            transition.from_status.value == status
            and transition.step.value == step
            and transition.to_status != transition.from_status
        ):
            return transition.to_status.value
    return None


def validate_transition(status, step, context: PipelineContext) -> Optional[str]:
    """Return ``None`` when ``step`` may run from ``status``, else the reason."""
    status, step = _value(status), _value(step)
    transition = _find(status, step)
    if transition is None:
        return (
            f'Transition invalide: impossible d\'executer "{step}" '
            f'depuis le statut "{status}"'
        )
    if transition.guard is not None:
        return transition.guard(context)
    return None


def check_transition(status, step, context: PipelineContext) -> None:
    """Raising form of :func:`validate_transition`.

    Raises
    ------
    TransitionError
        If the transition is missing or its guard vetoes it.
    """
    reason = validate_transition(status, step, context)
    if reason is not None:
        raise TransitionError(_value(status), _value(step), reason)


def get_available_steps(status) -> List[str]:
    """Steps that may be requested from ``status``, deduplicated, table order."""
    status = _value(status)
    steps: List[str] = []
    for transition in TRANSITIONS:
        if transition.from_status.value == status and transition.step.value not in steps:
            steps.append(transition.step.value)
    return steps


def get_pipeline_progress(status) -> int:
    return PIPELINE_PROGRESS.get(_value(status), 0)


def get_status_label(status) -> str:
    status = _value(status)
    return STATUS_LABELS.get(status, status)


def get_step_label(step) -> str:
    step = _value(step)
    return STEP_LABELS.get(step, step)
