"""
Tests for the article status state machine.
"""

import pytest

from seo_pipeline.content_model import ArticleStatus, PipelineContext, PipelineStep
from seo_pipeline.state_machine import (
    TRANSITIONS,
    TransitionError,
    check_transition,
    get_available_steps,
    get_next_status,
    get_pipeline_progress,
    get_status_label,
    get_step_label,
    validate_transition,
)


def _ctx(**overrides):
    defaults = {"article_id": "a1", "keyword": "robot", "persona_id": "p1"}
    defaults.update(overrides)
    return PipelineContext(**defaults)


# ===================================================================
# Transition table
# ===================================================================


@pytest.mark.unit
class TestTransitions:

    def test_happy_path(self):
        assert get_next_status("draft", "analyze") == "analyzing"
        assert get_next_status("analyzing", "plan") == "planning"
        assert get_next_status("planning", "write_block") == "writing"
        assert get_next_status("writing", "media") == "media"
        assert get_next_status("media", "seo") == "seo_check"
        assert get_next_status("seo_check", "seo") == "reviewing"
        assert get_next_status("reviewing", "publish") == "publishing"
        assert get_next_status("publishing", "publish") == "published"
        assert get_next_status("published", "refresh") == "refresh_needed"
        assert get_next_status("refresh_needed", "write_block") == "writing"

    def test_rollbacks(self):
        assert get_next_status("analyzing", "analyze") == "draft"
        assert get_next_status("planning", "plan") == "draft"

    def test_self_loop_has_no_next_status(self):
        assert get_next_status("writing", "write_block") is None
        assert validate_transition("writing", "write_block", _ctx()) is None

    def test_enum_arguments_accepted(self):
        assert get_next_status(ArticleStatus.DRAFT, PipelineStep.ANALYZE) == "analyzing"

    def test_every_missing_pair_is_rejected(self):
        listed = {(t.from_status.value, t.step.value) for t in TRANSITIONS}
        for status in ArticleStatus:
            for step in PipelineStep:
                if (status.value, step.value) in listed:
                    continue
                assert get_next_status(status, step) is None
                reason = validate_transition(status, step, _ctx())
                assert reason is not None
                assert "Transition invalide" in reason

    def test_unknown_step_is_rejected(self):
        assert validate_transition("draft", "dance", _ctx()) is not None


# ===================================================================
# Guards
# ===================================================================


@pytest.mark.unit
class TestGuards:

    def test_write_requires_persona(self):
        reason = validate_transition("planning", "write_block", _ctx(persona_id=None))
        assert reason == "Un persona doit etre assigne avant la redaction"

    def test_media_requires_all_blocks_written(self):
        ctx = _ctx(content_blocks_count=4, written_blocks_count=3)
        assert validate_transition("writing", "media", ctx) == (
            "Tous les blocs doivent etre ecrits (3/4)"
        )
        done = _ctx(content_blocks_count=4, written_blocks_count=4)
        assert validate_transition("writing", "media", done) is None

    def test_check_transition_raises(self):
        with pytest.raises(TransitionError) as exc_info:
            check_transition("draft", "publish", _ctx())
        assert exc_info.value.status == "draft"
        assert exc_info.value.step == "publish"


# ===================================================================
# Queries
# ===================================================================


@pytest.mark.unit
class TestQueries:

    def test_available_steps_deduplicated_in_table_order(self):
        assert get_available_steps("analyzing") == ["plan", "analyze"]
        assert get_available_steps("seo_check") == ["seo"]
        assert get_available_steps("nonsense") == []

    def test_progress_and_labels(self):
        assert get_pipeline_progress("draft") == 0
        assert get_pipeline_progress("writing") == 40
        assert get_pipeline_progress("refresh_needed") == 95
        assert get_pipeline_progress("unknown") == 0
        assert get_status_label("seo_check") == "Verification SEO"
        assert get_step_label("write_block") == "Ecrire un bloc"
        assert get_status_label("weird") == "weird"
