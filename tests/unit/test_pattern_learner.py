"""
Tests for the pattern learner.

The learner is exercised in memory (no store) except where persistence
itself is under test.
"""

from unittest.mock import AsyncMock

import pytest

from aves.learning.models import PatternSnapshot
from aves.learning.pattern_learner import PatternLearner
from aves.learning.pattern_store import LocalBlobStore, PatternStore
from aves.learning.rejection import RejectionCategory
from config import Settings

MALLARD = {"species": "Mallard"}


def make_annotation(term="el pico", confidence=0.9, box=None, **extra):
    annotation = {
        "spanishTerm": term,
        "englishTerm": "the " + term,
        "confidence": confidence,
        "boundingBox": box if box is not None else {"x": 100, "y": 150, "width": 50, "height": 40},
        "type": "anatomical",
    }
    annotation.update(extra)
    return annotation


@pytest.fixture
def learner(settings):
    return PatternLearner(store=None, settings=settings)


class TestLearnFromAnnotations:
    """Tests for learning from fresh vision annotations."""

    @pytest.mark.asyncio
    async def test_filters_low_confidence(self, learner):
        """Only annotations at or above the threshold are learned; missing confidence counts as 0.8."""
        await learner.learn_from_annotations(
            [
                make_annotation("el pico", 0.9),
                make_annotation("el ala", 0.5),
                make_annotation("la cola", None),
            ],
            MALLARD,
        )

        assert learner.pattern_count == 2
        assert learner.get_pattern("Mallard", "el ala") is None
        assert learner.get_pattern("Mallard", "la cola").average_confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_running_average_confidence(self, learner):
        await learner.learn_from_annotations([make_annotation(confidence=0.9)], MALLARD)
        await learner.learn_from_annotations([make_annotation(confidence=0.7)], MALLARD)

        pattern = learner.get_pattern("Mallard", "el pico")
        assert pattern.observation_count == 2
        assert pattern.average_confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_rejects_non_list(self, learner):
        with pytest.raises(TypeError):
            await learner.learn_from_annotations(make_annotation(), MALLARD)

    @pytest.mark.asyncio
    async def test_species_namespaces_are_separate(self, learner, sample_annotation):
        await learner.learn_from_annotations([sample_annotation], MALLARD)
        await learner.learn_from_annotations([sample_annotation])

        assert learner.get_pattern("Mallard", "el pico").observation_count == 1
        assert learner.get_pattern(None, "el pico").observation_count == 1

    @pytest.mark.asyncio
    async def test_records_prompt_and_metadata(self, learner, sample_annotation):
        """Prompt fragments are kept most recent first without duplicates."""
        await learner.learn_from_annotations(
            [sample_annotation],
            {"species": "Mallard", "prompt": "first", "image_characteristics": ["water"]},
        )
        await learner.learn_from_annotations(
            [sample_annotation], {"species": "Mallard", "prompt": "second"}
        )
        await learner.learn_from_annotations(
            [sample_annotation], {"species": "Mallard", "prompt": "first"}
        )

        pattern = learner.get_pattern("Mallard", "el pico")
        assert pattern.successful_prompts == ["first", "second"]
        assert pattern.metadata["image_characteristics"] == ["water"]
        assert pattern.metadata["pronunciations"] == ["el PEE-koh"]
        assert pattern.metadata["avg_difficulty_level"] == pytest.approx(2)

    @pytest.mark.asyncio
    async def test_box_clusters_are_bounded(self, settings):
        """Far-apart boxes open new clusters, capped with the primary one kept."""
        learner = PatternLearner(store=None, settings=settings)
        await learner.learn_from_approval(
            make_annotation(box={"x": 0, "y": 0, "width": 10, "height": 10}), MALLARD
        )
        for i in range(1, 7):
            box = {"x": i * 100, "y": 0, "width": 10, "height": 10}
            await learner.learn_from_annotations([make_annotation(box=box)], MALLARD)

        pattern = learner.get_pattern("Mallard", "el pico")
        assert len(pattern.bounding_boxes) == settings.pattern_max_box_patterns
        assert pattern.primary_box.center_x == pytest.approx(5.0)
        assert pattern.primary_box.sample_size == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_nearby_boxes_merge(self, learner):
        """A box inside an existing cluster updates its weighted mean."""
        await learner.learn_from_annotations(
            [make_annotation(box={"x": 0, "y": 0, "width": 10, "height": 10})], MALLARD
        )
        await learner.learn_from_annotations(
            [make_annotation(box={"x": 2, "y": 0, "width": 10, "height": 10})], MALLARD
        )

        pattern = learner.get_pattern("Mallard", "el pico")
        assert len(pattern.bounding_boxes) == 1
        assert pattern.primary_box.center_x == pytest.approx(6.0)
        assert pattern.primary_box.sample_size == pytest.approx(2.0)
        assert pattern.primary_box.variance_x == pytest.approx(1.0)


class TestApprovalAndRejection:
    """Tests for approval and rejection learning."""

    @pytest.mark.asyncio
    async def test_approval_boosts_confidence(self, learner):
        await learner.learn_from_annotations([make_annotation(confidence=0.7)], MALLARD)

        await learner.learn_from_approval(make_annotation(confidence=0.7), MALLARD)

        pattern = learner.get_pattern("Mallard", "el pico")
        assert pattern.observation_count == 2
        assert pattern.average_confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_approval_confidence_is_capped(self, learner):
        await learner.learn_from_approval(make_annotation(), MALLARD)
        await learner.learn_from_approval(make_annotation(), MALLARD)

        assert learner.get_pattern("Mallard", "el pico").average_confidence == 1.0

    @pytest.mark.asyncio
    async def test_rejection_penalizes_existing_pattern(self, learner):
        await learner.learn_from_annotations([make_annotation(confidence=0.9)], MALLARD)

        await learner.learn_from_rejection(make_annotation(), "box too wide", MALLARD)

        pattern = learner.get_pattern("Mallard", "el pico")
        record = learner.get_rejection_record("Mallard", "el pico")
        assert pattern.average_confidence == pytest.approx(0.8)
        assert pattern.observation_count == 1
        assert record.counts == {"poor_localization": 1}
        assert record.last_note == "box too wide"

    @pytest.mark.asyncio
    async def test_rejection_floor_is_zero(self, learner):
        await learner.learn_from_annotations([make_annotation(confidence=0.75)], MALLARD)
        for _ in range(10):
            await learner.learn_from_rejection(make_annotation(), RejectionCategory.OTHER, MALLARD)

        assert learner.get_pattern("Mallard", "el pico").average_confidence == 0.0

    @pytest.mark.asyncio
    async def test_rejection_does_not_create_pattern(self, learner):
        await learner.learn_from_rejection(make_annotation(), "duplicate", MALLARD)

        assert learner.pattern_count == 0
        assert learner.get_rejection_record("Mallard", "el pico").total == 1

    @pytest.mark.asyncio
    async def test_repeated_category_escalates(self, learner):
        """Three same-category rejections in a row escalate; approval resets the streak."""
        for _ in range(3):
            await learner.learn_from_rejection(
                make_annotation(), RejectionCategory.POOR_LOCALIZATION, MALLARD
            )
        record = learner.get_rejection_record("Mallard", "el pico")
        assert record.escalated == ["poor_localization"]
        assert record.streak_length == 3

        await learner.learn_from_approval(make_annotation(), MALLARD)

        assert record.streak_length == 0
        assert record.escalated == ["poor_localization"]

    @pytest.mark.asyncio
    async def test_mixed_categories_do_not_escalate(self, learner):
        for reason in ("box too wide", "blurry", "box too wide"):
            await learner.learn_from_rejection(make_annotation(), reason, MALLARD)

        record = learner.get_rejection_record("Mallard", "el pico")
        assert record.escalated == []
        assert record.streak_length == 1
        assert record.counts == {"poor_localization": 2, "low_quality": 1}

    @pytest.mark.asyncio
    async def test_invalid_annotation_is_swallowed(self, learner):
        """Mutators log bad input instead of raising."""
        await learner.learn_from_approval({"confidence": 0.9}, MALLARD)
        assert learner.pattern_count == 0


class TestLearnFromCorrection:
    """Tests for position correction learning."""

    @pytest.mark.asyncio
    async def test_records_delta_and_box(self, learner):
        original = make_annotation()
        corrected = make_annotation(box={"x": 110, "y": 160, "width": 55, "height": 42})

        await learner.learn_from_correction(original, corrected, {**MALLARD, "reviewer_id": "r1"})

        corrections = learner.get_corrections("Mallard", "el pico")
        assert len(corrections) == 1
        delta = corrections[0].delta
        assert (delta.delta_x, delta.delta_y, delta.delta_width, delta.delta_height) == (10, 10, 5, 2)
        assert corrections[0].reviewer_id == "r1"

        pattern = learner.get_pattern("Mallard", "el pico")
        assert pattern.observation_count == 1
        assert pattern.average_confidence == pytest.approx(0.95)
        assert pattern.primary_box.center_x == pytest.approx(137.5)
        assert pattern.primary_box.sample_size == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_missing_box_is_ignored(self, learner):
        original = make_annotation()
        corrected = {"spanishTerm": "el pico", "confidence": 0.9}

        await learner.learn_from_correction(original, corrected, MALLARD)

        assert learner.pattern_count == 0
        assert learner.get_corrections("Mallard", "el pico") == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, tmp_path):
        settings = Settings(_env_file=None, log_file=None, pattern_max_corrections=2)
        learner = PatternLearner(store=None, settings=settings)
        for dx in (1, 2, 3):
            corrected = make_annotation(box={"x": 100 + dx, "y": 150, "width": 50, "height": 40})
            await learner.learn_from_correction(make_annotation(), corrected, MALLARD)

        corrections = learner.get_corrections("Mallard", "el pico")
        assert [c.delta.delta_x for c in corrections] == [2, 3]

    @pytest.mark.asyncio
    async def test_position_adjustment_needs_min_samples(self, learner):
        for dx in (4, 6):
            corrected = make_annotation(box={"x": 100 + dx, "y": 150, "width": 50, "height": 40})
            await learner.learn_from_correction(make_annotation(), corrected, MALLARD)

        [adjusted] = learner.get_position_adjusted_features("Mallard", ["el pico"])
        assert adjusted.adjustment is None
        assert adjusted.bounding_box is not None

        corrected = make_annotation(box={"x": 108, "y": 150, "width": 50, "height": 40})
        await learner.learn_from_correction(make_annotation(), corrected, MALLARD)

        [adjusted] = learner.get_position_adjusted_features("Mallard", ["el pico"])
        assert adjusted.based_on_corrections == 3
        assert adjusted.adjustment.delta_x == pytest.approx(6.0)
        assert adjusted.adjustment.delta_y == 0.0

    def test_unknown_feature_has_no_adjustment(self, learner):
        [adjusted] = learner.get_position_adjusted_features("Mallard", ["la pata"])
        assert adjusted.bounding_box is None
        assert adjusted.adjustment is None


class TestEnhancePrompt:
    """Tests for prompt enhancement."""

    async def _train(self, learner):
        batch = [make_annotation("el pico"), make_annotation("el ala"), make_annotation("la cola")]
        for _ in range(3):
            await learner.learn_from_annotations(
                batch,
                {"species": "Mallard", "prompt": "Focus on the head", "image_characteristics": ["water"]},
            )

    @pytest.mark.asyncio
    async def test_unchanged_without_enough_observations(self, learner):
        await learner.learn_from_annotations([make_annotation()], MALLARD)

        assert learner.enhance_prompt("Annotate this bird.", "Mallard") == "Annotate this bird."

    def test_unchanged_when_empty(self, learner):
        assert learner.enhance_prompt("base") == "base"

    @pytest.mark.asyncio
    async def test_adds_learned_sections(self, learner):
        await self._train(learner)

        prompt = learner.enhance_prompt(
            "Annotate this bird.", "Mallard", image_characteristics=["water"]
        )

        assert prompt.startswith("Annotate this bird.")
        assert "SPECIES-SPECIFIC GUIDANCE for Mallard:" in prompt
        assert "Based on 9 previous annotations" in prompt
        assert 'SUCCESSFUL PROMPT PATTERNS:\n- "Focus on the head"' in prompt
        assert "LEARNED FEATURE PATTERNS:" in prompt
        assert "(seen in similar images)" in prompt
        assert "CORRECTION-BASED ADJUSTMENTS" not in prompt

    @pytest.mark.asyncio
    async def test_includes_rejections_and_corrections(self, learner):
        await self._train(learner)
        for _ in range(3):
            await learner.learn_from_rejection(make_annotation(), "box too wide", MALLARD)
        for dx in (4, 6, 8):
            corrected = make_annotation(box={"x": 100 + dx, "y": 150, "width": 50, "height": 40})
            await learner.learn_from_correction(make_annotation(), corrected, MALLARD)

        prompt = learner.enhance_prompt("Annotate.", "Mallard", target_features=["el pico"])

        assert "CORRECTION-BASED ADJUSTMENTS:" in prompt
        assert "Adjust position by (6.0, 0.0)" in prompt
        assert "[Based on 3 user corrections]" in prompt
        assert '"poor_localization" (3x)' in prompt
        assert "REPEATED poor_localization" in prompt


class TestEvaluateQuality:
    """Tests for annotation quality scoring."""

    def test_defaults_without_pattern(self, learner):
        score = learner.evaluate_annotation_quality(make_annotation(confidence=0.9), "Mallard")

        assert score.bounding_box_quality == pytest.approx(0.7)
        assert score.prompt_effectiveness == pytest.approx(0.7)
        assert score.overall_quality == pytest.approx(0.9 * 0.4 + 0.7 * 0.3 + 0.7 * 0.3)

    @pytest.mark.asyncio
    async def test_scores_against_learned_box(self, learner):
        for _ in range(3):
            await learner.learn_from_annotations([make_annotation(confidence=0.9)], MALLARD)

        on_target = learner.evaluate_annotation_quality(make_annotation(), "Mallard")
        far_away = learner.evaluate_annotation_quality(
            make_annotation(box={"x": 400, "y": 400, "width": 50, "height": 40}), "Mallard"
        )

        assert on_target.bounding_box_quality == pytest.approx(1.0)
        assert on_target.prompt_effectiveness == pytest.approx(0.9)
        assert far_away.bounding_box_quality < 0.01
        assert 0.0 <= far_away.overall_quality <= 1.0


class TestProjections:
    """Tests for recommendations, analytics and export."""

    @pytest.mark.asyncio
    async def test_recommended_features_order(self, learner):
        await learner.learn_from_annotations(
            [make_annotation("el pico"), make_annotation("el ala", 0.95)], MALLARD
        )
        await learner.learn_from_annotations([make_annotation("la cola")], MALLARD)
        await learner.learn_from_annotations([make_annotation("la cola")], MALLARD)

        assert learner.get_recommended_features("Mallard") == ["la cola", "el ala", "el pico"]
        assert learner.get_recommended_features("Mallard", limit=1) == ["la cola"]
        assert learner.get_recommended_features("Heron") == []

    @pytest.mark.asyncio
    async def test_analytics(self, learner):
        await learner.learn_from_annotations(
            [make_annotation("el pico"), make_annotation("el ala")], MALLARD
        )
        await learner.learn_from_annotations([make_annotation("el pico")], {"species": "Heron"})
        await learner.learn_from_rejection(make_annotation(), "blurry", MALLARD)

        analytics = learner.get_analytics()

        assert analytics["total_patterns"] == 3
        assert analytics["species_tracked"] == 2
        assert analytics["total_observations"] == 3
        assert analytics["species_breakdown"][0] == {"species": "Mallard", "annotations": 2, "features": 2}
        assert analytics["rejection_totals"] == {"low_quality": 1}
        assert analytics["corrections_tracked"] == 0

    @pytest.mark.asyncio
    async def test_export_is_json_ready(self, learner):
        await learner.learn_from_annotations([make_annotation()], MALLARD)

        data = learner.export_patterns()

        assert data["patterns"][0]["feature"] == "el pico"
        assert isinstance(data["saved_at"], str)
        assert PatternSnapshot.model_validate(data).patterns[0].species == "Mallard"

    @pytest.mark.asyncio
    async def test_reset(self, learner):
        await learner.learn_from_annotations([make_annotation()], MALLARD)
        learner.reset()
        assert learner.pattern_count == 0


class TestPersistence:
    """Tests for snapshot persistence and restore."""

    @pytest.mark.asyncio
    async def test_round_trip_through_local_store(self, settings, tmp_path):
        store = PatternStore(LocalBlobStore(tmp_path / "patterns"))
        learner = PatternLearner(store=store, settings=settings)
        await learner.ensure_initialized()
        await learner.learn_from_annotations([make_annotation()], MALLARD)
        await learner.learn_from_rejection(make_annotation(), "blurry", MALLARD)
        await learner.learn_from_correction(
            make_annotation(),
            make_annotation(box={"x": 110, "y": 150, "width": 50, "height": 40}),
            MALLARD,
        )

        restored = PatternLearner(store=store, settings=settings)
        await restored.ensure_initialized()

        assert restored.get_pattern("Mallard", "el pico").observation_count == 2
        assert restored.get_rejection_record("Mallard", "el pico").counts == {"low_quality": 1}
        assert len(restored.get_corrections("Mallard", "el pico")) == 1

    @pytest.mark.asyncio
    async def test_restore_failure_starts_empty(self, settings):
        store = AsyncMock()
        store.load.side_effect = RuntimeError("storage down")
        learner = PatternLearner(store=store, settings=settings)

        await learner.ensure_initialized()

        assert learner.pattern_count == 0

    @pytest.mark.asyncio
    async def test_initialize_loads_once(self, settings):
        store = AsyncMock()
        store.load.return_value = None
        learner = PatternLearner(store=store, settings=settings)

        await learner.ensure_initialized()
        await learner.ensure_initialized()

        assert store.load.await_count == 1

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_memory_state(self, settings):
        """A failing save is logged and learning still applies in memory."""
        store = AsyncMock()
        store.save.side_effect = RuntimeError("upload failed")
        learner = PatternLearner(store=store, settings=settings)

        await learner.learn_from_annotations([make_annotation()], MALLARD)

        assert learner.get_pattern("Mallard", "el pico").observation_count == 1
        assert store.save.await_count == 1
