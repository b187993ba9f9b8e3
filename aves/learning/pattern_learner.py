"""
Pattern Learner.

Turns reviewer feedback on AI annotations into a per-(species, feature)
statistical profile and uses it to enrich future vision prompts and score
incoming annotations.

Four events update the profile:

- new annotations from the vision collaborator (plain observations)
- approvals (strong positive signal)
- rejections (confidence penalty plus a categorized rejection count)
- position corrections (strongest box signal, plus a correction history)

Learning is best-effort: every mutator logs and swallows its own failures,
including persistence failures, so the review workflow is never blocked.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Iterable, Mapping

from loguru import logger

from aves.learning.models import (
    Annotation,
    BoundingBox,
    BoundingBoxPattern,
    BoxDelta,
    LearnedPattern,
    PatternKey,
    PatternSnapshot,
    PositionAdjustedFeature,
    PositionCorrection,
    QualityScore,
    RejectionRecord,
    utc_now,
)
from aves.learning.pattern_store import PatternStore, create_pattern_store
from aves.learning.rejection import RejectionCategory, coerce_rejection_category
from config import Settings, get_settings

# Vision collaborator default when an annotation carries no confidence
DEFAULT_ANNOTATION_CONFIDENCE = 0.8
# Sub-score used when nothing has been learned about a (species, feature) pair
DEFAULT_QUALITY = 0.7
OBSERVATION_WEIGHT = 1.0
MAX_PROMPT_FRAGMENT_CHARS = 160
MAX_IMAGE_CHARACTERISTICS = 20

QUALITY_WEIGHTS = {"confidence": 0.4, "bounding_box": 0.3, "prompt": 0.3}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _running_average(current: float, new_value: float, count: int) -> float:
    return (current * count + new_value) / (count + 1)


def _effective_confidence(annotation: Annotation) -> float:
    if annotation.confidence is None:
        return DEFAULT_ANNOTATION_CONFIDENCE
    return annotation.confidence


def _coerce_annotation(annotation: Annotation | Mapping[str, Any]) -> Annotation:
    if isinstance(annotation, Annotation):
        return annotation
    return Annotation.model_validate(annotation)


def average_delta(corrections: Iterable[PositionCorrection]) -> BoxDelta:
    """Mean correction vector over a correction history."""
    corrections = list(corrections)
    if not corrections:
        return BoxDelta(delta_x=0.0, delta_y=0.0, delta_width=0.0, delta_height=0.0)
    n = len(corrections)
    return BoxDelta(
        delta_x=sum(c.delta.delta_x for c in corrections) / n,
        delta_y=sum(c.delta.delta_y for c in corrections) / n,
        delta_width=sum(c.delta.delta_width for c in corrections) / n,
        delta_height=sum(c.delta.delta_height for c in corrections) / n,
    )


class PatternLearner:
    """
    Self-improving store of learned annotation patterns.

    Construct once at process start and pass it to whatever orchestrates
    the review workflow. ``ensure_initialized()`` must be awaited before use.
    """

    def __init__(self, store: PatternStore | None = None, settings: Settings | None = None):
        settings = settings or get_settings()
        self.store = store

        self.confidence_threshold = settings.pattern_confidence_threshold
        self.min_prompt_observations = settings.pattern_min_prompt_observations
        self.min_samples = settings.pattern_min_samples
        self.max_prompt_history = settings.pattern_max_prompt_history
        self.max_box_patterns = settings.pattern_max_box_patterns
        self.max_corrections = settings.pattern_max_corrections
        self.approval_boost = settings.pattern_approval_boost
        self.rejection_penalty = settings.pattern_rejection_penalty
        self.approval_weight = settings.pattern_approval_weight
        self.correction_weight = settings.pattern_correction_weight
        self.rejection_streak = settings.pattern_rejection_streak

        self._patterns: dict[PatternKey, LearnedPattern] = {}
        self._rejections: dict[PatternKey, RejectionRecord] = {}
        self._corrections: dict[PatternKey, list[PositionCorrection]] = {}

        self._initialized = False
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PatternLearner:
        settings = settings or get_settings()
        return cls(store=create_pattern_store(settings), settings=settings)

    # ========================================
    # Lifecycle
    # ========================================

    async def ensure_initialized(self) -> None:
        """Restore persisted state once. Safe to call repeatedly."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._restore()
            self._initialized = True

    async def _restore(self) -> None:
        if self.store is None:
            return
        try:
            snapshot = await self.store.load()
        except Exception:
            logger.exception("Failed to restore learned patterns, starting empty")
            return
        if snapshot is None:
            return

        self._patterns = {p.key: p for p in snapshot.patterns}
        self._rejections = {r.key: r for r in snapshot.rejections}
        self._corrections = {}
        for correction in snapshot.corrections:
            self._corrections.setdefault(correction.key, []).append(correction)
        logger.info(
            "Restored {} patterns, {} rejection records, {} corrections",
            len(self._patterns),
            len(self._rejections),
            len(snapshot.corrections),
        )

    def reset(self) -> None:
        """Forget everything learned in this process."""
        self._patterns.clear()
        self._rejections.clear()
        self._corrections.clear()

    # ========================================
    # Learning events
    # ========================================

    async def learn_from_annotations(
        self,
        annotations: list[Annotation | Mapping[str, Any]],
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Learn from a fresh batch of vision annotations.

        Args:
            annotations: Annotations for one image
            metadata: Optional ``species``, ``image_characteristics`` and ``prompt``

        Raises:
            TypeError: If ``annotations`` is not a list
        """
        if not isinstance(annotations, list):
            raise TypeError(f"annotations must be a list, got {type(annotations).__name__}")

        metadata = metadata or {}
        species = metadata.get("species")
        try:
            parsed = [_coerce_annotation(a) for a in annotations]
            accepted = [a for a in parsed if _effective_confidence(a) >= self.confidence_threshold]
            if not accepted:
                logger.debug("No high-confidence annotations to learn from")
                return

            logger.info(
                "Learning from {} of {} annotations (species={})",
                len(accepted),
                len(parsed),
                species,
            )
            for annotation in accepted:
                self._observe(annotation, species, metadata)

            await self._persist()
        except Exception:
            logger.exception("Failed to learn from annotations")

    async def learn_from_approval(
        self,
        annotation: Annotation | Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Reinforce a pattern from a reviewer approval."""
        context = context or {}
        try:
            approved = _coerce_annotation(annotation)
            key = PatternKey(context.get("species"), approved.spanish_term)
            pattern = self._get_or_create(key, approved)

            # The approval counts as a full-confidence observation plus a boost
            pattern.average_confidence = _clamp(
                _running_average(pattern.average_confidence, 1.0, pattern.observation_count)
                + self.approval_boost
            )
            if approved.bounding_box:
                self._fold_box(pattern, approved.bounding_box, self.approval_weight)
            self._record_pronunciation(pattern, approved.pronunciation)
            pattern.observation_count += 1
            pattern.last_updated = utc_now()
            self._reset_streak(key)

            logger.info(
                f"Learned from approval of {key}: confidence={pattern.average_confidence:.3f}"
            )
            await self._persist()
        except Exception:
            logger.exception("Failed to learn from approval")

    async def learn_from_rejection(
        self,
        annotation: Annotation | Mapping[str, Any],
        reason: str | RejectionCategory | None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Penalize a pattern and count the categorized rejection."""
        context = context or {}
        try:
            rejected = _coerce_annotation(annotation)
            key = PatternKey(context.get("species"), rejected.spanish_term)
            category = coerce_rejection_category(reason)

            pattern = self._patterns.get(key)
            if pattern is not None:
                pattern.average_confidence = _clamp(
                    pattern.average_confidence - self.rejection_penalty
                )
                pattern.last_updated = utc_now()

            record = self._rejections.get(key)
            if record is None:
                record = RejectionRecord(feature=key.feature, species=key.species)
                self._rejections[key] = record

            record.counts[category.value] = record.counts.get(category.value, 0) + 1
            if record.streak_category == category.value:
                record.streak_length += 1
            else:
                record.streak_category = category.value
                record.streak_length = 1
            if (
                record.streak_length >= self.rejection_streak
                and category.value not in record.escalated
            ):
                record.escalated.append(category.value)
                logger.warning(
                    "{} rejected {} times in a row for {}, escalating warning",
                    key,
                    record.streak_length,
                    category.value,
                )
            record.last_note = reason.value if isinstance(reason, RejectionCategory) else reason
            record.last_rejected_at = utc_now()

            logger.info(f"Learned from rejection of {key}: category={category.value}")
            await self._persist()
        except Exception:
            logger.exception("Failed to learn from rejection")

    async def learn_from_correction(
        self,
        original: Annotation | Mapping[str, Any],
        corrected: Annotation | Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Learn from a reviewer moving or resizing an AI box."""
        context = context or {}
        try:
            before = _coerce_annotation(original)
            after = _coerce_annotation(corrected)
            if before.bounding_box is None or after.bounding_box is None:
                logger.debug("Skipping correction learning, bounding box missing")
                return

            key = PatternKey(context.get("species"), before.spanish_term)
            delta = BoxDelta.between(before.bounding_box, after.bounding_box)

            history = self._corrections.setdefault(key, [])
            history.append(
                PositionCorrection(
                    feature=key.feature,
                    species=key.species,
                    original=before.bounding_box,
                    corrected=after.bounding_box,
                    delta=delta,
                    reviewer_id=context.get("reviewer_id"),
                )
            )
            if len(history) > self.max_corrections:
                del history[: len(history) - self.max_corrections]

            pattern = self._get_or_create(key, before)
            if pattern.observation_count == 0:
                pattern.average_confidence = _clamp(_effective_confidence(after))
            self._fold_box(pattern, after.bounding_box, self.correction_weight)
            pattern.average_confidence = _clamp(pattern.average_confidence + self.approval_boost)
            pattern.observation_count += 1
            pattern.last_updated = utc_now()
            self._reset_streak(key)

            logger.info(
                "Learned from correction of {}: magnitude={:.2f}, history={}",
                key,
                delta.magnitude,
                len(history),
            )
            await self._persist()
        except Exception:
            logger.exception("Failed to learn from correction")

    # ========================================
    # Prompt enhancement and scoring
    # ========================================

    def enhance_prompt(
        self,
        base_prompt: str,
        species: str | None = None,
        target_features: list[str] | None = None,
        image_characteristics: list[str] | None = None,
    ) -> str:
        """
        Append learned guidance to a vision prompt.

        Returns ``base_prompt`` unchanged when the requested patterns hold
        fewer than ``min_prompt_observations`` observations in total.
        """
        try:
            relevant = self._relevant_patterns(species, target_features)
            total = sum(p.observation_count for p in relevant)
            if not relevant or total < self.min_prompt_observations:
                return base_prompt

            features = target_features or [p.feature for p in relevant]
            sections = [
                self._species_guidance(species),
                self._prompt_fragment_guidance(relevant),
                self._feature_guidance(relevant, image_characteristics),
                self._correction_guidance(species, features),
                self._rejection_warnings(species, features),
            ]
            enhanced = base_prompt + "".join(f"\n\n{s}" for s in sections if s)

            logger.debug(
                "Enhanced prompt for species={} with {} sections",
                species,
                sum(1 for s in sections if s),
            )
            return enhanced
        except Exception:
            logger.exception("Failed to enhance prompt")
            return base_prompt

    def _species_guidance(self, species: str | None) -> str | None:
        if not species:
            return None
        patterns = [p for p in self._patterns.values() if p.species == species]
        if len(patterns) < self.min_samples:
            return None
        top = self.get_recommended_features(species, limit=5)
        total = sum(p.observation_count for p in patterns)
        return (
            f"SPECIES-SPECIFIC GUIDANCE for {species}:\n"
            f"- Common features to prioritize: {', '.join(top)}\n"
            f"- Based on {total} previous annotations"
        )

    def _prompt_fragment_guidance(self, patterns: list[LearnedPattern]) -> str | None:
        fragments: list[str] = []
        for pattern in sorted(patterns, key=lambda p: p.average_confidence, reverse=True):
            for fragment in pattern.successful_prompts:
                if fragment not in fragments:
                    fragments.append(fragment)
        if not fragments:
            return None
        lines = "\n".join(f'- "{f[:MAX_PROMPT_FRAGMENT_CHARS]}"' for f in fragments[:3])
        return f"SUCCESSFUL PROMPT PATTERNS:\n{lines}"

    def _feature_guidance(
        self,
        patterns: list[LearnedPattern],
        image_characteristics: list[str] | None,
    ) -> str | None:
        wanted = set(image_characteristics or [])
        hints = []
        for pattern in patterns:
            box = pattern.primary_box
            if box is None or pattern.observation_count < self.min_samples:
                continue
            hint = (
                f"- {pattern.feature}: typically centered at ({box.center_x:.2f}, {box.center_y:.2f}) "
                f"with size {box.width:.2f}x{box.height:.2f}"
            )
            if wanted & set(pattern.metadata.get("image_characteristics", [])):
                hint += " (seen in similar images)"
            hints.append(hint)
        if not hints:
            return None
        return (
            "LEARNED FEATURE PATTERNS:\n"
            + "\n".join(hints)
            + "\nNote: Use these as reference points, not strict requirements"
        )

    def _correction_guidance(self, species: str | None, features: list[str]) -> str | None:
        hints = []
        for adjusted in self.get_position_adjusted_features(species, features):
            delta = adjusted.adjustment
            if delta is None:
                continue
            hints.append(
                f"- {adjusted.feature}: Adjust position by ({delta.delta_x:.1f}, {delta.delta_y:.1f}) "
                f"and size by ({delta.delta_width:.1f}, {delta.delta_height:.1f}) "
                f"[Based on {adjusted.based_on_corrections} user corrections]"
            )
        if not hints:
            return None
        return (
            "CORRECTION-BASED ADJUSTMENTS:\n"
            + "\n".join(hints)
            + "\nNote: These adjustments are learned from expert corrections"
        )

    def _rejection_warnings(self, species: str | None, features: list[str]) -> str | None:
        warnings = []
        for feature in features:
            record = self._rejections.get(PatternKey(species, feature))
            if record is None:
                continue
            common = sorted(
                ((c, n) for c, n in record.counts.items() if n >= 2),
                key=lambda item: item[1],
                reverse=True,
            )[:3]
            if common:
                reasons = ", ".join(f'"{c}" ({n}x)' for c, n in common)
                warnings.append(f"- {feature}: Avoid patterns that caused: {reasons}")
            for category in record.escalated:
                warnings.append(
                    f"- {feature}: REPEATED {category} rejections, verify carefully before annotating"
                )
        if not warnings:
            return None
        return "COMMON REJECTION PATTERNS TO AVOID:\n" + "\n".join(warnings)

    def evaluate_annotation_quality(
        self,
        annotation: Annotation | Mapping[str, Any],
        species: str | None = None,
    ) -> QualityScore:
        """Score an annotation against what has been learned for its feature."""
        candidate = _coerce_annotation(annotation)
        confidence = _clamp(_effective_confidence(candidate))
        box_quality = DEFAULT_QUALITY
        prompt_effectiveness = DEFAULT_QUALITY

        pattern = self._patterns.get(PatternKey(species, candidate.spanish_term))
        if pattern is not None and pattern.observation_count >= self.min_samples:
            box = pattern.primary_box
            if box is not None and candidate.bounding_box is not None:
                cx, cy = candidate.bounding_box.center
                distance_x = abs(cx - box.center_x) / math.sqrt(box.variance_x + 0.01)
                distance_y = abs(cy - box.center_y) / math.sqrt(box.variance_y + 0.01)
                box_quality = math.exp(-math.hypot(distance_x, distance_y) / 2)
            prompt_effectiveness = pattern.average_confidence

        box_quality = _clamp(box_quality)
        prompt_effectiveness = _clamp(prompt_effectiveness)
        overall = (
            confidence * QUALITY_WEIGHTS["confidence"]
            + box_quality * QUALITY_WEIGHTS["bounding_box"]
            + prompt_effectiveness * QUALITY_WEIGHTS["prompt"]
        )
        return QualityScore(
            confidence=confidence,
            bounding_box_quality=box_quality,
            prompt_effectiveness=prompt_effectiveness,
            overall_quality=_clamp(overall),
        )

    # ========================================
    # Read-only projections
    # ========================================

    def get_recommended_features(self, species: str, limit: int = 8) -> list[str]:
        """Feature names for a species, most observed first, then most confident."""
        patterns = [p for p in self._patterns.values() if p.species == species]
        patterns.sort(key=lambda p: (p.observation_count, p.average_confidence), reverse=True)
        return [p.feature for p in patterns[:limit]]

    def get_position_adjusted_features(
        self,
        species: str | None,
        features: list[str],
    ) -> list[PositionAdjustedFeature]:
        """Learned box and correction vector, per requested feature."""
        results = []
        for feature in features:
            key = PatternKey(species, feature)
            pattern = self._patterns.get(key)
            primary = pattern.primary_box if pattern is not None else None
            corrections = self._corrections.get(key, [])
            has_adjustment = len(corrections) >= self.min_samples
            results.append(
                PositionAdjustedFeature(
                    feature=feature,
                    bounding_box=primary.to_box() if primary is not None else None,
                    adjustment=average_delta(corrections) if has_adjustment else None,
                    based_on_corrections=len(corrections) if has_adjustment else 0,
                )
            )
        return results

    def get_pattern(self, species: str | None, feature: str) -> LearnedPattern | None:
        return self._patterns.get(PatternKey(species, feature))

    def get_rejection_record(self, species: str | None, feature: str) -> RejectionRecord | None:
        return self._rejections.get(PatternKey(species, feature))

    def get_corrections(self, species: str | None, feature: str) -> list[PositionCorrection]:
        return list(self._corrections.get(PatternKey(species, feature), []))

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)

    def get_analytics(self) -> dict[str, Any]:
        """
        Summary of the in-memory patterns.

        ``observations`` counts every learning event, including unreviewed
        annotations, so it is not a count of approved annotations.
        """
        patterns = list(self._patterns.values())
        top_features = [
            {
                "feature": p.feature,
                "species": p.species,
                "observations": p.observation_count,
                "confidence": round(p.average_confidence, 4),
            }
            for p in sorted(patterns, key=lambda p: p.observation_count, reverse=True)[:10]
        ]

        by_species: dict[str, dict[str, int]] = {}
        for p in patterns:
            if p.species is None:
                continue
            entry = by_species.setdefault(p.species, {"annotations": 0, "features": 0})
            entry["annotations"] += p.observation_count
            entry["features"] += 1
        species_breakdown = sorted(
            ({"species": s, **counts} for s, counts in by_species.items()),
            key=lambda row: row["annotations"],
            reverse=True,
        )

        rejection_totals: dict[str, int] = {}
        for record in self._rejections.values():
            for category, count in record.counts.items():
                rejection_totals[category] = rejection_totals.get(category, 0) + count

        return {
            "total_patterns": len(patterns),
            "species_tracked": len(by_species),
            "total_observations": sum(p.observation_count for p in patterns),
            "top_features": top_features,
            "species_breakdown": species_breakdown,
            "rejection_totals": rejection_totals,
            "corrections_tracked": sum(len(h) for h in self._corrections.values()),
        }

    def export_patterns(self) -> dict[str, Any]:
        """JSON-ready dump of the full learned state."""
        return self._snapshot().model_dump(mode="json")

    # ========================================
    # Internals
    # ========================================

    def _relevant_patterns(
        self,
        species: str | None,
        target_features: list[str] | None,
    ) -> list[LearnedPattern]:
        if target_features:
            found = (self._patterns.get(PatternKey(species, f)) for f in target_features)
            return [p for p in found if p is not None]
        return [p for p in self._patterns.values() if p.species == species]

    def _get_or_create(self, key: PatternKey, annotation: Annotation) -> LearnedPattern:
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = LearnedPattern(
                feature=key.feature,
                species=key.species,
                metadata={
                    "avg_difficulty_level": annotation.difficulty_level,
                    "pronunciations": [],
                    "image_characteristics": [],
                },
            )
            self._patterns[key] = pattern
            logger.debug(f"Created pattern {key}")
        return pattern

    def _observe(
        self,
        annotation: Annotation,
        species: str | None,
        metadata: Mapping[str, Any],
    ) -> None:
        key = PatternKey(species, annotation.spanish_term)
        pattern = self._get_or_create(key, annotation)
        n = pattern.observation_count

        pattern.average_confidence = _clamp(
            _running_average(pattern.average_confidence, _effective_confidence(annotation), n)
        )
        if annotation.difficulty_level is not None:
            current = pattern.metadata.get("avg_difficulty_level")
            pattern.metadata["avg_difficulty_level"] = (
                annotation.difficulty_level
                if current is None or n == 0
                else _running_average(current, annotation.difficulty_level, n)
            )
        self._record_pronunciation(pattern, annotation.pronunciation)

        characteristics = pattern.metadata.setdefault("image_characteristics", [])
        for item in metadata.get("image_characteristics") or []:
            if item not in characteristics:
                characteristics.append(item)
        del characteristics[:-MAX_IMAGE_CHARACTERISTICS]

        prompt = metadata.get("prompt")
        if prompt:
            prompts = [p for p in pattern.successful_prompts if p != prompt]
            pattern.successful_prompts = [prompt, *prompts][: self.max_prompt_history]

        if annotation.bounding_box:
            self._fold_box(pattern, annotation.bounding_box, OBSERVATION_WEIGHT)

        pattern.observation_count = n + 1
        pattern.last_updated = utc_now()

    @staticmethod
    def _record_pronunciation(pattern: LearnedPattern, pronunciation: str | None) -> None:
        if not pronunciation:
            return
        pronunciations = pattern.metadata.setdefault("pronunciations", [])
        if pronunciation not in pronunciations:
            pronunciations.append(pronunciation)

    def _fold_box(self, pattern: LearnedPattern, box: BoundingBox, weight: float) -> None:
        """Merge a box into the nearest cluster with a weighted incremental mean."""
        cx, cy = box.center
        nearest: BoundingBoxPattern | None = None
        nearest_distance = math.inf
        for cluster in pattern.bounding_boxes:
            distance = math.hypot(cx - cluster.center_x, cy - cluster.center_y)
            radius = 0.5 * max(cluster.width, cluster.height)
            if distance <= radius and distance < nearest_distance:
                nearest, nearest_distance = cluster, distance

        if nearest is None:
            pattern.bounding_boxes.append(
                BoundingBoxPattern(
                    center_x=cx,
                    center_y=cy,
                    width=box.width,
                    height=box.height,
                    sample_size=weight,
                )
            )
            if len(pattern.bounding_boxes) > self.max_box_patterns:
                primary = pattern.primary_box
                oldest = next(c for c in pattern.bounding_boxes if c is not primary)
                pattern.bounding_boxes.remove(oldest)
            return

        total = nearest.sample_size + weight
        dx = cx - nearest.center_x
        dy = cy - nearest.center_y
        mean_x = nearest.center_x + weight * dx / total
        mean_y = nearest.center_y + weight * dy / total
        nearest.variance_x = (nearest.variance_x * nearest.sample_size + weight * dx * (cx - mean_x)) / total
        nearest.variance_y = (nearest.variance_y * nearest.sample_size + weight * dy * (cy - mean_y)) / total
        nearest.center_x = mean_x
        nearest.center_y = mean_y
        nearest.width += weight * (box.width - nearest.width) / total
        nearest.height += weight * (box.height - nearest.height) / total
        nearest.sample_size = total

    def _reset_streak(self, key: PatternKey) -> None:
        record = self._rejections.get(key)
        if record is not None:
            record.streak_category = None
            record.streak_length = 0

    def _snapshot(self) -> PatternSnapshot:
        return PatternSnapshot(
            patterns=[p.model_copy(deep=True) for p in self._patterns.values()],
            rejections=[r.model_copy(deep=True) for r in self._rejections.values()],
            corrections=[c for history in self._corrections.values() for c in history],
        )

    async def _persist(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(self._snapshot())
        except Exception as e:
            logger.error(f"Failed to persist learned patterns: {e}")
