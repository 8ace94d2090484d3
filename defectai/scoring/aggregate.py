from __future__ import annotations

from collections.abc import Iterable

from defectai.models import OK_LABEL, AggregatedVerdict, ClassifierSample


def aggregate(buffer: Iterable[ClassifierSample]) -> AggregatedVerdict | None:
    """Majority-vote a buffer of samples into one verdict.

    The label with the most votes wins; ties go to the label seen first in
    buffer order. Confidence is averaged over the winning label's samples only.
    Returns ``None`` for an empty buffer.
    """

    votes: dict[str, int] = {}
    confidence_sums: dict[str, float] = {}
    for sample in buffer:
        votes[sample.label] = votes.get(sample.label, 0) + 1
        confidence_sums[sample.label] = confidence_sums.get(sample.label, 0.0) + float(sample.confidence)

    if not votes:
        return None

    best_label = ""
    best_votes = 0
    for label, count in votes.items():
        if count > best_votes:
            best_label = label
            best_votes = count

    return build_verdict(best_label, confidence_sums[best_label] / best_votes)


def verdict_from_sample(sample: ClassifierSample | None) -> AggregatedVerdict | None:
    """Verdict for a single sample, bypassing temporal aggregation."""

    if sample is None:
        return None
    return build_verdict(sample.label, float(sample.confidence))


def build_verdict(label: str, confidence: float) -> AggregatedVerdict:
    is_defective = label != OK_LABEL
    return AggregatedVerdict(
        label=label,
        confidence=confidence,
        is_defective=is_defective,
        defect_type=label if is_defective else None,
        status="defective" if is_defective else "ok",
    )
