from __future__ import annotations

import importlib
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import numpy as np

from defectai.models import ClassifierSample

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Anything with ``classify(image)``; a label->confidence mapping is accepted too."""

    def classify(self, image: np.ndarray) -> ClassifierSample | Mapping[str, float] | None:
        ...


def load_classifier(factory_path: str, **options: Any) -> Classifier:
    """Import ``package.module:factory`` and call it with ``options``."""

    module_name, sep, attr_name = factory_path.partition(":")
    if not sep or not module_name.strip() or not attr_name.strip():
        raise ValueError(
            f"Invalid classifier factory '{factory_path}'. Expected 'package.module:factory'."
        )

    try:
        module = importlib.import_module(module_name.strip())
    except ImportError as exc:
        raise RuntimeError(f"Unable to import classifier module '{module_name}': {exc}") from exc

    factory = getattr(module, attr_name.strip(), None)
    if factory is None or not callable(factory):
        raise RuntimeError(f"Classifier factory '{attr_name}' not found in module '{module_name}'.")

    classifier = factory(**options)
    if not callable(getattr(classifier, "classify", None)):
        raise RuntimeError(f"Object returned by '{factory_path}' has no classify(image) method.")

    logger.info("Loaded classifier from %s", factory_path)
    return classifier


def classify_safely(classifier: Classifier, image: np.ndarray) -> ClassifierSample | None:
    """Run one classification; any failure counts as "no sample this frame"."""

    try:
        sample = classifier.classify(image)
    except Exception as exc:
        logger.warning("Classification failed for this frame (%s); continuing without a sample.", exc)
        return None

    if sample is None:
        return None
    if isinstance(sample, Mapping):
        try:
            return sample_from_confidences(sample)
        except (TypeError, ValueError) as exc:
            logger.warning("Classifier returned unusable confidences (%s); ignoring.", exc)
            return None
    if not isinstance(sample, ClassifierSample):
        logger.warning("Classifier returned %s instead of ClassifierSample; ignoring.", type(sample).__name__)
        return None
    return sample


def sample_from_confidences(confidences: Mapping[str, float]) -> ClassifierSample | None:
    """Build a sample from a label->confidence mapping; the top label wins."""

    if not confidences:
        return None

    per_class = {str(label): float(score) for label, score in confidences.items()}
    label = max(per_class, key=lambda key: per_class[key])
    return ClassifierSample(
        label=label,
        confidence=_clamp(per_class[label]),
        per_class_confidence=per_class,
    )


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
