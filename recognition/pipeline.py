"""Pure face-matching functions used by the attendance capture workflow.

Nothing in this module touches the database, the camera or the model. It
normalises raw DeepFace payloads into immutable feature vectors and turns a
set of detected vectors plus a set of enrolled templates into the set of
student ids considered present.

Matching is *independent thresholding*: every detected face is compared with
every template and each pair closer than the threshold marks that template's
student present. No one-to-one assignment between faces and students is
attempted, so one face may mark several students whose templates are close
to it, and one student may be matched by several faces.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Hashable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_DISTANCE_THRESHOLD = 0.6

FeatureVector = np.ndarray


class VectorLengthMismatch(ValueError):
    """Raised when two feature vectors of different lengths are compared."""


def as_feature_vector(values: Iterable[float] | np.ndarray) -> FeatureVector:
    """Return ``values`` as a read-only one-dimensional float vector.

    Raises:
        ValueError: If the values cannot be coerced to floats or the result is
            empty or not one-dimensional.
    """

    if not isinstance(values, np.ndarray):
        values = list(values)
    try:
        vector = np.array(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Feature vector values must be numeric: {exc}") from exc

    if vector.ndim != 1 or vector.size == 0:
        raise ValueError("Feature vectors must be non-empty and one-dimensional.")

    vector.setflags(write=False)
    return vector


@dataclass(frozen=True)
class EnrolledTemplate:
    """The stored feature vector of one student."""

    student_id: Hashable
    vector: FeatureVector

    def __hash__(self) -> int:
        return hash((self.student_id, self.vector.tobytes()))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnrolledTemplate):
            return NotImplemented
        return self.student_id == other.student_id and np.array_equal(self.vector, other.vector)


def euclidean_distance(first: FeatureVector, second: FeatureVector) -> float:
    """Return the L2 distance between two vectors of equal length.

    Raises:
        VectorLengthMismatch: If the vectors differ in length. A mismatch
            means templates and detections come from different models and
            must never be silently skipped.
    """

    if first.shape != second.shape:
        raise VectorLengthMismatch(
            f"Cannot compare feature vectors of length {first.shape[0]} and {second.shape[0]}."
        )
    return float(np.linalg.norm(first - second))


def match_detected_faces(
    detected: Iterable[FeatureVector],
    templates: Iterable[EnrolledTemplate],
    threshold: float = DEFAULT_DISTANCE_THRESHOLD,
) -> FrozenSet[Hashable]:
    """Return the ids of every student whose template is close to a detected face.

    A template matches when its distance to at least one detected vector is
    strictly less than ``threshold``. The result is a set, so the iteration
    order of either input never changes it and a student matched by several
    faces appears once. Empty inputs yield an empty set.
    """

    detected_vectors = list(detected)
    template_list = list(templates)
    if not detected_vectors or not template_list:
        return frozenset()

    matched: set[Hashable] = set()
    for face in detected_vectors:
        for template in template_list:
            distance = euclidean_distance(face, template.vector)
            if distance < threshold:
                matched.add(template.student_id)

    logger.debug(
        "Matched %d of %d templates against %d detected faces (threshold %.3f)",
        len(matched),
        len(template_list),
        len(detected_vectors),
        threshold,
    )
    return frozenset(matched)


# --- DeepFace payload normalisation -----------------------------------------


def extract_embedding(representation: Any) -> Tuple[Optional[FeatureVector], Optional[Dict[str, int]]]:
    """Normalise a single DeepFace representation into a feature vector.

    Returns:
        A tuple of the vector (``None`` when no usable embedding exists) and
        the optional facial area metadata.
    """

    embedding_values: Optional[Sequence[float]] = None
    facial_area: Optional[Dict[str, int]] = None

    if isinstance(representation, dict):
        embedding_values = representation.get("embedding")
        area = representation.get("facial_area")
        facial_area = area if isinstance(area, dict) else None
    elif isinstance(representation, (list, tuple, np.ndarray)):
        embedding_values = representation

    if embedding_values is None:
        return None, facial_area

    try:
        return as_feature_vector(embedding_values), facial_area
    except ValueError:
        logger.debug("Unable to coerce embedding values to floats: %r", embedding_values)
        return None, facial_area


def extract_all_embeddings(representations: Any) -> List[Tuple[FeatureVector, Optional[Dict[str, int]]]]:
    """Extract a vector for every face in a ``DeepFace.represent`` payload.

    Args:
        representations: A list of ``{"embedding": ..., "facial_area": ...}``
            dicts (one per face), a single such dict, or a 2-D array of raw
            embeddings.

    Returns:
        One ``(vector, facial_area)`` tuple per usable face, in payload order.
    """

    if isinstance(representations, dict):
        items: Iterable[Any] = [representations]
    elif isinstance(representations, np.ndarray) and representations.ndim == 2:
        items = list(representations)
    elif isinstance(representations, list):
        items = representations
    else:
        logger.debug("No valid embeddings found in representations: %r", type(representations))
        return []

    results: List[Tuple[FeatureVector, Optional[Dict[str, int]]]] = []
    for item in items:
        vector, area = extract_embedding(item)
        if vector is not None:
            results.append((vector, area))
    return results


__all__ = [
    "DEFAULT_DISTANCE_THRESHOLD",
    "EnrolledTemplate",
    "FeatureVector",
    "VectorLengthMismatch",
    "as_feature_vector",
    "euclidean_distance",
    "extract_all_embeddings",
    "extract_embedding",
    "match_detected_faces",
]
