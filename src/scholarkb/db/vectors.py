"""Float32 vector encoding for the embeddings table.

Vectors are stored in sqlite-vec's compact float32 blob format so the
``vec_distance_cosine`` SQL function can compare them directly.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlite_vec import serialize_float32


def to_blob(vector: Sequence[float]) -> bytes:
    """Encode *vector* as a packed float32 blob.

    Raises:
        ValueError: If *vector* is empty.
    """
    if not vector:
        raise ValueError("Cannot store an empty embedding vector")
    return serialize_float32(list(vector))


def distance_to_similarity(distance: float) -> float:
    """Map cosine distance (0 = identical, 2 = opposite) to a 0–1 similarity."""
    return max(0.0, min(1.0, 1.0 - distance))
