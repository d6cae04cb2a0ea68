"""Tests for float32 vector blob encoding."""

from __future__ import annotations

import struct

import pytest

from scholarkb.db.vectors import distance_to_similarity, to_blob


def test_blob_is_four_bytes_per_dimension():
    assert len(to_blob([0.1, 0.2, 0.3])) == 12


def test_blob_is_little_endian_float32():
    assert struct.unpack("<3f", to_blob([0.5, -1.0, 2.0])) == (0.5, -1.0, 2.0)


def test_empty_vector_rejected():
    with pytest.raises(ValueError, match="empty"):
        to_blob([])


@pytest.mark.parametrize(
    "distance, similarity",
    [(0.0, 1.0), (0.25, 0.75), (1.0, 0.0), (2.0, 0.0)],
)
def test_distance_to_similarity_clamped(distance, similarity):
    assert distance_to_similarity(distance) == pytest.approx(similarity)
