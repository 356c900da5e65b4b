"""
Unit tests for point matching
"""

import pytest
import numpy as np
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from hypermatch.points import best_pairing, match_points
from common.types import EdgeMatch, Hypergraph, KeypointSet


class TestBestPairing:
    """Test cases for best_pairing"""

    def test_recovers_the_permutation(self):
        """Row k of A is paired with the B row holding the same descriptor"""
        rng = np.random.default_rng(4)
        da = rng.normal(size=(3, 8))
        db = da[[2, 0, 1]]
        perm, dist = best_pairing(da, db)

        assert list(perm) == [1, 2, 0]
        assert np.allclose(dist, 0.0)

    def test_distances_are_per_point(self):
        """Distances are the L2 norms of the paired rows"""
        da = np.eye(3)
        db = np.eye(3) + np.array([[0.0, 0.0, 0.3], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        perm, dist = best_pairing(da, db)

        assert list(perm) == [0, 1, 2]
        assert dist == pytest.approx([0.3, 0.0, 0.0])

    def test_width_mismatch_raises(self):
        """Descriptor widths must agree"""
        with pytest.raises(ValueError):
            best_pairing(np.zeros((3, 4)), np.zeros((3, 2)))


class TestMatchPoints:
    """Test cases for match_points"""

    def _setup(self):
        d = np.eye(5)
        hg_a = Hypergraph(edges=np.array([[0, 1, 2], [1, 2, 3]]), num_points=5)
        hg_b = Hypergraph(edges=np.array([[2, 0, 1], [3, 2, 1]]), num_points=5)
        return d, d.copy(), hg_a, hg_b

    def test_identical_descriptors_pair_identities(self):
        """Each paired point keeps its own identity on both sides"""
        da, db, hg_a, hg_b = self._setup()
        out = match_points([EdgeMatch(0, 0, 1.0)], hg_a, hg_b, da, db)

        assert [(m.point_a, m.point_b) for m in out] == [(0, 0), (1, 1), (2, 2)]
        assert all(m.distance == 0.0 for m in out)

    def test_far_points_are_excluded(self):
        """Only pairs closer than the threshold are reported"""
        da, db, hg_a, hg_b = self._setup()
        db[1] = db[1] + 0.5 * np.eye(5)[4]
        out = match_points([EdgeMatch(0, 0, 1.0)], hg_a, hg_b, da, db, threshold=0.1)

        assert [(m.point_a, m.point_b) for m in out] == [(0, 0), (2, 2)]

    def test_threshold_is_strict(self):
        """A distance equal to the threshold is rejected"""
        da, db, hg_a, hg_b = self._setup()
        db[0] = db[0] + 0.25 * np.eye(5)[4]
        out = match_points([EdgeMatch(0, 0, 1.0)], hg_a, hg_b, da, db, threshold=0.25)

        assert (0, 0) not in [(m.point_a, m.point_b) for m in out]

    def test_overlapping_matches_are_deduplicated(self):
        """A pair proposed by two hyperedge matches is reported once"""
        da, db, hg_a, hg_b = self._setup()
        matches = [EdgeMatch(0, 0, 1.0), EdgeMatch(1, 1, 1.0)]
        out = match_points(matches, hg_a, hg_b, da, db)
        pairs = [(m.point_a, m.point_b) for m in out]

        assert pairs == [(0, 0), (1, 1), (2, 2), (3, 3)]

    def test_duplicates_kept_when_disabled(self):
        """With deduplicate=False every proposal is reported"""
        da, db, hg_a, hg_b = self._setup()
        matches = [EdgeMatch(0, 0, 1.0), EdgeMatch(1, 1, 1.0)]
        out = match_points(matches, hg_a, hg_b, da, db, deduplicate=False)
        pairs = [(m.point_a, m.point_b) for m in out]

        assert len(pairs) == 6
        assert pairs.count((1, 1)) == 2
        assert pairs.count((2, 2)) == 2

    def test_accepts_keypoint_sets(self):
        """Descriptors can be passed as KeypointSets"""
        da, db, hg_a, hg_b = self._setup()
        xy = np.arange(10, dtype=float).reshape(5, 2)
        out = match_points(
            [EdgeMatch(0, 0, 1.0)], hg_a, hg_b,
            KeypointSet(xy=xy, descriptors=da), KeypointSet(xy=xy, descriptors=db),
        )
        assert len(out) == 3

    def test_no_edge_matches_no_points(self):
        """Empty input gives empty output"""
        da, db, hg_a, hg_b = self._setup()
        assert match_points([], hg_a, hg_b, da, db) == []

    def test_to_dict(self):
        """PointMatch serializes to a plain dict"""
        da, db, hg_a, hg_b = self._setup()
        out = match_points([EdgeMatch(0, 0, 1.0)], hg_a, hg_b, da, db)
        assert out[0].to_dict() == {"point_a": 0, "point_b": 0, "distance": 0.0}
