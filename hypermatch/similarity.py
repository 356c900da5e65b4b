from __future__ import annotations
"""
Hyperedge similarity measures.

Three measures compare a triangle of image A with a triangle of image B and
return a similarity in (0, 1]:

- area:       exp(-|sqrt(area_A) - sqrt(area_B)| / sigma), areas from Heron's formula
- angle:      exp(-min_perm L1(sines_A, perm(sines_B)) / sigma)
- descriptor: exp(-min_perm sum_k ||desc_A[k] - perm(desc_B)[k]||)

The kernels operate on arrays with arbitrary leading dimensions:
triangles are (..., 3, 2) coordinates and descriptor triples are (..., 3, D).
The same kernel therefore scores a single pair or a whole block of the
|A| x |B| score matrix through numpy broadcasting.
"""

from itertools import permutations
from typing import Sequence, Union

import numpy as np

from common.types import KeypointSet


DEFAULT_SIGMA = 0.5

# The six orderings of a triangle's vertices, shared by every permutation search.
PERMUTATIONS = np.array(list(permutations(range(3))), dtype=np.intp)
PERMUTATIONS.setflags(write=False)

# Vertex pairs in side order (0,1), (0,2), (1,2).
_SIDE_PAIRS = np.array([[0, 1], [0, 2], [1, 2]], dtype=np.intp)

# For vertex k, the two other vertices spanning the angle at k.
_ANGLE_ARMS = np.array([[1, 2], [0, 2], [0, 1]], dtype=np.intp)


ArrayLike = Union[np.ndarray, Sequence]


# -----------------------------
# Geometry kernels
# -----------------------------

def triangle_sides(tri: np.ndarray) -> np.ndarray:
    """(..., 3, 2) triangles -> (..., 3) side lengths."""
    tri = np.asarray(tri, dtype=np.float64)
    d = tri[..., _SIDE_PAIRS[:, 0], :] - tri[..., _SIDE_PAIRS[:, 1], :]
    return np.linalg.norm(d, axis=-1)


def heron_area(tri: np.ndarray) -> np.ndarray:
    """
    Triangle area from its side lengths (Heron's formula).
    Rounding on near-degenerate triangles can push the product below zero;
    it is clamped so the area is 0 rather than NaN.
    """
    sides = triangle_sides(tri)
    s = sides.sum(axis=-1) / 2.0
    prod = s * (s - sides[..., 0]) * (s - sides[..., 1]) * (s - sides[..., 2])
    return np.sqrt(np.maximum(prod, 0.0))


def angle_sines(tri: np.ndarray) -> np.ndarray:
    """
    (..., 3, 2) triangles -> (..., 3) sines of the interior angles, in the
    triangle's own vertex order: sin(acos(v1.v2 / (|v1||v2|))).
    """
    tri = np.asarray(tri, dtype=np.float64)
    v1 = tri[..., _ANGLE_ARMS[:, 0], :] - tri
    v2 = tri[..., _ANGLE_ARMS[:, 1], :] - tri
    with np.errstate(invalid="ignore", divide="ignore"):
        cos = np.sum(v1 * v2, axis=-1) / (np.linalg.norm(v1, axis=-1) * np.linalg.norm(v2, axis=-1))
    # coincident vertices leave the angle undefined; it counts as zero
    cos = np.where(np.isnan(cos), 1.0, cos)
    return np.sin(np.arccos(np.clip(cos, -1.0, 1.0)))


# -----------------------------
# Similarity kernels
# -----------------------------

def area_score(tri_a: np.ndarray, tri_b: np.ndarray, sigma: float = DEFAULT_SIGMA) -> np.ndarray:
    # sqrt of the area is compared, not the area itself
    diff = np.abs(np.sqrt(heron_area(tri_a)) - np.sqrt(heron_area(tri_b)))
    return np.exp(-diff / sigma)


def angle_score(tri_a: np.ndarray, tri_b: np.ndarray, sigma: float = DEFAULT_SIGMA) -> np.ndarray:
    sa = angle_sines(tri_a)[..., np.newaxis, :]   # (..., 1, 3)
    sb = angle_sines(tri_b)[..., PERMUTATIONS]    # (..., 6, 3)
    dist = np.abs(sa - sb).sum(axis=-1).min(axis=-1)
    return np.exp(-dist / sigma)


def descriptor_score(desc_a: np.ndarray, desc_b: np.ndarray) -> np.ndarray:
    """
    (..., 3, D) descriptor triples -> (...) similarity. No sigma: the summed
    L2 distance of the best vertex pairing is used as is.
    """
    desc_a = np.asarray(desc_a, dtype=np.float64)
    desc_b = np.asarray(desc_b, dtype=np.float64)
    if desc_a.shape[-1] != desc_b.shape[-1]:
        raise ValueError(
            f"descriptor widths differ: {desc_a.shape[-1]} vs {desc_b.shape[-1]}"
        )
    pb = desc_b[..., PERMUTATIONS, :]                        # (..., 6, 3, D)
    dist = np.linalg.norm(desc_a[..., np.newaxis, :, :] - pb, axis=-1)
    return np.exp(-dist.sum(axis=-1).min(axis=-1))


# -----------------------------
# Per-hyperedge API
# -----------------------------

def _as_xy(points: Union[KeypointSet, ArrayLike]) -> np.ndarray:
    if isinstance(points, KeypointSet):
        return points.xy
    return np.asarray(points, dtype=np.float64).reshape(-1, 2)


def _as_descriptors(descriptors: Union[KeypointSet, ArrayLike]) -> np.ndarray:
    if isinstance(descriptors, KeypointSet):
        return descriptors.descriptors
    return np.asarray(descriptors)


def _edge(edge: Sequence[int]) -> np.ndarray:
    e = np.asarray(edge, dtype=np.intp)
    if e.shape != (3,):
        raise ValueError("a hyperedge names exactly three points")
    return e


def area_similarity(
    edge_a: Sequence[int],
    edge_b: Sequence[int],
    points_a: Union[KeypointSet, ArrayLike],
    points_b: Union[KeypointSet, ArrayLike],
    sigma: float = DEFAULT_SIGMA,
) -> float:
    """Area similarity of two hyperedges given the point coordinates of each image."""
    return float(area_score(_as_xy(points_a)[_edge(edge_a)], _as_xy(points_b)[_edge(edge_b)], sigma))


def angle_similarity(
    edge_a: Sequence[int],
    edge_b: Sequence[int],
    points_a: Union[KeypointSet, ArrayLike],
    points_b: Union[KeypointSet, ArrayLike],
    sigma: float = DEFAULT_SIGMA,
) -> float:
    """Angle similarity; invariant to the vertex order of either hyperedge."""
    return float(angle_score(_as_xy(points_a)[_edge(edge_a)], _as_xy(points_b)[_edge(edge_b)], sigma))


def desc_similarity(
    edge_a: Sequence[int],
    edge_b: Sequence[int],
    descriptors_a: Union[KeypointSet, ArrayLike],
    descriptors_b: Union[KeypointSet, ArrayLike],
) -> float:
    """Descriptor similarity over the best of the six vertex pairings."""
    da = _as_descriptors(descriptors_a)[_edge(edge_a)]
    db = _as_descriptors(descriptors_b)[_edge(edge_b)]
    return float(descriptor_score(da, db))
