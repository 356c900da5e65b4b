from __future__ import annotations
"""
Hyperedge matching: for every hyperedge of image A, find the most similar
hyperedge of image B and keep the pair when its combined score reaches the
acceptance threshold.

The search is driven by A. A hyperedge of B may be chosen by several
hyperedges of A, or by none.
"""

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from common.logging_setup import get_logger
from common.types import EdgeMatch, Hypergraph, KeypointSet
from hypermatch.backends import Backend, PairProblem, Weights, get_backend, row_argmax
from hypermatch.similarity import DEFAULT_SIGMA, angle_score, area_score, descriptor_score


log = get_logger("hypermatch.matcher")

DEFAULT_THRESHOLD = 0.4


def normalize_weights(area: float = 1.0, angle: float = 1.0, descriptor: float = 1.0) -> Weights:
    """Scale non-negative weights so that area + angle + descriptor == 1."""
    w = np.array([area, angle, descriptor], dtype=np.float64)
    if np.any(w < 0) or not np.all(np.isfinite(w)):
        raise ValueError("weights must be finite and >= 0")
    total = float(w.sum())
    if total <= 0.0:
        raise ValueError("at least one weight must be > 0")
    w /= total
    return (float(w[0]), float(w[1]), float(w[2]))


def _check_threshold(threshold: float) -> float:
    t = float(threshold)
    if not (0.0 < t <= 1.0):
        raise ValueError("threshold must be in (0, 1]")
    return t


def build_problem(
    hg_a: Hypergraph,
    hg_b: Hypergraph,
    kps_a: KeypointSet,
    kps_b: KeypointSet,
    weights: Weights,
    sigma: float = DEFAULT_SIGMA,
) -> PairProblem:
    """Gather triangle coordinates and descriptor triples into dense arrays."""
    if hg_a.num_points != len(kps_a) or hg_b.num_points != len(kps_b):
        raise ValueError("hypergraph was built over a different keypoint set")
    return PairProblem(
        tris_a=kps_a.xy[hg_a.edges],
        tris_b=kps_b.xy[hg_b.edges],
        descs_a=np.asarray(kps_a.descriptors, dtype=np.float64)[hg_a.edges],
        descs_b=np.asarray(kps_b.descriptors, dtype=np.float64)[hg_b.edges],
        weights=weights,
        sigma=sigma,
    )


def score_matrix(
    hg_a: Hypergraph,
    hg_b: Hypergraph,
    kps_a: KeypointSet,
    kps_b: KeypointSet,
    *,
    weights: Sequence[float] = (1.0, 1.0, 1.0),
    sigma: float = DEFAULT_SIGMA,
    backend: Union[str, Backend] = "sequential",
) -> np.ndarray:
    """Dense |A| x |B| matrix of combined scores."""
    be = get_backend(backend) if isinstance(backend, str) else backend
    problem = build_problem(hg_a, hg_b, kps_a, kps_b, normalize_weights(*weights), sigma)
    return be.score_matrix(problem)


def select_best(scores: np.ndarray, threshold: float = DEFAULT_THRESHOLD) -> List[Tuple[int, int, float]]:
    """
    Row-wise best column of a score matrix, kept when score >= threshold.
    Returns (row, column, score) triples in row order.
    """
    t = _check_threshold(threshold)
    idx, best = row_argmax(np.asarray(scores, dtype=np.float64))
    return [(i, int(idx[i]), float(best[i])) for i in range(len(idx)) if idx[i] >= 0 and best[i] >= t]


def match_hyperedges(
    hg_a: Hypergraph,
    hg_b: Hypergraph,
    kps_a: KeypointSet,
    kps_b: KeypointSet,
    *,
    weights: Sequence[float] = (1.0, 1.0, 1.0),
    threshold: float = DEFAULT_THRESHOLD,
    sigma: float = DEFAULT_SIGMA,
    backend: Union[str, Backend] = "sequential",
    block_bytes: Optional[int] = None,
) -> List[EdgeMatch]:
    """
    Match hyperedges of A against hyperedges of B.

    Args:
        hg_a, hg_b: hypergraphs built over kps_a / kps_b.
        kps_a, kps_b: keypoints (coordinates + descriptors) of each image.
        weights: (area, angle, descriptor) weights, normalized to sum to 1.
        threshold: acceptance threshold in (0, 1] on the combined score.
        sigma: scale of the area and angle similarities.
        backend: 'sequential' | 'vectorized' or a Backend instance.
        block_bytes: memory bound for the vectorized backend.

    Returns:
        EdgeMatch list in A's hyperedge order. Raises BackendError when the
        backend fails; no fallback happens here.
    """
    t = _check_threshold(threshold)
    w = normalize_weights(*weights)
    if isinstance(backend, str):
        kwargs = {"block_bytes": block_bytes} if (block_bytes and backend.lower() == "vectorized") else {}
        be = get_backend(backend, **kwargs)
    else:
        be = backend

    problem = build_problem(hg_a, hg_b, kps_a, kps_b, w, sigma)
    idx, best = be.best_per_row(problem)

    matches: List[EdgeMatch] = []
    for i in range(len(idx)):
        j = int(idx[i])
        if j < 0 or not (best[i] >= t):
            continue
        matches.append(
            EdgeMatch(
                edge_a=i,
                edge_b=j,
                score=float(best[i]),
                area=float(area_score(problem.tris_a[i], problem.tris_b[j], sigma)),
                angle=float(angle_score(problem.tris_a[i], problem.tris_b[j], sigma)),
                descriptor=float(descriptor_score(problem.descs_a[i], problem.descs_b[j])),
            )
        )

    log.info(
        "Hyperedge matching done",
        extra={"extra": {
            "edges_a": len(hg_a),
            "edges_b": len(hg_b),
            "matches": len(matches),
            "backend": be.name,
            "weights": w,
            "threshold": t,
        }},
    )
    return matches
