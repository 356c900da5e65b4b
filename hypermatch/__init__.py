# FILE: hypermatch/__init__.py
"""
Hypermatch: Hypergraph Keypoint Matching

This package provides:
- Delaunay triangulation of keypoints into triangular hyperedges
- Area / angle / descriptor similarities between hyperedges, invariant to
  vertex order
- All-pairs hyperedge matching with weighted scores and a threshold, run by
  a sequential or a vectorized backend
- Point correspondences derived from the accepted hyperedge matches
- A CLI that extracts features from two images, matches them and writes
  overlays plus a summary row to logs/metrics.jsonl

Entry point:
    python -m hypermatch.pipeline --config config/params.yaml img1.png img2.png
"""
from .triangulation import build_hypergraph
from .similarity import PERMUTATIONS, area_similarity, angle_similarity, desc_similarity
from .matcher import match_hyperedges, normalize_weights, score_matrix, select_best
from .points import match_points
from .backends import BackendError, get_backend

__all__ = [
    "build_hypergraph",
    "PERMUTATIONS",
    "area_similarity",
    "angle_similarity",
    "desc_similarity",
    "match_hyperedges",
    "normalize_weights",
    "score_matrix",
    "select_best",
    "match_points",
    "BackendError",
    "get_backend",
]
