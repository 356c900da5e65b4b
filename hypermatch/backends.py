from __future__ import annotations
"""
Execution backends for the hyperedge score matrix.

Both backends evaluate the same per-pair function, `combined_score`:
- SequentialBackend: one (i, j) pair at a time, keeping the best j per row
  as it goes (strict '>' so the earliest maximal j wins).
- VectorizedBackend: a data-parallel map over row blocks of the dense
  |A| x |B| matrix (numpy broadcasting); the per-row reduction runs afterwards.
"""

from dataclasses import dataclass
from typing import Dict, Tuple, Type

import numpy as np

from common.logging_setup import get_logger
from hypermatch.similarity import DEFAULT_SIGMA, angle_score, area_score, descriptor_score


log = get_logger("hypermatch.backends")

Weights = Tuple[float, float, float]  # (area, angle, descriptor), summing to 1

# 6 vertex orderings x 3 paired descriptor rows per hyperedge pair
_PAIRED_ROWS = 18


class BackendError(RuntimeError):
    """Raised when a backend cannot allocate or evaluate the score matrix."""


@dataclass(slots=True)
class PairProblem:
    """
    Flattened inputs for one hyperedge matching run.

    Attributes:
        tris_a, tris_b: (M, 3, 2) float64 triangle coordinates per hyperedge.
        descs_a, descs_b: (M, 3, D) float64 descriptor triples per hyperedge.
        weights: normalized (area, angle, descriptor) weights.
        sigma: scale of the area and angle measures.
    """
    tris_a: np.ndarray
    tris_b: np.ndarray
    descs_a: np.ndarray
    descs_b: np.ndarray
    weights: Weights
    sigma: float = DEFAULT_SIGMA

    def __post_init__(self) -> None:
        if self.descs_a.shape[-1] != self.descs_b.shape[-1]:
            raise ValueError(
                f"descriptor widths differ: {self.descs_a.shape[-1]} vs {self.descs_b.shape[-1]}"
            )
        if self.sigma <= 0:
            raise ValueError("sigma must be > 0")

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.tris_a.shape[0]), int(self.tris_b.shape[0]))


def combined_score(
    tri_a: np.ndarray,
    tri_b: np.ndarray,
    desc_a: np.ndarray,
    desc_b: np.ndarray,
    weights: Weights,
    sigma: float = DEFAULT_SIGMA,
) -> np.ndarray:
    """Weighted sum of the three similarities; broadcasts over leading dims."""
    c_area, c_angle, c_desc = weights
    return (
        c_area * area_score(tri_a, tri_b, sigma)
        + c_angle * angle_score(tri_a, tri_b, sigma)
        + c_desc * descriptor_score(desc_a, desc_b)
    )


def row_argmax(scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Best column per row: (index, score). The first maximal column wins and NaN
    never wins. Rows of an empty matrix get index -1 and score -inf.
    """
    rows = scores.shape[0]
    if scores.shape[1] == 0:
        return np.full(rows, -1, dtype=np.intp), np.full(rows, -np.inf)
    s = np.where(np.isnan(scores), -np.inf, scores)
    idx = np.argmax(s, axis=1)
    return idx.astype(np.intp), s[np.arange(rows), idx]


class Backend:
    name = "base"

    def score_matrix(self, problem: PairProblem) -> np.ndarray:
        raise NotImplementedError

    def best_per_row(self, problem: PairProblem) -> Tuple[np.ndarray, np.ndarray]:
        return row_argmax(self.score_matrix(problem))


class SequentialBackend(Backend):
    name = "sequential"

    def _score(self, p: PairProblem, i: int, j: int) -> float:
        return float(combined_score(p.tris_a[i], p.tris_b[j], p.descs_a[i], p.descs_b[j], p.weights, p.sigma))

    def score_matrix(self, problem: PairProblem) -> np.ndarray:
        ma, mb = problem.shape
        out = np.empty((ma, mb), dtype=np.float64)
        for i in range(ma):
            for j in range(mb):
                out[i, j] = self._score(problem, i, j)
        return out

    def best_per_row(self, problem: PairProblem) -> Tuple[np.ndarray, np.ndarray]:
        ma, mb = problem.shape
        best_idx = np.full(ma, -1, dtype=np.intp)
        best = np.full(ma, -np.inf)
        for i in range(ma):
            for j in range(mb):
                s = self._score(problem, i, j)
                if s > best[i]:
                    best[i] = s
                    best_idx[i] = j
        return best_idx, best


class VectorizedBackend(Backend):
    """
    Evaluates `combined_score` over blocks of rows at once. `block_bytes`
    bounds the largest intermediate (the permuted descriptor differences).
    """
    name = "vectorized"

    def __init__(self, block_bytes: int = 64 * 1024 * 1024):
        if block_bytes <= 0:
            raise ValueError("block_bytes must be > 0")
        self.block_bytes = int(block_bytes)

    def rows_per_block(self, problem: PairProblem) -> int:
        _, mb = problem.shape
        width = max(1, problem.descs_a.shape[-1])
        per_row = max(1, mb) * _PAIRED_ROWS * width * 8
        return max(1, self.block_bytes // per_row)

    def score_matrix(self, problem: PairProblem) -> np.ndarray:
        ma, mb = problem.shape
        step = self.rows_per_block(problem)
        log.debug("Vectorized scoring", extra={"extra": {"rows": ma, "cols": mb, "rows_per_block": step}})
        try:
            out = np.empty((ma, mb), dtype=np.float64)
            if ma == 0 or mb == 0:
                return out
            tri_b = problem.tris_b[np.newaxis]
            desc_b = problem.descs_b[np.newaxis]
            for start in range(0, ma, step):
                stop = min(ma, start + step)
                out[start:stop] = combined_score(
                    problem.tris_a[start:stop, np.newaxis],
                    tri_b,
                    problem.descs_a[start:stop, np.newaxis],
                    desc_b,
                    problem.weights,
                    problem.sigma,
                )
        except MemoryError as exc:
            raise BackendError(f"vectorized backend could not allocate a {ma}x{mb} score block") from exc
        return out


_BACKENDS: Dict[str, Type[Backend]] = {
    SequentialBackend.name: SequentialBackend,
    VectorizedBackend.name: VectorizedBackend,
}


def get_backend(name: str, **kwargs) -> Backend:
    """Instantiate a backend by configuration name ('sequential' | 'vectorized')."""
    key = str(name).lower()
    if key not in _BACKENDS:
        raise ValueError(f"Unsupported backend: {name}")
    if key == SequentialBackend.name:
        return SequentialBackend()
    return _BACKENDS[key](**kwargs)
