from __future__ import annotations
"""
Point matching: turn accepted hyperedge matches into keypoint correspondences.

For each matched pair of triangles the three points of A are paired with the
three points of B by the vertex ordering that minimizes the summed descriptor
distance; each paired point whose distance is below the threshold becomes a
PointMatch.
"""

from typing import Dict, List, Sequence, Tuple, Union

import numpy as np

from common.logging_setup import get_logger
from common.types import EdgeMatch, Hypergraph, KeypointSet, PointMatch
from hypermatch.similarity import PERMUTATIONS


log = get_logger("hypermatch.points")

DEFAULT_POINT_THRESHOLD = 0.1


def best_pairing(desc_a: np.ndarray, desc_b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Best vertex ordering between two (3, D) descriptor triples.
    Returns (perm, distances): row k of A pairs with row perm[k] of B at
    L2 distance distances[k]. Ties keep the first ordering.
    """
    da = np.asarray(desc_a, dtype=np.float64)
    db = np.asarray(desc_b, dtype=np.float64)
    if da.shape[-1] != db.shape[-1]:
        raise ValueError(f"descriptor widths differ: {da.shape[-1]} vs {db.shape[-1]}")
    dist = np.linalg.norm(da[np.newaxis] - db[PERMUTATIONS], axis=-1)   # (6, 3)
    k = int(np.argmin(dist.sum(axis=1)))
    return PERMUTATIONS[k], dist[k]


def _descriptors(x: Union[KeypointSet, np.ndarray]) -> np.ndarray:
    return x.descriptors if isinstance(x, KeypointSet) else np.asarray(x)


def match_points(
    edge_matches: Sequence[EdgeMatch],
    hg_a: Hypergraph,
    hg_b: Hypergraph,
    desc_a: Union[KeypointSet, np.ndarray],
    desc_b: Union[KeypointSet, np.ndarray],
    threshold: float = DEFAULT_POINT_THRESHOLD,
    *,
    deduplicate: bool = True,
) -> List[PointMatch]:
    """
    Derive point correspondences from hyperedge matches.

    Overlapping hyperedge matches can propose the same (point_a, point_b) pair
    more than once. With deduplicate=True the pair is reported once, at the
    position it was first proposed, with the smallest distance seen. A point
    can still appear in several matches with different partners.
    """
    da = _descriptors(desc_a)
    db = _descriptors(desc_b)
    out: List[PointMatch] = []
    seen: Dict[Tuple[int, int], int] = {}

    for m in edge_matches:
        ea = hg_a.edges[m.edge_a]
        eb = hg_b.edges[m.edge_b]
        perm, dist = best_pairing(da[ea], db[eb])
        for k in range(3):
            d = float(dist[k])
            if not d < threshold:
                continue
            pa, pb = int(ea[k]), int(eb[perm[k]])
            if deduplicate:
                pos = seen.get((pa, pb))
                if pos is not None:
                    if d < out[pos].distance:
                        out[pos].distance = d
                    continue
                seen[(pa, pb)] = len(out)
            out.append(PointMatch(point_a=pa, point_b=pb, distance=d))

    log.info(
        "Point matching done",
        extra={"extra": {"edge_matches": len(edge_matches), "point_matches": len(out), "threshold": threshold}},
    )
    return out
