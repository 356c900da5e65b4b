from __future__ import annotations
"""
Hypergraph construction: Delaunay triangulation of one image's keypoints
(OpenCV Subdiv2D), each triangle becoming a hyperedge of three point
identities.

Triangle corners are resolved to identities through the subdivision's own
vertex table, so the lookup compares the exact float32 values that
getTriangleList re-emits.
"""

import math
from typing import Dict, List, Tuple, Union

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import Bounds, Hypergraph, KeypointSet


log = get_logger("hypermatch.triangulation")


def _subdiv_rect(bounds: Bounds) -> Tuple[int, int, int, int]:
    """
    Integer rectangle for Subdiv2D, one pixel larger than `bounds` on every
    side: Subdiv2D rejects points on its right/bottom edge, `bounds` keeps them.
    """
    x0 = int(math.floor(bounds.x)) - 1
    y0 = int(math.floor(bounds.y)) - 1
    x1 = int(math.ceil(bounds.x_max)) + 1
    y1 = int(math.ceil(bounds.y_max)) + 1
    return (x0, y0, x1 - x0, y1 - y0)


def build_hypergraph(points: Union[KeypointSet, np.ndarray], bounds: Bounds) -> Hypergraph:
    """
    Triangulate `points` and return the hyperedges lying inside `bounds`.

    Args:
        points: KeypointSet or (N, 2) coordinates; identity = row index.
        bounds: image rectangle, inclusive on every side.

    Returns:
        Hypergraph in triangulation emission order. Fewer than three points
        give an empty hypergraph. Triangles with a corner outside `bounds` or
        a corner that does not resolve to a point are dropped and counted.
    """
    xy = points.xy if isinstance(points, KeypointSet) else np.asarray(points, dtype=np.float64).reshape(-1, 2)
    n = int(xy.shape[0])
    if n < 3:
        return Hypergraph.empty(n)

    subdiv = cv2.Subdiv2D(_subdiv_rect(bounds))

    # Subdivision vertex id -> point identity; duplicates keep the first identity.
    vertex_to_point: Dict[int, int] = {}
    skipped = 0
    for idx in range(n):
        x, y = float(xy[idx, 0]), float(xy[idx, 1])
        if not bounds.contains(x, y):
            skipped += 1
            continue
        vid = int(subdiv.insert((x, y)))
        vertex_to_point.setdefault(vid, idx)

    corner_to_point: Dict[Tuple[float, float], int] = {}
    for vid, idx in vertex_to_point.items():
        pt, _ = subdiv.getVertex(vid)
        corner_to_point.setdefault((float(pt[0]), float(pt[1])), idx)

    triangles = subdiv.getTriangleList()
    if triangles is None:
        triangles = np.zeros((0, 6), dtype=np.float32)

    edges: List[Tuple[int, int, int]] = []
    outside = 0
    unmapped = 0
    for t in np.asarray(triangles).reshape(-1, 6).tolist():
        corners = ((t[0], t[1]), (t[2], t[3]), (t[4], t[5]))
        if not all(bounds.contains(cx, cy) for cx, cy in corners):
            outside += 1
            continue
        ids = [corner_to_point.get(c) for c in corners]
        if any(i is None for i in ids) or len(set(ids)) != 3:
            unmapped += 1
            continue
        edges.append((ids[0], ids[1], ids[2]))

    log.debug(
        "Triangulation done",
        extra={"extra": {
            "points": n,
            "skipped_points": skipped,
            "triangles": int(len(edges) + outside + unmapped),
            "edges": len(edges),
            "dropped_outside": outside,
            "dropped_unmapped": unmapped,
        }},
    )
    return Hypergraph(
        edges=np.asarray(edges, dtype=np.intp).reshape(-1, 3),
        num_points=n,
        dropped_outside=outside,
        dropped_unmapped=unmapped,
    )
