from __future__ import annotations
"""
Overlay rendering for triangulations and matches (debug output of the CLI).
All helpers return new BGR images; nothing is shown on screen.
"""

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from common.types import EdgeMatch, Hypergraph, KeypointSet, PointMatch
from hypermatch.features import to_gray_u8


def _to_bgr(img: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(to_gray_u8(img), cv2.COLOR_GRAY2BGR)


def _pt(xy: np.ndarray) -> Tuple[int, int]:
    return (int(round(float(xy[0]))), int(round(float(xy[1]))))


def _side_by_side(img_a: np.ndarray, img_b: np.ndarray) -> np.ndarray:
    a, b = _to_bgr(img_a), _to_bgr(img_b)
    h = max(a.shape[0], b.shape[0])
    out = np.zeros((h, a.shape[1] + b.shape[1], 3), dtype=np.uint8)
    out[: a.shape[0], : a.shape[1]] = a
    out[: b.shape[0], a.shape[1]:] = b
    return out


def draw_triangulation(
    img: np.ndarray,
    kps: KeypointSet,
    hg: Hypergraph,
    color: Tuple[int, int, int] = (255, 255, 255),
) -> np.ndarray:
    out = _to_bgr(img)
    for edge in hg.edges:
        pa, pb, pc = (_pt(p) for p in kps.triangle(edge))
        cv2.line(out, pa, pb, color, 1, cv2.LINE_AA)
        cv2.line(out, pb, pc, color, 1, cv2.LINE_AA)
        cv2.line(out, pc, pa, color, 1, cv2.LINE_AA)
    return out


def draw_edge_matches(
    img_a: np.ndarray,
    kps_a: KeypointSet,
    hg_a: Hypergraph,
    img_b: np.ndarray,
    kps_b: KeypointSet,
    hg_b: Hypergraph,
    matches: Sequence[EdgeMatch],
    max_draw: int = 100,
) -> np.ndarray:
    """Matched triangles outlined in red (image A) and green (image B)."""
    out = _side_by_side(img_a, img_b)
    offset = np.array([img_a.shape[1], 0.0])
    for m in list(matches)[:max_draw]:
        tri_a = np.array([_pt(p) for p in kps_a.triangle(hg_a.edges[m.edge_a])], dtype=np.int32)
        tri_b = np.array([_pt(p + offset) for p in kps_b.triangle(hg_b.edges[m.edge_b])], dtype=np.int32)
        cv2.polylines(out, [tri_a.reshape(-1, 1, 2)], True, (0, 0, 255), 1, cv2.LINE_AA)
        cv2.polylines(out, [tri_b.reshape(-1, 1, 2)], True, (0, 255, 0), 1, cv2.LINE_AA)
    return out


def draw_point_matches(
    img_a: np.ndarray,
    kps_a: KeypointSet,
    img_b: np.ndarray,
    kps_b: KeypointSet,
    matches: Sequence[PointMatch],
    max_draw: int = 200,
    keypoint_size: Optional[float] = 4.0,
) -> np.ndarray:
    """Convenience wrapper over cv2.drawMatches for PointMatch lists."""
    cv_kps_a = [cv2.KeyPoint(float(x), float(y), float(keypoint_size)) for x, y in kps_a.xy]
    cv_kps_b = [cv2.KeyPoint(float(x), float(y), float(keypoint_size)) for x, y in kps_b.xy]
    dm = [cv2.DMatch(m.point_a, m.point_b, float(m.distance)) for m in list(matches)[:max_draw]]
    return cv2.drawMatches(
        _to_bgr(img_a), cv_kps_a, _to_bgr(img_b), cv_kps_b,
        dm,
        None,
        matchColor=(0, 255, 0),
        singlePointColor=(255, 0, 0),
        flags=cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS,
    )
