from __future__ import annotations
"""
Feature extraction adapter for the hypergraph matcher.

- FeatureExtractor(method='sift'|'orb'|'akaze') with .extract(gray) -> KeypointSet
- Descriptors converted to float rows (binary descriptors unpacked to bits),
  optionally L2-normalized so descriptor distances live on a unit scale
- Grid non-max suppression (keeps spatially well-distributed strong keypoints)
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import KeypointSet


log = get_logger("hypermatch.features")


# -----------------------------
# Preprocessing
# -----------------------------

def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def descriptors_to_float(des: np.ndarray, binary: bool, normalize: bool = True) -> np.ndarray:
    """
    Float64 descriptor rows. Binary (uint8-packed) descriptors are unpacked to
    0/1 bits first. With normalize=True each non-zero row gets unit L2 norm.
    """
    d = np.unpackbits(des, axis=1) if binary else des
    d = np.asarray(d, dtype=np.float64)
    if normalize and d.size:
        n = np.linalg.norm(d, axis=1, keepdims=True)
        d = np.divide(d, n, out=np.zeros_like(d), where=n > 0)
    return d


# -----------------------------
# Extractors
# -----------------------------

@dataclass
class FeatureExtractor:
    method: str = "sift"
    nfeatures: int = 500
    normalize: bool = True
    fast_threshold: int = 12

    def __post_init__(self):
        m = self.method.lower()
        if m == "sift":
            self._det = cv2.SIFT_create(nfeatures=int(self.nfeatures))
            self.binary = False
            self._width = 128
        elif m == "orb":
            self._det = cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scoreType=cv2.ORB_HARRIS_SCORE,
                fastThreshold=int(self.fast_threshold),
            )
            self.binary = True
            self._width = 32
        elif m == "akaze":
            self._det = cv2.AKAZE_create(descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB)
            self.binary = True
            self._width = 61
        else:
            raise ValueError(f"Unsupported method: {self.method}")

    def detect_and_compute(self, gray_u8: np.ndarray, mask: Optional[np.ndarray] = None):
        kps, des = self._det.detectAndCompute(gray_u8, mask)
        if des is None:
            des = np.zeros((0, self._width), dtype=np.uint8 if self.binary else np.float32)
        return list(kps), des

    def extract(self, img: np.ndarray, mask: Optional[np.ndarray] = None, name: str = "") -> KeypointSet:
        """Detect keypoints on `img` (gray or BGR) and wrap them as a KeypointSet."""
        kps, des = self.detect_and_compute(to_gray_u8(img), mask)
        out = KeypointSet(
            xy=np.array([kp.pt for kp in kps], dtype=np.float64).reshape(-1, 2),
            descriptors=descriptors_to_float(des, self.binary, self.normalize),
            responses=np.array([kp.response for kp in kps], dtype=np.float64),
            name=name,
        )
        log.info("Keypoints detected", extra={"extra": {"image": name, "method": self.method, "count": len(out)}})
        return out


# -----------------------------
# Keypoint post-processing
# -----------------------------

def grid_nms(
    kps: KeypointSet,
    img_size: Tuple[int, int],
    grid: Tuple[int, int] = (8, 8),
    cap_per_cell: int = 60,
) -> KeypointSet:
    """
    Keep at most cap_per_cell keypoints per grid cell, strongest response first.
    Surviving points are re-indexed in cell order.
    """
    if len(kps) == 0:
        return kps
    W, H = int(img_size[0]), int(img_size[1])
    gx, gy = int(grid[0]), int(grid[1])
    cw = max(1, W // gx)
    ch = max(1, H // gy)
    responses = kps.responses if kps.responses is not None else np.zeros(len(kps))
    cells: List[List[List[int]]] = [[[] for _ in range(gx)] for _ in range(gy)]
    for i, (x, y) in enumerate(kps.xy):
        cx = min(gx - 1, max(0, int(x) // cw))
        cy = min(gy - 1, max(0, int(y) // ch))
        cells[cy][cx].append(i)
    kept: List[int] = []
    for row in cells:
        for cell in row:
            cell.sort(key=lambda i: responses[i], reverse=True)
            kept.extend(cell[:cap_per_cell])
    idx = np.asarray(kept, dtype=np.intp)
    return KeypointSet(
        xy=kps.xy[idx],
        descriptors=kps.descriptors[idx],
        responses=None if kps.responses is None else kps.responses[idx],
        name=kps.name,
    )
