from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple, Any, Dict, Sequence
import numpy as np


@dataclass(slots=True, frozen=True)
class Bounds:
    """
    Closed image rectangle [x, x+width] x [y, y+height] in pixels.

    Containment is inclusive on every side, so a keypoint lying exactly on the
    image border is inside.
    """
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError("width/height must be >= 0")

    @classmethod
    def from_shape(cls, shape: Sequence[int]) -> "Bounds":
        """Bounds of an image array with shape (H, W) or (H, W, C)."""
        return cls(0.0, 0.0, float(shape[1]), float(shape[0]))

    @property
    def x_max(self) -> float:
        return self.x + self.width

    @property
    def y_max(self) -> float:
        return self.y + self.height

    def contains(self, x: float, y: float) -> bool:
        return (self.x <= x <= self.x_max) and (self.y <= y <= self.y_max)


@dataclass(slots=True)
class ImageFrame:
    """
    A single loaded image handed to the feature-extraction collaborator.

    Attributes:
        name: label used in logs and output file names (usually the path).
        width, height: image dimensions in pixels.
        frame: np.ndarray of shape (H,W) or (H,W,3), dtype uint8.
    """
    name: str
    width: int
    height: int
    frame: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.frame, np.ndarray):
            raise TypeError("frame must be a numpy ndarray")
        if self.frame.ndim not in (2, 3):
            raise ValueError("frame must be 2D (gray) or 3D (BGR)")
        if self.frame.shape[0] != self.height or self.frame.shape[1] != self.width:
            raise ValueError("width/height do not match frame shape")
        if self.frame.dtype != np.uint8:
            self.frame = self.frame.astype(np.uint8, copy=False)

    @classmethod
    def from_array(cls, frame: np.ndarray, name: str = "") -> "ImageFrame":
        return cls(name=name, width=int(frame.shape[1]), height=int(frame.shape[0]), frame=frame)

    @property
    def bounds(self) -> Bounds:
        return Bounds.from_shape(self.frame.shape)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "name": self.name,
            "width": self.width,
            "height": self.height,
            "channels": None if self.frame.ndim == 2 else self.frame.shape[2],
        }


@dataclass(slots=True)
class KeypointSet:
    """
    Keypoints of one image with their descriptors.

    A point's identity is its row index; it is preserved by every stage of the
    matcher (triangulation, hyperedge matching, point matching).

    Attributes:
        xy: (N, 2) float64 pixel coordinates.
        descriptors: (N, D) descriptor matrix, one row per point.
        responses: optional (N,) detector scores used for pre-filtering.
        name: label of the originating image.
    """
    xy: np.ndarray
    descriptors: np.ndarray
    responses: Optional[np.ndarray] = None
    name: str = ""

    def __post_init__(self) -> None:
        self.xy = np.asarray(self.xy, dtype=np.float64).reshape(-1, 2)
        des = np.asarray(self.descriptors)
        if des.ndim == 1 and des.size == 0:
            des = des.reshape(0, 0)
        if des.ndim != 2:
            raise ValueError("descriptors must be a 2D (N, D) array")
        if des.shape[0] != self.xy.shape[0]:
            raise ValueError(
                f"descriptor rows ({des.shape[0]}) do not match point count ({self.xy.shape[0]})"
            )
        self.descriptors = des
        if self.responses is not None:
            self.responses = np.asarray(self.responses, dtype=np.float64).reshape(-1)
            if self.responses.shape[0] != self.xy.shape[0]:
                raise ValueError("responses must have one entry per point")

    def __len__(self) -> int:
        return int(self.xy.shape[0])

    @property
    def descriptor_width(self) -> int:
        return int(self.descriptors.shape[1])

    def triangle(self, edge: Sequence[int]) -> np.ndarray:
        """(3, 2) coordinates of the points named by a hyperedge."""
        return self.xy[np.asarray(edge, dtype=np.intp)]

    def top_k(self, k: int) -> "KeypointSet":
        """
        Keep the k strongest points by detector response (stable, descending).
        Without responses the first k points are kept.
        """
        if k < 0:
            raise ValueError("k must be >= 0")
        if k >= len(self):
            return self
        if self.responses is None:
            idx = np.arange(k)
        else:
            idx = np.argsort(-self.responses, kind="stable")[:k]
        return KeypointSet(
            xy=self.xy[idx],
            descriptors=self.descriptors[idx],
            responses=None if self.responses is None else self.responses[idx],
            name=self.name,
        )

    def to_meta(self) -> Dict[str, Any]:
        return {"name": self.name, "points": len(self), "descriptor_width": self.descriptor_width}


@dataclass(slots=True)
class Hypergraph:
    """
    Triangular hyperedges over one image's keypoints.

    Attributes:
        edges: (M, 3) int array; each row names three distinct point identities.
        num_points: size of the keypoint set the identities index into.
        dropped_outside: candidate triangles rejected by the boundary test.
        dropped_unmapped: candidate triangles whose corners did not resolve to a point.
    """
    edges: np.ndarray
    num_points: int
    dropped_outside: int = 0
    dropped_unmapped: int = 0

    def __post_init__(self) -> None:
        e = np.asarray(self.edges, dtype=np.intp)
        if e.size == 0:
            e = e.reshape(0, 3)
        if e.ndim != 2 or e.shape[1] != 3:
            raise ValueError("edges must have shape (M, 3)")
        if e.size:
            if e.min() < 0 or e.max() >= self.num_points:
                raise ValueError("edge identity out of range")
            if np.any((e[:, 0] == e[:, 1]) | (e[:, 1] == e[:, 2]) | (e[:, 0] == e[:, 2])):
                raise ValueError("edge repeats a point identity")
        e = e.copy()
        e.setflags(write=False)
        self.edges = e

    @classmethod
    def empty(cls, num_points: int = 0) -> "Hypergraph":
        return cls(edges=np.zeros((0, 3), dtype=np.intp), num_points=num_points)

    def __len__(self) -> int:
        return int(self.edges.shape[0])

    def __getitem__(self, i: int) -> Tuple[int, int, int]:
        a, b, c = self.edges[i]
        return int(a), int(b), int(c)


@dataclass(slots=True)
class EdgeMatch:
    """
    Hyperedge `edge_a` of image A matched to hyperedge `edge_b` of image B.

    `score` is the weighted combination; the three components are kept for
    diagnostics.
    """
    edge_a: int
    edge_b: int
    score: float
    area: float = float("nan")
    angle: float = float("nan")
    descriptor: float = float("nan")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PointMatch:
    """Keypoint `point_a` of image A paired with `point_b` of image B."""
    point_a: int
    point_b: int
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
