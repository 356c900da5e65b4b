from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import cv2

from common.logging_setup import get_logger, setup_logging
from common.types import Bounds, EdgeMatch, Hypergraph, ImageFrame, KeypointSet, PointMatch
from common.utils import append_jsonl, iso_now_ms, timer_ms
from hypermatch.backends import BackendError
from hypermatch.config import MatchConfig, load_config
from hypermatch.draw import draw_edge_matches, draw_point_matches, draw_triangulation
from hypermatch.features import FeatureExtractor, grid_nms
from hypermatch.matcher import match_hyperedges
from hypermatch.points import match_points
from hypermatch.triangulation import build_hypergraph


log = get_logger("hypermatch")


@dataclass(slots=True)
class MatchReport:
    """Everything one run produces, handed to the rendering/reporting side."""
    keypoints_a: KeypointSet
    keypoints_b: KeypointSet
    hypergraph_a: Hypergraph
    hypergraph_b: Hypergraph
    edge_matches: List[EdgeMatch]
    point_matches: List[PointMatch]
    backend: str
    timings_ms: Dict[str, float] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """Counts and timings (safe to log/serialize)."""
        return {
            "points_a": len(self.keypoints_a),
            "points_b": len(self.keypoints_b),
            "edges_a": len(self.hypergraph_a),
            "edges_b": len(self.hypergraph_b),
            "dropped_a": self.hypergraph_a.dropped_outside + self.hypergraph_a.dropped_unmapped,
            "dropped_b": self.hypergraph_b.dropped_outside + self.hypergraph_b.dropped_unmapped,
            "edge_matches": len(self.edge_matches),
            "point_matches": len(self.point_matches),
            "backend": self.backend,
            "timings_ms": {k: round(v, 2) for k, v in self.timings_ms.items()},
        }


def _edge_matches(hg_a, hg_b, kps_a, kps_b, cfg: MatchConfig, backend: str) -> List[EdgeMatch]:
    return match_hyperedges(
        hg_a, hg_b, kps_a, kps_b,
        weights=cfg.weights,
        threshold=cfg.threshold,
        sigma=cfg.sigma,
        backend=backend,
        block_bytes=cfg.block_bytes,
    )


def match_keypoints(
    kps_a: KeypointSet,
    kps_b: KeypointSet,
    bounds_a: Bounds,
    bounds_b: Bounds,
    cfg: Optional[MatchConfig] = None,
) -> MatchReport:
    """
    Triangulate both keypoint sets, match hyperedges, then derive point matches.

    A BackendError from the configured backend propagates unless
    cfg.fallback_to_sequential is set, in which case the run is repeated with
    the sequential backend.
    """
    cfg = cfg or MatchConfig()
    timings: Dict[str, float] = {}

    hg_a, timings["triangulate_a"] = timer_ms(build_hypergraph)(kps_a, bounds_a)
    hg_b, timings["triangulate_b"] = timer_ms(build_hypergraph)(kps_b, bounds_b)

    backend = cfg.backend
    try:
        edges, timings["match_edges"] = timer_ms(_edge_matches)(hg_a, hg_b, kps_a, kps_b, cfg, backend)
    except BackendError as exc:
        if not cfg.fallback_to_sequential or backend == "sequential":
            raise
        log.warning("Backend failed, retrying sequentially", extra={"extra": {"backend": backend, "error": str(exc)}})
        backend = "sequential"
        edges, timings["match_edges"] = timer_ms(_edge_matches)(hg_a, hg_b, kps_a, kps_b, cfg, backend)

    points, timings["match_points"] = timer_ms(match_points)(
        edges, hg_a, hg_b, kps_a, kps_b, cfg.point_threshold, deduplicate=cfg.deduplicate
    )

    return MatchReport(
        keypoints_a=kps_a,
        keypoints_b=kps_b,
        hypergraph_a=hg_a,
        hypergraph_b=hg_b,
        edge_matches=edges,
        point_matches=points,
        backend=backend,
        timings_ms=timings,
    )


def match_images(
    frame_a: ImageFrame,
    frame_b: ImageFrame,
    cfg: Optional[MatchConfig] = None,
    extractor: Optional[FeatureExtractor] = None,
) -> MatchReport:
    """
    Detect keypoints on both frames and match them. Grid NMS (when
    cfg.grid is set) runs before the max_keypoints cap.
    """
    cfg = cfg or MatchConfig()
    extractor = extractor or FeatureExtractor(method=cfg.method, nfeatures=cfg.nfeatures, normalize=cfg.normalize)
    kps_a = extractor.extract(frame_a.frame, name=frame_a.name)
    kps_b = extractor.extract(frame_b.frame, name=frame_b.name)
    if cfg.grid is not None:
        kps_a = grid_nms(kps_a, (frame_a.width, frame_a.height), cfg.grid, cfg.cap_per_cell)
        kps_b = grid_nms(kps_b, (frame_b.width, frame_b.height), cfg.grid, cfg.cap_per_cell)
    if cfg.max_keypoints is not None:
        kps_a = kps_a.top_k(cfg.max_keypoints)
        kps_b = kps_b.top_k(cfg.max_keypoints)
    return match_keypoints(kps_a, kps_b, frame_a.bounds, frame_b.bounds, cfg)


def _load_frame(path: str) -> ImageFrame:
    img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise RuntimeError(f"Failed to read image: {path}")
    return ImageFrame.from_array(img, name=path)


def _write_overlays(out_dir: Path, frame_a: ImageFrame, frame_b: ImageFrame, report: MatchReport) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(out_dir / "triangulation_a.png"),
                draw_triangulation(frame_a.frame, report.keypoints_a, report.hypergraph_a))
    cv2.imwrite(str(out_dir / "triangulation_b.png"),
                draw_triangulation(frame_b.frame, report.keypoints_b, report.hypergraph_b))
    cv2.imwrite(str(out_dir / "edge_matches.png"),
                draw_edge_matches(frame_a.frame, report.keypoints_a, report.hypergraph_a,
                                  frame_b.frame, report.keypoints_b, report.hypergraph_b,
                                  report.edge_matches))
    cv2.imwrite(str(out_dir / "point_matches.png"),
                draw_point_matches(frame_a.frame, report.keypoints_a,
                                   frame_b.frame, report.keypoints_b, report.point_matches))


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Hypergraph keypoint matching between two images")
    ap.add_argument("img1")
    ap.add_argument("img2")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--cang", type=float, default=None, help="Constant of angle similarity (default: 1)")
    ap.add_argument("--crat", type=float, default=None, help="Constant of area (ratio) similarity (default: 1)")
    ap.add_argument("--cdesc", type=float, default=None, help="Constant of descriptor similarity (default: 1)")
    ap.add_argument("--threshold", type=float, default=None, help="Hyperedge acceptance threshold in (0, 1]")
    ap.add_argument("--backend", choices=["sequential", "vectorized"], default=None)
    ap.add_argument("--out-dir", default=None, help="Write overlay PNGs to this directory")
    args = ap.parse_args(argv)

    cfg = load_config(args.config) if os.path.exists(args.config) else MatchConfig()
    cfg = cfg.with_overrides(
        angle_weight=args.cang,
        area_weight=args.crat,
        descriptor_weight=args.cdesc,
        threshold=args.threshold,
        backend=args.backend,
    )
    setup_logging(cfg.log_level)

    frame_a = _load_frame(args.img1)
    frame_b = _load_frame(args.img2)
    log.info("Matching images", extra={"extra": {"a": frame_a.to_meta(), "b": frame_b.to_meta()}})

    try:
        report = match_images(frame_a, frame_b, cfg)
    except BackendError as exc:
        log.error("Matching backend failed", extra={"extra": {"backend": cfg.backend, "error": str(exc)}})
        return 2

    summary = report.summary()
    log.info("Matching done", extra={"extra": summary})

    if args.out_dir:
        _write_overlays(Path(args.out_dir), frame_a, frame_b, report)
    if cfg.metrics_file:
        append_jsonl(Path(cfg.metrics_file), {"ts": iso_now_ms(), "img1": args.img1, "img2": args.img2, **summary})
    return 0


if __name__ == "__main__":
    sys.exit(main())
