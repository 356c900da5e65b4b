"""
Unit tests for the matching pipeline, configuration and CLI
"""

import io
import json
import logging

import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

import hypermatch.pipeline as pipeline
from hypermatch.backends import BackendError, VectorizedBackend
from hypermatch.config import MatchConfig, config_from_dict, load_config
from hypermatch.pipeline import MatchReport, main, match_images, match_keypoints
from common.logging_setup import JsonFormatter
from common.types import Bounds, ImageFrame, KeypointSet


def _translated_pair(seed=21, n=30, d=16, shift=(3.0, 2.0)):
    rng = np.random.default_rng(seed)
    xy = rng.uniform(5.0, 95.0, size=(n, 2))
    des = rng.normal(size=(n, d))
    des /= np.linalg.norm(des, axis=1, keepdims=True)
    kps_a = KeypointSet(xy=xy, descriptors=des, name="a")
    kps_b = KeypointSet(xy=xy + np.array(shift), descriptors=des.copy(), name="b")
    return kps_a, kps_b, Bounds(0, 0, 100, 100), Bounds(0, 0, 110, 110)


def _textured(seed=0, shape=(240, 320)):
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=shape, dtype=np.uint8)
    img = cv2.GaussianBlur(img, (0, 0), 2.0)
    return cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)


class TestMatchKeypoints:
    """Test cases for match_keypoints"""

    @pytest.mark.parametrize("backend", ["sequential", "vectorized"])
    def test_translated_copy_matches_same_identities(self, backend):
        """Every hyperedge finds the copy of itself, every point its own copy"""
        kps_a, kps_b, bounds_a, bounds_b = _translated_pair()
        report = match_keypoints(kps_a, kps_b, bounds_a, bounds_b, MatchConfig(backend=backend))

        assert isinstance(report, MatchReport)
        assert report.backend == backend
        assert len(report.edge_matches) == len(report.hypergraph_a) > 0
        for m in report.edge_matches:
            assert set(report.hypergraph_a[m.edge_a]) == set(report.hypergraph_b[m.edge_b])
            assert m.score == pytest.approx(1.0, abs=1e-6)

        assert report.point_matches
        assert all(p.point_a == p.point_b for p in report.point_matches)
        # deduplicated: each pair once
        pairs = [(p.point_a, p.point_b) for p in report.point_matches]
        assert len(pairs) == len(set(pairs))

    def test_fallback_to_sequential(self, monkeypatch):
        """A failing vectorized backend is retried sequentially when allowed"""
        def fail(self, problem):
            raise BackendError("out of memory")

        monkeypatch.setattr(VectorizedBackend, "score_matrix", fail)
        kps_a, kps_b, bounds_a, bounds_b = _translated_pair()
        cfg = MatchConfig(backend="vectorized", fallback_to_sequential=True)
        report = match_keypoints(kps_a, kps_b, bounds_a, bounds_b, cfg)

        assert report.backend == "sequential"
        assert len(report.edge_matches) == len(report.hypergraph_a)

    def test_backend_error_propagates_without_fallback(self, monkeypatch):
        """Without fallback the BackendError reaches the caller"""
        def fail(self, problem):
            raise BackendError("out of memory")

        monkeypatch.setattr(VectorizedBackend, "score_matrix", fail)
        kps_a, kps_b, bounds_a, bounds_b = _translated_pair()
        with pytest.raises(BackendError):
            match_keypoints(kps_a, kps_b, bounds_a, bounds_b, MatchConfig(backend="vectorized"))

    def test_summary_is_serializable(self):
        """summary() holds counts and timings only"""
        kps_a, kps_b, bounds_a, bounds_b = _translated_pair(n=10)
        report = match_keypoints(kps_a, kps_b, bounds_a, bounds_b)
        s = report.summary()

        for key in ("points_a", "points_b", "edges_a", "edges_b", "edge_matches", "point_matches", "backend"):
            assert key in s
        assert set(s["timings_ms"]) == {"triangulate_a", "triangulate_b", "match_edges", "match_points"}
        json.dumps(s)

    def test_too_few_points(self):
        """Two keypoints give no hyperedges and no matches"""
        kps = KeypointSet(xy=np.array([[1.0, 1.0], [5.0, 5.0]]), descriptors=np.eye(2))
        report = match_keypoints(kps, kps, Bounds(0, 0, 10, 10), Bounds(0, 0, 10, 10))

        assert report.edge_matches == []
        assert report.point_matches == []


class TestMatchImages:
    """Test cases for match_images"""

    def test_keypoint_cap_is_applied(self):
        """At most max_keypoints points per image reach the matcher"""
        img = _textured()
        frame = ImageFrame.from_array(img, name="tex")
        cfg = MatchConfig(method="orb", nfeatures=300, max_keypoints=40)
        report = match_images(frame, frame, cfg)

        assert len(report.keypoints_a) <= 40
        assert len(report.keypoints_b) <= 40
        assert len(report.keypoints_a) >= 3
        assert report.summary()["points_a"] == len(report.keypoints_a)

    def test_grid_nms_caps_points_per_cell(self):
        """With a grid set, no cell keeps more than cap_per_cell points"""
        img = _textured()
        frame = ImageFrame.from_array(img, name="tex")
        cfg = MatchConfig(method="orb", nfeatures=300, max_keypoints=None, grid=(2, 2), cap_per_cell=4)
        report = match_images(frame, frame, cfg)

        kps = report.keypoints_a
        assert 3 <= len(kps) <= 16
        cells = {}
        for x, y in kps.xy:
            key = (min(1, int(x) // 160), min(1, int(y) // 120))
            cells[key] = cells.get(key, 0) + 1
        assert max(cells.values()) <= 4

    def test_grid_nms_only_when_configured(self):
        """Without a grid only the max_keypoints cap applies"""
        img = _textured()
        frame = ImageFrame.from_array(img, name="tex")
        capped = match_images(frame, frame, MatchConfig(method="orb", nfeatures=300, max_keypoints=None))
        gridded = match_images(
            frame, frame, MatchConfig(method="orb", nfeatures=300, max_keypoints=None, grid=(1, 1), cap_per_cell=5)
        )
        assert len(gridded.keypoints_a) == 5
        assert len(capped.keypoints_a) > 5


class TestConfig:
    """Test cases for configuration loading"""

    def test_shipped_config_loads(self):
        """config/params.yaml is valid"""
        cfg = load_config(os.path.join(project_root, "config", "params.yaml"))
        assert cfg.backend == "vectorized"
        assert cfg.fallback_to_sequential is True
        assert cfg.weights == (1.0, 1.0, 1.0)
        assert cfg.point_threshold == pytest.approx(0.1)
        assert cfg.grid == (8, 8)
        assert cfg.cap_per_cell == 60

    def test_nested_layout(self):
        """YAML sections map onto flat fields"""
        cfg = config_from_dict({"weights": {"area": 2.0}, "points": {"deduplicate": False}})
        assert cfg.area_weight == 2.0
        assert cfg.deduplicate is False

    def test_grid_from_yaml_list(self):
        """A YAML list for the NMS grid becomes a tuple; bad grids are rejected"""
        cfg = config_from_dict({"features": {"grid": [4, 3], "cap_per_cell": 10}})
        assert cfg.grid == (4, 3)
        assert cfg.cap_per_cell == 10
        with pytest.raises(ValueError):
            config_from_dict({"features": {"grid": [4, 0]}})
        with pytest.raises(ValueError):
            MatchConfig(cap_per_cell=0)

    def test_unknown_key_raises(self):
        """Typos in the config are reported, not ignored"""
        with pytest.raises(ValueError, match="Unknown config key"):
            config_from_dict({"matching": {"treshold": 0.5}})
        with pytest.raises(ValueError, match="Unknown config section"):
            config_from_dict({"matchin": {}})

    def test_invalid_values_raise(self):
        """Out-of-range settings are rejected"""
        with pytest.raises(ValueError):
            MatchConfig(threshold=0.0)
        with pytest.raises(ValueError):
            MatchConfig(backend="gpu")
        with pytest.raises(ValueError):
            MatchConfig(area_weight=0.0, angle_weight=0.0, descriptor_weight=0.0)

    def test_overrides_ignore_none(self):
        """CLI overrides replace only the values that were given"""
        cfg = MatchConfig().with_overrides(angle_weight=3.0, threshold=None)
        assert cfg.weights == (1.0, 3.0, 1.0)
        assert cfg.threshold == MatchConfig().threshold


class TestLogging:
    """Test cases for JSON log formatting"""

    def test_extra_fields_are_embedded(self):
        """Structured fields passed as extra={'extra': ...} appear in the line"""
        record = logging.LogRecord("hypermatch.test", logging.INFO, __file__, 1, "done %s", ("ok",), None)
        record.extra = {"matches": 3, "weights": (0.5, 0.25, 0.25)}
        line = JsonFormatter().format(record)
        payload = json.loads(line)

        assert payload["lvl"] == "INFO"
        assert payload["name"] == "hypermatch.test"
        assert payload["msg"] == "done ok"
        assert payload["extra"]["matches"] == 3

    def test_handler_writes_json_lines(self):
        """A logger using JsonFormatter emits one JSON object per line"""
        buf = io.StringIO()
        handler = logging.StreamHandler(buf)
        handler.setFormatter(JsonFormatter())
        logger = logging.getLogger("hypermatch.test.stream")
        logger.addHandler(handler)
        logger.propagate = False
        try:
            logger.warning("careful", extra={"extra": {"backend": "vectorized"}})
        finally:
            logger.removeHandler(handler)
        payload = json.loads(buf.getvalue().strip())
        assert payload["lvl"] == "WARNING"
        assert payload["extra"] == {"backend": "vectorized"}


class TestCli:
    """Test cases for the command line entry point"""

    def _write_inputs(self, tmp_path):
        img = _textured(seed=3)
        a = tmp_path / "a.png"
        b = tmp_path / "b.png"
        cv2.imwrite(str(a), np.ascontiguousarray(img[:, :300]))
        cv2.imwrite(str(b), np.ascontiguousarray(img[:, 10:]))
        metrics = tmp_path / "metrics.jsonl"
        cfg = tmp_path / "params.yaml"
        cfg.write_text(
            "matching:\n"
            "  backend: vectorized\n"
            "features:\n"
            "  method: orb\n"
            "  nfeatures: 200\n"
            "  max_keypoints: 30\n"
            "logging:\n"
            f"  metrics_file: {metrics}\n"
        )
        return a, b, cfg, metrics

    def test_main_writes_metrics_and_overlays(self, tmp_path):
        """A CLI run exits 0, appends a metrics row and writes overlays"""
        a, b, cfg, metrics = self._write_inputs(tmp_path)
        out_dir = tmp_path / "out"
        rc = main([str(a), str(b), "--config", str(cfg), "--cang", "2", "--out-dir", str(out_dir)])

        assert rc == 0
        rows = [json.loads(line) for line in metrics.read_text().splitlines()]
        assert len(rows) == 1
        assert rows[0]["img1"] == str(a)
        assert rows[0]["backend"] == "vectorized"
        for name in ("triangulation_a.png", "triangulation_b.png", "edge_matches.png", "point_matches.png"):
            assert (out_dir / name).exists()

    def test_backend_failure_exit_code(self, tmp_path, monkeypatch):
        """A BackendError ends the run with exit code 2"""
        a, b, cfg, metrics = self._write_inputs(tmp_path)

        def fail(*args, **kwargs):
            raise BackendError("no memory")

        monkeypatch.setattr(pipeline, "match_images", fail)
        assert main([str(a), str(b), "--config", str(cfg)]) == 2
        assert not metrics.exists()

    def test_unreadable_image_raises(self, tmp_path):
        """A missing input image is an error"""
        with pytest.raises(RuntimeError, match="Failed to read image"):
            main([str(tmp_path / "missing.png"), str(tmp_path / "missing.png"), "--config", str(tmp_path / "none.yaml")])
